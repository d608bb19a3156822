"""Gift the Future Backend Services"""
from .errors import GiftServiceError
from .gift_store import GiftStore
from .polling import await_condition, retry_transient

__all__ = [
    "GiftServiceError",
    "GiftStore",
    "await_condition",
    "retry_transient",
]

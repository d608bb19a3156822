"""Database models"""
from giftfuture.models.database import Base
from giftfuture.models.gift import (
    Gift,
    GiftStatus,
    GiftSide,
    GIFT_TRANSITIONS,
    can_transition,
)

__all__ = [
    "Base",
    "Gift",
    "GiftStatus",
    "GiftSide",
    "GIFT_TRANSITIONS",
    "can_transition",
]

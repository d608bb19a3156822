"""Payment trigger schemas.

Checkout metadata arrives as loosely typed key/value text from the payment
provider. It is validated here, at the boundary, so nothing downstream ever
sees a missing or malformed amount.
"""
from decimal import Decimal
from typing import Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from giftfuture.models.gift import GiftSide


class CheckoutMetadata(BaseModel):
    """Gift details stored on the checkout session"""
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    market_ticker: str = Field(alias="marketTicker", min_length=1, max_length=100)
    market_title: Optional[str] = Field(None, alias="marketTitle", max_length=500)
    side: GiftSide
    shares: Optional[int] = Field(None, gt=0)
    price_per_share: Optional[Decimal] = Field(None, alias="pricePerShare", gt=0, le=1)
    amount_usdc: Optional[Decimal] = Field(None, alias="amountUSDC", gt=0)
    recipient_contact: str = Field(
        validation_alias=AliasChoices("recipientContact", "recipientEmail", "recipient_contact"),
        min_length=3,
        max_length=255,
    )
    recipient_name: str = Field("", alias="recipientName", max_length=255)
    gift_message: Optional[str] = Field(None, alias="giftMessage", max_length=1000)
    sender_email: Optional[str] = Field(None, alias="senderEmail", max_length=255)
    sender_id: Optional[str] = Field(None, alias="senderId", max_length=255)

    @field_validator("side", mode="before")
    @classmethod
    def normalize_side(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator(
        "market_title",
        "shares",
        "price_per_share",
        "amount_usdc",
        "gift_message",
        "sender_email",
        "sender_id",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, value):
        # Checkout metadata stores absent values as empty strings
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("recipient_name", mode="before")
    @classmethod
    def none_to_blank(cls, value):
        return "" if value is None else value

    @model_validator(mode="after")
    def require_amount(self):
        if self.amount_usdc is None and (self.shares is None or self.price_per_share is None):
            raise ValueError("either amountUSDC or both shares and pricePerShare are required")
        return self

    @property
    def cost_usdc(self) -> Decimal:
        if self.amount_usdc is not None:
            return self.amount_usdc
        return Decimal(self.shares) * self.price_per_share


class PaymentConfirmedEvent(BaseModel):
    """Verified checkout-completed event handed over by the payment collaborator"""
    session_id: str = Field(min_length=1, max_length=255)
    payment_status: str = "paid"
    metadata: CheckoutMetadata

    @property
    def idempotency_key(self) -> str:
        return self.session_id

    @property
    def sender_reference(self) -> str:
        return (
            self.metadata.sender_id
            or self.metadata.sender_email
            or f"stripe-{self.session_id}"
        )

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


class WebhookAck(BaseModel):
    received: bool = True
    gift_id: Optional[str] = None
    duplicate: bool = False

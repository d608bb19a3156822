"""Gift schemas"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any
from pydantic import AliasChoices, BaseModel, Field


class ClaimRequest(BaseModel):
    """Claim page payload; accepts the UI's camelCase keys as well"""
    gift_id: str = Field(validation_alias=AliasChoices("gift_id", "giftId"))
    recipient_wallet_address: str = Field(
        validation_alias=AliasChoices(
            "recipient_wallet_address", "recipientWalletAddress", "recipientAddress"
        )
    )
    recipient_identity_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("recipient_identity_id", "recipientIdentityId"),
    )


class ClaimResponse(BaseModel):
    gift_id: str
    signature: str
    recipient_wallet_address: str


class PublicGiftResponse(BaseModel):
    """Gift as shown on the claim page. Never carries sender identity or wallets."""
    id: str
    market_ticker: str
    market_title: str
    side: str
    token_amount: int
    cost_usdc: Decimal
    sender_name: str = "Someone"
    recipient_name: str
    gift_message: Optional[str] = None
    status: str
    created_at: datetime
    claimed_at: Optional[datetime] = None


class RedeemRequest(BaseModel):
    user_public_key: str = Field(min_length=32, max_length=44)


class RedeemResponse(BaseModel):
    transaction: str
    execution_mode: str
    quote: Dict[str, Any]


class NotificationPayload(BaseModel):
    """Body sent to the email service"""
    to: str
    recipientName: str
    senderName: str
    marketTitle: str
    side: str
    shares: float
    giftMessage: Optional[str] = None
    claimUrl: str

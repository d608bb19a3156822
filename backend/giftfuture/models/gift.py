"""Gift models"""
import enum
import uuid
from datetime import datetime
from sqlalchemy import Column, String, BigInteger, DateTime, Numeric, Text, Index

from giftfuture.models.database import Base


class GiftStatus(str, enum.Enum):
    """Gift lifecycle states."""
    PENDING_PAYMENT = "pending_payment"
    PENDING_CLAIM = "pending_claim"
    CLAIMED = "claimed"
    CASHED_OUT = "cashed_out"
    SETTLED = "settled"
    EXPIRED = "expired"


class GiftSide(str, enum.Enum):
    """Outcome side of a binary market."""
    YES = "yes"
    NO = "no"


# Forward-only transition graph. cashed_out/settled are written by the
# redemption flow, not by fulfillment.
GIFT_TRANSITIONS: dict[GiftStatus, list[GiftStatus]] = {
    GiftStatus.PENDING_PAYMENT: [GiftStatus.PENDING_CLAIM, GiftStatus.EXPIRED],
    GiftStatus.PENDING_CLAIM: [GiftStatus.CLAIMED],
    GiftStatus.CLAIMED: [GiftStatus.CASHED_OUT, GiftStatus.SETTLED],
    GiftStatus.CASHED_OUT: [GiftStatus.SETTLED],
    GiftStatus.SETTLED: [],
    GiftStatus.EXPIRED: [],
}


def can_transition(current: GiftStatus, next_status: GiftStatus) -> bool:
    """Check if a gift status transition is valid."""
    return next_status in GIFT_TRANSITIONS.get(GiftStatus(current), [])


def new_gift_id() -> str:
    return uuid.uuid4().hex


class Gift(Base):
    """A prediction market position bought for a recipient"""
    __tablename__ = "gifts"

    id = Column(String(32), primary_key=True, default=new_gift_id)
    idempotency_key = Column(String(255), unique=True, nullable=False)

    # Market reference
    market_ticker = Column(String(100), nullable=False)
    market_title = Column(String(500), nullable=False)

    # Position
    side = Column(String(3), nullable=False)  # yes, no
    outcome_mint = Column(String(44), nullable=False, default="")
    token_amount = Column(BigInteger, nullable=False, default=0)  # smallest unit
    cost_usdc = Column(Numeric(18, 6), nullable=False)
    requested_shares = Column(BigInteger, nullable=True)  # whole shares from checkout

    # Parties
    sender_id = Column(String(255), nullable=False, index=True)
    sender_email = Column(String(255), nullable=True)
    recipient_contact = Column(String(255), nullable=False, index=True)
    recipient_name = Column(String(255), nullable=False, default="")
    gift_message = Column(Text, nullable=True)
    recipient_wallet_address = Column(String(44), nullable=True)
    recipient_identity_id = Column(String(255), nullable=True, index=True)

    # Execution trace
    purchase_tx_sig = Column(String(88), nullable=True)
    claim_tx_sig = Column(String(88), nullable=True)
    status = Column(String(20), nullable=False, default=GiftStatus.PENDING_PAYMENT.value)
    failure_reason = Column(String(64), nullable=True)

    # Claim lease held while a custody transfer is in flight
    claim_lock_token = Column(String(32), nullable=True)
    claim_lock_expires_at = Column(DateTime, nullable=True)

    # Custody transfer submitted under the lease whose outcome is not yet known
    claim_pending_sig = Column(String(88), nullable=True)
    claim_pending_address = Column(String(44), nullable=True)
    claim_pending_valid_height = Column(BigInteger, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    claimed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_gifts_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return f"<Gift {self.id} {self.market_ticker} {self.side} ({self.status})>"

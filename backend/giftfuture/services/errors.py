"""Exception hierarchy for gift fulfillment.

Lower layers (venue client, signer, custody executor) raise the most precise
error they can. Only the fulfillment orchestrator decides whether an error is
terminal for a gift or retryable by the caller.
"""
from typing import Optional


class GiftServiceError(Exception):
    """Base class for all fulfillment errors."""


# ---- Venue ----

class VenueError(GiftServiceError):
    """Error reported by the trade venue."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class VenueUnavailableError(VenueError):
    """Network failure, timeout, 429 or 5xx from the venue. Retryable."""


class OrderRejectedError(VenueError):
    """Venue refused the request (bad pair, no route, no liquidity). Terminal."""


class MarketNotFoundError(OrderRejectedError):
    """Market ticker is unknown to the venue."""


# ---- Ledger ----

class LedgerError(GiftServiceError):
    """Error while submitting to or reading from the ledger."""

    def __init__(
        self,
        message: str,
        signature: Optional[str] = None,
        last_valid_block_height: Optional[int] = None,
    ):
        self.signature = signature
        self.last_valid_block_height = last_valid_block_height
        super().__init__(message)


class LedgerUnavailableError(LedgerError):
    """RPC read failed in transit or with a node error. Nothing was submitted."""


class LedgerSubmissionError(LedgerError):
    """RPC rejected the transaction, so it did not land. Safe to retry."""


class LedgerOutcomeUnknownError(LedgerError):
    """The transaction may or may not land. Not safe to blindly resubmit."""


class ConfirmationTimeoutError(LedgerOutcomeUnknownError):
    """Confirmation did not arrive within the configured timeout."""


class TransactionFailedError(LedgerError):
    """Transaction landed but the ledger reports it failed."""


# ---- Custody ----

class InsufficientCustodyBalanceError(GiftServiceError):
    """Custody account cannot cover the requested transfer."""

    def __init__(self, mint: str, required: int, available: int):
        self.mint = mint
        self.required = required
        self.available = available
        super().__init__(
            f"Custody balance for {mint} is {available}, transfer needs {required}"
        )


# ---- Gifts / claims ----

class GiftNotFoundError(GiftServiceError):
    def __init__(self, gift_id: str):
        self.gift_id = gift_id
        super().__init__(f"Gift {gift_id} not found")


class GiftNotClaimableError(GiftServiceError):
    """Gift is not in pending_claim. Carries the current status."""

    def __init__(self, gift_id: str, status: str, message: Optional[str] = None):
        self.gift_id = gift_id
        self.status = status
        super().__init__(message or f"Gift cannot be claimed (status: {status})")


class GiftAlreadyClaimedError(GiftNotClaimableError):
    pass


class GiftNotReadyError(GiftNotClaimableError):
    pass


class GiftExpiredError(GiftNotClaimableError):
    pass


class ClaimInProgressError(GiftServiceError):
    """Another claim attempt holds the lease for this gift."""

    def __init__(self, gift_id: str):
        self.gift_id = gift_id
        super().__init__(f"A claim for gift {gift_id} is already in progress")


class ClaimRetryableError(GiftServiceError):
    """Claim failed transiently; the gift remains pending_claim."""

    def __init__(self, gift_id: str, message: str):
        self.gift_id = gift_id
        super().__init__(message)


class WaitExhaustedError(GiftServiceError):
    """A bounded wait ran out of attempts without the condition holding."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Condition not met after {attempts} attempts")


class InvalidTransitionError(GiftServiceError):
    """Raised when a status change would leave the forward-only graph."""

    def __init__(self, gift_id: str, current: str, attempted: str):
        self.gift_id = gift_id
        self.current = current
        self.attempted = attempted
        super().__init__(f"Invalid transition for {gift_id}: {current} -> {attempted}")


class NotGiftOwnerError(GiftServiceError):
    """Wallet presented for a redemption is not the one the gift was claimed to."""

    def __init__(self, gift_id: str):
        self.gift_id = gift_id
        super().__init__(f"Wallet does not own gift {gift_id}")


class ClaimRecordLostError(GiftServiceError):
    """Custody transfer confirmed but the claimed status could not be written."""

    def __init__(self, gift_id: str, signature: str):
        self.gift_id = gift_id
        self.signature = signature
        super().__init__(
            f"Transfer {signature} for gift {gift_id} confirmed but claim was not recorded"
        )

"""Gift claim, view and redemption endpoints"""
import structlog
from fastapi import APIRouter, Depends, HTTPException
from solders.pubkey import Pubkey

from giftfuture.api.v1.deps import get_orchestrator
from giftfuture.schemas.gift import (
    ClaimRequest,
    ClaimResponse,
    PublicGiftResponse,
    RedeemRequest,
    RedeemResponse,
)
from giftfuture.services.errors import (
    ClaimInProgressError,
    ClaimRecordLostError,
    ClaimRetryableError,
    GiftAlreadyClaimedError,
    GiftExpiredError,
    GiftNotClaimableError,
    GiftNotFoundError,
    GiftNotReadyError,
    InsufficientCustodyBalanceError,
    NotGiftOwnerError,
    OrderRejectedError,
    VenueError,
)
from giftfuture.services.fulfillment import FulfillmentOrchestrator

router = APIRouter()
logger = structlog.get_logger()


def gift_error(status_code: int, code: str, message: str, status: str = None) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": message, "code": code, "status": status},
    )


def validate_address(address: str, field: str) -> None:
    try:
        Pubkey.from_string(address)
    except Exception:
        raise gift_error(400, "invalid_address", f"Invalid {field}")


@router.post("/claim", response_model=ClaimResponse)
async def claim_gift(
    request: ClaimRequest,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Transfer a gift's tokens to the recipient's wallet"""
    validate_address(request.recipient_wallet_address, "recipient wallet address")

    try:
        result = await orchestrator.claim(
            request.gift_id,
            request.recipient_wallet_address,
            request.recipient_identity_id,
        )
    except GiftNotFoundError as e:
        raise gift_error(404, "not_found", str(e))
    except GiftAlreadyClaimedError as e:
        raise gift_error(409, "already_claimed", str(e), e.status)
    except GiftNotReadyError as e:
        raise gift_error(409, "not_ready", str(e), e.status)
    except GiftExpiredError as e:
        raise gift_error(410, "expired", str(e), e.status)
    except GiftNotClaimableError as e:
        raise gift_error(409, "not_claimable", str(e), e.status)
    except ClaimInProgressError as e:
        raise gift_error(409, "claim_in_progress", str(e), "pending_claim")
    except ClaimRetryableError as e:
        raise gift_error(503, "retryable", str(e), "pending_claim")
    except InsufficientCustodyBalanceError:
        raise gift_error(
            500, "custody_unavailable", "Gift cannot be delivered right now", "pending_claim"
        )
    except ClaimRecordLostError as e:
        raise gift_error(500, "claim_not_recorded", str(e))

    return ClaimResponse(
        gift_id=result.gift_id,
        signature=result.signature,
        recipient_wallet_address=result.recipient_wallet_address,
    )


@router.get("/{gift_id}", response_model=PublicGiftResponse)
async def get_gift(
    gift_id: str,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Public view of a gift for the claim page"""
    try:
        return await orchestrator.get_public_gift(gift_id)
    except GiftNotFoundError as e:
        raise gift_error(404, "not_found", str(e))


@router.post("/{gift_id}/redeem", response_model=RedeemResponse)
async def redeem_gift(
    gift_id: str,
    request: RedeemRequest,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Unsigned transaction selling a claimed gift's tokens for USDC"""
    validate_address(request.user_public_key, "user public key")

    try:
        order = await orchestrator.create_redemption_order(gift_id, request.user_public_key)
    except GiftNotFoundError as e:
        raise gift_error(404, "not_found", str(e))
    except GiftNotClaimableError as e:
        raise gift_error(409, "not_redeemable", str(e), e.status)
    except NotGiftOwnerError as e:
        raise gift_error(403, "not_owner", str(e))
    except OrderRejectedError as e:
        raise gift_error(422, "order_rejected", str(e))
    except VenueError as e:
        logger.warning("Redemption order failed", gift_id=gift_id, error=str(e))
        raise gift_error(503, "venue_unavailable", "Venue unavailable, please retry")

    return RedeemResponse(
        transaction=order.transaction,
        execution_mode=order.execution_mode.value,
        quote={
            "input_amount": order.quote.input_amount,
            "output_amount": order.quote.output_amount,
            "price": order.quote.price,
        },
    )

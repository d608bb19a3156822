"""Gift fulfillment orchestrator.

Drives a gift through its lifecycle:

    pending_payment ──fill──▶ pending_claim ──claim──▶ claimed
          │
          └──rejected / not filled──▶ expired

Each transition re-reads the gift and writes with a compare-and-set on the
status column, so duplicate webhook deliveries and double claim clicks
resolve to a single transition. This is the only component that decides
whether an error is terminal for a gift or retryable by the caller.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR
from typing import Optional, Tuple

import structlog

from giftfuture.config import Settings, get_settings
from giftfuture.models.gift import Gift, GiftStatus, can_transition
from giftfuture.schemas.checkout import PaymentConfirmedEvent
from giftfuture.schemas.gift import PublicGiftResponse
from giftfuture.services.custody import CustodyTransferExecutor
from giftfuture.services.dflow_client import (
    DFlowClient,
    ExecutionMode,
    FillStatus,
    OrderResponse,
    OrderStatus,
)
from giftfuture.services.errors import (
    ClaimInProgressError,
    ClaimRecordLostError,
    ClaimRetryableError,
    ConfirmationTimeoutError,
    GiftAlreadyClaimedError,
    GiftExpiredError,
    GiftNotClaimableError,
    GiftNotFoundError,
    GiftNotReadyError,
    InsufficientCustodyBalanceError,
    InvalidTransitionError,
    LedgerError,
    LedgerOutcomeUnknownError,
    LedgerSubmissionError,
    LedgerUnavailableError,
    MarketNotFoundError,
    NotGiftOwnerError,
    OrderRejectedError,
    TransactionFailedError,
    VenueError,
    VenueUnavailableError,
    WaitExhaustedError,
)
from giftfuture.services.gift_store import GiftStore
from giftfuture.services.notifications import NotificationDispatcher
from giftfuture.services.polling import await_condition, retry_transient
from giftfuture.services.signer import SettlementSigner, SignatureState

logger = structlog.get_logger()

CLAIMED_STATUSES = (GiftStatus.CLAIMED, GiftStatus.CASHED_OUT, GiftStatus.SETTLED)


@dataclass
class FillResult:
    token_amount: Optional[int] = None
    failure_reason: Optional[str] = None

    @property
    def filled(self) -> bool:
        return self.failure_reason is None


@dataclass
class ClaimResult:
    gift_id: str
    signature: str
    recipient_wallet_address: str


class FulfillmentOrchestrator:
    """Runs purchase and claim for gifts"""

    def __init__(
        self,
        store: GiftStore,
        venue: DFlowClient,
        signer: SettlementSigner,
        custody: CustodyTransferExecutor,
        notifier: NotificationDispatcher,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.venue = venue
        self.signer = signer
        self.custody = custody
        self.notifier = notifier
        self.settings = settings or get_settings()

    # ─── Helpers ──────────────────────────────────────────────

    def to_usdc_units(self, amount: Decimal) -> int:
        """Convert a USDC amount to its smallest unit, rounding down"""
        scaled = Decimal(amount) * (Decimal(10) ** self.settings.usdc_decimals)
        return int(scaled.to_integral_value(rounding=ROUND_FLOOR))

    def _resolve_token_amount(self, gift: Gift, reported: Optional[int]) -> Optional[int]:
        if reported:
            return reported
        if gift.requested_shares:
            logger.warning(
                "Venue reported no fill amount, using requested shares",
                gift_id=gift.id,
                requested_shares=gift.requested_shares,
            )
            return gift.requested_shares * (10 ** self.settings.outcome_token_decimals)
        return None

    async def _transition(self, gift: Gift, new_status: GiftStatus, **fields) -> Optional[Gift]:
        """Compare-and-set `gift` from its current status to `new_status`"""
        current = GiftStatus(gift.status)
        if not can_transition(current, new_status):
            raise InvalidTransitionError(gift.id, current.value, new_status.value)

        updated = await self.store.update_if_status(
            gift.id, current, status=new_status, **fields
        )
        if updated is None:
            logger.warning(
                "Gift changed concurrently, transition skipped",
                gift_id=gift.id,
                expected=current.value,
                attempted=new_status.value,
            )
            return None

        logger.info(
            "Gift transitioned",
            gift_id=gift.id,
            from_status=current.value,
            to_status=new_status.value,
        )
        return updated

    async def _expire(self, gift: Gift, reason: str) -> Optional[Gift]:
        # No refund path exists; expired gifts are reconciled by an operator
        logger.error(
            "Gift purchase failed, needs manual reconciliation",
            gift_id=gift.id,
            reason=reason,
            purchase_tx_sig=gift.purchase_tx_sig,
            cost_usdc=str(gift.cost_usdc),
        )
        return await self._transition(gift, GiftStatus.EXPIRED, failure_reason=reason)

    async def _notify(self, gift: Gift) -> None:
        try:
            await self.notifier.send_claim_link(gift)
        except Exception as e:
            logger.error("Claim notification failed", gift_id=gift.id, error=str(e))

    # ─── Trigger ──────────────────────────────────────────────

    async def accept_payment(self, event: PaymentConfirmedEvent) -> Tuple[Gift, bool]:
        """
        Record a gift for a confirmed payment.

        Delivering the same event again returns the existing gift with
        created=False and changes nothing.
        """
        meta = event.metadata
        gift, created = await self.store.create_if_absent(
            event.idempotency_key,
            market_ticker=meta.market_ticker,
            market_title=meta.market_title or meta.market_ticker,
            side=meta.side,
            cost_usdc=meta.cost_usdc,
            requested_shares=meta.shares,
            sender_id=event.sender_reference,
            sender_email=meta.sender_email,
            recipient_contact=meta.recipient_contact,
            recipient_name=meta.recipient_name,
            gift_message=meta.gift_message,
        )

        if created:
            logger.info(
                "Gift created for payment",
                gift_id=gift.id,
                session_id=event.session_id,
                market_ticker=gift.market_ticker,
                side=gift.side,
                cost_usdc=str(gift.cost_usdc),
            )
        else:
            logger.info(
                "Duplicate payment event ignored",
                gift_id=gift.id,
                session_id=event.session_id,
                status=gift.status,
            )
        return gift, created

    # ─── Purchase ─────────────────────────────────────────────

    async def purchase(self, gift_id: str) -> Optional[Gift]:
        """
        Buy the outcome tokens for a pending_payment gift and wait for the fill.

        Returns:
            The gift after the purchase settles (pending_claim or expired), or
            the unchanged gift when the purchase was already handled elsewhere
        """
        gift = await self.store.get(gift_id)
        if gift is None:
            raise GiftNotFoundError(gift_id)
        if gift.status != GiftStatus.PENDING_PAYMENT.value or gift.purchase_tx_sig:
            logger.info(
                "Purchase already handled",
                gift_id=gift.id,
                status=gift.status,
                purchase_tx_sig=gift.purchase_tx_sig,
            )
            return gift

        settings = self.settings

        try:
            mints = await retry_transient(
                lambda: self.venue.get_outcome_mints(gift.market_ticker),
                attempts=settings.order_attempts,
                interval=settings.order_retry_interval_seconds,
                retry_on=(VenueUnavailableError,),
                label="resolve_market",
            )
        except MarketNotFoundError:
            return await self._expire(gift, "market_not_found")
        except VenueUnavailableError:
            return await self._expire(gift, "venue_unavailable")
        except VenueError:
            return await self._expire(gift, "order_rejected")

        outcome_mint = mints.for_side(gift.side)
        gift = await self.store.update_if_status(
            gift.id, GiftStatus.PENDING_PAYMENT, outcome_mint=outcome_mint
        )
        if gift is None:
            logger.warning("Gift left pending_payment during purchase", gift_id=gift_id)
            return await self.store.get(gift_id)

        amount = self.to_usdc_units(gift.cost_usdc)
        payer = str(self.signer.public_key)

        async def place_and_submit() -> Tuple[OrderResponse, str]:
            # A fresh order per attempt, since a retried venue transaction
            # may carry an expired blockhash
            order = await self.venue.place_order(
                input_mint=settings.usdc_mint,
                output_mint=outcome_mint,
                amount=amount,
                slippage_bps=settings.order_slippage_bps,
                user_public_key=payer,
            )
            signature = await self.signer.sign_and_submit(order.transaction)
            return order, signature

        try:
            order, signature = await retry_transient(
                place_and_submit,
                attempts=settings.order_attempts,
                interval=settings.order_retry_interval_seconds,
                retry_on=(VenueUnavailableError, LedgerSubmissionError),
                label="place_order",
            )
        except OrderRejectedError:
            return await self._expire(gift, "order_rejected")
        except VenueUnavailableError:
            return await self._expire(gift, "venue_unavailable")
        except VenueError:
            return await self._expire(gift, "order_rejected")
        except LedgerOutcomeUnknownError:
            return await self._expire(gift, "submission_outcome_unknown")
        except LedgerError:
            return await self._expire(gift, "submission_failed")

        # Recorded before waiting so an interrupted fill wait stays inspectable
        updated = await self.store.update_if_status(
            gift.id, GiftStatus.PENDING_PAYMENT, purchase_tx_sig=signature
        )
        if updated is None:
            logger.error(
                "Gift left pending_payment while its order was submitted",
                gift_id=gift.id,
                purchase_tx_sig=signature,
            )
            return await self.store.get(gift.id)
        gift = updated

        logger.info(
            "Purchase submitted",
            gift_id=gift.id,
            purchase_tx_sig=signature,
            execution_mode=order.execution_mode.value,
            usdc_amount=amount,
        )

        fill = await self.await_fill(gift, order, signature)
        if not fill.filled:
            return await self._expire(gift, fill.failure_reason)

        claimable = await self._transition(
            gift, GiftStatus.PENDING_CLAIM, token_amount=fill.token_amount
        )
        if claimable is None:
            return await self.store.get(gift.id)

        await self._notify(claimable)
        return claimable

    async def await_fill(self, gift: Gift, order: OrderResponse, signature: str) -> FillResult:
        """Wait for the order to fill according to its execution mode"""
        if order.execution_mode == ExecutionMode.SYNC:
            try:
                await self.signer.await_confirmation(signature)
            except ConfirmationTimeoutError:
                return FillResult(failure_reason="confirmation_timeout")
            except TransactionFailedError:
                return FillResult(failure_reason="transaction_failed")
            reported = order.quote.output_amount
        else:
            status = await self._poll_fill(gift, signature)
            if status is None:
                return FillResult(failure_reason="fill_budget_exhausted")
            if status.status == FillStatus.FAILED:
                return FillResult(failure_reason="fill_failed")
            reported = status.filled_output_amount or order.quote.output_amount

        token_amount = self._resolve_token_amount(gift, reported)
        if token_amount is None:
            return FillResult(failure_reason="fill_amount_unknown")
        return FillResult(token_amount=token_amount)

    async def _poll_fill(self, gift: Gift, signature: str) -> Optional[OrderStatus]:
        async def probe() -> Optional[OrderStatus]:
            status = await self.venue.get_order_status(signature)
            if status.status == FillStatus.PENDING:
                return None
            return status

        try:
            return await await_condition(
                probe,
                attempts=self.settings.fill_poll_attempts,
                interval=self.settings.fill_poll_interval_seconds,
                delay_first=True,
                tolerate=(VenueError,),
                label="fill_wait",
            )
        except WaitExhaustedError:
            logger.warning(
                "Order not filled within polling budget",
                gift_id=gift.id,
                purchase_tx_sig=signature,
                attempts=self.settings.fill_poll_attempts,
            )
            return None

    # ─── Claim ────────────────────────────────────────────────

    @staticmethod
    def ensure_claimable(gift: Gift) -> None:
        """Raise the status-specific error unless the gift is pending_claim"""
        status = GiftStatus(gift.status)
        if status == GiftStatus.PENDING_CLAIM:
            return
        if status in CLAIMED_STATUSES:
            raise GiftAlreadyClaimedError(gift.id, status.value, "Gift has already been claimed")
        if status == GiftStatus.PENDING_PAYMENT:
            raise GiftNotReadyError(gift.id, status.value, "Gift is not ready to claim yet")
        if status == GiftStatus.EXPIRED:
            raise GiftExpiredError(gift.id, status.value, "Gift has expired")
        raise GiftNotClaimableError(gift.id, status.value)

    async def claim(
        self,
        gift_id: str,
        recipient_address: str,
        recipient_identity_id: Optional[str] = None,
    ) -> ClaimResult:
        """
        Transfer a pending_claim gift's tokens to `recipient_address`.

        The claimed status is only written after the transfer confirms, so a
        failed attempt leaves the gift pending_claim and safe to retry. A
        transfer whose outcome is unknown is recorded on the gift, and the
        next claim resolves it before any new transfer starts.
        """
        gift = await self.store.get(gift_id)
        if gift is None:
            raise GiftNotFoundError(gift_id)
        self.ensure_claimable(gift)

        lock_token = uuid.uuid4().hex
        acquired = await self.store.acquire_claim_lock(
            gift_id, lock_token, self.settings.claim_lock_ttl_seconds
        )
        if not acquired:
            current = await self.store.get(gift_id)
            if current is None:
                raise GiftNotFoundError(gift_id)
            self.ensure_claimable(current)
            raise ClaimInProgressError(gift_id)

        # Re-read under the lease; an expired holder may have left a transfer in flight
        gift = await self.store.get(gift_id)
        if gift.claim_pending_sig:
            landed = await self._resolve_pending_transfer(gift, lock_token)
            if landed is not None:
                if gift.claim_pending_address != recipient_address:
                    logger.warning(
                        "Earlier claim transfer went to another wallet",
                        gift_id=gift_id,
                        requested=recipient_address,
                        recipient_wallet_address=gift.claim_pending_address,
                    )
                return await self._complete_claim(
                    gift_id,
                    lock_token,
                    landed,
                    gift.claim_pending_address,
                    recipient_identity_id,
                )

        logger.info(
            "Claim started",
            gift_id=gift_id,
            recipient_wallet_address=recipient_address,
            token_amount=gift.token_amount,
        )

        try:
            signature = await retry_transient(
                lambda: self.custody.transfer(
                    gift.outcome_mint, recipient_address, gift.token_amount
                ),
                attempts=self.settings.claim_submit_attempts,
                interval=self.settings.order_retry_interval_seconds,
                retry_on=(LedgerSubmissionError, LedgerUnavailableError),
                label="custody_transfer",
            )
        except LedgerOutcomeUnknownError as e:
            # Lease stays until it expires; the next claim checks this signature first
            if e.signature:
                await self.store.update_claim_lease(
                    gift_id,
                    lock_token,
                    claim_pending_sig=e.signature,
                    claim_pending_address=recipient_address,
                    claim_pending_valid_height=e.last_valid_block_height,
                )
            logger.error(
                "Claim transfer outcome unknown",
                gift_id=gift_id,
                signature=e.signature,
                last_valid_block_height=e.last_valid_block_height,
                error=str(e),
            )
            raise ClaimRetryableError(
                gift_id, "Claim transfer is still settling, please retry shortly"
            ) from e
        except InsufficientCustodyBalanceError as e:
            await self.store.release_claim_lock(gift_id, lock_token)
            logger.error(
                "Custody balance too low for claim, operator action required",
                gift_id=gift_id,
                mint=e.mint,
                required=e.required,
                available=e.available,
            )
            raise
        except (LedgerSubmissionError, LedgerUnavailableError, TransactionFailedError) as e:
            await self.store.release_claim_lock(gift_id, lock_token)
            logger.warning("Claim transfer failed", gift_id=gift_id, error=str(e))
            raise ClaimRetryableError(
                gift_id, "Claim transfer could not be completed, please retry"
            ) from e
        except Exception:
            await self.store.release_claim_lock(gift_id, lock_token)
            raise

        return await self._complete_claim(
            gift_id, lock_token, signature, recipient_address, recipient_identity_id
        )

    async def _resolve_pending_transfer(self, gift: Gift, lock_token: str) -> Optional[str]:
        """
        Settle the transfer an earlier claim left in flight.

        Returns:
            Its signature when it landed, None when it can no longer land
        """
        signature = gift.claim_pending_sig
        try:
            state = await self.signer.check_signature(
                signature, gift.claim_pending_valid_height
            )
        except LedgerUnavailableError as e:
            await self.store.release_claim_lock(gift.id, lock_token)
            logger.warning(
                "Could not check earlier claim transfer",
                gift_id=gift.id,
                signature=signature,
                error=str(e),
            )
            raise ClaimRetryableError(
                gift.id, "Claim transfer could not be checked, please retry"
            ) from e

        if state == SignatureState.CONFIRMED:
            logger.info("Earlier claim transfer landed", gift_id=gift.id, signature=signature)
            return signature
        if state == SignatureState.PENDING:
            logger.warning("Earlier claim transfer still settling", gift_id=gift.id, signature=signature)
            raise ClaimRetryableError(
                gift.id, "Claim transfer is still settling, please retry shortly"
            )

        logger.info(
            "Earlier claim transfer did not land, starting a new one",
            gift_id=gift.id,
            signature=signature,
            state=state.value,
        )
        await self.store.update_claim_lease(
            gift.id,
            lock_token,
            claim_pending_sig=None,
            claim_pending_address=None,
            claim_pending_valid_height=None,
        )
        return None

    async def _complete_claim(
        self,
        gift_id: str,
        lock_token: str,
        signature: str,
        recipient_address: str,
        recipient_identity_id: Optional[str],
    ) -> ClaimResult:
        claimed = await self.store.complete_claim(
            gift_id,
            lock_token,
            claim_tx_sig=signature,
            recipient_wallet_address=recipient_address,
            recipient_identity_id=recipient_identity_id,
            claimed_at=datetime.utcnow(),
        )
        if claimed is None:
            logger.critical(
                "Custody transfer confirmed but claim was not recorded",
                gift_id=gift_id,
                signature=signature,
            )
            raise ClaimRecordLostError(gift_id, signature)

        logger.info("Gift claimed", gift_id=gift_id, signature=signature)
        return ClaimResult(
            gift_id=gift_id,
            signature=signature,
            recipient_wallet_address=recipient_address,
        )

    # ─── Reads and redemption ─────────────────────────────────

    async def get_public_gift(self, gift_id: str) -> PublicGiftResponse:
        gift = await self.store.get(gift_id)
        if gift is None:
            raise GiftNotFoundError(gift_id)
        return PublicGiftResponse(
            id=gift.id,
            market_ticker=gift.market_ticker,
            market_title=gift.market_title,
            side=gift.side,
            token_amount=gift.token_amount,
            cost_usdc=gift.cost_usdc,
            recipient_name=gift.recipient_name,
            gift_message=gift.gift_message,
            status=gift.status,
            created_at=gift.created_at,
            claimed_at=gift.claimed_at,
        )

    async def create_redemption_order(self, gift_id: str, user_public_key: str) -> OrderResponse:
        """Unsigned sell order for a claimed gift; the recipient signs it"""
        gift = await self.store.get(gift_id)
        if gift is None:
            raise GiftNotFoundError(gift_id)
        if gift.status != GiftStatus.CLAIMED.value:
            raise GiftNotClaimableError(
                gift.id, gift.status, "Only claimed gifts can be redeemed"
            )
        if gift.recipient_wallet_address != user_public_key:
            raise NotGiftOwnerError(gift.id)

        return await self.venue.create_redemption_order(
            outcome_mint=gift.outcome_mint,
            amount=gift.token_amount,
            user_public_key=user_public_key,
        )

    # ─── Reconciliation ───────────────────────────────────────

    async def reconcile_stale_purchase(self, gift: Gift) -> Optional[Gift]:
        """
        Resolve a pending_payment gift whose purchase task is gone.

        Checks the venue once for submitted orders; anything not filled
        becomes expired.
        """
        if gift.status != GiftStatus.PENDING_PAYMENT.value:
            return gift
        if not gift.purchase_tx_sig:
            return await self._expire(gift, "stale_purchase")

        try:
            status = await self.venue.get_order_status(gift.purchase_tx_sig)
        except VenueError as e:
            logger.warning(
                "Could not check stale purchase, will retry next sweep",
                gift_id=gift.id,
                error=str(e),
            )
            return gift

        if status.status == FillStatus.FILLED:
            token_amount = self._resolve_token_amount(gift, status.filled_output_amount)
            if token_amount is None:
                return await self._expire(gift, "fill_amount_unknown")
            claimable = await self._transition(
                gift, GiftStatus.PENDING_CLAIM, token_amount=token_amount
            )
            if claimable is not None:
                await self._notify(claimable)
            return claimable
        if status.status == FillStatus.FAILED:
            return await self._expire(gift, "fill_failed")
        return await self._expire(gift, "stale_purchase")


# Singleton instance
_orchestrator: Optional[FulfillmentOrchestrator] = None


async def get_fulfillment_orchestrator() -> FulfillmentOrchestrator:
    """Get or create the orchestrator singleton with its collaborators"""
    global _orchestrator
    if _orchestrator is None:
        from giftfuture.services.solana_client import get_solana_client

        solana_client = await get_solana_client()
        signer = SettlementSigner.from_settings(solana_client)
        _orchestrator = FulfillmentOrchestrator(
            store=GiftStore(),
            venue=DFlowClient(),
            signer=signer,
            custody=CustodyTransferExecutor(solana_client, signer),
            notifier=NotificationDispatcher(),
        )
    return _orchestrator


async def close_fulfillment_orchestrator() -> None:
    """Close the orchestrator's HTTP clients"""
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.venue.close()
        await _orchestrator.notifier.close()
        _orchestrator = None

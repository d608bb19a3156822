"""Checkout webhook endpoint"""
import secrets
from typing import Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException

from giftfuture.api.v1.deps import get_orchestrator
from giftfuture.config import get_settings
from giftfuture.schemas.checkout import PaymentConfirmedEvent, WebhookAck
from giftfuture.services.fulfillment import FulfillmentOrchestrator

router = APIRouter()
logger = structlog.get_logger()


def verify_webhook_secret(x_webhook_secret: Optional[str] = Header(None)) -> None:
    """Reject calls that do not carry the shared webhook secret"""
    expected = get_settings().webhook_secret
    if not expected:
        # No secret configured (local development)
        return
    if not x_webhook_secret or not secrets.compare_digest(x_webhook_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


@router.post("/webhook", response_model=WebhookAck, dependencies=[Depends(verify_webhook_secret)])
async def checkout_webhook(
    event: PaymentConfirmedEvent,
    background_tasks: BackgroundTasks,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """
    Record a gift for a completed checkout and start its purchase.

    Repeated deliveries of the same session return the existing gift and
    never start a second purchase.
    """
    if not event.is_paid:
        logger.info(
            "Ignoring unpaid checkout event",
            session_id=event.session_id,
            payment_status=event.payment_status,
        )
        return WebhookAck()

    gift, created = await orchestrator.accept_payment(event)
    if created:
        background_tasks.add_task(orchestrator.purchase, gift.id)

    return WebhookAck(gift_id=gift.id, duplicate=not created)

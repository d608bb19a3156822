"""Claim-link notifications through the email service"""
from decimal import Decimal
from typing import Optional

import httpx
import structlog

from giftfuture.config import get_settings
from giftfuture.models.gift import Gift
from giftfuture.schemas.gift import NotificationPayload

logger = structlog.get_logger()


def sender_display_name(gift: Gift) -> str:
    if gift.sender_email and "@" in gift.sender_email:
        return gift.sender_email.split("@")[0]
    return "A friend"


class NotificationDispatcher:
    """
    Best-effort delivery of claim links.

    Failures are logged and reported as False; they never propagate into
    fulfillment.
    """

    def __init__(
        self,
        email_service_url: Optional[str] = None,
        app_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.email_service_url = email_service_url or settings.email_service_url
        self.app_url = (app_url or settings.app_url).rstrip("/")
        self.outcome_token_decimals = settings.outcome_token_decimals
        self._client = httpx.AsyncClient(
            timeout=timeout or settings.notification_timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def claim_url(self, gift_id: str) -> str:
        return f"{self.app_url}/gift/{gift_id}"

    def build_payload(self, gift: Gift) -> NotificationPayload:
        shares = Decimal(gift.token_amount) / (Decimal(10) ** self.outcome_token_decimals)
        return NotificationPayload(
            to=gift.recipient_contact,
            recipientName=gift.recipient_name,
            senderName=sender_display_name(gift),
            marketTitle=gift.market_title,
            side=gift.side,
            shares=float(shares),
            giftMessage=gift.gift_message,
            claimUrl=self.claim_url(gift.id),
        )

    async def send_claim_link(self, gift: Gift) -> bool:
        """Send the recipient their claim link. Never raises."""
        if "@" not in gift.recipient_contact:
            logger.info(
                "Recipient contact is not an email address, skipping notification",
                gift_id=gift.id,
            )
            return False

        payload = self.build_payload(gift)

        if not self.email_service_url:
            logger.info(
                "Email service not configured, skipping notification",
                gift_id=gift.id,
                claim_url=payload.claimUrl,
            )
            return False

        try:
            response = await self._client.post(
                self.email_service_url,
                json=payload.model_dump(),
            )
        except httpx.HTTPError as e:
            logger.error("Claim email send failed", gift_id=gift.id, error=str(e))
            return False

        if response.status_code >= 300:
            logger.error(
                "Email service returned an error",
                gift_id=gift.id,
                status_code=response.status_code,
                body=response.text[:500],
            )
            return False

        logger.info("Claim email sent", gift_id=gift.id)
        return True

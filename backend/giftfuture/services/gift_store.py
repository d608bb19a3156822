"""Gift record store: atomic keyed persistence for Gift rows.

Every write is a single statement committed in its own session. Conditional
writes (`update_if_status`, the claim lease helpers) put their precondition in
the WHERE clause, so a lost race shows up as "no row updated" instead of an
overwrite.
"""
import enum
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from giftfuture.models.database import async_session_factory
from giftfuture.models.gift import Gift, GiftStatus

logger = structlog.get_logger()


def _column_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value.value if isinstance(value, enum.Enum) else value
        for key, value in fields.items()
    }


class GiftStore:
    """Durable Gift storage with compare-and-set updates"""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or async_session_factory

    async def create(self, **fields: Any) -> Gift:
        """Insert a new gift. Status always starts at pending_payment."""
        fields = _column_values(fields)
        fields["status"] = GiftStatus.PENDING_PAYMENT.value
        fields.setdefault("token_amount", 0)

        gift = Gift(**fields)
        async with self.session_factory() as session:
            session.add(gift)
            await session.commit()
        return gift

    async def create_if_absent(self, idempotency_key: str, **fields: Any) -> Tuple[Gift, bool]:
        """
        Create a gift unless one already exists for `idempotency_key`.

        Returns:
            (gift, created) where created is False for duplicates
        """
        existing = await self.get_by_idempotency_key(idempotency_key)
        if existing is not None:
            return existing, False

        try:
            gift = await self.create(idempotency_key=idempotency_key, **fields)
        except IntegrityError:
            # Lost an insert race against a concurrent delivery of the same event
            existing = await self.get_by_idempotency_key(idempotency_key)
            if existing is None:
                raise
            logger.info(
                "Concurrent insert for idempotency key, using existing gift",
                gift_id=existing.id,
            )
            return existing, False
        return gift, True

    async def get(self, gift_id: str) -> Optional[Gift]:
        async with self.session_factory() as session:
            return await session.get(Gift, gift_id)

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[Gift]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Gift).where(Gift.idempotency_key == idempotency_key)
            )
            return result.scalar_one_or_none()

    async def _execute_update(self, stmt) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                stmt.execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount

    async def update(self, gift_id: str, **fields: Any) -> Optional[Gift]:
        """Unconditionally update fields. Returns None if the gift does not exist."""
        updated = await self._execute_update(
            update(Gift).where(Gift.id == gift_id).values(**_column_values(fields))
        )
        if not updated:
            return None
        return await self.get(gift_id)

    async def update_if_status(
        self,
        gift_id: str,
        expected_status: GiftStatus,
        **fields: Any,
    ) -> Optional[Gift]:
        """
        Update fields only while the gift is still in `expected_status`.

        Returns:
            The updated gift, or None when the gift is missing or its status
            changed underneath the caller
        """
        updated = await self._execute_update(
            update(Gift)
            .where(Gift.id == gift_id, Gift.status == GiftStatus(expected_status).value)
            .values(**_column_values(fields))
        )
        if not updated:
            return None
        return await self.get(gift_id)

    # ─── Claim lease ──────────────────────────────────────────

    async def acquire_claim_lock(self, gift_id: str, token: str, ttl_seconds: int) -> bool:
        """Take the claim lease if the gift is pending_claim and no live lease exists"""
        now = datetime.utcnow()
        updated = await self._execute_update(
            update(Gift)
            .where(
                Gift.id == gift_id,
                Gift.status == GiftStatus.PENDING_CLAIM.value,
                or_(
                    Gift.claim_lock_token.is_(None),
                    Gift.claim_lock_expires_at < now,
                ),
            )
            .values(
                claim_lock_token=token,
                claim_lock_expires_at=now + timedelta(seconds=ttl_seconds),
            )
        )
        return updated == 1

    async def release_claim_lock(self, gift_id: str, token: str) -> bool:
        updated = await self._execute_update(
            update(Gift)
            .where(Gift.id == gift_id, Gift.claim_lock_token == token)
            .values(claim_lock_token=None, claim_lock_expires_at=None)
        )
        return updated == 1

    async def update_claim_lease(self, gift_id: str, token: str, **fields: Any) -> Optional[Gift]:
        """Update fields only while `token` still holds the claim lease"""
        updated = await self._execute_update(
            update(Gift)
            .where(
                Gift.id == gift_id,
                Gift.status == GiftStatus.PENDING_CLAIM.value,
                Gift.claim_lock_token == token,
            )
            .values(**_column_values(fields))
        )
        if not updated:
            return None
        return await self.get(gift_id)

    async def complete_claim(self, gift_id: str, token: str, **fields: Any) -> Optional[Gift]:
        """Move pending_claim -> claimed for the lease holder, clearing the lease"""
        values = _column_values(fields)
        values.update(
            status=GiftStatus.CLAIMED.value,
            claim_lock_token=None,
            claim_lock_expires_at=None,
            claim_pending_sig=None,
            claim_pending_address=None,
            claim_pending_valid_height=None,
        )
        updated = await self._execute_update(
            update(Gift)
            .where(
                Gift.id == gift_id,
                Gift.status == GiftStatus.PENDING_CLAIM.value,
                Gift.claim_lock_token == token,
            )
            .values(**values)
        )
        if not updated:
            return None
        return await self.get(gift_id)

    # ─── Lookups ──────────────────────────────────────────────

    async def _list(self, *criteria, limit: Optional[int] = None) -> List[Gift]:
        query = select(Gift).where(*criteria).order_by(Gift.created_at.desc())
        if limit is not None:
            query = query.limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_by_recipient_contact(self, contact: str) -> List[Gift]:
        return await self._list(Gift.recipient_contact == contact)

    async def list_by_sender(self, sender_id: str) -> List[Gift]:
        return await self._list(Gift.sender_id == sender_id)

    async def list_by_recipient_identity(self, identity_id: str) -> List[Gift]:
        return await self._list(Gift.recipient_identity_id == identity_id)

    async def list_by_status(self, status: GiftStatus, limit: Optional[int] = None) -> List[Gift]:
        return await self._list(Gift.status == GiftStatus(status).value, limit=limit)

    async def list_stale_purchases(self, older_than: datetime, limit: int = 100) -> List[Gift]:
        """pending_payment gifts created before `older_than`"""
        return await self._list(
            Gift.status == GiftStatus.PENDING_PAYMENT.value,
            Gift.created_at < older_than,
            limit=limit,
        )

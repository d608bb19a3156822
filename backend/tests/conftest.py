"""Pytest configuration and fixtures for Gift the Future backend tests"""
import os

# Settings are read at import time, so point them at a test setup first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./giftfuture_test.db"
os.environ["DEBUG"] = "false"
os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["EMAIL_SERVICE_URL"] = ""

import pytest
import pytest_asyncio
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from solders.pubkey import Pubkey
from dotenv import load_dotenv

from giftfuture.api.v1.deps import get_orchestrator
from giftfuture.config import Settings
from giftfuture.main import app
from giftfuture.models.database import Base
from giftfuture.services.dflow_client import (
    ExecutionMode,
    OrderQuote,
    OrderResponse,
    OutcomeMints,
)
from giftfuture.services.fulfillment import FulfillmentOrchestrator
from giftfuture.services.gift_store import GiftStore
from giftfuture.services.signer import SignatureState

# Load environment variables (never overrides the values above)
load_dotenv()

YES_MINT = str(Pubkey.new_unique())
NO_MINT = str(Pubkey.new_unique())
USDC_MINT = str(Pubkey.new_unique())


@pytest.fixture
def test_settings() -> Settings:
    """Settings with zero wait intervals and small budgets"""
    return Settings(
        usdc_mint=USDC_MINT,
        order_attempts=3,
        order_retry_interval_seconds=0,
        fill_poll_interval_seconds=0,
        fill_poll_attempts=3,
        confirmation_timeout_seconds=1,
        confirmation_poll_interval_seconds=0.01,
        claim_submit_attempts=2,
        claim_lock_ttl_seconds=150,
    )


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Session factory bound to a fresh SQLite file per test.

    NullPool gives every session its own connection, so concurrent tasks
    contend on the database the way separate workers would.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'gifts.db'}",
        echo=False,
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory) -> GiftStore:
    return GiftStore(session_factory)


@pytest.fixture
def custody_pubkey() -> Pubkey:
    return Pubkey.new_unique()


def make_order(mode: ExecutionMode = ExecutionMode.SYNC, output_amount=10_000_000) -> OrderResponse:
    return OrderResponse(
        transaction="dW5zaWduZWQ=",
        execution_mode=mode,
        quote=OrderQuote(input_amount=5_000_000, output_amount=output_amount, price="0.5"),
    )


@pytest.fixture
def order_factory():
    return make_order


@pytest.fixture
def mock_venue():
    """Venue that resolves any market and fills synchronously"""
    venue = MagicMock()
    venue.get_outcome_mints = AsyncMock(
        return_value=OutcomeMints(yes_mint=YES_MINT, no_mint=NO_MINT)
    )
    venue.place_order = AsyncMock(return_value=make_order())
    venue.get_order_status = AsyncMock()
    venue.create_redemption_order = AsyncMock(return_value=make_order())
    venue.close = AsyncMock()
    return venue


@pytest.fixture
def mock_signer(custody_pubkey):
    signer = MagicMock()
    signer.public_key = custody_pubkey
    signer.sign_and_submit = AsyncMock(return_value="purchase-sig")
    signer.await_confirmation = AsyncMock(return_value=None)
    signer.check_signature = AsyncMock(return_value=SignatureState.EXPIRED)
    return signer


@pytest.fixture
def mock_custody():
    custody = MagicMock()
    custody.transfer = AsyncMock(return_value="claim-sig")
    return custody


@pytest.fixture
def mock_notifier():
    notifier = MagicMock()
    notifier.send_claim_link = AsyncMock(return_value=True)
    notifier.close = AsyncMock()
    return notifier


@pytest.fixture
def orchestrator(store, mock_venue, mock_signer, mock_custody, mock_notifier, test_settings):
    return FulfillmentOrchestrator(
        store=store,
        venue=mock_venue,
        signer=mock_signer,
        custody=mock_custody,
        notifier=mock_notifier,
        settings=test_settings,
    )


@pytest_asyncio.fixture(scope="function")
async def client(orchestrator) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client wired to the test orchestrator"""

    async def override_get_orchestrator():
        return orchestrator

    app.dependency_overrides[get_orchestrator] = override_get_orchestrator

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def checkout_metadata():
    """Checkout metadata as the payment provider stores it"""
    return {
        "marketTicker": "KXFEDCUT-26DEC",
        "marketTitle": "Will the Fed cut rates in December?",
        "side": "YES",
        "shares": "10",
        "pricePerShare": "0.50",
        "recipientEmail": "friend@example.com",
        "recipientName": "Sam",
        "giftMessage": "Happy birthday!",
        "senderEmail": "alex@example.com",
        "senderId": "",
    }


@pytest.fixture
def gift_fields():
    """Minimal fields for creating a gift directly in the store"""
    return {
        "market_ticker": "KXFEDCUT-26DEC",
        "market_title": "Will the Fed cut rates in December?",
        "side": "yes",
        "cost_usdc": Decimal("5.00"),
        "requested_shares": 10,
        "sender_id": "alex@example.com",
        "sender_email": "alex@example.com",
        "recipient_contact": "friend@example.com",
        "recipient_name": "Sam",
    }

"""DFlow venue client: market metadata and trade orders.

The client reports exactly what happened and never retries on its own; retry
and polling policy belongs to the fulfillment orchestrator.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
import structlog

from giftfuture.config import get_settings
from giftfuture.models.gift import GiftSide
from giftfuture.services.errors import (
    VenueError,
    VenueUnavailableError,
    OrderRejectedError,
    MarketNotFoundError,
)

logger = structlog.get_logger()

FILLED_STATUSES = {"filled", "closed"}
FAILED_STATUSES = {"failed", "expired", "cancelled", "canceled"}


class ExecutionMode(str, enum.Enum):
    SYNC = "sync"
    ASYNC = "async"


class FillStatus(str, enum.Enum):
    PENDING = "pending"
    FILLED = "filled"
    FAILED = "failed"


@dataclass
class OutcomeMints:
    """YES and NO outcome token mints of a market"""
    yes_mint: str
    no_mint: str

    def for_side(self, side: GiftSide) -> str:
        return self.yes_mint if GiftSide(side) == GiftSide.YES else self.no_mint


@dataclass
class OrderQuote:
    input_amount: int
    output_amount: Optional[int] = None
    price: Optional[str] = None


@dataclass
class OrderResponse:
    """Unsigned order transaction returned by the venue"""
    transaction: str  # base64-encoded Solana transaction
    execution_mode: ExecutionMode
    quote: OrderQuote


@dataclass
class OrderStatus:
    status: FillStatus
    filled_output_amount: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_fill_status(raw_status: Optional[str]) -> FillStatus:
    status = (raw_status or "").lower()
    if status in FILLED_STATUSES:
        return FillStatus.FILLED
    if status in FAILED_STATUSES:
        return FillStatus.FAILED
    return FillStatus.PENDING


class DFlowClient:
    """Async client for the DFlow metadata and trade APIs"""

    def __init__(
        self,
        metadata_api: Optional[str] = None,
        trade_api: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.metadata_api = (metadata_api or settings.dflow_metadata_api).rstrip("/")
        self.trade_api = (trade_api or settings.dflow_trade_api).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.dflow_api_key
        self.timeout = timeout or settings.venue_timeout_seconds

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key

        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=self.timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise VenueUnavailableError(f"DFlow request timed out: {url}") from e
        except httpx.TransportError as e:
            raise VenueUnavailableError(f"DFlow request failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise VenueUnavailableError(
                f"DFlow returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        if response.status_code == 404 and url.startswith(self.metadata_api):
            raise MarketNotFoundError(
                f"DFlow resource not found: {url}", status_code=404
            )
        if response.status_code >= 400:
            raise OrderRejectedError(
                f"DFlow rejected request ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise VenueError(f"DFlow returned malformed JSON from {url}") from e

    # ─── Metadata API ─────────────────────────────────────────

    async def get_market(self, ticker: str) -> Dict[str, Any]:
        """Get a single market by ticker"""
        data = await self._get(f"{self.metadata_api}/api/v1/market/{ticker}")
        market = data.get("market")
        if not market:
            raise MarketNotFoundError(f"Market not found: {ticker}")
        return market

    async def get_outcome_mints(self, ticker: str) -> OutcomeMints:
        """Resolve a market ticker to its YES and NO outcome mints"""
        market = await self.get_market(ticker)
        accounts = market.get("accounts") or {}
        yes_mint = accounts.get("yesMint")
        no_mint = accounts.get("noMint")
        if not yes_mint or not no_mint:
            raise MarketNotFoundError(f"Market {ticker} has no outcome mints")
        return OutcomeMints(yes_mint=yes_mint, no_mint=no_mint)

    # ─── Trade API ────────────────────────────────────────────

    async def place_order(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        user_public_key: str,
    ) -> OrderResponse:
        """
        Request a trade order.

        Args:
            input_mint: Mint paid with (USDC for gift purchases)
            output_mint: Mint received
            amount: Input amount in smallest units
            slippage_bps: Maximum slippage in basis points
            user_public_key: Wallet that signs and pays

        Returns:
            OrderResponse with the unsigned transaction and execution mode
        """
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
            "userPublicKey": user_public_key,
        }
        logger.info(
            "Requesting DFlow order",
            input_mint=input_mint,
            output_mint=output_mint,
            amount=amount,
        )
        data = await self._get(f"{self.trade_api}/order", params=params)

        transaction = data.get("transaction")
        if not transaction:
            raise VenueError("DFlow order response has no transaction")

        try:
            execution_mode = ExecutionMode(data.get("executionMode", "sync"))
        except ValueError as e:
            raise VenueError(f"Unknown execution mode: {data.get('executionMode')}") from e

        quote = data.get("quote") or {}
        return OrderResponse(
            transaction=transaction,
            execution_mode=execution_mode,
            quote=OrderQuote(
                input_amount=_as_int(quote.get("inputAmount")) or amount,
                output_amount=_as_int(quote.get("outputAmount")),
                price=quote.get("price"),
            ),
        )

    async def get_order_status(self, signature: str) -> OrderStatus:
        """Look up the fill status of an order by its transaction signature"""
        data = await self._get(
            f"{self.trade_api}/order-status", params={"signature": signature}
        )
        status = normalize_fill_status(data.get("status"))

        filled = _as_int(data.get("filledOutputAmount"))
        if filled is None:
            fills = data.get("fills") or []
            amounts = [_as_int(f.get("outAmount")) for f in fills if isinstance(f, dict)]
            amounts = [a for a in amounts if a is not None]
            if amounts:
                filled = sum(amounts)

        return OrderStatus(status=status, filled_output_amount=filled, raw=data)

    async def create_redemption_order(
        self,
        outcome_mint: str,
        amount: int,
        user_public_key: str,
        slippage_bps: Optional[int] = None,
    ) -> OrderResponse:
        """Sell outcome tokens back for USDC"""
        settings = get_settings()
        return await self.place_order(
            input_mint=outcome_mint,
            output_mint=settings.usdc_mint,
            amount=amount,
            slippage_bps=slippage_bps if slippage_bps is not None else settings.redemption_slippage_bps,
            user_public_key=user_public_key,
        )

"""Solana RPC Client wrapper for gift custody"""
from typing import Optional, Dict, Any, Tuple, Union

import httpx
import structlog
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionStatus
from spl.token.instructions import get_associated_token_address

from giftfuture.config import get_settings
from giftfuture.services.errors import (
    LedgerOutcomeUnknownError,
    LedgerSubmissionError,
    LedgerUnavailableError,
)

logger = structlog.get_logger()
settings = get_settings()

# Node error responses and transport failures on reads
READ_ERRORS = (RPCException, SolanaRpcException, httpx.HTTPError)


class SolanaClient:
    """Async Solana RPC client with the calls custody needs"""

    def __init__(self, rpc_url: Optional[str] = None):
        self.rpc_url = rpc_url or settings.solana_rpc_url
        self._client: Optional[AsyncClient] = None

    async def connect(self) -> None:
        """Establish connection to Solana RPC"""
        if self._client is None:
            self._client = AsyncClient(self.rpc_url, commitment=Confirmed)
            logger.info("Connected to Solana RPC", url=self.rpc_url)

    async def disconnect(self) -> None:
        """Close RPC connection"""
        if self._client:
            await self._client.close()
            self._client = None
            logger.info("Disconnected from Solana RPC")

    @property
    def client(self) -> AsyncClient:
        """Get the async client, raise if not connected"""
        if self._client is None:
            raise RuntimeError("Solana client not connected. Call connect() first.")
        return self._client

    async def get_account_info(
        self,
        address: Pubkey,
    ) -> Optional[Dict[str, Any]]:
        """Get account info"""
        try:
            response = await self.client.get_account_info(
                address,
                commitment=Confirmed,
                encoding="base64",
            )
        except READ_ERRORS as e:
            raise LedgerUnavailableError(f"get_account_info failed for {address}: {e}") from e
        if response.value is None:
            return None
        return {
            "lamports": response.value.lamports,
            "owner": str(response.value.owner),
            "data": response.value.data,
            "executable": response.value.executable,
            "rent_epoch": response.value.rent_epoch,
        }

    async def get_token_balance(
        self,
        token_account: Pubkey,
    ) -> Dict[str, Any]:
        """Get token account balance"""
        try:
            response = await self.client.get_token_account_balance(
                token_account,
                commitment=Confirmed,
            )
        except READ_ERRORS as e:
            raise LedgerUnavailableError(f"get_token_balance failed for {token_account}: {e}") from e
        return {
            "amount": int(response.value.amount),
            "decimals": response.value.decimals,
            "ui_amount": response.value.ui_amount,
        }

    async def get_latest_blockhash(self) -> Tuple[Hash, int]:
        """Get a fresh blockhash and its last valid block height"""
        try:
            response = await self.client.get_latest_blockhash(commitment=Confirmed)
        except READ_ERRORS as e:
            raise LedgerUnavailableError(f"get_latest_blockhash failed: {e}") from e
        return response.value.blockhash, response.value.last_valid_block_height

    async def get_block_height(self) -> int:
        """Current confirmed block height"""
        try:
            response = await self.client.get_block_height(commitment=Confirmed)
        except READ_ERRORS as e:
            raise LedgerUnavailableError(f"get_block_height failed: {e}") from e
        return response.value

    async def send_raw_transaction(self, raw: Union[bytes, bytearray]) -> str:
        """
        Submit a signed, serialized transaction.

        Raises:
            LedgerSubmissionError: the RPC node rejected the transaction
            LedgerOutcomeUnknownError: the request failed in transit, so the
                transaction may still land
        """
        try:
            response = await self.client.send_raw_transaction(
                bytes(raw),
                opts=TxOpts(skip_preflight=False, max_retries=3),
            )
        except RPCException as e:
            raise LedgerSubmissionError(f"Transaction rejected by RPC: {e}") from e
        except (SolanaRpcException, httpx.HTTPError) as e:
            raise LedgerOutcomeUnknownError(f"Transaction submission outcome unknown: {e}") from e
        return str(response.value)

    async def get_signature_status(self, signature: str) -> Optional[TransactionStatus]:
        """Get the status of a transaction signature, None if not yet seen"""
        try:
            response = await self.client.get_signature_statuses(
                [Signature.from_string(signature)],
                search_transaction_history=True,
            )
        except READ_ERRORS as e:
            raise LedgerUnavailableError(f"get_signature_statuses failed: {e}") from e
        if not response.value:
            return None
        return response.value[0]

    # ATA derivation
    def derive_associated_token_account(self, owner: Pubkey, mint: Pubkey) -> Pubkey:
        """Derive the associated token account of `owner` for `mint`"""
        return get_associated_token_address(owner, mint)


# Singleton instance
_solana_client: Optional[SolanaClient] = None


async def get_solana_client() -> SolanaClient:
    """Get or create Solana client singleton"""
    global _solana_client
    if _solana_client is None:
        _solana_client = SolanaClient()
        await _solana_client.connect()
    return _solana_client


async def close_solana_client() -> None:
    """Close Solana client singleton"""
    global _solana_client
    if _solana_client is not None:
        await _solana_client.disconnect()
        _solana_client = None

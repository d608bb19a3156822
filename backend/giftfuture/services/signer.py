"""Settlement signer: the only holder of the custody keypair"""
import asyncio
import base64
import enum
import json
import math
from typing import NamedTuple, Optional, Sequence, Union

import structlog
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.transaction import Transaction, VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus, TransactionStatus

from giftfuture.config import get_settings
from giftfuture.services.errors import (
    LedgerError,
    LedgerOutcomeUnknownError,
    LedgerUnavailableError,
    ConfirmationTimeoutError,
    TransactionFailedError,
    WaitExhaustedError,
)
from giftfuture.services.polling import await_condition
from giftfuture.services.solana_client import SolanaClient

logger = structlog.get_logger()

_CONFIRMATION_RANKS = [
    (TransactionConfirmationStatus.Processed, 0),
    (TransactionConfirmationStatus.Confirmed, 1),
    (TransactionConfirmationStatus.Finalized, 2),
]

COMMITMENT_LEVELS = {"processed": 0, "confirmed": 1, "finalized": 2}


class SignatureState(str, enum.Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"
    EXPIRED = "expired"


class SubmittedTransaction(NamedTuple):
    signature: str
    last_valid_block_height: int


def _confirmation_rank(status: Optional[TransactionConfirmationStatus]) -> int:
    for member, rank in _CONFIRMATION_RANKS:
        if status == member:
            return rank
    return -1


def _signature_state(status: TransactionStatus) -> SignatureState:
    if status.err is not None:
        return SignatureState.FAILED
    if _confirmation_rank(status.confirmation_status) >= COMMITMENT_LEVELS["confirmed"]:
        return SignatureState.CONFIRMED
    return SignatureState.PENDING


def load_keypair(secret: str) -> Keypair:
    """Load a keypair from a base64 secret key or a solana-keygen JSON array"""
    secret = secret.strip()
    if secret.startswith("["):
        return Keypair.from_bytes(bytes(json.loads(secret)))
    return Keypair.from_bytes(base64.b64decode(secret))


class SettlementSigner:
    """
    Signs and submits transactions with the service custody key.

    Submissions are serialized through an internal lock so that blockhash
    fetching, signing and sending happen in order. Callers may prepare
    instructions concurrently.
    """

    def __init__(
        self,
        solana_client: SolanaClient,
        keypair: Keypair,
        confirmation_timeout: Optional[float] = None,
        confirmation_poll_interval: Optional[float] = None,
    ):
        settings = get_settings()
        self.solana = solana_client
        self._keypair = keypair
        self._submit_lock = asyncio.Lock()
        self.confirmation_timeout = (
            confirmation_timeout
            if confirmation_timeout is not None
            else settings.confirmation_timeout_seconds
        )
        self.confirmation_poll_interval = (
            confirmation_poll_interval
            if confirmation_poll_interval is not None
            else settings.confirmation_poll_interval_seconds
        )

    @classmethod
    def from_settings(cls, solana_client: SolanaClient) -> "SettlementSigner":
        settings = get_settings()
        if not settings.server_wallet_private_key:
            raise RuntimeError("SERVER_WALLET_PRIVATE_KEY not set in environment")
        return cls(solana_client, load_keypair(settings.server_wallet_private_key))

    @property
    def public_key(self) -> Pubkey:
        return self._keypair.pubkey()

    def sign_venue_transaction(self, raw: bytes) -> bytes:
        """
        Add the custody signature to a venue-built transaction.

        Tries the versioned encoding first and falls back to legacy when the
        bytes do not parse. Signatures of other required signers are kept.
        """
        try:
            vtx = VersionedTransaction.from_bytes(raw)
        except Exception:
            try:
                tx = Transaction.from_bytes(raw)
            except Exception as e:
                raise LedgerError("Venue transaction could not be decoded") from e
            tx.partial_sign([self._keypair], tx.message.recent_blockhash)
            return bytes(tx)

        message = vtx.message
        required = list(message.account_keys[: message.header.num_required_signatures])
        if self.public_key not in required:
            raise LedgerError("Custody key is not a required signer of the venue transaction")

        signatures = list(vtx.signatures)
        index = required.index(self.public_key)
        signatures[index] = self._keypair.sign_message(to_bytes_versioned(message))
        return bytes(VersionedTransaction.populate(message, signatures))

    async def sign_and_submit(self, transaction: Union[bytes, str]) -> str:
        """
        Sign a venue-supplied transaction and submit it.

        Args:
            transaction: Serialized transaction bytes, or their base64 encoding

        Returns:
            Transaction signature
        """
        raw = base64.b64decode(transaction) if isinstance(transaction, str) else transaction
        signed = self.sign_venue_transaction(raw)

        async with self._submit_lock:
            signature = await self.solana.send_raw_transaction(signed)

        logger.info("Submitted venue transaction", signature=signature)
        return signature

    async def submit_instructions(self, instructions: Sequence[Instruction]) -> SubmittedTransaction:
        """
        Build, sign and submit a transaction paid for by the custody key.

        The signature is fixed once the transaction is signed, so it is
        attached to an outcome-unknown error together with the blockhash
        expiry height.
        """
        async with self._submit_lock:
            blockhash, last_valid_height = await self.solana.get_latest_blockhash()
            message = Message.new_with_blockhash(list(instructions), self.public_key, blockhash)
            tx = Transaction([self._keypair], message, blockhash)
            try:
                signature = await self.solana.send_raw_transaction(bytes(tx))
            except LedgerOutcomeUnknownError as e:
                e.signature = e.signature or str(tx.signatures[0])
                e.last_valid_block_height = last_valid_height
                raise

        logger.info(
            "Submitted custody transaction",
            signature=signature,
            instruction_count=len(instructions),
            last_valid_block_height=last_valid_height,
        )
        return SubmittedTransaction(signature, last_valid_height)

    async def await_confirmation(
        self,
        signature: str,
        level: str = "confirmed",
        timeout: Optional[float] = None,
    ) -> None:
        """
        Wait until `signature` reaches the commitment `level`.

        Raises:
            ConfirmationTimeoutError: not confirmed within the timeout
            TransactionFailedError: the ledger reports the transaction failed
        """
        target = COMMITMENT_LEVELS[level]
        timeout = timeout if timeout is not None else self.confirmation_timeout
        interval = self.confirmation_poll_interval
        attempts = max(1, math.ceil(timeout / interval)) if interval > 0 else 1

        async def probe() -> Optional[bool]:
            status = await self.solana.get_signature_status(signature)
            if status is None:
                return None
            if status.err is not None:
                raise TransactionFailedError(
                    f"Transaction {signature} failed: {status.err}", signature=signature
                )
            if _confirmation_rank(status.confirmation_status) >= target:
                return True
            return None

        try:
            await asyncio.wait_for(
                await_condition(
                    probe,
                    attempts=attempts,
                    interval=interval,
                    tolerate=(LedgerUnavailableError,),
                    label="ledger_confirmation",
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, WaitExhaustedError) as e:
            raise ConfirmationTimeoutError(
                f"Transaction {signature} not {level} within {timeout}s",
                signature=signature,
            ) from e

        logger.info("Transaction confirmed", signature=signature, level=level)

    async def check_signature(
        self,
        signature: str,
        last_valid_block_height: Optional[int],
    ) -> SignatureState:
        """
        One-shot status of a previously submitted transaction.

        A signature the ledger has never seen is only reported EXPIRED once
        the block height has passed its blockhash expiry, after which it can
        no longer land.

        Raises:
            LedgerUnavailableError: the RPC node could not be queried
        """
        status = await self.solana.get_signature_status(signature)
        if status is not None:
            return _signature_state(status)

        if last_valid_block_height is None:
            return SignatureState.PENDING
        height = await self.solana.get_block_height()
        if height <= last_valid_block_height:
            return SignatureState.PENDING

        # It may have landed between the two reads
        status = await self.solana.get_signature_status(signature)
        if status is None:
            return SignatureState.EXPIRED
        return _signature_state(status)

"""Unit tests for custody transfers"""
import pytest
from unittest.mock import AsyncMock, MagicMock
from solders.pubkey import Pubkey
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from giftfuture.services.custody import CustodyTransferExecutor
from giftfuture.services.errors import (
    ConfirmationTimeoutError,
    InsufficientCustodyBalanceError,
    LedgerSubmissionError,
    LedgerUnavailableError,
)
from giftfuture.services.signer import SubmittedTransaction


@pytest.fixture
def mint():
    return Pubkey.new_unique()


@pytest.fixture
def recipient():
    return Pubkey.new_unique()


@pytest.fixture
def solana(custody_pubkey, mint):
    """Ledger where the custody ATA holds 100 units and the recipient has no ATA"""
    custody_ata = get_associated_token_address(custody_pubkey, mint)

    async def account_info(address):
        return {"lamports": 1} if address == custody_ata else None

    client = MagicMock()
    client.derive_associated_token_account = MagicMock(side_effect=get_associated_token_address)
    client.get_account_info = AsyncMock(side_effect=account_info)
    client.get_token_balance = AsyncMock(return_value={"amount": 100, "decimals": 6})
    return client


@pytest.fixture
def signer(custody_pubkey):
    signer = MagicMock()
    signer.public_key = custody_pubkey
    signer.submit_instructions = AsyncMock(return_value=SubmittedTransaction("transfer-sig", 200))
    signer.await_confirmation = AsyncMock(return_value=None)
    return signer


@pytest.fixture
def executor(solana, signer):
    return CustodyTransferExecutor(solana, signer)


class TestCustodyTransfer:
    """Tests for CustodyTransferExecutor"""

    @pytest.mark.asyncio
    async def test_creates_destination_account_in_same_transaction(self, executor, signer, mint, recipient):
        """Test that a missing destination account is created in the transfer transaction"""
        signature = await executor.transfer(str(mint), str(recipient), 10)

        assert signature == "transfer-sig"
        instructions = signer.submit_instructions.await_args.args[0]
        assert len(instructions) == 2
        assert instructions[0].program_id == ASSOCIATED_TOKEN_PROGRAM_ID
        assert instructions[1].program_id == TOKEN_PROGRAM_ID
        signer.await_confirmation.assert_awaited_once_with("transfer-sig")

    @pytest.mark.asyncio
    async def test_existing_destination_account_skips_creation(self, executor, solana, signer, mint, recipient):
        """Test transfer to a wallet that already has a token account"""
        solana.get_account_info = AsyncMock(return_value={"lamports": 1})

        await executor.transfer(str(mint), str(recipient), 10)

        instructions = signer.submit_instructions.await_args.args[0]
        assert len(instructions) == 1
        assert instructions[0].program_id == TOKEN_PROGRAM_ID

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_not_submitted(self, executor, signer, mint, recipient):
        """Test that an uncovered transfer is never submitted"""
        with pytest.raises(InsufficientCustodyBalanceError) as exc_info:
            await executor.transfer(str(mint), str(recipient), 101)

        assert exc_info.value.required == 101
        assert exc_info.value.available == 100
        signer.submit_instructions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_custody_account_means_zero_balance(self, executor, solana, mint, recipient):
        """Test that a missing custody account reads as zero balance"""
        solana.get_account_info = AsyncMock(return_value=None)
        with pytest.raises(InsufficientCustodyBalanceError) as exc_info:
            await executor.transfer(str(mint), str(recipient), 1)
        assert exc_info.value.available == 0

    @pytest.mark.asyncio
    async def test_submission_errors_propagate(self, executor, signer, mint, recipient):
        """Test that submission errors reach the caller"""
        signer.submit_instructions = AsyncMock(side_effect=LedgerSubmissionError("blockhash not found"))
        with pytest.raises(LedgerSubmissionError):
            await executor.transfer(str(mint), str(recipient), 10)
        signer.await_confirmation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejects_non_positive_amount(self, executor, mint, recipient):
        """Test that zero amounts are refused"""
        with pytest.raises(ValueError):
            await executor.transfer(str(mint), str(recipient), 0)

    @pytest.mark.asyncio
    async def test_unreachable_ledger_submits_nothing(self, executor, solana, signer, mint, recipient):
        """Test that a failed balance read stops the transfer before submission"""
        solana.get_account_info = AsyncMock(side_effect=LedgerUnavailableError("timed out"))
        with pytest.raises(LedgerUnavailableError):
            await executor.transfer(str(mint), str(recipient), 10)
        signer.submit_instructions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_confirmation_timeout_carries_expiry_height(self, executor, signer, mint, recipient):
        """Test that an unconfirmed transfer reports its signature and expiry height"""
        signer.await_confirmation = AsyncMock(side_effect=ConfirmationTimeoutError("slow"))
        with pytest.raises(ConfirmationTimeoutError) as exc_info:
            await executor.transfer(str(mint), str(recipient), 10)
        assert exc_info.value.signature == "transfer-sig"
        assert exc_info.value.last_valid_block_height == 200

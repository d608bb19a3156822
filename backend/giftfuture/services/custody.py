"""Custody transfers: move outcome tokens from the service wallet to a recipient"""
import structlog
from solders.instruction import Instruction
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferParams,
    create_associated_token_account,
    transfer,
)

from giftfuture.services.errors import InsufficientCustodyBalanceError, LedgerOutcomeUnknownError
from giftfuture.services.signer import SettlementSigner
from giftfuture.services.solana_client import SolanaClient

logger = structlog.get_logger()


class CustodyTransferExecutor:
    """Transfers SPL tokens held by the custody key to arbitrary wallets"""

    def __init__(self, solana_client: SolanaClient, signer: SettlementSigner):
        self.solana = solana_client
        self.signer = signer

    async def custody_balance(self, mint: Pubkey) -> int:
        """Outcome token balance of the custody ATA for `mint`, 0 if absent"""
        custody_ata = self.solana.derive_associated_token_account(self.signer.public_key, mint)
        if await self.solana.get_account_info(custody_ata) is None:
            return 0
        balance = await self.solana.get_token_balance(custody_ata)
        return int(balance["amount"])

    async def build_transfer_instructions(
        self,
        mint: Pubkey,
        destination: Pubkey,
        amount: int,
    ) -> list[Instruction]:
        """Transfer instructions, preceded by ATA creation when the destination has none"""
        custody = self.signer.public_key
        source_ata = self.solana.derive_associated_token_account(custody, mint)
        dest_ata = self.solana.derive_associated_token_account(destination, mint)

        instructions: list[Instruction] = []
        if await self.solana.get_account_info(dest_ata) is None:
            # Service pays rent for the recipient's token account
            instructions.append(
                create_associated_token_account(payer=custody, owner=destination, mint=mint)
            )

        instructions.append(
            transfer(
                TransferParams(
                    program_id=TOKEN_PROGRAM_ID,
                    source=source_ata,
                    dest=dest_ata,
                    owner=custody,
                    amount=amount,
                )
            )
        )
        return instructions

    async def transfer(self, mint: str, to_address: str, amount: int) -> str:
        """
        Transfer `amount` smallest units of `mint` to `to_address`.

        Creation of the destination token account and the transfer share one
        transaction, so both land or neither does.

        Returns:
            Confirmed transaction signature

        Raises:
            InsufficientCustodyBalanceError: custody cannot cover `amount`
            LedgerUnavailableError: an RPC read failed before anything was submitted
            LedgerSubmissionError: RPC rejected the transaction
            LedgerOutcomeUnknownError: submission or confirmation outcome unknown;
                carries the signature and its blockhash expiry height
            TransactionFailedError: the transaction landed and failed
        """
        if amount <= 0:
            raise ValueError(f"Transfer amount must be positive, got {amount}")

        mint_pubkey = Pubkey.from_string(mint)
        destination = Pubkey.from_string(to_address)

        available = await self.custody_balance(mint_pubkey)
        if available < amount:
            raise InsufficientCustodyBalanceError(mint, amount, available)

        instructions = await self.build_transfer_instructions(mint_pubkey, destination, amount)
        signature, last_valid_height = await self.signer.submit_instructions(instructions)
        try:
            await self.signer.await_confirmation(signature)
        except LedgerOutcomeUnknownError as e:
            e.signature = e.signature or signature
            e.last_valid_block_height = last_valid_height
            raise

        logger.info(
            "Custody transfer confirmed",
            mint=mint,
            destination=to_address,
            amount=amount,
            signature=signature,
            created_destination_account=len(instructions) > 1,
        )
        return signature

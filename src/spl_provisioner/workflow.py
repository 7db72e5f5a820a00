#!/usr/bin/env python3
"""End-to-end provisioning workflow.

Drives the sequence

    INIT -> FUNDED -> MINT_CREATED -> PAYER_ACCOUNT_READY -> ISSUED
         -> RECEIVER_ACCOUNT_READY -> TRANSFERRED -> DONE

strictly in order, one RPC call in flight at a time. Any fatal error moves
the workflow to ABORTED and stops it; ledger effects already confirmed are
not compensated. The result is returned as a ProvisioningReport rather
than exiting the process, leaving exit-code mapping to the caller.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.constants import MINT_LEN

from .config import ProvisionerConfig
from .errors import InsufficientFundsError, ProvisionerError, SubmissionError, WorkflowStateError
from .funding import NATIVE_DECIMALS, FundingService
from .models import ProvisioningReport, SubmissionResult, SubmissionStatus, WorkflowState, format_amount
from .retrier import ConfirmationPoller, RateLimitedRetrier, Sleep
from .state_reader import BalanceReader, ExistenceProbe
from .submitter import TransactionSubmitter
from .utils.rpc_client import LedgerRpc
from .utils.token_instructions import (
    associated_token_address,
    create_associated_account_idempotent,
    create_mint_instructions,
    mint_to_instruction,
    transfer_instruction,
)

logger = logging.getLogger(__name__)

# Rebuild an EXPIRED mint/holder-account creation at most this many times
MAX_REBUILDS = 1

_ALREADY_EXISTS_MARKERS = ("already in use", "already exists")


def is_already_exists(error: SubmissionError) -> bool:
    """Check whether a rejection only says the account is already there.

    Nodes often put the reason only in the simulation logs, so the error
    data is searched along with the message.
    """
    text = f"{error} {error.data}".lower()
    return any(marker in text for marker in _ALREADY_EXISTS_MARKERS)


class ProvisioningWorkflow:
    """Funds the payer, creates a token, issues it and transfers part of it."""

    def __init__(
        self,
        rpc: LedgerRpc,
        payer: Keypair,
        config: ProvisionerConfig | None = None,
        receiver: Keypair | None = None,
        mint_keypair: Keypair | None = None,
        sleep: Sleep = asyncio.sleep
    ) -> None:
        """
        Initialize the workflow.

        Args:
            rpc: Ledger RPC boundary
            payer: Fee payer, mint authority and source of the transfer
            config: Provisioner configuration (defaults apply if omitted)
            receiver: Transfer recipient, generated if omitted
            mint_keypair: Keypair of the new mint, generated if omitted
            sleep: Awaitable sleep used for backoff and polling
        """
        self.config = config or ProvisionerConfig()
        self.rpc = rpc
        self.payer = payer
        self.receiver = receiver or Keypair()
        self.mint_keypair = mint_keypair or Keypair()

        poller = ConfirmationPoller(
            rpc,
            interval=self.config.retry.confirm_poll_interval,
            max_polls=self.config.retry.confirm_max_polls,
            commitment=self.config.rpc.commitment,
            sleep=sleep,
        )
        self.submitter = TransactionSubmitter(rpc, poller=poller)
        self.funding = FundingService(
            rpc,
            retrier=RateLimitedRetrier(sleep=sleep),
            poller=poller,
            max_attempts=self.config.retry.airdrop_max_attempts,
            base_delay=self.config.retry.airdrop_base_delay,
        )
        self.probe = ExistenceProbe(rpc)
        self.balances = BalanceReader(rpc)

        self.state = WorkflowState.INIT
        self.report = ProvisioningReport(
            payer=str(payer.pubkey()),
            decimals=self.config.token.decimals,
        )
        self.payer_token_account: Pubkey | None = None
        self.receiver_token_account: Pubkey | None = None

    @property
    def mint(self) -> Pubkey:
        return self.mint_keypair.pubkey()

    def _tokens(self, base_units: int) -> str:
        return format_amount(base_units, self.config.token.decimals)

    async def run(self) -> ProvisioningReport:
        """Run every step in order, stopping at the first fatal error.

        Returns:
            The report, in state DONE or ABORTED
        """
        steps: list[tuple[WorkflowState, Callable[[], Awaitable[None]]]] = [
            (WorkflowState.FUNDED, self.ensure_funded),
            (WorkflowState.MINT_CREATED, self.create_mint),
            (WorkflowState.PAYER_ACCOUNT_READY, self.prepare_payer_account),
            (WorkflowState.ISSUED, self.issue),
            (WorkflowState.RECEIVER_ACCOUNT_READY, self.prepare_receiver_account),
            (WorkflowState.TRANSFERRED, self.transfer),
            (WorkflowState.DONE, self.read_final_balances),
        ]

        logger.info(f"=== Provisioning token for payer {self.payer.pubkey()} ===")
        for target, step in steps:
            try:
                await step()
            except ProvisionerError as e:
                self._abort(e)
                return self.report
            except Exception as e:
                logger.error(f"Unexpected error in {target.value} step: {e}", exc_info=True)
                self._abort(e)
                return self.report
            self._advance(target)

        return self.report

    def _advance(self, target: WorkflowState) -> None:
        logger.debug(f"Workflow {self.state.value} -> {target.value}")
        self.state = target
        self.report.state = target

    def _abort(self, error: BaseException) -> None:
        logger.error(f"✗ Workflow aborted after {self.state.value}: {error}")
        self.state = WorkflowState.ABORTED
        self.report.state = WorkflowState.ABORTED
        self.report.error = error

    async def _submit(
        self,
        label: str,
        instructions: Sequence[Instruction],
        extra_signers: Sequence[Keypair] = (),
        max_rebuilds: int = 0
    ) -> SubmissionResult:
        """Submit once, rebuilding an EXPIRED transaction up to ``max_rebuilds`` times."""
        for rebuild in range(max_rebuilds + 1):
            result = await self.submitter.submit(self.payer, instructions, extra_signers)
            if result.status is not SubmissionStatus.EXPIRED:
                break
            if rebuild < max_rebuilds:
                logger.warning(f"⚠️ {label} expired, rebuilding with a fresh blockhash...")

        result.raise_for_status()
        self.report.signatures[label] = result.signature
        logger.info(f"   Signature: {result.signature}")
        logger.info(f"   Explorer: {self.config.rpc.explorer_url(result.signature)}")
        return result

    async def ensure_funded(self) -> None:
        """Top up the payer from the faucet when it is below the minimum."""
        payer = self.payer.pubkey()
        minimum = self.config.token.min_payer_lamports

        balance = await self.balances.native_balance(payer)
        logger.info(f"💰 Payer balance: {format_amount(balance, NATIVE_DECIMALS)} SOL")
        if balance >= minimum:
            return

        logger.warning("Balance below minimum, requesting an airdrop...")
        try:
            result = await self.funding.fund(
                payer, self.config.token.airdrop_lamports, target_balance=minimum
            )
        except ProvisionerError:
            self.report.manual_funding_address = str(payer)
            raise

        if result.signature:
            self.report.signatures["airdrop"] = result.signature

        balance = await self.balances.native_balance(payer)
        logger.info(f"💰 Balance after airdrop: {format_amount(balance, NATIVE_DECIMALS)} SOL")
        if balance < minimum:
            self.report.manual_funding_address = str(payer)
            raise InsufficientFundsError(
                "Balance still insufficient after airdrop", address=str(payer)
            )

    async def create_mint(self) -> None:
        """Allocate and initialize the mint in one transaction."""
        logger.info("📝 Creating token mint...")
        rent = await self.rpc.get_minimum_balance_for_rent_exemption(MINT_LEN)
        instructions = create_mint_instructions(
            payer=self.payer.pubkey(),
            mint=self.mint,
            rent_lamports=rent,
            decimals=self.config.token.decimals,
            mint_authority=self.payer.pubkey(),
            freeze_authority=self.payer.pubkey(),
        )
        await self._submit(
            "create_mint", instructions, extra_signers=[self.mint_keypair], max_rebuilds=MAX_REBUILDS
        )
        self.report.mint = str(self.mint)
        logger.info(f"✓ Token mint: {self.mint}")

    async def ensure_holder_account(self, owner: Pubkey) -> Pubkey:
        """Create the holder account for ``owner`` unless it exists.

        Safe to call repeatedly: an existing account is detected up front,
        and an "already exists" rejection is absorbed.

        Returns:
            The holder-account address
        """
        address = associated_token_address(owner, self.mint)
        if await self.probe.exists(address):
            logger.info(f"✓ Holder account {address} already exists")
            return address

        instruction = create_associated_account_idempotent(self.payer.pubkey(), owner, self.mint)
        try:
            await self._submit(f"create_account:{owner}", [instruction], max_rebuilds=MAX_REBUILDS)
        except SubmissionError as e:
            if not is_already_exists(e):
                raise
            logger.info(f"✓ Holder account {address} already exists ({e})")
        else:
            logger.info(f"✓ Created holder account {address}")
        return address

    async def prepare_payer_account(self) -> None:
        logger.info("📝 Preparing payer holder account...")
        self.payer_token_account = await self.ensure_holder_account(self.payer.pubkey())
        self.report.payer_token_account = str(self.payer_token_account)

        balance = await self.balances.balance(self.payer_token_account)
        logger.info(f"   Current balance: {self._tokens(balance)} tokens")

    def _payer_account(self) -> Pubkey:
        if self.payer_token_account is None:
            raise WorkflowStateError("Payer holder account has not been prepared")
        return self.payer_token_account

    def _receiver_account(self) -> Pubkey:
        if self.receiver_token_account is None:
            raise WorkflowStateError("Receiver holder account has not been prepared")
        return self.receiver_token_account

    async def issue(self) -> None:
        """Mint the configured amount into the payer's holder account.

        Skipped when the mint's supply already covers the amount, so a
        repeated call never issues twice even after part of it has been
        transferred away.
        """
        payer_account = self._payer_account()
        amount = self.config.token.mint_amount

        supply = await self.balances.supply(self.mint)
        if supply >= amount:
            logger.info(f"✓ Mint supply is already {self._tokens(supply)} tokens, skipping issuance")
        else:
            logger.info(f"📝 Minting {self._tokens(amount)} tokens...")
            instruction = mint_to_instruction(self.mint, payer_account, self.payer.pubkey(), amount)
            await self._submit("mint_to", [instruction])
            logger.info("✓ Mint succeeded")

        balance = await self.balances.balance(payer_account)
        self.report.issued_balance = balance
        self.report.payer_token_balance = balance
        logger.info(f"   Payer balance: {self._tokens(balance)} tokens")

    async def prepare_receiver_account(self) -> None:
        receiver = self.receiver.pubkey()
        self.report.receiver = str(receiver)
        logger.info(f"📝 Preparing holder account for receiver {receiver}...")

        self.receiver_token_account = await self.ensure_holder_account(receiver)
        self.report.receiver_token_account = str(self.receiver_token_account)

        balance = await self.balances.balance(self.receiver_token_account)
        self.report.receiver_token_balance = balance
        logger.info(f"   Current balance: {self._tokens(balance)} tokens")

    async def transfer(self) -> None:
        """Move the configured amount from the payer to the receiver."""
        payer_account = self._payer_account()
        receiver_account = self._receiver_account()
        amount = self.config.token.transfer_amount

        received = await self.balances.balance(receiver_account)
        if received >= amount:
            logger.info(f"✓ Receiver already holds {self._tokens(received)} tokens, skipping transfer")
            return

        logger.info(f"📝 Transferring {self._tokens(amount)} tokens...")
        instruction = transfer_instruction(
            payer_account, receiver_account, self.payer.pubkey(), amount
        )
        await self._submit("transfer", [instruction])
        logger.info("✓ Transfer succeeded")

    async def read_final_balances(self) -> None:
        payer_account = self._payer_account()
        receiver_account = self._receiver_account()

        self.report.payer_token_balance = await self.balances.balance(payer_account)
        self.report.receiver_token_balance = await self.balances.balance(receiver_account)

        logger.info("📊 Balances after transfer:")
        logger.info(f"   Payer: {self._tokens(self.report.payer_token_balance)} tokens")
        logger.info(f"   Receiver: {self._tokens(self.report.receiver_token_balance)} tokens")

#!/usr/bin/env python3
"""End-to-end tests for the provisioning workflow on the in-memory ledger."""

import logging

import pytest
from solders.keypair import Keypair

from fake_ledger import FakeLedger
from spl_provisioner.config import ProvisionerConfig, RetryConfig, RpcConfig, TokenConfig
from spl_provisioner.errors import (
    BlockhashExpiredError,
    InsufficientFundsError,
    RateLimitedError,
    RetryExhaustedError,
    RpcResponseError,
    SubmissionError,
    WorkflowStateError,
)
from spl_provisioner.models import WorkflowState
from spl_provisioner.utils.token_instructions import associated_token_address
from spl_provisioner.workflow import ProvisioningWorkflow, is_already_exists

SOL = 10**9
TOKEN = 10**9


class RecordingSleep:

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_config(**token):
    return ProvisionerConfig(
        rpc=RpcConfig(rpc_url="http://localhost:8899"),
        retry=RetryConfig(confirm_max_polls=3, confirm_poll_interval=0.0),
        token=TokenConfig(**token),
    )


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def payer():
    return Keypair()


@pytest.fixture
def receiver():
    return Keypair()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def workflow(ledger, payer, receiver, sleep):
    return ProvisioningWorkflow(ledger, payer, make_config(), receiver=receiver, sleep=sleep)


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_funded_payer_skips_airdrop(self, ledger, payer, receiver, workflow):
        """Test a payer holding 0.02 SOL provisions without touching the faucet."""
        ledger.fund(payer.pubkey(), 2 * SOL // 100)

        report = await workflow.run()

        assert report.state is WorkflowState.DONE
        assert report.succeeded
        assert ledger.airdrops == []
        assert report.issued_balance == 1000 * TOKEN
        assert report.to_dict()["issued_balance"] == 1000 * TOKEN
        assert report.payer_token_balance == 900 * TOKEN
        assert report.receiver_token_balance == 100 * TOKEN
        assert report.receiver == str(receiver.pubkey())
        assert report.receiver_token_account == str(
            associated_token_address(receiver.pubkey(), workflow.mint)
        )

        mint_decimals, mint_authority = ledger.mints[workflow.mint]
        assert mint_decimals == 9
        assert mint_authority == payer.pubkey()

    @pytest.mark.asyncio
    async def test_records_every_signature(self, ledger, payer, receiver, workflow):
        ledger.fund(payer.pubkey(), SOL)

        report = await workflow.run()

        assert set(report.signatures) == {
            "create_mint",
            f"create_account:{payer.pubkey()}",
            "mint_to",
            f"create_account:{receiver.pubkey()}",
            "transfer",
        }
        assert len(ledger.submitted) == 5

    @pytest.mark.asyncio
    async def test_empty_payer_is_funded(self, ledger, payer, workflow, sleep):
        report = await workflow.run()

        assert report.state is WorkflowState.DONE
        assert ledger.airdrops == [(payer.pubkey(), 10 * SOL)]
        assert "airdrop" in report.signatures
        assert sleep.delays.count(2.0) == 0

    @pytest.mark.asyncio
    async def test_rate_limited_faucet_then_funded(self, ledger, workflow, sleep):
        ledger.airdrop_failures = [RateLimitedError("429")]

        report = await workflow.run()

        assert report.state is WorkflowState.DONE
        assert 2.0 in sleep.delays

    @pytest.mark.asyncio
    async def test_logs_explorer_links(self, ledger, payer, workflow, caplog):
        ledger.fund(payer.pubkey(), SOL)

        with caplog.at_level(logging.INFO):
            report = await workflow.run()

        assert f"https://explorer.solana.com/tx/{report.signatures['transfer']}?cluster=custom" in caplog.text
        assert "Receiver: 100 tokens" in caplog.text


class TestFundingFailures:

    @pytest.mark.asyncio
    async def test_faucet_exhausted_aborts(self, ledger, payer, workflow, sleep):
        ledger.airdrop_failures = [RateLimitedError("429") for _ in range(3)]

        report = await workflow.run()

        assert report.state is WorkflowState.ABORTED
        assert workflow.state is WorkflowState.ABORTED
        assert isinstance(report.error, RetryExhaustedError)
        assert report.manual_funding_address == str(payer.pubkey())
        assert sleep.delays == [2.0, 4.0]
        assert ledger.submitted == []

    @pytest.mark.asyncio
    async def test_still_underfunded_after_airdrop(self, ledger, payer, receiver, sleep):
        workflow = ProvisioningWorkflow(
            ledger,
            payer,
            make_config(airdrop_lamports=1_000, min_payer_lamports=SOL // 100),
            receiver=receiver,
            sleep=sleep,
        )

        report = await workflow.run()

        assert report.state is WorkflowState.ABORTED
        assert isinstance(report.error, InsufficientFundsError)
        assert report.manual_funding_address == str(payer.pubkey())


class TestExpiry:

    @pytest.mark.asyncio
    async def test_expired_mint_creation_rebuilt_once(self, ledger, payer, workflow):
        ledger.fund(payer.pubkey(), SOL)
        ledger.stale_bindings = 1

        report = await workflow.run()

        assert report.state is WorkflowState.DONE
        assert report.mint == str(workflow.mint)

    @pytest.mark.asyncio
    async def test_expired_mint_creation_twice_aborts(self, ledger, payer, workflow):
        ledger.fund(payer.pubkey(), SOL)
        ledger.stale_bindings = 2

        report = await workflow.run()

        assert report.state is WorkflowState.ABORTED
        assert isinstance(report.error, BlockhashExpiredError)
        assert report.mint is None
        assert ledger.submitted == []

    @pytest.mark.asyncio
    async def test_dropped_mint_creation_rebuilt(self, ledger, payer, workflow):
        """Test that a creation which never lands before its horizon is rebuilt and lands."""
        ledger.fund(payer.pubkey(), SOL)
        ledger.dropped_transactions = 1

        report = await workflow.run()

        assert report.state is WorkflowState.DONE
        first, second = ledger.submitted[0], ledger.submitted[1]
        assert first.message.recent_blockhash != second.message.recent_blockhash

    @pytest.mark.asyncio
    async def test_mint_landing_at_horizon_not_rebuilt(self, ledger, payer, workflow):
        """Test that a creation which lands as its horizon passes is kept, not resubmitted."""
        ledger.fund(payer.pubkey(), SOL)
        ledger.late_landings = 1

        report = await workflow.run()

        assert report.state is WorkflowState.DONE
        assert report.mint == str(workflow.mint)
        assert len(ledger.submitted) == 5


class TestHolderAccounts:

    @pytest.mark.asyncio
    async def test_ensure_holder_account_is_idempotent(self, ledger, payer, workflow):
        ledger.fund(payer.pubkey(), SOL)
        await workflow.create_mint()
        owner = Keypair().pubkey()

        first = await workflow.ensure_holder_account(owner)
        second = await workflow.ensure_holder_account(owner)

        assert first == second
        assert await workflow.probe.exists(first)
        # Mint creation plus a single account creation
        assert len(ledger.submitted) == 2

    @pytest.mark.asyncio
    async def test_already_exists_rejection_absorbed(self, ledger, payer, workflow):
        ledger.fund(payer.pubkey(), SOL)
        await workflow.create_mint()
        ledger.send_failures.append(
            RpcResponseError("sendTransaction: Allocate: account already in use", code=-32002)
        )
        owner = Keypair().pubkey()

        address = await workflow.ensure_holder_account(owner)

        assert address == associated_token_address(owner, workflow.mint)

    @pytest.mark.asyncio
    async def test_already_exists_in_simulation_logs_absorbed(self, ledger, payer, workflow):
        """Test that the reason is found in the error data when the message is generic."""
        ledger.fund(payer.pubkey(), SOL)
        await workflow.create_mint()
        ledger.send_failures.append(
            RpcResponseError(
                "sendTransaction: Transaction simulation failed: "
                "Error processing Instruction 0: custom program error: 0x0",
                code=-32002,
                data={"logs": ["Program 11111111111111111111111111111111 invoke [1]",
                               "Allocate: account Address { address: Xyz } already in use"]},
            )
        )
        owner = Keypair().pubkey()

        address = await workflow.ensure_holder_account(owner)

        assert address == associated_token_address(owner, workflow.mint)

    @pytest.mark.asyncio
    async def test_other_rejection_propagates(self, ledger, payer, workflow):
        ledger.fund(payer.pubkey(), SOL)
        await workflow.create_mint()
        ledger.send_failures.append(
            RpcResponseError("sendTransaction: insufficient lamports", code=-32002)
        )

        with pytest.raises(SubmissionError, match="insufficient lamports"):
            await workflow.ensure_holder_account(Keypair().pubkey())

    def test_is_already_exists(self):
        assert is_already_exists(SubmissionError("Allocate: account Xyz already in use"))
        assert is_already_exists(SubmissionError("Account already exists"))
        assert not is_already_exists(SubmissionError("insufficient funds"))
        assert is_already_exists(
            SubmissionError("custom program error: 0x0", data={"logs": ["account already in use"]})
        )
        assert not is_already_exists(
            SubmissionError("custom program error: 0x1", data={"logs": ["insufficient lamports"]})
        )


class TestGuards:

    @pytest.mark.asyncio
    async def test_repeated_issue_and_transfer_are_skipped(self, ledger, payer, workflow):
        """Test that balances already at target suppress a second issuance or transfer."""
        ledger.fund(payer.pubkey(), SOL)
        await workflow.run()
        submitted = len(ledger.submitted)

        await workflow.issue()
        await workflow.transfer()

        assert len(ledger.submitted) == submitted
        assert ledger.holders[workflow.receiver_token_account].amount == 100 * TOKEN
        assert ledger.holders[workflow.payer_token_account].amount == 900 * TOKEN
        assert workflow.report.issued_balance == 900 * TOKEN

    @pytest.mark.asyncio
    async def test_issue_runs_when_supply_below_amount(self, ledger, payer, workflow):
        ledger.fund(payer.pubkey(), SOL)
        await workflow.create_mint()
        await workflow.prepare_payer_account()

        await workflow.issue()

        assert "mint_to" in workflow.report.signatures
        assert workflow.report.issued_balance == 1000 * TOKEN
        assert "getTokenSupply" in ledger.calls

    @pytest.mark.asyncio
    async def test_transfer_before_accounts_prepared(self, ledger, payer, workflow):
        ledger.fund(payer.pubkey(), SOL)

        with pytest.raises(WorkflowStateError, match="Payer holder account"):
            await workflow.transfer()
        with pytest.raises(WorkflowStateError, match="Payer holder account"):
            await workflow.issue()

        assert ledger.submitted == []

    @pytest.mark.asyncio
    async def test_final_balances_without_receiver_account(self, ledger, payer, workflow):
        ledger.fund(payer.pubkey(), SOL)
        await workflow.create_mint()
        await workflow.prepare_payer_account()

        with pytest.raises(WorkflowStateError, match="Receiver holder account"):
            await workflow.read_final_balances()

    @pytest.mark.asyncio
    async def test_rejected_issuance_aborts(self, ledger, payer, workflow):
        """Test that a failure mid-workflow stops before the receiver is touched."""
        ledger.fund(payer.pubkey(), SOL)

        class RejectMintTo:
            def __init__(self, inner):
                self.inner = inner

            async def __call__(self, raw):
                if len(ledger.submitted) == 2:
                    raise RpcResponseError("sendTransaction: invalid mint authority", code=-32002)
                return await self.inner(raw)

        ledger.send_transaction = RejectMintTo(ledger.send_transaction)

        report = await workflow.run()

        assert report.state is WorkflowState.ABORTED
        assert isinstance(report.error, SubmissionError)
        assert report.payer_token_account is not None
        assert report.receiver_token_account is None
        assert "transfer" not in report.signatures

    @pytest.mark.asyncio
    async def test_unexpected_error_aborts(self, ledger, payer, workflow):
        ledger.fund(payer.pubkey(), SOL)

        async def broken(size):
            raise RuntimeError("boom")

        ledger.get_minimum_balance_for_rent_exemption = broken

        report = await workflow.run()

        assert report.state is WorkflowState.ABORTED
        assert isinstance(report.error, RuntimeError)

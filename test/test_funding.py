#!/usr/bin/env python3
"""Tests for faucet funding with retries."""

import pytest
from solders.keypair import Keypair

from fake_ledger import FakeLedger
from spl_provisioner.errors import (
    ConfirmationTimeoutError,
    RateLimitedError,
    RetryExhaustedError,
    RpcResponseError,
)
from spl_provisioner.funding import FundingService
from spl_provisioner.retrier import ConfirmationPoller, RateLimitedRetrier

SOL = 10**9


class RecordingSleep:

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def backoff():
    return RecordingSleep()


@pytest.fixture
def funding(ledger, backoff):
    async def no_sleep(delay):
        pass

    return FundingService(
        ledger,
        retrier=RateLimitedRetrier(sleep=backoff),
        poller=ConfirmationPoller(ledger, max_polls=3, sleep=no_sleep),
        max_attempts=3,
        base_delay=1.0,
    )


class TestFundingService:

    @pytest.mark.asyncio
    async def test_fund_first_attempt(self, ledger, funding, backoff):
        address = Keypair().pubkey()

        result = await funding.fund(address, 10 * SOL)

        assert result.attempts == 1
        assert result.signature is not None
        assert ledger.lamports[address] == 10 * SOL
        assert backoff.delays == []

    @pytest.mark.asyncio
    async def test_rate_limited_then_funded(self, ledger, funding, backoff):
        """Test the 2s/4s backoff before the third, successful request."""
        ledger.airdrop_failures = [RateLimitedError("429"), RateLimitedError("429")]
        address = Keypair().pubkey()

        result = await funding.fund(address, 10 * SOL)

        assert result.attempts == 3
        assert backoff.delays == [2.0, 4.0]
        assert ledger.lamports[address] == 10 * SOL

    @pytest.mark.asyncio
    async def test_exhausted(self, ledger, funding, backoff):
        ledger.airdrop_failures = [RateLimitedError("429") for _ in range(3)]

        with pytest.raises(RetryExhaustedError) as exc_info:
            await funding.fund(Keypair().pubkey(), 10 * SOL)

        assert exc_info.value.attempts == 3
        assert backoff.delays == [2.0, 4.0]
        assert ledger.airdrops == []

    @pytest.mark.asyncio
    async def test_unconfirmed_airdrop_is_retried(self, ledger, funding):
        """Test that an airdrop that never confirms and never lands is requested again."""
        ledger.lost_airdrops = 1
        address = Keypair().pubkey()

        result = await funding.fund(address, 10 * SOL)

        assert result.attempts == 2
        assert len(ledger.airdrops) == 2
        assert ledger.lamports[address] == 10 * SOL

    @pytest.mark.asyncio
    async def test_late_airdrop_not_requested_again(self, ledger, funding):
        """Test that a retry rechecks the balance before requesting more funds."""
        ledger.late_airdrops = 1
        address = Keypair().pubkey()

        result = await funding.fund(address, 10 * SOL, target_balance=SOL // 100)

        assert result.attempts == 2
        assert result.signature is None
        assert len(ledger.airdrops) == 1
        assert ledger.lamports[address] == 10 * SOL

    @pytest.mark.asyncio
    async def test_confirmation_timeouts_exhaust(self, ledger, funding):
        ledger.lost_airdrops = 3

        with pytest.raises(RetryExhaustedError) as exc_info:
            await funding.fund(Keypair().pubkey(), 10 * SOL)

        assert isinstance(exc_info.value.last_error, ConfirmationTimeoutError)

    @pytest.mark.asyncio
    async def test_outright_rejection_is_distinguishable(self, ledger, funding):
        ledger.airdrop_failures = [RpcResponseError("Internal error", code=-32603) for _ in range(3)]

        with pytest.raises(RetryExhaustedError) as exc_info:
            await funding.fund(Keypair().pubkey(), 10 * SOL)

        assert isinstance(exc_info.value.last_error, RpcResponseError)

#!/usr/bin/env python3
"""Faucet funding ("airdrop") with rate-limit backoff.

Funding is the one operation the provider throttles, so it is the one
wrapped in RateLimitedRetrier. Each attempt requests the airdrop and
polls for its confirmation; attempts after the first re-read the balance
first so an airdrop that landed late is not requested again.
"""

import logging
from dataclasses import dataclass

from solders.pubkey import Pubkey

from .models import format_amount
from .retrier import ConfirmationPoller, RateLimitedRetrier
from .state_reader import BalanceReader
from .utils.rpc_client import LedgerRpc

logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 9


@dataclass(frozen=True, slots=True)
class FundingResult:
    """Outcome of a funding request.

    Attributes:
        signature: Airdrop signature, None if an earlier attempt had
            already landed and no new request was made
        attempts: Attempts used
    """

    signature: str | None
    attempts: int


class FundingService:
    """Requests faucet funding for an address and waits for it to confirm."""

    def __init__(
        self,
        rpc: LedgerRpc,
        retrier: RateLimitedRetrier | None = None,
        poller: ConfirmationPoller | None = None,
        max_attempts: int = 3,
        base_delay: float = 1.0
    ) -> None:
        """
        Initialize the FundingService.

        Args:
            rpc: Ledger RPC boundary
            retrier: Retry driver (defaults to the standard classifier)
            poller: Confirmation poller for the airdrop signature
            max_attempts: Attempt ceiling for the whole request+confirm cycle
            base_delay: Backoff base in seconds
        """
        self.rpc = rpc
        self.retrier = retrier or RateLimitedRetrier()
        self.poller = poller or ConfirmationPoller(rpc)
        self.balances = BalanceReader(rpc)
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    async def fund(self, address: Pubkey, lamports: int, target_balance: int | None = None) -> FundingResult:
        """
        Airdrop ``lamports`` to ``address`` with retries.

        Args:
            address: Recipient
            lamports: Amount to request
            target_balance: Balance at which a retry treats the address as
                already funded (defaults to ``lamports``)

        Returns:
            FundingResult for the successful attempt

        Raises:
            RetryExhaustedError: All attempts failed; ``last_error`` tells a
                confirmation timeout apart from an outright rejection
        """
        threshold = lamports if target_balance is None else target_balance
        attempts = 0

        async def attempt() -> FundingResult:
            nonlocal attempts
            attempts += 1
            if attempts > 1 and await self.balances.native_balance(address) >= threshold:
                logger.info(f"✓ {address} already funded by an earlier attempt")
                return FundingResult(signature=None, attempts=attempts)

            signature = await self.rpc.request_airdrop(address, lamports)
            logger.debug(f"Airdrop requested: {signature}")
            await self.poller.wait(signature)
            return FundingResult(signature=signature, attempts=attempts)

        result = await self.retrier.run(
            attempt,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            description=f"airdrop of {format_amount(lamports, NATIVE_DECIMALS)} SOL",
        )
        logger.info("✓ Airdrop succeeded")
        return result

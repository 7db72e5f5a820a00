#!/usr/bin/env python3
"""Retry and confirmation-polling drivers.

RateLimitedRetrier re-runs an async operation under one attempt ceiling,
backing off exponentially only when the provider throttles. The
ConfirmationPoller waits for an asynchronously processed signature to
reach a confirmed level, bounded by a fixed number of polls.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import (
    BlockhashExpiredError,
    ConfirmationTimeoutError,
    ProvisionerError,
    RetryExhaustedError,
    SubmissionError,
    classify_error,
)
from .models import ErrorClass, RetryState, SignatureStatus, SignatureStatusInfo
from .utils.rpc_client import LedgerRpc

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
Classifier = Callable[[BaseException], ErrorClass]
RetryHook = Callable[[RetryState, float], None]


class RateLimitedRetrier:
    """Generic retry driver with exponential backoff on rate limiting.

    All error classes share the same ``max_attempts`` ceiling:

    - RATE_LIMITED: sleep ``base_delay * 2**attempt`` then retry
      (attempt starts at 1, so the delays run 2x, 4x, 8x base_delay)
    - RETRYABLE: retry immediately
    - TERMINAL: re-raise at once, unwrapped

    Once the ceiling is hit the last error is raised wrapped in
    RetryExhaustedError.
    """

    def __init__(
        self,
        classifier: Classifier = classify_error,
        sleep: Sleep = asyncio.sleep,
        on_retry: RetryHook | None = None
    ) -> None:
        """
        Initialize the retrier.

        Args:
            classifier: Maps an exception to an ErrorClass
            sleep: Awaitable sleep, injectable for tests
            on_retry: Optional hook called with the retry state and the
                delay before each further attempt
        """
        self.classifier = classifier
        self._sleep = sleep
        self.on_retry = on_retry

    @staticmethod
    def backoff_delay(attempt: int, base_delay: float) -> float:
        """Delay after the given (1-based) rate-limited attempt."""
        return base_delay * (2 ** attempt)

    async def run(
        self,
        op: Callable[[], Awaitable[T]],
        max_attempts: int = 3,
        base_delay: float = 1.0,
        description: str = "operation"
    ) -> T:
        """Run ``op`` until it succeeds, fails terminally, or attempts run out.

        Args:
            op: Zero-argument coroutine function to attempt
            max_attempts: Attempt ceiling shared by all error classes
            base_delay: Backoff base in seconds
            description: Label used in log lines

        Returns:
            The value returned by the first successful attempt

        Raises:
            RetryExhaustedError: After ``max_attempts`` retryable failures
            Exception: The first TERMINAL error, as raised by ``op``
        """
        state = RetryState()
        while state.attempt < max_attempts:
            state.attempt += 1
            logger.info(f"🚀 Attempting {description} ({state.attempt}/{max_attempts})...")
            try:
                return await op()
            except Exception as e:
                error_class = self.classifier(e)
                state.record(e, error_class)

                if error_class is ErrorClass.TERMINAL:
                    logger.error(f"✗ {description} failed with a non-retryable error: {e}")
                    raise

                if state.attempt >= max_attempts:
                    logger.error(f"✗ Reached max attempts for {description}")
                    raise RetryExhaustedError(e, state.attempt) from e

                delay = 0.0
                if error_class is ErrorClass.RATE_LIMITED:
                    delay = self.backoff_delay(state.attempt, base_delay)
                    logger.warning(f"⚠️ Rate limited, waiting {delay:g} seconds before retrying...")
                else:
                    logger.warning(f"🔄 {description} failed: {e}, retrying...")

                if self.on_retry is not None:
                    self.on_retry(state, delay)
                if delay > 0:
                    await self._sleep(delay)

        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")


class ConfirmationPoller:
    """Polls a signature's status on a fixed interval, up to a poll bound.

    Distinguishes three outcomes callers must tell apart:
    confirmed (returned), rejected (SubmissionError) and never confirmed in
    time (ConfirmationTimeoutError, or BlockhashExpiredError when an expiry
    check is supplied and reports the lifetime has passed).
    """

    def __init__(
        self,
        rpc: LedgerRpc,
        interval: float = 1.0,
        max_polls: int = 30,
        commitment: str = "confirmed",
        sleep: Sleep = asyncio.sleep
    ) -> None:
        if max_polls < 1:
            raise ValueError(f"max_polls must be >= 1, got {max_polls}")
        self.rpc = rpc
        self.interval = interval
        self.max_polls = max_polls
        self.commitment = commitment
        self._sleep = sleep

    def _reached(self, status: SignatureStatus) -> bool:
        if self.commitment == "finalized":
            return status is SignatureStatus.FINALIZED
        if self.commitment == "processed":
            return status is not SignatureStatus.UNKNOWN
        return status.is_confirmed

    async def wait(
        self,
        signature: str,
        expired: Callable[[], Awaitable[bool]] | None = None
    ) -> SignatureStatusInfo:
        """Wait for ``signature`` to reach the configured commitment.

        Status lookups that fail are logged and polled again.

        Args:
            signature: Signature to watch
            expired: Optional check run after each poll that has not seen
                the signature; when it returns True the status is looked up
                once more and the wait ends with BlockhashExpiredError only
                if the signature is still unknown

        Returns:
            The confirmed status

        Raises:
            SubmissionError: The ledger reports the transaction failed
            BlockhashExpiredError: ``expired`` reported the lifetime passed
            ConfirmationTimeoutError: The poll bound was reached
        """
        landed = False
        for poll in range(1, self.max_polls + 1):
            await self._sleep(self.interval)
            info = await self._lookup(signature, poll)
            if info is not None and info.status is not SignatureStatus.UNKNOWN:
                landed = True
                if self._settled(signature, info):
                    logger.debug(f"{signature} reached {info.status.value} after {poll} polls")
                    return info

            if landed or expired is None or not await expired():
                continue

            # The transaction may have landed between the last poll and the
            # expiry check; only a status that is still unknown means expired.
            info = await self._lookup(signature, poll)
            if info is None or info.status is SignatureStatus.UNKNOWN:
                raise BlockhashExpiredError(
                    f"Blockhash expired before {signature} was confirmed"
                )
            landed = True
            if self._settled(signature, info):
                logger.debug(f"{signature} reached {info.status.value} at its expiry check")
                return info

        raise ConfirmationTimeoutError(
            f"{signature} not confirmed after {self.max_polls} polls", signature=signature
        )

    async def _lookup(self, signature: str, poll: int) -> SignatureStatusInfo | None:
        try:
            return await self.rpc.get_signature_status(signature)
        except ProvisionerError as e:
            logger.debug(f"Status poll {poll} for {signature} failed: {e}")
            return None

    def _settled(self, signature: str, info: SignatureStatusInfo) -> bool:
        """True once ``info`` reaches the commitment; raises if it failed."""
        if info.failed:
            raise SubmissionError(
                f"Transaction {signature} failed: {info.err}", signature=signature
            )
        return self._reached(info.status)

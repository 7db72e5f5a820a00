#!/usr/bin/env python3
"""Error taxonomy for the SPL provisioner.

Every failure the submission pipeline can surface maps to one of the
classes below. Lookups absorb their errors locally (see state_reader),
everything on the write path propagates to the workflow.
"""

from typing import TYPE_CHECKING

from .models import ErrorClass

if TYPE_CHECKING:
    from .models import SubmissionResult


class ProvisionerError(Exception):
    """Base class for all provisioner errors."""


class MalformedKeyError(ProvisionerError, ValueError):
    """Raised when secret-key material cannot be parsed into a keypair."""


class TransportError(ProvisionerError):
    """Generic RPC failure (network, HTTP status, unexpected payload)."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class RateLimitedError(TransportError):
    """The provider signalled throttling (HTTP 429 / Too Many Requests)."""


class DeadlineExceededError(TransportError):
    """An RPC call did not complete within its deadline."""


class RpcResponseError(TransportError):
    """A well-formed JSON-RPC error object returned by the node."""

    def __init__(self, message: str, code: int | None = None, data: object = None) -> None:
        super().__init__(message, code=code)
        self.data = data


class BlockhashExpiredError(ProvisionerError):
    """The transaction's lifetime binding expired before confirmation."""

    def __init__(self, message: str, result: "SubmissionResult | None" = None) -> None:
        super().__init__(message)
        self.result = result


class SubmissionError(ProvisionerError):
    """The ledger rejected a transaction (bad instruction, insufficient funds, ...).

    ``data`` carries the node's error detail (simulation logs and the
    like) when the rejection came back as a JSON-RPC error object.
    """

    def __init__(self, message: str, signature: str | None = None, data: object = None) -> None:
        super().__init__(message)
        self.signature = signature
        self.data = data


class ConfirmationTimeoutError(ProvisionerError):
    """Polling ran out before a terminal status was observed.

    The transaction may still land later, callers must not assume the
    effect did not happen.
    """

    def __init__(self, message: str, signature: str | None = None) -> None:
        super().__init__(message)
        self.signature = signature


class InsufficientFundsError(ProvisionerError):
    """The payer balance is still below the required minimum."""

    def __init__(self, message: str, address: str | None = None) -> None:
        super().__init__(message)
        self.address = address


class WorkflowStateError(ProvisionerError):
    """A workflow step was run before the steps it depends on."""


class RetryExhaustedError(ProvisionerError):
    """Wraps the last error once the attempt ceiling is reached."""

    def __init__(self, last_error: BaseException, attempts: int) -> None:
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


def is_rate_limit_message(message: str) -> bool:
    """Check a provider message for the usual throttling markers."""
    lowered = message.lower()
    return "429" in lowered or "too many requests" in lowered


def classify_error(error: BaseException) -> ErrorClass:
    """Default classifier used by the RateLimitedRetrier.

    Args:
        error: Exception raised by the wrapped operation

    Returns:
        RATE_LIMITED for throttling, RETRYABLE for other transport
        failures and confirmation timeouts, TERMINAL for everything else.
    """
    match error:
        case RateLimitedError():
            return ErrorClass.RATE_LIMITED
        case TransportError() if is_rate_limit_message(str(error)):
            return ErrorClass.RATE_LIMITED
        case TransportError() | ConfirmationTimeoutError():
            return ErrorClass.RETRYABLE
        case _:
            return ErrorClass.TERMINAL

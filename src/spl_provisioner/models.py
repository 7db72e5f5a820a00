#!/usr/bin/env python3
"""Data models for the SPL provisioner.

Immutable value types passed between the RPC boundary, the submission
pipeline and the provisioning workflow. Amounts are always integers in
base units; scaling by decimals only happens in format_amount().
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import Message
from solders.pubkey import Pubkey


class ErrorClass(Enum):
    """How the retrier should treat a failed attempt."""
    RATE_LIMITED = "rate_limited"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


class SignatureStatus(Enum):
    """Confirmation level reported for a signature."""
    UNKNOWN = "unknown"
    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"

    @property
    def is_confirmed(self) -> bool:
        return self in (SignatureStatus.CONFIRMED, SignatureStatus.FINALIZED)


class SubmissionStatus(Enum):
    """Terminal status of a submitted transaction."""
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    FAILED = "failed"


class WorkflowState(Enum):
    """States of the provisioning workflow."""
    INIT = "init"
    FUNDED = "funded"
    MINT_CREATED = "mint_created"
    PAYER_ACCOUNT_READY = "payer_account_ready"
    ISSUED = "issued"
    RECEIVER_ACCOUNT_READY = "receiver_account_ready"
    TRANSFERRED = "transferred"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class LifetimeBinding:
    """A recent blockhash and the last block height it is valid for.

    Attributes:
        blockhash: Base58 blockhash the transaction is bound to
        last_valid_block_height: Height after which the ledger rejects it
    """

    blockhash: str
    last_valid_block_height: int

    def __post_init__(self) -> None:
        if not self.blockhash:
            raise ValueError("Lifetime binding requires a blockhash")
        if self.last_valid_block_height < 0:
            raise ValueError(
                f"last_valid_block_height must be non-negative, got {self.last_valid_block_height}"
            )

    def is_expired(self, block_height: int) -> bool:
        """True once the ledger height has passed the validity horizon."""
        return block_height > self.last_valid_block_height

    @property
    def recent_blockhash(self) -> Hash:
        return Hash.from_string(self.blockhash)


@dataclass(frozen=True, slots=True)
class TransactionEnvelope:
    """Fee payer, ordered instructions and lifetime binding of one transaction."""

    fee_payer: Pubkey
    instructions: tuple[Instruction, ...]
    binding: LifetimeBinding

    def __post_init__(self) -> None:
        if not self.instructions:
            raise ValueError("A transaction needs at least one instruction")
        # Accept any sequence but store a tuple
        object.__setattr__(self, "instructions", tuple(self.instructions))

    def to_message(self) -> Message:
        """Compile the envelope into a ledger message."""
        return Message.new_with_blockhash(
            list(self.instructions),
            self.fee_payer,
            self.binding.recent_blockhash,
        )

    def required_signers(self) -> list[Pubkey]:
        """Accounts that must sign, fee payer first."""
        message = self.to_message()
        count = message.header.num_required_signatures
        return list(message.account_keys[:count])


@dataclass(frozen=True, slots=True)
class SubmissionResult:
    """Outcome of TransactionSubmitter.submit().

    Attributes:
        signature: Base58 signature of the transaction (its identifier)
        status: Terminal status
        error: Boundary message for EXPIRED/FAILED outcomes
    """

    signature: str
    status: SubmissionStatus
    error: str | None = None

    @property
    def confirmed(self) -> bool:
        return self.status is SubmissionStatus.CONFIRMED

    def raise_for_status(self) -> "SubmissionResult":
        """Raise the matching error for EXPIRED/FAILED results."""
        from .errors import BlockhashExpiredError, SubmissionError

        match self.status:
            case SubmissionStatus.EXPIRED:
                raise BlockhashExpiredError(
                    self.error or f"Blockhash expired for transaction {self.signature}",
                    result=self,
                )
            case SubmissionStatus.FAILED:
                raise SubmissionError(
                    self.error or f"Transaction {self.signature} failed",
                    signature=self.signature,
                )
        return self


@dataclass(slots=True)
class RetryState:
    """Per-operation retry bookkeeping, discarded on the terminal outcome."""

    attempt: int = 0
    last_error_class: ErrorClass | None = None
    last_error: BaseException | None = None

    def record(self, error: BaseException, error_class: ErrorClass) -> None:
        self.last_error = error
        self.last_error_class = error_class


@dataclass(frozen=True, slots=True)
class AccountInfo:
    """Allocated state of an address."""

    lamports: int
    owner: str
    executable: bool = False
    data_len: int = 0


@dataclass(frozen=True, slots=True)
class TokenAmount:
    """Token balance of a holder account in base units."""

    amount: int
    decimals: int

    def __str__(self) -> str:
        return format_amount(self.amount, self.decimals)


@dataclass(frozen=True, slots=True)
class SignatureStatusInfo:
    """Status of one signature as reported by the ledger."""

    status: SignatureStatus
    err: Any = None
    slot: int | None = None

    @property
    def failed(self) -> bool:
        return self.err is not None


@dataclass(slots=True)
class ProvisioningReport:
    """Summary of one workflow run."""

    state: WorkflowState = WorkflowState.INIT
    payer: str | None = None
    mint: str | None = None
    payer_token_account: str | None = None
    receiver: str | None = None
    receiver_token_account: str | None = None
    # Payer holder balance read right after the issue step
    issued_balance: int | None = None
    payer_token_balance: int | None = None
    receiver_token_balance: int | None = None
    decimals: int = 9
    signatures: dict[str, str] = field(default_factory=dict)
    error: BaseException | None = None
    manual_funding_address: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is WorkflowState.DONE

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "state": self.state.value,
            "payer": self.payer,
            "mint": self.mint,
            "payer_token_account": self.payer_token_account,
            "receiver": self.receiver,
            "receiver_token_account": self.receiver_token_account,
            "issued_balance": self.issued_balance,
            "payer_token_balance": self.payer_token_balance,
            "receiver_token_balance": self.receiver_token_balance,
            "decimals": self.decimals,
            "signatures": dict(self.signatures),
            "error": str(self.error) if self.error else None,
            "manual_funding_address": self.manual_funding_address,
        }


def format_amount(base_units: int, decimals: int) -> str:
    """Render a base-unit amount scaled by its decimals for display.

    >>> format_amount(1_500_000_000, 9)
    '1.5'
    """
    if decimals < 0:
        raise ValueError(f"decimals must be non-negative, got {decimals}")
    scaled = Decimal(base_units).scaleb(-decimals)
    text = format(scaled, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text

#!/usr/bin/env python3
"""Transaction submission and confirmation.

This module builds a lifetime-bound envelope from a payer and a list of
instructions, signs it, submits it and waits for confirmation up to the
binding's validity horizon. It never retries; whether an EXPIRED
transaction is rebuilt is the caller's decision.
"""

import logging
from collections.abc import Sequence

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from .errors import BlockhashExpiredError, RpcResponseError, SubmissionError
from .lifetime import TransactionLifetimeBinder
from .models import LifetimeBinding, SubmissionResult, SubmissionStatus, TransactionEnvelope
from .retrier import ConfirmationPoller
from .utils.rpc_client import LedgerRpc

logger = logging.getLogger(__name__)

_EXPIRY_MARKERS = ("blockhash not found", "blockhashnotfound", "block height exceeded")


def is_blockhash_expired(error: RpcResponseError) -> bool:
    """Check whether a node rejection means the lifetime binding is stale."""
    text = f"{error} {error.data}".lower()
    return any(marker in text for marker in _EXPIRY_MARKERS)


class TransactionSubmitter:
    """Composes, signs, submits and confirms transactions."""

    def __init__(
        self,
        rpc: LedgerRpc,
        poller: ConfirmationPoller | None = None,
        binder: TransactionLifetimeBinder | None = None
    ) -> None:
        """
        Initialize the TransactionSubmitter.

        Args:
            rpc: Ledger RPC boundary
            poller: Confirmation poller (defaults to 1s interval, 30 polls)
            binder: Lifetime binder (defaults to one over ``rpc``)
        """
        self.rpc = rpc
        self.poller = poller or ConfirmationPoller(rpc)
        self.binder = binder or TransactionLifetimeBinder(rpc)

    def sign(
        self,
        envelope: TransactionEnvelope,
        payer: Keypair,
        extra_signers: Sequence[Keypair] = ()
    ) -> Transaction:
        """Sign an envelope with every signer its instructions require.

        Signers are matched against the message's required-signer accounts,
        fee payer first. Extra keypairs nobody asked for are ignored.

        Raises:
            SubmissionError: If a required signer was not supplied
        """
        if payer.pubkey() != envelope.fee_payer:
            raise SubmissionError(
                f"Payer {payer.pubkey()} does not match fee payer {envelope.fee_payer}"
            )

        available: dict[Pubkey, Keypair] = {payer.pubkey(): payer}
        for signer in extra_signers:
            available.setdefault(signer.pubkey(), signer)

        required = envelope.required_signers()
        if missing := [str(key) for key in required if key not in available]:
            raise SubmissionError(f"Missing required signers: {', '.join(missing)}")

        message = envelope.to_message()
        return Transaction([available[key] for key in required], message, envelope.binding.recent_blockhash)

    async def submit(
        self,
        payer: Keypair,
        instructions: Sequence[Instruction],
        extra_signers: Sequence[Keypair] = ()
    ) -> SubmissionResult:
        """
        Submit instructions as one atomic transaction and wait for confirmation.

        Args:
            payer: Fee payer, always a required signer
            instructions: Ordered instructions, applied all-or-nothing
            extra_signers: Additional keypairs the instructions require

        Returns:
            SubmissionResult with status CONFIRMED, EXPIRED (lifetime passed
            before confirmation) or FAILED (landed with an error)

        Raises:
            SubmissionError: The node rejected the transaction outright
            ConfirmationTimeoutError: No terminal status within the poll bound
            TransportError: The submission itself could not be delivered
        """
        binding = await self.binder.current_binding()
        envelope = TransactionEnvelope(
            fee_payer=payer.pubkey(),
            instructions=tuple(instructions),
            binding=binding,
        )
        transaction = self.sign(envelope, payer, extra_signers)
        signature = str(transaction.signatures[0])

        if await self.binder.is_expired(binding):
            logger.warning(f"Binding {binding.blockhash} already expired, not submitting {signature}")
            return self._expired(signature, binding)

        try:
            await self.rpc.send_transaction(bytes(transaction))
        except RpcResponseError as e:
            if is_blockhash_expired(e):
                logger.warning(f"Node rejected {signature} as expired: {e}")
                return SubmissionResult(signature, SubmissionStatus.EXPIRED, str(e))
            raise SubmissionError(str(e), signature=signature, data=e.data) from e

        logger.debug(f"Submitted {signature}, waiting for confirmation...")

        async def expired() -> bool:
            return await self.binder.is_expired(binding)

        try:
            await self.poller.wait(signature, expired=expired)
        except BlockhashExpiredError:
            return self._expired(signature, binding)
        except SubmissionError as e:
            logger.error(f"✗ Transaction {signature} failed on the ledger: {e}")
            return SubmissionResult(signature, SubmissionStatus.FAILED, str(e))

        logger.debug(f"✓ Transaction {signature} confirmed")
        return SubmissionResult(signature, SubmissionStatus.CONFIRMED)

    @staticmethod
    def _expired(signature: str, binding: LifetimeBinding) -> SubmissionResult:
        return SubmissionResult(
            signature,
            SubmissionStatus.EXPIRED,
            f"Blockhash expired: transaction lifetime exceeded "
            f"(last valid block height {binding.last_valid_block_height})",
        )

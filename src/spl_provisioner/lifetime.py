#!/usr/bin/env python3
"""Transaction lifetime binding.

Every transaction is bound to a recent blockhash and the last block height
that blockhash is valid for, so the ledger rejects stale submissions
deterministically. A binding is fetched fresh for each transaction built
and never cached across transactions.
"""

import logging

from .errors import ProvisionerError
from .models import LifetimeBinding
from .utils.rpc_client import LedgerRpc

logger = logging.getLogger(__name__)


class TransactionLifetimeBinder:
    """Fetches lifetime bindings and checks them against the ledger height."""

    def __init__(self, rpc: LedgerRpc) -> None:
        self.rpc = rpc

    async def current_binding(self) -> LifetimeBinding:
        """Fetch the freshest blockhash and its validity horizon."""
        binding = await self.rpc.get_latest_blockhash()
        logger.debug(
            f"Bound to blockhash {binding.blockhash} "
            f"(valid through height {binding.last_valid_block_height})"
        )
        return binding

    async def is_expired(self, binding: LifetimeBinding) -> bool:
        """True once the ledger height has passed the binding's horizon.

        A failed height lookup reports "not expired"; the caller's own poll
        bound still limits how long it waits.
        """
        try:
            height = await self.rpc.get_block_height()
        except ProvisionerError as e:
            logger.debug(f"Block height lookup failed: {e}")
            return False
        return binding.is_expired(height)

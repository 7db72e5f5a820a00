#!/usr/bin/env python3
"""Read-side precondition checks.

ExistenceProbe and BalanceReader answer "is this account allocated?" and
"how much does it hold?" without ever raising. Both degrade to a safe
default on any lookup failure:

- exists() reports False, so the idempotent creation step reconciles.
  A transient error is therefore treated as "absent"; the creation
  instruction used downstream is a no-op when the account does exist.
- balance() and supply() report 0, so amounts are always defined for
  reporting.
"""

import logging

from solders.pubkey import Pubkey

from .errors import ProvisionerError
from .utils.rpc_client import LedgerRpc

logger = logging.getLogger(__name__)


class ExistenceProbe:
    """Checks whether an address has allocated state on the ledger."""

    def __init__(self, rpc: LedgerRpc) -> None:
        self.rpc = rpc

    async def exists(self, address: Pubkey) -> bool:
        """Return True if the address has allocated state.

        Lookup failures map to False (assume absent).
        """
        try:
            info = await self.rpc.get_account_info(address)
        except ProvisionerError as e:
            logger.warning(f"Existence check for {address} failed, assuming absent: {e}")
            return False
        return info is not None


class BalanceReader:
    """Reads native and token balances in base units."""

    def __init__(self, rpc: LedgerRpc) -> None:
        self.rpc = rpc

    async def native_balance(self, address: Pubkey) -> int:
        """Native balance in lamports, 0 when it cannot be read."""
        try:
            return await self.rpc.get_balance(address)
        except ProvisionerError as e:
            logger.warning(f"Balance lookup for {address} failed, reporting 0: {e}")
            return 0

    async def balance(self, address: Pubkey) -> int:
        """Token balance of a holder account, 0 when missing or unreadable."""
        try:
            amount = await self.rpc.get_token_account_balance(address)
        except ProvisionerError as e:
            logger.debug(f"Token balance lookup for {address} failed, reporting 0: {e}")
            return 0
        return amount.amount

    async def supply(self, mint: Pubkey) -> int:
        """Total issued for a mint, 0 when missing or unreadable."""
        try:
            amount = await self.rpc.get_token_supply(mint)
        except ProvisionerError as e:
            logger.warning(f"Supply lookup for {mint} failed, reporting 0: {e}")
            return 0
        return amount.amount

#!/usr/bin/env python3
"""Tests for the existence probe, balance reader and lifetime binder."""

import unittest
from unittest.mock import AsyncMock

import pytest
from solders.hash import Hash
from solders.pubkey import Pubkey

from spl_provisioner.errors import DeadlineExceededError, RpcResponseError, TransportError
from spl_provisioner.lifetime import TransactionLifetimeBinder
from spl_provisioner.models import AccountInfo, LifetimeBinding, TokenAmount
from spl_provisioner.state_reader import BalanceReader, ExistenceProbe


@pytest.fixture
def rpc():
    return AsyncMock()


class TestExistenceProbe:

    @pytest.mark.asyncio
    async def test_exists(self, rpc):
        rpc.get_account_info.return_value = AccountInfo(lamports=1, owner="owner")
        assert await ExistenceProbe(rpc).exists(Pubkey.new_unique())

    @pytest.mark.asyncio
    async def test_absent(self, rpc):
        rpc.get_account_info.return_value = None
        assert not await ExistenceProbe(rpc).exists(Pubkey.new_unique())

    @pytest.mark.asyncio
    async def test_lookup_failure_reports_absent(self, rpc):
        rpc.get_account_info.side_effect = DeadlineExceededError("timed out")
        assert not await ExistenceProbe(rpc).exists(Pubkey.new_unique())


class TestBalanceReader:

    @pytest.mark.asyncio
    async def test_token_balance(self, rpc):
        rpc.get_token_account_balance.return_value = TokenAmount(amount=100 * 10**9, decimals=9)
        assert await BalanceReader(rpc).balance(Pubkey.new_unique()) == 100 * 10**9

    @pytest.mark.asyncio
    async def test_missing_account_reports_zero(self, rpc):
        rpc.get_token_account_balance.side_effect = RpcResponseError("could not find account")
        assert await BalanceReader(rpc).balance(Pubkey.new_unique()) == 0

    @pytest.mark.asyncio
    async def test_supply(self, rpc):
        rpc.get_token_supply.return_value = TokenAmount(amount=1000 * 10**9, decimals=9)
        assert await BalanceReader(rpc).supply(Pubkey.new_unique()) == 1000 * 10**9

    @pytest.mark.asyncio
    async def test_supply_failure_reports_zero(self, rpc):
        rpc.get_token_supply.side_effect = RpcResponseError("Invalid param: not a Token mint")
        assert await BalanceReader(rpc).supply(Pubkey.new_unique()) == 0

    @pytest.mark.asyncio
    async def test_native_balance(self, rpc):
        rpc.get_balance.return_value = 20_000_000
        assert await BalanceReader(rpc).native_balance(Pubkey.new_unique()) == 20_000_000

    @pytest.mark.asyncio
    async def test_native_balance_failure_reports_zero(self, rpc):
        rpc.get_balance.side_effect = TransportError("reset")
        assert await BalanceReader(rpc).native_balance(Pubkey.new_unique()) == 0


class TestTransactionLifetimeBinder(unittest.IsolatedAsyncioTestCase):
    """Tests for TransactionLifetimeBinder."""

    def setUp(self):
        self.rpc = AsyncMock()
        self.binder = TransactionLifetimeBinder(self.rpc)
        self.binding = LifetimeBinding(str(Hash.new_unique()), 150)

    async def test_fresh_binding_each_call(self):
        self.rpc.get_latest_blockhash.side_effect = [
            LifetimeBinding(str(Hash.new_unique()), 150),
            LifetimeBinding(str(Hash.new_unique()), 151),
        ]

        first = await self.binder.current_binding()
        second = await self.binder.current_binding()

        assert first != second
        assert self.rpc.get_latest_blockhash.await_count == 2

    async def test_is_expired(self):
        for height, expired in [(149, False), (150, False), (151, True)]:
            with self.subTest(height=height):
                self.rpc.get_block_height.return_value = height
                assert await self.binder.is_expired(self.binding) is expired

    async def test_height_lookup_failure_is_not_expired(self):
        self.rpc.get_block_height.side_effect = TransportError("reset")

        assert not await self.binder.is_expired(self.binding)

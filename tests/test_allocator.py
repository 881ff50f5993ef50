# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select

from paygate.app.core.errors_core import DownstreamError, WalletNotActive, WalletNotFound
from paygate.app.models import MasterWallet, PaymentAddress, WalletStatus
from paygate.app.services.derivation_service import derive_address

from .conftest import TEST_XPUB


async def _set_wallet_status(session_factory, wallet_id: int, status: str) -> None:
    async with session_factory() as session:
        async with session.begin():
            wallet = await session.get(MasterWallet, wallet_id)
            wallet.status = status


async def test_concurrent_allocations_get_distinct_indices(services, eth_wallet):
    rows = await asyncio.gather(*(services.allocator.allocate(eth_wallet.id, None) for _ in range(10)))

    indices = sorted(row.derivation_index for row in rows)
    assert indices == list(range(10))
    assert len({row.address for row in rows}) == 10
    for row in rows:
        assert row.address == derive_address(TEST_XPUB, "EVM", row.derivation_index, network="ethereum")
        assert row.address_key == row.address.lower()
        assert row.derivation_path == f"m/44'/60'/0'/0/{row.derivation_index}"

    wallet = await services.wallets.get_wallet(eth_wallet.id)
    assert wallet.next_index == 10


async def test_allocation_binds_invoice(services, make_invoice, session_factory):
    invoice = await make_invoice("10")

    async with session_factory() as session:
        row = (
            await session.execute(select(PaymentAddress).where(PaymentAddress.invoice_id == invoice.id))
        ).scalar_one()
    assert row.address == invoice.deposit_address
    assert row.derivation_index == 0


async def test_inactive_wallet_does_not_consume_index(services, eth_wallet, session_factory):
    await _set_wallet_status(session_factory, eth_wallet.id, WalletStatus.INACTIVE.value)

    with pytest.raises(WalletNotActive):
        await services.allocator.allocate(eth_wallet.id, None)

    wallet = await services.wallets.get_wallet(eth_wallet.id)
    assert wallet.next_index == 0


async def test_deleted_or_missing_wallet(services, eth_wallet):
    await services.wallets.soft_delete(eth_wallet.id)

    with pytest.raises(WalletNotFound):
        await services.allocator.allocate(eth_wallet.id, None)
    with pytest.raises(WalletNotFound):
        await services.allocator.allocate(9999, None)


async def test_custody_derived_wallet_asks_kms(services, kms):
    wallet = await services.wallets.initialize_wallet("SOL", "solana")
    assert wallet.custody_derived is True
    assert wallet.extended_public_key is None

    first = await services.allocator.allocate(wallet.id, None)
    second = await services.allocator.allocate(wallet.id, None)

    assert kms.requests == [("kms-handle-SOL", 0), ("kms-handle-SOL", 1)]
    assert first.address.endswith("Addr0000")
    assert second.derivation_index == 1
    assert first.address_key == first.address


async def test_kms_failure_rolls_back_index(services, kms):
    wallet = await services.wallets.initialize_wallet("SOL", "solana")
    kms.fail_address = True

    with pytest.raises(DownstreamError):
        await services.allocator.allocate(wallet.id, None)

    kms.fail_address = False
    row = await services.allocator.allocate(wallet.id, None)
    assert row.derivation_index == 0

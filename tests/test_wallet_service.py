# -*- coding: utf-8 -*-
from __future__ import annotations

import pytest

from paygate.app.core.errors_core import (
    DownstreamError,
    HardenedDerivationRequired,
    InvalidExtendedKey,
    InvalidStateError,
    NotFoundError,
)
from paygate.app.core.utils_core import ensure_aware
from paygate.app.core.vault_core import KeyMaterialVault
from paygate.app.models import MasterWallet, WalletStatus
from paygate.app.services.wallet_service import CORRUPTED_SECRET_REASON, wallet_key, wallet_to_dict

from .conftest import TEST_XPRV, TEST_XPUB

MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"


async def test_import_wallet_encrypts_mnemonic(services, vault):
    wallet = await services.wallets.import_wallet(
        "ETH", "ethereum", extended_public_key=f"  {TEST_XPUB}\n", mnemonic=MNEMONIC
    )

    assert wallet.extended_public_key == TEST_XPUB
    assert wallet.family == "EVM"
    assert wallet.wallet_key == "ETH:ethereum:"
    assert wallet.derivation_path == "m/44'/60'/0'/0/{index}"
    assert wallet.next_index == 0
    assert wallet.status == WalletStatus.ACTIVE.value
    assert MNEMONIC not in wallet.encrypted_seed
    assert vault.decrypt_text(wallet.encrypted_seed) == MNEMONIC

    exported = wallet_to_dict(wallet)
    assert exported["has_seed"] is True
    assert "encrypted_seed" not in exported
    assert "custody_handle" not in exported


async def test_duplicate_wallet_is_refused(services, eth_wallet):
    with pytest.raises(InvalidStateError):
        await services.wallets.import_wallet("ETH", "ethereum", extended_public_key=TEST_XPUB)


async def test_deleted_wallet_frees_its_key(services, eth_wallet):
    await services.wallets.soft_delete(eth_wallet.id)

    replacement = await services.wallets.import_wallet("ETH", "ethereum", extended_public_key=TEST_XPUB)

    assert replacement.id != eth_wallet.id
    assert [w.id for w in await services.wallets.list_wallets()] == [replacement.id]
    assert len(await services.wallets.list_wallets(include_deleted=True)) == 2


async def test_import_rejects_bad_keys(services):
    with pytest.raises(InvalidExtendedKey):
        await services.wallets.import_wallet("ETH", "ethereum", extended_public_key=TEST_XPRV)
    with pytest.raises(HardenedDerivationRequired):
        await services.wallets.import_wallet("SOL", "solana", extended_public_key=TEST_XPUB)
    assert await services.wallets.list_wallets() == []


async def test_initialize_wallet_through_kms(services, kms, vault):
    wallet = await services.wallets.initialize_wallet("TRX", "tron")

    assert kms.generated == ["TRON"]
    assert wallet.family == "TRON"
    assert wallet.custody_derived is False
    assert wallet.extended_public_key == TEST_XPUB
    assert vault.decrypt_text(wallet.custody_handle) == "kms-handle-TRON"


async def test_initialize_wallet_requires_kms(services, kms):
    kms.configured = False

    with pytest.raises(DownstreamError):
        await services.wallets.initialize_wallet("ETH", "ethereum")


async def test_soft_delete_is_idempotent(services, eth_wallet):
    first = await services.wallets.soft_delete(eth_wallet.id)
    second = await services.wallets.soft_delete(eth_wallet.id)

    assert first.status == WalletStatus.DELETED.value
    assert second.status == WalletStatus.DELETED.value
    assert ensure_aware(second.deleted_at) == ensure_aware(first.deleted_at)
    with pytest.raises(NotFoundError):
        await services.wallets.soft_delete(4242)
    with pytest.raises(NotFoundError):
        await services.wallets.get_wallet(4242)


async def test_corrupted_secret_disables_only_its_wallet(services, session_factory):
    healthy = await services.wallets.import_wallet("ETH", "ethereum", extended_public_key=TEST_XPUB, mnemonic="a b c")
    broken = await services.wallets.import_wallet("BTC", "bitcoin", extended_public_key=TEST_XPUB)
    foreign = KeyMaterialVault("another-secret-key-0123456789abcdef").encrypt_text("seed")
    async with session_factory() as session:
        async with session.begin():
            row = await session.get(MasterWallet, broken.id)
            row.encrypted_seed = foreign

    assert await services.wallets.check_secrets() == {"checked": 2, "corrupted": 1}

    assert (await services.wallets.get_wallet(healthy.id)).status == WalletStatus.ACTIVE.value
    disabled = await services.wallets.get_wallet(broken.id)
    assert disabled.status == WalletStatus.INACTIVE.value
    assert disabled.status_reason == CORRUPTED_SECRET_REASON

    assert await services.wallets.check_secrets() == {"checked": 1, "corrupted": 0}


def test_wallet_key_format():
    assert wallet_key("USDT", "ethereum", "0xdAC17F958D2ee523a2206206994597C13D831ec7") == (
        "USDT:ethereum:0xdac17f958d2ee523a2206206994597c13d831ec7"
    )
    assert wallet_key("BTC", "bitcoin", None) == "BTC:bitcoin:"

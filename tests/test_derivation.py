# -*- coding: utf-8 -*-
from __future__ import annotations

import base58
import pytest
from eth_utils import is_checksum_address

from paygate.app.core.chains_core import ChainFamily, NETWORKS
from paygate.app.core.errors_core import HardenedDerivationRequired, InvalidExtendedKey, UnsupportedChainFamily
from paygate.app.services.derivation_service import (
    HARDENED_OFFSET,
    address_from_public_key,
    derivation_path,
    derive_address,
    derive_child,
    derive_public_key,
    evm_address,
    p2pkh_address,
    parse_extended_public_key,
    tron_address,
    verify_strategies,
)

from .conftest import TEST_XPRV, TEST_XPUB

# BIP32 test vector 2: master и его нехарденный потомок m/0.
TV2_MASTER = (
    "xpub661MyMwAqRbcFW31YEwpkMuc5THy2PSt5bDMsktWQcFF8syAmRUapSCGu8ED9W6oDMSgv6Zz8idoc4a6mr8BDzTJY47LJhkJ8UB7WEGuduB"
)
TV2_CHILD_0 = (
    "xpub69H7F5d8KSRgmmdJg2KhpAK8SR3DjMwAdkxj3ZuxV27CprR9LgpeyGmXUbC6wb7ERfvrnKZjXoUmmDznezpbZb7ap6r1D3tgFxHmwMkQTPH"
)

# Публичный ключ приватного ключа 1 (генератор secp256k1), сжатый.
GENERATOR = bytes.fromhex("0279BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798")


def test_parse_master_xpub():
    key = parse_extended_public_key(TEST_XPUB)

    assert key.depth == 0
    assert key.child_number == 0
    assert key.public_key.hex() == "0339a36013301597daef41fbe593a02cc513d0b55527ec2df1050e2e8ff49c85c2"
    assert key.chain_code.hex() == "873dff81c02f525623fd1fe5167eac3a55a049de3d314bb42ee227ffed37d508"


def test_ckdpub_matches_reference_child():
    derived = derive_child(parse_extended_public_key(TV2_MASTER), 0)
    expected = parse_extended_public_key(TV2_CHILD_0)

    assert derived.public_key == expected.public_key
    assert derived.chain_code == expected.chain_code
    assert derived.depth == expected.depth == 1
    assert derived.parent_fingerprint == expected.parent_fingerprint
    assert derived.child_number == 0


def test_known_addresses_for_generator_point():
    assert evm_address(GENERATOR) == "0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf"
    assert p2pkh_address(GENERATOR, 0x00) == "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"


def test_tron_address_shares_evm_account_bytes():
    tron = tron_address(GENERATOR)
    raw = base58.b58decode_check(tron)

    assert tron.startswith("T")
    assert raw[0] == 0x41
    assert "0x" + raw[1:].hex() == evm_address(GENERATOR).lower()


@pytest.mark.parametrize(
    "network, prefix",
    [("bitcoin", "1"), ("litecoin", "L"), ("dogecoin", "D"), ("dash", "X")],
)
def test_utxo_version_bytes(network, prefix):
    address = address_from_public_key(GENERATOR, ChainFamily.UTXO, network)

    assert address.startswith(prefix)
    assert base58.b58decode_check(address)[0] == NETWORKS[network].p2pkh_version


def test_derive_address_is_deterministic_per_index():
    first = derive_address(TEST_XPUB, ChainFamily.EVM, 0, network="ethereum")
    again = derive_address(TEST_XPUB, "EVM", 0, network="ethereum")
    second = derive_address(TEST_XPUB, ChainFamily.EVM, 1, network="ethereum")

    assert first == again
    assert first != second
    assert is_checksum_address(first)
    assert first == evm_address(derive_public_key(TEST_XPUB, 0))


def test_evm_address_does_not_depend_on_network():
    assert derive_address(TEST_XPUB, "EVM", 3, network="ethereum") == derive_address(
        TEST_XPUB, "EVM", 3, network="bsc"
    )


def test_public_key_path_is_external_chain():
    account = parse_extended_public_key(TEST_XPUB)
    expected = derive_child(derive_child(account, 0), 5).public_key

    assert derive_public_key(TEST_XPUB, 5) == expected


def test_hardened_family_requires_custody():
    with pytest.raises(HardenedDerivationRequired):
        derive_address(TEST_XPUB, ChainFamily.HARDENED_ACCOUNT, 0, network="solana")


def test_hardened_index_is_refused():
    with pytest.raises(HardenedDerivationRequired):
        derive_child(parse_extended_public_key(TEST_XPUB), HARDENED_OFFSET)


def test_private_extended_key_is_rejected():
    with pytest.raises(InvalidExtendedKey):
        parse_extended_public_key(TEST_XPRV)


def test_bad_checksum_is_rejected():
    broken = TEST_XPUB[:-1] + ("9" if TEST_XPUB[-1] != "9" else "8")

    with pytest.raises(InvalidExtendedKey):
        parse_extended_public_key(broken)
    with pytest.raises(InvalidExtendedKey):
        parse_extended_public_key("")


def test_unknown_family_is_rejected():
    with pytest.raises(UnsupportedChainFamily):
        derive_address(TEST_XPUB, "COSMOS", 0)


def test_utxo_strategy_needs_utxo_network():
    with pytest.raises(UnsupportedChainFamily):
        derive_address(TEST_XPUB, ChainFamily.UTXO, 0, network="ethereum")


def test_every_family_has_a_strategy():
    verify_strategies()


def test_derivation_path_template():
    assert derivation_path(NETWORKS["ethereum"].path_template, 7) == "m/44'/60'/0'/0/7"
    assert NETWORKS["tron"].derivation_root == "m/44'/195'/0'"

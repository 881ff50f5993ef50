# -*- coding: utf-8 -*-
from __future__ import annotations

import base64

import pytest

from paygate.app.core.errors_core import ConfigurationError, CorruptedSecret
from paygate.app.core.vault_core import BLOB_VERSION, MIN_SECRET_BYTES, NONCE_SIZE, TAG_SIZE, KeyMaterialVault

SECRET = "k" * MIN_SECRET_BYTES


def test_text_roundtrip_and_fresh_nonce():
    vault = KeyMaterialVault(SECRET)
    first = vault.encrypt_text("abandon ability able")
    second = vault.encrypt_text("abandon ability able")

    assert first != second
    assert vault.decrypt_text(first) == "abandon ability able"
    assert vault.decrypt_text(second) == "abandon ability able"


def test_blob_layout():
    vault = KeyMaterialVault(SECRET)
    blob = vault.encrypt(b"seed")

    assert blob[0] == BLOB_VERSION
    assert len(blob) == 1 + NONCE_SIZE + TAG_SIZE + len(b"seed")


def test_short_secret_is_rejected():
    with pytest.raises(ConfigurationError):
        KeyMaterialVault("too-short")
    with pytest.raises(ConfigurationError):
        KeyMaterialVault(None)


def test_tampered_ciphertext_is_detected():
    vault = KeyMaterialVault(SECRET)
    blob = bytearray(vault.encrypt(b"xpub-handle"))
    blob[-1] ^= 0x01

    with pytest.raises(CorruptedSecret):
        vault.decrypt(bytes(blob))


def test_tampered_tag_is_detected():
    vault = KeyMaterialVault(SECRET)
    blob = bytearray(vault.encrypt(b"xpub-handle"))
    blob[1 + NONCE_SIZE] ^= 0xFF

    with pytest.raises(CorruptedSecret):
        vault.decrypt(bytes(blob))


def test_truncated_and_unknown_version():
    vault = KeyMaterialVault(SECRET)
    blob = vault.encrypt(b"payload")

    with pytest.raises(CorruptedSecret):
        vault.decrypt(blob[:10])
    with pytest.raises(CorruptedSecret):
        vault.decrypt(b"")
    with pytest.raises(CorruptedSecret):
        vault.decrypt(bytes([0x7F]) + blob[1:])


def test_other_key_cannot_decrypt():
    token = KeyMaterialVault(SECRET).encrypt_text("mnemonic")
    other = KeyMaterialVault("z" * MIN_SECRET_BYTES)

    with pytest.raises(CorruptedSecret):
        other.decrypt_text(token)


def test_garbage_token_is_corrupted():
    vault = KeyMaterialVault(SECRET)

    with pytest.raises(CorruptedSecret):
        vault.decrypt_text("abc")
    with pytest.raises(CorruptedSecret):
        vault.decrypt_text(base64.urlsafe_b64encode(b"\x01short").decode("ascii"))


def test_optional_helpers_pass_none_through():
    vault = KeyMaterialVault(SECRET)

    assert vault.encrypt_optional(None) is None
    assert vault.decrypt_optional(None) is None
    assert vault.decrypt_optional(vault.encrypt_optional("x")) == "x"


def test_repr_does_not_leak_secret():
    assert SECRET not in repr(KeyMaterialVault(SECRET))

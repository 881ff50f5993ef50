# -*- coding: utf-8 -*-
# paygate/app/core/vault_core.py
# =============================================================================
# Назначение кода:
#   KeyMaterialVault: шифрование/расшифровка ключевого материала «в покое»
#   (сид-фразы мастер-кошельков, custody-хэндлы, секреты вебхуков мерчантов).
#
# Канон / инварианты:
#   • Секрет процесса приходит извне (VAULT_ENCRYPTION_KEY) и содержит
#     не менее 32 байт. Короче или пусто: ConfigurationError при создании.
#   • AES-256-GCM (cryptography), свежий 96-битный nonce на каждый вызов.
#   • Формат блоба самоописывающий:
#         version(1) | nonce(12) | tag(16) | ciphertext
#     Расшифровка не зависит ни от какого внешнего состояния, кроме ключа.
#   • Повреждённый, обрезанный или зашифрованный другим ключом блоб даёт
#     CorruptedSecret, а не «мусорный» plaintext.
#
# Запреты:
#   • Этот модуль НИКОГДА не логирует plaintext и ключ.
#   • Никакого ввода-вывода: только CPU и энтропия ОС.
# =============================================================================

from __future__ import annotations

import base64
import binascii
import os
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from paygate.app.core.errors_core import ConfigurationError, CorruptedSecret
from paygate.app.core.logging_core import get_logger

logger = get_logger(__name__)

MIN_SECRET_BYTES = 32
BLOB_VERSION = 0x01
NONCE_SIZE = 12
TAG_SIZE = 16
_HEADER_SIZE = 1 + NONCE_SIZE + TAG_SIZE
_HKDF_INFO = b"paygate/key-material-vault/v1"


class KeyMaterialVault:
    """
    Симметричное хранилище ключевого материала.

    Ключ шифра выводится из секрета процесса через HKDF-SHA256, поэтому
    секрет может быть любой строкой/байтами достаточной длины (например,
    base64 из менеджера секретов), а шифр всегда получает ровно 32 байта.
    """

    def __init__(self, secret: Union[str, bytes, None]) -> None:
        raw = secret.encode("utf-8") if isinstance(secret, str) else (secret or b"")
        if len(raw) < MIN_SECRET_BYTES:
            raise ConfigurationError(
                f"Vault secret must be at least {MIN_SECRET_BYTES} bytes.",
                details={"length": len(raw)},
            )
        key = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=_HKDF_INFO,
        ).derive(raw)
        self._aead = AESGCM(key)

    # -------------------------------------------------------------------------
    # Байтовый интерфейс
    # -------------------------------------------------------------------------
    def encrypt(self, plaintext: bytes) -> bytes:
        """Шифрует байты; каждый вызов даёт новый nonce и новый блоб."""
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, bytes(plaintext), None)
        # cryptography возвращает ciphertext || tag; в блобе тег идёт первым.
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return bytes([BLOB_VERSION]) + nonce + tag + ciphertext

    def decrypt(self, blob: bytes) -> bytes:
        """Расшифровывает блоб или бросает CorruptedSecret."""
        if not blob or len(blob) < _HEADER_SIZE:
            raise CorruptedSecret("Ciphertext is truncated.")
        if blob[0] != BLOB_VERSION:
            raise CorruptedSecret("Unknown ciphertext version.")
        nonce = blob[1 : 1 + NONCE_SIZE]
        tag = blob[1 + NONCE_SIZE : _HEADER_SIZE]
        ciphertext = blob[_HEADER_SIZE:]
        try:
            return self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            raise CorruptedSecret("Ciphertext failed authentication.") from None

    # -------------------------------------------------------------------------
    # Текстовые хелперы для колонок БД
    # -------------------------------------------------------------------------
    def encrypt_text(self, plaintext: str) -> str:
        """UTF-8 строка → urlsafe-base64 блоб (для String-колонок)."""
        return base64.urlsafe_b64encode(self.encrypt(plaintext.encode("utf-8"))).decode("ascii")

    def decrypt_text(self, token: str) -> str:
        """Инверсия encrypt_text; невалидный base64 тоже CorruptedSecret."""
        try:
            blob = base64.urlsafe_b64decode(token.encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError):
            raise CorruptedSecret("Ciphertext is not valid base64.") from None
        plaintext = self.decrypt(blob)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise CorruptedSecret("Decrypted secret is not UTF-8 text.") from None

    def encrypt_optional(self, plaintext: Optional[str]) -> Optional[str]:
        return None if plaintext is None else self.encrypt_text(plaintext)

    def decrypt_optional(self, token: Optional[str]) -> Optional[str]:
        return None if token is None else self.decrypt_text(token)

    def __repr__(self) -> str:
        return "<KeyMaterialVault aes-256-gcm>"


def build_vault(secret: Union[str, bytes, None]) -> KeyMaterialVault:
    """Создаёт vault на старте; ошибка конфигурации логируется без значения ключа."""
    try:
        vault = KeyMaterialVault(secret)
    except ConfigurationError:
        logger.critical("Vault secret is missing or shorter than %d bytes", MIN_SECRET_BYTES)
        raise
    logger.info("Key material vault initialized")
    return vault


__all__ = [
    "KeyMaterialVault",
    "build_vault",
    "MIN_SECRET_BYTES",
    "BLOB_VERSION",
]

# =============================================================================
# Пояснения «для чайника»:
#   • encrypt/decrypt работают с байтами, encrypt_text/decrypt_text с
#     base64-строками, удобными для хранения в колонках String/Text.
#   • Один и тот же plaintext каждый раз шифруется по-разному (новый nonce),
#     поэтому сравнивать шифротексты между собой бессмысленно.
#   • Если decrypt бросил CorruptedSecret, сервис кошельков переводит
#     конкретный кошелёк в INACTIVE; процесс при этом продолжает работать.
# =============================================================================

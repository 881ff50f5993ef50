# -*- coding: utf-8 -*-
# paygate/app/services/derivation_service.py
# =============================================================================
# Назначение кода:
#   ChainAddressDeriver: чистая функция (xpub, семейство, индекс) → адрес.
#   • BIP32 публичный вывод дочерних ключей (CKDpub) на secp256k1.
#   • Стратегии семейств: EVM (EIP-55), UTXO (P2PKH), TRON (base58check 0x41).
#   • HARDENED_ACCOUNT (Solana-подобные): из xpub вывести нельзя, поднимаем
#     HardenedDerivationRequired; такие кошельки обслуживает KMS.
#
# Канон / инварианты:
#   • Один и тот же (xpub, семейство, индекс, сеть) всегда даёт один адрес.
#   • Путь адреса: <xpub аккаунта m/44'/coin'/0'>/0/<index>, только
#     нехарденные индексы (0 ≤ index < 2^31).
#   • Токены EVM/TRON используют ключ нативной монеты: адрес не зависит от
#     контракта.
#
# ИИ-защита:
#   • Диспетчеризация по ChainFamily через match с assert_never: новое
#     семейство без стратегии ловится verify_strategies() на старте.
#   • Любая проблема с ключом (checksum, длина, версия, приватный ключ,
#     точка не на кривой) → InvalidExtendedKey, без «пустых» адресов.
#
# Запреты:
#   • Никакого I/O, БД и логирования ключей.
#   • Приватные ключи (xprv/tprv) не принимаются.
# =============================================================================

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Callable, Optional, assert_never

import base58
from Crypto.Hash import RIPEMD160
from ecdsa import SECP256k1, VerifyingKey
from ecdsa.ellipticcurve import INFINITY
from ecdsa.errors import MalformedPointError
from eth_utils import keccak, to_checksum_address

from paygate.app.core.chains_core import ChainFamily, NETWORKS, normalize_network
from paygate.app.core.errors_core import (
    ConfigurationError,
    HardenedDerivationRequired,
    InvalidExtendedKey,
    UnsupportedChainFamily,
)

HARDENED_OFFSET = 0x80000000
EXTERNAL_CHAIN = 0

# Версии публичных расширенных ключей (BIP32/SLIP-132).
PUBLIC_VERSIONS = {
    bytes.fromhex("0488B21E"): "xpub",
    bytes.fromhex("043587CF"): "tpub",
    bytes.fromhex("019DA462"): "Ltub",
    bytes.fromhex("02FACAFD"): "dgub",
}
PRIVATE_VERSIONS = {
    bytes.fromhex("0488ADE4"): "xprv",
    bytes.fromhex("04358394"): "tprv",
    bytes.fromhex("019D9CFE"): "Ltpv",
    bytes.fromhex("02FAC398"): "dgpv",
}

TRON_PREFIX = b"\x41"


@dataclass(frozen=True)
class ExtendedPublicKey:
    """Разобранный расширенный публичный ключ BIP32."""

    version: bytes
    depth: int
    parent_fingerprint: bytes
    child_number: int
    chain_code: bytes
    public_key: bytes  # сжатый, 33 байта

    def fingerprint(self) -> bytes:
        return hash160(self.public_key)[:4]

    def serialize(self) -> str:
        payload = (
            self.version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + self.public_key
        )
        return base58.b58encode_check(payload).decode("ascii")


# -----------------------------------------------------------------------------
# Хэши
# -----------------------------------------------------------------------------
def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data)): стандартный хэш адресов Bitcoin."""
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


# -----------------------------------------------------------------------------
# Разбор и вывод ключей
# -----------------------------------------------------------------------------
def _load_point(public_key: bytes) -> VerifyingKey:
    try:
        return VerifyingKey.from_string(public_key, curve=SECP256k1)
    except (MalformedPointError, ValueError) as exc:
        raise InvalidExtendedKey("Extended key point is not on secp256k1.") from exc


def parse_extended_public_key(xpub: str) -> ExtendedPublicKey:
    """
    Разбирает base58check-строку расширенного публичного ключа.

    Ошибки (все InvalidExtendedKey): неверная контрольная сумма, длина не
    78 байт, неизвестная версия, приватный ключ, точка вне кривой.
    """
    try:
        raw = base58.b58decode_check((xpub or "").strip())
    except ValueError as exc:
        raise InvalidExtendedKey("Extended key checksum/encoding is invalid.") from exc

    if len(raw) != 78:
        raise InvalidExtendedKey(
            "Extended key has invalid length.", details={"length": len(raw)}
        )

    version = raw[0:4]
    if version in PRIVATE_VERSIONS or raw[45] == 0x00:
        raise InvalidExtendedKey("Private extended keys are not accepted.")
    if version not in PUBLIC_VERSIONS:
        raise InvalidExtendedKey(
            "Unknown extended key version.", details={"version": version.hex()}
        )

    public_key = raw[45:78]
    if public_key[0] not in (0x02, 0x03):
        raise InvalidExtendedKey("Extended key does not hold a compressed public key.")
    _load_point(public_key)

    return ExtendedPublicKey(
        version=version,
        depth=raw[4],
        parent_fingerprint=raw[5:9],
        child_number=int.from_bytes(raw[9:13], "big"),
        chain_code=raw[13:45],
        public_key=public_key,
    )


def derive_child(parent: ExtendedPublicKey, index: int) -> ExtendedPublicKey:
    """CKDpub: один шаг публичного вывода по нехарденному индексу."""
    if index < 0:
        raise ValueError("derivation index must be non-negative")
    if index >= HARDENED_OFFSET:
        raise HardenedDerivationRequired(
            "Hardened child keys cannot be derived from a public key.",
            details={"index": index},
        )
    if parent.depth >= 255:
        raise InvalidExtendedKey("Extended key depth overflow.")

    digest = hmac.new(
        parent.chain_code,
        parent.public_key + index.to_bytes(4, "big"),
        hashlib.sha512,
    ).digest()
    il, ir = int.from_bytes(digest[:32], "big"), digest[32:]
    if il >= SECP256k1.order:
        # Вероятность ~2^-127; BIP32 предписывает перейти к следующему индексу.
        raise InvalidExtendedKey("Derived key is invalid for this index.", details={"index": index})

    point = SECP256k1.generator * il + _load_point(parent.public_key).pubkey.point
    if point == INFINITY:
        raise InvalidExtendedKey("Derived key is invalid for this index.", details={"index": index})
    child_key = VerifyingKey.from_public_point(point, curve=SECP256k1)

    return ExtendedPublicKey(
        version=parent.version,
        depth=parent.depth + 1,
        parent_fingerprint=parent.fingerprint(),
        child_number=index,
        chain_code=ir,
        public_key=child_key.to_string("compressed"),
    )


def derive_public_key(xpub: str, index: int) -> bytes:
    """Сжатый публичный ключ по пути <xpub>/0/<index>."""
    account = parse_extended_public_key(xpub)
    external = derive_child(account, EXTERNAL_CHAIN)
    return derive_child(external, index).public_key


# -----------------------------------------------------------------------------
# Адреса из публичного ключа
# -----------------------------------------------------------------------------
def _uncompressed(public_key: bytes) -> bytes:
    return _load_point(public_key).to_string("uncompressed")


def evm_address(public_key: bytes) -> str:
    """EIP-55 адрес: последние 20 байт keccak256(X||Y)."""
    return to_checksum_address(keccak(_uncompressed(public_key)[1:])[-20:])


def tron_address(public_key: bytes) -> str:
    """TRON: base58check(0x41 || keccak256(X||Y)[-20:])."""
    body = TRON_PREFIX + keccak(_uncompressed(public_key)[1:])[-20:]
    return base58.b58encode_check(body).decode("ascii")


def p2pkh_address(public_key: bytes, version: int) -> str:
    """Legacy P2PKH: base58check(version || hash160(сжатый ключ))."""
    return base58.b58encode_check(bytes([version]) + hash160(public_key)).decode("ascii")


def _utxo_version(network: Optional[str]) -> int:
    info = NETWORKS.get(normalize_network(network or "bitcoin"))
    if info is None or info.family is not ChainFamily.UTXO or info.p2pkh_version is None:
        raise UnsupportedChainFamily(
            "Network is not a UTXO chain with a P2PKH version.",
            details={"network": network},
        )
    return info.p2pkh_version


def _hardened_strategy(public_key: bytes, network: Optional[str]) -> str:
    raise HardenedDerivationRequired(
        "This chain requires custody-side address derivation.",
        details={"network": network},
    )


Strategy = Callable[[bytes, Optional[str]], str]


def _strategy_for(family: ChainFamily) -> Strategy:
    match family:
        case ChainFamily.EVM:
            return lambda pub, network: evm_address(pub)
        case ChainFamily.TRON:
            return lambda pub, network: tron_address(pub)
        case ChainFamily.UTXO:
            return lambda pub, network: p2pkh_address(pub, _utxo_version(network))
        case ChainFamily.HARDENED_ACCOUNT:
            return _hardened_strategy
        case _:
            assert_never(family)


def _coerce_family(family: ChainFamily | str) -> ChainFamily:
    try:
        return ChainFamily(family)
    except ValueError:
        raise UnsupportedChainFamily(
            f"No derivation strategy for chain family {family!r}.",
            details={"family": str(family)},
        ) from None


def address_from_public_key(
    public_key: bytes, family: ChainFamily | str, network: Optional[str] = None
) -> str:
    fam = _coerce_family(family)
    return _strategy_for(fam)(public_key, network)


def derive_address(
    extended_public_key: str,
    family: ChainFamily | str,
    index: int,
    *,
    network: Optional[str] = None,
) -> str:
    """
    Детерминированный адрес для (xpub, семейство, индекс).

    network нужен только UTXO-семейству (версия P2PKH: BTC/LTC/DOGE/DASH);
    для EVM/TRON адрес от сети не зависит.
    """
    fam = _coerce_family(family)
    if fam is ChainFamily.HARDENED_ACCOUNT:
        return _hardened_strategy(b"", network)
    public_key = derive_public_key(extended_public_key, index)
    return _strategy_for(fam)(public_key, network)


def derivation_path(path_template: str, index: int) -> str:
    return path_template.replace("{index}", str(int(index)))


def registered_families() -> list[ChainFamily]:
    return [family for family in ChainFamily]


def verify_strategies() -> None:
    """Проверка старта: у каждого ChainFamily есть стратегия."""
    for family in ChainFamily:
        try:
            _strategy_for(family)
        except AssertionError as exc:
            raise ConfigurationError(
                f"No derivation strategy registered for {family.value}.",
                details={"family": family.value},
            ) from exc


__all__ = [
    "ExtendedPublicKey",
    "HARDENED_OFFSET",
    "hash160",
    "parse_extended_public_key",
    "derive_child",
    "derive_public_key",
    "evm_address",
    "tron_address",
    "p2pkh_address",
    "address_from_public_key",
    "derive_address",
    "derivation_path",
    "registered_families",
    "verify_strategies",
]

# =============================================================================
# Пояснения «для чайника»:
#   • xpub: «витрина» кошелька: по нему можно получить сколько угодно
#     адресов для приёма, но нельзя потратить средства.
#   • У Solana все уровни пути харденные, поэтому по xpub адрес не получить:
#     такие кошельки помечаются custody_derived и адреса выдаёт KMS.
#   • derive_address не ходит в сеть и БД, его безопасно вызывать внутри
#     транзакции аллокатора.
# =============================================================================

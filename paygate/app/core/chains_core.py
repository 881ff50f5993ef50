# -*- coding: utf-8 -*-
# paygate/app/core/chains_core.py
# =============================================================================
# Назначение кода:
#   Реестр цепочек и активов Paygate:
#   • закрытое перечисление семейств цепочек ChainFamily;
#   • сети (network) с их семейством, BIP44 coin type, версией P2PKH и
#     идентификатором цепочки у провайдера уведомлений;
#   • активы (symbol, decimals, contract) по сетям;
#   • нормализация алиасов сетей (eth → ethereum, trx → tron, ...);
#   • допуск (tolerance) сравнения сумм на уровне наименьшей единицы актива.
#
# Канон / инварианты:
#   • Семейство цепочки определяется сетью, а не активом: USDT на bsc и
#     USDT на tron живут в разных семействах (EVM и TRON).
#   • Токены EVM/TRON не имеют собственных ключей: адрес выводится ключом
#     нативной монеты сети, у токена отличается только контракт.
#   • Допуск = 10^-decimals актива, если не переопределён в настройках
#     (ASSET_TOLERANCE_OVERRIDES="USDT=0.000001,BTC=0.00000001").
#
# Запреты:
#   • Никакого I/O и обращений к БД: реестр статический.
#   • Не добавлять сеть без семейства: ChainFamily закрыт, новые семейства
#     требуют стратегии в derivation_service.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from paygate.app.core.config_core import get_settings
from paygate.app.core.errors_core import UnsupportedAsset
from paygate.app.core.utils_core import smallest_unit

settings = get_settings()


class ChainFamily(str, Enum):
    """Семейство цепочки: определяет стратегию вывода адреса."""

    EVM = "EVM"
    UTXO = "UTXO"
    TRON = "TRON"
    HARDENED_ACCOUNT = "HARDENED_ACCOUNT"


@dataclass(frozen=True)
class NetworkInfo:
    """Описание сети (цепочки)."""

    network: str
    family: ChainFamily
    native_symbol: str
    coin_type: int
    provider_chain: str
    p2pkh_version: Optional[int] = None
    testnet: bool = False

    @property
    def derivation_root(self) -> str:
        """BIP44-ветка аккаунта, под которой лежит xpub кошелька."""
        return f"m/44'/{self.coin_type}'/0'"

    @property
    def path_template(self) -> str:
        """Шаблон пути адреса; {index} подставляется аллокатором."""
        return f"{self.derivation_root}/0/{{index}}"


@dataclass(frozen=True)
class AssetInfo:
    """Актив в конкретной сети."""

    symbol: str
    network: str
    decimals: int
    contract: Optional[str] = None

    @property
    def is_native(self) -> bool:
        return self.contract is None


# -----------------------------------------------------------------------------
# Сети
# -----------------------------------------------------------------------------
NETWORKS: Dict[str, NetworkInfo] = {
    "ethereum": NetworkInfo("ethereum", ChainFamily.EVM, "ETH", 60, "ETH"),
    "bsc": NetworkInfo("bsc", ChainFamily.EVM, "BNB", 60, "BSC"),
    "polygon": NetworkInfo("polygon", ChainFamily.EVM, "MATIC", 60, "MATIC"),
    "arbitrum": NetworkInfo("arbitrum", ChainFamily.EVM, "ETH", 60, "ARBITRUM"),
    "base": NetworkInfo("base", ChainFamily.EVM, "ETH", 60, "BASE"),
    "tron": NetworkInfo("tron", ChainFamily.TRON, "TRX", 195, "TRON"),
    "bitcoin": NetworkInfo("bitcoin", ChainFamily.UTXO, "BTC", 0, "BTC", p2pkh_version=0x00),
    "bitcoin-testnet": NetworkInfo(
        "bitcoin-testnet", ChainFamily.UTXO, "BTC", 1, "BTC", p2pkh_version=0x6F, testnet=True
    ),
    "litecoin": NetworkInfo("litecoin", ChainFamily.UTXO, "LTC", 2, "LTC", p2pkh_version=0x30),
    "dogecoin": NetworkInfo("dogecoin", ChainFamily.UTXO, "DOGE", 3, "DOGE", p2pkh_version=0x1E),
    "dash": NetworkInfo("dash", ChainFamily.UTXO, "DASH", 5, "DASH", p2pkh_version=0x4C),
    "solana": NetworkInfo("solana", ChainFamily.HARDENED_ACCOUNT, "SOL", 501, "SOL"),
    "sui": NetworkInfo("sui", ChainFamily.HARDENED_ACCOUNT, "SUI", 784, "SUI"),
}

NETWORK_ALIASES: Dict[str, str] = {
    "eth": "ethereum",
    "erc20": "ethereum",
    "bnb_smart_chain": "bsc",
    "binance": "bsc",
    "bep20": "bsc",
    "trx": "tron",
    "trc20": "tron",
    "matic": "polygon",
    "pol": "polygon",
    "arb": "arbitrum",
    "btc": "bitcoin",
    "btc-testnet": "bitcoin-testnet",
    "ltc": "litecoin",
    "doge": "dogecoin",
    "sol": "solana",
}

# -----------------------------------------------------------------------------
# Активы
# -----------------------------------------------------------------------------
_ASSET_ROWS: Tuple[AssetInfo, ...] = (
    # Нативные монеты
    AssetInfo("ETH", "ethereum", 18),
    AssetInfo("ETH", "arbitrum", 18),
    AssetInfo("ETH", "base", 18),
    AssetInfo("BNB", "bsc", 18),
    AssetInfo("MATIC", "polygon", 18),
    AssetInfo("TRX", "tron", 6),
    AssetInfo("BTC", "bitcoin", 8),
    AssetInfo("BTC", "bitcoin-testnet", 8),
    AssetInfo("LTC", "litecoin", 8),
    AssetInfo("DOGE", "dogecoin", 8),
    AssetInfo("DASH", "dash", 8),
    AssetInfo("SOL", "solana", 9),
    AssetInfo("SUI", "sui", 9),
    # Стейблкоины
    AssetInfo("USDT", "ethereum", 6, "0xdAC17F958D2ee523a2206206994597C13D831ec7"),
    AssetInfo("USDT", "bsc", 18, "0x55d398326f99059fF775485246999027B3197955"),
    AssetInfo("USDT", "tron", 6, "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"),
    AssetInfo("USDT", "polygon", 6, "0xc2132D05D31c914a87C6613C10748AaCbA0D5c45"),
    AssetInfo("USDT", "arbitrum", 6, "0xFd086bC7CD5C481DCC9C85ebE0cE3606eB48Cbb9"),
    AssetInfo("USDC", "ethereum", 6, "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"),
    AssetInfo("USDC", "bsc", 18, "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d"),
    AssetInfo("USDC", "polygon", 6, "0x2791Bca1F2de4661ED88A30C99A7a9449Aa84174"),
    AssetInfo("USDC", "arbitrum", 6, "0xaf88d065e77c8cC2239327C5EDb3A432268e5831"),
)

ASSETS: Dict[Tuple[str, str], AssetInfo] = {(a.symbol, a.network): a for a in _ASSET_ROWS}


# -----------------------------------------------------------------------------
# Публичные функции реестра
# -----------------------------------------------------------------------------
def normalize_network(network: str) -> str:
    """Приводит имя сети к каноническому виду (регистр, алиасы, '_' → '-')."""
    key = (network or "").strip().lower()
    if key in NETWORKS:
        return key
    if key in NETWORK_ALIASES:
        return NETWORK_ALIASES[key]
    dashed = key.replace("_", "-")
    if dashed in NETWORKS:
        return dashed
    return NETWORK_ALIASES.get(dashed, key)


def normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


def get_network(network: str) -> NetworkInfo:
    info = NETWORKS.get(normalize_network(network))
    if info is None:
        raise UnsupportedAsset(
            f"Unsupported network: {network}",
            details={"network": network},
        )
    return info


def get_asset(symbol: str, network: str) -> AssetInfo:
    """Возвращает актив или бросает UnsupportedAsset для неизвестной пары."""
    key = (normalize_symbol(symbol), normalize_network(network))
    asset = ASSETS.get(key)
    if asset is None:
        raise UnsupportedAsset(
            f"Unsupported currency/network combination: {symbol} on {network}",
            details={"currency": symbol, "network": network},
        )
    return asset


def find_asset_by_contract(network: str, contract: str) -> Optional[AssetInfo]:
    """Поиск токена по адресу контракта (регистр для EVM не важен)."""
    net = normalize_network(network)
    needle = (contract or "").strip().lower()
    for asset in _ASSET_ROWS:
        if asset.network == net and asset.contract and asset.contract.lower() == needle:
            return asset
    return None


def find_network_by_provider_chain(chain: str) -> Optional[NetworkInfo]:
    """Сеть по идентификатору цепочки провайдера ("ETH", "BSC", "TRON", ...)."""
    tag = (chain or "").strip().upper()
    for info in NETWORKS.values():
        if info.provider_chain == tag and not info.testnet:
            return info
    return None


def assets_for_network(network: str) -> List[AssetInfo]:
    net = normalize_network(network)
    return [a for a in _ASSET_ROWS if a.network == net]


def tolerance_for(symbol: str, decimals: int) -> Decimal:
    """
    Допуск сравнения сумм для актива: переопределение из настроек,
    иначе одна наименьшая единица актива (10^-decimals).
    """
    override = settings.asset_tolerance_overrides.get(normalize_symbol(symbol))
    if override is not None:
        return override
    return smallest_unit(decimals)


def normalize_address(address: str, family: ChainFamily) -> str:
    """
    Ключ поиска адреса: EVM-адреса регистронезависимы (EIP-55 лишь
    контрольная сумма), base58-адреса остальных семейств регистрозависимы.
    """
    value = (address or "").strip()
    if family is ChainFamily.EVM:
        return value.lower()
    return value


__all__ = [
    "ChainFamily",
    "NetworkInfo",
    "AssetInfo",
    "NETWORKS",
    "NETWORK_ALIASES",
    "ASSETS",
    "normalize_network",
    "normalize_symbol",
    "get_network",
    "get_asset",
    "find_asset_by_contract",
    "find_network_by_provider_chain",
    "assets_for_network",
    "tolerance_for",
    "normalize_address",
]

# =============================================================================
# Пояснения «для чайника»:
#   • "USDT" + "trc20" → get_asset нормализует сеть в "tron" и вернёт
#     AssetInfo(symbol="USDT", network="tron", decimals=6, contract=...).
#   • Семейство и coin type берутся из сети: get_network("bsc").family == EVM.
#   • Если пара не поддерживается, клиент получает 422 unsupported_asset.
# =============================================================================

# -*- coding: utf-8 -*-
# paygate/app/integrations/chain_query_api.py
# =============================================================================
# Назначение кода:
#   Read-only клиент сервиса запросов к цепочкам (fallback для сверки,
#   когда уведомления пропущены): входящие транзакции по адресу.
#
# Канон/инварианты:
#   • Ответ приводится к DTO ObservedTransfer с Decimal-суммой; формат
#     элементов совпадает с форматом уведомлений провайдера, поэтому
#     результат можно отдать прямо в NotificationIngestor.
#   • Клиент не нужен для корректности, только для устойчивости.
#
# Запреты:
#   • Никакой БД и денег: только чтение из сети.
# =============================================================================
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx

from paygate.app.core.config_core import get_settings
from paygate.app.core.logging_core import get_logger

logger = get_logger(__name__)
settings = get_settings()

# Имена цепочек data-API провайдера по канонической сети.
DATA_CHAINS: Dict[str, str] = {
    "ethereum": "ethereum-mainnet",
    "bsc": "bsc-mainnet",
    "polygon": "polygon-mainnet",
    "arbitrum": "arb-one-mainnet",
    "base": "base-mainnet",
    "tron": "tron-mainnet",
    "bitcoin": "bitcoin-mainnet",
    "bitcoin-testnet": "bitcoin-testnet",
    "litecoin": "litecoin-core-mainnet",
    "dogecoin": "doge-mainnet",
    "dash": "dash-mainnet",
    "solana": "solana-mainnet",
}


@dataclass(slots=True)
class ObservedTransfer:
    """Входящий перевод на адрес."""

    tx_hash: str
    address: str
    amount: Decimal
    block_number: Optional[int]
    contract: Optional[str]
    counter_address: Optional[str]

    def as_event(self, chain: str, asset: str) -> Dict[str, Any]:
        """Представление в формате уведомления провайдера."""
        return {
            "address": self.address,
            "amount": str(self.amount),
            "txId": self.tx_hash,
            "blockNumber": self.block_number,
            "chain": chain,
            "asset": asset,
            "contractAddress": self.contract,
            "counterAddress": self.counter_address,
        }


class ChainQueryAPIError(RuntimeError):
    """Ошибка сервиса запросов к цепочкам."""


class ChainQueryClient:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.CHAIN_QUERY_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.CHAIN_QUERY_API_KEY
        self.timeout_seconds = float(timeout_seconds or settings.NETWORK_REQUEST_TIMEOUT_SEC)
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def incoming_transfers(self, *, network: str, address: str, limit: int = 50) -> List[ObservedTransfer]:
        """Последние входящие переводы на адрес."""
        chain = DATA_CHAINS.get(network)
        if chain is None:
            raise ChainQueryAPIError(f"network {network} is not supported by the query service")
        params = {
            "chain": chain,
            "addresses": address,
            "transactionDirection": "incoming",
            "pageSize": int(limit),
        }
        headers = {"Accept": "application/json", "x-api-key": self.api_key or ""}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/v4/data/transaction/history", params=params, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ChainQueryAPIError(f"transaction history failed: {exc}") from exc
        return self._parse(payload, address)

    def _parse(self, payload: Any, address: str) -> List[ObservedTransfer]:
        items = payload.get("result", []) if isinstance(payload, dict) else (payload or [])
        transfers: List[ObservedTransfer] = []
        for item in items:
            try:
                amount = Decimal(str(item.get("amount")))
            except (InvalidOperation, TypeError):
                logger.warning("query service item without numeric amount", extra={"item": str(item)[:200]})
                continue
            if amount <= 0:
                continue
            block = item.get("blockNumber")
            transfers.append(
                ObservedTransfer(
                    tx_hash=str(item.get("hash") or item.get("txId") or ""),
                    address=str(item.get("address") or address),
                    amount=amount,
                    block_number=int(block) if block is not None else None,
                    contract=item.get("tokenAddress"),
                    counter_address=item.get("counterAddress"),
                )
            )
        return [t for t in transfers if t.tx_hash]


__all__ = ["DATA_CHAINS", "ObservedTransfer", "ChainQueryAPIError", "ChainQueryClient"]

# -*- coding: utf-8 -*-
# paygate/app/integrations/kms_api.py
# =============================================================================
# Назначение кода:
#   Клиент границы хранения ключей (KMS/custody):
#   • generate_wallet(chain_tag) → {extendedPublicKey, custodyHandle};
#   • request_address(custody_handle, index) → адрес для харденных семейств,
#     где вывести адрес по xpub невозможно.
#
# Канон/инварианты:
#   • Ядро запрашивает и хранит только публичный материал; подпись
#     транзакций у KMS есть, но отсюда никогда не вызывается.
#   • custodyHandle сразу шифруется vault на стороне сервиса кошельков.
#
# Запреты:
#   • Не логировать custodyHandle и ключ API.
# =============================================================================
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from paygate.app.core.config_core import get_settings
from paygate.app.core.logging_core import get_logger

logger = get_logger(__name__)
settings = get_settings()


@dataclass(slots=True)
class KmsWallet:
    extended_public_key: Optional[str]
    custody_handle: str


class KmsAPIError(RuntimeError):
    """KMS недоступен или ответил ошибкой."""


class KmsClient:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.KMS_API_URL or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.KMS_API_KEY
        self.timeout_seconds = float(timeout_seconds or settings.NETWORK_REQUEST_TIMEOUT_SEC)
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.base_url:
            raise KmsAPIError("KMS_API_URL is not configured")
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}{path}", json=body, headers=headers)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise KmsAPIError(f"KMS {path} failed: {exc}") from exc

    async def generate_wallet(self, chain_tag: str) -> KmsWallet:
        payload = await self._post("/v1/wallets", {"chain": chain_tag})
        handle = payload.get("custodyHandle")
        if not handle:
            raise KmsAPIError("KMS wallet response has no custodyHandle")
        logger.info("KMS wallet generated", extra={"chain": chain_tag})
        return KmsWallet(extended_public_key=payload.get("extendedPublicKey"), custody_handle=str(handle))

    async def request_address(self, custody_handle: str, index: int) -> str:
        payload = await self._post(f"/v1/wallets/{custody_handle}/addresses", {"index": int(index)})
        address = payload.get("address")
        if not address:
            raise KmsAPIError("KMS address response has no address")
        return str(address)


__all__ = ["KmsWallet", "KmsAPIError", "KmsClient"]

# -*- coding: utf-8 -*-
# paygate/app/integrations/chain_source_api.py
# =============================================================================
# Назначение кода:
#   HTTP-клиент провайдера уведомлений о поступлениях (Tatum-совместимый
#   REST v3): создание, перечисление и удаление подписок на адреса.
#
# Канон/инварианты:
#   • POST /v3/subscription {type, attr: {address, chain, url}} → {id}.
#   • GET /v3/subscription?pageSize=…&offset=… → список подписок.
#   • DELETE /v3/subscription/{id}; 404 считается «уже удалено».
#   • Авторизация заголовком x-api-key.
#
# ИИ-защиты:
#   • Таймауты httpx на каждый запрос; сетевые и HTTP-ошибки оборачиваются
#     в ChainSourceAPIError, решение о ретрае принимает SubscriptionManager.
#
# Запреты:
#   • Никакой работы с БД: только HTTP.
#   • Ключ API не логируется.
# =============================================================================
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from paygate.app.core.config_core import get_settings
from paygate.app.core.logging_core import get_logger

logger = get_logger(__name__)
settings = get_settings()

SUBSCRIPTION_NATIVE = "INCOMING_NATIVE_TX"
SUBSCRIPTION_ADDRESS_EVENT = "ADDRESS_EVENT"


@dataclass(slots=True)
class RemoteSubscription:
    """Подписка на стороне провайдера."""

    id: str
    type: str
    address: Optional[str]
    chain: Optional[str]
    url: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


class ChainSourceAPIError(RuntimeError):
    """Ошибка провайдера уведомлений (сеть, HTTP-статус, формат ответа)."""


class ChainSourceClient:
    """Клиент подписок провайдера уведомлений."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.CHAIN_SOURCE_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.CHAIN_SOURCE_API_KEY
        self.timeout_seconds = float(timeout_seconds or settings.NETWORK_REQUEST_TIMEOUT_SEC)
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {"Accept": "application/json", "x-api-key": self.api_key or ""}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                return await client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise ChainSourceAPIError(f"{method} {path} failed: {exc}") from exc

    async def create_subscription(
        self, *, address: str, chain: str, callback_url: str, subscription_type: str = SUBSCRIPTION_NATIVE
    ) -> str:
        """Создать подписку; возвращает id подписки у провайдера."""
        body = {"type": subscription_type, "attr": {"address": address, "chain": chain, "url": callback_url}}
        response = await self._request("POST", "/v3/subscription", json=body)
        if response.status_code >= 400:
            raise ChainSourceAPIError(
                f"create subscription failed: {response.status_code} {response.text[:300]}"
            )
        try:
            subscription_id = str(response.json()["id"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ChainSourceAPIError("create subscription: response has no id") from exc
        logger.info(
            "chain source subscription created",
            extra={"address": address, "chain": chain, "subscription_id": subscription_id},
        )
        return subscription_id

    async def list_subscriptions(self, *, page_size: int = 50, max_pages: int = 100) -> List[RemoteSubscription]:
        """Все подписки аккаунта (постранично)."""
        result: List[RemoteSubscription] = []
        for page in range(max_pages):
            response = await self._request(
                "GET", "/v3/subscription", params={"pageSize": page_size, "offset": page}
            )
            if response.status_code >= 400:
                raise ChainSourceAPIError(
                    f"list subscriptions failed: {response.status_code} {response.text[:300]}"
                )
            try:
                items = response.json() or []
            except ValueError as exc:
                raise ChainSourceAPIError("list subscriptions: invalid JSON") from exc
            for item in items:
                attr = item.get("attr") or {}
                result.append(
                    RemoteSubscription(
                        id=str(item.get("id")),
                        type=str(item.get("type") or ""),
                        address=attr.get("address"),
                        chain=attr.get("chain"),
                        url=attr.get("url"),
                        raw=item,
                    )
                )
            if len(items) < page_size:
                break
        return result

    async def delete_subscription(self, subscription_id: str) -> None:
        response = await self._request("DELETE", f"/v3/subscription/{subscription_id}")
        if response.status_code == 404:
            logger.info("chain source subscription already gone", extra={"subscription_id": subscription_id})
            return
        if response.status_code >= 400:
            raise ChainSourceAPIError(
                f"delete subscription failed: {response.status_code} {response.text[:300]}"
            )


__all__ = [
    "SUBSCRIPTION_NATIVE",
    "SUBSCRIPTION_ADDRESS_EVENT",
    "RemoteSubscription",
    "ChainSourceAPIError",
    "ChainSourceClient",
]

# -*- coding: utf-8 -*-
# paygate/app/deps.py
# =============================================================================
# Paygate: общие зависимости FastAPI (контейнер сервисов, идентификация
#          мерчанта, Idempotency-Key, ETag).
# -----------------------------------------------------------------------------
# Канон/требования:
#   • Сервисы берутся только из app.state.services (собраны в lifespan).
#   • Мерчант идентифицируется заголовком X-Merchant-Id; аутентификация
#     мерчанта выполняется на периметре (gateway) и сюда не входит.
#   • Idempotency-Key на создании инвойса опционален: при наличии повтор
#     возвращает уже созданный инвойс.
#
# Этот модуль НЕ делает бизнес-логику, только инфраструктуру/валидацию.
# =============================================================================
from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Optional

from fastapi import Header, HTTPException, Request, status

from paygate.app.core.logging_core import set_request_context
from paygate.app.services import ServiceContainer

MAX_IDEMPOTENCY_KEY_LEN = 128


def get_services(request: Request) -> ServiceContainer:
    """Контейнер сервисов, собранный при старте приложения."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service container is not initialized",
        )
    return services


def make_etag(payload: Dict[str, Any]) -> str:
    """Детерминированный ETag из JSON-представления payload."""
    raw = json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


async def require_merchant_id(
    x_merchant_id: Optional[str] = Header(default=None, convert_underscores=False, alias="X-Merchant-Id"),
) -> str:
    if not x_merchant_id or not x_merchant_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Merchant-Id header is required")
    return x_merchant_id.strip()


async def optional_idempotency_key(
    idempotency_key: Optional[str] = Header(default=None, convert_underscores=False, alias="Idempotency-Key"),
) -> Optional[str]:
    if idempotency_key is None:
        return None
    key = idempotency_key.strip()
    if not key:
        return None
    if len(key) > MAX_IDEMPOTENCY_KEY_LEN:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Idempotency-Key is too long")
    set_request_context(idempotency_key=key)
    return key


__all__ = [
    "MAX_IDEMPOTENCY_KEY_LEN",
    "get_services",
    "make_etag",
    "optional_idempotency_key",
    "require_merchant_id",
]

# -*- coding: utf-8 -*-
# paygate/app/routes/chain_webhook_routes.py
# =============================================================================
# Назначение кода:
#   Приём push-уведомлений провайдера цепочек. Callback подписки содержит id
#   инвойса (/webhooks/chain/{invoice_id}); общий путь без id тоже принимается.
#
# Канон/инварианты:
#   • При настроенном CHAIN_WEBHOOK_HMAC_SECRET тело проверяется подписью
#     x-webhook-signature до разбора JSON.
#   • Чужой адрес и дубликат отвечают 200: провайдер не должен ретраить.
#   • Некорректная форма → 422.
# =============================================================================

from __future__ import annotations

import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request

from paygate.app.core.errors_core import ValidationError
from paygate.app.core.logging_core import get_logger, set_request_context
from paygate.app.core.security_core import CHAIN_SIGNATURE_HEADER, verify_chain_webhook
from paygate.app.deps import get_services
from paygate.app.schemas import ChainNotificationAck
from paygate.app.services import ServiceContainer

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks/chain", tags=["chain-webhooks"])


async def _handle(request: Request, services: ServiceContainer, invoice_id: Optional[str]) -> ChainNotificationAck:
    body = await request.body()
    verify_chain_webhook(
        body,
        request.headers.get(CHAIN_SIGNATURE_HEADER),
        secret=services.settings.CHAIN_WEBHOOK_HMAC_SECRET or "",
    )
    try:
        raw: Any = json.loads(body or b"null")
    except ValueError as exc:
        raise ValidationError("Notification body is not valid JSON.") from exc
    if not isinstance(raw, dict):
        raise ValidationError("Notification body must be a JSON object.")
    if invoice_id:
        set_request_context(invoice_id=invoice_id)
    result = await services.ingestor.ingest(raw, invoice_hint=invoice_id)
    return ChainNotificationAck(**result.as_dict())


@router.post("", response_model=ChainNotificationAck)
async def chain_notification(
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> ChainNotificationAck:
    return await _handle(request, services, None)


@router.post("/{invoice_id}", response_model=ChainNotificationAck)
async def chain_notification_for_invoice(
    invoice_id: str,
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> ChainNotificationAck:
    return await _handle(request, services, invoice_id)


__all__ = ["router"]

# -*- coding: utf-8 -*-
# paygate/app/routes/deliveries_routes.py
# =============================================================================
# Назначение кода:
#   Наблюдаемость исходящих вебхуков мерчанта: статистика за окно,
#   dead-letter список (FAILED) и ручной перезапуск.
#
# Запреты:
#   • Мерчант видит и перезапускает только свои доставки.
# =============================================================================

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from paygate.app.deps import get_services, require_merchant_id
from paygate.app.schemas import DeliveryListOut, DeliveryOut, DeliveryStatsOut
from paygate.app.services import ServiceContainer
from paygate.app.services.webhook_delivery_service import delivery_to_dict

router = APIRouter(prefix="/webhooks/deliveries", tags=["webhook-deliveries"])


@router.get("/stats", response_model=DeliveryStatsOut)
async def delivery_stats(
    timeframe: str = Query("day", description="hour | day | week"),
    merchant_id: str = Depends(require_merchant_id),
    services: ServiceContainer = Depends(get_services),
) -> DeliveryStatsOut:
    return DeliveryStatsOut(**await services.webhooks.stats(merchant_id=merchant_id, timeframe=timeframe))


@router.get("/failed", response_model=DeliveryListOut)
async def failed_deliveries(
    limit: int = Query(50, ge=1, le=500),
    merchant_id: str = Depends(require_merchant_id),
    services: ServiceContainer = Depends(get_services),
) -> DeliveryListOut:
    rows = await services.webhooks.list_failed(merchant_id=merchant_id, limit=limit)
    return DeliveryListOut(items=[DeliveryOut(**delivery_to_dict(row)) for row in rows])


@router.post("/{delivery_id}/retry", response_model=DeliveryOut)
async def retry_delivery(
    delivery_id: str,
    merchant_id: str = Depends(require_merchant_id),
    services: ServiceContainer = Depends(get_services),
) -> DeliveryOut:
    delivery = await services.webhooks.retry(delivery_id, merchant_id=merchant_id)
    return DeliveryOut(**delivery_to_dict(delivery))


__all__ = ["router"]

# -*- coding: utf-8 -*-
# paygate/app/routes/health_routes.py
# =============================================================================
# Назначение кода:
#   Health-check: пинг БД, число активных инвойсов без подписки,
#   статистика уведомлений, глубина очереди вебхуков, задачи планировщика.
#
# Канон/инварианты:
#   • Деградация не скрывается: status="degraded", если БД недоступна или
#     есть активные инвойсы без наблюдения.
# =============================================================================

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from paygate.app.core import CORE_VERSION
from paygate.app.deps import get_services
from paygate.app.schemas import HealthOut
from paygate.app.services import ServiceContainer, services_health

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthOut)
async def health(request: Request, services: ServiceContainer = Depends(get_services)) -> HealthOut:
    snapshot = await services_health(services)
    scheduler = getattr(request.app.state, "scheduler", None)
    degraded = not snapshot["db"] or bool(snapshot.get("unmonitored_active_invoices"))
    return HealthOut(
        status="degraded" if degraded else "ok",
        version=CORE_VERSION,
        env=services.settings.env_normalized,
        scheduler=scheduler.list_jobs() if scheduler is not None else [],
        **snapshot,
    )


__all__ = ["router"]

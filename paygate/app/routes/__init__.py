# -*- coding: utf-8 -*-
# paygate/app/routes/__init__.py
# =============================================================================
# Назначение кода:
#   Единая точка подключения HTTP-роутов Paygate:
#     • api_router: все роуты под API_PREFIX (обычно "/api");
#     • register(app, prefix): монтирование агрегатора и корневого /health;
#     • диагностика подключённых/пропущенных модулей.
#
# Канон/инварианты:
#   • Здесь нет бизнес-логики и нет доступа к БД: только import и include_router.
#   • Каждый модуль роутов экспортирует `router: APIRouter` и сам задаёт prefix.
#
# ИИ-защита:
#   • Модуль без router: APIRouter не монтируется и попадает в список
#     пропущенных (видно в логах и list_missing_routes()).
#   • Ошибка импорта модуля роутов не скрывается: приложение не стартует.
# =============================================================================

from __future__ import annotations

from importlib import import_module
from typing import List, Tuple

from fastapi import APIRouter, FastAPI

from paygate.app.core.logging_core import get_logger

logger = get_logger(__name__)

ROUTERS_EXPECTED: Tuple[str, ...] = (
    "invoices_routes",
    "chain_webhook_routes",
    "deliveries_routes",
    "health_routes",
    "admin.wallets_routes",
)

api_router = APIRouter()

_ATTACHED: List[str] = []
_MISSING: List[str] = []


def _try_include(module_basename: str) -> None:
    """Импортировать модуль роутов и смонтировать его `router` в api_router."""
    fqmn = f"paygate.app.routes.{module_basename}"
    mod = import_module(fqmn)
    router = getattr(mod, "router", None)
    if not isinstance(router, APIRouter):
        logger.warning("routes module skipped: no router", extra={"route_module": fqmn})
        _MISSING.append(module_basename)
        return
    api_router.include_router(router)
    _ATTACHED.append(module_basename)


for _name in ROUTERS_EXPECTED:
    _try_include(_name)


def register(app: FastAPI, prefix: str = "/api") -> None:
    """
    Регистрирует агрегированный роутер. /health дополнительно доступен в
    корне (для балансировщиков и оркестратора).
    """
    from paygate.app.routes.health_routes import router as health_router

    app.include_router(api_router, prefix=prefix)
    if prefix:
        app.include_router(health_router)
    logger.info(
        "routes registered",
        extra={"prefix": prefix, "attached": list(_ATTACHED), "missing": list(_MISSING)},
    )


def list_registered_routes() -> List[str]:
    return list(_ATTACHED)


def list_missing_routes() -> List[str]:
    return list(_MISSING)


__all__ = [
    "api_router",
    "register",
    "list_registered_routes",
    "list_missing_routes",
    "ROUTERS_EXPECTED",
]

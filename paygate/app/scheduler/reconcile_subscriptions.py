# -*- coding: utf-8 -*-
# paygate/app/scheduler/reconcile_subscriptions.py
# =============================================================================
# Назначение: сверка подписок провайдера уведомлений с адресами, которые
# ещё нужно наблюдать (SubscriptionManager.reconcile()).
#
# Канон/инварианты:
#   • Отписываем терминальные и помеченные адреса, переподписываем активные
#     инвойсы без подписки, удаляем «осиротевшие» подписки на наш callback.
#   • Сбой провайдера не роняет тик: reconcile() сам логирует и продолжает.
# =============================================================================
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from paygate.app.core.database_core import lifespan_session
from paygate.app.core.system_locks import advisory_lock

if TYPE_CHECKING:  # pragma: no cover
    from paygate.app.services import ServiceContainer

LOCK_NAME = "reconcile_subscriptions"


async def run_once(services: "ServiceContainer", *, settings: Optional[Any] = None) -> Dict[str, Any]:
    async with lifespan_session(services.session_factory) as lock_session:
        async with advisory_lock(lock_session, LOCK_NAME) as acquired:
            if not acquired:
                return {"skipped": True}
            return await services.subscriptions.reconcile()


__all__ = ["LOCK_NAME", "run_once"]

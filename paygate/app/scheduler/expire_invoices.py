# -*- coding: utf-8 -*-
# paygate/app/scheduler/expire_invoices.py
# =============================================================================
# Назначение: периодическая экспирация открытых инвойсов (PENDING/UNDERPAID)
# с истёкшим expires_at. Вся логика в InvoiceLedger.expire_overdue().
#
# Канон/инварианты:
#   • Повторный тик идемпотентен: EXPIRED больше не выбирается.
#   • Отписка адресов выполняется сверкой подписок по флагу
#     unsubscribe_requested, здесь сеть не трогаем.
#
# ИИ-защиты:
#   • Advisory-лок: в кластере тик выполняет один процесс.
# =============================================================================
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from paygate.app.core.database_core import lifespan_session
from paygate.app.core.logging_core import get_logger
from paygate.app.core.system_locks import advisory_lock

if TYPE_CHECKING:  # pragma: no cover
    from paygate.app.services import ServiceContainer

logger = get_logger(__name__)

LOCK_NAME = "expire_invoices"


async def run_once(services: "ServiceContainer", *, settings: Optional[Any] = None) -> Dict[str, Any]:
    async with lifespan_session(services.session_factory) as lock_session:
        async with advisory_lock(lock_session, LOCK_NAME) as acquired:
            if not acquired:
                return {"skipped": True}
            expired = await services.ledger.expire_overdue()
    if expired:
        logger.info("overdue invoices expired", extra={"count": expired})
    return {"expired": expired}


__all__ = ["LOCK_NAME", "run_once"]

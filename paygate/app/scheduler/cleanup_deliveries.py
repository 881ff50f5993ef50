# -*- coding: utf-8 -*-
# paygate/app/scheduler/cleanup_deliveries.py
# =============================================================================
# Назначение: удаление доставленных (SENT) вебхуков старше
# WEBHOOK_RETENTION_DAYS вместе с журналом попыток.
#
# Запреты:
#   • FAILED не удаляются: это dead-letter очередь для ручного retry.
# =============================================================================
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from paygate.app.core.database_core import lifespan_session
from paygate.app.core.system_locks import advisory_lock

if TYPE_CHECKING:  # pragma: no cover
    from paygate.app.services import ServiceContainer

LOCK_NAME = "cleanup_deliveries"


async def run_once(services: "ServiceContainer", *, settings: Optional[Any] = None) -> Dict[str, Any]:
    async with lifespan_session(services.session_factory) as lock_session:
        async with advisory_lock(lock_session, LOCK_NAME) as acquired:
            if not acquired:
                return {"skipped": True}
            removed = await services.webhooks.cleanup_old()
    return {"removed": removed}


__all__ = ["LOCK_NAME", "run_once"]

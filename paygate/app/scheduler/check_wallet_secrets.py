# -*- coding: utf-8 -*-
# paygate/app/scheduler/check_wallet_secrets.py
# =============================================================================
# Назначение: суточная проверка расшифровки секретов мастер-кошельков.
# Испорченный секрет выводит из строя только свой кошелёк (INACTIVE).
# =============================================================================
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from paygate.app.core.database_core import lifespan_session
from paygate.app.core.logging_core import get_logger
from paygate.app.core.system_locks import advisory_lock

if TYPE_CHECKING:  # pragma: no cover
    from paygate.app.services import ServiceContainer

logger = get_logger(__name__)

LOCK_NAME = "check_wallet_secrets"


async def run_once(services: "ServiceContainer", *, settings: Optional[Any] = None) -> Dict[str, Any]:
    async with lifespan_session(services.session_factory) as lock_session:
        async with advisory_lock(lock_session, LOCK_NAME) as acquired:
            if not acquired:
                return {"skipped": True}
            result = await services.wallets.check_secrets()
    if result["corrupted"]:
        logger.error("wallets disabled by secret check", extra=result)
    return result


__all__ = ["LOCK_NAME", "run_once"]

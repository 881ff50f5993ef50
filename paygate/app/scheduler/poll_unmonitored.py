# -*- coding: utf-8 -*-
# paygate/app/scheduler/poll_unmonitored.py
# =============================================================================
# Назначение: fallback для адресов активных инвойсов, у которых нет живой
# подписки. Сервис запросов к цепочкам отдаёт входящие переводы, каждый
# перевод проходит тот же путь, что и push-уведомление
# (NotificationIngestor.ingest).
#
# Канон/инварианты:
#   • Повторно увиденный перевод безопасен: ledger дедуплицирует по tx_hash.
#   • Сбой запроса по одному адресу не останавливает опрос остальных.
#
# Запреты:
#   • Никаких прямых изменений инвойсов и балансов отсюда.
# =============================================================================
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from paygate.app.core.database_core import lifespan_session
from paygate.app.core.errors_core import PaygateError
from paygate.app.core.logging_core import get_logger
from paygate.app.core.system_locks import advisory_lock
from paygate.app.integrations.chain_query_api import ChainQueryAPIError
from paygate.app.models import Invoice

if TYPE_CHECKING:  # pragma: no cover
    from paygate.app.services import ServiceContainer

logger = get_logger(__name__)

LOCK_NAME = "poll_unmonitored"
DEFAULT_BATCH = 50


async def run_once(services: "ServiceContainer", *, settings: Optional[Any] = None) -> Dict[str, Any]:
    if not services.chain_query.configured:
        return {"skipped": True, "reason": "chain query service is not configured"}
    batch = int(getattr(settings, "POLL_BATCH", DEFAULT_BATCH))

    async with lifespan_session(services.session_factory) as lock_session:
        async with advisory_lock(lock_session, LOCK_NAME) as acquired:
            if not acquired:
                return {"skipped": True}
            return await _poll(services, batch)


async def _poll(services: "ServiceContainer", batch: int) -> Dict[str, Any]:
    addresses = await services.subscriptions.unmonitored_addresses(limit=batch)
    polled = 0
    events = 0
    applied = 0
    failed = 0
    for row in addresses:
        async with lifespan_session(services.session_factory) as session:
            invoice = await session.get(Invoice, row.invoice_id) if row.invoice_id else None
        if invoice is None:
            continue
        try:
            transfers = await services.chain_query.incoming_transfers(network=row.network, address=row.address)
        except ChainQueryAPIError as exc:
            failed += 1
            logger.warning(
                "fallback poll failed",
                extra={"address": row.address, "network": row.network, "error": str(exc)},
            )
            continue
        polled += 1
        for transfer in transfers:
            events += 1
            try:
                result = await services.ingestor.ingest(
                    transfer.as_event(row.network, invoice.currency),
                    invoice_hint=invoice.id,
                )
            except PaygateError as exc:
                logger.warning(
                    "fallback event rejected",
                    extra={"tx_hash": transfer.tx_hash, "invoice_id": invoice.id, "error": exc.message},
                )
                continue
            if result.applied:
                applied += 1
    return {"polled": polled, "events": events, "applied": applied, "failed": failed}


__all__ = ["LOCK_NAME", "run_once"]

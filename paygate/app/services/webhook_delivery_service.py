# -*- coding: utf-8 -*-
# paygate/app/services/webhook_delivery_service.py
# =============================================================================
# Назначение кода:
#   WebhookDeliveryService: надёжная доставка событий ledger мерчантам.
#   • enqueue()/enqueue_in(): постановка задания (outbox-строка в БД);
#   • воркер start()/stop(): аренда «созревших» заданий и параллельная
#     доставка с ограниченным числом попыток;
#   • retry(): ручной перезапуск FAILED (dead-letter) задания;
#   • stats()/list_failed()/queue_depth()/cleanup_old(): наблюдаемость.
#
# Канон/инварианты:
#   • Тело запроса = canonical_json(payload); подпись HMAC-SHA256 считается
#     по этим же байтам: X-Signature: sha256=<hex>.
#   • Заголовки попытки: X-Webhook-Attempt, X-Webhook-Event, X-Webhook-Id,
#     X-Webhook-Timestamp.
#   • Успех: любой 2xx. Иначе следующая попытка через таблицу задержек
#     (WEBHOOK_RETRY_DELAYS_SEC, последняя повторяется) плюс 0..10 % джиттера.
#   • attempt_count == max_attempts → FAILED, задание не удаляется.
#   • Каждая попытка пишет WebhookAttemptLog (статус, заголовки, обрезанное
#     тело ответа). Секрет мерчанта хранится шифротекстом vault и в журнал
#     не попадает.
#   • HTTP никогда не выполняется внутри транзакции БД: аренда (lease_until)
#     защищает задание от второго воркера на время запроса.
#
# Запреты:
#   • Не удалять FAILED-задания автоматически (только SENT по сроку хранения).
#   • Не логировать расшифрованный секрет и полные тела ответов.
# =============================================================================

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

import httpx
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.app.core.config_core import Settings, get_settings
from paygate.app.core.database_core import is_postgres, lifespan_session
from paygate.app.core.errors_core import CorruptedSecret, InvalidStateError, NotFoundError, ValidationError
from paygate.app.core.logging_core import get_logger, log_context
from paygate.app.core.security_core import sign_payload
from paygate.app.core.utils_core import canonical_json, ensure_aware, iso_utc, new_id, utcnow
from paygate.app.core.vault_core import KeyMaterialVault
from paygate.app.models import DeliveryStatus, WebhookAttemptLog, WebhookDelivery

logger = get_logger(__name__)

TIMEFRAMES: Dict[str, timedelta] = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}


@dataclass(slots=True)
class AttemptOutcome:
    """Результат одной HTTP-попытки."""

    ok: bool
    status_code: Optional[int]
    response_headers: Dict[str, str]
    response_body: Optional[str]
    duration_ms: int
    error: Optional[str]


class WebhookDeliveryService:
    """Outbox-доставка вебхуков с ретраями и dead-letter."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        vault: KeyMaterialVault,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._session_factory = session_factory
        self._vault = vault
        self._transport = transport
        self._clock = clock or utcnow
        self._rng = rng or random.Random()
        self._settings = settings or get_settings()

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._inflight: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Постановка в очередь
    # ------------------------------------------------------------------
    async def enqueue(
        self,
        url: str,
        payload: Dict[str, Any],
        *,
        event: str = "invoice.updated",
        secret: Optional[str] = None,
        max_attempts: Optional[int] = None,
        timeout: Optional[int] = None,
        merchant_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> str:
        """Поставить доставку в собственной транзакции; возвращает delivery_id."""
        async with lifespan_session(self._session_factory) as session:
            async with session.begin():
                delivery_id = await self.enqueue_in(
                    session,
                    url=url,
                    payload=payload,
                    event=event,
                    secret=secret,
                    max_attempts=max_attempts,
                    timeout=timeout,
                    merchant_id=merchant_id,
                    invoice_id=invoice_id,
                )
        return delivery_id

    async def enqueue_in(
        self,
        session: AsyncSession,
        *,
        url: str,
        payload: Dict[str, Any],
        event: str = "invoice.updated",
        secret: Optional[str] = None,
        secret_encrypted: Optional[str] = None,
        max_attempts: Optional[int] = None,
        timeout: Optional[int] = None,
        merchant_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> str:
        """
        Поставить доставку в транзакции вызывающего (outbox ledger).
        secret: открытый секрет (будет зашифрован), secret_encrypted: уже
        шифротекст vault (секрет мерчанта из БД).
        """
        if not url or not url.lower().startswith(("http://", "https://")):
            raise ValidationError("Webhook URL must be http(s).", details={"url": url})
        attempts = int(max_attempts or self._settings.WEBHOOK_MAX_ATTEMPTS)
        if attempts < 1:
            raise ValidationError("max_attempts must be >= 1.")

        stored_secret = secret_encrypted
        if secret:
            stored_secret = self._vault.encrypt_text(secret)

        now = self._clock()
        delivery = WebhookDelivery(
            id=new_id(),
            url=url,
            event=event,
            payload=payload,
            merchant_id=merchant_id,
            invoice_id=invoice_id,
            signing_secret=stored_secret,
            attempt_count=0,
            max_attempts=attempts,
            timeout_sec=int(timeout or self._settings.WEBHOOK_TIMEOUT_SEC),
            status=DeliveryStatus.PENDING.value,
            next_retry_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(delivery)
        await session.flush()
        logger.info(
            "webhook delivery enqueued",
            extra={"delivery_id": delivery.id, "event": event, "invoice_id": invoice_id},
        )
        return delivery.id

    # ------------------------------------------------------------------
    # Политика ретраев
    # ------------------------------------------------------------------
    def compute_retry_delay(self, attempt: int) -> float:
        """
        Задержка (сек) перед попыткой attempt+1 после неудачной attempt:
        базовая задержка из таблицы (последняя повторяется) × (1 + джиттер).
        """
        table = self._settings.webhook_retry_delays or [60]
        base = table[min(max(int(attempt), 1) - 1, len(table) - 1)]
        jitter = self._settings.WEBHOOK_JITTER_RATIO * self._rng.random()
        return float(base) * (1.0 + jitter)

    # ------------------------------------------------------------------
    # Аренда и доставка
    # ------------------------------------------------------------------
    async def claim_due(self, limit: Optional[int] = None) -> List[str]:
        """Арендовать созревшие PENDING-задания; возвращает их id."""
        batch = int(limit or self._settings.WEBHOOK_BATCH_SIZE)
        now = self._clock()
        async with lifespan_session(self._session_factory) as session:
            async with session.begin():
                stmt = (
                    select(WebhookDelivery)
                    .where(
                        WebhookDelivery.status == DeliveryStatus.PENDING.value,
                        WebhookDelivery.next_retry_at <= now,
                        (WebhookDelivery.lease_until.is_(None)) | (WebhookDelivery.lease_until < now),
                    )
                    .order_by(WebhookDelivery.next_retry_at.asc())
                    .limit(batch)
                )
                if is_postgres(session):
                    stmt = stmt.with_for_update(skip_locked=True)
                rows = list((await session.execute(stmt)).scalars().all())
                lease = now + timedelta(seconds=self._settings.WEBHOOK_LEASE_SEC)
                for row in rows:
                    row.lease_until = lease
                ids = [row.id for row in rows]
        return ids

    async def process_due(self, limit: Optional[int] = None) -> int:
        """Один проход: арендовать и доставить пачку. Возвращает размер пачки."""
        ids = await self.claim_due(limit)
        if not ids:
            return 0
        tasks = [asyncio.create_task(self.deliver(delivery_id)) for delivery_id in ids]
        self._inflight.update(tasks)
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._inflight.difference_update(tasks)
        for delivery_id, result in zip(ids, results):
            if isinstance(result, Exception):
                logger.error(
                    "webhook delivery crashed",
                    extra={"delivery_id": delivery_id, "error": f"{type(result).__name__}: {result}"},
                )
        return len(ids)

    async def deliver(self, delivery_id: str) -> str:
        """Одна попытка доставки задания; возвращает новый статус."""
        with log_context(delivery_id=delivery_id):
            return await self._attempt(delivery_id)

    async def _attempt(self, delivery_id: str) -> str:
        async with lifespan_session(self._session_factory) as session:
            delivery = await session.get(WebhookDelivery, delivery_id)
            if delivery is None:
                raise NotFoundError("Delivery not found.", details={"delivery_id": delivery_id})
            if delivery.status != DeliveryStatus.PENDING.value:
                return delivery.status
            url = delivery.url
            event = delivery.event
            payload = delivery.payload
            timeout = delivery.timeout_sec
            attempt = int(delivery.attempt_count) + 1
            encrypted_secret = delivery.signing_secret

        try:
            secret = self._vault.decrypt_text(encrypted_secret) if encrypted_secret else None
        except CorruptedSecret:
            logger.error("webhook signing secret is corrupted", extra={"delivery_id": delivery_id})
            return await self._mark_corrupted(delivery_id)

        body = canonical_json(payload).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._settings.WEBHOOK_USER_AGENT,
            "X-Webhook-Event": event,
            "X-Webhook-Id": delivery_id,
            "X-Webhook-Attempt": str(attempt),
            "X-Webhook-Timestamp": iso_utc(self._clock()) or "",
        }
        if secret:
            headers["X-Signature"] = sign_payload(secret, body)

        outcome = await self._send(url, body, headers, timeout)
        return await self._record_attempt(delivery_id, attempt, headers, outcome)

    async def _send(self, url: str, body: bytes, headers: Dict[str, str], timeout: int) -> AttemptOutcome:
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=float(timeout), transport=self._transport) as client:
                response = await client.post(url, content=body, headers=headers)
        except httpx.TimeoutException as exc:
            return AttemptOutcome(False, None, {}, None, self._elapsed_ms(started), f"timeout: {type(exc).__name__}")
        except httpx.HTTPError as exc:
            return AttemptOutcome(False, None, {}, None, self._elapsed_ms(started), f"{type(exc).__name__}: {exc}")

        limit = self._settings.WEBHOOK_RESPONSE_BODY_LIMIT
        ok = 200 <= response.status_code < 300
        return AttemptOutcome(
            ok=ok,
            status_code=response.status_code,
            response_headers=dict(response.headers),
            response_body=response.text[:limit] if response.text else None,
            duration_ms=self._elapsed_ms(started),
            error=None if ok else f"HTTP {response.status_code}",
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    async def _record_attempt(
        self,
        delivery_id: str,
        attempt: int,
        headers: Dict[str, str],
        outcome: AttemptOutcome,
    ) -> str:
        now = self._clock()
        retry_delay_ms: Optional[int] = None
        async with lifespan_session(self._session_factory) as session:
            async with session.begin():
                delivery = await session.get(WebhookDelivery, delivery_id, with_for_update=True)
                if delivery is None:
                    raise NotFoundError("Delivery not found.", details={"delivery_id": delivery_id})
                delivery.attempt_count = attempt
                delivery.last_attempt_at = now
                delivery.last_status_code = outcome.status_code
                delivery.lease_until = None

                if outcome.ok:
                    delivery.status = DeliveryStatus.SENT.value
                    delivery.delivered_at = now
                    delivery.next_retry_at = None
                    delivery.last_error = None
                elif attempt >= int(delivery.max_attempts):
                    delivery.status = DeliveryStatus.FAILED.value
                    delivery.next_retry_at = None
                    delivery.last_error = f"Failed after {attempt} attempts: {outcome.error}"[:1024]
                else:
                    delay = self.compute_retry_delay(attempt)
                    retry_delay_ms = int(delay * 1000)
                    delivery.next_retry_at = now + timedelta(seconds=delay)
                    delivery.last_error = (outcome.error or "")[:1024]

                session.add(
                    WebhookAttemptLog(
                        delivery_id=delivery_id,
                        attempt=attempt,
                        request_headers=headers,
                        response_status=outcome.status_code,
                        response_headers=outcome.response_headers or None,
                        response_body=outcome.response_body,
                        duration_ms=outcome.duration_ms,
                        retry_delay_ms=retry_delay_ms,
                        error=outcome.error[:1024] if outcome.error else None,
                        created_at=now,
                    )
                )
                status = delivery.status

        log = logger.info if outcome.ok else logger.warning
        log(
            "webhook attempt finished",
            extra={
                "delivery_id": delivery_id,
                "attempt": attempt,
                "status": status,
                "http_status": outcome.status_code,
                "error": outcome.error,
                "retry_delay_ms": retry_delay_ms,
            },
        )
        return status

    async def _mark_corrupted(self, delivery_id: str) -> str:
        async with lifespan_session(self._session_factory) as session:
            async with session.begin():
                delivery = await session.get(WebhookDelivery, delivery_id, with_for_update=True)
                if delivery is None:
                    raise NotFoundError("Delivery not found.", details={"delivery_id": delivery_id})
                delivery.status = DeliveryStatus.FAILED.value
                delivery.next_retry_at = None
                delivery.lease_until = None
                delivery.last_error = "signing secret cannot be decrypted"
        return DeliveryStatus.FAILED.value

    # ------------------------------------------------------------------
    # Ручные операции и наблюдаемость
    # ------------------------------------------------------------------
    async def retry(self, delivery_id: str, *, merchant_id: Optional[str] = None) -> WebhookDelivery:
        """Перезапуск FAILED-задания: счётчик попыток сбрасывается."""
        async with lifespan_session(self._session_factory) as session:
            async with session.begin():
                delivery = await session.get(WebhookDelivery, delivery_id, with_for_update=True)
                if delivery is None or (merchant_id is not None and delivery.merchant_id != merchant_id):
                    raise NotFoundError("Delivery not found.", details={"delivery_id": delivery_id})
                if delivery.status != DeliveryStatus.FAILED.value:
                    raise InvalidStateError(
                        "Only failed deliveries can be retried.",
                        details={"delivery_id": delivery_id, "status": delivery.status},
                    )
                delivery.status = DeliveryStatus.PENDING.value
                delivery.attempt_count = 0
                delivery.next_retry_at = self._clock()
                delivery.lease_until = None
                delivery.last_error = None
        logger.info("webhook delivery re-queued", extra={"delivery_id": delivery_id})
        return delivery

    async def get(self, delivery_id: str) -> WebhookDelivery:
        async with lifespan_session(self._session_factory) as session:
            delivery = await session.get(WebhookDelivery, delivery_id)
        if delivery is None:
            raise NotFoundError("Delivery not found.", details={"delivery_id": delivery_id})
        return delivery

    async def attempts(self, delivery_id: str) -> List[WebhookAttemptLog]:
        async with lifespan_session(self._session_factory) as session:
            stmt = (
                select(WebhookAttemptLog)
                .where(WebhookAttemptLog.delivery_id == delivery_id)
                .order_by(WebhookAttemptLog.attempt.asc(), WebhookAttemptLog.id.asc())
            )
            return list((await session.execute(stmt)).scalars().all())

    async def stats(self, *, merchant_id: Optional[str] = None, timeframe: str = "day") -> Dict[str, Any]:
        """Сводка доставок за окно hour|day|week (по мерчанту или целиком)."""
        window = TIMEFRAMES.get((timeframe or "").lower())
        if window is None:
            raise ValidationError("timeframe must be one of: hour, day, week.", details={"timeframe": timeframe})
        since = self._clock() - window

        stmt = (
            select(WebhookDelivery.status, func.count(), func.avg(WebhookDelivery.attempt_count))
            .where(WebhookDelivery.created_at >= since)
            .group_by(WebhookDelivery.status)
        )
        if merchant_id is not None:
            stmt = stmt.where(WebhookDelivery.merchant_id == merchant_id)

        async with lifespan_session(self._session_factory) as session:
            rows = (await session.execute(stmt)).all()

        counts = {s.value: 0 for s in DeliveryStatus}
        attempts_sum = 0.0
        for status, count, avg_attempts in rows:
            counts[status] = int(count)
            attempts_sum += float(avg_attempts or 0) * int(count)
        total = sum(counts.values())
        finished = counts[DeliveryStatus.SENT.value] + counts[DeliveryStatus.FAILED.value]
        return {
            "timeframe": timeframe.lower(),
            "total": total,
            "sent": counts[DeliveryStatus.SENT.value],
            "failed": counts[DeliveryStatus.FAILED.value],
            "pending": counts[DeliveryStatus.PENDING.value],
            "success_rate": round(counts[DeliveryStatus.SENT.value] / finished, 4) if finished else None,
            "avg_attempts": round(attempts_sum / total, 2) if total else 0.0,
        }

    async def list_failed(self, *, merchant_id: Optional[str] = None, limit: int = 50) -> List[WebhookDelivery]:
        stmt = (
            select(WebhookDelivery)
            .where(WebhookDelivery.status == DeliveryStatus.FAILED.value)
            .order_by(WebhookDelivery.last_attempt_at.desc())
            .limit(int(limit))
        )
        if merchant_id is not None:
            stmt = stmt.where(WebhookDelivery.merchant_id == merchant_id)
        async with lifespan_session(self._session_factory) as session:
            return list((await session.execute(stmt)).scalars().all())

    async def queue_depth(self) -> int:
        """Число заданий, ожидающих доставки."""
        stmt = select(func.count()).select_from(WebhookDelivery).where(
            WebhookDelivery.status == DeliveryStatus.PENDING.value
        )
        async with lifespan_session(self._session_factory) as session:
            return int((await session.execute(stmt)).scalar_one())

    async def cleanup_old(self, days: Optional[int] = None) -> int:
        """Удалить SENT-доставки старше N дней вместе с журналом попыток."""
        keep_days = int(days if days is not None else self._settings.WEBHOOK_RETENTION_DAYS)
        cutoff = self._clock() - timedelta(days=keep_days)
        async with lifespan_session(self._session_factory) as session:
            async with session.begin():
                ids = list(
                    (
                        await session.execute(
                            select(WebhookDelivery.id).where(
                                WebhookDelivery.status == DeliveryStatus.SENT.value,
                                WebhookDelivery.delivered_at < cutoff,
                            )
                        )
                    ).scalars()
                )
                if ids:
                    await session.execute(delete(WebhookAttemptLog).where(WebhookAttemptLog.delivery_id.in_(ids)))
                    await session.execute(delete(WebhookDelivery).where(WebhookDelivery.id.in_(ids)))
        if ids:
            logger.info("old webhook deliveries removed", extra={"count": len(ids), "days": keep_days})
        return len(ids)

    # ------------------------------------------------------------------
    # Жизненный цикл воркера
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_forever(), name="webhook-delivery-worker")
        logger.info("webhook delivery worker started")

    async def stop(self, *, drain: bool = True, timeout: float = 30.0) -> None:
        """
        Остановить воркер. drain=True: дождаться текущих попыток (не дольше
        timeout), иначе отменить их; отменённая попытка останется арендованной
        и вернётся в работу после истечения lease.
        """
        if self._task is None:
            return
        self._stop_event.set()
        pending = set(self._inflight)
        if pending and drain:
            _, still = await asyncio.wait(pending, timeout=timeout)
            for task in still:
                task.cancel()
        elif pending:
            for task in pending:
                task.cancel()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("webhook delivery worker stopped", extra={"drained": drain})

    async def _run_forever(self) -> None:
        interval = float(self._settings.WEBHOOK_POLL_INTERVAL_SEC)
        while not self._stop_event.is_set():
            processed = 0
            try:
                processed = await self.process_due()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("webhook worker tick failed", extra={"error": str(exc)})
            if processed:
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass


def delivery_to_dict(delivery: WebhookDelivery) -> Dict[str, Any]:
    """Публичное представление задания (без секрета)."""
    return {
        "id": delivery.id,
        "url": delivery.url,
        "event": delivery.event,
        "status": delivery.status,
        "attempt_count": delivery.attempt_count,
        "max_attempts": delivery.max_attempts,
        "merchant_id": delivery.merchant_id,
        "invoice_id": delivery.invoice_id,
        "next_retry_at": iso_utc(ensure_aware(delivery.next_retry_at)),
        "last_attempt_at": iso_utc(ensure_aware(delivery.last_attempt_at)),
        "delivered_at": iso_utc(ensure_aware(delivery.delivered_at)),
        "last_status_code": delivery.last_status_code,
        "last_error": delivery.last_error,
    }


__all__ = ["TIMEFRAMES", "AttemptOutcome", "WebhookDeliveryService", "delivery_to_dict"]

# =============================================================================
# Пояснения «для чайника»:
#   • Мерчант проверяет подпись так: hmac_sha256(secret, raw_body) и сравнивает
#     с X-Signature после префикса "sha256=".
#   • Порядок вебхуков одного инвойса не гарантируется: каждый payload это
#     снимок состояния со своим timestamp.
#   • FAILED-задание видно в /api/webhooks/deliveries/failed и возвращается в
#     работу через POST /api/webhooks/deliveries/{id}/retry.
# =============================================================================

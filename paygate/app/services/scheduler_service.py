# -*- coding: utf-8 -*-
# paygate/app/services/scheduler_service.py
# =============================================================================
# Назначение кода:
#   Планировщик фоновых задач платёжного ядра. Один будильник (тик каждые
#   SCHED_TICK_SEC), у каждой задачи свой интервал; «суточные» задачи идут
#   через DailyGate внутри того же цикла. Сбой одной задачи цикл не роняет.
#
# Канон/инварианты:
#   • Планировщик не содержит бизнес-логики: он вызывает run_once(services)
#     модулей scheduler/*.py, а те вызывают сервисы из ServiceContainer.
#   • Каждая задача исполняется с таймаутом; ошибка → экспоненциальный
#     backoff (до SCHED_BACKOFF_MAX_SEC), успех полностью его сбрасывает.
#   • Параллелизм ограничен семафором SCHED_MAX_PARALLEL_TASKS.
#
# ИИ-защита/самовосстановление:
#   • Межпроцессную уникальность тика обеспечивают advisory-локи внутри
#     самих задач; здесь только защита от повторного входа в процессе.
#
# Запреты:
#   • Нет прямого доступа к БД из планировщика.
#   • Нет длительных блокирующих ожиданий: stop() прерывает сон сразу.
# =============================================================================

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from paygate.app.core.logging_core import get_logger, log_context
from paygate.app.core.utils_core import iso_utc, utcnow

if TYPE_CHECKING:  # pragma: no cover
    from paygate.app.services import ServiceContainer

# async def job() -> None
JobCallable = Callable[[], Awaitable[Any]]

logger = get_logger("paygate.scheduler")


# -----------------------------------------------------------------------------
# Настройки планировщика (через .env)
# -----------------------------------------------------------------------------
class SchedulerSettings(BaseSettings):
    """
    Конфигурация планировщика:

      SCHED_ENABLED=true                 выключатель (тесты, одноразовые воркеры)
      SCHED_TICK_SEC=15                  будильник цикла (сек)
      SCHED_TASK_TIMEOUT_SEC=300         таймаут одной задачи (сек)
      SCHED_BACKOFF_START_SEC=5          стартовый backoff после ошибки (сек)
      SCHED_BACKOFF_MAX_SEC=300          максимум backoff (сек)
      SCHED_MAX_PARALLEL_TASKS=3         ограничение параллельных задач
      SCHED_JITTER_SEC=3                 случайный джиттер к сну (сек, 0..N)
      SCHED_EXPIRE_INTERVAL_SEC=60       экспирация инвойсов
      SCHED_RECONCILE_INTERVAL_SEC=300   сверка подписок
      SCHED_POLL_INTERVAL_SEC=120        fallback-опрос неотслеживаемых адресов
      SCHED_POLL_BATCH=50                адресов за один опрос
    """

    model_config = SettingsConfigDict(env_prefix="SCHED_", env_file=".env", extra="ignore")

    ENABLED: bool = Field(True)
    TICK_SEC: int = Field(15)
    TASK_TIMEOUT_SEC: int = Field(300)
    BACKOFF_START_SEC: int = Field(5)
    BACKOFF_MAX_SEC: int = Field(300)
    MAX_PARALLEL_TASKS: int = Field(3)
    JITTER_SEC: int = Field(3)
    EXPIRE_INTERVAL_SEC: int = Field(60)
    RECONCILE_INTERVAL_SEC: int = Field(300)
    POLL_INTERVAL_SEC: int = Field(120)
    POLL_BATCH: int = Field(50)

    @field_validator(
        "TICK_SEC",
        "TASK_TIMEOUT_SEC",
        "BACKOFF_START_SEC",
        "BACKOFF_MAX_SEC",
        "MAX_PARALLEL_TASKS",
        "EXPIRE_INTERVAL_SEC",
        "RECONCILE_INTERVAL_SEC",
        "POLL_INTERVAL_SEC",
        "POLL_BATCH",
    )
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("value must be > 0")
        return v

    @field_validator("JITTER_SEC")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("value must be >= 0")
        return v


# -----------------------------------------------------------------------------
# DailyGate: «не чаще раза в window» внутри общего цикла
# -----------------------------------------------------------------------------
@dataclass
class DailyGate:
    window: timedelta = field(default=timedelta(hours=24))
    last_run_at: Optional[datetime] = None

    def due(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if self.last_run_at is None:
            return True
        return (now - self.last_run_at) >= self.window

    def mark(self, now: Optional[datetime] = None) -> None:
        self.last_run_at = now or utcnow()


@dataclass
class _Job:
    name: str
    factory: Callable[[], JobCallable]
    interval: timedelta
    backoff_start: int
    daily_gate: Optional[DailyGate] = None
    backoff_sec: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    last_result: Any = None
    running: bool = False
    last_started_at: Optional[datetime] = None
    next_allowed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.backoff_sec:
            self.backoff_sec = self.backoff_start

    def due(self, now: datetime) -> bool:
        if self.daily_gate is not None and not self.daily_gate.due(now):
            return False
        if self.next_allowed_at is not None and now < self.next_allowed_at:
            return False
        if self.daily_gate is None and self.last_started_at is not None:
            return (now - self.last_started_at) >= self.interval
        return True


# -----------------------------------------------------------------------------
# Планировщик
# -----------------------------------------------------------------------------
class SchedulerService:
    """
    Централизованный планировщик. Знает только имена задач, интервалы и
    фабрики корутин; что делать, решают модули scheduler/*.py.
    """

    def __init__(
        self,
        settings: Optional[SchedulerSettings] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.s = settings or SchedulerSettings()
        self._jobs: Dict[str, _Job] = {}
        self._stop = asyncio.Event()
        self._sem = asyncio.Semaphore(self.s.MAX_PARALLEL_TASKS)
        self._rng = rng or random.Random()
        self._task: Optional[asyncio.Task[None]] = None

    # ----------------------------- Регистрация ------------------------------
    def add_job(
        self,
        name: str,
        factory: Callable[[], JobCallable],
        *,
        interval_sec: Optional[int] = None,
        daily: bool = False,
    ) -> None:
        if name in self._jobs:
            raise ValueError(f"job '{name}' already registered")
        self._jobs[name] = _Job(
            name=name,
            factory=factory,
            interval=timedelta(seconds=interval_sec or self.s.TICK_SEC),
            backoff_start=self.s.BACKOFF_START_SEC,
            daily_gate=DailyGate() if daily else None,
        )

    def register_defaults(self, services: "ServiceContainer") -> None:
        """
        Стандартные задачи ядра:
          • expire_invoices          просрочка открытых инвойсов
          • reconcile_subscriptions  сверка подписок у провайдера
          • poll_unmonitored         fallback-опрос адресов без подписки
          • check_wallet_secrets     целостность секретов (раз в сутки)
          • cleanup_deliveries       удаление старых SENT-доставок (раз в сутки)
        """
        from paygate.app.scheduler import (
            check_wallet_secrets,
            cleanup_deliveries,
            expire_invoices,
            poll_unmonitored,
            reconcile_subscriptions,
        )

        def _bind(module: Any) -> Callable[[], JobCallable]:
            async def _call() -> Any:
                return await module.run_once(services, settings=self.s)

            return lambda: _call

        self.add_job("expire_invoices", _bind(expire_invoices), interval_sec=self.s.EXPIRE_INTERVAL_SEC)
        self.add_job(
            "reconcile_subscriptions",
            _bind(reconcile_subscriptions),
            interval_sec=self.s.RECONCILE_INTERVAL_SEC,
        )
        self.add_job("poll_unmonitored", _bind(poll_unmonitored), interval_sec=self.s.POLL_INTERVAL_SEC)
        self.add_job("check_wallet_secrets", _bind(check_wallet_secrets), daily=True)
        self.add_job("cleanup_deliveries", _bind(cleanup_deliveries), daily=True)
        logger.info("scheduler jobs registered", extra={"jobs": list(self._jobs)})

    # ------------------------------- Жизненный цикл -------------------------
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        logger.info(
            "scheduler start",
            extra={
                "jobs": len(self._jobs),
                "tick_sec": self.s.TICK_SEC,
                "timeout_sec": self.s.TASK_TIMEOUT_SEC,
                "max_parallel": self.s.MAX_PARALLEL_TASKS,
            },
        )
        self._task = asyncio.create_task(self._loop(), name="scheduler:main")

    async def stop(self, *, timeout: float = 30.0) -> None:
        """Остановить цикл: текущий тик дорабатывает, новый не начинается."""
        self._stop.set()
        task, self._task = self._task, None
        if task is None:
            return
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            task.cancel()
            logger.warning("scheduler stop timed out, main task cancelled")

    async def run_single_tick(self) -> None:
        """Один тик без вечного цикла (ручной запуск, тесты)."""
        await self._run_tick()

    async def _loop(self) -> None:
        try:
            while not self._stop.is_set():
                await self._run_tick()
                jitter = self._rng.randint(0, self.s.JITTER_SEC) if self.s.JITTER_SEC else 0
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.s.TICK_SEC + jitter)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("scheduler cancelled")
            raise
        except Exception:
            logger.exception("scheduler loop crashed")
        finally:
            logger.info("scheduler stopped")

    # ------------------------------- Один тик --------------------------------
    async def _run_tick(self) -> None:
        now = utcnow()
        due = [job for job in self._jobs.values() if not job.running and job.due(now)]
        if not due:
            return

        async def _guarded(job: _Job) -> None:
            async with self._sem:
                await self._run_job(job)

        await asyncio.gather(
            *(asyncio.create_task(_guarded(job), name=f"scheduler:job:{job.name}") for job in due),
            return_exceptions=True,
        )

    async def _run_job(self, job: _Job) -> None:
        if job.running:
            return
        with log_context(job=job.name):
            await self._execute(job)

    async def _execute(self, job: _Job) -> None:
        job.running = True
        job.last_started_at = utcnow()
        try:
            job.last_result = await asyncio.wait_for(job.factory()(), timeout=self.s.TASK_TIMEOUT_SEC)
            job.consecutive_failures = 0
            job.last_error = None
            job.backoff_sec = self.s.BACKOFF_START_SEC
            job.next_allowed_at = None
            if job.daily_gate is not None:
                job.daily_gate.mark()
            logger.info("job done", extra={"job": job.name, "result": job.last_result})
        except asyncio.TimeoutError:
            self._fail(job, "timeout")
            logger.warning(
                "job timeout",
                extra={"job": job.name, "failures": job.consecutive_failures, "backoff_sec": job.backoff_sec},
            )
        except Exception as exc:
            self._fail(job, str(exc))
            logger.exception(
                "job failed",
                extra={"job": job.name, "failures": job.consecutive_failures, "backoff_sec": job.backoff_sec},
            )
        finally:
            job.running = False

    def _fail(self, job: _Job, error: str) -> None:
        job.consecutive_failures += 1
        job.last_error = error
        if job.consecutive_failures > 1:
            job.backoff_sec = min(job.backoff_sec * 2, self.s.BACKOFF_MAX_SEC)
        job.next_allowed_at = utcnow() + timedelta(seconds=job.backoff_sec)

    # ------------------------------- Наблюдаемость ---------------------------
    def list_jobs(self) -> List[Dict[str, Any]]:
        """Сводка по задачам для /health."""
        return [
            {
                "name": j.name,
                "daily": j.daily_gate is not None,
                "interval_sec": int(j.interval.total_seconds()),
                "running": j.running,
                "failures": j.consecutive_failures,
                "last_error": j.last_error,
                "backoff_sec": j.backoff_sec,
                "last_started_at": iso_utc(j.last_started_at),
                "next_allowed_at": iso_utc(j.next_allowed_at),
            }
            for j in self._jobs.values()
        ]


def build_scheduler(services: "ServiceContainer", settings: Optional[SchedulerSettings] = None) -> SchedulerService:
    scheduler = SchedulerService(settings)
    scheduler.register_defaults(services)
    return scheduler


__all__ = ["DailyGate", "SchedulerService", "SchedulerSettings", "build_scheduler"]

# =============================================================================
# Пояснения «для чайника»:
#   • Тик частый (15 с), но каждая задача запускается не чаще своего
#     интервала: экспирация раз в минуту, сверка подписок раз в 5 минут.
#   • Суточные задачи не ждут реальных суток: DailyGate пропускает их на
#     первом тике после старта и затем раз в 24 часа.
#   • Несколько процессов uvicorn запускают свои планировщики; одну и ту же
#     задачу на тике выполнит только тот, кто взял advisory-лок.
# =============================================================================

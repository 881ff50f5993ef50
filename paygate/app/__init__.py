# -*- coding: utf-8 -*-
# paygate/app/__init__.py
# ==============================================================================
# Paygate: фабрика FastAPI-приложения
# ------------------------------------------------------------------------------
# Назначение: создаёт и конфигурирует приложение платёжного ядра: стартовые
# проверки, контейнер сервисов в app.state, воркер доставки вебхуков,
# планировщик фоновых задач, middleware корреляции и обработчики ошибок.
#
# Канон/инварианты:
#   • Проверки старта (ключ vault, стратегии деривации) выполняются до
#     приёма первого запроса; нарушение → процесс не стартует.
#   • Сервисы собираются один раз на процесс (build_services) и передаются
#     роутам через зависимость get_services.
#   • Фоновые циклы имеют явный жизненный цикл: start при старте, stop с
#     дренажом при остановке.
#
# Запреты:
#   • Никаких денежных операций в фабрике.
#   • Никаких глобальных синглтонов сервисов вне app.state.
# ==============================================================================
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from .core.config_core import Settings, get_settings
from .core.errors_core import setup_exception_handlers
from .core.logging_core import CorrelationIdMiddleware, get_logger
from .core.system_locks import init_system_locks
from .routes import register
from .services import ServiceContainer, build_services
from .services.scheduler_service import SchedulerSettings, build_scheduler

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    services: Optional[ServiceContainer] = None,
    scheduler_settings: Optional[SchedulerSettings] = None,
    start_background: bool = True,
) -> FastAPI:
    """
    Создать приложение. Для тестов можно передать готовый контейнер сервисов
    и выключить фоновые циклы (start_background=False).
    """
    cfg = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        init_system_locks(cfg)
        container = services or build_services(cfg)
        app.state.services = container
        app.state.scheduler = None

        sched_cfg = scheduler_settings or SchedulerSettings()
        if start_background:
            await container.webhooks.start()
            if sched_cfg.ENABLED:
                app.state.scheduler = build_scheduler(container, sched_cfg)
                await app.state.scheduler.start()
        logger.info(
            "paygate started",
            extra={"env": cfg.env_normalized, "background": start_background},
        )
        try:
            yield
        finally:
            if app.state.scheduler is not None:
                await app.state.scheduler.stop()
            if container.webhooks.running:
                await container.webhooks.stop(drain=True)
            logger.info("paygate stopped")

    app = FastAPI(title=cfg.PROJECT_NAME, version=cfg.APP_VERSION, lifespan=lifespan)
    app.add_middleware(CorrelationIdMiddleware)
    setup_exception_handlers(app)
    register(app, prefix=cfg.API_PREFIX)
    return app


__all__ = ["create_app"]

# ==============================================================================
# Пояснения «для чайника»:
#   • Этот модуль ничего не пишет в БД и не двигает деньги: только собирает
#     приложение и управляет фоновыми циклами.
#   • Воркер вебхуков и планировщик живут внутри процесса uvicorn; при
#     нескольких процессах задачи планировщика разводятся advisory-локами,
#     а доставки вебхуков арендой (lease) строк.
# ==============================================================================

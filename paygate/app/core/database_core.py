# -*- coding: utf-8 -*-
# paygate/app/core/database_core.py
# =============================================================================
# Назначение кода:
#   • Единая точка работы с БД Paygate (PostgreSQL + asyncpg + SQLAlchemy 2.0).
#   • Declarative Base всех моделей и переносимый JSON-тип.
#   • Создание и конфигурация AsyncEngine и async_sessionmaker.
#   • Безопасная выдача сессий для FastAPI-роутов, сервисов и планировщика.
#   • Health-утилиты (ping, мягкий реинициализатор).
#
# Канон / инварианты:
#   • Только async-движок (create_async_engine).
#   • DSN берём из Settings.database_url_asyncpg().
#   • Сессии expire_on_commit=False, autoflush=False.
#   • Сервисы получают фабрику сессий явно (ServiceContainer), глобальная
#     фабрика этого модуля нужна только для сборки контейнера и Alembic.
#
# Запреты:
#   • Никакой бизнес-логики в этом модуле.
#   • Никакого DDL: схема создаётся миграциями Alembic.
# =============================================================================

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Optional

from sqlalchemy import JSON, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from paygate.app.core.config_core import get_settings
from paygate.app.core.logging_core import get_logger

logger = get_logger(__name__)
settings = get_settings()

# -----------------------------------------------------------------------------
# Declarative Base и общие типы колонок
# -----------------------------------------------------------------------------
CORE_SCHEMA: Optional[str] = settings.db_schema


class Base(DeclarativeBase):
    """Единый declarative Base проекта (все модели наследуются от него)."""


# JSONB на PostgreSQL, обычный JSON на остальных диалектах (SQLite в тестах).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def fk(table: str, column: str = "id") -> str:
    """Полное имя колонки для ForeignKey с учётом схемы ядра."""
    if CORE_SCHEMA:
        return f"{CORE_SCHEMA}.{table}.{column}"
    return f"{table}.{column}"


def table_args(*items: Any) -> tuple:
    """__table_args__ с подстановкой схемы ядра (если задана)."""
    if CORE_SCHEMA:
        return (*items, {"schema": CORE_SCHEMA})
    return tuple(items)


def is_postgres(session: AsyncSession) -> bool:
    """True, если сессия привязана к PostgreSQL (advisory-локи, SKIP LOCKED)."""
    bind = session.get_bind()
    return bind.dialect.name == "postgresql"


_TRANSIENT_MARKERS = ("deadlock", "could not serialize", "serialization", "database is locked")


def is_transient_db_error(exc: BaseException) -> bool:
    """
    Мягкие коллизии БД (deadlock, serialization failure, занятая SQLite):
    операцию можно повторить с коротким backoff.
    """
    if not isinstance(exc, (OperationalError, DBAPIError)):
        return False
    msg = str(exc).lower()
    return any(marker in msg for marker in _TRANSIENT_MARKERS)


# -----------------------------------------------------------------------------
# Глобальные объекты: движок и фабрика сессий
# -----------------------------------------------------------------------------
_engine: Optional[AsyncEngine] = None
_SessionFactory: Optional[async_sessionmaker[AsyncSession]] = None
_engine_lock = asyncio.Lock()


def _create_engine() -> AsyncEngine:
    """
    Создаёт новый AsyncEngine на базе актуальных настроек.

    Особенности:
    • DSN приводится к asyncpg-формату через Settings.database_url_asyncpg().
    • pool_pre_ping для раннего обнаружения «умерших» соединений.
    • Параметры пула передаются только серверным СУБД (SQLite их не знает).
    """
    dsn = settings.database_url_asyncpg()
    logger.info("Creating async DB engine", extra={"dsn_set": bool(dsn)})
    kwargs: dict[str, Any] = {"pool_pre_ping": True, "echo": settings.DEBUG}
    if not dsn.startswith("sqlite"):
        kwargs["pool_size"] = settings.DB_POOL_SIZE
        kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW
    return create_async_engine(dsn, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Строит async_sessionmaker поверх переданного движка.

    • expire_on_commit=False: объекты остаются валидными после commit().
    • autoflush=False: явный контроль flush.
    """
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
        autoflush=False,
        class_=AsyncSession,
    )


async def reset_engine() -> None:
    """
    Мягко пересоздаёт движок и фабрику сессий (после критических сбоев
    подключения). Старый движок закрывается через dispose().
    """
    global _engine, _SessionFactory

    async with _engine_lock:
        old_engine = _engine
        new_engine = _create_engine()
        _SessionFactory = create_session_factory(new_engine)
        _engine = new_engine
        logger.info("DB engine has been reset successfully")
        if old_engine is not None:
            await old_engine.dispose()


def get_engine() -> AsyncEngine:
    """Возвращает текущий AsyncEngine, создавая его лениво при первом вызове."""
    global _engine, _SessionFactory

    if _engine is None:
        _engine = _create_engine()
        _SessionFactory = create_session_factory(_engine)
        logger.info("DB engine lazily initialized")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Возвращает фабрику сессий (движок создаётся через get_engine())."""
    global _SessionFactory

    if _SessionFactory is None:
        _SessionFactory = create_session_factory(get_engine())
        logger.info("Session factory initialized")
    return _SessionFactory


# -----------------------------------------------------------------------------
# Сессии: контекст-менеджер и FastAPI-зависимость
# -----------------------------------------------------------------------------
@asynccontextmanager
async def lifespan_session(
    factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncIterator[AsyncSession]:
    """
    Короткоживущая сессия для планировщика/сервисов:
        async with lifespan_session(factory) as session:
            ...
            await session.commit()

    При исключении выполняется rollback(), сессия закрывается всегда.
    """
    session = (factory or get_session_factory())()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Зависимость для FastAPI-роутов. commit управляется вызывающим кодом.
    """
    async with lifespan_session() as session:
        yield session


# -----------------------------------------------------------------------------
# Health-check / ping
# -----------------------------------------------------------------------------
async def db_ping(engine: Optional[AsyncEngine] = None) -> bool:
    """
    Простейший health-check БД: True, если SELECT 1 прошёл.
    Используется в /health и перед запуском фоновых воркеров.
    """
    target = engine or get_engine()
    try:
        async with target.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (OperationalError, DBAPIError) as exc:
        logger.error("DB ping failed: DB is not reachable", extra={"error": str(exc)})
        return False


# =============================================================================
# ВАЖНО:
# • Движок не создаётся при импорте, чтобы не ломать Alembic и тесты.
# • get_engine()/get_session_factory() создадут его лениво.
# =============================================================================

__all__ = [
    "AsyncSession",
    "AsyncEngine",
    "Base",
    "CORE_SCHEMA",
    "JSONType",
    "fk",
    "table_args",
    "is_postgres",
    "is_transient_db_error",
    "get_engine",
    "get_session_factory",
    "create_session_factory",
    "lifespan_session",
    "get_db",
    "db_ping",
    "reset_engine",
]

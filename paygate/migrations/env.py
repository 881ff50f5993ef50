# -*- coding: utf-8 -*-
# paygate/migrations/env.py
# =============================================================================
# Назначение:
#   Окружение Alembic для Paygate: DSN и схема ядра из config_core,
#   метаданные из paygate.app.models, async-движок (asyncpg).
#
# Канон/инварианты:
#   • Таблица alembic_version живёт в схеме ядра рядом с таблицами.
#   • Автогенерация смотрит только на схему ядра; чужие схемы той же БД
#     не трогаются.
#   • compare_type/compare_server_default включены: Numeric(38, 18) для сумм
#     должен совпадать с моделями.
# =============================================================================

from __future__ import annotations

import asyncio
from logging.config import fileConfig
from typing import Any, Dict

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from paygate.app.core.config_core import get_settings
from paygate.app.core.database_core import Base
from paygate.app.core.logging_core import get_logger
from paygate.app.models import models_health

config = context.config
if config.config_file_name:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

logger = get_logger("paygate.migrations")
settings = get_settings()

health = models_health()
if not health["ok"]:
    raise RuntimeError(f"cannot migrate, tables missing from metadata: {health['missing']}")


def _include_object(obj: Any, name: str, type_: str, reflected: bool, compare_to: Any) -> bool:
    if type_ == "table":
        return getattr(obj, "schema", None) == settings.db_schema
    return True


def _configure_kwargs() -> Dict[str, Any]:
    return {
        "target_metadata": Base.metadata,
        "include_schemas": bool(settings.db_schema),
        "include_object": _include_object,
        "version_table_schema": settings.db_schema,
        "compare_type": True,
        "compare_server_default": True,
    }


def run_offline() -> None:
    """SQL-скрипт без подключения к БД (alembic upgrade --sql)."""
    context.configure(
        url=settings.database_url_asyncpg(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(),
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_sync(connection: Connection) -> None:
    context.configure(connection=connection, **_configure_kwargs())
    with context.begin_transaction():
        context.run_migrations()


async def run_online() -> None:
    engine = create_async_engine(settings.database_url_asyncpg(), poolclass=pool.NullPool)
    logger.info("running migrations", extra={"schema": settings.db_schema or "-"})
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_sync)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    asyncio.run(run_online())

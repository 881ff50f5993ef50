# -*- coding: utf-8 -*-
# paygate/app/core/system_locks.py
# =============================================================================
# Назначение кода:
#   «Замки» Paygate:
#   • стартовые проверки, без которых процесс не должен принимать трафик
#     (ключ vault, стратегии вывода адресов для всех семейств цепочек);
#   • межпроцессные advisory-локи PostgreSQL для фоновых задач, чтобы один
#     тик конкретной задачи в кластере выполнял только один процесс.
#
# Канон / инварианты:
#   • Ошибка конфигурации на старте → ConfigurationError, приложение не
#     поднимается (lifespan FastAPI падает).
#   • Advisory-лок берётся неблокирующе (pg_try_advisory_lock): занят, значит
#     тик пропускается, а не ждёт.
#   • На SQLite (тесты) advisory-локов нет: считаем, что лок получен.
#
# Запреты:
#   • Никакой бизнес-логики денег и инвойсов.
#   • Никогда не логировать значение ключа vault.
# =============================================================================

from __future__ import annotations

import zlib
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.app.core.config_core import Settings, get_settings
from paygate.app.core.database_core import is_postgres
from paygate.app.core.errors_core import ConfigurationError
from paygate.app.core.logging_core import get_logger
from paygate.app.core.vault_core import KeyMaterialVault

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Стартовые проверки
# -----------------------------------------------------------------------------
def assert_vault_key(settings: Settings) -> None:
    """Ключ vault задан и достаточной длины (иначе ConfigurationError)."""
    KeyMaterialVault(settings.VAULT_ENCRYPTION_KEY)


def assert_derivation_strategies() -> None:
    """У каждого семейства цепочек есть стратегия вывода адреса."""
    from paygate.app.services.derivation_service import verify_strategies

    verify_strategies()


def init_system_locks(settings: Settings | None = None) -> Dict[str, str]:
    """
    Жёсткие проверки старта. Вызывается из lifespan приложения и из
    точки входа планировщика. Любое нарушение → ConfigurationError.
    """
    cfg = settings or get_settings()
    try:
        assert_vault_key(cfg)
        assert_derivation_strategies()
    except ConfigurationError as exc:
        logger.critical("SystemLocks: startup check failed", extra={"error": exc.code, "reason": exc.message})
        raise
    logger.info("SystemLocks: vault key and derivation strategies validated")
    return {"vault": "ok", "derivation": "ok"}


# -----------------------------------------------------------------------------
# Advisory-локи
# -----------------------------------------------------------------------------
def lock_key(name: str) -> int:
    """Стабильный 32-битный ключ advisory-лока по имени задачи."""
    return zlib.crc32(f"paygate:{name}".encode("utf-8"))


async def try_advisory_lock(session: AsyncSession, key: int) -> bool:
    """Неблокирующая попытка взять сессионный advisory-лок."""
    if not is_postgres(session):
        return True
    result = await session.execute(text("SELECT pg_try_advisory_lock(:k)").bindparams(k=int(key)))
    return bool(result.scalar_one())


async def advisory_unlock(session: AsyncSession, key: int) -> None:
    if not is_postgres(session):
        return
    await session.execute(text("SELECT pg_advisory_unlock(:k)").bindparams(k=int(key)))


@asynccontextmanager
async def advisory_lock(session: AsyncSession, name: str) -> AsyncIterator[bool]:
    """
    async with advisory_lock(session, "expire_invoices") as acquired:
        if not acquired:
            return
        ...
    """
    key = lock_key(name)
    acquired = await try_advisory_lock(session, key)
    if not acquired:
        logger.info("advisory lock busy, tick skipped", extra={"lock": name})
    try:
        yield acquired
    finally:
        if acquired:
            await advisory_unlock(session, key)


__all__ = [
    "assert_vault_key",
    "assert_derivation_strategies",
    "init_system_locks",
    "lock_key",
    "try_advisory_lock",
    "advisory_unlock",
    "advisory_lock",
]

# =============================================================================
# Пояснения «для чайника»:
#   • Если ключ vault короче 32 байт, сервис не стартует: лучше не работать
#     вовсе, чем хранить сиды мастер-кошельков незашифрованными.
#   • advisory_lock нужен планировщику: при нескольких uvicorn-процессах
#     только один из них выполнит, например, экспирацию инвойсов на тике.
# =============================================================================

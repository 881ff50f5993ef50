# -*- coding: utf-8 -*-
# paygate/app/core/__init__.py
# =============================================================================
# Назначение кода:
# Единая точка входа ядра Paygate: загрузка настроек, инициализация
# логирования и безопасный экспорт утилит ядра во внешние модули
# (сервисы, роуты, планировщик), плюс диагностический отчёт core_health().
#
# Канон/инварианты:
# • Источник истины: config_core.get_settings().
# • Жёсткие проверки старта живут в system_locks.init_system_locks() и
#   вызываются из lifespan приложения, здесь только мягкий отчёт.
#
# Запреты:
# • Не импортируем тяжёлые слои (models/services) на уровне модуля.
# =============================================================================

from __future__ import annotations

from typing import Any, Dict, List

from .config_core import get_settings
from .logging_core import get_logger
from . import utils_core

CORE_VERSION = "1.0.0"

logger = get_logger(__name__)

__all__ = [
    "CORE_VERSION",
    "get_settings",
    "logger",
    "core_health",
    "utils_core",
]


def core_health() -> Dict[str, Any]:
    """
    Быстрые sanity-checks ключевых настроек без падений: только отчёт
    для /health и логов старта.
    """
    settings = get_settings()
    errors: List[str] = []

    if not settings.DATABASE_URL:
        errors.append("DATABASE_URL must be set.")
    if not settings.VAULT_ENCRYPTION_KEY or len(settings.VAULT_ENCRYPTION_KEY.encode("utf-8")) < 32:
        errors.append("VAULT_ENCRYPTION_KEY must hold at least 32 bytes.")
    if not settings.CHAIN_SOURCE_API_KEY:
        errors.append("CHAIN_SOURCE_API_KEY is not set: addresses will not be monitored.")
    if not settings.webhook_retry_delays:
        errors.append("WEBHOOK_RETRY_DELAYS_SEC must not be empty.")

    return {
        "ok": not errors,
        "errors": errors,
        "core_version": CORE_VERSION,
        "snapshot": settings.debug_dump(),
    }

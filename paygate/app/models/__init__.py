# -*- coding: utf-8 -*-
# paygate/app/models/__init__.py
# =============================================================================
# Назначение кода:
# Единая точка входа слоя моделей Paygate:
#  • импорт всех модулей моделей (регистрация таблиц в Base.metadata для
#    Alembic и тестов);
#  • реестр MODEL_REGISTRY для доступа к классам по имени;
#  • models_health(): отчёт о полноте набора таблиц.
#
# Канон/инварианты:
#  • Модели описывают структуру данных, НЕ содержат бизнес-логики.
#  • Деньги меняются только в services/ledger_service.py.
#
# Запреты:
#  • Не размещать здесь DDL/DML и «create_all()»: схема создаётся Alembic.
# =============================================================================

from __future__ import annotations

import inspect
from typing import Any, Dict, List, Type

from ..core.database_core import Base
from ..core.logging_core import get_logger
from . import invoice_models, wallet_models, webhook_models
from .invoice_models import (
    ChainTransaction,
    Invoice,
    InvoiceStatus,
    Merchant,
    MerchantWallet,
    OPEN_INVOICE_STATUSES,
    TERMINAL_INVOICE_STATUSES,
    TxStatus,
)
from .wallet_models import MasterWallet, PaymentAddress, WalletStatus
from .webhook_models import (
    ChainNotificationLog,
    DeliveryStatus,
    WebhookAttemptLog,
    WebhookDelivery,
)

logger = get_logger(__name__)

_MODEL_MODULES = (wallet_models, invoice_models, webhook_models)


def _collect_models() -> Dict[str, Type[Base]]:
    registry: Dict[str, Type[Base]] = {}
    for module in _MODEL_MODULES:
        for name, obj in inspect.getmembers(module, inspect.isclass):
            if issubclass(obj, Base) and obj is not Base and getattr(obj, "__tablename__", None):
                registry[name] = obj
    return registry


MODEL_REGISTRY: Dict[str, Type[Base]] = _collect_models()

# Таблицы, без которых ядро не работает.
_REQUIRED_TABLES: List[str] = [
    "master_wallets",
    "payment_addresses",
    "merchants",
    "merchant_wallets",
    "invoices",
    "chain_transactions",
    "webhook_deliveries",
]


def models_health() -> Dict[str, Any]:
    """Какие ключевые таблицы зарегистрированы в metadata, каких нет."""
    present = {table.name for table in Base.metadata.tables.values()}
    missing = [name for name in _REQUIRED_TABLES if name not in present]
    if missing:
        logger.error("models: required tables are missing", extra={"missing": missing})
    return {"ok": not missing, "missing": missing, "models": sorted(MODEL_REGISTRY)}


__all__ = [
    "Base",
    "MODEL_REGISTRY",
    "models_health",
    "MasterWallet",
    "PaymentAddress",
    "WalletStatus",
    "Merchant",
    "MerchantWallet",
    "Invoice",
    "InvoiceStatus",
    "OPEN_INVOICE_STATUSES",
    "TERMINAL_INVOICE_STATUSES",
    "ChainTransaction",
    "TxStatus",
    "WebhookDelivery",
    "WebhookAttemptLog",
    "ChainNotificationLog",
    "DeliveryStatus",
]

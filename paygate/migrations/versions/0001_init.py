# -*- coding: utf-8 -*-
"""Paygate core schema.

Назначение:
    • Схема ядра (DB_SCHEMA_CORE, только PostgreSQL) и таблицы в порядке
      внешних ключей: кошельки → мерчанты → инвойсы → адреса и транзакции →
      доставки вебхуков и журналы.
    • Колонки, уникальности и индексы берутся из ORM-моделей, поэтому
      миграция и модели не расходятся.

Канон/инварианты:
    • Только DDL.
    • Повторный upgrade на существующей БД ничего не ломает (checkfirst).
    • downgrade удаляет таблицы в обратном порядке; схема остаётся.
"""

from __future__ import annotations

from typing import List

from alembic import op
from sqlalchemy import Table, text

from paygate.app.core.config_core import get_settings
from paygate.app.core.database_core import Base
from paygate.app.core.logging_core import get_logger
from paygate.app.models import MODEL_REGISTRY, models_health

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels = None
depends_on = None

logger = get_logger(__name__)
settings = get_settings()

TABLE_ORDER: List[str] = [
    "master_wallets",
    "merchants",
    "merchant_wallets",
    "invoices",
    "payment_addresses",
    "chain_transactions",
    "webhook_deliveries",
    "webhook_attempt_logs",
    "chain_notification_logs",
]


def _tables() -> List[Table]:
    if not MODEL_REGISTRY or not models_health()["ok"]:
        raise RuntimeError("paygate models are not fully registered")
    by_name = {table.name: table for table in Base.metadata.tables.values()}
    return [by_name[name] for name in TABLE_ORDER]


def upgrade() -> None:
    bind = op.get_bind()
    schema = settings.db_schema
    if schema and bind.dialect.name == "postgresql":
        bind.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema}"'))
    for table in _tables():
        logger.info("creating table", extra={"table": table.fullname})
        table.create(bind=bind, checkfirst=True)


def downgrade() -> None:
    bind = op.get_bind()
    for table in reversed(_tables()):
        logger.info("dropping table", extra={"table": table.fullname})
        table.drop(bind=bind, checkfirst=True)

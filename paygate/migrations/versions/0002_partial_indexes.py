# -*- coding: utf-8 -*-
"""Partial indexes for the hot paths (PostgreSQL only).

Назначение:
    • Поиск открытого инвойса по депозитному адресу (каждое уведомление
      провайдера).
    • Выборка созревших доставок вебхуков воркером.
    • Выборка адресов без подписки для reconcile.

Канон/инварианты:
    • На других диалектах миграция ничего не делает: обычные индексы из
      моделей там уже есть.
    • IF NOT EXISTS / IF EXISTS: повторный запуск безопасен.
"""

from __future__ import annotations

from typing import List, Tuple

from alembic import op
from sqlalchemy import text

from paygate.app.core.config_core import get_settings

# revision identifiers, used by Alembic.
revision: str = "0002"
down_revision: str | None = "0001"
branch_labels = None
depends_on = None

settings = get_settings()

# (имя индекса, таблица, колонки, условие)
PARTIAL_INDEXES: List[Tuple[str, str, str, str]] = [
    ("ix_invoices_open_address", "invoices", "deposit_address", "status IN ('PENDING', 'UNDERPAID')"),
    ("ix_webhook_deliveries_pending_due", "webhook_deliveries", "next_retry_at", "status = 'PENDING'"),
    ("ix_payment_addresses_unmonitored", "payment_addresses", "id", "subscription_active = false"),
]


def _qualified(name: str) -> str:
    schema = settings.db_schema
    return f'"{schema}".{name}' if schema else name


def _is_postgres() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    if not _is_postgres():
        return
    for name, table, columns, where in PARTIAL_INDEXES:
        op.execute(text(f"CREATE INDEX IF NOT EXISTS {name} ON {_qualified(table)} ({columns}) WHERE {where}"))


def downgrade() -> None:
    if not _is_postgres():
        return
    for name, _table, _columns, _where in reversed(PARTIAL_INDEXES):
        op.execute(text(f"DROP INDEX IF EXISTS {_qualified(name)}"))

# -*- coding: utf-8 -*-
# paygate/app/models/webhook_models.py
# =============================================================================
# Назначение кода:
#   ORM-модели доставки и приёма уведомлений:
#   • WebhookDelivery: задание исходящего вебхука мерчанту (outbox);
#   • WebhookAttemptLog: журнал каждой попытки (статус, заголовки, тело);
#   • ChainNotificationLog: журнал входящих уведомлений провайдера цепочек.
#
# Канон/инварианты:
#   • attempt_count ≤ max_attempts (CHECK): исчерпание → status=FAILED
#     (dead-letter), задание не удаляется и доступно для retry.
#   • Секрет подписи хранится только шифротекстом vault и никогда не
#     попадает в журнал попыток.
#   • next_retry_at IS NULL для терминальных статусов SENT/FAILED.
#
# Запреты:
#   • Никакой бизнес-логики и HTTP в моделях.
# =============================================================================

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database_core import Base, JSONType, fk, table_args


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class WebhookDelivery(Base):
    """
    Задание доставки вебхука.

      • payload: JSON события; тело запроса = canonical_json(payload).
      • event: тип события (invoice.payment_received, invoice.expired, ...).
      • signing_secret: шифротекст vault или NULL (без подписи).
      • lease_until: аренда задания воркером (защита от двойной доставки
        несколькими процессами).
    """

    __tablename__ = "webhook_deliveries"
    __table_args__ = table_args(
        CheckConstraint("attempt_count >= 0", name="ck_webhook_deliveries_attempts_nonneg"),
        CheckConstraint("max_attempts >= 1", name="ck_webhook_deliveries_max_attempts_pos"),
        CheckConstraint("attempt_count <= max_attempts", name="ck_webhook_deliveries_attempts_bounded"),
        CheckConstraint("status IN ('PENDING','SENT','FAILED')", name="ck_webhook_deliveries_status_enum"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    event: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)

    merchant_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    invoice_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    signing_secret: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    timeout_sec: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=DeliveryStatus.PENDING.value)

    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    lease_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<WebhookDelivery id={self.id} {self.event} {self.status} {self.attempt_count}/{self.max_attempts}>"


Index("ix_webhook_deliveries_due", WebhookDelivery.status, WebhookDelivery.next_retry_at)


class WebhookAttemptLog(Base):
    """Одна попытка доставки: что ушло и что вернулось (без секрета)."""

    __tablename__ = "webhook_attempt_logs"
    __table_args__ = table_args()

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    delivery_id: Mapped[str] = mapped_column(
        String(32), ForeignKey(fk("webhook_deliveries"), ondelete="CASCADE"), nullable=False, index=True
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    request_headers: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    response_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_headers: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    response_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    retry_delay_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self) -> str:
        return f"<WebhookAttemptLog delivery={self.delivery_id} #{self.attempt} status={self.response_status}>"


class ChainNotificationLog(Base):
    """
    Журнал входящих уведомлений провайдера цепочек.
    dedupe_key = tx_hash (или sha256 тела, если хэша нет).
    result: applied | duplicate | pending | ignored | invalid | error.
    """

    __tablename__ = "chain_notification_logs"
    __table_args__ = table_args()

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dedupe_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    chain: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    amount: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    invoice_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    result: Mapped[str] = mapped_column(String(16), nullable=False)
    detail: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self) -> str:
        return f"<ChainNotificationLog {self.dedupe_key} {self.result}>"


Index("ix_chain_notification_logs_created", ChainNotificationLog.created_at)


__all__ = [
    "DeliveryStatus",
    "WebhookDelivery",
    "WebhookAttemptLog",
    "ChainNotificationLog",
]

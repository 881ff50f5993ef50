# -*- coding: utf-8 -*-
# paygate/app/models/invoice_models.py
# =============================================================================
# Назначение кода:
#   ORM-модели платёжного контура Paygate:
#   • Merchant: мерчант и его endpoint для вебхуков;
#   • MerchantWallet: балансы мерчанта по паре (актив, сеть);
#   • Invoice: платёжный запрос и его статусная машина;
#   • ChainTransaction: наблюдённая on-chain транзакция (tx_hash UNIQUE).
#
# Канон/инварианты:
#   • Денежная точность Numeric(38,18): хватает 18 знаков EVM-активов.
#   • Invoice.amount_paid монотонно не убывает и равен сумме подтверждённых
#     транзакций, зачтённых инвойсу.
#   • ChainTransaction.tx_hash UNIQUE: ключ идемпотентности зачисления.
#   • Балансы MerchantWallet меняются только инкрементом внутри единицы
#     работы ledger_service вместе с Invoice и ChainTransaction.
#   • client_idk UNIQUE в пределах мерчанта (read-through по Idempotency-Key).
#
# Запреты:
#   • Никакой бизнес-логики и пересчётов в моделях.
# =============================================================================

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database_core import Base, JSONType, fk, table_args

MONEY = Numeric(38, 18)


class InvoiceStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    UNDERPAID = "UNDERPAID"
    OVERPAID = "OVERPAID"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


# Статусы, из которых статусная машина больше не уходит.
TERMINAL_INVOICE_STATUSES = frozenset(
    {InvoiceStatus.PAID.value, InvoiceStatus.OVERPAID.value, InvoiceStatus.EXPIRED.value, InvoiceStatus.CANCELLED.value}
)
# Инвойсы, за адресами которых ещё нужно следить.
OPEN_INVOICE_STATUSES = frozenset({InvoiceStatus.PENDING.value, InvoiceStatus.UNDERPAID.value})


class TxStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"


class Merchant(Base):
    """Мерчант: получатель средств и вебхуков."""

    __tablename__ = "merchants"
    __table_args__ = table_args()

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    webhook_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    # шифротекст vault
    webhook_secret: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<Merchant id={self.id} name={self.name!r}>"


class MerchantWallet(Base):
    """
    Балансы мерчанта по паре (актив, сеть):
      • available_balance: подтверждённые поступления;
      • pending_balance: поступления без нужного числа подтверждений;
      • locked_balance: зарезервировано под выводы (вне этого ядра).
    """

    __tablename__ = "merchant_wallets"
    __table_args__ = table_args(
        UniqueConstraint("merchant_id", "asset", "network", name="uq_merchant_wallets_pair"),
        CheckConstraint("available_balance >= 0", name="ck_merchant_wallets_available_nonneg"),
        CheckConstraint("pending_balance >= 0", name="ck_merchant_wallets_pending_nonneg"),
        CheckConstraint("locked_balance >= 0", name="ck_merchant_wallets_locked_nonneg"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    merchant_id: Mapped[str] = mapped_column(
        String(32), ForeignKey(fk("merchants"), ondelete="CASCADE"), nullable=False, index=True
    )
    asset: Mapped[str] = mapped_column(String(16), nullable=False)
    network: Mapped[str] = mapped_column(String(32), nullable=False)

    available_balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    pending_balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    locked_balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<MerchantWallet merchant={self.merchant_id} {self.asset}/{self.network} "
            f"available={self.available_balance} pending={self.pending_balance}>"
        )


class Invoice(Base):
    """
    Платёжный запрос мерчанта.

      • amount / amount_paid: запрошено / зачтено (подтверждённые tx).
      • currency / network: актив и каноническая сеть (после нормализации алиасов).
      • status: PENDING → PAID | UNDERPAID | OVERPAID | EXPIRED | CANCELLED.
      • deposit_address / qr_data: куда платить и payload для QR.
      • client_idk: Idempotency-Key клиента (UNIQUE в пределах мерчанта).
    """

    __tablename__ = "invoices"
    __table_args__ = table_args(
        UniqueConstraint("merchant_id", "client_idk", name="uq_invoices_merchant_idk"),
        CheckConstraint("amount > 0", name="ck_invoices_amount_positive"),
        CheckConstraint("amount_paid >= 0", name="ck_invoices_amount_paid_nonneg"),
        CheckConstraint(
            "status IN ('PENDING','PAID','UNDERPAID','OVERPAID','EXPIRED','CANCELLED')",
            name="ck_invoices_status_enum",
        ),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    merchant_id: Mapped[str] = mapped_column(
        String(32), ForeignKey(fk("merchants"), ondelete="RESTRICT"), nullable=False, index=True
    )

    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    network: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=InvoiceStatus.PENDING.value, index=True)

    order_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    description: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    notify_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    redirect_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    custom_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    wallet_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey(fk("master_wallets")), nullable=True)
    deposit_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    qr_data: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    client_idk: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INVOICE_STATUSES

    def __repr__(self) -> str:
        return f"<Invoice id={self.id} {self.amount_paid}/{self.amount} {self.currency}/{self.network} {self.status}>"


Index("ix_invoices_status_expires", Invoice.status, Invoice.expires_at)


class ChainTransaction(Base):
    """
    Наблюдённая транзакция. tx_hash UNIQUE: повторное уведомление о той же
    транзакции не может зачислить деньги второй раз.
    """

    __tablename__ = "chain_transactions"
    __table_args__ = table_args(
        UniqueConstraint("tx_hash", name="uq_chain_transactions_tx_hash"),
        CheckConstraint("amount >= 0", name="ck_chain_transactions_amount_nonneg"),
        CheckConstraint("confirmations >= 0", name="ck_chain_transactions_conf_nonneg"),
        CheckConstraint("status IN ('PENDING','CONFIRMED')", name="ck_chain_transactions_status_enum"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    invoice_id: Mapped[str] = mapped_column(
        String(32), ForeignKey(fk("invoices"), ondelete="RESTRICT"), nullable=False, index=True
    )
    address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    from_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    asset: Mapped[str] = mapped_column(String(16), nullable=False)
    network: Mapped[str] = mapped_column(String(32), nullable=False)
    block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=TxStatus.PENDING.value)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<ChainTransaction {self.tx_hash} {self.amount} {self.status} invoice={self.invoice_id}>"


__all__ = [
    "MONEY",
    "InvoiceStatus",
    "TERMINAL_INVOICE_STATUSES",
    "OPEN_INVOICE_STATUSES",
    "TxStatus",
    "Merchant",
    "MerchantWallet",
    "Invoice",
    "ChainTransaction",
]

# -*- coding: utf-8 -*-
# paygate/app/models/wallet_models.py
# =============================================================================
# Назначение кода:
#   ORM-модели кошелькового слоя Paygate:
#   • MasterWallet: мастер-кошелёк (xpub + зашифрованный сид) на пару
#     (актив-или-цепочка, сеть, контракт) и счётчик next_index;
#   • PaymentAddress: выведенный адрес, привязанный к кошельку и инвойсу.
#
# Канон/инварианты:
#   • next_index только растёт и меняется только аллокатором адресов
#     (под SELECT … FOR UPDATE строки кошелька).
#   • UNIQUE(wallet_id, derivation_index): один индекс выдаётся один раз.
#   • address и address_key уникальны глобально; адрес неизменяем.
#   • invoice_id в payment_addresses уникален: адрес обслуживает не больше
#     одного инвойса за всю жизнь.
#   • Кошелёк удаляется только мягко (status=DELETED, deleted_at).
#
# Запреты:
#   • Никакой бизнес-логики в моделях.
#   • encrypted_seed и custody_handle хранятся только как шифротекст vault.
# =============================================================================

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
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

from ..core.database_core import Base, fk, table_args


class WalletStatus(str, Enum):
    PENDING_SETUP = "PENDING_SETUP"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    DELETED = "DELETED"


class MasterWallet(Base):
    """
    Мастер-кошелёк.

    Ключевые поля:
      • asset / network / contract: актив (или нативная монета цепочки) и сеть.
        Токены EVM/TRON могут иметь свой кошелёк, но адреса у них выводятся
        тем же xpub, что и у нативной монеты.
      • wallet_key: нормализованный ключ пары "ASSET:network:contract" (UNIQUE
        среди неудалённых, контролируется сервисом кошельков).
      • family: семейство цепочки (EVM/UTXO/TRON/HARDENED_ACCOUNT).
      • extended_public_key: xpub аккаунта m/44'/coin'/0'.
      • derivation_path: шаблон пути адреса с {index}.
      • encrypted_seed: шифротекст vault (NULL, если сид держит KMS).
      • custody_handle: шифротекст vault с хэндлом ключа в KMS.
      • custody_derived: адреса выдаёт KMS (харденные семейства).
      • next_index: следующий свободный индекс (BigInteger ≥ 0).
    """

    __tablename__ = "master_wallets"
    __table_args__ = table_args(
        CheckConstraint("next_index >= 0", name="ck_master_wallets_next_index_nonneg"),
        CheckConstraint(
            "status IN ('PENDING_SETUP','ACTIVE','INACTIVE','DELETED')",
            name="ck_master_wallets_status_enum",
        ),
        CheckConstraint(
            "family IN ('EVM','UTXO','TRON','HARDENED_ACCOUNT')",
            name="ck_master_wallets_family_enum",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    asset: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    network: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    contract: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    wallet_key: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    family: Mapped[str] = mapped_column(String(24), nullable=False)

    extended_public_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    derivation_path: Mapped[str] = mapped_column(String(64), nullable=False)
    encrypted_seed: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    custody_handle: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    custody_derived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    next_index: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=WalletStatus.PENDING_SETUP.value)
    status_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    @property
    def is_active(self) -> bool:
        return self.status == WalletStatus.ACTIVE.value and self.deleted_at is None

    def __repr__(self) -> str:
        return f"<MasterWallet id={self.id} {self.asset}/{self.network} next={self.next_index} {self.status}>"


Index("ix_master_wallets_lookup", MasterWallet.asset, MasterWallet.network, MasterWallet.status)


class PaymentAddress(Base):
    """
    Депозитный адрес инвойса.

      • address: адрес в нативном формате цепочки (EIP-55, base58, ...).
      • address_key: ключ поиска (для EVM в нижнем регистре).
      • derivation_index: индекс, взятый из next_index кошелька.
      • subscription_id / subscription_active: подписка у провайдера уведомлений.
      • unsubscribe_requested: ledger пометил адрес к отписке (инвойс PAID).
      • observed_balance: сумма всех наблюдённых поступлений на адрес.
    """

    __tablename__ = "payment_addresses"
    __table_args__ = table_args(
        UniqueConstraint("wallet_id", "derivation_index", name="uq_payment_addresses_wallet_index"),
        UniqueConstraint("address_key", name="uq_payment_addresses_address_key"),
        UniqueConstraint("invoice_id", name="uq_payment_addresses_invoice"),
        CheckConstraint("derivation_index >= 0", name="ck_payment_addresses_index_nonneg"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    wallet_id: Mapped[int] = mapped_column(
        Integer, ForeignKey(fk("master_wallets"), ondelete="RESTRICT"), nullable=False, index=True
    )
    invoice_id: Mapped[Optional[str]] = mapped_column(
        String(32), ForeignKey(fk("invoices"), ondelete="RESTRICT"), nullable=True
    )

    address: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    address_key: Mapped[str] = mapped_column(String(128), nullable=False)
    network: Mapped[str] = mapped_column(String(32), nullable=False)
    family: Mapped[str] = mapped_column(String(24), nullable=False)
    derivation_index: Mapped[int] = mapped_column(BigInteger, nullable=False)
    derivation_path: Mapped[Optional[str]] = mapped_column(String(96), nullable=True)

    subscription_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    subscription_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    unsubscribe_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    first_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    observed_balance: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<PaymentAddress id={self.id} wallet={self.wallet_id} idx={self.derivation_index} {self.address}>"


Index("ix_payment_addresses_subscription", PaymentAddress.subscription_active, PaymentAddress.unsubscribe_requested)


__all__ = ["WalletStatus", "MasterWallet", "PaymentAddress"]

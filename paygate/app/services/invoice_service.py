# -*- coding: utf-8 -*-
# paygate/app/services/invoice_service.py
# =============================================================================
# Назначение кода:
#   Оркестрация создания инвойса: валидация пары (актив, сеть), выбор
#   мастер-кошелька, выдача депозитного адреса, QR-payload, автосоздание
#   баланса мерчанта и подписка адреса у провайдера уведомлений.
#
# Канон/инварианты:
#   • Инвойс, адрес и баланс мерчанта создаются одной транзакцией; подписка
#     выполняется после commit и никогда не валит создание.
#   • Повтор с тем же Idempotency-Key мерчанта возвращает уже созданный
#     инвойс (read-through); другой запрос под тем же ключом → 409.
#   • Нет активного кошелька (и нет нативного для токена) → понятная ошибка
#     «No active wallet/KMS key for X on Y», без подмены сети.
#
# Запреты:
#   • Никаких изменений next_index в обход AddressAllocator.
#   • Никаких денежных изменений: только нулевые балансы при автосоздании.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.app.core.chains_core import AssetInfo, get_asset, get_network
from paygate.app.core.config_core import Settings, get_settings
from paygate.app.core.database_core import lifespan_session
from paygate.app.core.errors_core import (
    IdempotencyConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    WalletNotActive,
    WalletNotFound,
)
from paygate.app.core.logging_core import get_logger, set_request_context
from paygate.app.core.utils_core import decimal_from, format_decimal_str, iso_utc, new_id, quantize_decimal, utcnow
from paygate.app.models import (
    Invoice,
    InvoiceStatus,
    MasterWallet,
    Merchant,
    MerchantWallet,
    PaymentAddress,
    WalletStatus,
)
from paygate.app.services.allocator_service import AddressAllocator
from paygate.app.services.ledger_service import InvoiceLedger, LedgerResult
from paygate.app.services.subscription_service import SubscriptionManager

logger = get_logger(__name__)


@dataclass(slots=True)
class InvoiceCreation:
    invoice: Invoice
    payment_address: Optional[PaymentAddress]
    created: bool


def build_qr_data(asset: AssetInfo, address: str, amount: Decimal) -> str:
    """QR-payload вида "symbol:address?amount=..."."""
    return f"{asset.symbol.lower()}:{address}?amount={format_decimal_str(amount, decimals=asset.decimals)}"


class InvoiceService:
    """Создание и чтение инвойсов мерчантов."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        allocator: AddressAllocator,
        subscriptions: SubscriptionManager,
        ledger: InvoiceLedger,
        settings: Optional[Settings] = None,
    ) -> None:
        self._session_factory = session_factory
        self._allocator = allocator
        self._subscriptions = subscriptions
        self._ledger = ledger
        self._settings = settings or get_settings()

    async def create_invoice(
        self,
        merchant_id: str,
        *,
        amount: Any,
        currency: str,
        network: str,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
        notify_url: Optional[str] = None,
        redirect_url: Optional[str] = None,
        custom_data: Optional[Dict[str, Any]] = None,
        ttl_sec: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> InvoiceCreation:
        """
        Создать инвойс с депозитным адресом.

        Ошибки: UnsupportedAsset, ValidationError, NotFoundError (мерчант),
        WalletNotFound / WalletNotActive, ошибки вывода адреса,
        IdempotencyConflictError.
        """
        asset = get_asset(currency, network)
        amt = self._validate_amount(amount, asset)
        ttl = int(ttl_sec or self._settings.INVOICE_DEFAULT_TTL_SEC)
        if ttl <= 0:
            raise ValidationError("ttl_sec must be positive.")
        if idempotency_key:
            set_request_context(idempotency_key=idempotency_key)
            existing = await self._find_by_key(merchant_id, idempotency_key)
            if existing is not None:
                return self._read_through(existing, amt, asset)

        try:
            async with lifespan_session(self._session_factory) as session:
                async with session.begin():
                    merchant = await session.get(Merchant, merchant_id)
                    if merchant is None:
                        raise NotFoundError("Merchant not found.", details={"merchant_id": merchant_id})
                    if not merchant.is_active:
                        raise InvalidStateError("Merchant is disabled.", details={"merchant_id": merchant_id})

                    wallet = await self._pick_wallet(session, asset)
                    now = utcnow()
                    invoice = Invoice(
                        id=new_id(),
                        merchant_id=merchant_id,
                        amount=amt,
                        amount_paid=Decimal("0"),
                        currency=asset.symbol,
                        network=asset.network,
                        status=InvoiceStatus.PENDING.value,
                        order_id=order_id,
                        description=description,
                        notify_url=notify_url,
                        redirect_url=redirect_url,
                        custom_data=custom_data,
                        client_idk=idempotency_key,
                        expires_at=now + timedelta(seconds=ttl),
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(invoice)
                    await session.flush()

                    pay_address = await self._allocator.allocate_in(session, wallet.id, invoice.id)
                    invoice.wallet_id = wallet.id
                    invoice.deposit_address = pay_address.address
                    invoice.qr_data = build_qr_data(asset, pay_address.address, amt)

                    await self._ensure_merchant_wallet(session, merchant_id, asset)
        except IntegrityError:
            # Гонка двух запросов с одним Idempotency-Key: побеждает первый.
            if not idempotency_key:
                raise
            existing = await self._find_by_key(merchant_id, idempotency_key)
            if existing is None:
                raise
            return self._read_through(existing, amt, asset)

        set_request_context(invoice_id=invoice.id)
        logger.info(
            "invoice created",
            extra={
                "merchant_id": merchant_id,
                "amount": str(amt),
                "currency": asset.symbol,
                "network": asset.network,
                "wallet_id": wallet.id,
            },
        )

        subscription_id = await self._subscriptions.subscribe_address(pay_address.id)
        if subscription_id:
            pay_address.subscription_id = subscription_id
            pay_address.subscription_active = True
        return InvoiceCreation(invoice=invoice, payment_address=pay_address, created=True)

    async def get_invoice(self, invoice_id: str, *, merchant_id: Optional[str] = None) -> Invoice:
        async with lifespan_session(self._session_factory) as session:
            invoice = await session.get(Invoice, invoice_id)
        if invoice is None or (merchant_id is not None and invoice.merchant_id != merchant_id):
            raise NotFoundError("Invoice not found.", details={"invoice_id": invoice_id})
        return invoice

    async def cancel_invoice(self, invoice_id: str, *, merchant_id: Optional[str] = None) -> LedgerResult:
        return await self._ledger.cancel_invoice(invoice_id, merchant_id=merchant_id)

    def payment_url(self, invoice_id: str) -> str:
        return self._settings.payment_url(invoice_id)

    # ------------------------------------------------------------------
    # Вспомогательное
    # ------------------------------------------------------------------
    @staticmethod
    def _validate_amount(amount: Any, asset: AssetInfo) -> Decimal:
        try:
            amt = decimal_from(amount)
        except ValueError as exc:
            raise ValidationError("Amount is not a number.", details={"amount": str(amount)}) from exc
        if amt <= 0:
            raise ValidationError("Amount must be positive.", details={"amount": str(amount)})
        if quantize_decimal(amt, asset.decimals) != amt:
            raise ValidationError(
                "Amount has more decimal places than the asset supports.",
                details={"amount": str(amount), "decimals": asset.decimals},
            )
        return amt

    async def _find_by_key(self, merchant_id: str, key: str) -> Optional[Invoice]:
        stmt = select(Invoice).where(Invoice.merchant_id == merchant_id, Invoice.client_idk == key)
        async with lifespan_session(self._session_factory) as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _read_through(existing: Invoice, amount: Decimal, asset: AssetInfo) -> InvoiceCreation:
        if (
            decimal_from(existing.amount) != amount
            or existing.currency != asset.symbol
            or existing.network != asset.network
        ):
            raise IdempotencyConflictError(
                "Idempotency-Key was already used with a different request.",
                details={"invoice_id": existing.id},
            )
        logger.info("invoice read-through by idempotency key", extra={"invoice_id": existing.id})
        return InvoiceCreation(invoice=existing, payment_address=None, created=False)

    async def _pick_wallet(self, session: AsyncSession, asset: AssetInfo) -> MasterWallet:
        """
        Точный кошелёк актива в сети, иначе кошелёк нативной монеты сети
        (токены EVM/TRON выводятся тем же ключом). Никогда не другая сеть.
        """
        net = get_network(asset.network)
        candidates = [asset.symbol]
        if not asset.is_native:
            candidates.append(net.native_symbol)

        seen_inactive = False
        for symbol in candidates:
            stmt = (
                select(MasterWallet)
                .where(
                    MasterWallet.asset == symbol,
                    MasterWallet.network == asset.network,
                    MasterWallet.deleted_at.is_(None),
                    MasterWallet.status != WalletStatus.DELETED.value,
                )
                .order_by(MasterWallet.id.asc())
            )
            wallets = list((await session.execute(stmt)).scalars().all())
            for wallet in wallets:
                if wallet.status == WalletStatus.ACTIVE.value:
                    return wallet
                seen_inactive = True

        if seen_inactive:
            raise WalletNotActive(
                f"Wallet for {asset.symbol} on {asset.network} is not active.",
                details={"currency": asset.symbol, "network": asset.network},
            )
        raise WalletNotFound(
            f"No active wallet/KMS key for {asset.symbol} on {asset.network}.",
            details={"currency": asset.symbol, "network": asset.network},
        )

    @staticmethod
    async def _ensure_merchant_wallet(session: AsyncSession, merchant_id: str, asset: AssetInfo) -> None:
        stmt = select(MerchantWallet.id).where(
            MerchantWallet.merchant_id == merchant_id,
            MerchantWallet.asset == asset.symbol,
            MerchantWallet.network == asset.network,
        )
        if (await session.execute(stmt)).scalar_one_or_none() is not None:
            return
        if await InvoiceService._insert_merchant_wallet(session, merchant_id, asset):
            logger.info(
                "merchant wallet auto-created",
                extra={"merchant_id": merchant_id, "currency": asset.symbol, "network": asset.network},
            )

    @staticmethod
    async def _insert_merchant_wallet(session: AsyncSession, merchant_id: str, asset: AssetInfo) -> bool:
        """
        Вставка в SAVEPOINT. Параллельный первый инвойс той же пары уже создал
        строку (uq_merchant_wallets_pair) → False, внешняя транзакция цела.
        """
        try:
            async with session.begin_nested():
                session.add(
                    MerchantWallet(
                        merchant_id=merchant_id,
                        asset=asset.symbol,
                        network=asset.network,
                        available_balance=Decimal("0"),
                        pending_balance=Decimal("0"),
                        locked_balance=Decimal("0"),
                    )
                )
        except IntegrityError:
            logger.info(
                "merchant wallet created concurrently",
                extra={"merchant_id": merchant_id, "currency": asset.symbol, "network": asset.network},
            )
            return False
        return True


def invoice_to_dict(invoice: Invoice, *, payment_url: Optional[str] = None) -> Dict[str, Any]:
    """Публичное представление инвойса для API и логов."""
    return {
        "id": invoice.id,
        "merchant_id": invoice.merchant_id,
        "order_id": invoice.order_id,
        "amount": format_decimal_str(invoice.amount),
        "amount_paid": format_decimal_str(invoice.amount_paid or 0),
        "currency": invoice.currency,
        "network": invoice.network,
        "status": invoice.status,
        "deposit_address": invoice.deposit_address,
        "qr_data": invoice.qr_data,
        "payment_url": payment_url,
        "description": invoice.description,
        "redirect_url": invoice.redirect_url,
        "custom_data": invoice.custom_data,
        "expires_at": iso_utc(invoice.expires_at),
        "paid_at": iso_utc(invoice.paid_at),
        "created_at": iso_utc(invoice.created_at),
    }


__all__ = ["InvoiceCreation", "InvoiceService", "build_qr_data", "invoice_to_dict"]

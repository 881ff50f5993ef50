# -*- coding: utf-8 -*-
# paygate/app/services/ledger_service.py
# =============================================================================
# Назначение кода:
#   InvoiceLedger: статусная машина инвойса и зачисление поступлений на
#   балансы мерчанта. Единственное место, где меняются Invoice.amount_paid,
#   Invoice.status и балансы MerchantWallet.
#
# Канон/инварианты:
#   • Идемпотентность по tx_hash (UNIQUE в chain_transactions): повторное
#     применение той же транзакции ничего не меняет и возвращает applied=False.
#   • Одна единица работы: блокировка инвойса → вставка/продвижение
#     ChainTransaction → amount_paid += amount → available_balance += amount →
#     пересчёт статуса → outbox-строка вебхука → флаг отписки адреса.
#     Частичное применение невозможно: либо commit всего, либо rollback.
#   • Переходы:
#       PENDING → PAID | UNDERPAID | OVERPAID (по сумме с допуском актива);
#       UNDERPAID → PAID (доплата, в том числе с переплатой);
#       PENDING/UNDERPAID → EXPIRED (просрочка) | CANCELLED (явная отмена).
#     PAID/OVERPAID/EXPIRED/CANCELLED терминальны для статуса, но поздние
#     поступления всё равно зачисляются на баланс (деньги уже пришли).
#   • Допуск: одна наименьшая единица актива (10^-decimals) или
#     переопределение ASSET_TOLERANCE_OVERRIDES.
#
# ИИ-защита/самовосстановление:
#   • Ретраи (3 попытки, backoff 0.15·attempt) на deadlock/serialization и
#     на конфликт уникальности: следующая попытка читает уже записанную
#     транзакцию и отвечает «дубликат» (read-through).
#
# Запреты:
#   • Никаких HTTP-вызовов внутри транзакции: вебхук только ставится в outbox.
#   • Никаких уменьшений amount_paid и available_balance.
# =============================================================================

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.app.core.chains_core import get_asset, tolerance_for
from paygate.app.core.database_core import is_postgres, is_transient_db_error, lifespan_session
from paygate.app.core.errors_core import DownstreamError, InvalidStateError, NotFoundError, ValidationError
from paygate.app.core.logging_core import get_logger
from paygate.app.core.utils_core import decimal_from, ensure_aware, format_decimal_str, iso_utc, utcnow
from paygate.app.models import (
    OPEN_INVOICE_STATUSES,
    ChainTransaction,
    Invoice,
    InvoiceStatus,
    Merchant,
    MerchantWallet,
    PaymentAddress,
    TxStatus,
)

if TYPE_CHECKING:
    from paygate.app.services.webhook_delivery_service import WebhookDeliveryService

logger = get_logger(__name__)

T = TypeVar("T")

MAX_TRIES = 3
BACKOFF_SEC = 0.15

EVENT_PAYMENT_RECEIVED = "invoice.payment_received"
EVENT_PAYMENT_PENDING = "invoice.payment_pending"
EVENT_EXPIRED = "invoice.expired"
EVENT_CANCELLED = "invoice.cancelled"


@dataclass(slots=True)
class LedgerResult:
    """Итог операции ledger (возвращается ингестору и роутам)."""

    invoice_id: str
    status: str
    applied: bool
    amount_paid: Decimal
    tx_hash: Optional[str] = None
    detail: str = "ok"
    delivery_id: Optional[str] = None


def compute_status(current: str, requested: Decimal, paid: Decimal, tolerance: Decimal) -> str:
    """
    Новый статус инвойса по накопленной сумме.
    Терминальные статусы не меняются.
    """
    if current == InvoiceStatus.PENDING.value:
        if paid > requested + tolerance:
            return InvoiceStatus.OVERPAID.value
        if paid >= requested - tolerance:
            return InvoiceStatus.PAID.value
        if paid > 0:
            return InvoiceStatus.UNDERPAID.value
        return current
    if current == InvoiceStatus.UNDERPAID.value:
        # OVERPAID только для первого платежа; доплата закрывает инвойс в PAID.
        if paid >= requested - tolerance:
            return InvoiceStatus.PAID.value
        return current
    return current


class InvoiceLedger:
    """Статусная машина инвойсов и балансы мерчантов."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        webhooks: "WebhookDeliveryService",
    ) -> None:
        self._session_factory = session_factory
        self._webhooks = webhooks

    # ------------------------------------------------------------------
    # Ретраи единицы работы
    # ------------------------------------------------------------------
    async def _run_unit(self, op: str, unit: Callable[[AsyncSession], Awaitable[T]]) -> T:
        last_exc: Optional[Exception] = None
        for attempt in range(1, MAX_TRIES + 1):
            try:
                async with lifespan_session(self._session_factory) as session:
                    async with session.begin():
                        return await unit(session)
            except IntegrityError as exc:
                # Параллельный писатель успел первым; следующая попытка
                # прочитает его запись и ответит как на дубликат.
                last_exc = exc
                logger.info("ledger unique conflict, re-reading", extra={"op": op, "attempt": attempt})
                await asyncio.sleep(BACKOFF_SEC * attempt)
            except DBAPIError as exc:
                if not is_transient_db_error(exc):
                    raise
                last_exc = exc
                logger.warning("ledger transient DB error, retrying", extra={"op": op, "attempt": attempt})
                await asyncio.sleep(BACKOFF_SEC * attempt)
        logger.error("ledger unit failed after retries", extra={"op": op, "error": str(last_exc)})
        raise DownstreamError("Ledger is temporarily unavailable.", details={"op": op})

    # ------------------------------------------------------------------
    # Зачисление подтверждённой транзакции
    # ------------------------------------------------------------------
    async def apply_confirmed_transaction(
        self,
        invoice_id: str,
        tx_hash: str,
        amount: Any,
        confirmations: int,
        *,
        block_number: Optional[int] = None,
        address: Optional[str] = None,
        from_address: Optional[str] = None,
    ) -> LedgerResult:
        """
        Зачислить подтверждённую транзакцию инвойсу.

        Повтор с тем же tx_hash (для этого или любого другого инвойса)
        возвращает applied=False и текущий статус, ничего не меняя.
        PENDING-транзакция с тем же хэшем продвигается в CONFIRMED:
        её сумма переезжает из pending_balance в available_balance.
        """
        amt = self._positive_amount(amount)
        tx_hash = (tx_hash or "").strip()
        if not tx_hash:
            raise ValidationError("tx_hash is required.")

        async def _unit(session: AsyncSession) -> LedgerResult:
            return await self._apply_confirmed_in(
                session,
                invoice_id=invoice_id,
                tx_hash=tx_hash,
                amount=amt,
                confirmations=int(confirmations),
                block_number=block_number,
                address=address,
                from_address=from_address,
            )

        return await self._run_unit("apply_confirmed", _unit)

    async def _apply_confirmed_in(
        self,
        session: AsyncSession,
        *,
        invoice_id: str,
        tx_hash: str,
        amount: Decimal,
        confirmations: int,
        block_number: Optional[int],
        address: Optional[str],
        from_address: Optional[str],
    ) -> LedgerResult:
        existing = await self._find_tx(session, tx_hash)
        if existing is not None and (
            existing.status == TxStatus.CONFIRMED.value or existing.invoice_id != invoice_id
        ):
            return await self._duplicate(session, existing, invoice_id)

        invoice = await self._lock_invoice(session, invoice_id)
        wallet = await self._lock_merchant_wallet(session, invoice)
        now = utcnow()

        if existing is not None:
            # Продвижение PENDING → CONFIRMED: pending-сумма уходит в available.
            existing.status = TxStatus.CONFIRMED.value
            existing.confirmations = max(int(existing.confirmations or 0), confirmations)
            existing.block_number = block_number if block_number is not None else existing.block_number
            existing.confirmed_at = now
            released = min(decimal_from(wallet.pending_balance), decimal_from(existing.amount))
            wallet.pending_balance = decimal_from(wallet.pending_balance) - released
        else:
            session.add(
                ChainTransaction(
                    tx_hash=tx_hash,
                    invoice_id=invoice.id,
                    address=address or invoice.deposit_address,
                    from_address=from_address,
                    amount=amount,
                    asset=invoice.currency,
                    network=invoice.network,
                    block_number=block_number,
                    confirmations=confirmations,
                    status=TxStatus.CONFIRMED.value,
                    confirmed_at=now,
                )
            )
            # Конфликт tx_hash всплывёт здесь, до изменения балансов.
            await session.flush()

        previous_status = invoice.status
        invoice.amount_paid = decimal_from(invoice.amount_paid) + amount
        wallet.available_balance = decimal_from(wallet.available_balance) + amount

        tolerance = self._tolerance(invoice)
        new_status = compute_status(previous_status, decimal_from(invoice.amount), decimal_from(invoice.amount_paid), tolerance)
        if invoice.is_terminal:
            logger.warning(
                "payment credited to terminal invoice",
                extra={"invoice_id": invoice.id, "status": previous_status, "tx_hash": tx_hash},
            )
        invoice.status = new_status
        if new_status in (InvoiceStatus.PAID.value, InvoiceStatus.OVERPAID.value) and invoice.paid_at is None:
            invoice.paid_at = now

        pay_address = await self._payment_address(session, invoice.id)
        if pay_address is not None:
            pay_address.observed_balance = decimal_from(pay_address.observed_balance or 0) + amount
            if new_status in (InvoiceStatus.PAID.value, InvoiceStatus.OVERPAID.value):
                pay_address.unsubscribe_requested = True

        delivery_id = await self._enqueue_event(
            session,
            invoice,
            EVENT_PAYMENT_RECEIVED,
            amount=amount,
            tx_hash=tx_hash,
            confirmed=True,
        )

        logger.info(
            "confirmed transaction applied",
            extra={
                "invoice_id": invoice.id,
                "tx_hash": tx_hash,
                "amount": str(amount),
                "status_from": previous_status,
                "status_to": new_status,
            },
        )
        return LedgerResult(
            invoice_id=invoice.id,
            status=new_status,
            applied=True,
            amount_paid=decimal_from(invoice.amount_paid),
            tx_hash=tx_hash,
            delivery_id=delivery_id,
        )

    # ------------------------------------------------------------------
    # Неподтверждённое поступление
    # ------------------------------------------------------------------
    async def record_pending_transaction(
        self,
        invoice_id: str,
        tx_hash: str,
        amount: Any,
        confirmations: int = 0,
        *,
        block_number: Optional[int] = None,
        address: Optional[str] = None,
        from_address: Optional[str] = None,
    ) -> LedgerResult:
        """
        Записать поступление без нужного числа подтверждений: PENDING-транзакция,
        pending_balance += amount (один раз на tx_hash), статус инвойса не меняется.
        """
        amt = self._positive_amount(amount)
        tx_hash = (tx_hash or "").strip()
        if not tx_hash:
            raise ValidationError("tx_hash is required.")

        async def _unit(session: AsyncSession) -> LedgerResult:
            existing = await self._find_tx(session, tx_hash)
            if existing is not None:
                if existing.status == TxStatus.PENDING.value and confirmations > int(existing.confirmations or 0):
                    existing.confirmations = int(confirmations)
                return await self._duplicate(session, existing, invoice_id)

            invoice = await self._lock_invoice(session, invoice_id)
            wallet = await self._lock_merchant_wallet(session, invoice)
            session.add(
                ChainTransaction(
                    tx_hash=tx_hash,
                    invoice_id=invoice.id,
                    address=address or invoice.deposit_address,
                    from_address=from_address,
                    amount=amt,
                    asset=invoice.currency,
                    network=invoice.network,
                    block_number=block_number,
                    confirmations=int(confirmations),
                    status=TxStatus.PENDING.value,
                )
            )
            await session.flush()
            wallet.pending_balance = decimal_from(wallet.pending_balance) + amt

            delivery_id = await self._enqueue_event(
                session, invoice, EVENT_PAYMENT_PENDING, amount=amt, tx_hash=tx_hash, confirmed=False
            )
            logger.info(
                "pending transaction recorded",
                extra={"invoice_id": invoice.id, "tx_hash": tx_hash, "amount": str(amt)},
            )
            return LedgerResult(
                invoice_id=invoice.id,
                status=invoice.status,
                applied=True,
                amount_paid=decimal_from(invoice.amount_paid),
                tx_hash=tx_hash,
                detail="pending",
                delivery_id=delivery_id,
            )

        return await self._run_unit("record_pending", _unit)

    # ------------------------------------------------------------------
    # Отмена / просрочка
    # ------------------------------------------------------------------
    async def cancel_invoice(self, invoice_id: str, *, merchant_id: Optional[str] = None) -> LedgerResult:
        """Явная отмена: разрешена только из PENDING/UNDERPAID."""

        async def _unit(session: AsyncSession) -> LedgerResult:
            invoice = await self._lock_invoice(session, invoice_id)
            if merchant_id is not None and invoice.merchant_id != merchant_id:
                raise NotFoundError("Invoice not found.", details={"invoice_id": invoice_id})
            if invoice.status not in OPEN_INVOICE_STATUSES:
                raise InvalidStateError(
                    "Invoice cannot be cancelled in its current status.",
                    details={"invoice_id": invoice.id, "status": invoice.status},
                )
            await self._close_invoice(session, invoice, InvoiceStatus.CANCELLED.value, EVENT_CANCELLED)
            return LedgerResult(
                invoice_id=invoice.id,
                status=invoice.status,
                applied=True,
                amount_paid=decimal_from(invoice.amount_paid),
                detail="cancelled",
            )

        return await self._run_unit("cancel", _unit)

    async def expire_overdue(self, *, now: Optional[datetime] = None, limit: int = 500) -> int:
        """
        Перевести просроченные PENDING/UNDERPAID инвойсы в EXPIRED.
        Возвращает количество переведённых. Повторный запуск идемпотентен:
        EXPIRED больше не выбирается.
        """
        moment = ensure_aware(now) or utcnow()

        async def _unit(session: AsyncSession) -> int:
            stmt = (
                select(Invoice)
                .where(Invoice.status.in_(sorted(OPEN_INVOICE_STATUSES)), Invoice.expires_at <= moment)
                .order_by(Invoice.expires_at.asc())
                .limit(int(limit))
            )
            if is_postgres(session):
                stmt = stmt.with_for_update(skip_locked=True)
            invoices: List[Invoice] = list((await session.execute(stmt)).scalars().all())
            for invoice in invoices:
                await self._close_invoice(session, invoice, InvoiceStatus.EXPIRED.value, EVENT_EXPIRED)
            return len(invoices)

        expired = await self._run_unit("expire", _unit)
        if expired:
            logger.info("overdue invoices expired", extra={"count": expired})
        return expired

    async def _close_invoice(self, session: AsyncSession, invoice: Invoice, status: str, event: str) -> None:
        previous = invoice.status
        invoice.status = status
        pay_address = await self._payment_address(session, invoice.id)
        if pay_address is not None:
            pay_address.unsubscribe_requested = True
        await self._enqueue_event(session, invoice, event, amount=None, tx_hash=None, confirmed=False)
        logger.info(
            "invoice closed",
            extra={"invoice_id": invoice.id, "status_from": previous, "status_to": status},
        )

    # ------------------------------------------------------------------
    # Вспомогательное
    # ------------------------------------------------------------------
    @staticmethod
    def _positive_amount(amount: Any) -> Decimal:
        try:
            amt = decimal_from(amount)
        except ValueError as exc:
            raise ValidationError("Amount is not a number.", details={"amount": str(amount)}) from exc
        if amt <= 0:
            raise ValidationError("Amount must be positive.", details={"amount": str(amount)})
        return amt

    @staticmethod
    def _tolerance(invoice: Invoice) -> Decimal:
        asset = get_asset(invoice.currency, invoice.network)
        return tolerance_for(asset.symbol, asset.decimals)

    @staticmethod
    async def _find_tx(session: AsyncSession, tx_hash: str) -> Optional[ChainTransaction]:
        stmt = select(ChainTransaction).where(ChainTransaction.tx_hash == tx_hash).with_for_update()
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _lock_invoice(session: AsyncSession, invoice_id: str) -> Invoice:
        stmt = (
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        invoice = (await session.execute(stmt)).scalar_one_or_none()
        if invoice is None:
            raise NotFoundError("Invoice not found.", details={"invoice_id": invoice_id})
        return invoice

    @staticmethod
    async def _lock_merchant_wallet(session: AsyncSession, invoice: Invoice) -> MerchantWallet:
        stmt = (
            select(MerchantWallet)
            .where(
                MerchantWallet.merchant_id == invoice.merchant_id,
                MerchantWallet.asset == invoice.currency,
                MerchantWallet.network == invoice.network,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        wallet = (await session.execute(stmt)).scalar_one_or_none()
        if wallet is None:
            wallet = MerchantWallet(
                merchant_id=invoice.merchant_id,
                asset=invoice.currency,
                network=invoice.network,
                available_balance=Decimal("0"),
                pending_balance=Decimal("0"),
                locked_balance=Decimal("0"),
            )
            session.add(wallet)
            await session.flush()
        return wallet

    @staticmethod
    async def _payment_address(session: AsyncSession, invoice_id: str) -> Optional[PaymentAddress]:
        stmt = select(PaymentAddress).where(PaymentAddress.invoice_id == invoice_id)
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _duplicate(self, session: AsyncSession, tx: ChainTransaction, invoice_id: str) -> LedgerResult:
        invoice = await session.get(Invoice, tx.invoice_id)
        if tx.invoice_id != invoice_id:
            logger.warning(
                "transaction already recorded for another invoice",
                extra={"tx_hash": tx.tx_hash, "invoice_id": invoice_id, "owner_invoice_id": tx.invoice_id},
            )
        return LedgerResult(
            invoice_id=tx.invoice_id,
            status=invoice.status if invoice is not None else "",
            applied=False,
            amount_paid=decimal_from(invoice.amount_paid) if invoice is not None else Decimal("0"),
            tx_hash=tx.tx_hash,
            detail="duplicate",
        )

    async def _enqueue_event(
        self,
        session: AsyncSession,
        invoice: Invoice,
        event: str,
        *,
        amount: Optional[Decimal],
        tx_hash: Optional[str],
        confirmed: bool,
    ) -> Optional[str]:
        merchant = await session.get(Merchant, invoice.merchant_id)
        url = invoice.notify_url or (merchant.webhook_url if merchant is not None else None)
        if not url:
            logger.info("no webhook endpoint for invoice event", extra={"invoice_id": invoice.id, "event": event})
            return None
        payload = build_event_payload(invoice, event, amount=amount, tx_hash=tx_hash, confirmed=confirmed)
        return await self._webhooks.enqueue_in(
            session,
            url=url,
            payload=payload,
            event=event,
            secret_encrypted=merchant.webhook_secret if merchant is not None else None,
            merchant_id=invoice.merchant_id,
            invoice_id=invoice.id,
        )


def build_event_payload(
    invoice: Invoice,
    event: str,
    *,
    amount: Optional[Decimal],
    tx_hash: Optional[str],
    confirmed: bool,
) -> Dict[str, Any]:
    """Снимок инвойса для вебхука мерчанту (не упорядоченный журнал)."""
    payload: Dict[str, Any] = {
        "event": event,
        "invoiceId": invoice.id,
        "amount": format_decimal_str(amount if amount is not None else invoice.amount),
        "amountPaid": format_decimal_str(invoice.amount_paid or 0),
        "currency": invoice.currency,
        "network": invoice.network,
        "txHash": tx_hash,
        "confirmed": bool(confirmed),
        "status": invoice.status,
        "timestamp": iso_utc(utcnow()),
    }
    if invoice.order_id:
        payload["orderId"] = invoice.order_id
    if invoice.custom_data:
        payload["customData"] = invoice.custom_data
    return payload


__all__ = [
    "EVENT_PAYMENT_RECEIVED",
    "EVENT_PAYMENT_PENDING",
    "EVENT_EXPIRED",
    "EVENT_CANCELLED",
    "LedgerResult",
    "compute_status",
    "build_event_payload",
    "InvoiceLedger",
]

# =============================================================================
# Пояснения «для чайника»:
#   • Две одновременные доставки одного уведомления: обе пытаются вставить
#     транзакцию с одним tx_hash, вторая получает конфликт уникальности,
#     откатывается и на повторе видит «уже применено». Баланс растёт один раз.
#   • Вебхук мерчанту не отправляется из транзакции: в той же транзакции
#     пишется строка webhook_deliveries, а HTTP делает воркер доставки.
# =============================================================================

# -*- coding: utf-8 -*-
# paygate/app/services/ingestor_service.py
# =============================================================================
# Назначение кода:
#   NotificationIngestor: граница между недоверенными уведомлениями провайдера
#   цепочек (доставка at-least-once) и ledger.
#
# Канон/инварианты:
#   • Форма события проверяется pydantic-моделью ChainEvent: неизвестные поля
#     игнорируются, отсутствующий номер блока означает «не подтверждено».
#   • Адрес ищется по нормализованному ключу; чужой адрес даёт результат
#     "ignored" (лог, без ретраев и без ошибки для провайдера).
#   • Подтверждения: явное поле confirmations; иначе при наличии блока
#     считаем событие достигшим порога семейства; без блока 0.
#     Порог берётся из CONFIRMATIONS_<FAMILY>.
#   • Достигнут порог → InvoiceLedger.apply_confirmed_transaction,
#     иначе → record_pending_transaction. Дубликаты ledger отдаёт как no-op.
#   • После обработки штампуются first_seen_at (один раз) и last_seen_at.
#   • Каждое уведомление пишется в chain_notification_logs.
#
# Запреты:
#   • Никаких изменений денег вне ledger.
#   • Не бросать провайдеру 5xx на чужие адреса и дубликаты.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.app.core.chains_core import ChainFamily, find_asset_by_contract, normalize_symbol
from paygate.app.core.config_core import Settings, get_settings
from paygate.app.core.database_core import lifespan_session
from paygate.app.core.errors_core import UnrecognizedAddress, ValidationError
from paygate.app.core.logging_core import get_logger, set_request_context
from paygate.app.core.utils_core import canonical_json, decimal_from, sha256_hex, utcnow
from paygate.app.models import ChainNotificationLog, Invoice, PaymentAddress
from paygate.app.services.ledger_service import InvoiceLedger, LedgerResult

logger = get_logger(__name__)


class ChainEvent(BaseModel):
    """Входящее уведомление провайдера (Tatum-совместимый формат)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    address: str = Field(min_length=1)
    amount: Decimal
    tx_hash: str = Field(min_length=1, validation_alias=AliasChoices("txId", "tx_hash", "txHash", "hash"))
    chain: Optional[str] = None
    asset: Optional[str] = Field(None, validation_alias=AliasChoices("asset", "currency"))
    contract: Optional[str] = Field(
        None, validation_alias=AliasChoices("contractAddress", "contract", "tokenAddress")
    )
    block_number: Optional[int] = Field(None, validation_alias=AliasChoices("blockNumber", "block_number", "block"))
    confirmations: Optional[int] = Field(None, ge=0)
    counter_address: Optional[str] = Field(None, validation_alias=AliasChoices("counterAddress", "from"))
    type: Optional[str] = None
    subscription_type: Optional[str] = Field(None, validation_alias=AliasChoices("subscriptionType"))

    @field_validator("amount", mode="before")
    @classmethod
    def _v_amount(cls, value: Any) -> Decimal:
        amount = decimal_from(value)
        if amount <= 0:
            raise ValueError("amount must be positive")
        return amount

    @field_validator("address", "tx_hash", mode="before")
    @classmethod
    def _v_strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


@dataclass(slots=True)
class IngestResult:
    """Итог обработки уведомления (для ответа провайдеру и тестов)."""

    result: str  # applied | duplicate | pending | ignored
    invoice_id: Optional[str] = None
    status: Optional[str] = None
    applied: bool = False
    detail: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.result,
            "invoice_id": self.invoice_id,
            "invoice_status": self.status,
            "applied": self.applied,
            "detail": self.detail,
        }


class NotificationIngestor:
    """Приём уведомлений о поступлениях."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ledger: InvoiceLedger,
        settings: Optional[Settings] = None,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._settings = settings or get_settings()

    async def ingest(self, raw: Mapping[str, Any], *, invoice_hint: Optional[str] = None) -> IngestResult:
        """
        Обработать сырое уведомление. Некорректная форма → ValidationError (422);
        чужой адрес → IngestResult(result="ignored").
        """
        try:
            event = ChainEvent.model_validate(dict(raw))
        except PydanticValidationError as exc:
            errors = [
                {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": err.get("msg")}
                for err in exc.errors()
            ]
            logger.warning("chain notification rejected", extra={"errors": errors})
            await self._log(
                dedupe_key=sha256_hex(canonical_json(dict(raw))),
                event=None,
                raw=raw,
                result="invalid",
                detail="; ".join(f"{e['loc']}: {e['msg']}" for e in errors)[:512],
            )
            raise ValidationError("Malformed chain notification.", details={"errors": errors}) from exc

        try:
            address_row, invoice = await self._resolve(event, invoice_hint)
        except UnrecognizedAddress as exc:
            logger.info(
                "notification for unknown address ignored",
                extra={"address": event.address, "tx_hash": event.tx_hash, "reason": exc.message},
            )
            await self._log(
                dedupe_key=event.tx_hash, event=event, raw=raw, result="ignored", detail=exc.message
            )
            return IngestResult(result="ignored", detail=exc.message)

        set_request_context(invoice_id=invoice.id)
        family = ChainFamily(address_row.family)
        required = self._settings.confirmations_for(family.value)
        confirmations = self._confirmations(event, required)

        if confirmations >= required:
            outcome = await self._ledger.apply_confirmed_transaction(
                invoice.id,
                event.tx_hash,
                event.amount,
                confirmations,
                block_number=event.block_number,
                address=address_row.address,
                from_address=event.counter_address,
            )
            result = "applied" if outcome.applied else "duplicate"
        else:
            outcome = await self._ledger.record_pending_transaction(
                invoice.id,
                event.tx_hash,
                event.amount,
                confirmations,
                block_number=event.block_number,
                address=address_row.address,
                from_address=event.counter_address,
            )
            result = "pending" if outcome.applied else "duplicate"

        await self._touch_address(address_row.id)
        await self._log(
            dedupe_key=event.tx_hash,
            event=event,
            raw=raw,
            result=result,
            detail=f"confirmations={confirmations}/{required}",
            invoice_id=invoice.id,
        )
        logger.info(
            "chain notification processed",
            extra={
                "tx_hash": event.tx_hash,
                "result": result,
                "invoice_status": outcome.status,
                "confirmations": confirmations,
                "required": required,
            },
        )
        return self._result(result, outcome)

    # ------------------------------------------------------------------
    # Разбор события
    # ------------------------------------------------------------------
    async def _resolve(self, event: ChainEvent, invoice_hint: Optional[str]) -> tuple[PaymentAddress, Invoice]:
        address = event.address
        stmt = select(PaymentAddress).where(
            or_(
                PaymentAddress.address_key == address,
                (PaymentAddress.address_key == address.lower()) & (PaymentAddress.family == ChainFamily.EVM.value),
            )
        )
        async with lifespan_session(self._session_factory) as session:
            row = (await session.execute(stmt)).scalars().first()
            if row is None:
                raise UnrecognizedAddress(details={"address": address})
            if row.invoice_id is None:
                raise UnrecognizedAddress("Address is not bound to an invoice.")
            if invoice_hint is not None and row.invoice_id != invoice_hint:
                raise UnrecognizedAddress("Address belongs to another invoice.")
            invoice = await session.get(Invoice, row.invoice_id)
            if invoice is None:
                raise UnrecognizedAddress("Invoice for address is missing.")

        symbol = self._event_symbol(event, invoice.network)
        if symbol is not None and symbol != invoice.currency:
            raise UnrecognizedAddress(f"Asset {symbol} does not match invoice currency {invoice.currency}.")
        return row, invoice

    @staticmethod
    def _event_symbol(event: ChainEvent, network: str) -> Optional[str]:
        """Символ актива события: по контракту, иначе по полю asset."""
        if event.contract:
            asset = find_asset_by_contract(network, event.contract)
            return asset.symbol if asset is not None else f"contract:{event.contract}"
        if event.asset:
            return normalize_symbol(event.asset)
        return None

    @staticmethod
    def _confirmations(event: ChainEvent, required: int) -> int:
        if event.confirmations is not None:
            return int(event.confirmations)
        if event.block_number is not None:
            return max(int(required), 1)
        return 0

    @staticmethod
    def _result(result: str, outcome: LedgerResult) -> IngestResult:
        return IngestResult(
            result=result,
            invoice_id=outcome.invoice_id,
            status=outcome.status,
            applied=outcome.applied,
            detail=outcome.detail,
        )

    # ------------------------------------------------------------------
    # Побочные записи (не денежные, last-writer-wins)
    # ------------------------------------------------------------------
    async def _touch_address(self, address_id: int) -> None:
        now = utcnow()
        async with lifespan_session(self._session_factory) as session:
            async with session.begin():
                row = await session.get(PaymentAddress, address_id)
                if row is None:
                    return
                if row.first_seen_at is None:
                    row.first_seen_at = now
                row.last_seen_at = now

    async def _log(
        self,
        *,
        dedupe_key: str,
        event: Optional[ChainEvent],
        raw: Mapping[str, Any],
        result: str,
        detail: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> None:
        payload = {k: v for k, v in dict(raw).items() if isinstance(k, str)}
        async with lifespan_session(self._session_factory) as session:
            async with session.begin():
                session.add(
                    ChainNotificationLog(
                        dedupe_key=dedupe_key[:128],
                        address=event.address[:128] if event else None,
                        tx_hash=event.tx_hash[:128] if event else None,
                        chain=event.chain[:32] if event and event.chain else None,
                        amount=str(event.amount) if event else None,
                        block_number=event.block_number if event else None,
                        invoice_id=invoice_id,
                        result=result,
                        detail=detail[:512] if detail else None,
                        payload=payload,
                        created_at=utcnow(),
                    )
                )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    async def notification_stats(self) -> Dict[str, Any]:
        """Счётчики уведомлений за 24ч/7д/30д, доля успешных за 24ч, число адресов."""
        now = utcnow()
        windows = {"last_24h": timedelta(hours=24), "last_7d": timedelta(days=7), "last_30d": timedelta(days=30)}
        out: Dict[str, Any] = {}
        async with lifespan_session(self._session_factory) as session:
            for label, window in windows.items():
                stmt = select(func.count(ChainNotificationLog.id)).where(ChainNotificationLog.created_at >= now - window)
                out[label] = int((await session.execute(stmt)).scalar_one())
            ok_stmt = select(func.count(ChainNotificationLog.id)).where(
                ChainNotificationLog.created_at >= now - windows["last_24h"],
                ChainNotificationLog.result.in_(("applied", "duplicate", "pending")),
            )
            ok = int((await session.execute(ok_stmt)).scalar_one())
            total_addresses = int(
                (await session.execute(select(func.count(PaymentAddress.id)))).scalar_one()
            )
        out["success_rate_24h"] = round(ok / out["last_24h"], 4) if out["last_24h"] else None
        out["total_addresses"] = total_addresses
        return out


__all__ = ["ChainEvent", "IngestResult", "NotificationIngestor"]

# =============================================================================
# Пояснения «для чайника»:
#   • Провайдер может прислать одно и то же уведомление несколько раз.
#     Второй раз ledger ответит "duplicate", баланс не изменится.
#   • Уведомление без blockNumber и confirmations это «видим в мемпуле»:
#     сумма попадает в pending_balance, статус инвойса не меняется.
# =============================================================================

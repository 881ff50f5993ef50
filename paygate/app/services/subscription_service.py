# -*- coding: utf-8 -*-
# paygate/app/services/subscription_service.py
# =============================================================================
# Назначение кода:
#   SubscriptionManager: синхронизация множества «наблюдаемых» адресов у
#   провайдера уведомлений с адресами, которые ещё нужно наблюдать
#   (инвойс не терминален).
#
# Канон/инварианты:
#   • subscribe(): нативный актив → INCOMING_NATIVE_TX, токен → ADDRESS_EVENT;
#     цепочка провайдера берётся из реестра сетей.
#   • Сбой подписки никогда не валит создание инвойса: subscribe_address()
#     логирует и оставляет subscription_active=False, а health-check видит
#     такие инвойсы через count_unmonitored_active_invoices().
#   • unsubscribe() никогда не бросает исключений.
#   • reconcile(): отписка терминальных/помеченных адресов, переподписка
#     неотслеживаемых активных инвойсов, удаление «осиротевших» подписок
#     провайдера, указывающих на наш callback.
#
# Запреты:
#   • Никаких денежных полей: только метаданные подписок (last-writer-wins).
# =============================================================================

from __future__ import annotations

from typing import Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.app.core.chains_core import get_asset, get_network
from paygate.app.core.config_core import Settings, get_settings
from paygate.app.core.database_core import lifespan_session
from paygate.app.core.errors_core import DownstreamError, NotFoundError, UnsupportedAsset
from paygate.app.core.logging_core import get_logger
from paygate.app.core.utils_core import utcnow
from paygate.app.integrations.chain_source_api import (
    SUBSCRIPTION_ADDRESS_EVENT,
    SUBSCRIPTION_NATIVE,
    ChainSourceAPIError,
    ChainSourceClient,
)
from paygate.app.models import OPEN_INVOICE_STATUSES, Invoice, PaymentAddress

logger = get_logger(__name__)


class SubscriptionManager:
    """Подписки адресов у провайдера уведомлений."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        client: ChainSourceClient,
        settings: Optional[Settings] = None,
    ) -> None:
        self._session_factory = session_factory
        self._client = client
        self._settings = settings or get_settings()

    @property
    def callback_base(self) -> str:
        return self._settings.chain_callback_url()

    # ------------------------------------------------------------------
    # Подписка / отписка
    # ------------------------------------------------------------------
    async def subscribe(
        self,
        address: str,
        chain: str,
        asset: str,
        *,
        invoice_id: Optional[str] = None,
    ) -> str:
        """
        Подписать адрес; возвращает id подписки провайдера.
        Ошибка провайдера → DownstreamError, неизвестная пара → UnsupportedAsset.
        """
        network = get_network(chain)
        info = get_asset(asset, network.network)
        subscription_type = SUBSCRIPTION_NATIVE if info.is_native else SUBSCRIPTION_ADDRESS_EVENT
        callback = self.callback_base if invoice_id is None else f"{self.callback_base}/{invoice_id}"

        if not self._client.configured:
            raise DownstreamError("Chain notification source is not configured.")
        try:
            return await self._client.create_subscription(
                address=address,
                chain=network.provider_chain,
                callback_url=callback,
                subscription_type=subscription_type,
            )
        except ChainSourceAPIError as exc:
            logger.warning(
                "subscription create failed",
                extra={"address": address, "network": network.network, "error": str(exc)},
            )
            raise DownstreamError(
                "Chain notification source rejected the subscription.",
                details={"network": network.network},
            ) from exc

    async def subscribe_address(self, payment_address_id: int) -> Optional[str]:
        """
        Подписать депозитный адрес и сохранить id подписки. Best-effort:
        при сбое возвращает None, адрес остаётся неотслеживаемым.
        """
        async with lifespan_session(self._session_factory) as session:
            row = await session.get(PaymentAddress, payment_address_id)
            if row is None:
                raise NotFoundError("Payment address not found.", details={"id": payment_address_id})
            invoice = await session.get(Invoice, row.invoice_id) if row.invoice_id else None
            address, network, invoice_id = row.address, row.network, row.invoice_id
            asset = invoice.currency if invoice is not None else get_network(network).native_symbol

        try:
            subscription_id = await self.subscribe(address, network, asset, invoice_id=invoice_id)
        except (DownstreamError, UnsupportedAsset) as exc:
            logger.warning(
                "address left unmonitored",
                extra={"payment_address_id": payment_address_id, "invoice_id": invoice_id, "error": str(exc)},
            )
            return None

        async with lifespan_session(self._session_factory) as session:
            async with session.begin():
                row = await session.get(PaymentAddress, payment_address_id)
                if row is not None:
                    row.subscription_id = subscription_id
                    row.subscription_active = True
        return subscription_id

    async def _delete(self, subscription_id: str) -> bool:
        try:
            await self._client.delete_subscription(subscription_id)
            return True
        except ChainSourceAPIError as exc:
            logger.warning(
                "subscription delete failed",
                extra={"subscription_id": subscription_id, "error": str(exc)},
            )
            return False

    async def unsubscribe(self, subscription_id: str) -> None:
        """Отписка без исключений: сбой логируется, reconcile повторит."""
        if not subscription_id:
            return
        await self._delete(subscription_id)

    # ------------------------------------------------------------------
    # Сверка
    # ------------------------------------------------------------------
    async def reconcile(self) -> Dict[str, int]:
        """
        Периодическая сверка. Возвращает счётчики:
          removed: отписанные адреса терминальных/помеченных инвойсов;
          resubscribed: переподписанные активные инвойсы без подписки;
          orphaned: удалённые подписки провайдера без нашего адреса.
        """
        removed = await self._remove_finished()
        resubscribed = await self._resubscribe_unmonitored()
        orphaned = await self._drop_orphans()
        result = {"removed": removed, "resubscribed": resubscribed, "orphaned": orphaned}
        logger.info("subscription reconcile done", extra=result)
        return result

    async def _remove_finished(self) -> int:
        stmt = (
            select(PaymentAddress.id, PaymentAddress.subscription_id)
            .outerjoin(Invoice, Invoice.id == PaymentAddress.invoice_id)
            .where(
                PaymentAddress.subscription_active.is_(True),
                or_(
                    PaymentAddress.unsubscribe_requested.is_(True),
                    Invoice.id.is_(None),
                    Invoice.status.not_in(sorted(OPEN_INVOICE_STATUSES)),
                ),
            )
        )
        async with lifespan_session(self._session_factory) as session:
            rows = (await session.execute(stmt)).all()

        removed = 0
        for row_id, subscription_id in rows:
            if subscription_id and not await self._delete(subscription_id):
                continue
            async with lifespan_session(self._session_factory) as session:
                async with session.begin():
                    row = await session.get(PaymentAddress, row_id)
                    if row is not None:
                        row.subscription_active = False
            removed += 1
        return removed

    async def _resubscribe_unmonitored(self) -> int:
        if not self._client.configured:
            return 0
        stmt = (
            select(PaymentAddress.id)
            .join(Invoice, Invoice.id == PaymentAddress.invoice_id)
            .where(
                PaymentAddress.subscription_active.is_(False),
                PaymentAddress.unsubscribe_requested.is_(False),
                Invoice.status.in_(sorted(OPEN_INVOICE_STATUSES)),
                Invoice.expires_at > utcnow(),
            )
        )
        async with lifespan_session(self._session_factory) as session:
            ids: List[int] = list((await session.execute(stmt)).scalars().all())

        resubscribed = 0
        for row_id in ids:
            if await self.subscribe_address(row_id):
                resubscribed += 1
        return resubscribed

    async def _drop_orphans(self) -> int:
        if not self._client.configured:
            return 0
        try:
            remote = await self._client.list_subscriptions()
        except ChainSourceAPIError as exc:
            logger.warning("subscription list failed", extra={"error": str(exc)})
            return 0

        async with lifespan_session(self._session_factory) as session:
            known = set(
                (
                    await session.execute(
                        select(PaymentAddress.subscription_id).where(
                            PaymentAddress.subscription_active.is_(True),
                            PaymentAddress.subscription_id.is_not(None),
                        )
                    )
                ).scalars()
            )

        orphaned = 0
        base = self.callback_base
        for sub in remote:
            if not (sub.url or "").startswith(base):
                continue
            if sub.id in known:
                continue
            if await self._delete(sub.id):
                orphaned += 1
        return orphaned

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    async def count_unmonitored_active_invoices(self) -> int:
        """Активные (PENDING/UNDERPAID, не просроченные) инвойсы без живой подписки."""
        stmt = (
            select(func.count(Invoice.id))
            .select_from(Invoice)
            .outerjoin(PaymentAddress, PaymentAddress.invoice_id == Invoice.id)
            .where(
                Invoice.status.in_(sorted(OPEN_INVOICE_STATUSES)),
                Invoice.expires_at > utcnow(),
                or_(PaymentAddress.id.is_(None), PaymentAddress.subscription_active.is_(False)),
            )
        )
        async with lifespan_session(self._session_factory) as session:
            return int((await session.execute(stmt)).scalar_one())

    async def unmonitored_addresses(self, *, limit: int = 100) -> List[PaymentAddress]:
        """Адреса активных инвойсов без подписки (для fallback-опроса)."""
        stmt = (
            select(PaymentAddress)
            .join(Invoice, Invoice.id == PaymentAddress.invoice_id)
            .where(
                PaymentAddress.subscription_active.is_(False),
                Invoice.status.in_(sorted(OPEN_INVOICE_STATUSES)),
                Invoice.expires_at > utcnow(),
            )
            .limit(int(limit))
        )
        async with lifespan_session(self._session_factory) as session:
            return list((await session.execute(stmt)).scalars().all())


__all__ = ["SubscriptionManager"]

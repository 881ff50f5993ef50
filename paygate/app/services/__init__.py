# -*- coding: utf-8 -*-
# paygate/app/services/__init__.py
# =============================================================================
# Paygate: сервисный слой (единая точка входа)
# -----------------------------------------------------------------------------
# Назначение файла:
#   • ServiceContainer: все сервисы ядра, собранные один раз при старте
#     приложения и передаваемые роутам/планировщику явно (app.state.services).
#   • build_services(): сборка контейнера из настроек; внешние клиенты и
#     транспорт HTTP можно подменить (тесты, стенды).
#   • services_health(): агрегированный снимок для /health.
#
# Важные принципы:
#   • Никаких глобальных синглтонов сервисов: контейнер живёт в app.state.
#   • Никаких сетевых вызовов и обращений к БД на уровне импорта.
# =============================================================================

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.app.core.config_core import Settings, get_settings
from paygate.app.core.database_core import db_ping, get_session_factory
from paygate.app.core.logging_core import get_logger
from paygate.app.core.vault_core import KeyMaterialVault, build_vault
from paygate.app.integrations.chain_query_api import ChainQueryClient
from paygate.app.integrations.chain_source_api import ChainSourceClient
from paygate.app.integrations.kms_api import KmsClient

from .allocator_service import AddressAllocator
from .ingestor_service import NotificationIngestor
from .invoice_service import InvoiceService
from .ledger_service import InvoiceLedger
from .subscription_service import SubscriptionManager
from .wallet_service import WalletService
from .webhook_delivery_service import WebhookDeliveryService

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Сервисы ядра, построенные один раз на процесс."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    vault: KeyMaterialVault
    chain_source: ChainSourceClient
    chain_query: ChainQueryClient
    kms: KmsClient
    allocator: AddressAllocator
    webhooks: WebhookDeliveryService
    ledger: InvoiceLedger
    subscriptions: SubscriptionManager
    ingestor: NotificationIngestor
    invoices: InvoiceService
    wallets: WalletService


def build_services(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    vault: Optional[KeyMaterialVault] = None,
    chain_source: Optional[ChainSourceClient] = None,
    chain_query: Optional[ChainQueryClient] = None,
    kms: Optional[KmsClient] = None,
    webhook_transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Callable[[], datetime]] = None,
    rng: Optional[random.Random] = None,
) -> ServiceContainer:
    """
    Собрать контейнер сервисов. Порядок: vault → клиенты → аллокатор →
    доставка вебхуков → ledger → подписки → ингестор → инвойсы → кошельки.
    """
    cfg = settings or get_settings()
    factory = session_factory or get_session_factory()
    vault = vault or build_vault(cfg.VAULT_ENCRYPTION_KEY)

    chain_source = chain_source or ChainSourceClient()
    chain_query = chain_query or ChainQueryClient()
    kms = kms or KmsClient()

    allocator = AddressAllocator(factory, vault=vault, kms=kms)
    webhooks = WebhookDeliveryService(
        factory, vault=vault, transport=webhook_transport, clock=clock, rng=rng, settings=cfg
    )
    ledger = InvoiceLedger(factory, webhooks=webhooks)
    subscriptions = SubscriptionManager(factory, client=chain_source, settings=cfg)
    ingestor = NotificationIngestor(factory, ledger=ledger, settings=cfg)
    invoices = InvoiceService(
        factory, allocator=allocator, subscriptions=subscriptions, ledger=ledger, settings=cfg
    )
    wallets = WalletService(factory, vault=vault, kms=kms)

    logger.info(
        "service container built",
        extra={
            "chain_source": chain_source.configured,
            "chain_query": chain_query.configured,
            "kms": kms.configured,
        },
    )
    return ServiceContainer(
        settings=cfg,
        session_factory=factory,
        vault=vault,
        chain_source=chain_source,
        chain_query=chain_query,
        kms=kms,
        allocator=allocator,
        webhooks=webhooks,
        ledger=ledger,
        subscriptions=subscriptions,
        ingestor=ingestor,
        invoices=invoices,
        wallets=wallets,
    )


async def services_health(services: ServiceContainer) -> Dict[str, Any]:
    """
    Снимок здоровья ядра. Деградации (нет подписок, очередь растёт)
    отражаются счётчиками, а не скрываются.
    """
    out: Dict[str, Any] = {"db": await db_ping(services.session_factory.kw.get("bind"))}
    if not out["db"]:
        return out
    out["unmonitored_active_invoices"] = await services.subscriptions.count_unmonitored_active_invoices()
    out["notifications"] = await services.ingestor.notification_stats()
    out["webhook_queue_depth"] = await services.webhooks.queue_depth()
    out["webhook_worker_running"] = services.webhooks.running
    return out


__all__ = [
    "ServiceContainer",
    "build_services",
    "services_health",
    "AddressAllocator",
    "InvoiceLedger",
    "NotificationIngestor",
    "SubscriptionManager",
    "WebhookDeliveryService",
    "InvoiceService",
    "WalletService",
]

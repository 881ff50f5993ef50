# -*- coding: utf-8 -*-
# tests/conftest.py
# =============================================================================
# Общие фикстуры тестов Paygate:
#   • файловая SQLite (aiosqlite) на каждый тест, BEGIN IMMEDIATE для
#     сериализации писателей (замена SELECT … FOR UPDATE);
#   • подменные клиенты провайдера уведомлений, KMS и сервиса запросов;
#   • httpx.MockTransport вместо эндпоинта мерчанта;
#   • контейнер сервисов, собранный тем же build_services, что и в проде.
# =============================================================================
from __future__ import annotations

import os

# Окружение задаётся до первого импорта paygate: настройки читаются при импорте.
os.environ["ENV"] = "dev"
os.environ["DB_SCHEMA_CORE"] = ""
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["VAULT_ENCRYPTION_KEY"] = "test-vault-secret-0123456789abcdef-XYZ"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["CHAIN_WEBHOOK_HMAC_SECRET"] = ""
os.environ["CHAIN_SOURCE_API_KEY"] = ""
os.environ["WEBHOOK_POLL_INTERVAL_SEC"] = "0.05"

import random
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine

from paygate.app.core.config_core import get_settings
from paygate.app.core.database_core import Base, create_session_factory
from paygate.app.core.vault_core import KeyMaterialVault
from paygate.app.integrations.chain_query_api import ChainQueryAPIError, ObservedTransfer
from paygate.app.integrations.chain_source_api import ChainSourceAPIError, RemoteSubscription
from paygate.app.integrations.kms_api import KmsAPIError, KmsWallet
from paygate.app.models import Merchant, MerchantWallet, PaymentAddress
from paygate.app.services import build_services

# BIP32 test vector 1, master xpub: используется как xpub аккаунта кошелька.
TEST_XPUB = (
    "xpub661MyMwAqRbcFtXgS5sYJABqqG9YLmC4Q1Rdap9gSE8NqtwybGhePY2gZ29ESFjqJoCu1Rupje8YtGqsefD265TMg7usUDFdp6W1EGMcet8"
)
TEST_XPRV = (
    "xprv9s21ZrQH143K3QTDL4LXw2F7HEK3wJUD2nW2nRk4stbPy6cq3jPPqjiChkVvvNKmPGJxWUtg6LnF5kejMRNNU3TGtRBeJgk33yuGBxrMPHi"
)
MERCHANT_ID = "m_test"
MERCHANT_SECRET = "whsec_test_secret"
MERCHANT_WEBHOOK_URL = "https://merchant.example/hooks/paygate"


# -----------------------------------------------------------------------------
# Подменные внешние клиенты
# -----------------------------------------------------------------------------
class FakeChainSource:
    """Провайдер уведомлений в памяти (интерфейс ChainSourceClient)."""

    def __init__(self, *, configured: bool = True) -> None:
        self.configured = configured
        self.fail_create = False
        self.fail_delete = False
        self.created: List[Dict[str, Any]] = []
        self.deleted: List[str] = []
        self.remote: Dict[str, RemoteSubscription] = {}

    async def create_subscription(
        self, *, address: str, chain: str, callback_url: str, subscription_type: str = "INCOMING_NATIVE_TX"
    ) -> str:
        if self.fail_create:
            raise ChainSourceAPIError("create subscription failed: 503")
        sub_id = f"sub-{len(self.created) + 1}"
        self.created.append(
            {"id": sub_id, "address": address, "chain": chain, "url": callback_url, "type": subscription_type}
        )
        self.remote[sub_id] = RemoteSubscription(
            id=sub_id, type=subscription_type, address=address, chain=chain, url=callback_url
        )
        return sub_id

    async def delete_subscription(self, subscription_id: str) -> None:
        if self.fail_delete:
            raise ChainSourceAPIError("delete subscription failed: 503")
        self.deleted.append(subscription_id)
        self.remote.pop(subscription_id, None)

    async def list_subscriptions(self, *, page_size: int = 50, max_pages: int = 100) -> List[RemoteSubscription]:
        return list(self.remote.values())


class FakeKms:
    """KMS в памяти: xpub для BIP32-цепочек, адреса по запросу для харденных."""

    def __init__(self) -> None:
        self.configured = True
        self.fail_address = False
        self.generated: List[str] = []
        self.requests: List[tuple] = []

    async def generate_wallet(self, chain_tag: str) -> KmsWallet:
        self.generated.append(chain_tag)
        xpub = None if chain_tag in ("SOL", "SUI") else TEST_XPUB
        return KmsWallet(extended_public_key=xpub, custody_handle=f"kms-handle-{chain_tag}")

    async def request_address(self, custody_handle: str, index: int) -> str:
        if self.fail_address:
            raise KmsAPIError("custody address request failed: 500")
        self.requests.append((custody_handle, index))
        return f"So1Custody{custody_handle[-3:]}Addr{index:04d}"


class FakeChainQuery:
    """Сервис запросов к цепочкам: заранее заданные переводы по адресам."""

    def __init__(self, *, configured: bool = True) -> None:
        self.configured = configured
        self.transfers: Dict[str, List[ObservedTransfer]] = {}
        self.failing: set = set()
        self.calls: List[str] = []

    async def incoming_transfers(self, *, network: str, address: str, limit: int = 50) -> List[ObservedTransfer]:
        self.calls.append(address)
        if address in self.failing:
            raise ChainQueryAPIError("transaction history failed: 502")
        return list(self.transfers.get(address, []))


@dataclass
class MerchantEndpoint:
    """Эндпоинт мерчанта: записывает запросы и отвечает заданным статусом."""

    status_code: int = 200
    raise_error: Optional[Exception] = None
    requests: List[httpx.Request] = field(default_factory=list)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_error is not None:
            raise self.raise_error
        return httpx.Response(self.status_code, json={"ok": self.status_code < 300})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# -----------------------------------------------------------------------------
# База данных
# -----------------------------------------------------------------------------
@pytest.fixture
def settings():
    return get_settings()


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'paygate.db'}")

    @event.listens_for(eng.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Транзакциями управляет событие begin ниже.
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


# -----------------------------------------------------------------------------
# Сервисы
# -----------------------------------------------------------------------------
@pytest.fixture
def vault(settings):
    return KeyMaterialVault(settings.VAULT_ENCRYPTION_KEY)


@pytest.fixture
def chain_source():
    return FakeChainSource()


@pytest.fixture
def kms():
    return FakeKms()


@pytest.fixture
def chain_query():
    return FakeChainQuery()


@pytest.fixture
def merchant_endpoint():
    return MerchantEndpoint()


@pytest_asyncio.fixture
async def services(settings, session_factory, vault, chain_source, kms, chain_query, merchant_endpoint):
    container = build_services(
        settings,
        session_factory=session_factory,
        vault=vault,
        chain_source=chain_source,
        chain_query=chain_query,
        kms=kms,
        webhook_transport=merchant_endpoint.transport,
        rng=random.Random(0),
    )
    yield container
    if container.webhooks.running:
        await container.webhooks.stop(drain=False, timeout=1.0)


# -----------------------------------------------------------------------------
# Данные
# -----------------------------------------------------------------------------
async def add_merchant(
    session_factory,
    vault: KeyMaterialVault,
    *,
    merchant_id: str = MERCHANT_ID,
    webhook_url: Optional[str] = MERCHANT_WEBHOOK_URL,
    secret: Optional[str] = MERCHANT_SECRET,
    is_active: bool = True,
) -> str:
    async with session_factory() as session:
        async with session.begin():
            session.add(
                Merchant(
                    id=merchant_id,
                    name=f"Merchant {merchant_id}",
                    webhook_url=webhook_url,
                    webhook_secret=vault.encrypt_optional(secret),
                    is_active=is_active,
                )
            )
    return merchant_id


@pytest_asyncio.fixture
async def merchant(session_factory, vault) -> str:
    return await add_merchant(session_factory, vault)


@pytest_asyncio.fixture
async def quiet_merchant(session_factory, vault) -> str:
    """Мерчант без webhook_url: ledger не ставит доставок."""
    return await add_merchant(session_factory, vault, merchant_id="m_quiet", webhook_url=None, secret=None)


@pytest_asyncio.fixture
async def eth_wallet(services):
    return await services.wallets.import_wallet("ETH", "ethereum", extended_public_key=TEST_XPUB)


@pytest_asyncio.fixture
async def btc_wallet(services):
    return await services.wallets.import_wallet("BTC", "bitcoin", extended_public_key=TEST_XPUB)


@pytest.fixture
def make_invoice(services, merchant, eth_wallet) -> Callable[..., Any]:
    """Фабрика инвойсов USDT/ethereum (кошелёк: нативный ETH)."""

    async def _make(amount: Any = "100", **kwargs: Any):
        kwargs.setdefault("currency", "USDT")
        kwargs.setdefault("network", "ethereum")
        merchant_id = kwargs.pop("merchant_id", merchant)
        creation = await services.invoices.create_invoice(merchant_id, amount=amount, **kwargs)
        return creation.invoice

    return _make


async def merchant_balance(session_factory, merchant_id: str, asset: str, network: str) -> MerchantWallet:
    async with session_factory() as session:
        stmt = select(MerchantWallet).where(
            MerchantWallet.merchant_id == merchant_id,
            MerchantWallet.asset == asset,
            MerchantWallet.network == network,
        )
        return (await session.execute(stmt)).scalar_one()


async def payment_address_for(session_factory, invoice_id: str) -> PaymentAddress:
    async with session_factory() as session:
        stmt = select(PaymentAddress).where(PaymentAddress.invoice_id == invoice_id)
        return (await session.execute(stmt)).scalar_one()


def usdt_event(address: str, tx_hash: str, amount: Any, **extra: Any) -> Dict[str, Any]:
    """Уведомление провайдера о поступлении USDT (ERC-20)."""
    body: Dict[str, Any] = {
        "address": address,
        "amount": str(Decimal(str(amount))),
        "txId": tx_hash,
        "chain": "ethereum-mainnet",
        "contractAddress": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
        "counterAddress": "0x000000000000000000000000000000000000dEaD",
        "subscriptionType": "ADDRESS_EVENT",
    }
    body.update(extra)
    return body

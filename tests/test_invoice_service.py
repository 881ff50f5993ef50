# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from paygate.app.core.errors_core import (
    IdempotencyConflictError,
    InvalidStateError,
    NotFoundError,
    UnsupportedAsset,
    ValidationError,
    WalletNotActive,
    WalletNotFound,
)
from paygate.app.core.chains_core import get_asset
from paygate.app.core.utils_core import ensure_aware
from paygate.app.models import InvoiceStatus, MasterWallet, MerchantWallet, WalletStatus
from paygate.app.services.invoice_service import InvoiceService, invoice_to_dict

from .conftest import MERCHANT_ID, TEST_XPUB, add_merchant, merchant_balance


async def test_create_invoice(services, merchant, eth_wallet, session_factory):
    creation = await services.invoices.create_invoice(
        merchant,
        amount="100",
        currency="usdt",
        network="eth",
        order_id="A-1",
        description="Coffee beans",
        custom_data={"sku": "beans"},
    )
    invoice = creation.invoice

    assert creation.created is True
    assert invoice.currency == "USDT"
    assert invoice.network == "ethereum"
    assert invoice.status == InvoiceStatus.PENDING.value
    assert invoice.wallet_id == eth_wallet.id
    assert invoice.deposit_address == creation.payment_address.address
    assert invoice.qr_data == f"usdt:{invoice.deposit_address}?amount=100"
    ttl = ensure_aware(invoice.expires_at) - ensure_aware(invoice.created_at)
    assert ttl.total_seconds() == services.settings.INVOICE_DEFAULT_TTL_SEC

    balance = await merchant_balance(session_factory, MERCHANT_ID, "USDT", "ethereum")
    assert balance.available_balance == Decimal("0")
    assert balance.pending_balance == Decimal("0")

    exported = invoice_to_dict(invoice, payment_url=services.invoices.payment_url(invoice.id))
    assert exported["amount"] == "100"
    assert exported["amount_paid"] == "0"
    assert exported["order_id"] == "A-1"
    assert exported["payment_url"].endswith(f"/pay/{invoice.id}")
    assert exported["expires_at"].endswith("Z")
    assert exported["paid_at"] is None


async def test_custom_ttl(make_invoice):
    invoice = await make_invoice("1", ttl_sec=120)

    ttl = ensure_aware(invoice.expires_at) - ensure_aware(invoice.created_at)
    assert ttl.total_seconds() == 120


async def test_idempotency_key_reads_through(services, merchant, eth_wallet):
    first = await services.invoices.create_invoice(
        merchant, amount="25", currency="USDT", network="ethereum", idempotency_key="order-7"
    )
    second = await services.invoices.create_invoice(
        merchant, amount="25.000", currency="USDT", network="ethereum", idempotency_key="order-7"
    )

    assert second.created is False
    assert second.invoice.id == first.invoice.id
    assert second.payment_address is None
    assert (await services.wallets.get_wallet(eth_wallet.id)).next_index == 1

    with pytest.raises(IdempotencyConflictError):
        await services.invoices.create_invoice(
            merchant, amount="26", currency="USDT", network="ethereum", idempotency_key="order-7"
        )


async def test_idempotency_key_is_scoped_per_merchant(services, merchant, eth_wallet, session_factory, vault):
    other = await add_merchant(session_factory, vault, merchant_id="m_other")

    first = await services.invoices.create_invoice(
        merchant, amount="5", currency="USDT", network="ethereum", idempotency_key="shared"
    )
    second = await services.invoices.create_invoice(
        other, amount="5", currency="USDT", network="ethereum", idempotency_key="shared"
    )

    assert second.created is True
    assert second.invoice.id != first.invoice.id


async def test_unknown_or_disabled_merchant(services, eth_wallet, session_factory, vault):
    with pytest.raises(NotFoundError):
        await services.invoices.create_invoice("m_missing", amount="1", currency="USDT", network="ethereum")

    await add_merchant(session_factory, vault, merchant_id="m_off", is_active=False)
    with pytest.raises(InvalidStateError):
        await services.invoices.create_invoice("m_off", amount="1", currency="USDT", network="ethereum")


async def test_missing_wallet_is_reported(services, merchant, eth_wallet):
    with pytest.raises(WalletNotFound) as excinfo:
        await services.invoices.create_invoice(merchant, amount="0.1", currency="BTC", network="bitcoin")

    assert excinfo.value.message == "No active wallet/KMS key for BTC on bitcoin."


async def test_token_on_other_network_does_not_borrow_wallet(services, merchant, eth_wallet):
    with pytest.raises(WalletNotFound):
        await services.invoices.create_invoice(merchant, amount="1", currency="USDT", network="tron")


async def test_inactive_wallet_is_reported(services, merchant, eth_wallet, session_factory):
    async with session_factory() as session:
        async with session.begin():
            wallet = await session.get(MasterWallet, eth_wallet.id)
            wallet.status = WalletStatus.INACTIVE.value

    with pytest.raises(WalletNotActive):
        await services.invoices.create_invoice(merchant, amount="1", currency="USDT", network="ethereum")


@pytest.mark.parametrize("amount", ["0", "-3", "abc", "1.0000001"])
async def test_bad_amount(services, merchant, eth_wallet, amount):
    with pytest.raises(ValidationError):
        await services.invoices.create_invoice(merchant, amount=amount, currency="USDT", network="ethereum")


async def test_unsupported_pair(services, merchant, eth_wallet):
    with pytest.raises(UnsupportedAsset):
        await services.invoices.create_invoice(merchant, amount="1", currency="DOGE", network="ethereum")
    with pytest.raises(UnsupportedAsset):
        await services.invoices.create_invoice(merchant, amount="1", currency="USDT", network="atlantis")


async def test_get_invoice_is_scoped_to_merchant(services, make_invoice):
    invoice = await make_invoice("3")

    assert (await services.invoices.get_invoice(invoice.id, merchant_id=MERCHANT_ID)).id == invoice.id
    with pytest.raises(NotFoundError):
        await services.invoices.get_invoice(invoice.id, merchant_id="m_other")
    with pytest.raises(NotFoundError):
        await services.invoices.get_invoice("missing")


async def test_cancel_through_service(services, make_invoice):
    invoice = await make_invoice("3")

    result = await services.invoices.cancel_invoice(invoice.id, merchant_id=MERCHANT_ID)

    assert result.status == InvoiceStatus.CANCELLED.value
    assert (await services.invoices.get_invoice(invoice.id)).status == InvoiceStatus.CANCELLED.value


async def test_imported_btc_wallet_serves_btc(services, merchant, btc_wallet):
    creation = await services.invoices.create_invoice(merchant, amount="0.015", currency="BTC", network="bitcoin")

    assert creation.invoice.wallet_id == btc_wallet.id
    assert creation.invoice.deposit_address.startswith("1")
    assert creation.payment_address.derivation_path == "m/44'/0'/0'/0/0"
    assert TEST_XPUB == btc_wallet.extended_public_key


async def _merchant_wallet_count(session_factory) -> int:
    async with session_factory() as session:
        stmt = select(func.count(MerchantWallet.id)).where(MerchantWallet.merchant_id == MERCHANT_ID)
        return (await session.execute(stmt)).scalar_one()


async def test_concurrent_first_invoices_share_merchant_wallet(services, merchant, eth_wallet, session_factory):
    first, second = await asyncio.gather(
        services.invoices.create_invoice(merchant, amount="10", currency="USDT", network="ethereum"),
        services.invoices.create_invoice(merchant, amount="20", currency="USDT", network="ethereum"),
    )

    assert first.created is True
    assert second.created is True
    assert first.invoice.deposit_address != second.invoice.deposit_address
    assert await _merchant_wallet_count(session_factory) == 1


async def test_merchant_wallet_insert_conflict_keeps_transaction(
    services, make_invoice, session_factory, merchant, eth_wallet
):
    await make_invoice("5")
    asset = get_asset("USDT", "ethereum")

    async with session_factory() as session:
        async with session.begin():
            inserted = await InvoiceService._insert_merchant_wallet(session, merchant, asset)
            wallet = (
                await session.execute(select(MerchantWallet).where(MerchantWallet.merchant_id == merchant))
            ).scalar_one()
            wallet.pending_balance = Decimal("1")

    assert inserted is False
    assert await _merchant_wallet_count(session_factory) == 1
    balance = await merchant_balance(session_factory, MERCHANT_ID, "USDT", "ethereum")
    assert balance.pending_balance == Decimal("1")

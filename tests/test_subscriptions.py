# -*- coding: utf-8 -*-
from __future__ import annotations

import pytest

from paygate.app.core.errors_core import DownstreamError
from paygate.app.integrations.chain_source_api import (
    SUBSCRIPTION_ADDRESS_EVENT,
    SUBSCRIPTION_NATIVE,
    RemoteSubscription,
)
from paygate.app.services.subscription_service import SubscriptionManager

from .conftest import FakeChainSource, payment_address_for


async def test_token_invoice_subscribes_address_events(services, make_invoice, chain_source, session_factory):
    invoice = await make_invoice("100")

    [created] = chain_source.created
    assert created["address"] == invoice.deposit_address
    assert created["chain"] == "ETH"
    assert created["type"] == SUBSCRIPTION_ADDRESS_EVENT
    assert created["url"] == f"{services.subscriptions.callback_base}/{invoice.id}"
    assert created["url"].endswith(f"/webhooks/chain/{invoice.id}")

    address = await payment_address_for(session_factory, invoice.id)
    assert address.subscription_id == created["id"]
    assert address.subscription_active is True
    assert await services.subscriptions.count_unmonitored_active_invoices() == 0


async def test_native_invoice_subscribes_native_transfers(services, merchant, eth_wallet, chain_source):
    await services.invoices.create_invoice(merchant, amount="0.5", currency="ETH", network="ethereum")

    assert chain_source.created[0]["type"] == SUBSCRIPTION_NATIVE


async def test_failed_subscription_is_repaired_by_reconcile(services, make_invoice, chain_source, session_factory):
    chain_source.fail_create = True
    invoice = await make_invoice("100")

    assert invoice.status == "PENDING"
    assert await services.subscriptions.count_unmonitored_active_invoices() == 1
    unmonitored = await services.subscriptions.unmonitored_addresses()
    assert [row.invoice_id for row in unmonitored] == [invoice.id]

    chain_source.fail_create = False
    result = await services.subscriptions.reconcile()

    assert result == {"removed": 0, "resubscribed": 1, "orphaned": 0}
    assert await services.subscriptions.count_unmonitored_active_invoices() == 0
    address = await payment_address_for(session_factory, invoice.id)
    assert address.subscription_active is True


async def test_paid_invoice_is_unsubscribed(services, make_invoice, chain_source, session_factory):
    invoice = await make_invoice("100")
    subscription_id = chain_source.created[0]["id"]
    await services.ledger.apply_confirmed_transaction(invoice.id, "0xpaid", "100", 1)

    result = await services.subscriptions.reconcile()

    assert result["removed"] == 1
    assert chain_source.deleted == [subscription_id]
    address = await payment_address_for(session_factory, invoice.id)
    assert address.subscription_active is False

    again = await services.subscriptions.reconcile()
    assert again == {"removed": 0, "resubscribed": 0, "orphaned": 0}


async def test_failed_unsubscribe_is_retried_later(services, make_invoice, chain_source, session_factory):
    invoice = await make_invoice("100")
    await services.ledger.cancel_invoice(invoice.id)
    chain_source.fail_delete = True

    assert (await services.subscriptions.reconcile())["removed"] == 0
    address = await payment_address_for(session_factory, invoice.id)
    assert address.subscription_active is True

    chain_source.fail_delete = False
    assert (await services.subscriptions.reconcile())["removed"] == 1


async def test_orphaned_subscriptions_are_dropped(services, make_invoice, chain_source):
    live = await make_invoice("100")
    base = services.subscriptions.callback_base
    chain_source.remote["sub-orphan"] = RemoteSubscription(
        id="sub-orphan", type=SUBSCRIPTION_ADDRESS_EVENT, address="0xgone", chain="ETH", url=f"{base}/inv_gone"
    )
    chain_source.remote["sub-foreign"] = RemoteSubscription(
        id="sub-foreign", type=SUBSCRIPTION_NATIVE, address="0xother", chain="ETH", url="https://other.example/hook"
    )

    result = await services.subscriptions.reconcile()

    assert result["orphaned"] == 1
    assert chain_source.deleted == ["sub-orphan"]
    assert "sub-foreign" in chain_source.remote
    assert chain_source.created[0]["url"].endswith(live.id)
    assert chain_source.created[0]["id"] in chain_source.remote


async def test_unsubscribe_never_raises(services, chain_source):
    chain_source.fail_delete = True

    await services.subscriptions.unsubscribe("sub-404")
    await services.subscriptions.unsubscribe("")

    assert chain_source.deleted == []


async def test_unconfigured_source(session_factory, settings):
    manager = SubscriptionManager(session_factory, client=FakeChainSource(configured=False), settings=settings)

    with pytest.raises(DownstreamError):
        await manager.subscribe("0x000000000000000000000000000000000000bEEF", "ethereum", "USDT")
    assert await manager.reconcile() == {"removed": 0, "resubscribed": 0, "orphaned": 0}

# -*- coding: utf-8 -*-
from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from paygate.app.core.errors_core import ValidationError
from paygate.app.models import ChainNotificationLog, InvoiceStatus

from .conftest import MERCHANT_ID, merchant_balance, payment_address_for, usdt_event

USDC_ETHEREUM = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"


async def test_confirmed_notification_is_applied(services, make_invoice, session_factory):
    invoice = await make_invoice("100")

    result = await services.ingestor.ingest(usdt_event(invoice.deposit_address, "0xabc", 100, blockNumber=19000000))

    assert result.result == "applied"
    assert result.invoice_id == invoice.id
    assert result.status == InvoiceStatus.PAID.value
    address = await payment_address_for(session_factory, invoice.id)
    assert address.first_seen_at is not None
    assert address.last_seen_at is not None


async def test_redelivery_is_reported_as_duplicate(services, make_invoice, session_factory):
    invoice = await make_invoice("100")
    event = usdt_event(invoice.deposit_address, "0xabc", 100, blockNumber=1)

    first = await services.ingestor.ingest(event)
    second = await services.ingestor.ingest(event)

    assert first.result == "applied"
    assert second.result == "duplicate"
    assert second.applied is False
    balance = await merchant_balance(session_factory, MERCHANT_ID, "USDT", "ethereum")
    assert balance.available_balance == Decimal("100")


async def test_mempool_notification_is_pending(services, make_invoice, session_factory):
    invoice = await make_invoice("100")

    seen = await services.ingestor.ingest(usdt_event(invoice.deposit_address, "0xmem", 100))
    mined = await services.ingestor.ingest(usdt_event(invoice.deposit_address, "0xmem", 100, blockNumber=7))

    assert seen.result == "pending"
    assert seen.status == InvoiceStatus.PENDING.value
    assert mined.result == "applied"
    assert mined.status == InvoiceStatus.PAID.value
    balance = await merchant_balance(session_factory, MERCHANT_ID, "USDT", "ethereum")
    assert balance.pending_balance == Decimal("0")
    assert balance.available_balance == Decimal("100")


async def test_evm_address_lookup_ignores_case(services, make_invoice):
    invoice = await make_invoice("100")

    lower = await services.ingestor.ingest(usdt_event(invoice.deposit_address.lower(), "0xl", 50, blockNumber=1))

    assert lower.result == "applied"
    assert lower.status == InvoiceStatus.UNDERPAID.value


async def test_unknown_address_is_ignored(services, make_invoice, session_factory):
    await make_invoice("100")

    result = await services.ingestor.ingest(
        usdt_event("0x000000000000000000000000000000000000bEEF", "0xstranger", 1, blockNumber=1)
    )

    assert result.result == "ignored"
    assert result.applied is False
    async with session_factory() as session:
        log = (
            await session.execute(select(ChainNotificationLog).where(ChainNotificationLog.tx_hash == "0xstranger"))
        ).scalar_one()
    assert log.result == "ignored"


async def test_asset_mismatch_is_ignored(services, make_invoice):
    invoice = await make_invoice("100")

    result = await services.ingestor.ingest(
        usdt_event(invoice.deposit_address, "0xusdc", 100, blockNumber=1, contractAddress=USDC_ETHEREUM)
    )

    assert result.result == "ignored"
    stored = await services.invoices.get_invoice(invoice.id)
    assert stored.status == InvoiceStatus.PENDING.value


async def test_invoice_hint_must_match_address(services, make_invoice):
    first = await make_invoice("100")
    second = await make_invoice("100")

    result = await services.ingestor.ingest(
        usdt_event(first.deposit_address, "0xhint", 100, blockNumber=1), invoice_hint=second.id
    )

    assert result.result == "ignored"


@pytest.mark.parametrize(
    "mutation",
    [
        {"txId": None},
        {"amount": "-5"},
        {"amount": "not-a-number"},
        {"address": ""},
        {"confirmations": -1},
    ],
)
async def test_malformed_notification_is_rejected(services, make_invoice, session_factory, mutation):
    invoice = await make_invoice("100")
    event = usdt_event(invoice.deposit_address, "0xbad", 100)
    event.update(mutation)
    event = {k: v for k, v in event.items() if v is not None}

    with pytest.raises(ValidationError):
        await services.ingestor.ingest(event)

    async with session_factory() as session:
        results = (await session.execute(select(ChainNotificationLog.result))).scalars().all()
    assert results == ["invalid"]


async def test_utxo_requires_two_confirmations(services, merchant, btc_wallet):
    creation = await services.invoices.create_invoice(merchant, amount="1", currency="BTC", network="bitcoin")
    address = creation.invoice.deposit_address
    base = {"address": address, "amount": "1", "txId": "btc-tx-1", "chain": "bitcoin-mainnet", "asset": "BTC"}

    one = await services.ingestor.ingest({**base, "confirmations": 1})
    two = await services.ingestor.ingest({**base, "confirmations": 2})

    assert address.startswith("1")
    assert one.result == "pending"
    assert two.result == "applied"
    assert two.status == InvoiceStatus.PAID.value


async def test_block_number_without_confirmations_meets_threshold(services, merchant, btc_wallet):
    creation = await services.invoices.create_invoice(merchant, amount="1", currency="BTC", network="bitcoin")

    result = await services.ingestor.ingest(
        {"address": creation.invoice.deposit_address, "amount": 1, "hash": "btc-tx-2", "blockNumber": 840000}
    )

    assert result.result == "applied"


async def test_notification_stats(services, make_invoice):
    invoice = await make_invoice("100")
    await services.ingestor.ingest(usdt_event(invoice.deposit_address, "0xs1", 10, blockNumber=1))
    await services.ingestor.ingest(usdt_event("0x000000000000000000000000000000000000bEEF", "0xs2", 1))

    stats = await services.ingestor.notification_stats()

    assert stats["last_24h"] == 2
    assert stats["last_30d"] == 2
    assert stats["success_rate_24h"] == 0.5
    assert stats["total_addresses"] == 1

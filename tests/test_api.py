# -*- coding: utf-8 -*-
from __future__ import annotations

import dataclasses
import json

import httpx
import pytest_asyncio
from sqlalchemy import update

from paygate.app import create_app
from paygate.app.core.config_core import Settings
from paygate.app.core.security_core import sign_payload
from paygate.app.core.utils_core import utcnow
from paygate.app.models import DeliveryStatus, InvoiceStatus, WebhookDelivery

from .conftest import MERCHANT_ID, TEST_XPUB, usdt_event

MERCHANT = {"X-Merchant-Id": MERCHANT_ID}
ADMIN = {"X-Admin-Api-Key": "test-admin-key"}


def _client(services) -> httpx.AsyncClient:
    app = create_app(services.settings, services=services, start_background=False)
    # ASGITransport не запускает lifespan: состояние задаём сами.
    app.state.services = services
    app.state.scheduler = None
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest_asyncio.fixture
async def client(services):
    async with _client(services) as http:
        yield http


async def _create(client, **overrides):
    body = {"amount": "100", "currency": "USDT", "network": "ethereum"}
    body.update(overrides.pop("body", {}))
    return await client.post("/api/invoices", json=body, headers={**MERCHANT, **overrides.pop("headers", {})})


# -----------------------------------------------------------------------------
# Инвойсы
# -----------------------------------------------------------------------------
async def test_create_and_fetch_invoice(client, merchant, eth_wallet):
    response = await _create(client, body={"order_id": "A-1", "custom_data": {"k": "v"}})

    assert response.status_code == 201
    data = response.json()
    assert data["merchant_id"] == MERCHANT_ID
    assert data["status"] == InvoiceStatus.PENDING.value
    assert data["amount"] == "100"
    assert data["deposit_address"].startswith("0x")
    assert data["qr_data"] == f"usdt:{data['deposit_address']}?amount=100"
    assert data["payment_url"].endswith(f"/pay/{data['id']}")

    fetched = await client.get(f"/api/invoices/{data['id']}", headers=MERCHANT)
    assert fetched.status_code == 200
    assert fetched.json()["order_id"] == "A-1"
    etag = fetched.headers["ETag"]
    assert etag.startswith('"') and etag.endswith('"')

    cached = await client.get(f"/api/invoices/{data['id']}", headers={**MERCHANT, "If-None-Match": etag})
    assert cached.status_code == 304


async def test_idempotent_create(client, merchant, eth_wallet):
    first = await _create(client, headers={"Idempotency-Key": "k-1"})
    second = await _create(client, headers={"Idempotency-Key": "k-1"})
    conflict = await _create(client, body={"amount": "7"}, headers={"Idempotency-Key": "k-1"})

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["id"] == first.json()["id"]
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "idempotency_conflict"


async def test_create_requires_merchant_header(client):
    response = await client.post("/api/invoices", json={"amount": "1", "currency": "USDT", "network": "ethereum"})

    assert response.status_code == 401


async def test_create_error_mapping(client, merchant, eth_wallet):
    unsupported = await _create(client, body={"currency": "DOGE"})
    no_wallet = await _create(client, body={"currency": "BTC", "network": "bitcoin", "amount": "0.1"})
    bad_amount = await _create(client, body={"amount": "-1"})
    unknown_field = await _create(client, body={"colour": "red"})

    assert unsupported.status_code == 422
    assert unsupported.json()["error"] == "unsupported_asset"
    assert no_wallet.status_code == 409
    assert no_wallet.json()["error"] == "wallet_not_found"
    assert no_wallet.json()["message"] == "No active wallet/KMS key for BTC on bitcoin."
    assert bad_amount.status_code == 422
    assert unknown_field.status_code == 422


async def test_invoice_of_other_merchant_is_hidden(client, merchant, eth_wallet):
    created = (await _create(client)).json()

    response = await client.get(f"/api/invoices/{created['id']}", headers={"X-Merchant-Id": "m_other"})

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


async def test_cancel_invoice(client, merchant, eth_wallet):
    created = (await _create(client)).json()

    cancelled = await client.post(f"/api/invoices/{created['id']}/cancel", headers=MERCHANT)
    again = await client.post(f"/api/invoices/{created['id']}/cancel", headers=MERCHANT)

    assert cancelled.status_code == 200
    assert cancelled.json() == {"invoice_id": created["id"], "status": "CANCELLED", "applied": True}
    assert again.status_code == 409
    assert again.json()["error"] == "invalid_state"


# -----------------------------------------------------------------------------
# Уведомления провайдера
# -----------------------------------------------------------------------------
async def test_chain_notification_flow(client, merchant, eth_wallet):
    created = (await _create(client)).json()
    event = usdt_event(created["deposit_address"], "0xapi", 100, blockNumber=5)

    first = await client.post(f"/api/webhooks/chain/{created['id']}", json=event)
    second = await client.post("/api/webhooks/chain", json=event)

    assert first.status_code == 200
    assert first.json()["status"] == "applied"
    assert first.json()["invoice_status"] == InvoiceStatus.PAID.value
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"

    invoice = (await client.get(f"/api/invoices/{created['id']}", headers=MERCHANT)).json()
    assert invoice["status"] == InvoiceStatus.PAID.value
    assert invoice["amount_paid"] == "100"
    assert invoice["paid_at"] is not None


async def test_chain_notification_for_unknown_address(client):
    event = usdt_event("0x000000000000000000000000000000000000bEEF", "0xnone", 1)

    response = await client.post("/api/webhooks/chain", json=event)

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


async def test_chain_notification_rejects_garbage(client):
    not_json = await client.post(
        "/api/webhooks/chain", content=b"{oops", headers={"Content-Type": "application/json"}
    )
    not_object = await client.post("/api/webhooks/chain", json=[1, 2, 3])
    missing = await client.post("/api/webhooks/chain", json={"address": "0xabc"})

    assert not_json.status_code == 422
    assert not_object.status_code == 422
    assert missing.status_code == 422
    assert missing.json()["error"] == "validation_error"


async def test_chain_notification_signature(services, merchant, eth_wallet):
    signed = dataclasses.replace(services, settings=Settings(CHAIN_WEBHOOK_HMAC_SECRET="chain-secret"))
    invoice = (
        await services.invoices.create_invoice(MERCHANT_ID, amount="100", currency="USDT", network="ethereum")
    ).invoice
    body = json.dumps(usdt_event(invoice.deposit_address, "0xsigned", 100, blockNumber=1)).encode("utf-8")

    async with _client(signed) as http:
        unsigned = await http.post("/api/webhooks/chain", content=body)
        forged = await http.post("/api/webhooks/chain", content=body, headers={"x-webhook-signature": "sha256=00"})
        valid = await http.post(
            "/api/webhooks/chain",
            content=body,
            headers={"x-webhook-signature": sign_payload("chain-secret", body)},
        )

    assert unsigned.status_code == 401
    assert forged.status_code == 401
    assert forged.json()["error"] == "invalid_signature"
    assert valid.status_code == 200
    assert valid.json()["status"] == "applied"


# -----------------------------------------------------------------------------
# Доставки вебхуков
# -----------------------------------------------------------------------------
async def test_delivery_endpoints(client, services, merchant, eth_wallet, merchant_endpoint):
    created = (await _create(client)).json()
    await client.post(f"/api/invoices/{created['id']}/cancel", headers=MERCHANT)
    merchant_endpoint.status_code = 500
    for _ in range(services.settings.WEBHOOK_MAX_ATTEMPTS):
        await _force_due(services)
        assert await services.webhooks.process_due() == 1

    failed = await client.get("/api/webhooks/deliveries/failed", headers=MERCHANT)
    assert failed.status_code == 200
    [item] = failed.json()["items"]
    assert item["status"] == DeliveryStatus.FAILED.value
    assert item["invoice_id"] == created["id"]

    stats = await client.get("/api/webhooks/deliveries/stats?timeframe=hour", headers=MERCHANT)
    assert stats.status_code == 200
    assert stats.json()["failed"] == 1
    bad_timeframe = await client.get("/api/webhooks/deliveries/stats?timeframe=year", headers=MERCHANT)
    assert bad_timeframe.status_code == 422

    foreign = await client.post(
        f"/api/webhooks/deliveries/{item['id']}/retry", headers={"X-Merchant-Id": "m_other"}
    )
    assert foreign.status_code == 404

    merchant_endpoint.status_code = 200
    retried = await client.post(f"/api/webhooks/deliveries/{item['id']}/retry", headers=MERCHANT)
    assert retried.status_code == 200
    assert retried.json()["status"] == DeliveryStatus.PENDING.value
    assert await services.webhooks.process_due() == 1
    assert (await services.webhooks.get(item["id"])).status == DeliveryStatus.SENT.value


async def _force_due(services) -> None:
    """Следующая попытка ещё не созрела: делаем её доступной сразу."""
    async with services.session_factory() as session:
        async with session.begin():
            await session.execute(
                update(WebhookDelivery)
                .where(WebhookDelivery.status == DeliveryStatus.PENDING.value)
                .values(next_retry_at=utcnow())
            )


# -----------------------------------------------------------------------------
# Кошельки (админ)
# -----------------------------------------------------------------------------
async def test_admin_wallets(client, kms):
    denied = await client.get("/api/admin/wallets")
    wrong = await client.get("/api/admin/wallets", headers={"X-Admin-Api-Key": "nope"})
    assert denied.status_code == 401
    assert wrong.status_code == 401

    imported = await client.post(
        "/api/admin/wallets",
        json={"asset": "ETH", "network": "ethereum", "mode": "import", "extended_public_key": TEST_XPUB},
        headers=ADMIN,
    )
    generated = await client.post("/api/admin/wallets", json={"asset": "SOL", "network": "solana"}, headers=ADMIN)
    duplicate = await client.post(
        "/api/admin/wallets",
        json={"asset": "ETH", "network": "ethereum", "mode": "import", "extended_public_key": TEST_XPUB},
        headers=ADMIN,
    )
    missing_key = await client.post(
        "/api/admin/wallets", json={"asset": "ETH", "network": "ethereum", "mode": "import"}, headers=ADMIN
    )

    assert imported.status_code == 201
    assert imported.json()["family"] == "EVM"
    assert generated.status_code == 201
    assert generated.json()["custody_derived"] is True
    assert kms.generated == ["SOL"]
    assert duplicate.status_code == 409
    assert missing_key.status_code == 422

    listed = await client.get("/api/admin/wallets", headers=ADMIN)
    assert [w["asset"] for w in listed.json()] == ["ETH", "SOL"]

    deleted = await client.delete(f"/api/admin/wallets/{imported.json()['id']}", headers=ADMIN)
    assert deleted.status_code == 200
    assert deleted.json()["status"] == "DELETED"
    remaining = await client.get("/api/admin/wallets", headers=ADMIN)
    assert [w["asset"] for w in remaining.json()] == ["SOL"]


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------
async def test_health(client, merchant, eth_wallet, chain_source):
    healthy = await client.get("/health")
    assert healthy.status_code == 200
    assert healthy.json()["status"] == "ok"
    assert healthy.json()["db"] is True
    assert healthy.json()["webhook_worker_running"] is False

    chain_source.fail_create = True
    await _create(client)
    degraded = (await client.get("/api/health")).json()

    assert degraded["status"] == "degraded"
    assert degraded["unmonitored_active_invoices"] == 1
    assert degraded["notifications"]["total_addresses"] == 1


async def test_request_id_is_echoed(client):
    given = await client.get("/health", headers={"X-Request-ID": "req-42"})
    generated = await client.get("/health")

    assert given.headers["x-request-id"] == "req-42"
    assert len(generated.headers["x-request-id"]) == 32

# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
import random
from datetime import timedelta
from decimal import Decimal

import pytest

from paygate.app.core.utils_core import utcnow
from paygate.app.integrations.chain_query_api import ObservedTransfer
from paygate.app.models import InvoiceStatus
from paygate.app.scheduler import (
    check_wallet_secrets,
    cleanup_deliveries,
    expire_invoices,
    poll_unmonitored,
    reconcile_subscriptions,
)
from paygate.app.services.scheduler_service import DailyGate, SchedulerService, SchedulerSettings, build_scheduler

USDT_ETHEREUM = "0xdAC17F958D2ee523a2206206994597C13D831ec7"


def _scheduler(**overrides) -> SchedulerService:
    params = {"TICK_SEC": 1, "JITTER_SEC": 0, "BACKOFF_START_SEC": 5, "BACKOFF_MAX_SEC": 12}
    params.update(overrides)
    return SchedulerService(SchedulerSettings(**params), rng=random.Random(1))


def _counter(calls: list, *, fail: bool = False):
    async def _job():
        calls.append(1)
        if fail:
            raise RuntimeError("boom")
        return len(calls)

    return lambda: _job


# -----------------------------------------------------------------------------
# Планировщик
# -----------------------------------------------------------------------------
async def test_job_runs_once_per_interval():
    scheduler = _scheduler()
    calls: list = []
    scheduler.add_job("counter", _counter(calls), interval_sec=3600)

    await scheduler.run_single_tick()
    await scheduler.run_single_tick()

    assert calls == [1]
    [job] = scheduler.list_jobs()
    assert job["name"] == "counter"
    assert job["interval_sec"] == 3600
    assert job["failures"] == 0
    assert job["last_started_at"].endswith("Z")


async def test_duplicate_job_name_is_refused():
    scheduler = _scheduler()
    scheduler.add_job("counter", _counter([]))

    with pytest.raises(ValueError):
        scheduler.add_job("counter", _counter([]))


async def test_failures_back_off_exponentially():
    scheduler = _scheduler()
    calls: list = []
    scheduler.add_job("flaky", _counter(calls, fail=True), interval_sec=1)
    job = scheduler._jobs["flaky"]

    await scheduler.run_single_tick()
    assert job.consecutive_failures == 1
    assert job.backoff_sec == 5
    assert job.last_error == "boom"
    assert job.next_allowed_at > utcnow()

    # Пока backoff не истёк, тик задачу пропускает
    await scheduler.run_single_tick()
    assert calls == [1]

    job.next_allowed_at = utcnow() - timedelta(seconds=1)
    job.last_started_at = utcnow() - timedelta(seconds=5)
    await scheduler.run_single_tick()
    assert job.backoff_sec == 10

    job.next_allowed_at = utcnow() - timedelta(seconds=1)
    job.last_started_at = utcnow() - timedelta(seconds=5)
    await scheduler.run_single_tick()
    assert job.backoff_sec == 12
    assert scheduler.list_jobs()[0]["failures"] == 3


async def test_one_failing_job_does_not_block_others():
    scheduler = _scheduler()
    good: list = []
    bad: list = []
    scheduler.add_job("good", _counter(good), interval_sec=60)
    scheduler.add_job("bad", _counter(bad, fail=True), interval_sec=60)

    await scheduler.run_single_tick()

    assert good == [1]
    assert bad == [1]
    assert scheduler._jobs["good"].last_result == 1


async def test_slow_job_times_out():
    scheduler = _scheduler(TASK_TIMEOUT_SEC=1)

    async def _slow():
        await asyncio.sleep(5)

    scheduler.add_job("slow", lambda: _slow, interval_sec=60)
    scheduler.s.TASK_TIMEOUT_SEC = 0.05

    await scheduler.run_single_tick()

    assert scheduler._jobs["slow"].last_error == "timeout"


async def test_daily_gate():
    gate = DailyGate()
    now = utcnow()

    assert gate.due(now)
    gate.mark(now)
    assert not gate.due(now + timedelta(hours=23))
    assert gate.due(now + timedelta(hours=24))


async def test_daily_job_runs_once():
    scheduler = _scheduler()
    calls: list = []
    scheduler.add_job("nightly", _counter(calls), daily=True)

    await scheduler.run_single_tick()
    await scheduler.run_single_tick()

    assert calls == [1]
    assert scheduler.list_jobs()[0]["daily"] is True


async def test_start_and_stop_loop():
    scheduler = _scheduler()
    calls: list = []
    scheduler.add_job("counter", _counter(calls), interval_sec=3600)

    await scheduler.start()
    for _ in range(50):
        if calls:
            break
        await asyncio.sleep(0.02)
    await scheduler.stop(timeout=2.0)

    assert calls == [1]
    assert not scheduler.running


async def test_default_jobs_are_registered(services):
    scheduler = build_scheduler(services, SchedulerSettings(JITTER_SEC=0))

    jobs = {job["name"]: job for job in scheduler.list_jobs()}

    assert set(jobs) == {
        "expire_invoices",
        "reconcile_subscriptions",
        "poll_unmonitored",
        "check_wallet_secrets",
        "cleanup_deliveries",
    }
    assert jobs["check_wallet_secrets"]["daily"] is True
    assert jobs["cleanup_deliveries"]["daily"] is True
    assert jobs["expire_invoices"]["interval_sec"] == 60


async def test_default_jobs_tick(services, make_invoice):
    await make_invoice("100")
    scheduler = build_scheduler(services, SchedulerSettings(JITTER_SEC=0))

    await scheduler.run_single_tick()

    jobs = {job["name"]: job for job in scheduler.list_jobs()}
    assert all(job["failures"] == 0 for job in jobs.values()), jobs
    assert scheduler._jobs["expire_invoices"].last_result == {"expired": 0}
    assert scheduler._jobs["check_wallet_secrets"].last_result == {"checked": 1, "corrupted": 0}


# -----------------------------------------------------------------------------
# Модули задач
# -----------------------------------------------------------------------------
async def test_expire_invoices_job(services, make_invoice):
    invoice = await make_invoice("100", ttl_sec=1)
    await asyncio.sleep(1.1)

    assert await expire_invoices.run_once(services) == {"expired": 1}
    assert (await services.invoices.get_invoice(invoice.id)).status == InvoiceStatus.EXPIRED.value
    assert await expire_invoices.run_once(services) == {"expired": 0}


async def test_reconcile_job(services, make_invoice, chain_source):
    chain_source.fail_create = True
    await make_invoice("100")
    chain_source.fail_create = False

    assert await reconcile_subscriptions.run_once(services) == {"removed": 0, "resubscribed": 1, "orphaned": 0}


async def test_cleanup_job(services):
    assert await cleanup_deliveries.run_once(services) == {"removed": 0}


async def test_check_wallet_secrets_job(services, eth_wallet):
    assert await check_wallet_secrets.run_once(services) == {"checked": 1, "corrupted": 0}


async def test_poll_unmonitored_applies_transfers(services, make_invoice, chain_source, chain_query):
    chain_source.fail_create = True
    invoice = await make_invoice("100")
    chain_query.transfers[invoice.deposit_address] = [
        ObservedTransfer(
            tx_hash="0xpolled",
            address=invoice.deposit_address,
            amount=Decimal("100"),
            block_number=19_000_000,
            contract=USDT_ETHEREUM,
            counter_address=None,
        )
    ]

    result = await poll_unmonitored.run_once(services, settings=SchedulerSettings(POLL_BATCH=10))

    assert result == {"polled": 1, "events": 1, "applied": 1, "failed": 0}
    assert chain_query.calls == [invoice.deposit_address]
    assert (await services.invoices.get_invoice(invoice.id)).status == InvoiceStatus.PAID.value

    # оплаченный инвойс больше не опрашивается
    again = await poll_unmonitored.run_once(services)
    assert again == {"polled": 0, "events": 0, "applied": 0, "failed": 0}


async def test_poll_unmonitored_survives_failing_address(services, make_invoice, chain_source, chain_query):
    chain_source.fail_create = True
    broken = await make_invoice("100")
    await make_invoice("100")
    chain_query.failing.add(broken.deposit_address)

    result = await poll_unmonitored.run_once(services)

    assert result == {"polled": 1, "events": 0, "applied": 0, "failed": 1}


async def test_poll_unmonitored_skips_without_query_service(services, chain_query):
    chain_query.configured = False

    result = await poll_unmonitored.run_once(services)

    assert result["skipped"] is True

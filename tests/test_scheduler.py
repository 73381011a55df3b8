"""Tests for the background sync scheduler."""

import pytest

from seller_metrics_server.core.config import settings
from seller_metrics_server.services.scheduler import (
    ORDER_SYNC_JOB_ID,
    TOKEN_REFRESH_JOB_ID,
    SyncScheduler,
    get_scheduler,
    set_scheduler,
)
from seller_metrics_server.services.sync_orchestrator import SyncOrchestrator


@pytest.fixture
def scheduler(session_factory, ebay_client, encryption, monkeypatch) -> SyncScheduler:
    monkeypatch.setattr(settings, "sync_on_startup", False)
    orchestrator = SyncOrchestrator(session_factory, client=ebay_client, encryption=encryption)
    return SyncScheduler(session_factory, orchestrator=orchestrator)


async def test_disabled_scheduler_does_not_start(scheduler: SyncScheduler, monkeypatch) -> None:
    monkeypatch.setattr(settings, "sync_enabled", False)

    await scheduler.start()

    assert not scheduler.is_running
    assert scheduler.get_status()["is_running"] is False


async def test_start_registers_both_jobs(scheduler: SyncScheduler) -> None:
    await scheduler.start()
    try:
        assert scheduler.is_running
        assert scheduler.scheduler.get_job(ORDER_SYNC_JOB_ID) is not None
        assert scheduler.scheduler.get_job(TOKEN_REFRESH_JOB_ID) is not None
        status = scheduler.get_status()
        assert status["next_sync_at"] is not None
        assert status["next_refresh_at"] is not None
    finally:
        await scheduler.stop()

    assert not scheduler.is_running
    assert scheduler.orchestrator.stop_requested


async def test_restart_after_stop_syncs_again(
    scheduler: SyncScheduler, session_factory, make_credential, fake_ebay, make_ebay_order
) -> None:
    async with session_factory() as session:
        await make_credential(session, "user-1")
    fake_ebay.orders["access-1"] = [make_ebay_order("A-1")]
    await scheduler.start()
    await scheduler.stop()

    await scheduler.start()
    try:
        assert not scheduler.orchestrator.stop_requested
        stats = await scheduler.trigger_manual_sync()
    finally:
        await scheduler.stop()

    assert stats["orders_created"] == 1


async def test_manual_sync_runs_refresh_then_orders(
    scheduler: SyncScheduler, session_factory, make_credential, fake_ebay, make_ebay_order
) -> None:
    async with session_factory() as session:
        await make_credential(session, "user-1")
    fake_ebay.orders["access-1"] = [make_ebay_order("A-1")]

    stats = await scheduler.trigger_manual_sync()

    assert stats["orders_created"] == 1
    assert stats["trigger"] == "manual"
    assert stats["last_24h"]["successful"] == 1
    assert scheduler.last_sync_at is not None
    assert scheduler.last_refresh_at is not None


async def test_failed_pass_is_recorded(scheduler: SyncScheduler, monkeypatch) -> None:
    async def broken_pass(trigger):
        raise RuntimeError("database unreachable")

    monkeypatch.setattr(scheduler.orchestrator, "run_order_sync_pass", broken_pass)

    await scheduler.trigger_manual_sync()

    assert scheduler.last_sync_stats["error"] == "database unreachable"
    assert scheduler.last_sync_at is None


def test_global_scheduler(scheduler: SyncScheduler) -> None:
    set_scheduler(scheduler)
    try:
        assert get_scheduler() is scheduler
    finally:
        set_scheduler(None)
    assert get_scheduler() is None

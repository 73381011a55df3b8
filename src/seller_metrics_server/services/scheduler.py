"""Periodic token refresh and order sync.

Two APScheduler interval jobs call into ``SyncOrchestrator``:

* ``refresh_ebay_tokens`` every TOKEN_REFRESH_INTERVAL_MINUTES keeps
  access tokens ahead of their two-hour expiry and disconnects sellers
  whose refresh token has lapsed.
* ``sync_ebay_orders`` every SYNC_INTERVAL_MINUTES pulls new and changed
  orders for every connected seller.

Both jobs use ``max_instances=1`` so a slow pass is skipped, not stacked.
With SYNC_ON_STARTUP a refresh then sync cycle also runs right after boot.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seller_metrics_server.core.config import settings
from seller_metrics_server.models.sync_log import SyncTrigger
from seller_metrics_server.services.sync_orchestrator import SyncOrchestrator

if TYPE_CHECKING:
    from apscheduler.job import Job

logger = structlog.get_logger()

ORDER_SYNC_JOB_ID = "sync_ebay_orders"
TOKEN_REFRESH_JOB_ID = "refresh_ebay_tokens"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class SyncScheduler:
    """Owns the APScheduler instance and remembers how each pass last went.

    Attributes:
        orchestrator: Runs the passes; shared by both jobs
        scheduler: Underlying APScheduler
        is_running: True between start() and stop()
        last_sync_at: Finish time of the last successful order sync pass
        last_sync_stats: Report of the last order sync pass, or its error
        last_refresh_at: Finish time of the last successful refresh pass
        last_refresh_stats: Report of the last refresh pass, or its error
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orchestrator: SyncOrchestrator | None = None,
    ) -> None:
        self.orchestrator = orchestrator or SyncOrchestrator(session_factory)
        self.scheduler = AsyncIOScheduler(timezone=UTC)
        self.is_running = False
        self.last_sync_at: datetime | None = None
        self.last_sync_stats: dict[str, Any] | None = None
        self.last_refresh_at: datetime | None = None
        self.last_refresh_stats: dict[str, Any] | None = None
        self._jobs: dict[str, Job] = {}
        self._startup_task: asyncio.Task[None] | None = None
        self.logger = logger.bind(component="sync_scheduler")

    def _add_interval_job(
        self, job_id: str, name: str, func: Callable[[], Awaitable[None]], minutes: int
    ) -> None:
        self._jobs[job_id] = self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(minutes=minutes),
            id=job_id,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    async def start(self) -> None:
        """Register both jobs and start ticking, unless SYNC_ENABLED is off."""
        if not settings.sync_enabled:
            self.logger.info("Background sync disabled")
            return
        if self.is_running:
            return

        # A previous stop() left the orchestrator refusing new work
        self.orchestrator.resume()
        self._add_interval_job(
            TOKEN_REFRESH_JOB_ID,
            "Refresh eBay access tokens",
            self._run_refresh_pass,
            settings.token_refresh_interval_minutes,
        )
        self._add_interval_job(
            ORDER_SYNC_JOB_ID,
            "Sync eBay orders for connected sellers",
            self._run_sync_pass,
            settings.sync_interval_minutes,
        )
        self.scheduler.start()
        self.is_running = True
        self.logger.info(
            "Background sync scheduled",
            sync_interval_minutes=settings.sync_interval_minutes,
            token_refresh_interval_minutes=settings.token_refresh_interval_minutes,
            sync_on_startup=settings.sync_on_startup,
        )

        if settings.sync_on_startup:
            self._startup_task = asyncio.create_task(self._run_cycle(SyncTrigger.STARTUP))

    async def stop(self) -> None:
        """Stop scheduling and let any in-flight pass finish its current seller."""
        if not self.is_running:
            return

        self.orchestrator.request_stop()
        self.scheduler.shutdown(wait=False)
        if self._startup_task is not None and not self._startup_task.done():
            await self._startup_task
        self.is_running = False
        self.logger.info("Background sync stopped")

    async def _run_cycle(self, trigger: SyncTrigger) -> None:
        await self._run_refresh_pass(trigger)
        await self._run_sync_pass(trigger)

    async def _guarded(
        self, pass_name: str, trigger: SyncTrigger, run: Callable[[], Awaitable[dict[str, Any]]]
    ) -> tuple[dict[str, Any], bool]:
        """Run one pass; a crash is recorded in the stats instead of killing the job."""
        try:
            return await run(), True
        except Exception as e:
            self.logger.exception("Pass failed", pass_name=pass_name, trigger=trigger.value)
            return {
                "trigger": trigger.value,
                "error": str(e),
                "timestamp": datetime.now(UTC).isoformat(),
            }, False

    async def _run_refresh_pass(self, trigger: SyncTrigger = SyncTrigger.SCHEDULER) -> None:
        async def run() -> dict[str, Any]:
            report = await self.orchestrator.run_token_refresh_pass(trigger)
            return report.to_dict()

        self.last_refresh_stats, ok = await self._guarded("Token refresh", trigger, run)
        if ok:
            self.last_refresh_at = datetime.now(UTC)

    async def _run_sync_pass(self, trigger: SyncTrigger = SyncTrigger.SCHEDULER) -> None:
        started = datetime.now(UTC)

        async def run() -> dict[str, Any]:
            report = await self.orchestrator.run_order_sync_pass(trigger)
            stats = await self.orchestrator.get_sync_stats()
            elapsed = datetime.now(UTC) - started
            return {
                **report.to_dict(),
                "duration_ms": int(elapsed.total_seconds() * 1000),
                **stats,
            }

        self.last_sync_stats, ok = await self._guarded("Order sync", trigger, run)
        if ok:
            self.last_sync_at = datetime.now(UTC)

    async def trigger_manual_sync(self) -> dict[str, Any]:
        """Refresh tokens and sync orders right now, outside the schedule."""
        self.logger.info("Manual sync requested")
        await self._run_cycle(SyncTrigger.MANUAL)
        return self.last_sync_stats or {"status": "completed"}

    def _next_run(self, job_id: str) -> str | None:
        job = self._jobs.get(job_id)
        if job is None or not self.is_running:
            return None
        return _iso(job.next_run_time)

    def get_status(self) -> dict[str, Any]:
        """Scheduler state for GET /ebay/sync/status."""
        return {
            "enabled": settings.sync_enabled,
            "is_running": self.is_running,
            "sync_interval_minutes": settings.sync_interval_minutes,
            "token_refresh_interval_minutes": settings.token_refresh_interval_minutes,
            "next_sync_at": self._next_run(ORDER_SYNC_JOB_ID),
            "next_refresh_at": self._next_run(TOKEN_REFRESH_JOB_ID),
            "last_sync_at": _iso(self.last_sync_at),
            "last_sync_stats": self.last_sync_stats,
            "last_refresh_at": _iso(self.last_refresh_at),
            "last_refresh_stats": self.last_refresh_stats,
        }


# Set by the app lifespan; None in the CLI and most tests
_scheduler: SyncScheduler | None = None


def get_scheduler() -> SyncScheduler | None:
    """The scheduler owned by the running app, if any."""
    return _scheduler


def set_scheduler(scheduler: SyncScheduler | None) -> None:
    """Install (or clear) the app-wide scheduler."""
    global _scheduler
    _scheduler = scheduler

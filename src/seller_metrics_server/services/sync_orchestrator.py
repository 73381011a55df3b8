"""Sync orchestrator: runs order sync and token refresh across all users.

Architecture:
    Each pass lists the users it has to touch, then runs one unit of work
    per user in its own database session. A unit never raises: it returns
    a ``UserSyncOutcome`` and the pass folds those into a report, so one
    user's failure can't stop the batch.

    ┌──────────────────────────────────────────────────────────────────┐
    │                        SyncOrchestrator                          │
    │                                                                  │
    │  token refresh pass                 order sync pass              │
    │  ┌───────────────────┐             ┌───────────────────────┐     │
    │  │ needing refresh   │ -> refresh  │ connected users       │     │
    │  │ refresh expired   │ -> reauth   │   -> OrderSyncService │     │
    │  └───────────────────┘             └───────────────────────┘     │
    │             │                                  │                 │
    │             └────────────> SyncLog <───────────┘                 │
    └──────────────────────────────────────────────────────────────────┘

Concurrency:
    Users are processed through an ``asyncio.Semaphore`` of size
    ``SYNC_MAX_CONCURRENCY`` (1 = sequential). Work for a single user is
    always refresh, then fetch, then reconcile.

Cancellation:
    ``request_stop()`` stops new per-user work from starting. Units already
    running finish (or fail and roll back) normally. ``resume()`` clears
    the request.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seller_metrics_server.core.config import settings
from seller_metrics_server.core.security import TokenEncryption
from seller_metrics_server.models.credential import REAUTH_REQUIRED_MESSAGE
from seller_metrics_server.models.sync_log import (
    SyncErrorType,
    SyncLog,
    SyncOperation,
    SyncStatus,
    SyncTrigger,
)
from seller_metrics_server.services.credentials import (
    CredentialService,
    CredentialState,
    CredentialStore,
    classify,
)
from seller_metrics_server.services.ebay_client import EbayApiClient
from seller_metrics_server.services.sync import OrderSyncService, SyncResult
from seller_metrics_server.services.sync_error_handler import SyncError, SyncErrorHandler

logger = structlog.get_logger()


@dataclass
class UserSyncOutcome:
    """Result of one per-user unit of work."""

    user_id: str
    operation: SyncOperation
    status: SyncStatus
    result: SyncResult | None = None
    error: SyncError | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (SyncStatus.SUCCESS, SyncStatus.PARTIAL)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "operation": self.operation.value,
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
            "error_type": self.error.error_type.value if self.error else None,
            "error": self.error.message if self.error else None,
        }


@dataclass
class PassReport:
    """Fold over the outcomes of one pass."""

    trigger: SyncTrigger
    started_at: datetime
    outcomes: list[UserSyncOutcome] = field(default_factory=list)
    stopped_early: bool = False

    @property
    def succeeded(self) -> list[str]:
        return [o.user_id for o in self.outcomes if o.succeeded]

    @property
    def failed(self) -> list[str]:
        return [o.user_id for o in self.outcomes if o.status is SyncStatus.FAILED]

    @property
    def skipped(self) -> list[str]:
        return [o.user_id for o in self.outcomes if o.status is SyncStatus.SKIPPED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger.value,
            "started_at": self.started_at.isoformat(),
            "processed": len(self.outcomes),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
            "stopped_early": self.stopped_early,
        }


@dataclass
class SyncPassReport(PassReport):
    """Order sync pass report."""

    @property
    def orders_created(self) -> int:
        return sum(o.result.created for o in self.outcomes if o.result)

    @property
    def orders_updated(self) -> int:
        return sum(o.result.updated for o in self.outcomes if o.result)

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "orders_created": self.orders_created,
            "orders_updated": self.orders_updated,
        }


@dataclass
class RefreshPassReport(PassReport):
    """Token refresh pass report."""

    @property
    def refreshed(self) -> list[str]:
        return [
            o.user_id
            for o in self.outcomes
            if o.operation is SyncOperation.TOKEN_REFRESH and o.succeeded
        ]

    @property
    def reauth_required(self) -> list[str]:
        return [
            o.user_id
            for o in self.outcomes
            if o.operation is SyncOperation.FORCED_REAUTH and o.succeeded
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "refreshed": len(self.refreshed),
            "reauth_required": len(self.reauth_required),
        }


class SyncOrchestrator:
    """Runs per-user sync and refresh work with failure isolation and audit logging.

    Usage:
        orchestrator = SyncOrchestrator(async_session_maker)

        # Called by the scheduler
        refresh_report = await orchestrator.run_token_refresh_pass()
        sync_report = await orchestrator.run_order_sync_pass()

        # Manual sync for one user
        outcome = await orchestrator.sync_user("user-123", trigger=SyncTrigger.MANUAL)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: EbayApiClient | None = None,
        encryption: TokenEncryption | None = None,
        max_concurrency: int | None = None,
    ) -> None:
        """Initialize sync orchestrator.

        Args:
            session_factory: Creates one session per unit of work
            client: eBay API client (a fresh one is created per pass if omitted)
            encryption: Token codec, defaults to the process-wide instance
            max_concurrency: Users processed in parallel (default from settings)
        """
        self.session_factory = session_factory
        self.client = client
        self.encryption = encryption
        self.max_concurrency = max(1, max_concurrency or settings.sync_max_concurrency)
        self.error_handler = SyncErrorHandler()
        self._stop = asyncio.Event()
        self.logger = logger.bind(component="sync_orchestrator")

    # =========================================================================
    # Control
    # =========================================================================

    def request_stop(self) -> None:
        """Stop starting new per-user work. In-flight work finishes normally."""
        self._stop.set()
        self.logger.info("Stop requested")

    def resume(self) -> None:
        """Undo request_stop() so the next pass processes every user again."""
        self._stop.clear()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    @asynccontextmanager
    async def _client_scope(self) -> AsyncIterator[EbayApiClient]:
        if self.client is not None:
            yield self.client
            return
        async with EbayApiClient() as client:
            yield client

    async def _run_bounded(
        self,
        user_ids: Sequence[str],
        work: Callable[[str], Awaitable[UserSyncOutcome]],
    ) -> tuple[list[UserSyncOutcome], bool]:
        """Run ``work`` per user through the semaphore, skipping users after a stop."""
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(user_id: str) -> UserSyncOutcome | None:
            async with semaphore:
                if self._stop.is_set():
                    return None
                return await work(user_id)

        results = await asyncio.gather(*(run(user_id) for user_id in user_ids))
        outcomes = [r for r in results if r is not None]
        return outcomes, len(outcomes) < len(user_ids)

    # =========================================================================
    # Order sync
    # =========================================================================

    async def run_order_sync_pass(
        self, trigger: SyncTrigger = SyncTrigger.SCHEDULER
    ) -> SyncPassReport:
        """Sync orders for every connected user.

        Args:
            trigger: What started this pass

        Returns:
            Per-user outcomes folded into a report
        """
        report = SyncPassReport(trigger=trigger, started_at=datetime.now(UTC))
        log = self.logger.bind(trigger=trigger.value, operation=SyncOperation.ORDER_SYNC.value)

        async with self.session_factory() as session:
            user_ids = await CredentialStore(session).list_connected_user_ids()

        if not user_ids:
            log.info("No connected users to sync")
            return report

        log.info("Starting order sync pass", users=len(user_ids))

        async with self._client_scope() as client:
            report.outcomes, report.stopped_early = await self._run_bounded(
                user_ids, lambda user_id: self._sync_one(user_id, client, trigger)
            )

        log.info("Order sync pass complete", **report.to_dict())
        return report

    async def sync_user(
        self, user_id: str, trigger: SyncTrigger = SyncTrigger.MANUAL
    ) -> UserSyncOutcome:
        """Sync one user with full audit logging. Never raises for sync failures."""
        async with self._client_scope() as client:
            return await self._sync_one(user_id, client, trigger)

    async def _sync_one(
        self, user_id: str, client: EbayApiClient, trigger: SyncTrigger
    ) -> UserSyncOutcome:
        job_id = str(uuid.uuid4())
        log = self.logger.bind(user_id=user_id, job_id=job_id, trigger=trigger.value)
        sync_log = SyncLog(
            user_id=user_id,
            job_id=job_id,
            operation=SyncOperation.ORDER_SYNC.value,
            trigger=trigger.value,
            started_at=datetime.now(UTC),
        )

        log.info("Starting user sync")

        try:
            async with self.session_factory() as session:
                try:
                    service = OrderSyncService(session, client, self.encryption)
                    result = await service.sync_user(user_id)
                except Exception:
                    await session.rollback()
                    raise
        except Exception as e:
            sync_error = self.error_handler.classify(
                e, context={"user_id": user_id, "operation": SyncOperation.ORDER_SYNC.value}
            )
            if sync_error.error_type is SyncErrorType.NOT_CONNECTED:
                sync_log.complete_skipped(sync_error.message)
                await self._persist(sync_log, log)
                return UserSyncOutcome(
                    user_id, SyncOperation.ORDER_SYNC, SyncStatus.SKIPPED, error=sync_error
                )

            sync_log.complete_failed(
                error_type=sync_error.error_type,
                message=sync_error.message,
                details=sync_error.details,
            )
            await self._persist(sync_log, log, user_id=user_id, sync_error=sync_error.message)
            log.error(
                "Sync failed",
                error_type=sync_error.error_type.value,
                error=sync_error.message,
                is_transient=sync_error.is_transient,
            )
            return UserSyncOutcome(
                user_id, SyncOperation.ORDER_SYNC, SyncStatus.FAILED, error=sync_error
            )

        sync_log.record_counts(
            fetched=result.fetched,
            created=result.created,
            updated=result.updated,
            linked=result.linked,
            skipped=result.skipped,
        )
        if not result.success:
            sync_log.complete_partial(SyncErrorType.TRANSFORM_ERROR, result.error_summary() or "")
            sync_log.error_details = {"errors": result.errors[:50]}
            status = SyncStatus.PARTIAL
        elif result.truncated:
            sync_log.complete_partial(
                SyncErrorType.FETCH_TRUNCATED, result.truncation_notice() or ""
            )
            status = SyncStatus.PARTIAL
        else:
            sync_log.complete_success()
            status = SyncStatus.SUCCESS
        await self._persist(sync_log, log)

        log.info("Sync completed", **result.to_dict())
        return UserSyncOutcome(user_id, SyncOperation.ORDER_SYNC, status, result=result)

    # =========================================================================
    # Token refresh
    # =========================================================================

    async def run_token_refresh_pass(
        self,
        trigger: SyncTrigger = SyncTrigger.SCHEDULER,
        now: datetime | None = None,
    ) -> RefreshPassReport:
        """Refresh expired access tokens, then disconnect expired refresh tokens.

        A failed refresh records the error and leaves the user connected. A
        credential whose refresh token has expired is disconnected without
        calling eBay.

        Args:
            trigger: What started this pass
            now: Current time (defaults to now)

        Returns:
            Per-user outcomes folded into a report
        """
        now = now or datetime.now(UTC)
        report = RefreshPassReport(trigger=trigger, started_at=now)
        log = self.logger.bind(trigger=trigger.value, operation=SyncOperation.TOKEN_REFRESH.value)

        async with self.session_factory() as session:
            store = CredentialStore(session)
            refresh_ids = [c.user_id for c in await store.list_needing_refresh(now)]
            expired_ids = [c.user_id for c in await store.list_refresh_expired(now)]

        if not refresh_ids and not expired_ids:
            log.debug("No credentials need refresh")
            return report

        log.info(
            "Starting token refresh pass",
            needing_refresh=len(refresh_ids),
            refresh_expired=len(expired_ids),
        )

        async with self._client_scope() as client:
            refreshed, stopped = await self._run_bounded(
                refresh_ids, lambda user_id: self._refresh_one(user_id, client, trigger, now)
            )
            report.outcomes.extend(refreshed)

            reauthed, stopped_reauth = await self._run_bounded(
                expired_ids, lambda user_id: self._force_reauth_one(user_id, client, trigger, now)
            )
            report.outcomes.extend(reauthed)
            report.stopped_early = stopped or stopped_reauth

        log.info("Token refresh pass complete", **report.to_dict())
        return report

    async def _refresh_one(
        self, user_id: str, client: EbayApiClient, trigger: SyncTrigger, now: datetime
    ) -> UserSyncOutcome:
        job_id = str(uuid.uuid4())
        log = self.logger.bind(user_id=user_id, job_id=job_id, trigger=trigger.value)
        sync_log = SyncLog(
            user_id=user_id,
            job_id=job_id,
            operation=SyncOperation.TOKEN_REFRESH.value,
            trigger=trigger.value,
            started_at=datetime.now(UTC),
        )

        try:
            async with self.session_factory() as session:
                try:
                    service = CredentialService(session, client, self.encryption)
                    credential = await service.store.get_by_user_id(user_id)
                    if classify(now, credential) is not CredentialState.ACCESS_EXPIRED:
                        sync_log.complete_skipped("Credential no longer needs refresh")
                        session.add(sync_log)
                        await session.commit()
                        return UserSyncOutcome(
                            user_id, SyncOperation.TOKEN_REFRESH, SyncStatus.SKIPPED
                        )

                    await service.refresh(credential, now=now)
                    sync_log.complete_success()
                    session.add(sync_log)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except Exception as e:
            sync_error = self.error_handler.classify(
                e, context={"user_id": user_id, "operation": SyncOperation.TOKEN_REFRESH.value}
            )
            sync_log.complete_failed(
                error_type=sync_error.error_type,
                message=sync_error.message,
                details=sync_error.details,
            )
            await self._persist(sync_log, log, user_id=user_id, sync_error=sync_error.message)
            log.error("Token refresh failed", error_type=sync_error.error_type.value)
            return UserSyncOutcome(
                user_id, SyncOperation.TOKEN_REFRESH, SyncStatus.FAILED, error=sync_error
            )

        log.info("Token refreshed")
        return UserSyncOutcome(user_id, SyncOperation.TOKEN_REFRESH, SyncStatus.SUCCESS)

    async def _force_reauth_one(
        self, user_id: str, client: EbayApiClient, trigger: SyncTrigger, now: datetime
    ) -> UserSyncOutcome:
        job_id = str(uuid.uuid4())
        log = self.logger.bind(user_id=user_id, job_id=job_id, trigger=trigger.value)
        sync_log = SyncLog(
            user_id=user_id,
            job_id=job_id,
            operation=SyncOperation.FORCED_REAUTH.value,
            trigger=trigger.value,
            started_at=datetime.now(UTC),
        )

        try:
            async with self.session_factory() as session:
                try:
                    service = CredentialService(session, client, self.encryption)
                    credential = await service.store.get_by_user_id(user_id)
                    if classify(now, credential) is not CredentialState.NEEDS_REAUTH:
                        sync_log.complete_skipped("Credential no longer needs reauthorization")
                        session.add(sync_log)
                        await session.commit()
                        return UserSyncOutcome(
                            user_id, SyncOperation.FORCED_REAUTH, SyncStatus.SKIPPED
                        )

                    await service.force_reauthorization(credential, REAUTH_REQUIRED_MESSAGE)
                    sync_log.error_type = SyncErrorType.REAUTH_REQUIRED.value
                    sync_log.complete_success()
                    sync_log.error_message = REAUTH_REQUIRED_MESSAGE
                    session.add(sync_log)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except Exception as e:
            sync_error = self.error_handler.classify(
                e, context={"user_id": user_id, "operation": SyncOperation.FORCED_REAUTH.value}
            )
            sync_log.complete_failed(
                error_type=sync_error.error_type,
                message=sync_error.message,
                details=sync_error.details,
            )
            await self._persist(sync_log, log)
            log.error("Forced reauthorization failed", error_type=sync_error.error_type.value)
            return UserSyncOutcome(
                user_id, SyncOperation.FORCED_REAUTH, SyncStatus.FAILED, error=sync_error
            )

        log.warning("Credential disconnected, refresh token expired")
        return UserSyncOutcome(user_id, SyncOperation.FORCED_REAUTH, SyncStatus.SUCCESS)

    # =========================================================================
    # Cycle
    # =========================================================================

    async def run_cycle(
        self, trigger: SyncTrigger = SyncTrigger.SCHEDULER
    ) -> tuple[RefreshPassReport, SyncPassReport]:
        """Token refresh pass, then order sync pass."""
        refresh_report = await self.run_token_refresh_pass(trigger)
        sync_report = await self.run_order_sync_pass(trigger)
        return refresh_report, sync_report

    async def _persist(
        self,
        sync_log: SyncLog,
        log: structlog.stdlib.BoundLogger,
        user_id: str | None = None,
        sync_error: str | None = None,
    ) -> None:
        """Write the audit row, and the credential error when given, in a fresh session.

        Failures here are logged, never raised, so the batch keeps going.
        """
        try:
            async with self.session_factory() as session:
                if user_id is not None and sync_error is not None:
                    credential = await CredentialStore(session).get_by_user_id(user_id)
                    if credential is not None:
                        credential.record_sync_error(sync_error)
                session.add(sync_log)
                await session.commit()
        except SQLAlchemyError as e:
            log.error("Failed to persist sync outcome", error=str(e))

    # =========================================================================
    # Monitoring
    # =========================================================================

    async def get_sync_stats(self) -> dict[str, object]:
        """Get sync statistics for the last 24 hours."""
        day_ago = datetime.now(UTC) - timedelta(days=1)

        stats_stmt = select(
            func.count().label("total"),
            func.count().filter(SyncLog.status == SyncStatus.SUCCESS.value).label("successful"),
            func.count().filter(SyncLog.status == SyncStatus.FAILED.value).label("failed"),
            func.count().filter(SyncLog.status == SyncStatus.PARTIAL.value).label("partial"),
            func.count().filter(SyncLog.status == SyncStatus.SKIPPED.value).label("skipped"),
        ).where(SyncLog.started_at >= day_ago)

        async with self.session_factory() as session:
            result = await session.execute(stats_stmt)
            row = result.one()

        return {
            "last_24h": {
                "total": row.total,
                "successful": row.successful,
                "failed": row.failed,
                "partial": row.partial,
                "skipped": row.skipped,
                "success_rate": (row.successful / row.total * 100) if row.total > 0 else 0,
            },
        }

    async def get_user_sync_history(self, user_id: str, limit: int = 10) -> Sequence[SyncLog]:
        """Get recent sync log entries for a user, newest first."""
        stmt = (
            select(SyncLog)
            .where(SyncLog.user_id == user_id)
            .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

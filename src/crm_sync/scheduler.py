"""Background scheduler for periodic sync jobs.

Wraps an APScheduler AsyncIOScheduler with five jobs:
- Delta sync every 15 minutes for every active connection
- Health check every 5 minutes (authenticate probe per connection)
- Conflict sweep hourly: re-resolve stale open conflicts under the current policy
- Retry sweep hourly: re-attempt queued failed records
- Log cleanup daily at 03:00: prune closed run logs and processed webhook events

Jobs fan out across connections concurrently, bounded by a semaphore. A
failing connection is logged and skipped; it never stops the others. Job
coroutines are plain methods so they can be awaited directly.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import timedelta

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.crm_sync.config import Settings, get_settings
from src.crm_sync.core.monitoring import active_connections
from src.crm_sync.core.tenant import tenant_scope
from src.crm_sync.errors import AuthError, Backpressure, ProviderError
from src.crm_sync.orchestrator import RunRequest
from src.crm_sync.providers.base import ProviderAdapter
from src.crm_sync.repository import SyncRepository
from src.crm_sync.schemas import (
    ConflictPolicy,
    ConnectionRead,
    ConnectionStatus,
    ProviderType,
    SyncMode,
    TriggerKind,
    utcnow,
)
from src.crm_sync.service import SyncService

logger = structlog.get_logger(__name__)


class SyncScheduler:
    """Periodic driver for delta syncs, health checks, sweeps and cleanup.

    Args:
        service: SyncService used to create and execute runs.
        repository: Persistence for connections, conflicts and failures.
        adapters: Adapter per provider, used by the health probe.
        settings: Engine settings (defaults to get_settings()).
    """

    def __init__(
        self,
        service: SyncService,
        repository: SyncRepository,
        adapters: Mapping[ProviderType, ProviderAdapter],
        settings: Settings | None = None,
    ) -> None:
        self._service = service
        self._repo = repository
        self._adapters = adapters
        self._settings = settings or get_settings()
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Register the jobs and start the scheduler. Returns False if disabled."""
        s = self._settings
        if not s.SCHEDULER_ENABLED:
            logger.info("sync_scheduler.disabled")
            return False

        self._scheduler = AsyncIOScheduler(timezone="UTC")

        self._scheduler.add_job(
            self.delta_sync_all,
            trigger=IntervalTrigger(minutes=s.DELTA_SYNC_INTERVAL_MINUTES),
            id="crm_delta_sync",
            name="Delta sync for every active connection",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )
        self._scheduler.add_job(
            self.health_check_all,
            trigger=IntervalTrigger(minutes=s.HEALTH_CHECK_INTERVAL_MINUTES),
            id="crm_health_check",
            name="Credential and reachability probe per connection",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=120,
        )
        self._scheduler.add_job(
            self.conflict_sweep,
            trigger=IntervalTrigger(minutes=s.CONFLICT_SWEEP_INTERVAL_MINUTES),
            id="crm_conflict_sweep",
            name="Re-resolve stale open conflicts",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=900,
        )
        self._scheduler.add_job(
            self.retry_sweep,
            trigger=IntervalTrigger(minutes=s.RETRY_SWEEP_INTERVAL_MINUTES),
            id="crm_retry_sweep",
            name="Re-attempt failed records",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=900,
        )
        self._scheduler.add_job(
            self.cleanup_logs,
            trigger=CronTrigger(hour=s.LOG_CLEANUP_HOUR, minute=0),
            id="crm_log_cleanup",
            name="Prune sync run logs past retention",
            misfire_grace_time=3600,
        )

        self._scheduler.start()
        self._started = True
        logger.info(
            "sync_scheduler.started",
            jobs=["delta_sync", "health_check", "conflict_sweep", "retry_sweep", "log_cleanup"],
            delta_every_min=s.DELTA_SYNC_INTERVAL_MINUTES,
            health_every_min=s.HEALTH_CHECK_INTERVAL_MINUTES,
            cleanup_hour=s.LOG_CLEANUP_HOUR,
        )
        return True

    def stop(self) -> None:
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("sync_scheduler.stopped")

    # ── Fan-out ─────────────────────────────────────────────────────────────

    async def _fan_out(
        self,
        job: str,
        items: Iterable[ConnectionRead],
        work: Callable[[ConnectionRead], Awaitable[None]],
    ) -> dict[str, int]:
        semaphore = asyncio.Semaphore(self._settings.FANOUT_CONCURRENCY)
        results = {"success": 0, "failed": 0}

        async def guarded(connection: ConnectionRead) -> None:
            async with semaphore:
                try:
                    with tenant_scope(connection.tenant_id):
                        await work(connection)
                    results["success"] += 1
                except Exception as exc:
                    results["failed"] += 1
                    logger.error(
                        f"sync_scheduler.{job}_connection_failed",
                        connection_id=connection.id,
                        provider=connection.provider.value,
                        error=str(exc),
                    )

        await asyncio.gather(*(guarded(c) for c in items))
        return results

    # ── Jobs ────────────────────────────────────────────────────────────────

    async def delta_sync_all(self) -> dict[str, int]:
        """Run a scheduled delta sync for every active connection."""
        connections = await self._repo.list_connections(statuses=[ConnectionStatus.ACTIVE])
        per_provider = Counter(c.provider for c in connections)
        for provider in ProviderType:
            active_connections.labels(provider=provider.value).set(per_provider.get(provider, 0))
        logger.info("sync_scheduler.delta_sync_triggered", connections=len(connections))

        async def sync(connection: ConnectionRead) -> None:
            run = await self._service.run_and_wait(
                connection,
                RunRequest(connection.id, mode=SyncMode.DELTA, trigger=TriggerKind.SCHEDULED),
            )
            logger.debug(
                "sync_scheduler.delta_sync_run",
                connection_id=connection.id,
                run_id=run.id,
                status=run.status.value,
            )

        results = await self._fan_out("delta_sync", connections, sync)
        logger.info("sync_scheduler.delta_sync_complete", **results)
        return results

    async def check_connection_health(self, connection: ConnectionRead) -> bool:
        """Probe one connection and track consecutive failures.

        HEALTH_FAILURE_THRESHOLD consecutive failures move the connection to
        error; a successful probe resets the count and restores an errored
        connection to active.
        """
        adapter = self._adapters[connection.provider]
        try:
            await adapter.authenticate(connection)
        except (ProviderError, Backpressure) as exc:
            failures = connection.health_failures + 1
            values: dict[str, object] = {"health_failures": failures, "last_error": str(exc)}
            if failures >= self._settings.HEALTH_FAILURE_THRESHOLD:
                values["status"] = ConnectionStatus.ERROR
            await self._repo.update_connection(connection.id, **values)
            logger.warning(
                "sync_scheduler.health_check_failed",
                connection_id=connection.id,
                provider=connection.provider.value,
                failures=failures,
                auth=isinstance(exc, AuthError),
                error=str(exc),
            )
            return False

        if connection.health_failures or connection.status == ConnectionStatus.ERROR:
            await self._repo.update_connection(
                connection.id,
                health_failures=0,
                last_error=None,
                status=ConnectionStatus.ACTIVE,
            )
            logger.info("sync_scheduler.health_restored", connection_id=connection.id)
        return True

    async def health_check_all(self) -> dict[str, int]:
        connections = await self._repo.list_connections(
            statuses=[ConnectionStatus.ACTIVE, ConnectionStatus.ERROR]
        )
        healthy = {"healthy": 0, "unhealthy": 0}

        async def probe(connection: ConnectionRead) -> None:
            ok = await self.check_connection_health(connection)
            healthy["healthy" if ok else "unhealthy"] += 1

        results = await self._fan_out("health_check", connections, probe)
        logger.info("sync_scheduler.health_check_complete", **healthy, errors=results["failed"])
        return healthy

    async def conflict_sweep(self) -> dict[str, int]:
        """Re-run resolution for open conflicts older than the stale threshold.

        Conflicts on connections whose policy is still manual are left open,
        as are those the re-run cannot settle.
        """
        cutoff = utcnow() - timedelta(minutes=self._settings.CONFLICT_STALE_AFTER_MINUTES)
        stale = await self._repo.list_stale_open_conflicts(cutoff)
        targets: dict[str, set[str]] = {}
        for conflict in stale:
            targets.setdefault(conflict.connection_id, set()).add(conflict.local_id)

        connections: list[ConnectionRead] = []
        for connection_id in targets:
            connection = await self._repo.get_connection(connection_id)
            if connection is None or connection.status != ConnectionStatus.ACTIVE:
                continue
            if connection.settings.conflict_policy == ConflictPolicy.MANUAL:
                continue
            connections.append(connection)

        async def sweep(connection: ConnectionRead) -> None:
            for local_id in sorted(targets[connection.id]):
                await self._service.run_and_wait(
                    connection,
                    RunRequest(
                        connection.id,
                        mode=SyncMode.SINGLE,
                        trigger=TriggerKind.SCHEDULED,
                        local_id=local_id,
                    ),
                )

        results = await self._fan_out("conflict_sweep", connections, sweep)
        logger.info(
            "sync_scheduler.conflict_sweep_complete",
            stale=len(stale),
            connections=len(connections),
            **results,
        )
        return results

    async def retry_sweep(self) -> dict[str, int]:
        """Expire failures past the retry age, then retry the rest per connection."""
        cutoff = utcnow() - timedelta(hours=self._settings.RETRY_SWEEP_MAX_AGE_HOURS)
        expired = await self._repo.expire_failures(cutoff)

        connections: list[ConnectionRead] = []
        for connection_id in await self._repo.connections_with_pending_failures():
            connection = await self._repo.get_connection(connection_id)
            if connection is not None and connection.status == ConnectionStatus.ACTIVE:
                connections.append(connection)

        async def retry(connection: ConnectionRead) -> None:
            await self._service.run_and_wait(
                connection,
                RunRequest(connection.id, mode=SyncMode.DELTA, trigger=TriggerKind.RETRY),
            )

        results = await self._fan_out("retry_sweep", connections, retry)
        logger.info("sync_scheduler.retry_sweep_complete", expired=expired, **results)
        return results

    async def cleanup_logs(self) -> dict[str, int]:
        cutoff = utcnow() - timedelta(days=self._settings.SYNC_LOG_RETENTION_DAYS)
        try:
            runs = await self._repo.delete_closed_runs_before(cutoff)
            events = await self._repo.delete_processed_webhook_events_before(cutoff)
        except Exception as exc:
            logger.error("sync_scheduler.log_cleanup_failed", error=str(exc))
            return {"runs": 0, "webhook_events": 0}
        logger.info("sync_scheduler.log_cleanup_complete", runs=runs, webhook_events=events)
        return {"runs": runs, "webhook_events": events}

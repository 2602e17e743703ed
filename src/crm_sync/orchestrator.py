"""Sync orchestrator -- executes one sync run for one connection.

State machine per run:

    Idle -> Locking -> Fetching -> Mapping -> Resolving -> Writing -> Finalizing -> Idle
                 \\__ Aborted (AuthError, error-rate ceiling, fetch failure)

Locking is a no-op (run closed as skipped) when another run holds the
connection's lease. Fetching, Mapping, Resolving and Writing repeat per page
and per record. Finalizing persists checkpoints, closes the run log and
releases the lease.

Write ordering per record: the remote write goes first and its SyncState is
committed as soon as the provider confirms it, so a crash between the two
sides never re-issues a create. The local write and the SyncState row that
accounts for it share one transaction.

Per-record failures are isolated: a record that fails validation, keeps
failing transiently or has vanished remotely is logged and the run moves on.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_exponential

from src.crm_sync.config import Settings, get_settings
from src.crm_sync.conflict_resolver import ManualValue, Resolution, Snapshot, resolve
from src.crm_sync.core.monitoring import (
    sync_conflicts_total,
    sync_records_total,
    sync_run_duration_seconds,
    sync_runs_total,
)
from src.crm_sync.errors import (
    AuthError,
    Backpressure,
    ContactNotFoundError,
    MappingConfigError,
    NotFoundError,
    ProviderError,
    RateLimitError,
    RunAborted,
    RunLogClosedError,
    TransientError,
    ValidationError,
)
from src.crm_sync.field_mapping import (
    canonical_snapshot,
    remote_fields,
    resolve_mappings,
    to_canonical,
    to_remote,
)
from src.crm_sync.providers.base import ProviderAdapter
from src.crm_sync.repository import SyncRepository
from src.crm_sync.schemas import (
    CanonicalContact,
    ConflictRead,
    ConflictStatus,
    ConnectionRead,
    ConnectionStatus,
    FieldMappingEntry,
    NaturalKey,
    OutboundRecord,
    ProviderType,
    RemoteRecord,
    RunErrorEntry,
    RunPhase,
    RunStatus,
    Side,
    SyncCounts,
    SyncMode,
    SyncRunRead,
    SyncStateRead,
    TriggerKind,
    utcnow,
)
from src.crm_sync.state_store import SyncStateStore
from src.crm_sync.timestamps import max_timestamp

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_RETRYABLE = (TransientError, RateLimitError, Backpressure)

_NATURAL_KEY_FIELD = {NaturalKey.EMAIL: "email", NaturalKey.PHONE: "phones"}


@dataclass
class RunRequest:
    """What a run should do.

    overrides force a winner per field for the targeted record; open
    conflicts on those fields close as resolved_manual.
    """

    connection_id: str
    mode: SyncMode = SyncMode.DELTA
    trigger: TriggerKind = TriggerKind.MANUAL
    local_id: str | None = None
    external_id: str | None = None
    overrides: dict[str, Side | ManualValue] = field(default_factory=dict)


class _RunCancelled(Exception):
    pass


@dataclass
class _RunContext:
    run: SyncRunRead
    request: RunRequest
    cancel_event: asyncio.Event | None
    connection: ConnectionRead | None = None
    adapter: ProviderAdapter | None = None
    mappings: list[FieldMappingEntry] = field(default_factory=list)
    counts: SyncCounts = field(default_factory=SyncCounts)
    pending_errors: list[RunErrorEntry] = field(default_factory=list)
    phase: RunPhase = RunPhase.IDLE
    seen_remote: dict[str, datetime | None] = field(default_factory=dict)
    processed_local: set[str] = field(default_factory=set)
    failure_keys: set[tuple[str | None, str | None]] = field(default_factory=set)
    remote_checkpoint: datetime | None = None
    local_checkpoint: datetime | None = None
    advance_checkpoints: bool = False

    @property
    def conn(self) -> ConnectionRead:
        assert self.connection is not None
        return self.connection

    @property
    def provider(self) -> ProviderType:
        return self.conn.provider

    def error(
        self,
        kind: str,
        message: str,
        *,
        local_id: str | None = None,
        external_id: str | None = None,
        field_name: str | None = None,
    ) -> None:
        self.pending_errors.append(
            RunErrorEntry(
                kind=kind,
                message=message,
                local_id=local_id,
                external_id=external_id,
                field=field_name,
            )
        )


class _RecordRetryPolicy:
    """tenacity stop/wait pair with separate budgets.

    Transient failures and backpressure share the per-record attempt ceiling;
    provider rate-limit responses have their own ceiling and honor retry_after.
    """

    def __init__(
        self,
        max_attempts: int,
        max_rate_limit_retries: int,
        backoff_max: float,
        wait_override: Callable[[RetryCallState], float] | None,
    ) -> None:
        self._max_attempts = max_attempts
        self._max_rate_limit_retries = max_rate_limit_retries
        self._backoff_max = backoff_max
        self._wait_override = wait_override
        self._backoff = wait_exponential(multiplier=1, min=1, max=backoff_max)
        self._transient = 0
        self._rate_limited = 0

    def stop(self, retry_state: RetryCallState) -> bool:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitError):
            self._rate_limited += 1
            return self._rate_limited > self._max_rate_limit_retries
        self._transient += 1
        return self._transient >= self._max_attempts

    def wait(self, retry_state: RetryCallState) -> float:
        if self._wait_override is not None:
            return self._wait_override(retry_state)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            return min(exc.retry_after, self._backoff_max)
        return self._backoff(retry_state)


class SyncOrchestrator:
    """Runs sync passes. Stateless between runs; all state lives in the stores.

    Args:
        repository: Connections, run logs, lock, conflicts and queues.
        state_store: SyncState rows and host contact access.
        adapters: Adapter per provider (the registry).
        settings: Engine settings (defaults to get_settings()).
        retry_wait: tenacity wait replacing the default backoff (tests pass
            wait_none()).
    """

    def __init__(
        self,
        repository: SyncRepository,
        state_store: SyncStateStore,
        adapters: Mapping[ProviderType, ProviderAdapter],
        *,
        settings: Settings | None = None,
        retry_wait: Callable[[RetryCallState], float] | None = None,
    ) -> None:
        self._repo = repository
        self._states = state_store
        self._adapters = adapters
        self._settings = settings or get_settings()
        self._retry_wait = retry_wait

    # ── Entry point ─────────────────────────────────────────────────────────

    async def run(
        self,
        run: SyncRunRead,
        request: RunRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncRunRead:
        """Execute a queued run to completion and return its closed log."""
        ctx = _RunContext(run=run, request=request, cancel_event=cancel_event)
        log = logger.bind(run_id=run.id, connection_id=request.connection_id)
        started = time.monotonic()

        self._enter(ctx, RunPhase.LOCKING)
        acquired = await self._repo.acquire_lock(
            request.connection_id, run.id, self._settings.RUN_LOCK_LEASE_SECONDS
        )
        if not acquired:
            log.info("sync.lock_held")
            return await self._close(ctx, RunStatus.SKIPPED, "run_in_progress")

        status = RunStatus.COMPLETED
        reason: str | None = None
        try:
            await self._repo.mark_run_running(run.id, utcnow())
            self._check_cancel(ctx)

            connection = await self._repo.get_connection(request.connection_id)
            if connection is None:
                raise RunAborted("connection_not_found")
            ctx.connection = connection
            log = log.bind(provider=connection.provider.value)
            if connection.status != ConnectionStatus.ACTIVE:
                status, reason = RunStatus.SKIPPED, f"connection_{connection.status.value}"
                log.info("sync.connection_inactive", status=connection.status.value)
            else:
                await self._execute(ctx)
                self._enter(ctx, RunPhase.FINALIZING)
                await self._finalize_connection(ctx)
        except AuthError as exc:
            status, reason = RunStatus.ABORTED, f"auth: {exc.message}"
            self._enter(ctx, RunPhase.ABORTED)
            log.warning("sync.auth_failed", error=exc.message)
            if ctx.connection is not None:
                await self._repo.update_connection(
                    ctx.conn.id, status=ConnectionStatus.ERROR, last_error=exc.message
                )
        except RunAborted as exc:
            status, reason = RunStatus.ABORTED, exc.reason
            self._enter(ctx, RunPhase.ABORTED)
            log.warning("sync.run_aborted", reason=exc.reason)
            if ctx.connection is not None:
                await self._repo.update_connection(ctx.conn.id, last_error=exc.reason)
        except _RunCancelled:
            status, reason = RunStatus.CANCELLED, "cancelled"
            log.info("sync.run_cancelled")
        except RunLogClosedError:
            log.warning("sync.run_log_closed")
            closed = await self._repo.get_run(run.id)
            return closed or run
        except Exception as exc:
            status, reason = RunStatus.ABORTED, f"internal_error: {exc}"
            self._enter(ctx, RunPhase.ABORTED)
            log.exception("sync.run_failed")
        finally:
            await self._repo.release_lock(request.connection_id, run.id)

        closed = await self._close(ctx, status, reason)
        provider = ctx.connection.provider.value if ctx.connection else "unknown"
        sync_run_duration_seconds.labels(provider=provider, mode=run.mode.value).observe(
            time.monotonic() - started
        )
        log.info(
            "sync.run_closed",
            status=status.value,
            reason=reason,
            **ctx.counts.model_dump(),
        )
        return closed

    async def _execute(self, ctx: _RunContext) -> None:
        conn = ctx.conn
        adapter = self._adapters.get(conn.provider)
        if adapter is None:
            raise RunAborted(f"no_adapter: {conn.provider.value}")
        ctx.adapter = adapter

        try:
            ctx.mappings = resolve_mappings(conn.provider, await self._repo.list_mappings(conn.id))
        except MappingConfigError as exc:
            raise RunAborted(f"mapping_config: {exc}") from exc

        await adapter.authenticate(conn)

        ctx.failure_keys = {
            (f.local_id, f.external_id if f.local_id is None else None)
            for f in await self._repo.list_pending_failures(conn.id)
        }

        if ctx.request.mode == SyncMode.SINGLE:
            await self._run_single(ctx, ctx.request.local_id, ctx.request.external_id)
            return

        if ctx.request.trigger == TriggerKind.RETRY:
            for failure in await self._repo.list_pending_failures(conn.id):
                self._check_cancel(ctx)
                await self._run_single(ctx, failure.local_id, failure.external_id)
            await self._flush(ctx)

        await self._run_pass(ctx)

    # ── Passes ──────────────────────────────────────────────────────────────

    async def _run_pass(self, ctx: _RunContext) -> None:
        """Full or delta pass: remote pages, queued webhooks, then local changes."""
        conn = ctx.conn
        adapter = ctx.adapter
        assert adapter is not None
        full = ctx.request.mode == SyncMode.FULL
        since_remote = None if full else conn.remote_checkpoint
        since_local = None if full else conn.local_checkpoint
        ctx.remote_checkpoint = conn.remote_checkpoint
        ctx.local_checkpoint = conn.local_checkpoint
        fields = remote_fields(ctx.mappings)

        page_token: str | None = None
        while True:
            self._enter(ctx, RunPhase.FETCHING)
            token = page_token
            try:
                page = await self._call_with_retry(
                    lambda: adapter.fetch_changed(conn, since_remote, token, fields=fields)
                )
            except (ProviderError, Backpressure) as exc:
                if isinstance(exc, AuthError):
                    raise
                raise RunAborted(f"fetch_failed: {exc}") from exc

            for record in page.records:
                self._check_cancel(ctx)
                if not self._first_sight(ctx, record):
                    continue
                await self._isolate(
                    ctx, None, record.external_id, lambda r=record: self._sync_remote(ctx, r)
                )
                ctx.remote_checkpoint = max_timestamp(ctx.remote_checkpoint, record.modified_at)
            ctx.remote_checkpoint = max_timestamp(ctx.remote_checkpoint, page.new_checkpoint)
            await self._flush(ctx)

            if not page.next_page_token:
                break
            page_token = page.next_page_token

        await self._drain_webhooks(ctx)

        async for batch in self._states.iter_changed_contacts(
            conn.tenant_id, since_local, conn.settings.batch_size
        ):
            for contact in batch:
                self._check_cancel(ctx)
                ctx.local_checkpoint = max_timestamp(ctx.local_checkpoint, contact.updated_at)
                if contact.local_id in ctx.processed_local:
                    continue
                await self._isolate(
                    ctx, contact.local_id, None, lambda c=contact: self._sync_local(ctx, c)
                )
            await self._flush(ctx)

        ctx.advance_checkpoints = True

    async def _drain_webhooks(self, ctx: _RunContext) -> None:
        conn = ctx.conn
        adapter = ctx.adapter
        assert adapter is not None
        events = await self._repo.list_pending_webhook_events(
            conn.id, self._settings.WEBHOOK_BATCH_SIZE
        )
        if not events:
            return
        processed: list[str] = []
        fields = remote_fields(ctx.mappings)
        for event_id, change in events:
            self._check_cancel(ctx)
            seen_at = ctx.seen_remote.get(change.external_id)
            already_seen = change.external_id in ctx.seen_remote and (
                change.occurred_at is None or (seen_at is not None and seen_at >= change.occurred_at)
            )
            if already_seen:
                processed.append(event_id)
                continue

            if change.deleted:
                state = await self._states.get_by_external_id(conn.id, change.external_id)
                if state is not None:
                    await self._states.mark_unlinked(state)
                processed.append(event_id)
                continue

            async def sync_event(change=change) -> tuple[bool, bool]:
                record = change.record
                if record is None:
                    record = await self._call_with_retry(
                        lambda: adapter.fetch_record(conn, change.external_id, fields=fields)
                    )
                ctx.seen_remote[record.external_id] = record.modified_at
                return await self._sync_remote(ctx, record)

            await self._isolate(ctx, None, change.external_id, sync_event)
            processed.append(event_id)

        await self._repo.mark_webhook_events_processed(processed)
        await self._flush(ctx)
        logger.info("sync.webhooks_drained", connection_id=conn.id, count=len(processed))

    async def _run_single(
        self, ctx: _RunContext, local_id: str | None, external_id: str | None
    ) -> None:
        conn = ctx.conn
        adapter = ctx.adapter
        assert adapter is not None
        fields = remote_fields(ctx.mappings)

        if local_id is not None:
            ctx.processed_local.add(local_id)

            async def sync_local_target() -> tuple[bool, bool]:
                contact = await self._states.get_contact(conn.tenant_id, local_id)
                if contact is None:
                    raise ContactNotFoundError(f"Contact {local_id} not found")
                state = await self._states.get(conn.id, local_id)
                remote = None
                if state is not None and state.linked:
                    try:
                        remote = await self._call_with_retry(
                            lambda: adapter.fetch_record(conn, state.external_id, fields=fields)
                        )
                    except NotFoundError:
                        await self._states.mark_unlinked(state)
                        raise
                    ctx.seen_remote[remote.external_id] = remote.modified_at
                return await self._sync_pair(ctx, contact, remote, state)

            await self._isolate(ctx, local_id, None, sync_local_target)
        elif external_id is not None:

            async def sync_remote_target() -> tuple[bool, bool]:
                try:
                    record = await self._call_with_retry(
                        lambda: adapter.fetch_record(conn, external_id, fields=fields)
                    )
                except NotFoundError:
                    state = await self._states.get_by_external_id(conn.id, external_id)
                    if state is not None:
                        await self._states.mark_unlinked(state)
                    raise
                ctx.seen_remote[record.external_id] = record.modified_at
                return await self._sync_remote(ctx, record)

            await self._isolate(ctx, None, external_id, sync_remote_target)
        else:
            raise RunAborted("single_record_without_target")
        await self._flush(ctx)

    # ── Per-record ──────────────────────────────────────────────────────────

    def _first_sight(self, ctx: _RunContext, record: RemoteRecord) -> bool:
        """Dedupe records repeated across pages, keeping newer versions."""
        if record.external_id in ctx.seen_remote:
            previous = ctx.seen_remote[record.external_id]
            if previous is None or record.modified_at is None or record.modified_at <= previous:
                return False
        ctx.seen_remote[record.external_id] = record.modified_at
        return True

    async def _isolate(
        self,
        ctx: _RunContext,
        local_id: str | None,
        external_id: str | None,
        work: Callable[[], Awaitable[tuple[bool, bool]]],
    ) -> None:
        """Run one record's sync, containing every per-record failure."""
        ctx.counts.scanned += 1
        provider = ctx.provider.value
        try:
            wrote_local, wrote_remote = await work()
        except AuthError:
            raise
        except ValidationError as exc:
            ctx.counts.failed += 1
            ctx.error("validation", exc.message, local_id=local_id, external_id=external_id)
            sync_records_total.labels(provider=provider, outcome="invalid").inc()
        except NotFoundError as exc:
            ctx.counts.skipped += 1
            ctx.error("not_found", exc.message, local_id=local_id, external_id=external_id)
            sync_records_total.labels(provider=provider, outcome="unlinked").inc()
        except ContactNotFoundError as exc:
            ctx.counts.skipped += 1
            ctx.error("local_missing", str(exc), local_id=local_id, external_id=external_id)
        except _RETRYABLE as exc:
            ctx.counts.failed += 1
            kind = exc.kind if isinstance(exc, ProviderError) else "backpressure"
            ctx.error(kind, str(exc), local_id=local_id, external_id=external_id)
            sync_records_total.labels(provider=provider, outcome="failed").inc()
            await self._repo.record_failure(
                ctx.conn.id,
                local_id=local_id,
                external_id=external_id if local_id is None else None,
                error=str(exc),
                max_attempts=self._settings.RETRY_SWEEP_MAX_ATTEMPTS,
            )
        else:
            if wrote_local:
                ctx.counts.upserted_local += 1
            if wrote_remote:
                ctx.counts.upserted_remote += 1
            if not (wrote_local or wrote_remote):
                ctx.counts.skipped += 1
            sync_records_total.labels(
                provider=provider, outcome="written" if wrote_local or wrote_remote else "unchanged"
            ).inc()
            key = (local_id, external_id if local_id is None else None)
            if key in ctx.failure_keys:
                await self._repo.clear_failure(
                    ctx.conn.id, local_id=key[0], external_id=key[1]
                )
                ctx.failure_keys.discard(key)
        self._check_error_rate(ctx)

    async def _sync_remote(self, ctx: _RunContext, record: RemoteRecord) -> tuple[bool, bool]:
        conn = ctx.conn
        state = await self._states.get_by_external_id(conn.id, record.external_id)
        local = None
        if state is not None:
            local = await self._states.get_contact(conn.tenant_id, state.local_id)
            if local is None:
                raise ContactNotFoundError(
                    f"Contact {state.local_id} linked to {record.external_id} is gone"
                )
        return await self._sync_pair(ctx, local, record, state)

    async def _sync_local(self, ctx: _RunContext, contact: CanonicalContact) -> tuple[bool, bool]:
        state = await self._states.get(ctx.conn.id, contact.local_id or "")
        return await self._sync_pair(ctx, contact, None, state)

    async def _match_local(
        self, ctx: _RunContext, remote_values: dict[str, Any], external_id: str
    ) -> tuple[CanonicalContact | None, SyncStateRead | None]:
        conn = ctx.conn
        key = conn.settings.natural_key
        key_field = _NATURAL_KEY_FIELD.get(key)
        if key_field is None or remote_values.get(key_field) in (None, "", []):
            return None, None
        match = await self._states.find_local_match(conn.tenant_id, key, remote_values[key_field])
        if match is None or match.local_id in ctx.processed_local:
            return None, None
        state = await self._states.get(conn.id, match.local_id or "")
        if state is not None and state.linked and state.external_id != external_id:
            return None, None
        logger.info(
            "sync.natural_key_match",
            connection_id=conn.id,
            local_id=match.local_id,
            external_id=external_id,
            natural_key=key.value,
        )
        return match, state

    async def _sync_pair(
        self,
        ctx: _RunContext,
        local: CanonicalContact | None,
        remote: RemoteRecord | None,
        state: SyncStateRead | None,
    ) -> tuple[bool, bool]:
        """Map, resolve and write one (local, remote) pair.

        Returns:
            (wrote_local, wrote_remote)
        """
        conn = ctx.conn
        adapter = ctx.adapter
        assert adapter is not None
        mappings = ctx.mappings

        if state is not None and state.unlinked and remote is None:
            # Remote counterpart was deleted; never recreate it implicitly
            return False, False

        self._enter(ctx, RunPhase.MAPPING)
        remote_snap: Snapshot | None = None
        if remote is not None:
            mapped = to_canonical(remote, mappings)
            for err in mapped.errors:
                ctx.error(
                    "validation",
                    err.message,
                    local_id=local.local_id if local else None,
                    external_id=remote.external_id,
                    field_name=err.local_field,
                )
            remote_snap = Snapshot(mapped.values, remote.modified_at)
            if local is None:
                local, state = await self._match_local(ctx, mapped.values, remote.external_id)
        elif state is not None and state.linked:
            remote_snap = Snapshot(dict(state.baseline), state.remote_marker)

        local_snap = (
            Snapshot(canonical_snapshot(local.fields, mappings), local.updated_at)
            if local is not None
            else None
        )
        if local is not None and local.local_id:
            ctx.processed_local.add(local.local_id)

        self._enter(ctx, RunPhase.RESOLVING)
        is_target = local is not None and local.local_id == ctx.request.local_id
        overrides = ctx.request.overrides if is_target else {}
        resolution = resolve(
            local_snap,
            remote_snap,
            state,
            conn.settings.conflict_policy,
            mappings,
            overrides,
        )
        if resolution.conflicts:
            ctx.counts.conflicts += len(resolution.conflicts)
            sync_conflicts_total.labels(
                provider=conn.provider.value, policy=conn.settings.conflict_policy.value
            ).inc(len(resolution.conflicts))

        self._enter(ctx, RunPhase.WRITING)
        now = utcnow()
        external_id = remote.external_id if remote is not None else (
            state.external_id if state is not None and state.linked else None
        )
        remote_marker = remote.modified_at if remote is not None else (
            state.remote_marker if state is not None else None
        )
        old_baseline = dict(state.baseline) if state is not None else {}
        baseline = dict(resolution.merged)
        wrote_remote = False

        if resolution.to_remote and local is not None and local.local_id:
            values = resolution.to_remote
            if external_id is None:
                values = {k: v for k, v in values.items() if v not in (None, "", [])}
            payload = to_remote(values, mappings)
            for err in payload.errors:
                ctx.error(
                    "validation",
                    err.message,
                    local_id=local.local_id,
                    external_id=external_id,
                    field_name=err.local_field,
                )
                if err.local_field in old_baseline:
                    baseline[err.local_field] = old_baseline[err.local_field]
                else:
                    baseline.pop(err.local_field, None)
            if not payload.values and payload.errors:
                raise ValidationError(
                    payload.errors[0].message, provider=conn.provider.value
                )
            if payload.values:
                outbound = OutboundRecord(
                    local_id=local.local_id, external_id=external_id, fields=payload.values
                )
                try:
                    result = await self._call_with_retry(
                        lambda: adapter.upsert_remote(conn, outbound)
                    )
                except NotFoundError:
                    if state is not None:
                        await self._states.mark_unlinked(state)
                    raise
                external_id = result.external_id
                remote_marker = result.modified_at
                wrote_remote = True
                pushed = {f: baseline[f] for f in resolution.to_remote if f in baseline}
                state = await self._states.upsert(
                    SyncStateRead(
                        id=state.id if state is not None else None,
                        connection_id=conn.id,
                        local_id=local.local_id,
                        external_id=external_id,
                        local_marker=state.local_marker if state is not None else None,
                        remote_marker=remote_marker,
                        last_synced_at=now,
                        baseline={**old_baseline, **pushed},
                        open_conflict_id=state.open_conflict_id if state is not None else None,
                    )
                )

        prior_open = state.open_conflict_id if state is not None else None

        def build_state(contact: CanonicalContact) -> SyncStateRead:
            return SyncStateRead(
                id=state.id if state is not None else None,
                connection_id=conn.id,
                local_id=contact.local_id or "",
                external_id=external_id,
                local_marker=contact.updated_at,
                remote_marker=remote_marker,
                last_synced_at=now,
                baseline=baseline,
                open_conflict_id=prior_open,
            )

        wrote_local = False
        if resolution.to_local:
            local, state = await self._states.apply_local_write(
                conn.tenant_id,
                local.local_id if local is not None else None,
                resolution.to_local,
                build_state,
            )
            wrote_local = True
            ctx.processed_local.add(local.local_id or "")
        elif local is not None:
            candidate = build_state(local)
            if state is None or _state_changed(state, candidate):
                state = await self._states.upsert(candidate)

        if state is not None:
            await self._record_conflicts(ctx, state, resolution, overrides)
        return wrote_local, wrote_remote

    async def _record_conflicts(
        self,
        ctx: _RunContext,
        state: SyncStateRead,
        resolution: Resolution,
        overrides: Mapping[str, Side | ManualValue],
    ) -> None:
        """Persist new open conflicts and settle the ones this pass resolved."""
        conn = ctx.conn
        open_fields = {c.field for c in resolution.open_conflicts}
        open_ids: list[str] = []

        if state.open_conflict_id is not None:
            now = utcnow()
            existing = await self._repo.list_conflicts(
                conn.id, status=ConflictStatus.OPEN, local_id=state.local_id
            )
            by_field = {c.field: c for c in resolution.conflicts}
            for conflict in existing:
                if conflict.field in open_fields or conflict.field not in resolution.merged:
                    open_ids.append(conflict.id or "")
                    continue
                value = resolution.merged[conflict.field]
                if conflict.field in overrides:
                    status = ConflictStatus.RESOLVED_MANUAL
                else:
                    detected = by_field.get(conflict.field)
                    if detected is not None:
                        status = detected.status
                    elif value == conflict.remote_value:
                        status = ConflictStatus.RESOLVED_REMOTE
                    else:
                        status = ConflictStatus.RESOLVED_LOCAL
                await self._repo.resolve_conflict(
                    conflict.id or "", status=status, resolved_value=value, resolved_at=now
                )
                logger.info(
                    "sync.conflict_resolved",
                    connection_id=conn.id,
                    conflict_id=conflict.id,
                    field=conflict.field,
                    status=status.value,
                )

        for detected in resolution.open_conflicts:
            saved = await self._repo.save_open_conflict(
                ConflictRead(
                    connection_id=conn.id,
                    sync_state_id=state.id,
                    local_id=state.local_id,
                    external_id=state.external_id,
                    field=detected.field,
                    local_value=detected.local_value,
                    remote_value=detected.remote_value,
                    local_modified_at=detected.local_modified_at,
                    remote_modified_at=detected.remote_modified_at,
                )
            )
            if saved.id not in open_ids:
                open_ids.append(saved.id or "")
            logger.info(
                "sync.conflict_open",
                connection_id=conn.id,
                local_id=state.local_id,
                field=detected.field,
            )

        new_open = open_ids[0] if open_ids else None
        if new_open != state.open_conflict_id:
            await self._states.upsert(state.model_copy(update={"open_conflict_id": new_open}))

    # ── Helpers ─────────────────────────────────────────────────────────────

    async def _call_with_retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        policy = _RecordRetryPolicy(
            self._settings.RECORD_MAX_ATTEMPTS,
            self._settings.RATE_LIMIT_MAX_RETRIES,
            self._settings.RETRY_BACKOFF_MAX,
            self._retry_wait,
        )
        result: Any = None
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(_RETRYABLE),
            stop=policy.stop,
            wait=policy.wait,
            reraise=True,
        ):
            with attempt:
                result = await fn()
        return result

    def _enter(self, ctx: _RunContext, phase: RunPhase) -> None:
        if ctx.phase != phase:
            logger.debug("sync.phase", run_id=ctx.run.id, phase=phase.value)
            ctx.phase = phase

    def _check_cancel(self, ctx: _RunContext) -> None:
        if ctx.cancel_event is not None and ctx.cancel_event.is_set():
            raise _RunCancelled()

    def _check_error_rate(self, ctx: _RunContext) -> None:
        counts = ctx.counts
        if counts.scanned < self._settings.RUN_ERROR_RATE_MIN_SAMPLE:
            return
        ceiling = self._settings.RUN_ERROR_RATE_CEILING
        if ctx.connection is not None and ctx.conn.settings.error_rate_ceiling is not None:
            ceiling = ctx.conn.settings.error_rate_ceiling
        if counts.error_rate > ceiling:
            raise RunAborted(
                f"error_rate_exceeded: {counts.failed}/{counts.scanned} > {ceiling:.2f}"
            )

    async def _flush(self, ctx: _RunContext) -> None:
        """Append progress to the run log and extend the lock lease."""
        errors, ctx.pending_errors = ctx.pending_errors, []
        await self._repo.append_run_progress(ctx.run.id, ctx.counts, errors)
        await self._repo.renew_lock(
            ctx.request.connection_id, ctx.run.id, self._settings.RUN_LOCK_LEASE_SECONDS
        )

    async def _finalize_connection(self, ctx: _RunContext) -> None:
        values: dict[str, Any] = {"last_sync_at": utcnow(), "last_error": None}
        if ctx.advance_checkpoints:
            values["remote_checkpoint"] = ctx.remote_checkpoint
            values["local_checkpoint"] = ctx.local_checkpoint
        await self._repo.update_connection(ctx.conn.id, **values)

    async def _close(
        self, ctx: _RunContext, status: RunStatus, reason: str | None
    ) -> SyncRunRead:
        errors, ctx.pending_errors = ctx.pending_errors, []
        closed = await self._repo.close_run(
            ctx.run.id,
            status=status,
            counts=ctx.counts,
            new_errors=errors,
            abort_reason=reason,
            finished_at=utcnow(),
        )
        provider = ctx.connection.provider.value if ctx.connection else "unknown"
        sync_runs_total.labels(provider=provider, mode=ctx.run.mode.value, status=status.value).inc()
        self._enter(ctx, RunPhase.IDLE)
        return closed


def _state_changed(current: SyncStateRead, candidate: SyncStateRead) -> bool:
    return (
        current.external_id != candidate.external_id
        or current.local_marker != candidate.local_marker
        or current.remote_marker != candidate.remote_marker
        or current.baseline != candidate.baseline
        or current.unlinked
    )

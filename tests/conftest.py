"""Shared fixtures and in-memory doubles for the sync engine tests.

Provides:
- Ticker: strictly increasing clock shared by the local and remote doubles
- InMemorySyncRepository: SyncRepository without a database
- InMemoryStateStore: SyncStateStore plus a host contacts table
- FakeCRM: provider adapter over an in-memory contact store (HubSpot keys)
- Settings, connection, orchestrator and service fixtures wired together
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from tenacity import wait_none

from src.crm_sync.config import Settings
from src.crm_sync.errors import (
    ConnectionConflictError,
    ContactNotFoundError,
    NotFoundError,
    RunLogClosedError,
)
from src.crm_sync.field_mapping import get_path, normalize_natural_key, set_path
from src.crm_sync.orchestrator import SyncOrchestrator
from src.crm_sync.schemas import (
    CLOSED_RUN_STATUSES,
    CONTACT_FIELDS,
    CUSTOM_FIELD_PREFIX,
    DEFAULT_RATE_LIMITS,
    CanonicalContact,
    ConflictRead,
    ConflictStatus,
    ConnectionCreate,
    ConnectionRead,
    ConnectionSettings,
    ConnectionStatus,
    Credential,
    FailureStatus,
    FetchPage,
    FieldMappingEntry,
    NaturalKey,
    OutboundRecord,
    ProviderType,
    RateLimitConfig,
    RemoteRecord,
    RemoteWriteResult,
    RunErrorEntry,
    RunStatus,
    SyncCounts,
    SyncFailureRead,
    SyncRunRead,
    SyncStateRead,
    WebhookChange,
    utcnow,
)
from src.crm_sync.service import SyncService

TENANT_ID = "11111111-1111-1111-1111-111111111111"
OTHER_TENANT_ID = "22222222-2222-2222-2222-222222222222"


# ── Clock ────────────────────────────────────────────────────────────────────


class Ticker:
    """Hands out strictly increasing UTC timestamps, one second apart."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now


# ── Repository Double ────────────────────────────────────────────────────────


class InMemorySyncRepository:
    """In-memory SyncRepository for testing without database."""

    def __init__(self) -> None:
        self.connections: dict[str, ConnectionRead] = {}
        self.mappings: dict[str, list[FieldMappingEntry]] = {}
        self.runs: dict[str, SyncRunRead] = {}
        self.locks: dict[str, tuple[str, datetime]] = {}
        self.conflicts: dict[str, ConflictRead] = {}
        self.failures: dict[str, SyncFailureRead] = {}
        self.webhook_events: dict[str, tuple[str, WebhookChange, datetime | None]] = {}

    # Connections

    async def create_connection(self, tenant_id: str, data: ConnectionCreate) -> ConnectionRead:
        for existing in self.connections.values():
            if (
                existing.tenant_id == tenant_id
                and existing.provider == data.provider
                and existing.status != ConnectionStatus.DISCONNECTED
            ):
                raise ConnectionConflictError(
                    f"Tenant {tenant_id} already has a live {data.provider.value} connection"
                )
        connection = ConnectionRead(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            provider=data.provider,
            credentials=data.credentials,
            rate_limit=data.rate_limit or DEFAULT_RATE_LIMITS[data.provider],
            settings=data.settings,
            created_at=utcnow(),
        )
        self.connections[connection.id] = connection
        return connection

    async def get_connection(self, connection_id: str) -> ConnectionRead | None:
        return self.connections.get(connection_id)

    async def list_connections(
        self, *, tenant_id: str | None = None, statuses=None
    ) -> list[ConnectionRead]:
        wanted = set(statuses) if statuses is not None else None
        return [
            c
            for c in self.connections.values()
            if (tenant_id is None or c.tenant_id == tenant_id)
            and (wanted is None or c.status in wanted)
        ]

    async def update_connection(self, connection_id: str, **values: Any) -> ConnectionRead | None:
        connection = self.connections.get(connection_id)
        if connection is None:
            return None
        updated = connection.model_copy(update=values)
        self.connections[connection_id] = updated
        return updated

    # Field mappings

    async def list_mappings(self, connection_id: str) -> list[FieldMappingEntry]:
        return list(self.mappings.get(connection_id, []))

    async def replace_mappings(
        self, connection_id: str, entries: list[FieldMappingEntry]
    ) -> list[FieldMappingEntry]:
        self.mappings[connection_id] = list(entries)
        return [e.model_copy(update={"is_custom": True}) for e in entries]

    # Runs

    async def create_run(self, run: SyncRunRead) -> SyncRunRead:
        stored = run.model_copy(update={"created_at": utcnow()})
        self.runs[run.id] = stored
        return stored

    async def get_run(self, run_id: str) -> SyncRunRead | None:
        return self.runs.get(run_id)

    async def list_runs(self, connection_id: str, limit: int = 20) -> list[SyncRunRead]:
        runs = [r for r in self.runs.values() if r.connection_id == connection_id]
        return list(reversed(runs))[:limit]

    async def get_active_run(self, connection_id: str) -> SyncRunRead | None:
        for run in reversed(list(self.runs.values())):
            if run.connection_id == connection_id and run.status == RunStatus.RUNNING:
                return run
        return None

    def _open_run(self, run_id: str) -> SyncRunRead:
        run = self.runs[run_id]
        if run.status in CLOSED_RUN_STATUSES:
            raise RunLogClosedError(f"Sync run {run_id} is closed ({run.status.value})")
        return run

    async def mark_run_running(self, run_id: str, started_at: datetime) -> None:
        run = self._open_run(run_id)
        self.runs[run_id] = run.model_copy(
            update={"status": RunStatus.RUNNING, "started_at": started_at}
        )

    async def append_run_progress(
        self, run_id: str, counts: SyncCounts, new_errors: list[RunErrorEntry]
    ) -> None:
        run = self._open_run(run_id)
        self.runs[run_id] = run.model_copy(
            update={"counts": counts.model_copy(), "errors": run.errors + list(new_errors)}
        )

    async def close_run(
        self,
        run_id: str,
        *,
        status: RunStatus,
        counts: SyncCounts,
        new_errors: list[RunErrorEntry],
        abort_reason: str | None,
        finished_at: datetime,
    ) -> SyncRunRead:
        run = self._open_run(run_id)
        closed = run.model_copy(
            update={
                "status": status,
                "counts": counts.model_copy(),
                "errors": run.errors + list(new_errors),
                "abort_reason": abort_reason,
                "finished_at": finished_at,
            }
        )
        self.runs[run_id] = closed
        return closed

    async def delete_closed_runs_before(self, cutoff: datetime) -> int:
        doomed = [
            r.id
            for r in self.runs.values()
            if r.closed and r.created_at is not None and r.created_at < cutoff
        ]
        for run_id in doomed:
            del self.runs[run_id]
        return len(doomed)

    # Lock

    async def acquire_lock(self, connection_id: str, run_id: str, lease_seconds: int) -> bool:
        now = utcnow()
        held = self.locks.get(connection_id)
        if held is not None and held[1] >= now and held[0] != run_id:
            return False
        self.locks[connection_id] = (run_id, now + timedelta(seconds=lease_seconds))
        return True

    async def renew_lock(self, connection_id: str, run_id: str, lease_seconds: int) -> bool:
        held = self.locks.get(connection_id)
        if held is None or held[0] != run_id:
            return False
        self.locks[connection_id] = (run_id, utcnow() + timedelta(seconds=lease_seconds))
        return True

    async def release_lock(self, connection_id: str, run_id: str) -> None:
        held = self.locks.get(connection_id)
        if held is not None and held[0] == run_id:
            del self.locks[connection_id]

    # Conflicts

    async def save_open_conflict(self, conflict: ConflictRead) -> ConflictRead:
        for existing in self.conflicts.values():
            if (
                existing.connection_id == conflict.connection_id
                and existing.local_id == conflict.local_id
                and existing.field == conflict.field
                and existing.status == ConflictStatus.OPEN
            ):
                refreshed = conflict.model_copy(
                    update={"id": existing.id, "created_at": existing.created_at}
                )
                self.conflicts[existing.id or ""] = refreshed
                return refreshed
        saved = conflict.model_copy(
            update={
                "id": str(uuid.uuid4()),
                "status": ConflictStatus.OPEN,
                "created_at": conflict.created_at or utcnow(),
            }
        )
        self.conflicts[saved.id or ""] = saved
        return saved

    async def get_conflict(self, conflict_id: str) -> ConflictRead | None:
        return self.conflicts.get(conflict_id)

    async def list_conflicts(
        self,
        connection_id: str,
        *,
        status: ConflictStatus | None = None,
        local_id: str | None = None,
        limit: int = 100,
    ) -> list[ConflictRead]:
        found = [
            c
            for c in self.conflicts.values()
            if c.connection_id == connection_id
            and (status is None or c.status == status)
            and (local_id is None or c.local_id == local_id)
        ]
        return found[:limit]

    async def list_stale_open_conflicts(
        self, older_than: datetime, limit: int = 500
    ) -> list[ConflictRead]:
        stale = [
            c
            for c in self.conflicts.values()
            if c.status == ConflictStatus.OPEN
            and c.created_at is not None
            and c.created_at < older_than
        ]
        return stale[:limit]

    async def resolve_conflict(
        self,
        conflict_id: str,
        *,
        status: ConflictStatus,
        resolved_value: Any,
        resolved_at: datetime,
    ) -> ConflictRead | None:
        conflict = self.conflicts.get(conflict_id)
        if conflict is None:
            return None
        resolved = conflict.model_copy(
            update={"status": status, "resolved_value": resolved_value, "resolved_at": resolved_at}
        )
        self.conflicts[conflict_id] = resolved
        return resolved

    async def count_open_conflicts(self, connection_id: str) -> int:
        return len(await self.list_conflicts(connection_id, status=ConflictStatus.OPEN))

    # Failed records

    def _matching_failure(
        self, connection_id: str, local_id: str | None, external_id: str | None
    ) -> SyncFailureRead | None:
        for failure in self.failures.values():
            if failure.connection_id != connection_id or failure.status != FailureStatus.PENDING:
                continue
            if local_id is not None and failure.local_id == local_id:
                return failure
            if local_id is None and failure.local_id is None and failure.external_id == external_id:
                return failure
        return None

    async def record_failure(
        self,
        connection_id: str,
        *,
        local_id: str | None,
        external_id: str | None,
        error: str,
        max_attempts: int,
    ) -> SyncFailureRead:
        now = utcnow()
        existing = self._matching_failure(connection_id, local_id, external_id)
        if existing is None:
            failure = SyncFailureRead(
                id=str(uuid.uuid4()),
                connection_id=connection_id,
                local_id=local_id,
                external_id=external_id,
                first_failed_at=now,
                last_failed_at=now,
                last_error=error,
            )
        else:
            failure = existing.model_copy(
                update={"attempts": existing.attempts + 1, "last_failed_at": now, "last_error": error}
            )
        if failure.attempts >= max_attempts:
            failure = failure.model_copy(update={"status": FailureStatus.PERMANENT})
        self.failures[failure.id or ""] = failure
        return failure

    async def list_pending_failures(
        self, connection_id: str, limit: int = 500
    ) -> list[SyncFailureRead]:
        return [
            f
            for f in self.failures.values()
            if f.connection_id == connection_id and f.status == FailureStatus.PENDING
        ][:limit]

    async def clear_failure(
        self, connection_id: str, *, local_id: str | None, external_id: str | None
    ) -> None:
        existing = self._matching_failure(connection_id, local_id, external_id)
        if existing is not None:
            del self.failures[existing.id or ""]

    async def expire_failures(self, older_than: datetime) -> int:
        expired = 0
        for failure_id, failure in list(self.failures.items()):
            if (
                failure.status == FailureStatus.PENDING
                and failure.first_failed_at is not None
                and failure.first_failed_at < older_than
            ):
                self.failures[failure_id] = failure.model_copy(
                    update={"status": FailureStatus.PERMANENT}
                )
                expired += 1
        return expired

    async def count_pending_failures(self, connection_id: str) -> int:
        return len(await self.list_pending_failures(connection_id))

    async def connections_with_pending_failures(self) -> list[str]:
        seen: dict[str, None] = {}
        for failure in self.failures.values():
            if failure.status == FailureStatus.PENDING:
                seen.setdefault(failure.connection_id, None)
        return list(seen)

    # Webhook events

    async def enqueue_webhook_events(
        self, connection_id: str, changes: list[WebhookChange]
    ) -> int:
        for change in changes:
            self.webhook_events[str(uuid.uuid4())] = (connection_id, change, None)
        return len(changes)

    async def list_pending_webhook_events(
        self, connection_id: str, limit: int
    ) -> list[tuple[str, WebhookChange]]:
        pending = [
            (event_id, change)
            for event_id, (conn_id, change, processed_at) in self.webhook_events.items()
            if conn_id == connection_id and processed_at is None
        ]
        return pending[:limit]

    async def mark_webhook_events_processed(self, event_ids: list[str]) -> None:
        now = utcnow()
        for event_id in event_ids:
            conn_id, change, _ = self.webhook_events[event_id]
            self.webhook_events[event_id] = (conn_id, change, now)

    async def delete_processed_webhook_events_before(self, cutoff: datetime) -> int:
        doomed = [
            event_id
            for event_id, (_, _, processed_at) in self.webhook_events.items()
            if processed_at is not None and processed_at < cutoff
        ]
        for event_id in doomed:
            del self.webhook_events[event_id]
        return len(doomed)


# ── State Store Double ───────────────────────────────────────────────────────


class InMemoryStateStore:
    """In-memory SyncStateStore with its own host contacts table."""

    def __init__(self, clock: Callable[[], datetime]) -> None:
        self._clock = clock
        self.contacts: dict[str, CanonicalContact] = {}
        self.states: dict[tuple[str, str], SyncStateRead] = {}
        self.local_writes = 0

    # Test helpers

    def add_contact(self, tenant_id: str = TENANT_ID, **values: Any) -> CanonicalContact:
        fields: dict[str, Any] = {name: None for name in CONTACT_FIELDS}
        fields["phones"] = []
        fields["tags"] = []
        fields["custom"] = {}
        contact = CanonicalContact(
            local_id=str(uuid.uuid4()), tenant_id=tenant_id, fields=fields
        )
        self.contacts[contact.local_id or ""] = contact
        return self.touch(contact.local_id or "", **values)

    def touch(self, local_id: str, **values: Any) -> CanonicalContact:
        """Edit a contact the way the host app would, bumping updated_at."""
        contact = self.contacts[local_id]
        fields = {**contact.fields, "custom": dict(contact.fields.get("custom") or {})}
        for path, value in values.items():
            if path.startswith(CUSTOM_FIELD_PREFIX):
                fields["custom"][path[len(CUSTOM_FIELD_PREFIX):]] = value
            else:
                fields[path] = value
        updated = contact.model_copy(update={"fields": fields, "updated_at": self._clock()})
        self.contacts[local_id] = updated
        return updated

    def value(self, local_id: str, path: str) -> Any:
        return get_path(self.contacts[local_id].fields, path)

    def state_for(self, connection_id: str, local_id: str) -> SyncStateRead | None:
        return self.states.get((connection_id, local_id))

    # SyncStateStore surface

    async def get(self, connection_id: str, local_id: str) -> SyncStateRead | None:
        return self.states.get((connection_id, local_id))

    async def get_by_external_id(
        self, connection_id: str, external_id: str
    ) -> SyncStateRead | None:
        for (conn_id, _), state in self.states.items():
            if conn_id == connection_id and state.external_id == external_id and not state.unlinked:
                return state
        return None

    async def upsert(self, state: SyncStateRead) -> SyncStateRead:
        key = (state.connection_id, state.local_id)
        existing = self.states.get(key)
        saved = state.model_copy(
            update={"id": existing.id if existing else (state.id or str(uuid.uuid4()))}
        )
        self.states[key] = saved
        return saved

    async def mark_unlinked(self, state: SyncStateRead) -> SyncStateRead:
        return await self.upsert(
            state.model_copy(
                update={
                    "external_id": None,
                    "remote_marker": None,
                    "baseline": {},
                    "unlinked": True,
                    "open_conflict_id": None,
                }
            )
        )

    async def get_contact(self, tenant_id: str, local_id: str) -> CanonicalContact | None:
        contact = self.contacts.get(local_id)
        if contact is None or contact.tenant_id != tenant_id:
            return None
        return contact

    async def find_local_match(
        self, tenant_id: str, natural_key: NaturalKey, value: Any
    ) -> CanonicalContact | None:
        if natural_key == NaturalKey.NONE:
            return None
        wanted = normalize_natural_key(natural_key.value, value)
        if wanted is None:
            return None
        for contact in self.contacts.values():
            if contact.tenant_id != tenant_id:
                continue
            if natural_key == NaturalKey.EMAIL:
                if normalize_natural_key("email", contact.fields.get("email")) == wanted:
                    return contact
            elif wanted in (contact.fields.get("phones") or []):
                return contact
        return None

    async def iter_changed_contacts(
        self, tenant_id: str, since: datetime | None, batch_size: int = 100
    ) -> AsyncIterator[list[CanonicalContact]]:
        changed = sorted(
            (
                c
                for c in self.contacts.values()
                if c.tenant_id == tenant_id
                and (since is None or (c.updated_at is not None and c.updated_at >= since))
            ),
            key=lambda c: (c.updated_at, c.local_id),
        )
        for start in range(0, len(changed), batch_size):
            yield changed[start:start + batch_size]

    async def apply_local_write(
        self,
        tenant_id: str,
        local_id: str | None,
        values: dict[str, Any],
        build_state,
    ) -> tuple[CanonicalContact, SyncStateRead]:
        if local_id is None:
            contact = self.add_contact(tenant_id)
            local_id = contact.local_id or ""
        elif local_id not in self.contacts or self.contacts[local_id].tenant_id != tenant_id:
            raise ContactNotFoundError(f"Contact {local_id} not found")
        fields = {**self.contacts[local_id].fields}
        fields["custom"] = dict(fields.get("custom") or {})
        for path, value in values.items():
            if path in ("phones", "tags") and value is None:
                value = []
            set_path(fields, path, value)
        contact = self.contacts[local_id].model_copy(
            update={"fields": fields, "updated_at": self._clock()}
        )
        self.contacts[local_id] = contact
        self.local_writes += 1
        state = await self.upsert(build_state(contact))
        return contact, state


# ── Provider Double ──────────────────────────────────────────────────────────


class FakeCRM:
    """Provider adapter over an in-memory contact store, keyed like HubSpot.

    Failure injection:
        auth_error: raised by authenticate()
        upsert_errors: local_id -> exception raised by upsert_remote()
        fetch_errors: external_id -> exception raised by fetch_record()
        on_upsert: callback run after every successful upsert
    """

    provider = ProviderType.HUBSPOT

    def __init__(self, clock: Callable[[], datetime], page_size: int = 100) -> None:
        self._clock = clock
        self.page_size = page_size
        self.records: dict[str, RemoteRecord] = {}
        self.upserts: list[OutboundRecord] = []
        self.upsert_attempts = 0
        self.fetch_calls: list[datetime | None] = []
        self.auth_error: Exception | None = None
        self.upsert_errors: dict[str, Exception] = {}
        self.fetch_errors: dict[str, Exception] = {}
        self.on_upsert: Callable[[OutboundRecord], None] | None = None
        self.forgotten: list[str] = []
        self._next_id = 1000

    # Test helpers

    def add_record(self, **fields: Any) -> RemoteRecord:
        self._next_id += 1
        record = RemoteRecord(
            external_id=str(self._next_id), fields=fields, modified_at=self._clock()
        )
        self.records[record.external_id] = record
        return record

    def modify(self, external_id: str, **fields: Any) -> RemoteRecord:
        record = self.records[external_id]
        updated = record.model_copy(
            update={"fields": {**record.fields, **fields}, "modified_at": self._clock()}
        )
        self.records[external_id] = updated
        return updated

    # Adapter surface

    async def authenticate(self, connection: ConnectionRead) -> Credential:
        if self.auth_error is not None:
            raise self.auth_error
        return Credential.model_validate(connection.credentials)

    async def fetch_changed(
        self,
        connection: ConnectionRead,
        since: datetime | None,
        page_token: str | None = None,
        *,
        fields: list[str] | None = None,
    ) -> FetchPage:
        self.fetch_calls.append(since)
        matching = sorted(
            (
                r
                for r in self.records.values()
                if since is None or (r.modified_at is not None and r.modified_at >= since)
            ),
            key=lambda r: (r.modified_at, r.external_id),
        )
        start = int(page_token) if page_token else 0
        page = matching[start:start + self.page_size]
        more = start + self.page_size < len(matching)
        return FetchPage(
            records=page,
            next_page_token=str(start + self.page_size) if more else None,
            new_checkpoint=max((r.modified_at for r in page if r.modified_at), default=None),
        )

    async def fetch_record(
        self, connection: ConnectionRead, external_id: str, *, fields: list[str] | None = None
    ) -> RemoteRecord:
        if external_id in self.fetch_errors:
            raise self.fetch_errors[external_id]
        record = self.records.get(external_id)
        if record is None:
            raise NotFoundError(f"Contact {external_id} not found", provider="hubspot")
        return record

    async def upsert_remote(
        self, connection: ConnectionRead, record: OutboundRecord
    ) -> RemoteWriteResult:
        self.upsert_attempts += 1
        if record.local_id in self.upsert_errors:
            raise self.upsert_errors[record.local_id]
        if record.external_id is None:
            stored = self.add_record(**record.fields)
        elif record.external_id not in self.records:
            raise NotFoundError(f"Contact {record.external_id} not found", provider="hubspot")
        else:
            stored = self.modify(record.external_id, **record.fields)
        self.upserts.append(record)
        if self.on_upsert is not None:
            self.on_upsert(record)
        return RemoteWriteResult(external_id=stored.external_id, modified_at=stored.modified_at)

    def parse_webhook(self, payload: Any) -> list[WebhookChange]:
        return [
            WebhookChange(external_id=str(item["objectId"]), event=item.get("event", "updated"))
            for item in payload
        ]

    def forget(self, connection_id: str) -> None:
        self.forgotten.append(connection_id)

    async def close(self) -> None:
        return None


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        SCHEDULER_ENABLED=False,
        RECORD_MAX_ATTEMPTS=3,
        RATE_LIMIT_MAX_RETRIES=5,
        RUN_ERROR_RATE_CEILING=0.5,
        RUN_ERROR_RATE_MIN_SAMPLE=20,
        RETRY_SWEEP_MAX_ATTEMPTS=5,
        HEALTH_FAILURE_THRESHOLD=3,
    )


@pytest.fixture
def ticker() -> Ticker:
    return Ticker()


@pytest.fixture
def repo() -> InMemorySyncRepository:
    return InMemorySyncRepository()


@pytest.fixture
def store(ticker) -> InMemoryStateStore:
    return InMemoryStateStore(ticker)


@pytest.fixture
def crm(ticker) -> FakeCRM:
    return FakeCRM(ticker)


@pytest.fixture
def make_connection(repo):
    """Factory creating a HubSpot connection for TENANT_ID with given settings."""

    async def _make(
        tenant_id: str = TENANT_ID,
        provider: ProviderType = ProviderType.HUBSPOT,
        **settings_overrides: Any,
    ) -> ConnectionRead:
        return await repo.create_connection(
            tenant_id,
            ConnectionCreate(
                provider=provider,
                credentials={"access_token": "token"},
                rate_limit=RateLimitConfig(requests_per_second=1000),
                settings=ConnectionSettings(**settings_overrides),
            ),
        )

    return _make


@pytest.fixture
def orchestrator(repo, store, crm, settings) -> SyncOrchestrator:
    return SyncOrchestrator(
        repo,
        store,
        {ProviderType.HUBSPOT: crm},
        settings=settings,
        retry_wait=wait_none(),
    )


@pytest.fixture
def new_run(repo):
    """Factory persisting a queued run for a connection."""

    async def _new(connection: ConnectionRead, **fields: Any) -> SyncRunRead:
        return await repo.create_run(
            SyncRunRead(
                id=str(uuid.uuid4()),
                connection_id=connection.id,
                tenant_id=connection.tenant_id,
                **fields,
            )
        )

    return _new


@pytest.fixture
def cancel_event() -> asyncio.Event:
    return asyncio.Event()


@pytest.fixture
def tenant_id() -> str:
    return TENANT_ID


@pytest.fixture
def other_tenant_id() -> str:
    return OTHER_TENANT_ID


@pytest.fixture
def service(repo, orchestrator, crm, settings) -> SyncService:
    return SyncService(repo, orchestrator, {ProviderType.HUBSPOT: crm}, settings=settings)

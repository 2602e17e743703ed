"""Pydantic schemas for the CRM sync engine.

Defines the structured types passed between components:
- Enums: ProviderType, ConnectionStatus, MappingDirection, FieldType, ConflictPolicy,
  ConflictStatus, TriggerKind, SyncMode, RunStatus, RunPhase, NaturalKey, FailureStatus
- Connection: RateLimitConfig, ConnectionSettings, ConnectionCreate/Read, Credential
- Mapping: FieldMappingEntry
- Records: RemoteRecord, CanonicalContact, OutboundRecord, FetchPage, RemoteWriteResult,
  WebhookChange
- Bookkeeping: SyncStateRead, ConflictRead, SyncFailureRead
- Run log: RunErrorEntry, SyncCounts, SyncRunRead, SyncStatus
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class ProviderType(str, Enum):
    """Supported third-party CRMs."""

    HUBSPOT = "hubspot"
    SALESFORCE = "salesforce"
    PIPEDRIVE = "pipedrive"


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class MappingDirection(str, Enum):
    """Which way a field mapping carries values.

    push = local -> remote, pull = remote -> local.
    """

    PUSH = "push"
    PULL = "pull"
    BIDIRECTIONAL = "bidirectional"


class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    ENUM = "enum"
    ARRAY = "array"


class ConflictPolicy(str, Enum):
    """How a field modified on both sides since the last sync is settled."""

    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    NEWEST_WINS = "newest_wins"
    MANUAL = "manual"


class ConflictStatus(str, Enum):
    OPEN = "open"
    RESOLVED_LOCAL = "resolved_local"
    RESOLVED_REMOTE = "resolved_remote"
    RESOLVED_MANUAL = "resolved_manual"


class TriggerKind(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    RETRY = "retry"


class SyncMode(str, Enum):
    FULL = "full"
    DELTA = "delta"
    SINGLE = "single"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


CLOSED_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.SKIPPED, RunStatus.ABORTED, RunStatus.CANCELLED}
)


class RunPhase(str, Enum):
    """Orchestrator state machine phases."""

    IDLE = "idle"
    LOCKING = "locking"
    FETCHING = "fetching"
    MAPPING = "mapping"
    RESOLVING = "resolving"
    WRITING = "writing"
    FINALIZING = "finalizing"
    ABORTED = "aborted"


class NaturalKey(str, Enum):
    """Canonical field used to match a new remote record to an existing local contact."""

    EMAIL = "email"
    PHONE = "phone"
    NONE = "none"


class FailureStatus(str, Enum):
    PENDING = "pending"
    PERMANENT = "permanent"


class Side(str, Enum):
    """Side of a sync pair, used for forced conflict winners."""

    LOCAL = "local"
    REMOTE = "remote"


# ── Connection ──────────────────────────────────────────────────────────────


class RateLimitConfig(BaseModel):
    """Per-connection throughput limits.

    burst defaults to one second worth of requests. daily_limit enables the
    persistent per-day bucket.
    """

    requests_per_second: float = Field(default=10.0, gt=0)
    burst: int | None = Field(default=None, ge=1)
    daily_limit: int | None = Field(default=None, ge=1)
    max_wait: float | None = Field(default=None, ge=0)

    @property
    def capacity(self) -> int:
        return self.burst or max(1, int(self.requests_per_second))


DEFAULT_RATE_LIMITS: dict[ProviderType, RateLimitConfig] = {
    ProviderType.HUBSPOT: RateLimitConfig(requests_per_second=100),
    ProviderType.SALESFORCE: RateLimitConfig(requests_per_second=100),
    ProviderType.PIPEDRIVE: RateLimitConfig(requests_per_second=20, daily_limit=10_000),
}


class ConnectionSettings(BaseModel):
    """Tenant-tunable sync behavior for one connection."""

    conflict_policy: ConflictPolicy = ConflictPolicy.NEWEST_WINS
    natural_key: NaturalKey = NaturalKey.EMAIL
    error_rate_ceiling: float | None = Field(default=None, gt=0, le=1)
    batch_size: int = Field(default=100, ge=1, le=1000)


class Credential(BaseModel):
    """Provider credential as handed to the engine by the host app.

    OAuth providers use access/refresh tokens (Salesforce adds instance_url);
    Pipedrive uses a static api_token and optional company api_domain.
    """

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    instance_url: str | None = None
    api_token: str | None = None
    api_domain: str | None = None

    def is_expired(self, now: datetime | None = None, skew_seconds: int = 60) -> bool:
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return (self.expires_at - now).total_seconds() <= skew_seconds


class ConnectionCreate(BaseModel):
    provider: ProviderType
    credentials: dict[str, Any] = Field(default_factory=dict)
    rate_limit: RateLimitConfig | None = None
    settings: ConnectionSettings = Field(default_factory=ConnectionSettings)


class ConnectionRead(BaseModel):
    id: str
    tenant_id: str
    provider: ProviderType
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    credentials: dict[str, Any] = Field(default_factory=dict)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    settings: ConnectionSettings = Field(default_factory=ConnectionSettings)
    remote_checkpoint: datetime | None = None
    local_checkpoint: datetime | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None
    health_failures: int = 0
    created_at: datetime | None = None


class ConnectionPublic(BaseModel):
    """Connection as returned over the API (credentials withheld)."""

    id: str
    tenant_id: str
    provider: ProviderType
    status: ConnectionStatus
    rate_limit: RateLimitConfig
    settings: ConnectionSettings
    remote_checkpoint: datetime | None = None
    local_checkpoint: datetime | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None

    @classmethod
    def from_connection(cls, connection: ConnectionRead) -> ConnectionPublic:
        return cls.model_validate(connection.model_dump(exclude={"credentials"}))


# ── Field Mapping ───────────────────────────────────────────────────────────

# Host contact columns addressable by a mapping; custom fields use "custom.<key>"
CONTACT_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phones",
    "company",
    "job_title",
    "lifecycle_stage",
    "birthdate",
    "tags",
)
CUSTOM_FIELD_PREFIX = "custom."


class FieldMappingEntry(BaseModel):
    """One canonical <-> provider field correspondence.

    local_field and remote_field accept dotted paths (``custom.industry``,
    ``Account.Name``). multi_value marks a remote field holding a list.
    value_map maps canonical enum values to provider values.
    """

    local_field: str
    remote_field: str
    direction: MappingDirection = MappingDirection.BIDIRECTIONAL
    field_type: FieldType = FieldType.TEXT
    transform: str | None = None
    multi_value: bool = False
    value_map: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    is_custom: bool = False

    @property
    def pulls(self) -> bool:
        return self.direction in (MappingDirection.PULL, MappingDirection.BIDIRECTIONAL)

    @property
    def pushes(self) -> bool:
        return self.direction in (MappingDirection.PUSH, MappingDirection.BIDIRECTIONAL)


# ── Records ─────────────────────────────────────────────────────────────────


class RemoteRecord(BaseModel):
    """A provider contact, with provider-native field keys."""

    external_id: str
    fields: dict[str, Any] = Field(default_factory=dict)
    modified_at: datetime | None = None


class CanonicalContact(BaseModel):
    """A host-platform contact in canonical (nested) field form."""

    local_id: str | None = None
    tenant_id: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime | None = None


class OutboundRecord(BaseModel):
    """Provider-keyed payload for a single create-or-update."""

    local_id: str
    external_id: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)


class FetchPage(BaseModel):
    records: list[RemoteRecord] = Field(default_factory=list)
    next_page_token: str | None = None
    new_checkpoint: datetime | None = None


class RemoteWriteResult(BaseModel):
    external_id: str
    modified_at: datetime | None = None


class WebhookChange(BaseModel):
    """Normalized inbound change notification.

    record is set when the provider pushed the full object (Pipedrive);
    otherwise the orchestrator fetches it by external_id.
    """

    external_id: str
    event: str = "updated"
    occurred_at: datetime | None = None
    record: RemoteRecord | None = None

    @property
    def deleted(self) -> bool:
        return self.event == "deleted"


# ── Bookkeeping ─────────────────────────────────────────────────────────────


class SyncStateRead(BaseModel):
    """Per (connection, local record) sync bookkeeping."""

    id: str | None = None
    connection_id: str
    local_id: str
    external_id: str | None = None
    local_marker: datetime | None = None
    remote_marker: datetime | None = None
    last_synced_at: datetime | None = None
    baseline: dict[str, Any] = Field(default_factory=dict)
    open_conflict_id: str | None = None
    unlinked: bool = False

    @property
    def linked(self) -> bool:
        return self.external_id is not None and not self.unlinked


class ConflictRead(BaseModel):
    id: str | None = None
    connection_id: str
    sync_state_id: str | None = None
    local_id: str
    external_id: str | None = None
    field: str
    local_value: Any = None
    remote_value: Any = None
    local_modified_at: datetime | None = None
    remote_modified_at: datetime | None = None
    status: ConflictStatus = ConflictStatus.OPEN
    resolved_at: datetime | None = None
    resolved_value: Any = None
    created_at: datetime | None = None


class SyncFailureRead(BaseModel):
    id: str | None = None
    connection_id: str
    local_id: str | None = None
    external_id: str | None = None
    attempts: int = 1
    first_failed_at: datetime | None = None
    last_failed_at: datetime | None = None
    last_error: str | None = None
    status: FailureStatus = FailureStatus.PENDING


# ── Run Log ─────────────────────────────────────────────────────────────────


class RunErrorEntry(BaseModel):
    at: datetime = Field(default_factory=utcnow)
    kind: str
    message: str
    local_id: str | None = None
    external_id: str | None = None
    field: str | None = None


class SyncCounts(BaseModel):
    scanned: int = 0
    upserted_local: int = 0
    upserted_remote: int = 0
    skipped: int = 0
    failed: int = 0
    conflicts: int = 0

    @property
    def error_rate(self) -> float:
        return self.failed / self.scanned if self.scanned else 0.0


class SyncRunRead(BaseModel):
    id: str
    connection_id: str
    tenant_id: str
    trigger: TriggerKind = TriggerKind.MANUAL
    mode: SyncMode = SyncMode.DELTA
    status: RunStatus = RunStatus.QUEUED
    started_at: datetime | None = None
    finished_at: datetime | None = None
    counts: SyncCounts = Field(default_factory=SyncCounts)
    errors: list[RunErrorEntry] = Field(default_factory=list)
    abort_reason: str | None = None
    target_local_id: str | None = None
    target_external_id: str | None = None
    created_at: datetime | None = None

    @property
    def closed(self) -> bool:
        return self.status in CLOSED_RUN_STATUSES


class SyncStatus(BaseModel):
    connection: ConnectionPublic
    active_run: SyncRunRead | None = None
    last_run: SyncRunRead | None = None
    open_conflicts: int = 0
    pending_failures: int = 0


class ConflictResolutionRequest(BaseModel):
    """Operator decision for an open conflict: keep one side or supply a value."""

    winner: Side | None = None
    value: Any = None


class TriggerResponse(BaseModel):
    run_id: str

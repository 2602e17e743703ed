"""Sync engine persistence models.

Engine-owned tables:
- ConnectionModel (crm_connections): one provider link per tenant
- FieldMappingModel (crm_field_mappings): tenant overrides of default mappings
- SyncStateModel (crm_sync_state): per (connection, local contact) bookkeeping
- ConflictModel (crm_sync_conflicts): field conflicts awaiting or after resolution
- SyncRunModel (crm_sync_logs): one row per sync run, immutable once closed
- RunLockModel (crm_sync_locks): per-connection run lease
- SyncFailureModel (crm_sync_failures): failed record writes for the retry sweep
- WebhookEventModel (crm_webhook_events): queued inbound provider change events

Host-owned table read and written by the engine:
- ContactModel (contacts)
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.crm_sync.core.database import SyncBase


class ConnectionModel(SyncBase):
    """A tenant's link to one CRM provider.

    At most one non-disconnected connection per (tenant, provider), enforced
    by a partial unique index.
    """

    __tablename__ = "crm_connections"
    __table_args__ = (
        Index(
            "uq_crm_connection_live",
            "tenant_id",
            "provider",
            unique=True,
            postgresql_where=text("status <> 'disconnected'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    credentials: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    rate_limit: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    settings: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    remote_checkpoint: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    local_checkpoint: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    health_failures: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class FieldMappingModel(SyncBase):
    """Tenant override of (or addition to) the platform-default field mappings."""

    __tablename__ = "crm_field_mappings"
    __table_args__ = (
        UniqueConstraint(
            "connection_id",
            "local_field",
            "remote_field",
            name="uq_crm_field_mapping_pair",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm_connections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    local_field: Mapped[str] = mapped_column(String(200), nullable=False)
    remote_field: Mapped[str] = mapped_column(String(200), nullable=False)
    direction: Mapped[str] = mapped_column(String(20), nullable=False, default="bidirectional")
    field_type: Mapped[str] = mapped_column(String(20), nullable=False, default="text")
    transform: Mapped[str | None] = mapped_column(String(50), nullable=True)
    multi_value: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    value_map: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SyncStateModel(SyncBase):
    """Bookkeeping for one local contact on one connection.

    baseline holds the canonical field values agreed at the last successful
    sync and is what field-level change detection compares against.
    """

    __tablename__ = "crm_sync_state"
    __table_args__ = (
        UniqueConstraint("connection_id", "local_id", name="uq_crm_sync_state_local"),
        Index("ix_crm_sync_state_external", "connection_id", "external_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm_connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    local_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    local_marker: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    remote_marker: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    baseline: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    open_conflict_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    unlinked: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")


class ConflictModel(SyncBase):
    """A field changed on both sides since the last sync."""

    __tablename__ = "crm_sync_conflicts"
    __table_args__ = (
        Index("ix_crm_sync_conflicts_open", "connection_id", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm_connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    sync_state_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm_sync_state.id", ondelete="CASCADE"),
        nullable=True,
    )
    local_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    field: Mapped[str] = mapped_column(String(200), nullable=False)
    local_value: Mapped[dict | list | str | None] = mapped_column(JSON, nullable=True)
    remote_value: Mapped[dict | list | str | None] = mapped_column(JSON, nullable=True)
    local_modified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    remote_modified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_value: Mapped[dict | list | str | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SyncRunModel(SyncBase):
    """Log of one sync run. Append-only while running, immutable once closed."""

    __tablename__ = "crm_sync_logs"
    __table_args__ = (
        Index("ix_crm_sync_logs_connection_started", "connection_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm_connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    trigger: Mapped[str] = mapped_column(String(20), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    counts: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    errors: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    abort_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_local_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class RunLockModel(SyncBase):
    """Lease guaranteeing at most one running sync per connection."""

    __tablename__ = "crm_sync_locks"

    connection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm_connections.id", ondelete="CASCADE"),
        primary_key=True,
    )
    run_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SyncFailureModel(SyncBase):
    """A record whose write kept failing, queued for the retry sweep."""

    __tablename__ = "crm_sync_failures"
    __table_args__ = (
        Index("ix_crm_sync_failures_pending", "connection_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm_connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    local_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=1, server_default="1")
    first_failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")


class WebhookEventModel(SyncBase):
    """Normalized inbound change event waiting for the next sync pass."""

    __tablename__ = "crm_webhook_events"
    __table_args__ = (
        Index("ix_crm_webhook_events_pending", "connection_id", "processed_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    connection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm_connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event: Mapped[str] = mapped_column(String(20), nullable=False, default="updated")
    occurred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ContactModel(SyncBase):
    """Host platform contact, the local side of every sync pair."""

    __tablename__ = "contacts"
    __table_args__ = (
        Index("ix_contacts_tenant_updated", "tenant_id", "updated_at", "id"),
        Index("ix_contacts_tenant_email", "tenant_id", "email"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phones: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    company: Mapped[str | None] = mapped_column(String(300), nullable=True)
    job_title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    lifecycle_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    birthdate: Mapped[str | None] = mapped_column(String(10), nullable=True)
    tags: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    custom_fields: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

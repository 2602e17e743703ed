"""Create CRM sync engine tables.

Revision ID: 001_crm_sync_tables
Revises:
Create Date: 2026-10-18

Creates the engine-owned tables:
- crm_connections: one provider link per tenant (partial unique index on live rows)
- crm_field_mappings: tenant mapping overrides
- crm_sync_state: per (connection, local contact) bookkeeping with baseline
- crm_sync_conflicts: field conflicts
- crm_sync_logs: sync run logs
- crm_sync_locks: per-connection run lease
- crm_sync_failures: failed records for the retry sweep
- crm_webhook_events: queued provider change events

The host contacts table is created too unless run with ``-x contacts=skip``.
"""

from typing import Sequence, Union

from alembic import context, op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_crm_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _connection_fk() -> sa.Column:
    return sa.Column(
        "connection_id",
        UUID(as_uuid=True),
        sa.ForeignKey("crm_connections.id", ondelete="CASCADE"),
        nullable=False,
    )


def _json(name: str, default: str = "'{}'::json") -> sa.Column:
    return sa.Column(name, sa.JSON(), server_default=sa.text(default), nullable=False)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )


def _manage_contacts() -> bool:
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    return cmd_kwargs.get("contacts", "create") != "skip"


def upgrade() -> None:
    # ── crm_connections ─────────────────────────────────────────────────

    op.create_table(
        "crm_connections",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        _json("credentials"),
        _json("rate_limit"),
        _json("settings"),
        sa.Column("remote_checkpoint", sa.DateTime(timezone=True), nullable=True),
        sa.Column("local_checkpoint", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("health_failures", sa.Integer(), server_default="0", nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_crm_connections_tenant_id", "crm_connections", ["tenant_id"])
    op.create_index(
        "uq_crm_connection_live",
        "crm_connections",
        ["tenant_id", "provider"],
        unique=True,
        postgresql_where=sa.text("status <> 'disconnected'"),
    )

    # ── crm_field_mappings ──────────────────────────────────────────────

    op.create_table(
        "crm_field_mappings",
        _id_column(),
        _connection_fk(),
        sa.Column("local_field", sa.String(200), nullable=False),
        sa.Column("remote_field", sa.String(200), nullable=False),
        sa.Column("direction", sa.String(20), nullable=False, server_default="bidirectional"),
        sa.Column("field_type", sa.String(20), nullable=False, server_default="text"),
        sa.Column("transform", sa.String(50), nullable=True),
        sa.Column("multi_value", sa.Boolean(), server_default="false", nullable=False),
        _json("value_map"),
        sa.Column("enabled", sa.Boolean(), server_default="true", nullable=False),
        _created_at(),
        sa.UniqueConstraint(
            "connection_id", "local_field", "remote_field", name="uq_crm_field_mapping_pair"
        ),
    )
    op.create_index(
        "ix_crm_field_mappings_connection_id", "crm_field_mappings", ["connection_id"]
    )

    # ── crm_sync_state ──────────────────────────────────────────────────

    op.create_table(
        "crm_sync_state",
        _id_column(),
        _connection_fk(),
        sa.Column("local_id", UUID(as_uuid=True), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("local_marker", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remote_marker", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        _json("baseline"),
        sa.Column("open_conflict_id", UUID(as_uuid=True), nullable=True),
        sa.Column("unlinked", sa.Boolean(), server_default="false", nullable=False),
        sa.UniqueConstraint("connection_id", "local_id", name="uq_crm_sync_state_local"),
    )
    op.create_index(
        "ix_crm_sync_state_external", "crm_sync_state", ["connection_id", "external_id"]
    )

    # ── crm_sync_conflicts ──────────────────────────────────────────────

    op.create_table(
        "crm_sync_conflicts",
        _id_column(),
        _connection_fk(),
        sa.Column(
            "sync_state_id",
            UUID(as_uuid=True),
            sa.ForeignKey("crm_sync_state.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("local_id", UUID(as_uuid=True), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("field", sa.String(200), nullable=False),
        sa.Column("local_value", sa.JSON(), nullable=True),
        sa.Column("remote_value", sa.JSON(), nullable=True),
        sa.Column("local_modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remote_modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_value", sa.JSON(), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_crm_sync_conflicts_open",
        "crm_sync_conflicts",
        ["connection_id", "status", "created_at"],
    )

    # ── crm_sync_logs ───────────────────────────────────────────────────

    op.create_table(
        "crm_sync_logs",
        _id_column(),
        _connection_fk(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("trigger", sa.String(20), nullable=False),
        sa.Column("mode", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        _json("counts"),
        _json("errors", "'[]'::json"),
        sa.Column("abort_reason", sa.Text(), nullable=True),
        sa.Column("target_local_id", sa.String(64), nullable=True),
        sa.Column("target_external_id", sa.String(255), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_crm_sync_logs_connection_started", "crm_sync_logs", ["connection_id", "created_at"]
    )

    # ── crm_sync_locks ──────────────────────────────────────────────────

    op.create_table(
        "crm_sync_locks",
        sa.Column(
            "connection_id",
            UUID(as_uuid=True),
            sa.ForeignKey("crm_connections.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("run_id", UUID(as_uuid=True), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )

    # ── crm_sync_failures ───────────────────────────────────────────────

    op.create_table(
        "crm_sync_failures",
        _id_column(),
        _connection_fk(),
        sa.Column("local_id", sa.String(64), nullable=True),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default="1", nullable=False),
        sa.Column("first_failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
    )
    op.create_index(
        "ix_crm_sync_failures_pending", "crm_sync_failures", ["connection_id", "status"]
    )

    # ── crm_webhook_events ──────────────────────────────────────────────

    op.create_table(
        "crm_webhook_events",
        _id_column(),
        _connection_fk(),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("event", sa.String(20), nullable=False, server_default="updated"),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column(
            "received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_crm_webhook_events_pending", "crm_webhook_events", ["connection_id", "processed_at"]
    )

    # ── contacts (host table) ───────────────────────────────────────────

    if _manage_contacts():
        op.create_table(
            "contacts",
            _id_column(),
            sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
            sa.Column("first_name", sa.String(200), nullable=True),
            sa.Column("last_name", sa.String(200), nullable=True),
            sa.Column("email", sa.String(320), nullable=True),
            _json("phones", "'[]'::json"),
            sa.Column("company", sa.String(300), nullable=True),
            sa.Column("job_title", sa.String(200), nullable=True),
            sa.Column("lifecycle_stage", sa.String(50), nullable=True),
            sa.Column("birthdate", sa.String(10), nullable=True),
            _json("tags", "'[]'::json"),
            _json("custom_fields"),
            _created_at(),
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                server_default=sa.func.now(),
                nullable=False,
            ),
        )
        op.create_index(
            "ix_contacts_tenant_updated", "contacts", ["tenant_id", "updated_at", "id"]
        )
        op.create_index("ix_contacts_tenant_email", "contacts", ["tenant_id", "email"])


def downgrade() -> None:
    if _manage_contacts():
        op.drop_table("contacts")
    op.drop_table("crm_webhook_events")
    op.drop_table("crm_sync_failures")
    op.drop_table("crm_sync_locks")
    op.drop_table("crm_sync_logs")
    op.drop_table("crm_sync_conflicts")
    op.drop_table("crm_sync_state")
    op.drop_table("crm_field_mappings")
    op.drop_table("crm_connections")

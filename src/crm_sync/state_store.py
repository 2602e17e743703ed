"""Sync state store -- per (connection, local contact) bookkeeping plus host contact access.

SyncStateStore owns the crm_sync_state rows and the engine's view of the host
contacts table. apply_local_write() is the only path that mutates a contact:
the contact row and the SyncState row accounting for it are written in one
database transaction, so bookkeeping can never disagree with the data.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, select, tuple_
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_sync.errors import ContactNotFoundError
from src.crm_sync.field_mapping import normalize_natural_key
from src.crm_sync.models import ContactModel, SyncStateModel
from src.crm_sync.schemas import (
    CONTACT_FIELDS,
    CUSTOM_FIELD_PREFIX,
    CanonicalContact,
    NaturalKey,
    SyncStateRead,
    utcnow,
)

logger = structlog.get_logger(__name__)

StateBuilder = Callable[[CanonicalContact], SyncStateRead]


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_state(model: SyncStateModel) -> SyncStateRead:
    return SyncStateRead(
        id=str(model.id),
        connection_id=str(model.connection_id),
        local_id=str(model.local_id),
        external_id=model.external_id,
        local_marker=model.local_marker,
        remote_marker=model.remote_marker,
        last_synced_at=model.last_synced_at,
        baseline=model.baseline or {},
        open_conflict_id=str(model.open_conflict_id) if model.open_conflict_id else None,
        unlinked=model.unlinked,
    )


def _model_to_contact(model: ContactModel) -> CanonicalContact:
    fields: dict[str, Any] = {name: getattr(model, name) for name in CONTACT_FIELDS}
    fields["custom"] = dict(model.custom_fields or {})
    return CanonicalContact(
        local_id=str(model.id),
        tenant_id=str(model.tenant_id),
        fields=fields,
        updated_at=model.updated_at,
    )


def apply_values(model: ContactModel, values: dict[str, Any]) -> None:
    """Write flat canonical values onto a contact row."""
    custom = dict(model.custom_fields or {})
    for path, value in values.items():
        if path in CONTACT_FIELDS:
            if path in ("phones", "tags") and value is None:
                value = []
            setattr(model, path, value)
        elif path.startswith(CUSTOM_FIELD_PREFIX):
            custom[path[len(CUSTOM_FIELD_PREFIX):]] = value
        else:
            raise ValueError(f"Unknown contact field {path!r}")
    model.custom_fields = custom


def _state_row(state: SyncStateRead) -> dict[str, Any]:
    return {
        "connection_id": uuid.UUID(state.connection_id),
        "local_id": uuid.UUID(state.local_id),
        "external_id": state.external_id,
        "local_marker": state.local_marker,
        "remote_marker": state.remote_marker,
        "last_synced_at": state.last_synced_at,
        "baseline": state.baseline,
        "open_conflict_id": uuid.UUID(state.open_conflict_id) if state.open_conflict_id else None,
        "unlinked": state.unlinked,
    }


async def _upsert_state(session: AsyncSession, state: SyncStateRead) -> SyncStateRead:
    row = _state_row(state)
    stmt = pg_insert(SyncStateModel).values(**row)
    stmt = stmt.on_conflict_do_update(
        index_elements=[SyncStateModel.connection_id, SyncStateModel.local_id],
        set_={k: stmt.excluded[k] for k in row if k not in ("connection_id", "local_id")},
    ).returning(SyncStateModel.id)
    result = await session.execute(stmt)
    state_id = result.scalar_one()
    return state.model_copy(update={"id": str(state_id)})


# ── Store ───────────────────────────────────────────────────────────────────


class SyncStateStore:
    """Durable per-record sync bookkeeping.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── SyncState ───────────────────────────────────────────────────────────

    async def get(self, connection_id: str, local_id: str) -> SyncStateRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncStateModel).where(
                    SyncStateModel.connection_id == uuid.UUID(connection_id),
                    SyncStateModel.local_id == uuid.UUID(local_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_state(model) if model else None

    async def get_by_external_id(
        self, connection_id: str, external_id: str
    ) -> SyncStateRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncStateModel).where(
                    SyncStateModel.connection_id == uuid.UUID(connection_id),
                    SyncStateModel.external_id == external_id,
                    SyncStateModel.unlinked.is_(False),
                )
            )
            model = result.scalars().first()
            return _model_to_state(model) if model else None

    async def upsert(self, state: SyncStateRead) -> SyncStateRead:
        """Insert or update the state row for (connection_id, local_id)."""
        async for session in self._session_factory():
            saved = await _upsert_state(session, state)
            await session.commit()
            return saved

    async def mark_unlinked(self, state: SyncStateRead) -> SyncStateRead:
        """Clear the remote half of the pair after the remote record vanished.

        The row itself is kept: it must outlive nothing but the local record.
        """
        unlinked = state.model_copy(
            update={
                "external_id": None,
                "remote_marker": None,
                "baseline": {},
                "unlinked": True,
                "open_conflict_id": None,
            }
        )
        saved = await self.upsert(unlinked)
        logger.info(
            "sync_state.unlinked",
            connection_id=state.connection_id,
            local_id=state.local_id,
            external_id=state.external_id,
        )
        return saved

    # ── Host contacts ───────────────────────────────────────────────────────

    async def get_contact(self, tenant_id: str, local_id: str) -> CanonicalContact | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(ContactModel).where(
                    ContactModel.tenant_id == uuid.UUID(tenant_id),
                    ContactModel.id == uuid.UUID(local_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_contact(model) if model else None

    async def find_local_match(
        self, tenant_id: str, natural_key: NaturalKey, value: Any
    ) -> CanonicalContact | None:
        """Find an existing contact by normalized email or phone."""
        if natural_key == NaturalKey.NONE:
            return None
        normalized = normalize_natural_key(natural_key.value, value)
        if normalized is None:
            return None

        stmt = select(ContactModel).where(ContactModel.tenant_id == uuid.UUID(tenant_id))
        if natural_key == NaturalKey.EMAIL:
            stmt = stmt.where(func.lower(func.trim(ContactModel.email)) == normalized)
        else:
            stmt = stmt.where(ContactModel.phones.cast(JSONB).contains([normalized]))

        async for session in self._session_factory():
            result = await session.execute(stmt.order_by(ContactModel.created_at).limit(1))
            model = result.scalar_one_or_none()
            return _model_to_contact(model) if model else None

    async def iter_changed_contacts(
        self, tenant_id: str, since: datetime | None, batch_size: int = 100
    ) -> AsyncIterator[list[CanonicalContact]]:
        """Yield batches of contacts with updated_at >= since, oldest first.

        Keyset pagination on (updated_at, id) keeps batches stable while
        contacts are being written.
        """
        cursor: tuple[datetime, uuid.UUID] | None = None
        while True:
            stmt = select(ContactModel).where(ContactModel.tenant_id == uuid.UUID(tenant_id))
            if since is not None:
                stmt = stmt.where(ContactModel.updated_at >= since)
            if cursor is not None:
                stmt = stmt.where(tuple_(ContactModel.updated_at, ContactModel.id) > cursor)
            stmt = stmt.order_by(ContactModel.updated_at, ContactModel.id).limit(batch_size)

            async for session in self._session_factory():
                result = await session.execute(stmt)
                models = list(result.scalars().all())
            if not models:
                return
            yield [_model_to_contact(m) for m in models]
            if len(models) < batch_size:
                return
            cursor = (models[-1].updated_at, models[-1].id)

    async def apply_local_write(
        self,
        tenant_id: str,
        local_id: str | None,
        values: dict[str, Any],
        build_state: StateBuilder,
    ) -> tuple[CanonicalContact, SyncStateRead]:
        """Create or update a contact and its SyncState in one transaction.

        Args:
            tenant_id: Owning tenant.
            local_id: Contact to update, or None to create one.
            values: Flat canonical values to write.
            build_state: Builds the SyncState from the written contact (which
                carries the final local id and updated_at).

        Raises:
            ContactNotFoundError: If local_id does not exist for the tenant.
        """
        async for session in self._session_factory():
            async with session.begin():
                if local_id is None:
                    model = ContactModel(tenant_id=uuid.UUID(tenant_id), phones=[], tags=[])
                    model.id = uuid.uuid4()
                    session.add(model)
                else:
                    result = await session.execute(
                        select(ContactModel)
                        .where(
                            ContactModel.tenant_id == uuid.UUID(tenant_id),
                            ContactModel.id == uuid.UUID(local_id),
                        )
                        .with_for_update()
                    )
                    model = result.scalar_one_or_none()
                    if model is None:
                        raise ContactNotFoundError(f"Contact {local_id} not found")
                apply_values(model, values)
                model.updated_at = utcnow()
                await session.flush()

                contact = _model_to_contact(model)
                state = await _upsert_state(session, build_state(contact))
            return contact, state

"""Conflict resolution between a local and a remote contact snapshot.

resolve() is pure: it reads two flat canonical snapshots, the SyncState
baseline and the connection policy, and says which values must be written
where. It performs no I/O and does not look at the clock.

Change detection per field:
- With a baseline value for the field, a side changed iff its value differs
  from the baseline.
- Without one, a side changed iff its record-level version marker moved past
  the one stored in SyncState (or there is no SyncState at all).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.crm_sync.schemas import (
    ConflictPolicy,
    ConflictStatus,
    FieldMappingEntry,
    Side,
    SyncStateRead,
)


@dataclass(frozen=True)
class Snapshot:
    """Flat canonical values of one side plus its modification time."""

    values: dict[str, Any]
    modified_at: datetime | None = None


@dataclass(frozen=True)
class ManualValue:
    """Operator-supplied value that overrides both sides."""

    value: Any


@dataclass
class FieldConflict:
    field: str
    local_value: Any
    remote_value: Any
    local_modified_at: datetime | None
    remote_modified_at: datetime | None
    status: ConflictStatus
    resolved_value: Any = None


@dataclass
class Resolution:
    merged: dict[str, Any] = field(default_factory=dict)
    to_local: dict[str, Any] = field(default_factory=dict)
    to_remote: dict[str, Any] = field(default_factory=dict)
    conflicts: list[FieldConflict] = field(default_factory=list)

    @property
    def open_conflicts(self) -> list[FieldConflict]:
        return [c for c in self.conflicts if c.status == ConflictStatus.OPEN]

    @property
    def has_writes(self) -> bool:
        return bool(self.to_local or self.to_remote)


_ABSENT: Any = object()


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def _marker_moved(current: datetime | None, stored: datetime | None) -> bool:
    if stored is None:
        return True
    if current is None:
        return False
    return current > stored


def _policy_winner(
    policy: ConflictPolicy, local: Snapshot, remote: Snapshot
) -> Side | None:
    if policy == ConflictPolicy.LOCAL_WINS:
        return Side.LOCAL
    if policy == ConflictPolicy.REMOTE_WINS:
        return Side.REMOTE
    if policy == ConflictPolicy.NEWEST_WINS:
        # Missing remote timestamp means the remote copy is stale; ties go local
        if remote.modified_at is None:
            return Side.LOCAL
        if local.modified_at is None:
            return Side.REMOTE
        return Side.REMOTE if remote.modified_at > local.modified_at else Side.LOCAL
    return None


def resolve(
    local: Snapshot | None,
    remote: Snapshot | None,
    state: SyncStateRead | None,
    policy: ConflictPolicy,
    mappings: list[FieldMappingEntry],
    overrides: dict[str, Side | ManualValue] | None = None,
) -> Resolution:
    """Decide, field by field, which side's value survives.

    Args:
        local: Local snapshot, or None if the record only exists remotely.
        remote: Remote snapshot mapped to canonical fields, or None if the
            record only exists locally.
        state: SyncState of the pair, if any.
        policy: Connection conflict policy.
        mappings: Active mappings; their directions filter which way each
            field may travel.
        overrides: Forced winners per field (operator resolution).

    Returns:
        Resolution with the merged view, the writes needed on each side and
        every detected conflict. Fields under the manual policy are left out
        of both write sets and reported as open conflicts.
    """
    overrides = overrides or {}
    resolution = Resolution()
    baseline = state.baseline if state is not None else {}

    pulls: dict[str, bool] = {}
    pushes: dict[str, bool] = {}
    for m in mappings:
        pulls[m.local_field] = pulls.get(m.local_field, False) or m.pulls
        pushes[m.local_field] = pushes.get(m.local_field, False) or m.pushes

    local_record_moved = local is not None and (
        state is None or _marker_moved(local.modified_at, state.local_marker)
    )
    remote_record_moved = remote is not None and (
        state is None or _marker_moved(remote.modified_at, state.remote_marker)
    )

    for name in pulls:
        can_pull = pulls[name]
        can_push = pushes[name]
        lv = local.values.get(name, _ABSENT) if local is not None else _ABSENT
        rv = remote.values.get(name, _ABSENT) if remote is not None else _ABSENT
        base = baseline.get(name, _ABSENT)

        if rv is _ABSENT and base is not _ABSENT and remote is not None:
            # Field not delivered by the provider this time: treat as unchanged
            rv = base

        if lv is _ABSENT and rv is _ABSENT:
            continue

        if name in overrides:
            winner = overrides[name]
            if isinstance(winner, ManualValue):
                value = winner.value
            elif winner == Side.LOCAL:
                value = None if lv is _ABSENT else lv
            else:
                value = None if rv is _ABSENT else rv
            resolution.merged[name] = value
            if can_pull and lv is not _ABSENT and lv != value:
                resolution.to_local[name] = value
            if can_push and (rv is _ABSENT or rv != value):
                resolution.to_remote[name] = value
            continue

        if rv is _ABSENT:
            resolution.merged[name] = lv
            if base is _ABSENT and _is_empty(lv):
                # Nothing to send for a field the remote side has never held
                continue
            if can_push and (base is _ABSENT or lv != base):
                resolution.to_remote[name] = lv
            continue

        if lv is _ABSENT:
            resolution.merged[name] = rv
            if can_pull:
                resolution.to_local[name] = rv
            continue

        if lv == rv:
            resolution.merged[name] = lv
            continue

        # Direction filters: one-way fields never conflict
        if can_pull and not can_push:
            resolution.merged[name] = rv
            resolution.to_local[name] = rv
            continue
        if can_push and not can_pull:
            resolution.merged[name] = lv
            resolution.to_remote[name] = lv
            continue

        if base is _ABSENT and _is_empty(lv) != _is_empty(rv):
            # Never synced: an empty side takes the other side's value
            if _is_empty(lv):
                resolution.merged[name] = rv
                resolution.to_local[name] = rv
            else:
                resolution.merged[name] = lv
                resolution.to_remote[name] = lv
            continue

        if base is not _ABSENT:
            local_changed = lv != base
            remote_changed = rv != base
        else:
            local_changed = local_record_moved
            remote_changed = remote_record_moved

        if local_changed and not remote_changed:
            resolution.merged[name] = lv
            resolution.to_remote[name] = lv
            continue
        if remote_changed and not local_changed:
            resolution.merged[name] = rv
            resolution.to_local[name] = rv
            continue

        # Both changed to different values (or neither can be told apart)
        winner = _policy_winner(policy, local, remote)  # type: ignore[arg-type]
        if winner is None:
            if base is not _ABSENT:
                resolution.merged[name] = base
            resolution.conflicts.append(
                FieldConflict(
                    field=name,
                    local_value=lv,
                    remote_value=rv,
                    local_modified_at=local.modified_at,  # type: ignore[union-attr]
                    remote_modified_at=remote.modified_at,  # type: ignore[union-attr]
                    status=ConflictStatus.OPEN,
                )
            )
            continue

        value = lv if winner == Side.LOCAL else rv
        resolution.merged[name] = value
        if winner == Side.LOCAL:
            resolution.to_remote[name] = value
        else:
            resolution.to_local[name] = value
        resolution.conflicts.append(
            FieldConflict(
                field=name,
                local_value=lv,
                remote_value=rv,
                local_modified_at=local.modified_at,  # type: ignore[union-attr]
                remote_modified_at=remote.modified_at,  # type: ignore[union-attr]
                status=(
                    ConflictStatus.RESOLVED_LOCAL
                    if winner == Side.LOCAL
                    else ConflictStatus.RESOLVED_REMOTE
                ),
                resolved_value=value,
            )
        )

    return resolution

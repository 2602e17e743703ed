"""Tests for the pure conflict resolver.

Covers baseline and marker based change detection, each conflict policy,
direction filters on one-way mappings, operator overrides and the handling
of empty values on records that have never been synced.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.crm_sync.conflict_resolver import ManualValue, Snapshot, resolve
from src.crm_sync.schemas import (
    ConflictPolicy,
    ConflictStatus,
    FieldMappingEntry,
    MappingDirection,
    Side,
    SyncStateRead,
)

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(minutes=5)
T2 = T0 + timedelta(minutes=10)

MAPPINGS = [
    FieldMappingEntry(local_field="first_name", remote_field="firstname"),
    FieldMappingEntry(local_field="email", remote_field="email"),
    FieldMappingEntry(
        local_field="company", remote_field="company", direction=MappingDirection.PULL
    ),
    FieldMappingEntry(
        local_field="job_title", remote_field="jobtitle", direction=MappingDirection.PUSH
    ),
]


def _state(baseline: dict | None = None, local_marker=T0, remote_marker=T0) -> SyncStateRead:
    return SyncStateRead(
        connection_id="conn-1",
        local_id="local-1",
        external_id="1001",
        local_marker=local_marker,
        remote_marker=remote_marker,
        baseline=baseline or {},
    )


# ── Change detection ────────────────────────────────────────────────────────


class TestChangeDetection:
    """Tests for deciding which side moved since the last sync."""

    def test_local_change_against_baseline_is_pushed(self):
        res = resolve(
            Snapshot({"first_name": "Augusta", "email": "ada@example.com"}, T1),
            Snapshot({"first_name": "Ada", "email": "ada@example.com"}, T0),
            _state({"first_name": "Ada", "email": "ada@example.com"}),
            ConflictPolicy.MANUAL,
            MAPPINGS,
        )

        assert res.to_remote == {"first_name": "Augusta"}
        assert res.to_local == {}
        assert res.conflicts == []
        assert res.merged["first_name"] == "Augusta"

    def test_remote_change_against_baseline_is_pulled(self):
        res = resolve(
            Snapshot({"first_name": "Ada"}, T1),
            Snapshot({"first_name": "Ada B."}, T2),
            _state({"first_name": "Ada"}),
            ConflictPolicy.LOCAL_WINS,
            MAPPINGS,
        )

        assert res.to_local == {"first_name": "Ada B."}
        assert res.to_remote == {}

    def test_equal_values_need_no_write(self):
        res = resolve(
            Snapshot({"first_name": "Ada"}, T2),
            Snapshot({"first_name": "Ada"}, T2),
            _state({"first_name": "Grace"}),
            ConflictPolicy.MANUAL,
            MAPPINGS,
        )

        assert not res.has_writes
        assert res.merged == {"first_name": "Ada"}

    def test_field_missing_from_remote_payload_reads_as_baseline(self):
        """A provider response without the field does not clear it locally."""
        res = resolve(
            Snapshot({"first_name": "Ada", "email": "ada@example.com"}, T1),
            Snapshot({"first_name": "Ada"}, T1),
            _state({"first_name": "Ada", "email": "ada@example.com"}),
            ConflictPolicy.REMOTE_WINS,
            MAPPINGS,
        )

        assert not res.has_writes
        assert res.merged["email"] == "ada@example.com"

    def test_markers_decide_when_field_has_no_baseline(self):
        """Without a baseline value only the side whose marker moved counts as changed."""
        res = resolve(
            Snapshot({"first_name": "Augusta"}, T1),
            Snapshot({"first_name": "Ada"}, T0),
            _state(local_marker=T0, remote_marker=T0),
            ConflictPolicy.MANUAL,
            MAPPINGS,
        )

        assert res.to_remote == {"first_name": "Augusta"}
        assert res.conflicts == []

    def test_empty_side_takes_value_on_first_link(self):
        """Linking a sparse local contact fills it rather than clearing the remote."""
        res = resolve(
            Snapshot({"first_name": None, "email": "grace@navy.mil"}, T2),
            Snapshot({"first_name": "Grace", "email": "grace@navy.mil"}, T1),
            None,
            ConflictPolicy.LOCAL_WINS,
            MAPPINGS,
        )

        assert res.to_local == {"first_name": "Grace"}
        assert res.to_remote == {}
        assert res.conflicts == []

    def test_local_only_record_skips_empty_values(self):
        res = resolve(
            Snapshot({"first_name": "Ada", "email": None, "job_title": ""}, T1),
            None,
            None,
            ConflictPolicy.NEWEST_WINS,
            MAPPINGS,
        )

        assert res.to_remote == {"first_name": "Ada"}
        assert res.merged == {"first_name": "Ada", "email": None, "job_title": ""}

    def test_remote_only_record_is_pulled_whole(self):
        res = resolve(
            None,
            Snapshot({"first_name": "Grace", "company": "Navy"}, T1),
            None,
            ConflictPolicy.LOCAL_WINS,
            MAPPINGS,
        )

        assert res.to_local == {"first_name": "Grace", "company": "Navy"}
        assert res.to_remote == {}


# ── Policies ────────────────────────────────────────────────────────────────


class TestPolicies:
    """Tests for fields changed on both sides to different values."""

    @pytest.mark.parametrize(
        ("policy", "winner"),
        [
            (ConflictPolicy.LOCAL_WINS, Side.LOCAL),
            (ConflictPolicy.REMOTE_WINS, Side.REMOTE),
            (ConflictPolicy.NEWEST_WINS, Side.REMOTE),
        ],
    )
    def test_policy_picks_winner(self, policy, winner):
        res = resolve(
            Snapshot({"first_name": "Local"}, T1),
            Snapshot({"first_name": "Remote"}, T2),
            _state({"first_name": "Ada"}),
            policy,
            MAPPINGS,
        )

        [conflict] = res.conflicts
        if winner == Side.LOCAL:
            assert res.to_remote == {"first_name": "Local"}
            assert res.to_local == {}
            assert conflict.status == ConflictStatus.RESOLVED_LOCAL
        else:
            assert res.to_local == {"first_name": "Remote"}
            assert res.to_remote == {}
            assert conflict.status == ConflictStatus.RESOLVED_REMOTE
        assert conflict.local_value == "Local"
        assert conflict.remote_value == "Remote"
        assert res.open_conflicts == []

    def test_newest_wins_ties_go_local(self):
        res = resolve(
            Snapshot({"first_name": "Local"}, T1),
            Snapshot({"first_name": "Remote"}, T1),
            _state({"first_name": "Ada"}),
            ConflictPolicy.NEWEST_WINS,
            MAPPINGS,
        )

        assert res.to_remote == {"first_name": "Local"}

    def test_newest_wins_treats_missing_remote_timestamp_as_stale(self):
        res = resolve(
            Snapshot({"first_name": "Local"}, T0),
            Snapshot({"first_name": "Remote"}, None),
            _state({"first_name": "Ada"}),
            ConflictPolicy.NEWEST_WINS,
            MAPPINGS,
        )

        assert res.to_remote == {"first_name": "Local"}

    def test_manual_policy_leaves_conflict_open(self):
        res = resolve(
            Snapshot({"first_name": "Local", "email": "new@example.com"}, T1),
            Snapshot({"first_name": "Remote", "email": "ada@example.com"}, T2),
            _state({"first_name": "Ada", "email": "ada@example.com"}),
            ConflictPolicy.MANUAL,
            MAPPINGS,
        )

        [conflict] = res.open_conflicts
        assert conflict.field == "first_name"
        assert conflict.local_modified_at == T1
        assert conflict.remote_modified_at == T2
        assert "first_name" not in res.to_local
        assert "first_name" not in res.to_remote
        assert res.merged["first_name"] == "Ada"
        # Non-conflicting fields still flow
        assert res.to_remote == {"email": "new@example.com"}


# ── Directions ──────────────────────────────────────────────────────────────


class TestDirections:
    """Tests for one-way mappings."""

    def test_pull_only_field_never_conflicts(self):
        res = resolve(
            Snapshot({"company": "Local Co"}, T2),
            Snapshot({"company": "Remote Co"}, T1),
            _state({"company": "Old Co"}),
            ConflictPolicy.LOCAL_WINS,
            MAPPINGS,
        )

        assert res.to_local == {"company": "Remote Co"}
        assert res.to_remote == {}
        assert res.conflicts == []

    def test_push_only_field_never_conflicts(self):
        res = resolve(
            Snapshot({"job_title": "Countess"}, T1),
            Snapshot({"job_title": "Analyst"}, T2),
            _state({"job_title": "Mathematician"}),
            ConflictPolicy.REMOTE_WINS,
            MAPPINGS,
        )

        assert res.to_remote == {"job_title": "Countess"}
        assert res.to_local == {}
        assert res.conflicts == []

    def test_pull_only_field_is_not_pushed_from_local_only_record(self):
        res = resolve(
            Snapshot({"company": "Local Co"}, T1), None, None, ConflictPolicy.LOCAL_WINS, MAPPINGS
        )

        assert res.to_remote == {}


# ── Overrides ───────────────────────────────────────────────────────────────


class TestOverrides:
    """Tests for operator-forced winners."""

    def test_side_override_beats_manual_policy(self):
        res = resolve(
            Snapshot({"first_name": "Local"}, T1),
            Snapshot({"first_name": "Remote"}, T2),
            _state({"first_name": "Ada"}),
            ConflictPolicy.MANUAL,
            MAPPINGS,
            {"first_name": Side.LOCAL},
        )

        assert res.to_remote == {"first_name": "Local"}
        assert res.to_local == {}
        assert res.open_conflicts == []
        assert res.merged["first_name"] == "Local"

    def test_manual_value_is_written_to_both_sides(self):
        res = resolve(
            Snapshot({"first_name": "Local"}, T1),
            Snapshot({"first_name": "Remote"}, T2),
            _state({"first_name": "Ada"}),
            ConflictPolicy.MANUAL,
            MAPPINGS,
            {"first_name": ManualValue("Augusta Ada")},
        )

        assert res.to_local == {"first_name": "Augusta Ada"}
        assert res.to_remote == {"first_name": "Augusta Ada"}
        assert res.merged["first_name"] == "Augusta Ada"

    def test_override_respects_direction(self):
        res = resolve(
            Snapshot({"company": "Local Co"}, T1),
            Snapshot({"company": "Remote Co"}, T2),
            _state({"company": "Old Co"}),
            ConflictPolicy.MANUAL,
            MAPPINGS,
            {"company": ManualValue("Picked Co")},
        )

        assert res.to_local == {"company": "Picked Co"}
        assert res.to_remote == {}

"""Tests for SyncOrchestrator run execution.

Runs the real orchestrator against the in-memory repository, state store and
FakeCRM provider from conftest. Covers:
- Run lifecycle: lock contention, inactive connections, auth aborts,
  cooperative cancellation, the error-rate ceiling
- Delta passes: creates in both directions, natural-key matching,
  idempotent re-runs, per-record isolation, pagination, checkpoints
- Unlinking when the remote record vanishes
- Conflict policies, open conflicts and operator overrides
- Retry budgets and the failed-record queue
"""

from __future__ import annotations

from datetime import timedelta

from src.crm_sync.errors import AuthError, RateLimitError, TransientError, ValidationError
from src.crm_sync.orchestrator import RunRequest
from src.crm_sync.schemas import (
    ConflictPolicy,
    ConflictStatus,
    ConnectionStatus,
    FailureStatus,
    RunStatus,
    Side,
    SyncMode,
    TriggerKind,
    WebhookChange,
    utcnow,
)


# ── Helpers ──────────────────────────────────────────────────────────────────


async def _sync(orchestrator, new_run, connection, cancel_event=None, **request_fields):
    request = RunRequest(connection.id, **request_fields)
    run = await new_run(
        connection,
        mode=request.mode,
        trigger=request.trigger,
        target_local_id=request.local_id,
        target_external_id=request.external_id,
    )
    return await orchestrator.run(run, request, cancel_event)


async def _linked_pair(orchestrator, new_run, connection, crm, store):
    """Pull one remote contact into the host so both sides are linked."""
    record = crm.add_record(firstname="Ada", lastname="Lovelace", email="ada@example.com")
    closed = await _sync(orchestrator, new_run, connection)
    assert closed.status == RunStatus.COMPLETED
    state = await store.get_by_external_id(connection.id, record.external_id)
    assert state is not None
    return record.external_id, state.local_id


# ── Run Lifecycle ────────────────────────────────────────────────────────────


class TestRunLifecycle:
    """Tests for locking, inactive connections, aborts and cancellation."""

    async def test_lock_held_by_other_run_skips(self, orchestrator, repo, crm, make_connection, new_run):
        """A second concurrent run for the connection closes as skipped."""
        conn = await make_connection()
        repo.locks[conn.id] = ("other-run", utcnow() + timedelta(minutes=5))

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.status == RunStatus.SKIPPED
        assert closed.abort_reason == "run_in_progress"
        assert crm.fetch_calls == []
        assert repo.locks[conn.id][0] == "other-run"

    async def test_expired_lock_is_taken_over(self, orchestrator, repo, make_connection, new_run):
        """A lease left behind by a crashed run does not wedge the connection."""
        conn = await make_connection()
        repo.locks[conn.id] = ("crashed-run", utcnow() - timedelta(minutes=1))

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.status == RunStatus.COMPLETED
        assert conn.id not in repo.locks

    async def test_paused_connection_is_skipped(self, orchestrator, repo, crm, make_connection, new_run):
        """Runs against a paused connection do nothing and release the lock."""
        conn = await make_connection()
        await repo.update_connection(conn.id, status=ConnectionStatus.PAUSED)

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.status == RunStatus.SKIPPED
        assert closed.abort_reason == "connection_paused"
        assert crm.fetch_calls == []
        assert conn.id not in repo.locks

    async def test_auth_error_aborts_and_flags_connection(
        self, orchestrator, repo, crm, store, make_connection, new_run
    ):
        """A rejected credential aborts the run and moves the connection to error."""
        conn = await make_connection()
        store.add_contact(first_name="Ada", email="ada@example.com")
        crm.auth_error = AuthError("token revoked", provider="hubspot", status_code=401)

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.status == RunStatus.ABORTED
        assert closed.abort_reason == "auth: token revoked"
        assert crm.upserts == []
        updated = repo.connections[conn.id]
        assert updated.status == ConnectionStatus.ERROR
        assert updated.last_error == "token revoked"
        assert conn.id not in repo.locks

    async def test_cancellation_stops_between_records(
        self, orchestrator, repo, crm, store, make_connection, new_run, cancel_event
    ):
        """Setting the cancel event stops the run before the next record."""
        conn = await make_connection()
        for i in range(3):
            store.add_contact(first_name=f"Contact {i}", email=f"c{i}@example.com")
        crm.on_upsert = lambda _record: cancel_event.set()

        closed = await _sync(orchestrator, new_run, conn, cancel_event=cancel_event)

        assert closed.status == RunStatus.CANCELLED
        assert closed.counts.scanned == 1
        assert closed.counts.upserted_remote == 1
        assert repo.connections[conn.id].local_checkpoint is None

    async def test_error_rate_ceiling_aborts_run(
        self, orchestrator, repo, crm, store, settings, make_connection, new_run
    ):
        """Once enough records have been seen, a high failure rate aborts the run."""
        settings.RUN_ERROR_RATE_MIN_SAMPLE = 4
        conn = await make_connection()
        for i in range(6):
            contact = store.add_contact(first_name=f"Contact {i}", email=f"c{i}@example.com")
            crm.upsert_errors[contact.local_id] = ValidationError("rejected", provider="hubspot")

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.status == RunStatus.ABORTED
        assert closed.abort_reason.startswith("error_rate_exceeded")
        assert closed.counts.scanned == 4
        assert closed.counts.failed == 4
        assert repo.connections[conn.id].local_checkpoint is None

    async def test_connection_ceiling_overrides_default(
        self, orchestrator, crm, store, settings, make_connection, new_run
    ):
        """A per-connection ceiling of 1.0 tolerates a run where everything fails."""
        settings.RUN_ERROR_RATE_MIN_SAMPLE = 2
        conn = await make_connection(error_rate_ceiling=1.0)
        for i in range(3):
            contact = store.add_contact(first_name=f"Contact {i}", email=f"c{i}@example.com")
            crm.upsert_errors[contact.local_id] = ValidationError("rejected", provider="hubspot")

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.status == RunStatus.COMPLETED
        assert closed.counts.failed == 3


# ── Delta Sync ───────────────────────────────────────────────────────────────


class TestDeltaSync:
    """Tests for record flow during full and delta passes."""

    async def test_local_only_contact_is_created_remotely(
        self, orchestrator, repo, crm, store, make_connection, new_run
    ):
        """A contact with no remote counterpart is created and linked."""
        conn = await make_connection()
        contact = store.add_contact(
            first_name="Ada", last_name="Lovelace", email="Ada@Example.com"
        )

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.status == RunStatus.COMPLETED
        assert closed.counts.upserted_remote == 1
        state = store.state_for(conn.id, contact.local_id)
        assert state is not None and state.linked
        assert crm.records[state.external_id].fields == {
            "firstname": "Ada",
            "lastname": "Lovelace",
            "email": "ada@example.com",
        }
        updated = repo.connections[conn.id]
        assert updated.local_checkpoint == contact.updated_at
        assert updated.last_sync_at is not None
        assert updated.last_error is None

    async def test_second_run_without_changes_writes_nothing(
        self, orchestrator, crm, store, make_connection, new_run
    ):
        """Re-running over unchanged data produces no writes on either side."""
        conn = await make_connection()
        contact = store.add_contact(first_name="Ada", last_name="Lovelace", email="ada@example.com")
        await _sync(orchestrator, new_run, conn)
        upserts = len(crm.upserts)
        state_before = store.state_for(conn.id, contact.local_id)

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.status == RunStatus.COMPLETED
        assert closed.counts.upserted_local == 0
        assert closed.counts.upserted_remote == 0
        assert len(crm.upserts) == upserts
        assert store.local_writes == 0
        assert store.state_for(conn.id, contact.local_id) == state_before

    async def test_failing_record_is_isolated(
        self, orchestrator, crm, store, make_connection, new_run
    ):
        """One rejected record out of ten is logged; the other nine are written."""
        conn = await make_connection()
        contacts = [
            store.add_contact(first_name=f"Contact {i}", email=f"c{i}@example.com")
            for i in range(10)
        ]
        bad = contacts[4]
        crm.upsert_errors[bad.local_id] = ValidationError(
            "Property email is invalid", provider="hubspot", status_code=400
        )

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.status == RunStatus.COMPLETED
        assert closed.counts.scanned == 10
        assert closed.counts.upserted_remote == 9
        assert closed.counts.failed == 1
        assert len(closed.errors) == 1
        assert closed.errors[0].kind == "validation"
        assert closed.errors[0].local_id == bad.local_id
        assert store.state_for(conn.id, bad.local_id) is None

    async def test_new_remote_record_creates_local_contact(
        self, orchestrator, crm, store, make_connection, new_run
    ):
        """A remote-only contact is pulled into the host and linked."""
        conn = await make_connection()
        record = crm.add_record(firstname="Grace", lastname="Hopper", email="GRACE@navy.mil")

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.counts.upserted_local == 1
        assert closed.counts.upserted_remote == 0
        state = await store.get_by_external_id(conn.id, record.external_id)
        assert state is not None
        assert store.value(state.local_id, "first_name") == "Grace"
        assert store.value(state.local_id, "email") == "grace@navy.mil"
        assert state.remote_marker == record.modified_at

    async def test_remote_record_matched_by_email(
        self, orchestrator, crm, store, make_connection, new_run
    ):
        """An unlinked local contact with the same email is linked, not duplicated."""
        conn = await make_connection()
        contact = store.add_contact(email="Grace@Navy.mil")
        record = crm.add_record(firstname="Grace", email="grace@navy.mil")

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.status == RunStatus.COMPLETED
        assert len(store.contacts) == 1
        state = store.state_for(conn.id, contact.local_id)
        assert state is not None
        assert state.external_id == record.external_id
        assert store.value(contact.local_id, "first_name") == "Grace"

    async def test_match_linked_elsewhere_creates_new_contact(
        self, orchestrator, crm, store, make_connection, new_run
    ):
        """A natural-key match already linked to another record is not reused."""
        conn = await make_connection()
        crm.add_record(firstname="Ada", email="ada@example.com")
        await _sync(orchestrator, new_run, conn)
        duplicate = crm.add_record(firstname="Ada Twin", email="ada@example.com")

        await _sync(orchestrator, new_run, conn)

        assert len(store.contacts) == 2
        state = await store.get_by_external_id(conn.id, duplicate.external_id)
        assert store.value(state.local_id, "first_name") == "Ada Twin"

    async def test_local_edit_after_remote_checkpoint_is_pushed(
        self, orchestrator, crm, store, make_connection, new_run
    ):
        """A local edit made after the last pull reaches the provider.

        The remote record is refetched at the checkpoint (inclusive) and the
        local side is the only one that moved.
        """
        conn = await make_connection()
        external_id, local_id = await _linked_pair(orchestrator, new_run, conn, crm, store)
        remote_marker = crm.records[external_id].modified_at
        edited = store.touch(local_id, job_title="Countess")

        closed = await _sync(orchestrator, new_run, conn)

        assert crm.fetch_calls[-1] == remote_marker
        assert closed.counts.upserted_remote == 1
        assert closed.counts.upserted_local == 0
        assert crm.records[external_id].fields["jobtitle"] == "Countess"
        state = store.state_for(conn.id, local_id)
        assert state.local_marker == edited.updated_at
        assert state.remote_marker == crm.records[external_id].modified_at
        assert state.baseline["job_title"] == "Countess"

    async def test_remote_edit_is_pulled(self, orchestrator, crm, store, make_connection, new_run):
        """A field changed only remotely is written to the host contact."""
        conn = await make_connection()
        external_id, local_id = await _linked_pair(orchestrator, new_run, conn, crm, store)
        crm.modify(external_id, lastname="King")

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.counts.upserted_local == 1
        assert closed.counts.upserted_remote == 0
        assert store.value(local_id, "last_name") == "King"

    async def test_invalid_remote_field_is_skipped_not_the_record(
        self, orchestrator, crm, store, make_connection, new_run
    ):
        """A value that cannot be mapped is logged; the rest of the record syncs."""
        conn = await make_connection()
        external_id, local_id = await _linked_pair(orchestrator, new_run, conn, crm, store)
        crm.modify(external_id, lastname="King", lifecyclestage="evangelist")

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.status == RunStatus.COMPLETED
        assert store.value(local_id, "last_name") == "King"
        assert store.value(local_id, "lifecycle_stage") is None
        assert [e.field for e in closed.errors] == ["lifecycle_stage"]

    async def test_all_pages_are_fetched(self, orchestrator, crm, store, make_connection, new_run):
        """Pagination is followed until the provider reports no next page."""
        conn = await make_connection()
        crm.page_size = 2
        for i in range(5):
            crm.add_record(firstname=f"Contact {i}", email=f"c{i}@example.com")

        closed = await _sync(orchestrator, new_run, conn)

        assert len(crm.fetch_calls) == 3
        assert closed.counts.upserted_local == 5
        assert len(store.contacts) == 5

    async def test_checkpoints_advance_and_full_sync_ignores_them(
        self, orchestrator, repo, crm, store, make_connection, new_run
    ):
        """Delta runs resume from the stored checkpoints; full runs start over."""
        conn = await make_connection()
        record = crm.add_record(firstname="Ada", email="ada@example.com")
        await _sync(orchestrator, new_run, conn)
        assert repo.connections[conn.id].remote_checkpoint == record.modified_at

        await _sync(orchestrator, new_run, conn)
        assert crm.fetch_calls[-1] == record.modified_at

        await _sync(orchestrator, new_run, conn, mode=SyncMode.FULL)
        assert crm.fetch_calls[-1] is None

    async def test_deleted_webhook_event_unlinks(
        self, orchestrator, repo, crm, store, make_connection, new_run
    ):
        """A queued deletion event unlinks the pair and is marked processed."""
        conn = await make_connection()
        external_id, local_id = await _linked_pair(orchestrator, new_run, conn, crm, store)
        del crm.records[external_id]
        await repo.enqueue_webhook_events(
            conn.id, [WebhookChange(external_id=external_id, event="deleted")]
        )

        await _sync(orchestrator, new_run, conn)

        state = store.state_for(conn.id, local_id)
        assert state.unlinked
        assert state.external_id is None
        assert await repo.list_pending_webhook_events(conn.id, 10) == []

    async def test_updated_webhook_event_fetches_record(
        self, orchestrator, repo, crm, store, make_connection, new_run
    ):
        """An update event for a record outside the delta window is fetched and synced."""
        conn = await make_connection()
        external_id, local_id = await _linked_pair(orchestrator, new_run, conn, crm, store)
        # Provider-side change stamped before the stored checkpoint
        record = crm.records[external_id]
        crm.records[external_id] = record.model_copy(
            update={
                "fields": {**record.fields, "lastname": "Byron"},
                "modified_at": record.modified_at - timedelta(seconds=30),
            }
        )
        await repo.enqueue_webhook_events(conn.id, [WebhookChange(external_id=external_id)])

        closed = await _sync(orchestrator, new_run, conn)

        assert store.value(local_id, "last_name") == "Byron"
        assert closed.counts.upserted_local == 1
        assert await repo.list_pending_webhook_events(conn.id, 10) == []


# ── Unlinking ────────────────────────────────────────────────────────────────


class TestUnlink:
    """Tests for pairs whose remote record has been deleted."""

    async def test_vanished_remote_record_unlinks_state(
        self, orchestrator, crm, store, make_connection, new_run
    ):
        """A single-record sync that finds the remote gone unlinks the pair."""
        conn = await make_connection()
        contact = store.add_contact(first_name="Ada", email="ada@example.com")
        await _sync(orchestrator, new_run, conn)
        external_id = store.state_for(conn.id, contact.local_id).external_id
        del crm.records[external_id]

        closed = await _sync(
            orchestrator, new_run, conn, mode=SyncMode.SINGLE, local_id=contact.local_id
        )

        assert closed.status == RunStatus.COMPLETED
        assert closed.counts.skipped == 1
        assert closed.errors[0].kind == "not_found"
        state = store.state_for(conn.id, contact.local_id)
        assert state.unlinked
        assert state.external_id is None
        assert contact.local_id in store.contacts

    async def test_unlinked_contact_is_not_recreated(
        self, orchestrator, crm, store, make_connection, new_run
    ):
        """Later local edits on an unlinked contact are not pushed implicitly."""
        conn = await make_connection()
        contact = store.add_contact(first_name="Ada", email="ada@example.com")
        await _sync(orchestrator, new_run, conn)
        external_id = store.state_for(conn.id, contact.local_id).external_id
        del crm.records[external_id]
        await _sync(orchestrator, new_run, conn, mode=SyncMode.SINGLE, local_id=contact.local_id)
        upserts = len(crm.upserts)
        store.touch(contact.local_id, first_name="Ada L.")

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.status == RunStatus.COMPLETED
        assert len(crm.upserts) == upserts
        assert crm.records == {}


# ── Conflicts ────────────────────────────────────────────────────────────────


class TestConflicts:
    """Tests for fields modified on both sides since the last sync."""

    async def test_newest_wins_pushes_later_local_edit(
        self, orchestrator, repo, crm, store, make_connection, new_run
    ):
        """Under newest_wins the later edit survives on both sides."""
        conn = await make_connection(conflict_policy=ConflictPolicy.NEWEST_WINS)
        external_id, local_id = await _linked_pair(orchestrator, new_run, conn, crm, store)
        crm.modify(external_id, firstname="Remote Ada")
        store.touch(local_id, first_name="Local Ada")

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.counts.conflicts == 1
        assert crm.records[external_id].fields["firstname"] == "Local Ada"
        assert store.value(local_id, "first_name") == "Local Ada"
        assert await repo.count_open_conflicts(conn.id) == 0

    async def test_remote_wins_overwrites_local_edit(
        self, orchestrator, crm, store, make_connection, new_run
    ):
        conn = await make_connection(conflict_policy=ConflictPolicy.REMOTE_WINS)
        external_id, local_id = await _linked_pair(orchestrator, new_run, conn, crm, store)
        store.touch(local_id, first_name="Local Ada")
        crm.modify(external_id, firstname="Remote Ada")

        await _sync(orchestrator, new_run, conn)

        assert store.value(local_id, "first_name") == "Remote Ada"
        assert crm.records[external_id].fields["firstname"] == "Remote Ada"

    async def test_manual_policy_opens_conflict_and_override_resolves_it(
        self, orchestrator, repo, crm, store, make_connection, new_run
    ):
        """Manual conflicts stay open until an operator picks a side."""
        conn = await make_connection(conflict_policy=ConflictPolicy.MANUAL)
        external_id, local_id = await _linked_pair(orchestrator, new_run, conn, crm, store)
        store.touch(local_id, first_name="Augusta")
        crm.modify(external_id, firstname="Ada B.")

        closed = await _sync(orchestrator, new_run, conn)

        assert closed.counts.conflicts == 1
        [conflict] = await repo.list_conflicts(conn.id, status=ConflictStatus.OPEN)
        assert conflict.field == "first_name"
        assert conflict.local_value == "Augusta"
        assert conflict.remote_value == "Ada B."
        assert store.value(local_id, "first_name") == "Augusta"
        assert crm.records[external_id].fields["firstname"] == "Ada B."
        assert store.state_for(conn.id, local_id).open_conflict_id == conflict.id

        await _sync(
            orchestrator,
            new_run,
            conn,
            mode=SyncMode.SINGLE,
            local_id=local_id,
            overrides={"first_name": Side.REMOTE},
        )

        resolved = repo.conflicts[conflict.id]
        assert resolved.status == ConflictStatus.RESOLVED_MANUAL
        assert resolved.resolved_value == "Ada B."
        assert store.value(local_id, "first_name") == "Ada B."
        assert store.state_for(conn.id, local_id).open_conflict_id is None

    async def test_open_conflict_is_refreshed_not_duplicated(
        self, orchestrator, repo, crm, store, make_connection, new_run
    ):
        conn = await make_connection(conflict_policy=ConflictPolicy.MANUAL)
        external_id, local_id = await _linked_pair(orchestrator, new_run, conn, crm, store)
        store.touch(local_id, first_name="Augusta")
        crm.modify(external_id, firstname="Ada B.")
        await _sync(orchestrator, new_run, conn)
        crm.modify(external_id, firstname="Ada C.")

        await _sync(orchestrator, new_run, conn)

        [conflict] = await repo.list_conflicts(conn.id, status=ConflictStatus.OPEN)
        assert conflict.remote_value == "Ada C."


# ── Retries ──────────────────────────────────────────────────────────────────


class TestRetries:
    """Tests for per-record retry budgets and the failed-record queue."""

    async def test_transient_failure_queued_then_cleared_by_retry_run(
        self, orchestrator, repo, crm, store, make_connection, new_run
    ):
        """A record that exhausts its attempts is queued and picked up by a retry run."""
        conn = await make_connection()
        contact = store.add_contact(first_name="Ada", email="ada@example.com")
        crm.upsert_errors[contact.local_id] = TransientError("HTTP 503", provider="hubspot")

        first = await _sync(orchestrator, new_run, conn)

        assert first.status == RunStatus.COMPLETED
        assert first.counts.failed == 1
        assert first.errors[0].kind == "transient"
        assert crm.upsert_attempts == 3
        [failure] = await repo.list_pending_failures(conn.id)
        assert failure.local_id == contact.local_id
        assert failure.status == FailureStatus.PENDING

        del crm.upsert_errors[contact.local_id]
        second = await _sync(orchestrator, new_run, conn, trigger=TriggerKind.RETRY)

        assert second.status == RunStatus.COMPLETED
        assert second.counts.upserted_remote == 1
        assert await repo.count_pending_failures(conn.id) == 0
        assert store.state_for(conn.id, contact.local_id).linked

    async def test_rate_limit_retries_have_their_own_budget(
        self, orchestrator, crm, store, settings, make_connection, new_run
    ):
        """Provider 429s are retried up to the rate-limit ceiling, not the record ceiling."""
        conn = await make_connection()
        contact = store.add_contact(first_name="Ada", email="ada@example.com")
        crm.upsert_errors[contact.local_id] = RateLimitError(
            "Too many requests", retry_after=0.0, provider="hubspot", status_code=429
        )

        closed = await _sync(orchestrator, new_run, conn)

        assert crm.upsert_attempts == settings.RATE_LIMIT_MAX_RETRIES + 1
        assert closed.counts.failed == 1
        assert closed.errors[0].kind == "rate_limit"

    async def test_single_record_sync_by_external_id(
        self, orchestrator, crm, store, make_connection, new_run
    ):
        conn = await make_connection()
        record = crm.add_record(firstname="Grace", email="grace@navy.mil")
        crm.add_record(firstname="Other", email="other@example.com")

        closed = await _sync(
            orchestrator, new_run, conn, mode=SyncMode.SINGLE, external_id=record.external_id
        )

        assert closed.counts.scanned == 1
        assert closed.counts.upserted_local == 1
        assert len(store.contacts) == 1
        assert crm.fetch_calls == []

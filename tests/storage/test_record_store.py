"""Tests for the SQLite record store."""

import sqlite3
import threading
from datetime import timedelta

import pytest

from cvplus_rollout.exceptions import AlreadyInProgressError, StorageError
from cvplus_rollout.models import (
    CommandType,
    RiskTier,
    RollbackEvent,
    RollbackOutcome,
    RollbackScope,
    RolloutRecord,
    RolloutRun,
    RolloutState,
    TransitionReason,
    utcnow,
)
from cvplus_rollout.storage.record_store import RecordStore
from cvplus_rollout.storage.sqlite_client import resolve_db_path, sqlite_connection
from fixtures import snapshot


def _run(store, service_id="cv-analyzer"):
    return store.create_run(RolloutRun(service_id=service_id, tier=RiskTier.LOW, milestones=[10, 100]))


def _record(run, from_state, to_state, reason, milestone=10, **kwargs):
    return RolloutRecord(
        run_id=run.run_id,
        service_id=run.service_id,
        from_state=from_state,
        to_state=to_state,
        milestone=milestone,
        reason=reason,
        **kwargs,
    )


# ============================================================
# SCHEMA
# ============================================================


def test_schema_is_idempotent(db_path):
    RecordStore(db_path)
    store = RecordStore(db_path)

    assert store.list_runs() == []


def test_archived_at_column_added_to_old_database(db_path):
    conn = sqlite3.connect(db_path)
    conn.execute(
        """
        CREATE TABLE rollout_runs (
            run_id TEXT PRIMARY KEY,
            service_id TEXT NOT NULL,
            tier TEXT NOT NULL,
            milestones TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            final_state TEXT
        )
        """
    )
    conn.commit()
    conn.close()

    RecordStore(db_path)

    with sqlite_connection(db_path) as conn:
        cols = {row["name"] for row in conn.execute("PRAGMA table_info(rollout_runs);")}
    assert "archived_at" in cols


def test_memory_database_is_rejected():
    with pytest.raises(StorageError):
        RecordStore(":memory:")


def test_resolve_db_path_prefers_env(monkeypatch, tmp_path):
    target = tmp_path / "nested" / "env.db"
    monkeypatch.setenv("ROLLOUT_SQLITE_PATH", str(target))

    resolved = resolve_db_path()

    assert resolved == target.resolve()
    assert resolved.parent.exists()


# ============================================================
# RUNS AND RECORDS
# ============================================================


def test_append_assigns_increasing_seq(store):
    run = _run(store)

    first = store.append(
        _record(run, RolloutState.PENDING, RolloutState.ADVANCING, TransitionReason.STARTED,
                snapshot=snapshot(run.service_id))
    )
    second = store.append(
        _record(run, RolloutState.ADVANCING, RolloutState.HOLDING, TransitionReason.TRAFFIC_SET)
    )

    assert (first.seq, second.seq) == (1, 2)
    stored = store.records_for_run(run.run_id)
    assert [r.seq for r in stored] == [1, 2]
    assert stored[0].snapshot == first.snapshot


def test_append_to_unknown_run_fails(store):
    orphan = RolloutRun(service_id="cv-analyzer", tier=RiskTier.LOW, milestones=[100])

    with pytest.raises(StorageError):
        store.append(
            _record(orphan, RolloutState.PENDING, RolloutState.ADVANCING, TransitionReason.STARTED)
        )


def test_terminal_record_closes_run(store):
    run = _run(store)
    store.append(_record(run, RolloutState.PENDING, RolloutState.ROLLED_BACK, TransitionReason.CANCELLED))

    stored = store.get_run(run.run_id)

    assert stored.final_state == RolloutState.ROLLED_BACK
    assert stored.finished_at is not None
    assert store.in_flight_runs() == []


def test_in_flight_and_latest_runs(store):
    finished = _run(store)
    store.append(
        _record(finished, RolloutState.PENDING, RolloutState.ROLLED_BACK, TransitionReason.CANCELLED)
    )
    pending = _run(store)

    assert [r.run_id for r in store.in_flight_runs()] == [pending.run_id]
    assert store.latest_run("cv-analyzer").run_id == pending.run_id
    assert store.latest_run("unknown") is None


def test_second_unfinished_run_is_rejected(db_path):
    store = RecordStore(db_path)
    other_process = RecordStore(db_path)
    first = _run(store)

    with pytest.raises(AlreadyInProgressError) as exc_info:
        _run(other_process)
    assert exc_info.value.service_id == "cv-analyzer"

    store.append(
        _record(first, RolloutState.PENDING, RolloutState.ROLLED_BACK, TransitionReason.CANCELLED)
    )
    second = _run(other_process)

    assert [r.run_id for r in store.in_flight_runs()] == [second.run_id]
    assert _run(store, "cache-manager").service_id == "cache-manager"


def test_concurrent_appends_keep_sequence_unique(store):
    runs = [_run(store, f"service-{i}") for i in range(4)]
    same_service_run = runs[0]
    errors = []

    def append_many(run):
        try:
            for _ in range(10):
                store.append(
                    _record(run, RolloutState.HOLDING, RolloutState.ADVANCING, TransitionReason.HOLD_PASSED)
                )
        except Exception as e:  # pragma: no cover - surfaced by the assertion below
            errors.append(e)

    threads = [threading.Thread(target=append_many, args=(run,)) for run in runs]
    threads.append(threading.Thread(target=append_many, args=(same_service_run,)))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert [r.seq for r in store.records_for_run(same_service_run.run_id)] == list(range(1, 21))
    assert len(store.records_for_run(runs[1].run_id)) == 10


def test_archive_skips_in_flight_runs(store):
    finished = _run(store)
    store.append(
        _record(finished, RolloutState.PENDING, RolloutState.ROLLED_BACK, TransitionReason.CANCELLED)
    )
    in_flight = _run(store)

    assert store.archive("cv-analyzer") == 1
    assert [r.run_id for r in store.list_runs("cv-analyzer")] == [in_flight.run_id]
    assert len(store.list_runs("cv-analyzer", include_archived=True)) == 2
    assert store.archive("cv-analyzer") == 0


# ============================================================
# ROLLBACK EVENTS AND COMMANDS
# ============================================================


def test_rollback_events_filter_by_service_and_time(store):
    event = store.record_rollback(
        RollbackEvent(
            service_id="cv-analyzer",
            reason="ERROR_RATE",
            scope=RollbackScope.SERVICE,
            outcome=RollbackOutcome.FAILURE,
            error="boom",
        )
    )
    store.record_rollback(
        RollbackEvent(
            service_id="cache-manager",
            reason="incident",
            scope=RollbackScope.GLOBAL,
            outcome=RollbackOutcome.SUCCESS,
        )
    )

    assert store.rollback_events("cv-analyzer") == [event]
    assert len(store.rollback_events()) == 2
    assert store.rollback_events(since=utcnow() + timedelta(minutes=1)) == []


def test_commands_are_taken_once_in_order(store):
    store.enqueue_command("cv-analyzer", CommandType.APPROVE)
    store.enqueue_command("cv-analyzer", CommandType.CANCEL)
    store.enqueue_command("cache-manager", CommandType.CANCEL)

    taken = store.take_commands("cv-analyzer")

    assert [c.command for c in taken] == [CommandType.APPROVE, CommandType.CANCEL]
    assert store.take_commands("cv-analyzer") == []
    assert len(store.take_commands("cache-manager")) == 1

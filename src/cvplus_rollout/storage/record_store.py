"""SQLite-backed append-only store for rollout runs, records and rollback events."""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime
from typing import Dict, List, Optional

from cvplus_rollout.exceptions import AlreadyInProgressError, StorageError
from cvplus_rollout.logging_config import get_structured_logger
from cvplus_rollout.models import (
    CommandType,
    RollbackEvent,
    RolloutCommand,
    RolloutRecord,
    RolloutRun,
    utcnow,
)
from cvplus_rollout.storage.sqlite_client import sqlite_connection

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS rollout_runs (
    run_id TEXT PRIMARY KEY,
    service_id TEXT NOT NULL,
    tier TEXT NOT NULL,
    milestones TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    final_state TEXT
);

CREATE INDEX IF NOT EXISTS idx_rollout_runs_service
ON rollout_runs(service_id, started_at);

CREATE UNIQUE INDEX IF NOT EXISTS idx_rollout_runs_unfinished
ON rollout_runs(service_id) WHERE final_state IS NULL;

CREATE TABLE IF NOT EXISTS rollout_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES rollout_runs(run_id),
    service_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    from_state TEXT NOT NULL,
    to_state TEXT NOT NULL,
    milestone INTEGER,
    reason TEXT NOT NULL,
    snapshot TEXT,
    detail TEXT,
    UNIQUE(run_id, seq)
);

CREATE TABLE IF NOT EXISTS rollback_events (
    event_id TEXT PRIMARY KEY,
    service_id TEXT NOT NULL,
    reason TEXT NOT NULL,
    scope TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    outcome TEXT NOT NULL,
    error TEXT
);

CREATE TABLE IF NOT EXISTS rollout_commands (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_id TEXT NOT NULL,
    command TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


class RecordStore:
    """Persist rollout history so a restarted controller can find in-flight runs.

    Records are append-only. Appends for one service are serialized by a
    per-service lock; unrelated services never contend.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.slogger = get_structured_logger(__name__)
        self._ensure_schema()

    # ------------------------------------------------------------------ #
    # Schema helpers
    # ------------------------------------------------------------------ #

    def _ensure_schema(self) -> None:
        """Idempotent schema guard, safe to run on every process start.

        Older databases created before archiving existed get the nullable
        ``archived_at`` column added in place.
        """
        try:
            with sqlite_connection(self.db_path) as conn:
                conn.executescript(SCHEMA)
                cols = {row["name"] for row in conn.execute("PRAGMA table_info(rollout_runs);")}
                if "archived_at" not in cols:
                    conn.execute("ALTER TABLE rollout_runs ADD COLUMN archived_at TEXT;")
        except sqlite3.Error as e:
            raise StorageError(f"Failed to initialize rollout schema: {e}") from e

    def _lock_for(self, service_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(service_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[service_id] = lock
            return lock

    # ------------------------------------------------------------------ #
    # Runs
    # ------------------------------------------------------------------ #

    def create_run(self, run: RolloutRun) -> RolloutRun:
        """
        Insert a new run.

        At most one unfinished run may exist per service; the unique index on
        unfinished runs enforces it across processes sharing the database.

        Raises:
            AlreadyInProgressError: If the service already has an unfinished run
            StorageError: If the insert fails for any other reason
        """
        row = run.to_row()
        try:
            with sqlite_connection(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO rollout_runs (
                        run_id, service_id, tier, milestones, started_at,
                        finished_at, final_state, archived_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        row["run_id"],
                        row["service_id"],
                        row["tier"],
                        row["milestones"],
                        row["started_at"],
                        row["finished_at"],
                        row["final_state"],
                        row["archived_at"],
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise AlreadyInProgressError(
                run.service_id,
                f"'{run.service_id}' already has an unfinished run; resume it first",
            ) from e
        except sqlite3.Error as e:
            raise StorageError(f"Failed to create run for {run.service_id}: {e}") from e
        return run

    def get_run(self, run_id: str) -> Optional[RolloutRun]:
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM rollout_runs WHERE run_id = ?", (run_id,)).fetchone()
        return RolloutRun.from_row(dict(row)) if row else None

    def latest_run(self, service_id: str, include_archived: bool = False) -> Optional[RolloutRun]:
        runs = self.list_runs(service_id, include_archived=include_archived, limit=1)
        return runs[0] if runs else None

    def list_runs(
        self,
        service_id: Optional[str] = None,
        include_archived: bool = False,
        limit: Optional[int] = None,
    ) -> List[RolloutRun]:
        """Runs newest first, optionally scoped to one service."""
        query = "SELECT * FROM rollout_runs WHERE 1=1"
        params: list = []
        if service_id:
            query += " AND service_id = ?"
            params.append(service_id)
        if not include_archived:
            query += " AND archived_at IS NULL"
        query += " ORDER BY started_at DESC, rowid DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [RolloutRun.from_row(dict(row)) for row in rows]

    def in_flight_runs(self) -> List[RolloutRun]:
        """Runs that never reached a terminal record."""
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM rollout_runs
                WHERE final_state IS NULL AND archived_at IS NULL
                ORDER BY started_at
                """
            ).fetchall()
        return [RolloutRun.from_row(dict(row)) for row in rows]

    def archive(self, service_id: str) -> int:
        """
        Archive the finished runs of a service.

        In-flight runs are never archived; they stay visible to resume and to
        global rollback.

        Returns:
            Number of runs archived
        """
        with self._lock_for(service_id):
            with sqlite_connection(self.db_path) as conn:
                cursor = conn.execute(
                    """
                    UPDATE rollout_runs SET archived_at = ?
                    WHERE service_id = ? AND archived_at IS NULL AND final_state IS NOT NULL
                    """,
                    (utcnow().isoformat(), service_id),
                )
                count = cursor.rowcount

        self.slogger.database_activity(
            "archive", "rollout_runs", "success", {"serviceId": service_id, "runs": count}
        )
        return count

    # ------------------------------------------------------------------ #
    # Records
    # ------------------------------------------------------------------ #

    def append(self, record: RolloutRecord) -> RolloutRecord:
        """
        Append a transition record, assigning the next sequence number.

        A record whose ``to_state`` is terminal also closes the run header.

        Returns:
            The stored record with its ``seq`` set

        Raises:
            StorageError: If the run does not exist or the write fails
        """
        with self._lock_for(record.service_id):
            try:
                with sqlite_connection(self.db_path) as conn:
                    run = conn.execute(
                        "SELECT run_id FROM rollout_runs WHERE run_id = ?", (record.run_id,)
                    ).fetchone()
                    if run is None:
                        raise StorageError(f"Unknown run {record.run_id}")

                    current = conn.execute(
                        "SELECT COALESCE(MAX(seq), 0) AS seq FROM rollout_records WHERE run_id = ?",
                        (record.run_id,),
                    ).fetchone()
                    stored = record.model_copy(update={"seq": current["seq"] + 1})
                    row = stored.to_row()
                    conn.execute(
                        """
                        INSERT INTO rollout_records (
                            run_id, service_id, seq, timestamp, from_state, to_state,
                            milestone, reason, snapshot, detail
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            row["run_id"],
                            row["service_id"],
                            row["seq"],
                            row["timestamp"],
                            row["from_state"],
                            row["to_state"],
                            row["milestone"],
                            row["reason"],
                            row["snapshot"],
                            row["detail"],
                        ),
                    )
                    if stored.to_state.is_terminal:
                        conn.execute(
                            """
                            UPDATE rollout_runs SET finished_at = ?, final_state = ?
                            WHERE run_id = ?
                            """,
                            (row["timestamp"], row["to_state"], row["run_id"]),
                        )
            except sqlite3.Error as e:
                raise StorageError(f"Failed to append record for {record.service_id}: {e}") from e

        logger.debug(
            "Appended record %s #%d %s -> %s",
            stored.run_id,
            stored.seq,
            stored.from_state.value,
            stored.to_state.value,
        )
        return stored

    def records_for_run(self, run_id: str) -> List[RolloutRecord]:
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM rollout_records WHERE run_id = ? ORDER BY seq", (run_id,)
            ).fetchall()
        return [RolloutRecord.from_row(dict(row)) for row in rows]

    # ------------------------------------------------------------------ #
    # Rollback events
    # ------------------------------------------------------------------ #

    def record_rollback(self, event: RollbackEvent) -> RollbackEvent:
        row = event.to_row()
        try:
            with sqlite_connection(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO rollback_events (
                        event_id, service_id, reason, scope, timestamp, outcome, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        row["event_id"],
                        row["service_id"],
                        row["reason"],
                        row["scope"],
                        row["timestamp"],
                        row["outcome"],
                        row["error"],
                    ),
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to record rollback for {event.service_id}: {e}") from e
        return event

    def rollback_events(
        self, service_id: Optional[str] = None, since: Optional[datetime] = None
    ) -> List[RollbackEvent]:
        query = "SELECT * FROM rollback_events WHERE 1=1"
        params: list = []
        if service_id:
            query += " AND service_id = ?"
            params.append(service_id)
        if since:
            query += " AND timestamp >= ?"
            params.append(since.isoformat())
        query += " ORDER BY timestamp"

        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [RollbackEvent.from_row(dict(row)) for row in rows]

    # ------------------------------------------------------------------ #
    # Operator commands
    # ------------------------------------------------------------------ #

    def enqueue_command(self, service_id: str, command: CommandType) -> int:
        with sqlite_connection(self.db_path) as conn:
            cursor = conn.execute(
                "INSERT INTO rollout_commands (service_id, command, created_at) VALUES (?, ?, ?)",
                (service_id, command.value, utcnow().isoformat()),
            )
            command_id = cursor.lastrowid

        self.slogger.controller_status(
            "command_enqueued", {"serviceId": service_id, "command": command.value}
        )
        return command_id

    def take_commands(self, service_id: str) -> List[RolloutCommand]:
        """Return and delete the pending commands for a service, oldest first."""
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM rollout_commands WHERE service_id = ? ORDER BY id", (service_id,)
            ).fetchall()
            if rows:
                conn.execute(
                    "DELETE FROM rollout_commands WHERE service_id = ? AND id <= ?",
                    (service_id, rows[-1]["id"]),
                )

        return [
            RolloutCommand(
                command_id=row["id"],
                service_id=row["service_id"],
                command=CommandType(row["command"]),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

"""SQLite connection utilities for the rollout record store."""

from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from cvplus_rollout.exceptions import StorageError

PROJECT_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_DB_PATH = PROJECT_ROOT / "data" / "rollout.db"
MEMORY_DB = ":memory:"


def resolve_db_path(db_path: Optional[str] = None) -> Path:
    """
    Resolve the SQLite database path.

    Order of precedence:
        1. Explicit db_path argument
        2. ROLLOUT_SQLITE_PATH env var
        3. data/rollout.db inside the project

    The parent directory is created on demand so a fresh checkout can start
    a rollout without a separate migration step.
    """
    path = db_path or os.getenv("ROLLOUT_SQLITE_PATH") or str(DEFAULT_DB_PATH)
    resolved = Path(path).expanduser().resolve()
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageError(f"Cannot create database directory {resolved.parent}: {e}") from e
    return resolved


def _create_connection(target: str) -> sqlite3.Connection:
    """Create a configured sqlite3 connection."""
    conn = sqlite3.connect(target, check_same_thread=False, timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    return conn


@contextmanager
def sqlite_connection(db_path: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """
    Context manager that yields a configured sqlite3 connection.

    Each call opens a fresh connection, commits on success and rolls back on
    error. ``db_path=":memory:"`` is not supported here because every call
    would see an empty database; use a ``tmp_path`` file in tests.
    """
    if db_path == MEMORY_DB:
        raise StorageError("In-memory SQLite is not supported; use a file path")

    try:
        conn = _create_connection(str(resolve_db_path(db_path)))
    except sqlite3.Error as e:
        raise StorageError(f"Failed to open rollout database: {e}") from e

    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

"""SQLite access shared by the rule, cooldown and notification stores."""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path


class Database:
    """Thread-safe SQLite connection manager.

    Each thread opens its own WAL-mode connection on first use, so one
    ``Database`` is shared by the rule pool and the channel pool. Writes
    from this process are serialized by a lock; ``transaction`` also
    serializes against other processes. ``close`` closes the connections
    of every thread, not just the caller's.
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 5.0) -> None:
        self._db_path = str(db_path)
        self._busy_timeout = busy_timeout
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._open: list[sqlite3.Connection] = []
        self._open_lock = threading.Lock()

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self._db_path, timeout=self._busy_timeout, check_same_thread=False,
            )
            conn.execute("PRAGMA journal_mode=WAL")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._open_lock:
                self._open.append(conn)
        return conn

    def fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        return self._get_conn().execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        return self._get_conn().execute(sql, params).fetchall()

    def write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Run one statement and commit it."""
        with self._write_lock:
            conn = self._get_conn()
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run several statements atomically under the write lock.

        ``BEGIN IMMEDIATE`` also takes SQLite's reserved lock, so writers in
        other processes sharing the file are serialized too.
        """
        with self._write_lock:
            conn = self._get_conn()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def write_script(self, sql: str) -> None:
        """Execute a multi-statement SQL script (migrations)."""
        with self._write_lock:
            self._get_conn().executescript(sql)

    def close(self) -> None:
        with self._open_lock:
            conns, self._open = self._open, []
        for conn in conns:
            conn.close()
        self._local = threading.local()

"""Per-rule cooldown tracking with compare-and-set acquisition.

A rule may start a dispatch round only if no round is in flight and its
cooldown window has elapsed. ``try_acquire`` checks both and claims the
rule in one atomic step; a plain read-then-write would let two concurrent
ingestion events both dispatch.

A successful ``try_acquire`` returns a claim: the time the round went in
flight. ``release`` and ``mark_triggered`` only clear the in-flight flag
while that claim still holds, so a round whose lease expired and was
reclaimed cannot clear the newer round's flag.

Usage::

    claim = store.try_acquire(rule.rule_id, rule.cooldown_minutes)
    if claim is not None:
        try:
            ...  # dispatch round
            store.mark_triggered(rule.rule_id, claim)
        finally:
            store.release(rule.rule_id, claim)  # no-op after mark_triggered

Stores fail closed: if state cannot be read, ``try_acquire`` returns None.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from vulnalert.db.connection import Database
from vulnalert.models import CooldownState

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 900.0


class CooldownStoreError(Exception):
    """Raised when cooldown state cannot be updated."""


@runtime_checkable
class CooldownStore(Protocol):
    """Protocol for cooldown state backends."""

    def try_acquire(self, rule_id: str, cooldown_minutes: int) -> float | None: ...

    def release(self, rule_id: str, claim: float | None = None) -> None: ...

    def mark_triggered(self, rule_id: str, claim: float | None = None) -> None: ...

    def get_state(self, rule_id: str) -> CooldownState | None: ...


def _ts(epoch: float | None) -> datetime | None:
    return datetime.fromtimestamp(epoch, tz=UTC) if epoch is not None else None


class InMemoryCooldownStore:
    """Dict-backed cooldown store for a single process.

    Thread-safe via a single lock on all state, following the same
    pattern as the rule engine's other shared state.
    """

    def __init__(
        self,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._lease_seconds = lease_seconds
        self._clock = _clock or time.time
        self._lock = threading.Lock()
        self._last_triggered: dict[str, float] = {}
        self._in_flight_since: dict[str, float] = {}

    def try_acquire(self, rule_id: str, cooldown_minutes: int) -> float | None:
        now = self._clock()
        with self._lock:
            since = self._in_flight_since.get(rule_id)
            if since is not None and now - since < self._lease_seconds:
                return None

            last = self._last_triggered.get(rule_id)
            if last is not None and now - last < cooldown_minutes * 60:
                return None

            self._in_flight_since[rule_id] = now
            return now

    def release(self, rule_id: str, claim: float | None = None) -> None:
        with self._lock:
            self._clear_flight(rule_id, claim)

    def mark_triggered(self, rule_id: str, claim: float | None = None) -> None:
        now = self._clock()
        with self._lock:
            self._last_triggered[rule_id] = now
            self._clear_flight(rule_id, claim)

    def _clear_flight(self, rule_id: str, claim: float | None) -> None:
        if claim is None or self._in_flight_since.get(rule_id) == claim:
            self._in_flight_since.pop(rule_id, None)

    def get_state(self, rule_id: str) -> CooldownState | None:
        with self._lock:
            last = self._last_triggered.get(rule_id)
            since = self._in_flight_since.get(rule_id)
        if last is None and since is None:
            return None
        return CooldownState(
            rule_id=rule_id,
            last_triggered_at=_ts(last),
            in_flight=since is not None,
            in_flight_since=_ts(since),
        )


class SqliteCooldownStore:
    """SQLite-backed cooldown store, safe across threads and processes.

    Timestamps are stored as epoch seconds so the cooldown cutoff is a
    numeric comparison inside the conditional UPDATE.
    """

    def __init__(
        self,
        db: Database,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._db = db
        self._lease_seconds = lease_seconds
        self._clock = _clock or time.time

    def try_acquire(self, rule_id: str, cooldown_minutes: int) -> float | None:
        now = self._clock()
        cooldown_cutoff = now - cooldown_minutes * 60
        lease_cutoff = now - self._lease_seconds
        try:
            with self._db.transaction() as conn:
                conn.execute(
                    "INSERT OR IGNORE INTO cooldown_state (rule_id) VALUES (?)",
                    (rule_id,),
                )
                cursor = conn.execute(
                    """UPDATE cooldown_state
                       SET in_flight = 1, in_flight_since = ?
                       WHERE rule_id = ?
                         AND (in_flight = 0 OR in_flight_since <= ?)
                         AND (last_triggered_at IS NULL OR last_triggered_at <= ?)""",
                    (now, rule_id, lease_cutoff, cooldown_cutoff),
                )
                return now if cursor.rowcount == 1 else None
        except sqlite3.Error:
            logger.exception("Cooldown store unavailable; refusing to acquire rule %s", rule_id)
            return None

    def release(self, rule_id: str, claim: float | None = None) -> None:
        try:
            self._db.write(
                "UPDATE cooldown_state SET in_flight = 0, in_flight_since = NULL "
                "WHERE rule_id = ? AND (? IS NULL OR in_flight_since = ?)",
                (rule_id, claim, claim),
            )
        except sqlite3.Error as exc:
            raise CooldownStoreError(f"Failed to release rule {rule_id}: {exc}") from exc

    def mark_triggered(self, rule_id: str, claim: float | None = None) -> None:
        try:
            with self._db.transaction() as conn:
                conn.execute(
                    "UPDATE cooldown_state SET last_triggered_at = ? WHERE rule_id = ?",
                    (self._clock(), rule_id),
                )
                conn.execute(
                    "UPDATE cooldown_state SET in_flight = 0, in_flight_since = NULL "
                    "WHERE rule_id = ? AND (? IS NULL OR in_flight_since = ?)",
                    (rule_id, claim, claim),
                )
        except sqlite3.Error as exc:
            raise CooldownStoreError(f"Failed to mark rule {rule_id} triggered: {exc}") from exc

    def get_state(self, rule_id: str) -> CooldownState | None:
        try:
            row = self._db.fetchone(
                "SELECT * FROM cooldown_state WHERE rule_id = ?", (rule_id,)
            )
        except sqlite3.Error as exc:
            raise CooldownStoreError(f"Failed to read cooldown for {rule_id}: {exc}") from exc
        if row is None:
            return None
        return CooldownState(
            rule_id=row["rule_id"],
            last_triggered_at=_ts(row["last_triggered_at"]),
            in_flight=bool(row["in_flight"]),
            in_flight_since=_ts(row["in_flight_since"]),
        )

"""Append-only dispatch audit log with a SHA-256 hash chain.

One JSON ``AuditEntry`` per line, each wrapping a ``DispatchResult``.
``prev_hash`` links an entry to its predecessor (``GENESIS_HASH`` for the
first line) and ``entry_hash`` covers every other field, so an edited,
reordered or deleted line shows up in verify_log().

The local write is the point of no return for a dispatch round: if it
fails, ``AuditError`` propagates and the round is failed.
"""

from __future__ import annotations

import hashlib
import json
import threading
import uuid
import warnings
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ValidationError

from vulnalert.models import DispatchResult

if TYPE_CHECKING:
    from vulnalert.audit.shipper import AuditShipper

GENESIS_HASH = "0" * 64


class AuditError(Exception):
    """Raised when the audit log cannot be written or read."""


class ShipperWarning(UserWarning):
    """Emitted when an audit shipper fails (non-fatal)."""


class AuditEntry(BaseModel):
    """One line of the audit log."""

    entry_id: str
    logged_at: datetime
    event_type: str = "dispatch"
    prev_hash: str
    entry_hash: str = ""
    result: DispatchResult


def _hash_entry(data: dict) -> str:
    payload = {k: v for k, v in data.items() if k != "entry_hash"}
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


class AuditLogger:
    """Append-only, hash-chained JSON-lines log of dispatch results.

    Thread-safe: chaining and the file append happen under one lock.
    """

    def __init__(
        self,
        log_path: str | Path,
        shippers: list[AuditShipper] | None = None,
    ) -> None:
        self._path = Path(log_path)
        self._lock = threading.Lock()
        self._prev_hash = self._read_last_hash()
        self._shippers: list[AuditShipper] = shippers or []

    def _read_last_hash(self) -> str:
        if not self._path.exists() or self._path.stat().st_size == 0:
            return GENESIS_HASH

        last_line = ""
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                stripped = line.strip()
                if stripped:
                    last_line = stripped

        if not last_line:
            return GENESIS_HASH

        try:
            return json.loads(last_line).get("entry_hash", GENESIS_HASH)
        except json.JSONDecodeError as exc:
            raise AuditError(
                f"Corrupt audit log: last line is not valid JSON: {self._path}"
            ) from exc

    @property
    def path(self) -> Path:
        return self._path

    @property
    def prev_hash(self) -> str:
        return self._prev_hash

    def log_result(
        self,
        result: DispatchResult,
        timestamp: datetime | None = None,
    ) -> AuditEntry:
        """Append *result* to the chain, then ship it.

        Raises ``AuditError`` if the local write fails. Shipper failures
        only warn.
        """
        timestamp = timestamp or datetime.now(tz=UTC)

        with self._lock:
            entry = AuditEntry(
                entry_id=f"aud-{uuid.uuid4().hex[:12]}",
                logged_at=timestamp,
                prev_hash=self._prev_hash,
                result=result,
            )
            entry.entry_hash = _hash_entry(entry.model_dump(mode="json"))
            json_line = json.dumps(entry.model_dump(mode="json"), sort_keys=True)
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(json_line + "\n")
            except OSError as exc:
                raise AuditError(f"Failed to write audit log {self._path}: {exc}") from exc
            self._prev_hash = entry.entry_hash

        for shipper in self._shippers:
            try:
                shipper.ship(entry)
            except Exception as exc:
                warnings.warn(
                    f"Audit shipper {type(shipper).__name__} failed: {exc}",
                    ShipperWarning,
                    stacklevel=2,
                )

        return entry

    def read_entries(self) -> list[AuditEntry]:
        """Read all entries from the log file, oldest first."""
        if not self._path.exists():
            return []

        entries: list[AuditEntry] = []
        with self._path.open("r", encoding="utf-8") as f:
            for i, line in enumerate(f):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    entries.append(AuditEntry(**json.loads(stripped)))
                except (json.JSONDecodeError, ValidationError) as e:
                    raise AuditError(
                        f"Corrupt entry at line {i + 1} in {self._path}: {e}"
                    ) from e

        return entries

    def list_results(
        self,
        rule_id: str | None = None,
        limit: int = 50,
    ) -> list[DispatchResult]:
        """Dispatch results, newest first, optionally for one rule."""
        results = [
            e.result for e in reversed(self.read_entries())
            if rule_id is None or e.result.rule_id == rule_id
        ]
        return results[:limit]

    def latest_for_rule(self, rule_id: str) -> DispatchResult | None:
        results = self.list_results(rule_id=rule_id, limit=1)
        return results[0] if results else None


def verify_log(log_path: str | Path) -> tuple[bool, list[str]]:
    """Walk the chain in *log_path* and report every broken link.

    A missing file counts as an intact (empty) log.
    """
    path = Path(log_path)
    if not path.exists():
        return True, []

    problems: list[str] = []
    expected_prev = GENESIS_HASH
    lines = [ln.strip() for ln in path.read_text(encoding="utf-8").splitlines()]

    for n, raw in enumerate((ln for ln in lines if ln), start=1):
        try:
            record = json.loads(raw)
        except json.JSONDecodeError as exc:
            problems.append(f"entry {n}: not valid JSON ({exc})")
            continue

        linked = record.get("prev_hash", "")
        if linked != expected_prev:
            problems.append(
                f"entry {n}: chain broken (links to {linked[:12]}, "
                f"previous entry is {expected_prev[:12]})"
            )

        claimed = record.get("entry_hash", "")
        if claimed != _hash_entry(record):
            problems.append(f"entry {n}: hash mismatch, content was modified")

        expected_prev = claimed

    return not problems, problems

"""Ingestion trigger: the entry points that feed vulnerabilities to the engine.

- ``evaluate_now``: synchronous, returns per-rule outcomes. Used by the
  HTTP/CLI "evaluate" commands and manual test triggers.
- ``submit``: enqueue for the background consumer thread. Same per-event
  semantics as ``evaluate_now``; outcomes go to the optional callback.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Mapping
from typing import Any

from vulnalert.engine.engine import RuleEngine
from vulnalert.models import DispatchOutcome, Vulnerability

logger = logging.getLogger(__name__)

_STOP = object()


class IngestionTrigger:
    """Feeds newly observed vulnerabilities to a ``RuleEngine``."""

    def __init__(
        self,
        engine: RuleEngine,
        max_queue: int = 1000,
        on_outcomes: Callable[[Vulnerability, list[DispatchOutcome]], None] | None = None,
    ) -> None:
        self._engine = engine
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=max_queue)
        self._on_outcomes = on_outcomes
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def evaluate_now(
        self,
        vulnerability: Vulnerability | Mapping[str, Any],
        owner_id: str | None = None,
    ) -> list[DispatchOutcome]:
        """Evaluate immediately on the caller's thread."""
        return self._engine.on_vulnerability(vulnerability, owner_id=owner_id)

    def submit(self, vulnerability: Vulnerability | Mapping[str, Any]) -> bool:
        """Queue *vulnerability* for background evaluation.

        Returns False (and logs) if the queue is full.
        """
        if not isinstance(vulnerability, Vulnerability):
            vulnerability = Vulnerability.model_validate(vulnerability)
        try:
            self._queue.put_nowait(vulnerability)
        except queue.Full:
            logger.warning("Ingestion queue full; dropping %s", vulnerability.cve_id)
            return False
        return True

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._thread = threading.Thread(
                target=self._consume, name="vulnalert-ingest", daemon=True,
            )
            self._thread.start()

    def stop(self, timeout: float | None = 30.0) -> None:
        """Drain queued events, then stop the consumer thread."""
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._queue.put(_STOP)
            thread.join(timeout)
            self._thread = None

    def join(self) -> None:
        """Block until every queued event has been processed."""
        self._queue.join()

    def _consume(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                outcomes = self._engine.on_vulnerability(item)
                if self._on_outcomes is not None:
                    self._on_outcomes(item, outcomes)
            except Exception:
                logger.exception("Background evaluation failed for %s", getattr(item, "cve_id", "?"))
            finally:
                self._queue.task_done()

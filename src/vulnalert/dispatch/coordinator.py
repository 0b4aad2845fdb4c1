"""Dispatch coordinator: fans one intent out to every configured channel.

Every action of the rule runs concurrently on a shared channel pool with
its own deadline, passed to the dispatcher as an absolute
``time.monotonic()`` value so it can stop retrying in time. A slow or
failing channel never blocks or cancels its siblings; it is recorded as a
failed ``ChannelResult``. An action still queued when its deadline passes
is cancelled and never sent. Once every channel has a result (or has
timed out) the ``DispatchResult`` is written to the audit log before it
is returned.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import UTC, datetime

from vulnalert.audit.logger import AuditLogger
from vulnalert.channels.base import ChannelDispatcher
from vulnalert.models import (
    AlertRule,
    ChannelAction,
    ChannelResult,
    ChannelType,
    DispatchIntent,
    DispatchResult,
)

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_SECONDS = 0.5


class DispatchCoordinator:
    """Concurrent channel fan-out with per-channel deadlines."""

    def __init__(
        self,
        dispatchers: Mapping[ChannelType, ChannelDispatcher],
        audit_logger: AuditLogger | None = None,
        max_workers: int = 16,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
    ) -> None:
        self._dispatchers = dict(dispatchers)
        self._audit = audit_logger
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="vulnalert-channel",
        )
        # Extra wait past a deadline so a dispatcher that honors it can
        # return its own result.
        self._settle_seconds = settle_seconds

    @property
    def dispatchers(self) -> dict[ChannelType, ChannelDispatcher]:
        return dict(self._dispatchers)

    def dispatch(self, intent: DispatchIntent, rule: AlertRule) -> DispatchResult:
        """Send *intent* on every action of *rule* and audit the outcome.

        Result order equals action order. Raises ``AuditError`` if the
        audit write fails.
        """
        pending: list[tuple[ChannelAction, Future[ChannelResult] | None, float, float]] = []
        for action in rule.actions:
            dispatcher = self._dispatchers.get(action.channel)
            if dispatcher is None:
                pending.append((action, None, 0.0, 0.0))
                continue
            budget = self._budget(dispatcher, action)
            deadline = time.monotonic() + budget
            future = self._pool.submit(
                self._send_safely, dispatcher, intent, action, deadline, budget,
            )
            pending.append((action, future, deadline, budget))

        results: list[ChannelResult] = []
        for action, future, deadline, budget in pending:
            if future is None:
                logger.warning(
                    "No dispatcher registered for channel %s (dispatch %s)",
                    action.channel, intent.dispatch_id,
                )
                results.append(ChannelResult.skipped(action.channel))
                continue
            wait = max(deadline - time.monotonic(), 0.0) + self._settle_seconds
            try:
                result = future.result(timeout=wait)
            except FutureTimeoutError:
                if future.cancel():
                    reason = f"not started within {budget:g}s"
                else:
                    reason = f"timed out after {budget:g}s"
                result = ChannelResult.failure(action.channel, reason, latency_ms=budget * 1000)
            results.append(result)

        for result in results:
            if not result.success and not result.was_skipped:
                logger.warning(
                    "Channel %s failed for rule %s (dispatch %s): %s",
                    result.channel, intent.rule_id, intent.dispatch_id, result.error_message,
                )

        dispatch_result = DispatchResult(
            dispatch_id=intent.dispatch_id,
            rule_id=intent.rule_id,
            owner_id=intent.owner_id,
            vulnerability_id=intent.vulnerability_id,
            matched_conditions=intent.matched_conditions,
            channel_results=results,
            completed_at=datetime.now(tz=UTC),
        )

        if self._audit is not None:
            self._audit.log_result(dispatch_result)

        logger.info(
            "Dispatch %s for rule %s on %s: %d/%d channels succeeded",
            intent.dispatch_id,
            intent.rule_id,
            intent.vulnerability_id,
            sum(1 for r in results if r.success),
            len(results),
        )
        return dispatch_result

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _budget(dispatcher: ChannelDispatcher, action: ChannelAction) -> float:
        override = action.config.get("timeout_seconds")
        if isinstance(override, int | float) and not isinstance(override, bool) and override > 0:
            return float(override)
        return float(dispatcher.timeout_seconds)

    @staticmethod
    def _send_safely(
        dispatcher: ChannelDispatcher,
        intent: DispatchIntent,
        action: ChannelAction,
        deadline: float,
        budget: float,
    ) -> ChannelResult:
        if time.monotonic() >= deadline:
            return ChannelResult.failure(
                action.channel, f"not started within {budget:g}s", latency_ms=budget * 1000,
            )
        try:
            return dispatcher.send(intent, action.config, deadline=deadline)
        except Exception as exc:
            logger.debug("Channel %s raised", action.channel, exc_info=True)
            return ChannelResult.failure(action.channel, f"{type(exc).__name__}: {exc}")

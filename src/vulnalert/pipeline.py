"""Pipeline facade: wires the whole alert graph from a ``VulnAlertConfig``.

Usage::

    with AlertPipeline.from_config() as pipeline:
        outcomes = pipeline.trigger.evaluate_now(vuln)
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from vulnalert.audit.logger import AuditError, AuditLogger
from vulnalert.audit.shipper import build_shippers
from vulnalert.channels import NotificationStore, build_dispatchers
from vulnalert.config import VulnAlertConfig, load_config
from vulnalert.cooldown.store import SqliteCooldownStore
from vulnalert.db.connection import Database
from vulnalert.db.migrations import run_migrations
from vulnalert.directory import StaticUserDirectory
from vulnalert.dispatch.coordinator import DispatchCoordinator
from vulnalert.engine.engine import RuleEngine
from vulnalert.engine.trigger import IngestionTrigger
from vulnalert.rules.store import SqliteRuleStore

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Raised when the pipeline cannot be assembled."""


class AlertPipeline:
    """Owns the database, stores, dispatchers, engine and trigger."""

    def __init__(self, config: VulnAlertConfig) -> None:
        self.config = config
        try:
            Path(config.database).parent.mkdir(parents=True, exist_ok=True)
            self.db = Database(config.database)
            run_migrations(self.db)
            self.audit_logger = AuditLogger(
                config.audit_log, shippers=build_shippers(config.audit_shipping),
            )
        except (sqlite3.Error, OSError, AuditError) as exc:
            raise PipelineError(f"Failed to initialise pipeline: {exc}") from exc

        self.directory = StaticUserDirectory(config.users)
        self.rule_store = SqliteRuleStore(self.db)
        self.cooldown_store = SqliteCooldownStore(
            self.db, lease_seconds=config.cooldown_lease_seconds,
        )
        self.notification_store = NotificationStore(self.db)
        self.coordinator = DispatchCoordinator(
            build_dispatchers(
                notification_store=self.notification_store,
                email=config.email,
                channels=config.channels,
                directory=self.directory,
                preferences=self.directory,
                app_url=config.app_url,
            ),
            audit_logger=self.audit_logger,
            max_workers=config.channel_workers,
        )
        self.engine = RuleEngine(
            self.rule_store,
            self.cooldown_store,
            self.coordinator,
            audit_logger=self.audit_logger,
            max_workers=config.max_workers,
        )
        self.trigger = IngestionTrigger(self.engine)
        logger.debug("Pipeline ready (database=%s, audit_log=%s)", config.database, config.audit_log)

    @classmethod
    def from_config(cls, path: str | Path | None = None) -> AlertPipeline:
        return cls(load_config(path))

    def close(self) -> None:
        self.trigger.stop()
        self.engine.close()
        self.coordinator.close()
        self.db.close()

    def __enter__(self) -> AlertPipeline:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

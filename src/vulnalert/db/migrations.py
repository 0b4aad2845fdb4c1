"""Version-tracked SQLite schema migrations."""

from __future__ import annotations

import sqlite3

from vulnalert.db.connection import Database

MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        );
        INSERT INTO schema_version (version) VALUES (0);

        CREATE TABLE IF NOT EXISTS alert_rules (
            rule_id           TEXT PRIMARY KEY,
            owner_id          TEXT NOT NULL,
            name              TEXT NOT NULL,
            description       TEXT NOT NULL DEFAULT '',
            conditions_json   TEXT NOT NULL,
            actions_json      TEXT NOT NULL,
            cooldown_minutes  INTEGER NOT NULL DEFAULT 60,
            is_active         INTEGER NOT NULL DEFAULT 1,
            trigger_count     INTEGER NOT NULL DEFAULT 0,
            last_triggered_at TEXT,
            created_at        TEXT NOT NULL,
            updated_at        TEXT NOT NULL,
            UNIQUE (owner_id, name)
        );
        CREATE INDEX IF NOT EXISTS idx_alert_rules_active
            ON alert_rules (is_active);
        CREATE INDEX IF NOT EXISTS idx_alert_rules_owner_active
            ON alert_rules (owner_id, is_active);

        CREATE TABLE IF NOT EXISTS cooldown_state (
            rule_id           TEXT PRIMARY KEY,
            last_triggered_at REAL,
            in_flight         INTEGER NOT NULL DEFAULT 0,
            in_flight_since   REAL
        );
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS notifications (
            notification_id TEXT PRIMARY KEY,
            owner_id        TEXT NOT NULL,
            type            TEXT NOT NULL,
            title           TEXT NOT NULL,
            message         TEXT NOT NULL,
            data_json       TEXT NOT NULL DEFAULT '{}',
            priority        TEXT NOT NULL DEFAULT 'medium',
            is_read         INTEGER NOT NULL DEFAULT 0,
            created_at      TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_notifications_owner
            ON notifications (owner_id, created_at);
        """,
    ),
]


def get_schema_version(db: Database) -> int:
    """Return the current schema version, or 0 if uninitialized."""
    try:
        row = db.fetchone("SELECT version FROM schema_version")
        return int(row["version"]) if row else 0
    except sqlite3.Error:
        return 0


def run_migrations(db: Database) -> int:
    """Apply pending migrations. Returns the final schema version."""
    current = get_schema_version(db)

    for version, sql in MIGRATIONS:
        if version <= current:
            continue
        db.write_script(sql)
        db.write("UPDATE schema_version SET version = ?", (version,))

    return get_schema_version(db)

"""Shared fixtures for the vulnalert test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from vulnalert.db.connection import Database
from vulnalert.db.migrations import run_migrations
from vulnalert.models import Vulnerability


@pytest.fixture()
def db(tmp_path: Path) -> Database:
    d = Database(str(tmp_path / "test.db"))
    run_migrations(d)
    yield d
    d.close()


@pytest.fixture()
def critical_vuln() -> Vulnerability:
    return Vulnerability(
        cve_id="CVE-2026-0001",
        title="Remote code execution in libexample",
        description="A crafted request lets an attacker run arbitrary code.",
        severity="CRITICAL",
        cvss_score=9.8,
        affected_software=["libexample 1.2", "nginx 1.25"],
        category="rce",
        exploit_available=True,
        patch_available=False,
        kev=True,
        tags=["remote", "unauthenticated"],
        cwe_id="CWE-94",
        published_date="2026-01-15",
    )


@pytest.fixture()
def high_vuln() -> Vulnerability:
    return Vulnerability(
        cve_id="CVE-2026-0002",
        title="SQL injection in example-cms",
        description="Unsanitised search parameter.",
        severity="HIGH",
        cvss_score=7.5,
        affected_software=["example-cms 3.1"],
        exploit_available=False,
        patch_available=True,
    )

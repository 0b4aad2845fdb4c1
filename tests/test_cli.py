"""Tests for the vulnalert CLI."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from vulnalert import __version__
from vulnalert.cli.main import cli
from vulnalert.config import CONFIG_FILENAME

RULE_YAML = """\
owner_id: user-1
name: Critical in-app
conditions:
  - field: severity
    operator: equals
    value: CRITICAL
  - field: cvss_score
    operator: gte
    value: 9.0
actions:
  - channel: in-app
cooldown_minutes: 60
"""

VULN = {
    "cveId": "CVE-2026-0001",
    "title": "Remote code execution in libexample",
    "severity": "CRITICAL",
    "cvssScore": 9.8,
}


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    (tmp_path / CONFIG_FILENAME).write_text(
        "database: data/vulnalert.db\naudit_log: data/audit.jsonl\n", encoding="utf-8",
    )
    (tmp_path / "rule.yaml").write_text(RULE_YAML, encoding="utf-8")
    (tmp_path / "vuln.json").write_text(json.dumps(VULN), encoding="utf-8")
    return tmp_path


def _invoke(runner: CliRunner, workspace: Path, *args: str):
    return runner.invoke(cli, ["--config", str(workspace / CONFIG_FILENAME), *args])


def _create_rule(runner: CliRunner, workspace: Path) -> str:
    result = _invoke(runner, workspace, "rules", "create", str(workspace / "rule.yaml"), "--json-output")
    assert result.exit_code == 0, result.output
    return json.loads(result.output)["rule_id"]


class TestRoot:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_missing_config(self, runner, tmp_path):
        result = runner.invoke(cli, ["--config", str(tmp_path / "nope.yaml"), "rules", "list"])
        assert result.exit_code == 1
        assert "Error loading config" in result.output


class TestInit:
    def test_writes_config(self, runner, tmp_path):
        result = runner.invoke(cli, ["init", str(tmp_path / "proj")])
        assert result.exit_code == 0
        assert (tmp_path / "proj" / CONFIG_FILENAME).is_file()
        assert "Created" in result.output

    def test_skips_existing(self, runner, workspace):
        before = (workspace / CONFIG_FILENAME).read_text(encoding="utf-8")
        result = runner.invoke(cli, ["init", str(workspace)])
        assert result.exit_code == 0
        assert "skip" in result.output
        assert (workspace / CONFIG_FILENAME).read_text(encoding="utf-8") == before


class TestRules:
    def test_create_list_show(self, runner, workspace):
        rule_id = _create_rule(runner, workspace)

        listed = _invoke(runner, workspace, "rules", "list")
        assert listed.exit_code == 0
        assert rule_id in listed.output
        assert "1 rule(s)." in listed.output

        shown = _invoke(runner, workspace, "rules", "show", rule_id)
        assert shown.exit_code == 0
        assert "when  severity equals" in shown.output
        assert "send  in-app" in shown.output

    def test_create_invalid(self, runner, workspace):
        bad = workspace / "bad.yaml"
        bad.write_text("owner_id: user-1\nname: x\nconditions: []\nactions: []\n", encoding="utf-8")
        result = _invoke(runner, workspace, "rules", "create", str(bad))
        assert result.exit_code == 1
        assert "Invalid rule" in result.output

    def test_disable(self, runner, workspace):
        rule_id = _create_rule(runner, workspace)
        result = _invoke(runner, workspace, "rules", "disable", rule_id)
        assert result.exit_code == 0

        listed = _invoke(runner, workspace, "rules", "list", "--all", "--json-output")
        assert json.loads(listed.output)[0]["is_active"] is False

    def test_show_missing(self, runner, workspace):
        result = _invoke(runner, workspace, "rules", "show", "alr-missing")
        assert result.exit_code == 1
        assert "not found" in result.output


class TestEvaluate:
    def test_dispatch_then_cooldown(self, runner, workspace):
        rule_id = _create_rule(runner, workspace)
        vuln_file = str(workspace / "vuln.json")

        first = _invoke(runner, workspace, "evaluate", vuln_file, "--json-output")
        assert first.exit_code == 0, first.output
        outcomes = json.loads(first.output)
        assert outcomes[0]["rule_id"] == rule_id
        assert outcomes[0]["status"] == "dispatched"

        second = _invoke(runner, workspace, "evaluate", vuln_file)
        assert second.exit_code == 0
        assert "COOLDOWN" in second.output

        state = _invoke(runner, workspace, "state", rule_id, "--json-output")
        data = json.loads(state.output)
        assert data["trigger_count"] == 1
        assert data["last_dispatch"]["dispatch_id"] == outcomes[0]["dispatch_id"]

    def test_no_rules(self, runner, workspace):
        result = _invoke(runner, workspace, "evaluate", str(workspace / "vuln.json"))
        assert result.exit_code == 0
        assert "No active rules." in result.output

    def test_invalid_record(self, runner, workspace):
        bad = workspace / "bad.json"
        bad.write_text('{"severity": "CRITICAL"}', encoding="utf-8")
        result = _invoke(runner, workspace, "evaluate", str(bad))
        assert result.exit_code == 1
        assert "Invalid vulnerability record" in result.output


class TestAudit:
    def test_verify_and_show(self, runner, workspace):
        rule_id = _create_rule(runner, workspace)
        _invoke(runner, workspace, "evaluate", str(workspace / "vuln.json"))

        verified = _invoke(runner, workspace, "audit", "verify")
        assert verified.exit_code == 0
        assert "VALID" in verified.output

        shown = _invoke(runner, workspace, "audit", "show", "--rule", rule_id, "--json-output")
        results = json.loads(shown.output)
        assert len(results) == 1
        assert results[0]["vulnerability_id"] == "CVE-2026-0001"

    def test_verify_detects_tampering(self, runner, workspace):
        _create_rule(runner, workspace)
        _invoke(runner, workspace, "evaluate", str(workspace / "vuln.json"))

        log = workspace / "data" / "audit.jsonl"
        log.write_text(log.read_text(encoding="utf-8").replace("CVE-2026-0001", "CVE-2026-9999"),
                       encoding="utf-8")
        result = _invoke(runner, workspace, "audit", "verify")
        assert result.exit_code == 1
        assert "INVALID" in result.output

    def test_missing_log(self, runner, tmp_path):
        result = runner.invoke(cli, ["audit", "verify", str(tmp_path / "none.jsonl")])
        assert result.exit_code == 1
        assert "not found" in result.output

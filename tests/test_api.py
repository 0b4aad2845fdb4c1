"""Tests for the HTTP API.

Uses FastAPI TestClient against a pipeline built on a temporary
database and audit log.
"""

from __future__ import annotations

from pathlib import Path

import pytest

fastapi = pytest.importorskip("fastapi", reason="fastapi not installed")

from fastapi.testclient import TestClient  # noqa: E402

from vulnalert import __version__  # noqa: E402
from vulnalert.api.app import create_app  # noqa: E402
from vulnalert.config import VulnAlertConfig  # noqa: E402
from vulnalert.pipeline import AlertPipeline  # noqa: E402

CRITICAL = {
    "cveId": "CVE-2026-0001",
    "title": "Remote code execution in libexample",
    "severity": "CRITICAL",
    "cvssScore": 9.8,
    "affectedSoftware": ["libexample 1.2"],
    "exploitAvailable": True,
}


def _rule_body(owner: str = "user-1", cooldown: int = 60) -> dict:
    return {
        "owner_id": owner,
        "name": "Critical in-app",
        "conditions": [{"field": "severity", "operator": "equals", "value": "CRITICAL"}],
        "actions": [{"channel": "in-app"}],
        "cooldown_minutes": cooldown,
    }


@pytest.fixture()
def pipeline(tmp_path: Path):
    config = VulnAlertConfig(
        database=str(tmp_path / "vulnalert.db"),
        audit_log=str(tmp_path / "audit.jsonl"),
    )
    p = AlertPipeline(config)
    yield p
    p.close()


@pytest.fixture()
def client(pipeline) -> TestClient:
    return TestClient(create_app(pipeline=pipeline))


# --- Health ---


class TestHealth:
    def test_health_ok(self, client) -> None:
        resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["version"] == __version__
        assert data["active_rules"] == 0
        assert data["audit_entries"] == 0


# --- Rule CRUD ---


class TestRules:
    def test_create_and_get(self, client) -> None:
        resp = client.post("/api/alerts/rules", json=_rule_body())
        assert resp.status_code == 201
        rule = resp.json()
        assert rule["rule_id"].startswith("alr-")
        assert rule["trigger_count"] == 0

        resp = client.get(f"/api/alerts/rules/{rule['rule_id']}")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Critical in-app"

    def test_create_invalid_rule(self, client) -> None:
        body = _rule_body()
        body["conditions"] = []
        resp = client.post("/api/alerts/rules", json=body)
        assert resp.status_code == 422
        assert "at least one condition" in resp.json()["detail"]

    def test_create_bad_webhook_url(self, client) -> None:
        body = _rule_body()
        body["actions"] = [{"channel": "webhook", "config": {"url": "ftp://nope"}}]
        assert client.post("/api/alerts/rules", json=body).status_code == 422

    def test_list_by_owner(self, client) -> None:
        client.post("/api/alerts/rules", json=_rule_body("user-1"))
        client.post("/api/alerts/rules", json=_rule_body("user-2"))
        resp = client.get("/api/alerts/rules", params={"owner_id": "user-2"})
        assert [r["owner_id"] for r in resp.json()] == ["user-2"]

    def test_update(self, client) -> None:
        rule_id = client.post("/api/alerts/rules", json=_rule_body()).json()["rule_id"]
        resp = client.put(f"/api/alerts/rules/{rule_id}", json={"cooldown_minutes": 5})
        assert resp.status_code == 200
        assert resp.json()["cooldown_minutes"] == 5

    def test_delete_deactivates(self, client) -> None:
        rule_id = client.post("/api/alerts/rules", json=_rule_body()).json()["rule_id"]
        assert client.delete(f"/api/alerts/rules/{rule_id}").json() == {"ok": True}
        assert client.get("/api/alerts/rules").json() == []
        resp = client.get("/api/alerts/rules", params={"include_inactive": True})
        assert resp.json()[0]["is_active"] is False

    @pytest.mark.parametrize("method", ["get", "delete"])
    def test_missing_rule(self, client, method) -> None:
        resp = getattr(client, method)("/api/alerts/rules/alr-missing")
        assert resp.status_code == 404

    def test_update_missing_rule(self, client) -> None:
        resp = client.put("/api/alerts/rules/alr-missing", json={"name": "x"})
        assert resp.status_code == 404


# --- Evaluation ---


class TestEvaluate:
    def test_evaluate_dispatches_then_cools_down(self, client, pipeline) -> None:
        rule_id = client.post("/api/alerts/rules", json=_rule_body()).json()["rule_id"]

        resp = client.post("/api/alerts/evaluate", json=CRITICAL)
        assert resp.status_code == 200
        data = resp.json()
        assert data["vulnerability_id"] == "CVE-2026-0001"
        assert data["dispatched"] == 1
        outcome = data["outcomes"][0]
        assert outcome["status"] == "dispatched"
        assert outcome["channel_results"][0]["channel"] == "in-app"
        assert outcome["channel_results"][0]["success"] is True

        again = client.post("/api/alerts/evaluate", json=CRITICAL).json()
        assert again["outcomes"][0]["status"] == "cooldown"
        assert again["dispatched"] == 0

        assert pipeline.rule_store.get_rule(rule_id).trigger_count == 1
        assert len(pipeline.notification_store.list_for_owner("user-1")) == 1

    def test_evaluate_not_matched(self, client) -> None:
        client.post("/api/alerts/rules", json=_rule_body())
        body = {**CRITICAL, "severity": "LOW"}
        data = client.post("/api/alerts/evaluate", json=body).json()
        assert data["outcomes"][0]["status"] == "not_matched"

    def test_evaluate_scoped_to_owner(self, client) -> None:
        client.post("/api/alerts/rules", json=_rule_body("user-1"))
        data = client.post(
            "/api/alerts/evaluate", json=CRITICAL, params={"owner_id": "user-2"},
        ).json()
        assert data["outcomes"] == []

    def test_evaluate_requires_cve_id(self, client) -> None:
        resp = client.post("/api/alerts/evaluate", json={"severity": "CRITICAL"})
        assert resp.status_code == 422

    def test_rule_state(self, client) -> None:
        rule_id = client.post("/api/alerts/rules", json=_rule_body()).json()["rule_id"]
        client.post("/api/alerts/evaluate", json=CRITICAL)

        state = client.get(f"/api/alerts/rules/{rule_id}/state").json()
        assert state["trigger_count"] == 1
        assert state["in_flight"] is False
        assert 0 < state["cooldown_remaining_seconds"] <= 3600
        assert state["last_dispatch"]["rule_id"] == rule_id

    def test_rule_state_missing(self, client) -> None:
        assert client.get("/api/alerts/rules/alr-missing/state").status_code == 404


# --- Dispatch history ---


class TestDispatches:
    def test_history(self, client) -> None:
        rule_id = client.post("/api/alerts/rules", json=_rule_body(cooldown=0)).json()["rule_id"]
        client.post("/api/alerts/evaluate", json=CRITICAL)
        client.post("/api/alerts/evaluate", json={**CRITICAL, "cveId": "CVE-2026-0003"})

        resp = client.get("/api/alerts/dispatches", params={"rule_id": rule_id})
        assert resp.status_code == 200
        assert [d["vulnerability_id"] for d in resp.json()] == ["CVE-2026-0003", "CVE-2026-0001"]

        assert len(client.get("/api/alerts/dispatches", params={"limit": 1}).json()) == 1
        assert client.get("/api/health").json()["audit_entries"] == 2

    def test_limit_bounds(self, client) -> None:
        assert client.get("/api/alerts/dispatches", params={"limit": 0}).status_code == 422

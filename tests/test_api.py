"""Tests for the FastAPI API endpoints."""

import random

import pytest
from fastapi.testclient import TestClient

from hook_kernel.api.app import create_app
from hook_kernel.engine.registry import BaseRule, RuleRegistry
from hook_kernel.kernel import HookKernel
from hook_kernel.models.action import RuleResult, Verdict
from hook_kernel.models.config import KernelConfig


class SecretRule(BaseRule):
    name = "no-secrets"
    category = "write"
    priority = 10
    description = "Blocks committed credentials"

    def evaluate(self, action, parameters):
        if "API_KEY" in action.payload.get("content", ""):
            return RuleResult(outcome=Verdict.BLOCK, message="Secret detected",
                              pattern_key="api_key", pattern_type="content_pattern")
        return RuleResult(outcome=Verdict.ALLOW, pattern_key="api_key", pattern_type="content_pattern")


@pytest.fixture
def kernel():
    registry = RuleRegistry()
    registry.register(SecretRule())
    kernel = HookKernel(KernelConfig(), registry=registry, rng=random.Random(0))
    yield kernel
    kernel.close()


@pytest.fixture
def client(kernel):
    return TestClient(create_app(kernel=kernel))


class TestActionEndpoints:
    def test_submit_blocked_action(self, client):
        response = client.post("/actions", json={
            "id": "act_1",
            "target": "config/.env",
            "payload": {"content": "API_KEY=abc"},
            "category": "write",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "block"
        assert data["messages"] == ["Secret detected"]
        assert data["rule_results"][0]["rule"] == "no-secrets"

    def test_submit_generates_id(self, client):
        response = client.post("/actions", json={"target": "src/app.py", "payload": {"content": "ok"}})
        assert response.status_code == 200
        assert response.json()["action_id"].startswith("act_")
        assert response.json()["outcome"] == "allow"

    def test_feedback(self, client, kernel):
        client.post("/actions", json={"id": "act_1", "target": "a.py", "payload": {"content": "API_KEY=1"}})
        response = client.post("/actions/act_1/feedback", json={"should_block": False})
        assert response.status_code == 200

        patterns = client.get("/rules/no-secrets/patterns").json()
        assert patterns[0]["fp"] == 1
        assert patterns[0]["effectiveness"]["precision"] == 0.0

    def test_feedback_unknown_action(self, client):
        response = client.post("/actions/missing/feedback", json={"should_block": True})
        assert response.status_code == 404


class TestRuleEndpoints:
    def test_list_rules(self, client):
        rules = client.get("/rules").json()
        assert rules == [{
            "name": "no-secrets",
            "category": "write",
            "priority": 10,
            "depends_on": [],
            "description": "Blocks committed credentials",
        }]

    def test_executions(self, client, kernel):
        client.post("/actions", json={"id": "act_1", "target": "a.py"})
        kernel.engine.flush()
        executions = client.get("/rules/no-secrets/executions").json()
        assert len(executions) == 1
        assert executions[0]["action_id"] == "act_1"

    def test_unknown_rule(self, client):
        assert client.get("/rules/nope/executions").status_code == 404
        assert client.get("/rules/nope/patterns").status_code == 404
        assert client.post("/optimizations/nope/timeout").status_code == 404

    def test_metrics(self, client, kernel):
        client.post("/actions", json={"id": "act_1", "target": "a.py"})
        kernel.engine.flush()
        data = client.get("/metrics", params={"window_minutes": 5}).json()
        assert data["executions"] == 1
        assert data["per_rule"]["no-secrets"]["success_rate"] == 1.0


class TestParameterEndpoints:
    def test_defaults_are_seeded(self, client):
        params = client.get("/parameters").json()
        assert params == {"no-secrets.timeout": 3000.0}

    def test_history(self, client, kernel):
        kernel.parameters.set("no-secrets.timeout", 2000.0)
        history = client.get("/parameters/history", params={"name": "no-secrets.timeout"}).json()
        assert len(history) == 1
        assert history[0]["new_value"] == 2000.0


class TestOptimizationEndpoints:
    def test_single_optimizer_reports_skip(self, client):
        data = client.post("/optimizations/no-secrets/timeout").json()
        assert data["applied"] == []
        assert data["skipped"][0]["reason"] == "insufficient_sample"

    def test_patterns_and_strictness(self, client):
        assert client.post("/optimizations/no-secrets/patterns").status_code == 200
        assert client.post("/optimizations/no-secrets/strictness").status_code == 200

    def test_run_cycle(self, client):
        response = client.post("/optimizations/run")
        assert response.status_code == 200
        assert set(response.json()) >= {"applied", "concluded_tests", "rolled_back", "accepted", "skipped"}

    def test_lists(self, client):
        assert client.get("/optimizations").json() == []
        assert client.get("/optimizations", params={"status": "monitoring"}).json() == []
        assert client.get("/optimizations/results").json() == []


class TestABTestEndpoints:
    def test_lifecycle(self, client):
        response = client.post("/ab-tests", json={
            "rule": "no-secrets",
            "parameter": "timeout",
            "variant_value": 2000.0,
            "sample_ratio": 0.3,
        })
        assert response.status_code == 200
        test = response.json()
        assert test["control_value"] == 3000.0

        conflict = client.post("/ab-tests", json={
            "rule": "no-secrets", "parameter": "timeout", "variant_value": 2500.0,
        })
        assert conflict.status_code == 409

        assert client.get(f"/ab-tests/{test['id']}").json()["id"] == test["id"]
        assert len(client.get("/ab-tests").json()) == 1

        stopped = client.post(f"/ab-tests/{test['id']}/stop")
        assert stopped.status_code == 200
        assert stopped.json()["winner"] == "control"
        assert client.get("/ab-tests").json() == []

    def test_unknown_test(self, client):
        assert client.get("/ab-tests/ab_missing").status_code == 404
        assert client.post("/ab-tests/ab_missing/stop").status_code == 404

    def test_unknown_rule(self, client):
        response = client.post("/ab-tests", json={"rule": "nope", "parameter": "timeout", "variant_value": 1})
        assert response.status_code == 404

    def test_unusable_timeout_variant(self, client):
        response = client.post("/ab-tests", json={
            "rule": "no-secrets", "parameter": "timeout", "variant_value": "fast",
        })
        assert response.status_code == 422
        assert client.get("/ab-tests").json() == []


class TestChainAndMaintenance:
    def test_chain(self, client):
        data = client.get("/chain").json()
        assert data["execution_order"] == ["no-secrets"]
        assert data["statistics"]["total_rules"] == 1

    def test_chain_text(self, client):
        response = client.get("/chain/text")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "no-secrets" in response.text

    def test_purge(self, client):
        response = client.post("/maintenance/purge", json={"older_than_days": 0})
        assert response.status_code == 200
        assert response.json()["older_than_days"] == 0

    def test_purge_default_retention(self, client):
        response = client.post("/maintenance/purge")
        assert response.json() == {"deleted": 0, "older_than_days": 30}

    def test_scheduler_status(self, client):
        data = client.get("/scheduler/status").json()
        assert data["status"] == "stopped"
        assert [j["name"] for j in data["jobs"]] == ["tuning", "purge"]

    def test_scheduler_runs_while_app_is_served(self, kernel):
        with TestClient(create_app(kernel=kernel)) as served:
            assert served.get("/scheduler/status").json()["status"] == "running"
        assert kernel.scheduler.status == "stopped"

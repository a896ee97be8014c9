"""
Tests for the admin router and the health endpoint
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from fixbot.config import settings
from fixbot.routers.admin import router as admin_router
from fixbot.services.dlq_processor import SweepSummary
from fixbot.services.monitoring.circuit_breakers import BreakerConfig, CircuitBreakerRegistry, CircuitState

ADMIN_TOKEN = "admin-secret"


@pytest.fixture
def runtime():
    breakers = CircuitBreakerRegistry(default_config=BreakerConfig(failure_threshold=1))
    breakers.get("crm").record_failure(ConnectionError("down"))
    return SimpleNamespace(
        breakers=breakers,
        diagnostics=AsyncMock(return_value={"pipeline": {"processed": 3}}),
        dead_letters=SimpleNamespace(list_entries=AsyncMock(return_value=[])),
        sweeper=SimpleNamespace(sweep=AsyncMock(return_value=SweepSummary(processed=2, skipped=1))),
    )


@pytest.fixture
def app(runtime, monkeypatch):
    monkeypatch.setattr(settings, "admin_api_token", ADMIN_TOKEN)
    app = FastAPI()
    app.include_router(admin_router)
    app.state.runtime = runtime
    return app


@pytest.fixture
def client(app):
    return TestClient(app, headers={"X-Admin-Token": ADMIN_TOKEN})


class TestAdminRouter:

    def test_diagnostics(self, client):
        response = client.get("/api/v1/admin/diagnostics")

        assert response.status_code == 200
        assert response.json() == {"pipeline": {"processed": 3}}

    def test_list_dead_letters(self, client, runtime):
        response = client.get("/api/v1/admin/dead-letters", params={"status": "failed", "limit": 5})

        assert response.status_code == 200
        assert response.json() == {"count": 0, "entries": []}
        runtime.dead_letters.list_entries.assert_awaited_once_with(status="failed", limit=5)

    def test_unknown_status_is_rejected(self, client):
        response = client.get("/api/v1/admin/dead-letters", params={"status": "lost"})
        assert response.status_code == 400

    def test_manual_sweep(self, client):
        response = client.post("/api/v1/admin/dead-letters/sweep")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["result"]["processed"] == 2
        assert body["result"]["total"] == 3

    def test_manual_sweep_error(self, client, runtime):
        runtime.sweeper.sweep.side_effect = RuntimeError("store down")

        response = client.post("/api/v1/admin/dead-letters/sweep")

        assert response.json()["status"] == "error"

    def test_reset_breaker(self, client, runtime):
        assert runtime.breakers.get("crm").state == CircuitState.OPEN

        response = client.post("/api/v1/admin/circuit-breakers/crm/reset")

        assert response.status_code == 200
        assert response.json()["breaker"]["state"] == "CLOSED"

    def test_reset_unknown_breaker(self, client):
        response = client.post("/api/v1/admin/circuit-breakers/nope/reset")
        assert response.status_code == 404

    def test_reset_all_breakers(self, client, runtime):
        response = client.post("/api/v1/admin/circuit-breakers/reset")

        assert response.status_code == 200
        assert response.json()["breakers"] == ["crm"]
        assert runtime.breakers.get("crm").state == CircuitState.CLOSED

    def test_unavailable_without_runtime(self, client):
        client.app.state.runtime = None
        assert client.get("/api/v1/admin/diagnostics").status_code == 503


class TestAdminAuthentication:

    @pytest.mark.parametrize("headers", [{}, {"X-Admin-Token": "wrong"}])
    def test_missing_or_wrong_token_is_rejected(self, app, runtime, headers):
        client = TestClient(app, headers=headers)

        assert client.get("/api/v1/admin/diagnostics").status_code == 401
        assert client.post("/api/v1/admin/dead-letters/sweep").status_code == 401
        assert client.post("/api/v1/admin/circuit-breakers/reset").status_code == 401

        runtime.sweeper.sweep.assert_not_awaited()
        assert runtime.breakers.get("crm").state == CircuitState.OPEN

    def test_disabled_without_configured_token(self, app, monkeypatch):
        monkeypatch.setattr(settings, "admin_api_token", None)
        client = TestClient(app, headers={"X-Admin-Token": ""})

        assert client.post("/api/v1/admin/circuit-breakers/reset").status_code == 503


class TestHealth:

    def test_health_without_database(self):
        from fixbot.main import app

        response = TestClient(app).get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["services"]["database"] == "not_configured"
        assert body["services"]["scheduler"] == "stopped"

"""Tests for the health endpoint."""
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from api.main import app


def report(inbound_running: bool, campaigns_running: bool) -> dict:
    return {
        "tenant_id": "tenant-acme",
        "inbound": {"running": inbound_running, "processed": 12},
        "campaigns": {"running": campaigns_running, "processed": 3},
        "queues": {"inbound_events": 0, "marketing_queue": 4},
    }


@pytest.fixture
def client():
    # no context manager: the lifespan (and a real worker) never starts
    yield TestClient(app)
    app.state.worker = None


class TestHealth:
    def test_healthy(self, client):
        app.state.worker = SimpleNamespace(health=AsyncMock(return_value=report(True, True)))

        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["queues"]["marketing_queue"] == 4
        assert "timestamp" in body

    def test_degraded_when_a_loop_stopped(self, client):
        app.state.worker = SimpleNamespace(health=AsyncMock(return_value=report(True, False)))

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"

"""Tests for the assembled app: health, readiness, metrics, request id header."""

from __future__ import annotations

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.bundlesync.core.monitoring import _scrub_event
from src.bundlesync.main import create_app


@pytest_asyncio.fixture
async def client(engine, monkeypatch):
    monkeypatch.setattr("src.bundlesync.api.v1.health.get_engine", lambda: engine)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


class TestHealth:
    async def test_liveness(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_readiness_with_database(self, client):
        resp = await client.get("/health/ready")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ready"
        assert body["checks"]["database"] == "ok"
        assert body["checks"]["commerce"] in ("configured", "not_configured")
        assert body["checks"]["sync_engine"] == "not_started"

    async def test_readiness_without_database(self, client, monkeypatch):
        def broken_engine():
            raise RuntimeError("database unreachable")

        monkeypatch.setattr("src.bundlesync.api.v1.health.get_engine", broken_engine)
        resp = await client.get("/health/ready")
        assert resp.status_code == 503
        assert resp.json()["checks"]["database"] == "error"


class TestMiddleware:
    async def test_request_id_is_generated(self, client):
        resp = await client.get("/health")
        assert resp.headers.get("X-Request-ID")

    async def test_metrics_endpoint(self, client):
        await client.get("/health")
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "http_requests_total" in resp.text

    async def test_operator_routes_are_mounted(self, client):
        resp = await client.get("/api/v1/sync/bundles/anything")
        assert resp.status_code == 401


class TestSentryScrubbing:
    def test_credential_headers_are_scrubbed(self):
        event = {
            "request": {
                "headers": {
                    "Authorization": "Bearer abc",
                    "X-Shopify-Hmac-Sha256": "sig",
                    "X-Shopify-Topic": "orders/paid",
                }
            }
        }
        scrubbed = _scrub_event(event, {})
        headers = scrubbed["request"]["headers"]
        assert headers["Authorization"] == "[scrubbed]"
        assert headers["X-Shopify-Hmac-Sha256"] == "[scrubbed]"
        assert headers["X-Shopify-Topic"] == "orders/paid"

    def test_event_without_request_passes_through(self):
        event = {"message": "boom"}
        assert _scrub_event(event, {}) == {"message": "boom"}

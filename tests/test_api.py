"""Tests for the admin API."""

import asyncio
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from usagegate.api import create_app
from usagegate.config import Settings
from usagegate.services import Services


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings for an in-memory store with the built-in policy."""
    return Settings(
        store_backend="memory",
        quota_config_path=str(tmp_path / "absent.json"),
        log_level="WARNING",
    )


@pytest.fixture
def client(settings: Settings) -> Generator[TestClient, None, None]:
    """Test client with the application lifespan running."""
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def services_of(client: TestClient) -> Services:
    return client.app.state.services


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["store"]["backend"] == "memory"
        assert "X-Process-Time-Ms" in response.headers

    def test_health_degraded(self, client: TestClient) -> None:
        services_of(client).store.offline = True
        assert client.get("/health").json()["status"] == "degraded"


class TestQuotaRoutes:
    """Tests for quota administration routes."""

    def test_status(self, client: TestClient) -> None:
        ledger = services_of(client).ledger
        asyncio.run(ledger.increment_usage("u1", "export"))

        response = client.get("/v1/quota/u1", params={"tier": "free"})
        assert response.status_code == 200
        data = response.json()
        assert data["tier"] == "free"
        quotas = {q["action"]: q for q in data["quotas"]}
        assert quotas["export"]["remaining"] == 1
        assert quotas["export"]["limit_type"] == "monthly-quota"

    def test_status_unknown_tier_falls_back(self, client: TestClient) -> None:
        assert client.get("/v1/quota/u1", params={"tier": "gold"}).json()["tier"] == "free"

    def test_reset(self, client: TestClient) -> None:
        ledger = services_of(client).ledger
        asyncio.run(ledger.increment_usage("u1", "scan"))

        response = client.post("/v1/quota/u1/scan/reset")
        assert response.status_code == 200
        assert response.json()["counters_removed"] == 1

    def test_reset_unknown_action(self, client: TestClient) -> None:
        response = client.post("/v1/quota/u1/teleport/reset")
        assert response.status_code == 400
        assert "teleport" in response.json()["detail"]

    def test_bonus(self, client: TestClient) -> None:
        ledger = services_of(client).ledger
        for _ in range(2):
            asyncio.run(ledger.increment_usage("u1", "export"))

        response = client.post("/v1/quota/u1/export/bonus", json={"amount": 1})
        assert response.status_code == 200
        assert response.json()["used"] == 1

    def test_bonus_rejects_non_positive(self, client: TestClient) -> None:
        response = client.post("/v1/quota/u1/export/bonus", json={"amount": 0})
        assert response.status_code == 422

    def test_bonus_store_down(self, client: TestClient) -> None:
        services_of(client).store.offline = True
        response = client.post("/v1/quota/u1/export/bonus", json={"amount": 1})
        assert response.status_code == 503


class TestRateLimitRoutes:
    """Tests for rate-limit administration routes."""

    def test_snapshot_and_reset(self, client: TestClient) -> None:
        limiter = services_of(client).limiter
        asyncio.run(limiter.check_and_consume("key-1", "scan", 30, 60))

        response = client.get("/v1/ratelimit")
        assert response.json() == {"windows": {"scan": {"key-1": 1}}}

        response = client.delete("/v1/ratelimit/key-1/scan")
        assert response.json()["reset"] is True
        assert client.get("/v1/ratelimit", params={"action": "scan"}).json() == {"windows": {}}

    def test_snapshot_store_down(self, client: TestClient) -> None:
        services_of(client).store.offline = True
        assert client.get("/v1/ratelimit").status_code == 503


class TestCacheRoutes:
    """Tests for cache administration routes."""

    def test_stats_and_invalidate(self, client: TestClient) -> None:
        cache = services_of(client).cache
        asyncio.run(cache.store_result("food", {"barcode": "1"}, {"score": 1}))
        asyncio.run(cache.store_result("cosmetics", {"name": "Gel"}, {"score": 2}))

        stats = client.get("/v1/cache/stats").json()
        assert stats["total_entries"] == 2

        response = client.post("/v1/cache/invalidate", json={"prefix": "food:"})
        assert response.status_code == 200
        assert response.json()["deleted"] == 1
        assert client.get("/v1/cache/stats").json()["categories"] == {"cosmetics": 1}

    def test_invalidate_requires_prefix(self, client: TestClient) -> None:
        response = client.post("/v1/cache/invalidate", json={"prefix": ""})
        assert response.status_code == 422

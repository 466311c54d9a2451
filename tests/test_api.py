"""
Tests for the HTTP surface: routing, auth, rate limiting, errors and health.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import make_user
from rentbook.api.limiter import RateLimiter
from rentbook.core.config import AuthConfig
from rentbook.core.security import APIKeyAuthenticator
from rentbook.main import create_app

CRM_HEADERS = {"X-Api-Key": "crm-key", "X-Api-Extra": "crm-extra"}


@pytest.fixture
def client(services):
    with TestClient(create_app(services, run_background=False)) as c:
        yield c


@pytest.fixture
def secured(services):
    services.authenticator = APIKeyAuthenticator(AuthConfig(
        enabled=True,
        api_keys=[
            {"key": "crm-key", "extra": "crm-extra", "name": "crm",
             "permissions": ["read:availability", "read:items"]},
            {"key": "items-key", "extra": "items-extra", "name": "catalog", "permissions": ["read:items"]},
        ],
    ))
    return services


class TestAvailability:

    def test_single_item(self, client, engine):
        engine.create_day_booking(make_user(1), "camera", "2025-12-01")
        r = client.get("/api/v1/availability/camera", params={"date": "2025-12-01"})
        assert r.status_code == 200
        assert r.json() == {
            "available": True,
            "booked_count": 1,
            "total": 2,
            "item_name": "camera",
            "date": "2025-12-01",
        }

    def test_unknown_item(self, client):
        r = client.get("/api/v1/availability/drone", params={"date": "2025-12-01"})
        assert r.status_code == 404
        assert r.json()["error"] == "NotFound"

    def test_missing_date(self, client):
        r = client.get("/api/v1/availability/camera")
        assert r.status_code == 400
        assert r.json()["error"] == "InvalidArgument"

    def test_bad_date(self, client):
        assert client.get("/api/v1/availability/camera", params={"date": "1.12.2025"}).status_code == 400

    def test_bulk_get_csv(self, client):
        r = client.get("/api/v1/availability/bulk", params={"items": "camera, lens,drone", "dates": "2025-12-01"})
        assert r.status_code == 200
        assert [x["item_name"] for x in r.json()["results"]] == ["camera", "lens"]

    def test_bulk_post(self, client):
        r = client.post("/api/v1/availability/bulk",
                        json={"items": ["lens"], "dates": ["2025-12-01", "2025-12-02"]})
        assert r.status_code == 200
        assert [x["date"] for x in r.json()["results"]] == ["2025-12-01", "2025-12-02"]

    def test_bulk_empty_items(self, client):
        r = client.post("/api/v1/availability/bulk", json={"items": [], "dates": ["2025-12-01"]})
        assert r.status_code == 400

    def test_bulk_malformed_body(self, client):
        r = client.post("/api/v1/availability/bulk", content="{not json",
                        headers={"Content-Type": "application/json"})
        assert r.status_code == 400
        assert r.json()["error"] == "InvalidArgument"

    def test_items(self, client):
        r = client.get("/api/v1/items")
        assert r.status_code == 200
        assert [i["name"] for i in r.json()["items"]] == ["camera", "lens", "tripod"]


class TestAuth:

    def test_missing_credentials(self, secured, client):
        r = client.get("/api/v1/items")
        assert r.status_code == 401
        assert r.json()["error"] == "Unauthenticated"

    def test_wrong_secondary_token(self, secured, client):
        r = client.get("/api/v1/items", headers={"X-Api-Key": "crm-key", "X-Api-Extra": "nope"})
        assert r.status_code == 401

    def test_missing_permission(self, secured, client):
        r = client.get("/api/v1/availability/camera", params={"date": "2025-12-01"},
                       headers={"X-Api-Key": "items-key", "X-Api-Extra": "items-extra"})
        assert r.status_code == 403
        assert r.json()["error"] == "PermissionDenied"

    def test_valid(self, secured, client):
        r = client.get("/api/v1/availability/camera", params={"date": "2025-12-01"}, headers=CRM_HEADERS)
        assert r.status_code == 200


class TestRateLimit:

    def test_second_request_rejected(self, services, client):
        services.limiter = RateLimiter(rps=1, burst=1)
        assert client.get("/api/v1/items").status_code == 200
        r = client.get("/api/v1/items")
        assert r.status_code == 429
        assert r.json()["error"] == "TooManyRequests"

    def test_health_not_limited(self, services, client):
        services.limiter = RateLimiter(rps=1, burst=1)
        assert all(client.get("/healthz").status_code == 200 for _ in range(3))


class TestMiddleware:

    def test_request_id_echoed(self, client):
        r = client.get("/healthz", headers={"X-Request-Id": "abc-123"})
        assert r.headers["X-Request-Id"] == "abc-123"

    def test_request_id_generated(self, client):
        r = client.get("/api/v1/availability/drone", params={"date": "2025-12-01"})
        assert len(r.headers["X-Request-Id"]) == 32

    def test_options_preflight(self, client):
        r = client.options("/api/v1/items")
        assert r.status_code == 204
        assert r.headers["Access-Control-Allow-Origin"] == "*"
        assert "x-api-key" in r.headers["Access-Control-Allow-Headers"]


class TestHealth:

    def test_healthz(self, client):
        r = client.get("/healthz")
        assert (r.status_code, r.text) == (200, "ok")

    def test_readyz(self, client):
        r = client.get("/readyz")
        assert (r.status_code, r.text) == (200, "ready")

    def test_readyz_database_down(self, services, client, monkeypatch):
        def down():
            raise RuntimeError("connection refused")

        monkeypatch.setattr(services.database, "ping", down)
        r = client.get("/readyz")
        assert (r.status_code, r.text) == (503, "not ready")

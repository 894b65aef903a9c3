import pytest
from fastapi.testclient import TestClient

from services.api_gateway.main import app
from services.checkout_service.database import get_order_store
from shared.utils import settings, StorageWriteError

from conftest import FakeOrderStore

AUTH = {"Authorization": "Bearer health-secret"}


@pytest.fixture
def client(store):
    app.dependency_overrides[get_order_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health_requires_bearer(client, store):
    assert client.get("/api/health").status_code == 401
    assert client.get("/api/health", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/api/health", headers={"Authorization": "health-secret"}).status_code == 401
    assert store.calls == []


def test_health_locked_without_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "HEALTH_CHECK_SECRET", None)
    response = client.get("/api/health", headers={"Authorization": "Bearer "})

    assert response.status_code == 401
    assert response.json()["error"] == "Unauthorized"


def test_health_ok(client, store):
    response = client.get("/api/health", headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["timestamp"]
    assert store.calls == ["ping"]


def test_health_without_database():
    app.dependency_overrides[get_order_store] = lambda: FakeOrderStore(configured=False)
    try:
        response = TestClient(app).get("/api/health", headers=AUTH)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.json()["error"].startswith("Database not configured")


def test_health_database_unreachable(client, store, monkeypatch):
    async def unreachable():
        raise StorageWriteError("Database unreachable: timeout")

    monkeypatch.setattr(store, "ping", unreachable)
    response = client.get("/api/health", headers=AUTH)

    assert response.status_code == 500
    assert response.json()["message"] == "Database unreachable: timeout"


def test_liveness_probe(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["service"] == "api-gateway"
    assert body["status"] == "healthy"
    assert body["database"] == "configured"


def test_gateway_serves_every_router(client):
    paths = app.openapi()["paths"]
    for path in (
        "/api/create-checkout-session", "/api/get-session-details", "/api/stripe-webhook",
        "/api/stripe-publishable-key", "/api/printful-products", "/api/printful-mockup",
        "/api/printful-order", "/api/printful-designer-nonce", "/api/spotify-discography",
        "/api/spotify-latest", "/api/spotify-random-track",
    ):
        assert path in paths

    response = client.get("/api/get-session-details")
    assert response.status_code == 400
    assert response.json()["error"] == "Session ID is required"

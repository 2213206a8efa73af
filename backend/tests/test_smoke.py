"""Minimal smoke tests: the app boots and the public endpoints respond."""

from fastapi import FastAPI
from starlette.testclient import TestClient

from factoring.core.cache import InMemoryCache
from factoring.core.config import settings
from factoring.main import app


def test_app_starts():
    """The FastAPI app object can be imported and is a FastAPI instance."""
    assert isinstance(app, FastAPI)


def test_root_endpoint():
    """GET / returns 200 with app info."""
    response = TestClient(app).get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "running"
    assert "app" in data
    assert "version" in data


def test_lifespan_installs_cache(monkeypatch):
    """Entering the client runs the lifespan, which installs a cache backend."""
    monkeypatch.setattr(settings, "CACHE_BACKEND", "memory")
    with TestClient(app) as client:
        assert isinstance(client.app.state.cache, InMemoryCache)
        assert client.get("/").status_code == 200


def test_openapi_lists_routers():
    paths = TestClient(app).get("/openapi.json").json()["paths"]
    for prefix in (
        "/v1/invoices/",
        "/v1/anchor/invoices/pending",
        "/v1/admin/invoices/pending",
        "/v1/marketplace/invoices",
        "/v1/notifications/",
        "/v1/documents/{storage_id}",
    ):
        assert prefix in paths

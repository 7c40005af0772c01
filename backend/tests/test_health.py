"""Tests for the health endpoint."""
import pytest
from httpx import AsyncClient, ASGITransport

from storefront.main import app


@pytest.mark.asyncio
async def test_health_returns_ok():
    """GET /health should return 200 and report the environment."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "env" in data


@pytest.mark.asyncio
async def test_request_id_is_echoed():
    """Every response carries the request id, generated or passed through."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        generated = await client.get("/health")
        passed = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert generated.headers.get("X-Request-ID")
    assert passed.headers["X-Request-ID"] == "req-123"

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_endpoint(ac: AsyncClient):
    response = await ac.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "active"
    assert data["scheduler"] == {"running": False}
    assert "version" in data


@pytest.mark.asyncio
async def test_metrics_endpoint_exposed(ac: AsyncClient):
    await ac.get("/health")
    response = await ac.get("/metrics")
    assert response.status_code == 200
    assert "http_requests_total" in response.text

import pytest


@pytest.mark.asyncio
async def test_health(client):
    r = await client.get("/v1/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_openapi_lists_courier_routes(client):
    paths = (await client.get("/openapi.json")).json()["paths"]
    assert "/v1/webhooks/courier" in paths
    assert "/v1/internal/export-queue/drain" in paths

import asyncio

import httpx
import pytest
from fastapi import FastAPI

from trailer_engine.auth_middleware import ApiSecretMiddleware
from trailer_engine.pipeline import TrailerGenerationService, trailer_router
from trailer_engine.pipeline.models import TrailerRequest


@pytest.fixture
def service(provider, storage, cache, policy):
    return TrailerGenerationService(provider, storage, cache, policy=policy)


def _app(service, secret: str = "") -> FastAPI:
    app = FastAPI()
    app.add_middleware(ApiSecretMiddleware, secret=secret)
    app.include_router(trailer_router)
    app.state.service = service
    return app


def _client(app: FastAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.anyio
async def test_create_and_poll_trailer(service):
    async with _client(_app(service)) as client:
        resp = await client.post("/trailers", json={"title": "The Little Fox", "language": "en"})
        assert resp.status_code == 202
        job_id = resp.json()["job_id"]
        assert resp.json()["status"] == "pending"

        await asyncio.gather(*list(service._tasks))

        resp = await client.get(f"/trailers/{job_id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "completed"
        assert body["qc_report"]["overall"] == "PASS"
        assert body["video_url"].endswith("/trailer.json")


@pytest.mark.anyio
async def test_cached_title_is_answered_inline(service):
    await service.run_pipeline(TrailerRequest(title="The Little Fox"))

    async with _client(_app(service)) as client:
        resp = await client.post("/trailers", json={"title": "the little fox"})

    assert resp.status_code == 200
    assert resp.json()["cache_hit"] is True
    assert resp.json()["cost_report"]["breakdown"]["total"] == 0


@pytest.mark.anyio
async def test_invalid_request_and_unknown_job(service):
    async with _client(_app(service)) as client:
        assert (await client.post("/trailers", json={"title": ""})).status_code == 422
        assert (await client.post("/trailers", json={"title": "x", "language": "fr"})).status_code == 422
        assert (await client.get("/trailers/does-not-exist")).status_code == 404


@pytest.mark.anyio
async def test_cache_endpoints(service):
    await service.run_pipeline(TrailerRequest(title="Book One"))
    await service.run_pipeline(TrailerRequest(title="Book Two", author="Writer"))

    async with _client(_app(service)) as client:
        stats = (await client.get("/trailers/cache/stats")).json()
        assert stats["total_entries"] == 2

        resp = await client.delete("/trailers/cache", params={"title": "Book Two", "author": "Writer"})
        assert resp.status_code == 200
        assert resp.json()["deleted"] is True
        assert (await client.delete("/trailers/cache", params={"title": "Book Two"})).status_code == 404

        assert (await client.post("/trailers/cache/clean")).json() == {"removed": 0}
        assert (await client.delete("/trailers/cache")).json() == {"cleared": 1}


@pytest.mark.anyio
async def test_api_secret_required_when_configured(service):
    async with _client(_app(service, secret="s3cret")) as client:
        assert (await client.get("/trailers/cache/stats")).status_code == 401
        denied = await client.get("/trailers/cache/stats", headers={"X-Api-Secret": "wrong"})
        assert denied.status_code == 401

        allowed = await client.get("/trailers/cache/stats", headers={"X-Api-Secret": "s3cret"})
        assert allowed.status_code == 200


@pytest.mark.anyio
async def test_health_and_metrics_are_public():
    from trailer_engine.main import app

    async with _client(app) as client:
        assert (await client.get("/health")).json()["status"] == "ok"
        snapshot = (await client.get("/metrics")).json()
        assert "counters" in snapshot
        assert "cache_hit_rate" in snapshot

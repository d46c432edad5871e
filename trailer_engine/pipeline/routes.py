"""
FastAPI routes for the trailer pipeline.

Endpoints:
  POST   /trailers                Start a trailer job (cache hits return at once)
  GET    /trailers/{job_id}       Get job status / final result
  GET    /trailers/cache/stats    Cache entry and request counts
  DELETE /trailers/cache          Evict one title (or everything without ?title)
  POST   /trailers/cache/clean    Drop expired cache entries
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from .models import JobStatus, TrailerRequest, TrailerResult
from .orchestrator import TrailerGenerationService

logger = logging.getLogger(__name__)

trailer_router = APIRouter(prefix="/trailers", tags=["trailers"])


def _service(request: Request) -> TrailerGenerationService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Trailer service not initialised")
    return service


# ── Cache ────────────────────────────────────────────────────────────────────
# Registered before /{job_id} so "cache" is never read as a job id

@trailer_router.get("/cache/stats")
async def cache_stats(request: Request):
    return _service(request).cache.stats()


@trailer_router.delete("/cache")
async def invalidate_cache(
    request: Request,
    title: Optional[str] = None,
    author: Optional[str] = None,
):
    """Evict a single title, or clear the whole cache when no title is given."""
    cache = _service(request).cache
    if title is None:
        return {"cleared": cache.clear()}

    removed = cache.delete(title, author)
    if not removed:
        raise HTTPException(status_code=404, detail="No cached trailer for this title")
    return {"deleted": True, "title": title, "author": author}


@trailer_router.post("/cache/clean")
async def clean_cache(request: Request):
    return {"removed": _service(request).cache.clean_expired()}


# ── Jobs ─────────────────────────────────────────────────────────────────────

@trailer_router.post("", response_model=TrailerResult)
async def create_trailer(body: TrailerRequest, request: Request):
    """
    Start a trailer job.

    A cached title is answered inline with 200. Anything else is queued in
    the background and answered with 202 and the job id to poll.
    """
    service = _service(request)

    if service.cache.has(body.title, body.author):
        return await service.run_pipeline(body)

    job_id = service.run_pipeline_background(body)
    logger.info(f"[{job_id}] Trailer job queued for '{body.title}'")
    return JSONResponse(
        status_code=202,
        content={"job_id": job_id, "status": JobStatus.PENDING.value},
    )


@trailer_router.get("/{job_id}", response_model=TrailerResult)
async def get_trailer(job_id: str, request: Request):
    result = _service(request).get_status(job_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return result

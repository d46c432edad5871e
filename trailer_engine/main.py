import os
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from . import metrics
from .auth_middleware import ApiSecretMiddleware
from .pipeline import TrailerGenerationService, trailer_router
from .pipeline.cache import ResultCache
from .pipeline.config import CacheSettings, PricingTable, QCThresholds, RetryPolicy
from .provider_factory import ProviderFactory

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Trailer engine starting up...")
    cache = ResultCache.from_settings(CacheSettings.from_env())
    removed = cache.clean_expired()
    if removed:
        logger.info(f"Dropped {removed} expired cache entries from a previous session")

    storage = ProviderFactory.get_storage()
    app.state.service = TrailerGenerationService(
        ProviderFactory.get_content_provider(storage),
        storage,
        cache,
        policy=RetryPolicy.from_env(),
        thresholds=QCThresholds.from_env(),
        pricing=PricingTable.from_env(),
    )
    yield
    logger.info("Trailer engine shutting down...")
    cache.close()


app = FastAPI(title="Trailer Engine", lifespan=lifespan)
app.add_middleware(ApiSecretMiddleware)
app.include_router(trailer_router)


@app.get("/health")
def health_check():
    """Verify the engine is running and provider keys are configured."""
    gemini_key = os.environ.get("GEMINI_API_KEY", "")
    return {
        "status": "ok",
        "gemini_api_key_set": bool(gemini_key),
        "kie_api_key_set": bool(os.environ.get("KIE_API_KEY", "")),
        "redis_configured": bool(os.environ.get("REDIS_URL", "")),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all engine metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("trailer_engine.main:app", host="0.0.0.0", port=port, reload=True)

import os
import time
import logging
import uvicorn
from fastapi import FastAPI
from contextlib import asynccontextmanager
from dotenv import load_dotenv

load_dotenv()

from .auth_middleware import WorkerAuthMiddleware
from .pipeline.routes import asmr_router
from . import rate_limiter
from . import metrics
from . import gemini
from . import runware
from . import elevenlabs

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Worker starting up...")
    metrics.set_gauge("start_time", time.time())
    if rate_limiter.get_redis() is None:
        logger.info("No Redis, using in-memory rate limiter")
    yield
    logger.info("Worker shutting down...")


app = FastAPI(lifespan=lifespan)
app.add_middleware(WorkerAuthMiddleware)
app.include_router(asmr_router)


@app.get("/health")
def health_check():
    """Verify worker is running and providers are configured."""
    return {
        "status": "ok",
        "gemini_api_key_set": gemini.is_available(),
        "runware_api_key_set": runware.is_available(),
        "elevenlabs_api_key_set": elevenlabs.is_available(),
        "supabase_url_set": bool(os.environ.get("SUPABASE_URL", "")),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    metrics.set_gauge("active_jobs", rate_limiter.get_active_jobs())
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("studio_workers.main:app", host="0.0.0.0", port=port, reload=True)

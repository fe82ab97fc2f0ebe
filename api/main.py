"""
FastAPI Application — health surface for the hub worker.

The worker (inbound consumer + campaign consumer) runs inside the app
lifespan; uvicorn owns SIGTERM/SIGINT handling.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config.logging import configure_logging
from config.settings import get_settings
from core.runtime import Worker
from database.session import close_db

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Lifespan
# ──────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.logging.level, settings.logging.json)

    worker = Worker(settings)
    await worker.start()
    app.state.worker = worker
    logger.info("hub_worker_api_started", queue_backend=settings.redis.backend)
    yield

    await worker.stop()
    await close_db()
    logger.info("hub_worker_api_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Hub Worker",
    description="Omnichannel event processing and campaign dispatch",
    version="1.0.0",
    lifespan=lifespan,
)


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    worker: Worker = app.state.worker
    report = await worker.health()
    healthy = report["inbound"]["running"] and report["campaigns"]["running"]
    report["status"] = "healthy" if healthy else "degraded"
    report["timestamp"] = datetime.now(timezone.utc).isoformat()
    return JSONResponse(report, status_code=200 if healthy else 503)


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

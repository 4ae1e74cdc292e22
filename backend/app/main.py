"""Mesh job sync service: HTTP surface plus the background sync loop."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.logging_config import RequestIdMiddleware, configure_logging

# Before any other app import so import-time records are JSON too
configure_logging(level=os.environ.get("LOG_LEVEL", "INFO"))

from app import deps  # noqa: E402
from app.api.three_d import router as three_d_router  # noqa: E402
from app.config import settings  # noqa: E402
from app.database import init_db  # noqa: E402
from app.services.job_store import JobStoreError  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not settings.hunyuan_api_url:
        logger.warning("HUNYUAN_API_URL is not set; job sync and submissions will fail")
    init_db()
    logger.info("Database ready", extra={"database_url": settings.database_url.split("://", 1)[0]})

    # Store and client exist before the first cycle fires
    deps.get_job_store()
    deps.get_hunyuan_client()
    sync_loop = deps.get_sync_loop()
    if settings.sync_enabled:
        sync_loop.start()
    else:
        logger.info("Background job sync disabled by configuration")

    try:
        yield
    finally:
        await deps.shutdown()
        logger.info("Mesh job sync service stopped")


app = FastAPI(title="Mesh Job Sync API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)
# Added last so it wraps CORS and preflight responses carry the request id too
app.add_middleware(RequestIdMiddleware)

app.include_router(three_d_router)


@app.exception_handler(JobStoreError)
async def job_store_error_handler(request: Request, exc: JobStoreError) -> JSONResponse:
    logger.error("Job store failure on %s", request.url.path, extra={"job_id": exc.job_id})
    return JSONResponse(status_code=500, content={"detail": "Failed to update job"})


@app.get("/api/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}

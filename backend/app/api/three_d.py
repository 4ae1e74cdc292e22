"""3D jobs API — submission, status, history and the push (webhook) path.

Implements:
  POST   /api/3d/generate               — submit a text/image job upstream
  POST   /api/3d/register-job           — record a job submitted elsewhere
  POST   /api/3d/webhook/job-update     — push notification from the external API
  GET    /api/3d/status/{job_id}        — on-demand sync, then the stored job
  GET    /api/3d/result/{job_id}        — the stored job as-is
  GET    /api/3d/history                — jobs for one owner, newest first
  DELETE /api/3d/jobs/{job_id}          — owner-initiated delete of a finished job
  POST   /api/3d/sync                   — run one reconciliation cycle now

Callers identify themselves with a plain ``user_id``; authentication happens
upstream of this service.
"""

import logging
from datetime import datetime
from typing import Any, Literal

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field

from app.deps import get_hunyuan_client, get_job_store, get_reconciler, get_sync_loop
from app.services.hunyuan_client import ExternalApiError, ExternalJobStatus, HunyuanClient
from app.services.job_store import JobRecord, JobStore
from app.services.job_sync import JobSyncLoop
from app.services.reconciler import JobReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/3d", tags=["3d"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class GenerateRequest(BaseModel):
    """Body of POST /api/3d/generate.  Exactly one of prompt / image_url."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str | None = None
    image_url: str | None = Field(default=None, alias="imageUrl")
    user_id: str | None = None
    generate_type: Literal["Normal", "LowPoly", "Geometry", "Sketch"] = "Normal"
    face_count: int | None = Field(default=None, ge=1)
    enable_pbr: bool = True
    polygon_type: Literal["triangle", "quadrilateral"] | None = None


class GenerateResponse(BaseModel):
    job_id: str


class RegisterJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(min_length=1)
    prompt: str | None = None
    image_url: str | None = Field(default=None, alias="imageUrl")
    user_id: str | None = None


class RegisterJobResponse(BaseModel):
    success: bool = True
    job_id: str
    message: str | None = None


class WebhookPayload(BaseModel):
    """Push notification body.

    Only ``job_id`` is validated strictly; the rest is coerced through
    ``ExternalJobStatus`` exactly like a polled response.
    """

    job_id: str = Field(min_length=1)
    status: Any = None
    result: Any = None
    error: Any = None
    user_id: str | None = None

    def to_external(self) -> ExternalJobStatus:
        return ExternalJobStatus.from_payload(
            {"status": self.status, "result": self.result, "error": self.error}
        )


class WebhookResponse(BaseModel):
    success: bool = True
    job_id: str


class JobResponse(BaseModel):
    """Public representation of a Job record."""

    job_id: str
    owner_id: str | None
    status: str
    prompt: str | None
    image_url: str | None
    generate_type: str
    face_count: int | None
    enable_pbr: bool
    polygon_type: str | None
    result_glb_url: str | None
    preview_image_url: str | None
    error_code: str | None
    error_message: str | None
    created_at: datetime | None
    updated_at: datetime | None


class JobListResponse(BaseModel):
    jobs: list[JobResponse]


class SyncResponse(BaseModel):
    synced: int
    failed: int
    skipped: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _job_to_response(job: JobRecord) -> JobResponse:
    return JobResponse(
        job_id=job.id,
        owner_id=job.owner_id,
        status=job.status,
        prompt=job.prompt,
        image_url=job.image_url,
        generate_type=job.generate_type,
        face_count=job.face_count,
        enable_pbr=job.enable_pbr,
        polygon_type=job.polygon_type,
        result_glb_url=job.result_glb_url,
        preview_image_url=job.preview_image_url,
        error_code=job.error_code,
        error_message=job.error_message,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


def _check_owner(job: JobRecord, user_id: str | None) -> None:
    """Unowned jobs and anonymous callers may view; otherwise owner only."""
    if user_id and job.owner_id and job.owner_id != user_id:
        raise HTTPException(status_code=403, detail="You don't have permission to view this job")


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


@router.post("/generate", response_model=GenerateResponse)
async def generate(
    body: GenerateRequest,
    client: HunyuanClient = Depends(get_hunyuan_client),
    store: JobStore = Depends(get_job_store),
) -> GenerateResponse:
    """Submit a text-to-3D or image-to-3D job and record it in WAIT."""
    if not body.prompt and not body.image_url:
        raise HTTPException(status_code=400, detail="Either prompt or image_url is required")

    try:
        if body.prompt:
            job_id = await client.submit_text_to_3d(body.prompt, body.user_id)
        else:
            job_id = await client.submit_image_to_3d(body.image_url, body.user_id)
    except ExternalApiError as exc:
        logger.error("External API rejected job submission: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except httpx.HTTPError as exc:
        logger.error("External API unreachable: %s", exc)
        raise HTTPException(status_code=502, detail="External API unreachable") from exc

    await store.create_job(
        job_id,
        owner_id=body.user_id,
        prompt=body.prompt,
        image_url=body.image_url,
        generate_type=body.generate_type,
        face_count=body.face_count,
        enable_pbr=body.enable_pbr,
        polygon_type=body.polygon_type,
    )
    return GenerateResponse(job_id=job_id)


@router.post("/register-job", response_model=RegisterJobResponse)
async def register_job(
    body: RegisterJobRequest,
    store: JobStore = Depends(get_job_store),
) -> RegisterJobResponse:
    """Record a job id submitted directly to the external API.

    Idempotent: an existing job is left alone, except that an unowned job
    is claimed by the caller.
    """
    existing = await store.get_job(body.job_id)
    if existing is not None:
        if existing.owner_id is None and body.user_id:
            await store.assign_owner(body.job_id, body.user_id)
        return RegisterJobResponse(job_id=body.job_id, message="Job already exists")

    await store.create_job(
        body.job_id,
        owner_id=body.user_id,
        prompt=body.prompt,
        image_url=body.image_url,
    )
    logger.info(
        "Job registered",
        extra={"job_id": body.job_id, "owner_id": body.user_id, "prompt": (body.prompt or "")[:50]},
    )
    return RegisterJobResponse(job_id=body.job_id)


# ---------------------------------------------------------------------------
# Push path
# ---------------------------------------------------------------------------


@router.post("/webhook/job-update", response_model=WebhookResponse)
async def webhook_job_update(
    payload: WebhookPayload,
    reconciler: JobReconciler = Depends(get_reconciler),
) -> WebhookResponse:
    """Apply a status notification pushed by the external API.

    Unseen jobs are created.  Duplicate or late deliveries leave the stored
    job unchanged.
    """
    await reconciler.apply_update(
        payload.job_id,
        payload.to_external(),
        create_missing=True,
        owner_id=payload.user_id,
    )
    return WebhookResponse(job_id=payload.job_id)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/status/{job_id}", response_model=JobResponse)
async def get_status(
    job_id: str,
    user_id: str | None = Query(default=None),
    client: HunyuanClient = Depends(get_hunyuan_client),
    store: JobStore = Depends(get_job_store),
    reconciler: JobReconciler = Depends(get_reconciler),
) -> JobResponse:
    """Sync the job from the external API, then return the stored job.

    Jobs unknown locally but known upstream are created (legacy support).
    When the API is unreachable the stored job is returned as-is.
    """
    stored = await store.get_job(job_id)
    if stored is not None:
        _check_owner(stored, user_id)

    try:
        external = await client.fetch_status(job_id)
    except (httpx.HTTPError, ExternalApiError) as exc:
        logger.warning(
            "Failed to fetch from API, using stored job: %s", exc, extra={"job_id": job_id}
        )
        external = None

    job = stored
    if external is not None:
        job = await reconciler.apply_update(
            job_id, external, create_missing=True, owner_id=user_id
        )

    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_to_response(job)


@router.get("/result/{job_id}", response_model=JobResponse)
async def get_result(
    job_id: str,
    user_id: str | None = Query(default=None),
    store: JobStore = Depends(get_job_store),
) -> JobResponse:
    """Return the stored job without contacting the external API."""
    job = await store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    _check_owner(job, user_id)
    return _job_to_response(job)


@router.get("/history", response_model=JobListResponse)
async def history(
    user_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    store: JobStore = Depends(get_job_store),
) -> JobListResponse:
    """List the caller's jobs, newest first.  Anonymous callers get nothing."""
    if not user_id:
        return JobListResponse(jobs=[])
    jobs = await store.list_jobs_for_owner(user_id, limit)
    return JobListResponse(jobs=[_job_to_response(j) for j in jobs])


# ---------------------------------------------------------------------------
# Owner operations
# ---------------------------------------------------------------------------


@router.delete(
    "/jobs/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a finished job",
    description=(
        "Permanently deletes a job record. Only the owner may delete, and only "
        "jobs in **DONE** or **FAIL** status; active jobs are still being "
        "reconciled and are rejected."
    ),
)
async def delete_job(
    job_id: str,
    user_id: str = Query(min_length=1),
    store: JobStore = Depends(get_job_store),
) -> Response:
    """Returns 204 on success, 404 / 403 / 409 otherwise."""
    job = await store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.owner_id != user_id:
        raise HTTPException(status_code=403, detail="You don't have permission to delete this job")

    deleted = await store.delete_job(job_id, user_id)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Job cannot be deleted while it is still running",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sync", response_model=SyncResponse)
async def sync_now(loop: JobSyncLoop = Depends(get_sync_loop)) -> SyncResponse:
    """Run one reconciliation cycle immediately (for cron-style deployments)."""
    stats = await loop.run_cycle()
    return SyncResponse(**stats.as_dict())

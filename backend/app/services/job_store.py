"""Job store — creates, updates and queries Job records.

Keeps DB operations isolated from the reconciliation engine and the API
layer.  The public methods are coroutines: each one opens its own session,
runs the blocking SQLAlchemy work on the default executor and returns an
immutable ``JobRecord`` snapshot, never a live ORM row.

Every write is scoped to a single job id and refreshes ``updated_at``.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.job import (
    ACTIVE_JOB_STATUSES,
    JOB_STATUS_WAIT,
    TERMINAL_JOB_STATUSES,
    VALID_JOB_STATUSES,
    Job,
)

logger = logging.getLogger(__name__)


class JobStoreError(Exception):
    """A persistence operation failed for ``job_id``."""

    def __init__(self, message: str, job_id: str | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id


@dataclass(frozen=True)
class JobRecord:
    """Read-only snapshot of a persisted job."""

    id: str
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

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @classmethod
    def from_model(cls, job: Job) -> "JobRecord":
        return cls(
            id=job.id,
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


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStore:
    """CRUD operations for Job records."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory or get_db

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run blocking session work without stalling the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    def _with_session(self, job_id: str | None, action: str, fn: Callable[[Session], Any]) -> Any:
        db = self._session_factory()
        try:
            return fn(db)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "Failed to %s", action, extra={"job_id": job_id, "error": str(exc)}
            )
            raise JobStoreError(f"Database error while trying to {action}: {exc}", job_id) from exc
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def _create_job(self, job_id: str, fields: dict[str, Any]) -> JobRecord:
        db = self._session_factory()
        try:
            job = Job(id=job_id, status=JOB_STATUS_WAIT, **fields)
            db.add(job)
            try:
                db.commit()
            except IntegrityError:
                # Lost a create race with a concurrent delivery; keep the winner
                db.rollback()
                existing = db.get(Job, job_id)
                if existing is None:
                    raise
                logger.debug("create_job: job already exists", extra={"job_id": job_id})
                return JobRecord.from_model(existing)
            db.refresh(job)
            logger.info(
                "Created job", extra={"job_id": job_id, "owner_id": fields.get("owner_id")}
            )
            return JobRecord.from_model(job)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to create job", extra={"job_id": job_id, "error": str(exc)})
            raise JobStoreError(f"Database error while trying to create job: {exc}", job_id) from exc
        finally:
            db.close()

    async def create_job(
        self,
        job_id: str,
        *,
        owner_id: str | None = None,
        prompt: str | None = None,
        image_url: str | None = None,
        generate_type: str = "Normal",
        face_count: int | None = None,
        enable_pbr: bool = True,
        polygon_type: str | None = None,
    ) -> JobRecord:
        """Create a job in WAIT state; returns the existing record if the id is taken."""
        fields = dict(
            owner_id=owner_id,
            prompt=prompt,
            image_url=image_url,
            generate_type=generate_type,
            face_count=face_count,
            enable_pbr=enable_pbr,
            polygon_type=polygon_type,
        )
        return await self._run(self._create_job, job_id, fields)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def _update_fields(self, job_id: str, action: str, values: dict[str, Any]) -> bool:
        def op(db: Session) -> bool:
            job = db.get(Job, job_id)
            if job is None:
                logger.warning("%s: job not found", action, extra={"job_id": job_id})
                return False
            for key, value in values.items():
                setattr(job, key, value)
            job.updated_at = _utcnow()
            db.commit()
            return True

        return self._with_session(job_id, action, op)

    async def update_status(
        self,
        job_id: str,
        status: str,
        *,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Set status and error fields.  Returns False if the job does not exist."""
        if status not in VALID_JOB_STATUSES:
            raise ValueError(f"invalid job status: {status!r}")
        return await self._run(
            self._update_fields,
            job_id,
            "update job status",
            {"status": status, "error_code": error_code, "error_message": error_message},
        )

    async def update_result(
        self,
        job_id: str,
        result_glb_url: str | None,
        preview_image_url: str | None,
    ) -> bool:
        """Set artifact URLs.  Returns False if the job does not exist."""
        return await self._run(
            self._update_fields,
            job_id,
            "update job result",
            {"result_glb_url": result_glb_url, "preview_image_url": preview_image_url},
        )

    def _assign_owner(self, job_id: str, owner_id: str) -> bool:
        def op(db: Session) -> bool:
            job = db.get(Job, job_id)
            if job is None or job.owner_id is not None:
                return False
            job.owner_id = owner_id
            job.updated_at = _utcnow()
            db.commit()
            logger.info("Assigned owner to job", extra={"job_id": job_id, "owner_id": owner_id})
            return True

        return self._with_session(job_id, "assign job owner", op)

    async def assign_owner(self, job_id: str, owner_id: str) -> bool:
        """Claim an unowned (legacy) job.  Never overwrites an existing owner."""
        return await self._run(self._assign_owner, job_id, owner_id)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def _delete_job(self, job_id: str, owner_id: str) -> bool:
        def op(db: Session) -> bool:
            job = db.get(Job, job_id)
            if job is None or job.owner_id != owner_id:
                return False
            if job.status not in TERMINAL_JOB_STATUSES:
                return False
            db.delete(job)
            db.commit()
            logger.info("Deleted job", extra={"job_id": job_id, "owner_id": owner_id})
            return True

        return self._with_session(job_id, "delete job", op)

    async def delete_job(self, job_id: str, owner_id: str) -> bool:
        """Delete a terminal job owned by ``owner_id``.  False if not allowed."""
        return await self._run(self._delete_job, job_id, owner_id)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def _get_job(self, job_id: str) -> JobRecord | None:
        def op(db: Session) -> JobRecord | None:
            job = db.get(Job, job_id)
            return JobRecord.from_model(job) if job else None

        return self._with_session(job_id, "get job", op)

    async def get_job(self, job_id: str) -> JobRecord | None:
        """Fetch a job by id, or None."""
        return await self._run(self._get_job, job_id)

    def _list(self, action: str, limit: int, *criteria: Any) -> list[JobRecord]:
        def op(db: Session) -> list[JobRecord]:
            rows = (
                db.query(Job)
                .filter(*criteria)
                .order_by(Job.created_at.desc(), Job.id)
                .limit(limit)
                .all()
            )
            return [JobRecord.from_model(j) for j in rows]

        return self._with_session(None, action, op)

    async def list_active_jobs(self, limit: int = 1000) -> list[JobRecord]:
        """Return up to ``limit`` WAIT/RUN jobs, newest first."""
        return await self._run(
            self._list, "list active jobs", limit, Job.status.in_(ACTIVE_JOB_STATUSES)
        )

    async def list_jobs_for_owner(self, owner_id: str, limit: int = 100) -> list[JobRecord]:
        """Return up to ``limit`` jobs owned by ``owner_id``, newest first."""
        return await self._run(
            self._list, "list jobs for owner", limit, Job.owner_id == owner_id
        )

"""Job reconciler — brings a stored job in line with the external API.

Two write paths share one contract:

* poll — ``reconcile(job_id)``, driven by the background sync loop.  Never
  creates records and never raises; every failure becomes ``False``.
* push — ``apply_update(job_id, status, ...)``, driven by webhook
  deliveries and on-demand status checks.  May create the record and lets
  store errors propagate to the caller.

Both map the external status, diff against the stored snapshot and only
write what differs, so re-applying the same upstream state is a no-op.
Status never moves backwards: terminal jobs (FAIL/DONE) are frozen and a
RUN job does not fall back to WAIT on a late or unrecognised status.
"""

import asyncio
import logging
from dataclasses import dataclass

import httpx

from app.config import settings
from app.logging_config import bind_job_id
from app.models.job import (
    JOB_STATUS_DONE,
    JOB_STATUS_FAIL,
    JOB_STATUS_RUN,
    JOB_STATUS_WAIT,
    TERMINAL_JOB_STATUSES,
)
from app.services.artifact_urls import ArtifactUrls, get_artifact_urls
from app.services.hunyuan_client import ExternalJobStatus, HunyuanClient
from app.services.job_store import JobRecord, JobStore
from app.services.status_mapper import map_status

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Job failed"

_STATUS_RANK: dict[str, int] = {
    JOB_STATUS_WAIT: 0,
    JOB_STATUS_RUN: 1,
    JOB_STATUS_FAIL: 2,
    JOB_STATUS_DONE: 2,
}


def _can_transition(current: str, target: str) -> bool:
    if current == target or current in TERMINAL_JOB_STATUSES:
        return False
    return _STATUS_RANK[target] > _STATUS_RANK.get(current, 0)


@dataclass
class SyncOutcome:
    """Which writes a single reconciliation issued."""

    status_written: bool = False
    result_written: bool = False

    @property
    def writes(self) -> int:
        return int(self.status_written) + int(self.result_written)


class JobReconciler:
    """Diff-before-write synchronisation of one job at a time."""

    def __init__(
        self,
        store: JobStore,
        client: HunyuanClient,
        urls: ArtifactUrls | None = None,
        fetch_timeout: float | None = None,
    ) -> None:
        self._store = store
        self._client = client
        self._urls = urls or get_artifact_urls()
        self._fetch_timeout = (
            fetch_timeout if fetch_timeout is not None else settings.hunyuan_api_timeout
        )

    # ------------------------------------------------------------------
    # Poll path
    # ------------------------------------------------------------------

    async def reconcile(self, job_id: str) -> bool:
        """Sync one job from the external API.

        Returns True when the fetch succeeded and any needed writes were
        made (including none), False when the job was skipped or anything
        failed.  Never raises.
        """
        with bind_job_id(job_id):
            try:
                external = await asyncio.wait_for(
                    self._client.fetch_status(job_id), timeout=self._fetch_timeout
                )
                if external is None:
                    return False

                record = await self._store.get_job(job_id)
                if record is None:
                    logger.debug("Job not found in database, skipping sync")
                    return False

                await self._apply(record, external)
                return True
            except (asyncio.TimeoutError, httpx.TimeoutException):
                logger.warning("Timed out fetching job status from API")
                return False
            except httpx.TransportError as exc:
                logger.warning("Transport error fetching job status: %s", exc)
                return False
            except Exception:
                logger.exception("Failed to sync job from API")
                return False

    # ------------------------------------------------------------------
    # Push path
    # ------------------------------------------------------------------

    async def apply_update(
        self,
        job_id: str,
        external: ExternalJobStatus,
        *,
        create_missing: bool = True,
        owner_id: str | None = None,
    ) -> JobRecord | None:
        """Apply an externally supplied status to the stored job.

        Creates the record in WAIT first when it is unseen and
        ``create_missing`` is set.  Returns the job as stored afterwards,
        or None when it does not exist and may not be created.
        """
        with bind_job_id(job_id):
            record = await self._store.get_job(job_id)
            if record is None:
                if not create_missing:
                    return None
                prompt = external.result.prompt if external.result else None
                record = await self._store.create_job(job_id, owner_id=owner_id, prompt=prompt)

            outcome = await self._apply(record, external)
            if outcome.writes:
                return await self._store.get_job(job_id)
            return record

    # ------------------------------------------------------------------
    # Shared diff-and-write
    # ------------------------------------------------------------------

    async def _apply(self, record: JobRecord, external: ExternalJobStatus) -> SyncOutcome:
        outcome = SyncOutcome()
        target = map_status(external.status)
        current = record.status

        if target != current:
            if _can_transition(current, target):
                error_message = None
                if target == JOB_STATUS_FAIL:
                    error_message = external.error or DEFAULT_FAILURE_MESSAGE
                await self._store.update_status(
                    record.id, target, error_code=None, error_message=error_message
                )
                outcome.status_written = True
                logger.info(
                    "Job status updated",
                    extra={"old_status": current, "new_status": target},
                )
                current = target
            else:
                logger.info(
                    "Ignoring status change that would move job backwards",
                    extra={
                        "stored_status": current,
                        "external_status": external.status,
                        "mapped_status": target,
                    },
                )

        if target == JOB_STATUS_DONE and current == JOB_STATUS_DONE and external.result:
            glb_url = self._urls.normalize_glb_url(record.id, external.result.mesh_url)
            preview_url = self._urls.normalize_preview_url(record.id, external.result.preview_url)
            # A missing URL in a later payload never erases one we already hold
            glb_url = glb_url or record.result_glb_url
            preview_url = preview_url or record.preview_image_url

            if glb_url != record.result_glb_url or preview_url != record.preview_image_url:
                await self._store.update_result(record.id, glb_url, preview_url)
                outcome.result_written = True
                logger.info(
                    "Job result updated",
                    extra={"glb_url": glb_url, "preview_url": preview_url},
                )

        return outcome

"""Background job sync — periodically reconciles every active job.

One cycle:
    1. List up to ``max_scan`` WAIT/RUN jobs from the store.
    2. Split them into batches of ``batch_size``.
    3. Reconcile each batch concurrently, pausing ``batch_delay_ms``
       between batches so the external API never sees more than one
       batch of outstanding requests.
    4. Count True results as synced, everything else as failed.

The ticker fires every ``interval_ms`` and launches each cycle as its own
task.  A tick that lands while the previous cycle is still running is
skipped and logged rather than starting an overlapping cycle, and a cycle
failure is logged without stopping the ticker.
"""

import asyncio
import contextlib
import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from app.config import settings
from app.services.job_store import JobRecord, JobStore
from app.services.reconciler import JobReconciler

logger = logging.getLogger(__name__)


@dataclass
class SyncStats:
    synced: int = 0
    failed: int = 0
    skipped: bool = False

    def as_dict(self) -> dict[str, int | bool]:
        return {"synced": self.synced, "failed": self.failed, "skipped": self.skipped}


def _batched(jobs: Sequence[JobRecord], size: int) -> Iterator[Sequence[JobRecord]]:
    for start in range(0, len(jobs), size):
        yield jobs[start : start + size]


class JobSyncLoop:
    """Timer-driven driver for ``JobReconciler`` over all active jobs."""

    def __init__(
        self,
        store: JobStore,
        reconciler: JobReconciler,
        *,
        interval_ms: int | None = None,
        batch_size: int | None = None,
        batch_delay_ms: int | None = None,
        max_scan: int | None = None,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._interval = (interval_ms if interval_ms is not None else settings.poll_interval_ms) / 1000
        self._batch_size = max(1, batch_size or settings.sync_batch_size)
        self._batch_delay = (
            batch_delay_ms if batch_delay_ms is not None else settings.sync_batch_delay_ms
        ) / 1000
        self._max_scan = max(1, max_scan or settings.sync_max_scan)

        self._cycle_in_progress = False
        self._ticker: asyncio.Task | None = None
        self._cycle_task: asyncio.Task | None = None

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_in_progress

    @property
    def is_started(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> SyncStats:
        """Run one reconciliation cycle unless one is already in flight."""
        if self._cycle_in_progress:
            logger.warning("Previous job sync cycle still running; skipping")
            return SyncStats(skipped=True)

        self._cycle_in_progress = True
        try:
            return await self._run_cycle()
        finally:
            self._cycle_in_progress = False

    async def _run_cycle(self) -> SyncStats:
        try:
            jobs = await self._store.list_active_jobs(self._max_scan)
        except Exception:
            logger.exception("Failed to list active jobs")
            return SyncStats()

        jobs = [job for job in jobs if job.is_active]
        if not jobs:
            return SyncStats()

        logger.info("Syncing active jobs from API", extra={"count": len(jobs)})
        stats = SyncStats()

        for index, batch in enumerate(_batched(jobs, self._batch_size)):
            if index and self._batch_delay > 0:
                await asyncio.sleep(self._batch_delay)

            results = await asyncio.gather(
                *(self._reconciler.reconcile(job.id) for job in batch),
                return_exceptions=True,
            )
            for job, result in zip(batch, results):
                if result is True:
                    stats.synced += 1
                    continue
                stats.failed += 1
                if isinstance(result, BaseException):
                    logger.error(
                        "Unhandled error reconciling job",
                        exc_info=result,
                        extra={"job_id": job.id},
                    )

        logger.info("Job sync completed", extra={"synced": stats.synced, "failed": stats.failed})
        return stats

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic ticker on the running event loop."""
        if self.is_started:
            return
        self._ticker = asyncio.create_task(self._tick_forever(), name="job-sync-ticker")
        logger.info(
            "Background job sync started",
            extra={"interval_ms": int(self._interval * 1000), "batch_size": self._batch_size},
        )

    async def stop(self) -> None:
        """Cancel the ticker and any in-flight cycle."""
        for task in (self._ticker, self._cycle_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._ticker = None
        self._cycle_task = None
        logger.info("Background job sync stopped")

    async def _tick_forever(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if self._cycle_in_progress:
                logger.warning("Job sync cycle overran the poll interval; skipping tick")
                continue
            self._cycle_task = asyncio.create_task(self.run_cycle(), name="job-sync-cycle")
            self._cycle_task.add_done_callback(self._on_cycle_done)

    @staticmethod
    def _on_cycle_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background job sync failed", exc_info=exc)

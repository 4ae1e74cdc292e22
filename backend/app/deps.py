"""Process-scoped singletons shared by the API layer and the sync loop.

The external API client and the job store are constructed once and reused
across cycles and requests.  ``main.lifespan`` initialises them before the
first sync cycle and calls ``shutdown()`` on exit.

Each getter doubles as a FastAPI dependency, so tests swap implementations
with ``app.dependency_overrides``::

    app.dependency_overrides[get_reconciler] = lambda: fake_reconciler
"""

import logging

from app.services.hunyuan_client import HunyuanClient
from app.services.job_store import JobStore
from app.services.job_sync import JobSyncLoop
from app.services.reconciler import JobReconciler

logger = logging.getLogger(__name__)

_job_store: JobStore | None = None
_hunyuan_client: HunyuanClient | None = None
_reconciler: JobReconciler | None = None
_sync_loop: JobSyncLoop | None = None


def get_job_store() -> JobStore:
    """Return the module-level JobStore singleton."""
    global _job_store
    if _job_store is None:
        _job_store = JobStore()
    return _job_store


def get_hunyuan_client() -> HunyuanClient:
    """Return the module-level HunyuanClient singleton."""
    global _hunyuan_client
    if _hunyuan_client is None:
        _hunyuan_client = HunyuanClient()
    return _hunyuan_client


def get_reconciler() -> JobReconciler:
    """Return the module-level JobReconciler singleton."""
    global _reconciler
    if _reconciler is None:
        _reconciler = JobReconciler(get_job_store(), get_hunyuan_client())
    return _reconciler


def get_sync_loop() -> JobSyncLoop:
    """Return the module-level JobSyncLoop singleton."""
    global _sync_loop
    if _sync_loop is None:
        _sync_loop = JobSyncLoop(get_job_store(), get_reconciler())
    return _sync_loop


async def shutdown() -> None:
    """Stop the sync loop and close the HTTP client; resets every singleton."""
    global _job_store, _hunyuan_client, _reconciler, _sync_loop
    if _sync_loop is not None:
        await _sync_loop.stop()
    if _hunyuan_client is not None:
        await _hunyuan_client.aclose()
    _job_store = _hunyuan_client = _reconciler = _sync_loop = None
    logger.info("Runtime singletons released")

"""Tests for single-job reconciliation (poll path and push path).

Upstream responses come from an ``httpx.MockTransport`` so the real client
parsing runs; the store is a real JobStore on in-memory SQLite.  Store
writes are counted by wrapping ``update_status`` / ``update_result``.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models import Base
from app.models.job import JOB_STATUS_DONE, JOB_STATUS_FAIL, JOB_STATUS_RUN, JOB_STATUS_WAIT
from app.services.artifact_urls import ArtifactUrls
from app.services.hunyuan_client import ExternalJobStatus, HunyuanClient
from app.services.job_store import JobStore, JobStoreError
from app.services.reconciler import DEFAULT_FAILURE_MESSAGE, JobReconciler

ROOT = "https://test-bucket.s3.us-east-1.amazonaws.com"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_store() -> JobStore:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return JobStore(sessionmaker(bind=engine))


def _upstream(responses: dict) -> HunyuanClient:
    """Fake API: ``responses`` maps job_id → (status_code, json body)."""

    def handler(request: httpx.Request) -> httpx.Response:
        job_id = request.url.path.rsplit("/", 1)[-1]
        code, body = responses.get(job_id, (404, {"error": "Job not found"}))
        return httpx.Response(code, json=body)

    return HunyuanClient(
        base_url="https://api.test",
        timeout=1.0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _reconciler(store: JobStore, client: HunyuanClient) -> JobReconciler:
    return JobReconciler(
        store,
        client,
        ArtifactUrls(bucket="test-bucket", region="us-east-1"),
        fetch_timeout=1.0,
    )


class _WriteSpy:
    """Wraps the store's write methods so tests can count writes."""

    def __init__(self, store: JobStore) -> None:
        self._patches = [
            patch.object(store, "update_status", wraps=store.update_status),
            patch.object(store, "update_result", wraps=store.update_result),
            patch.object(store, "create_job", wraps=store.create_job),
        ]

    def __enter__(self):
        self.update_status, self.update_result, self.create_job = (p.start() for p in self._patches)
        return self

    def __exit__(self, *exc):
        for p in self._patches:
            p.stop()

    @property
    def writes(self) -> int:
        return (
            self.update_status.await_count
            + self.update_result.await_count
            + self.create_job.await_count
        )


# ---------------------------------------------------------------------------
# Poll path: scenarios
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_completed_job_gets_canonical_mesh_url():
    """completed + CDN mesh_url → DONE with the derived bucket URL."""
    store = _make_store()
    await store.create_job("J1", prompt="a chair")
    client = _upstream(
        {"J1": (200, {"status": "completed", "result": {"mesh_url": "https://cdn.example/tmp/abc.glb"}})}
    )

    ok = await _reconciler(store, client).reconcile("J1")
    job = await store.get_job("J1")

    assert ok is True
    assert job.status == JOB_STATUS_DONE
    assert job.result_glb_url == f"{ROOT}/image/J1/mesh.glb"
    assert job.preview_image_url is None


@pytest.mark.asyncio
async def test_unchanged_pending_job_performs_no_writes():
    store = _make_store()
    await store.create_job("J2")
    client = _upstream({"J2": (200, {"status": "pending"})})

    with _WriteSpy(store) as spy:
        ok = await _reconciler(store, client).reconcile("J2")

    assert ok is True
    assert spy.writes == 0
    assert (await store.get_job("J2")).status == JOB_STATUS_WAIT


@pytest.mark.asyncio
async def test_unknown_upstream_job_is_skipped():
    store = _make_store()
    client = _upstream({})

    with _WriteSpy(store) as spy:
        ok = await _reconciler(store, client).reconcile("ghost")

    assert ok is False
    assert spy.writes == 0
    assert await store.get_job("ghost") is None


@pytest.mark.asyncio
async def test_job_missing_from_store_is_not_created():
    store = _make_store()
    client = _upstream({"J3": (200, {"status": "processing"})})

    ok = await _reconciler(store, client).reconcile("J3")

    assert ok is False
    assert await store.get_job("J3") is None


# ---------------------------------------------------------------------------
# Poll path: properties
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reconcile_twice_is_idempotent():
    store = _make_store()
    await store.create_job("J1")
    client = _upstream(
        {
            "J1": (
                200,
                {
                    "status": "completed",
                    "result": {"output": "https://cdn/x.glb", "generated_image": "https://cdn/x.png"},
                },
            )
        }
    )
    reconciler = _reconciler(store, client)

    assert await reconciler.reconcile("J1") is True
    first = await store.get_job("J1")

    with _WriteSpy(store) as spy:
        assert await reconciler.reconcile("J1") is True
    second = await store.get_job("J1")

    assert spy.writes == 0
    assert second == first
    assert second.preview_image_url == f"{ROOT}/image/J1/processed_image.png"


@pytest.mark.asyncio
async def test_status_progression_writes_once_per_change():
    store = _make_store()
    await store.create_job("J1")
    responses = {"J1": (200, {"status": "processing"})}
    reconciler = _reconciler(store, _upstream(responses))

    with _WriteSpy(store) as spy:
        await reconciler.reconcile("J1")
        await reconciler.reconcile("J1")
    assert spy.update_status.await_count == 1
    assert (await store.get_job("J1")).status == JOB_STATUS_RUN


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "stored, upstream",
    [
        (JOB_STATUS_DONE, {"status": "failed", "error": "late failure"}),
        (JOB_STATUS_DONE, {"status": "pending"}),
        (JOB_STATUS_FAIL, {"status": "completed", "result": {"mesh_url": "https://cdn/x.glb"}}),
        (JOB_STATUS_FAIL, {"status": "processing"}),
    ],
)
async def test_terminal_jobs_never_change_status(stored, upstream):
    store = _make_store()
    await store.create_job("J1")
    await store.update_status("J1", stored, error_message="first failure" if stored == JOB_STATUS_FAIL else None)
    client = _upstream({"J1": (200, upstream)})

    with _WriteSpy(store) as spy:
        assert await _reconciler(store, client).reconcile("J1") is True

    job = await store.get_job("J1")
    assert job.status == stored
    assert job.result_glb_url is None
    assert spy.writes == 0


@pytest.mark.asyncio
async def test_running_job_does_not_fall_back_to_wait():
    store = _make_store()
    await store.create_job("J1")
    await store.update_status("J1", JOB_STATUS_RUN)
    client = _upstream({"J1": (200, {"status": "some_new_state"})})

    assert await _reconciler(store, client).reconcile("J1") is True
    assert (await store.get_job("J1")).status == JOB_STATUS_RUN


@pytest.mark.asyncio
async def test_failed_job_records_message_and_clears_error_code():
    store = _make_store()
    await store.create_job("J1")
    await store.update_status("J1", JOB_STATUS_RUN, error_code="E_OLD")
    client = _upstream({"J1": (200, {"status": "failed", "error": "out of memory"})})

    assert await _reconciler(store, client).reconcile("J1") is True

    job = await store.get_job("J1")
    assert job.status == JOB_STATUS_FAIL
    assert job.error_message == "out of memory"
    assert job.error_code is None


@pytest.mark.asyncio
async def test_cancelled_job_gets_default_message():
    store = _make_store()
    await store.create_job("J1")
    client = _upstream({"J1": (200, {"status": "cancelled"})})

    await _reconciler(store, client).reconcile("J1")

    job = await store.get_job("J1")
    assert job.status == JOB_STATUS_FAIL
    assert job.error_message == DEFAULT_FAILURE_MESSAGE


@pytest.mark.asyncio
async def test_canonical_urls_are_kept_verbatim():
    store = _make_store()
    await store.create_job("J1")
    mesh = f"{ROOT}/image/J1/textured.glb"
    client = _upstream({"J1": (200, {"status": "completed", "result": {"mesh_url": mesh}})})

    await _reconciler(store, client).reconcile("J1")
    assert (await store.get_job("J1")).result_glb_url == mesh


@pytest.mark.asyncio
async def test_later_payload_without_preview_keeps_stored_preview():
    store = _make_store()
    await store.create_job("J1")
    responses = {
        "J1": (200, {"status": "completed", "result": {"mesh_url": "https://cdn/a.glb", "processed_image": "https://cdn/a.png"}})
    }
    reconciler = _reconciler(store, _upstream(responses))
    await reconciler.reconcile("J1")

    responses["J1"] = (200, {"status": "completed", "result": {"mesh_url": "https://cdn/a.glb"}})
    with _WriteSpy(store) as spy:
        await reconciler.reconcile("J1")

    job = await store.get_job("J1")
    assert spy.writes == 0
    assert job.preview_image_url == f"{ROOT}/image/J1/processed_image.png"


@pytest.mark.asyncio
async def test_completed_without_result_sets_status_only():
    store = _make_store()
    await store.create_job("J1")
    client = _upstream({"J1": (200, {"status": "completed"})})

    with _WriteSpy(store) as spy:
        assert await _reconciler(store, client).reconcile("J1") is True

    assert spy.update_status.await_count == 1
    assert spy.update_result.await_count == 0
    assert (await store.get_job("J1")).status == JOB_STATUS_DONE


# ---------------------------------------------------------------------------
# Poll path: failures are contained
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_transport_timeout_is_soft_failure():
    store = _make_store()
    await store.create_job("J1")

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = HunyuanClient(
        base_url="https://api.test",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    with _WriteSpy(store) as spy:
        assert await _reconciler(store, client).reconcile("J1") is False
    assert spy.writes == 0


@pytest.mark.asyncio
async def test_slow_fetch_is_bounded_by_timeout():
    store = _make_store()
    await store.create_job("J1")

    async def slow_fetch(job_id):
        await asyncio.sleep(5)
        return ExternalJobStatus(status="completed")

    client = _upstream({})
    client.fetch_status = AsyncMock(side_effect=slow_fetch)
    reconciler = JobReconciler(store, client, ArtifactUrls("test-bucket", "us-east-1"), fetch_timeout=0.05)

    assert await reconciler.reconcile("J1") is False
    assert (await store.get_job("J1")).status == JOB_STATUS_WAIT


@pytest.mark.asyncio
async def test_upstream_server_error_returns_false():
    store = _make_store()
    await store.create_job("J1")
    client = _upstream({"J1": (500, {"error": "boom"})})

    assert await _reconciler(store, client).reconcile("J1") is False


@pytest.mark.asyncio
async def test_store_write_failure_returns_false():
    store = _make_store()
    await store.create_job("J1")
    client = _upstream({"J1": (200, {"status": "processing"})})

    with patch.object(store, "update_status", AsyncMock(side_effect=JobStoreError("db down", "J1"))):
        assert await _reconciler(store, client).reconcile("J1") is False


# ---------------------------------------------------------------------------
# Push path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_apply_update_creates_unseen_job():
    store = _make_store()
    reconciler = _reconciler(store, _upstream({}))
    external = ExternalJobStatus.from_payload(
        {"status": "completed", "result": {"mesh_url": "https://cdn/m.glb", "prompt": "a lamp"}}
    )

    job = await reconciler.apply_update("J7", external, owner_id="user_1")

    assert job.id == "J7"
    assert job.owner_id == "user_1"
    assert job.prompt == "a lamp"
    assert job.status == JOB_STATUS_DONE
    assert job.result_glb_url == f"{ROOT}/image/J7/mesh.glb"


@pytest.mark.asyncio
async def test_apply_update_without_create_returns_none():
    store = _make_store()
    reconciler = _reconciler(store, _upstream({}))

    job = await reconciler.apply_update("J7", ExternalJobStatus(status="pending"), create_missing=False)

    assert job is None
    assert await store.get_job("J7") is None


@pytest.mark.asyncio
async def test_duplicate_failure_push_is_idempotent():
    store = _make_store()
    reconciler = _reconciler(store, _upstream({}))
    external = ExternalJobStatus.from_payload({"status": "failed", "error": "oom"})

    first = await reconciler.apply_update("J1", external)
    with _WriteSpy(store) as spy:
        second = await reconciler.apply_update("J1", external)

    assert spy.writes == 0
    assert second == first
    assert second.status == JOB_STATUS_FAIL
    assert second.error_message == "oom"


@pytest.mark.asyncio
async def test_out_of_order_push_does_not_regress():
    store = _make_store()
    reconciler = _reconciler(store, _upstream({}))

    await reconciler.apply_update("J1", ExternalJobStatus.from_payload({"status": "completed", "result": {"mesh_url": "u"}}))
    job = await reconciler.apply_update("J1", ExternalJobStatus(status="processing"))

    assert job.status == JOB_STATUS_DONE
    assert job.result_glb_url == f"{ROOT}/image/J1/mesh.glb"

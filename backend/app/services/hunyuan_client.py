"""Client for the external Hunyuan3D generation API.

Only the calls the service needs are wrapped:

  GET  /status/{job_id}  — current status and result of a job
  POST /text-to-3d       — submit a text prompt
  POST /image-to-3d      — submit an image URL

Responses are coerced into strict pydantic models at this boundary so no
untyped values ever reach the job store.  The API's result shape has varied
across versions, so artifact URLs are looked up through ordered candidate
field tables — first non-empty string wins.
"""

import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, field_validator

from app.config import settings

logger = logging.getLogger(__name__)

# Candidate result fields, in precedence order
MESH_URL_FIELDS: tuple[str, ...] = ("mesh_url", "output")
PREVIEW_URL_FIELDS: tuple[str, ...] = (
    "processed_image_url",
    "generated_image_url",
    "processed_image",
    "generated_image",
)


class ExternalApiError(Exception):
    """The external API answered with an unexpected status or body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _str_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _first_present(payload: Mapping[str, Any], fields: tuple[str, ...]) -> str | None:
    for name in fields:
        value = _str_or_none(payload.get(name))
        if value is not None:
            return value
    return None


class ExternalJobResult(BaseModel):
    """Artifact locations reported for a finished job."""

    mesh_url: str | None = None
    preview_url: str | None = None
    prompt: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "ExternalJobResult | None":
        if not isinstance(payload, Mapping):
            return None
        return cls(
            mesh_url=_first_present(payload, MESH_URL_FIELDS),
            preview_url=_first_present(payload, PREVIEW_URL_FIELDS),
            prompt=_str_or_none(payload.get("prompt")),
        )


class ExternalJobStatus(BaseModel):
    """A job as the external API sees it.

    Missing or mistyped fields become None; an unknown ``status`` is kept
    as-is and left for the status mapper to degrade.
    """

    status: str | None = None
    result: ExternalJobResult | None = None
    error: str | None = None

    @field_validator("status", "error", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        return _str_or_none(value)

    @field_validator("result", mode="before")
    @classmethod
    def _coerce_result(cls, value: Any) -> Any:
        if isinstance(value, ExternalJobResult):
            return value
        return ExternalJobResult.from_payload(value)

    @classmethod
    def from_payload(cls, payload: Any) -> "ExternalJobStatus":
        if not isinstance(payload, Mapping):
            logger.warning("Unexpected status payload type: %s", type(payload).__name__)
            return cls()
        return cls.model_validate(
            {
                "status": payload.get("status"),
                "result": payload.get("result"),
                "error": payload.get("error"),
            }
        )


class HunyuanClient:
    """Async wrapper around one shared ``httpx.AsyncClient``.

    Construct once per process and close with ``aclose()`` on shutdown.
    Pass ``http_client`` to inject a preconfigured client (e.g. one backed
    by ``httpx.MockTransport`` in tests); an injected client is not closed.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = (base_url or settings.hunyuan_api_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.hunyuan_api_timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self._timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_status(self, job_id: str) -> ExternalJobStatus | None:
        """Return the job's upstream status, or None if the API does not know it.

        Raises ``httpx.TimeoutException`` / ``httpx.TransportError`` on
        network failures and ``ExternalApiError`` for any other non-2xx
        answer or a body that is not JSON.
        """
        url = f"{self._base_url}/status/{quote(job_id, safe='')}"
        logger.debug("Hunyuan API GET %s", url)
        resp = await self._client.get(url, timeout=self._timeout)

        if resp.status_code == 404:
            logger.debug("Job not found in external API", extra={"job_id": job_id})
            return None
        if not resp.is_success:
            logger.error(
                "Hunyuan API error %s for %s: %s",
                resp.status_code,
                url,
                resp.text[:300],
            )
            raise ExternalApiError(f"API returned {resp.status_code}", resp.status_code)

        try:
            data = resp.json()
        except ValueError as exc:
            raise ExternalApiError(
                f"API returned a non-JSON body: {resp.text[:200]}", resp.status_code
            ) from exc
        return ExternalJobStatus.from_payload(data)

    async def submit_text_to_3d(self, prompt: str, user_id: str | None = None) -> str:
        """Submit a text-to-3D job and return the upstream job id."""
        form = {"prompt": prompt}
        if user_id:
            form["user_id"] = user_id
        return await self._submit("/text-to-3d", form, "text-to-3d")

    async def submit_image_to_3d(self, image_url: str, user_id: str | None = None) -> str:
        """Submit an image-to-3D job and return the upstream job id."""
        form = {"image_url": image_url}
        if user_id:
            form["user_id"] = user_id
        return await self._submit("/image-to-3d", form, "image-to-3d")

    async def _submit(self, path: str, form: dict[str, str], label: str) -> str:
        resp = await self._client.post(f"{self._base_url}{path}", data=form, timeout=self._timeout)

        if not resp.is_success:
            try:
                detail = resp.json().get("error")
            except (ValueError, AttributeError):
                detail = None
            message = _str_or_none(detail) or resp.text[:300] or f"Failed to submit {label} job"
            raise ExternalApiError(message, resp.status_code)

        try:
            data = resp.json()
        except ValueError as exc:
            raise ExternalApiError(f"{label} returned a non-JSON body", resp.status_code) from exc

        job_id = _str_or_none(data.get("job_id")) if isinstance(data, Mapping) else None
        if job_id is None:
            raise ExternalApiError(f"{label} response is missing job_id", resp.status_code)
        logger.info("Submitted %s job", label, extra={"job_id": job_id})
        return job_id

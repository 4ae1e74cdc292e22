"""Canonical artifact URLs for job outputs.

The external API may hand back short-lived signed URLs.  We never persist
those; instead every artifact lives at a stable, non-expiring location in
the public output bucket derived from the job id alone:

    https://{bucket}.s3.{region}.amazonaws.com/image/{job_id}/mesh.glb
    https://{bucket}.s3.{region}.amazonaws.com/image/{job_id}/processed_image.png

Normalisation is idempotent: a URL that already points at the canonical
location for its job is returned unchanged.
"""

import logging
from enum import Enum
from urllib.parse import urlsplit

from app.config import settings

logger = logging.getLogger(__name__)


class ArtifactKind(str, Enum):
    """Artifact kinds and their file name under ``image/{job_id}/``."""

    MESH = "mesh.glb"
    PREVIEW = "processed_image.png"


class ArtifactUrls:
    """Builds and normalises canonical artifact URLs for a single bucket."""

    def __init__(self, bucket: str | None = None, region: str | None = None) -> None:
        self._bucket = bucket or settings.s3_bucket
        self._region = region or settings.s3_region

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @property
    def _host(self) -> str:
        return f"{self._bucket}.s3.{self._region}.amazonaws.com"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def storage_root(self) -> str:
        return f"https://{self._host}"

    def canonical_url(self, job_id: str, kind: ArtifactKind) -> str:
        """Return the deterministic URL for ``kind`` of ``job_id``."""
        return f"{self.storage_root}/image/{job_id}/{kind.value}"

    def is_canonical(self, job_id: str, url: str) -> bool:
        """True when ``url`` lives in our bucket under ``image/{job_id}/``."""
        try:
            parts = urlsplit(url)
        except ValueError:
            return False
        if parts.scheme not in ("http", "https"):
            return False
        return parts.hostname == self._host and parts.path.startswith(f"/image/{job_id}/")

    def normalize(self, job_id: str, candidate_url: str | None, kind: ArtifactKind) -> str | None:
        """Return the URL to persist for an artifact, or None if absent.

        Already-canonical URLs pass through unchanged; anything else is
        replaced by the URL derived from ``job_id``.
        """
        if not candidate_url:
            return None
        if self.is_canonical(job_id, candidate_url):
            return candidate_url
        canonical = self.canonical_url(job_id, kind)
        logger.debug(
            "Replaced external %s URL with canonical location",
            kind.name.lower(),
            extra={"job_id": job_id, "canonical_url": canonical},
        )
        return canonical

    def normalize_glb_url(self, job_id: str, candidate_url: str | None) -> str | None:
        return self.normalize(job_id, candidate_url, ArtifactKind.MESH)

    def normalize_preview_url(self, job_id: str, candidate_url: str | None) -> str | None:
        return self.normalize(job_id, candidate_url, ArtifactKind.PREVIEW)


# Built lazily so tests can override settings first
_artifact_urls: ArtifactUrls | None = None


def get_artifact_urls() -> ArtifactUrls:
    """Return the module-level ArtifactUrls singleton."""
    global _artifact_urls
    if _artifact_urls is None:
        _artifact_urls = ArtifactUrls()
    return _artifact_urls

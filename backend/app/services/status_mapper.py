"""Translate the external API's status vocabulary into the internal model."""

from app.models.job import (
    JOB_STATUS_DONE,
    JOB_STATUS_FAIL,
    JOB_STATUS_RUN,
    JOB_STATUS_WAIT,
)

_STATUS_MAP: dict[str, str] = {
    "pending": JOB_STATUS_WAIT,
    "processing": JOB_STATUS_RUN,
    "completed": JOB_STATUS_DONE,
    "failed": JOB_STATUS_FAIL,
    "cancelled": JOB_STATUS_FAIL,
}


def map_status(external_status: str | None) -> str:
    """Map an external status to WAIT/RUN/FAIL/DONE.

    Total: anything unrecognised (including None) maps to WAIT so the job
    stays active and is retried on the next cycle.
    """
    if not isinstance(external_status, str):
        return JOB_STATUS_WAIT
    return _STATUS_MAP.get(external_status, JOB_STATUS_WAIT)

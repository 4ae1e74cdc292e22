"""Job model — tracks 3D generation requests processed by the external API.

Status lifecycle (internal vocabulary):
    WAIT → RUN → DONE
              ↘ FAIL

FAIL and DONE are terminal.  Only the reconciliation engine (poll or push)
mutates a job after creation.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base

JOB_STATUS_WAIT = "WAIT"
JOB_STATUS_RUN = "RUN"
JOB_STATUS_FAIL = "FAIL"
JOB_STATUS_DONE = "DONE"

VALID_JOB_STATUSES: list[str] = [
    JOB_STATUS_WAIT,
    JOB_STATUS_RUN,
    JOB_STATUS_FAIL,
    JOB_STATUS_DONE,
]

ACTIVE_JOB_STATUSES: tuple[str, ...] = (JOB_STATUS_WAIT, JOB_STATUS_RUN)
TERMINAL_JOB_STATUSES: tuple[str, ...] = (JOB_STATUS_FAIL, JOB_STATUS_DONE)

GENERATE_TYPES: tuple[str, ...] = ("Normal", "LowPoly", "Geometry", "Sketch")
POLYGON_TYPES: tuple[str, ...] = ("triangle", "quadrilateral")


class Job(Base):
    __tablename__ = "jobs"

    # Assigned by the external API
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # --- Ownership (NULL = legacy / unowned job) ---
    owner_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # --- Status tracking ---
    status: Mapped[str] = mapped_column(String(8), default=JOB_STATUS_WAIT, index=True)

    # --- Request parameters (immutable after creation) ---
    prompt: Mapped[str | None] = mapped_column(Text, default=None)
    image_url: Mapped[str | None] = mapped_column(Text, default=None)
    generate_type: Mapped[str] = mapped_column(String(16), default="Normal")
    face_count: Mapped[int | None] = mapped_column(Integer, default=None)
    enable_pbr: Mapped[bool] = mapped_column(Boolean, default=True)
    polygon_type: Mapped[str | None] = mapped_column(String(16), default=None)

    # --- Results (populated on transition into DONE) ---
    result_glb_url: Mapped[str | None] = mapped_column(Text, default=None)
    preview_image_url: Mapped[str | None] = mapped_column(Text, default=None)

    # --- Errors (populated on transition into FAIL) ---
    error_code: Mapped[str | None] = mapped_column(Text, default=None)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

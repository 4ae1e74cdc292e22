"""Structured JSON logging for the mesh job sync service.

``configure_logging()`` runs once at startup and installs a single stdout
handler that writes one JSON object per line.

Correlation ids live in ``contextvars`` and are copied onto every record:

* ``request_id``: bound per HTTP request by ``RequestIdMiddleware``.
* ``job_id``: bound by ``bind_job_id()`` while one job is reconciled, so the
  interleaved lines of a concurrent batch can be told apart.
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")
_job_id_var: ContextVar[str] = ContextVar("job_id", default="")

# Emitted in this order ahead of any extra= fields
_CONTEXT_FIELDS: tuple[tuple[str, ContextVar[str]], ...] = (
    ("request_id", _request_id_var),
    ("job_id", _job_id_var),
)

# Attributes every LogRecord carries; anything else arrived through extra=
_RESERVED = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {
    "message",
    "asctime",
}


def get_request_id() -> str:
    return _request_id_var.get()


def get_job_id() -> str:
    return _job_id_var.get()


@contextmanager
def bind_job_id(job_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``job_id``.

    asyncio tasks run in their own context copy, so a binding made inside
    one reconciliation is invisible to its siblings in the same batch.
    """
    token = _job_id_var.set(job_id)
    try:
        yield
    finally:
        _job_id_var.reset(token)


class _JsonFormatter(logging.Formatter):
    """Render a record as a single-line JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        out: dict = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field, var in _CONTEXT_FIELDS:
            value = var.get()
            if value:
                out[field] = value

        if record.exc_info:
            out["exc_info"] = self.formatException(record.exc_info)

        # extra= values override the bound context ids
        out.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RESERVED and not key.startswith("_")
        )
        return json.dumps(out, default=str)


def configure_logging(level: str = "INFO") -> None:
    """Route all logging through one JSON handler on stdout at ``level``."""
    handler = logging.StreamHandler()
    handler.setFormatter(_JsonFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # httpx logs every poll request at INFO
    for chatty in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(chatty).setLevel(logging.WARNING)

    logging.getLogger(__name__).info("JSON logging configured", extra={"log_level": level.upper()})


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind an ``X-Request-ID`` to each request and echo it on the response.

    An id supplied by the caller (e.g. a webhook delivery from the external
    API) is reused so the delivery can be followed end to end.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID") -> None:
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name) or uuid.uuid4().hex
        token = _request_id_var.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 1)
            _request_id_var.reset(token)

        response.headers[self.header_name] = request_id
        logging.getLogger("app.access").info(
            "%s %s -> %d",
            request.method,
            request.url.path,
            response.status_code,
            extra={"request_id": request_id, "status_code": response.status_code, "duration_ms": elapsed_ms},
        )
        return response

"""
Request timing and correlation.

Every response carries ``X-Request-ID`` (the caller's id when it is a sane
token, otherwise a fresh one) and ``X-Request-Duration-Ms``. One
``http.request`` log record per request is tagged with the feature or
learning the URL addresses, so an orchestrator run can be followed through
the engine log by feature id.
"""

import logging
import re
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Agents forward their own correlation ids; anything else is replaced
_REQUEST_ID_RE = re.compile(r"[A-Za-z0-9._:-]{1,64}")

# Health checks poll these every few seconds
_QUIET_PREFIX = "/api/v1/health/"


def _request_id() -> str:
    incoming = request.headers.get("X-Request-ID", "")
    return incoming if _REQUEST_ID_RE.fullmatch(incoming) else uuid.uuid4().hex[:12]


def _level_for(status: int, duration_ms: float, slow_ms: int) -> int:
    if status >= 500:
        return logging.ERROR
    if duration_ms > slow_ms:
        return logging.WARNING
    return logging.DEBUG


def init_request_timing(app: Flask):
    """Install the before/after request hooks on ``app``."""
    slow_ms = app.config.get("SLOW_REQUEST_MS", 1000)

    @app.before_request
    def _begin():
        g.request_started = time.perf_counter()
        g.request_id = _request_id()

    @app.after_request
    def _finish(response):
        started = getattr(g, "request_started", None)
        if started is None:
            return response

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed_ms:.1f}"

        if request.path.startswith(_QUIET_PREFIX):
            return response

        args = request.view_args or {}
        level = _level_for(response.status_code, elapsed_ms, slow_ms)
        logger.log(
            level,
            "%s %s -> %d in %.0fms%s",
            request.method, request.path, response.status_code, elapsed_ms,
            " (slow)" if level == logging.WARNING else "",
            extra={
                "event_type": "http.request",
                "request_id": g.request_id,
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": elapsed_ms,
                "remote_addr": request.remote_addr,
                "feature_id": args.get("feature_id"),
                "learning_id": args.get("learning_id"),
            },
        )
        return response

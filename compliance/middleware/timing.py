"""
Request context & timing middleware.

Stamps every request with an id and the acting user (``X-Actor`` header,
recorded in audit rows), measures its duration and logs slow or failing
requests.

Response headers:
    X-Request-ID, X-Request-Duration-Ms
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Probes are polled constantly; never logged
_SKIP_LOG = frozenset({"/api/v1/health/ready", "/api/v1/health/live"})

SLOW_THRESHOLD_MS = 1000
DEFAULT_ACTOR = "api"


def current_actor() -> str:
    return getattr(g, "actor", None) or DEFAULT_ACTOR


def init_request_timing(app: Flask):
    """Register before/after hooks for request context and timing."""

    @app.before_request
    def _start_request():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex[:12])
        g.actor = (request.headers.get("X-Actor") or DEFAULT_ACTOR).strip()[:150]

    @app.after_request
    def _finish_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        if request.path in _SKIP_LOG:
            return response

        extra = {
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "request_id": g.request_id,
            "actor": current_actor(),
        }
        summary = (request.method, request.path, response.status_code, duration_ms)
        if response.status_code >= 500:
            logger.error("Server error: %s %s %d (%.0fms)", *summary, extra=extra)
        elif duration_ms > SLOW_THRESHOLD_MS:
            logger.warning("Slow request: %s %s %d (%.0fms)", *summary, extra=extra)
        else:
            logger.debug("Request: %s %s %d (%.0fms)", *summary, extra=extra)
        return response

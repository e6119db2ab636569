"""
Request timing middleware.

Every response carries ``X-Request-ID`` (client-supplied or generated) and
``X-Request-Duration-Ms``. API requests are logged once on the way out:
debug normally, warning above ``SLOW_REQUEST_MS``, error on 5xx. Routes with
an ``inspection_id`` view arg log it so one inspection's traffic can be
followed across transitions and item edits.
"""

import logging
import time
import uuid

from flask import Flask, current_app, g, request

logger = logging.getLogger(__name__)

# Probes are polled constantly; keep them out of the log
_QUIET_PREFIX = "/api/v1/health/"


def init_request_timing(app: Flask):
    """Register the before/after hooks. Must run before the JWT hook so ``g.request_id`` exists."""
    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish(response):
        start = g.get("request_start")
        if start is None:
            return response

        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed_ms:.1f}"

        if request.path.startswith(_QUIET_PREFIX):
            return response

        view_args = request.view_args or {}
        extra = {
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": elapsed_ms,
            "inspection_id": view_args.get("inspection_id"),
        }
        if response.status_code >= 500:
            level = logging.ERROR
        elif elapsed_ms > current_app.config.get("SLOW_REQUEST_MS", 1000):
            level = logging.WARNING
        else:
            level = logging.DEBUG
        logger.log(level, "%s %s -> %d", request.method, request.path, response.status_code, extra=extra)
        return response

"""
Prometheus metrics middleware for FastAPI.

Automatically tracks HTTP request metrics.
"""

import re
import time
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .metrics import get_metrics_collector

_UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)
_NUMERIC_RE = re.compile(r"/\d+(?=/|$)")

DEFAULT_EXCLUDED = {"/health", "/metrics"}


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Tracks request count and latency by method, normalized path and status.
    """

    def __init__(self, app: ASGIApp, exclude_paths: Optional[set[str]] = None):
        super().__init__(app)
        self.exclude_paths = exclude_paths or DEFAULT_EXCLUDED
        self.collector = get_metrics_collector()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.exclude_paths:
            return await call_next(request)

        start_time = time.time()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            self.collector.track_request(
                method=request.method,
                endpoint=self._normalize_path(path),
                status=status_code,
                duration=time.time() - start_time,
            )
        return response

    def _normalize_path(self, path: str) -> str:
        """
        Replace dynamic segments to keep label cardinality low.

        /api/runs/2f1c...-uuid -> /api/runs/{id}
        """
        path = _UUID_RE.sub("{id}", path)
        return _NUMERIC_RE.sub("/{id}", path)


def setup_prometheus_middleware(app, exclude_paths: Optional[set[str]] = None) -> None:
    """Setup Prometheus middleware for FastAPI app"""
    app.add_middleware(PrometheusMiddleware, exclude_paths=exclude_paths or DEFAULT_EXCLUDED)

"""Shared middleware for correlation ids, reviewer access, and request metrics."""

import os
import re
import time
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from shared.correlation import set_correlation_id, generate_correlation_id, get_correlation_id
from shared.file_store import FileStore

logger = logging.getLogger("disputerail.middleware")

DISPUTE_PATH = re.compile(r"/disputes/(dsp_[0-9a-f]+)")


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        cid = request.headers.get("X-Correlation-Id") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-Id"] = cid
        return response


class ReviewerAccessMiddleware(BaseHTTPMiddleware):
    """Conflicts, dead letters and unmapped events are for internal reviewers only."""

    PROTECTED_PREFIXES = ("/review", "/audit")

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(self.PROTECTED_PREFIXES):
            if not request.headers.get("X-Reviewer-Id"):
                return JSONResponse(
                    status_code=401,
                    content={"error": "X-Reviewer-Id header required"},
                )
        return await call_next(request)


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, data_dir: str):
        super().__init__(app)
        self.metrics_path = os.path.join(data_dir, "metrics", "service_metrics.jsonl")

    @staticmethod
    def dispute_id_for(path: str):
        match = DISPUTE_PATH.search(path)
        return match.group(1) if match else None

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        record = {
            "timestamp": time.time(),
            "method": request.method,
            "route": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "correlation_id": get_correlation_id(),
            "dispute_id": self.dispute_id_for(request.url.path),
            "reviewer_id": request.headers.get("X-Reviewer-Id"),
        }
        try:
            FileStore.append_jsonl(self.metrics_path, record)
        except OSError as e:
            logger.warning(f"Failed to record request metrics: {e}")
        return response

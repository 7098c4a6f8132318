"""
Request timing middleware.
Feeds every API request into the performance telemetry collector so slow
endpoints show up in the metrics summary alongside record-store calls.
"""
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

# Requests under these prefixes are timed
TIMED_PATH_PREFIXES = ("/api/v1",)

# Reading metrics should not skew the metrics
UNTIMED_PATH_PREFIXES = ("/api/v1/metrics",)


class TelemetryMiddleware(BaseHTTPMiddleware):
    """Middleware that records API call duration and outcome."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        timed = path.startswith(TIMED_PATH_PREFIXES) and not path.startswith(UNTIMED_PATH_PREFIXES)
        if not timed:
            return await call_next(request)

        start = time.time()
        try:
            response = await call_next(request)
        except Exception as exc:
            self._record(request, path, start, False, str(exc))
            raise

        success = response.status_code < 400
        error = None if success else f"HTTP {response.status_code}"
        self._record(request, path, start, success, error)
        return response

    @staticmethod
    def _record(request: Request, path: str, start: float, success: bool, error):
        services = getattr(request.app.state, "services", None)
        if services is None:
            return
        try:
            services.telemetry.track_api_call(path, request.method, start, success, error)
        except Exception as exc:
            logger.warning("Telemetry write failed for %s %s: %s", request.method, path, exc)

# ABOUTME: Logging middleware for request/response tracking
# ABOUTME: Writes one usage log entry per dataset request with its status and response time

import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from csvapi.services.usage import record_usage


class UsageLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to record dataset API usage.

    The usage context is attached to the request by verify_api_key. This
    middleware adds the final status code and response time and appends the
    usage log entry. A failed write is logged server-side and never changes
    the response.
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        usage = getattr(request.state, "usage", None)
        db = getattr(request.state, "db_for_logging", None)
        if usage is not None and db is not None:
            response_time_ms = int((time.time() - usage.started_at) * 1000)
            record_usage(db, usage, response.status_code, response_time_ms)

        return response

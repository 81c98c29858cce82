# ABOUTME: FastAPI application entry point
# ABOUTME: Configures logging, registers routers, middleware and error handlers

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from csvapi.api import health, upload, datasets
from csvapi.config import get_settings
from csvapi.middleware.logging import UsageLoggingMiddleware
from csvapi.models.errors import CsvApiError

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="CSV to API",
    description="Upload CSV files and query them through filterable, paginated REST endpoints",
    version="0.1.0",
)

# Add middleware
app.add_middleware(UsageLoggingMiddleware)


@app.exception_handler(CsvApiError)
async def csvapi_error_handler(request: Request, exc: CsvApiError):
    """Formats domain errors as {success: false, error} with the error's status code."""
    usage = getattr(request.state, "usage", None)
    if usage is not None:
        usage.error_message = exc.message
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message}
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Custom exception handler to format error responses."""
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, **exc.detail}
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail}
    )


# Register routers
app.include_router(health.router)
app.include_router(upload.router)
app.include_router(datasets.router)

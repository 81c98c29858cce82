# ABOUTME: Error taxonomy, error response models and OpenAPI response examples
# ABOUTME: Domain exceptions carry the HTTP status they are reported with

from pydantic import BaseModel


class CsvApiError(Exception):
    """Base class for every error surfaced to API callers."""
    status_code = 500
    code = "ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ParseError(CsvApiError):
    """The upload is not a well-formed delimited file, or holds no data rows."""
    status_code = 400
    code = "PARSE_ERROR"

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = list(errors or [])


class SchemaConflictError(CsvApiError):
    """Column names collide or a supplied schema does not fit the file."""
    status_code = 400
    code = "SCHEMA_CONFLICT"


class ProvisionError(CsvApiError):
    """The storage target for a dataset could not be created."""
    status_code = 500
    code = "PROVISION_FAILED"


class CapacityExceededError(CsvApiError):
    """File size, row count or project count is over the plan ceiling."""
    status_code = 400
    code = "CAPACITY_EXCEEDED"


class AuthError(CsvApiError):
    status_code = 401
    code = "INVALID_API_KEY"


class AuthorizationError(CsvApiError):
    status_code = 403
    code = "FORBIDDEN"


class RateLimitError(CsvApiError):
    status_code = 429
    code = "RATE_LIMITED"


class NotFoundError(CsvApiError):
    status_code = 404
    code = "NOT_FOUND"


class QueryError(CsvApiError):
    """Malformed pagination, sort, projection or filter parameter."""
    status_code = 400
    code = "INVALID_PARAMETER"


class QueryExecutionError(CsvApiError):
    status_code = 500
    code = "QUERY_FAILED"


class IngestionError(CsvApiError):
    """An ingestion aborted; wraps the stage-level error that caused it."""

    def __init__(self, stage: str, cause: CsvApiError):
        super().__init__(cause.message)
        self.stage = stage
        self.cause = cause
        self.status_code = cause.status_code
        self.code = cause.code


class ErrorResponse(BaseModel):
    """Standard error response format."""
    success: bool = False
    error: str


def _error_example(message: str) -> dict:
    """Builds a single OpenAPI response entry with an error example."""
    return {"content": {"application/json": {"example": {"success": False, "error": message}}}}


# Reusable OpenAPI response fragments for route decorators
AUTH_REQUIRED = {
    401: {
        "description": "API key missing or invalid",
        **_error_example("Missing or invalid API key"),
    }
}

PROJECT_MISMATCH = {
    403: {
        "description": "API key belongs to another project",
        **_error_example("API key does not match project"),
    }
}

NOT_FOUND = {
    404: {
        "description": "Requested resource not found",
        **_error_example("Dataset not found"),
    }
}

INVALID_PARAMETER = {
    400: {
        "description": "Invalid query parameter",
        **_error_example("Unknown sort column 'colour'. Available columns: name, price"),
    }
}

RATE_LIMITED = {
    429: {
        "description": "Monthly request limit reached",
        **_error_example("Monthly API limit exceeded"),
    }
}

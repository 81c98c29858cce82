# ABOUTME: FastAPI dependency injection utilities
# ABOUTME: Provides database sessions, API key validation and upload token checks

import secrets
import time
from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from csvapi.config import Settings, get_settings
from csvapi.database import get_db
from csvapi.models.database import APIKey
from csvapi.models.errors import AuthError
from csvapi.services.api_keys import find_api_key
from csvapi.services.usage import UsageContext


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None


async def verify_api_key(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    db: Session = Depends(get_db)
) -> APIKey:
    """
    Verify a dataset API key from the Authorization header.

    Also starts the usage record for the request; the logging middleware
    writes it once the response status is known.

    Returns the APIKey model if valid.
    Raises AuthError (401) if the key is missing, unknown or inactive.
    """
    request.state.usage = UsageContext(
        endpoint=request.url.path,
        method=request.method,
        started_at=time.time(),
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    request.state.db_for_logging = db

    api_key_str = _bearer_token(authorization)
    if api_key_str is None:
        raise AuthError("Missing or invalid API key")

    api_key = find_api_key(db, api_key_str)

    if not api_key or not api_key.is_active:
        raise AuthError("Invalid or inactive API key")

    request.state.usage.api_key_id = api_key.id
    request.state.usage.project_id = api_key.project_id

    return api_key


async def verify_upload_token(
    authorization: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings)
) -> None:
    """
    Verify the bearer token for upload requests against the configured admin key.

    Uploads are refused when no admin key is configured.
    """
    token = _bearer_token(authorization)
    if not token or not settings.admin_api_key or not secrets.compare_digest(token, settings.admin_api_key):
        raise AuthError("Missing or invalid upload token")

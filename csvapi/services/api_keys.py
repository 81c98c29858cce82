# ABOUTME: API key issuance, lookup and monthly usage accounting
# ABOUTME: Only SHA-256 hashes and display prefixes of keys are ever stored

import hashlib
import secrets
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import case, or_, update
from sqlalchemy.orm import Session

from csvapi.models.database import APIKey, utcnow

KEY_PREFIX_LENGTH = 12


def hash_api_key(plaintext_key: str) -> str:
    return hashlib.sha256(plaintext_key.encode()).hexdigest()


def generate_api_key(prefix: str = "csv_live_") -> str:
    """Generate a new random API key, e.g. csv_live_<32 url-safe characters>."""
    return f"{prefix}{secrets.token_urlsafe(24)}"


def usage_month(now: Optional[datetime] = None) -> str:
    return (now or utcnow()).strftime("%Y-%m")


def issue_api_key(
    db: Session,
    project_id: int,
    request_limit_per_month: int,
    prefix: str = "csv_live_"
) -> Tuple[APIKey, str]:
    """
    Create an API key for a project.

    The key row is added to the session but not committed.

    Returns:
        The APIKey model and the plaintext key (the only time it is visible)
    """
    plaintext_key = generate_api_key(prefix)

    api_key = APIKey(
        project_id=project_id,
        key_hash=hash_api_key(plaintext_key),
        key_prefix=plaintext_key[:KEY_PREFIX_LENGTH],
        request_count=0,
        request_limit_per_month=request_limit_per_month,
        usage_month=usage_month(),
        is_active=True,
    )
    db.add(api_key)
    db.flush()

    return api_key, plaintext_key


def find_api_key(db: Session, plaintext_key: str) -> Optional[APIKey]:
    """Look up an API key by the hash of its plaintext value."""
    return db.query(APIKey).filter(APIKey.key_hash == hash_api_key(plaintext_key)).first()


def charge_request(db: Session, api_key_id: int, now: Optional[datetime] = None) -> bool:
    """
    Count one request against a key's monthly ceiling.

    The limit check and the increment are a single conditional UPDATE, so
    concurrent requests can never push the count past the ceiling. A key
    whose count belongs to an earlier month starts again at 1. The change
    is not committed; the caller commits once the request has been served.

    Returns:
        True if the request was counted, False if the monthly limit is reached
    """
    now = now or utcnow()
    month = usage_month(now)

    in_current_month = or_(APIKey.usage_month.is_(None), APIKey.usage_month == month)

    stmt = (
        update(APIKey)
        .where(
            APIKey.id == api_key_id,
            APIKey.is_active.is_(True),
            or_(
                APIKey.usage_month != month,
                APIKey.request_count < APIKey.request_limit_per_month,
            ),
        )
        .values(
            request_count=case((in_current_month, APIKey.request_count + 1), else_=1),
            usage_month=month,
            last_used_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    result = db.execute(stmt)
    return result.rowcount == 1

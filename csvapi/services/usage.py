# ABOUTME: Usage log sink for dataset API requests
# ABOUTME: Appends one usage_logs row per request; write failures are logged, never raised

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from csvapi.models.database import UsageLog

logger = logging.getLogger(__name__)


@dataclass
class UsageContext:
    """Request-scoped facts collected while a dataset request is handled."""
    endpoint: str
    method: str
    started_at: float
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    api_key_id: Optional[int] = None
    project_id: Optional[int] = None
    query_params: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


def record_usage(db: Session, context: UsageContext, status_code: int, response_time_ms: int) -> bool:
    """
    Append a usage log entry.

    Returns:
        True if the entry was written, False if the write failed
    """
    try:
        db.add(UsageLog(
            api_key_id=context.api_key_id,
            project_id=context.project_id,
            endpoint=context.endpoint,
            method=context.method,
            status_code=status_code,
            response_time_ms=response_time_ms,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            query_params=context.query_params,
            error_message=context.error_message,
        ))
        db.commit()
        return True
    except Exception:
        # Don't let logging errors break the request
        logger.exception("Failed to write usage log for %s %s", context.method, context.endpoint)
        try:
            db.rollback()
        except Exception:
            logger.exception("Rollback after usage log failure also failed")
        return False

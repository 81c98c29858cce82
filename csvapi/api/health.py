# ABOUTME: Health check endpoint
# ABOUTME: Returns API and database health status without authentication

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from csvapi.database import get_db

router = APIRouter()


@router.get("/health", responses={
    200: {"description": "API is healthy", "content": {"application/json": {"example": {"status": "ok", "database": "ok"}}}},
    503: {"description": "Database unreachable", "content": {"application/json": {"example": {"status": "degraded", "database": "unavailable"}}}},
})
def health_check(db: Session = Depends(get_db)):
    """Returns API health status."""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return JSONResponse(status_code=503, content={"status": "degraded", "database": "unavailable"})
    return {"status": "ok", "database": "ok"}

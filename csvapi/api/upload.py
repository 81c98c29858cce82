# ABOUTME: Upload endpoint
# ABOUTME: Accepts a CSV or Excel file and turns it into a queryable, key-protected dataset

import json
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.orm import Session

from csvapi.config import Settings, get_settings
from csvapi.database import get_db
from csvapi.dependencies import verify_upload_token
from csvapi.models.errors import CapacityExceededError, SchemaConflictError, AUTH_REQUIRED
from csvapi.models.schemas import ColumnSchema, UploadResponse
from csvapi.services.blob_store import LocalBlobStore
from csvapi.services.ingestion import IngestionOrchestrator, IngestionRequest

router = APIRouter(tags=["upload"])

_schema_adapter = TypeAdapter(List[ColumnSchema])


def parse_schema_override(raw: Optional[str]) -> Optional[List[ColumnSchema]]:
    """Parse the optional JSON schema form field."""
    if not raw:
        return None
    try:
        return _schema_adapter.validate_python(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        raise SchemaConflictError(f"Invalid schema: {e}")


@router.post("/upload", status_code=201, response_model=UploadResponse, responses={
    400: {"description": "File could not be parsed or is over a plan limit"},
    **AUTH_REQUIRED,
})
def upload_file(
    file: UploadFile = File(...),
    user_id: str = Form(...),
    project: Optional[str] = Form(default=None),
    plan: str = Form(default="free"),
    schema: Optional[str] = Form(default=None),
    _: None = Depends(verify_upload_token),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    """
    Upload a file and publish it as a dataset.

    Accepts multipart/form-data with:
    - file: CSV (or .xlsx) file
    - user_id: owner of the project
    - project: project name (defaults to the file name)
    - plan: subscription plan used for capacity limits
    - schema: optional JSON list of {name, type, nullable} replacing the inferred schema

    The generated API key is returned only once.
    """
    schema_override = parse_schema_override(schema)

    # Read at most one byte past the ceiling
    file_bytes = file.file.read(settings.max_file_size_bytes + 1)
    if len(file_bytes) > settings.max_file_size_bytes:
        raise CapacityExceededError(
            f"File too large. Maximum {settings.max_file_size_bytes // (1024 * 1024)}MB allowed."
        )

    orchestrator = IngestionOrchestrator(db, settings, LocalBlobStore(settings.upload_dir))
    result = orchestrator.ingest(IngestionRequest(
        file_bytes=file_bytes,
        filename=file.filename or "upload.csv",
        user_id=user_id,
        project_name=project,
        plan=plan,
        schema_override=schema_override,
    ))

    return UploadResponse(
        datasetId=result.dataset_id,
        projectId=result.project_id,
        rowCount=result.row_count,
        columnCount=result.column_count,
        apiEndpoint=result.api_endpoint,
        apiKey=result.api_key,
    )

# ABOUTME: Dataset query endpoint
# ABOUTME: Serves filtered, sorted, paginated rows of an uploaded dataset to API key holders

import time

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from csvapi.database import get_db
from csvapi.dependencies import verify_api_key
from csvapi.models.database import APIKey, Dataset, DATASET_READY
from csvapi.models.errors import (
    AuthorizationError, NotFoundError, QueryExecutionError, RateLimitError,
    AUTH_REQUIRED, PROJECT_MISMATCH, NOT_FOUND, INVALID_PARAMETER, RATE_LIMITED,
)
from csvapi.models.schemas import ColumnSchema
from csvapi.services.api_keys import charge_request
from csvapi.services.query_engine import execute_query, parse_query_params, total_pages

router = APIRouter(prefix="/api/v1", tags=["datasets"])

_QUERY_EXAMPLE = {
    "success": True,
    "data": [{"name": "Bob", "age": 25}, {"name": "Alice", "age": 30}],
    "pagination": {"page": 1, "limit": 100, "total": 2, "totalPages": 1, "hasNext": False, "hasPrev": False},
    "meta": {"columns": ["name", "age"], "types": {"name": "TEXT", "age": "INTEGER"}, "queryTime": 4},
}


@router.get("/{project}/{dataset}", responses={
    200: {"description": "Matching rows", "content": {"application/json": {"example": _QUERY_EXAMPLE}}},
    **INVALID_PARAMETER, **AUTH_REQUIRED, **PROJECT_MISMATCH, **NOT_FOUND, **RATE_LIMITED,
})
def query_dataset(
    project: str,
    dataset: str,
    request: Request,
    api_key: APIKey = Depends(verify_api_key),
    db: Session = Depends(get_db)
):
    """
    Query a dataset.

    Reserved parameters: page, limit (max 1000), sort, order (asc|desc),
    q (search across text columns) and fields (comma-separated projection).
    Any other parameter filters on a column by equality; <column>_min and
    <column>_max give inclusive range bounds.
    """
    if api_key.project is None or api_key.project.slug != project:
        raise AuthorizationError("API key does not match project")

    dataset_row = db.query(Dataset).filter(
        Dataset.project_id == api_key.project_id,
        Dataset.name == dataset,
        Dataset.status == DATASET_READY
    ).first()

    if dataset_row is None:
        raise NotFoundError("Dataset not found")

    schema = [ColumnSchema(**column) for column in dataset_row.schema_json]
    plan = parse_query_params(request.query_params.multi_items(), schema)
    request.state.usage.query_params = plan.to_dict()

    # The charge is committed only together with a successfully served query
    if not charge_request(db, api_key.id):
        db.rollback()
        raise RateLimitError("Monthly API limit exceeded")

    try:
        result = execute_query(db, dataset_row.table_name, schema, plan)
    except QueryExecutionError:
        db.rollback()
        raise

    db.commit()

    query_time = int((time.time() - request.state.usage.started_at) * 1000)
    columns = list(plan.fields) if plan.fields else [c.name for c in schema]

    return {
        "success": True,
        "data": result.rows,
        "pagination": {
            "page": plan.page,
            "limit": plan.limit,
            "total": result.total,
            "totalPages": total_pages(result.total, plan.limit),
            "hasNext": plan.page * plan.limit < result.total,
            "hasPrev": plan.page > 1,
        },
        "meta": {
            "columns": columns,
            "types": {c.name: c.type.value for c in schema if c.name in columns},
            "queryTime": query_time,
        },
    }

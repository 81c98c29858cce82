# ABOUTME: Pydantic models shared by the ingestion pipeline and the API layer
# ABOUTME: Column schema definitions and upload response bodies

from enum import Enum
from pydantic import BaseModel, ConfigDict, Field


class ColumnType(str, Enum):
    """Semantic column types inferred from uploaded data."""
    INTEGER = "INTEGER"
    FLOAT = "FLOAT"
    DATE = "DATE"
    BOOLEAN = "BOOLEAN"
    TEXT = "TEXT"


class ColumnSchema(BaseModel):
    """Name, semantic type and nullability of one dataset column."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    type: ColumnType
    nullable: bool = True


class UploadResponse(BaseModel):
    """Returned once after a successful ingestion; the API key is never shown again."""
    success: bool = True
    datasetId: int
    projectId: int
    rowCount: int
    columnCount: int
    apiEndpoint: str
    apiKey: str

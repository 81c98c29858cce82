# ABOUTME: Per-dataset storage table management service
# ABOUTME: Creates, describes and drops the dynamic SQLAlchemy tables that hold dataset rows

import logging
import re
import secrets
import time
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import (
    Table, Column, BigInteger, Integer, Double, Date, Boolean, Text, MetaData, inspect
)
from sqlalchemy.exc import SQLAlchemyError

from csvapi.models.errors import SchemaConflictError
from csvapi.models.schemas import ColumnSchema, ColumnType

logger = logging.getLogger(__name__)

ROW_ID_COLUMN = "id"
RENAMED_ID_COLUMN = "csv_id"

# Map semantic column types to SQLAlchemy types
TYPE_MAPPING = {
    ColumnType.INTEGER: BigInteger,
    ColumnType.FLOAT: Double,
    ColumnType.DATE: Date,
    ColumnType.BOOLEAN: Boolean,
    ColumnType.TEXT: Text,
}


@dataclass(frozen=True)
class ProvisionResult:
    """Outcome of creating a storage table."""
    locator: str
    success: bool
    error: Optional[str] = None


def generate_table_name(namespace) -> str:
    """
    Generate a unique table name for a new dataset.

    Args:
        namespace: Owner of the dataset, usually the project id

    Returns:
        A name such as csv_12_1718000000000_a1b2c3
    """
    safe_namespace = re.sub(r"[^a-z0-9]+", "_", str(namespace).lower()).strip("_") or "ns"
    return f"csv_{safe_namespace}_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def resolve_storage_schema(schema: List[ColumnSchema]) -> List[ColumnSchema]:
    """
    Rename a column called ``id`` to ``csv_id`` so it cannot clash with the row identity column.

    Raises:
        SchemaConflictError: The rename would collide with an existing csv_id column
    """
    names = {column.name for column in schema}
    resolved = []
    for column in schema:
        if column.name.lower() == ROW_ID_COLUMN:
            if RENAMED_ID_COLUMN in names:
                raise SchemaConflictError(
                    f"Column '{column.name}' would be renamed to '{RENAMED_ID_COLUMN}', "
                    f"which already exists"
                )
            column = column.model_copy(update={"name": RENAMED_ID_COLUMN})
        resolved.append(column)
    return resolved


def build_table(table_name: str, schema: List[ColumnSchema], metadata: Optional[MetaData] = None) -> Table:
    """
    Describe the storage table for a dataset without touching the database.

    The ``id`` column holds the 1-based row number of each record.
    """
    columns = [Column(ROW_ID_COLUMN, Integer, primary_key=True, autoincrement=False)]

    for column in schema:
        sa_type = TYPE_MAPPING.get(column.type, Text)
        columns.append(Column(column.name, sa_type(), nullable=column.nullable))

    return Table(table_name, metadata if metadata is not None else MetaData(), *columns)


def provision_table(table_name: str, schema: List[ColumnSchema], engine) -> ProvisionResult:
    """
    Create the storage table for a dataset if it does not already exist.

    Safe to call more than once for the same name.

    Args:
        table_name: Name of the table to create
        schema: Storage schema (see resolve_storage_schema)
        engine: SQLAlchemy engine

    Returns:
        ProvisionResult with success False and an actionable error on failure
    """
    metadata = MetaData()
    table = build_table(table_name, schema, metadata)

    try:
        metadata.create_all(engine, tables=[table], checkfirst=True)
    except SQLAlchemyError as e:
        logger.warning("Provisioning table %s failed: %s", table_name, e)
        return ProvisionResult(
            locator=table_name,
            success=False,
            error=(
                f"Unable to create table {table_name}: {e.__class__.__name__}: {getattr(e, 'orig', e)}. "
                f"Check that the database is reachable and the configured user may create tables."
            ),
        )

    logger.info("Provisioned table %s with %d columns", table_name, len(schema))
    return ProvisionResult(locator=table_name, success=True)


def drop_table(table_name: str, engine) -> None:
    """Drop a dataset table if it exists."""
    if not table_exists(table_name, engine):
        logger.info("Table %s does not exist; nothing to drop", table_name)
        return
    Table(table_name, MetaData()).drop(engine)
    logger.info("Dropped table %s", table_name)


def table_exists(table_name: str, engine) -> bool:
    """
    Check if a table exists in the database.

    Args:
        table_name: Name of the table to check
        engine: SQLAlchemy engine

    Returns:
        True if table exists, False otherwise
    """
    inspector = inspect(engine)
    return table_name in inspector.get_table_names()

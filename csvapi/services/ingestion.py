# ABOUTME: Ingestion orchestrator for uploaded files
# ABOUTME: Runs parse -> provision -> batched insert -> key issuance, undoing partial work on failure

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from csvapi.config import Settings, PlanLimits
from csvapi.models.database import Project, Dataset, DATASET_PENDING, DATASET_READY
from csvapi.models.errors import (
    CsvApiError, CapacityExceededError, IngestionError, ParseError, ProvisionError, SchemaConflictError
)
from csvapi.models.schemas import ColumnSchema, ColumnType
from csvapi.services.api_keys import issue_api_key
from csvapi.services.blob_store import LocalBlobStore
from csvapi.services.table_manager import (
    ROW_ID_COLUMN, build_table, drop_table, generate_table_name, provision_table, resolve_storage_schema
)
from csvapi.utils.csv_parser import ParsedDataset, check_unique_names, parse_upload
from csvapi.utils.data_cleaners import coerce_value, sanitize_column_name, slugify

logger = logging.getLogger(__name__)


class IngestionStage(str, Enum):
    RECEIVED = "received"
    PARSED = "parsed"
    PROVISIONED = "provisioned"
    ROWS_INSERTED = "rows_inserted"
    KEY_ISSUED = "key_issued"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class IngestionRequest:
    file_bytes: bytes
    filename: str
    user_id: str
    project_name: Optional[str] = None
    plan: str = "free"
    schema_override: Optional[List[ColumnSchema]] = None


@dataclass(frozen=True)
class IngestionResult:
    dataset_id: int
    project_id: int
    project_slug: str
    dataset_name: str
    table_name: str
    row_count: int
    column_count: int
    schema: List[ColumnSchema]
    api_endpoint: str
    api_key: str


class IngestionOrchestrator:
    """
    Turns one uploaded file into a queryable dataset.

    Stages advance Received -> Parsed -> Provisioned -> RowsInserted ->
    KeyIssued -> Complete. Capacity and parse failures abort before anything
    is written. Any later failure, including cancellation, drops the
    storage table and deletes the dataset record, the original file and a
    project created by this ingestion, then raises IngestionError naming
    the stage that failed.
    """

    def __init__(self, db: Session, settings: Settings, blob_store: Optional[LocalBlobStore] = None):
        self.db = db
        self.settings = settings
        self.engine = db.get_bind()
        self.blob_store = blob_store or LocalBlobStore(settings.upload_dir)

        self.stage = IngestionStage.RECEIVED
        self.failed_stage: Optional[IngestionStage] = None

        # Side effects to undo on failure
        self._created_project_id: Optional[int] = None
        self._dataset_id: Optional[int] = None
        self._table_name: Optional[str] = None
        self._blob_key: Optional[str] = None

    def ingest(self, request: IngestionRequest) -> IngestionResult:
        """
        Run the whole ingestion.

        Raises:
            IngestionError: Wraps the ParseError, SchemaConflictError,
                CapacityExceededError, ProvisionError or storage failure that
                stopped the ingestion
        """
        try:
            return self._run(request)
        except CsvApiError as e:
            failed = self._fail()
            raise IngestionError(failed.value, e) from e
        except Exception as e:
            failed = self._fail()
            logger.exception("Ingestion of %s failed during %s", request.filename, failed.value)
            raise IngestionError(failed.value, CsvApiError(f"Ingestion failed: {e}")) from e
        except BaseException:
            self._fail()
            raise

    def _run(self, request: IngestionRequest) -> IngestionResult:
        limits = self.settings.limits_for(request.plan)

        # Received
        if len(request.file_bytes) > self.settings.max_file_size_bytes:
            raise CapacityExceededError(
                f"File too large. Maximum {self.settings.max_file_size_bytes // (1024 * 1024)}MB allowed."
            )

        parsed = parse_upload(request.filename, request.file_bytes)
        if parsed.errors:
            raise ParseError(f"CSV parsing failed: {', '.join(parsed.errors)}", errors=parsed.errors)

        if parsed.row_count > limits.max_rows_per_csv:
            raise CapacityExceededError(
                f"Too many rows. Maximum {limits.max_rows_per_csv} rows allowed for your plan."
            )

        schema, rows = self._typed_rows(parsed, request.schema_override)
        self._advance(IngestionStage.PARSED)

        stem = Path(request.filename or "dataset").stem
        project = self._resolve_project(request.user_id, request.project_name or stem, limits)

        self._blob_key = self.blob_store.put(
            LocalBlobStore.make_key(request.user_id, project.id, request.filename),
            request.file_bytes,
        )

        table_name = generate_table_name(project.id)
        result = provision_table(table_name, schema, self.engine)
        if not result.success:
            raise ProvisionError(f"Failed to create table: {result.error}")
        self._table_name = result.locator
        self._advance(IngestionStage.PROVISIONED)

        dataset = Dataset(
            project_id=project.id,
            name=self._unique_dataset_name(project.id, slugify(stem) or "dataset"),
            original_filename=request.filename,
            table_name=result.locator,
            schema_json=[column.model_dump(mode="json") for column in schema],
            row_count=len(rows),
            file_size_bytes=len(request.file_bytes),
            file_url=self._blob_key,
            status=DATASET_PENDING,
        )
        self.db.add(dataset)
        self.db.commit()
        self._dataset_id = dataset.id

        self._insert_rows(result.locator, schema, rows)
        self._advance(IngestionStage.ROWS_INSERTED)

        api_key, plaintext_key = issue_api_key(
            self.db,
            project_id=project.id,
            request_limit_per_month=self.settings.default_request_limit_per_month,
            prefix=self.settings.api_key_prefix,
        )
        self._advance(IngestionStage.KEY_ISSUED)

        dataset.status = DATASET_READY
        self.db.commit()
        self._advance(IngestionStage.COMPLETE)

        return IngestionResult(
            dataset_id=dataset.id,
            project_id=project.id,
            project_slug=project.slug,
            dataset_name=dataset.name,
            table_name=dataset.table_name,
            row_count=len(rows),
            column_count=len(schema),
            schema=schema,
            api_endpoint=f"/api/v1/{project.slug}/{dataset.name}",
            api_key=plaintext_key,
        )

    def _typed_rows(
        self,
        parsed: ParsedDataset,
        schema_override: Optional[List[ColumnSchema]]
    ) -> Tuple[List[ColumnSchema], List[Dict[str, Any]]]:
        """
        Resolve the storage schema and coerce every value to its column type.

        An inferred column whose later values do not fit its type (only the
        first 100 values are sampled) is stored as TEXT instead. Values that
        do not fit a caller-supplied schema are a SchemaConflictError.
        """
        if schema_override:
            if len(schema_override) != len(parsed.schema):
                raise SchemaConflictError(
                    f"Supplied schema has {len(schema_override)} columns but the file has {len(parsed.schema)}"
                )
            schema = [
                column.model_copy(update={"name": sanitize_column_name(column.name)})
                for column in schema_override
            ]
            check_unique_names([column.name for column in schema])
        else:
            schema = list(parsed.schema)

        source_names = parsed.column_names
        schema = resolve_storage_schema(schema)

        columns = {}
        for i, column in enumerate(schema):
            raw_values = [row[source_names[i]] for row in parsed.rows]
            try:
                values = [coerce_value(v, column.type) for v in raw_values]
            except ValueError as e:
                if schema_override:
                    raise SchemaConflictError(f"Column '{column.name}' does not match type {column.type.value}: {e}")
                logger.info("Column %s has values that are not %s; storing as TEXT", column.name, column.type.value)
                column = column.model_copy(update={"type": ColumnType.TEXT})
                schema[i] = column
                values = [coerce_value(v, ColumnType.TEXT) for v in raw_values]

            if not column.nullable and any(v is None for v in values):
                raise SchemaConflictError(f"Column '{column.name}' is declared NOT NULL but has empty values")
            columns[column.name] = values

        rows = [
            {name: values[row_index] for name, values in columns.items()}
            for row_index in range(parsed.row_count)
        ]
        return schema, rows

    def _resolve_project(self, user_id: str, project_name: str, limits: PlanLimits) -> Project:
        """Reuse the user's project for this name, or create one within the plan's project limit."""
        slug = slugify(project_name) or "project"

        # A project whose slug was suffixed (people-2) still belongs to the name "people"
        project = next(
            (
                p for p in self.db.query(Project).filter(Project.user_id == user_id).order_by(Project.id)
                if p.slug == slug or (slugify(p.name) or "project") == slug
            ),
            None,
        )
        if project is not None:
            dataset_count = self.db.query(Dataset).filter(Dataset.project_id == project.id).count()
            if dataset_count >= limits.max_csvs_per_project:
                raise CapacityExceededError(
                    f"Dataset limit reached for project '{slug}'. Maximum {limits.max_csvs_per_project} allowed."
                )
            return project

        project_count = self.db.query(Project).filter(Project.user_id == user_id).count()
        if project_count >= limits.max_projects:
            raise CapacityExceededError("Project limit reached. Upgrade your plan.")

        unique_slug = slug
        suffix = 2
        while self.db.query(Project).filter(Project.slug == unique_slug).first() is not None:
            unique_slug = f"{slug}-{suffix}"
            suffix += 1

        project = Project(
            user_id=user_id,
            name=project_name,
            slug=unique_slug,
            description=f"Project for {project_name}",
            is_active=True,
        )
        self.db.add(project)
        self.db.commit()
        self._created_project_id = project.id
        logger.info("Created project %s for user %s", unique_slug, user_id)
        return project

    def _unique_dataset_name(self, project_id: int, name: str) -> str:
        candidate = name
        suffix = 2
        while self.db.query(Dataset).filter(
            Dataset.project_id == project_id, Dataset.name == candidate
        ).first() is not None:
            candidate = f"{name}-{suffix}"
            suffix += 1
        return candidate

    def _insert_rows(self, table_name: str, schema: List[ColumnSchema], rows: List[Dict[str, Any]]) -> None:
        """Insert rows in row-number order, committing one batch at a time."""
        table = build_table(table_name, schema)
        batch_size = self.settings.insert_batch_size

        for start in range(0, len(rows), batch_size):
            batch = [
                {ROW_ID_COLUMN: start + offset + 1, **row}
                for offset, row in enumerate(rows[start:start + batch_size])
            ]
            self.db.execute(table.insert(), batch)
            self.db.commit()
            logger.debug("Inserted rows %d-%d into %s", start + 1, start + len(batch), table_name)

    def _advance(self, stage: IngestionStage) -> None:
        logger.info("Ingestion stage %s -> %s", self.stage.value, stage.value)
        self.stage = stage

    def _fail(self) -> IngestionStage:
        """Undo every side effect recorded so far and return the stage that failed."""
        self.failed_stage = self.stage
        self.stage = IngestionStage.FAILED
        logger.warning("Ingestion failed during stage %s; rolling back", self.failed_stage.value)
        self._compensate()
        return self.failed_stage

    def _compensate(self) -> None:
        try:
            self.db.rollback()
        except Exception:
            logger.exception("Session rollback failed during ingestion cleanup")

        if self._dataset_id is not None:
            try:
                self.db.query(Dataset).filter(Dataset.id == self._dataset_id).delete()
                self.db.commit()
            except Exception:
                self.db.rollback()
                logger.exception("Could not delete dataset record %s", self._dataset_id)

        if self._table_name is not None:
            try:
                drop_table(self._table_name, self.engine)
            except Exception:
                logger.exception("Could not drop table %s", self._table_name)

        if self._created_project_id is not None:
            try:
                self.db.query(Project).filter(Project.id == self._created_project_id).delete()
                self.db.commit()
            except Exception:
                self.db.rollback()
                logger.exception("Could not delete project %s", self._created_project_id)

        if self._blob_key is not None:
            try:
                if self.blob_store.exists(self._blob_key):
                    self.blob_store.delete(self._blob_key)
            except Exception:
                logger.exception("Could not delete stored upload %s", self._blob_key)

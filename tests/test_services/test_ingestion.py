# ABOUTME: Tests for the ingestion orchestrator
# ABOUTME: Validates the happy path, capacity checks, schema overrides and cleanup after failures

from pathlib import Path

import pytest
from sqlalchemy import Insert, inspect, select
from sqlalchemy.exc import OperationalError

from csvapi.config import PlanLimits, Settings
from csvapi.models.database import APIKey, Dataset, Project, DATASET_READY
from csvapi.models.errors import IngestionError
from csvapi.models.schemas import ColumnSchema, ColumnType
from csvapi.services import ingestion
from csvapi.services.api_keys import hash_api_key
from csvapi.services.ingestion import IngestionOrchestrator, IngestionRequest, IngestionStage
from csvapi.services.table_manager import ProvisionResult, build_table

from tests.conftest import TEST_DATABASE_URL

PEOPLE_CSV = b"Name,Age,Score\nAlice,30,9.5\nBob,25,7\nCara,,8.25\nDan,41,6\nEve,35,10\n"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=TEST_DATABASE_URL,
        upload_dir=str(tmp_path / "uploads"),
        insert_batch_size=2,
        plan_limits={
            "free": PlanLimits(max_projects=1, max_rows_per_csv=10, max_csvs_per_project=2),
        },
    )


def ingest(db_session, settings, content=PEOPLE_CSV, filename="people.csv", **kwargs):
    orchestrator = IngestionOrchestrator(db_session, settings)
    request = IngestionRequest(file_bytes=content, filename=filename, user_id="user-1", **kwargs)
    return orchestrator, orchestrator.ingest(request)


def dataset_tables(db_session):
    return [t for t in inspect(db_session.bind).get_table_names() if t.startswith("csv_")]


def uploaded_files(settings):
    root = Path(settings.upload_dir)
    return [p for p in root.rglob("*") if p.is_file()] if root.exists() else []


def test_ingest_creates_ready_dataset(db_session, settings):
    orchestrator, result = ingest(db_session, settings)

    assert orchestrator.stage == IngestionStage.COMPLETE
    assert result.row_count == 5
    assert result.column_count == 3
    assert result.project_slug == "people"
    assert result.dataset_name == "people"
    assert result.api_endpoint == "/api/v1/people/people"
    assert [(c.name, c.type) for c in result.schema] == [
        ("name", ColumnType.TEXT),
        ("age", ColumnType.INTEGER),
        ("score", ColumnType.FLOAT),
    ]

    dataset = db_session.get(Dataset, result.dataset_id)
    assert dataset.status == DATASET_READY
    assert dataset.row_count == 5
    assert dataset.schema_json[1] == {"name": "age", "type": "INTEGER", "nullable": True}

    api_key = db_session.query(APIKey).one()
    assert api_key.key_hash == hash_api_key(result.api_key)
    assert api_key.project_id == result.project_id

    assert len(uploaded_files(settings)) == 1


def test_rows_are_numbered_in_file_order(db_session, settings):
    _, result = ingest(db_session, settings)

    table = build_table(result.table_name, result.schema)
    rows = db_session.execute(select(table).order_by(table.c.id)).mappings().all()

    assert [r["id"] for r in rows] == [1, 2, 3, 4, 5]
    assert [r["name"] for r in rows] == ["Alice", "Bob", "Cara", "Dan", "Eve"]
    assert rows[2]["age"] is None
    assert rows[2]["score"] == 8.25


def test_second_upload_reuses_project_and_suffixes_name(db_session, settings):
    _, first = ingest(db_session, settings)
    _, second = ingest(db_session, settings)

    assert second.project_id == first.project_id
    assert second.dataset_name == "people-2"
    assert db_session.query(Project).count() == 1


def test_project_name_from_request(db_session, settings):
    _, result = ingest(db_session, settings, project_name="Sales Team")
    assert result.project_slug == "sales-team"


def test_id_column_is_renamed(db_session, settings):
    _, result = ingest(db_session, settings, content=b"id,name\n10,a\n20,b\n")

    assert [c.name for c in result.schema] == ["csv_id", "name"]
    table = build_table(result.table_name, result.schema)
    rows = db_session.execute(select(table).order_by(table.c.id)).mappings().all()
    assert [(r["id"], r["csv_id"]) for r in rows] == [(1, 10), (2, 20)]


def test_late_mismatch_falls_back_to_text(db_session, settings):
    content = "code\n" + "".join(f"{i}\n" for i in range(1, 101)) + "A7\n"
    settings.plan_limits["free"] = PlanLimits(max_projects=1, max_rows_per_csv=1000, max_csvs_per_project=2)

    _, result = ingest(db_session, settings, content=content.encode())

    assert result.schema[0].type == ColumnType.TEXT
    table = build_table(result.table_name, result.schema)
    values = db_session.execute(select(table.c.code).order_by(table.c.id)).scalars().all()
    assert values[0] == "1"
    assert values[-1] == "A7"


def test_schema_override_is_applied(db_session, settings):
    override = [
        ColumnSchema(name="Name", type=ColumnType.TEXT, nullable=False),
        ColumnSchema(name="Age", type=ColumnType.TEXT),
        ColumnSchema(name="Score", type=ColumnType.FLOAT),
    ]
    _, result = ingest(db_session, settings, schema_override=override)

    assert [(c.name, c.type) for c in result.schema] == [
        ("name", ColumnType.TEXT),
        ("age", ColumnType.TEXT),
        ("score", ColumnType.FLOAT),
    ]


def test_schema_override_type_mismatch_is_rejected(db_session, settings):
    override = [
        ColumnSchema(name="name", type=ColumnType.INTEGER),
        ColumnSchema(name="age", type=ColumnType.INTEGER),
        ColumnSchema(name="score", type=ColumnType.FLOAT),
    ]
    with pytest.raises(IngestionError) as exc_info:
        ingest(db_session, settings, schema_override=override)

    assert exc_info.value.code == "SCHEMA_CONFLICT"
    assert exc_info.value.stage == "received"
    assert db_session.query(Project).count() == 0


def test_schema_override_not_null_violation(db_session, settings):
    override = [
        ColumnSchema(name="name", type=ColumnType.TEXT),
        ColumnSchema(name="age", type=ColumnType.INTEGER, nullable=False),
        ColumnSchema(name="score", type=ColumnType.FLOAT),
    ]
    with pytest.raises(IngestionError) as exc_info:
        ingest(db_session, settings, schema_override=override)

    assert "NOT NULL" in exc_info.value.message


def test_schema_override_column_count_must_match(db_session, settings):
    with pytest.raises(IngestionError) as exc_info:
        ingest(db_session, settings, schema_override=[ColumnSchema(name="name", type=ColumnType.TEXT)])
    assert exc_info.value.code == "SCHEMA_CONFLICT"


def test_empty_file_is_parse_error(db_session, settings):
    with pytest.raises(IngestionError) as exc_info:
        ingest(db_session, settings, content=b"Name,Age\n")

    assert exc_info.value.code == "PARSE_ERROR"
    assert exc_info.value.message == "CSV parsing failed: No data found in CSV"
    assert exc_info.value.status_code == 400


def test_row_ceiling_writes_nothing(db_session, settings):
    content = "n\n" + "".join(f"{i}\n" for i in range(11))

    with pytest.raises(IngestionError) as exc_info:
        ingest(db_session, settings, content=content.encode())

    assert exc_info.value.code == "CAPACITY_EXCEEDED"
    assert "10 rows" in exc_info.value.message
    assert db_session.query(Dataset).count() == 0
    assert db_session.query(Project).count() == 0
    assert dataset_tables(db_session) == []
    assert uploaded_files(settings) == []


def test_file_size_ceiling(db_session, settings):
    settings.max_file_size_bytes = 10

    with pytest.raises(IngestionError) as exc_info:
        ingest(db_session, settings)

    assert exc_info.value.code == "CAPACITY_EXCEEDED"
    assert "File too large" in exc_info.value.message


def test_project_ceiling(db_session, settings):
    ingest(db_session, settings, project_name="first")

    with pytest.raises(IngestionError) as exc_info:
        ingest(db_session, settings, project_name="second")

    assert exc_info.value.message == "Project limit reached. Upgrade your plan."
    assert db_session.query(Project).count() == 1


def test_datasets_per_project_ceiling(db_session, settings):
    ingest(db_session, settings)
    ingest(db_session, settings)

    with pytest.raises(IngestionError) as exc_info:
        ingest(db_session, settings)

    assert exc_info.value.code == "CAPACITY_EXCEEDED"
    assert db_session.query(Dataset).count() == 2


def test_provision_failure_cleans_up(db_session, settings, monkeypatch):
    def failing_provision(table_name, schema, engine):
        return ProvisionResult(locator=table_name, success=False, error="permission denied")

    monkeypatch.setattr(ingestion, "provision_table", failing_provision)

    with pytest.raises(IngestionError) as exc_info:
        ingest(db_session, settings)

    assert exc_info.value.stage == "parsed"
    assert exc_info.value.status_code == 500
    assert "permission denied" in exc_info.value.message
    assert db_session.query(Project).count() == 0
    assert uploaded_files(settings) == []


def test_batch_failure_removes_partial_dataset(db_session, settings, monkeypatch):
    original_execute = db_session.execute
    inserts = []

    def flaky_execute(statement, *args, **kwargs):
        if isinstance(statement, Insert) and statement.table.name.startswith("csv_"):
            inserts.append(statement)
            if len(inserts) == 2:
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))
        return original_execute(statement, *args, **kwargs)

    monkeypatch.setattr(db_session, "execute", flaky_execute)

    with pytest.raises(IngestionError) as exc_info:
        ingest(db_session, settings)

    assert exc_info.value.stage == "provisioned"
    assert exc_info.value.status_code == 500
    assert db_session.query(Dataset).count() == 0
    assert db_session.query(Project).count() == 0
    assert db_session.query(APIKey).count() == 0
    assert dataset_tables(db_session) == []
    assert uploaded_files(settings) == []


def test_cancellation_cleans_up(db_session, settings, monkeypatch):
    def interrupted(*args, **kwargs):
        raise KeyboardInterrupt()

    monkeypatch.setattr(ingestion, "issue_api_key", interrupted)
    orchestrator = IngestionOrchestrator(db_session, settings)

    with pytest.raises(KeyboardInterrupt):
        orchestrator.ingest(IngestionRequest(file_bytes=PEOPLE_CSV, filename="people.csv", user_id="user-1"))

    assert orchestrator.stage == IngestionStage.FAILED
    assert orchestrator.failed_stage == IngestionStage.ROWS_INSERTED
    assert db_session.query(Dataset).count() == 0
    assert db_session.query(Project).count() == 0
    assert dataset_tables(db_session) == []


def test_failure_keeps_existing_project(db_session, settings, monkeypatch):
    ingest(db_session, settings)

    monkeypatch.setattr(
        ingestion, "provision_table",
        lambda table_name, schema, engine: ProvisionResult(locator=table_name, success=False, error="boom"),
    )
    with pytest.raises(IngestionError):
        ingest(db_session, settings, filename="people-v2.csv", project_name="people")

    assert db_session.query(Project).count() == 1
    assert db_session.query(Dataset).count() == 1
    assert len(uploaded_files(settings)) == 1


def test_suffixed_project_is_reused_by_its_owner(db_session, settings):
    orchestrator = IngestionOrchestrator(db_session, settings)
    first = orchestrator.ingest(IngestionRequest(file_bytes=PEOPLE_CSV, filename="people.csv", user_id="user-a"))

    _, second = ingest(db_session, settings)
    _, third = ingest(db_session, settings)

    assert first.project_slug == "people"
    assert second.project_slug == "people-2"
    assert third.project_id == second.project_id
    assert third.api_endpoint == "/api/v1/people-2/people-2"
    assert db_session.query(Project).filter(Project.user_id == "user-1").count() == 1


def test_wide_whole_numbers_are_stored_as_text(db_session, settings):
    content = b"acct,name\n123456789012345678901234,a\n987654321098765432109876,b\n"

    _, result = ingest(db_session, settings, content=content)

    assert result.schema[0].type == ColumnType.TEXT
    table = build_table(result.table_name, result.schema)
    values = db_session.execute(select(table.c.acct).order_by(table.c.id)).scalars().all()
    assert values == ["123456789012345678901234", "987654321098765432109876"]


def test_late_wide_integer_falls_back_to_text(db_session, settings):
    settings.plan_limits["free"] = PlanLimits(max_projects=1, max_rows_per_csv=1000, max_csvs_per_project=2)
    content = "n\n" + "".join(f"{i}\n" for i in range(2, 102)) + "123456789012345678901234\n"

    _, result = ingest(db_session, settings, content=content.encode())

    assert result.schema[0].type == ColumnType.TEXT
    assert result.row_count == 101

# ABOUTME: Tests for database initialization, session management and control tables
# ABOUTME: Validates table creation, session handling and project/dataset uniqueness rules

import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from csvapi.database import init_db, get_db
from csvapi.models.database import Dataset, Project, DATASET_PENDING


def test_init_db_creates_control_tables():
    test_engine = create_engine("sqlite:///:memory:")

    init_db(test_engine)

    tables = inspect(test_engine).get_table_names()
    assert {"projects", "datasets", "api_keys", "usage_logs"} <= set(tables)
    test_engine.dispose()


def test_get_db_yields_session():
    db_gen = get_db()
    db = next(db_gen)

    assert isinstance(db, Session)

    with pytest.raises(StopIteration):
        next(db_gen)


def test_project_slugs_are_unique(db_session):
    db_session.add(Project(user_id="user-1", name="Sales", slug="sales"))
    db_session.commit()

    db_session.add(Project(user_id="user-2", name="Sales", slug="sales"))
    with pytest.raises(IntegrityError):
        db_session.commit()


def test_dataset_names_are_unique_within_a_project(db_session):
    project = Project(user_id="user-1", name="Sales", slug="sales")
    db_session.add(project)
    db_session.commit()

    def dataset(name, table_name):
        return Dataset(project_id=project.id, name=name, table_name=table_name, schema_json=[])

    db_session.add(dataset("q1", "csv_1_a"))
    db_session.commit()

    new = dataset("q1", "csv_1_b")
    db_session.add(new)
    with pytest.raises(IntegrityError):
        db_session.commit()


def test_new_dataset_defaults_to_pending(db_session):
    project = Project(user_id="user-1", name="Sales", slug="sales")
    db_session.add(project)
    db_session.commit()

    dataset = Dataset(project_id=project.id, name="q1", table_name="csv_1_a", schema_json=[])
    db_session.add(dataset)
    db_session.commit()

    assert dataset.status == DATASET_PENDING
    assert dataset.row_count == 0
    assert project.is_active

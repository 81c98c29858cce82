# ABOUTME: Pytest fixtures and configuration
# ABOUTME: Provides test database, settings, client and upload helpers

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, MetaData
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from csvapi.config import Settings, get_settings
from csvapi.database import get_db
from csvapi.main import app
from csvapi.models.database import Base


# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"
ADMIN_KEY = "admin_test_key_123"
ADMIN_HEADERS = {"Authorization": f"Bearer {ADMIN_KEY}"}

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """Override database dependency for tests."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function", autouse=True)
def setup_database():
    """Create tables before each test, drop after."""
    Base.metadata.create_all(bind=engine)
    yield
    # Drop all tables including dynamic dataset tables
    metadata = MetaData()
    metadata.reflect(bind=engine)
    metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    """Provides a database session for tests."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def test_settings(tmp_path):
    """Settings with an admin key and a temporary upload directory."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        admin_api_key=ADMIN_KEY,
        upload_dir=str(tmp_path / "uploads"),
    )


@pytest.fixture
def client(setup_database, test_settings):
    """Provides a FastAPI test client with test database and settings."""
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: test_settings
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


def upload_csv(client, content: str, filename: str = "people.csv", **form):
    """Upload CSV text through the API and return the response."""
    data = {"user_id": "user-1", **form}
    return client.post(
        "/upload",
        headers=ADMIN_HEADERS,
        files={"file": (filename, content.encode(), "text/csv")},
        data=data,
    )


@pytest.fixture
def people_dataset(client):
    """Uploads a small people dataset and returns the upload response body."""
    content = (
        "Name,Age,City,Joined,Active\n"
        "Alice,30,Chicago,2023-01-15,yes\n"
        "Bob,25,Springfield,2023-03-02,no\n"
        "Cara,,Chicago,2022-11-30,yes\n"
        "Dan,41,Naperville,2024-02-29,no\n"
    )
    response = upload_csv(client, content)
    assert response.status_code == 201, response.text
    return response.json()

# ABOUTME: SQLAlchemy database models
# ABOUTME: Defines tables for projects, datasets, api_keys and usage_logs

from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, ForeignKey, JSON, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

DATASET_PENDING = "pending"
DATASET_READY = "ready"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Project(Base):
    """A user's project; owns datasets and the API keys that read them."""
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True)
    user_id = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=False)
    slug = Column(String(120), unique=True, nullable=False, index=True)
    description = Column(Text)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    datasets = relationship("Dataset", back_populates="project")
    api_keys = relationship("APIKey", back_populates="project")


class Dataset(Base):
    """One ingested file: its schema, row count and storage locator."""
    __tablename__ = "datasets"
    __table_args__ = (UniqueConstraint("project_id", "name", name="uq_datasets_project_name"),)

    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    name = Column(Text, nullable=False)
    original_filename = Column(Text)
    table_name = Column(Text, nullable=False)  # storage locator, e.g. csv_3_1718000000000_a1b2c3
    schema_json = Column(JSON, nullable=False)  # [{"name", "type", "nullable"}, ...]
    row_count = Column(Integer, nullable=False, default=0)
    file_size_bytes = Column(Integer)
    file_url = Column(Text)  # blob store key of the original upload
    status = Column(String(20), nullable=False, default=DATASET_PENDING)  # pending | ready
    created_at = Column(DateTime, default=utcnow)

    project = relationship("Project", back_populates="datasets")


class APIKey(Base):
    """Project-scoped API key with a monthly request ceiling."""
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    name = Column(Text, default="Default Key")
    key_hash = Column(Text, unique=True, nullable=False, index=True)
    key_prefix = Column(String(20), nullable=False)
    request_count = Column(Integer, nullable=False, default=0)
    request_limit_per_month = Column(Integer, nullable=False, default=1000)
    usage_month = Column(String(7))  # YYYY-MM the request_count belongs to
    is_active = Column(Boolean, default=True, nullable=False)
    last_used_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    project = relationship("Project", back_populates="api_keys")
    usage_logs = relationship("UsageLog", back_populates="api_key")


class UsageLog(Base):
    """Append-only log of dataset API requests."""
    __tablename__ = "usage_logs"

    id = Column(Integer, primary_key=True)
    api_key_id = Column(Integer, ForeignKey("api_keys.id"), nullable=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=True)
    endpoint = Column(Text, nullable=False)
    method = Column(String(10), nullable=False)
    status_code = Column(Integer, nullable=False)
    response_time_ms = Column(Integer)
    ip_address = Column(String(45))
    user_agent = Column(Text)
    query_params = Column(JSON)
    error_message = Column(Text)
    timestamp = Column(DateTime, default=utcnow, index=True)

    api_key = relationship("APIKey", back_populates="usage_logs")

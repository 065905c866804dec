"""SQLAlchemy models for projects, indexing jobs, embeddings and query metrics."""

import json
import uuid

from sqlalchemy import Boolean, Column, Float, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

from utils import get_current_timestamp

Base = declarative_base()


def _new_id() -> str:
    return uuid.uuid4().hex


class JobStatus:
    """Indexing job states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Project(Base):
    """A repository registered for indexing and querying."""

    __tablename__ = "projects"

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    repo_url = Column(String(500), nullable=False)
    repo_token = Column(Text, nullable=True)  # opaque credential, never logged
    monthly_cost_limit_usd = Column(Float, nullable=True)
    alert_threshold_percent = Column(Integer, nullable=False, default=80)
    created_at = Column(String(50), nullable=False, default=get_current_timestamp)


class IndexingJob(Base):
    """Indexing job driven by the lease-based scheduler."""

    __tablename__ = "indexing_jobs"

    id = Column(String(64), primary_key=True, default=_new_id)
    project_id = Column(String(64), nullable=False, unique=True)
    status = Column(
        String(20), nullable=False, default=JobStatus.QUEUED
    )  # queued, processing, completed, failed
    progress = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    locked_at = Column(String(50), nullable=True)  # UTC ISO8601, null iff unlocked
    locked_by = Column(String(100), nullable=True)  # diagnostic owner token
    error = Column(Text, nullable=True)
    created_at = Column(String(50), nullable=False, default=get_current_timestamp)
    updated_at = Column(String(50), nullable=False, default=get_current_timestamp)

    __table_args__ = (
        Index("idx_indexing_jobs_status_locked", "status", "locked_at"),
        Index("idx_indexing_jobs_created_at", "created_at"),
    )

    def to_dict(self) -> dict:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "status": self.status,
            "progress": self.progress,
            "attempts": self.attempts,
            "locked_at": self.locked_at,
            "locked_by": self.locked_by,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class CodeEmbedding(Base):
    """One summarised source file and its embedding vector."""

    __tablename__ = "code_embeddings"

    id = Column(String(64), primary_key=True, default=_new_id)
    project_id = Column(String(64), nullable=False)
    file_name = Column(String(1000), nullable=False)
    source_code = Column(Text, nullable=False)
    summary = Column(Text, nullable=False)
    embedding_json = Column(Text, nullable=True)  # JSON list of floats
    created_at = Column(String(50), nullable=False, default=get_current_timestamp)

    __table_args__ = (Index("idx_code_embeddings_project", "project_id"),)

    @property
    def embedding(self) -> list:
        if not self.embedding_json:
            return []
        return json.loads(self.embedding_json)


class QueryMetric(Base):
    """Append-only telemetry row, one per request attempt."""

    __tablename__ = "query_metrics"

    id = Column(String(64), primary_key=True, default=_new_id)
    project_id = Column(String(64), nullable=False)
    route_type = Column(String(20), nullable=False)  # query, diff, architecture
    model_used = Column(String(100), nullable=False)
    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    retrieval_count = Column(Integer, nullable=False, default=0)
    memory_hit_count = Column(Integer, nullable=False, default=0)
    latency_ms = Column(Integer, nullable=False, default=0)
    estimated_cost_usd = Column(Float, nullable=False, default=0.0)
    success = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)
    cache_hit = Column(Boolean, nullable=False, default=False)
    was_cold_start = Column(Boolean, nullable=False, default=False)
    avg_memory_similarity = Column(Float, nullable=True)
    created_at = Column(String(50), nullable=False, default=get_current_timestamp)

    __table_args__ = (
        Index("idx_query_metrics_project_created", "project_id", "created_at"),
    )

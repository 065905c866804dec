"""Database configuration, session management and repositories."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, case, create_engine, func, or_, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, aliased, sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base, CodeEmbedding, IndexingJob, JobStatus, Project, QueryMetric
from settings import settings
from utils import format_timestamp, get_current_timestamp


def create_db_engine(db_url: str) -> Engine:
    """Create an engine, sharing one connection for in-memory SQLite."""
    if db_url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in db_url or db_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(db_url, echo=False, **kwargs)
    return create_engine(db_url, echo=False, pool_pre_ping=True)


engine = create_db_engine(settings.db_url)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Optional[Engine] = None) -> None:
    """Initialize database tables."""
    Base.metadata.create_all(bind=bind or engine)


def _eligible_jobs(entity, lease_cutoff: str, max_attempts: int):
    """Claim eligibility: unlocked queued jobs or processing jobs with an expired lease."""
    return and_(
        or_(
            and_(entity.status == JobStatus.QUEUED, entity.locked_at.is_(None)),
            and_(
                entity.status == JobStatus.PROCESSING,
                entity.locked_at.is_not(None),
                entity.locked_at < lease_cutoff,
            ),
        ),
        entity.attempts < max_attempts,
    )


class JobRepository:
    """Repository for indexing job operations."""

    def __init__(self, db: Session):
        self.db = db

    def create_job(self, project_id: str) -> IndexingJob:
        """Create a new queued job."""
        now = get_current_timestamp()
        job = IndexingJob(
            project_id=project_id,
            status=JobStatus.QUEUED,
            progress=0,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        return job

    def get_job(self, job_id: str) -> Optional[IndexingJob]:
        """Get job by ID."""
        return self.db.query(IndexingJob).filter(IndexingJob.id == job_id).first()

    def get_job_by_project(self, project_id: str) -> Optional[IndexingJob]:
        """Get the job of a project."""
        return (
            self.db.query(IndexingJob)
            .filter(IndexingJob.project_id == project_id)
            .first()
        )

    def enqueue_job(
        self, project_id: str, lease_seconds: int, now: Optional[datetime] = None
    ) -> IndexingJob:
        """Queue (or re-queue) indexing for a project.

        A job running under a live lease is returned untouched.
        """
        job = self.get_job_by_project(project_id)
        if job is None:
            return self.create_job(project_id)

        now = now or datetime.now(timezone.utc)
        lease_cutoff = format_timestamp(now - timedelta(seconds=lease_seconds))
        if (
            job.status == JobStatus.PROCESSING
            and job.locked_at is not None
            and job.locked_at >= lease_cutoff
        ):
            return job

        job.status = JobStatus.QUEUED
        job.progress = 0
        job.attempts = 0
        job.error = None
        job.locked_at = None
        job.locked_by = None
        job.updated_at = format_timestamp(now)
        self.db.commit()
        self.db.refresh(job)
        return job

    def claim_next_job(
        self,
        worker_id: str,
        lease_seconds: int,
        max_attempts: int,
        now: Optional[datetime] = None,
    ) -> Optional[IndexingJob]:
        """Atomically claim the oldest eligible job.

        One conditional UPDATE both selects and locks the job; the
        eligibility predicate is repeated on the outer statement so a
        concurrent claimer that loses the race matches zero rows.
        Returns None when nothing was claimed.
        """
        now = now or datetime.now(timezone.utc)
        now_str = format_timestamp(now)
        lease_cutoff = format_timestamp(now - timedelta(seconds=lease_seconds))

        candidate = aliased(IndexingJob)
        next_id = (
            select(candidate.id)
            .where(_eligible_jobs(candidate, lease_cutoff, max_attempts))
            .order_by(candidate.created_at, candidate.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        stmt = (
            update(IndexingJob)
            .where(IndexingJob.id == next_id)
            .where(_eligible_jobs(IndexingJob, lease_cutoff, max_attempts))
            .values(
                status=JobStatus.PROCESSING,
                progress=0,
                attempts=IndexingJob.attempts + 1,
                locked_at=now_str,
                locked_by=worker_id,
                updated_at=now_str,
            )
            .returning(IndexingJob.id)
            .execution_options(synchronize_session=False)
        )

        try:
            claimed_id = self.db.execute(stmt).scalar_one_or_none()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if claimed_id is None:
            return None
        return self.get_job(claimed_id)

    def update_job_progress(
        self,
        job_id: str,
        progress: int,
        locked_at: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Raise the progress of a job still held under the lease `locked_at`.

        Progress never decreases, and a worker whose lease was taken over
        by another claimer no longer moves it.
        """
        progress = max(0, min(int(progress), 100))
        now_str = format_timestamp(now or datetime.now(timezone.utc))
        result = self.db.execute(
            update(IndexingJob)
            .where(IndexingJob.id == job_id)
            .where(IndexingJob.status == JobStatus.PROCESSING)
            .where(IndexingJob.locked_at == locked_at)
            .where(IndexingJob.progress < progress)
            .values(progress=progress, updated_at=now_str)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount > 0

    def mark_job_completed(self, job_id: str, locked_at: str) -> Optional[IndexingJob]:
        """Mark job as completed and release its lock.

        Returns None when the lease `locked_at` is no longer held.
        """
        return self._finish(job_id, locked_at, JobStatus.COMPLETED, progress=100, error=None)

    def mark_job_failed(
        self, job_id: str, error: str, locked_at: str
    ) -> Optional[IndexingJob]:
        """Mark job as failed and release its lock.

        Returns None when the lease `locked_at` is no longer held.
        """
        return self._finish(job_id, locked_at, JobStatus.FAILED, error=error)

    def _finish(
        self, job_id: str, locked_at: str, status: str, **fields
    ) -> Optional[IndexingJob]:
        result = self.db.execute(
            update(IndexingJob)
            .where(IndexingJob.id == job_id)
            .where(IndexingJob.status == JobStatus.PROCESSING)
            .where(IndexingJob.locked_at == locked_at)
            .values(
                status=status,
                locked_at=None,
                locked_by=None,
                updated_at=get_current_timestamp(),
                **fields,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount == 0:
            return None
        return self.get_job(job_id)

    def fail_exhausted_jobs(
        self, lease_seconds: int, max_attempts: int, now: Optional[datetime] = None
    ) -> int:
        """Permanently fail lease-expired jobs that used up their attempts."""
        now = now or datetime.now(timezone.utc)
        now_str = format_timestamp(now)
        lease_cutoff = format_timestamp(now - timedelta(seconds=lease_seconds))

        result = self.db.execute(
            update(IndexingJob)
            .where(IndexingJob.status == JobStatus.PROCESSING)
            .where(IndexingJob.locked_at.is_not(None))
            .where(IndexingJob.locked_at < lease_cutoff)
            .where(IndexingJob.attempts >= max_attempts)
            .values(
                status=JobStatus.FAILED,
                error=f"Indexing abandoned after {max_attempts} attempts",
                locked_at=None,
                locked_by=None,
                updated_at=now_str,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount


class ProjectRepository:
    """Repository for project lookups."""

    def __init__(self, db: Session):
        self.db = db

    def create_project(self, project_data: dict) -> Project:
        """Create a new project."""
        project = Project(**project_data)
        self.db.add(project)
        self.db.commit()
        self.db.refresh(project)
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        """Get project by ID."""
        return self.db.query(Project).filter(Project.id == project_id).first()


class EmbeddingRepository:
    """Repository for stored code embeddings."""

    def __init__(self, db: Session):
        self.db = db

    def replace_project_embeddings(
        self, project_id: str, records: Iterable[Dict[str, Any]]
    ) -> int:
        """Delete the project's rows and insert `records` in one transaction."""
        count = 0
        try:
            self.db.query(CodeEmbedding).filter(
                CodeEmbedding.project_id == project_id
            ).delete(synchronize_session=False)
            for record in records:
                self.db.add(
                    CodeEmbedding(
                        project_id=project_id,
                        file_name=record["file_name"],
                        source_code=record["source_code"],
                        summary=record["summary"],
                        embedding_json=json.dumps(record["embedding"]),
                    )
                )
                count += 1
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return count

    def list_project_embeddings(self, project_id: str) -> List[CodeEmbedding]:
        """All embedding rows of a project in insertion order."""
        return (
            self.db.query(CodeEmbedding)
            .filter(CodeEmbedding.project_id == project_id)
            .filter(CodeEmbedding.embedding_json.is_not(None))
            .order_by(CodeEmbedding.created_at, CodeEmbedding.id)
            .all()
        )

    def count_project_embeddings(self, project_id: str) -> int:
        """Number of embedding rows stored for a project."""
        return (
            self.db.query(func.count(CodeEmbedding.id))
            .filter(CodeEmbedding.project_id == project_id)
            .scalar()
        )


class MetricRepository:
    """Repository for query metrics."""

    def __init__(self, db: Session):
        self.db = db

    def add_metric(self, metric_data: dict) -> QueryMetric:
        """Append one metric row."""
        metric = QueryMetric(**metric_data)
        self.db.add(metric)
        self.db.commit()
        return metric

    def latest_metric_timestamp(self, project_id: str) -> Optional[str]:
        """Creation time of the most recent metric of a project."""
        return (
            self.db.query(func.max(QueryMetric.created_at))
            .filter(QueryMetric.project_id == project_id)
            .scalar()
        )

    def summarize(self, project_id: str, since: str) -> Dict[str, Any]:
        """Aggregate metrics of a project created at or after `since`."""
        window = and_(
            QueryMetric.project_id == project_id, QueryMetric.created_at >= since
        )

        def avg_where(condition):
            return func.avg(case((condition, QueryMetric.latency_ms)))

        def count_where(condition):
            return func.sum(case((condition, 1), else_=0))

        row = (
            self.db.query(
                func.count(QueryMetric.id),
                func.avg(QueryMetric.latency_ms),
                func.avg(QueryMetric.avg_memory_similarity),
                func.sum(QueryMetric.estimated_cost_usd),
                count_where(QueryMetric.memory_hit_count > 0),
                count_where(QueryMetric.success.is_(False)),
                count_where(QueryMetric.was_cold_start.is_(True)),
                avg_where(QueryMetric.was_cold_start.is_(True)),
                avg_where(QueryMetric.was_cold_start.is_(False)),
                count_where(QueryMetric.cache_hit.is_(True)),
                avg_where(QueryMetric.cache_hit.is_(True)),
                avg_where(QueryMetric.cache_hit.is_(False)),
            )
            .filter(window)
            .one()
        )

        cost_by_route = dict(
            self.db.query(QueryMetric.route_type, func.sum(QueryMetric.estimated_cost_usd))
            .filter(window)
            .group_by(QueryMetric.route_type)
            .all()
        )

        return {
            "total": row[0] or 0,
            "avg_latency_ms": row[1],
            "avg_memory_similarity": row[2],
            "total_cost_usd": row[3] or 0.0,
            "memory_hit_count": row[4] or 0,
            "error_count": row[5] or 0,
            "cold_start_count": row[6] or 0,
            "cold_start_latency_avg": row[7],
            "warm_latency_avg": row[8],
            "cache_hit_count": row[9] or 0,
            "cache_hit_latency_avg": row[10],
            "cache_miss_latency_avg": row[11],
            "cost_by_route": cost_by_route,
        }

    def recent_errors(self, project_id: str, since: str, limit: int) -> List[QueryMetric]:
        """Most recent failed requests, newest first."""
        return (
            self.db.query(QueryMetric)
            .filter(QueryMetric.project_id == project_id)
            .filter(QueryMetric.created_at >= since)
            .filter(QueryMetric.success.is_(False))
            .order_by(QueryMetric.created_at.desc())
            .limit(limit)
            .all()
        )

    def total_cost(self, project_id: str, since: str) -> float:
        """Summed estimated cost of a project since `since`."""
        return (
            self.db.query(func.sum(QueryMetric.estimated_cost_usd))
            .filter(QueryMetric.project_id == project_id)
            .filter(QueryMetric.created_at >= since)
            .scalar()
        ) or 0.0


def check_db_health(bind: Optional[Engine] = None) -> bool:
    """Check database health."""
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False

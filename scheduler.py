"""Lease-based scheduler for repository indexing jobs.

Every invocation is independent: it claims at most one job through an
atomic conditional update, processes it, and returns. Any number of
invocations may run concurrently, from cron hits on the worker endpoint
or from the optional in-process dispatcher loop. A worker that crashes
or times out is never detected directly: once its lease passes, the
job is eligible again and is re-indexed from scratch.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Optional

from loguru import logger
from sqlalchemy.orm import Session

from db import JobRepository
from indexer import RepositoryIndexer
from models import IndexingJob
from utils import generate_worker_id
from workers import IndexingWorker

JOB_LEASE_DURATION_SEC = 300


@dataclass
class WorkerResult:
    """Outcome of one worker invocation."""

    status: str  # idle, success, error
    worker_id: str
    job_id: Optional[str] = None
    project_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value is not None}


class IndexingScheduler:
    """Claims and processes indexing jobs."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        indexer: RepositoryIndexer,
        lease_seconds: int = JOB_LEASE_DURATION_SEC,
        max_attempts: int = 5,
        poll_interval: float = 60,
    ):
        self.session_factory = session_factory
        self.indexer = indexer
        self.lease_seconds = lease_seconds
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.running = False
        self._dispatcher_task: Optional[asyncio.Task] = None

    def claim_next_job(
        self, worker_id: str, now: Optional[datetime] = None
    ) -> Optional[IndexingJob]:
        """Claim the oldest eligible job, or None when there is none."""
        db = self.session_factory()
        try:
            return JobRepository(db).claim_next_job(
                worker_id, self.lease_seconds, self.max_attempts, now=now
            )
        finally:
            db.close()

    def fail_exhausted_jobs(self, now: Optional[datetime] = None) -> int:
        db = self.session_factory()
        try:
            count = JobRepository(db).fail_exhausted_jobs(
                self.lease_seconds, self.max_attempts, now=now
            )
        finally:
            db.close()
        if count:
            logger.warning(f"Failed {count} jobs that exhausted {self.max_attempts} attempts")
        return count

    async def process(self, job: IndexingJob, worker_id: str) -> WorkerResult:
        """Run the indexer for a claimed job and record its outcome."""
        worker = IndexingWorker(worker_id, self.indexer, self.session_factory)
        succeeded, error = await worker.process_job(job)
        return WorkerResult(
            status="success" if succeeded else "error",
            worker_id=worker_id,
            job_id=job.id,
            project_id=job.project_id,
            error=error,
        )

    async def run_once(self) -> WorkerResult:
        """Process at most one job. A no-op when nothing is eligible."""
        worker_id = generate_worker_id()
        logger.info(f"[Worker {worker_id}] Invoked")

        try:
            self.fail_exhausted_jobs()
            job = self.claim_next_job(worker_id)
        except Exception as e:
            logger.error(f"[Worker {worker_id}] Unexpected error: {e}")
            return WorkerResult(status="error", worker_id=worker_id, error=str(e))

        if job is None:
            logger.info(f"[Worker {worker_id}] No eligible jobs found")
            return WorkerResult(status="idle", worker_id=worker_id)

        logger.info(
            f"[Worker {worker_id}] Claimed job {job.id} for project {job.project_id} "
            f"(attempt {job.attempts})"
        )
        try:
            return await self.process(job, worker_id)
        except Exception as e:
            logger.error(f"[Worker {worker_id}] Unexpected error: {e}")
            return WorkerResult(
                status="error",
                worker_id=worker_id,
                job_id=job.id,
                project_id=job.project_id,
                error=str(e) or e.__class__.__name__,
            )

    async def start(self):
        """Start the in-process dispatcher loop."""
        if self.running:
            return
        logger.info("Starting indexing scheduler")
        self.running = True
        self._dispatcher_task = asyncio.create_task(self._job_dispatcher_loop())

    async def stop(self):
        """Stop the dispatcher loop; a running job is abandoned to its lease."""
        logger.info("Stopping indexing scheduler")
        self.running = False
        if self._dispatcher_task:
            self._dispatcher_task.cancel()
            try:
                await self._dispatcher_task
            except asyncio.CancelledError:
                pass
            self._dispatcher_task = None

    async def _job_dispatcher_loop(self):
        while self.running:
            try:
                await self.run_once()
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in job dispatcher loop: {e}")
                await asyncio.sleep(5)

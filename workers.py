"""Job worker that runs one claimed indexing job to completion."""

from typing import Callable, Optional, Tuple

from loguru import logger
from sqlalchemy.orm import Session

from db import JobRepository, ProjectRepository
from indexer import RepositoryIndexer
from models import IndexingJob

LEASE_LOST_ERROR = "Job lease was lost to another worker"


class IndexingWorker:
    """Worker for processing a single leased indexing job."""

    def __init__(
        self,
        worker_id: str,
        indexer: RepositoryIndexer,
        session_factory: Callable[[], Session],
    ):
        self.worker_id = worker_id
        self.indexer = indexer
        self.session_factory = session_factory

    async def process_job(self, job: IndexingJob) -> Tuple[bool, Optional[str]]:
        """Index the job's project from scratch and record the outcome.

        Every write to the job row is fenced on the lease taken at claim
        time; once another worker re-claims the job, this one records
        nothing and reports the lost lease.

        Returns:
            Tuple of (succeeded, error_message)
        """
        logger.info(f"[Worker {self.worker_id}] Processing job {job.id} for project {job.project_id}")

        try:
            repo_url, token = self._load_repository(job.project_id)
            await self.indexer.index_full(
                job.project_id, repo_url, token, self._progress_callback(job)
            )
        except Exception as e:
            error_message = str(e) or e.__class__.__name__
            self._mark_job_failed(job, error_message)
            return False, error_message

        error_message = self._mark_job_completed(job)
        return error_message is None, error_message

    def _load_repository(self, project_id: str) -> Tuple[str, Optional[str]]:
        db = self.session_factory()
        try:
            project = ProjectRepository(db).get_project(project_id)
        finally:
            db.close()

        if not project:
            raise LookupError(f"Project {project_id} not found")
        # Never log the token itself.
        logger.info(
            f"[Worker {self.worker_id}] Repo: {project.repo_url}, "
            f"has token: {bool(project.repo_token)}"
        )
        return project.repo_url, project.repo_token

    def _progress_callback(self, job: IndexingJob):
        job_id, locked_at = job.id, job.locked_at

        async def on_progress(percent: int) -> None:
            db = self.session_factory()
            try:
                if JobRepository(db).update_job_progress(job_id, percent, locked_at):
                    logger.debug(f"[Worker {self.worker_id}] Job {job_id} progress: {percent}%")
            except Exception as e:
                # Progress is informational; indexing continues.
                db.rollback()
                logger.error(f"[Worker {self.worker_id}] Failed to update progress: {e}")
            finally:
                db.close()

        return on_progress

    def _mark_job_completed(self, job: IndexingJob) -> Optional[str]:
        """Record completion; returns an error message when it was not recorded."""
        db = self.session_factory()
        try:
            if JobRepository(db).mark_job_completed(job.id, job.locked_at) is None:
                logger.warning(
                    f"[Worker {self.worker_id}] Lease on job {job.id} was lost; completion not recorded"
                )
                return LEASE_LOST_ERROR
            logger.info(f"[Worker {self.worker_id}] Job {job.id} completed successfully")
            return None
        except Exception as e:
            # The job stays leased and is retried once the lease expires.
            db.rollback()
            logger.error(f"Failed to mark job {job.id} as completed: {e}")
            return f"Failed to record completion: {e}"
        finally:
            db.close()

    def _mark_job_failed(self, job: IndexingJob, error_message: str):
        """Mark job as failed."""
        db = self.session_factory()
        try:
            if JobRepository(db).mark_job_failed(job.id, error_message, job.locked_at) is None:
                logger.warning(
                    f"[Worker {self.worker_id}] Lease on job {job.id} was lost; failure not recorded"
                )
                return
            logger.error(f"[Worker {self.worker_id}] Job {job.id} failed: {error_message}")
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to mark job {job.id} as failed: {e}")
        finally:
            db.close()

"""Test the indexing scheduler and worker."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from db import JobRepository
from models import JobStatus
from scheduler import IndexingScheduler, WorkerResult
from workers import LEASE_LOST_ERROR


class FakeIndexer:
    """Indexer double that reports progress and optionally fails."""

    def __init__(self, error: Exception = None, progress=(25, 60)):
        self.error = error
        self.progress = progress
        self.calls = []

    async def index_full(self, project_id, repo_url, token, on_progress):
        self.calls.append((project_id, repo_url, token))
        for percent in self.progress:
            await on_progress(percent)
        if self.error:
            raise self.error
        return {"files_processed": 2, "success_count": 2, "fail_count": 0}


def _scheduler(session_factory, indexer, **kwargs):
    return IndexingScheduler(session_factory, indexer, lease_seconds=300, **kwargs)


class TestRunOnce:
    """Test single worker invocations."""

    @pytest.mark.asyncio
    async def test_idle_when_no_jobs(self, session_factory):
        """No eligible job is a no-op."""
        indexer = FakeIndexer()
        result = await _scheduler(session_factory, indexer).run_once()

        assert result.status == "idle"
        assert result.worker_id.startswith("worker-")
        assert result.job_id is None
        assert indexer.calls == []

    @pytest.mark.asyncio
    async def test_success_completes_job(self, session_factory, test_db_session, sample_project):
        """A claimed job is indexed and completed."""
        job = JobRepository(test_db_session).create_job(sample_project.id)
        indexer = FakeIndexer()

        result = await _scheduler(session_factory, indexer).run_once()

        assert result.status == "success"
        assert result.job_id == job.id
        assert result.project_id == sample_project.id
        assert indexer.calls == [
            (sample_project.id, sample_project.repo_url, sample_project.repo_token)
        ]

        test_db_session.expire_all()
        stored = JobRepository(test_db_session).get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.progress == 100
        assert stored.locked_at is None
        assert stored.locked_by is None

    @pytest.mark.asyncio
    async def test_indexer_error_fails_job(self, session_factory, test_db_session, sample_project):
        """An indexer error marks the job failed with its message."""
        job = JobRepository(test_db_session).create_job(sample_project.id)
        indexer = FakeIndexer(error=RuntimeError("clone failed"))

        result = await _scheduler(session_factory, indexer).run_once()

        assert result.status == "error"
        assert result.error == "clone failed"

        test_db_session.expire_all()
        stored = JobRepository(test_db_session).get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error == "clone failed"
        assert stored.progress == 60
        assert stored.locked_at is None

    @pytest.mark.asyncio
    async def test_missing_project_fails_job(self, session_factory, test_db_session):
        """A job whose project is gone fails without calling the indexer."""
        job = JobRepository(test_db_session).create_job("ghost")
        indexer = FakeIndexer()

        result = await _scheduler(session_factory, indexer).run_once()

        assert result.status == "error"
        assert indexer.calls == []
        test_db_session.expire_all()
        assert JobRepository(test_db_session).get_job(job.id).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_progress_failure_does_not_abort(self, session_factory, test_db_session, sample_project):
        """A failing progress write is logged and indexing continues."""
        job = JobRepository(test_db_session).create_job(sample_project.id)
        indexer = FakeIndexer()

        with patch(
            "workers.JobRepository.update_job_progress",
            side_effect=RuntimeError("db busy"),
        ):
            result = await _scheduler(session_factory, indexer).run_once()

        assert result.status == "success"
        test_db_session.expire_all()
        assert JobRepository(test_db_session).get_job(job.id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_claim_error_reports_error(self, session_factory):
        """A storage error while claiming is returned, not raised."""
        scheduler = _scheduler(session_factory, FakeIndexer())

        with patch.object(scheduler, "claim_next_job", side_effect=RuntimeError("db down")):
            result = await scheduler.run_once()

        assert result.status == "error"
        assert result.error == "db down"

    @pytest.mark.asyncio
    async def test_second_invocation_is_idle(self, session_factory, test_db_session, sample_project):
        """A completed job is not processed again."""
        JobRepository(test_db_session).create_job(sample_project.id)
        indexer = FakeIndexer()
        scheduler = _scheduler(session_factory, indexer)

        first = await scheduler.run_once()
        second = await scheduler.run_once()

        assert first.status == "success"
        assert second.status == "idle"
        assert len(indexer.calls) == 1


class TestWorkerResult:
    def test_to_dict_drops_empty_fields(self):
        result = WorkerResult(status="idle", worker_id="worker-x")

        assert result.to_dict() == {"status": "idle", "worker_id": "worker-x"}


class ReclaimingIndexer(FakeIndexer):
    """Lets another worker take over the job's lease mid-run."""

    def __init__(self, session_factory):
        super().__init__()
        self.session_factory = session_factory

    async def index_full(self, project_id, repo_url, token, on_progress):
        db = self.session_factory()
        try:
            JobRepository(db).claim_next_job(
                "worker-other", 300, 5, now=datetime.now(timezone.utc) + timedelta(minutes=10)
            )
        finally:
            db.close()
        return await super().index_full(project_id, repo_url, token, on_progress)


class TestUnexpectedErrors:
    """Failures past the claim still produce a structured result."""

    @pytest.mark.asyncio
    async def test_completion_write_error_is_returned(self, session_factory, test_db_session, sample_project):
        job = JobRepository(test_db_session).create_job(sample_project.id)

        with patch(
            "workers.JobRepository.mark_job_completed",
            side_effect=RuntimeError("db gone"),
        ):
            result = await _scheduler(session_factory, FakeIndexer()).run_once()

        assert result.status == "error"
        assert result.job_id == job.id
        assert result.project_id == sample_project.id
        assert "db gone" in result.error

        # Left leased; lease expiry makes it eligible again.
        test_db_session.expire_all()
        assert JobRepository(test_db_session).get_job(job.id).status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_process_error_is_returned(self, session_factory, test_db_session, sample_project):
        job = JobRepository(test_db_session).create_job(sample_project.id)
        scheduler = _scheduler(session_factory, FakeIndexer())

        with patch.object(scheduler, "process", side_effect=RuntimeError("boom")):
            result = await scheduler.run_once()

        assert result.to_dict() == {
            "status": "error",
            "worker_id": result.worker_id,
            "job_id": job.id,
            "project_id": sample_project.id,
            "error": "boom",
        }

    @pytest.mark.asyncio
    async def test_lost_lease_is_not_overwritten(self, session_factory, test_db_session, sample_project):
        """A worker that lost its lease neither completes nor moves the job."""
        job = JobRepository(test_db_session).create_job(sample_project.id)

        result = await _scheduler(session_factory, ReclaimingIndexer(session_factory)).run_once()

        assert result.status == "error"
        assert result.error == LEASE_LOST_ERROR

        test_db_session.expire_all()
        stored = JobRepository(test_db_session).get_job(job.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.progress == 0
        assert stored.locked_by == "worker-other"


class TestDispatcherLoop:
    """Test the in-process dispatcher."""

    @pytest.mark.asyncio
    async def test_loop_processes_queued_job(self, session_factory, test_db_session, sample_project):
        job = JobRepository(test_db_session).create_job(sample_project.id)
        indexer = FakeIndexer()
        scheduler = _scheduler(session_factory, indexer, poll_interval=0.01)

        await scheduler.start()
        try:
            for _ in range(200):
                if indexer.calls:
                    break
                await asyncio.sleep(0.01)
        finally:
            await scheduler.stop()

        assert len(indexer.calls) == 1
        test_db_session.expire_all()
        assert JobRepository(test_db_session).get_job(job.id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_cancels_loop(self, session_factory):
        scheduler = _scheduler(session_factory, FakeIndexer(), poll_interval=60)

        await scheduler.start()
        task = scheduler._dispatcher_task
        await asyncio.sleep(0)
        await scheduler.stop()

        assert task.done()
        assert scheduler.running is False
        assert scheduler._dispatcher_task is None

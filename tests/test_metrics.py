"""Test metric recording and observability aggregation."""

from datetime import datetime, timedelta, timezone

import pytest

from db import MetricRepository, ProjectRepository
from errors import NotFoundError
from metrics import (
    BudgetStatus,
    HealthStatus,
    MetricRecord,
    MetricsRecorder,
    ObservabilityAggregator,
    compute_budget_status,
    compute_health_status,
)
from models import QueryMetric
from utils import ERROR_MESSAGE_MAX_LENGTH, TRUNCATION_MARKER, format_timestamp

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _record(project_id="project-1", **kwargs):
    fields = {"route_type": "query", "model_used": "google/gemini-2.5-flash", "success": True}
    fields.update(kwargs)
    return MetricRecord(project_id=project_id, **fields)


class TestBudgetStatus:
    """Test budget thresholds."""

    def test_not_set(self):
        assert compute_budget_status(50.0, None) == BudgetStatus.NOT_SET

    def test_thresholds(self):
        assert compute_budget_status(0.79, 1.0, 80) == BudgetStatus.OK
        assert compute_budget_status(0.80, 1.0, 80) == BudgetStatus.WARNING
        assert compute_budget_status(1.0, 1.0, 80) == BudgetStatus.LIMIT_EXCEEDED

    def test_custom_threshold(self):
        assert compute_budget_status(0.5, 1.0, 50) == BudgetStatus.WARNING


class TestHealthStatus:
    def test_healthy(self):
        assert compute_health_status(0.0, BudgetStatus.OK, 1000) == HealthStatus.HEALTHY

    def test_critical(self):
        assert compute_health_status(0.16, BudgetStatus.OK, 0) == HealthStatus.CRITICAL
        assert compute_health_status(0.0, BudgetStatus.LIMIT_EXCEEDED, 0) == HealthStatus.CRITICAL

    def test_warning(self):
        assert compute_health_status(0.05, BudgetStatus.OK, 0) == HealthStatus.WARNING
        assert compute_health_status(0.0, BudgetStatus.WARNING, 0) == HealthStatus.WARNING
        assert compute_health_status(0.0, BudgetStatus.NOT_SET, 15001) == HealthStatus.WARNING


class TestMetricRecord:
    def test_error_message_truncated(self):
        row = _record(success=False, error_message="e" * 2000).to_row()

        assert len(row["error_message"]) == ERROR_MESSAGE_MAX_LENGTH + len(TRUNCATION_MARKER)


class TestMetricsRecorder:
    """Test the background metric writer."""

    def test_inline_write_without_consumer(self, session_factory, test_db_session):
        recorder = MetricsRecorder(session_factory)

        recorder.record(_record())

        assert test_db_session.query(QueryMetric).count() == 1

    @pytest.mark.asyncio
    async def test_queued_writes_are_flushed(self, session_factory, test_db_session):
        recorder = MetricsRecorder(session_factory)
        await recorder.start()

        for _ in range(3):
            recorder.record(_record())
        await recorder.stop()

        assert test_db_session.query(QueryMetric).count() == 3
        assert recorder.dropped == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_records(self, session_factory, test_db_session):
        """Overflow is dropped and counted, never blocking the caller."""
        recorder = MetricsRecorder(session_factory, max_queue_size=2)
        await recorder.start()

        # The consumer cannot run until this coroutine yields.
        for _ in range(5):
            recorder.record(_record())
        assert recorder.dropped == 3

        await recorder.stop()
        assert test_db_session.query(QueryMetric).count() == 2

    def test_write_failure_is_swallowed(self, session_factory):
        recorder = MetricsRecorder(session_factory)

        assert recorder.write(_record(success=None)) is False

    def test_cold_start(self, session_factory):
        recorder = MetricsRecorder(session_factory, cold_start_threshold_sec=600)
        assert recorder.was_cold_start("project-1", now=NOW) is True

        recorder.write(_record(created_at=format_timestamp(NOW - timedelta(minutes=5))))
        assert recorder.was_cold_start("project-1", now=NOW) is False
        assert recorder.was_cold_start("project-1", now=NOW + timedelta(minutes=6)) is True


class TestObservabilityAggregator:
    """Test the observability report."""

    def _seed(self, session_factory, records):
        recorder = MetricsRecorder(session_factory)
        for record in records:
            assert recorder.write(record)

    def test_unknown_project(self, session_factory):
        with pytest.raises(NotFoundError):
            ObservabilityAggregator(session_factory).aggregate("missing", now=NOW)

    def test_empty_report(self, session_factory, sample_project):
        report = ObservabilityAggregator(session_factory).aggregate(sample_project.id, now=NOW)

        assert report["total_queries"] == 0
        assert report["avg_latency_ms"] == 0.0
        assert report["error_rate"] == 0.0
        assert report["cost_breakdown"] == {"query": 0.0, "diff": 0.0, "architecture": 0.0}
        assert report["budget_status"] == BudgetStatus.NOT_SET
        assert report["health_status"] == HealthStatus.HEALTHY
        assert report["recent_errors"] == []

    def test_report(self, session_factory, test_db_session, sample_project):
        def at(**delta):
            return format_timestamp(NOW - timedelta(**delta))

        self._seed(
            session_factory,
            [
                _record(latency_ms=100, estimated_cost_usd=0.25, was_cold_start=True,
                        memory_hit_count=1, avg_memory_similarity=0.8, created_at=at(days=1)),
                _record(latency_ms=20, cache_hit=True, model_used="cache",
                        memory_hit_count=1, created_at=at(hours=5)),
                _record(route_type="diff", latency_ms=300, estimated_cost_usd=0.5,
                        avg_memory_similarity=0.6, created_at=at(hours=2)),
                _record(success=False, latency_ms=400, error_message="x" * 900, created_at=at(hours=1)),
                # Outside the 7-day window, inside the 30-day budget window.
                _record(latency_ms=5000, estimated_cost_usd=1.0, created_at=at(days=20)),
            ],
        )

        report = ObservabilityAggregator(session_factory).aggregate(
            sample_project.id, window_days=7, now=NOW
        )

        assert report["total_queries"] == 4
        assert report["avg_latency_ms"] == pytest.approx(205.0)
        assert report["memory_hit_rate"] == pytest.approx(0.5)
        assert report["avg_memory_similarity"] == pytest.approx(0.7)
        assert report["estimated_cost_usd"] == pytest.approx(0.75)
        assert report["cost_breakdown"]["query"] == pytest.approx(0.25)
        assert report["cost_breakdown"]["diff"] == pytest.approx(0.5)
        assert report["cold_start_count"] == 1
        assert report["cold_start_latency_avg"] == pytest.approx(100.0)
        assert report["warm_latency_avg"] == pytest.approx(240.0)
        assert report["cache_hit_rate"] == pytest.approx(0.25)
        assert report["avg_latency_cache_hit"] == pytest.approx(20.0)
        assert report["avg_latency_cache_miss"] == pytest.approx(800 / 3, abs=0.01)
        assert report["error_count"] == 1
        assert report["error_rate"] == pytest.approx(0.25)
        assert report["cost_30d"] == pytest.approx(1.75)
        assert report["health_status"] == HealthStatus.CRITICAL

        [error] = report["recent_errors"]
        assert error["route_type"] == "query"
        assert len(error["error_message"]) == ERROR_MESSAGE_MAX_LENGTH + len(TRUNCATION_MARKER)

    def test_budget_from_project(self, session_factory, test_db_session):
        ProjectRepository(test_db_session).create_project(
            {
                "id": "budgeted",
                "name": "Budgeted",
                "repo_url": "file:///tmp/repo",
                "monthly_cost_limit_usd": 1.0,
                "alert_threshold_percent": 80,
            }
        )
        self._seed(
            session_factory,
            [_record("budgeted", estimated_cost_usd=0.85, created_at=format_timestamp(NOW - timedelta(days=10)))],
        )

        report = ObservabilityAggregator(session_factory).aggregate("budgeted", window_days=7, now=NOW)

        assert report["total_queries"] == 0
        assert report["cost_30d"] == pytest.approx(0.85)
        assert report["monthly_cost_limit_usd"] == 1.0
        assert report["budget_status"] == BudgetStatus.WARNING
        assert report["health_status"] == HealthStatus.WARNING

    def test_window_is_clamped(self, session_factory, sample_project):
        aggregator = ObservabilityAggregator(session_factory)

        assert aggregator.aggregate(sample_project.id, window_days=0, now=NOW)["window_days"] == 1
        assert aggregator.aggregate(sample_project.id, window_days=1000, now=NOW)["window_days"] == 365

    def test_metric_repository_total_cost(self, session_factory, test_db_session):
        self._seed(session_factory, [_record(estimated_cost_usd=0.1, created_at=format_timestamp(NOW))])

        since = format_timestamp(NOW - timedelta(days=1))
        assert MetricRepository(test_db_session).total_cost("project-1", since) == pytest.approx(0.1)

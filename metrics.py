"""Query metric recording and observability aggregation."""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from loguru import logger
from sqlalchemy.orm import Session

from db import MetricRepository, ProjectRepository
from errors import NotFoundError
from utils import (
    ERROR_MESSAGE_MAX_LENGTH,
    format_timestamp,
    get_current_timestamp,
    parse_timestamp,
    truncate_message,
)

ROUTE_TYPES = ("query", "diff", "architecture")

RECENT_ERRORS_LIMIT = 20
ROLLING_BUDGET_DAYS = 30
DEFAULT_ALERT_THRESHOLD_PERCENT = 80
MIN_WINDOW_DAYS = 1
MAX_WINDOW_DAYS = 365

CRITICAL_ERROR_RATE = 0.15
WARNING_ERROR_RATE = 0.05
HEALTH_LATENCY_THRESHOLD_MS = 15000


class BudgetStatus:
    NOT_SET = "not_set"
    OK = "ok"
    WARNING = "warning"
    LIMIT_EXCEEDED = "limit_exceeded"


class HealthStatus:
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class MetricRecord:
    """One request attempt, success or failure."""

    project_id: str
    route_type: str
    model_used: str
    success: bool
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    retrieval_count: int = 0
    memory_hit_count: int = 0
    latency_ms: int = 0
    estimated_cost_usd: float = 0.0
    error_message: Optional[str] = None
    cache_hit: bool = False
    was_cold_start: bool = False
    avg_memory_similarity: Optional[float] = None
    created_at: str = field(default_factory=get_current_timestamp)

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row["error_message"] = truncate_message(self.error_message)
        return row


class MetricsRecorder:
    """Fire-and-forget metric writer backed by a bounded queue.

    Records are written by one background consumer. When the queue is
    full the record is dropped with a warning; metric loss under
    overload is accepted. Without a running consumer, records are
    written inline.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        max_queue_size: int = 1000,
        cold_start_threshold_sec: int = 600,
    ):
        self.session_factory = session_factory
        self.max_queue_size = max_queue_size
        self.cold_start_threshold_sec = cold_start_threshold_sec
        self.dropped = 0
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    async def start(self):
        """Start the background consumer."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._consumer = asyncio.create_task(self._consume())
        logger.info("Metrics recorder started")

    async def stop(self):
        """Drain pending records and stop the consumer."""
        if not self.running:
            return
        await self.flush()
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None
        logger.info(f"Metrics recorder stopped ({self.dropped} records dropped)")

    async def flush(self):
        """Wait until every queued record has been written."""
        if self._queue is not None and self.running:
            await self._queue.join()

    def record(self, record: MetricRecord) -> None:
        """Queue a metric without blocking the caller."""
        if not self.running:
            self.write(record)
            return
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Metrics queue full, dropping {record.route_type} metric "
                f"for project {record.project_id}"
            )

    async def _consume(self):
        while True:
            record = await self._queue.get()
            try:
                self.write(record)
            finally:
                self._queue.task_done()

    def write(self, record: MetricRecord) -> bool:
        """Persist one record; failures are logged, never raised."""
        db = self.session_factory()
        try:
            MetricRepository(db).add_metric(record.to_row())
            return True
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to record metric for project {record.project_id}: {e}")
            return False
        finally:
            db.close()

    def was_cold_start(self, project_id: str, now: Optional[datetime] = None) -> bool:
        """True when the project has no metric within the cold-start threshold."""
        db = self.session_factory()
        try:
            last = MetricRepository(db).latest_metric_timestamp(project_id)
        except Exception as e:
            logger.warning(f"Cold start lookup failed for project {project_id}: {e}")
            return False
        finally:
            db.close()

        if last is None:
            return True
        now = now or datetime.now(timezone.utc)
        idle = (now - parse_timestamp(last)).total_seconds()
        return idle > self.cold_start_threshold_sec


def compute_budget_status(
    cost_30d: float,
    monthly_limit_usd: Optional[float],
    alert_threshold_percent: float = DEFAULT_ALERT_THRESHOLD_PERCENT,
) -> str:
    if monthly_limit_usd is None:
        return BudgetStatus.NOT_SET
    if cost_30d >= monthly_limit_usd:
        return BudgetStatus.LIMIT_EXCEEDED
    if cost_30d >= monthly_limit_usd * (alert_threshold_percent / 100):
        return BudgetStatus.WARNING
    return BudgetStatus.OK


def compute_health_status(
    error_rate: float, budget_status: str, avg_latency_ms: float
) -> str:
    if error_rate > CRITICAL_ERROR_RATE or budget_status == BudgetStatus.LIMIT_EXCEEDED:
        return HealthStatus.CRITICAL
    if (
        error_rate >= WARNING_ERROR_RATE
        or budget_status == BudgetStatus.WARNING
        or avg_latency_ms > HEALTH_LATENCY_THRESHOLD_MS
    ):
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def _round_ms(value: Optional[float]) -> float:
    return round(value or 0.0, 2)


class ObservabilityAggregator:
    """Read-only health, cost and latency report over stored metrics."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def aggregate(
        self, project_id: str, window_days: int = 7, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Build the observability report of a project.

        Args:
            project_id: Project to report on.
            window_days: Reporting window, clamped to [1, 365].
            now: Reference time, defaults to the current time.

        Raises:
            NotFoundError: If the project does not exist.
        """
        window_days = max(MIN_WINDOW_DAYS, min(MAX_WINDOW_DAYS, int(window_days)))
        now = now or datetime.now(timezone.utc)
        since = format_timestamp(now - timedelta(days=window_days))
        since_30d = format_timestamp(now - timedelta(days=ROLLING_BUDGET_DAYS))

        db = self.session_factory()
        try:
            project = ProjectRepository(db).get_project(project_id)
            if not project:
                raise NotFoundError("Project")

            repo = MetricRepository(db)
            summary = repo.summarize(project_id, since)
            error_rows = repo.recent_errors(project_id, since, RECENT_ERRORS_LIMIT)
            cost_30d = repo.total_cost(project_id, since_30d)
            monthly_limit = project.monthly_cost_limit_usd
            alert_threshold = (
                project.alert_threshold_percent
                if project.alert_threshold_percent is not None
                else DEFAULT_ALERT_THRESHOLD_PERCENT
            )
        finally:
            db.close()

        total = summary["total"]
        avg_latency_ms = _round_ms(summary["avg_latency_ms"]) if total else 0.0
        error_count = summary["error_count"]
        error_rate = error_count / max(1, total)

        breakdown = {route: 0.0 for route in ROUTE_TYPES}
        for route, cost in summary["cost_by_route"].items():
            breakdown[route] = cost or 0.0

        cache_hit_count = summary["cache_hit_count"]
        cold_start_count = summary["cold_start_count"]

        budget_status = compute_budget_status(cost_30d, monthly_limit, alert_threshold)
        health_status = compute_health_status(error_rate, budget_status, avg_latency_ms)

        return {
            "project_id": project_id,
            "window_days": window_days,
            "total_queries": total,
            "avg_latency_ms": avg_latency_ms,
            "memory_hit_rate": summary["memory_hit_count"] / total if total else 0.0,
            "avg_memory_similarity": summary["avg_memory_similarity"],
            "estimated_cost_usd": summary["total_cost_usd"],
            "cost_breakdown": breakdown,
            "cold_start_count": cold_start_count,
            "cold_start_latency_avg": (
                _round_ms(summary["cold_start_latency_avg"]) if cold_start_count else 0.0
            ),
            "warm_latency_avg": _round_ms(summary["warm_latency_avg"]),
            "cache_hit_rate": cache_hit_count / total if total else 0.0,
            "avg_latency_cache_hit": (
                _round_ms(summary["cache_hit_latency_avg"]) if cache_hit_count else 0.0
            ),
            "avg_latency_cache_miss": _round_ms(summary["cache_miss_latency_avg"]),
            "error_count": error_count,
            "error_rate": error_rate,
            "recent_errors": [
                {
                    "created_at": row.created_at,
                    "route_type": row.route_type,
                    "error_message": truncate_message(
                        row.error_message, ERROR_MESSAGE_MAX_LENGTH
                    ),
                }
                for row in error_rows
            ],
            "cost_30d": cost_30d,
            "monthly_cost_limit_usd": monthly_limit,
            "alert_threshold_percent": alert_threshold,
            "budget_status": budget_status,
            "health_status": health_status,
        }

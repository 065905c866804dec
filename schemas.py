"""Pydantic schemas for request/response validation."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ConversationTurn(BaseModel):
    """One previous message of the conversation."""

    role: Literal["user", "assistant"] = Field(..., description="Message author")
    content: str = Field(..., description="Message text")


class QueryRequest(BaseModel):
    """Request schema for asking a question about a project."""

    project_id: str = Field(..., min_length=1, description="Project identifier")
    question: str = Field(..., min_length=1, description="Natural-language question")
    conversation_history: Optional[List[ConversationTurn]] = Field(
        None, description="Previous turns, oldest first"
    )


class SourceInfo(BaseModel):
    """A code file used to answer the question."""

    file_name: str = Field(..., description="Path of the file in the repository")
    similarity: float = Field(..., description="Similarity to the question in [0, 1]")
    summary: str = Field(..., description="Summary of the file")


class QueryResponse(BaseModel):
    """Response schema for a question."""

    answer: str = Field(..., description="Generated answer")
    sources: List[SourceInfo] = Field(default_factory=list, description="Sources used")


class WorkerResponse(BaseModel):
    """Response schema for one worker invocation."""

    status: Literal["idle", "success", "error"] = Field(..., description="Outcome")
    worker_id: str = Field(..., description="Diagnostic worker token")
    job_id: Optional[str] = Field(None, description="Processed job")
    project_id: Optional[str] = Field(None, description="Project of the processed job")
    error: Optional[str] = Field(None, description="Error message on failure")


class IndexingStatusResponse(BaseModel):
    """Indexing job status of a project."""

    project_id: str = Field(..., description="Project identifier")
    job_id: Optional[str] = Field(None, description="Job identifier")
    status: str = Field(..., description="not_started, queued, processing, completed or failed")
    progress: int = Field(default=0, description="Progress percentage")
    error: Optional[str] = Field(None, description="Error message if failed")
    updated_at: Optional[str] = Field(None, description="Last update timestamp")


class RecentError(BaseModel):
    """A failed request."""

    created_at: str
    route_type: str
    error_message: Optional[str] = None


class ObservabilityReport(BaseModel):
    """Health, latency and cost report of a project."""

    project_id: str
    window_days: int
    total_queries: int
    avg_latency_ms: float
    memory_hit_rate: float
    avg_memory_similarity: Optional[float] = None
    estimated_cost_usd: float
    cost_breakdown: Dict[str, float]
    cold_start_count: int
    cold_start_latency_avg: float
    warm_latency_avg: float
    cache_hit_rate: float
    avg_latency_cache_hit: float
    avg_latency_cache_miss: float
    error_count: int
    error_rate: float
    recent_errors: List[RecentError]
    cost_30d: float
    monthly_cost_limit_usd: Optional[float] = None
    alert_threshold_percent: int
    budget_status: Literal["not_set", "ok", "warning", "limit_exceeded"]
    health_status: Literal["healthy", "warning", "critical"]


class HealthResponse(BaseModel):
    """Health check response."""

    ok: bool = Field(..., description="Service health status")
    db: str = Field(..., description="Database status")
    version: str = Field(..., description="Application version")
    cache: Dict[str, Any] = Field(default_factory=dict, description="Cache statistics")

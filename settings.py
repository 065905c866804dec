"""Application settings loaded from environment variables."""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration."""

    # Server settings
    port: int = Field(default=8080, description="Server port")
    host: str = Field(default="0.0.0.0", description="Server host")

    # Database settings
    db_url: str = Field(
        default="sqlite:////app/state/repodocs.db", description="Database URL"
    )

    # OpenRouter settings
    openrouter_api_key: Optional[str] = Field(
        default=None, description="OpenRouter API key"
    )
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1", description="OpenRouter base URL"
    )
    generation_model: str = Field(
        default="google/gemini-2.5-flash", description="Model used to answer questions"
    )
    fallback_model: Optional[str] = Field(
        default="google/gemini-2.5-flash-lite",
        description="Model tried once when the generation model fails",
    )
    summary_model: str = Field(
        default="google/gemini-2.5-flash-lite",
        description="Model used to summarise files during indexing",
    )
    embedding_model: str = Field(
        default="google/gemini-embedding-001", description="Embedding model"
    )
    embedding_dim: int = Field(default=768, description="Embedding vector dimension")
    request_timeout_sec: float = Field(
        default=60.0, description="Timeout for upstream provider requests"
    )

    # Scheduler settings
    job_lease_sec: int = Field(
        default=300, description="Lease duration before a processing job is reclaimable"
    )
    job_max_attempts: int = Field(
        default=5, description="Claims allowed before a job is failed permanently"
    )
    worker_poll_interval_sec: int = Field(
        default=60, description="Interval of the in-process worker trigger"
    )
    scheduler_enabled: bool = Field(
        default=False, description="Run the in-process worker trigger"
    )

    # Query engine settings
    retrieval_top_k: int = Field(default=5, description="Snippets retrieved per query")
    history_window: int = Field(
        default=6, description="Conversation turns included in the prompt"
    )
    snippet_max_chars: int = Field(
        default=1000, description="Source characters included per snippet"
    )

    # Cache settings
    cache_sweep_interval_sec: int = Field(
        default=300, description="Interval of the expired-entry sweep"
    )
    embedding_cache_ttl_sec: int = Field(default=86400, description="Embedding TTL")
    query_cache_ttl_sec: int = Field(default=1800, description="Query result TTL")
    answer_cache_ttl_sec: int = Field(default=300, description="Answer tier TTL")
    answer_cache_soft_limit: int = Field(
        default=100, description="Answer tier size before sampled eviction"
    )
    answer_cache_sample_size: int = Field(
        default=5, description="Entries inspected per sampled eviction"
    )

    # Metrics settings
    metrics_queue_size: int = Field(
        default=1000, description="Pending metric writes before records are dropped"
    )
    cold_start_threshold_sec: int = Field(
        default=600, description="Idle time after which a request counts as cold"
    )
    observability_window_days: int = Field(
        default=7, description="Default observability window"
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")

    # Dry run mode
    dry_run: bool = Field(
        default=False, description="Serve deterministic local answers instead of calling OpenRouter"
    )

    # Application version
    version: str = Field(default="1.0.0", description="Application version")

    model_config = {"env_file": ".env", "case_sensitive": False}

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Auto-enable dry run if no API key
        if not self.openrouter_api_key:
            self.dry_run = True


# Global settings instance
settings = Settings()

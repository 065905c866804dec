"""FastAPI application for repository indexing and question answering."""

import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

import db as database
from cache import CacheManager, QueryAnswerCache
from db import JobRepository, ProjectRepository, check_db_health, init_db
from errors import AppError, NotFoundError
from indexer import LocalRepositoryLoader, RepositoryIndexer, SummaryEmbeddingIndexer
from llm_client import LLMClient
from metrics import MetricsRecorder, ObservabilityAggregator
from query_engine import QueryEngine
from retrieval import VectorRetriever
from scheduler import IndexingScheduler
from schemas import (
    HealthResponse,
    IndexingStatusResponse,
    ObservabilityReport,
    QueryRequest,
    QueryResponse,
    WorkerResponse,
)
from settings import settings


# Configure logging
logger.remove()
logger.add(
    sys.stderr,
    level=settings.log_level.upper(),
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
)


@dataclass
class Components:
    """Explicitly constructed service components shared by the routes."""

    session_factory: Callable[[], Session]
    cache: CacheManager
    answer_cache: QueryAnswerCache
    recorder: MetricsRecorder
    query_engine: QueryEngine
    scheduler: IndexingScheduler
    aggregator: ObservabilityAggregator
    llm: Optional[LLMClient] = None


def build_components(
    session_factory: Callable[[], Session],
    llm=None,
    indexer: Optional[RepositoryIndexer] = None,
) -> Components:
    """Wire the cache, metrics, retrieval, query engine and scheduler together."""
    llm = llm or LLMClient()
    cache = CacheManager(
        sweep_interval_sec=settings.cache_sweep_interval_sec,
        embedding_ttl_sec=settings.embedding_cache_ttl_sec,
        query_ttl_sec=settings.query_cache_ttl_sec,
    )
    answer_cache = QueryAnswerCache(
        ttl_sec=settings.answer_cache_ttl_sec,
        soft_limit=settings.answer_cache_soft_limit,
        sample_size=settings.answer_cache_sample_size,
    )
    recorder = MetricsRecorder(
        session_factory,
        max_queue_size=settings.metrics_queue_size,
        cold_start_threshold_sec=settings.cold_start_threshold_sec,
    )
    retriever = VectorRetriever(session_factory, settings.embedding_dim)
    query_engine = QueryEngine(
        embedder=llm,
        generator=llm,
        retriever=retriever,
        cache=cache,
        answer_cache=answer_cache,
        recorder=recorder,
        session_factory=session_factory,
        model=settings.generation_model,
        top_k=settings.retrieval_top_k,
        history_window=settings.history_window,
        snippet_max_chars=settings.snippet_max_chars,
    )
    indexer = indexer or SummaryEmbeddingIndexer(
        loader=LocalRepositoryLoader(),
        embedder=llm,
        generator=llm,
        session_factory=session_factory,
        embedding_dim=settings.embedding_dim,
        summary_model=settings.summary_model,
        caches=(cache, answer_cache),
    )
    scheduler = IndexingScheduler(
        session_factory,
        indexer,
        lease_seconds=settings.job_lease_sec,
        max_attempts=settings.job_max_attempts,
        poll_interval=settings.worker_poll_interval_sec,
    )
    return Components(
        session_factory=session_factory,
        cache=cache,
        answer_cache=answer_cache,
        recorder=recorder,
        query_engine=query_engine,
        scheduler=scheduler,
        aggregator=ObservabilityAggregator(session_factory),
        llm=llm,
    )


def create_app(
    session_factory: Optional[Callable[[], Session]] = None,
    bind: Optional[Engine] = None,
    llm=None,
    indexer: Optional[RepositoryIndexer] = None,
) -> FastAPI:
    """Create the application; arguments override the configured database and providers."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting repository RAG service")

        init_db(bind)
        logger.info("Database initialized")

        components = build_components(
            session_factory or database.SessionLocal, llm=llm, indexer=indexer
        )
        app.state.components = components
        app.state.bind = bind

        await components.cache.start()
        await components.recorder.start()
        if settings.scheduler_enabled:
            await components.scheduler.start()
            logger.info("Scheduler started")

        yield

        logger.info("Shutting down repository RAG service")
        await components.scheduler.stop()
        await components.recorder.stop()
        await components.cache.stop()
        if components.llm is not None and hasattr(components.llm, "close"):
            await components.llm.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="RepoDocs RAG",
        description="Repository indexing and retrieval-augmented question answering",
        version=settings.version,
        lifespan=lifespan,
    )
    register_routes(app)
    return app


def get_components(request: Request) -> Components:
    return request.app.state.components


def get_session(request: Request) -> Session:
    """Get database session."""
    db = request.app.state.components.session_factory()
    try:
        yield db
    finally:
        db.close()


def _http_error(e: AppError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


def register_routes(app: FastAPI) -> None:
    @app.get("/healthz", response_model=HealthResponse)
    async def health_check(components: Components = Depends(get_components)):
        """Health check endpoint."""
        db_healthy = check_db_health(app.state.bind)

        return HealthResponse(
            ok=db_healthy,
            db="ready" if db_healthy else "error",
            version=settings.version,
            cache=components.cache.get_stats(),
        )

    @app.post("/query", response_model=QueryResponse)
    async def query(
        request: QueryRequest, components: Components = Depends(get_components)
    ):
        """Answer a question about an indexed project."""
        engine = components.query_engine
        history = [turn.model_dump() for turn in request.conversation_history or []]
        try:
            engine.ensure_queryable(request.project_id)
            result = await engine.answer(request.project_id, request.question, history)
        except AppError as e:
            raise _http_error(e)
        except Exception as e:
            logger.error(f"Error in query endpoint: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to process query",
            )

        return QueryResponse(**result.to_dict())

    @app.api_route(
        "/indexing-worker", methods=["GET", "POST"], response_model=WorkerResponse
    )
    async def indexing_worker(components: Components = Depends(get_components)):
        """Process at most one indexing job; called by an external periodic trigger."""
        result = await components.scheduler.run_once()
        if result.status == "error":
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content=result.to_dict(),
            )
        return WorkerResponse(**result.to_dict())

    @app.post(
        "/projects/{project_id}/index",
        response_model=IndexingStatusResponse,
        status_code=status.HTTP_202_ACCEPTED,
    )
    async def request_indexing(project_id: str, db: Session = Depends(get_session)):
        """Queue (or re-queue) a full index of a project."""
        if not ProjectRepository(db).get_project(project_id):
            raise _http_error(NotFoundError("Project"))

        job = JobRepository(db).enqueue_job(project_id, settings.job_lease_sec)
        logger.info(f"Indexing requested for project {project_id}: job {job.id} is {job.status}")

        return IndexingStatusResponse(
            project_id=project_id,
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            error=job.error,
            updated_at=job.updated_at,
        )

    @app.get(
        "/projects/{project_id}/indexing-status", response_model=IndexingStatusResponse
    )
    async def indexing_status(project_id: str, db: Session = Depends(get_session)):
        """Get indexing status of a project."""
        if not ProjectRepository(db).get_project(project_id):
            raise _http_error(NotFoundError("Project"))

        job = JobRepository(db).get_job_by_project(project_id)
        if not job:
            return IndexingStatusResponse(project_id=project_id, status="not_started")

        return IndexingStatusResponse(
            project_id=project_id,
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            error=job.error,
            updated_at=job.updated_at,
        )

    @app.get("/observability", response_model=ObservabilityReport)
    async def observability(
        project_id: str = Query(..., min_length=1),
        window: int = Query(settings.observability_window_days),
        components: Components = Depends(get_components),
    ):
        """Read-only health, latency and cost report of a project."""
        try:
            report = components.aggregator.aggregate(project_id.strip(), window)
        except AppError as e:
            raise _http_error(e)
        return ObservabilityReport(**report)


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting server on {settings.host}:{settings.port}")
    uvicorn.run(
        "app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False,
    )

"""Retrieval-augmented question answering over indexed repositories."""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from sqlalchemy.orm import Session

from cache import CacheManager, QueryAnswerCache
from cost import estimate_cost
from db import ProjectRepository
from errors import (
    NotFoundError,
    ProjectNotIndexedError,
    QueryFailedError,
    UpstreamError,
    ValidationError,
)
from llm_client import EmbeddingProvider, GenerationProvider
from metrics import MetricRecord, MetricsRecorder
from retrieval import Source, VectorRetriever
from utils import calculate_elapsed_ms

NO_MATCH_ANSWER = (
    "I couldn't find any relevant code for your question. The repository might "
    "not be fully indexed yet, or your question might be too specific."
)
CACHE_MODEL = "cache"
NO_MODEL = "none"
HISTORY_ROLES = ("user", "assistant")

SYSTEM_PROMPT = """You are a senior software engineer helping a developer understand their codebase.

You have access to the following relevant code snippets from their repository:

{context}

Rules:
- Start with a clear, direct answer, then explain the relevant code in detail.
- Only use information from the snippets above. If something is missing, say what is missing.
- Cite the files you discuss, e.g. "In `path/to/file.py`...".
- Use markdown: headings, lists and fenced code blocks.
- Take the conversation so far into account."""


@dataclass
class QueryResult:
    """Answer text and the sources it was generated from."""

    answer: str
    sources: List[Source] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "answer": self.answer,
            "sources": [
                {
                    "file_name": source.file_name,
                    "similarity": source.similarity,
                    "summary": source.summary,
                }
                for source in self.sources
            ],
        }


def _avg_similarity(sources: Sequence[Source]) -> Optional[float]:
    if not sources:
        return None
    return sum(source.similarity for source in sources) / len(sources)


class QueryEngine:
    """Answers questions about one project's code.

    Lookup order: short-lived answer tier, then the query-result cache,
    then embedding, retrieval and generation. Every attempt records one
    metric. Concurrent identical misses are not de-duplicated.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        generator: GenerationProvider,
        retriever: VectorRetriever,
        cache: CacheManager,
        answer_cache: QueryAnswerCache,
        recorder: MetricsRecorder,
        session_factory: Callable[[], Session],
        model: str,
        top_k: int = 5,
        history_window: int = 6,
        snippet_max_chars: int = 1000,
    ):
        self.embedder = embedder
        self.generator = generator
        self.retriever = retriever
        self.cache = cache
        self.answer_cache = answer_cache
        self.recorder = recorder
        self.session_factory = session_factory
        self.model = model
        self.top_k = top_k
        self.history_window = history_window
        self.snippet_max_chars = snippet_max_chars

    def ensure_queryable(self, project_id: str) -> None:
        """Raise unless the project exists and has stored embeddings."""
        db = self.session_factory()
        try:
            project = ProjectRepository(db).get_project(project_id)
        finally:
            db.close()
        if not project:
            raise NotFoundError("Project")
        if self.retriever.count_embeddings(project_id) == 0:
            raise ProjectNotIndexedError(project_id)

    async def embed_question(self, question: str) -> List[float]:
        """Embed a question, reusing the embedding cache."""
        embedding, _ = await self._embed_question(question)
        return embedding

    async def _embed_question(self, question: str) -> Tuple[List[float], bool]:
        cached = self.cache.get_cached_embedding(question)
        if cached:
            return cached, True

        embedding = await self.embedder.embed(question)
        if not embedding or not all(isinstance(v, (int, float)) for v in embedding):
            raise UpstreamError("Failed to generate query embedding")

        self.cache.cache_embedding(question, embedding)
        return embedding, False

    def retrieve_top_k(
        self, project_id: str, embedding: Sequence[float], k: Optional[int] = None
    ) -> List[Source]:
        """Most similar sources of `project_id`, never more than `k`."""
        k = self.top_k if k is None else k
        return self.retriever.retrieve_top_k(project_id, embedding, k)

    def build_messages(
        self,
        question: str,
        sources: Sequence[Source],
        history: Optional[Sequence[Dict[str, str]]] = None,
    ) -> List[Dict[str, str]]:
        """System prompt with snippets, the recent history, then the question."""
        snippets = []
        for index, source in enumerate(sources, 1):
            code = source.source_code[: self.snippet_max_chars]
            if len(source.source_code) > self.snippet_max_chars:
                code += "..."
            snippets.append(
                f"[Source {index}: {source.file_name}] "
                f"(Relevance: {source.similarity * 100:.1f}%)\n"
                f"Summary: {source.summary}\n\n"
                f"Code:\n```\n{code}\n```"
            )

        messages = [
            {
                "role": "system",
                "content": SYSTEM_PROMPT.format(context="\n\n---\n\n".join(snippets)),
            }
        ]

        turns = [
            {"role": turn["role"], "content": turn["content"]}
            for turn in (history or [])
            if turn.get("role") in HISTORY_ROLES and turn.get("content")
        ]
        if self.history_window > 0:
            messages.extend(turns[-self.history_window :])

        messages.append({"role": "user", "content": question})
        return messages

    def _get_cached(self, project_id: str, question: str) -> Optional[QueryResult]:
        result = self.answer_cache.get(project_id, question)
        if result is not None:
            return result

        result = self.cache.get_cached_query(project_id, question)
        if result is not None:
            self.answer_cache.set(project_id, question, result)
        return result

    async def answer(
        self,
        project_id: str,
        question: str,
        history: Optional[Sequence[Dict[str, str]]] = None,
    ) -> QueryResult:
        """Answer `question` about `project_id`.

        Raises:
            ValidationError: If the question is empty.
            QueryFailedError: On any failure past the cache lookup. The
                cause is logged and recorded as a metric, never returned.
        """
        if not isinstance(question, str) or not question.strip():
            raise ValidationError("Question must be a non-empty string")
        # Every cache tier keys on the same normalised text.
        question = question.strip()

        start = time.perf_counter()
        was_cold_start = self.recorder.was_cold_start(project_id)

        cached = self._get_cached(project_id, question)
        if cached is not None:
            logger.info(f"Query cache hit for project {project_id}")
            self.recorder.record(
                MetricRecord(
                    project_id=project_id,
                    route_type="query",
                    model_used=CACHE_MODEL,
                    success=True,
                    retrieval_count=len(cached.sources),
                    memory_hit_count=1,
                    latency_ms=calculate_elapsed_ms(start),
                    cache_hit=True,
                    was_cold_start=was_cold_start,
                    avg_memory_similarity=_avg_similarity(cached.sources),
                )
            )
            return QueryResult(answer=cached.answer, sources=list(cached.sources))

        memory_hits = 0
        sources: List[Source] = []
        try:
            embedding, embedding_hit = await self._embed_question(question)
            memory_hits += int(embedding_hit)

            sources = self.retrieve_top_k(project_id, embedding)
            if not sources:
                # Not cached: the project may still be mid-index.
                self.recorder.record(
                    MetricRecord(
                        project_id=project_id,
                        route_type="query",
                        model_used=NO_MODEL,
                        success=True,
                        memory_hit_count=memory_hits,
                        latency_ms=calculate_elapsed_ms(start),
                        was_cold_start=was_cold_start,
                    )
                )
                return QueryResult(answer=NO_MATCH_ANSWER, sources=[])

            messages = self.build_messages(question, sources, history)
            completion = await self.generator.complete(messages, self.model)
        except Exception as e:
            logger.error(f"Query failed for project {project_id}: {e}")
            self.recorder.record(
                MetricRecord(
                    project_id=project_id,
                    route_type="query",
                    model_used=self.model,
                    success=False,
                    error_message=str(e) or e.__class__.__name__,
                    retrieval_count=len(sources),
                    memory_hit_count=memory_hits,
                    latency_ms=calculate_elapsed_ms(start),
                    was_cold_start=was_cold_start,
                    avg_memory_similarity=_avg_similarity(sources),
                )
            )
            raise QueryFailedError() from e

        result = QueryResult(answer=completion.text, sources=sources)
        self.cache.cache_query(project_id, question, result)
        self.answer_cache.set(project_id, question, result)

        self.recorder.record(
            MetricRecord(
                project_id=project_id,
                route_type="query",
                model_used=completion.model,
                success=True,
                prompt_tokens=completion.prompt_tokens,
                completion_tokens=completion.completion_tokens,
                total_tokens=completion.total_tokens,
                retrieval_count=len(sources),
                memory_hit_count=memory_hits,
                latency_ms=calculate_elapsed_ms(start),
                estimated_cost_usd=estimate_cost(
                    completion.prompt_tokens, completion.completion_tokens, completion.model
                ),
                was_cold_start=was_cold_start,
                avg_memory_similarity=_avg_similarity(sources),
            )
        )
        logger.info(
            f"Answered query for project {project_id} with {len(sources)} sources "
            f"({completion.total_tokens} tokens)"
        )
        return QueryResult(answer=result.answer, sources=list(sources))

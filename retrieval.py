"""Vector retrieval over stored code embeddings."""

import math
from dataclasses import asdict, dataclass
from typing import Callable, List, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from db import EmbeddingRepository


@dataclass(frozen=True)
class Source:
    """A retrieved code snippet and its similarity to the question."""

    file_name: str
    source_code: str
    summary: str
    similarity: float

    def to_dict(self) -> dict:
        return asdict(self)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors (0.0 for zero vectors)."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def normalize_similarity(value: float) -> float:
    """Clamp a cosine similarity into [0, 1]; opposed vectors score 0."""
    return max(0.0, min(1.0, value))


def rank_top_k(sources: List[Source], k: int) -> List[Source]:
    """Sort by descending similarity, keeping original order for ties."""
    if k <= 0:
        return []
    return sorted(sources, key=lambda source: -source.similarity)[:k]


class VectorRetriever:
    """Scores a project's stored embeddings against a query vector."""

    def __init__(self, session_factory: Callable[[], Session], embedding_dim: int):
        self.session_factory = session_factory
        self.embedding_dim = embedding_dim

    def retrieve_top_k(
        self, project_id: str, query_embedding: Sequence[float], k: int
    ) -> List[Source]:
        """Top-`k` sources of `project_id` for `query_embedding`.

        Only rows of the given project are considered. Rows whose vector
        does not match the deployment dimension are skipped.
        """
        if len(query_embedding) != self.embedding_dim:
            raise ValueError(
                f"Query embedding has dimension {len(query_embedding)}, "
                f"expected {self.embedding_dim}"
            )

        db = self.session_factory()
        try:
            rows = EmbeddingRepository(db).list_project_embeddings(project_id)
            candidates = []
            for row in rows:
                vector = row.embedding
                if len(vector) != self.embedding_dim:
                    logger.warning(
                        f"Skipping embedding {row.id} of project {project_id}: "
                        f"dimension {len(vector)}"
                    )
                    continue
                candidates.append(
                    Source(
                        file_name=row.file_name,
                        source_code=row.source_code,
                        summary=row.summary,
                        similarity=normalize_similarity(
                            cosine_similarity(query_embedding, vector)
                        ),
                    )
                )
        finally:
            db.close()

        return rank_top_k(candidates, k)

    def count_embeddings(self, project_id: str) -> int:
        db = self.session_factory()
        try:
            return EmbeddingRepository(db).count_project_embeddings(project_id)
        finally:
            db.close()

"""Repository indexing: summarise files, embed summaries, replace stored rows.

Indexing always runs from scratch. There is no checkpoint or cursor:
a job whose worker dies is re-run in full once its lease expires. This
is accepted for bounded repository sizes.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from db import EmbeddingRepository
from llm_client import EmbeddingProvider, GenerationProvider

ProgressCallback = Callable[[int], Awaitable[None]]

BATCH_SIZE = 10
MAX_SUMMARY_SOURCE_CHARS = 10000


@dataclass
class SourceDocument:
    """One file loaded from a repository."""

    file_name: str
    content: str


class RepositoryLoader(Protocol):
    async def load(self, repo_url: str, token: Optional[str]) -> List[SourceDocument]: ...


class RepositoryIndexer(Protocol):
    async def index_full(
        self,
        project_id: str,
        repo_url: str,
        token: Optional[str],
        on_progress: ProgressCallback,
    ) -> Dict[str, Any]: ...


class IndexingError(Exception):
    """Indexing could not produce any embeddings."""


class LocalRepositoryLoader:
    """Loads text files from a checked-out repository on local disk."""

    ignored_dirs = {".git", "node_modules", "__pycache__", ".venv", "dist", "build"}

    def __init__(self, max_file_bytes: int = 200_000):
        self.max_file_bytes = max_file_bytes

    async def load(self, repo_url: str, token: Optional[str]) -> List[SourceDocument]:
        if repo_url.startswith("file://"):
            root = Path(repo_url[len("file://") :])
        elif "://" in repo_url:
            raise IndexingError(f"Unsupported repository reference: {repo_url}")
        else:
            root = Path(repo_url)

        if not root.is_dir():
            raise IndexingError(f"Repository path not found: {root}")

        documents = []
        for path in sorted(root.rglob("*")):
            relative = path.relative_to(root)
            if not path.is_file() or self.ignored_dirs.intersection(relative.parts):
                continue
            if path.stat().st_size > self.max_file_bytes:
                continue
            try:
                content = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            documents.append(
                SourceDocument(file_name=relative.as_posix(), content=content)
            )
        return documents


def build_summary_prompt(document: SourceDocument) -> str:
    code = document.content[:MAX_SUMMARY_SOURCE_CHARS]
    return (
        "You are an intelligent senior software engineer who specializes in "
        "onboarding junior software engineers onto projects.\n"
        "You are onboarding a junior software engineer and explaining to them "
        f"the purpose of the {document.file_name} file.\n"
        "Here is the code:\n"
        "---\n"
        f"{code}\n"
        "---\n"
        "Give a summary no more than 100 words of the code above."
    )


class SummaryEmbeddingIndexer:
    """Indexer that stores one summary embedding per source file."""

    def __init__(
        self,
        loader: RepositoryLoader,
        embedder: EmbeddingProvider,
        generator: GenerationProvider,
        session_factory: Callable[[], Session],
        embedding_dim: int,
        summary_model: Optional[str] = None,
        caches: Sequence[Any] = (),
        batch_size: int = BATCH_SIZE,
    ):
        self.loader = loader
        self.embedder = embedder
        self.generator = generator
        self.session_factory = session_factory
        self.embedding_dim = embedding_dim
        self.summary_model = summary_model
        self.caches = caches
        self.batch_size = batch_size

    async def index_full(
        self,
        project_id: str,
        repo_url: str,
        token: Optional[str],
        on_progress: ProgressCallback,
    ) -> Dict[str, Any]:
        """Index a repository from scratch, replacing the project's embeddings."""
        logger.info(f"Indexing project {project_id} from {repo_url} (has token: {bool(token)})")

        documents = await self.loader.load(repo_url, token)
        if not documents:
            raise IndexingError("No files found in repository")

        records = []
        failed = 0
        total = len(documents)

        for start in range(0, total, self.batch_size):
            batch = documents[start : start + self.batch_size]
            for document in batch:
                record = await self._index_document(project_id, document)
                if record is None:
                    failed += 1
                else:
                    records.append(record)

            done = min(start + self.batch_size, total)
            # Storing the rows is the last step, so loading/summarising caps at 95%.
            await on_progress(int(done * 95 / total))

        if not records:
            raise IndexingError(f"All {total} files failed to index")

        db = self.session_factory()
        try:
            stored = EmbeddingRepository(db).replace_project_embeddings(project_id, records)
        finally:
            db.close()

        for cache in self.caches:
            cache.invalidate_project(project_id)

        logger.info(
            f"Indexed project {project_id}: {stored} files stored, {failed} failed"
        )
        return {"files_processed": total, "success_count": stored, "fail_count": failed}

    async def _index_document(
        self, project_id: str, document: SourceDocument
    ) -> Optional[Dict[str, Any]]:
        try:
            completion = await self.generator.complete(
                [{"role": "user", "content": build_summary_prompt(document)}],
                self.summary_model,
            )
            summary = completion.text.strip()
            if not summary:
                raise IndexingError("Empty summary generated")

            embedding = await self.embedder.embed(summary)
            if len(embedding) != self.embedding_dim:
                raise IndexingError(
                    f"Embedding dimension {len(embedding)} != {self.embedding_dim}"
                )
        except Exception as e:
            logger.warning(
                f"Skipping {document.file_name} in project {project_id}: {e}"
            )
            return None

        return {
            "file_name": document.file_name,
            "source_code": document.content,
            "summary": summary,
            "embedding": embedding,
        }

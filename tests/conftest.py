"""Pytest configuration and fixtures."""

import os

# Settings are read at import time; keep tests off the network and the real DB.
os.environ["DB_URL"] = "sqlite://"
os.environ["EMBEDDING_DIM"] = "8"
os.environ.pop("OPENROUTER_API_KEY", None)

import tempfile
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from db import EmbeddingRepository, ProjectRepository, create_db_engine
from errors import UpstreamError
from llm_client import CompletionResult
from models import Base, Project

EMBEDDING_DIM = 8


def unit_vector(index: int, dim: int = EMBEDDING_DIM) -> List[float]:
    """Vector pointing along one axis."""
    vector = [0.0] * dim
    vector[index] = 1.0
    return vector


class FakeLLM:
    """In-memory embedding and generation provider that records its calls."""

    def __init__(
        self,
        dim: int = EMBEDDING_DIM,
        answer: str = "Authentication is handled in `auth.py`.",
        vectors: Optional[Dict[str, List[float]]] = None,
        fail_embed: bool = False,
        fail_complete: bool = False,
    ):
        self.dim = dim
        self.answer = answer
        self.vectors = vectors or {}
        self.fail_embed = fail_embed
        self.fail_complete = fail_complete
        self.embed_calls: List[str] = []
        self.complete_calls: List[List[Dict[str, str]]] = []
        self.closed = False

    async def embed(self, text: str) -> List[float]:
        self.embed_calls.append(text)
        if self.fail_embed:
            raise UpstreamError("Embedding provider unavailable")
        return self.vectors.get(text, unit_vector(0, self.dim))

    async def complete(self, messages, model=None) -> CompletionResult:
        self.complete_calls.append(messages)
        if self.fail_complete:
            raise UpstreamError("Generation provider unavailable")
        return CompletionResult(
            text=self.answer,
            prompt_tokens=1000,
            completion_tokens=500,
            total_tokens=1500,
            model=model or "google/gemini-2.5-flash",
        )

    async def close(self):
        self.closed = True


@pytest.fixture(scope="function")
def test_db_url():
    """Create temporary database URL for testing."""
    # Create a temporary file for SQLite database
    temp_db = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    temp_db.close()

    db_url = f"sqlite:///{temp_db.name}"

    yield db_url

    # Cleanup
    try:
        os.unlink(temp_db.name)
    except OSError:
        pass


@pytest.fixture(scope="function")
def test_engine(test_db_url):
    """Create test database engine."""
    engine = create_db_engine(test_db_url)

    # Create tables
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    """Session factory bound to the test engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def test_db_session(session_factory):
    """Create test database session."""
    session = session_factory()

    yield session

    session.close()


@pytest.fixture
def sample_project(test_db_session) -> Project:
    """Create sample project in database."""
    return ProjectRepository(test_db_session).create_project(
        {
            "id": "project-1",
            "name": "Demo",
            "repo_url": "file:///tmp/demo-repo",
            "repo_token": "secret-token",
        }
    )


@pytest.fixture
def seed_embeddings(session_factory):
    """Store embedding rows for a project."""

    def _seed(project_id: str, rows: List[Dict]) -> int:
        db = session_factory()
        try:
            return EmbeddingRepository(db).replace_project_embeddings(project_id, rows)
        finally:
            db.close()

    return _seed


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture(scope="function")
def test_client(test_engine, session_factory, fake_llm):
    """Create test client wired to the test database and fake providers."""
    from app import create_app

    app = create_app(session_factory=session_factory, bind=test_engine, llm=fake_llm)

    with TestClient(app) as client:
        yield client

# FILE: tests/conftest.py
"""
Pytest configuration for the codechat test suite.

Configures:
- pytest-asyncio for async test support
- in-memory SQLite sessions shared across threads (StaticPool)
"""
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from codechat.db import Base
from codechat import models  # noqa: F401

pytest_plugins = ["pytest_asyncio"]


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test; returns a session factory bound to it."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def repository(db_session):
    repo = models.Repository(owner="acme", name="widgets", default_branch="main")
    db_session.add(repo)
    db_session.commit()
    db_session.refresh(repo)
    return repo


@pytest.fixture
def other_repository(db_session):
    repo = models.Repository(owner="acme", name="gizmos", default_branch="main")
    db_session.add(repo)
    db_session.commit()
    db_session.refresh(repo)
    return repo


@pytest.fixture
def add_chunk(db_session, repository):
    """Factory that stores a CodeChunk for the default repository."""
    import json

    def _add(file_path, start_line=1, end_line=10, content="code", language="typescript",
             chunk_type="function", symbol_name=None, vector=None, file_hash="h", context=None,
             repository_id=None):
        chunk = models.CodeChunk(
            repository_id=repository_id or repository.id,
            file_path=file_path,
            start_line=start_line,
            end_line=end_line,
            content=content,
            language=language,
            chunk_type=chunk_type,
            symbol_name=symbol_name,
            dependencies=[],
            context=context,
            file_hash=file_hash,
            embedding=json.dumps(vector) if vector is not None else None,
        )
        db_session.add(chunk)
        db_session.commit()
        return chunk

    return _add


@pytest.fixture(autouse=True)
def no_rerank_provider(monkeypatch):
    """Searches never reach the rerank API unless a test injects a reranker."""
    monkeypatch.delenv("VOYAGE_API_KEY", raising=False)
    monkeypatch.setattr("codechat.retrieval.reranker._reranker", None)

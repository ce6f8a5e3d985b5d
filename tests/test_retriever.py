# FILE: tests/test_retriever.py
"""
Tests for retrieval strategies over stored chunks.
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from unittest.mock import AsyncMock, MagicMock

import pytest

from codechat.errors import EmbeddingTransientError
from codechat.retrieval.retriever import (
    QUERY_CODE,
    QUERY_IDENTIFIER,
    QUERY_NATURAL_LANGUAGE,
    SearchOptions,
    detect_query_type,
    get_repository_context,
    retrieve_relevant_chunks,
    search_by_file,
    search_by_symbol,
    search_by_type,
    smart_search,
    text_search,
    vector_search,
)


def _embedder(vector):
    embedder = MagicMock()
    embedder.embed_query = AsyncMock(return_value=vector)
    return embedder


@pytest.fixture
def seeded(add_chunk):
    add_chunk("src/auth/login.ts", 1, 20, content="export function login(user) { return createSession(user); }",
              symbol_name="login", vector=[1.0, 0.0, 0.0])
    add_chunk("src/auth/session.ts", 1, 15, content="export function createSession(user) { return token; }",
              symbol_name="createSession", vector=[0.8, 0.6, 0.0])
    add_chunk("src/ui/Button.tsx", 1, 30, content="export const Button = () => <button/>",
              symbol_name="Button", chunk_type="function", vector=[0.0, 0.0, 1.0])
    add_chunk("src/types.ts", 1, 8, content="export interface User { id: string }",
              symbol_name="User", chunk_type="interface", vector=[0.0, 1.0, 0.0])


class TestQueryType:
    def test_shapes(self):
        assert detect_query_type("createSession") == QUERY_IDENTIFIER
        assert detect_query_type("user.login()") == QUERY_CODE
        assert detect_query_type("how does authentication work") == QUERY_NATURAL_LANGUAGE


class TestVectorSearch:
    """Tests for similarity search."""

    @pytest.mark.asyncio
    async def test_threshold_and_order(self, db_session, repository, seeded):
        results = await vector_search(db_session, "login flow", repository.id, embedder=_embedder([1.0, 0.0, 0.0]))

        assert [c.file_path for c in results] == ["src/auth/login.ts", "src/auth/session.ts"]
        assert results[0].score == pytest.approx(1.0)
        assert results[1].score == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_empty_repository_skips_embedding(self, db_session, repository):
        embedder = _embedder([1.0])
        assert await vector_search(db_session, "anything", repository.id, embedder=embedder) == []
        embedder.embed_query.assert_not_called()

    @pytest.mark.asyncio
    async def test_embedding_failure_propagates(self, db_session, repository, seeded):
        embedder = MagicMock()
        embedder.embed_query = AsyncMock(side_effect=EmbeddingTransientError("down", 503))
        with pytest.raises(EmbeddingTransientError):
            await vector_search(db_session, "login", repository.id, embedder=embedder)


class TestTextSearch:
    def test_matches_content_and_symbol(self, db_session, repository, seeded):
        results = text_search(db_session, "createSession", repository.id)
        assert {c.file_path for c in results} == {"src/auth/login.ts", "src/auth/session.ts"}
        assert all(0 < c.score <= 1 for c in results)

    def test_punctuation_query_is_empty(self, db_session, repository, seeded):
        assert text_search(db_session, "()", repository.id) == []


class TestHybridSearch:
    """Tests for weighted vector + text combination."""

    @pytest.mark.asyncio
    async def test_scores_sorted_and_bounded(self, db_session, repository, seeded):
        results = await retrieve_relevant_chunks(
            db_session, "session token", repository.id, embedder=_embedder([0.8, 0.6, 0.0]),
        )

        assert results[0].file_path == "src/auth/session.ts"
        scores = [c.score for c in results]
        assert scores == sorted(scores, reverse=True)
        assert all(0 < s <= 1 for s in scores)

    @pytest.mark.asyncio
    async def test_limit(self, db_session, repository, seeded):
        results = await retrieve_relevant_chunks(
            db_session, "export", repository.id, SearchOptions(limit=2), embedder=_embedder([1.0, 1.0, 1.0]),
        )
        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_empty_repository(self, db_session, repository):
        embedder = _embedder([1.0])
        assert await retrieve_relevant_chunks(db_session, "x", repository.id, embedder=embedder) == []
        assert await smart_search(db_session, "x", repository.id, embedder=embedder) == []
        embedder.embed_query.assert_not_called()

    @pytest.mark.asyncio
    async def test_smart_search_identifier_favours_text(self, db_session, repository, seeded):
        # Query vector points at Button; the identifier still wins through text weight
        results = await smart_search(db_session, "createSession", repository.id, embedder=_embedder([0.0, 0.0, 1.0]))
        assert results[0].file_path in ("src/auth/session.ts", "src/auth/login.ts")
        assert results[0].symbol_name != "Button"


class TestDirectLookups:
    def test_by_file_ordered_by_line(self, db_session, repository, add_chunk):
        add_chunk("src/a.ts", 40, 60)
        add_chunk("src/a.ts", 1, 20)
        add_chunk("src/b.ts", 1, 5)

        results = search_by_file(db_session, "src/a.ts", repository.id)
        assert [c.start_line for c in results] == [1, 40]
        assert all(c.score == 1.0 for c in results)

    def test_by_symbol_case_insensitive(self, db_session, repository, seeded):
        results = search_by_symbol(db_session, "session", repository.id)
        assert [c.symbol_name for c in results] == ["createSession"]

    def test_by_symbol_escapes_wildcards(self, db_session, repository, add_chunk):
        add_chunk("a.py", symbol_name="get_user")
        add_chunk("b.py", symbol_name="getXuser")
        assert [c.symbol_name for c in search_by_symbol(db_session, "get_", repository.id)] == ["get_user"]

    def test_by_type(self, db_session, repository, seeded):
        results = search_by_type(db_session, "interface", repository.id)
        assert [c.symbol_name for c in results] == ["User"]

    def test_repository_context(self, db_session, repository, seeded):
        context = get_repository_context(db_session, repository.id)
        assert context["total_chunks"] == 4
        assert context["total_files"] == 4
        assert context["chunk_types"] == {"function": 3, "interface": 1}

# FILE: tests/test_embedding_client.py
"""
Tests for codechat/embeddings/client.py
Batched embeddings with one bounded retry and strict error mapping.
"""

import sys
from pathlib import Path

_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from codechat.embeddings.client import EmbeddingClient, map_openai_error
from codechat.errors import (
    AuthError,
    ConfigurationError,
    EmbeddingAuthError,
    EmbeddingProviderError,
    EmbeddingTransientError,
    TransientProviderError,
)

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/embeddings")


def _status_error(cls, status):
    return cls("boom", response=httpx.Response(status, request=_REQUEST), body=None)


def _response(vectors, reverse=False):
    data = [SimpleNamespace(index=i, embedding=v) for i, v in enumerate(vectors)]
    if reverse:
        data.reverse()
    return SimpleNamespace(data=data)


def _client(create):
    fake = MagicMock()
    fake.embeddings.create = create
    return EmbeddingClient(client=fake, batch_size=2, batch_delay=0)


class TestErrorMapping:
    """Tests for openai exception translation."""

    def test_auth_errors(self):
        error = map_openai_error(_status_error(openai.AuthenticationError, 401))
        assert isinstance(error, EmbeddingAuthError)
        assert isinstance(error, AuthError)
        assert error.status_code == 401

    def test_transient_errors(self):
        assert isinstance(map_openai_error(_status_error(openai.RateLimitError, 429)), EmbeddingTransientError)
        assert isinstance(map_openai_error(openai.APIConnectionError(request=_REQUEST)), TransientProviderError)
        assert isinstance(map_openai_error(_status_error(openai.InternalServerError, 503)), EmbeddingTransientError)

    def test_other_errors(self):
        error = map_openai_error(_status_error(openai.BadRequestError, 400))
        assert type(error) is EmbeddingProviderError


class TestEmbed:
    """Tests for batching, ordering and validation."""

    @pytest.mark.asyncio
    async def test_empty_input(self):
        create = AsyncMock()
        assert await _client(create).embed([]) == []
        create.assert_not_called()

    @pytest.mark.asyncio
    async def test_batches_and_order(self):
        create = AsyncMock(side_effect=[
            _response([[1.0, 0.0], [0.0, 1.0]], reverse=True),
            _response([[0.5, 0.5]]),
        ])
        vectors = await _client(create).embed(["a", "b", "c"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0], [0.5, 0.5]]
        assert create.await_count == 2
        assert create.await_args_list[0].kwargs["input"] == ["a", "b"]
        assert create.await_args_list[1].kwargs["input"] == ["c"]

    @pytest.mark.asyncio
    async def test_rejects_empty_text(self):
        create = AsyncMock()
        with pytest.raises(EmbeddingProviderError):
            await _client(create).embed(["ok", "   "])
        create.assert_not_called()

    @pytest.mark.asyncio
    async def test_zero_vector_is_an_error(self):
        create = AsyncMock(return_value=_response([[0.0, 0.0]]))
        with pytest.raises(EmbeddingProviderError):
            await _client(create).embed(["text"])

    @pytest.mark.asyncio
    async def test_count_mismatch_is_an_error(self):
        create = AsyncMock(return_value=_response([[1.0]]))
        with pytest.raises(EmbeddingProviderError):
            await _client(create).embed(["a", "b"])

    @pytest.mark.asyncio
    async def test_embed_query(self):
        create = AsyncMock(return_value=_response([[0.1, 0.2, 0.3]]))
        assert await _client(create).embed_query("find auth") == [0.1, 0.2, 0.3]


class TestRetry:
    """Tests for the single transient retry."""

    @pytest.mark.asyncio
    async def test_transient_error_retried_once(self):
        create = AsyncMock(side_effect=[
            _status_error(openai.RateLimitError, 429),
            _response([[1.0, 2.0]]),
        ])
        with patch("codechat.embeddings.client.RETRY_BACKOFF_S", 0):
            vectors = await _client(create).embed(["a"])

        assert vectors == [[1.0, 2.0]]
        assert create.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_one_retry(self):
        create = AsyncMock(side_effect=_status_error(openai.InternalServerError, 500))
        with patch("codechat.embeddings.client.RETRY_BACKOFF_S", 0):
            with pytest.raises(EmbeddingTransientError):
                await _client(create).embed(["a"])
        assert create.await_count == 2

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self):
        create = AsyncMock(side_effect=_status_error(openai.AuthenticationError, 401))
        with pytest.raises(EmbeddingAuthError):
            await _client(create).embed(["a"])
        assert create.await_count == 1


class TestConfiguration:
    def test_missing_key_raises_configuration_error(self):
        with patch.dict("os.environ", {"OPENAI_API_KEY": ""}):
            with pytest.raises(ConfigurationError):
                EmbeddingClient()

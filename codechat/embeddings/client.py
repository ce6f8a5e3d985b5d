"""
Embedding client (OpenAI text-embedding-3-small via AsyncOpenAI).

Contract:
- embed(texts) returns one vector per input, in input order
- embed([]) returns []
- empty/whitespace texts are rejected; the client never returns a zero
  vector in place of a failure
- exactly one retry (with backoff) for transient provider errors;
  auth errors are never retried

Errors raised:
- EmbeddingTransientError: rate limit, timeout, connection, 5xx
- EmbeddingAuthError: 401/403
- EmbeddingProviderError: anything else
"""

import asyncio
import logging
from typing import List, Optional, Sequence

import openai
from openai import AsyncOpenAI

from codechat.config import (
    EMBEDDING_BATCH_DELAY_S,
    EMBEDDING_BATCH_SIZE,
    EMBEDDING_MAX_INPUT_CHARS,
    EMBEDDING_MODEL,
    HTTP_TIMEOUT_S,
    PROVIDER_MAX_RETRIES,
    RETRY_BACKOFF_S,
    require_openai_key,
)
from codechat.errors import (
    EmbeddingAuthError,
    EmbeddingProviderError,
    EmbeddingTransientError,
)

logger = logging.getLogger(__name__)


def map_openai_error(exc: Exception) -> EmbeddingProviderError:
    """Translate an openai SDK exception into the codechat taxonomy."""
    status_code = getattr(exc, "status_code", None)

    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return EmbeddingAuthError(f"Embedding provider rejected credentials: {exc}", status_code)
    if isinstance(exc, (openai.RateLimitError, openai.APITimeoutError,
                        openai.APIConnectionError, openai.InternalServerError)):
        return EmbeddingTransientError(f"Embedding provider unavailable: {exc}", status_code)
    if isinstance(status_code, int) and status_code >= 500:
        return EmbeddingTransientError(f"Embedding provider error {status_code}: {exc}", status_code)
    return EmbeddingProviderError(f"Embedding request failed: {exc}", status_code)


class EmbeddingClient:
    """Batched async embedding client with one bounded retry."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = EMBEDDING_MODEL,
        batch_size: int = EMBEDDING_BATCH_SIZE,
        batch_delay: float = EMBEDDING_BATCH_DELAY_S,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        if client is None:
            # SDK retries disabled: the retry budget is ours
            client = AsyncOpenAI(
                api_key=api_key or require_openai_key(),
                timeout=HTTP_TIMEOUT_S,
                max_retries=0,
            )
        self._client = client

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []

        prepared = []
        for i, text in enumerate(texts):
            if not text or not text.strip():
                raise EmbeddingProviderError(f"Cannot embed empty text (input #{i})")
            prepared.append(text[:EMBEDDING_MAX_INPUT_CHARS])

        vectors: List[List[float]] = []
        for offset in range(0, len(prepared), self.batch_size):
            if offset and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)
            batch = prepared[offset:offset + self.batch_size]
            vectors.extend(await self._embed_batch_with_retry(batch))
        return vectors

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single search query."""
        vectors = await self.embed([text])
        return vectors[0]

    async def _embed_batch_with_retry(self, batch: List[str]) -> List[List[float]]:
        backoff = RETRY_BACKOFF_S
        for attempt in range(1, PROVIDER_MAX_RETRIES + 2):
            try:
                return await self._embed_batch(batch)
            except EmbeddingTransientError as e:
                if attempt > PROVIDER_MAX_RETRIES:
                    logger.error(f"[embeddings] Giving up after {attempt} attempts: {e}")
                    raise
                logger.warning(
                    f"[embeddings] Transient error on attempt {attempt}, retrying in {backoff:.2f}s: {e}"
                )
                await asyncio.sleep(backoff)
                backoff *= 2
        raise EmbeddingProviderError("Embedding retry loop exited unexpectedly")

    async def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        try:
            response = await self._client.embeddings.create(model=self.model, input=batch)
        except openai.OpenAIError as e:
            raise map_openai_error(e) from e

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(batch):
            raise EmbeddingProviderError(
                f"Embedding provider returned {len(data)} vectors for {len(batch)} inputs"
            )

        vectors = [list(item.embedding) for item in data]
        for vector in vectors:
            if not vector or not any(vector):
                raise EmbeddingProviderError("Embedding provider returned an empty or zero vector")
        return vectors

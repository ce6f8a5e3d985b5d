"""
Reranking of retrieved chunks (Voyage AI rerank over httpx).

Applied after vector/hybrid retrieval: the candidates are re-scored
against the query by a cross-encoder and the best top_k are kept, ordered
by relevance score. The score on each returned chunk becomes the rerank
score; the retrieval score is kept in `original_score`.

Error mapping follows the GitHub fetcher:
- 401/403 -> AuthError
- 429, 5xx, timeouts -> TransientProviderError (one retry)
- other 4xx -> ProviderError
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import httpx

from codechat.config import (
    HTTP_TIMEOUT_S,
    PROVIDER_MAX_RETRIES,
    RERANK_MIN_CHUNKS,
    RERANK_MIN_SCORE,
    RERANK_MODEL,
    RERANK_TOP_K,
    RETRY_BACKOFF_S,
    VOYAGE_RERANK_URL,
    require_voyage_key,
)
from codechat.errors import AuthError, ConfigurationError, ProviderError, TransientProviderError
from codechat.retrieval.scoring import RetrievedChunk

logger = logging.getLogger(__name__)


@dataclass
class RerankedChunk(RetrievedChunk):
    original_score: Optional[float] = None


def build_rerank_document(chunk: RetrievedChunk) -> str:
    """Symbol header and location first so the model sees what the code is."""
    header = f"{chunk.chunk_type}: {chunk.symbol_name}\n" if chunk.symbol_name else ""
    return f"{header}File: {chunk.file_path}:{chunk.start_line}-{chunk.end_line}\n\n{chunk.content}"


class VoyageReranker:
    """Async client for the Voyage AI rerank endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = RERANK_MODEL,
        url: str = VOYAGE_RERANK_URL,
        timeout: float = HTTP_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self.url = url
        self._api_key = api_key or require_voyage_key()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        try:
            message = (response.json().get("error") or {}).get("message")
        except ValueError:
            message = None
        message = message or f"Voyage rerank error {status}"

        if status in (401, 403):
            raise AuthError(message, status)
        if status == 429 or status >= 500:
            raise TransientProviderError(message, status)
        raise ProviderError(message, status)

    async def score(self, query: str, documents: Sequence[str], top_k: int) -> List[tuple]:
        """
        Relevance of each document to the query.

        Returns:
            (document index, relevance score) pairs, most relevant first
        """
        body = {
            "query": query,
            "documents": list(documents),
            "model": self.model,
            "top_k": top_k,
            "truncation": True,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}

        backoff = RETRY_BACKOFF_S
        for attempt in range(1, PROVIDER_MAX_RETRIES + 2):
            try:
                try:
                    response = await self._client.post(self.url, json=body, headers=headers)
                except httpx.TimeoutException as e:
                    raise TransientProviderError(f"Rerank request timed out: {e}") from e
                except httpx.TransportError as e:
                    raise TransientProviderError(f"Network error during rerank: {e}") from e

                self._raise_for_status(response)
                data = response.json().get("data") or []
                return [(item["index"], float(item["relevance_score"])) for item in data]
            except TransientProviderError as e:
                if attempt > PROVIDER_MAX_RETRIES:
                    raise
                logger.warning(f"[reranker] {e}; retrying in {backoff:.2f}s")
                await asyncio.sleep(backoff)
                backoff *= 2
        raise ProviderError("Rerank retry loop exited unexpectedly")

    async def rerank(
        self,
        query: str,
        chunks: List[RetrievedChunk],
        top_k: int = RERANK_TOP_K,
        min_score: float = RERANK_MIN_SCORE,
    ) -> List[RerankedChunk]:
        """
        Re-score chunks against the query and keep the best top_k.

        Fewer than RERANK_MIN_CHUNKS candidates are returned in their
        original order without calling the provider. Provider errors
        propagate; the caller decides whether to keep retrieval order.
        """
        if len(chunks) < RERANK_MIN_CHUNKS:
            return [_reranked(chunk, chunk.score) for chunk in chunks[:top_k]]

        documents = [build_rerank_document(chunk) for chunk in chunks]
        scored = await self.score(query, documents, min(top_k, len(chunks)))

        results = [
            _reranked(chunks[index], relevance)
            for index, relevance in scored
            if 0 <= index < len(chunks) and relevance >= min_score
        ]
        if results:
            average = sum(chunk.score for chunk in results) / len(results)
            logger.info(f"[reranker] {len(chunks)} -> {len(results)} chunks, avg score {average:.3f}")
        return results


def _reranked(chunk: RetrievedChunk, score: float) -> RerankedChunk:
    fields = {name: getattr(chunk, name) for name in RetrievedChunk.__dataclass_fields__}
    fields["score"] = score
    return RerankedChunk(**fields, original_score=chunk.score)


_reranker: Optional[VoyageReranker] = None


def get_reranker() -> Optional[VoyageReranker]:
    """Shared reranker, None while VOYAGE_API_KEY is not configured."""
    global _reranker
    if _reranker is None:
        try:
            _reranker = VoyageReranker()
        except ConfigurationError as e:
            logger.debug(f"[reranker] Reranking unavailable: {e}")
            return None
    return _reranker


__all__ = [
    "RerankedChunk",
    "VoyageReranker",
    "build_rerank_document",
    "get_reranker",
]

"""
Code retriever.

Strategies over the chunks of one repository:
- vector_search: cosine similarity against the query embedding (threshold 0.5)
- text_search: term matching on content + symbol name
- retrieve_relevant_chunks: hybrid, weighted 0.7 vector / 0.3 text
- smart_search: hybrid with weights picked from the query shape
- search_by_file / search_by_symbol / search_by_type: direct lookups, score 1.0

Vectors are stored as JSON next to each chunk and compared in Python.
An empty repository yields [] from every strategy without calling the
embedding provider. Query-embedding failures propagate to the caller.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from codechat.config import (
    DEFAULT_MATCH_COUNT,
    DEFAULT_SIMILARITY_THRESHOLD,
    DEFAULT_TEXT_WEIGHT,
    DEFAULT_VECTOR_WEIGHT,
    SEARCH_BY_TYPE_LIMIT,
)
from codechat.indexing.job_manager import get_repository_index_stats
from codechat.models import CodeChunk
from codechat.retrieval.scoring import (
    RetrievedChunk,
    combine_scores,
    rank_by_text,
    rank_by_vector,
    sanitize_text_query,
    sort_scored,
)

logger = logging.getLogger(__name__)

QUERY_IDENTIFIER = "identifier"
QUERY_CODE = "code"
QUERY_NATURAL_LANGUAGE = "natural_language"

# (vector_weight, text_weight) per query shape
QUERY_TYPE_WEIGHTS = {
    QUERY_IDENTIFIER: (0.4, 0.6),
    QUERY_CODE: (0.8, 0.2),
    QUERY_NATURAL_LANGUAGE: (DEFAULT_VECTOR_WEIGHT, DEFAULT_TEXT_WEIGHT),
}

_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_CODE_PATTERNS = [
    re.compile(r"[{}()\[\]<>]"),  # Brackets
    re.compile(r"[=!<>]+"),  # Operators
    re.compile(r"\b(function|class|const|let|var|def|fn|impl)\b"),  # Keywords
    re.compile(r"\w+\.\w+"),  # Member access
    re.compile(r"\w+\([^)]*\)"),  # Calls
]


@dataclass
class SearchOptions:
    """Per-call overrides; None means the strategy default."""
    limit: Optional[int] = None
    vector_weight: Optional[float] = None
    text_weight: Optional[float] = None
    similarity_threshold: Optional[float] = None
    vector_limit: Optional[int] = None
    metadata_limit: Optional[int] = None


def _opt(value, default):
    return default if value is None else value


_embedder = None


def get_embedder():
    """Shared query embedder (built on first use; needs OPENAI_API_KEY)."""
    global _embedder
    if _embedder is None:
        from codechat.embeddings.client import EmbeddingClient
        _embedder = EmbeddingClient()
    return _embedder


# =============================================================================
# HELPERS
# =============================================================================

def to_retrieved_chunk(row: CodeChunk, score: float = 1.0) -> RetrievedChunk:
    return RetrievedChunk(
        id=row.id,
        file_path=row.file_path,
        start_line=row.start_line,
        end_line=row.end_line,
        content=row.content,
        language=row.language,
        chunk_type=row.chunk_type,
        symbol_name=row.symbol_name,
        score=score,
        context=row.context,
        dependencies=list(row.dependencies or []),
    )


def _repository_chunks(db: Session, repository_id: str) -> List[CodeChunk]:
    return db.query(CodeChunk).filter(CodeChunk.repository_id == repository_id).all()


def detect_query_type(query: str) -> str:
    """Classify query shape: identifier, code, or natural language."""
    trimmed = (query or "").strip()
    if _IDENTIFIER.match(trimmed):
        return QUERY_IDENTIFIER
    if any(pattern.search(trimmed) for pattern in _CODE_PATTERNS):
        return QUERY_CODE
    return QUERY_NATURAL_LANGUAGE


# =============================================================================
# SEARCH STRATEGIES
# =============================================================================

async def vector_search(
    db: Session,
    query: str,
    repository_id: str,
    options: Optional[SearchOptions] = None,
    embedder=None,
) -> List[RetrievedChunk]:
    options = options or SearchOptions()
    rows = _repository_chunks(db, repository_id)
    if not rows:
        return []

    query_vector = await (embedder or get_embedder()).embed_query(query)
    candidates = [(to_retrieved_chunk(row), row.vector) for row in rows if row.vector]
    return rank_by_vector(
        query_vector,
        candidates,
        threshold=_opt(options.similarity_threshold, DEFAULT_SIMILARITY_THRESHOLD),
        limit=_opt(options.limit, DEFAULT_MATCH_COUNT),
    )


def text_search(
    db: Session,
    query: str,
    repository_id: str,
    options: Optional[SearchOptions] = None,
) -> List[RetrievedChunk]:
    options = options or SearchOptions()
    if not sanitize_text_query(query):
        return []
    rows = _repository_chunks(db, repository_id)
    return rank_by_text(
        query,
        (to_retrieved_chunk(row) for row in rows),
        limit=_opt(options.limit, DEFAULT_MATCH_COUNT),
    )


async def retrieve_relevant_chunks(
    db: Session,
    query: str,
    repository_id: str,
    options: Optional[SearchOptions] = None,
    embedder=None,
) -> List[RetrievedChunk]:
    """Hybrid search: weighted vector + text scores, sorted non-increasing."""
    options = options or SearchOptions()
    rows = _repository_chunks(db, repository_id)
    if not rows:
        return []

    query_vector = await (embedder or get_embedder()).embed_query(query)
    chunks: Dict[str, RetrievedChunk] = {row.id: to_retrieved_chunk(row) for row in rows}

    vector_ranked = rank_by_vector(
        query_vector,
        [(chunks[row.id], row.vector) for row in rows if row.vector],
    )
    text_ranked = rank_by_text(query, chunks.values())

    combined = combine_scores(
        {c.id: c.score for c in vector_ranked},
        {c.id: c.score for c in text_ranked},
        _opt(options.vector_weight, DEFAULT_VECTOR_WEIGHT),
        _opt(options.text_weight, DEFAULT_TEXT_WEIGHT),
    )

    results = []
    for chunk_id, score in combined.items():
        if score <= 0:
            continue
        chunk = chunks[chunk_id]
        chunk.score = score
        results.append(chunk)

    limit = _opt(options.limit, DEFAULT_MATCH_COUNT)
    return sort_scored(results)[:limit]


async def smart_search(
    db: Session,
    query: str,
    repository_id: str,
    options: Optional[SearchOptions] = None,
    embedder=None,
) -> List[RetrievedChunk]:
    """Hybrid search with weights chosen from the query shape."""
    options = options or SearchOptions()
    query_type = detect_query_type(query)

    if query_type == QUERY_NATURAL_LANGUAGE:
        weighted = options
    else:
        vector_weight, text_weight = QUERY_TYPE_WEIGHTS[query_type]
        weighted = SearchOptions(
            limit=options.limit,
            vector_weight=vector_weight,
            text_weight=text_weight,
            similarity_threshold=options.similarity_threshold,
            vector_limit=options.vector_limit,
            metadata_limit=options.metadata_limit,
        )

    logger.debug(f"[retriever] smart_search query_type={query_type}")
    return await retrieve_relevant_chunks(db, query, repository_id, weighted, embedder)


# =============================================================================
# DIRECT LOOKUPS
# =============================================================================

def search_by_file(db: Session, file_path: str, repository_id: str) -> List[RetrievedChunk]:
    rows = (
        db.query(CodeChunk)
        .filter(CodeChunk.repository_id == repository_id, CodeChunk.file_path == file_path)
        .order_by(CodeChunk.start_line.asc())
        .all()
    )
    return [to_retrieved_chunk(row) for row in rows]


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def search_by_symbol(db: Session, symbol_name: str, repository_id: str) -> List[RetrievedChunk]:
    """Case-insensitive substring match on symbol names."""
    if not symbol_name:
        return []
    rows = (
        db.query(CodeChunk)
        .filter(
            CodeChunk.repository_id == repository_id,
            CodeChunk.symbol_name.ilike(f"%{_escape_like(symbol_name)}%", escape="\\"),
        )
        .order_by(CodeChunk.file_path.asc(), CodeChunk.start_line.asc())
        .all()
    )
    return [to_retrieved_chunk(row) for row in rows]


def search_by_type(
    db: Session,
    chunk_type: str,
    repository_id: str,
    limit: int = SEARCH_BY_TYPE_LIMIT,
) -> List[RetrievedChunk]:
    rows = (
        db.query(CodeChunk)
        .filter(CodeChunk.repository_id == repository_id, CodeChunk.chunk_type == chunk_type)
        .order_by(CodeChunk.file_path.asc(), CodeChunk.start_line.asc())
        .limit(limit)
        .all()
    )
    return [to_retrieved_chunk(row) for row in rows]


def get_repository_context(db: Session, repository_id: str) -> Dict:
    """Chunk/file counts with language and chunk-type histograms."""
    return get_repository_index_stats(db, repository_id)

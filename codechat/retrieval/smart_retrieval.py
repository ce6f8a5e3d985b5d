"""
Smart retrieval: pick a strategy from the query.

Strategy order:
1. forced strategy (if given)
2. metadata - "list all X" queries with a confidently detected category;
   returns every chunk whose path/type/symbol matches the category
   (exhaustive, up to metadata_limit), ordered by path and line
3. symbol   - bare identifiers; falls back to hybrid when nothing matches
4. hybrid   - smart_search (vector + text, weights by query shape)

After the strategy runs, similarity results (not metadata listings) are
reranked when a reranker is configured, then capped at options.limit.
Query expansion, when requested, widens the text searched by hybrid,
vector and text strategies.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from codechat.config import (
    RERANK_MIN_CHUNKS,
    RERANK_TOP_K,
    RERANKING_ENABLED,
    SMART_METADATA_LIMIT,
    SMART_MIN_CONFIDENCE,
    SMART_VECTOR_LIMIT,
)
from codechat.errors import ProviderError
from codechat.models import CodeChunk
from codechat.retrieval.query_expander import get_query_expander, to_search_query
from codechat.retrieval.reranker import get_reranker
from codechat.retrieval.retriever import (
    QUERY_IDENTIFIER,
    SearchOptions,
    detect_query_type,
    search_by_symbol,
    smart_search,
    text_search,
    to_retrieved_chunk,
    vector_search,
)
from codechat.retrieval.scoring import RetrievedChunk

logger = logging.getLogger(__name__)


class QueryType(str, Enum):
    API_ROUTES = "API_ROUTES"
    COMPONENTS = "COMPONENTS"
    HOOKS = "HOOKS"
    SCHEMA = "SCHEMA"
    TESTS = "TESTS"
    TYPES = "TYPES"
    CONFIG = "CONFIG"
    EMBEDDINGS = "EMBEDDINGS"
    INDEXING = "INDEXING"
    GENERIC = "GENERIC"


class Strategy(str, Enum):
    METADATA = "metadata"
    SYMBOL = "symbol"
    HYBRID = "hybrid"
    VECTOR = "vector"
    TEXT = "text"


# Checked in order; the first category with the strictly highest score wins
QUERY_KEYWORDS: Dict[QueryType, Sequence[str]] = {
    QueryType.API_ROUTES: ("endpoint", "endpoints", "api", "route", "routes", "rest", "http"),
    QueryType.COMPONENTS: ("component", "components", "ui", "widget", "widgets"),
    QueryType.HOOKS: ("hook", "hooks", "usehook", "custom hook"),
    QueryType.SCHEMA: ("schema", "database", "db", "prisma", "model", "models", "table", "tables"),
    QueryType.TESTS: ("test", "tests", "testing", "spec", "specs", "unit test", "integration test"),
    QueryType.TYPES: ("type", "types", "interface", "interfaces", "typedef", "typing"),
    QueryType.CONFIG: (
        "config", "configuration", "settings", "env", "environment",
        "stack", "tech stack", "technology", "technologies", "framework", "frameworks",
        "dependencies", "package", "packages", "library", "libraries",
        "font", "fonts", "typography", "color", "colors", "theme",
        "tailwind", "css", "style", "styles", "design", "layout",
    ),
    QueryType.EMBEDDINGS: (
        "embedding", "embeddings", "vector", "vectors", "vectorization",
        "pgvector", "pinecone", "rag", "retrieval",
        "similarity", "semantic search", "chunk", "chunks",
    ),
    QueryType.INDEXING: (
        "index", "indexing", "reindex", "reindexing", "re-index",
        "pipeline", "parsing", "chunking", "contextual",
        "context generation", "webhook", "trigger", "github webhook",
    ),
}

LIST_INDICATORS = ("all", "list", "every", "available", "what are", "show me", "give me", "what is the")

# Keyword score at which confidence saturates
CONFIDENCE_SCALE = 20


@dataclass
class QueryClassification:
    type: QueryType
    is_list_query: bool
    confidence: float


@dataclass
class MetadataFilter:
    path_contains: List[str] = field(default_factory=list)
    chunk_types: List[str] = field(default_factory=list)
    symbol_prefix: Optional[str] = None


@dataclass
class SmartRetrievalResult:
    chunks: List[RetrievedChunk]
    strategy: str
    query_type: str
    is_list_query: bool
    total_found: int
    reranked: bool = False
    chunks_before_rerank: Optional[int] = None
    # Text actually searched (the query plus expansion terms when expanded)
    search_query: Optional[str] = None


# =============================================================================
# CLASSIFICATION
# =============================================================================

def classify_query(query: str) -> QueryClassification:
    """Detect the query category, whether it asks for a list, and how confident we are."""
    normalized = (query or "").lower().strip()
    is_list_query = any(indicator in normalized for indicator in LIST_INDICATORS)

    best_type = QueryType.GENERIC
    best_score = 0
    for query_type, keywords in QUERY_KEYWORDS.items():
        # Longer keywords are more specific and weigh more
        score = sum(len(keyword) for keyword in keywords if keyword in normalized)
        if score > best_score:
            best_type, best_score = query_type, score

    return QueryClassification(
        type=best_type,
        is_list_query=is_list_query,
        confidence=min(best_score / CONFIDENCE_SCALE, 1.0),
    )


_METADATA_FILTERS: Dict[QueryType, MetadataFilter] = {
    QueryType.API_ROUTES: MetadataFilter(path_contains=["route.ts", "route.tsx", "/api/"]),
    QueryType.COMPONENTS: MetadataFilter(
        path_contains=["components", ".tsx"],
        chunk_types=["function", "class"],
    ),
    QueryType.HOOKS: MetadataFilter(path_contains=["hooks", "use"], symbol_prefix="use"),
    QueryType.SCHEMA: MetadataFilter(path_contains=["schema.prisma", "prisma", "models", "entities"]),
    QueryType.TESTS: MetadataFilter(path_contains=[".test.", ".spec.", "__tests__", "tests/", "test_"]),
    QueryType.TYPES: MetadataFilter(path_contains=["types", ".d.ts"], chunk_types=["interface", "type"]),
    QueryType.CONFIG: MetadataFilter(path_contains=[
        "config", "tsconfig", "package.json", ".env", "Dockerfile", "docker-compose",
        ".nvmrc", ".node-version", "layout.tsx", "globals.css", "tailwind", "theme",
        "pyproject.toml", "requirements",
    ]),
    QueryType.EMBEDDINGS: MetadataFilter(path_contains=[
        "embeddings", "vector", "rag", "lib/db", "reranker", "retrieval",
    ]),
    QueryType.INDEXING: MetadataFilter(path_contains=[
        "indexing", "pipeline", "parsing", "chunker", "contextual", "ast-",
    ]),
}


def get_metadata_filter(query_type) -> Optional[MetadataFilter]:
    """Path/type/symbol filter for a category; None for GENERIC."""
    return _METADATA_FILTERS.get(QueryType(query_type))


# =============================================================================
# STRATEGIES
# =============================================================================

def retrieve_by_metadata(
    db: Session,
    repository_id: str,
    query_type,
    limit: int = SMART_METADATA_LIMIT,
) -> List[RetrievedChunk]:
    """Every chunk matching the category filter, ordered by path and line, score 1.0."""
    metadata = get_metadata_filter(query_type)
    if metadata is None:
        return []

    query = db.query(CodeChunk).filter(CodeChunk.repository_id == repository_id)
    if metadata.path_contains:
        query = query.filter(or_(*[
            CodeChunk.file_path.contains(fragment, autoescape=True)
            for fragment in metadata.path_contains
        ]))
    if metadata.chunk_types:
        query = query.filter(CodeChunk.chunk_type.in_(metadata.chunk_types))
    if metadata.symbol_prefix:
        query = query.filter(CodeChunk.symbol_name.startswith(metadata.symbol_prefix, autoescape=True))

    rows = query.order_by(CodeChunk.file_path.asc(), CodeChunk.start_line.asc()).limit(limit).all()
    return [to_retrieved_chunk(row) for row in rows]


def _choose_strategy(query: str, classification: QueryClassification, min_confidence: float) -> Strategy:
    if (
        classification.type != QueryType.GENERIC
        and classification.is_list_query
        and classification.confidence >= min_confidence
    ):
        return Strategy.METADATA
    if detect_query_type(query) == QUERY_IDENTIFIER:
        return Strategy.SYMBOL
    return Strategy.HYBRID


async def _rerank(reranker, query: str, chunks: List[RetrievedChunk], top_k: int) -> Optional[List[RetrievedChunk]]:
    """Reranked chunks, or None when reranking failed and retrieval order stands."""
    try:
        return await reranker.rerank(query, chunks, top_k=top_k)
    except ProviderError as e:
        logger.warning(f"[smart_retrieval] Reranking failed, keeping retrieval order: {e}")
        return None


async def smart_retrieve(
    db: Session,
    query: str,
    repository_id: str,
    options: Optional[SearchOptions] = None,
    force_strategy: Optional[str] = None,
    min_confidence: float = SMART_MIN_CONFIDENCE,
    embedder=None,
    rerank: Optional[bool] = None,
    reranker=None,
    expand_query: bool = False,
    expander=None,
) -> SmartRetrievalResult:
    """
    Classify the query, pick a strategy and run it.

    options.limit caps the returned chunks for every strategy; total_found
    counts what the strategy matched before that cap. Reranking (default
    RERANKING_ENABLED) and query expansion only apply to similarity
    strategies, so metadata listings stay exhaustive and in path order.
    """
    options = options or SearchOptions()
    classification = classify_query(query)
    strategy = Strategy(force_strategy) if force_strategy else _choose_strategy(query, classification, min_confidence)

    vector_limit = options.vector_limit or SMART_VECTOR_LIMIT
    hybrid_options = SearchOptions(
        limit=vector_limit,
        vector_weight=options.vector_weight,
        text_weight=options.text_weight,
        similarity_threshold=options.similarity_threshold,
    )

    search_query = query
    if expand_query and strategy in (Strategy.HYBRID, Strategy.VECTOR, Strategy.TEXT):
        expanded = await (expander or get_query_expander()).expand(query)
        search_query = to_search_query(query, expanded)

    if strategy == Strategy.METADATA:
        chunks = retrieve_by_metadata(
            db, repository_id, classification.type,
            options.metadata_limit or SMART_METADATA_LIMIT,
        )
    elif strategy == Strategy.SYMBOL:
        chunks = search_by_symbol(db, query.strip(), repository_id)
        if not chunks:
            logger.debug(f"[smart_retrieval] No symbol matches for {query!r}, falling back to hybrid")
            strategy = Strategy.HYBRID
            chunks = await smart_search(db, query, repository_id, hybrid_options, embedder)
    elif strategy == Strategy.VECTOR:
        chunks = await vector_search(db, search_query, repository_id, hybrid_options, embedder)
    elif strategy == Strategy.TEXT:
        chunks = text_search(db, search_query, repository_id, hybrid_options)
    else:
        chunks = await smart_search(db, search_query, repository_id, hybrid_options, embedder)

    total_found = len(chunks)
    limit = options.limit if options.limit and options.limit > 0 else None

    reranked = False
    chunks_before_rerank = None
    use_rerank = RERANKING_ENABLED if rerank is None else rerank
    if use_rerank and strategy != Strategy.METADATA and len(chunks) >= RERANK_MIN_CHUNKS:
        reranker = reranker or get_reranker()
        if reranker is not None:
            result = await _rerank(reranker, query, chunks, limit or RERANK_TOP_K)
            if result is not None:
                chunks_before_rerank = len(chunks)
                chunks = result
                reranked = True

    if limit is not None:
        chunks = chunks[:limit]

    logger.info(
        f"[smart_retrieval] strategy={strategy.value} type={classification.type.value} "
        f"list={classification.is_list_query} found={total_found} returned={len(chunks)}"
        + (f" reranked={chunks_before_rerank}->{len(chunks)}" if reranked else "")
    )
    return SmartRetrievalResult(
        chunks=chunks,
        strategy=strategy.value,
        query_type=classification.type.value,
        is_list_query=classification.is_list_query,
        total_found=total_found,
        reranked=reranked,
        chunks_before_rerank=chunks_before_rerank,
        search_query=search_query,
    )

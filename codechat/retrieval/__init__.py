"""
Retrieval: scoring, search strategies, smart retrieval, context building
and citations.
"""

from .scoring import RetrievedChunk
from .retriever import (
    SearchOptions,
    vector_search,
    text_search,
    retrieve_relevant_chunks,
    smart_search,
    search_by_file,
    search_by_symbol,
    search_by_type,
    get_repository_context,
    detect_query_type,
)
from .smart_retrieval import (
    QueryType,
    QueryClassification,
    SmartRetrievalResult,
    classify_query,
    get_metadata_filter,
    smart_retrieve,
)
from .context_builder import ContextResult, build_code_context, build_file_context, build_minimal_context
from .reranker import RerankedChunk, VoyageReranker, get_reranker
from .query_expander import ExpandedQuery, QueryExpander, get_query_expander
from .citations import (
    Citation,
    ParsedCitation,
    format_citation,
    extract_citations,
    parse_citations,
    split_content_by_citations,
)

__all__ = [
    "RetrievedChunk",
    "SearchOptions",
    "vector_search",
    "text_search",
    "retrieve_relevant_chunks",
    "smart_search",
    "search_by_file",
    "search_by_symbol",
    "search_by_type",
    "get_repository_context",
    "detect_query_type",
    "QueryType",
    "QueryClassification",
    "SmartRetrievalResult",
    "classify_query",
    "get_metadata_filter",
    "smart_retrieve",
    "ContextResult",
    "build_code_context",
    "build_minimal_context",
    "build_file_context",
    "RerankedChunk",
    "VoyageReranker",
    "get_reranker",
    "ExpandedQuery",
    "QueryExpander",
    "get_query_expander",
    "Citation",
    "ParsedCitation",
    "format_citation",
    "extract_citations",
    "parse_citations",
    "split_content_by_citations",
]

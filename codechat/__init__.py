"""
codechat - code indexing and retrieval for connected repositories.

Indexing: fetch a repository, chunk its files, embed the chunks and store
them, tracked by a durable job with a validated state machine.
Retrieval: vector, text, hybrid and smart search over the stored chunks,
then a token-budgeted markdown context with citations.
"""

from codechat.indexing.job_manager import (
    cancel_job,
    get_job_by_repository,
    get_repository_index_stats,
    is_repository_indexed,
    start_indexing_job,
)
from codechat.retrieval.citations import extract_citations
from codechat.retrieval.context_builder import build_code_context
from codechat.retrieval.smart_retrieval import smart_retrieve

__version__ = "0.1.0"

__all__ = [
    "start_indexing_job",
    "cancel_job",
    "get_job_by_repository",
    "is_repository_indexed",
    "get_repository_index_stats",
    "smart_retrieve",
    "build_code_context",
    "extract_citations",
]

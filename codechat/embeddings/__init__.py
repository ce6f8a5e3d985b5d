"""
Embedding generation for code chunks and search queries.
"""

from .client import EmbeddingClient, map_openai_error

__all__ = ["EmbeddingClient", "map_openai_error"]

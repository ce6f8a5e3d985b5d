# FILE: codechat/errors.py
"""
Error taxonomy for indexing and retrieval.

Every failure the engine raises maps to one of these classes:

- TransientProviderError: rate limited / temporarily unavailable upstream, retried once
- AuthError: revoked or invalid credentials, fatal to the current job
- ContentError: one bad file (too large, undecodable), skipped
- IndexingCancelled: cooperative cancellation, a normal terminal path
- ConfigurationError: missing credentials/config, raised before a job exists
"""
from typing import Optional


class CodeChatError(Exception):
    """Base class for codechat errors."""


class ConfigurationError(CodeChatError):
    """Required configuration (API keys, tokens) is missing or invalid."""


class ContentError(CodeChatError):
    """A single file cannot be indexed (too large, binary, bad encoding)."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class InvalidTransitionError(CodeChatError):
    """Rejected IndexingJob status change."""


class JobNotFoundError(CodeChatError):
    """No IndexingJob with the given id."""


class IndexingCancelled(CodeChatError):
    """Raised inside the pipeline when the job was cancelled."""


class ProviderError(CodeChatError):
    """An external provider (GitHub, embeddings, LLM) failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Rate limited or momentarily unavailable; eligible for one retry."""


class AuthError(ProviderError):
    """Credentials revoked or invalid. Never retried."""


class RepositoryFetchError(ProviderError):
    """The repository host could not serve the tree or a file."""


class EmbeddingProviderError(ProviderError):
    """The embedding provider failed."""


class EmbeddingTransientError(EmbeddingProviderError, TransientProviderError):
    pass


class EmbeddingAuthError(EmbeddingProviderError, AuthError):
    pass

"""
codechat configuration.

All tunables in one place for easy adjustment.

CRITICAL DESIGN DECISIONS:
1. Source of Truth: the code_chunks table is the only index; job state lives in indexing_jobs
2. Env-driven: every secret and deployment knob is read from the environment (.env via python-dotenv)
3. Fail Fast: missing provider credentials raise ConfigurationError before a job row exists
4. Bounded: file counts, file sizes and repository line estimates are capped before parsing
"""

import os
from typing import Optional

from codechat.errors import ConfigurationError


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# ============================================================================
# LOGGING
# ============================================================================

LOG_LEVEL: str = os.getenv("CODECHAT_LOG_LEVEL", "INFO").upper()
LOG_FORMAT: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# ============================================================================
# CHUNKING STRATEGY
# ============================================================================

# Fixed-window fallback (characters, roughly 500 tokens)
MAX_CHUNK_CHARS: int = 2000
# Declarations shorter than this are not worth a chunk of their own
MIN_CHUNK_CHARS: int = 50

CHARS_PER_TOKEN: int = 4

# ============================================================================
# FILE SELECTION
# ============================================================================

# Repositories estimated above this many lines only index priority folders
LARGE_REPO_THRESHOLD_LINES: int = 50000
AVG_CHARS_PER_LINE: int = 40

MAX_FILES_TO_FETCH: int = int(os.getenv("CODECHAT_MAX_FILES", "5000"))
MAX_FILE_SIZE_BYTES: int = int(os.getenv("CODECHAT_MAX_FILE_BYTES", str(500 * 1024)))

# ============================================================================
# GITHUB
# ============================================================================

GITHUB_API_URL: str = os.getenv("CODECHAT_GITHUB_API_URL", "https://api.github.com")
GITHUB_TOKEN: Optional[str] = os.getenv("GITHUB_TOKEN") or None
HTTP_TIMEOUT_S: float = float(os.getenv("CODECHAT_HTTP_TIMEOUT_S") or "30")

# Pause fetching when fewer requests than this remain in the rate-limit window
GITHUB_RATE_LIMIT_THRESHOLD: int = 100
GITHUB_RATE_LIMIT_MAX_WAIT_S: float = 60.0

# ============================================================================
# EMBEDDINGS
# ============================================================================

EMBEDDING_MODEL: str = os.getenv("CODECHAT_EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_BATCH_SIZE: int = int(os.getenv("CODECHAT_EMBEDDING_BATCH_SIZE", "50"))
EMBEDDING_BATCH_DELAY_S: float = float(os.getenv("CODECHAT_EMBEDDING_BATCH_DELAY", "0.1"))

# Model limit is ~8191 tokens; 1 token ~ 4 chars
EMBEDDING_MAX_INPUT_CHARS: int = 30000

# One bounded retry for transient provider errors
PROVIDER_MAX_RETRIES: int = 1
RETRY_BACKOFF_S: float = float(os.getenv("CODECHAT_RETRY_BACKOFF_SECONDS", "1.0"))

# ============================================================================
# CONTEXTUAL RETRIEVAL
# ============================================================================

CONTEXTUAL_RETRIEVAL_ENABLED: bool = _env_bool("CODECHAT_CONTEXTUAL_RETRIEVAL", False)
CONTEXT_MODEL: str = os.getenv("CODECHAT_CONTEXT_MODEL", "gpt-4.1-mini")
CONTEXT_CHUNKS_PER_REQUEST: int = 15
CONTEXT_MAX_OUTPUT_TOKENS: int = 2000

# ============================================================================
# INDEXING JOBS
# ============================================================================

STALE_JOB_MINUTES: int = int(os.getenv("CODECHAT_STALE_JOB_MINUTES", "30"))
# Purely a UX cue for polling clients; indexing has no functional timeout
LONG_RUNNING_THRESHOLD_S: int = 120

# ============================================================================
# RETRIEVAL
# ============================================================================

DEFAULT_MATCH_COUNT: int = 15
DEFAULT_VECTOR_WEIGHT: float = 0.7
DEFAULT_TEXT_WEIGHT: float = 0.3
DEFAULT_SIMILARITY_THRESHOLD: float = 0.5

SMART_VECTOR_LIMIT: int = 30
SMART_METADATA_LIMIT: int = 100
SMART_MIN_CONFIDENCE: float = 0.3

SEARCH_BY_TYPE_LIMIT: int = 50

# ============================================================================
# RERANKING / QUERY EXPANSION
# ============================================================================

# Needs VOYAGE_API_KEY; without it retrieval order is kept
RERANKING_ENABLED: bool = _env_bool("CODECHAT_RERANKING", True)
VOYAGE_RERANK_URL: str = os.getenv("CODECHAT_RERANK_URL", "https://api.voyageai.com/v1/rerank")
RERANK_MODEL: str = os.getenv("CODECHAT_RERANK_MODEL", "rerank-2.5")
RERANK_TOP_K: int = 15
RERANK_MIN_SCORE: float = 0.0
# Three candidates or fewer are kept in retrieval order
RERANK_MIN_CHUNKS: int = 4

QUERY_EXPANSION_MODEL: str = os.getenv("CODECHAT_QUERY_EXPANSION_MODEL", "gpt-4.1-mini")
QUERY_EXPANSION_MAX_OUTPUT_TOKENS: int = 500

# ============================================================================
# CONTEXT BUDGET
# ============================================================================

DEFAULT_CONTEXT_MAX_TOKENS: int = 10000
CONTEXT_FOOTER_RESERVE_CHARS: int = 200


# ============================================================================
# VALIDATION
# ============================================================================

def require_openai_key() -> str:
    """Return the OpenAI key or raise ConfigurationError."""
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise ConfigurationError("OPENAI_API_KEY is not set; cannot generate embeddings.")
    return api_key


def require_voyage_key() -> str:
    """Return the Voyage AI key (reranking) or raise ConfigurationError."""
    api_key = os.getenv("VOYAGE_API_KEY")
    if not api_key:
        raise ConfigurationError("VOYAGE_API_KEY is not set; cannot rerank results.")
    return api_key


def require_github_token(token: Optional[str] = None) -> str:
    """Resolve the GitHub token (explicit > GITHUB_TOKEN env) or raise ConfigurationError."""
    resolved = token or os.getenv("GITHUB_TOKEN")
    if not resolved:
        raise ConfigurationError("No GitHub access token provided and GITHUB_TOKEN is not set.")
    return resolved

"""
FastAPI endpoints for repository indexing and code search.

POST   /repos                      - Register a repository
POST   /repos/{id}/index           - Start indexing (returns the job id immediately)
GET    /repos/{id}/index/status    - Poll job status
DELETE /repos/{id}/index           - Cancel the active job
DELETE /repos/{id}/chunks          - Delete every chunk of the repository
POST   /repos/{id}/search          - Smart retrieval + context + citations
GET    /repos/{id}/files            - Every chunk of one file as markdown context
GET    /repos/{id}/context         - Chunk/file counts and histograms
"""

import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from codechat.config import DEFAULT_CONTEXT_MAX_TOKENS, require_github_token, require_openai_key
from codechat.db import get_db
from codechat.errors import AuthError, ConfigurationError, ProviderError
from codechat.indexing import job_manager
from codechat.indexing.pipeline import PipelineParams
from codechat.indexing.states import JobStatus
from codechat.indexing.worker import get_worker
from codechat.models import Repository, get_repository, get_repository_by_name
from codechat.retrieval.citations import extract_citations
from codechat.parsing.chunker import estimate_tokens
from codechat.retrieval.context_builder import build_code_context, build_file_context, build_minimal_context
from codechat.retrieval.retriever import SearchOptions, get_repository_context, search_by_file
from codechat.retrieval.smart_retrieval import smart_retrieve

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/repos", tags=["repos"])


class RepositoryCreate(BaseModel):
    owner: str
    name: str
    default_branch: Optional[str] = None


class RepositoryOut(BaseModel):
    id: str
    owner: str
    name: str
    default_branch: Optional[str] = None
    last_synced_sha: Optional[str] = None


class IndexRequest(BaseModel):
    branch: Optional[str] = None
    access_token: Optional[str] = None
    force: bool = False


class IndexResponse(BaseModel):
    job_id: str
    is_new: bool
    status: str


class SearchRequest(BaseModel):
    query: str
    limit: Optional[int] = None
    max_tokens: int = DEFAULT_CONTEXT_MAX_TOKENS
    strategy: Optional[Literal["metadata", "symbol", "hybrid", "vector", "text"]] = None
    include_scores: bool = False
    # None uses the server default (CODECHAT_RERANKING)
    rerank: Optional[bool] = None
    expand_query: bool = False
    # File list with symbol names instead of code blocks
    minimal: bool = False


class CitationOut(BaseModel):
    file: str
    start_line: int
    end_line: int
    symbol: Optional[str] = None


class SearchResponse(BaseModel):
    context: str
    citations: List[CitationOut]
    strategy: str
    query_type: str
    is_list_query: bool
    total_found: int
    chunks_included: int
    truncated: bool
    estimated_tokens: int
    reranked: bool = False


# =============================================================================
# HELPERS
# =============================================================================

def _require_repository(db: Session, repository_id: str) -> Repository:
    repo = get_repository(db, repository_id)
    if repo is None:
        raise HTTPException(status_code=404, detail=f"Repository not found: {repository_id}")
    return repo


def _provider_http_error(error: ProviderError) -> HTTPException:
    if isinstance(error, AuthError):
        return HTTPException(status_code=401, detail=str(error))
    return HTTPException(status_code=502, detail=str(error))


def _repository_out(repo: Repository) -> RepositoryOut:
    return RepositoryOut(
        id=repo.id,
        owner=repo.owner,
        name=repo.name,
        default_branch=repo.default_branch,
        last_synced_sha=repo.last_synced_sha,
    )


async def _latest_upstream_sha(repo: Repository, branch: Optional[str]) -> Optional[str]:
    from codechat.github.fetcher import GitHubFetcher

    try:
        async with GitHubFetcher() as fetcher:
            return await fetcher.get_latest_commit_sha(repo.owner, repo.name, branch)
    except (ConfigurationError, ProviderError) as e:
        logger.warning(f"[router] Upstream check failed for {repo.full_name}: {e}")
        return None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=RepositoryOut)
def register_repository(request: RepositoryCreate, db: Session = Depends(get_db)):
    """Register a repository (idempotent on owner/name)."""
    existing = get_repository_by_name(db, request.owner, request.name)
    if existing is not None:
        return _repository_out(existing)

    repo = Repository(owner=request.owner, name=request.name, default_branch=request.default_branch)
    db.add(repo)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent registration won the race
        db.rollback()
        return _repository_out(get_repository_by_name(db, request.owner, request.name))
    db.refresh(repo)
    logger.info(f"[router] Registered repository {repo.full_name} ({repo.id})")
    return _repository_out(repo)


@router.post("/{repository_id}/index", response_model=IndexResponse)
async def start_indexing(repository_id: str, request: IndexRequest, db: Session = Depends(get_db)):
    """
    Start indexing a repository.

    Credentials are checked before any job is created. Returns the active
    job instead of starting a second one.
    """
    repo = _require_repository(db, repository_id)

    try:
        require_openai_key()
        access_token = require_github_token(request.access_token)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if request.force and job_manager.get_active_job(db, repository_id) is None:
        job_manager.delete_repository_chunks(db, repository_id)

    result = job_manager.start_indexing_job(db, repository_id)
    if result.is_new:
        get_worker().submit(PipelineParams(
            job_id=result.job_id,
            repository_id=repository_id,
            owner=repo.owner,
            repo=repo.name,
            branch=request.branch or repo.default_branch,
            access_token=access_token,
        ))
        status = JobStatus.PENDING.value
    else:
        status = result.existing_status

    return IndexResponse(job_id=result.job_id, is_new=result.is_new, status=status)


@router.get("/{repository_id}/index/status")
async def get_index_status(repository_id: str, check_upstream: bool = False, db: Session = Depends(get_db)):
    """Job status for polling; optionally compares against the upstream head."""
    repo = _require_repository(db, repository_id)
    latest_sha = await _latest_upstream_sha(repo, repo.default_branch) if check_upstream else None
    return job_manager.build_job_status(db, repository_id, latest_sha)


@router.delete("/{repository_id}/index")
async def cancel_indexing(repository_id: str, db: Session = Depends(get_db)):
    """Cancel the active job. The running pipeline stops at its next check."""
    _require_repository(db, repository_id)
    job = job_manager.get_active_job(db, repository_id)
    if job is None:
        return {"cancelled": False, "message": "No active indexing job"}

    job = job_manager.cancel_job(db, job.id)
    get_worker().cancel(job.id)
    return {"cancelled": True, "jobId": job.id, "status": job.status}


@router.delete("/{repository_id}/chunks")
def delete_chunks(repository_id: str, db: Session = Depends(get_db)):
    _require_repository(db, repository_id)
    deleted = job_manager.delete_repository_chunks(db, repository_id)
    return {"deleted": deleted}


@router.post("/{repository_id}/search", response_model=SearchResponse)
async def search_repository(repository_id: str, request: SearchRequest, db: Session = Depends(get_db)):
    """Smart retrieval, then a budgeted context with citations for the included chunks."""
    _require_repository(db, repository_id)
    if not request.query.strip():
        raise HTTPException(status_code=400, detail="Query must not be empty")

    try:
        retrieval = await smart_retrieve(
            db,
            request.query,
            repository_id,
            options=SearchOptions(limit=request.limit),
            force_strategy=request.strategy,
            rerank=request.rerank,
            expand_query=request.expand_query,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderError as e:
        logger.error(f"[router] Search failed for {repository_id}: {e}")
        raise _provider_http_error(e)

    if request.minimal:
        context = build_minimal_context(retrieval.chunks)
        included, truncated = retrieval.chunks, False
    else:
        built = build_code_context(
            retrieval.chunks,
            max_tokens=request.max_tokens,
            include_scores=request.include_scores,
        )
        context, included, truncated = built.context, built.included, built.truncated

    citations = [
        CitationOut(file=c.file, start_line=c.start_line, end_line=c.end_line, symbol=c.symbol)
        for c in extract_citations(included)
    ]

    return SearchResponse(
        context=context,
        citations=citations,
        strategy=retrieval.strategy,
        query_type=retrieval.query_type,
        is_list_query=retrieval.is_list_query,
        total_found=retrieval.total_found,
        chunks_included=len(included),
        truncated=truncated,
        estimated_tokens=estimate_tokens(context),
        reranked=retrieval.reranked,
    )


@router.get("/{repository_id}/files")
def file_context(repository_id: str, path: str, db: Session = Depends(get_db)):
    """Every stored chunk of one file, in line order."""
    _require_repository(db, repository_id)
    chunks = search_by_file(db, path, repository_id)
    if not chunks:
        raise HTTPException(status_code=404, detail=f"No indexed content for {path}")
    return {"path": path, "chunks": len(chunks), "context": build_file_context(chunks, path)}


@router.get("/{repository_id}/context")
def repository_context(repository_id: str, db: Session = Depends(get_db)):
    _require_repository(db, repository_id)
    return get_repository_context(db, repository_id)

"""
Indexing pipeline.

Runs one IndexingJob through its phases:
1. fetching   - tree, .gitignore, file selection
2. parsing    - fetch each file, skip unchanged hashes, chunk the rest
3. (optional) contextual descriptions
4. embedding  - embed in batches, persist each batch as it completes
5. finalizing - drop chunks of files no longer in the tree, complete the job

Failure handling:
- per-file ContentError / transient / not-found: file skipped, logged
- per-batch embedding failure: batch skipped, logged
- AuthError anywhere: job failed
- every file or every batch failed: job failed
- cancellation (job row or in-process token): job stays cancelled,
  chunks persisted so far are kept
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from codechat.config import CONTEXTUAL_RETRIEVAL_ENABLED, EMBEDDING_BATCH_DELAY_S, EMBEDDING_BATCH_SIZE
from codechat.errors import (
    AuthError,
    ContentError,
    EmbeddingProviderError,
    IndexingCancelled,
    ProviderError,
    RepositoryFetchError,
    TransientProviderError,
)
from codechat.indexing import job_manager
from codechat.indexing.states import JobPhase, JobStatus, calculate_progress
from codechat.models import (
    CodeChunk,
    IndexingJob,
    count_chunks,
    delete_chunks_for_paths,
    get_file_hashes,
)
from codechat.parsing.chunker import ChunkDraft, calculate_file_hash, chunk_file
from codechat.parsing.file_filter import filter_files

logger = logging.getLogger(__name__)

TOTAL_FETCH_FAILURE = "Could not fetch any file from the repository (total fetch failure)"
TOTAL_EMBEDDING_FAILURE = "Embedding failed for every batch"


@dataclass
class PipelineParams:
    job_id: str
    repository_id: str
    owner: str
    repo: str
    branch: Optional[str] = None
    access_token: Optional[str] = field(default=None, repr=False)


@dataclass
class PipelineResult:
    success: bool = False
    chunks_created: int = 0
    files_processed: int = 0
    files_total: int = 0
    files_skipped: int = 0
    files_unchanged: int = 0
    commit_sha: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False


def embedding_text(draft: ChunkDraft) -> str:
    """Text sent to the embedder: contextual description first when present."""
    if draft.context:
        return f"{draft.context}\n\n{draft.content}"
    return draft.content


class IndexingPipeline:
    """Full indexing run for one job."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        fetcher,
        embedder,
        contextualizer=None,
        batch_size: int = EMBEDDING_BATCH_SIZE,
        batch_delay: float = EMBEDDING_BATCH_DELAY_S,
    ):
        self.session_factory = session_factory
        self.fetcher = fetcher
        self.embedder = embedder
        self.contextualizer = contextualizer
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay

    async def aclose(self) -> None:
        await self.fetcher.aclose()

    async def run(self, params: PipelineParams, cancel_event: Optional[asyncio.Event] = None) -> PipelineResult:
        """
        Run the job to a terminal state. Never raises for job-level failures;
        the outcome is in the returned PipelineResult and on the job row.
        """
        result = PipelineResult()
        db = self.session_factory()
        try:
            await self._run(db, params, cancel_event, result)
            result.success = True
        except IndexingCancelled:
            db.rollback()
            job_manager.cancel_job(db, params.job_id)
            result.cancelled = True
            logger.info(f"[pipeline] Job {params.job_id} cancelled after {result.files_processed} files")
        except asyncio.CancelledError:
            db.rollback()
            job_manager.cancel_job(db, params.job_id)
            raise
        except Exception as e:
            db.rollback()
            message = self._failure_message(e)
            result.error = message
            logger.error(f"[pipeline] Job {params.job_id} failed: {e}")
            job_manager.mark_job_failed(db, params.job_id, message)
        finally:
            db.close()
        return result

    # =========================================================================
    # PHASES
    # =========================================================================

    async def _run(
        self,
        db: Session,
        params: PipelineParams,
        cancel_event: Optional[asyncio.Event],
        result: PipelineResult,
    ) -> None:
        job_id = params.job_id

        # Step 1: fetching
        self._check_cancelled(db, job_id, cancel_event)
        job_manager.transition_job(db, job_id, JobStatus.FETCHING)

        tree = await self.fetcher.fetch_repository_structure(params.owner, params.repo, params.branch)
        gitignore = await self.fetcher.fetch_gitignore(params.owner, params.repo, tree.commit_sha or tree.branch)
        selection = filter_files(tree.files, gitignore_content=gitignore)
        for warning in selection.warnings:
            logger.info(f"[pipeline] {params.owner}/{params.repo}: {warning}")

        result.commit_sha = tree.commit_sha
        result.files_total = len(selection.included)
        job_manager.update_job_progress(
            db, job_id,
            files_total=result.files_total,
            progress=calculate_progress(1, 1, JobPhase.FETCHING),
        )
        self._check_cancelled(db, job_id, cancel_event)

        # Step 2: parsing
        job_manager.transition_job(db, job_id, JobStatus.PARSING)
        drafts, emptied = await self._parse_files(db, params, selection.included, tree, cancel_event, result)

        # Step 3: contextual descriptions
        if self.contextualizer is not None and drafts:
            self._check_cancelled(db, job_id, cancel_event)
            await self.contextualizer.add_context([draft for draft, _ in drafts])

        # Step 4: embedding
        self._check_cancelled(db, job_id, cancel_event)
        job_manager.transition_job(db, job_id, JobStatus.EMBEDDING)
        await self._embed_and_store(db, params, drafts, cancel_event, result)

        # Step 5: finalizing
        self._check_cancelled(db, job_id, cancel_event)
        job_manager.update_job_progress(
            db, job_id,
            current_phase=JobPhase.FINALIZING,
            progress=calculate_progress(0, 1, JobPhase.FINALIZING),
        )
        kept_paths = {f.path for f in selection.included}
        removed = [path for path in get_file_hashes(db, params.repository_id) if path not in kept_paths]
        removed.extend(emptied)
        if removed:
            deleted = delete_chunks_for_paths(db, params.repository_id, removed)
            db.commit()
            logger.info(f"[pipeline] Removed {deleted} chunks of {len(removed)} deleted/emptied files")

        self._check_cancelled(db, job_id, cancel_event)
        total_chunks = count_chunks(db, params.repository_id)
        job_manager.mark_job_completed(db, job_id, chunks_created=result.chunks_created, commit_sha=tree.commit_sha)
        logger.info(
            f"[pipeline] Job {job_id} complete: {result.chunks_created} new chunks, "
            f"{result.files_unchanged} unchanged, {result.files_skipped} skipped, {total_chunks} stored"
        )

    async def _parse_files(
        self,
        db: Session,
        params: PipelineParams,
        files,
        tree,
        cancel_event: Optional[asyncio.Event],
        result: PipelineResult,
    ) -> Tuple[List[Tuple[ChunkDraft, str]], List[str]]:
        """Fetch and chunk changed files. Returns (draft, file_hash) pairs and emptied paths."""
        job_id = params.job_id
        stored_hashes = get_file_hashes(db, params.repository_id)
        ref = tree.commit_sha or tree.branch

        drafts: List[Tuple[ChunkDraft, str]] = []
        emptied: List[str] = []
        failures = 0

        for index, file in enumerate(files, start=1):
            self._check_cancelled(db, job_id, cancel_event)
            try:
                fetched = await self.fetcher.fetch_file_content(params.owner, params.repo, file.path, ref)
            except AuthError:
                raise
            except (ContentError, TransientProviderError, RepositoryFetchError) as e:
                failures += 1
                result.files_skipped += 1
                logger.warning(f"[pipeline] Skipping {file.path}: {e}")
                continue

            file_hash = calculate_file_hash(fetched.content)
            if stored_hashes.get(file.path) == file_hash:
                result.files_unchanged += 1
            else:
                file_drafts = chunk_file(fetched.content, file.path)
                if file_drafts:
                    drafts.extend((draft, file_hash) for draft in file_drafts)
                elif file.path in stored_hashes:
                    emptied.append(file.path)

            result.files_processed += 1
            job_manager.update_job_progress(
                db, job_id,
                files_processed=result.files_processed,
                progress=calculate_progress(index, len(files), JobPhase.PARSING),
            )

        if files and failures == len(files):
            raise RepositoryFetchError(TOTAL_FETCH_FAILURE)

        logger.info(
            f"[pipeline] Parsed {result.files_processed}/{len(files)} files into {len(drafts)} chunks "
            f"({result.files_unchanged} unchanged)"
        )
        return drafts, emptied

    async def _embed_and_store(
        self,
        db: Session,
        params: PipelineParams,
        drafts: List[Tuple[ChunkDraft, str]],
        cancel_event: Optional[asyncio.Event],
        result: PipelineResult,
    ) -> None:
        job_id = params.job_id
        batches = [drafts[i:i + self.batch_size] for i in range(0, len(drafts), self.batch_size)]
        written_paths: Set[str] = set()
        failed_paths: Set[str] = set()
        failed_batches = 0
        requested = False

        for number, batch in enumerate(batches, start=1):
            self._check_cancelled(db, job_id, cancel_event)

            # A file whose earlier batch failed is dropped entirely for this run
            batch = [(draft, file_hash) for draft, file_hash in batch if draft.file_path not in failed_paths]
            if not batch:
                continue

            # Spread requests over time to stay under the provider rate limit
            if requested and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)
                self._check_cancelled(db, job_id, cancel_event)
            requested = True

            try:
                vectors = await self.embedder.embed([embedding_text(draft) for draft, _ in batch])
            except AuthError:
                raise
            except ProviderError as e:
                failed_batches += 1
                batch_paths = {draft.file_path for draft, _ in batch}
                partial = batch_paths & written_paths
                if partial:
                    delete_chunks_for_paths(db, params.repository_id, partial)
                    db.commit()
                failed_paths.update(batch_paths)
                logger.warning(f"[pipeline] Embedding batch {number}/{len(batches)} failed, skipping: {e}")
                continue

            self._store_batch(db, params.repository_id, batch, vectors, written_paths)
            result.chunks_created += len(batch)
            job_manager.update_job_progress(
                db, job_id,
                chunks_created=result.chunks_created,
                progress=calculate_progress(number, len(batches), JobPhase.EMBEDDING),
            )

        if batches and failed_batches == len(batches):
            raise EmbeddingProviderError(TOTAL_EMBEDDING_FAILURE)

    def _store_batch(
        self,
        db: Session,
        repository_id: str,
        batch: List[Tuple[ChunkDraft, str]],
        vectors: List[List[float]],
        written_paths: Set[str],
    ) -> None:
        """Replace old chunks of first-seen paths, then insert the batch. One commit."""
        new_paths = {draft.file_path for draft, _ in batch} - written_paths
        if new_paths:
            delete_chunks_for_paths(db, repository_id, new_paths)
            written_paths.update(new_paths)

        for (draft, file_hash), vector in zip(batch, vectors):
            db.add(CodeChunk(
                repository_id=repository_id,
                file_path=draft.file_path,
                start_line=draft.start_line,
                end_line=draft.end_line,
                content=draft.content,
                language=draft.language,
                chunk_type=draft.chunk_type,
                symbol_name=draft.symbol_name,
                dependencies=list(draft.dependencies),
                context=draft.context,
                file_hash=file_hash,
                embedding=json.dumps(vector),
            ))
        db.commit()

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _check_cancelled(self, db: Session, job_id: str, cancel_event: Optional[asyncio.Event]) -> None:
        """Raise IndexingCancelled if the token is set or the row says cancelled."""
        if cancel_event is not None and cancel_event.is_set():
            raise IndexingCancelled(f"Job {job_id} cancelled")
        current = db.query(IndexingJob.status).filter(IndexingJob.id == job_id).scalar()
        if current == JobStatus.CANCELLED.value:
            raise IndexingCancelled(f"Job {job_id} cancelled")

    @staticmethod
    def _failure_message(error: Exception) -> str:
        if isinstance(error, AuthError):
            return f"Authentication failed: {error}"
        return str(error) or error.__class__.__name__


# =============================================================================
# FACTORY
# =============================================================================

def build_pipeline(params: PipelineParams, session_factory: Optional[Callable[[], Session]] = None) -> IndexingPipeline:
    """Production wiring: GitHub fetcher, OpenAI embeddings, optional contextual descriptions."""
    from codechat.db import SessionLocal
    from codechat.embeddings.client import EmbeddingClient
    from codechat.github.fetcher import GitHubFetcher
    from codechat.indexing.contextual import ContextualGenerator

    return IndexingPipeline(
        session_factory=session_factory or SessionLocal,
        fetcher=GitHubFetcher(access_token=params.access_token),
        embedder=EmbeddingClient(),
        contextualizer=ContextualGenerator() if CONTEXTUAL_RETRIEVAL_ENABLED else None,
    )


async def run_indexing_job(params: PipelineParams, cancel_event: Optional[asyncio.Event] = None) -> PipelineResult:
    """Convenience function."""
    pipeline = build_pipeline(params)
    try:
        return await pipeline.run(params, cancel_event)
    finally:
        await pipeline.aclose()

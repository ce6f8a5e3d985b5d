"""
Indexing job manager.

All reads and writes of indexing_jobs go through here. The job row is the
durable source of truth for progress; nothing is cached in-process.

Concurrency:
- start_indexing_job is check-then-insert; the partial unique index on
  in-progress jobs makes it atomic (IntegrityError -> rollback -> return winner)
- transition_job is a compare-and-set on the current status, so a
  concurrent cancel is never overwritten by a late pipeline update
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from codechat.config import LONG_RUNNING_THRESHOLD_S, STALE_JOB_MINUTES
from codechat.errors import IndexingCancelled, InvalidTransitionError, JobNotFoundError
from codechat.indexing.states import (
    IN_PROGRESS_STATUSES,
    STATUS_PHASES,
    TERMINAL_STATUSES,
    JobPhase,
    JobStatus,
    is_job_in_progress,
    is_job_terminal,
    validate_transition,
)
from codechat.models import CodeChunk, IndexingJob, Repository

logger = logging.getLogger(__name__)

_IN_PROGRESS_VALUES = [s.value for s in IN_PROGRESS_STATUSES]

STALE_JOB_MESSAGE = "Job timed out - please retry"
ORPHANED_JOB_MESSAGE = "Indexing was interrupted by a server restart - please retry"


@dataclass
class StartJobResult:
    job_id: str
    is_new: bool
    existing_status: Optional[str] = None


# =============================================================================
# LOOKUPS
# =============================================================================

def get_job(db: Session, job_id: str) -> Optional[IndexingJob]:
    return db.query(IndexingJob).filter(IndexingJob.id == job_id).first()


def get_job_by_repository(db: Session, repository_id: str) -> Optional[IndexingJob]:
    """Most recently created job of a repository (in progress or historical)."""
    return (
        db.query(IndexingJob)
        .filter(IndexingJob.repository_id == repository_id)
        .order_by(IndexingJob.created_at.desc())
        .first()
    )


def get_active_job(db: Session, repository_id: str) -> Optional[IndexingJob]:
    return (
        db.query(IndexingJob)
        .filter(
            IndexingJob.repository_id == repository_id,
            IndexingJob.status.in_(_IN_PROGRESS_VALUES),
        )
        .first()
    )


# =============================================================================
# LIFECYCLE
# =============================================================================

def start_indexing_job(db: Session, repository_id: str) -> StartJobResult:
    """
    Create a pending job unless one is already in progress.

    Idempotent while a job runs: returns the existing job with is_new=False.
    """
    existing = get_active_job(db, repository_id)
    if existing:
        logger.info(f"[jobs] Repository {repository_id} already has job {existing.id} ({existing.status})")
        return StartJobResult(job_id=existing.id, is_new=False, existing_status=existing.status)

    job = IndexingJob(
        repository_id=repository_id,
        status=JobStatus.PENDING.value,
        current_phase=JobPhase.INITIALIZING.value,
        progress=0,
    )
    try:
        db.add(job)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.debug(f"[jobs] Job for {repository_id} created by concurrent request, fetching")
        existing = get_active_job(db, repository_id)
        if existing:
            return StartJobResult(job_id=existing.id, is_new=False, existing_status=existing.status)
        raise

    logger.info(f"[jobs] Created job {job.id} for repository {repository_id}")
    return StartJobResult(job_id=job.id, is_new=True)


def transition_job(
    db: Session,
    job_id: str,
    status,
    phase=None,
    error_message: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> IndexingJob:
    """
    Validated compare-and-set status change.

    Raises:
        JobNotFoundError: unknown job id
        IndexingCancelled: the job is (or concurrently became) cancelled
        InvalidTransitionError: the change is not allowed from the current status
    """
    job = get_job(db, job_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found")

    current = JobStatus(job.status)
    target = JobStatus(status)

    if current == JobStatus.CANCELLED and target != JobStatus.CANCELLED:
        raise IndexingCancelled(f"Job {job_id} was cancelled")
    validate_transition(current, target)

    now = datetime.utcnow()
    values: Dict[str, Any] = {"status": target.value}

    phase = phase or STATUS_PHASES.get(target)
    if phase is not None:
        values["current_phase"] = JobPhase(phase).value
    if target in IN_PROGRESS_STATUSES and target != JobStatus.PENDING and job.started_at is None:
        values["started_at"] = now
    if target in TERMINAL_STATUSES:
        values["completed_at"] = now
    if target == JobStatus.COMPLETED:
        values["progress"] = 100
        values["current_phase"] = JobPhase.FINALIZING.value
    if error_message is not None:
        values["error_message"] = error_message
    if extra:
        values.update(extra)

    updated = (
        db.query(IndexingJob)
        .filter(IndexingJob.id == job_id, IndexingJob.status == current.value)
        .update(values, synchronize_session=False)
    )
    db.commit()
    db.refresh(job)

    if updated == 0:
        if job.status == JobStatus.CANCELLED.value:
            raise IndexingCancelled(f"Job {job_id} was cancelled")
        raise InvalidTransitionError(
            f"Job {job_id} changed concurrently: expected {current.value}, found {job.status}"
        )

    logger.info(f"[jobs] Job {job_id}: {current.value} -> {target.value}")
    return job


def update_job_progress(
    db: Session,
    job_id: str,
    progress: Optional[int] = None,
    files_processed: Optional[int] = None,
    files_total: Optional[int] = None,
    chunks_created: Optional[int] = None,
    current_phase=None,
) -> bool:
    """
    Update counters of an in-progress job. Terminal jobs are left untouched.

    Returns:
        True if a row was updated
    """
    values: Dict[str, Any] = {}
    if progress is not None:
        values["progress"] = max(0, min(100, int(progress)))
    if files_processed is not None:
        values["files_processed"] = files_processed
    if files_total is not None:
        values["files_total"] = files_total
    if chunks_created is not None:
        values["chunks_created"] = chunks_created
    if current_phase is not None:
        values["current_phase"] = JobPhase(current_phase).value
    if not values:
        return False

    updated = (
        db.query(IndexingJob)
        .filter(IndexingJob.id == job_id, IndexingJob.status.in_(_IN_PROGRESS_VALUES))
        .update(values, synchronize_session=False)
    )
    db.commit()
    return updated > 0


def mark_job_completed(
    db: Session,
    job_id: str,
    chunks_created: int,
    commit_sha: Optional[str] = None,
) -> IndexingJob:
    """Complete the job and record the synced commit on its repository."""
    job = transition_job(
        db,
        job_id,
        JobStatus.COMPLETED,
        extra={"chunks_created": chunks_created, "commit_sha": commit_sha},
    )

    repository = db.query(Repository).filter(Repository.id == job.repository_id).first()
    if repository is not None:
        repository.last_synced_sha = commit_sha
        repository.last_synced_at = datetime.utcnow()
        db.commit()

    logger.info(f"[jobs] Job {job_id} completed: {chunks_created} new chunks @ {commit_sha}")
    return job


def mark_job_failed(db: Session, job_id: str, message: str) -> Optional[IndexingJob]:
    """
    Fail an in-progress job with a display-ready message.

    A job that already reached a terminal state (e.g. cancelled) keeps it.
    """
    try:
        job = transition_job(db, job_id, JobStatus.FAILED, error_message=message)
    except (IndexingCancelled, InvalidTransitionError, JobNotFoundError) as e:
        logger.info(f"[jobs] Not failing job {job_id}: {e}")
        return get_job(db, job_id)

    logger.warning(f"[jobs] Job {job_id} failed: {message}")
    return job


def cancel_job(db: Session, job_id: str) -> Optional[IndexingJob]:
    """
    Cancel an in-progress job.

    Returns:
        The job (unchanged if it was not in progress), or None if unknown
    """
    job = get_job(db, job_id)
    if job is None:
        return None
    if not is_job_in_progress(job.status):
        return job

    now = datetime.utcnow()
    updated = (
        db.query(IndexingJob)
        .filter(IndexingJob.id == job_id, IndexingJob.status.in_(_IN_PROGRESS_VALUES))
        .update(
            {"status": JobStatus.CANCELLED.value, "completed_at": now},
            synchronize_session=False,
        )
    )
    db.commit()
    db.refresh(job)

    if updated:
        logger.info(f"[jobs] Job {job_id} cancelled")
    return job


def cleanup_stale_jobs(db: Session, max_age_minutes: Optional[int] = STALE_JOB_MINUTES) -> int:
    """
    Fail in-progress jobs older than the cutoff.

    max_age_minutes=None fails every in-progress job whatever its age: after
    a restart no task of the previous process is left to finish them.

    Returns:
        Number of jobs failed
    """
    query = db.query(IndexingJob).filter(IndexingJob.status.in_(_IN_PROGRESS_VALUES))
    message = ORPHANED_JOB_MESSAGE
    if max_age_minutes is not None:
        cutoff = datetime.utcnow() - timedelta(minutes=max_age_minutes)
        query = query.filter(or_(
            IndexingJob.started_at < cutoff,
            and_(IndexingJob.started_at.is_(None), IndexingJob.created_at < cutoff),
        ))
        message = STALE_JOB_MESSAGE

    updated = query.update(
        {
            "status": JobStatus.FAILED.value,
            "error_message": message,
            "completed_at": datetime.utcnow(),
        },
        synchronize_session=False,
    )
    db.commit()

    if updated:
        logger.warning(f"[jobs] Marked {updated} stale job(s) as failed")
    return updated


# =============================================================================
# INDEX STATE
# =============================================================================

def is_repository_indexed(db: Session, repository_id: str) -> bool:
    """True iff the repository has at least one stored chunk."""
    return db.query(CodeChunk.id).filter(CodeChunk.repository_id == repository_id).first() is not None


def get_repository_index_stats(db: Session, repository_id: str) -> Dict[str, Any]:
    """Chunk/file counts plus language and chunk-type histograms."""
    base = db.query(CodeChunk).filter(CodeChunk.repository_id == repository_id)

    total_chunks = base.count()
    total_files = (
        db.query(func.count(func.distinct(CodeChunk.file_path)))
        .filter(CodeChunk.repository_id == repository_id)
        .scalar()
    ) or 0

    languages = dict(
        db.query(CodeChunk.language, func.count(CodeChunk.id))
        .filter(CodeChunk.repository_id == repository_id)
        .group_by(CodeChunk.language)
        .all()
    )
    chunk_types = dict(
        db.query(CodeChunk.chunk_type, func.count(CodeChunk.id))
        .filter(CodeChunk.repository_id == repository_id)
        .group_by(CodeChunk.chunk_type)
        .all()
    )

    return {
        "total_chunks": total_chunks,
        "total_files": total_files,
        "languages": languages,
        "chunk_types": chunk_types,
    }


def delete_repository_chunks(db: Session, repository_id: str) -> int:
    """Delete every chunk of a repository (forced re-index / disconnect)."""
    deleted = (
        db.query(CodeChunk)
        .filter(CodeChunk.repository_id == repository_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info(f"[jobs] Deleted {deleted} chunks for repository {repository_id}")
    return deleted


# =============================================================================
# STATUS SHAPE
# =============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def build_job_status(
    db: Session,
    repository_id: str,
    latest_commit_sha: Optional[str] = None,
) -> Dict[str, Any]:
    """Status payload for polling clients (camelCase keys)."""
    job = get_job_by_repository(db, repository_id)
    indexed = is_repository_indexed(db, repository_id)

    if job is None:
        if indexed:
            return {
                "status": "indexed",
                "isIndexed": True,
                "stats": get_repository_index_stats(db, repository_id),
            }
        return {"status": "not_started", "isIndexed": False}

    elapsed = job.duration_seconds
    response: Dict[str, Any] = {
        "jobId": job.id,
        "status": job.status,
        "progress": job.progress,
        "filesTotal": job.files_total,
        "filesProcessed": job.files_processed,
        "chunksCreated": job.chunks_created,
        "currentPhase": job.current_phase,
        "error": job.error_message if job.status == JobStatus.FAILED.value else None,
        "startedAt": _iso(job.started_at),
        "completedAt": _iso(job.completed_at),
        "isIndexed": indexed,
        "isTakingLong": bool(
            is_job_in_progress(job.status)
            and elapsed is not None
            and elapsed > LONG_RUNNING_THRESHOLD_S
        ),
    }

    if job.status == JobStatus.COMPLETED.value:
        response["stats"] = get_repository_index_stats(db, repository_id)
        response["commitSha"] = job.commit_sha
        if latest_commit_sha:
            response["hasNewerCommit"] = bool(job.commit_sha) and latest_commit_sha != job.commit_sha

    return response


__all__ = [
    "StartJobResult",
    "get_job",
    "get_job_by_repository",
    "get_active_job",
    "start_indexing_job",
    "transition_job",
    "update_job_progress",
    "mark_job_completed",
    "mark_job_failed",
    "cancel_job",
    "cleanup_stale_jobs",
    "is_job_in_progress",
    "is_job_terminal",
    "is_repository_indexed",
    "get_repository_index_stats",
    "delete_repository_chunks",
    "build_job_status",
]

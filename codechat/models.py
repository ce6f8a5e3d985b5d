"""
codechat database models.

Tables:
- repositories: connected source trees (owner/name, default branch, last synced commit)
- indexing_jobs: one row per indexing run, status driven by codechat.indexing.states
- code_chunks: indexed code units with JSON-encoded embedding vectors

Design Decisions:
1. At most one in-progress job per repository, enforced by a partial unique index
   (the check-then-insert in start_indexing_job relies on it)
2. Terminal jobs are kept as history; the latest row is "the" job of a repository
3. Embeddings stored as JSON text next to the chunk; cosine similarity runs in Python
4. Re-indexing replaces chunks per file path; disconnecting deletes them wholesale

CRITICAL: Import in codechat/db.py init_db() or tables won't be created!
"""

import json
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import (
    Column, Integer, String, DateTime, Text,
    ForeignKey, Index, JSON, text,
)
from sqlalchemy.orm import relationship

from codechat.db import Base
from codechat.indexing.states import IN_PROGRESS_STATUSES, JobStatus, JobPhase


def _uuid() -> str:
    return str(uuid4())


_ACTIVE_STATUS_SQL = "status IN ({})".format(
    ", ".join(f"'{s.value}'" for s in sorted(IN_PROGRESS_STATUSES, key=lambda s: s.value))
)


# =============================================================================
# MODELS
# =============================================================================

class Repository(Base):
    """A connected source tree. Only re-sync metadata changes after creation."""
    __tablename__ = "repositories"

    id = Column(String(36), primary_key=True, default=_uuid)
    owner = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    default_branch = Column(String(255), nullable=True)

    # Re-sync metadata
    last_synced_sha = Column(String(64), nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    jobs = relationship(
        "IndexingJob",
        back_populates="repository",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_repositories_owner_name", "owner", "name", unique=True),
    )

    def __repr__(self):
        return f"<Repository(id={self.id}, full_name={self.full_name})>"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class IndexingJob(Base):
    """
    One indexing run for a repository.

    Status values come from JobStatus; every change goes through
    codechat.indexing.job_manager.transition_job (validated compare-and-set).
    """
    __tablename__ = "indexing_jobs"

    id = Column(String(36), primary_key=True, default=_uuid)
    repository_id = Column(
        String(36),
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # State tracking
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    current_phase = Column(String(50), nullable=True, default=JobPhase.INITIALIZING.value)
    progress = Column(Integer, default=0, nullable=False)

    # Counters (updated incrementally so pollers see live progress)
    files_total = Column(Integer, default=0, nullable=False)
    files_processed = Column(Integer, default=0, nullable=False)
    chunks_created = Column(Integer, default=0, nullable=False)

    error_message = Column(Text, nullable=True)
    commit_sha = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    repository = relationship("Repository", back_populates="jobs")

    __table_args__ = (
        Index("ix_indexing_jobs_status", "status"),
        Index("ix_indexing_jobs_repo_created", "repository_id", "created_at"),
        Index(
            "uq_indexing_jobs_active_repository",
            "repository_id",
            unique=True,
            sqlite_where=text(_ACTIVE_STATUS_SQL),
            postgresql_where=text(_ACTIVE_STATUS_SQL),
        ),
    )

    def __repr__(self):
        return f"<IndexingJob(id={self.id}, repo={self.repository_id}, status={self.status}, progress={self.progress})>"

    @property
    def duration_seconds(self) -> Optional[float]:
        """Elapsed seconds since start (until completion if finished)."""
        if not self.started_at:
            return None
        end = self.completed_at or datetime.utcnow()
        return (end - self.started_at).total_seconds()


class CodeChunk(Base):
    """
    A contiguous, semantically meaningful span of one file.

    Invariant: 1 <= start_line <= end_line.
    """
    __tablename__ = "code_chunks"

    id = Column(String(36), primary_key=True, default=_uuid)
    repository_id = Column(
        String(36),
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Location
    file_path = Column(String(1024), nullable=False)
    start_line = Column(Integer, nullable=False)
    end_line = Column(Integer, nullable=False)

    # Content
    content = Column(Text, nullable=False)
    language = Column(String(32), nullable=False, default="text")
    chunk_type = Column(String(20), nullable=False, default="other")
    symbol_name = Column(String(256), nullable=True)
    dependencies = Column(JSON, nullable=False, default=list)

    # Contextual description (optional, LLM generated)
    context = Column(Text, nullable=True)

    # Change detection: SHA-256 of the whole file the chunk came from
    file_hash = Column(String(64), nullable=False)

    # JSON-encoded list[float]
    embedding = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_code_chunks_repo_path", "repository_id", "file_path"),
        Index("ix_code_chunks_repo_type", "repository_id", "chunk_type"),
        Index("ix_code_chunks_symbol", "symbol_name"),
    )

    def __repr__(self):
        return f"<CodeChunk(id={self.id}, path={self.file_path}, lines={self.line_range})>"

    @property
    def line_range(self) -> str:
        """Get line range as string (e.g., '42-78')."""
        return f"{self.start_line}-{self.end_line}"

    @property
    def vector(self) -> Optional[List[float]]:
        """Decoded embedding, or None when missing/corrupt."""
        if not self.embedding:
            return None
        try:
            return json.loads(self.embedding)
        except (json.JSONDecodeError, TypeError):
            return None


# =============================================================================
# QUERY HELPERS
# =============================================================================

def get_repository(db, repository_id: str) -> Optional[Repository]:
    """Get Repository by id."""
    return db.query(Repository).filter(Repository.id == repository_id).first()


def get_repository_by_name(db, owner: str, name: str) -> Optional[Repository]:
    """Get Repository by owner/name."""
    return db.query(Repository).filter(
        Repository.owner == owner,
        Repository.name == name,
    ).first()


def get_file_hashes(db, repository_id: str) -> dict[str, str]:
    """Map file_path -> file_hash for every indexed file of a repository."""
    rows = db.query(CodeChunk.file_path, CodeChunk.file_hash).filter(
        CodeChunk.repository_id == repository_id
    ).distinct().all()
    return {path: file_hash for path, file_hash in rows}


def count_chunks(db, repository_id: str) -> int:
    """Count chunks for a repository."""
    return db.query(CodeChunk).filter(CodeChunk.repository_id == repository_id).count()


def delete_chunks_for_paths(db, repository_id: str, paths) -> int:
    """Delete chunks of the given file paths. Does not commit."""
    paths = list(paths)
    if not paths:
        return 0
    return db.query(CodeChunk).filter(
        CodeChunk.repository_id == repository_id,
        CodeChunk.file_path.in_(paths),
    ).delete(synchronize_session=False)

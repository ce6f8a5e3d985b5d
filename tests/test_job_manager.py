# FILE: tests/test_job_manager.py
"""
Tests for indexing job persistence: idempotent start, validated transitions,
cancellation, stale cleanup, stats and the polling status shape.
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from codechat.errors import IndexingCancelled, InvalidTransitionError, JobNotFoundError
from codechat.indexing import job_manager
from codechat.indexing.job_manager import (
    ORPHANED_JOB_MESSAGE,
    STALE_JOB_MESSAGE,
    build_job_status,
    cancel_job,
    cleanup_stale_jobs,
    delete_repository_chunks,
    get_job,
    get_job_by_repository,
    get_repository_index_stats,
    is_repository_indexed,
    mark_job_completed,
    mark_job_failed,
    start_indexing_job,
    transition_job,
    update_job_progress,
)
from codechat.indexing.states import JobPhase, JobStatus


def _advance_to(db, job_id, status):
    order = ["fetching", "parsing", "embedding"]
    for step in order[:order.index(status) + 1]:
        transition_job(db, job_id, step)


class TestStartIndexingJob:
    """Tests for the one-active-job-per-repository rule."""

    def test_creates_pending_job(self, db_session, repository):
        result = start_indexing_job(db_session, repository.id)

        assert result.is_new
        job = get_job(db_session, result.job_id)
        assert job.status == "pending"
        assert job.current_phase == JobPhase.INITIALIZING.value
        assert job.progress == 0

    def test_idempotent_while_active(self, db_session, repository):
        first = start_indexing_job(db_session, repository.id)
        second = start_indexing_job(db_session, repository.id)

        assert not second.is_new
        assert second.job_id == first.job_id
        assert second.existing_status == "pending"

    def test_concurrent_insert_returns_winner(self, db_session, repository):
        winner = start_indexing_job(db_session, repository.id)
        real_get_active = job_manager.get_active_job

        # First lookup misses (as if the other request had not committed yet)
        with patch.object(job_manager, "get_active_job", side_effect=[None, real_get_active(db_session, repository.id)]):
            result = start_indexing_job(db_session, repository.id)

        assert not result.is_new
        assert result.job_id == winner.job_id

    def test_new_job_after_terminal(self, db_session, repository):
        first = start_indexing_job(db_session, repository.id)
        old = cancel_job(db_session, first.job_id)
        old.created_at = datetime.utcnow() - timedelta(minutes=1)
        db_session.commit()

        second = start_indexing_job(db_session, repository.id)
        assert second.is_new
        assert second.job_id != first.job_id
        assert get_job_by_repository(db_session, repository.id).id == second.job_id


class TestTransitions:
    """Tests for validated compare-and-set transitions."""

    def test_started_at_set_on_first_active_state(self, db_session, repository):
        job_id = start_indexing_job(db_session, repository.id).job_id
        job = transition_job(db_session, job_id, JobStatus.FETCHING)

        assert job.status == "fetching"
        assert job.current_phase == JobPhase.FETCHING.value
        assert job.started_at is not None

    def test_invalid_transition(self, db_session, repository):
        job_id = start_indexing_job(db_session, repository.id).job_id
        with pytest.raises(InvalidTransitionError):
            transition_job(db_session, job_id, JobStatus.EMBEDDING)
        assert get_job(db_session, job_id).status == "pending"

    def test_unknown_job(self, db_session):
        with pytest.raises(JobNotFoundError):
            transition_job(db_session, "missing", JobStatus.FETCHING)

    def test_cancelled_job_raises_cancelled(self, db_session, repository):
        job_id = start_indexing_job(db_session, repository.id).job_id
        cancel_job(db_session, job_id)
        with pytest.raises(IndexingCancelled):
            transition_job(db_session, job_id, JobStatus.FETCHING)

    def test_completion_records_commit(self, db_session, repository):
        job_id = start_indexing_job(db_session, repository.id).job_id
        _advance_to(db_session, job_id, "embedding")

        job = mark_job_completed(db_session, job_id, chunks_created=12, commit_sha="abc123")

        assert job.status == "completed"
        assert job.progress == 100
        assert job.chunks_created == 12
        assert job.completed_at is not None
        db_session.refresh(repository)
        assert repository.last_synced_sha == "abc123"
        assert repository.last_synced_at is not None

    def test_mark_failed_keeps_cancelled(self, db_session, repository):
        job_id = start_indexing_job(db_session, repository.id).job_id
        cancel_job(db_session, job_id)

        job = mark_job_failed(db_session, job_id, "boom")
        assert job.status == "cancelled"
        assert job.error_message is None

    def test_mark_failed(self, db_session, repository):
        job_id = start_indexing_job(db_session, repository.id).job_id
        job = mark_job_failed(db_session, job_id, "GitHub access denied")
        assert job.status == "failed"
        assert job.error_message == "GitHub access denied"


class TestProgressAndCancel:
    def test_progress_clamped_and_ignored_when_terminal(self, db_session, repository):
        job_id = start_indexing_job(db_session, repository.id).job_id
        transition_job(db_session, job_id, JobStatus.FETCHING)

        assert update_job_progress(db_session, job_id, progress=140, files_total=7)
        job = get_job(db_session, job_id)
        db_session.refresh(job)
        assert job.progress == 100
        assert job.files_total == 7

        cancel_job(db_session, job_id)
        assert not update_job_progress(db_session, job_id, progress=10)

    def test_cancel_unknown_and_terminal(self, db_session, repository):
        assert cancel_job(db_session, "missing") is None

        job_id = start_indexing_job(db_session, repository.id).job_id
        mark_job_failed(db_session, job_id, "x")
        assert cancel_job(db_session, job_id).status == "failed"


class TestStaleCleanup:
    def test_old_jobs_failed(self, db_session, repository):
        job_id = start_indexing_job(db_session, repository.id).job_id
        transition_job(db_session, job_id, JobStatus.FETCHING)
        job = get_job(db_session, job_id)
        job.started_at = datetime.utcnow() - timedelta(hours=2)
        db_session.commit()

        assert cleanup_stale_jobs(db_session, max_age_minutes=30) == 1
        db_session.refresh(job)
        assert job.status == "failed"
        assert job.error_message == STALE_JOB_MESSAGE

    def test_recent_jobs_kept(self, db_session, repository):
        job_id = start_indexing_job(db_session, repository.id).job_id
        assert cleanup_stale_jobs(db_session, max_age_minutes=30) == 0
        assert get_job(db_session, job_id).status == "pending"

    def test_no_cutoff_fails_every_in_progress_job(self, db_session, repository, other_repository):
        fresh = start_indexing_job(db_session, repository.id).job_id
        running = start_indexing_job(db_session, other_repository.id).job_id
        transition_job(db_session, running, JobStatus.EMBEDDING)

        assert cleanup_stale_jobs(db_session, max_age_minutes=None) == 2
        assert get_job(db_session, fresh).status == "failed"
        assert get_job(db_session, running).error_message == ORPHANED_JOB_MESSAGE


class TestIndexState:
    """Tests for stats, chunk deletion and the status payload."""

    def test_stats(self, db_session, repository, add_chunk):
        add_chunk("src/a.ts", language="typescript", chunk_type="function")
        add_chunk("src/a.ts", start_line=11, end_line=20, language="typescript", chunk_type="class")
        add_chunk("main.py", language="python", chunk_type="function")

        assert is_repository_indexed(db_session, repository.id)
        assert get_repository_index_stats(db_session, repository.id) == {
            "total_chunks": 3,
            "total_files": 2,
            "languages": {"typescript": 2, "python": 1},
            "chunk_types": {"function": 2, "class": 1},
        }

        assert delete_repository_chunks(db_session, repository.id) == 3
        assert not is_repository_indexed(db_session, repository.id)

    def test_status_without_job(self, db_session, repository, add_chunk):
        assert build_job_status(db_session, repository.id) == {"status": "not_started", "isIndexed": False}

        add_chunk("src/a.ts")
        status = build_job_status(db_session, repository.id)
        assert status["status"] == "indexed"
        assert status["isIndexed"] is True
        assert status["stats"]["total_chunks"] == 1

    def test_status_of_completed_job(self, db_session, repository, add_chunk):
        job_id = start_indexing_job(db_session, repository.id).job_id
        _advance_to(db_session, job_id, "embedding")
        add_chunk("src/a.ts")
        mark_job_completed(db_session, job_id, chunks_created=1, commit_sha="old")

        status = build_job_status(db_session, repository.id, latest_commit_sha="new")

        assert status["jobId"] == job_id
        assert status["status"] == "completed"
        assert status["progress"] == 100
        assert status["commitSha"] == "old"
        assert status["hasNewerCommit"] is True
        assert status["isTakingLong"] is False
        assert status["error"] is None

    def test_status_flags_long_running(self, db_session, repository):
        job_id = start_indexing_job(db_session, repository.id).job_id
        transition_job(db_session, job_id, JobStatus.FETCHING)
        job = get_job(db_session, job_id)
        job.started_at = datetime.utcnow() - timedelta(minutes=5)
        db_session.commit()

        status = build_job_status(db_session, repository.id)
        assert status["isTakingLong"] is True
        assert status["isIndexed"] is False

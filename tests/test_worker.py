# FILE: tests/test_worker.py
"""
Tests for the background indexing worker.
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
from datetime import datetime, timedelta

import pytest

from codechat.indexing import job_manager
from codechat.indexing.pipeline import PipelineParams, PipelineResult
from codechat.indexing.states import JobStatus
from codechat.indexing.worker import IndexingWorker, get_worker


class FakePipeline:
    def __init__(self, behaviour="complete"):
        self.behaviour = behaviour
        self.closed = False
        self.started = asyncio.Event()

    async def run(self, params, cancel_event=None):
        self.started.set()
        if self.behaviour == "wait_for_token":
            await cancel_event.wait()
            return PipelineResult(cancelled=True)
        if self.behaviour == "hang":
            await asyncio.sleep(3600)
        return PipelineResult(success=True, chunks_created=4)

    async def aclose(self):
        self.closed = True


def _params(job_id="job-1"):
    return PipelineParams(job_id=job_id, repository_id="repo-1", owner="acme", repo="widgets")


class TestSubmit:
    """Tests for task registration."""

    @pytest.mark.asyncio
    async def test_runs_pipeline_and_closes_it(self):
        pipeline = FakePipeline()
        worker = IndexingWorker(pipeline_factory=lambda params: pipeline)

        task = worker.submit(_params())
        result = await task
        await asyncio.sleep(0)  # let the done-callback run

        assert result.success
        assert result.chunks_created == 4
        assert pipeline.closed
        assert worker.active_jobs() == []

    @pytest.mark.asyncio
    async def test_no_double_submission(self):
        pipeline = FakePipeline("wait_for_token")
        created = []

        def factory(params):
            created.append(params.job_id)
            return pipeline

        worker = IndexingWorker(pipeline_factory=factory)
        first = worker.submit(_params())
        second = worker.submit(_params())

        assert first is second
        assert worker.is_running("job-1")
        worker.cancel("job-1")
        await first
        assert created == ["job-1"]


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_sets_token(self):
        pipeline = FakePipeline("wait_for_token")
        worker = IndexingWorker(pipeline_factory=lambda params: pipeline)

        task = worker.submit(_params())
        await pipeline.started.wait()

        assert worker.cancel("job-1")
        result = await task
        assert result.cancelled

    def test_cancel_unknown_job(self):
        assert not IndexingWorker().cancel("nope")


class TestFailuresAndShutdown:
    @pytest.mark.asyncio
    async def test_factory_failure_marks_job_failed(self, session_factory, db_session, repository):
        job_id = job_manager.start_indexing_job(db_session, repository.id).job_id

        def broken_factory(params):
            raise RuntimeError("no credentials")

        worker = IndexingWorker(pipeline_factory=broken_factory, session_factory=session_factory)
        task = worker.submit(PipelineParams(job_id=job_id, repository_id=repository.id, owner="acme", repo="widgets"))

        with pytest.raises(RuntimeError):
            await task

        job = job_manager.get_job(db_session, job_id)
        db_session.refresh(job)
        assert job.status == JobStatus.FAILED.value
        assert "no credentials" in job.error_message

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_tasks(self):
        pipeline = FakePipeline("hang")
        worker = IndexingWorker(pipeline_factory=lambda params: pipeline)

        task = worker.submit(_params())
        await pipeline.started.wait()
        await worker.shutdown()

        assert task.cancelled()
        assert pipeline.closed

    def test_startup_fails_old_jobs(self, session_factory, db_session, repository):
        job_id = job_manager.start_indexing_job(db_session, repository.id).job_id
        job = job_manager.get_job(db_session, job_id)
        job.created_at = datetime.utcnow() - timedelta(hours=3)
        db_session.commit()

        worker = IndexingWorker(session_factory=session_factory)
        assert worker.startup() == 1

        db_session.refresh(job)
        assert job.status == "failed"

    def test_startup_fails_recently_started_jobs(self, session_factory, db_session, repository):
        job_id = job_manager.start_indexing_job(db_session, repository.id).job_id
        job_manager.transition_job(db_session, job_id, JobStatus.FETCHING)
        job = job_manager.get_job(db_session, job_id)
        job.started_at = datetime.utcnow() - timedelta(minutes=2)
        db_session.commit()

        worker = IndexingWorker(session_factory=session_factory)
        assert worker.startup() == 1

        db_session.refresh(job)
        assert job.status == "failed"
        assert job.error_message == job_manager.ORPHANED_JOB_MESSAGE

        restarted = job_manager.start_indexing_job(db_session, repository.id)
        assert restarted.is_new is True
        assert restarted.job_id != job_id


class TestGlobalWorker:
    def test_singleton(self):
        assert get_worker() is get_worker()

"""
Background indexing worker.

Owns one asyncio.Task per running job plus a per-job cancellation token
(asyncio.Event). The job row stays the durable source of truth: the worker
only holds handles to work running in this process.

- submit(params): start the pipeline for a job (no double submission)
- cancel(job_id): set the token; the pipeline stops at its next check
- shutdown(): cancel every task and wait for them
- startup(): fail jobs orphaned by a previous process
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from codechat.indexing import job_manager
from codechat.indexing.pipeline import IndexingPipeline, PipelineParams, PipelineResult, build_pipeline

logger = logging.getLogger(__name__)


class IndexingWorker:
    """In-process task registry for indexing jobs."""

    def __init__(
        self,
        pipeline_factory: Callable[[PipelineParams], IndexingPipeline] = build_pipeline,
        session_factory: Optional[Callable] = None,
    ):
        self._pipeline_factory = pipeline_factory
        self._session_factory = session_factory
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, asyncio.Event] = {}

    def _new_session(self):
        if self._session_factory is None:
            from codechat.db import SessionLocal
            self._session_factory = SessionLocal
        return self._session_factory()

    def startup(self) -> int:
        """
        Fail every in-progress job left behind by a previous process.

        No task of this process is running yet, so age does not matter: a
        job that started a minute before the restart is just as orphaned.
        """
        db = self._new_session()
        try:
            return job_manager.cleanup_stale_jobs(db, max_age_minutes=None)
        finally:
            db.close()

    def submit(self, params: PipelineParams) -> asyncio.Task:
        """
        Schedule the pipeline for a job on the running event loop.

        Returns:
            The job's task (the existing one if already running)
        """
        existing = self._tasks.get(params.job_id)
        if existing is not None and not existing.done():
            logger.info(f"[worker] Job {params.job_id} already running, not resubmitting")
            return existing

        token = asyncio.Event()
        task = asyncio.create_task(self._run(params, token), name=f"indexing-{params.job_id}")
        self._tokens[params.job_id] = token
        self._tasks[params.job_id] = task
        task.add_done_callback(lambda t, job_id=params.job_id: self._on_done(job_id, t))

        logger.info(f"[worker] Submitted job {params.job_id} ({params.owner}/{params.repo})")
        return task

    def cancel(self, job_id: str) -> bool:
        """Set the cancellation token. Returns False if the job is not running here."""
        token = self._tokens.get(job_id)
        if token is None:
            return False
        token.set()
        logger.info(f"[worker] Cancellation requested for job {job_id}")
        return True

    def active_jobs(self) -> List[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    async def shutdown(self) -> None:
        """Cancel all running jobs and wait for their tasks to finish."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"[worker] Task failed during shutdown: {e}")
        logger.info(f"[worker] Shut down ({len(tasks)} job(s) cancelled)")

    async def _run(self, params: PipelineParams, token: asyncio.Event) -> PipelineResult:
        try:
            pipeline = self._pipeline_factory(params)
        except Exception as e:
            db = self._new_session()
            try:
                job_manager.mark_job_failed(db, params.job_id, f"Could not start indexing: {e}")
            finally:
                db.close()
            raise
        try:
            return await pipeline.run(params, token)
        finally:
            await pipeline.aclose()

    def _on_done(self, job_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(job_id, None)
        self._tokens.pop(job_id, None)

        if task.cancelled():
            logger.info(f"[worker] Job {job_id} task cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[worker] Job {job_id} crashed: {error!r}", exc_info=error)
            return
        result = task.result()
        if result.cancelled:
            logger.info(f"[worker] Job {job_id} finished: cancelled")
        elif result.success:
            logger.info(f"[worker] Job {job_id} finished: {result.chunks_created} chunks")
        else:
            logger.warning(f"[worker] Job {job_id} finished with error: {result.error}")


# Global worker instance
_worker: Optional[IndexingWorker] = None


def get_worker() -> IndexingWorker:
    """Get or create the global worker."""
    global _worker
    if _worker is None:
        _worker = IndexingWorker()
    return _worker


__all__ = ["IndexingWorker", "get_worker"]

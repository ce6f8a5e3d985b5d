"""
Indexing: job state machine, job manager, pipeline and background worker.

Kept import-free: codechat.models depends on codechat.indexing.states.
Import submodules directly (codechat.indexing.job_manager, ...).
"""

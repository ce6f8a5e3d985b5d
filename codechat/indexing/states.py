"""
IndexingJob state machine.

    pending -> fetching -> parsing -> embedding -> completed

failed and cancelled are reachable from any in-progress state.
Terminal states (completed, failed, cancelled) have no outgoing transitions;
a new run creates a new job row instead of reviving an old one.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet

from codechat.errors import InvalidTransitionError


# =============================================================================
# ENUMS
# =============================================================================

class JobStatus(str, Enum):
    """IndexingJob lifecycle states."""
    PENDING = "pending"
    FETCHING = "fetching"
    PARSING = "parsing"
    EMBEDDING = "embedding"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobPhase(str, Enum):
    """User-facing phase labels shown while polling."""
    INITIALIZING = "Initializing"
    FETCHING = "Fetching files"
    PARSING = "Parsing code"
    EMBEDDING = "Generating embeddings"
    FINALIZING = "Finalizing"


IN_PROGRESS_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.PENDING,
    JobStatus.FETCHING,
    JobStatus.PARSING,
    JobStatus.EMBEDDING,
})

TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})

_ABORT = frozenset({JobStatus.FAILED, JobStatus.CANCELLED})

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.FETCHING}) | _ABORT,
    JobStatus.FETCHING: frozenset({JobStatus.PARSING}) | _ABORT,
    JobStatus.PARSING: frozenset({JobStatus.EMBEDDING}) | _ABORT,
    JobStatus.EMBEDDING: frozenset({JobStatus.COMPLETED}) | _ABORT,
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

# Phase that accompanies each active status
STATUS_PHASES: Dict[JobStatus, JobPhase] = {
    JobStatus.PENDING: JobPhase.INITIALIZING,
    JobStatus.FETCHING: JobPhase.FETCHING,
    JobStatus.PARSING: JobPhase.PARSING,
    JobStatus.EMBEDDING: JobPhase.EMBEDDING,
}


# =============================================================================
# HELPERS
# =============================================================================

def is_job_in_progress(status) -> bool:
    return JobStatus(status) in IN_PROGRESS_STATUSES


def is_job_terminal(status) -> bool:
    return JobStatus(status) in TERMINAL_STATUSES


def can_transition(current, target) -> bool:
    return JobStatus(target) in ALLOWED_TRANSITIONS[JobStatus(current)]


def validate_transition(current, target) -> JobStatus:
    """
    Check a status change against ALLOWED_TRANSITIONS.

    Returns:
        The target as a JobStatus

    Raises:
        InvalidTransitionError: e.g. completed -> parsing
    """
    current_status = JobStatus(current)
    target_status = JobStatus(target)
    if target_status not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidTransitionError(
            f"Invalid job transition: {current_status.value} -> {target_status.value}"
        )
    return target_status


def calculate_progress(files_processed: int, files_total: int, phase) -> int:
    """
    Map per-phase completion onto the overall 0-100 bar.

    Fetching: 0-10%, Parsing: 10-50%, Embedding: 50-95%, Finalizing: 95-100%
    """
    if files_total <= 0:
        return 0

    fraction = min(1.0, max(0.0, files_processed / files_total))
    phase = JobPhase(phase)

    if phase == JobPhase.INITIALIZING:
        return 0
    if phase == JobPhase.FETCHING:
        return round(fraction * 10)
    if phase == JobPhase.PARSING:
        return 10 + round(fraction * 40)
    if phase == JobPhase.EMBEDDING:
        return 50 + round(fraction * 45)
    return 95 + round(fraction * 5)

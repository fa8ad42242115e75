"""
Processing job lifecycle.

    PENDING ──► PROCESSING ──► COMPLETED
       │            │  ▲
       │            └──┘ (progress updates)
       │            ├────────► FAILED
       │            └────────► CANCELLED
       ├──────────────────────► FAILED      (pre-start failures)
       └──────────────────────► CANCELLED

COMPLETED, FAILED and CANCELLED are terminal. Every status change goes
through check_transition(); nothing assigns job.status directly.
"""

from __future__ import annotations

from enum import Enum

from studydocs.core.exceptions import InvalidTransitionError


class JobStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"
    CANCELLED  = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


class JobType(str, Enum):
    UPLOAD       = "upload"
    CHUNKING     = "chunking"
    EMBEDDING    = "embedding"
    FULL_PROCESS = "full_process"


TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({
        JobStatus.PROCESSING,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }),
    JobStatus.PROCESSING: frozenset({
        JobStatus.PROCESSING,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED:    frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus | str, target: JobStatus | str) -> bool:
    return JobStatus(target) in ALLOWED_TRANSITIONS[JobStatus(current)]


def check_transition(current: JobStatus | str, target: JobStatus | str) -> JobStatus:
    """Return the target status, or raise InvalidTransitionError."""
    current = JobStatus(current)
    target  = JobStatus(target)

    if target is JobStatus.CANCELLED and current in (JobStatus.COMPLETED, JobStatus.FAILED):
        raise InvalidTransitionError("Cannot cancel a completed or failed job")

    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Invalid job transition: {current.value} -> {target.value}"
        )
    return target

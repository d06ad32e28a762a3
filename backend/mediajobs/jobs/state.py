"""
State transition validation for jobs.

Job lifecycle:
    PENDING → DOWNLOADING → EXTRACTING → TRANSCRIBING → PACKING → COMPLETED
Any active stage may move to FAILED or CANCELLED. PENDING may be cancelled.
FAILED may only go back to PENDING (retry restarts the whole pipeline).

INVARIANT: Terminal job states (COMPLETED, CANCELLED) are immutable.
Once a job enters a terminal state, no state transition is allowed.
"""

from typing import Dict, FrozenSet, Tuple

from .models import JobStatus
from .errors import InvalidTransitionError


TERMINAL_JOB_STATES: FrozenSet[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.CANCELLED,
})

# Stages executed by the pipeline, in order
STAGE_SEQUENCE: Tuple[JobStatus, ...] = (
    JobStatus.DOWNLOADING,
    JobStatus.EXTRACTING,
    JobStatus.TRANSCRIBING,
    JobStatus.PACKING,
)

ACTIVE_JOB_STATES: FrozenSet[JobStatus] = frozenset(STAGE_SEQUENCE)

# Records in these states may be removed by cleanup
REMOVABLE_JOB_STATES: FrozenSet[JobStatus] = TERMINAL_JOB_STATES | {JobStatus.FAILED}


# Legal job state transitions: source -> allowed targets
_JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.DOWNLOADING, JobStatus.CANCELLED}),
    JobStatus.DOWNLOADING: frozenset({JobStatus.EXTRACTING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.EXTRACTING: frozenset({JobStatus.TRANSCRIBING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.TRANSCRIBING: frozenset({JobStatus.PACKING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.PACKING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    # Retry re-enters the pipeline from the start
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def is_job_terminal(status: JobStatus) -> bool:
    """
    Check if a job status is terminal (immutable).

    FAILED is not terminal: it can be retried.

    Args:
        status: The job status to check

    Returns:
        True if the status is terminal, False otherwise
    """
    return status in TERMINAL_JOB_STATES


def allowed_targets(from_status: JobStatus) -> FrozenSet[JobStatus]:
    """Return the set of statuses reachable in one step from from_status."""
    return _JOB_TRANSITIONS[from_status]


def can_transition_job(from_status: JobStatus, to_status: JobStatus) -> bool:
    """
    Check if a job state transition is legal.

    Self-transitions are not legal: every stage change is a real edge.

    Args:
        from_status: Current job status
        to_status: Target job status

    Returns:
        True if the transition is allowed, False otherwise
    """
    return to_status in _JOB_TRANSITIONS[from_status]


def validate_job_transition(job_id: str, from_status: JobStatus, to_status: JobStatus) -> None:
    """
    Validate a job state transition, raising an exception if illegal.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if not can_transition_job(from_status, to_status):
        raise InvalidTransitionError(job_id, from_status.value, to_status.value)


def next_stage(current: JobStatus) -> JobStatus:
    """
    Return the status that follows a pipeline stage.

    PACKING is followed by COMPLETED.
    """
    if current not in ACTIVE_JOB_STATES:
        raise ValueError(f"{current.value} is not a pipeline stage")
    index = STAGE_SEQUENCE.index(current)
    if index + 1 < len(STAGE_SEQUENCE):
        return STAGE_SEQUENCE[index + 1]
    return JobStatus.COMPLETED

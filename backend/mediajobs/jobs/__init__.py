"""
Job engine: queue, state machine and events for media jobs.

This module owns job records and their lifecycle.
It does NOT run yt-dlp, ffmpeg or whisper.cpp; see mediajobs.execution
and the PipelineOrchestrator in mediajobs.jobs.orchestrator.
"""

from .errors import (
    JobError,
    ValidationError,
    NotFoundError,
    InvalidTransitionError,
    InvalidStateError,
)
from .events import EventBus, JobEvent, JobEventType, Subscription
from .models import (
    JobStatus,
    PostAction,
    JobOptions,
    JobConfig,
    JobProgress,
    ErrorInfo,
    JobRecord,
    compute_percent,
)
from .queue import JobQueue
from .registry import JobRegistry
from .state import (
    TERMINAL_JOB_STATES,
    STAGE_SEQUENCE,
    can_transition_job,
    is_job_terminal,
    validate_job_transition,
)

__all__ = [
    "JobError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "InvalidStateError",
    "EventBus",
    "JobEvent",
    "JobEventType",
    "Subscription",
    "JobStatus",
    "PostAction",
    "JobOptions",
    "JobConfig",
    "JobProgress",
    "ErrorInfo",
    "JobRecord",
    "compute_percent",
    "JobQueue",
    "JobRegistry",
    "TERMINAL_JOB_STATES",
    "STAGE_SEQUENCE",
    "can_transition_job",
    "is_job_terminal",
    "validate_job_transition",
]

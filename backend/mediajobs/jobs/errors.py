"""
Job-specific error types.

All errors inherit from JobError for easy catching.
Queue operations raise these synchronously; the record is left untouched.
"""

from typing import Any, Dict, Optional


class JobError(Exception):
    """Base exception for all job-related failures."""
    pass


class ValidationError(JobError):
    """Raised when a job configuration is malformed."""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.field = field
        self.details = details or {}
        super().__init__(message)


class NotFoundError(JobError):
    """Raised when a job cannot be found in the queue."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidTransitionError(JobError):
    """Raised when attempting an illegal status transition."""

    def __init__(self, job_id: str, current_status: str, target_status: str):
        self.job_id = job_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Invalid job status transition for {job_id}: "
            f"{current_status} -> {target_status}"
        )


class InvalidStateError(JobError):
    """Raised when an operation is not permitted in the job's current status."""

    def __init__(self, job_id: str, current_status: str, operation: str):
        self.job_id = job_id
        self.current_status = current_status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} job {job_id} while it is {current_status}"
        )

"""
Stage execution errors.

Executors raise StageError for every failure they can classify. The
orchestrator converts it to a job failure; it never crashes the pipeline.

Error codes are namespaced by stage:
    DOWNLOAD_NETWORK_ERROR, EXTRACT_PROCESS_EXIT, TRANSCRIBE_OUTPUT_MISSING, ...
"""

from enum import Enum
from typing import Any, Dict, Optional

from ..jobs.models import ErrorInfo, JobStatus
from ..jobs.registry import INTERRUPTED_ERROR_CODE

# Code used for exceptions no executor classified
UNKNOWN_ERROR_CODE = "UNKNOWN_ERROR"

# Code used when the job store rejected a write mid-pipeline
PERSISTENCE_ERROR_CODE = "PERSISTENCE_ERROR"


class ErrorKind(str, Enum):
    """Failure classes shared by every stage."""

    INVALID_INPUT = "INVALID_INPUT"  # Bad URL, missing input artifact (permanent)
    NETWORK_ERROR = "NETWORK_ERROR"  # Remote fetch failed (transient, download only)
    EXECUTABLE_MISSING = "EXECUTABLE_MISSING"  # Tool or model not installed (permanent)
    PROCESS_EXIT = "PROCESS_EXIT"  # Tool exited non-zero
    TIMEOUT = "TIMEOUT"  # Tool exceeded the stage timeout
    OUTPUT_MISSING = "OUTPUT_MISSING"  # Tool succeeded but produced nothing


STAGE_CODE_PREFIX: Dict[JobStatus, str] = {
    JobStatus.DOWNLOADING: "DOWNLOAD",
    JobStatus.EXTRACTING: "EXTRACT",
    JobStatus.TRANSCRIBING: "TRANSCRIBE",
    JobStatus.PACKING: "PACK",
}

_RETRYABLE_KINDS = (ErrorKind.NETWORK_ERROR, ErrorKind.TIMEOUT, ErrorKind.PROCESS_EXIT)


def error_code(stage: JobStatus, kind: ErrorKind) -> str:
    """Build the namespaced code, e.g. (DOWNLOADING, TIMEOUT) -> DOWNLOAD_TIMEOUT."""
    return f"{STAGE_CODE_PREFIX[stage]}_{kind.value}"


def is_retryable(code: str) -> bool:
    """
    Whether a failure code describes a transient condition worth retrying.

    Retry is always allowed from FAILED; this only informs the user.
    """
    if code in (INTERRUPTED_ERROR_CODE, PERSISTENCE_ERROR_CODE):
        return True
    return any(code.endswith(f"_{kind.value}") for kind in _RETRYABLE_KINDS)


class StageError(Exception):
    """
    A classified stage failure.

    Attributes:
        code: Namespaced error code
        message: Human-readable summary
        details: Extra context (exit code, stderr tail, paths)
    """

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code}] {message}")

    @classmethod
    def for_stage(
        cls,
        stage: JobStatus,
        kind: ErrorKind,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> "StageError":
        return cls(error_code(stage, kind), message, details)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.code)

    def to_error_info(self) -> ErrorInfo:
        details = dict(self.details)
        details.setdefault("retryable", self.retryable)
        return ErrorInfo(code=self.code, message=self.message, details=details)


class StageCancelled(Exception):
    """
    Raised inside an executor when its job's cancellation token trips.

    Not a failure: the job is already CANCELLED and the orchestrator
    stops without calling fail().
    """

    def __init__(self, job_id: str, stage: Optional[JobStatus] = None):
        self.job_id = job_id
        self.stage = stage
        where = f" during {stage.value}" if stage else ""
        super().__init__(f"Job {job_id} cancelled{where}")


class ExecutorNotRegisteredError(Exception):
    """Raised when no executor is registered for a pipeline stage."""

    def __init__(self, stage: JobStatus):
        self.stage = stage
        super().__init__(f"No executor registered for stage {stage.value}")

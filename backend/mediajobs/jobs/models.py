"""
Job record data models.

A job is one request to acquire and process one media URL end-to-end.
The JobRecord is the unit of work owned by the JobQueue.

All models use Pydantic for validation.
State transitions are validated externally (see state.py).
Wire format is camelCase (url, outputDir, keepVideo, ...) for the UI bridge;
Python code uses the snake_case field names.
"""

import math
import uuid
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Timezone-aware current time used for all record timestamps."""
    return datetime.now(timezone.utc)


def generate_job_id() -> str:
    """Generate a job ID of the form job_<ms timestamp>_<random>."""
    return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class JobStatus(str, Enum):
    """
    Job-level status.

    A job moves through the stages in order. Only the JobQueue mutates it.
    """

    PENDING = "PENDING"  # Created or reset for retry, not yet started
    DOWNLOADING = "DOWNLOADING"  # Fetching source media
    EXTRACTING = "EXTRACTING"  # Extracting/converting audio
    TRANSCRIBING = "TRANSCRIBING"  # Offline speech recognition
    PACKING = "PACKING"  # Writing metadata, tidying outputs
    COMPLETED = "COMPLETED"  # All stages succeeded (terminal)
    FAILED = "FAILED"  # A stage failed; retryable
    CANCELLED = "CANCELLED"  # Cancelled by user (terminal)


class PostAction(str, Enum):
    """What to do with the downloaded media."""

    NONE = "none"  # Download only
    EXTRACT = "extract"  # Download + audio extraction
    TRANSCRIBE = "transcribe"  # Download + audio extraction + transcription


class _WireModel(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class JobOptions(_WireModel):
    """
    Immutable configuration snapshot captured at job creation.

    Frozen: options can never change once the job exists.
    """

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    keep_video: bool = False
    language: str = "auto"
    format: Optional[str] = None  # yt-dlp format selector
    audio_bitrate: str = "192k"
    post_action: PostAction = PostAction.TRANSCRIBE
    translate: bool = False
    threads: Optional[int] = Field(default=None, ge=1)

    @field_validator("language")
    @classmethod
    def _language_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("language must not be empty")
        return value

    @field_validator("audio_bitrate")
    @classmethod
    def _bitrate_format(cls, value: str) -> str:
        if not value.endswith("k") or not value[:-1].isdigit():
            raise ValueError(f"audio_bitrate must look like '192k', got '{value}'")
        return value


class JobConfig(_WireModel):
    """Input accepted by JobQueue.add()."""

    url: str
    output_dir: str
    options: JobOptions = Field(default_factory=JobOptions)

    @field_validator("url")
    @classmethod
    def _well_formed_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("url must not be empty")
        parsed = urlparse(value)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"url is not a well-formed absolute URI: '{value}'")
        if any(ch.isspace() for ch in value):
            raise ValueError("url must not contain whitespace")
        return value

    @field_validator("output_dir")
    @classmethod
    def _output_dir_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("output_dir must not be empty")
        if "\x00" in value:
            raise ValueError("output_dir must not contain NUL bytes")
        return value


class JobProgress(_WireModel):
    """Progress within the current stage."""

    current: float = 0
    total: float = 0
    message: str = ""

    @property
    def percent(self) -> int:
        """Rounded percentage; 0 when total is not positive."""
        return compute_percent(self.current, self.total)


class ErrorInfo(_WireModel):
    """Normalized failure detail. Present only while the job is FAILED."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class JobRecord(_WireModel):
    """
    The persisted unit of work.

    Identity and options are fixed at creation. Status, progress, error and
    artifacts change only through JobQueue operations.
    """

    # Identity
    id: str = Field(default_factory=generate_job_id)
    url: str
    output_dir: str

    # Configuration snapshot (frozen)
    options: JobOptions = Field(default_factory=JobOptions)

    # State
    status: JobStatus = JobStatus.PENDING
    progress: JobProgress = Field(default_factory=JobProgress)
    error: Optional[ErrorInfo] = None

    # Named output paths recorded as stages succeed (source, audio, wav, transcript, ...)
    artifacts: Dict[str, str] = Field(default_factory=dict)

    # Number of pipeline runs started
    attempt: int = 0

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.CANCELLED)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def snapshot(self) -> "JobRecord":
        """Detached deep copy for callers outside the queue."""
        return self.model_copy(deep=True)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-safe camelCase dict for events and API responses."""
        return self.model_dump(mode="json", by_alias=True)


def compute_percent(current: float, total: float) -> int:
    """
    Derive an integer percentage for progress events.

    Rounded half-up to whole percent to bound event volume.
    Returns 0 when total <= 0.
    """
    if total <= 0:
        return 0
    return int(math.floor(current / total * 100 + 0.5))

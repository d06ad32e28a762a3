"""
Per-job metadata snapshot.

metadata.json in the job directory describes the job as of its last
stage boundary: inputs, options, current status, per-stage timing and
the artifacts produced so far.

Design principles:
- Rewritten in full at every stage start, finish and failure
- Write failures are logged but never fail the job
- Written atomically (temp file + rename) so readers never see half a file
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..jobs.models import ErrorInfo, JobRecord, utcnow

logger = logging.getLogger(__name__)


class StageOutcome:
    """Values for StageTiming.outcome."""

    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageTiming(BaseModel):
    """Timing and outcome of one pipeline stage."""

    model_config = ConfigDict(extra="forbid")

    outcome: str = StageOutcome.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    message: str = ""
    error: Optional[ErrorInfo] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


class JobMetadata(BaseModel):
    """Contents of metadata.json."""

    model_config = ConfigDict(extra="forbid")

    # ==================== IDENTITY ====================
    job_id: str
    url: str
    created_at: datetime

    # ==================== INPUTS ====================
    options: Dict[str, Any] = Field(default_factory=dict)

    # ==================== STATE ====================
    status: str
    attempt: int = 0
    updated_at: datetime = Field(default_factory=utcnow)
    error: Optional[ErrorInfo] = None

    # ==================== STAGES ====================
    # Stage name (DOWNLOADING, ...) -> timing, for the current attempt
    stages: Dict[str, StageTiming] = Field(default_factory=dict)

    # ==================== OUTPUTS ====================
    artifacts: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_job(cls, job: JobRecord) -> "JobMetadata":
        return cls(
            job_id=job.id,
            url=job.url,
            created_at=job.created_at,
            options=job.options.model_dump(mode="json"),
            status=job.status.value,
            attempt=job.attempt,
            updated_at=job.updated_at,
            error=job.error,
            artifacts=dict(job.artifacts),
        )

    def refresh(self, job: JobRecord) -> None:
        """Copy mutable job state into the snapshot."""
        self.status = job.status.value
        self.attempt = job.attempt
        self.updated_at = job.updated_at
        self.error = job.error
        self.artifacts = dict(job.artifacts)

    def start_stage(self, stage: str) -> None:
        self.stages[stage] = StageTiming()

    def finish_stage(
        self,
        stage: str,
        outcome: str,
        message: str = "",
        error: Optional[ErrorInfo] = None,
    ) -> None:
        timing = self.stages.get(stage) or StageTiming()
        timing.outcome = outcome
        timing.finished_at = utcnow()
        timing.message = message
        timing.error = error
        self.stages[stage] = timing


class MetadataWriter:
    """Writes JobMetadata to <job_dir>/metadata.json."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def write(self, metadata: JobMetadata) -> bool:
        """
        Write the snapshot.

        Returns:
            True on success, False if the write failed (already logged)
        """
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(metadata.model_dump_json(indent=2))
            os.replace(tmp_path, self.path)
            return True
        except OSError as e:
            logger.error(f"[METADATA] Failed to write metadata for job {metadata.job_id}: {e}")
            return False

    def load(self) -> Optional[JobMetadata]:
        """Read the snapshot back, or None if it is missing or unreadable."""
        if not self.path.is_file():
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                return JobMetadata.model_validate(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning(f"[METADATA] Could not read {self.path}: {e}")
            return None

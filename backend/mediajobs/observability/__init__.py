"""
Observability module for mediajobs.

Per-job artifacts a user can inspect in the job directory:
- logs.txt: the job's pipeline log
- metadata.json: job snapshot with per-stage timing

This module does NOT:
- Change job state
- Fail jobs when a write fails
"""

from .job_log import JobLog, PIPELINE_LOGGER_NAME
from .metadata import JobMetadata, MetadataWriter, StageOutcome, StageTiming

__all__ = [
    "JobLog",
    "PIPELINE_LOGGER_NAME",
    "JobMetadata",
    "MetadataWriter",
    "StageOutcome",
    "StageTiming",
]

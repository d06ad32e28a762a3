"""
Stage execution for mediajobs.

Executors wrap yt-dlp, ffmpeg and whisper.cpp behind the StageExecutor
contract; the orchestrator drives them one stage at a time.
"""

from .base import CancellationToken, ProgressCallback, StageContext, StageExecutor, StageResult
from .errors import (
    ErrorKind,
    ExecutorNotRegisteredError,
    StageCancelled,
    StageError,
    UNKNOWN_ERROR_CODE,
    PERSISTENCE_ERROR_CODE,
    error_code,
    is_retryable,
)
from .executor_registry import ExecutorRegistry
from .scheduler import StageScheduler

__all__ = [
    "CancellationToken",
    "ProgressCallback",
    "StageContext",
    "StageExecutor",
    "StageResult",
    "ErrorKind",
    "ExecutorNotRegisteredError",
    "StageCancelled",
    "StageError",
    "UNKNOWN_ERROR_CODE",
    "PERSISTENCE_ERROR_CODE",
    "error_code",
    "is_retryable",
    "ExecutorRegistry",
    "StageScheduler",
]

"""
Stage executor abstraction layer.

One StageExecutor implementation per pipeline stage (download, extract,
transcribe, pack). Executors wrap third-party binaries and report
progress through a callback; they never touch the JobQueue.

Design rules:
- Executors are stateless; all job context is passed per call
- Success returns a StageResult; failure raises StageError
- Cancellation is cooperative: executors watch the CancellationToken and
  raise StageCancelled once it trips
- An executor that has nothing to do for the job's post_action returns a
  skipped result immediately
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from ..jobs.models import JobRecord, JobStatus
from .errors import StageCancelled

# (current, total, message)
ProgressCallback = Callable[[float, float, str], None]


class CancellationToken:
    """
    Thread-safe cancellation flag for one pipeline run.

    Tripped by the orchestrator when the job is cancelled or the
    orchestrator shuts down. Callbacks run once, on the tripping thread.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """
        Trip the token.

        Returns:
            False if it was already tripped
        """
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []

        for callback in callbacks:
            try:
                callback()
            except Exception:
                logging.getLogger(__name__).exception("[CANCEL] Cancellation callback raised")
        return True

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancel (immediately if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self, job_id: str, stage: Optional[JobStatus] = None) -> None:
        if self.cancelled:
            raise StageCancelled(job_id, stage)


@dataclass
class StageContext:
    """
    Per-invocation context handed to an executor.

    artifacts holds the paths recorded by earlier stages of this run.
    """

    job_dir: Path
    artifacts: Dict[str, str] = field(default_factory=dict)
    log: Union[logging.Logger, logging.LoggerAdapter] = field(
        default_factory=lambda: logging.getLogger("mediajobs.pipeline")
    )

    def artifact(self, name: str) -> Optional[Path]:
        value = self.artifacts.get(name)
        return Path(value) if value else None


@dataclass
class StageResult:
    """
    Outcome of a successful stage.

    artifacts: new or updated named outputs
    removed: artifact names whose files were deleted
    """

    artifacts: Dict[str, str] = field(default_factory=dict)
    removed: List[str] = field(default_factory=list)
    skipped: bool = False
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def skip(cls, reason: str) -> "StageResult":
        return cls(skipped=True, message=reason)


class StageExecutor(ABC):
    """
    Abstract base class for stage executors.

    All executors must implement:
    - stage: the JobStatus they run in
    - name: label for logs
    - execute: run the stage for one job
    """

    @property
    @abstractmethod
    def stage(self) -> JobStatus:
        """Pipeline stage this executor implements."""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable executor name for logs and UI."""
        pass

    @property
    def available(self) -> bool:
        """
        Check if the executor's tooling is present on this system.

        Informational only; execute() reports a missing tool as StageError.
        """
        return True

    @abstractmethod
    async def execute(
        self,
        job: JobRecord,
        context: StageContext,
        on_progress: ProgressCallback,
        cancel_token: CancellationToken,
    ) -> StageResult:
        """
        Run the stage.

        Args:
            job: Snapshot of the job record
            context: Job directory, prior artifacts and job logger
            on_progress: Callback receiving (current, total, message)
            cancel_token: Token to watch for cancellation

        Returns:
            StageResult describing produced artifacts

        Raises:
            StageError: On any classified failure
            StageCancelled: If cancel_token trips mid-stage
        """
        pass

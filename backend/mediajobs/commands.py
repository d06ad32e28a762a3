"""
Job command surface.

The operations a user interface invokes: create, list, get, cancel,
retry, cleanup, open_directory and stats. Transport adapters (the HTTP
routes, the CLI) call these and translate the results.

Every job gets its own directory <output root>/<job_id>, created here and
removed again by cleanup.

create() and retry() start pipelines and must be called from within the
running event loop.
"""

import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .jobs.errors import InvalidStateError, ValidationError
from .jobs.models import JobRecord, JobStatus, generate_job_id
from .jobs.orchestrator import PipelineOrchestrator
from .jobs.queue import JobQueue

logger = logging.getLogger(__name__)


def open_in_file_manager(path: Path) -> None:
    """Reveal a directory in the platform file manager."""
    if sys.platform == "darwin":
        subprocess.Popen(["open", str(path)])
    elif os.name == "nt":
        os.startfile(str(path))  # type: ignore[attr-defined]
    else:
        subprocess.Popen(["xdg-open", str(path)])


class JobCommands:
    """
    Command handlers bound to one queue and orchestrator.

    Args:
        queue: The JobQueue
        orchestrator: Runs the pipelines
        downloads_dir: Output root used when a request names none
        opener: Called with a directory path by open_directory()
    """

    def __init__(
        self,
        queue: JobQueue,
        orchestrator: PipelineOrchestrator,
        downloads_dir: Union[str, Path],
        opener: Optional[Callable[[Path], None]] = None,
    ):
        self.queue = queue
        self.orchestrator = orchestrator
        self.downloads_dir = Path(downloads_dir)
        self.opener = opener or open_in_file_manager

    def create(self, request: Mapping[str, Any], start: bool = True) -> JobRecord:
        """
        Create a job and (by default) start its pipeline.

        Args:
            request: {url, outputDir?, options?}; outputDir is the root the
                per-job directory is created under
            start: Submit to the orchestrator immediately

        Returns:
            Snapshot of the new job

        Raises:
            ValidationError: If the request is malformed
        """
        if not isinstance(request, Mapping):
            raise ValidationError("Request must be an object")

        payload = dict(request)
        root = payload.pop("outputDir", None) or payload.pop("output_dir", None) or self.downloads_dir
        if not isinstance(root, (str, Path)) or not str(root).strip():
            raise ValidationError("outputDir must be a non-empty path", field="outputDir")

        job_id = generate_job_id()
        job_dir = Path(root).expanduser() / job_id
        payload["output_dir"] = str(job_dir)

        job = self.queue.add(payload, job_id=job_id)

        try:
            job_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # The pipeline will fail the job at download if the directory is unusable
            logger.error(f"[COMMAND] Could not create job directory {job_dir}: {e}")

        if start:
            self.orchestrator.submit(job.id)
        return job

    def get(self, job_id: str) -> JobRecord:
        """
        Raises:
            NotFoundError: If the job does not exist
        """
        return self.queue.get_or_raise(job_id)

    def list(self, status: Optional[Union[JobStatus, str]] = None) -> List[JobRecord]:
        if status is None:
            return self.queue.list()
        return self.queue.list_by_status(status)

    def cancel(self, job_id: str) -> JobRecord:
        """
        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the job is COMPLETED, CANCELLED or FAILED
        """
        return self.orchestrator.cancel(job_id)

    def retry(self, job_id: str) -> JobRecord:
        """
        Restart a FAILED job from the beginning.

        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the job is not FAILED
        """
        self.orchestrator.retry(job_id)
        return self.queue.get_or_raise(job_id)

    def cleanup(self, job_id: str, remove_files: bool = True) -> JobRecord:
        """
        Remove a finished job and (by default) its job directory.

        Only a directory named after the job is deleted, so an output root
        passed in by hand is never removed.

        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the job is PENDING or still running
        """
        removed = self.queue.cleanup(job_id)

        if remove_files:
            job_dir = Path(removed.output_dir)
            if job_dir.name == removed.id and job_dir.is_dir():
                try:
                    shutil.rmtree(job_dir)
                    logger.info(f"[COMMAND] Removed job directory {job_dir}")
                except OSError as e:
                    logger.warning(f"[COMMAND] Could not remove job directory {job_dir}: {e}")

        return removed

    def open_directory(self, job_id: str) -> Path:
        """
        Open the job directory in the platform file manager.

        Returns:
            The directory path

        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the directory does not exist on disk
        """
        job = self.queue.get_or_raise(job_id)
        job_dir = Path(job.output_dir)
        if not job_dir.is_dir():
            raise InvalidStateError(job_id, job.status.value, "open the directory of")
        self.opener(job_dir)
        return job_dir

    def stats(self) -> Dict[str, Any]:
        return self.queue.stats()

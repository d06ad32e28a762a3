"""
In-memory job registry.

Storage for JobRecords, keyed by ID and kept in creation order.
Only the JobQueue talks to the registry; it provides the locking.

The registry provides:
- Record storage and retrieval by ID
- Listing in creation order
- ID reservation (a removed ID is never handed out again)
- Explicit save/load through an optional PersistenceManager
"""

import logging
from typing import Dict, List, Optional, Set

from .models import ErrorInfo, JobProgress, JobRecord, JobStatus, utcnow
from .state import ACTIVE_JOB_STATES
from .errors import NotFoundError

logger = logging.getLogger(__name__)

# Error code given to jobs that were mid-pipeline when the process stopped
INTERRUPTED_ERROR_CODE = "JOB_INTERRUPTED"


class JobRegistry:
    """
    In-memory registry for job records.

    Not thread-safe on its own; callers serialize access.
    """

    def __init__(self, persistence_manager=None):
        """
        Initialize registry.

        Args:
            persistence_manager: Optional PersistenceManager for save/load
        """
        # job_id -> JobRecord, insertion order == creation order
        self._jobs: Dict[str, JobRecord] = {}
        # Every ID ever stored, including removed ones
        self._reserved_ids: Set[str] = set()
        self._persistence = persistence_manager

    @property
    def persistent(self) -> bool:
        return self._persistence is not None

    def is_reserved(self, job_id: str) -> bool:
        return job_id in self._reserved_ids

    def add_job(self, job: JobRecord) -> None:
        """
        Add a record to the registry.

        Raises:
            ValueError: If the ID is already in use or was used before
        """
        if job.id in self._reserved_ids:
            raise ValueError(f"Job ID '{job.id}' has already been used")

        self._jobs[job.id] = job
        self._reserved_ids.add(job.id)

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    def get_job_or_raise(self, job_id: str) -> JobRecord:
        """
        Retrieve a record by ID, raising an exception if not found.

        Raises:
            NotFoundError: If the job does not exist
        """
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return job

    def list_jobs(self) -> List[JobRecord]:
        """List all records, oldest first."""
        return list(self._jobs.values())

    def replace_job(self, job: JobRecord) -> None:
        """
        Swap in an updated copy of an existing record.

        Raises:
            NotFoundError: If the job does not exist
        """
        if job.id not in self._jobs:
            raise NotFoundError(job.id)
        self._jobs[job.id] = job

    def remove_job(self, job_id: str) -> JobRecord:
        """
        Remove a record. The ID stays reserved.

        Raises:
            NotFoundError: If the job does not exist
        """
        if job_id not in self._jobs:
            raise NotFoundError(job_id)

        return self._jobs.pop(job_id)

    def clear(self) -> None:
        """
        Clear all records. IDs stay reserved.

        Useful for testing or resetting state.
        """
        self._jobs.clear()

    def count(self) -> int:
        return len(self._jobs)

    # Persistence operations

    def save_job(self, job: JobRecord) -> None:
        """
        Save a record to persistent storage. No-op without a persistence manager.

        Progress is not persisted; it is reset on every stage change.
        """
        if not self._persistence:
            return

        self._persistence.save_job({
            "id": job.id,
            "url": job.url,
            "output_dir": job.output_dir,
            "options": job.options.model_dump(mode="json"),
            "status": job.status.value,
            "error": job.error.model_dump(mode="json") if job.error else None,
            "artifacts": dict(job.artifacts),
            "attempt": job.attempt,
            "created_at": job.created_at.isoformat(),
            "updated_at": job.updated_at.isoformat(),
        })

    def remove_saved_job(self, job_id: str) -> None:
        """Tombstone a record in storage so its ID stays reserved after a restart."""
        if not self._persistence:
            return
        self._persistence.mark_removed(job_id)

    def load_all_jobs(self) -> List[JobRecord]:
        """
        Load all records from persistent storage into memory.

        Called explicitly at startup to restore state.
        Records caught mid-pipeline become FAILED with JOB_INTERRUPTED so
        they can be retried; nothing resumes automatically. IDs of
        cleaned-up jobs are reserved as well.

        Returns:
            The loaded records, oldest first

        Raises:
            ValueError: If persistence_manager is not configured
        """
        if not self._persistence:
            raise ValueError("No persistence_manager configured for JobRegistry")

        loaded: List[JobRecord] = []
        for job_data in self._persistence.load_all_jobs():
            job = JobRecord.model_validate({
                "id": job_data["id"],
                "url": job_data["url"],
                "output_dir": job_data["output_dir"],
                "options": job_data["options"],
                "status": job_data["status"],
                "error": job_data["error"],
                "artifacts": job_data["artifacts"],
                "attempt": job_data["attempt"],
                "created_at": job_data["created_at"],
                "updated_at": job_data["updated_at"],
            })
            job.progress = JobProgress()

            if job.status in ACTIVE_JOB_STATES:
                interrupted_stage = job.status.value
                job.status = JobStatus.FAILED
                job.error = ErrorInfo(
                    code=INTERRUPTED_ERROR_CODE,
                    message=f"Job was interrupted during {interrupted_stage}",
                    details={"stage": interrupted_stage},
                )
                job.updated_at = utcnow()
                logger.warning(f"[RECOVERY] Job {job.id} was {interrupted_stage} at shutdown, marked FAILED")
                self.save_job(job)

            if job.id in self._reserved_ids:
                logger.warning(f"[RECOVERY] Skipping duplicate persisted job {job.id}")
                continue

            self._jobs[job.id] = job
            self._reserved_ids.add(job.id)
            loaded.append(job)

        removed_ids = self._persistence.load_removed_ids()
        self._reserved_ids.update(removed_ids)
        if removed_ids:
            logger.info(f"[RECOVERY] {len(removed_ids)} cleaned-up job ID(s) stay reserved")

        return loaded

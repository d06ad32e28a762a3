"""
Job queue: sole owner of JobRecord state.

Every status, progress, error and artifact change goes through here.
The queue enforces the state machine (state.py), persists through the
registry when persistence is configured, and publishes one event per
mutation on the EventBus.

Concurrency:
- Each job has its own re-entrant lock; all mutation of that record and
  publication of its events happens while the lock is held, so a job's
  events are delivered in the same order as its transitions
- Distinct jobs never contend on each other's locks
- Mutations are copy-on-write: the stored record is only swapped after
  validation and persistence succeed, so a failed operation leaves it untouched.
  Entering FAILED is the exception: it is kept even if the store rejects it
- Public methods return detached snapshots, never the stored record
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..persistence.errors import PersistenceError
from .errors import InvalidStateError, NotFoundError, ValidationError
from .events import EventBus, JobEventType, Listener, Subscription, make_event
from .models import ErrorInfo, JobConfig, JobProgress, JobRecord, JobStatus, compute_percent, utcnow
from .registry import JobRegistry
from .state import (
    ACTIVE_JOB_STATES,
    REMOVABLE_JOB_STATES,
    TERMINAL_JOB_STATES,
    validate_job_transition,
)

logger = logging.getLogger(__name__)


def _coerce_status(value: Union[JobStatus, str]) -> JobStatus:
    try:
        return JobStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown job status: {value!r}", field="status")


def _pydantic_errors(exc: PydanticValidationError) -> List[Dict[str, Any]]:
    return [
        {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
        for err in exc.errors()
    ]


class JobQueue:
    """
    Registry plus state machine for job records.

    Constructed once at process start and injected into the orchestrator
    and the command layer.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        registry: Optional[JobRegistry] = None,
    ):
        """
        Initialize the queue.

        Args:
            event_bus: Bus to publish events on (a private one is created if omitted)
            registry: Record storage (an in-memory one is created if omitted)
        """
        self.event_bus = event_bus or EventBus()
        self._registry = registry or JobRegistry()
        self._registry_lock = threading.RLock()
        self._job_locks: Dict[str, threading.RLock] = {}

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self, job_id: str) -> Iterator[JobRecord]:
        """Hold the job's lock and yield the current stored record."""
        with self._registry_lock:
            lock = self._job_locks.get(job_id)
        if lock is None:
            raise NotFoundError(job_id)

        with lock:
            # The job may have been removed while we waited for its lock
            with self._registry_lock:
                job = self._registry.get_job(job_id)
            if job is None:
                raise NotFoundError(job_id)
            yield job

    def _commit(self, updated: JobRecord, best_effort: bool = False) -> None:
        """
        Persist then store an updated copy. Caller holds the job lock.

        With best_effort a failed write is logged and the copy is stored
        anyway; otherwise the PersistenceError propagates and the stored
        record is left untouched.
        """
        updated.touch()
        try:
            self._registry.save_job(updated)
        except PersistenceError as e:
            if not best_effort:
                raise
            logger.error(f"[PERSISTENCE] Job {updated.id} kept in memory as {updated.status.value}: {e}")
        with self._registry_lock:
            self._registry.replace_job(updated)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def add(
        self,
        config: Union[JobConfig, Mapping[str, Any]],
        job_id: Optional[str] = None,
    ) -> JobRecord:
        """
        Validate a configuration and create a PENDING job.

        Args:
            config: JobConfig, or a mapping with url, output_dir/outputDir and options
            job_id: Pre-allocated ID (see generate_job_id); generated if omitted

        Returns:
            Snapshot of the new record

        Raises:
            ValidationError: If url, output_dir or options are malformed, or job_id was already used
        """
        if not isinstance(config, JobConfig):
            if not isinstance(config, Mapping):
                raise ValidationError("Job configuration must be a mapping")
            try:
                config = JobConfig.model_validate(dict(config))
            except PydanticValidationError as e:
                errors = _pydantic_errors(e)
                first = errors[0] if errors else {"loc": None, "msg": str(e)}
                raise ValidationError(
                    f"Invalid job configuration: {first['loc']}: {first['msg']}",
                    field=first["loc"],
                    details={"errors": errors},
                ) from e

        fields = {"url": config.url, "output_dir": config.output_dir, "options": config.options}
        job = JobRecord(id=job_id, **fields) if job_id else JobRecord(**fields)

        lock = threading.RLock()
        with self._registry_lock:
            if job_id and self._registry.is_reserved(job_id):
                raise ValidationError(f"Job ID already used: {job_id}", field="id")
            while self._registry.is_reserved(job.id):
                job = JobRecord(**fields)
            self._registry.save_job(job)
            self._registry.add_job(job)
            self._job_locks[job.id] = lock
            # Held before release so job:created precedes any other event for this job
            lock.acquire()

        try:
            snapshot = job.snapshot()
            logger.info(f"[LIFECYCLE] Job {job.id} created for {job.url}")
            self.event_bus.publish(
                make_event(JobEventType.CREATED, job.id, job.created_at, job=snapshot.to_wire())
            )
        finally:
            lock.release()

        return snapshot

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(
        self,
        job: JobRecord,
        new_status: JobStatus,
        error: Optional[ErrorInfo] = None,
    ) -> JobRecord:
        """
        Apply a validated status change to a copy of job, commit it and publish.

        Caller holds the job lock.
        """
        validate_job_transition(job.id, job.status, new_status)

        old_status = job.status
        updated = job.model_copy(deep=True)
        updated.status = new_status
        updated.progress = JobProgress()

        if new_status == JobStatus.FAILED:
            updated.error = error or ErrorInfo(code="UNKNOWN_ERROR", message="Job failed")
        else:
            updated.error = None

        if old_status == JobStatus.PENDING and new_status == JobStatus.DOWNLOADING:
            updated.attempt += 1

        if old_status == JobStatus.FAILED and new_status == JobStatus.PENDING:
            # Retry restarts the pipeline; previous outputs are stale
            updated.artifacts = {}

        # A FAILED row that cannot be written is recovered as JOB_INTERRUPTED on restart
        self._commit(updated, best_effort=new_status == JobStatus.FAILED)

        logger.info(f"[LIFECYCLE] Job {job.id} transitioned: {old_status.value} -> {new_status.value}")

        self.event_bus.publish(make_event(
            JobEventType.STAGE_CHANGED,
            job.id,
            updated.updated_at,
            oldStatus=old_status.value,
            newStatus=new_status.value,
        ))
        if new_status == JobStatus.FAILED:
            self.event_bus.publish(make_event(
                JobEventType.FAILED,
                job.id,
                updated.updated_at,
                error=updated.error.model_dump(mode="json"),
            ))
        elif new_status == JobStatus.CANCELLED:
            self.event_bus.publish(make_event(JobEventType.CANCELLED, job.id, updated.updated_at))

        return updated.snapshot()

    def advance_stage(
        self,
        job_id: str,
        new_status: Union[JobStatus, str],
        error: Optional[Union[ErrorInfo, Mapping[str, Any]]] = None,
    ) -> JobRecord:
        """
        Move a job along one state-machine edge.

        Resets progress, clears error when leaving FAILED and emits
        job:stage-changed. Entering FAILED or CANCELLED this way behaves like
        fail()/cancel().

        Raises:
            NotFoundError: If the job does not exist
            InvalidTransitionError: If new_status is not reachable from the current status
        """
        target = _coerce_status(new_status)
        error_info = self._coerce_error(error) if error is not None else None
        with self._locked(job_id) as job:
            return self._transition(job, target, error_info)

    def fail(self, job_id: str, error: Union[ErrorInfo, Mapping[str, Any]]) -> JobRecord:
        """
        Transition a job to FAILED with error detail.

        Args:
            job_id: Job identifier
            error: ErrorInfo or mapping with code, message and optional details

        Raises:
            NotFoundError: If the job does not exist
            InvalidTransitionError: If the job is not in an active stage
            ValidationError: If error lacks code or message
        """
        error_info = self._coerce_error(error)
        with self._locked(job_id) as job:
            logger.error(f"[LIFECYCLE] Job {job_id} failing with {error_info.code}: {error_info.message}")
            return self._transition(job, JobStatus.FAILED, error_info)

    def cancel(self, job_id: str) -> JobRecord:
        """
        Cancel a job that is PENDING or in an active stage.

        Cooperative: the status flips immediately, the orchestrator notices
        at its next check and aborts any in-flight executor.

        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the job is COMPLETED, CANCELLED or FAILED
        """
        with self._locked(job_id) as job:
            if job.status in TERMINAL_JOB_STATES or job.status == JobStatus.FAILED:
                raise InvalidStateError(job_id, job.status.value, "cancel")
            return self._transition(job, JobStatus.CANCELLED)

    def reset_for_retry(self, job_id: str) -> JobRecord:
        """
        Move a FAILED job back to PENDING, clearing its error and artifacts.

        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the job is not FAILED
        """
        with self._locked(job_id) as job:
            if job.status != JobStatus.FAILED:
                raise InvalidStateError(job_id, job.status.value, "retry")
            return self._transition(job, JobStatus.PENDING)

    @staticmethod
    def _coerce_error(error: Union[ErrorInfo, Mapping[str, Any]]) -> ErrorInfo:
        if isinstance(error, ErrorInfo):
            return error
        if isinstance(error, Mapping):
            try:
                return ErrorInfo.model_validate(dict(error))
            except PydanticValidationError as e:
                raise ValidationError(
                    "Error info requires code and message",
                    field="error",
                    details={"errors": _pydantic_errors(e)},
                ) from e
        to_error_info = getattr(error, "to_error_info", None)
        if callable(to_error_info):
            return to_error_info()
        raise ValidationError("Error info must be an ErrorInfo or a mapping", field="error")

    # ------------------------------------------------------------------
    # Progress and artifacts
    # ------------------------------------------------------------------

    def update_progress(
        self,
        job_id: str,
        current: float,
        total: float = 100,
        message: str = "",
    ) -> JobRecord:
        """
        Overwrite the job's progress and emit job:progress.

        percent = round(current / total * 100), or 0 when total <= 0.
        Updates are only accepted while the job is in a pipeline stage. Those
        arriving for a PENDING job, or after it became FAILED, COMPLETED or
        CANCELLED, are dropped; progress never precedes the stage it belongs to
        and late callbacks come from executors that were already aborted.

        Raises:
            NotFoundError: If the job does not exist
            ValidationError: If current or total is not a number
        """
        try:
            current = float(current)
            total = float(total)
        except (TypeError, ValueError):
            raise ValidationError("Progress current and total must be numbers", field="progress")

        with self._locked(job_id) as job:
            if job.status not in ACTIVE_JOB_STATES:
                logger.debug(f"[PROGRESS] Ignoring progress for {job_id} in {job.status.value}")
                return job.snapshot()

            updated = job.model_copy(deep=True)
            updated.progress = JobProgress(current=current, total=total, message=message or "")
            updated.touch()
            # Progress is transient; not written to storage
            with self._registry_lock:
                self._registry.replace_job(updated)

            self.event_bus.publish(make_event(
                JobEventType.PROGRESS,
                job_id,
                updated.updated_at,
                stage=updated.status.value,
                current=current,
                total=total,
                message=updated.progress.message,
                percent=compute_percent(current, total),
            ))
            return updated.snapshot()

    def record_artifacts(self, job_id: str, **paths: Any) -> JobRecord:
        """
        Record named output paths for the job (source, audio, transcript, ...).

        A value of None forgets that artifact.

        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the job is COMPLETED or CANCELLED
        """
        with self._locked(job_id) as job:
            if job.status in TERMINAL_JOB_STATES:
                raise InvalidStateError(job_id, job.status.value, "record artifacts for")
            updated = job.model_copy(deep=True)
            for name, path in paths.items():
                if path is None:
                    updated.artifacts.pop(name, None)
                else:
                    updated.artifacts[name] = str(path)
            self._commit(updated)
            return updated.snapshot()

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def cleanup(self, job_id: str) -> JobRecord:
        """
        Remove a COMPLETED, CANCELLED or FAILED job from the queue.

        The on-disk job directory is the caller's concern.

        Returns:
            Snapshot of the removed record

        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the job is PENDING or in an active stage
        """
        with self._locked(job_id) as job:
            if job.status not in REMOVABLE_JOB_STATES:
                raise InvalidStateError(job_id, job.status.value, "clean up")

            self._registry.remove_saved_job(job_id)
            with self._registry_lock:
                removed = self._registry.remove_job(job_id)
                self._job_locks.pop(job_id, None)

            logger.info(f"[LIFECYCLE] Job {job_id} removed ({removed.status.value})")
            self.event_bus.publish(make_event(JobEventType.REMOVED, job_id))
            return removed.snapshot()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._registry_lock:
            job = self._registry.get_job(job_id)
            return job.snapshot() if job else None

    def get_or_raise(self, job_id: str) -> JobRecord:
        """
        Raises:
            NotFoundError: If the job does not exist
        """
        with self._registry_lock:
            return self._registry.get_job_or_raise(job_id).snapshot()

    def status_of(self, job_id: str) -> JobStatus:
        """Current status without copying the whole record."""
        with self._registry_lock:
            return self._registry.get_job_or_raise(job_id).status

    def list(self) -> List[JobRecord]:
        """All jobs in creation order."""
        with self._registry_lock:
            return [job.snapshot() for job in self._registry.list_jobs()]

    def list_by_status(self, status: Union[JobStatus, str]) -> List[JobRecord]:
        target = _coerce_status(status)
        return [job for job in self.list() if job.status == target]

    def count(self) -> int:
        with self._registry_lock:
            return self._registry.count()

    def stats(self) -> Dict[str, Any]:
        """
        Aggregate counts.

        Returns:
            Dict with total, pending, in_progress, completed, failed,
            cancelled and by_status (every status, including zero counts)
        """
        with self._registry_lock:
            statuses = [job.status for job in self._registry.list_jobs()]

        by_status = {status.value: 0 for status in JobStatus}
        for status in statuses:
            by_status[status.value] += 1

        return {
            "total": len(statuses),
            "pending": by_status[JobStatus.PENDING.value],
            "in_progress": sum(by_status[s.value] for s in ACTIVE_JOB_STATES),
            "completed": by_status[JobStatus.COMPLETED.value],
            "failed": by_status[JobStatus.FAILED.value],
            "cancelled": by_status[JobStatus.CANCELLED.value],
            "by_status": by_status,
        }

    # ------------------------------------------------------------------
    # Subscriptions and persistence
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Subscription:
        """Register an event listener. See EventBus.subscribe()."""
        return self.event_bus.subscribe(listener)

    def load(self) -> List[JobRecord]:
        """
        Restore persisted jobs. Call once at startup, before any add().

        Returns:
            Snapshots of the restored records, oldest first
        """
        with self._registry_lock:
            loaded = self._registry.load_all_jobs()
            for job in loaded:
                self._job_locks[job.id] = threading.RLock()
        logger.info(f"[RECOVERY] Restored {len(loaded)} job(s) from storage")
        return [job.snapshot() for job in loaded]

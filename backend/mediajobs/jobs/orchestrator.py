"""
Pipeline orchestrator: drives each job through its stages.

For every stage in DOWNLOADING -> EXTRACTING -> TRANSCRIBING -> PACKING:
    1. Stop quietly if the job was cancelled
    2. advance_stage() into the stage
    3. Run the stage's executor inside a scheduler slot, forwarding its
       progress to update_progress()
    4. On failure, fail() the job and stop
After PACKING the job is advanced to COMPLETED.

Design rules:
- The orchestrator never mutates records itself; every change goes
  through the JobQueue
- One asyncio.Task per run; a job never has two runs at once
- Cancellation is cooperative: the queue flips status first, the
  orchestrator trips the run's CancellationToken and the executor aborts
- Unclassified executor exceptions become UNKNOWN_ERROR and rejected job
  store writes become PERSISTENCE_ERROR; nothing escapes the run task
  except asyncio cancellation
- retry() restarts the whole pipeline from DOWNLOADING
"""

import asyncio
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from ..execution.base import CancellationToken, StageContext, StageResult
from ..execution.errors import PERSISTENCE_ERROR_CODE, UNKNOWN_ERROR_CODE, StageCancelled, StageError
from ..execution.executor_registry import ExecutorRegistry
from ..execution.paths import JobPaths, ensure_directory
from ..execution.scheduler import StageScheduler
from ..observability.job_log import JobLog
from ..observability.metadata import JobMetadata, MetadataWriter, StageOutcome
from ..persistence.errors import PersistenceError
from .errors import InvalidStateError, InvalidTransitionError, JobError, NotFoundError
from .events import JobEvent, JobEventType
from .models import ErrorInfo, JobRecord, JobStatus
from .queue import JobQueue
from .state import STAGE_SEQUENCE

logger = logging.getLogger(__name__)


class _RunStopped(Exception):
    """Internal: the job left the pipeline's control (cancelled or removed)."""


class PipelineOrchestrator:
    """
    Runs job pipelines on the current asyncio event loop.

    submit(), retry() must be called from within the running loop.
    cancel() may be called from any thread.
    """

    def __init__(
        self,
        queue: JobQueue,
        executors: ExecutorRegistry,
        scheduler: Optional[StageScheduler] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            queue: The JobQueue owning all records
            executors: Stage -> executor lookup
            scheduler: Concurrency bound for executor calls (default: 2 slots)
        """
        self.queue = queue
        self.executors = executors
        self.scheduler = scheduler or StageScheduler()

        self._lock = threading.Lock()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}

        # Cancels issued straight on the queue still abort in-flight executors
        self._subscription = queue.subscribe(self._on_job_event)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, job_id: str) -> asyncio.Task:
        """
        Start the pipeline for a PENDING job.

        Returns:
            The asyncio.Task running the pipeline

        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the job is not PENDING or is already running
        """
        job = self.queue.get_or_raise(job_id)
        if job.status != JobStatus.PENDING:
            raise InvalidStateError(job_id, job.status.value, "start")

        loop = asyncio.get_running_loop()
        token = CancellationToken()
        with self._lock:
            existing = self._tasks.get(job_id)
            if existing is not None and not existing.done():
                raise InvalidStateError(job_id, job.status.value, "start")
            task = loop.create_task(self._run(job_id, token), name=f"pipeline-{job_id}")
            self._tasks[job_id] = task
            self._tokens[job_id] = token

        task.add_done_callback(lambda t, jid=job_id: self._forget(jid, t))
        logger.info(f"[PIPELINE] Job {job_id} submitted")
        return task

    def retry(self, job_id: str) -> asyncio.Task:
        """
        Re-run a FAILED job from the start.

        Clears error and artifacts (FAILED -> PENDING) and resubmits.

        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the job is not FAILED
        """
        self.queue.reset_for_retry(job_id)
        logger.info(f"[PIPELINE] Job {job_id} reset for retry")
        return self.submit(job_id)

    def cancel(self, job_id: str) -> JobRecord:
        """
        Cancel a job and abort its in-flight executor.

        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the job is COMPLETED, CANCELLED or FAILED
        """
        return self.queue.cancel(job_id)

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(job_id)
            return task is not None and not task.done()

    @property
    def running_job_ids(self) -> List[str]:
        with self._lock:
            return [job_id for job_id, task in self._tasks.items() if not task.done()]

    # ------------------------------------------------------------------
    # Waiting and shutdown
    # ------------------------------------------------------------------

    async def wait(self, job_id: str) -> Optional[JobRecord]:
        """
        Wait for the job's current run (if any) to finish.

        Returns:
            The job's record afterwards, or None if it was removed
        """
        with self._lock:
            task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.queue.get(job_id)

    async def drain(self) -> None:
        """Wait until no pipeline is running, including ones submitted meanwhile."""
        while True:
            with self._lock:
                pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """
        Abort every running pipeline and wait for the tasks to end.

        Jobs are left in their current stage; the next startup's load()
        marks them FAILED with JOB_INTERRUPTED.
        """
        with self._lock:
            job_ids = list(self._tokens)
        for job_id in job_ids:
            self._trip(job_id, "shutdown")
        await self.drain()
        self._subscription.unsubscribe()
        logger.info(f"[PIPELINE] Orchestrator shut down ({len(job_ids)} run(s) aborted)")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_job_event(self, event: JobEvent) -> None:
        if event.type == JobEventType.CANCELLED:
            self._trip(event.job_id, "cancelled")

    def _trip(self, job_id: str, reason: str) -> None:
        with self._lock:
            token = self._tokens.get(job_id)
        if token is not None and token.cancel(reason):
            logger.info(f"[PIPELINE] Job {job_id} cancellation token tripped ({reason})")

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        with self._lock:
            if self._tasks.get(job_id) is task:
                del self._tasks[job_id]
                self._tokens.pop(job_id, None)

    async def _run(self, job_id: str, token: CancellationToken) -> None:
        job = self.queue.get(job_id)
        if job is None:
            return

        paths = JobPaths(Path(job.output_dir), job.id)
        try:
            ensure_directory(paths.job_dir)
        except OSError as e:
            logger.error(f"[PIPELINE] Cannot create job directory {paths.job_dir}: {e}")

        metadata = JobMetadata.from_job(job)
        writer = MetadataWriter(paths.metadata)

        with JobLog(job_id, paths.log) as job_log:
            log = job_log.logger
            log.info(f"[PIPELINE] Starting attempt {job.attempt + 1} for {job.url}")
            try:
                await self._run_stages(job_id, token, paths, log, metadata, writer)
            except _RunStopped as e:
                log.info(f"[PIPELINE] Stopped: {e}")
                self._finish_running_stages(metadata, StageOutcome.CANCELLED, message=str(e))
            except PersistenceError as e:
                log.error(f"[PIPELINE] Job store write failed: {e}")
                error = ErrorInfo(
                    code=PERSISTENCE_ERROR_CODE,
                    message=str(e),
                    details={"operation": getattr(e, "operation", None)},
                )
                self._finish_running_stages(metadata, StageOutcome.FAILED, error=error)
                self._fail_after_store_error(job_id, error, log)
            finally:
                current = self.queue.get(job_id)
                if current is not None:
                    metadata.refresh(current)
                    writer.write(metadata)
                    log.info(f"[PIPELINE] Finished with status {current.status.value}")

    async def _run_stages(
        self,
        job_id: str,
        token: CancellationToken,
        paths: JobPaths,
        log: logging.LoggerAdapter,
        metadata: JobMetadata,
        writer: MetadataWriter,
    ) -> None:
        for stage in STAGE_SEQUENCE:
            self._check_continue(job_id, token)
            job = self._advance(job_id, stage)

            metadata.start_stage(stage.value)
            metadata.refresh(job)
            writer.write(metadata)
            log.info(f"[PIPELINE] Stage {stage.value} started")

            result = await self._execute_stage(job, stage, token, paths, log)
            if result is None:
                # Failed; fail() has been recorded
                failed = self.queue.get(job_id)
                error = failed.error if failed else None
                metadata.finish_stage(stage.value, StageOutcome.FAILED, error=error)
                return

            outcome = StageOutcome.SKIPPED if result.skipped else StageOutcome.COMPLETED
            metadata.finish_stage(stage.value, outcome, message=result.message)
            log.info(f"[PIPELINE] Stage {stage.value} {outcome}: {result.message}")

            if result.artifacts or result.removed:
                updates: Dict[str, Optional[str]] = dict(result.artifacts)
                updates.update({name: None for name in result.removed})
                try:
                    self.queue.record_artifacts(job_id, **updates)
                except (InvalidStateError, NotFoundError) as e:
                    raise _RunStopped(str(e))

        self._check_continue(job_id, token)
        try:
            self.queue.record_artifacts(job_id, metadata=str(paths.metadata), log=str(paths.log))
        except (InvalidStateError, NotFoundError) as e:
            raise _RunStopped(str(e))
        self._advance(job_id, JobStatus.COMPLETED)
        log.info("[PIPELINE] Job completed")

    @staticmethod
    def _finish_running_stages(metadata: JobMetadata, outcome: str, **details) -> None:
        for stage, timing in metadata.stages.items():
            if timing.outcome == StageOutcome.RUNNING:
                metadata.finish_stage(stage, outcome, **details)

    def _fail_after_store_error(self, job_id: str, error: ErrorInfo, log: logging.LoggerAdapter) -> None:
        """
        Fail a job whose run was aborted by a rejected write.

        The FAILED transition itself is kept in memory even if it cannot be
        stored. A job still PENDING has no edge to FAILED and stays PENDING.
        """
        try:
            self.queue.fail(job_id, error)
        except (InvalidTransitionError, NotFoundError) as e:
            log.warning(f"[PIPELINE] Job not marked failed after store error: {e}")

    def _check_continue(self, job_id: str, token: CancellationToken) -> None:
        if token.cancelled:
            raise _RunStopped(f"cancellation token tripped ({token.reason})")
        try:
            status = self.queue.status_of(job_id)
        except NotFoundError:
            raise _RunStopped("job was removed")
        if status == JobStatus.CANCELLED:
            raise _RunStopped("job was cancelled")

    def _advance(self, job_id: str, stage: JobStatus) -> JobRecord:
        try:
            return self.queue.advance_stage(job_id, stage)
        except (InvalidTransitionError, NotFoundError) as e:
            # Lost a race with cancel() or cleanup()
            raise _RunStopped(str(e))

    async def _execute_stage(
        self,
        job: JobRecord,
        stage: JobStatus,
        token: CancellationToken,
        paths: JobPaths,
        log: logging.LoggerAdapter,
    ) -> Optional[StageResult]:
        """
        Run one executor.

        Returns:
            The StageResult, or None if the stage failed and the job was failed

        Raises:
            _RunStopped: If the job was cancelled or removed meanwhile
        """
        job_id = job.id

        def on_progress(current: float, total: float, message: str = "") -> None:
            try:
                self.queue.update_progress(job_id, current, total, message)
            except JobError as e:
                log.debug(f"[PIPELINE] Dropped progress update: {e}")

        context = StageContext(job_dir=paths.job_dir, artifacts=dict(job.artifacts), log=log)

        try:
            executor = self.executors.get(stage)
            async with self.scheduler.slot(job_id, stage):
                self._check_continue(job_id, token)
                result = await executor.execute(job, context, on_progress, token)
        except StageCancelled as e:
            raise _RunStopped(str(e))
        except StageError as e:
            log.error(f"[PIPELINE] Stage {stage.value} failed: {e}")
            self._fail(job_id, e.to_error_info())
            return None
        except _RunStopped:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception(f"[PIPELINE] Unexpected error in stage {stage.value}")
            self._fail(job_id, ErrorInfo(
                code=UNKNOWN_ERROR_CODE,
                message=str(e) or type(e).__name__,
                details={"stage": stage.value, "exception": type(e).__name__},
            ))
            return None

        # An executor that ignored the token may return after a cancel
        self._check_continue(job_id, token)
        return result

    def _fail(self, job_id: str, error: ErrorInfo) -> None:
        try:
            self.queue.fail(job_id, error)
        except (InvalidTransitionError, NotFoundError) as e:
            raise _RunStopped(str(e))

"""
Concurrency bound for stage executor invocations.

Jobs progress independently, but at most max_concurrent executors run
at once across all jobs. Waiters are admitted in FIFO order.

Design rules:
- No prioritization
- A slot is held only for the duration of one executor call
- Not reused across event loops; one scheduler per orchestrator
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Tuple

from ..jobs.models import JobStatus

logger = logging.getLogger(__name__)


class StageScheduler:
    """
    FIFO semaphore around executor calls.
    """

    def __init__(self, max_concurrent: int = 2):
        """
        Initialize scheduler.

        Args:
            max_concurrent: Maximum executors running at once (>= 1)
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._semaphore: Optional[asyncio.Semaphore] = None
        # job_id -> stage currently holding a slot
        self._running: Dict[str, JobStatus] = {}
        self._waiting = 0

    def _get_semaphore(self) -> asyncio.Semaphore:
        # Created lazily so it binds to the loop that first uses it
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
        return self._semaphore

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def waiting_count(self) -> int:
        return self._waiting

    @property
    def is_busy(self) -> bool:
        """Check if scheduler is at capacity."""
        return self.running_count >= self.max_concurrent

    def running(self) -> Tuple[Tuple[str, JobStatus], ...]:
        return tuple(self._running.items())

    @asynccontextmanager
    async def slot(self, job_id: str, stage: JobStatus) -> AsyncIterator[None]:
        """Hold one execution slot for the body of the block."""
        semaphore = self._get_semaphore()
        self._waiting += 1
        try:
            await semaphore.acquire()
        finally:
            self._waiting -= 1

        self._running[job_id] = stage
        logger.debug(f"[Scheduler] {job_id} {stage.value} started, running: {self.running_count}")
        try:
            yield
        finally:
            self._running.pop(job_id, None)
            semaphore.release()
            logger.debug(f"[Scheduler] {job_id} {stage.value} finished, running: {self.running_count}")

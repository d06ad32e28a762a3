"""
Per-job log file.

Everything the pipeline logs about a job (stage boundaries, tool command
lines, exit codes, failures) is also appended to logs.txt in the job
directory, so the user can inspect a job without the application log.

Usage:
    with JobLog(job.id, job_dir / "logs.txt") as job_log:
        job_log.logger.info("[PIPELINE] Starting")
"""

import logging
from pathlib import Path
from typing import Optional

# Records for every job flow through this logger; each JobLog's handler
# keeps only its own job's records.
PIPELINE_LOGGER_NAME = "mediajobs.pipeline"

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(job_id)s] %(message)s"

logger = logging.getLogger(__name__)


class _JobFilter(logging.Filter):
    def __init__(self, job_id: str):
        super().__init__()
        self.job_id = job_id

    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "job_id", None) == self.job_id


class JobLog:
    """
    Attach a logs.txt file handler for one job.

    The handler is removed and closed on exit. If the file cannot be
    opened the job still runs; its records go to the application log only.
    """

    def __init__(self, job_id: str, path: Path, level: int = logging.INFO):
        self.job_id = job_id
        self.path = Path(path)
        self.level = level
        self._handler: Optional[logging.FileHandler] = None
        self._pipeline_logger = logging.getLogger(PIPELINE_LOGGER_NAME)
        self.logger = logging.LoggerAdapter(self._pipeline_logger, {"job_id": job_id})

    def open(self) -> "JobLog":
        if self._handler is not None:
            return self
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(self.path, encoding="utf-8")
        except OSError as e:
            logger.error(f"[JOBLOG] Cannot open {self.path} for job {self.job_id}: {e}")
            return self

        handler.setLevel(self.level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(_JobFilter(self.job_id))
        self._handler = handler
        self._pipeline_logger.addHandler(handler)
        if self._pipeline_logger.getEffectiveLevel() > self.level:
            self._pipeline_logger.setLevel(self.level)
        return self

    def close(self) -> None:
        if self._handler is None:
            return
        self._pipeline_logger.removeHandler(self._handler)
        self._handler.close()
        self._handler = None

    @property
    def is_open(self) -> bool:
        return self._handler is not None

    def __enter__(self) -> "JobLog":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

"""
Errors raised by the job store.

Each error keeps the context a caller needs to report it (the job ID,
the attempted operation, the schema versions) as attributes.
"""

from typing import Optional


class PersistenceError(Exception):
    """Base exception for job store failures."""
    pass


class SchemaError(PersistenceError):
    """The database schema could not be created, or it is newer than this build."""

    def __init__(self, message: str, found_version: Optional[int] = None, supported_version: Optional[int] = None):
        self.found_version = found_version
        self.supported_version = supported_version
        super().__init__(message)


class LoadError(PersistenceError):
    """Reading job rows failed, or a stored row is corrupt."""

    def __init__(self, reason: str, job_id: Optional[str] = None):
        self.job_id = job_id
        self.reason = reason
        target = f"job {job_id}" if job_id else "jobs"
        super().__init__(f"Failed to load {target}: {reason}")


class SaveError(PersistenceError):
    """Writing or removing a job row failed; the stored row is unchanged."""

    def __init__(self, job_id: str, operation: str, reason: str):
        self.job_id = job_id
        self.operation = operation
        self.reason = reason
        super().__init__(f"Failed to {operation} job {job_id}: {reason}")

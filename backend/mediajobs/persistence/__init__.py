"""
Persistence layer for mediajobs.

SQLite-backed storage for job records. Write-through from the JobQueue;
recovery on startup marks interrupted jobs FAILED without auto-resume.
"""

from .manager import PersistenceManager
from .errors import PersistenceError, SchemaError, LoadError, SaveError

__all__ = ["PersistenceManager", "PersistenceError", "SchemaError", "LoadError", "SaveError"]

"""
Persistent Storage Module.

Provides SQLite-backed persistence for orchestration jobs, so long remote
polling windows survive a process restart.
"""

from zkcompose.core.storage.job_store import JobStore, MemoryJobStore
from zkcompose.core.storage.sqlite_adapter import SQLiteAdapter

__all__ = ["JobStore", "MemoryJobStore", "SQLiteAdapter"]

import json
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from zkcompose.core.composition.job import JobState, OrchestrationJob
from zkcompose.core.storage.sqlite_adapter import SQLiteAdapter
from zkcompose.utils.logger import get_logger

logger = get_logger("storage.jobs")

SCHEMA_VERSION = "1"


class JobStore:
    """
    Durable store of orchestration jobs.

    Jobs are saved after every transition so a restarted process can resume
    an in-flight remote job from its persisted handle.
    """

    def __init__(self, data_dir: Path, db_name: str = "jobs.db"):
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.adapter = SQLiteAdapter(self.db_path)

        stored = self.adapter.get_meta("schema_version")
        if stored is None:
            self.adapter.set_meta("schema_version", SCHEMA_VERSION)
        elif stored != SCHEMA_VERSION:
            raise ValueError(f"Job store schema {stored} is not supported (expected {SCHEMA_VERSION})")

        logger.info(f"JobStore initialized at {self.db_path}")

    def save(self, job: OrchestrationJob):
        self.adapter.upsert_job(job.job_id, job.state.value, json.dumps(job.to_dict()), job.updated_at)

    def load(self, job_id: str) -> Optional[OrchestrationJob]:
        data = self.adapter.get_job(job_id) or self.adapter.get_archived_job(job_id)
        if data is None:
            return None
        return OrchestrationJob.from_dict(json.loads(data))

    def list_jobs(self, state: Optional[JobState] = None) -> List[OrchestrationJob]:
        rows = self.adapter.get_jobs(state.value if state is not None else None)
        return [OrchestrationJob.from_dict(json.loads(data)) for _, data in rows]

    def in_flight(self) -> List[OrchestrationJob]:
        """Jobs a restarted process should resume."""
        return [job for job in self.list_jobs() if not job.is_terminal]

    def archive(self, job_id: str) -> bool:
        """Move a terminal job out of the active table."""
        job = self.load(job_id)
        if job is None or not job.is_terminal:
            return False
        return self.adapter.move_to_archive(job_id, int(time.time()))

    def archive_terminal(self) -> int:
        """Archive every DONE or FAILED job; returns how many were moved."""
        moved = sum(1 for job in self.list_jobs() if job.is_terminal and self.archive(job.job_id))
        if moved:
            logger.info(f"Archived {moved} finished job(s)")
        return moved


class MemoryJobStore:
    """Non-durable job store with the same interface, for tests and dry runs."""

    def __init__(self):
        self._jobs: Dict[str, dict] = {}
        self._archived: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def save(self, job: OrchestrationJob):
        with self._lock:
            self._jobs[job.job_id] = job.to_dict()

    def load(self, job_id: str) -> Optional[OrchestrationJob]:
        with self._lock:
            data = self._jobs.get(job_id) or self._archived.get(job_id)
        return OrchestrationJob.from_dict(data) if data is not None else None

    def list_jobs(self, state: Optional[JobState] = None) -> List[OrchestrationJob]:
        with self._lock:
            jobs = [OrchestrationJob.from_dict(d) for d in self._jobs.values()]
        if state is not None:
            jobs = [job for job in jobs if job.state is state]
        return jobs

    def in_flight(self) -> List[OrchestrationJob]:
        return [job for job in self.list_jobs() if not job.is_terminal]

    def archive(self, job_id: str) -> bool:
        with self._lock:
            data = self._jobs.get(job_id)
            if data is None or not JobState(data["state"]).is_terminal:
                return False
            self._archived[job_id] = self._jobs.pop(job_id)
        return True

    def archive_terminal(self) -> int:
        return sum(1 for job in self.list_jobs() if job.is_terminal and self.archive(job.job_id))

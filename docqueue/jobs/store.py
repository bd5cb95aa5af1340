"""In-memory job registry with retention-based cleanup."""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, TypeVar

from docqueue.jobs.errors import JobNotFoundError
from docqueue.jobs.models import JobRecord, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JobStore:
    """Owns the canonical JobRecord for every job.

    Readers get deep copies. Writers go through ``update``, which runs the
    mutator on the live record while holding the store lock.
    """

    def __init__(self, retention_hours: float = 24):
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = threading.Lock()
        self._retention = timedelta(hours=retention_hours)

    @property
    def retention(self) -> timedelta:
        return self._retention

    def put(self, job: JobRecord) -> None:
        with self._lock:
            self._jobs[job.id] = job

    def get(self, job_id: str) -> Optional[JobRecord]:
        """Snapshot of a job, or None if unknown or purged."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def list_all(self) -> List[JobRecord]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]

    def update(self, job_id: str, mutator: Callable[[JobRecord], T]) -> T:
        """Apply ``mutator`` to the live record and return what it returns."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return mutator(job)

    def remove(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Remove terminal jobs finished longer ago than the retention window.

        Returns count of removed jobs.
        """
        cutoff = (now or utcnow()) - self._retention
        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.completed_at is not None and job.completed_at < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
        if expired:
            logger.info("Cleaned up old jobs count=%d", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

"""Job dispatcher interface."""

from abc import ABC, abstractmethod
from typing import Any, List, Mapping, Optional, Sequence, Union

from docqueue.jobs.models import JobOptions, JobRecord, JobType


class JobDispatcher(ABC):
    """Abstract interface for batch job dispatching."""

    @abstractmethod
    async def create_job(
        self,
        document_ids: Sequence[str],
        job_type: Union[JobType, str] = JobType.FULL_ANALYSIS,
        options: Optional[Union[JobOptions, Mapping[str, Any]]] = None,
    ) -> str:
        """Submit a batch for processing. Returns job_id without waiting for it."""
        ...

    @abstractmethod
    async def get_job_status(self, job_id: str) -> JobRecord:
        """Snapshot of a job. Raises JobNotFoundError."""
        ...

    @abstractmethod
    async def cancel_job(self, job_id: str) -> bool:
        """Request cooperative cancellation. Raises JobNotFoundError or JobAlreadyTerminalError."""
        ...

    @abstractmethod
    async def list_jobs(self) -> List[JobRecord]:
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (e.g., start the cleanup sweep)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...

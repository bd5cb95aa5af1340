"""Base processor interface for per-document analysis."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict

from docqueue.jobs.models import JobType


@dataclass
class ProcessorSpec:
    """Metadata describing a registered processor."""
    job_type: JobType
    name: str
    description: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)


class DocumentProcessor(ABC):
    """Abstract base class for the analysis run on each document of a job.

    To add a processor:
    1. Subclass DocumentProcessor
    2. Implement spec() and process()
    3. Register it with a ProcessorRegistry for its JobType

    process() signals a failed document by raising; the queue retries it.
    """

    @abstractmethod
    def spec(self) -> ProcessorSpec:
        """Return processor metadata."""
        ...

    @abstractmethod
    async def process(self, document_id: str) -> Dict[str, Any]:
        """Analyze one document. Returns the result payload."""
        ...

    async def aclose(self) -> None:
        """Release any held resources."""

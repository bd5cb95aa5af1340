"""Registry mapping job types to document processors."""

import logging
from typing import Dict, List, Optional

from docqueue.jobs.models import JobType
from docqueue.jobs.retry import ProcessFn
from docqueue.processors.base import DocumentProcessor, ProcessorSpec

logger = logging.getLogger(__name__)


class ProcessorRegistry:
    """Holds one DocumentProcessor per JobType."""

    def __init__(self) -> None:
        self._processors: Dict[JobType, DocumentProcessor] = {}

    def register(self, processor: DocumentProcessor) -> None:
        job_type = processor.spec().job_type
        if job_type in self._processors:
            logger.warning("Replacing processor for job type %s", job_type.value)
        self._processors[job_type] = processor
        logger.info("Registered processor: %s (%s)", processor.spec().name, job_type.value)

    def get(self, job_type: JobType) -> Optional[DocumentProcessor]:
        return self._processors.get(JobType(job_type))

    def list_types(self) -> List[ProcessorSpec]:
        return [p.spec() for p in self._processors.values()]

    def as_mapping(self) -> Dict[JobType, ProcessFn]:
        """The form BatchProcessingQueue takes: JobType -> process function."""
        return {job_type: p.process for job_type, p in self._processors.items()}

    async def aclose(self) -> None:
        for processor in self._processors.values():
            await processor.aclose()

    def __len__(self) -> int:
        return len(self._processors)

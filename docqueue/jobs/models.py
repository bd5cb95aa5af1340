"""Job record data model for batch document processing."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobType(str, Enum):
    QUALITY_CHECK = "QUALITY_CHECK"
    DATA_EXTRACTION = "DATA_EXTRACTION"
    FULL_ANALYSIS = "FULL_ANALYSIS"
    BATCH_ANALYSIS = "BATCH_ANALYSIS"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.TIMEOUT}
)


class JobOptions(BaseModel):
    """Per-job execution knobs, fixed at creation.

    Accepts snake_case names or their camelCase aliases (``maxConcurrent``).
    """
    model_config = {"extra": "forbid", "alias_generator": to_camel, "populate_by_name": True}

    max_concurrent: int = Field(default=5, ge=1)
    timeout_ms: int = Field(default=300000, gt=0)
    retry_attempts: int = Field(default=2, ge=0)
    retry_delay_ms: int = Field(default=2000, ge=0)


class DocumentOutcome(BaseModel):
    """Final result of one document's attempt sequence."""
    document_id: str
    success: bool
    data: Any = None
    error: Optional[str] = None
    attempts: int
    processing_time_ms: int
    completed_at: datetime = Field(default_factory=utcnow)


class DocumentError(BaseModel):
    """A document that failed after exhausting its retries."""
    document_id: str
    message: str
    attempts: int = 0
    processing_time_ms: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


class JobRecord(BaseModel):
    """Tracks the lifecycle of a batch processing job."""
    id: str
    document_ids: List[str]
    type: JobType = JobType.FULL_ANALYSIS
    status: JobStatus = JobStatus.PENDING
    options: JobOptions = Field(default_factory=JobOptions)
    results: List[DocumentOutcome] = Field(default_factory=list)
    errors: List[DocumentError] = Field(default_factory=list)
    progress: int = 0
    estimated_time_remaining_ms: Optional[int] = None
    total_documents: int = 0
    processed_documents: int = 0
    failed_documents: int = 0
    cancel_requested: bool = False
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def resolved_documents(self) -> int:
        return len(self.results) + len(self.errors)

    def has_outcome(self, document_id: str) -> bool:
        return any(r.document_id == document_id for r in self.results) or any(
            e.document_id == document_id for e in self.errors
        )


class ProgressEvent(BaseModel):
    """Message handed to the progress sink."""
    job_id: str
    kind: str  # "progress" | "completed" | "failed" | "cancelled"
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def type(self) -> str:
        return f"batch.{self.kind}"

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "data": {"job_id": self.job_id, **self.payload},
            "timestamp": self.timestamp.isoformat(),
        }

"""Progress accounting and event emission for running jobs."""

import logging
from typing import Callable, Optional

from docqueue.jobs.models import (
    DocumentError,
    DocumentOutcome,
    JobRecord,
    JobStatus,
    ProgressEvent,
)
from docqueue.jobs.store import JobStore

logger = logging.getLogger(__name__)

PublishFn = Callable[[ProgressEvent], None]

_TERMINAL_KIND = {
    JobStatus.COMPLETED: "completed",
    JobStatus.FAILED: "failed",
    JobStatus.TIMEOUT: "failed",
    JobStatus.CANCELLED: "cancelled",
}


def compute_progress(resolved: int, total: int) -> int:
    if total <= 0:
        return 0
    return (100 * resolved) // total


def estimate_remaining_ms(job: JobRecord) -> Optional[int]:
    """Average time of the outcomes so far times the documents still unresolved."""
    times = [r.processing_time_ms for r in job.results]
    times.extend(e.processing_time_ms for e in job.errors)
    if not times:
        return None
    remaining = job.total_documents - job.resolved_documents
    return round(sum(times) / len(times) * remaining)


class ProgressTracker:
    """Applies document outcomes to the job record and publishes events.

    Concurrent document tasks never touch the record themselves; every
    outcome comes through ``record_outcome``.
    """

    def __init__(self, store: JobStore, publish: Optional[PublishFn] = None):
        self._store = store
        self._publish = publish

    def record_outcome(self, job_id: str, outcome: DocumentOutcome) -> bool:
        """Append the outcome and emit a progress event.

        Returns False when the outcome is discarded: the job is already
        terminal (e.g. timed out) or the document was already resolved.
        """

        def apply(job: JobRecord) -> Optional[dict]:
            if job.is_terminal or job.has_outcome(outcome.document_id):
                return None

            if outcome.success:
                job.results.append(outcome)
                job.processed_documents += 1
            else:
                job.errors.append(
                    DocumentError(
                        document_id=outcome.document_id,
                        message=outcome.error or "Unknown error",
                        attempts=outcome.attempts,
                        processing_time_ms=outcome.processing_time_ms,
                        timestamp=outcome.completed_at,
                    )
                )
                job.failed_documents += 1

            job.progress = max(
                job.progress, compute_progress(job.resolved_documents, job.total_documents)
            )
            job.estimated_time_remaining_ms = estimate_remaining_ms(job)
            return {
                "document_id": outcome.document_id,
                "success": outcome.success,
                "progress": job.progress,
                "processed_documents": job.resolved_documents,
                "total_documents": job.total_documents,
                "estimated_time_remaining_ms": job.estimated_time_remaining_ms,
            }

        payload = self._store.update(job_id, apply)
        if payload is None:
            logger.info(
                "Discarded late outcome job_id=%s document_id=%s",
                job_id, outcome.document_id,
            )
            return False

        logger.debug(
            "Job progress updated job_id=%s progress=%d processed=%d total=%d",
            job_id, payload["progress"], payload["processed_documents"],
            payload["total_documents"],
        )
        self.emit(ProgressEvent(job_id=job_id, kind="progress", payload=payload))
        return True

    def emit_terminal(self, job: JobRecord, duration_ms: Optional[int] = None) -> None:
        """Publish the summary event for a job that just reached a terminal status."""
        kind = _TERMINAL_KIND.get(job.status)
        if kind is None:
            raise ValueError(f"Job {job.id} is not terminal: {job.status.value}")

        payload = {
            "status": job.status.value,
            "total_documents": job.total_documents,
            "processed_documents": job.processed_documents,
            "failed_documents": job.failed_documents,
        }
        if duration_ms is not None:
            payload["duration_ms"] = duration_ms
        if kind == "failed":
            payload["error"] = job.error
        self.emit(ProgressEvent(job_id=job.id, kind=kind, payload=payload))

    def emit(self, event: ProgressEvent) -> None:
        """Hand an event to the sink. Sink errors are logged, never raised."""
        if self._publish is None:
            return
        try:
            self._publish(event)
        except Exception as e:
            logger.warning(
                "Progress publish failed job_id=%s type=%s error=%s",
                event.job_id, event.type, e,
            )

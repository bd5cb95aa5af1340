"""In-process batch document queue on asyncio.

Each job runs as a background task that feeds its documents through a
bounded worker pool. Job state lives in a JobStore; nothing is persisted, so
jobs in flight are lost if the process exits.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from docqueue.config import Settings, settings as default_settings
from docqueue.jobs.dispatcher import JobDispatcher
from docqueue.jobs.errors import (
    JobAlreadyTerminalError,
    JobNotFoundError,
    JobValidationError,
)
from docqueue.jobs.models import JobOptions, JobRecord, JobStatus, JobType, utcnow
from docqueue.jobs.progress import ProgressTracker, PublishFn
from docqueue.jobs.retry import ProcessFn, RetryCoordinator
from docqueue.jobs.store import JobStore
from docqueue.jobs.timeout import TimeoutMonitor
from docqueue.jobs.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class _JobRun:
    """Runtime state for one job that is not part of its record."""

    def __init__(self) -> None:
        self.cancel_requested = False
        self.cancelled = asyncio.Event()
        self.halted = asyncio.Event()
        self.finished = asyncio.Event()
        self.started = time.perf_counter()
        self.monitor: Optional[TimeoutMonitor] = None
        self.pool: Optional[WorkerPool] = None
        self.task: Optional[asyncio.Task] = None


class BatchProcessingQueue(JobDispatcher):
    """Runs batches of documents through a per-type processor.

    processors: mapping of JobType -> fn(document_id) -> payload
        Sync or async. Sync processors are called in a thread executor.
        BATCH_ANALYSIS falls back to the FULL_ANALYSIS processor.
    publish: fn(ProgressEvent) -> None
        Progress sink. Best effort; its errors never reach job state.

    Cancellation is cooperative: it stops further dispatch, disarms the job
    deadline and abandons pending retry waits. An attempt already running
    finishes and its outcome is recorded.
    """

    def __init__(
        self,
        processors: Mapping[Union[JobType, str], ProcessFn],
        publish: Optional[PublishFn] = None,
        store: Optional[JobStore] = None,
        config: Optional[Settings] = None,
    ):
        self._settings = config or default_settings
        self._processors: Dict[JobType, ProcessFn] = {
            JobType(job_type): fn for job_type, fn in processors.items()
        }
        self._store = store or JobStore(retention_hours=self._settings.job_retention_hours)
        self._tracker = ProgressTracker(self._store, publish)
        self._runs: Dict[str, _JobRun] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def store(self) -> JobStore:
        return self._store

    # ---------------- Submission & control ----------------

    async def create_job(
        self,
        document_ids: Sequence[str],
        job_type: Union[JobType, str] = JobType.FULL_ANALYSIS,
        options: Optional[Union[JobOptions, Mapping[str, Any]]] = None,
    ) -> str:
        documents = self._validate_documents(document_ids)
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise JobValidationError(f"Unknown job type: {job_type}") from None
        job_options = self._merge_options(options)

        job = JobRecord(
            id=new_job_id(),
            document_ids=documents,
            type=job_type,
            options=job_options,
            total_documents=len(documents),
        )
        self._store.put(job)

        run = _JobRun()
        self._runs[job.id] = run
        run.task = asyncio.create_task(self._process_job(job.id, run), name=f"job:{job.id}")

        logger.info(
            "Processing job created job_id=%s type=%s documents=%d",
            job.id, job_type.value, len(documents),
        )
        return job.id

    async def get_job_status(self, job_id: str) -> JobRecord:
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def cancel_job(self, job_id: str) -> bool:
        def request(job: JobRecord) -> JobStatus:
            if job.is_terminal:
                raise JobAlreadyTerminalError(job_id, job.status.value)
            job.cancel_requested = True
            return job.status

        try:
            status = self._store.update(job_id, request)
        except (JobNotFoundError, JobAlreadyTerminalError) as e:
            logger.warning("Cannot cancel job job_id=%s reason=%s", job_id, e)
            raise

        run = self._runs.get(job_id)
        if run is not None:
            run.cancel_requested = True
            run.cancelled.set()
            if run.monitor is not None:
                run.monitor.cancel()
        logger.info("Job cancellation requested job_id=%s status=%s", job_id, status.value)

        in_flight = run.pool.in_flight if run is not None and run.pool is not None else 0
        if status == JobStatus.PENDING or in_flight == 0:
            self._finalize(job_id, JobStatus.CANCELLED)
        return True

    async def list_jobs(self) -> List[JobRecord]:
        return self._store.list_all()

    async def wait_for_job(self, job_id: str, timeout_s: Optional[float] = None) -> JobRecord:
        """Wait until the job reaches a terminal status and return its snapshot."""
        run = self._runs.get(job_id)
        if run is not None:
            await asyncio.wait_for(run.finished.wait(), timeout=timeout_s)
        return await self.get_job_status(job_id)

    def cleanup_old_jobs(self) -> int:
        return self._store.cleanup_expired()

    # ---------------- Lifecycle ----------------

    async def start(self) -> None:
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="job-cleanup")
        logger.info(
            "Batch queue started cleanup_interval_s=%s retention_h=%s",
            self._settings.cleanup_interval_seconds, self._settings.job_retention_hours,
        )

    async def stop(self) -> None:
        self._running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        runs = list(self._runs.items())
        for job_id, run in runs:
            job = self._store.get(job_id)
            if job is not None and job.status == JobStatus.PENDING:
                self._finalize(job_id, JobStatus.CANCELLED, error="Queue stopped before job started")
            else:
                self._finalize(job_id, JobStatus.FAILED, error="Queue stopped before job finished")
            if run.pool is not None:
                run.pool.cancel()
            if run.task is not None:
                run.task.cancel()
        tasks = [run.task for _, run in runs if run.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()
        logger.info("Batch queue stopped interrupted_jobs=%d", len(runs))

    async def _cleanup_loop(self) -> None:
        """Periodically purge finished jobs past the retention window."""
        while self._running:
            try:
                await asyncio.sleep(self._settings.cleanup_interval_seconds)
            except asyncio.CancelledError:
                break
            self._store.cleanup_expired()

    # ---------------- Execution ----------------

    async def _process_job(self, job_id: str, run: _JobRun) -> None:
        try:
            await self._execute(job_id, run)
        finally:
            if run.monitor is not None:
                run.monitor.cancel()
            self._runs.pop(job_id, None)
            run.finished.set()

    async def _execute(self, job_id: str, run: _JobRun) -> None:
        def begin(job: JobRecord) -> Optional[JobRecord]:
            if job.is_terminal:
                return None
            job.status = JobStatus.PROCESSING
            job.started_at = utcnow()
            return job.model_copy(deep=True)

        job = self._store.update(job_id, begin)
        if job is None:
            logger.info("Job finished before dispatch began job_id=%s", job_id)
            return

        options = job.options
        run.started = time.perf_counter()
        run.monitor = TimeoutMonitor(job_id, options.timeout_ms, self._on_timeout)
        run.monitor.start()
        logger.info(
            "Job started job_id=%s max_concurrent=%d timeout_ms=%d retry_attempts=%d",
            job_id, options.max_concurrent, options.timeout_ms, options.retry_attempts,
        )

        try:
            process_fn = self._resolve_processor(job.type)
            coordinator = RetryCoordinator(
                process_fn,
                retry_attempts=options.retry_attempts,
                retry_delay_ms=options.retry_delay_ms,
                halted=run.halted,
                job_id=job_id,
                cancelled=run.cancelled,
            )
            run.pool = WorkerPool(options.max_concurrent, name=job_id)
            undispatched = await run.pool.run(
                job.document_ids,
                coordinator.run,
                on_outcome=lambda outcome: self._tracker.record_outcome(job_id, outcome),
                can_dispatch=lambda: not (run.cancel_requested or run.halted.is_set()),
            )
        except asyncio.CancelledError:
            self._finalize(job_id, JobStatus.FAILED, error="Job processing was interrupted")
            raise
        except Exception as e:
            logger.exception("Job processing failed job_id=%s", job_id)
            self._finalize(job_id, JobStatus.FAILED, error=f"{type(e).__name__}: {e}")
            return

        if run.cancel_requested:
            logger.info("Job cancelled job_id=%s undispatched=%d", job_id, undispatched)
            self._finalize(job_id, JobStatus.CANCELLED)
        else:
            self._finalize(job_id, JobStatus.COMPLETED)

    def _on_timeout(self, job_id: str) -> None:
        run = self._runs.get(job_id)
        timeout_ms = run.monitor.timeout_ms if run and run.monitor else 0
        self._finalize(
            job_id, JobStatus.TIMEOUT, error=f"Job timeout exceeded ({timeout_ms} ms)"
        )

    def _finalize(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> bool:
        """Move a job into a terminal status once. Returns False if it already was terminal."""

        def apply(job: JobRecord) -> Optional[JobRecord]:
            if job.is_terminal:
                return None
            job.status = status
            job.completed_at = utcnow()
            job.error = error
            if status == JobStatus.COMPLETED:
                job.progress = 100
                job.estimated_time_remaining_ms = 0
            return job.model_copy(deep=True)

        try:
            snapshot = self._store.update(job_id, apply)
        except JobNotFoundError:
            snapshot = None

        run = self._runs.get(job_id)
        if run is not None:
            run.halted.set()
            run.finished.set()
            if run.monitor is not None:
                run.monitor.cancel()
        if snapshot is None:
            return False

        duration_ms = int((time.perf_counter() - run.started) * 1000) if run else None
        log = logger.info if status in (JobStatus.COMPLETED, JobStatus.CANCELLED) else logger.error
        log(
            "Job finished job_id=%s status=%s processed=%d failed=%d total=%d duration_ms=%s",
            job_id, status.value, snapshot.processed_documents, snapshot.failed_documents,
            snapshot.total_documents, duration_ms,
        )
        self._tracker.emit_terminal(snapshot, duration_ms=duration_ms)
        return True

    # ---------------- Helpers ----------------

    def _resolve_processor(self, job_type: JobType) -> ProcessFn:
        processor = self._processors.get(job_type)
        if processor is None and job_type == JobType.BATCH_ANALYSIS:
            processor = self._processors.get(JobType.FULL_ANALYSIS)
        if processor is None:
            raise LookupError(f"No processor registered for job type {job_type.value}")
        return processor

    def _validate_documents(self, document_ids: Sequence[str]) -> List[str]:
        if document_ids is None or isinstance(document_ids, (str, bytes)):
            raise JobValidationError("document_ids must be a non-empty list")
        documents = [str(d) for d in document_ids]
        if not documents:
            raise JobValidationError("document_ids must be a non-empty list")
        max_size = self._settings.max_batch_size
        if len(documents) > max_size:
            raise JobValidationError(f"Maximum batch size is {max_size} documents")
        if any(not d for d in documents):
            raise JobValidationError("document_ids must not contain empty ids")
        if len(set(documents)) != len(documents):
            raise JobValidationError("document_ids must not contain duplicates")
        return documents

    def _merge_options(
        self, options: Optional[Union[JobOptions, Mapping[str, Any]]]
    ) -> JobOptions:
        merged: Dict[str, Any] = {
            "max_concurrent": self._settings.default_max_concurrent,
            "timeout_ms": self._settings.default_timeout_ms,
            "retry_attempts": self._settings.default_retry_attempts,
            "retry_delay_ms": self._settings.default_retry_delay_ms,
        }
        try:
            if isinstance(options, JobOptions):
                merged.update(options.model_dump(exclude_unset=True))
            elif options:
                given = JobOptions.model_validate(
                    {k: v for k, v in options.items() if v is not None}
                )
                merged.update(given.model_dump(exclude_unset=True))
            return JobOptions(**merged)
        except ValidationError as e:
            raise JobValidationError(f"Invalid job options: {e}") from e

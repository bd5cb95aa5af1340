"""Error types raised by the batch processing queue."""


class QueueError(Exception):
    """Base class for queue errors surfaced to callers."""


class JobValidationError(QueueError):
    """Malformed submission; no job was created."""


class JobNotFoundError(QueueError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobAlreadyTerminalError(QueueError):
    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} already finished with status {status}")
        self.job_id = job_id
        self.status = status


class ProcessingError(Exception):
    """Raised by a document processor when a single document fails.

    The queue retries every per-document failure the same way, whatever the cause.
    """

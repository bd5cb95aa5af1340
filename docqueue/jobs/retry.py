"""Per-document retry wrapper around a processor call."""

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Union

from docqueue.jobs.backoff import backoff_delay_ms
from docqueue.jobs.models import DocumentOutcome

logger = logging.getLogger(__name__)

# fn(document_id) -> payload, either sync or async
ProcessFn = Callable[[str], Union[Any, Awaitable[Any]]]


def _is_async(fn: Callable) -> bool:
    return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(
        getattr(fn, "__call__", None)
    )


class RetryCoordinator:
    """Runs one document through the processor, retrying every failure.

    ``halted`` is the owning job's stop signal and ``cancelled`` its cancel
    signal. Backoff waits end early when either is set, and the coordinator
    then gives up without producing an outcome. An attempt already running is
    never interrupted.
    """

    def __init__(
        self,
        process_fn: ProcessFn,
        retry_attempts: int,
        retry_delay_ms: int,
        halted: Optional[asyncio.Event] = None,
        job_id: str = "",
        cancelled: Optional[asyncio.Event] = None,
    ):
        self._process_fn = process_fn
        self._retry_attempts = retry_attempts
        self._retry_delay_ms = retry_delay_ms
        self._halted = halted or asyncio.Event()
        self._cancelled = cancelled or asyncio.Event()
        self._job_id = job_id

    @property
    def max_attempts(self) -> int:
        return self._retry_attempts + 1

    async def run(self, document_id: str) -> Optional[DocumentOutcome]:
        """Returns the final outcome, or None if the job stopped mid-backoff."""
        t0 = time.perf_counter()
        last_error = ""

        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                delay_ms = backoff_delay_ms(attempt, self._retry_delay_ms)
                if not await self._wait(delay_ms):
                    logger.info(
                        "Retry abandoned, job stopped job_id=%s document_id=%s attempt=%d",
                        self._job_id, document_id, attempt,
                    )
                    return None

            try:
                data = await self._call(document_id)
            except Exception as e:
                last_error = str(e) or type(e).__name__
                if attempt < self.max_attempts:
                    logger.warning(
                        "Document processing failed, retrying job_id=%s document_id=%s "
                        "attempt=%d max_retries=%d error=%s",
                        self._job_id, document_id, attempt, self._retry_attempts, last_error,
                    )
                continue

            elapsed_ms = int((time.perf_counter() - t0) * 1000)
            logger.debug(
                "Document processed job_id=%s document_id=%s attempt=%d ms=%d",
                self._job_id, document_id, attempt, elapsed_ms,
            )
            return DocumentOutcome(
                document_id=document_id,
                success=True,
                data=data,
                attempts=attempt,
                processing_time_ms=elapsed_ms,
            )

        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        logger.error(
            "Document processing failed after retries job_id=%s document_id=%s attempts=%d error=%s",
            self._job_id, document_id, self.max_attempts, last_error,
        )
        return DocumentOutcome(
            document_id=document_id,
            success=False,
            error=last_error,
            attempts=self.max_attempts,
            processing_time_ms=elapsed_ms,
        )

    async def _call(self, document_id: str) -> Any:
        if _is_async(self._process_fn):
            return await self._process_fn(document_id)

        # Blocking processors run in a thread executor to keep the loop free
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, self._process_fn, document_id)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _wait(self, delay_ms: int) -> bool:
        """Sleep for the backoff delay. False means the job stopped meanwhile."""
        if self._halted.is_set() or self._cancelled.is_set():
            return False
        if delay_ms <= 0:
            return True
        waiters = [
            asyncio.ensure_future(self._halted.wait()),
            asyncio.ensure_future(self._cancelled.wait()),
        ]
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=delay_ms / 1000, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
        return not done

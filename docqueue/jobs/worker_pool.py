"""Bounded-concurrency executor for the documents of one job."""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Iterable, Optional, Set

from docqueue.jobs.models import DocumentOutcome

logger = logging.getLogger(__name__)

TaskFn = Callable[[str], Awaitable[Optional[DocumentOutcome]]]
OutcomeFn = Callable[[DocumentOutcome], None]


class WorkerPool:
    """Dispatches documents FIFO, never more than ``max_concurrent`` at once.

    Dispatch order follows the input order. Completion order does not, and
    outcomes reach ``on_outcome`` in the order tasks finish.
    """

    def __init__(self, max_concurrent: int, name: str = ""):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._max_concurrent = max_concurrent
        self._name = name
        self._in_flight: Set[asyncio.Task] = set()
        self.peak_in_flight = 0
        self.dispatched = 0

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def run(
        self,
        document_ids: Iterable[str],
        task_fn: TaskFn,
        on_outcome: OutcomeFn,
        can_dispatch: Callable[[], bool] = lambda: True,
    ) -> int:
        """Run until nothing is in flight and no more can be dispatched.

        Returns the number of documents left undispatched. An exception raised
        by a task is re-raised once the other in-flight tasks have finished.
        """
        pending = deque(document_ids)
        fault: Optional[BaseException] = None

        while True:
            while (
                fault is None
                and pending
                and len(self._in_flight) < self._max_concurrent
                and can_dispatch()
            ):
                document_id = pending.popleft()
                task = asyncio.create_task(
                    task_fn(document_id), name=f"{self._name}:{document_id}"
                )
                self._in_flight.add(task)
                self.dispatched += 1
                self.peak_in_flight = max(self.peak_in_flight, len(self._in_flight))

            if not self._in_flight:
                break

            done, _ = await asyncio.wait(
                self._in_flight, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                self._in_flight.discard(task)
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc is not None:
                    logger.error("Worker task %s raised %r", task.get_name(), exc)
                    if fault is None:
                        fault = exc
                    continue
                outcome = task.result()
                if outcome is not None:
                    on_outcome(outcome)

        if fault is not None:
            raise fault
        return len(pending)

    def cancel(self) -> None:
        """Cancel every in-flight task. Only used when the queue shuts down."""
        for task in list(self._in_flight):
            task.cancel()

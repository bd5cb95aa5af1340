"""
Shared test fixtures for the batch queue test suite.

Provides: a scriptable fake document processor, fast queue settings, an
event recorder standing in for the progress sink.
"""

import asyncio
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

import pytest

from docqueue.config import Settings
from docqueue.jobs.errors import ProcessingError
from docqueue.jobs.models import ProgressEvent


class FakeProcessor:
    """Async processor whose per-document behaviour is scripted.

    fail_times: document -> number of leading attempts that fail
    always_fail: documents that never succeed
    delays: document -> seconds each attempt takes (default ``delay_s``)
    """

    def __init__(
        self,
        delay_s: float = 0.0,
        fail_times: Optional[Dict[str, int]] = None,
        always_fail: Iterable[str] = (),
        delays: Optional[Dict[str, float]] = None,
    ):
        self.delay_s = delay_s
        self.fail_times = dict(fail_times or {})
        self.always_fail = set(always_fail)
        self.delays = dict(delays or {})
        self.calls: Dict[str, int] = defaultdict(int)
        self.started: List[str] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def __call__(self, document_id: str) -> dict:
        self.calls[document_id] += 1
        if self.calls[document_id] == 1:
            self.started.append(document_id)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(document_id, self.delay_s))
            if document_id in self.always_fail:
                raise ProcessingError(f"cannot process {document_id}")
            if self.calls[document_id] <= self.fail_times.get(document_id, 0):
                raise ProcessingError(f"transient failure on {document_id}")
            return {"document_id": document_id, "score": 0.9}
        finally:
            self.in_flight -= 1


class EventRecorder:
    """Progress sink that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: List[ProgressEvent] = []

    def __call__(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def kinds(self, job_id: Optional[str] = None) -> List[str]:
        return [e.kind for e in self.events if job_id is None or e.job_id == job_id]


@pytest.fixture
def fast_config() -> Settings:
    """Settings with short defaults so jobs finish in milliseconds."""
    return Settings(
        default_max_concurrent=5,
        default_timeout_ms=5000,
        default_retry_attempts=2,
        default_retry_delay_ms=5,
        cleanup_interval_seconds=3600,
    )


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()

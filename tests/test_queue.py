"""
Tests for BatchProcessingQueue: job lifecycle, retries, timeouts, cancellation.

Uses the scripted FakeProcessor so every run finishes in well under a second.
"""

import asyncio

import pytest

from conftest import EventRecorder, FakeProcessor
from docqueue.config import Settings
from docqueue.jobs.errors import (
    JobAlreadyTerminalError,
    JobNotFoundError,
    JobValidationError,
)
from docqueue.jobs.in_process_queue import BatchProcessingQueue
from docqueue.jobs.models import JobOptions, JobStatus, JobType


def _queue(processor, config, publish=None, job_type=JobType.FULL_ANALYSIS):
    return BatchProcessingQueue({job_type: processor}, publish=publish, config=config)


class TestCreateJob:

    @pytest.mark.asyncio
    async def test_returns_id_before_processing(self, fast_config: Settings) -> None:
        processor = FakeProcessor(delay_s=0.05)
        queue = _queue(processor, fast_config)

        job_id = await queue.create_job(["d1", "d2"])

        assert job_id.startswith("job_")
        job = await queue.get_job_status(job_id)
        assert job.status == JobStatus.PENDING
        assert job.document_ids == ["d1", "d2"]
        assert job.total_documents == 2
        assert processor.calls == {}
        await queue.wait_for_job(job_id, timeout_s=2)

    @pytest.mark.asyncio
    async def test_oversized_batch_is_rejected(self, fast_config: Settings) -> None:
        queue = _queue(FakeProcessor(), fast_config)

        with pytest.raises(JobValidationError, match="Maximum batch size"):
            await queue.create_job([f"d{i}" for i in range(11)])

        assert await queue.list_jobs() == []

    @pytest.mark.asyncio
    async def test_empty_batch_is_rejected(self, fast_config: Settings) -> None:
        queue = _queue(FakeProcessor(), fast_config)

        with pytest.raises(JobValidationError):
            await queue.create_job([])

        assert len(queue.store) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "options",
        [{"max_concurrent": 0}, {"timeout_ms": -1}, {"retry_attempts": -1}, {"retrys": 3}],
    )
    async def test_invalid_options_are_rejected(self, fast_config: Settings, options) -> None:
        queue = _queue(FakeProcessor(), fast_config)

        with pytest.raises(JobValidationError):
            await queue.create_job(["d1"], JobType.FULL_ANALYSIS, options)

        assert len(queue.store) == 0

    @pytest.mark.asyncio
    async def test_camel_case_option_names_are_accepted(self, fast_config: Settings) -> None:
        queue = _queue(FakeProcessor(), fast_config)

        job_id = await queue.create_job(
            ["d1"], JobType.FULL_ANALYSIS, {"maxConcurrent": 3, "retryDelayMs": 5}
        )
        job = await queue.get_job_status(job_id)

        assert job.options.max_concurrent == 3
        assert job.options.retry_delay_ms == 5
        assert job.options.timeout_ms == fast_config.default_timeout_ms
        await queue.wait_for_job(job_id, timeout_s=2)

    @pytest.mark.asyncio
    async def test_duplicate_ids_are_rejected(self, fast_config: Settings) -> None:
        queue = _queue(FakeProcessor(), fast_config)

        with pytest.raises(JobValidationError, match="duplicates"):
            await queue.create_job(["d1", "d1"])

    @pytest.mark.asyncio
    async def test_unknown_job_type_is_rejected(self, fast_config: Settings) -> None:
        queue = _queue(FakeProcessor(), fast_config)

        with pytest.raises(JobValidationError):
            await queue.create_job(["d1"], "OCR_ONLY")

    @pytest.mark.asyncio
    async def test_options_merge_over_defaults(self, fast_config: Settings) -> None:
        queue = _queue(FakeProcessor(), fast_config)

        job_id = await queue.create_job(["d1"], JobType.FULL_ANALYSIS, {"max_concurrent": 2})
        job = await queue.get_job_status(job_id)

        assert job.options == JobOptions(
            max_concurrent=2,
            timeout_ms=fast_config.default_timeout_ms,
            retry_attempts=fast_config.default_retry_attempts,
            retry_delay_ms=fast_config.default_retry_delay_ms,
        )
        await queue.wait_for_job(job_id, timeout_s=2)


class TestJobExecution:

    @pytest.mark.asyncio
    async def test_scenario_with_one_flaky_document(self, fast_config: Settings) -> None:
        processor = FakeProcessor(fail_times={"d3": 2})
        recorder = EventRecorder()
        queue = _queue(processor, fast_config, publish=recorder)

        job_id = await queue.create_job(
            ["d1", "d2", "d3"],
            JobType.FULL_ANALYSIS,
            {"max_concurrent": 2, "retry_attempts": 2, "retry_delay_ms": 10},
        )
        job = await queue.wait_for_job(job_id, timeout_s=2)

        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.errors == []
        assert len(job.results) == 3
        by_id = {r.document_id: r for r in job.results}
        assert by_id["d3"].attempts == 3
        assert by_id["d3"].success is True
        assert by_id["d1"].attempts == 1
        assert job.started_at is not None
        assert job.completed_at is not None
        assert recorder.kinds(job_id) == ["progress", "progress", "progress", "completed"]

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, fast_config: Settings) -> None:
        processor = FakeProcessor(delay_s=0.02)
        queue = _queue(processor, fast_config)

        job_id = await queue.create_job(
            [f"d{i}" for i in range(10)], JobType.FULL_ANALYSIS, {"max_concurrent": 3}
        )
        job = await queue.wait_for_job(job_id, timeout_s=3)

        assert job.status == JobStatus.COMPLETED
        assert processor.peak_in_flight == 3
        assert processor.started == [f"d{i}" for i in range(10)]

    @pytest.mark.asyncio
    async def test_accounting_with_exhausted_document(self, fast_config: Settings) -> None:
        processor = FakeProcessor(always_fail=["bad"])
        queue = _queue(processor, fast_config)

        job_id = await queue.create_job(
            ["ok", "bad"], JobType.FULL_ANALYSIS, {"retry_attempts": 2, "retry_delay_ms": 1}
        )
        job = await queue.wait_for_job(job_id, timeout_s=2)

        assert job.status == JobStatus.COMPLETED
        assert len([r for r in job.results if r.success]) + len(job.errors) == 2
        assert job.progress == 100
        assert [e.document_id for e in job.errors] == ["bad"]
        assert job.errors[0].attempts == 3
        assert "bad" not in [r.document_id for r in job.results]
        assert processor.calls["bad"] == 3
        assert job.processed_documents == 1
        assert job.failed_documents == 1

    @pytest.mark.asyncio
    async def test_results_follow_completion_order(self, fast_config: Settings) -> None:
        processor = FakeProcessor(delays={"d1": 0.1, "d2": 0.0, "d3": 0.01})
        queue = _queue(processor, fast_config)

        job_id = await queue.create_job(["d1", "d2", "d3"])
        job = await queue.wait_for_job(job_id, timeout_s=2)

        assert [r.document_id for r in job.results][-1] == "d1"

    @pytest.mark.asyncio
    async def test_sync_processor_is_supported(self, fast_config: Settings) -> None:
        def blocking(document_id):
            return {"pages": 3, "id": document_id}

        queue = BatchProcessingQueue({JobType.QUALITY_CHECK: blocking}, config=fast_config)

        job_id = await queue.create_job(["d1", "d2"], JobType.QUALITY_CHECK)
        job = await queue.wait_for_job(job_id, timeout_s=2)

        assert job.status == JobStatus.COMPLETED
        assert sorted(r.data["id"] for r in job.results) == ["d1", "d2"]

    @pytest.mark.asyncio
    async def test_batch_analysis_falls_back_to_full_analysis(self, fast_config: Settings) -> None:
        processor = FakeProcessor()
        queue = _queue(processor, fast_config, job_type=JobType.FULL_ANALYSIS)

        job_id = await queue.create_job(["d1"], JobType.BATCH_ANALYSIS)
        job = await queue.wait_for_job(job_id, timeout_s=2)

        assert job.status == JobStatus.COMPLETED
        assert processor.calls["d1"] == 1

    @pytest.mark.asyncio
    async def test_missing_processor_fails_job(self, fast_config: Settings) -> None:
        recorder = EventRecorder()
        queue = _queue(FakeProcessor(), fast_config, publish=recorder, job_type=JobType.QUALITY_CHECK)

        job_id = await queue.create_job(["d1"], JobType.DATA_EXTRACTION)
        job = await queue.wait_for_job(job_id, timeout_s=2)

        assert job.status == JobStatus.FAILED
        assert "No processor registered" in job.error
        assert job.completed_at is not None
        assert recorder.kinds(job_id) == ["failed"]

    @pytest.mark.asyncio
    async def test_publish_errors_do_not_affect_job(self, fast_config: Settings) -> None:
        def broken(event):
            raise ConnectionError("websocket server down")

        queue = _queue(FakeProcessor(), fast_config, publish=broken)

        job_id = await queue.create_job(["d1", "d2"])
        job = await queue.wait_for_job(job_id, timeout_s=2)

        assert job.status == JobStatus.COMPLETED
        assert len(job.results) == 2


class TestTimeout:

    @pytest.mark.asyncio
    async def test_slow_job_times_out(self, fast_config: Settings) -> None:
        processor = FakeProcessor(delay_s=1.0)
        recorder = EventRecorder()
        queue = _queue(processor, fast_config, publish=recorder)

        job_id = await queue.create_job(["d1", "d2"], JobType.FULL_ANALYSIS, {"timeout_ms": 100})
        job = await queue.wait_for_job(job_id, timeout_s=0.8)

        assert job.status == JobStatus.TIMEOUT
        assert job.results == []
        assert job.completed_at is not None
        assert "timeout" in job.error.lower()
        assert recorder.kinds(job_id) == ["failed"]
        assert recorder.events[-1].payload["status"] == "TIMEOUT"
        await queue.stop()

    @pytest.mark.asyncio
    async def test_partial_results_kept_and_late_outcomes_dropped(
        self, fast_config: Settings
    ) -> None:
        processor = FakeProcessor(delays={"fast": 0.0, "slow": 0.3})
        queue = _queue(processor, fast_config)

        job_id = await queue.create_job(
            ["fast", "slow", "never"],
            JobType.FULL_ANALYSIS,
            {"timeout_ms": 100, "max_concurrent": 1},
        )
        job = await queue.wait_for_job(job_id, timeout_s=1)
        completed_at = job.completed_at

        assert job.status == JobStatus.TIMEOUT
        assert [r.document_id for r in job.results] == ["fast"]
        assert job.progress == 33

        # Let the slow call finish; its outcome must not be recorded
        await asyncio.sleep(0.4)
        job = await queue.get_job_status(job_id)
        assert job.status == JobStatus.TIMEOUT
        assert [r.document_id for r in job.results] == ["fast"]
        assert job.completed_at == completed_at
        assert processor.calls["slow"] == 1
        assert "never" not in processor.calls

    @pytest.mark.asyncio
    async def test_timeout_releases_pending_retry(self, fast_config: Settings) -> None:
        processor = FakeProcessor(always_fail=["d1"])
        queue = _queue(processor, fast_config)

        job_id = await queue.create_job(
            ["d1"],
            JobType.FULL_ANALYSIS,
            {"timeout_ms": 50, "retry_attempts": 3, "retry_delay_ms": 10_000},
        )
        await queue.wait_for_job(job_id, timeout_s=1)
        await asyncio.sleep(0.05)

        job = await queue.get_job_status(job_id)
        assert job.status == JobStatus.TIMEOUT
        assert job.errors == []
        assert processor.calls["d1"] == 1
        # runner exited once the backoff wait was released
        assert job_id not in queue._runs


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_before_dispatch(self, fast_config: Settings) -> None:
        processor = FakeProcessor()
        recorder = EventRecorder()
        queue = _queue(processor, fast_config, publish=recorder)

        job_id = await queue.create_job(["d1", "d2", "d3"])
        assert await queue.cancel_job(job_id) is True

        job = await queue.get_job_status(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.results == [] and job.errors == []

        await asyncio.sleep(0.05)
        job = await queue.get_job_status(job_id)
        assert job.status == JobStatus.CANCELLED
        assert processor.calls == {}
        assert recorder.kinds(job_id) == ["cancelled"]

    @pytest.mark.asyncio
    async def test_cancel_lets_in_flight_documents_finish(self, fast_config: Settings) -> None:
        processor = FakeProcessor(delay_s=0.1)
        queue = _queue(processor, fast_config)

        job_id = await queue.create_job(
            [f"d{i}" for i in range(5)], JobType.FULL_ANALYSIS, {"max_concurrent": 2}
        )
        await asyncio.sleep(0.02)
        await queue.cancel_job(job_id)

        job = await queue.get_job_status(job_id)
        assert job.status == JobStatus.PROCESSING
        assert job.cancel_requested is True

        job = await queue.wait_for_job(job_id, timeout_s=2)
        assert job.status == JobStatus.CANCELLED
        assert sorted(r.document_id for r in job.results) == ["d0", "d1"]
        assert sorted(processor.calls) == ["d0", "d1"]

    @pytest.mark.asyncio
    async def test_cancel_releases_pending_retry_and_deadline(
        self, fast_config: Settings
    ) -> None:
        processor = FakeProcessor(always_fail=["d1"])
        recorder = EventRecorder()
        queue = _queue(processor, fast_config, publish=recorder)

        job_id = await queue.create_job(
            ["d1", "d2"],
            JobType.FULL_ANALYSIS,
            {"timeout_ms": 150, "retry_attempts": 2, "retry_delay_ms": 100, "max_concurrent": 1},
        )
        # d1 failed its first attempt and now waits 100 ms before retrying
        await asyncio.sleep(0.03)
        calls_at_cancel = dict(processor.calls)
        await queue.cancel_job(job_id)

        await queue.wait_for_job(job_id, timeout_s=1)
        # past the original deadline
        await asyncio.sleep(0.2)

        job = await queue.get_job_status(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.error is None
        assert calls_at_cancel == {"d1": 1}
        assert dict(processor.calls) == calls_at_cancel
        assert job.results == [] and job.errors == []
        assert recorder.kinds(job_id) == ["cancelled"]

    @pytest.mark.asyncio
    async def test_deadline_does_not_fire_while_cancelled_job_drains(
        self, fast_config: Settings
    ) -> None:
        processor = FakeProcessor(delay_s=0.2)
        queue = _queue(processor, fast_config)

        job_id = await queue.create_job(["d1"], JobType.FULL_ANALYSIS, {"timeout_ms": 100})
        await asyncio.sleep(0.03)
        await queue.cancel_job(job_id)

        job = await queue.wait_for_job(job_id, timeout_s=1)

        assert job.status == JobStatus.CANCELLED
        assert [r.document_id for r in job.results] == ["d1"]

    @pytest.mark.asyncio
    async def test_cancel_finished_job_is_rejected(self, fast_config: Settings) -> None:
        queue = _queue(FakeProcessor(), fast_config)

        job_id = await queue.create_job(["d1"])
        await queue.wait_for_job(job_id, timeout_s=2)

        with pytest.raises(JobAlreadyTerminalError):
            await queue.cancel_job(job_id)

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, fast_config: Settings) -> None:
        queue = _queue(FakeProcessor(), fast_config)

        with pytest.raises(JobNotFoundError):
            await queue.cancel_job("job_missing")


class TestStatusAndLifecycle:

    @pytest.mark.asyncio
    async def test_unknown_job_status(self, fast_config: Settings) -> None:
        queue = _queue(FakeProcessor(), fast_config)

        with pytest.raises(JobNotFoundError):
            await queue.get_job_status("job_missing")

    @pytest.mark.asyncio
    async def test_status_snapshot_is_immutable_copy(self, fast_config: Settings) -> None:
        queue = _queue(FakeProcessor(), fast_config)
        job_id = await queue.create_job(["d1"])
        job = await queue.wait_for_job(job_id, timeout_s=2)

        job.results.clear()
        job.status = JobStatus.FAILED

        fresh = await queue.get_job_status(job_id)
        assert fresh.status == JobStatus.COMPLETED
        assert len(fresh.results) == 1

    @pytest.mark.asyncio
    async def test_list_jobs(self, fast_config: Settings) -> None:
        queue = _queue(FakeProcessor(), fast_config)
        first = await queue.create_job(["d1"])
        second = await queue.create_job(["d2"])
        await queue.wait_for_job(first, timeout_s=2)
        await queue.wait_for_job(second, timeout_s=2)

        jobs = await queue.list_jobs()

        assert [j.id for j in jobs] == [first, second]
        assert all(j.status == JobStatus.COMPLETED for j in jobs)

    @pytest.mark.asyncio
    async def test_stop_fails_running_jobs(self, fast_config: Settings) -> None:
        queue = _queue(FakeProcessor(delay_s=1.0), fast_config)
        await queue.start()
        job_id = await queue.create_job(["d1", "d2"])
        await asyncio.sleep(0.02)

        await queue.stop()

        job = await queue.get_job_status(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == "Queue stopped before job finished"

    @pytest.mark.asyncio
    async def test_stop_cancels_jobs_that_never_started(self, fast_config: Settings) -> None:
        processor = FakeProcessor()
        queue = _queue(processor, fast_config)
        job_id = await queue.create_job(["d1", "d2"])

        await queue.stop()

        job = await queue.get_job_status(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.error == "Queue stopped before job started"
        assert processor.calls == {}

    @pytest.mark.asyncio
    async def test_cleanup_sweep_purges_finished_jobs(self) -> None:
        config = Settings(
            default_retry_delay_ms=1,
            job_retention_hours=0,
            cleanup_interval_seconds=0.05,
        )
        queue = _queue(FakeProcessor(), config)
        await queue.start()

        job_id = await queue.create_job(["d1"])
        await queue.wait_for_job(job_id, timeout_s=2)
        await asyncio.sleep(0.15)

        with pytest.raises(JobNotFoundError):
            await queue.get_job_status(job_id)
        await queue.stop()

"""
Unit tests for the asynchronous classification job poller.
"""

import asyncio

import pytest

from document_workflow.models.data_structures import JobStatus
from document_workflow.orchestration.job_poller import (
    AsyncJobPoller,
    PollerConfig,
    error_for_failed_job,
)
from document_workflow.orchestration.policy_engine import RetryPolicy
from document_workflow.models.data_structures import ClassificationJob
from document_workflow.utils.error_handlers import (
    ClassificationError,
    PollingTimeoutError,
    TaskFailure,
)

from tests.utils.test_helpers import (
    FakeClassificationService,
    VirtualScheduler,
    wait_until,
)

RUNNING = {"status": "running"}
SUCCEEDED = {"status": "succeeded", "document_type": "invoice", "confidence": 0.91}


def _config(**overrides):
    values = {
        "initial_interval_seconds": 1.0,
        "backoff_multiplier": 2.0,
        "max_interval_seconds": 30.0,
        "jitter_ratio": 0.0,
        "timeout_seconds": 60.0,
        "status_retry": RetryPolicy(max_attempts=2, interval_seconds=1.0),
    }
    values.update(overrides)
    return PollerConfig(**values)


class Collector:
    """Callback recording every terminal job it receives."""

    def __init__(self):
        self.jobs = []

    def __call__(self, job):
        self.jobs.append(job)


class TestPollerConfig:
    """Tests for PollerConfig."""

    def test_from_dict(self):
        config = PollerConfig.from_dict(
            {
                "initial_interval_seconds": 2,
                "timeout_seconds": 120,
                "status_retry": {"max_attempts": 4},
            }
        )

        assert config.initial_interval_seconds == 2
        assert config.timeout_seconds == 120
        assert config.status_retry.max_attempts == 4

    def test_invalid_values(self):
        with pytest.raises(ValueError):
            PollerConfig(timeout_seconds=0)
        with pytest.raises(ValueError):
            PollerConfig(jitter_ratio=1.5)
        with pytest.raises(ValueError):
            PollerConfig(max_concurrent_polls=0)


class TestNextDelay:
    """Tests for the polling backoff schedule."""

    def test_exponential_without_jitter(self):
        poller = AsyncJobPoller(FakeClassificationService(), _config())

        delays = [poller.next_delay(n) for n in range(1, 7)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]

    def test_jitter_stays_within_bounds(self):
        poller = AsyncJobPoller(
            FakeClassificationService(), _config(jitter_ratio=0.2), random_seed=7
        )

        delays = [poller.next_delay(3) for _ in range(50)]

        assert all(3.2 <= delay <= 4.8 for delay in delays)
        assert len(set(delays)) > 1

    def test_jitter_never_exceeds_cap(self):
        poller = AsyncJobPoller(
            FakeClassificationService(), _config(jitter_ratio=0.5), random_seed=1
        )

        assert all(poller.next_delay(20) <= 30.0 for _ in range(50))

    def test_seeded_jitter_is_reproducible(self):
        config = _config(jitter_ratio=0.2)
        first = AsyncJobPoller(FakeClassificationService(), config, random_seed=3)
        second = AsyncJobPoller(FakeClassificationService(), config, random_seed=3)

        assert [first.next_delay(2) for _ in range(5)] == [
            second.next_delay(2) for _ in range(5)
        ]


class TestWatch:
    """Tests for watch/unwatch and terminal delivery."""

    @pytest.mark.asyncio
    async def test_delivers_terminal_job_after_backoff(self):
        """Test polling until success with 1s and 2s waits in between."""
        service = FakeClassificationService([RUNNING, RUNNING, SUCCEEDED])
        scheduler = VirtualScheduler()
        poller = AsyncJobPoller(service, _config(), scheduler=scheduler)
        collector = Collector()

        await poller.watch("job-1", collector)
        await wait_until(lambda: collector.jobs)

        job = collector.jobs[0]
        assert job.status is JobStatus.SUCCEEDED
        assert job.document_type == "invoice"
        assert job.confidence == 0.91
        assert scheduler.sleeps == [1.0, 2.0]
        assert service.status_calls["job-1"] == 3
        assert not poller.is_watching("job-1")

    @pytest.mark.asyncio
    async def test_coroutine_callback(self):
        service = FakeClassificationService([SUCCEEDED])
        poller = AsyncJobPoller(service, _config(), scheduler=VirtualScheduler())
        received = []

        async def on_terminal(job):
            received.append(job.job_id)

        await poller.watch("job-9", on_terminal)
        await wait_until(lambda: received)

        assert received == ["job-9"]

    @pytest.mark.asyncio
    async def test_concurrent_watches_share_one_loop(self):
        """Test that concurrent watches of one job poll once per interval."""
        service = FakeClassificationService([RUNNING, SUCCEEDED])
        poller = AsyncJobPoller(service, _config(), scheduler=VirtualScheduler())
        first, second = Collector(), Collector()

        await asyncio.gather(poller.watch("job-1", first), poller.watch("job-1", second))
        await wait_until(lambda: first.jobs and second.jobs)

        assert service.status_calls["job-1"] == 2
        assert len(first.jobs) == 1
        assert len(second.jobs) == 1

    @pytest.mark.asyncio
    async def test_duplicate_callback_delivered_once(self):
        service = FakeClassificationService([RUNNING, SUCCEEDED])
        poller = AsyncJobPoller(service, _config(), scheduler=VirtualScheduler())
        collector = Collector()

        await poller.watch("job-1", collector)
        await poller.watch("job-1", collector)
        await wait_until(lambda: collector.jobs)
        await asyncio.sleep(0.01)

        assert len(collector.jobs) == 1

    @pytest.mark.asyncio
    async def test_unwatch_stops_polling(self):
        service = FakeClassificationService([RUNNING])
        poller = AsyncJobPoller(service, _config(), scheduler=VirtualScheduler(start=0))
        collector = Collector()

        handle = await poller.watch("job-1", collector)
        await poller.unwatch(handle)
        await asyncio.sleep(0.01)

        assert not poller.is_watching("job-1")
        assert poller.active_job_ids == []
        assert collector.jobs == []

    @pytest.mark.asyncio
    async def test_unwatch_keeps_other_callbacks(self):
        service = FakeClassificationService([RUNNING, RUNNING, SUCCEEDED])
        poller = AsyncJobPoller(service, _config(), scheduler=VirtualScheduler())
        dropped, kept = Collector(), Collector()

        handle = await poller.watch("job-1", dropped)
        await poller.watch("job-1", kept)
        await poller.unwatch(handle)
        await wait_until(lambda: kept.jobs)

        assert dropped.jobs == []

    @pytest.mark.asyncio
    async def test_empty_job_id_rejected(self):
        poller = AsyncJobPoller(FakeClassificationService(), _config())

        with pytest.raises(ValueError):
            await poller.watch("", Collector())

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_block_others(self):
        service = FakeClassificationService([SUCCEEDED])
        poller = AsyncJobPoller(service, _config(), scheduler=VirtualScheduler())
        collector = Collector()

        def broken(job):
            raise RuntimeError("callback bug")

        await poller.watch("job-1", broken)
        await poller.watch("job-1", collector)
        await wait_until(lambda: collector.jobs)

        assert collector.jobs[0].job_id == "job-1"


class TestPollingFailures:
    """Tests for timeouts and status query failures."""

    @pytest.mark.asyncio
    async def test_timeout_delivers_failed_job(self):
        """Test that exceeding the budget yields a TimeoutError failure."""
        service = FakeClassificationService([RUNNING])
        scheduler = VirtualScheduler()
        poller = AsyncJobPoller(
            service, _config(timeout_seconds=10.0), scheduler=scheduler
        )
        collector = Collector()

        await poller.watch("job-1", collector)
        await wait_until(lambda: collector.jobs)

        job = collector.jobs[0]
        assert job.status is JobStatus.FAILED
        assert job.error_kind == "TimeoutError"
        assert scheduler.sleeps == [1.0, 2.0, 4.0, 3.0]
        assert isinstance(error_for_failed_job(job), PollingTimeoutError)

    @pytest.mark.asyncio
    async def test_status_errors_retried_then_task_failure(self):
        service = FakeClassificationService([ConnectionError("refused")])
        scheduler = VirtualScheduler()
        poller = AsyncJobPoller(service, _config(), scheduler=scheduler)
        collector = Collector()

        await poller.watch("job-1", collector)
        await wait_until(lambda: collector.jobs)

        job = collector.jobs[0]
        assert job.error_kind == "TaskFailure"
        assert service.status_calls["job-1"] == 3
        assert scheduler.sleeps == [1.0, 2.0]
        assert isinstance(error_for_failed_job(job), TaskFailure)

    @pytest.mark.asyncio
    async def test_transient_status_error_recovers(self):
        service = FakeClassificationService([ConnectionError("refused"), SUCCEEDED])
        poller = AsyncJobPoller(service, _config(), scheduler=VirtualScheduler())
        collector = Collector()

        await poller.watch("job-1", collector)
        await wait_until(lambda: collector.jobs)

        assert collector.jobs[0].status is JobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_status_error_budget_resets_after_good_poll(self):
        """Test that only consecutive status errors count against the retry budget."""
        statuses = []
        for _ in range(4):
            statuses += [ConnectionError("blip"), RUNNING]
        service = FakeClassificationService(statuses + [SUCCEEDED])
        poller = AsyncJobPoller(
            service, _config(timeout_seconds=1e6), scheduler=VirtualScheduler()
        )
        collector = Collector()

        await poller.watch("job-1", collector)
        await wait_until(lambda: collector.jobs)

        assert collector.jobs[0].status is JobStatus.SUCCEEDED
        assert service.status_calls["job-1"] == 9

    @pytest.mark.asyncio
    async def test_out_of_range_confidence_rejected(self):
        service = FakeClassificationService(
            [{"status": "succeeded", "document_type": "invoice", "confidence": 1.4}]
        )
        poller = AsyncJobPoller(service, _config(), scheduler=VirtualScheduler())
        collector = Collector()

        await poller.watch("job-1", collector)
        await wait_until(lambda: collector.jobs)

        job = collector.jobs[0]
        assert job.status is JobStatus.FAILED
        assert job.error_kind == "ClassificationError"

    @pytest.mark.asyncio
    async def test_close_cancels_loops(self):
        service = FakeClassificationService([RUNNING])
        poller = AsyncJobPoller(service, _config(timeout_seconds=1e9))

        await poller.watch("job-1", Collector())
        await poller.close()

        assert poller.active_job_ids == []


class TestErrorForFailedJob:
    """Tests for error_for_failed_job."""

    def test_classification_failure(self):
        job = ClassificationJob(
            job_id="job-1",
            status=JobStatus.FAILED,
            error="model crashed",
            error_kind="ClassificationError",
        )

        error = error_for_failed_job(job)

        assert isinstance(error, ClassificationError)
        assert error.job_id == "job-1"
        assert "model crashed" in str(error)


class TestRegistryCleanup:
    """Tests that per-job bookkeeping is released once a job is done."""

    @pytest.mark.asyncio
    async def test_key_locks_released_after_delivery(self):
        service = FakeClassificationService([RUNNING, SUCCEEDED])
        poller = AsyncJobPoller(service, _config(), scheduler=VirtualScheduler())
        collector = Collector()

        for number in range(20):
            await poller.watch(f"job-{number}", collector)
        await wait_until(lambda: len(collector.jobs) == 20)

        assert poller.active_job_ids == []
        assert poller._key_locks == {}

    @pytest.mark.asyncio
    async def test_key_lock_released_after_unwatch(self):
        poller = AsyncJobPoller(
            FakeClassificationService([RUNNING]), _config(), scheduler=VirtualScheduler()
        )

        handle = await poller.watch("job-1", Collector())
        await poller.unwatch(handle)

        assert poller._key_locks == {}

    @pytest.mark.asyncio
    async def test_rewatch_after_delivery_starts_new_loop(self):
        service = FakeClassificationService([SUCCEEDED])
        poller = AsyncJobPoller(service, _config(), scheduler=VirtualScheduler())
        first, second = Collector(), Collector()

        await poller.watch("job-1", first)
        await wait_until(lambda: first.jobs)
        await poller.watch("job-1", second)
        await wait_until(lambda: second.jobs)

        assert service.status_calls["job-1"] == 2
        assert poller._key_locks == {}

"""Tests for the worker pool.

Tests cover:
- Retry with exponential backoff and the attempts ceiling
- Permanent failures and timeouts
- Cooperative cancellation of running conversions
- Infrastructure errors never consuming an attempt
- Lost claims, reaping and terminal events
- Unexpected converter or storage errors still ending in a recorded outcome
- Per-thread store connections being released
- Threaded pool and drain mode
"""

import threading
import time
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from doc_convert.dispatcher import ConversionOutput, Dispatcher
from doc_convert.errors import InfrastructureError, ValidationError
from doc_convert.queue import JobEventBus, JobPayload, JobState
from doc_convert.queue.models import utcnow
from doc_convert.queue.worker import JobWorkerPool

from conftest import FakeConverter


def _enqueue(store, make_input, type="excel-to-csv", max_attempts=3, suffix=".xlsx"):
    payload = JobPayload(input_ref=make_input(suffix), filename=f"input{suffix}")
    return store.create(type, payload, max_attempts)


@pytest.fixture
def events():
    return JobEventBus()


@pytest.fixture
def pool(store, dispatcher, results, cleanup, events, config):
    return JobWorkerPool(
        store,
        dispatcher,
        results,
        cleanup=cleanup,
        events=events,
        config=config.workers,
        worker_prefix="test",
    )


def _wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class TestRetryScenarios:
    """End-to-end attempt accounting for a single job."""

    def test_two_failures_then_success(self, store, pool, fake_converter, make_input, events):
        """excel-to-csv fails twice, then succeeds: completed with attemptsMade=3."""
        fake_converter.failures = 2
        job = _enqueue(store, make_input, max_attempts=3)
        completed = []
        events.on_completed(completed.append)

        before = utcnow()
        first = pool.process(store.claim_next("w1", 30), "w1")
        assert first.state == JobState.DELAYED
        assert first.attempts_made == 1
        assert 2.0 <= (first.available_at - before).total_seconds() < 3.0
        assert "Simulated failure #1" in first.last_error

        # Backoff not elapsed yet
        assert store.claim_next("w1", 30) is None

        before = utcnow()
        second = pool.process(store.claim_next("w1", 30, now=first.available_at), "w1")
        assert second.state == JobState.DELAYED
        assert second.attempts_made == 2
        assert 4.0 <= (second.available_at - before).total_seconds() < 5.0

        third = pool.process(store.claim_next("w1", 30, now=second.available_at), "w1")
        assert third.state == JobState.COMPLETED
        assert third.attempts_made == 3
        assert third.progress == 100
        assert third.finished_at is not None
        assert third.failure_reason is None

        assert Path(third.result["outputRef"]).read_bytes() == b"converted"
        assert not Path(job.payload.input_ref).exists()
        assert [e.job_id for e in completed] == [job.id]

    def test_exhausted_attempts_fail(self, store, pool, fake_converter, make_input, events):
        """office-to-pdf fails on every attempt: failed with attemptsMade=3."""
        fake_converter.failures = 10
        job = _enqueue(store, make_input, type="office-to-pdf", suffix=".docx")
        failed = []
        events.on_failed(failed.append)

        current = pool.process(store.claim_next("w1", 30), "w1")
        while current.state == JobState.DELAYED:
            current = pool.process(store.claim_next("w1", 30, now=current.available_at), "w1")

        assert current.state == JobState.FAILED
        assert current.attempts_made == 3
        assert current.failure_reason == "Simulated failure #3"
        assert current.finished_at is not None
        assert len(fake_converter.calls) == 3
        assert [e.job_id for e in failed] == [job.id]
        assert not Path(job.payload.input_ref).exists()

    def test_attempts_never_exceed_max(self, store, pool, fake_converter, make_input):
        fake_converter.failures = 10
        _enqueue(store, make_input, max_attempts=1)

        final = pool.process(store.claim_next("w1", 30), "w1")

        assert final.state == JobState.FAILED
        assert final.attempts_made == 1

    def test_validation_error_is_permanent(self, store, pool, fake_converter, make_input):
        fake_converter.failures = 10
        fake_converter.error = ValidationError("Workbook is corrupt")
        _enqueue(store, make_input, max_attempts=3)

        final = pool.process(store.claim_next("w1", 30), "w1")

        assert final.state == JobState.FAILED
        assert final.attempts_made == 1
        assert final.failure_reason == "Workbook is corrupt"

    def test_timeout_is_retried(self, store, results, config, make_input):
        slow = FakeConverter(delay_s=2.0)
        dispatcher = Dispatcher(job_timeout_s=0.1)
        dispatcher.register("excel-to-csv", slow)
        pool = JobWorkerPool(store, dispatcher, results, config=config.workers)
        _enqueue(store, make_input)

        after = pool.process(store.claim_next("w1", 30), "w1")

        assert after.state == JobState.DELAYED
        assert after.attempts_made == 1
        assert "JOB_TIMEOUT" in after.last_error

    def test_empty_output_is_recorded(self, store, pool, make_input):
        """A converter that reports success without content cannot strand the job."""

        class EmptyOutput:
            def convert(self, input_ref, options, context):
                return ConversionOutput(success=True)

        pool.dispatcher.register("excel-to-csv", EmptyOutput())
        job = _enqueue(store, make_input)

        after = pool.run_once("w1")

        assert after.state == JobState.DELAYED
        assert after.attempts_made == 1
        assert "neither bytes" in after.last_error
        assert store.get(job.id).worker_id is None

    def test_unexpected_storage_error_consumes_attempt(self, store, pool, make_input):
        _enqueue(store, make_input, max_attempts=1)

        with patch.object(pool.results, "save", side_effect=RuntimeError("quota exceeded")):
            final = pool.run_once("w1")

        assert final.state == JobState.FAILED
        assert final.attempts_made == 1
        assert final.failure_reason == "RuntimeError: quota exceeded"


class TestCancellation:
    """Cooperative cancellation while a conversion runs."""

    def _run_in_background(self, pool, job):
        outcome = {}

        def target():
            outcome["job"] = pool.process(job, "w1")

        thread = threading.Thread(target=target)
        thread.start()
        return thread, outcome

    def test_signal_cancel_stops_cooperative_converter(
        self, store, pool, fake_converter, make_input, events
    ):
        fake_converter.delay_s = 5.0
        job = _enqueue(store, make_input)
        cancelled = []
        events.on_cancelled(cancelled.append)

        thread, outcome = self._run_in_background(pool, store.claim_next("w1", 30))
        assert fake_converter.started.wait(5)
        store.request_cancel(job.id)
        assert pool.signal_cancel(job.id) is True
        thread.join(10)

        final = outcome["job"]
        assert final.state == JobState.CANCELLED
        assert final.finished_at is not None
        assert store.get(job.id).state == JobState.CANCELLED
        assert [e.job_id for e in cancelled] == [job.id]
        assert not Path(job.payload.input_ref).exists()

    def test_heartbeat_delivers_cancel_request(self, store, pool, fake_converter, make_input):
        """A cancel requested from another process reaches the converter via heartbeat."""
        fake_converter.delay_s = 5.0
        job = _enqueue(store, make_input)

        thread, outcome = self._run_in_background(pool, store.claim_next("w1", 30))
        assert fake_converter.started.wait(5)
        store.request_cancel(job.id)
        thread.join(10)

        assert outcome["job"].state == JobState.CANCELLED

    def test_non_cooperative_converter_completes(self, store, pool, fake_converter, make_input):
        fake_converter.delay_s = 0.3
        fake_converter.cooperative = False
        job = _enqueue(store, make_input)

        thread, outcome = self._run_in_background(pool, store.claim_next("w1", 30))
        assert fake_converter.started.wait(5)
        store.request_cancel(job.id)
        thread.join(10)

        assert outcome["job"].state == JobState.COMPLETED

    def test_signal_cancel_unknown_job(self, pool):
        assert pool.signal_cancel("not-running") is False


class TestInfrastructure:
    """Queue store failures and lost claims."""

    def test_infrastructure_error_leaves_job_untouched(self, store, pool, make_input):
        job = _enqueue(store, make_input)
        claimed = store.claim_next("w1", 30)

        with patch.object(store, "update", side_effect=InfrastructureError("store down")):
            with pytest.raises(InfrastructureError):
                pool.process(claimed, "w1")

        fresh = store.get(job.id)
        assert fresh.state == JobState.ACTIVE
        assert fresh.attempts_made == 0

    def test_lost_claim_outcome_dropped(self, store, pool, make_input):
        job = _enqueue(store, make_input)
        claimed = store.claim_next("w1", lease_s=1)
        store.reap_expired(now=utcnow() + timedelta(seconds=5))

        assert pool.process(claimed, "w1") is None
        assert store.get(job.id).state == JobState.WAITING

    def test_reap_finalizes_cancelled(self, store, pool, make_input, events):
        job = _enqueue(store, make_input)
        store.claim_next("w1", lease_s=0.01)
        store.request_cancel(job.id)
        time.sleep(0.05)
        cancelled = []
        events.on_cancelled(cancelled.append)

        reaped = pool.reap()

        assert [j.state for j in reaped] == [JobState.CANCELLED]
        assert [e.job_id for e in cancelled] == [job.id]
        assert not Path(job.payload.input_ref).exists()


class TestPool:
    """Threaded execution and drain mode."""

    def test_pool_processes_jobs(self, store, pool, make_input):
        jobs = [_enqueue(store, make_input) for _ in range(4)]

        with pool:
            assert pool.running
            assert _wait_for(lambda: store.counts()["completed"] == len(jobs))

        assert not pool.running
        for job in jobs:
            assert store.get(job.id).attempts_made == 1

    def test_start_twice_rejected(self, pool):
        with pool:
            with pytest.raises(RuntimeError):
                pool.start()

    def test_drain(self, store, pool, fake_converter, make_input):
        fake_converter.failures = 1
        _enqueue(store, make_input)
        _enqueue(store, make_input)

        stats = pool.drain()

        # First attempt of the first job fails and is delayed by the backoff
        assert stats["retried"] == 1
        assert stats["completed"] == 1
        assert store.counts()["delayed"] == 1

    def test_drain_max_jobs(self, store, pool, make_input):
        for _ in range(3):
            _enqueue(store, make_input)

        stats = pool.drain(max_jobs=2)

        assert stats["completed"] == 2
        assert store.counts()["waiting"] == 1


class TestConnections:
    """Threads that touch the store close their connection when they exit."""

    def test_drain_does_not_accumulate_connections(self, store, pool, fake_converter, make_input):
        # Long enough for several heartbeats to reach the store per job
        fake_converter.delay_s = 0.15
        for _ in range(10):
            _enqueue(store, make_input)
        before = len(store._connections)

        stats = pool.drain()

        assert stats["completed"] == 10
        assert len(store._connections) == before

    def test_stopped_pool_releases_thread_connections(self, store, pool, make_input):
        jobs = [_enqueue(store, make_input) for _ in range(3)]
        before = len(store._connections)

        with pool:
            assert _wait_for(lambda: store.counts()["completed"] == len(jobs))

        assert len(store._connections) == before

    def test_release_connection_reopens_on_next_use(self, store, make_input):
        job = _enqueue(store, make_input)
        store.release_connection()

        assert store.get(job.id).id == job.id

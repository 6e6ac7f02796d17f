"""Unit tests for the SQLite queue store.

Tests cover:
- Job create/claim operations and FIFO ordering
- Atomic state transitions and terminal monotonicity
- Concurrent claim safety
- Lease heartbeat and reaping of expired claims
- Legacy per-state pagination
- Retention purge and the audit trail
"""

import threading
from datetime import timedelta

import pytest

from doc_convert.errors import (
    ConflictError,
    InfrastructureError,
    InvalidStateError,
    JobNotFoundError,
    ValidationError,
)
from doc_convert.queue import (
    ConversionType,
    JobMutation,
    JobPayload,
    JobState,
    SQLiteQueueStore,
)
from doc_convert.queue.models import utcnow


def _create(store, make_input, type=ConversionType.EXCEL_TO_CSV, max_attempts=3, **options):
    payload = JobPayload(input_ref=make_input(), filename="book.xlsx", options=options)
    return store.create(type, payload, max_attempts)


class TestCreateAndGet:
    """Test job creation and lookup."""

    def test_create_job_is_waiting(self, store, make_input):
        job = _create(store, make_input, delimiter=";")

        assert job.state == JobState.WAITING
        assert job.attempts_made == 0
        assert job.progress == 0
        assert job.processed_at is None
        assert job.finished_at is None

        fetched = store.get(job.id)
        assert fetched.id == job.id
        assert fetched.type == ConversionType.EXCEL_TO_CSV
        assert fetched.payload.options == {"delimiter": ";"}
        assert fetched.payload.filename == "book.xlsx"
        assert fetched.created_at.tzinfo is not None

    def test_create_assigns_unique_ids(self, store, make_input):
        ids = {_create(store, make_input).id for _ in range(5)}
        assert len(ids) == 5

    def test_get_missing_job(self, store):
        with pytest.raises(JobNotFoundError):
            store.get("does-not-exist")

    def test_open_jobs_cannot_share_input(self, store, make_input):
        """Two non-terminal jobs never own the same input reference."""
        input_ref = make_input()
        store.create(ConversionType.EXCEL_TO_CSV, JobPayload(input_ref=input_ref), 3)

        with pytest.raises(ValidationError):
            store.create(ConversionType.EXCEL_TO_JSON, JobPayload(input_ref=input_ref), 3)

    def test_input_reusable_after_terminal(self, store, make_input):
        input_ref = make_input()
        first = store.create(ConversionType.EXCEL_TO_CSV, JobPayload(input_ref=input_ref), 1)
        store.claim_next("w1", 30)
        store.update(first.id, JobMutation(state=JobState.FAILED, failure_reason="boom"), "w1")

        second = store.create(ConversionType.EXCEL_TO_CSV, JobPayload(input_ref=input_ref), 1)
        assert second.id != first.id

    def test_unreachable_store_raises_infrastructure_error(self, temp_dir):
        blocker = temp_dir / "not_a_dir"
        blocker.write_text("file")

        with pytest.raises(InfrastructureError):
            SQLiteQueueStore(str(blocker / "queue.db"))


class TestClaim:
    """Test atomic claims."""

    def test_claim_moves_to_active(self, store, make_input):
        job = _create(store, make_input)

        claimed = store.claim_next("worker-1", lease_s=30)

        assert claimed.id == job.id
        assert claimed.state == JobState.ACTIVE
        assert claimed.worker_id == "worker-1"
        assert claimed.processed_at is not None
        assert claimed.lease_expires_at > claimed.processed_at

    def test_claim_empty_queue(self, store):
        assert store.claim_next("worker-1", 30) is None

    def test_claim_fifo_by_creation(self, store, make_input):
        jobs = [_create(store, make_input) for _ in range(3)]

        claimed = [store.claim_next("w", 30).id for _ in range(3)]

        assert claimed == [j.id for j in jobs]

    def test_delayed_job_not_claimed_before_available(self, store, make_input):
        job = _create(store, make_input)
        store.claim_next("w1", 30)
        available_at = utcnow() + timedelta(seconds=60)
        store.update(
            job.id,
            JobMutation(state=JobState.DELAYED, attempts_made=1, available_at=available_at),
            "w1",
        )

        assert store.claim_next("w2", 30) is None

        reclaimed = store.claim_next("w2", 30, now=available_at + timedelta(seconds=1))
        assert reclaimed.id == job.id
        assert reclaimed.attempts_made == 1
        assert reclaimed.available_at is None

    def test_concurrent_claims_are_distinct(self, store, make_input):
        """Many workers racing for jobs: each job is claimed exactly once."""
        jobs = [_create(store, make_input) for _ in range(20)]
        claimed = []
        lock = threading.Lock()
        errors = []

        def worker(worker_id):
            try:
                while True:
                    job = store.claim_next(worker_id, 30)
                    if job is None:
                        return
                    with lock:
                        claimed.append(job.id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(claimed) == sorted(j.id for j in jobs)
        assert len(set(claimed)) == len(claimed)


class TestUpdate:
    """Test state transitions applied through update()."""

    def test_complete_stamps_finished_at(self, store, make_input):
        job = _create(store, make_input)
        store.claim_next("w1", 30)

        done = store.update(
            job.id,
            JobMutation(state=JobState.COMPLETED, attempts_made=1, result={"filename": "a.csv"}),
            worker_id="w1",
        )

        assert done.state == JobState.COMPLETED
        assert done.progress == 100
        assert done.result == {"filename": "a.csv"}
        assert done.finished_at is not None
        assert done.worker_id is None

    def test_terminal_is_final(self, store, make_input):
        job = _create(store, make_input)
        store.claim_next("w1", 30)
        store.update(job.id, JobMutation(state=JobState.FAILED, failure_reason="bad"), "w1")

        with pytest.raises(ConflictError):
            store.update(job.id, JobMutation(state=JobState.COMPLETED, result={}))
        with pytest.raises(ConflictError):
            store.update(job.id, JobMutation(progress=50))

        assert store.get(job.id).state == JobState.FAILED

    def test_update_rejects_foreign_worker(self, store, make_input):
        job = _create(store, make_input)
        store.claim_next("w1", 30)

        with pytest.raises(ConflictError):
            store.update(job.id, JobMutation(progress=10), worker_id="w2")

    def test_illegal_transition(self, store, make_input):
        job = _create(store, make_input)

        with pytest.raises(ConflictError):
            store.update(job.id, JobMutation(state=JobState.COMPLETED, result={}))

    def test_result_only_on_completed(self, store, make_input):
        job = _create(store, make_input)

        with pytest.raises(ValueError):
            store.update(job.id, JobMutation(result={"x": 1}))

    def test_progress_update(self, store, make_input):
        job = _create(store, make_input)
        store.claim_next("w1", 30)

        updated = store.update(job.id, JobMutation(progress=40), worker_id="w1")

        assert updated.progress == 40
        assert updated.state == JobState.ACTIVE


class TestRemoveAndCancel:
    """Test removal and cancellation requests."""

    def test_remove_deletes_record(self, store, make_input):
        job = _create(store, make_input)

        removed = store.remove(job.id)

        assert removed.id == job.id
        with pytest.raises(JobNotFoundError):
            store.get(job.id)

    def test_remove_if_state_skips_active(self, store, make_input):
        job = _create(store, make_input)
        store.claim_next("w1", 30)

        assert store.remove_if_state(job.id, [JobState.WAITING, JobState.DELAYED]) is None
        assert store.get(job.id).state == JobState.ACTIVE

    def test_request_cancel_marks_active_job(self, store, make_input):
        job = _create(store, make_input)
        store.claim_next("w1", 30)

        marked = store.request_cancel(job.id)

        assert marked.cancel_requested is True
        assert marked.state == JobState.ACTIVE

    def test_request_cancel_requires_active(self, store, make_input):
        job = _create(store, make_input)

        with pytest.raises(InvalidStateError):
            store.request_cancel(job.id)


class TestListing:
    """Test legacy per-state pagination."""

    def test_list_all_paginates_each_state(self, store, make_input):
        """limit/offset apply per state, so 'all' can return up to 5 * limit jobs."""
        jobs = [_create(store, make_input) for _ in range(6)]
        # Claims take the oldest first: jobs[0..2] fail, jobs[3..5] stay waiting
        for _ in range(3):
            claimed = store.claim_next("w1", 30)
            store.update(
                claimed.id, JobMutation(state=JobState.FAILED, failure_reason="x"), "w1"
            )

        page = store.list("all", offset=0, limit=2)

        states = [j.state for j in page]
        assert states.count(JobState.WAITING) == 2
        assert states.count(JobState.FAILED) == 2
        assert len(page) == 4
        assert [j.id for j in page] == [jobs[3].id, jobs[4].id, jobs[0].id, jobs[1].id]

    def test_list_all_order_of_states(self, store, make_input):
        first = _create(store, make_input)
        second = _create(store, make_input)
        store.claim_next("w1", 30)
        store.update(first.id, JobMutation(state=JobState.FAILED, failure_reason="x"), "w1")

        page = store.list("all", limit=10)

        assert [j.id for j in page] == [second.id, first.id]

    def test_list_all_excludes_cancelled(self, store, make_input):
        job = _create(store, make_input)
        store.claim_next("w1", 30)
        store.update(job.id, JobMutation(state=JobState.CANCELLED), "w1")

        assert store.list("all") == []
        assert [j.id for j in store.list("cancelled")] == [job.id]

    def test_list_offset(self, store, make_input):
        jobs = [_create(store, make_input) for _ in range(5)]

        page = store.list("waiting", offset=2, limit=2)

        assert [j.id for j in page] == [jobs[2].id, jobs[3].id]

    def test_list_unknown_state(self, store):
        with pytest.raises(ValidationError):
            store.list("sleeping")

    def test_counts(self, store, make_input):
        _create(store, make_input)
        _create(store, make_input)
        store.claim_next("w1", 30)

        counts = store.counts()

        assert counts["waiting"] == 1
        assert counts["active"] == 1
        assert counts["cancelled"] == 0


class TestLeases:
    """Test heartbeat renewal and crash recovery."""

    def test_heartbeat_extends_lease(self, store, make_input):
        job = _create(store, make_input)
        claimed = store.claim_next("w1", lease_s=1)

        renewed = store.heartbeat(job.id, "w1", lease_s=60, progress=25)

        assert renewed.lease_expires_at > claimed.lease_expires_at
        assert renewed.progress == 25

    def test_heartbeat_from_non_owner(self, store, make_input):
        job = _create(store, make_input)
        store.claim_next("w1", 30)

        assert store.heartbeat(job.id, "w2", 30) is None

    def test_reap_returns_expired_claims_to_waiting(self, store, make_input):
        """A dead worker's job becomes claimable again without using an attempt."""
        job = _create(store, make_input)
        store.claim_next("w1", lease_s=1)

        reaped = store.reap_expired(now=utcnow() + timedelta(seconds=5))

        assert [j.id for j in reaped] == [job.id]
        fresh = store.get(job.id)
        assert fresh.state == JobState.WAITING
        assert fresh.attempts_made == 0
        assert fresh.worker_id is None

        reclaimed = store.claim_next("w2", 30)
        assert reclaimed.id == job.id

    def test_reap_ignores_live_leases(self, store, make_input):
        _create(store, make_input)
        store.claim_next("w1", lease_s=60)

        assert store.reap_expired() == []

    def test_reap_finalizes_cancel_requested(self, store, make_input):
        job = _create(store, make_input)
        store.claim_next("w1", lease_s=1)
        store.request_cancel(job.id)

        reaped = store.reap_expired(now=utcnow() + timedelta(seconds=5))

        assert reaped[0].state == JobState.CANCELLED
        assert reaped[0].finished_at is not None


class TestPurgeAndAudit:
    """Test retention and the transition log."""

    def test_purge_removes_old_terminal_jobs(self, store, make_input):
        done = _create(store, make_input)
        pending = _create(store, make_input)
        store.claim_next("w1", 30)
        store.update(done.id, JobMutation(state=JobState.COMPLETED, result={}), "w1")

        purged = store.purge([JobState.COMPLETED], utcnow() + timedelta(seconds=1))

        assert [j.id for j in purged] == [done.id]
        with pytest.raises(JobNotFoundError):
            store.get(done.id)
        assert store.get(pending.id).state == JobState.WAITING

    def test_purge_rejects_open_states(self, store):
        with pytest.raises(ValidationError):
            store.purge([JobState.WAITING], utcnow())

    def test_transitions_logged(self, store, make_input):
        job = _create(store, make_input)
        store.claim_next("w1", 30)
        store.update(job.id, JobMutation(state=JobState.FAILED, failure_reason="boom"), "w1")

        history = store.transitions(job.id)

        assert [(t.from_state, t.to_state) for t in history] == [
            (None, "waiting"),
            ("waiting", "active"),
            ("active", "failed"),
        ]
        assert history[-1].error_snippet == "boom"

    def test_ping(self, store):
        store.ping()

"""Worker pool that claims and executes conversion jobs.

This module provides the background execution side of the queue:
- Bounded pool of worker threads, each running claim -> dispatch -> record
- Poll interval back-off when nothing is eligible (no busy spin)
- Heartbeat thread per running job that renews the claim lease
- Reaper thread that returns jobs with expired leases to waiting
- Error classification (retryable conversion vs permanent vs infrastructure)
- Cooperative cancellation of running conversions
- Terminal events published to a JobEventBus
"""

import logging
import os
import socket
import threading
from typing import Dict, List, Optional

from tqdm import tqdm

from ..dispatcher import ConversionContext, Dispatcher
from ..errors import (
    ConflictError,
    ConversionCancelled,
    ConversionError,
    DocConvertError,
    InfrastructureError,
    ValidationError,
)
from ..models import WorkerConfig
from .backends import QueueStore
from .events import JobEventBus
from .models import Job, JobMutation, JobState
from .results import InputCleanup, ResultStore
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


def default_worker_prefix() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class _Heartbeat:
    """Renews a claim lease while a conversion runs.

    Sets the cancel event when the store reports a cancellation request or
    the claim was lost (reaped and possibly re-claimed elsewhere).
    """

    def __init__(
        self,
        store: QueueStore,
        job_id: str,
        worker_id: str,
        config: WorkerConfig,
        context: ConversionContext,
    ):
        self.store = store
        self.job_id = job_id
        self.worker_id = worker_id
        self.config = config
        self.context = context
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._loop, name=f"heartbeat-{job_id[:8]}", daemon=True
        )
        self.claim_lost = False

    def start(self) -> "_Heartbeat":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(timeout=5)

    def _loop(self) -> None:
        try:
            self._beat()
        finally:
            self.store.release_connection()

    def _beat(self) -> None:
        while not self._stop.wait(self.config.heartbeat_interval_s):
            try:
                refreshed = self.store.heartbeat(
                    self.job_id,
                    self.worker_id,
                    self.config.lease_timeout_s,
                    progress=self.context.progress,
                )
            except InfrastructureError as e:
                logger.warning("Heartbeat failed for job %s: %s", self.job_id, e)
                continue

            if refreshed is None:
                logger.warning("Worker %s lost its claim on job %s", self.worker_id, self.job_id)
                self.claim_lost = True
                self.context.cancelled.set()
                return
            if refreshed.cancel_requested:
                self.context.cancelled.set()


class JobWorkerPool:
    """Thread-based worker pool for conversion jobs.

    Features:
    - Explicitly constructed store/dispatcher (no module-level queue handle)
    - Context manager for graceful shutdown
    - Lease + heartbeat so crashed workers never leak jobs in 'active'
    - InfrastructureError never consumes an attempt

    Example:
        >>> with JobWorkerPool(store, dispatcher, results, config=config.workers):
        ...     serve_forever()
    """

    def __init__(
        self,
        store: QueueStore,
        dispatcher: Dispatcher,
        results: ResultStore,
        cleanup: Optional[InputCleanup] = None,
        events: Optional[JobEventBus] = None,
        config: Optional[WorkerConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        worker_prefix: Optional[str] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.results = results
        self.cleanup = cleanup or InputCleanup()
        self.events = events or JobEventBus()
        self.config = config or WorkerConfig()
        self.retry_policy = retry_policy or RetryPolicy()
        self.worker_prefix = worker_prefix or default_worker_prefix()

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._inflight: Dict[str, ConversionContext] = {}
        self._inflight_lock = threading.Lock()

    # --- lifecycle ---

    def __enter__(self) -> "JobWorkerPool":
        self.start()
        return self

    def __exit__(self, *args) -> None:
        self.stop(wait=True)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        """Reap stale claims, then start worker and reaper threads."""
        if self.running:
            raise RuntimeError("Worker pool already started")
        self._stop.clear()

        try:
            self.reap()
        except InfrastructureError as e:
            logger.error("Startup reap failed: %s", e)

        for i in range(self.config.concurrency):
            worker_id = f"{self.worker_prefix}-worker-{i + 1}"
            thread = threading.Thread(
                target=self._worker_loop, args=(worker_id,), name=worker_id, daemon=True
            )
            self._threads.append(thread)
            thread.start()

        reaper = threading.Thread(
            target=self._reaper_loop, name=f"{self.worker_prefix}-reaper", daemon=True
        )
        self._threads.append(reaper)
        reaper.start()
        logger.info("Started %d worker(s)", self.config.concurrency)

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop claiming new jobs; running conversions finish their attempt."""
        self._stop.set()
        if wait:
            for thread in self._threads:
                thread.join(timeout=timeout)
        self._threads = [t for t in self._threads if t.is_alive()]
        logger.info("Worker pool stopped")

    def signal_cancel(self, job_id: str) -> bool:
        """Fast-path cancellation for a job running in this process."""
        with self._inflight_lock:
            context = self._inflight.get(job_id)
        if context is None:
            return False
        context.cancelled.set()
        return True

    # --- loops ---

    def _worker_loop(self, worker_id: str) -> None:
        try:
            self._poll(worker_id)
        finally:
            self.store.release_connection()

    def _poll(self, worker_id: str) -> None:
        poll = self.config.poll_interval_s
        while not self._stop.is_set():
            try:
                processed = self.run_once(worker_id)
            except InfrastructureError as e:
                # Job (if any) keeps its claim until the lease expires; no attempt consumed
                logger.error("Worker %s: queue store unavailable: %s", worker_id, e)
                self._stop.wait(poll)
                continue
            except Exception:
                logger.exception("Worker %s: unexpected error", worker_id)
                self._stop.wait(poll)
                continue

            if processed is None:
                self._stop.wait(poll)

    def _reaper_loop(self) -> None:
        try:
            while not self._stop.wait(self.config.reaper_interval_s):
                try:
                    self.reap()
                except InfrastructureError as e:
                    logger.error("Reaper: queue store unavailable: %s", e)
        finally:
            self.store.release_connection()

    # --- execution ---

    def reap(self) -> List[Job]:
        """Release expired claims; cancelled ones are finalized here."""
        reaped = self.store.reap_expired()
        for job in reaped:
            if job.state is JobState.CANCELLED:
                self._finish(job)
            else:
                logger.warning("Job %s lease expired; returned to waiting", job.id)
        return reaped

    def run_once(self, worker_id: str) -> Optional[Job]:
        """Claim one eligible job and execute it.

        Returns:
            The job's state after this attempt, or None when nothing was
            eligible (or the claim was lost while running)
        """
        job = self.store.claim_next(worker_id, self.config.lease_timeout_s)
        if job is None:
            return None
        return self.process(job, worker_id)

    def process(self, job: Job, worker_id: str) -> Optional[Job]:
        """Execute a claimed job and record its outcome.

        Error handling:
        - ConversionError / ConversionTimeout: retry per policy
        - ValidationError: permanent failure
        - ConversionCancelled: job becomes cancelled
        - Any other exception from dispatch or result storage: retry per policy
        - InfrastructureError: propagates, job left untouched
        """
        attempt = job.attempts_made + 1
        logger.info(
            "Worker %s processing job %s (%s, attempt %d/%d)",
            worker_id,
            job.id,
            job.type.value,
            attempt,
            job.max_attempts,
        )

        context = ConversionContext(job.id, attempt=attempt)
        with self._inflight_lock:
            self._inflight[job.id] = context
        if job.cancel_requested:
            context.cancelled.set()

        heartbeat = _Heartbeat(self.store, job.id, worker_id, self.config, context).start()
        try:
            try:
                output = self.dispatcher.dispatch(job, context)
                result = self.results.save(job.id, output)
            except ConversionCancelled:
                return self._record_cancelled(job, worker_id)
            except ConversionError as e:
                return self._record_failure(job, worker_id, e, retryable=True)
            except ValidationError as e:
                return self._record_failure(job, worker_id, e, retryable=False)
            except OSError as e:
                return self._record_failure(
                    job, worker_id, ConversionError(f"Could not store result: {e}"), retryable=True
                )
            except (ConflictError, InfrastructureError):
                raise
            except Exception as e:
                logger.exception("Unexpected error while converting job %s", job.id)
                return self._record_failure(
                    job, worker_id, ConversionError(f"{type(e).__name__}: {e}"), retryable=True
                )
            return self._record_success(job, worker_id, result)
        except ConflictError as e:
            logger.warning("Dropping outcome of job %s: %s", job.id, e)
            return None
        finally:
            heartbeat.stop()
            with self._inflight_lock:
                self._inflight.pop(job.id, None)

    def _record_success(self, job: Job, worker_id: str, result: Dict) -> Job:
        final = self.store.update(
            job.id,
            JobMutation(
                state=JobState.COMPLETED,
                attempts_made=job.attempts_made + 1,
                result=result,
            ),
            worker_id=worker_id,
        )
        self._finish(final)
        return final

    def _record_failure(
        self, job: Job, worker_id: str, error: DocConvertError, retryable: bool
    ) -> Job:
        decision = self.retry_policy.decide(job.attempts_made, job.max_attempts, retryable)
        message = error.message

        if decision.retry:
            logger.warning(
                "Job %s attempt %d/%d failed (%s); retrying in %dms",
                job.id,
                decision.attempts_made,
                job.max_attempts,
                message,
                decision.delay_ms,
            )
            return self.store.update(
                job.id,
                JobMutation(
                    state=JobState.DELAYED,
                    attempts_made=decision.attempts_made,
                    last_error=message,
                    available_at=decision.available_at,
                ),
                worker_id=worker_id,
            )

        final = self.store.update(
            job.id,
            JobMutation(
                state=JobState.FAILED,
                attempts_made=decision.attempts_made,
                failure_reason=message,
                last_error=message,
            ),
            worker_id=worker_id,
        )
        self._finish(final)
        return final

    def _record_cancelled(self, job: Job, worker_id: str) -> Job:
        final = self.store.update(
            job.id,
            JobMutation(state=JobState.CANCELLED, attempts_made=job.attempts_made + 1),
            worker_id=worker_id,
        )
        self._finish(final)
        return final

    def _finish(self, job: Job) -> None:
        """Hand the input to cleanup and notify subscribers."""
        self.cleanup.release(job.payload.input_ref)
        self.events.publish(job)

    # --- batch mode ---

    def drain(self, max_jobs: Optional[int] = None, worker_id: Optional[str] = None) -> Dict:
        """Process eligible jobs on the calling thread until none are left.

        Args:
            max_jobs: Stop after this many attempts
            worker_id: Claim identity (default: "<prefix>-drain")

        Returns:
            Dictionary with completed/failed/retried/cancelled/lost counts
        """
        worker_id = worker_id or f"{self.worker_prefix}-drain"
        stats = {"completed": 0, "failed": 0, "retried": 0, "cancelled": 0, "lost": 0}
        counts = self.store.counts()
        total = counts[JobState.WAITING.value] + counts[JobState.DELAYED.value]
        if max_jobs is not None:
            total = min(total, max_jobs)

        processed = 0
        with tqdm(total=total, desc="Converting", unit="job") as bar:
            while max_jobs is None or processed < max_jobs:
                job = self.store.claim_next(worker_id, self.config.lease_timeout_s)
                if job is None:
                    break
                final = self.process(job, worker_id)
                processed += 1
                bar.update(1)

                if final is None:
                    stats["lost"] += 1
                elif final.state is JobState.DELAYED:
                    stats["retried"] += 1
                elif final.state.value in stats:
                    stats[final.state.value] += 1
        return stats

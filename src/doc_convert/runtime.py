"""Wiring of the queue store, dispatcher, worker pool and job service.

Both the HTTP app and the CLI build their collaborators here so that a single
config object decides where the queue database, uploads and results live.

Usage:
    runtime = build_runtime(resolve_config())
    with runtime.pool:
        job_id = runtime.service.enqueue("excel-to-csv", {"input_ref": "a.xlsx"})
    runtime.close()
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .converters import build_default_dispatcher
from .dispatcher import Dispatcher
from .models import DocConvertConfig
from .queue.events import JobEventBus, log_terminal_events
from .queue.results import InputCleanup, ResultStore
from .queue.retry import RetryPolicy
from .queue.sqlite_backend import SQLiteQueueStore
from .queue.worker import JobWorkerPool
from .service import JobService


@dataclass
class Runtime:
    config: DocConvertConfig
    store: SQLiteQueueStore
    dispatcher: Dispatcher
    results: ResultStore
    cleanup: InputCleanup
    events: JobEventBus
    pool: JobWorkerPool
    service: JobService

    def close(self) -> None:
        if self.pool.running:
            self.pool.stop(wait=True, timeout=self.config.dispatch.job_timeout_s)
        self.store.close()


def build_runtime(
    config: DocConvertConfig,
    dispatcher: Optional[Dispatcher] = None,
) -> Runtime:
    """Build every collaborator from ``config``.

    Args:
        config: Resolved configuration
        dispatcher: Pre-registered dispatcher (default: converters whose
            external tools are installed on this host)
    """
    Path(config.storage.uploads_dir).mkdir(parents=True, exist_ok=True)

    store = SQLiteQueueStore(config.queue.db_path, lock_retries=config.queue.lock_retries)
    dispatcher = dispatcher or build_default_dispatcher(config)
    results = ResultStore(config.storage.results_dir)
    cleanup = InputCleanup(
        config.storage.uploads_dir, delete_inputs=config.storage.delete_inputs
    )

    events = JobEventBus()
    log_terminal_events(events)

    pool = JobWorkerPool(
        store,
        dispatcher,
        results,
        cleanup=cleanup,
        events=events,
        config=config.workers,
        retry_policy=RetryPolicy(base_delay_ms=config.queue.backoff_base_ms),
    )
    service = JobService(
        store,
        dispatcher,
        results,
        cleanup=cleanup,
        config=config,
        cancel_signal=pool.signal_cancel,
    )
    return Runtime(
        config=config,
        store=store,
        dispatcher=dispatcher,
        results=results,
        cleanup=cleanup,
        events=events,
        pool=pool,
        service=service,
    )

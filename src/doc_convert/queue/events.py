"""Listener registry for terminal job transitions.

The worker pool publishes after a job reaches completed, failed or cancelled;
subscribers (logging, metrics, notifications) never influence the transition
itself. A failing listener is logged and skipped.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .models import Job, JobState, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobEvent:
    job: Job
    state: JobState
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def job_id(self) -> str:
        return self.job.id


Listener = Callable[[JobEvent], None]

ANY_STATE = "*"


class JobEventBus:
    """Thread-safe publish/subscribe channel keyed by terminal state."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener, state: Optional[JobState] = None) -> Callable[[], None]:
        """Register a listener for one state (or all states).

        Returns:
            A callable that unsubscribes the listener
        """
        key = JobState(state).value if state is not None else ANY_STATE
        with self._lock:
            self._listeners.setdefault(key, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(key, [])
                if listener in listeners:
                    listeners.remove(listener)

        return unsubscribe

    def on_completed(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe(listener, JobState.COMPLETED)

    def on_failed(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe(listener, JobState.FAILED)

    def on_cancelled(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe(listener, JobState.CANCELLED)

    def publish(self, job: Job) -> JobEvent:
        event = JobEvent(job=job, state=JobState(job.state))
        with self._lock:
            listeners = list(self._listeners.get(event.state.value, []))
            listeners += self._listeners.get(ANY_STATE, [])
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Listener %r failed for job %s", listener, job.id)
        return event


def log_terminal_events(bus: JobEventBus) -> None:
    """Default subscribers: one log line per terminal transition."""

    def completed(event: JobEvent) -> None:
        logger.info(
            "Job %s completed (%s, %d attempt(s))",
            event.job_id,
            event.job.type.value,
            event.job.attempts_made,
        )

    def failed(event: JobEvent) -> None:
        logger.error(
            "Job %s failed after %d attempt(s): %s",
            event.job_id,
            event.job.attempts_made,
            event.job.failure_reason,
        )

    def cancelled(event: JobEvent) -> None:
        logger.info("Job %s cancelled", event.job_id)

    bus.on_completed(completed)
    bus.on_failed(failed)
    bus.on_cancelled(cancelled)

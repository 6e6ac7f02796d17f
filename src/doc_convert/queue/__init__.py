"""Durable job queue for background document conversions.

The worker pool lives in doc_convert.queue.worker (it depends on the
dispatcher, which itself builds on these models).
"""

from .backends import QueueStore
from .events import JobEvent, JobEventBus, log_terminal_events
from .models import (
    ConversionType,
    Job,
    JobMutation,
    JobPayload,
    JobState,
    StateTransition,
    TERMINAL_STATES,
)
from .results import InputCleanup, ResultStore
from .retry import RetryDecision, RetryPolicy
from .sqlite_backend import SQLiteQueueStore

__all__ = [
    "QueueStore",
    "JobEvent",
    "JobEventBus",
    "log_terminal_events",
    "ConversionType",
    "Job",
    "JobMutation",
    "JobPayload",
    "JobState",
    "StateTransition",
    "TERMINAL_STATES",
    "InputCleanup",
    "ResultStore",
    "RetryDecision",
    "RetryPolicy",
    "SQLiteQueueStore",
]

"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current time; every stored timestamp is UTC."""
    return datetime.now(timezone.utc)


class ConversionType(str, Enum):
    """Conversion kinds a job may request."""

    OFFICE_TO_PDF = "office-to-pdf"
    EXCEL_TO_CSV = "excel-to-csv"
    CSV_TO_EXCEL = "csv-to-excel"
    EXCEL_TO_JSON = "excel-to-json"
    JSON_TO_EXCEL = "json-to-excel"
    HTML_TO_MARKDOWN = "html-to-markdown"
    MARKDOWN_TO_HTML = "markdown-to-html"
    IMAGE_TO_TEXT = "image-to-text"


class JobState(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        waiting   → active      (worker claims)
        delayed   → active      (worker claims once the backoff elapsed)
        active    → completed   (converter succeeded)
        active    → delayed     (converter failed, attempts remain)
        active    → failed      (attempts exhausted or permanent error)
        active    → waiting     (lease expired, reaped without using an attempt)
        active    → cancelled   (converter honoured a cancellation request)
        waiting/delayed → removed  (cancel deletes the record)
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[JobState] = frozenset(
    {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}
)

# States that own their input reference and can still be claimed or cancelled.
OPEN_STATES: FrozenSet[JobState] = frozenset(
    {JobState.WAITING, JobState.ACTIVE, JobState.DELAYED}
)

# Order used when listing every state.
LISTED_STATES = (
    JobState.WAITING,
    JobState.ACTIVE,
    JobState.COMPLETED,
    JobState.FAILED,
    JobState.DELAYED,
)

ALLOWED_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.WAITING: frozenset({JobState.ACTIVE, JobState.CANCELLED}),
    JobState.DELAYED: frozenset({JobState.ACTIVE, JobState.CANCELLED}),
    JobState.ACTIVE: frozenset(
        {
            JobState.COMPLETED,
            JobState.FAILED,
            JobState.DELAYED,
            JobState.WAITING,
            JobState.CANCELLED,
        }
    ),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.CANCELLED: frozenset(),
}


def can_transition(from_state: JobState, to_state: JobState) -> bool:
    return to_state in ALLOWED_TRANSITIONS[JobState(from_state)]


class JobPayload(BaseModel):
    """Input reference plus converter options, passed through verbatim."""

    input_ref: str = Field(..., min_length=1, description="Path or handle of the input data")
    filename: Optional[str] = Field(default=None, description="Original upload filename")
    options: Dict[str, Any] = Field(default_factory=dict, description="Converter options")


class Job(BaseModel):
    """Durable unit of conversion work and its tracked state."""

    id: str = Field(..., description="Unique job identifier (UUID)")
    type: ConversionType = Field(..., description="Requested conversion")
    payload: JobPayload
    state: JobState = Field(default=JobState.WAITING)
    attempts_made: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = Field(default=None, description="First claim time")
    finished_at: Optional[datetime] = Field(default=None, description="Terminal time")
    progress: int = Field(default=0, ge=0, le=100)
    result: Optional[Dict[str, Any]] = Field(default=None)
    failure_reason: Optional[str] = Field(default=None)

    # Claim bookkeeping
    worker_id: Optional[str] = Field(default=None, description="Worker holding the claim")
    lease_expires_at: Optional[datetime] = Field(default=None)
    available_at: Optional[datetime] = Field(
        default=None, description="Earliest claim time for a delayed job"
    )
    cancel_requested: bool = Field(default=False)
    last_error: Optional[str] = Field(default=None, description="Last retryable failure")

    @property
    def is_terminal(self) -> bool:
        return JobState(self.state).is_terminal


class JobMutation(BaseModel):
    """Partial update applied atomically by QueueStore.update().

    Only fields that are set are written. ``state`` moves the job through the
    state machine; terminal states stamp ``finished_at`` automatically.
    """

    state: Optional[JobState] = None
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    attempts_made: Optional[int] = Field(default=None, ge=0)
    result: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    last_error: Optional[str] = None
    available_at: Optional[datetime] = None


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str
    from_state: Optional[str] = None
    to_state: str
    timestamp: datetime = Field(default_factory=utcnow)
    worker_id: Optional[str] = None
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")

from __future__ import annotations

"""Abstract base class for queue store backends.

This module defines the interface the job service and worker pool depend on.
The local implementation is SQLite (see sqlite_backend); anything offering an
atomic compare-and-set per claim can implement it.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

if TYPE_CHECKING:
    from .models import ConversionType, Job, JobMutation, JobPayload, JobState, StateTransition


class QueueStore(ABC):
    """Durable mapping from job id to Job record, indexed by state.

    Implementations must provide:
    - Atomic claim (no two callers ever receive the same job)
    - FIFO claim order by created_at among eligible jobs
    - Conflict detection for mutations on terminal jobs
    - Lease tracking so crashed workers' claims can be reaped
    - InfrastructureError for every failure that is not a business outcome
    """

    @abstractmethod
    def create(
        self,
        type: "ConversionType",
        payload: "JobPayload",
        max_attempts: int,
    ) -> "Job":
        """Persist a new job in the waiting state.

        Args:
            type: Conversion type (already validated by the dispatcher)
            payload: Input reference and converter options
            max_attempts: Execution attempt ceiling

        Returns:
            The stored Job with its allocated id

        Raises:
            ValidationError: input_ref is owned by another open job
        """

    @abstractmethod
    def claim_next(
        self,
        worker_id: str,
        lease_s: float,
        now: Optional[datetime] = None,
    ) -> Optional["Job"]:
        """Atomically claim the oldest eligible job.

        Args:
            worker_id: Unique identifier for the claiming worker
            lease_s: Seconds until the claim expires without a heartbeat
            now: Clock override (defaults to current UTC time)

        Returns:
            Claimed Job (state=active) or None when nothing is eligible

        Implementation notes:
        - Eligible: state='waiting', or state='delayed' with available_at <= now
        - MUST be atomic under concurrent callers
        - Stamps processed_at on first claim only
        """

    @abstractmethod
    def get(self, job_id: str) -> "Job":
        """Fetch a job.

        Raises:
            JobNotFoundError: no such job
        """

    @abstractmethod
    def update(
        self,
        job_id: str,
        mutation: "JobMutation",
        worker_id: Optional[str] = None,
    ) -> "Job":
        """Apply a state/progress/result mutation atomically.

        Args:
            job_id: Job identifier
            mutation: Fields to write
            worker_id: When given, the mutation only applies while this worker
                still holds the active claim

        Raises:
            JobNotFoundError: no such job
            ConflictError: job already terminal, illegal transition, or the
                worker lost its claim
        """

    @abstractmethod
    def remove(self, job_id: str) -> "Job":
        """Delete a job record and return its last state.

        Raises:
            JobNotFoundError: no such job
        """

    @abstractmethod
    def remove_if_state(self, job_id: str, states: Iterable["JobState"]) -> Optional["Job"]:
        """Delete a job only while it is in one of ``states``.

        Returns the removed job, or None when the job moved to another state
        first (the caller re-reads and decides).

        Raises:
            JobNotFoundError: no such job
        """

    @abstractmethod
    def list(
        self,
        state_filter: str = "all",
        offset: int = 0,
        limit: int = 20,
    ) -> List["Job"]:
        """List jobs ordered by created_at ascending within each state.

        With state_filter='all' every listed state is paginated independently
        and the windows are concatenated in state order.
        """

    @abstractmethod
    def counts(self) -> Dict[str, int]:
        """Number of jobs per state."""

    @abstractmethod
    def heartbeat(
        self,
        job_id: str,
        worker_id: str,
        lease_s: float,
        progress: Optional[int] = None,
    ) -> Optional["Job"]:
        """Extend the lease of a claim the worker still holds.

        Args:
            progress: Optional progress (0-100) recorded with the heartbeat

        Returns:
            The refreshed Job (carrying cancel_requested), or None if the
            claim was lost (reaped, cancelled or finished)
        """

    @abstractmethod
    def reap_expired(self, now: Optional[datetime] = None) -> List["Job"]:
        """Crash recovery: release active jobs whose lease expired.

        Implementation notes:
        - Resets to waiting without incrementing attempts_made
        - A job whose cancellation was requested becomes cancelled instead
        - Returns the affected jobs in their new state
        """

    @abstractmethod
    def request_cancel(self, job_id: str) -> "Job":
        """Flag an active job for cooperative interruption.

        Raises:
            JobNotFoundError: no such job
            InvalidStateError: job is not active
        """

    @abstractmethod
    def purge(self, states: Iterable["JobState"], finished_before: datetime) -> List["Job"]:
        """Retention: delete terminal jobs finished before a cutoff."""

    @abstractmethod
    def transitions(self, job_id: str) -> List["StateTransition"]:
        """Audit trail for a job, oldest first."""

    @abstractmethod
    def ping(self) -> None:
        """Raise InfrastructureError if the store is unreachable."""

    @abstractmethod
    def close(self) -> None:
        """Release resources held by the store."""

    def release_connection(self) -> None:
        """Release resources the calling thread holds; called as a thread exits."""

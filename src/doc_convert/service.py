"""API-facing job service: enqueue, status, download, cancel, list.

The service is framework-agnostic; the FastAPI layer and the CLI both call
into it. Whenever the queue store is unreachable every operation raises
ServiceUnavailableError; there is no synchronous fallback.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .dispatcher import Dispatcher
from .errors import (
    InfrastructureError,
    InvalidStateError,
    ServiceUnavailableError,
    ValidationError,
)
from .models import DocConvertConfig
from .queue.backends import QueueStore
from .queue.models import (
    TERMINAL_STATES,
    ConversionType,
    Job,
    JobPayload,
    JobState,
    utcnow,
)
from .queue.results import InputCleanup, ResultStore, is_within

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_CEILING = 10


# --- Response views ---


class JobStatusView(BaseModel):
    jobId: str  # noqa: N815
    type: str
    state: str
    progress: int
    createdAt: datetime  # noqa: N815
    processedAt: Optional[datetime] = None  # noqa: N815
    finishedAt: Optional[datetime] = None  # noqa: N815
    attemptsMade: int = 0  # noqa: N815
    maxAttempts: int = 0  # noqa: N815
    result: Optional[Dict[str, Any]] = None
    failureReason: Optional[str] = None  # noqa: N815

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusView":
        result = None
        if job.result is not None:
            # Server-side paths stay private
            result = {k: v for k, v in job.result.items() if k != "outputRef"}
        return cls(
            jobId=job.id,
            type=job.type.value,
            state=job.state.value,
            progress=job.progress,
            createdAt=job.created_at,
            processedAt=job.processed_at,
            finishedAt=job.finished_at,
            attemptsMade=job.attempts_made,
            maxAttempts=job.max_attempts,
            result=result,
            failureReason=job.failure_reason,
        )

    def to_response(self) -> Dict[str, Any]:
        """JSON body with result/failureReason only when they apply."""
        body = self.model_dump(mode="json")
        if body["result"] is None:
            body.pop("result")
        if body["failureReason"] is None:
            body.pop("failureReason")
        return body


class JobSummaryView(BaseModel):
    jobId: str  # noqa: N815
    state: str
    progress: int
    createdAt: datetime  # noqa: N815
    data: Dict[str, Optional[str]] = Field(default_factory=dict)

    @classmethod
    def from_job(cls, job: Job) -> "JobSummaryView":
        return cls(
            jobId=job.id,
            state=job.state.value,
            progress=job.progress,
            createdAt=job.created_at,
            data={"type": job.type.value, "filename": job.payload.filename},
        )


class JobListView(BaseModel):
    jobs: List[JobSummaryView]
    total: int
    limit: int
    offset: int


class CancelView(BaseModel):
    success: bool
    message: str
    jobId: str  # noqa: N815


@dataclass
class DownloadView:
    content: bytes
    filename: str
    content_type: str


class JobService:
    """Boundary over the queue store used by the HTTP API and the CLI."""

    def __init__(
        self,
        store: QueueStore,
        dispatcher: Dispatcher,
        results: ResultStore,
        cleanup: Optional[InputCleanup] = None,
        config: Optional[DocConvertConfig] = None,
        cancel_signal: Optional[Callable[[str], Any]] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.results = results
        self.config = config or DocConvertConfig()
        self.cleanup = cleanup or InputCleanup(self.config.storage.uploads_dir)
        self.cancel_signal = cancel_signal

    @contextmanager
    def _available(self) -> Iterator[None]:
        try:
            yield
        except InfrastructureError as e:
            logger.error("Queue store unavailable: %s", e)
            raise ServiceUnavailableError(
                "Job queue not available: asynchronous processing requires the queue store",
                details={"cause": e.message},
            ) from e

    def health(self) -> None:
        with self._available():
            self.store.ping()

    def enqueue(
        self,
        type: Union[str, ConversionType],
        payload: Union[JobPayload, Dict[str, Any]],
        options: Optional[Dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        """Validate and persist a new job.

        Raises:
            UnsupportedTypeError: no converter for ``type`` (nothing is stored)
            ValidationError: bad payload, options or attempt ceiling
            ServiceUnavailableError: queue store unreachable
        """
        if isinstance(payload, dict):
            try:
                payload = JobPayload(**payload)
            except (TypeError, PydanticValidationError) as e:
                raise ValidationError(f"Invalid payload: {e}") from e
        if options:
            payload = payload.model_copy(update={"options": {**payload.options, **options}})

        conversion_type = self.dispatcher.validate(type, payload.options)

        if max_attempts is None:
            max_attempts = self.config.queue.max_attempts
        if not 1 <= max_attempts <= MAX_ATTEMPTS_CEILING:
            raise ValidationError(f"maxAttempts must be between 1 and {MAX_ATTEMPTS_CEILING}")
        # The job takes ownership of its input, so only uploaded files qualify
        uploads_dir = self.config.storage.uploads_dir
        if not is_within(payload.input_ref, uploads_dir):
            raise ValidationError(
                "Input must be a file in the uploads directory",
                details={"inputRef": payload.input_ref},
            )
        if not Path(payload.input_ref).is_file():
            raise ValidationError(f"Input not found: {Path(payload.input_ref).name}")

        with self._available():
            job = self.store.create(conversion_type, payload, max_attempts)
        logger.info("Enqueued job %s (%s)", job.id, conversion_type.value)
        return job.id

    def get_job(self, job_id: str) -> Job:
        with self._available():
            return self.store.get(job_id)

    def status(self, job_id: str) -> JobStatusView:
        return JobStatusView.from_job(self.get_job(job_id))

    def download(self, job_id: str) -> DownloadView:
        job = self.get_job(job_id)
        if job.state is not JobState.COMPLETED:
            raise InvalidStateError(
                f"Job is in {job.state.value} state", details={"jobId": job_id}
            )
        content = self.results.load(job.result or {})
        return DownloadView(
            content=content,
            filename=job.result.get("filename") or f"{job_id}.out",
            content_type=job.result.get("contentType") or "application/octet-stream",
        )

    def cancel(self, job_id: str) -> CancelView:
        """Cancel a job.

        waiting/delayed: the record is removed and its input released.
        active: cancellation is requested; a cooperative converter stops and
            the job becomes cancelled, otherwise the attempt finishes normally.
        terminal: InvalidStateError.
        """
        with self._available():
            # Retry when the job moves between our read and our write
            for _ in range(3):
                job = self.store.get(job_id)
                if job.state in TERMINAL_STATES:
                    raise InvalidStateError(
                        f"Cannot cancel job: job already {job.state.value}",
                        details={"jobId": job_id},
                    )

                if job.state in (JobState.WAITING, JobState.DELAYED):
                    removed = self.store.remove_if_state(
                        job_id, (JobState.WAITING, JobState.DELAYED)
                    )
                    if removed is None:
                        continue
                    self.cleanup.release(removed.payload.input_ref)
                    logger.info("Cancelled job %s (%s)", job_id, removed.state.value)
                    return CancelView(success=True, message=f"Job {job_id} cancelled", jobId=job_id)

                try:
                    self.store.request_cancel(job_id)
                except InvalidStateError:
                    continue
                if self.cancel_signal is not None:
                    self.cancel_signal(job_id)
                logger.info("Cancellation requested for active job %s", job_id)
                return CancelView(
                    success=True,
                    message=f"Cancellation requested for active job {job_id}",
                    jobId=job_id,
                )

        raise InvalidStateError(
            f"Job {job_id} changed state during cancellation; retry", details={"jobId": job_id}
        )

    def list(
        self, state_filter: str = "all", limit: Optional[int] = None, offset: int = 0
    ) -> JobListView:
        """List jobs.

        With state_filter='all' the limit/offset window applies to each state
        separately, so up to ``5 * limit`` jobs can come back; ``total`` is
        the number of jobs returned.
        """
        limit = self.config.page_size(limit)
        if offset < 0:
            raise ValidationError("offset must be >= 0")
        with self._available():
            jobs = self.store.list(state_filter or "all", offset=offset, limit=limit)
        return JobListView(
            jobs=[JobSummaryView.from_job(job) for job in jobs],
            total=len(jobs),
            limit=limit,
            offset=offset,
        )

    def stats(self) -> Dict[str, int]:
        with self._available():
            counts = self.store.counts()
        counts["total"] = sum(counts.values())
        return counts

    def retry_failed(self) -> int:
        """Re-enqueue failed jobs as new jobs.

        The failed record stays terminal. Jobs whose input has already been
        released are skipped.
        """
        count = 0
        page = 100
        with self._available():
            failed: List[Job] = []
            offset = 0
            while True:
                batch = self.store.list(JobState.FAILED.value, offset=offset, limit=page)
                failed.extend(batch)
                if len(batch) < page:
                    break
                offset += page

        for job in failed:
            if not Path(job.payload.input_ref).is_file():
                logger.warning("Skipping retry of job %s: input no longer exists", job.id)
                continue
            try:
                new_id = self.enqueue(job.type, job.payload, max_attempts=job.max_attempts)
            except ValidationError as e:
                logger.warning("Skipping retry of job %s: %s", job.id, e.message)
                continue
            logger.info("Job %s re-enqueued as %s", job.id, new_id)
            count += 1
        return count

    def purge(self, older_than_s: float) -> int:
        """Retention: remove terminal jobs finished more than ``older_than_s`` ago."""
        cutoff = utcnow() - timedelta(seconds=older_than_s)
        with self._available():
            purged = self.store.purge(TERMINAL_STATES, cutoff)
        for job in purged:
            self.results.delete(job.id)
        logger.info("Purged %d finished job(s)", len(purged))
        return len(purged)

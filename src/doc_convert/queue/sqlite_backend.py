"""SQLite implementation of QueueStore.

This module provides the local-first, crash-safe queue store using:
- sqlite-utils for schema management and row reads
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic claims and mutations
- Exponential backoff retry for database lock handling
- A per-thread connection, so worker threads never share a cursor
"""

import json
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from sqlite_utils import Database

from ..errors import (
    ConflictError,
    InfrastructureError,
    InvalidStateError,
    JobNotFoundError,
    ValidationError,
)
from .backends import QueueStore
from .models import (
    LISTED_STATES,
    OPEN_STATES,
    ConversionType,
    Job,
    JobMutation,
    JobPayload,
    JobState,
    StateTransition,
    can_transition,
    utcnow,
)

T = TypeVar("T")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    input_ref TEXT NOT NULL,
    filename TEXT,
    options TEXT,
    state TEXT NOT NULL,
    attempts_made INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    processed_at TEXT,
    finished_at TEXT,
    progress INTEGER NOT NULL DEFAULT 0,
    result TEXT,
    failure_reason TEXT,
    worker_id TEXT,
    lease_expires_at TEXT,
    available_at TEXT,
    cancel_requested INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_state_created ON jobs(state, created_at);

-- An input file belongs to at most one open job
CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_open_input
    ON jobs(input_ref) WHERE state IN ('waiting', 'active', 'delayed');

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);
"""

REMOVED = "removed"


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_job(row: Dict[str, Any]) -> Job:
    """Convert a jobs table row (dict) to a Job model."""
    return Job(
        id=row["id"],
        type=ConversionType(row["type"]),
        payload=JobPayload(
            input_ref=row["input_ref"],
            filename=row["filename"],
            options=json.loads(row["options"]) if row["options"] else {},
        ),
        state=JobState(row["state"]),
        attempts_made=row["attempts_made"],
        max_attempts=row["max_attempts"],
        created_at=_parse_ts(row["created_at"]),
        processed_at=_parse_ts(row["processed_at"]),
        finished_at=_parse_ts(row["finished_at"]),
        progress=row["progress"],
        result=json.loads(row["result"]) if row["result"] else None,
        failure_reason=row["failure_reason"],
        worker_id=row["worker_id"],
        lease_expires_at=_parse_ts(row["lease_expires_at"]),
        available_at=_parse_ts(row["available_at"]),
        cancel_requested=bool(row["cancel_requested"]),
        last_error=row["last_error"],
    )


def _fetch_dicts(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
    columns = [d[0] for d in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


class SQLiteQueueStore(QueueStore):
    """SQLite-based queue store with atomic claim operations.

    Features:
    - Atomic claim via BEGIN IMMEDIATE + UPDATE...RETURNING
    - Exponential backoff retry for database lock contention
    - Claim leases renewed by heartbeats, reaped on expiry
    - Automatic state transition logging

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so the
      select-then-update inside a claim cannot interleave with another claim
    - Each thread gets its own connection
    """

    def __init__(self, db_path: str, lock_retries: int = 3, busy_timeout_s: float = 5.0):
        """Initialize queue database.

        Args:
            db_path: Path to SQLite database file
            lock_retries: Attempts on 'database is locked' before giving up
            busy_timeout_s: sqlite3 busy timeout per attempt

        Creates schema if database doesn't exist.
        """
        self.db_path = Path(db_path)
        self.lock_retries = lock_retries
        self.busy_timeout_s = busy_timeout_s
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            db = self.db
            db.conn.execute("PRAGMA journal_mode=WAL")
            db.conn.execute("PRAGMA synchronous=NORMAL")
            db.executescript(SCHEMA_SQL)
        except (OSError, sqlite3.Error) as e:
            raise InfrastructureError(f"Cannot open queue store at {self.db_path}: {e}") from e

    # --- connection handling ---

    @property
    def db(self) -> Database:
        """sqlite-utils Database bound to the calling thread's connection."""
        db = getattr(self._local, "db", None)
        if db is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_s,
                isolation_level=None,  # transactions are explicit
                check_same_thread=False,
            )
            with self._connections_lock:
                self._connections.append(conn)
            db = Database(conn)
            self._local.db = db
        return db

    def release_connection(self) -> None:
        """Close the calling thread's connection.

        Short-lived threads (heartbeats, workers, reapers) call this on exit so
        connections do not accumulate until close().
        """
        db = getattr(self._local, "db", None)
        if db is None:
            return
        self._local.db = None
        with self._connections_lock:
            self._connections = [c for c in self._connections if c is not db.conn]
        try:
            db.conn.close()
        except sqlite3.Error:
            pass

    def close(self) -> None:
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
            self._connections.clear()
        self._local = threading.local()

    def _run(self, operation: Callable[[sqlite3.Connection], T], write: bool = True) -> T:
        """Run an operation with lock retry and error translation.

        Write operations run inside BEGIN IMMEDIATE; business errors raised by
        the operation roll the transaction back and propagate unchanged.
        Backoff on lock contention: 100ms, 200ms, 400ms...
        """
        for attempt in range(self.lock_retries):
            try:
                conn = self.db.conn
                if not write:
                    return operation(conn)
                conn.execute("BEGIN IMMEDIATE")
                try:
                    result = operation(conn)
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
                return result
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < self.lock_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise InfrastructureError(f"Queue store unavailable: {e}") from e
            except sqlite3.Error as e:
                raise InfrastructureError(f"Queue store error: {e}") from e
        raise InfrastructureError("Queue store unavailable: lock retries exhausted")

    def _select_row(self, conn: sqlite3.Connection, job_id: str) -> Dict[str, Any]:
        rows = _fetch_dicts(conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)))
        if not rows:
            raise JobNotFoundError(f"Job {job_id} not found")
        return rows[0]

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Append to the audit trail inside the caller's transaction."""
        conn.execute(
            """
            INSERT INTO state_transitions
                (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, _ts(utcnow()), worker_id, error[:200] if error else None),
        )

    # --- QueueStore ---

    def create(self, type: ConversionType, payload: JobPayload, max_attempts: int) -> Job:
        job = Job(
            id=str(uuid.uuid4()),
            type=ConversionType(type),
            payload=payload,
            max_attempts=max_attempts,
        )

        def op(conn: sqlite3.Connection) -> Job:
            try:
                conn.execute(
                    """
                    INSERT INTO jobs
                        (id, type, input_ref, filename, options, state, attempts_made,
                         max_attempts, created_at, updated_at, progress)
                    VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, 0)
                    """,
                    (
                        job.id,
                        job.type.value,
                        payload.input_ref,
                        payload.filename,
                        json.dumps(payload.options),
                        JobState.WAITING.value,
                        max_attempts,
                        _ts(job.created_at),
                        _ts(job.created_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(
                    f"Input {payload.input_ref} is already owned by another job",
                    details={"inputRef": payload.input_ref},
                ) from e
            self._log_transition(conn, job.id, None, JobState.WAITING.value)
            return job

        return self._run(op)

    def claim_next(
        self, worker_id: str, lease_s: float, now: Optional[datetime] = None
    ) -> Optional[Job]:
        now = now or utcnow()
        lease_expires = now + timedelta(seconds=lease_s)

        def op(conn: sqlite3.Connection) -> Optional[Job]:
            # Oldest eligible first; rowid breaks created_at ties
            candidate = conn.execute(
                """
                SELECT id, state FROM jobs
                WHERE state = ?
                   OR (state = ? AND (available_at IS NULL OR available_at <= ?))
                ORDER BY created_at ASC, rowid ASC
                LIMIT 1
                """,
                (JobState.WAITING.value, JobState.DELAYED.value, _ts(now)),
            ).fetchone()
            if candidate is None:
                return None

            job_id, from_state = candidate
            cursor = conn.execute(
                """
                UPDATE jobs
                SET state = ?,
                    worker_id = ?,
                    lease_expires_at = ?,
                    processed_at = COALESCE(processed_at, ?),
                    available_at = NULL,
                    updated_at = ?
                WHERE id = ? AND state = ?
                RETURNING *
                """,
                (
                    JobState.ACTIVE.value,
                    worker_id,
                    _ts(lease_expires),
                    _ts(now),
                    _ts(now),
                    job_id,
                    from_state,
                ),
            )
            rows = _fetch_dicts(cursor)
            if not rows:
                return None
            self._log_transition(conn, job_id, from_state, JobState.ACTIVE.value, worker_id)
            return _row_to_job(rows[0])

        return self._run(op)

    def get(self, job_id: str) -> Job:
        def op(conn: sqlite3.Connection) -> Job:
            return _row_to_job(self._select_row(conn, job_id))

        return self._run(op, write=False)

    def update(
        self, job_id: str, mutation: JobMutation, worker_id: Optional[str] = None
    ) -> Job:
        fields = mutation.model_dump(exclude_unset=True)
        target = JobState(fields["state"]) if fields.get("state") else None

        if "result" in fields and target is not JobState.COMPLETED:
            raise ValueError("result can only be set on the completed transition")
        if "failure_reason" in fields and target is not JobState.FAILED:
            raise ValueError("failure_reason can only be set on the failed transition")

        def op(conn: sqlite3.Connection) -> Job:
            row = self._select_row(conn, job_id)
            current = JobState(row["state"])

            if current.is_terminal:
                raise ConflictError(f"Job {job_id} is already {current.value}")
            if worker_id is not None and (
                current is not JobState.ACTIVE or row["worker_id"] != worker_id
            ):
                raise ConflictError(f"Worker {worker_id} no longer holds job {job_id}")
            if target is not None and not can_transition(current, target):
                raise ConflictError(
                    f"Illegal transition {current.value} -> {target.value} for job {job_id}"
                )

            now = utcnow()
            values: Dict[str, Any] = {"updated_at": _ts(now)}
            for key in ("progress", "attempts_made", "last_error"):
                if key in fields:
                    values[key] = fields[key]
            if "available_at" in fields:
                values["available_at"] = _ts(fields["available_at"])

            if target is not None:
                values["state"] = target.value
                if target is not JobState.ACTIVE:
                    values["worker_id"] = None
                    values["lease_expires_at"] = None
                if target.is_terminal:
                    values["finished_at"] = _ts(now)
                if target is JobState.COMPLETED:
                    values["progress"] = 100
                    values["result"] = json.dumps(fields.get("result") or {})
                    values["failure_reason"] = None
                elif target is JobState.FAILED:
                    values["failure_reason"] = fields.get("failure_reason") or "Unknown error"
                    values["result"] = None

            assignments = ", ".join(f"{column} = ?" for column in values)
            cursor = conn.execute(
                f"UPDATE jobs SET {assignments} WHERE id = ? RETURNING *",
                (*values.values(), job_id),
            )
            updated = _fetch_dicts(cursor)[0]

            if target is not None and target is not current:
                self._log_transition(
                    conn,
                    job_id,
                    current.value,
                    target.value,
                    worker_id=worker_id,
                    error=fields.get("failure_reason") or fields.get("last_error"),
                )
            return _row_to_job(updated)

        return self._run(op)

    def remove(self, job_id: str) -> Job:
        def op(conn: sqlite3.Connection) -> Job:
            job = _row_to_job(self._select_row(conn, job_id))
            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            self._log_transition(conn, job_id, job.state.value, REMOVED)
            return job

        return self._run(op)

    def remove_if_state(self, job_id: str, states: Iterable[JobState]) -> Optional[Job]:
        allowed = {JobState(s) for s in states}

        def op(conn: sqlite3.Connection) -> Optional[Job]:
            job = _row_to_job(self._select_row(conn, job_id))
            if job.state not in allowed:
                return None
            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            self._log_transition(conn, job_id, job.state.value, REMOVED)
            return job

        return self._run(op)

    def list(self, state_filter: str = "all", offset: int = 0, limit: int = 20) -> List[Job]:
        if offset < 0 or limit <= 0:
            raise ValidationError("offset must be >= 0 and limit must be > 0")
        if state_filter == "all":
            states = list(LISTED_STATES)
        else:
            try:
                states = [JobState(state_filter)]
            except ValueError:
                raise ValidationError(
                    f"Unknown state filter: {state_filter}",
                    details={"allowed": ["all"] + [s.value for s in JobState]},
                )

        def op(conn: sqlite3.Connection) -> List[Job]:
            jobs: List[Job] = []
            # Each state gets its own window (legacy pagination)
            for state in states:
                cursor = conn.execute(
                    """
                    SELECT * FROM jobs WHERE state = ?
                    ORDER BY created_at ASC, rowid ASC
                    LIMIT ? OFFSET ?
                    """,
                    (state.value, limit, offset),
                )
                jobs.extend(_row_to_job(row) for row in _fetch_dicts(cursor))
            return jobs

        return self._run(op, write=False)

    def counts(self) -> Dict[str, int]:
        def op(conn: sqlite3.Connection) -> Dict[str, int]:
            counts = {state.value: 0 for state in JobState}
            for state, count in conn.execute("SELECT state, COUNT(*) FROM jobs GROUP BY state"):
                counts[state] = count
            return counts

        return self._run(op, write=False)

    def heartbeat(
        self,
        job_id: str,
        worker_id: str,
        lease_s: float,
        progress: Optional[int] = None,
    ) -> Optional[Job]:
        now = utcnow()

        def op(conn: sqlite3.Connection) -> Optional[Job]:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET lease_expires_at = ?,
                    progress = COALESCE(?, progress),
                    updated_at = ?
                WHERE id = ? AND state = ? AND worker_id = ?
                RETURNING *
                """,
                (
                    _ts(now + timedelta(seconds=lease_s)),
                    progress,
                    _ts(now),
                    job_id,
                    JobState.ACTIVE.value,
                    worker_id,
                ),
            )
            rows = _fetch_dicts(cursor)
            return _row_to_job(rows[0]) if rows else None

        return self._run(op)

    def reap_expired(self, now: Optional[datetime] = None) -> List[Job]:
        now = now or utcnow()

        def op(conn: sqlite3.Connection) -> List[Job]:
            cursor = conn.execute(
                """
                SELECT * FROM jobs
                WHERE state = ? AND lease_expires_at IS NOT NULL AND lease_expires_at < ?
                ORDER BY created_at ASC
                """,
                (JobState.ACTIVE.value, _ts(now)),
            )
            reaped: List[Job] = []
            for row in _fetch_dicts(cursor):
                previous_worker = row["worker_id"]
                if row["cancel_requested"]:
                    target = JobState.CANCELLED
                    finished_at = _ts(now)
                else:
                    target = JobState.WAITING
                    finished_at = None
                updated = _fetch_dicts(
                    conn.execute(
                        """
                        UPDATE jobs
                        SET state = ?, worker_id = NULL, lease_expires_at = NULL,
                            finished_at = ?, updated_at = ?
                        WHERE id = ?
                        RETURNING *
                        """,
                        (target.value, finished_at, _ts(now), row["id"]),
                    )
                )[0]
                self._log_transition(
                    conn,
                    row["id"],
                    JobState.ACTIVE.value,
                    target.value,
                    worker_id=previous_worker,
                    error="Lease expired (worker presumed dead)",
                )
                reaped.append(_row_to_job(updated))
            return reaped

        return self._run(op)

    def request_cancel(self, job_id: str) -> Job:
        def op(conn: sqlite3.Connection) -> Job:
            row = self._select_row(conn, job_id)
            state = JobState(row["state"])
            if state is not JobState.ACTIVE:
                raise InvalidStateError(f"Job {job_id} is {state.value}, not active")
            cursor = conn.execute(
                "UPDATE jobs SET cancel_requested = 1, updated_at = ? WHERE id = ? RETURNING *",
                (_ts(utcnow()), job_id),
            )
            return _row_to_job(_fetch_dicts(cursor)[0])

        return self._run(op)

    def purge(self, states: Iterable[JobState], finished_before: datetime) -> List[Job]:
        targets = [JobState(s) for s in states]
        if any(s in OPEN_STATES for s in targets):
            raise ValidationError("Only terminal jobs can be purged")
        if not targets:
            return []

        def op(conn: sqlite3.Connection) -> List[Job]:
            placeholders = ", ".join("?" for _ in targets)
            cursor = conn.execute(
                f"""
                DELETE FROM jobs
                WHERE state IN ({placeholders}) AND finished_at < ?
                RETURNING *
                """,
                (*[s.value for s in targets], _ts(finished_before)),
            )
            purged = [_row_to_job(row) for row in _fetch_dicts(cursor)]
            for job in purged:
                self._log_transition(conn, job.id, job.state.value, REMOVED, error="Retention purge")
            return purged

        return self._run(op)

    def transitions(self, job_id: str) -> List[StateTransition]:
        def op(conn: sqlite3.Connection) -> List[StateTransition]:
            rows = self.db["state_transitions"].rows_where(
                "job_id = ?", [job_id], order_by="id"
            )
            return [
                StateTransition(
                    id=row["id"],
                    job_id=row["job_id"],
                    from_state=row["from_state"],
                    to_state=row["to_state"],
                    timestamp=_parse_ts(row["timestamp"]),
                    worker_id=row["worker_id"],
                    error_snippet=row["error_snippet"],
                )
                for row in rows
            ]

        return self._run(op, write=False)

    def ping(self) -> None:
        self._run(lambda conn: conn.execute("SELECT 1").fetchone(), write=False)

"""
Durable stage queues.

One SQLite-backed queue per pipeline stage. A job's id is derived from
its stage and document, so a document can have at most one live job per
stage and enqueueing it again is a no-op.
"""

import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from utils.logger import setup_logger
from providers.exceptions import ProviderRateLimitError
import config

logger = setup_logger(__name__)

STAGES = ("segmentation", "analysis", "discovery")


class Job(BaseModel):
    """A queued unit of stage work for one document."""
    id: str
    stage: str
    document_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: str = "queued"  # queued, active, completed, failed
    attempts: int = 0
    max_attempts: int = 1
    available_at: float = 0.0
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    finished_at: Optional[str] = None


def job_id_for(stage: str, document_id: str) -> str:
    return f"{stage}-{document_id}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobQueue:
    """SQLite-backed stage queues with per-stage retry policy."""

    def __init__(
        self,
        db,
        policies: Optional[Dict[str, Dict[str, float]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            db: Database instance (storage.database.Database)
            policies: Per-stage {"attempts", "backoff"}; defaults to config.QUEUE_POLICIES
            clock: Time source in epoch seconds
        """
        self.db = db
        self.policies = policies or config.QUEUE_POLICIES
        self.clock = clock

    def _policy(self, stage: str) -> Dict[str, float]:
        if stage not in self.policies:
            raise ValueError(f"Unknown stage: {stage}")
        return self.policies[stage]

    def enqueue(self, stage: str, document_id: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Queue a stage job for a document.

        Returns:
            True if a job was queued, False if one is already queued or running
        """
        policy = self._policy(stage)
        job_id = job_id_for(stage, document_id)
        now = _now_iso()
        body = json.dumps({"document_id": document_id, **(payload or {})})

        with self.db._get_connection() as conn:
            cursor = conn.execute(
                """INSERT INTO jobs
                   (id, stage, document_id, payload_json, status, attempts, max_attempts,
                    available_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, 'queued', 0, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       payload_json = excluded.payload_json,
                       status = 'queued',
                       attempts = 0,
                       max_attempts = excluded.max_attempts,
                       available_at = excluded.available_at,
                       last_error = NULL,
                       error_kind = NULL,
                       updated_at = excluded.updated_at,
                       finished_at = NULL
                   WHERE jobs.status NOT IN ('queued', 'active')""",
                (job_id, stage, document_id, body, int(policy["attempts"]), self.clock(), now, now)
            )
            conn.commit()
            queued = cursor.rowcount == 1

        if queued:
            logger.info(f"Queued job {job_id}")
        else:
            logger.info(f"Job {job_id} already queued or running")
        return queued

    def claim(self, stage: str) -> Optional[Job]:
        """Take the oldest runnable job of a stage and mark it active."""
        for _ in range(3):
            with self.db._get_connection() as conn:
                row = conn.execute(
                    """SELECT id FROM jobs
                       WHERE stage = ? AND status = 'queued' AND available_at <= ?
                       ORDER BY available_at ASC, created_at ASC LIMIT 1""",
                    (stage, self.clock())
                ).fetchone()
                if row is None:
                    return None

                cursor = conn.execute(
                    """UPDATE jobs SET status = 'active', attempts = attempts + 1, updated_at = ?
                       WHERE id = ? AND status = 'queued'""",
                    (_now_iso(), row["id"])
                )
                conn.commit()

            if cursor.rowcount == 1:
                return self.get(row["id"])
            # Another worker won the row; look again

        return None

    def complete(self, job_id: str) -> None:
        now = _now_iso()
        with self.db._get_connection() as conn:
            conn.execute(
                """UPDATE jobs SET status = 'completed', last_error = NULL, error_kind = NULL,
                          updated_at = ?, finished_at = ?
                   WHERE id = ?""",
                (now, now, job_id)
            )
            conn.commit()

    def backoff_seconds(self, stage: str, attempts: int, error: Optional[BaseException] = None) -> float:
        """Exponential backoff, stretched for rate limits and capped."""
        base = float(self._policy(stage)["backoff"])
        delay = base * (2 ** max(attempts - 1, 0))
        if isinstance(error, ProviderRateLimitError):
            delay *= config.RATE_LIMIT_BACKOFF_MULTIPLIER
        return min(delay, config.MAX_BACKOFF_SECONDS)

    def fail(self, job: Job, error: BaseException) -> bool:
        """Record a failed attempt.

        Returns:
            True if the job will run again, False if it is finally failed
        """
        retryable = getattr(error, "retryable", True)
        will_retry = retryable and job.attempts < job.max_attempts
        now = _now_iso()
        message = str(error) or type(error).__name__

        with self.db._get_connection() as conn:
            if will_retry:
                delay = self.backoff_seconds(job.stage, job.attempts, error)
                conn.execute(
                    """UPDATE jobs SET status = 'queued', available_at = ?, last_error = ?,
                              error_kind = ?, updated_at = ?
                       WHERE id = ?""",
                    (self.clock() + delay, message, type(error).__name__, now, job.id)
                )
            else:
                conn.execute(
                    """UPDATE jobs SET status = 'failed', last_error = ?, error_kind = ?,
                              updated_at = ?, finished_at = ?
                       WHERE id = ?""",
                    (message, type(error).__name__, now, now, job.id)
                )
            conn.commit()

        if will_retry:
            logger.warning(f"Job {job.id} attempt {job.attempts}/{job.max_attempts} failed, retrying: {message}")
        else:
            logger.error(f"Job {job.id} failed after {job.attempts} attempt(s): {message}")
        return will_retry

    def get(self, job_id: str) -> Optional[Job]:
        with self.db._get_connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def get_status(self, stage: str, document_id: str) -> Optional[Job]:
        return self.get(job_id_for(stage, document_id))

    def list_jobs(self, document_id: str) -> List[Job]:
        with self.db._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE document_id = ? ORDER BY created_at",
                (document_id,)
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def live_count(self, stages: Optional[List[str]] = None) -> int:
        """Jobs queued or running, optionally limited to some stages."""
        stages = list(stages or STAGES)
        placeholders = ", ".join("?" for _ in stages)
        with self.db._get_connection() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM jobs WHERE status IN ('queued', 'active') AND stage IN ({placeholders})",
                stages
            ).fetchone()
        return row[0]

    def next_available_at(self, stages: Optional[List[str]] = None) -> Optional[float]:
        stages = list(stages or STAGES)
        placeholders = ", ".join("?" for _ in stages)
        with self.db._get_connection() as conn:
            row = conn.execute(
                f"SELECT MIN(available_at) FROM jobs WHERE status = 'queued' AND stage IN ({placeholders})",
                stages
            ).fetchone()
        return row[0]

    def requeue_active(self) -> int:
        """Return jobs left active by a stopped worker to the queue."""
        with self.db._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET status = 'queued', updated_at = ? WHERE status = 'active'",
                (_now_iso(),)
            )
            conn.commit()
        if cursor.rowcount:
            logger.warning(f"Requeued {cursor.rowcount} interrupted job(s)")
        return cursor.rowcount

    def cleanup(
        self,
        completed_hours: float = config.COMPLETED_JOB_RETENTION_HOURS,
        failed_hours: float = config.FAILED_JOB_RETENTION_HOURS,
    ) -> int:
        """Delete finished jobs older than their retention window."""
        now = datetime.fromtimestamp(self.clock(), timezone.utc)
        completed_cutoff = (now - timedelta(hours=completed_hours)).isoformat()
        failed_cutoff = (now - timedelta(hours=failed_hours)).isoformat()

        with self.db._get_connection() as conn:
            cursor = conn.execute(
                """DELETE FROM jobs
                   WHERE (status = 'completed' AND finished_at < ?)
                      OR (status = 'failed' AND finished_at < ?)""",
                (completed_cutoff, failed_cutoff)
            )
            conn.commit()

        logger.info(f"Removed {cursor.rowcount} old job(s)")
        return cursor.rowcount

    @staticmethod
    def _row_to_job(row) -> Job:
        data = dict(row)
        data["payload"] = json.loads(data.pop("payload_json") or "{}")
        return Job(**data)

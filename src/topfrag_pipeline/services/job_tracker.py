"""Job Tracker - processing job lifecycle for demo parsing.

A job moves pending -> processing -> completed | failed. Every transition is
a single UPDATE guarded on the current status, so a late progress callback
racing a completion callback can never move a job out of a terminal state.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from ..core.database_manager import DatabaseManager
from ..metrics import JOB_TRANSITIONS


STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

# Statuses the parser reports in progress callbacks
PROGRESS_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, "parsing", "uploading", "queued")


class JobNotFoundError(Exception):
    """Raised when a job id does not match any processing job."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


def normalize_job_id(job_id: Any) -> Optional[str]:
    """Return the canonical string form of a job UUID, or None if it isn't one."""
    try:
        return str(uuid.UUID(str(job_id)))
    except (ValueError, TypeError, AttributeError):
        return None


class JobTracker:
    """Owns ProcessingJob rows, keyed by their external UUID.

    Example:
        >>> tracker = JobTracker(db)
        >>> job_id = tracker.create_job()
        >>> tracker.update_progress(job_id, "processing", 40, "Parsing rounds")
        True
        >>> tracker.complete_job(job_id, "completed")
        True
    """

    def __init__(self, database_manager: DatabaseManager, logger: Optional[logging.Logger] = None):
        self.db = database_manager
        self.logger = logger or logging.getLogger(__name__)

    def create_job(self) -> str:
        """Create a pending job together with its placeholder match.

        Returns:
            The new job's UUID
        """
        job_id = str(uuid.uuid4())

        with self.db.transaction() as cur:
            cur.execute("INSERT INTO matches DEFAULT VALUES RETURNING id")
            match_id = cur.fetchone()["id"]
            cur.execute(
                """
                INSERT INTO processing_jobs (uuid, match_id, status, progress_percent, started_at)
                VALUES (%s, %s, %s, 0, NOW())
                """,
                (job_id, match_id, STATUS_PENDING),
            )

        JOB_TRANSITIONS.labels(status=STATUS_PENDING).inc()
        self.logger.info(f"Created job {job_id} for match {match_id}")
        return job_id

    def find_by_job_id(self, job_id: str) -> Dict[str, Any]:
        """Look up a job by its UUID.

        Raises:
            JobNotFoundError: If no job has this id
        """
        normalized = normalize_job_id(job_id)
        if normalized is None:
            raise JobNotFoundError(job_id)

        rows = self.db.execute_query(
            """
            SELECT id, uuid, match_id, status, progress_percent, current_step,
                   error_message, started_at, completed_at, updated_at
            FROM processing_jobs
            WHERE uuid = %s
            """,
            (normalized,),
        )
        if not rows:
            raise JobNotFoundError(job_id)
        return rows[0]

    def update_progress(
        self,
        job_id: str,
        status: str,
        percent: int,
        step: Optional[str],
        error_message: Optional[str] = None,
    ) -> bool:
        """Record a progress callback.

        The job moves to processing and its progress never decreases. Unknown
        and terminal jobs are left alone.

        Args:
            job_id: Job UUID
            status: Status reported by the parser (logged if unrecognised)
            percent: Progress 0..100
            step: Human readable current step
            error_message: Optional error reported alongside the progress

        Returns:
            True if the job was updated, False if it was unknown or terminal
        """
        if status not in PROGRESS_STATUSES:
            self.logger.warning(
                f"Job {job_id} reported unrecognised status '{status}', treating as processing"
            )

        normalized = normalize_job_id(job_id)
        if normalized is None:
            self.logger.warning(f"Progress update for unknown job {job_id} ignored")
            return False

        with self.db.transaction() as cur:
            cur.execute(
                """
                UPDATE processing_jobs
                SET status = %s,
                    progress_percent = GREATEST(progress_percent, %s),
                    current_step = COALESCE(%s, current_step),
                    error_message = COALESCE(%s, error_message),
                    updated_at = NOW()
                WHERE uuid = %s AND status IN (%s, %s)
                """,
                (
                    STATUS_PROCESSING,
                    percent,
                    step,
                    error_message,
                    normalized,
                    STATUS_PENDING,
                    STATUS_PROCESSING,
                ),
            )
            updated = cur.rowcount > 0

        if updated:
            JOB_TRANSITIONS.labels(status=STATUS_PROCESSING).inc()
            self.logger.debug(f"Job {job_id} at {percent}%: {step}")
        else:
            self._log_ignored(normalized, "Progress update")
        return updated

    def complete_job(
        self,
        job_id: str,
        status: str,
        error_message: Optional[str] = None,
        step: Optional[str] = None,
    ) -> bool:
        """Move a job to a terminal state.

        A job that is already terminal (or unknown) is left unchanged, which
        makes duplicate completion callbacks harmless.

        Args:
            job_id: Job UUID
            status: "completed" or "failed"
            error_message: Failure reason (failed jobs)
            step: Optional final step text (defaults to "Completed" on success)

        Returns:
            True if this call moved the job to a terminal state

        Raises:
            ValueError: If status is not terminal
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Invalid terminal status '{status}', expected one of {TERMINAL_STATUSES}")

        normalized = normalize_job_id(job_id)
        if normalized is None:
            self.logger.warning(f"Completion for unknown job {job_id} ignored")
            return False

        if status == STATUS_COMPLETED:
            query = """
                UPDATE processing_jobs
                SET status = %s,
                    progress_percent = 100,
                    current_step = COALESCE(%s, 'Completed'),
                    error_message = %s,
                    completed_at = NOW(),
                    updated_at = NOW()
                WHERE uuid = %s AND status IN (%s, %s)
            """
        else:
            query = """
                UPDATE processing_jobs
                SET status = %s,
                    current_step = COALESCE(%s, current_step),
                    error_message = %s,
                    completed_at = NOW(),
                    updated_at = NOW()
                WHERE uuid = %s AND status IN (%s, %s)
            """

        with self.db.transaction() as cur:
            cur.execute(
                query,
                (status, step, error_message, normalized, STATUS_PENDING, STATUS_PROCESSING),
            )
            updated = cur.rowcount > 0

        if updated:
            JOB_TRANSITIONS.labels(status=status).inc()
            log = self.logger.info if status == STATUS_COMPLETED else self.logger.warning
            log(f"Job {job_id} {status}" + (f": {error_message}" if error_message else ""))
        else:
            self._log_ignored(normalized, "Completion")
        return updated

    def fail_job(self, job_id: str, error_message: str) -> bool:
        """Mark a job as failed with a reason."""
        return self.complete_job(job_id, STATUS_FAILED, error_message=error_message)

    def fail_stale_jobs(self, timeout_minutes: int = 120) -> int:
        """Fail jobs the parser never finished.

        A pending or processing job whose last update is older than the
        timeout is considered abandoned.

        Returns:
            Number of jobs failed
        """
        with self.db.transaction() as cur:
            cur.execute(
                """
                UPDATE processing_jobs
                SET status = %s,
                    error_message = %s,
                    completed_at = NOW(),
                    updated_at = NOW()
                WHERE status IN (%s, %s)
                  AND updated_at < NOW() - make_interval(mins => %s)
                """,
                (
                    STATUS_FAILED,
                    f"No update from parser service within {timeout_minutes} minutes",
                    STATUS_PENDING,
                    STATUS_PROCESSING,
                    timeout_minutes,
                ),
            )
            failed = cur.rowcount

        if failed:
            JOB_TRANSITIONS.labels(status=STATUS_FAILED).inc(failed)
            self.logger.warning(f"Failed {failed} stale job(s) older than {timeout_minutes} minutes")
        return failed

    def _log_ignored(self, job_id: str, action: str) -> None:
        rows = self.db.execute_query(
            "SELECT status FROM processing_jobs WHERE uuid = %s", (job_id,)
        )
        if not rows:
            self.logger.warning(f"{action} for unknown job {job_id} ignored")
        else:
            self.logger.info(
                f"{action} for job {job_id} ignored, job already {rows[0]['status']}"
            )

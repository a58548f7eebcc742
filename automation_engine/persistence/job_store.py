"""
Durable job store backed by the ``jobs`` table.

Workers partition due jobs with a single claim statement built on
``FOR UPDATE SKIP LOCKED``: rows another claimer has locked are skipped
instead of waited on, so concurrent pollers never block each other and
never receive the same job.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from automation_engine.config import Config, get_config
from automation_engine.domain import Job, JobKind, JobStatus, utcnow
from .database import Database

logger = logging.getLogger(__name__)

INSERT_JOB_SQL = """
    INSERT INTO jobs
    (id, kind, tenant_id, payload, status, scheduled_for, attempts, max_attempts, created_at, updated_at)
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
"""

CLAIM_DUE_SQL = """
    UPDATE jobs
    SET status = %s, claimed_at = %s, attempts = attempts + 1, updated_at = %s
    WHERE id IN (
        SELECT id FROM jobs
        WHERE status = %s
        AND scheduled_for <= %s
        {kind_filter}
        ORDER BY scheduled_for
        LIMIT %s
        FOR UPDATE SKIP LOCKED
    )
    RETURNING *
"""


def insert_job(cursor, job: Job) -> None:
    """Insert a job using an open cursor, so it commits with the caller's transaction."""
    cursor.execute(INSERT_JOB_SQL, (
        str(job.id),
        job.kind.value,
        job.tenant_id,
        json.dumps(job.payload),
        job.status.value,
        job.scheduled_for,
        job.attempts,
        job.max_attempts,
        job.created_at,
        job.updated_at,
    ))


def retry_delay(config: Config, attempts: int) -> timedelta:
    """
    Exponential backoff before a failed job is retried.

    Formula: min(base_delay * 2^attempts, max_delay)
    """
    delay = config.JOB_RETRY_BASE_DELAY * (2 ** attempts)
    return timedelta(seconds=min(delay, config.JOB_RETRY_MAX_DELAY))


class JobRepository:
    """Repository for the job store and its claim primitive."""

    def __init__(self, db: Database, config: Optional[Config] = None):
        self.db = db
        self.config = config or get_config()

    def enqueue(
        self,
        kind: JobKind,
        payload: Optional[Dict[str, Any]] = None,
        scheduled_for: Optional[datetime] = None,
        tenant_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> UUID:
        """Add a job to the store and return its id."""
        job = Job.create(
            kind=kind,
            payload=payload,
            scheduled_for=scheduled_for,
            tenant_id=tenant_id,
            max_attempts=max_attempts or self.config.JOB_MAX_ATTEMPTS,
        )
        with self.db.transaction() as cur:
            insert_job(cur, job)

        logger.info(f"Enqueued {job.kind.value} job {job.id} for {job.scheduled_for.isoformat()}")
        return job.id

    def claim_due(
        self,
        kinds: Optional[Sequence[JobKind]] = None,
        limit: int = 10,
        now: Optional[datetime] = None,
    ) -> List[Job]:
        """
        Atomically claim up to ``limit`` due pending jobs.

        Claimed jobs move to IN_PROGRESS with ``claimed_at`` stamped and
        ``attempts`` incremented. Rows held by another claimer are skipped,
        so losing a race yields fewer rows rather than an error.
        """
        now = now or utcnow()
        params: List[Any] = [JobStatus.IN_PROGRESS.value, now, now, JobStatus.PENDING.value, now]
        kind_filter = ""
        if kinds:
            kind_filter = "AND kind = ANY(%s)"
            params.append([JobKind(k).value for k in kinds])
        params.append(limit)

        query = CLAIM_DUE_SQL.format(kind_filter=kind_filter)
        rows = self.db.execute(query, tuple(params))
        jobs = [self._row_to_job(row) for row in rows]

        if jobs:
            logger.debug(f"Claimed {len(jobs)} jobs")
        return jobs

    def complete(self, job_id: UUID, claimed_at: Optional[datetime] = None) -> bool:
        """
        Mark a claimed job as done.

        With ``claimed_at`` the update only applies while that claim is still
        the live one, so a worker whose claim was reaped cannot finish the job
        another worker holds. Returns whether the job was updated.
        """
        now = utcnow()
        query = """
            UPDATE jobs
            SET status = %s, completed_at = %s, updated_at = %s
            WHERE id = %s
        """
        params: List[Any] = [JobStatus.DONE.value, now, now, str(job_id)]
        if claimed_at is not None:
            query += " AND status = %s AND claimed_at = %s"
            params.extend([JobStatus.IN_PROGRESS.value, claimed_at])

        updated = self.db.execute_rowcount(query, tuple(params)) > 0
        if not updated:
            logger.warning(f"Job {job_id} was not completed: claim no longer held")
        return updated

    def heartbeat(self, job: Job, now: Optional[datetime] = None) -> bool:
        """
        Extend the claim on an in-progress job.

        Returns False when the claim was reaped since ``job.claimed_at``; the
        job may already be held by another worker and the caller must stop.
        """
        now = now or utcnow()
        query = """
            UPDATE jobs
            SET claimed_at = %s, updated_at = %s
            WHERE id = %s AND status = %s AND claimed_at = %s
        """
        updated = self.db.execute_rowcount(query, (
            now, now, str(job.id), JobStatus.IN_PROGRESS.value, job.claimed_at,
        ))
        if not updated:
            logger.warning(f"Lost the claim on job {job.id}")
            return False

        job.claimed_at = now
        return True

    def fail(
        self,
        job_id: UUID,
        error: str,
        retry: bool = True,
        claimed_at: Optional[datetime] = None,
    ) -> JobStatus:
        """
        Record a failed attempt.

        The job goes back to PENDING with exponential backoff while attempts
        remain, otherwise it is permanently FAILED. Returns the new status.
        With ``claimed_at`` nothing changes unless that claim is still live.
        """
        now = utcnow()
        with self.db.transaction() as cur:
            cur.execute(
                "SELECT status, attempts, max_attempts, claimed_at FROM jobs WHERE id = %s FOR UPDATE",
                (str(job_id),),
            )
            row = cur.fetchone()
            if row is None:
                logger.error(f"Cannot fail job {job_id}: not found")
                return JobStatus.FAILED

            if claimed_at is not None and (
                row["status"] != JobStatus.IN_PROGRESS.value or row["claimed_at"] != claimed_at
            ):
                logger.warning(f"Job {job_id} failure not recorded: claim no longer held")
                return JobStatus(row["status"])

            attempts = row["attempts"] or 0
            should_retry = retry and attempts < row["max_attempts"]

            if should_retry:
                status = JobStatus.PENDING
                cur.execute(
                    """
                    UPDATE jobs
                    SET status = %s, last_error = %s, scheduled_for = %s,
                        claimed_at = NULL, updated_at = %s
                    WHERE id = %s
                    """,
                    (status.value, error, now + retry_delay(self.config, attempts), now, str(job_id)),
                )
            else:
                status = JobStatus.FAILED
                cur.execute(
                    """
                    UPDATE jobs
                    SET status = %s, last_error = %s, completed_at = %s, updated_at = %s
                    WHERE id = %s
                    """,
                    (status.value, error, now, now, str(job_id)),
                )

        logger.warning(
            f"Job {job_id} failed (attempt {attempts}/{row['max_attempts']}): {error} "
            f"-> {status.value}"
        )
        return status

    def reap_stale(self, timeout_seconds: int, now: Optional[datetime] = None) -> int:
        """
        Return jobs whose claim is older than ``timeout_seconds`` to PENDING.

        A worker that crashed after claiming leaves its jobs IN_PROGRESS;
        this sweep makes them claimable again, or fails them when their
        attempts are used up. Returns the number of reaped jobs.
        """
        now = now or utcnow()
        query = """
            UPDATE jobs
            SET status = CASE WHEN attempts < max_attempts THEN %s ELSE %s END,
                last_error = %s, claimed_at = NULL, scheduled_for = %s, updated_at = %s
            WHERE status = %s AND claimed_at < %s
        """
        reaped = self.db.execute_rowcount(query, (
            JobStatus.PENDING.value,
            JobStatus.FAILED.value,
            "claim expired",
            now,
            now,
            JobStatus.IN_PROGRESS.value,
            now - timedelta(seconds=timeout_seconds),
        ))
        if reaped:
            logger.warning(f"Reaped {reaped} stale job claims")
        return reaped

    def count_overdue(self, older_than_seconds: int, now: Optional[datetime] = None) -> int:
        """Pending jobs that have been due for more than ``older_than_seconds``."""
        now = now or utcnow()
        row = self.db.execute_one(
            "SELECT COUNT(*) AS n FROM jobs WHERE status = %s AND scheduled_for < %s",
            (JobStatus.PENDING.value, now - timedelta(seconds=older_than_seconds)),
        )
        return int(row["n"]) if row else 0

    def get_job(self, job_id: UUID) -> Optional[Job]:
        """Get a job by ID."""
        row = self.db.execute_one("SELECT * FROM jobs WHERE id = %s", (str(job_id),))
        return self._row_to_job(row) if row else None

    def retry_job(self, job_id: UUID) -> bool:
        """
        Put a permanently failed job back in the queue with fresh attempts.

        Returns False unless the job exists and is FAILED.
        """
        now = utcnow()
        query = """
            UPDATE jobs
            SET status = %s, last_error = NULL, attempts = 0, scheduled_for = %s,
                completed_at = NULL, updated_at = %s
            WHERE id = %s AND status = %s
        """
        updated = self.db.execute_rowcount(query, (
            JobStatus.PENDING.value, now, now, str(job_id), JobStatus.FAILED.value,
        ))
        return updated > 0

    def get_stats(self, tenant_id: Optional[str] = None) -> Dict[str, int]:
        """Count jobs per status, optionally for one tenant."""
        query = """
            SELECT
                COUNT(*) FILTER (WHERE status = 'pending') AS pending,
                COUNT(*) FILTER (WHERE status = 'in_progress') AS in_progress,
                COUNT(*) FILTER (WHERE status = 'done') AS done,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed
            FROM jobs
        """
        params: tuple = ()
        if tenant_id:
            query += " WHERE tenant_id = %s"
            params = (tenant_id,)

        row = self.db.execute_one(query, params) or {}
        return {status.value: int(row.get(status.value) or 0) for status in JobStatus}

    def cleanup(self, older_than_days: int = 7) -> int:
        """Delete finished jobs older than the cutoff. Returns rows deleted."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        query = """
            DELETE FROM jobs
            WHERE status IN (%s, %s) AND created_at < %s
        """
        deleted = self.db.execute_rowcount(
            query, (JobStatus.DONE.value, JobStatus.FAILED.value, cutoff)
        )
        if deleted:
            logger.info(f"Deleted {deleted} finished jobs older than {older_than_days} days")
        return deleted

    def _row_to_job(self, row: dict) -> Job:
        """Convert database row to Job entity."""
        payload = row.get("payload") or {}
        if isinstance(payload, str):
            payload = json.loads(payload)

        return Job(
            id=UUID(str(row["id"])),
            kind=JobKind(row["kind"]),
            payload=payload,
            status=JobStatus(row["status"]),
            scheduled_for=row["scheduled_for"],
            tenant_id=row.get("tenant_id"),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            last_error=row.get("last_error"),
            claimed_at=row.get("claimed_at"),
            completed_at=row.get("completed_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

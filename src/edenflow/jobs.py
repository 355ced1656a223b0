from __future__ import annotations

from typing import Any

from .db import placeholders
from .errors import NotFound, ScopeInvalid, ValidationError
from .models import JOB_STATUSES, JOB_TYPES, Job
from .storage import is_account_active
from .utils import json_dumps, json_loads, new_id, utc_now_iso, utc_now_iso_offset

_JOB_COLUMNS = """
    id, account_id, job_type, status, payload_json, attempts, max_attempts,
    lease_expires_at, locked_by, cancel_requested, not_before, created_at,
    started_at, finished_at, last_error_json, result_refs_json, result_json, queued_at
"""

LEASE_EXPIRED_ERROR = {"kind": "LeaseExpired", "message": "lease_expired_requeued"}


def enqueue_job(
    conn: Any,
    account_id: str,
    job_type: str,
    payload: dict[str, Any] | None = None,
    *,
    max_attempts: int = 3,
    max_payload_bytes: int = 65536,
    created_by: str | None = None,
) -> str:
    if job_type not in JOB_TYPES:
        raise ValidationError(f"unknown_job_type {job_type}")
    payload = {} if payload is None else payload
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object")
    encoded = json_dumps(payload)
    if len(encoded.encode("utf-8")) > max_payload_bytes:
        raise ValidationError("payload_too_large")
    if not is_account_active(conn, account_id):
        raise ScopeInvalid("account_not_active")
    job_id = new_id("job")
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO jobs
            (id, account_id, job_type, payload_json, status, attempts, max_attempts,
             cancel_requested, created_by, created_at, queued_at)
        VALUES (?, ?, ?, ?, 'queued', 0, ?, 0, ?, ?, ?)
        """,
        (job_id, account_id, job_type, encoded, int(max_attempts), created_by, now, now),
    )
    conn.commit()
    return job_id


def get_job(conn: Any, account_id: str, job_id: str) -> Job | None:
    row = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs WHERE account_id = ? AND id = ?",
        (account_id, job_id),
    ).fetchone()
    return _row_to_job(row) if row else None


def load_job(conn: Any, job_id: str) -> Job | None:
    """Worker-side lookup; the lease already binds the job to its account."""
    row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def list_recent_jobs(conn: Any, account_id: str, limit: int = 20) -> list[Job]:
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS} FROM jobs
        WHERE account_id = ?
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (account_id, int(limit)),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def list_jobs_by_status(conn: Any, account_id: str, status: str, limit: int = 20) -> list[Job]:
    if status not in JOB_STATUSES:
        raise ValidationError(f"unknown_job_status {status}")
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS} FROM jobs
        WHERE account_id = ? AND status = ?
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (account_id, status, int(limit)),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def job_stats(conn: Any, account_id: str) -> dict[str, int]:
    stats = {status: 0 for status in JOB_STATUSES}
    cursor = conn.execute(
        "SELECT status, COUNT(*) FROM jobs WHERE account_id = ? GROUP BY status",
        (account_id,),
    )
    for status, count in cursor.fetchall():
        stats[status] = int(count)
    return stats


def cancel_job(conn: Any, account_id: str, job_id: str) -> Job:
    """Cancel a queued job at once, or flag a processing one for its next checkpoint.

    Terminal jobs are left untouched.
    """
    job = get_job(conn, account_id, job_id)
    if job is None:
        raise NotFound("job_not_found")
    now = utc_now_iso()
    if job.status == "queued":
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'cancelled', cancel_requested = 1, finished_at = ?,
                lease_expires_at = NULL, locked_by = NULL
            WHERE account_id = ? AND id = ? AND status = 'queued'
            """,
            (now, account_id, job_id),
        )
        conn.commit()
        if cursor.rowcount == 1:
            return get_job(conn, account_id, job_id)
    conn.execute(
        """
        UPDATE jobs SET cancel_requested = 1
        WHERE account_id = ? AND id = ? AND status = 'processing'
        """,
        (account_id, job_id),
    )
    conn.commit()
    return get_job(conn, account_id, job_id)


def retry_job(conn: Any, account_id: str, job_id: str) -> Job:
    job = get_job(conn, account_id, job_id)
    if job is None:
        raise NotFound("job_not_found")
    if job.status not in ("failed", "cancelled"):
        raise ValidationError("job_not_retryable")
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'queued', attempts = 0, lease_expires_at = NULL, locked_by = NULL,
            cancel_requested = 0, not_before = NULL, started_at = NULL, finished_at = NULL,
            last_error_json = NULL, result_refs_json = NULL, result_json = NULL,
            queued_at = ?
        WHERE account_id = ? AND id = ? AND status IN ('failed', 'cancelled')
        """,
        (utc_now_iso(), account_id, job_id),
    )
    conn.commit()
    if cursor.rowcount != 1:
        raise ValidationError("job_not_retryable")
    return get_job(conn, account_id, job_id)


def claim_next_job(
    conn: Any,
    worker_id: str,
    lease_seconds: int,
    job_types: list[str] | None = None,
) -> Job | None:
    """Lease the oldest eligible job.

    A job is eligible when no other job of its account is processing and no
    older job of its account is still queued, which keeps execution FIFO per
    account while distinct accounts proceed in parallel.
    """
    for _ in range(5):
        with conn.transaction():
            now = utc_now_iso()
            reap_expired_leases(conn, now=now)
            params: list[Any] = [now]
            type_clause = ""
            if job_types:
                type_clause = f" AND j.job_type IN ({placeholders(len(job_types))})"
                params.extend(job_types)
            row = conn.execute(
                f"""
                SELECT j.id FROM jobs j
                WHERE j.status = 'queued'
                  AND (j.not_before IS NULL OR j.not_before <= ?){type_clause}
                  AND NOT EXISTS (
                      SELECT 1 FROM jobs p
                      WHERE p.account_id = j.account_id AND p.status = 'processing'
                  )
                  AND NOT EXISTS (
                      SELECT 1 FROM jobs e
                      WHERE e.account_id = j.account_id AND e.status = 'queued'
                        AND (e.queued_at < j.queued_at
                             OR (e.queued_at = j.queued_at AND e.id < j.id))
                  )
                ORDER BY j.queued_at ASC, j.id ASC
                LIMIT 1{conn.skip_locked()}
                """,
                tuple(params),
            ).fetchone()
            if not row:
                return None
            job_id = row[0]
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'processing', attempts = attempts + 1, lease_expires_at = ?,
                    locked_by = ?, started_at = COALESCE(started_at, ?)
                WHERE id = ? AND status = 'queued'
                """,
                (utc_now_iso_offset(seconds=lease_seconds), worker_id, now, job_id),
            )
            if cursor.rowcount != 1:
                continue
            return load_job(conn, job_id)
    return None


def reap_expired_leases(conn: Any, now: str | None = None) -> int:
    """Return processing jobs whose lease elapsed to the queue.

    ``attempts`` is kept; a job that already used all attempts fails instead
    and a job with a pending cancel request is cancelled.
    """
    now = now or utc_now_iso()
    reaped = 0
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'cancelled', finished_at = ?, lease_expires_at = NULL, locked_by = NULL
        WHERE status = 'processing' AND lease_expires_at < ? AND cancel_requested = 1
        """,
        (now, now),
    )
    reaped += max(cursor.rowcount, 0)
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, lease_expires_at = NULL, locked_by = NULL,
            last_error_json = ?
        WHERE status = 'processing' AND lease_expires_at < ? AND attempts >= max_attempts
        """,
        (now, json_dumps(LEASE_EXPIRED_ERROR), now),
    )
    reaped += max(cursor.rowcount, 0)
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'queued', lease_expires_at = NULL, locked_by = NULL, last_error_json = ?
        WHERE status = 'processing' AND lease_expires_at < ? AND attempts < max_attempts
        """,
        (json_dumps(LEASE_EXPIRED_ERROR), now),
    )
    reaped += max(cursor.rowcount, 0)
    conn.commit()
    return reaped


def heartbeat(conn: Any, job_id: str, worker_id: str, lease_seconds: int) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs SET lease_expires_at = ?
        WHERE id = ? AND status = 'processing' AND locked_by = ?
        """,
        (utc_now_iso_offset(seconds=lease_seconds), job_id, worker_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def is_cancel_requested(conn: Any, job_id: str) -> bool:
    row = conn.execute("SELECT cancel_requested FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return bool(row and row[0])


def complete_job(
    conn: Any,
    job_id: str,
    worker_id: str,
    result: dict[str, Any] | None = None,
    result_refs: list[str] | None = None,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'completed', finished_at = ?, lease_expires_at = NULL, locked_by = NULL,
            last_error_json = NULL, result_json = ?, result_refs_json = ?
        WHERE id = ? AND status = 'processing' AND locked_by = ?
        """,
        (
            utc_now_iso(),
            json_dumps(result) if result is not None else None,
            json_dumps(result_refs or []),
            job_id,
            worker_id,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(
    conn: Any,
    job_id: str,
    worker_id: str,
    error: dict[str, Any],
    result_refs: list[str] | None = None,
    exhaust_attempts: bool = False,
) -> bool:
    attempts_sql = "attempts = max_attempts," if exhaust_attempts else ""
    cursor = conn.execute(
        f"""
        UPDATE jobs
        SET status = 'failed', {attempts_sql} finished_at = ?, lease_expires_at = NULL,
            locked_by = NULL, last_error_json = ?, result_refs_json = ?
        WHERE id = ? AND status = 'processing' AND locked_by = ?
        """,
        (utc_now_iso(), json_dumps(error), json_dumps(result_refs or []), job_id, worker_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def requeue_job(
    conn: Any,
    job_id: str,
    worker_id: str,
    error: dict[str, Any],
    not_before: str,
    result_refs: list[str] | None = None,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'queued', lease_expires_at = NULL, locked_by = NULL, not_before = ?,
            last_error_json = ?, result_refs_json = ?
        WHERE id = ? AND status = 'processing' AND locked_by = ?
        """,
        (not_before, json_dumps(error), json_dumps(result_refs or []), job_id, worker_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def mark_cancelled(
    conn: Any, job_id: str, worker_id: str, result_refs: list[str] | None = None
) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'cancelled', finished_at = ?, lease_expires_at = NULL, locked_by = NULL,
            result_refs_json = ?
        WHERE id = ? AND status = 'processing' AND locked_by = ?
        """,
        (utc_now_iso(), json_dumps(result_refs or []), job_id, worker_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def cleanup_old_jobs(conn: Any, days: int = 7) -> int:
    cutoff = utc_now_iso_offset(seconds=-days * 86400)
    cursor = conn.execute(
        """
        DELETE FROM jobs
        WHERE status IN ('completed', 'failed', 'cancelled')
          AND finished_at IS NOT NULL AND finished_at < ?
        """,
        (cutoff,),
    )
    conn.commit()
    return max(cursor.rowcount, 0)


def backoff_seconds(attempts: int, base_seconds: int, max_seconds: int) -> int:
    exponent = max(attempts, 1) - 1
    return int(min(max_seconds, base_seconds * (2 ** exponent)))


def job_to_dict(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "accountId": job.account_id,
        "type": job.job_type,
        "status": job.status,
        "payload": job.payload,
        "attempts": job.attempts,
        "maxAttempts": job.max_attempts,
        "leaseExpiresAt": job.lease_expires_at,
        "cancelRequested": job.cancel_requested,
        "notBefore": job.not_before,
        "createdAt": job.created_at,
        "queuedAt": job.queued_at,
        "startedAt": job.started_at,
        "finishedAt": job.finished_at,
        "lastError": job.last_error,
        "resultRefs": job.result_refs,
        "result": job.result,
    }


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        account_id,
        job_type,
        status,
        payload_json,
        attempts,
        max_attempts,
        lease_expires_at,
        locked_by,
        cancel_requested,
        not_before,
        created_at,
        started_at,
        finished_at,
        last_error_json,
        result_refs_json,
        result_json,
        queued_at,
    ) = row
    return Job(
        id=job_id,
        account_id=account_id,
        job_type=job_type,
        status=status,
        payload=dict(json_loads(payload_json, {}) or {}),
        attempts=int(attempts or 0),
        max_attempts=int(max_attempts or 0),
        lease_expires_at=lease_expires_at,
        locked_by=locked_by,
        cancel_requested=bool(cancel_requested),
        not_before=not_before,
        created_at=created_at,
        started_at=started_at,
        finished_at=finished_at,
        last_error=json_loads(last_error_json, None),
        result_refs=list(json_loads(result_refs_json, []) or []),
        result=json_loads(result_json, None),
        queued_at=queued_at or created_at,
    )

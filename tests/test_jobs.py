import pytest

from edenflow.db import connect
from edenflow.errors import NotFound, ScopeInvalid, ValidationError
from edenflow.jobs import (
    backoff_seconds,
    cancel_job,
    claim_next_job,
    cleanup_old_jobs,
    complete_job,
    enqueue_job,
    fail_job,
    get_job,
    heartbeat,
    job_stats,
    list_jobs_by_status,
    list_recent_jobs,
    reap_expired_leases,
    retry_job,
)
from edenflow.storage import set_account_active
from edenflow.utils import utc_now_iso_offset


def _expire_lease(conn, job_id):
    conn.execute(
        "UPDATE jobs SET lease_expires_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-60), job_id),
    )
    conn.commit()


def test_enqueue_then_recent_round_trip(conn, tenants):
    payload = {"limit": 3, "templateIds": ["tpl_x"]}
    job_id = enqueue_job(conn, tenants.a, "content_generation", payload)

    recent = list_recent_jobs(conn, tenants.a)

    assert [job.id for job in recent] == [job_id]
    assert recent[0].job_type == "content_generation"
    assert recent[0].payload == payload
    assert recent[0].status == "queued"
    assert recent[0].attempts == 0


def test_enqueue_rejects_unknown_type_and_oversized_payload(conn, tenants):
    with pytest.raises(ValidationError):
        enqueue_job(conn, tenants.a, "build_site", {})
    with pytest.raises(ValidationError, match="payload_too_large"):
        enqueue_job(conn, tenants.a, "analyze_articles", {"blob": "x" * 200}, max_payload_bytes=64)


def test_enqueue_requires_active_account(conn, tenants):
    set_account_active(conn, tenants.b, False)
    with pytest.raises(ScopeInvalid):
        enqueue_job(conn, tenants.b, "analyze_articles", {})


def test_claim_is_exclusive_across_connections(conn, config, tenants):
    job_id = enqueue_job(conn, tenants.a, "analyze_articles", {})
    other = connect(config)
    try:
        claimed = claim_next_job(conn, "worker-1", 300)
        second = claim_next_job(other, "worker-2", 300)
    finally:
        other.close()

    assert claimed is not None
    assert claimed.id == job_id
    assert claimed.status == "processing"
    assert claimed.attempts == 1
    assert claimed.locked_by == "worker-1"
    assert second is None


def test_claim_is_fifo_within_account_and_parallel_across_accounts(conn, tenants):
    first_a = enqueue_job(conn, tenants.a, "content_generation", {})
    second_a = enqueue_job(conn, tenants.a, "content_generation", {})
    first_b = enqueue_job(conn, tenants.b, "content_generation", {})

    one = claim_next_job(conn, "worker-1", 300)
    two = claim_next_job(conn, "worker-2", 300)
    three = claim_next_job(conn, "worker-3", 300)

    assert one.id == first_a
    assert two.id == first_b
    assert three is None

    complete_job(conn, first_a, "worker-1", result={"ok": True})
    four = claim_next_job(conn, "worker-1", 300)
    assert four.id == second_a


def test_claim_respects_job_type_filter(conn, tenants):
    enqueue_job(conn, tenants.a, "source_refresh", {"sourceId": "src_1"})
    assert claim_next_job(conn, "worker-1", 300, job_types=["analyze_articles"]) is None
    assert claim_next_job(conn, "worker-1", 300, job_types=["source_refresh"]) is not None


def test_complete_job_records_result_and_refs(conn, tenants):
    job_id = enqueue_job(conn, tenants.a, "content_generation", {})
    claim_next_job(conn, "worker-1", 300)

    assert complete_job(conn, job_id, "worker-1", result={"generated": 1}, result_refs=["content_1"])

    job = get_job(conn, tenants.a, job_id)
    assert job.status == "completed"
    assert job.result == {"generated": 1}
    assert job.result_refs == ["content_1"]
    assert job.finished_at is not None
    assert job.lease_expires_at is None


def test_complete_requires_lease_owner(conn, tenants):
    job_id = enqueue_job(conn, tenants.a, "content_generation", {})
    claim_next_job(conn, "worker-1", 300)
    assert complete_job(conn, job_id, "worker-2") is False
    assert get_job(conn, tenants.a, job_id).status == "processing"


def test_expired_lease_requeues_once_and_keeps_attempts(conn, tenants):
    job_id = enqueue_job(conn, tenants.a, "content_generation", {}, max_attempts=3)
    claim_next_job(conn, "worker-1", 300)
    _expire_lease(conn, job_id)

    assert reap_expired_leases(conn) == 1
    assert reap_expired_leases(conn) == 0

    job = get_job(conn, tenants.a, job_id)
    assert job.status == "queued"
    assert job.attempts == 1
    assert job.last_error["kind"] == "LeaseExpired"

    reclaimed = claim_next_job(conn, "worker-2", 300)
    assert reclaimed.id == job_id
    assert reclaimed.attempts == 2
    assert heartbeat(conn, job_id, "worker-1", 300) is False
    assert heartbeat(conn, job_id, "worker-2", 300) is True


def test_expired_lease_fails_when_attempts_exhausted(conn, tenants):
    job_id = enqueue_job(conn, tenants.a, "content_generation", {}, max_attempts=1)
    claim_next_job(conn, "worker-1", 300)
    _expire_lease(conn, job_id)

    reap_expired_leases(conn)

    assert get_job(conn, tenants.a, job_id).status == "failed"


def test_cancel_queued_job_is_immediate(conn, tenants):
    job_id = enqueue_job(conn, tenants.a, "content_generation", {})

    job = cancel_job(conn, tenants.a, job_id)

    assert job.status == "cancelled"
    assert claim_next_job(conn, "worker-1", 300) is None


def test_cancel_processing_job_only_flags_it(conn, tenants):
    job_id = enqueue_job(conn, tenants.a, "content_generation", {})
    claim_next_job(conn, "worker-1", 300)

    job = cancel_job(conn, tenants.a, job_id)

    assert job.status == "processing"
    assert job.cancel_requested is True


def test_cancel_terminal_job_is_a_no_op(conn, tenants):
    job_id = enqueue_job(conn, tenants.a, "content_generation", {})
    claim_next_job(conn, "worker-1", 300)
    fail_job(conn, job_id, "worker-1", {"kind": "ValidationError", "message": "bad"})

    job = cancel_job(conn, tenants.a, job_id)

    assert job.status == "failed"
    assert job.cancel_requested is False


def test_cancel_is_scoped_to_account(conn, tenants):
    job_id = enqueue_job(conn, tenants.a, "content_generation", {})
    with pytest.raises(NotFound):
        cancel_job(conn, tenants.b, job_id)
    assert get_job(conn, tenants.b, job_id) is None


def test_retry_requeues_failed_job(conn, tenants):
    job_id = enqueue_job(conn, tenants.a, "content_generation", {})
    claim_next_job(conn, "worker-1", 300)
    fail_job(conn, job_id, "worker-1", {"kind": "TransientUpstream", "message": "x"}, exhaust_attempts=True)

    job = retry_job(conn, tenants.a, job_id)

    assert job.status == "queued"
    assert job.attempts == 0
    assert job.last_error is None


def test_retry_keeps_creation_time_and_queues_behind_newer_jobs(conn, tenants):
    first = enqueue_job(conn, tenants.a, "content_generation", {})
    claim_next_job(conn, "worker-1", 300)
    fail_job(conn, first, "worker-1", {"kind": "ValidationError", "message": "x"}, exhaust_attempts=True)
    created_at = get_job(conn, tenants.a, first).created_at
    second = enqueue_job(conn, tenants.a, "analyze_articles", {})

    retried = retry_job(conn, tenants.a, first)

    assert retried.created_at == created_at
    assert retried.queued_at > created_at
    assert claim_next_job(conn, "worker-1", 300).id == second


def test_retry_rejects_active_job(conn, tenants):
    job_id = enqueue_job(conn, tenants.a, "content_generation", {})
    with pytest.raises(ValidationError, match="job_not_retryable"):
        retry_job(conn, tenants.a, job_id)


def test_status_listing_and_stats(conn, tenants):
    queued = enqueue_job(conn, tenants.a, "analyze_articles", {})
    enqueue_job(conn, tenants.b, "analyze_articles", {})

    assert [job.id for job in list_jobs_by_status(conn, tenants.a, "queued")] == [queued]
    stats = job_stats(conn, tenants.a)
    assert stats["queued"] == 1
    assert stats["completed"] == 0
    with pytest.raises(ValidationError):
        list_jobs_by_status(conn, tenants.a, "running")


def test_cleanup_removes_only_old_terminal_jobs(conn, tenants):
    old = enqueue_job(conn, tenants.a, "analyze_articles", {})
    fresh = enqueue_job(conn, tenants.b, "analyze_articles", {})
    for job_id, worker in ((old, "worker-1"), (fresh, "worker-2")):
        claim_next_job(conn, worker, 300)
        complete_job(conn, job_id, worker)
    conn.execute(
        "UPDATE jobs SET finished_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-10 * 86400), old),
    )
    conn.commit()

    assert cleanup_old_jobs(conn, days=7) == 1
    assert get_job(conn, tenants.a, old) is None
    assert get_job(conn, tenants.b, fresh) is not None


def test_backoff_is_exponential_and_capped():
    assert backoff_seconds(1, 30, 1800) == 30
    assert backoff_seconds(2, 30, 1800) == 60
    assert backoff_seconds(3, 30, 1800) == 120
    assert backoff_seconds(10, 30, 1800) == 1800

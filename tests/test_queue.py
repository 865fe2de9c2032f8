import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from extraction_queue.core.errors import (
    JobNotFoundError,
    JobStateError,
    PayloadValidationError,
)
from extraction_queue.models import Job, JobStatus, utcnow
from extraction_queue.services import (
    RETRY_LIMIT_ERROR,
    JobFilter,
    claim_job,
    complete_job,
    delete_job,
    enqueue_job,
    fail_job,
    get_job,
    get_stats,
    list_jobs,
    purge_completed,
    reclaim_stale_locks,
    retry_job,
)

LOCK_TIMEOUT = timedelta(minutes=5)


async def _claim(session_maker, worker_id):
    async with session_maker() as session:
        return await claim_job(session, worker_id)


@pytest.mark.asyncio
async def test_enqueue_creates_pending_job(db, settings):
    job = await enqueue_job(db, "echo", {"message": "hi"}, priority=2, batch_id="b1")

    assert job.status == JobStatus.PENDING.value
    assert job.priority == 2
    assert job.retry_count == 0
    assert job.max_retries == settings.job_max_retries_default
    assert job.locked_by is None
    assert job.claimed_at is None
    assert job.payload == {"message": "hi"}

    stored = await get_job(db, job.id)
    assert stored is not None
    assert stored.batch_id == "b1"


@pytest.mark.asyncio
async def test_enqueue_rejects_invalid_payload(db):
    with pytest.raises(PayloadValidationError):
        await enqueue_job(db, "create_file", {"content": "no path"})
    with pytest.raises(PayloadValidationError):
        await enqueue_job(db, "unknown", {})

    count = await db.scalar(select(func.count(Job.id)))
    assert count == 0


@pytest.mark.asyncio
async def test_idempotency_key_returns_live_job(db):
    first = await enqueue_job(db, "echo", {"message": "a"}, idempotency_key="k1")
    second = await enqueue_job(db, "echo", {"message": "a"}, idempotency_key="k1")
    assert second.id == first.id

    await fail_job(db, (await claim_job(db, "w1")).id, "boom")
    third = await enqueue_job(db, "echo", {"message": "a"}, idempotency_key="k1")
    assert third.id != first.id


@pytest.mark.asyncio
async def test_claim_returns_none_on_empty_queue(db):
    assert await claim_job(db, "w1") is None


@pytest.mark.asyncio
async def test_claim_order_priority_then_fifo(db):
    a = await enqueue_job(db, "echo", {"message": "A"}, priority=0)
    b = await enqueue_job(db, "echo", {"message": "B"}, priority=5)
    c = await enqueue_job(db, "echo", {"message": "C"}, priority=0)

    claimed = [await claim_job(db, "w1") for _ in range(3)]
    assert [j.id for j in claimed] == [b.id, a.id, c.id]
    assert await claim_job(db, "w1") is None


@pytest.mark.asyncio
async def test_claim_order_fifo_with_equal_timestamps(db, monkeypatch):
    instant = utcnow()
    monkeypatch.setattr("extraction_queue.services.queue.utcnow", lambda: instant)

    jobs = [await enqueue_job(db, "echo", {"message": str(i)}) for i in range(8)]

    claimed = [await claim_job(db, "w1") for _ in range(8)]
    assert [j.id for j in claimed] == [j.id for j in jobs]
    assert [j.id for j in await list_jobs(db)] == [j.id for j in jobs]


@pytest.mark.asyncio
async def test_claim_sets_lock_fields(db):
    job = await enqueue_job(db, "echo", {"message": "x"})
    claimed = await claim_job(db, "worker-a")

    assert claimed.id == job.id
    assert claimed.status == JobStatus.CLAIMED.value
    assert claimed.locked_by == "worker-a"
    assert claimed.claimed_at is not None


@pytest.mark.asyncio
async def test_concurrent_claims_are_mutually_exclusive(db, session_maker):
    job = await enqueue_job(db, "echo", {"message": "only one"})

    results = await asyncio.gather(
        *(_claim(session_maker, f"worker-{i}") for i in range(6))
    )
    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].id == job.id


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_job(db, session_maker):
    for i in range(5):
        await enqueue_job(db, "echo", {"message": str(i)})

    results = await asyncio.gather(
        *(_claim(session_maker, f"worker-{i}") for i in range(8))
    )
    ids = [r.id for r in results if r is not None]
    assert len(ids) == 5
    assert len(set(ids)) == 5

    stats = await get_stats(db)
    assert stats.claimed == 5
    assert stats.pending == 0


async def _reclaim(session_maker):
    async with session_maker() as session:
        return await reclaim_stale_locks(session, LOCK_TIMEOUT)


@pytest.mark.asyncio
async def test_reclaim_concurrent_with_claims_keeps_lock_fields_consistent(
    db, session_maker
):
    for i in range(6):
        await enqueue_job(db, "echo", {"message": str(i)})
    long_ago = utcnow() - timedelta(minutes=10)
    stale = [await claim_job(db, "crashed-worker", now=long_ago) for _ in range(3)]

    results = await asyncio.gather(
        _reclaim(session_maker),
        *(_claim(session_maker, f"worker-{i}") for i in range(6)),
    )
    reclaimed, claims = results[0], results[1:]
    assert reclaimed == 3

    ids = [r.id for r in claims if r is not None]
    assert len(ids) == len(set(ids))

    stats = await get_stats(db)
    assert stats.total == 6
    assert stats.pending + stats.claimed == 6

    for job in await list_jobs(db):
        is_claimed = job.status == JobStatus.CLAIMED.value
        assert is_claimed == (job.claimed_at is not None)
        assert is_claimed == (job.locked_by is not None)
        if job.id in {s.id for s in stale} and is_claimed:
            assert job.locked_by != "crashed-worker"

@pytest.mark.asyncio
async def test_complete_and_fail_clear_lock(db):
    await enqueue_job(db, "echo", {"message": "1"})
    await enqueue_job(db, "echo", {"message": "2"})
    first = await claim_job(db, "w1")
    second = await claim_job(db, "w1")

    done = await complete_job(db, first.id, {"ok": True}, worker_id="w1")
    assert done.status == JobStatus.COMPLETED.value
    assert done.result == {"ok": True}
    assert done.completed_at is not None
    assert done.locked_by is None
    assert done.claimed_at is None

    failed = await fail_job(db, second.id, "boom", worker_id="w1")
    assert failed.status == JobStatus.FAILED.value
    assert failed.last_error == "boom"
    assert failed.failed_at is not None
    assert failed.locked_by is None


@pytest.mark.asyncio
async def test_resolution_requires_matching_claim(db):
    await enqueue_job(db, "echo", {"message": "x"})
    job = await claim_job(db, "w1")

    assert await complete_job(db, job.id, worker_id="someone-else") is None
    assert (await get_job(db, job.id)).status == JobStatus.CLAIMED.value

    await complete_job(db, job.id, worker_id="w1")
    # Already terminal: a second resolution changes nothing
    assert await fail_job(db, job.id, "late") is None
    assert (await get_job(db, job.id)).status == JobStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_stats_total_matches_status_counts(db):
    for i in range(4):
        await enqueue_job(db, "echo", {"message": str(i)})
    first = await claim_job(db, "w1")
    second = await claim_job(db, "w1")
    await complete_job(db, first.id)
    await fail_job(db, second.id, "boom")
    await claim_job(db, "w2")

    stats = await get_stats(db)
    assert stats.pending == 1
    assert stats.claimed == 1
    assert stats.completed == 1
    assert stats.failed == 1
    assert stats.total == 4
    assert stats.total == stats.pending + stats.claimed + stats.completed + stats.failed


@pytest.mark.asyncio
async def test_stats_on_empty_queue(db):
    stats = await get_stats(db)
    assert stats.total == 0
    assert stats.pending == stats.claimed == stats.completed == stats.failed == 0


@pytest.mark.asyncio
async def test_reclaim_respects_lock_timeout(db):
    await enqueue_job(db, "echo", {"message": "x"})
    job = await claim_job(db, "crashed-worker")

    assert await reclaim_stale_locks(
        db, LOCK_TIMEOUT, now=job.claimed_at + timedelta(minutes=4)
    ) == 0
    assert (await get_job(db, job.id)).status == JobStatus.CLAIMED.value

    assert await reclaim_stale_locks(
        db, LOCK_TIMEOUT, now=job.claimed_at + timedelta(minutes=6)
    ) == 1
    reclaimed = await get_job(db, job.id)
    assert reclaimed.status == JobStatus.PENDING.value
    assert reclaimed.retry_count == 1
    assert reclaimed.locked_by is None
    assert reclaimed.claimed_at is None

    again = await claim_job(db, "w2")
    assert again.id == job.id


@pytest.mark.asyncio
async def test_reclaim_fails_job_past_retry_limit(db):
    await enqueue_job(db, "echo", {"message": "x"}, max_retries=1)

    job = await claim_job(db, "w1")
    await reclaim_stale_locks(db, LOCK_TIMEOUT, now=job.claimed_at + timedelta(minutes=6))
    assert (await get_job(db, job.id)).retry_count == 1

    job = await claim_job(db, "w1")
    assert await reclaim_stale_locks(
        db, LOCK_TIMEOUT, now=job.claimed_at + timedelta(minutes=6)
    ) == 1

    failed = await get_job(db, job.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.last_error == RETRY_LIMIT_ERROR
    assert failed.retry_count == 1
    assert failed.locked_by is None


@pytest.mark.asyncio
async def test_reclaim_ignores_other_statuses(db):
    await enqueue_job(db, "echo", {"message": "pending"})
    await enqueue_job(db, "echo", {"message": "done"}, priority=1)
    done = await claim_job(db, "w1")
    await complete_job(db, done.id)

    later = utcnow() + timedelta(hours=1)
    assert await reclaim_stale_locks(db, LOCK_TIMEOUT, now=later) == 0
    stats = await get_stats(db)
    assert stats.pending == 1
    assert stats.completed == 1


@pytest.mark.asyncio
async def test_retry_returns_terminal_job_to_pending(db):
    await enqueue_job(db, "echo", {"message": "x"})
    job = await claim_job(db, "w1")
    await fail_job(db, job.id, "boom")

    retried = await retry_job(db, job.id)
    assert retried.status == JobStatus.PENDING.value
    assert retried.retry_count == 1
    assert retried.last_error is None
    assert retried.failed_at is None


@pytest.mark.asyncio
async def test_retry_rejects_claimed_and_missing_jobs(db):
    pending = await enqueue_job(db, "echo", {"message": "x"})
    assert (await retry_job(db, pending.id)).retry_count == 0

    claimed = await claim_job(db, "w1")
    with pytest.raises(JobStateError):
        await retry_job(db, claimed.id)
    with pytest.raises(JobNotFoundError):
        await retry_job(db, "missing")


@pytest.mark.asyncio
async def test_purge_removes_only_old_finished_jobs(db):
    await enqueue_job(db, "echo", {"message": "done"}, priority=2)
    await enqueue_job(db, "echo", {"message": "failed"}, priority=1)
    keep = await enqueue_job(db, "echo", {"message": "pending"})
    await complete_job(db, (await claim_job(db, "w1")).id)
    await fail_job(db, (await claim_job(db, "w1")).id, "boom")

    assert await purge_completed(db, utcnow() - timedelta(minutes=60)) == 0

    cutoff = utcnow() + timedelta(minutes=1)
    assert await purge_completed(db, cutoff) == 2
    assert await purge_completed(db, cutoff) == 0

    remaining = await list_jobs(db)
    assert [j.id for j in remaining] == [keep.id]


@pytest.mark.asyncio
async def test_list_jobs_filters(db):
    await enqueue_job(db, "echo", {"message": "1"}, batch_id="b1")
    await enqueue_job(db, "echo", {"message": "2"}, batch_id="b2")
    await enqueue_job(db, "delete_file", {"path": "x.txt"}, batch_id="b1")

    assert len(await list_jobs(db, JobFilter(batch_id="b1"))) == 2
    assert len(await list_jobs(db, JobFilter(type="echo"))) == 2
    assert len(await list_jobs(db, JobFilter(status="claimed"))) == 0
    assert len(await list_jobs(db, JobFilter(limit=1))) == 1


@pytest.mark.asyncio
async def test_delete_job(db):
    job = await enqueue_job(db, "echo", {"message": "x"})
    assert await delete_job(db, job.id) is True
    assert await delete_job(db, job.id) is False
    assert await get_job(db, job.id) is None


async def _write_snapshot(store, job_id):
    from extraction_queue.schemas import ProgressSnapshot

    snapshot = ProgressSnapshot(job_id=job_id, name="echo", step_progress=[], started_at=utcnow())
    await store.write_snapshot(job_id, snapshot)


@pytest.mark.asyncio
async def test_delete_job_removes_progress_snapshot(db, store):
    job = await enqueue_job(db, "echo", {"message": "x"})
    await _write_snapshot(store, job.id)

    assert await delete_job(db, job.id, store) is True
    assert await store.read_snapshot(job.id) is None


@pytest.mark.asyncio
async def test_purge_removes_progress_snapshots(db, store):
    done = await enqueue_job(db, "echo", {"message": "done"})
    keep = await enqueue_job(db, "echo", {"message": "pending"})
    for job in (done, keep):
        await _write_snapshot(store, job.id)
    await complete_job(db, (await claim_job(db, "w1")).id)

    assert await purge_completed(db, utcnow() + timedelta(minutes=1), store) == 1
    assert await store.read_snapshot(done.id) is None
    assert await store.read_snapshot(keep.id) is not None

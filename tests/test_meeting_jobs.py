import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from owlnotes.db.base import MeetingJobModel
from owlnotes.db.jobs import JobOutcome, JobStatus, meeting_jobs_controller
from owlnotes.errors import JobNotFoundError, ValidationError
from owlnotes.utils.datetime import utcnow

KEYS = ["recordings/s1/chunk-0.webm", "recordings/s1/chunk-1.webm"]


async def enqueue(session, session_id="s1", **kwargs):
    chunk_keys = kwargs.pop("chunk_keys", KEYS)
    return await meeting_jobs_controller.enqueue(
        session, session_id=session_id, chunk_keys=chunk_keys, **kwargs
    )


async def set_created_at(session, job_id, created_at):
    await session.execute(
        update(MeetingJobModel)
        .where(MeetingJobModel.id == job_id)
        .values(created_at=created_at, updated_at=created_at)
    )
    await session.commit()


@pytest.mark.asyncio
async def test_enqueue_creates_pending_job(session):
    meta = {"googleUser": {"email": "host@example.com"}, "custom": [1, 2]}
    job = await enqueue(session, meeting_meta=meta)

    stored = await meeting_jobs_controller.get_by_id(session, job.id)

    assert stored.status == JobStatus.PENDING
    assert stored.chunk_keys == KEYS
    assert stored.meeting_meta == meta
    assert stored.attempts == 0
    assert stored.meeting_id is None
    assert stored.track_labels is None
    assert stored.result is None and stored.error is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"session_id": ""},
        {"chunk_keys": []},
        {"track_labels": ["user_audio"]},
        {"track_labels": ["user_audio", "somebody"]},
    ],
)
async def test_enqueue_validation(session, kwargs):
    with pytest.raises(ValidationError):
        await enqueue(session, **kwargs)


@pytest.mark.asyncio
async def test_chunk_key_order_is_preserved(session):
    keys = ["z.webm", "a.webm", "m.webm"]
    job = await enqueue(session, chunk_keys=keys)

    stored = await meeting_jobs_controller.get_by_id(session, job.id)

    assert stored.chunk_keys == keys


@pytest.mark.asyncio
async def test_claim_next_returns_none_when_idle(session):
    assert await meeting_jobs_controller.claim_next(session) is None


@pytest.mark.asyncio
async def test_claim_next_takes_oldest_first(session):
    now = utcnow()
    newer = await enqueue(session, session_id="newer")
    older = await enqueue(session, session_id="older")
    await set_created_at(session, newer.id, now - timedelta(minutes=1))
    await set_created_at(session, older.id, now - timedelta(minutes=5))

    first = await meeting_jobs_controller.claim_next(session)
    second = await meeting_jobs_controller.claim_next(session)

    assert first.id == older.id
    assert second.id == newer.id
    assert await meeting_jobs_controller.claim_next(session) is None


@pytest.mark.asyncio
async def test_claim_sets_processing_state(session):
    job = await enqueue(session)
    now = utcnow()

    claimed = await meeting_jobs_controller.claim_next(
        session, now=now, processing_timeout=60
    )

    assert claimed.id == job.id
    assert claimed.status == JobStatus.PROCESSING
    assert claimed.attempts == 1
    expected_deadline = now + timedelta(seconds=60)
    assert abs(claimed.processing_deadline - expected_deadline) < timedelta(seconds=1)
    assert claimed.updated_at >= job.updated_at


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_job(session_factory):
    async with session_factory() as session:
        await enqueue(session)

    async def claim():
        async with session_factory() as session:
            return await meeting_jobs_controller.claim_next(session)

    results = await asyncio.gather(*[claim() for _ in range(5)])

    claimed = [job for job in results if job is not None]
    assert len(claimed) == 1
    assert claimed[0].attempts == 1


@pytest.mark.asyncio
async def test_concurrent_claims_spread_over_jobs(session_factory):
    async with session_factory() as session:
        for n in range(4):
            await enqueue(session, session_id=f"s{n}")

    async def claim_all():
        claimed = []
        async with session_factory() as session:
            while True:
                job = await meeting_jobs_controller.claim_next(session)
                if job is None:
                    return claimed
                claimed.append(job.id)

    results = await asyncio.gather(*[claim_all() for _ in range(3)])

    ids = [job_id for claimed in results for job_id in claimed]
    assert len(ids) == 4
    assert len(set(ids)) == 4


@pytest.mark.asyncio
async def test_resolve_done_then_again_is_noop(session):
    job = await enqueue(session)
    claimed = await meeting_jobs_controller.claim_next(session)

    done = await meeting_jobs_controller.resolve(
        session, job.id, JobOutcome.done({"audio_url": "memory://x"}), claimed.attempts
    )
    again = await meeting_jobs_controller.resolve(
        session, job.id, JobOutcome.failed("late failure")
    )

    assert done.status == JobStatus.DONE
    assert done.result == {"audio_url": "memory://x"}
    assert done.processing_deadline is None
    assert again.status == JobStatus.DONE
    assert again.result == {"audio_url": "memory://x"}
    assert again.error is None


@pytest.mark.asyncio
async def test_resolve_failed_records_error(session):
    job = await enqueue(session)
    await meeting_jobs_controller.claim_next(session)

    failed = await meeting_jobs_controller.resolve(
        session, job.id, JobOutcome.failed("No chunks to assemble")
    )

    assert failed.status == JobStatus.FAILED
    assert failed.error == "No chunks to assemble"
    assert failed.result is None
    assert await meeting_jobs_controller.claim_next(session) is None


@pytest.mark.asyncio
async def test_resolve_unknown_job(session):
    with pytest.raises(JobNotFoundError):
        await meeting_jobs_controller.resolve(
            session, "missing", JobOutcome.failed("x")
        )


@pytest.mark.asyncio
async def test_resolve_pending_job_is_rejected(session):
    job = await enqueue(session)

    with pytest.raises(ValidationError):
        await meeting_jobs_controller.resolve(session, job.id, JobOutcome.done({}))


@pytest.mark.asyncio
async def test_processing_job_is_not_reclaimed_before_deadline(session):
    await enqueue(session)
    t0 = utcnow()
    await meeting_jobs_controller.claim_next(session, now=t0, processing_timeout=10)

    reclaimed = await meeting_jobs_controller.claim_next(
        session, now=t0 + timedelta(seconds=5), processing_timeout=10
    )

    assert reclaimed is None


@pytest.mark.asyncio
async def test_stale_job_is_reclaimed_after_deadline(session):
    job = await enqueue(session)
    t0 = utcnow()
    await meeting_jobs_controller.claim_next(session, now=t0, processing_timeout=10)

    reclaimed = await meeting_jobs_controller.claim_next(
        session, now=t0 + timedelta(seconds=11), processing_timeout=10, max_attempts=3
    )

    assert reclaimed.id == job.id
    assert reclaimed.status == JobStatus.PROCESSING
    assert reclaimed.attempts == 2


@pytest.mark.asyncio
async def test_stale_job_fails_at_attempt_cap(session):
    job = await enqueue(session)
    t0 = utcnow()
    for n in range(2):
        claimed = await meeting_jobs_controller.claim_next(
            session,
            now=t0 + timedelta(seconds=11 * n),
            processing_timeout=10,
            max_attempts=2,
        )
        assert claimed.attempts == n + 1

    result = await meeting_jobs_controller.claim_next(
        session, now=t0 + timedelta(seconds=22), processing_timeout=10, max_attempts=2
    )
    stored = await meeting_jobs_controller.get_by_id(session, job.id)

    assert result is None
    assert stored.status == JobStatus.FAILED
    assert "deadline" in stored.error
    assert stored.attempts == 2


@pytest.mark.asyncio
async def test_late_resolve_from_reclaimed_poller_is_ignored(session):
    job = await enqueue(session)
    t0 = utcnow()
    first = await meeting_jobs_controller.claim_next(
        session, now=t0, processing_timeout=10
    )
    second = await meeting_jobs_controller.claim_next(
        session, now=t0 + timedelta(seconds=11), processing_timeout=10
    )

    ignored = await meeting_jobs_controller.resolve(
        session, job.id, JobOutcome.failed("stale poller"), attempt=first.attempts
    )
    assert ignored.status == JobStatus.PROCESSING
    assert ignored.error is None

    done = await meeting_jobs_controller.resolve(
        session, job.id, JobOutcome.done({"ok": True}), attempt=second.attempts
    )
    assert done.status == JobStatus.DONE


@pytest.mark.asyncio
async def test_list_by_status_and_set_meeting_id(session):
    first = await enqueue(session, session_id="a")
    await enqueue(session, session_id="b")
    await meeting_jobs_controller.claim_next(session)
    await meeting_jobs_controller.set_meeting_id(session, first.id, "meeting-1")

    pending = await meeting_jobs_controller.list_by_status(session, JobStatus.PENDING)
    processing = await meeting_jobs_controller.list_by_status(
        session, JobStatus.PROCESSING
    )

    assert len(pending) == 1
    assert len(processing) == 1
    stored = await meeting_jobs_controller.get_by_id(session, first.id)
    assert stored.meeting_id == "meeting-1"


@pytest.mark.asyncio
async def test_enqueue_stores_datetimes_in_meta_as_iso(session):
    job = await enqueue(session, meeting_meta={"startTime": datetime(2026, 1, 1)})

    stored = await meeting_jobs_controller.get_by_id(session, job.id)

    assert stored.meeting_meta == {"startTime": "2026-01-01T00:00:00"}
    assert stored.meta.start_time == datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_enqueue_rejects_meta_that_cannot_be_stored(session):
    with pytest.raises(ValidationError):
        await enqueue(session, meeting_meta={"handle": object()})

    # the session is still usable
    job = await enqueue(session, session_id="s2")
    assert await meeting_jobs_controller.get_by_id(session, job.id) is not None

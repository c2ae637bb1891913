"""Tests for the per-provider dispatch queue."""

import pytest

from src.db.models import ProviderType, QueueStatus
from src.services.dispatch_queue import DispatchQueue, ProviderLimits
from src.services.errors import ProviderError


def make_queue(clock, concurrency=2, window_ms=None, max_requests=None) -> DispatchQueue:
    limits = ProviderLimits(
        concurrency_limit=concurrency,
        rate_window_ms=window_ms,
        rate_max_requests=max_requests,
    )
    return DispatchQueue(
        clock=clock,
        limits={ProviderType.MUSIC: limits, ProviderType.VIDEO: limits},
    )


class RecordingSubmit:
    """Submit callable that correlates each claimed entry to a fake task id."""

    def __init__(self, db, queue: DispatchQueue, fail_on: tuple = ()):
        self.db = db
        self.queue = queue
        self.fail_on = fail_on
        self.seen: list[int] = []

    async def __call__(self, entry) -> str:
        self.seen.append(entry.id)
        if entry.payload.get("n") in self.fail_on:
            raise ProviderError("provider rejected request", status_code=500)
        task_id = f"task-{entry.id}"
        await self.queue.record_correlation(self.db, entry.id, task_id)
        await self.db.commit()
        return task_id


async def _enqueue(db, queue, clock, count, provider_type=ProviderType.MUSIC) -> list[int]:
    ids = []
    for n in range(count):
        entry = await queue.enqueue(db, provider_type, "owner-1", {"n": n})
        await db.commit()
        ids.append(entry.id)
        clock.advance(1)
    return ids


@pytest.mark.asyncio
async def test_enqueue_creates_pending_entry(db_session, clock):
    queue = make_queue(clock)

    entry = await queue.enqueue(
        db_session, ProviderType.VIDEO, "owner-1", {"prompt": "x"}, subject_id="s-1"
    )
    await db_session.commit()

    stored = await queue.get_entry(db_session, entry.id)
    assert stored.status == QueueStatus.PENDING
    assert stored.subject_id == "s-1"
    assert stored.created_at == clock.now
    assert stored.started_at is None


@pytest.mark.asyncio
async def test_pump_claims_in_fifo_order_up_to_concurrency(db_session, clock):
    queue = make_queue(clock, concurrency=2)
    ids = await _enqueue(db_session, queue, clock, 3)
    submit = RecordingSubmit(db_session, queue)

    result = await queue.pump(db_session, ProviderType.MUSIC, submit)

    assert result.processed == 2
    assert submit.seen == ids[:2]
    assert await queue.in_flight_count(db_session, ProviderType.MUSIC) == 2
    third = await queue.get_entry(db_session, ids[2])
    assert third.status == QueueStatus.PENDING


@pytest.mark.asyncio
async def test_pump_skips_when_at_concurrency_limit(db_session, clock):
    queue = make_queue(clock, concurrency=1)
    await _enqueue(db_session, queue, clock, 2)
    submit = RecordingSubmit(db_session, queue)
    await queue.pump(db_session, ProviderType.MUSIC, submit)

    result = await queue.pump(db_session, ProviderType.MUSIC, submit)

    assert result.skipped
    assert result.reason == "concurrency"
    assert len(submit.seen) == 1


@pytest.mark.asyncio
async def test_completion_frees_a_slot(db_session, clock):
    queue = make_queue(clock, concurrency=1)
    ids = await _enqueue(db_session, queue, clock, 2)
    submit = RecordingSubmit(db_session, queue)
    await queue.pump(db_session, ProviderType.MUSIC, submit)

    assert await queue.mark_completed(db_session, f"task-{ids[0]}")
    await db_session.commit()
    result = await queue.pump(db_session, ProviderType.MUSIC, submit)

    assert result.processed == 1
    assert submit.seen == ids
    first = await queue.get_entry(db_session, ids[0])
    assert first.status == QueueStatus.COMPLETED
    assert first.completed_at == clock.now


@pytest.mark.asyncio
async def test_providers_are_limited_independently(db_session, clock):
    queue = make_queue(clock, concurrency=1)
    await _enqueue(db_session, queue, clock, 2, ProviderType.MUSIC)
    video_ids = await _enqueue(db_session, queue, clock, 1, ProviderType.VIDEO)
    submit = RecordingSubmit(db_session, queue)
    await queue.pump(db_session, ProviderType.MUSIC, submit)

    result = await queue.pump(db_session, ProviderType.VIDEO, submit)

    assert result.processed == 1
    assert submit.seen[-1] == video_ids[0]


@pytest.mark.asyncio
async def test_rate_limit_window(db_session, clock):
    queue = make_queue(clock, concurrency=10, window_ms=10_000, max_requests=2)
    ids = await _enqueue(db_session, queue, clock, 3)
    submit = RecordingSubmit(db_session, queue)

    first = await queue.pump(db_session, ProviderType.MUSIC, submit)
    assert first.processed == 2
    assert first.reason == "rate-limit"

    # Finished entries still count against the window
    await queue.mark_completed(db_session, f"task-{ids[0]}")
    await db_session.commit()
    blocked = await queue.pump(db_session, ProviderType.MUSIC, submit)
    assert blocked.skipped
    assert blocked.reason == "rate-limit"

    clock.advance(10_001)
    later = await queue.pump(db_session, ProviderType.MUSIC, submit)
    assert later.processed == 1
    assert submit.seen == ids


@pytest.mark.asyncio
async def test_failed_submission_marks_entry_failed(db_session, clock):
    queue = make_queue(clock, concurrency=5)
    ids = await _enqueue(db_session, queue, clock, 2)
    submit = RecordingSubmit(db_session, queue, fail_on=(0,))

    result = await queue.pump(db_session, ProviderType.MUSIC, submit)

    assert result.processed == 1
    assert result.failed == 1
    failed = await queue.get_entry(db_session, ids[0])
    assert failed.status == QueueStatus.FAILED
    assert "provider rejected request" in failed.error_message
    assert await queue.in_flight_count(db_session, ProviderType.MUSIC) == 1


@pytest.mark.asyncio
async def test_mark_failed_by_task(db_session, clock):
    queue = make_queue(clock)
    ids = await _enqueue(db_session, queue, clock, 1)
    await queue.pump(db_session, ProviderType.MUSIC, RecordingSubmit(db_session, queue))

    assert await queue.mark_failed_by_task(db_session, f"task-{ids[0]}", "generation failed")
    await db_session.commit()

    entry = await queue.get_entry(db_session, ids[0])
    assert entry.status == QueueStatus.FAILED
    assert entry.error_message == "generation failed"
    # Only in-flight entries move
    assert not await queue.mark_completed(db_session, f"task-{ids[0]}")
    assert not await queue.mark_failed_by_task(db_session, "unknown-task", "x")


@pytest.mark.asyncio
async def test_cleanup_finished_keeps_recent_and_open_entries(db_session, clock):
    queue = make_queue(clock, concurrency=5)
    ids = await _enqueue(db_session, queue, clock, 3)
    submit = RecordingSubmit(db_session, queue)
    await queue.pump(db_session, ProviderType.MUSIC, submit)
    await queue.mark_completed(db_session, f"task-{ids[0]}")
    await db_session.commit()

    clock.advance(60_000)
    await queue.mark_completed(db_session, f"task-{ids[1]}")
    await db_session.commit()

    deleted = await queue.cleanup_finished(db_session, older_than_ms=30_000)

    assert deleted == 1
    assert await queue.get_entry(db_session, ids[0]) is None
    assert await queue.get_entry(db_session, ids[1]) is not None
    assert (await queue.get_entry(db_session, ids[2])).status == QueueStatus.IN_FLIGHT


@pytest.mark.asyncio
async def test_fail_stalled_only_touches_old_uncorrelated_entries(db_session, clock):
    queue = make_queue(clock, concurrency=5)
    ids = await _enqueue(db_session, queue, clock, 3)

    async def correlate_first_only(entry) -> str:
        task_id = f"task-{entry.id}"
        if entry.id == ids[0]:
            await queue.record_correlation(db_session, entry.id, task_id)
            await db_session.commit()
        return task_id

    await queue.pump(db_session, ProviderType.MUSIC, correlate_first_only)
    clock.advance(30_000)
    third = await queue.enqueue(db_session, ProviderType.MUSIC, "owner-1", {"n": 3})
    await db_session.commit()
    third_id = third.id
    await queue.pump(db_session, ProviderType.MUSIC, _no_correlation)

    failed = await queue.fail_stalled(db_session, older_than_ms=20_000)

    assert sorted(e.id for e in failed) == ids[1:]
    assert all(e.status == QueueStatus.FAILED for e in failed)
    assert (await queue.get_entry(db_session, ids[0])).status == QueueStatus.IN_FLIGHT
    assert (await queue.get_entry(db_session, third_id)).status == QueueStatus.IN_FLIGHT
    assert not await queue.record_correlation(db_session, ids[1], "task-late")
    assert await queue.fail_stalled(db_session, older_than_ms=20_000) == []


async def _no_correlation(entry) -> str:
    return f"task-{entry.id}"

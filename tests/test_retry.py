"""
Testes para xlog/services/retry.py

Cobre:
- backoff_ms: 1s, 2s, 4s... limitado a 1h
- next_eligible_at: updated_at + backoff
- tick() só reenfileira após o backoff
- tick() move failed → retrying antes do push; um segundo tick não duplica
- 5ª falha consecutiva: failed, attempt_count=5, nunca mais reenfileirada
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select

from xlog.database import utcnow
from xlog.models.delivery import Delivery
from xlog.services.queue import DeliveryJob
from xlog.services.retry import BACKOFF_CAP_MS, RetryScheduler, backoff_ms

INBOX = "https://remote.test/inbox"
ACTIVITY_ID = "act-1"


class FakeClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now


# ---------------------------------------------------------------------------
# backoff
# ---------------------------------------------------------------------------


def test_backoff_starts_at_base():
    assert backoff_ms(0) == 1000
    assert backoff_ms(1) == 2000
    assert backoff_ms(4) == 16000


def test_backoff_is_monotonic_and_capped():
    values = [backoff_ms(n) for n in range(40)]

    assert values == sorted(values)
    assert max(values) == BACKOFF_CAP_MS
    assert backoff_ms(12) == BACKOFF_CAP_MS


def test_backoff_handles_huge_attempt_counts():
    assert backoff_ms(10**6) == BACKOFF_CAP_MS


def test_next_eligible_at():
    scheduler = RetryScheduler(None, None)
    updated = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
    delivery = Delivery(activity_id="a", attempt_count=2, updated_at=updated)

    assert scheduler.next_eligible_at(delivery) == updated + timedelta(seconds=4)


# ---------------------------------------------------------------------------
# tick()
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(session_factory, federation, clock):
    return RetryScheduler(session_factory, federation.queue, clock=clock)


@pytest_asyncio.fixture
async def failing_job(federation, make_post, alice, remote):
    await make_post(alice.user_id)
    remote.default_status = 503
    return DeliveryJob(activity_id=ACTIVITY_ID, user_id=alice.user_id, post_id="p1", inbox_url=INBOX)


async def _row(session_factory) -> Delivery:
    async with session_factory() as session:
        return (
            await session.execute(select(Delivery).where(Delivery.activity_id == ACTIVITY_ID))
        ).scalar_one()


@pytest.mark.asyncio
async def test_tick_waits_for_backoff(scheduler, federation, failing_job):
    await federation.delivery.process_job(failing_job)

    assert await scheduler.tick() == []
    assert await federation.queue.size() == 0


@pytest.mark.asyncio
async def test_tick_requeues_after_backoff(scheduler, federation, session_factory, clock, failing_job):
    await federation.delivery.process_job(failing_job)
    clock.now += timedelta(seconds=30)

    assert await scheduler.tick() == [ACTIVITY_ID]

    claimed = await federation.queue.pop(timeout=0)
    assert claimed.job == failing_job
    assert (await _row(session_factory)).status == "retrying"


@pytest.mark.asyncio
async def test_second_tick_does_not_requeue_again(scheduler, federation, clock, failing_job):
    await federation.delivery.process_job(failing_job)
    clock.now += timedelta(seconds=30)

    await scheduler.tick()
    assert await scheduler.tick() == []
    assert await federation.queue.size() == 1


@pytest.mark.asyncio
async def test_competing_schedulers_requeue_once(session_factory, federation, clock, failing_job):
    await federation.delivery.process_job(failing_job)
    clock.now += timedelta(seconds=30)
    first = RetryScheduler(session_factory, federation.queue, clock=clock)
    second = RetryScheduler(session_factory, federation.queue, clock=clock)

    requeued = await first.tick() + await second.tick()

    assert requeued == [ACTIVITY_ID]


@pytest.mark.asyncio
async def test_fifth_failure_is_final(scheduler, federation, session_factory, clock, failing_job):
    outcome = await federation.delivery.process_job(failing_job)
    assert (outcome.status, outcome.attempt_count) == ("failed", 1)

    for attempt in range(2, 6):
        clock.now += timedelta(hours=2)
        assert await scheduler.tick() == [ACTIVITY_ID]
        claimed = await federation.queue.pop(timeout=0)
        outcome = await federation.delivery.process_job(claimed.job)
        await federation.queue.ack(claimed)
        assert (outcome.status, outcome.attempt_count) == ("failed", attempt)

    clock.now += timedelta(days=1)
    assert await scheduler.tick() == []

    row = await _row(session_factory)
    assert row.status == "failed"
    assert row.attempt_count == 5


@pytest.mark.asyncio
async def test_sent_deliveries_are_never_requeued(scheduler, federation, clock, failing_job, remote):
    remote.default_status = 202
    await federation.delivery.process_job(failing_job)
    clock.now += timedelta(hours=2)

    assert await scheduler.tick() == []

import asyncio
from datetime import date, datetime, timedelta

import pytest

from database import get_db
from errors import NegativeDelta, SubscriptionNotFound
from models.port import PortKey
from services import quota_service, repository

from conftest import DEVICE


async def set_ledger(user_id, **fields):
    assignments = ", ".join(f"{k} = ?" for k in fields)
    async with get_db() as db:
        await db.execute(f"UPDATE subscriptions SET {assignments} WHERE user_id = ?",
                         (*fields.values(), user_id))
        await db.commit()


@pytest.mark.asyncio
async def test_fresh_subscription_has_full_allowance(env):
    status = await quota_service.get_quota_status("alice")
    assert status.remaining_mah == 2000
    assert status.exhausted is False
    assert status.quota_date == date.today()


@pytest.mark.asyncio
async def test_unknown_user(env):
    with pytest.raises(SubscriptionNotFound):
        await quota_service.get_remaining("mallory")


@pytest.mark.asyncio
async def test_negative_delta_is_rejected_and_nothing_is_written(env):
    async with get_db() as db:
        with pytest.raises(NegativeDelta):
            await quota_service.record_consumption(db, "alice", -10)
    assert (await quota_service.get_quota_status("alice")).consumed_today_mah == 0


@pytest.mark.asyncio
async def test_day_rolls_lazily_on_first_read(env):
    yesterday = (date.today() - timedelta(days=1)).isoformat()
    await set_ledger("alice", quota_date=yesterday, consumed_today_mah=1800,
                     borrowed_today_mah=500, borrowed_pending_mah=600)

    status = await quota_service.get_quota_status("alice")

    assert status.quota_date == date.today()
    assert status.effective_daily_limit_mah == 1400
    assert status.consumed_today_mah == 0
    assert status.borrowed_pending_mah == 0
    assert status.remaining_mah == 1400


@pytest.mark.asyncio
async def test_rollover_loop_pass_rolls_every_stale_subscription(env):
    tomorrow = date.today() + timedelta(days=1)
    await set_ledger("bob", borrowed_pending_mah=2400)

    rolled = await quota_service.rollover_all(tomorrow)
    assert rolled == 5  # 3 test users + 2 demo subscriptions
    assert await quota_service.rollover_all(tomorrow) == 0

    async with get_db() as db:
        bob = await repository.fetch_subscription(db, "bob")
    assert bob.quota_date == tomorrow
    assert bob.effective_daily_limit_mah == 0


@pytest.mark.asyncio
async def test_consumption_writes_do_not_lose_updates(env):
    async def draw():
        async with get_db() as db:
            await quota_service.record_consumption(db, "carol", 10)

    await asyncio.gather(*(draw() for _ in range(10)))
    assert (await quota_service.get_quota_status("carol")).consumed_today_mah == 100


@pytest.mark.asyncio
async def test_monthly_usage_summary(env):
    key = PortKey(DEVICE, 1)
    first = await env.controller.acquire("alice", key)
    async with get_db() as db:
        await repository.add_session_energy(db, first.id, 400, datetime.now())
    await env.controller.release("alice", key)

    second = await env.controller.acquire("alice", key)
    async with get_db() as db:
        await repository.add_session_energy(db, second.id, 100, datetime.now())
    await env.controller.release("alice", key)

    today = date.today()
    usage = await quota_service.monthly_usage("alice", today.year, today.month)
    assert usage.session_count == 2
    assert usage.total_energy_mah == 500
    assert usage.total_cost == pytest.approx(125.0)
    assert {s.id for s in usage.sessions} == {first.id, second.id}

    empty = await quota_service.monthly_usage("bob", today.year, today.month)
    assert empty.session_count == 0

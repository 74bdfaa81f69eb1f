"""
Solar Charge Port Manager - Quota Service
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-09): Daily rollover loop, monthly usage summary
v1.0.0 (2026-10-02): Initial persisted ledger operations with lazy day roll

Persists Quota Ledger results. Every read-modify-write of a subscription runs
inside BEGIN IMMEDIATE so concurrent writers (telemetry, extensions, the
rollover loop) serialize on the database and no update is lost.
"""

import asyncio
import logging
from datetime import date, datetime
from typing import Awaitable, Callable, Optional

from config import settings
from database import get_db
from errors import SubscriptionNotFound
from models.session import SessionSummary, UsageSummary
from models.subscription import QuotaStatus, Subscription
from services import quota_ledger, repository

logger = logging.getLogger(__name__)


async def mutate_subscription(db, user_id: str, change: Callable[[Subscription], Subscription],
                              today: Optional[date] = None,
                              after: Optional[Callable[[object, Subscription], Awaitable[None]]] = None
                              ) -> Subscription:
    """
    Load the user's subscription under a write lock, roll the day if needed,
    apply `change` and commit. `after` runs inside the same transaction with
    the updated subscription. Any exception rolls everything back.
    """
    today = today or date.today()
    await db.execute("BEGIN IMMEDIATE")
    try:
        sub = await repository.fetch_subscription(db, user_id)
        if sub is None:
            raise SubscriptionNotFound(f"No active subscription for user {user_id}", user_id=user_id)
        rolled = quota_ledger.ensure_current_day(sub, today)
        if rolled is not sub:
            logger.info(f"Quota day rolled for {user_id}: {sub.quota_date} -> {today}, "
                        f"effective limit {rolled.effective_daily_limit_mah:g} mAh")
        updated = change(rolled)
        await repository.write_subscription(db, updated)
        if after is not None:
            await after(db, updated)
        await db.commit()
    except BaseException:
        await db.rollback()
        raise
    return updated


async def load_subscription(db, user_id: str, today: Optional[date] = None) -> Subscription:
    """Current-day subscription; rolls lazily when the stored day is behind"""
    today = today or date.today()
    sub = await repository.fetch_subscription(db, user_id)
    if sub is None:
        raise SubscriptionNotFound(f"No active subscription for user {user_id}", user_id=user_id)
    if sub.quota_date < today:
        sub = await mutate_subscription(db, user_id, lambda s: s, today)
    return sub


def to_status(sub: Subscription) -> QuotaStatus:
    left = quota_ledger.remaining(sub)
    return QuotaStatus(
        user_id=sub.user_id,
        quota_date=sub.quota_date,
        daily_limit_mah=sub.daily_limit_mah,
        effective_daily_limit_mah=sub.effective_daily_limit_mah,
        consumed_today_mah=sub.consumed_today_mah,
        borrowed_today_mah=sub.borrowed_today_mah,
        borrowed_pending_mah=sub.borrowed_pending_mah,
        remaining_mah=left,
        exhausted=left <= 0,
    )


async def get_quota_status(user_id: str) -> QuotaStatus:
    async with get_db() as db:
        sub = await load_subscription(db, user_id)
    return to_status(sub)


async def get_remaining(user_id: str) -> float:
    """GetRemainingQuota in mAh"""
    status = await get_quota_status(user_id)
    return status.remaining_mah


async def record_consumption(db, user_id: str, delta_mah: float) -> Subscription:
    return await mutate_subscription(
        db, user_id, lambda s: quota_ledger.record_consumption(s, delta_mah))


async def rollover_all(today: Optional[date] = None) -> int:
    """Roll every subscription still on an earlier day. Returns how many rolled."""
    today = today or date.today()
    async with get_db() as db:
        users = await repository.list_subscriptions_before(db, today)
        for user_id in users:
            await mutate_subscription(db, user_id, lambda s: s, today)
    if users:
        logger.info(f"Daily quota rollover for {len(users)} subscription(s)")
    return len(users)


async def start_rollover_loop():
    """Background task: catch day boundaries for idle subscriptions"""
    logger.info("Starting quota rollover loop")
    while True:
        try:
            await rollover_all()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Quota rollover failed: {e}")
        await asyncio.sleep(settings.QUOTA_ROLLOVER_CHECK_INTERVAL_S)


async def monthly_usage(user_id: str, year: int, month: int) -> UsageSummary:
    """Session count, duration, energy and cost for one calendar month"""
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    async with get_db() as db:
        sessions = await repository.list_sessions(
            db, user_id=user_id, start_date=start, end_date=end, limit=10000)

    summary = UsageSummary(user_id=user_id, year=year, month=month)
    for s in sessions:
        summary.session_count += 1
        summary.total_duration_s += s.duration_s
        summary.total_energy_mah += s.energy_mah
        summary.total_cost += s.cost or 0.0
        summary.sessions.append(SessionSummary(
            id=s.id,
            user_id=s.user_id,
            device_id=s.device_id,
            port_number=s.port_number,
            start_time=s.start_time,
            end_time=s.end_time,
            energy_mah=s.energy_mah,
            cost=s.cost,
            close_reason=s.close_reason,
            duration_s=s.duration_s,
        ))
    return summary

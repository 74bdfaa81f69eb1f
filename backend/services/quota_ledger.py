"""
Solar Charge Port Manager - Quota Ledger
Version: 1.0.1

Changelog:
v1.0.1 (2026-10-06): ensure_current_day() for lazy rollover on load
v1.0.0 (2026-09-28): Initial remaining / record / roll-day arithmetic

Pure arithmetic over a Subscription. Functions return an updated copy and
never touch storage; quota_service persists the result.
"""

import math
from datetime import date

from errors import NegativeDelta
from models.subscription import Subscription


def remaining(sub: Subscription) -> float:
    """
    Energy the user may still draw today (mAh).

    The base allotment is drained before any borrowed or purchased amount
    counts as available. Never negative.
    """
    limit = sub.effective_daily_limit_mah
    consumed = sub.consumed_today_mah
    base_left = max(0.0, limit - consumed)
    extension_left = sub.borrowed_today_mah if consumed >= limit else 0.0
    return base_left + extension_left


def record_consumption(sub: Subscription, delta_mah: float) -> Subscription:
    """Add delta_mah to consumed_today; the ledger records even past the limit"""
    if delta_mah is None or not math.isfinite(delta_mah) or delta_mah < 0:
        raise NegativeDelta(f"Consumption delta must be a finite value >= 0, got {delta_mah}",
                            delta_mah=delta_mah)
    return sub.model_copy(update={"consumed_today_mah": sub.consumed_today_mah + delta_mah})


def roll_day(sub: Subscription, today: date) -> Subscription:
    """
    Open a new quota day.

    Pending principal+penalty reduces the new day's limit (floored at 0);
    consumed, borrowed and pending counters reset.
    """
    effective = max(0.0, sub.daily_limit_mah - sub.borrowed_pending_mah)
    return sub.model_copy(update={
        "effective_daily_limit_mah": effective,
        "consumed_today_mah": 0.0,
        "borrowed_today_mah": 0.0,
        "borrowed_pending_mah": 0.0,
        "quota_date": today,
    })


def ensure_current_day(sub: Subscription, today: date) -> Subscription:
    """Roll once if the counters belong to an earlier day"""
    if sub.quota_date >= today:
        return sub
    return roll_day(sub, today)

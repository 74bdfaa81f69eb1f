"""
Solar Charge Port Manager - Persistence Queries
Version: 1.3.0

Changelog:
v1.3.0 (2026-10-16): Conditional claim activation, pending claims in port views
v1.2.0 (2026-10-09): Consumption samples, reconciliation queries, usage by month
v1.1.0 (2026-10-02): Port claims (durable per-port lock)
v1.0.0 (2026-09-28): Initial queries for ports, sessions, subscriptions, pricing

All functions take an open aiosqlite connection from database.get_db().
Timestamps are stored as ISO-8601 text.
"""

from datetime import date, datetime
from typing import Dict, List, Optional

from database import execute_one, execute_all, execute_insert, execute_update
from models.port import Port, PortConsumption, PortKey, Station
from models.session import ChargingSession, CloseReason, SessionPhase, SessionRef
from models.subscription import (
    BorrowPricing, DirectPurchasePricing, ExtensionTransaction, Plan,
    QuotaPricing, Subscription,
)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


# =============================================================================
# STATIONS & PORTS
# =============================================================================

async def get_station(db, station_id: int) -> Optional[Station]:
    row = await execute_one(db, "SELECT * FROM stations WHERE id = ?", (station_id,))
    return Station(**row) if row else None


async def list_stations(db) -> List[Station]:
    rows = await execute_all(db, "SELECT * FROM stations WHERE is_active = 1 ORDER BY id")
    return [Station(**r) for r in rows]


async def list_ports(db, station_id: Optional[int] = None) -> List[Port]:
    if station_id is None:
        rows = await execute_all(db, "SELECT * FROM ports ORDER BY device_id, port_number")
    else:
        rows = await execute_all(
            db, "SELECT * FROM ports WHERE station_id = ? ORDER BY device_id, port_number",
            (station_id,))
    return [Port(**r) for r in rows]


async def get_port(db, key: PortKey) -> Optional[Port]:
    row = await execute_one(
        db, "SELECT * FROM ports WHERE device_id = ? AND port_number = ?", key)
    return Port(**row) if row else None


# =============================================================================
# PORT CLAIMS
# =============================================================================

async def insert_claim(db, key: PortKey, user_id: str):
    """Raises aiosqlite.IntegrityError when the port is already claimed"""
    await execute_insert(
        db,
        """INSERT INTO port_claims (device_id, port_number, user_id, phase, created_at)
           VALUES (?, ?, ?, 'requested', ?)""",
        (key.device_id, key.port_number, user_id, datetime.now().isoformat()),
    )


async def get_claim(db, key: PortKey) -> Optional[dict]:
    return await execute_one(
        db, "SELECT * FROM port_claims WHERE device_id = ? AND port_number = ?", key)


async def count_user_claims(db, user_id: str) -> int:
    row = await execute_one(
        db, "SELECT COUNT(*) AS n FROM port_claims WHERE user_id = ?", (user_id,))
    return row["n"] if row else 0


async def activate_claim(db, key: PortKey, user_id: str, session_id: int) -> int:
    """Requested -> Active; 0 when the claim was dropped meanwhile"""
    return await execute_update(
        db,
        """UPDATE port_claims SET phase = 'active', session_id = ?
           WHERE device_id = ? AND port_number = ? AND user_id = ?
             AND phase = 'requested' AND session_id IS NULL""",
        (session_id, key.device_id, key.port_number, user_id))


async def delete_pending_claim(db, key: PortKey, user_id: str) -> int:
    """Drop a claim still waiting on its ON acknowledgment; other claims are left alone"""
    return await execute_update(
        db,
        """DELETE FROM port_claims
           WHERE device_id = ? AND port_number = ? AND user_id = ?
             AND phase = 'requested' AND session_id IS NULL""",
        (key.device_id, key.port_number, user_id))


async def list_pending_claims(db) -> List[dict]:
    """Claims with no session yet, oldest first"""
    return await execute_all(
        db,
        """SELECT * FROM port_claims
           WHERE phase = 'requested' AND session_id IS NULL
           ORDER BY created_at""")


async def upsert_closing_claim(db, key: PortKey, user_id: str, session_id: int):
    """Claim used while a forced stop is in flight; blocks new acquisitions"""
    await execute_update(
        db,
        """INSERT INTO port_claims (device_id, port_number, user_id, phase, session_id, created_at)
           VALUES (?, ?, ?, 'closing', ?, ?)
           ON CONFLICT(device_id, port_number) DO UPDATE SET phase = 'closing'""",
        (key.device_id, key.port_number, user_id, session_id, datetime.now().isoformat()),
    )


async def delete_claim(db, key: PortKey) -> int:
    return await execute_update(
        db, "DELETE FROM port_claims WHERE device_id = ? AND port_number = ?", key)


# =============================================================================
# CHARGING SESSIONS
# =============================================================================

async def create_session(db, session: ChargingSession) -> int:
    return await execute_insert(
        db,
        """INSERT INTO charging_sessions
           (user_id, station_id, device_id, port_number, start_time,
            energy_mah, last_activity_at, device_session_ref)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (session.user_id, session.station_id, session.device_id, session.port_number,
         _iso(session.start_time), session.energy_mah,
         _iso(session.last_activity_at or session.start_time), session.device_session_ref),
    )


async def get_session(db, session_id: int) -> Optional[ChargingSession]:
    row = await execute_one(db, "SELECT * FROM charging_sessions WHERE id = ?", (session_id,))
    return ChargingSession(**row) if row else None


async def get_open_session(db, key: PortKey) -> Optional[ChargingSession]:
    row = await execute_one(
        db,
        """SELECT * FROM charging_sessions
           WHERE device_id = ? AND port_number = ? AND end_time IS NULL""",
        key)
    return ChargingSession(**row) if row else None


async def list_open_sessions(db, station_id: Optional[int] = None,
                             user_id: Optional[str] = None) -> List[ChargingSession]:
    conditions = ["end_time IS NULL"]
    params = []
    if station_id is not None:
        conditions.append("station_id = ?")
        params.append(station_id)
    if user_id is not None:
        conditions.append("user_id = ?")
        params.append(user_id)
    rows = await execute_all(
        db,
        f"SELECT * FROM charging_sessions WHERE {' AND '.join(conditions)} ORDER BY start_time",
        params)
    return [ChargingSession(**r) for r in rows]


async def open_session_refs(db, station_id: Optional[int] = None) -> Dict[PortKey, SessionRef]:
    """
    Open sessions of every user keyed by port, with the claim phase.

    Claims still waiting on the ON acknowledgment have no session row yet;
    they are included with phase 'requested' and no session_id so the port
    reads as taken while acquire refuses it.
    """
    conditions = ["s.end_time IS NULL"]
    params = []
    if station_id is not None:
        conditions.append("s.station_id = ?")
        params.append(station_id)
    rows = await execute_all(
        db,
        f"""SELECT s.id, s.user_id, s.device_id, s.port_number, s.start_time, c.phase
            FROM charging_sessions s
            LEFT JOIN port_claims c
              ON c.device_id = s.device_id AND c.port_number = s.port_number
            WHERE {' AND '.join(conditions)}""",
        params)
    refs = {
        PortKey(r["device_id"], r["port_number"]): SessionRef(
            session_id=r["id"],
            user_id=r["user_id"],
            device_id=r["device_id"],
            port_number=r["port_number"],
            started_at=r["start_time"],
            phase=r["phase"] or SessionPhase.ACTIVE,
        )
        for r in rows
    }

    pending_conditions = ["c.session_id IS NULL"]
    pending_params = []
    if station_id is not None:
        pending_conditions.append("p.station_id = ?")
        pending_params.append(station_id)
    pending = await execute_all(
        db,
        f"""SELECT c.user_id, c.device_id, c.port_number, c.phase, c.created_at
            FROM port_claims c
            LEFT JOIN ports p
              ON p.device_id = c.device_id AND p.port_number = c.port_number
            WHERE {' AND '.join(pending_conditions)}""",
        pending_params)
    for r in pending:
        refs.setdefault(PortKey(r["device_id"], r["port_number"]), SessionRef(
            session_id=None,
            user_id=r["user_id"],
            device_id=r["device_id"],
            port_number=r["port_number"],
            started_at=r["created_at"],
            phase=r["phase"],
        ))
    return refs


async def active_sessions_for_user(db, user_id: str) -> List[SessionRef]:
    """GetActiveSessionsForUser"""
    refs = await open_session_refs(db)
    return [ref for ref in refs.values()
            if ref.user_id == user_id and ref.session_id is not None]


async def close_session(db, session_id: int, end_time: datetime, reason: CloseReason,
                        cost: float, needs_reconciliation: bool) -> int:
    return await execute_update(
        db,
        """UPDATE charging_sessions
           SET end_time = ?, close_reason = ?, cost = ?, needs_reconciliation = ?
           WHERE id = ? AND end_time IS NULL""",
        (_iso(end_time), reason.value, cost, int(needs_reconciliation), session_id),
    )


async def add_session_energy(db, session_id: int, delta_mah: float, at: datetime) -> int:
    """Energy only accumulates while the session is open"""
    return await execute_update(
        db,
        """UPDATE charging_sessions
           SET energy_mah = energy_mah + ?, last_activity_at = ?
           WHERE id = ? AND end_time IS NULL""",
        (delta_mah, _iso(at), session_id),
    )


async def sessions_needing_reconciliation(db) -> List[ChargingSession]:
    rows = await execute_all(
        db, "SELECT * FROM charging_sessions WHERE needs_reconciliation = 1 ORDER BY end_time")
    return [ChargingSession(**r) for r in rows]


async def clear_reconciliation(db, session_id: int) -> int:
    return await execute_update(
        db, "UPDATE charging_sessions SET needs_reconciliation = 0 WHERE id = ?", (session_id,))


async def list_sessions(db, user_id: Optional[str] = None, device_id: Optional[str] = None,
                        start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                        active_only: bool = False, limit: int = 100) -> List[ChargingSession]:
    conditions = []
    params = []
    if user_id:
        conditions.append("user_id = ?")
        params.append(user_id)
    if device_id:
        conditions.append("device_id = ?")
        params.append(device_id)
    if start_date:
        conditions.append("start_time >= ?")
        params.append(_iso(start_date))
    if end_date:
        conditions.append("start_time < ?")
        params.append(_iso(end_date))
    if active_only:
        conditions.append("end_time IS NULL")
    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    params.append(limit)
    rows = await execute_all(
        db, f"SELECT * FROM charging_sessions {where} ORDER BY start_time DESC LIMIT ?", params)
    return [ChargingSession(**r) for r in rows]


# =============================================================================
# CONSUMPTION
# =============================================================================

async def insert_consumption_sample(db, session_id: Optional[int], key: PortKey,
                                    watts: float, delta_mah: float, at: datetime) -> int:
    return await execute_insert(
        db,
        """INSERT INTO consumption_samples
           (session_id, device_id, port_number, watts, delta_mah, recorded_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (session_id, key.device_id, key.port_number, watts, delta_mah, _iso(at)),
    )


async def port_consumption_today(db, today: date) -> Dict[PortKey, PortConsumption]:
    """GetPortConsumption: latest increment and today's total per port"""
    rows = await execute_all(
        db,
        """SELECT device_id, port_number,
                  SUM(delta_mah) AS total_mah_today,
                  MAX(recorded_at) AS last_update_at,
                  (SELECT delta_mah FROM consumption_samples c2
                   WHERE c2.device_id = c.device_id AND c2.port_number = c.port_number
                   ORDER BY recorded_at DESC, id DESC LIMIT 1) AS current_mah
           FROM consumption_samples c
           WHERE recorded_at >= ?
           GROUP BY device_id, port_number""",
        (today.isoformat(),),
    )
    return {
        PortKey(r["device_id"], r["port_number"]): PortConsumption(**r)
        for r in rows
    }


# =============================================================================
# PLANS & SUBSCRIPTIONS
# =============================================================================

async def get_plan(db, plan_id: int) -> Optional[Plan]:
    row = await execute_one(db, "SELECT * FROM plans WHERE id = ?", (plan_id,))
    return Plan(**row) if row else None


async def fetch_subscription(db, user_id: str) -> Optional[Subscription]:
    """Active subscription of a user; no commit, safe inside a transaction"""
    row = await execute_one(
        db,
        """SELECT * FROM subscriptions
           WHERE user_id = ? AND is_active = 1
           ORDER BY id DESC LIMIT 1""",
        (user_id,))
    return Subscription(**row) if row else None


async def write_subscription(db, sub: Subscription):
    """Persist ledger fields; no commit, the caller owns the transaction"""
    await db.execute(
        """UPDATE subscriptions
           SET effective_daily_limit_mah = ?, consumed_today_mah = ?,
               borrowed_today_mah = ?, borrowed_pending_mah = ?,
               quota_date = ?, updated_at = ?
           WHERE id = ?""",
        (sub.effective_daily_limit_mah, sub.consumed_today_mah, sub.borrowed_today_mah,
         sub.borrowed_pending_mah, sub.quota_date.isoformat(), datetime.now().isoformat(),
         sub.id),
    )


async def create_subscription(db, user_id: str, plan: Plan, today: date,
                              end_date: Optional[date] = None) -> int:
    return await execute_insert(
        db,
        """INSERT INTO subscriptions
           (user_id, plan_id, daily_limit_mah, effective_daily_limit_mah,
            max_concurrent_sessions, quota_date, start_date, end_date, is_active)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1)""",
        (user_id, plan.id, plan.daily_limit_mah, plan.daily_limit_mah,
         plan.max_concurrent_sessions, today.isoformat(), today.isoformat(),
         _iso(end_date)),
    )


async def list_subscriptions_before(db, today: date) -> List[str]:
    """User ids whose active subscription counters belong to an earlier day"""
    rows = await execute_all(
        db, "SELECT DISTINCT user_id FROM subscriptions WHERE is_active = 1 AND quota_date < ?",
        (today.isoformat(),))
    return [r["user_id"] for r in rows]


# =============================================================================
# PRICING & EXTENSIONS
# =============================================================================

async def get_pricing(db) -> QuotaPricing:
    """GetQuotaPricing; inactive blocks are returned with is_active False"""
    rows = await execute_all(db, "SELECT * FROM quota_pricing")
    pricing = QuotaPricing()
    for r in rows:
        if r["extension_type"] == "direct_purchase" and r["extension_amount_mah"]:
            pricing.direct_purchase = DirectPurchasePricing(
                price=r["price"] or 0,
                extension_amount_mah=r["extension_amount_mah"],
                is_active=r["is_active"],
            )
        elif r["extension_type"] == "borrow_next_day":
            pricing.borrow_next_day = BorrowPricing(
                base_fee=r["base_fee"] or 0,
                penalty_percentage=r["penalty_percentage"] or 0,
                min_purchase_mah=r["min_purchase_mah"] or 0,
                max_purchase_mah=r["max_purchase_mah"] or 0,
                is_active=r["is_active"],
            )
    return pricing


async def insert_extension(db, tx: ExtensionTransaction) -> int:
    """No commit, written in the same transaction as the subscription"""
    cursor = await db.execute(
        """INSERT INTO extension_transactions
           (user_id, subscription_id, type, amount_mah, price_paid,
            penalty_percentage, penalty_mah, payment_reference, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (tx.user_id, tx.subscription_id, tx.type.value, tx.amount_mah, tx.price_paid,
         tx.penalty_percentage, tx.penalty_mah, tx.payment_reference, _iso(tx.created_at)),
    )
    return cursor.lastrowid


async def list_extensions(db, user_id: str, limit: int = 50) -> List[ExtensionTransaction]:
    rows = await execute_all(
        db,
        "SELECT * FROM extension_transactions WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
        (user_id, limit))
    return [ExtensionTransaction(**r) for r in rows]

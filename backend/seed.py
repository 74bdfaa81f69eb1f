"""
Solar Charge Port Manager - Database Seed Data
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-09): Demo subscriptions so a fresh install can charge right away
v1.0.0 (2026-10-02): Initial seed data: 1 station, 2 ports, 4 plans,
                      extension pricing
"""

import logging
from datetime import date

log = logging.getLogger(__name__)


# =============================================================================
# STATIONS & PORTS
# =============================================================================

SEED_STATIONS = [
    {"id": 1, "name": "Solar Station Alpha", "location": "Campus Main Square",
     "num_free_ports": 1, "num_premium_ports": 1, "price_per_mah": 0.25},
]

SEED_PORTS = [
    {"device_id": "ESP32_CHARGER_STATION_001", "port_number": 1, "station_id": 1,
     "is_premium": False, "label": "Port 1"},
    {"device_id": "ESP32_CHARGER_STATION_001", "port_number": 2, "station_id": 1,
     "is_premium": True, "label": "Port 2 (premium)"},
]


# =============================================================================
# PLANS (4 records)
# =============================================================================

SEED_PLANS = [
    {"id": 1, "name": "Daily Premium Pass", "daily_limit_mah": 5000, "max_concurrent_sessions": 1,
     "max_session_duration_hours": 4, "price": 50.00, "duration_type": "daily", "duration_value": 1},
    {"id": 2, "name": "3-Day Premium Pass", "daily_limit_mah": 5000, "max_concurrent_sessions": 1,
     "max_session_duration_hours": 4, "price": 120.00, "duration_type": "daily", "duration_value": 3},
    {"id": 3, "name": "Monthly Basic", "daily_limit_mah": 2000, "max_concurrent_sessions": 1,
     "max_session_duration_hours": 4, "price": 300.00, "duration_type": "monthly", "duration_value": 1},
    {"id": 4, "name": "Monthly Family", "daily_limit_mah": 8000, "max_concurrent_sessions": 2,
     "max_session_duration_hours": 6, "price": 650.00, "duration_type": "monthly", "duration_value": 1},
]


# =============================================================================
# EXTENSION PRICING
# =============================================================================

SEED_PRICING = [
    {"extension_type": "direct_purchase", "price": 10.00, "extension_amount_mah": 1000,
     "base_fee": 0, "penalty_percentage": 0, "min_purchase_mah": None, "max_purchase_mah": None},
    {"extension_type": "borrow_next_day", "price": 0, "extension_amount_mah": None,
     "base_fee": 5.00, "penalty_percentage": 20, "min_purchase_mah": 100, "max_purchase_mah": 5000},
]


# =============================================================================
# DEMO SUBSCRIPTIONS
# =============================================================================

SEED_SUBSCRIPTIONS = [
    {"user_id": "demo-user", "plan_id": 3},
    {"user_id": "demo-family", "plan_id": 4},
]


# -----------------------------------------------------------------------------
# seed_if_empty(db): populate all tables when they are empty
# -----------------------------------------------------------------------------

async def seed_if_empty(db):
    """Populate the database with seed data if the tables are empty.

    Inserts in FK-dependency order:
        stations -> ports -> plans -> quota_pricing -> subscriptions
    """

    async def _count(table: str) -> int:
        row = await db.execute(f"SELECT COUNT(*) FROM {table}")
        result = await row.fetchone()
        return result[0] if result else 0

    # ------------------------------------------------------------------
    # 1. STATIONS
    # ------------------------------------------------------------------
    if await _count("stations") == 0:
        log.info("Seeding stations (%d records)...", len(SEED_STATIONS))
        for s in SEED_STATIONS:
            await db.execute(
                """INSERT INTO stations
                   (id, name, location, num_free_ports, num_premium_ports, price_per_mah)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (s["id"], s["name"], s["location"], s["num_free_ports"],
                 s["num_premium_ports"], s["price_per_mah"]),
            )

    # ------------------------------------------------------------------
    # 2. PORTS
    # ------------------------------------------------------------------
    if await _count("ports") == 0:
        log.info("Seeding ports (%d records)...", len(SEED_PORTS))
        for p in SEED_PORTS:
            await db.execute(
                """INSERT INTO ports (device_id, port_number, station_id, is_premium, label)
                   VALUES (?, ?, ?, ?, ?)""",
                (p["device_id"], p["port_number"], p["station_id"], p["is_premium"], p["label"]),
            )

    # ------------------------------------------------------------------
    # 3. PLANS
    # ------------------------------------------------------------------
    if await _count("plans") == 0:
        log.info("Seeding plans (%d records)...", len(SEED_PLANS))
        for p in SEED_PLANS:
            await db.execute(
                """INSERT INTO plans
                   (id, name, daily_limit_mah, max_concurrent_sessions,
                    max_session_duration_hours, price, duration_type, duration_value)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (p["id"], p["name"], p["daily_limit_mah"], p["max_concurrent_sessions"],
                 p["max_session_duration_hours"], p["price"], p["duration_type"],
                 p["duration_value"]),
            )

    # ------------------------------------------------------------------
    # 4. QUOTA PRICING
    # ------------------------------------------------------------------
    if await _count("quota_pricing") == 0:
        log.info("Seeding quota_pricing (%d records)...", len(SEED_PRICING))
        for q in SEED_PRICING:
            await db.execute(
                """INSERT INTO quota_pricing
                   (extension_type, price, extension_amount_mah, base_fee,
                    penalty_percentage, min_purchase_mah, max_purchase_mah)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (q["extension_type"], q["price"], q["extension_amount_mah"], q["base_fee"],
                 q["penalty_percentage"], q["min_purchase_mah"], q["max_purchase_mah"]),
            )

    # ------------------------------------------------------------------
    # 5. SUBSCRIPTIONS
    # ------------------------------------------------------------------
    if await _count("subscriptions") == 0:
        log.info("Seeding subscriptions (%d records)...", len(SEED_SUBSCRIPTIONS))
        plans = {p["id"]: p for p in SEED_PLANS}
        today = date.today().isoformat()
        for s in SEED_SUBSCRIPTIONS:
            plan = plans[s["plan_id"]]
            await db.execute(
                """INSERT INTO subscriptions
                   (user_id, plan_id, daily_limit_mah, effective_daily_limit_mah,
                    max_concurrent_sessions, quota_date, start_date)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (s["user_id"], plan["id"], plan["daily_limit_mah"], plan["daily_limit_mah"],
                 plan["max_concurrent_sessions"], today, today),
            )

    await db.commit()
    log.info("Database seeding complete (v1.1.0).")

"""
Solar Charge Port Manager - Database Models
Version: 1.2.0

Changelog:
v1.2.0 (2026-10-09): consumption_samples table; close_reason, cost and
                      needs_reconciliation columns on charging_sessions
v1.1.0 (2026-10-02): port_claims lock table; partial unique index keeps one
                      open session per port
v1.0.0 (2026-09-28): Initial schema: stations, ports, plans, subscriptions,
                      charging_sessions, quota_pricing, extension_transactions
"""

from .port import (
    Station, Port, PortKey, PortState, PortView, RelayState,
    DeviceStatus, PortConsumption, StaleDataWarning, ConsumptionReading, IngestResult,
)
from .session import (
    ChargingSession, SessionRef, SessionPhase, CloseReason, ControlAction,
    CommandAck, ReleaseResult, SessionSummary, UsageSummary,
)
from .subscription import (
    Plan, Subscription, ExtensionType, ExtensionTransaction,
    QuotaPricing, DirectPurchasePricing, BorrowPricing, QuotaStatus,
    ExtensionRequest, ExtensionResult,
)

import aiosqlite
import logging

logger = logging.getLogger(__name__)


async def _add_column_if_missing(db, table, column, col_type, default=None):
    """Idempotent ALTER TABLE ADD COLUMN"""
    cursor = await db.execute(f"PRAGMA table_info({table})")
    existing = {row[1] for row in await cursor.fetchall()}
    if column not in existing:
        default_clause = f" DEFAULT {default}" if default is not None else ""
        await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}{default_clause}")


async def init_db():
    """Initialize SQLite database with the charging schema"""
    from database import get_db_path
    db_path = get_db_path()
    logger.info(f"Initializing database: {db_path}")

    async with aiosqlite.connect(db_path) as db:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA foreign_keys=ON")

        # ================================================================
        # STATIONS & PORTS
        # ================================================================
        await db.execute("""
            CREATE TABLE IF NOT EXISTS stations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                location TEXT,
                num_free_ports INTEGER DEFAULT 0,
                num_premium_ports INTEGER DEFAULT 0,
                price_per_mah REAL DEFAULT 0.25,
                is_active BOOLEAN DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS ports (
                device_id TEXT NOT NULL,
                port_number INTEGER NOT NULL,
                station_id INTEGER NOT NULL REFERENCES stations(id),
                is_premium BOOLEAN DEFAULT 0,
                label TEXT,
                PRIMARY KEY (device_id, port_number)
            )
        """)

        # ================================================================
        # PLANS & SUBSCRIPTIONS
        # ================================================================
        await db.execute("""
            CREATE TABLE IF NOT EXISTS plans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                daily_limit_mah REAL NOT NULL DEFAULT 5000,
                max_concurrent_sessions INTEGER NOT NULL DEFAULT 1,
                max_session_duration_hours INTEGER DEFAULT 4,
                price REAL DEFAULT 0,
                duration_type TEXT DEFAULT 'monthly'
                    CHECK(duration_type IN ('daily','weekly','monthly','quarterly','yearly')),
                duration_value INTEGER DEFAULT 1,
                is_active BOOLEAN DEFAULT 1
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS subscriptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                plan_id INTEGER NOT NULL REFERENCES plans(id),
                daily_limit_mah REAL NOT NULL,
                effective_daily_limit_mah REAL NOT NULL,
                max_concurrent_sessions INTEGER NOT NULL DEFAULT 1,
                consumed_today_mah REAL NOT NULL DEFAULT 0,
                borrowed_today_mah REAL NOT NULL DEFAULT 0,
                borrowed_pending_mah REAL NOT NULL DEFAULT 0,
                quota_date DATE NOT NULL,
                start_date DATE,
                end_date DATE,
                is_active BOOLEAN DEFAULT 1,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # ================================================================
        # PORT CLAIMS (durable per-port lock; first insert wins)
        # ================================================================
        await db.execute("""
            CREATE TABLE IF NOT EXISTS port_claims (
                device_id TEXT NOT NULL,
                port_number INTEGER NOT NULL,
                user_id TEXT NOT NULL,
                phase TEXT NOT NULL DEFAULT 'requested'
                    CHECK(phase IN ('requested','active','closing')),
                session_id INTEGER,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (device_id, port_number)
            )
        """)

        # ================================================================
        # CHARGING SESSIONS
        # ================================================================
        await db.execute("""
            CREATE TABLE IF NOT EXISTS charging_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                station_id INTEGER REFERENCES stations(id),
                device_id TEXT NOT NULL,
                port_number INTEGER NOT NULL,
                start_time TIMESTAMP NOT NULL,
                end_time TIMESTAMP,
                energy_mah REAL NOT NULL DEFAULT 0,
                last_activity_at TIMESTAMP,
                device_session_ref TEXT
            )
        """)
        await _add_column_if_missing(db, "charging_sessions", "cost", "REAL")
        await _add_column_if_missing(db, "charging_sessions", "close_reason", "TEXT")
        await _add_column_if_missing(db, "charging_sessions", "needs_reconciliation", "BOOLEAN", 0)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS consumption_samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER REFERENCES charging_sessions(id),
                device_id TEXT NOT NULL,
                port_number INTEGER NOT NULL,
                watts REAL NOT NULL,
                delta_mah REAL NOT NULL,
                recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # ================================================================
        # QUOTA PRICING & EXTENSIONS
        # ================================================================
        await db.execute("""
            CREATE TABLE IF NOT EXISTS quota_pricing (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                extension_type TEXT NOT NULL UNIQUE
                    CHECK(extension_type IN ('direct_purchase','borrow_next_day')),
                price REAL DEFAULT 0,
                extension_amount_mah REAL,
                base_fee REAL DEFAULT 0,
                penalty_percentage REAL DEFAULT 0,
                min_purchase_mah REAL,
                max_purchase_mah REAL,
                is_active BOOLEAN DEFAULT 1
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS extension_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                subscription_id INTEGER REFERENCES subscriptions(id),
                type TEXT NOT NULL CHECK(type IN ('direct_purchase','borrow_next_day')),
                amount_mah REAL NOT NULL,
                price_paid REAL NOT NULL,
                penalty_percentage REAL,
                penalty_mah REAL DEFAULT 0,
                payment_reference TEXT,
                created_at TIMESTAMP NOT NULL
            )
        """)

        # ================================================================
        # INDEXES
        # ================================================================
        await db.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_cs_open_port
            ON charging_sessions(device_id, port_number) WHERE end_time IS NULL
        """)
        await db.execute("CREATE INDEX IF NOT EXISTS idx_cs_user ON charging_sessions(user_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_cs_start ON charging_sessions(start_time)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_claims_user ON port_claims(user_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_sub_user ON subscriptions(user_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_ext_user ON extension_transactions(user_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_samples_session ON consumption_samples(session_id)")

        await db.commit()

    logger.info("Database initialized successfully (charging schema v1.2.0)")


__all__ = [
    'Station', 'Port', 'PortKey', 'PortState', 'PortView', 'RelayState',
    'DeviceStatus', 'PortConsumption', 'StaleDataWarning', 'ConsumptionReading', 'IngestResult',
    'ChargingSession', 'SessionRef', 'SessionPhase', 'CloseReason',
    'ControlAction', 'CommandAck', 'ReleaseResult', 'SessionSummary', 'UsageSummary',
    'Plan', 'Subscription', 'ExtensionType', 'ExtensionTransaction',
    'QuotaPricing', 'DirectPurchasePricing', 'BorrowPricing', 'QuotaStatus',
    'ExtensionRequest', 'ExtensionResult',
    'init_db'
]

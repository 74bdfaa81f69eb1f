"""
Solar Charge Port Manager - Database Connection Manager
Version: 1.0.1

Changelog:
v1.0.1 (2026-10-02): reset_db_path() for test databases
v1.0.0 (2026-09-28): Initial database connection manager with async helpers

Provides centralized async SQLite connection management for services and
endpoints. Uses aiosqlite with WAL journal mode and foreign key enforcement.
"""

import os
import aiosqlite
from contextlib import asynccontextmanager

from config import settings

_db_path: str = None


def get_db_path() -> str:
    """Resolve database path, create data directory if needed"""
    global _db_path
    if _db_path is None:
        _db_path = os.environ.get("CHARGE_PORTS_DB", settings.SQLITE_DB_PATH)
        os.makedirs(os.path.dirname(os.path.abspath(_db_path)), exist_ok=True)
    return _db_path


def reset_db_path(path: str = None):
    """Point the connection manager at another database file"""
    global _db_path
    _db_path = path
    if path is not None:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)


@asynccontextmanager
async def get_db():
    """Async context manager yielding an aiosqlite connection with WAL + FK"""
    db = await aiosqlite.connect(get_db_path())
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    try:
        yield db
    finally:
        await db.close()


async def execute_one(db, sql: str, params=()) -> dict | None:
    """Execute query and return first row as dict, or None"""
    cursor = await db.execute(sql, params)
    row = await cursor.fetchone()
    return dict(row) if row else None


async def execute_all(db, sql: str, params=()) -> list[dict]:
    """Execute query and return all rows as list of dicts"""
    cursor = await db.execute(sql, params)
    rows = await cursor.fetchall()
    return [dict(row) for row in rows]


async def execute_insert(db, sql: str, params=()) -> int:
    """Execute INSERT, commit, and return lastrowid"""
    cursor = await db.execute(sql, params)
    await db.commit()
    return cursor.lastrowid


async def execute_update(db, sql: str, params=()) -> int:
    """Execute UPDATE/DELETE, commit, and return rowcount"""
    cursor = await db.execute(sql, params)
    await db.commit()
    return cursor.rowcount

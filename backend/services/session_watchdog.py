"""
Solar Charge Port Manager - Session Watchdog
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-16): Orphaned requested claims dropped and their ports switched off
v1.0.1 (2026-10-09): Reconciliation pass for force-closed sessions
v1.0.0 (2026-10-06): Initial inactivity and stale-session reaper
"""

import asyncio
import logging
from datetime import datetime
from typing import List

from config import settings
from database import get_db
from models.port import PortKey
from models.session import CloseReason, SessionPhase
from services import repository, session_controller

logger = logging.getLogger(__name__)


class SessionWatchdog:
    """Stops sessions that stopped drawing power and retries unacknowledged OFFs"""

    def __init__(self):
        self.running = False
        self.last_stale_check = None

    async def sweep_inactive(self, threshold_s: float, now: datetime = None) -> List[int]:
        """Force-stop open sessions with no activity for threshold_s. Returns stopped ids."""
        now = now or datetime.now()
        async with get_db() as db:
            sessions = await repository.list_open_sessions(db)

        stopped = []
        for s in sessions:
            last = s.last_activity_at or s.start_time
            idle_s = (now - last).total_seconds()
            if idle_s < threshold_s:
                continue
            logger.info(f"Session {s.id} on {s.device_id}:{s.port_number} idle for "
                        f"{idle_s:.0f}s, stopping")
            result = await session_controller.force_stop(s.id, CloseReason.INACTIVITY)
            if result is not None:
                stopped.append(s.id)
        return stopped

    async def sweep_stale(self, threshold_s: float, now: datetime = None) -> List[int]:
        """
        Sessions idle past threshold_s whose stop never finished (claim left in
        closing, e.g. after a restart). The inactivity pass skips those.
        """
        now = now or datetime.now()
        async with get_db() as db:
            sessions = await repository.list_open_sessions(db)
            stuck = []
            for s in sessions:
                idle_s = (now - (s.last_activity_at or s.start_time)).total_seconds()
                if idle_s < threshold_s:
                    continue
                claim = await repository.get_claim(db, PortKey(s.device_id, s.port_number))
                if claim is not None and claim["phase"] == SessionPhase.CLOSING.value:
                    stuck.append(s.id)

        stopped = []
        for session_id in stuck:
            result = await session_controller.force_stop(session_id, CloseReason.INACTIVITY,
                                                         include_closing=True)
            if result is not None:
                stopped.append(session_id)
        return stopped

    async def sweep_orphan_claims(self, threshold_s: float, now: datetime = None) -> List[PortKey]:
        """
        Requested claims that never got a session within threshold_s. A live
        acquire either activates or drops its claim within the ack timeout.
        """
        now = now or datetime.now()
        async with get_db() as db:
            claims = await repository.list_pending_claims(db)

        controller = session_controller.get_controller()
        released = []
        for c in claims:
            created = datetime.fromisoformat(c["created_at"]) if c["created_at"] else None
            if created is not None and (now - created).total_seconds() < threshold_s:
                continue
            key = PortKey(c["device_id"], c["port_number"])
            if await controller.release_orphan_claim(key, c["user_id"]):
                released.append(key)
        return released

    async def reconcile_pending(self) -> int:
        """Re-send OFF for sessions closed without acknowledgment"""
        async with get_db() as db:
            pending = await repository.sessions_needing_reconciliation(db)
        done = 0
        controller = session_controller.get_controller()
        for s in pending:
            if await controller.reconcile(s):
                done += 1
        if pending:
            logger.info(f"Reconciled {done}/{len(pending)} force-closed session(s)")
        return done

    async def tick(self, now: datetime = None):
        now = now or datetime.now()
        await self.sweep_inactive(settings.INACTIVITY_TIMEOUT_S, now)

        orphans = await self.sweep_orphan_claims(
            settings.COMMAND_ACK_TIMEOUT_S + settings.CLAIM_ORPHAN_GRACE_S, now)
        if orphans:
            logger.warning(f"Dropped {len(orphans)} orphaned port claim(s)")

        if (self.last_stale_check is None or
                (now - self.last_stale_check).total_seconds() >= settings.STALE_SESSION_CHECK_INTERVAL_S):
            self.last_stale_check = now
            stale = await self.sweep_stale(settings.INACTIVITY_TIMEOUT_S * 2, now)
            if stale:
                logger.warning(f"Closed {len(stale)} stale session(s)")

        await self.reconcile_pending()

    async def start(self):
        """Background loop"""
        logger.info(f"Starting session watchdog (inactivity {settings.INACTIVITY_TIMEOUT_S:g}s)")
        self.running = True
        while self.running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Watchdog pass failed: {e}")
            await asyncio.sleep(settings.WATCHDOG_INTERVAL_S)


# Singleton instance
_watchdog = SessionWatchdog()


async def start_watchdog():
    await _watchdog.start()


async def run_once(now: datetime = None):
    await _watchdog.tick(now)

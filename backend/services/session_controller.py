"""
Solar Charge Port Manager - Session Controller
Version: 1.3.0

Changelog:
v1.3.0 (2026-10-16): Failed activation after ON ack switches the port off and drops the
                      claim; orphaned claims released by the watchdog; port and
                      user locks held weakly
v1.2.0 (2026-10-09): force_stop() for watchdog and quota cut-off; OFF retry for
                      sessions flagged for reconciliation
v1.1.0 (2026-10-06): Timed-out release force-closes locally and flags re-check
v1.0.0 (2026-10-02): Initial acquire/release state machine with durable claims

Port control lifecycle: Idle -> Requested -> Active -> Closing -> Closed.

acquire() writes a claim row for (device_id, port_number) before the ON
command goes out. The claim's primary key makes the first committed attempt
the winner; every later attempt sees the claim and fails fast with
PortUnavailable. The per-port asyncio.Lock only covers the check-and-claim
step, never the wait for the device.
"""

import asyncio
import logging
import weakref
from datetime import datetime
from typing import Optional

import aiosqlite

from config import settings
from database import get_db
from errors import (
    CommandTimeout, ConcurrencyLimitExceeded, DeviceOffline, GatewayError,
    PortUnavailable, QuotaExhausted, SessionNotOwned,
)
from models.port import PortKey, PortState
from models.session import (
    ChargingSession, CloseReason, ControlAction, ReleaseResult, SessionPhase,
)
from services import change_feed, device_gateway, port_monitor, quota_ledger, quota_service, repository
from api import ws

logger = logging.getLogger(__name__)


class SessionController:
    """
    Grants and revokes exclusive use of ports.

    Args:
        gateway: DeviceGateway; defaults to the process-wide gateway
        monitor: PortMonitor supplying port views; defaults to the singleton
        ack_timeout: seconds to wait for a command acknowledgment
    """

    def __init__(self, gateway=None, monitor=None, ack_timeout: float = None):
        self._gateway = gateway
        self._monitor = monitor
        self.ack_timeout = ack_timeout or settings.COMMAND_ACK_TIMEOUT_S
        # Entries vanish once no coroutine holds or waits on the lock
        self._locks = weakref.WeakValueDictionary()
        self._user_locks = weakref.WeakValueDictionary()

    @property
    def gateway(self):
        return self._gateway or device_gateway.get_gateway()

    @property
    def monitor(self):
        return self._monitor or port_monitor.get_monitor()

    def _lock(self, key: PortKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        # Concurrency limit spans ports, so claim counting is serialized per user
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Acquire
    # ------------------------------------------------------------------

    async def acquire(self, user_id: str, key: PortKey) -> ChargingSession:
        """
        AcquirePort. Raises PortUnavailable, ConcurrencyLimitExceeded,
        QuotaExhausted, DeviceOffline or CommandTimeout.
        """
        async with self._lock(key), self._user_lock(user_id):
            station_id = await self._claim(user_id, key)

        logger.info(f"Port {key}: requested by {user_id}")
        self._publish(station_id, key, "requested", user_id)

        try:
            ack = await asyncio.wait_for(
                self.gateway.send_control_command(key.device_id, key.port_number,
                                                  ControlAction.ON, user_id),
                timeout=self.ack_timeout,
            )
        except asyncio.TimeoutError:
            await self._rollback(key, station_id, user_id, "ack timeout")
            raise CommandTimeout(
                f"Port {key} did not acknowledge ON within {self.ack_timeout:g}s",
                device_id=key.device_id, port_number=key.port_number)
        except GatewayError as e:
            await self._rollback(key, station_id, user_id, str(e))
            raise DeviceOffline(f"Device {key.device_id} unreachable",
                                device_id=key.device_id, port_number=key.port_number)
        except BaseException:
            await self._rollback(key, station_id, user_id, "cancelled")
            raise

        if not ack.accepted:
            await self._rollback(key, station_id, user_id, ack.message or "rejected")
            raise PortUnavailable(ack.message or f"Port {key} rejected the command",
                                  device_id=key.device_id, port_number=key.port_number)

        now = datetime.now()
        session = ChargingSession(
            user_id=user_id,
            station_id=station_id,
            device_id=key.device_id,
            port_number=key.port_number,
            start_time=now,
            last_activity_at=now,
            device_session_ref=ack.device_session_ref,
        )
        try:
            async with get_db() as db:
                session.id = await repository.create_session(db, session)
                if not await repository.activate_claim(db, key, user_id, session.id):
                    raise PortUnavailable(f"Claim on port {key} was dropped before activation",
                                          device_id=key.device_id, port_number=key.port_number)
        except BaseException as e:
            await self._abort_acquire(key, station_id, user_id, session.id, e)
            raise

        logger.info(f"Port {key}: active, session {session.id} for {user_id}")
        await self.monitor.refresh_status()
        self._publish(station_id, key, "active", user_id, session_id=session.id)
        return session

    async def _claim(self, user_id: str, key: PortKey) -> Optional[int]:
        """Precondition checks and the durable claim. Runs under the port and user locks."""
        async with get_db() as db:
            port = await repository.get_port(db, key)
            if port is None:
                raise PortUnavailable(f"Unknown port {key}",
                                      device_id=key.device_id, port_number=key.port_number)
            if await repository.get_claim(db, key) is not None:
                raise PortUnavailable(f"Port {key} is already in use",
                                      device_id=key.device_id, port_number=key.port_number)

        view = await self.monitor.get_port_view(user_id, key)
        state = view.state if view else PortState.UNKNOWN
        if state in (PortState.OFFLINE, PortState.UNKNOWN):
            raise DeviceOffline(f"Port {key} is {state.value}",
                                device_id=key.device_id, port_number=key.port_number)
        if state != PortState.AVAILABLE:
            raise PortUnavailable(f"Port {key} is {state.value}",
                                  device_id=key.device_id, port_number=key.port_number)

        async with get_db() as db:
            sub = await quota_service.load_subscription(db, user_id)
            held = await repository.count_user_claims(db, user_id)
            if held >= sub.max_concurrent_sessions:
                raise ConcurrencyLimitExceeded(
                    f"User {user_id} already holds {held} port(s)",
                    limit=sub.max_concurrent_sessions, active=held)

            left = quota_ledger.remaining(sub)
            if left <= 0:
                raise QuotaExhausted(remaining=left,
                                     daily_limit=sub.effective_daily_limit_mah,
                                     borrowed_today=sub.borrowed_today_mah)

            try:
                await repository.insert_claim(db, key, user_id)
            except aiosqlite.IntegrityError:
                raise PortUnavailable(f"Port {key} is already in use",
                                      device_id=key.device_id, port_number=key.port_number)
        return port.station_id

    async def _rollback(self, key: PortKey, station_id: Optional[int], user_id: str, reason: str):
        async with get_db() as db:
            await repository.delete_pending_claim(db, key, user_id)
        logger.warning(f"Port {key}: acquire by {user_id} rolled back to idle ({reason})")
        self._publish(station_id, key, "idle", user_id)

    async def _abort_acquire(self, key: PortKey, station_id: Optional[int], user_id: str,
                             session_id: Optional[int], error: BaseException):
        """
        The device acknowledged ON but the session could not be recorded.
        Switch the port back off, close any half-written session and drop the
        claim. Whatever this misses is picked up by sweep_orphan_claims().
        """
        logger.error(f"Port {key}: acquire by {user_id} failed after ON ack: {error!r}")
        switched_off = await self._switch_off(key, user_id)
        if not switched_off:
            self.monitor.mark_recheck(key)
        try:
            async with get_db() as db:
                if session_id is not None:
                    await repository.close_session(db, session_id, datetime.now(),
                                                   CloseReason.ACQUIRE_FAILED, 0.0,
                                                   not switched_off)
                await repository.delete_pending_claim(db, key, user_id)
        except Exception as e:
            logger.error(f"Port {key}: cleanup after failed acquire incomplete: {e}")
            return
        self._publish(station_id, key, "idle", user_id)

    async def _switch_off(self, key: PortKey, user_id: str) -> bool:
        """Best-effort OFF; True when the device acknowledged it"""
        try:
            ack = await asyncio.wait_for(
                self.gateway.send_control_command(key.device_id, key.port_number,
                                                  ControlAction.OFF, user_id),
                timeout=self.ack_timeout,
            )
        except (asyncio.TimeoutError, GatewayError) as e:
            logger.warning(f"Port {key}: OFF failed: {e!r}")
            return False
        if not ack.accepted:
            logger.warning(f"Port {key}: OFF rejected ({ack.message})")
        return ack.accepted

    async def release_orphan_claim(self, key: PortKey, user_id: str) -> bool:
        """
        Drop a claim that never reached Active (process died mid-acquire, or
        cleanup failed) and switch the port off. The claim keeps blocking new
        acquisitions until the OFF has been attempted.
        """
        async with self._lock(key):
            async with get_db() as db:
                claim = await repository.get_claim(db, key)
            if (claim is None or claim["user_id"] != user_id or claim["session_id"] is not None
                    or claim["phase"] != SessionPhase.REQUESTED.value):
                return False

        if not await self._switch_off(key, user_id):
            self.monitor.mark_recheck(key)
        async with get_db() as db:
            dropped = await repository.delete_pending_claim(db, key, user_id)
            port = await repository.get_port(db, key)
        if dropped:
            logger.warning(f"Port {key}: dropped orphaned claim of {user_id}")
            self._publish(port.station_id if port else None, key, "idle", user_id)
        return bool(dropped)

    # ------------------------------------------------------------------
    # Release / stop
    # ------------------------------------------------------------------

    async def release(self, user_id: str, key: PortKey) -> ReleaseResult:
        """
        ReleasePort. On OFF timeout the session is closed locally, flagged for
        reconciliation and the result carries forced=True.
        """
        async with self._lock(key):
            async with get_db() as db:
                session = await repository.get_open_session(db, key)
                if session is None:
                    raise PortUnavailable(f"No active session on port {key}",
                                          device_id=key.device_id, port_number=key.port_number)
                if session.user_id != user_id:
                    raise SessionNotOwned(f"Session {session.id} belongs to another user",
                                          session_id=session.id)
                claim = await repository.get_claim(db, key)
                if claim is not None and claim["phase"] == SessionPhase.CLOSING.value:
                    raise PortUnavailable(f"Port {key} is already closing",
                                          device_id=key.device_id, port_number=key.port_number)
                await repository.upsert_closing_claim(db, key, user_id, session.id)

        return await self._stop(session, CloseReason.RELEASED)

    async def force_stop(self, session_id: int, reason: CloseReason,
                         include_closing: bool = False) -> Optional[ReleaseResult]:
        """
        Stop a session regardless of owner (watchdog, quota cut-off).
        Sessions already closing are skipped unless include_closing is set.
        """
        async with get_db() as db:
            session = await repository.get_session(db, session_id)
        if session is None or not session.is_active:
            return None

        key = PortKey(session.device_id, session.port_number)
        async with self._lock(key):
            async with get_db() as db:
                claim = await repository.get_claim(db, key)
                if (claim is not None and claim["phase"] == SessionPhase.CLOSING.value
                        and not include_closing):
                    return None
                await repository.upsert_closing_claim(db, key, session.user_id, session.id)

        logger.info(f"Port {key}: force stop of session {session.id} ({reason.value})")
        return await self._stop(session, reason)

    async def _stop(self, session: ChargingSession, reason: CloseReason) -> ReleaseResult:
        key = PortKey(session.device_id, session.port_number)
        self._publish(session.station_id, key, "closing", session.user_id, session_id=session.id)

        forced = not await self._switch_off(key, session.user_id)
        if forced and reason == CloseReason.RELEASED:
            reason = CloseReason.FORCED_TIMEOUT

        end_time = datetime.now()
        async with get_db() as db:
            current = await repository.get_session(db, session.id)
            station = await repository.get_station(db, current.station_id) if current.station_id else None
            price = station.price_per_mah if station else settings.DEFAULT_PRICE_PER_MAH
            cost = round(current.energy_mah * price, 2)
            await repository.close_session(db, session.id, end_time, reason, cost, forced)
            await repository.delete_claim(db, key)
            closed = await repository.get_session(db, session.id)

        if forced:
            self.monitor.mark_recheck(key)
            logger.warning(f"Port {key}: session {session.id} force-closed locally, "
                           f"flagged for reconciliation")
            await ws.broadcast_alert(
                f"Port {key} did not confirm stop; session {session.id} closed locally", "warning")
        else:
            self.monitor.clear_recheck(key)
            await self.monitor.refresh_status()
            logger.info(f"Port {key}: session {session.id} closed ({reason.value}), "
                        f"{closed.energy_mah:g} mAh, cost {cost:.2f}")

        self._publish(session.station_id, key, "closed", session.user_id,
                      session_id=session.id, reason=reason.value)
        return ReleaseResult(session=closed, forced=forced)

    async def reconcile(self, session: ChargingSession) -> bool:
        """Re-send OFF for a force-closed session; clears the flag on acknowledgment"""
        key = PortKey(session.device_id, session.port_number)
        async with self._lock(key):
            async with get_db() as db:
                if await repository.get_claim(db, key) is not None:
                    # Port re-acquired since; the new owner's session wins
                    await repository.clear_reconciliation(db, session.id)
                    self.monitor.clear_recheck(key)
                    return True
        if not await self._switch_off(key, session.user_id):
            return False

        async with get_db() as db:
            await repository.clear_reconciliation(db, session.id)
        self.monitor.clear_recheck(key)
        await self.monitor.refresh_status()
        logger.info(f"Port {key}: session {session.id} reconciled")
        return True

    def _publish(self, station_id: Optional[int], key: PortKey, phase: str, user_id: str, **data):
        change_feed.publish(station_id, "port_claims", phase,
                            device_id=key.device_id, port_number=key.port_number,
                            user_id=user_id, **data)


# Singleton instance
_controller = SessionController()


def get_controller() -> SessionController:
    return _controller


def set_controller(controller: SessionController):
    global _controller
    _controller = controller


async def acquire_port(user_id: str, device_id: str, port_number: int) -> ChargingSession:
    return await _controller.acquire(user_id, PortKey(device_id, port_number))


async def release_port(user_id: str, device_id: str, port_number: int) -> ReleaseResult:
    return await _controller.release(user_id, PortKey(device_id, port_number))


async def force_stop(session_id: int, reason: CloseReason,
                     include_closing: bool = False) -> Optional[ReleaseResult]:
    return await _controller.force_stop(session_id, reason, include_closing)

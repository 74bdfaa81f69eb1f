"""
Solar Charge Port Manager - Port Monitor Service
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-06): Forced re-check marks after timed-out releases
v1.0.0 (2026-10-02): Initial server-wide scheduler and GetPortView

Keeps the server's view of every port fresh: device status from the gateway
and consumption from ingested telemetry, each on its own timer. Session
ownership is always read from the database at view time, since it is the
authoritative source for who holds a port.
"""

import logging
from datetime import date, datetime
from typing import Dict, List, Optional, Set

from config import settings
from database import get_db
from models.port import DeviceStatus, Port, PortKey, PortView
from services import change_feed, device_gateway, port_aggregator, repository
from services.sync_scheduler import SyncScheduler

logger = logging.getLogger(__name__)


async def fetch_device_status() -> Dict[PortKey, DeviceStatus]:
    rows = await device_gateway.get_gateway().get_device_status()
    return {row.key: row for row in rows}


async def fetch_consumption():
    async with get_db() as db:
        return await repository.port_consumption_today(db, date.today())


def make_fetch_sessions(station_id: Optional[int] = None):
    async def fetch_sessions():
        async with get_db() as db:
            return await repository.open_session_refs(db, station_id)
    return fetch_sessions


def build_scheduler(name: str, station_id: Optional[int] = None, on_refresh=None) -> SyncScheduler:
    """Scheduler with the three standard sources: status, consumption, sessions"""
    scheduler = SyncScheduler(name=name, debounce_s=settings.CHANGE_FEED_DEBOUNCE_S,
                              on_refresh=on_refresh)
    scheduler.add_source("status", fetch_device_status, settings.STATUS_POLL_INTERVAL)
    scheduler.add_source("consumption", fetch_consumption, settings.CONSUMPTION_POLL_INTERVAL)
    scheduler.add_source("sessions", make_fetch_sessions(station_id), settings.SESSION_POLL_INTERVAL)
    return scheduler


def views_from(scheduler: SyncScheduler, ports: List[Port], user_id: Optional[str],
               recheck: Optional[Set[PortKey]] = None, sessions=None) -> Dict[PortKey, PortView]:
    """Aggregate a scheduler's last-known snapshots for one caller"""
    if sessions is None:
        sessions = scheduler.value("sessions") or {}
    return port_aggregator.aggregate(
        ports=ports,
        device_status=scheduler.value("status") or {},
        sessions=sessions,
        consumption=scheduler.value("consumption") or {},
        caller_id=user_id,
        now=datetime.now(),
        freshness_window_s=settings.DEVICE_FRESHNESS_WINDOW_S,
        recheck=recheck,
        fetched_at=scheduler.fetched_at(),
    )


class PortMonitor:
    """Server-wide, always-visible scheduler plus the port registry"""

    def __init__(self):
        self.scheduler = build_scheduler("port-monitor")
        self.recheck: Set[PortKey] = set()
        self._ports: Optional[List[Port]] = None
        self._feed_queue = None

    async def ports(self, station_id: Optional[int] = None) -> List[Port]:
        if self._ports is None:
            async with get_db() as db:
                self._ports = await repository.list_ports(db)
        if station_id is None:
            return list(self._ports)
        return [p for p in self._ports if p.station_id == station_id]

    def invalidate_registry(self):
        self._ports = None

    async def start(self):
        """Lifespan entry: initial refresh, timers and change-feed listener"""
        await self.scheduler.start()
        self._feed_queue = change_feed.subscribe(change_feed.ALL_STATIONS)
        self.scheduler.attach_feed(self._feed_queue)

    async def stop(self):
        await self.scheduler.teardown()
        if self._feed_queue is not None:
            change_feed.unsubscribe(change_feed.ALL_STATIONS, self._feed_queue)
            self._feed_queue = None

    async def _ensure_status(self):
        # Timers not running (monitor not started or paused): fetch on demand
        fetched_at = self.scheduler.source("status").fetched_at
        if fetched_at is None or (datetime.now() - fetched_at).total_seconds() > settings.DEVICE_FRESHNESS_WINDOW_S:
            await self.scheduler.refresh("status")

    async def refresh_status(self) -> bool:
        return await self.scheduler.refresh("status")

    def mark_recheck(self, key: PortKey):
        self.recheck.add(key)
        self.scheduler.notify_change({"reason": "recheck", "port": str(key)})

    def clear_recheck(self, key: PortKey):
        self.recheck.discard(key)

    async def get_port_views(self, user_id: Optional[str],
                             station_id: Optional[int] = None) -> List[PortView]:
        await self._ensure_status()
        async with get_db() as db:
            sessions = await repository.open_session_refs(db, station_id)
        ports = await self.ports(station_id)
        views = views_from(self.scheduler, ports, user_id, self.recheck, sessions=sessions)
        if station_id is not None:
            views = {k: v for k, v in views.items() if v.station_id == station_id}
        return list(views.values())

    async def get_port_view(self, user_id: Optional[str], key: PortKey) -> Optional[PortView]:
        """GetPortView; None when the port is unknown to every source"""
        await self._ensure_status()
        async with get_db() as db:
            sessions = await repository.open_session_refs(db)
        ports = await self.ports()
        views = views_from(self.scheduler, ports, user_id, self.recheck, sessions=sessions)
        return views.get(key)


# Singleton instance
_monitor: Optional[PortMonitor] = None


def get_monitor() -> PortMonitor:
    global _monitor
    if _monitor is None:
        _monitor = PortMonitor()
    return _monitor


def reset_monitor():
    global _monitor
    _monitor = None


async def start_monitor():
    await get_monitor().start()


async def stop_monitor():
    if _monitor is not None:
        await _monitor.stop()


async def get_port_view(user_id: Optional[str], key: PortKey) -> Optional[PortView]:
    return await get_monitor().get_port_view(user_id, key)


async def get_port_views(user_id: Optional[str], station_id: Optional[int] = None) -> List[PortView]:
    return await get_monitor().get_port_views(user_id, station_id)

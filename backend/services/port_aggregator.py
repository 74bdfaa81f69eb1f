"""
Solar Charge Port Manager - Port State Aggregator
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-06): Stale-source warnings and forced re-check marks
v1.0.0 (2026-09-28): Initial precedence-ordered port state resolution

Merges three independently refreshed views (device status, active sessions,
consumption) into one PortView per port. Pure: no I/O, no clock reads beyond
the `now` argument.

Resolution order, first match wins:
    1. caller holds a session on the port         -> OWNED_BY_CALLER
    2. device offline or report stale             -> OFFLINE
    3. another user's session, or relay ON         -> OCCUPIED_BY_OTHER
    4. relay OFF and no session                    -> AVAILABLE
    5. nothing usable                              -> UNKNOWN
"""

from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional, Set

from models.port import (
    Port, PortKey, PortState, PortView, RelayState,
    DeviceStatus, PortConsumption, StaleDataWarning,
)
from models.session import SessionRef


def is_report_fresh(status: Optional[DeviceStatus], now: datetime, freshness_window_s: float) -> bool:
    """True when the device reported for this port within the freshness window"""
    if status is None or status.last_report_at is None:
        return False
    return (now - status.last_report_at).total_seconds() <= freshness_window_s


def resolve_state(
    status: Optional[DeviceStatus],
    session: Optional[SessionRef],
    caller_id: Optional[str],
    now: datetime,
    freshness_window_s: float,
) -> PortState:
    """Apply the precedence rules to one port"""
    if session is not None and caller_id is not None and session.user_id == caller_id:
        return PortState.OWNED_BY_CALLER

    if status is not None and (not status.online or not is_report_fresh(status, now, freshness_window_s)):
        return PortState.OFFLINE

    if session is not None:
        return PortState.OCCUPIED_BY_OTHER

    if status is None:
        return PortState.UNKNOWN

    if status.relay_state == RelayState.ON:
        return PortState.OCCUPIED_BY_OTHER
    if status.relay_state == RelayState.OFF:
        return PortState.AVAILABLE
    return PortState.UNKNOWN


def source_warnings(
    fetched_at: Mapping[str, Optional[datetime]],
    now: datetime,
    freshness_window_s: float,
) -> list:
    """StaleDataWarning for every source snapshot older than the window"""
    warnings = []
    for source, ts in sorted(fetched_at.items()):
        if ts is None:
            warnings.append(StaleDataWarning(source=source, age_s=None))
            continue
        age = (now - ts).total_seconds()
        if age > freshness_window_s:
            warnings.append(StaleDataWarning(source=source, age_s=round(age, 1)))
    return warnings


def aggregate(
    ports: Iterable[Port],
    device_status: Mapping[PortKey, DeviceStatus],
    sessions: Mapping[PortKey, SessionRef],
    consumption: Mapping[PortKey, PortConsumption],
    caller_id: Optional[str],
    now: datetime,
    freshness_window_s: float,
    recheck: Optional[Set[PortKey]] = None,
    fetched_at: Optional[Mapping[str, Optional[datetime]]] = None,
) -> Dict[PortKey, PortView]:
    """
    Build a PortView for every port known to the system.

    Args:
        ports: registry entries (station, premium flag)
        device_status: latest GetDeviceStatus rows keyed by port
        sessions: open sessions of any user keyed by port
        consumption: latest GetPortConsumption rows keyed by port
        caller_id: user the view is computed for
        now: evaluation time
        freshness_window_s: max device report age before OFFLINE
        recheck: ports whose release timed out and need a forced re-check
        fetched_at: per-source fetch timestamps, for stale-data warnings

    Returns:
        Dict of PortKey -> PortView; ports seen only in an input are included.
    """
    registry = {p.key: p for p in ports}
    keys = set(registry) | set(device_status) | set(sessions) | set(consumption)
    recheck = recheck or set()
    shared_warnings = source_warnings(fetched_at or {}, now, freshness_window_s)

    views: Dict[PortKey, PortView] = {}
    for key in sorted(keys):
        port = registry.get(key)
        status = device_status.get(key)
        session = sessions.get(key)
        usage = consumption.get(key)

        state = resolve_state(status, session, caller_id, now, freshness_window_s)

        warnings = list(shared_warnings)
        if status is not None and status.online and not is_report_fresh(status, now, freshness_window_s):
            age = None
            if status.last_report_at is not None:
                age = round((now - status.last_report_at).total_seconds(), 1)
            warnings.append(StaleDataWarning(source="device_report", age_s=age))

        attributed = session if state == PortState.OWNED_BY_CALLER else None
        views[key] = PortView(
            device_id=key.device_id,
            port_number=key.port_number,
            station_id=port.station_id if port else None,
            is_premium=port.is_premium if port else False,
            state=state,
            session_id=attributed.session_id if attributed else None,
            session_phase=attributed.phase.value if attributed else None,
            relay_state=status.relay_state if status else RelayState.UNKNOWN,
            current_mah=usage.current_mah if usage else None,
            total_mah_today=usage.total_mah_today if usage else None,
            last_report_at=status.last_report_at if status else None,
            needs_recheck=key in recheck,
            warnings=warnings,
        )
    return views

"""
Solar Charge Port Manager - Telemetry Ingestion
Version: 1.1.1

Changelog:
v1.1.1 (2026-10-16): Readings racing a session close are reported as session_closed
v1.1.0 (2026-10-09): Quota cut-off stops the session when remaining hits zero
v1.0.0 (2026-10-02): Initial power reading validation and mAh accumulation

Devices publish instantaneous power (W) per port at a fixed interval. Each
reading becomes an mAh increment at the nominal charging voltage, added to
the open session and to the owner's daily consumption.
"""

import logging
import math
from datetime import datetime
from typing import Optional

from config import settings
from database import get_db
from errors import SubscriptionNotFound
from models.port import ConsumptionReading, IngestResult, PortKey
from models.session import CloseReason
from services import change_feed, quota_ledger, quota_service, repository, session_controller

logger = logging.getLogger(__name__)


def validate_consumption(watts: Optional[float]) -> float:
    """Missing, NaN or negative readings count as 0; implausible ones are capped"""
    if watts is None or math.isnan(watts) or watts < 0:
        return 0.0
    return min(watts, settings.MAX_REASONABLE_CONSUMPTION_W)


def watts_to_mah(watts: float, interval_s: float, voltage: float = None) -> float:
    """mAh drawn at `watts` for `interval_s` seconds: A = W / V, mAh = A x 1000 x h"""
    voltage = voltage or settings.NOMINAL_CHARGING_VOLTAGE_DC
    return (watts / voltage) * 1000 * (interval_s / 3600)


async def ingest(reading: ConsumptionReading) -> IngestResult:
    key = PortKey(reading.device_id, reading.port_number)
    watts = validate_consumption(reading.watts)
    if watts <= 0:
        logger.warning(f"Ignoring invalid consumption value ({reading.watts}W) for {key}")
        return IngestResult(recorded=False, reason="invalid_reading")

    interval = reading.interval_s or settings.TELEMETRY_INTERVAL_S
    delta_mah = watts_to_mah(watts, interval)
    at = reading.timestamp or datetime.now()

    async with get_db() as db:
        session = await repository.get_open_session(db, key)
        if session is None:
            logger.warning(f"Consumption for {key} but no active session, skipped")
            return IngestResult(recorded=False, watts=watts, reason="no_active_session")

        if not await repository.add_session_energy(db, session.id, delta_mah, at):
            # Closed between the lookup and the update; energy and quota follow the session
            logger.warning(f"Consumption for {key} arrived as session {session.id} closed, skipped")
            return IngestResult(recorded=False, session_id=session.id, watts=watts,
                                reason="session_closed")
        await repository.insert_consumption_sample(db, session.id, key, watts, delta_mah, at)
        try:
            sub = await quota_service.record_consumption(db, session.user_id, delta_mah)
        except SubscriptionNotFound:
            logger.error(f"Session {session.id} owner {session.user_id} has no subscription")
            sub = None

    remaining = quota_ledger.remaining(sub) if sub is not None else None
    logger.debug(f"{key}: {watts:g}W -> +{delta_mah:.3f} mAh (session {session.id})")
    change_feed.publish(session.station_id, "charging_sessions", "energy",
                        device_id=key.device_id, port_number=key.port_number,
                        session_id=session.id)

    stopped = False
    if settings.QUOTA_CUTOFF_ENABLED and remaining is not None and remaining <= 0:
        logger.info(f"Quota exhausted for {session.user_id}, stopping session {session.id}")
        result = await session_controller.force_stop(session.id, CloseReason.QUOTA_EXHAUSTED)
        stopped = result is not None

    return IngestResult(
        recorded=True,
        session_id=session.id,
        watts=watts,
        delta_mah=delta_mah,
        session_energy_mah=session.energy_mah + delta_mah,
        remaining_mah=remaining,
        stopped=stopped,
    )

"""
Solar Charge Port Manager - Port Control API
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-06): Release returns forced flag on unacknowledged OFF
v1.0.0 (2026-10-02): Initial port view, acquire and release endpoints
"""

from fastapi import APIRouter, HTTPException, Query
from typing import List, Optional
import logging

from errors import ChargeError
from models.port import PortKey, PortView
from models.session import ChargingSession, PortCommandRequest, ReleaseResult
from services import port_monitor, session_controller

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=List[PortView])
async def get_ports(
    user_id: Optional[str] = Query(None, description="Caller, for owned_by_caller resolution"),
    station_id: Optional[int] = Query(None, ge=1),
):
    """Aggregated state of every port, optionally for one station"""
    return await port_monitor.get_port_views(user_id, station_id)


@router.get("/{device_id}/{port_number}", response_model=PortView)
async def get_port(device_id: str, port_number: int, user_id: Optional[str] = Query(None)):
    """GetPortView"""
    view = await port_monitor.get_port_view(user_id, PortKey(device_id, port_number))
    if view is None:
        raise HTTPException(status_code=404, detail=f"Port {device_id}:{port_number} not found")
    return view


@router.post("/{device_id}/{port_number}/acquire", response_model=ChargingSession)
async def acquire_port(device_id: str, port_number: int, request: PortCommandRequest):
    """
    AcquirePort. Turns the port ON for the caller.
    Errors: 409 port_unavailable / concurrency_limit_exceeded, 402 quota_exhausted,
    503 device_offline, 504 command_timeout.
    """
    try:
        return await session_controller.acquire_port(request.user_id, device_id, port_number)
    except ChargeError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    except Exception as e:
        logger.error(f"Acquire {device_id}:{port_number} failed: {e}")
        raise HTTPException(status_code=500, detail=f"Acquire failed: {str(e)}")


@router.post("/{device_id}/{port_number}/release", response_model=ReleaseResult)
async def release_port(device_id: str, port_number: int, request: PortCommandRequest):
    """ReleasePort. forced=true means the device did not confirm OFF in time."""
    try:
        return await session_controller.release_port(request.user_id, device_id, port_number)
    except ChargeError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    except Exception as e:
        logger.error(f"Release {device_id}:{port_number} failed: {e}")
        raise HTTPException(status_code=500, detail=f"Release failed: {str(e)}")

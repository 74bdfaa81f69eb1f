"""
Solar Charge Port Manager - WebSocket API
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-06): Per-client SyncScheduler; visible/hidden messages pause
                      and resume refresh; teardown on disconnect
v1.0.0 (2026-10-02): Initial WebSocket endpoint for live port updates
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import List, Optional, Set
import json
import logging

from services import change_feed, port_monitor

router = APIRouter()
logger = logging.getLogger(__name__)

# Active WebSocket connections
active_connections: Set[WebSocket] = set()


@router.websocket("/live")
async def websocket_endpoint(websocket: WebSocket, user_id: Optional[str] = None,
                             station_id: Optional[int] = None):
    """
    WebSocket endpoint for real-time port updates.

    Each connection gets its own scheduler (status, consumption and session
    sources on their own cadences) and a change-feed subscription for its
    station. Client messages:
        "ping"    -> "pong"
        "hidden"  -> timers paused
        "visible" -> immediate refresh, timers resumed
    """
    await websocket.accept()
    active_connections.add(websocket)
    logger.info(f"WebSocket client connected. Total connections: {len(active_connections)}")

    monitor = port_monitor.get_monitor()

    async def push(sources: List[str]):
        ports = await monitor.ports(station_id)
        views = port_monitor.views_from(scheduler, ports, user_id, monitor.recheck)
        await websocket.send_json({
            "type": "update",
            "sources": sources,
            "data": [
                v.model_dump(mode='json') for v in views.values()
                if station_id is None or v.station_id == station_id
            ]
        })

    scheduler = port_monitor.build_scheduler(f"ws-{id(websocket):x}", station_id, on_refresh=push)
    queue = change_feed.subscribe(station_id)

    try:
        await scheduler.start()
        scheduler.attach_feed(queue)

        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
            elif data == "hidden":
                await scheduler.set_visible(False)
            elif data == "visible":
                await scheduler.set_visible(True)

    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        await scheduler.teardown()
        change_feed.unsubscribe(station_id, queue)
        active_connections.discard(websocket)
        logger.info(f"WebSocket client removed. Total connections: {len(active_connections)}")


async def broadcast_alert(message: str, severity: str = "info"):
    """
    Broadcast a system alert to all connected clients
    severity: "info", "warning", "error"
    """
    if not active_connections:
        return

    alert_message = json.dumps({
        "type": "alert",
        "severity": severity,
        "message": message
    })

    disconnected = set()
    for connection in active_connections:
        try:
            await connection.send_text(alert_message)
        except Exception as e:
            logger.error(f"Failed to send alert: {e}")
            disconnected.add(connection)

    active_connections.difference_update(disconnected)

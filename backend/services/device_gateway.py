"""
Solar Charge Port Manager - Device Gateway Client
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-06): Simulated gateway for development and tests; idempotent ON
v1.0.0 (2026-09-28): Initial HTTP client for device status and relay commands

The gateway fronts the charging station controllers. Two implementations:
    HttpDeviceGateway       - talks to the gateway service over HTTP (httpx)
    SimulatedDeviceGateway  - in-process relay model, no hardware needed

Both are idempotent for ON: a repeated ON from the port's current owner is
acknowledged with the same device session reference and changes nothing.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple

import httpx

from config import settings
from errors import GatewayError
from models.port import DeviceStatus, PortKey, RelayState
from models.session import CommandAck, ControlAction

logger = logging.getLogger(__name__)

DEFAULT_SIMULATED_PORTS = [
    ("ESP32_CHARGER_STATION_001", 1),
    ("ESP32_CHARGER_STATION_001", 2),
]


class DeviceGateway:
    """Collaborator interface used by the port monitor and session controller"""

    async def get_device_status(self) -> List[DeviceStatus]:
        raise NotImplementedError

    async def send_control_command(self, device_id: str, port_number: int,
                                   action: ControlAction, user_id: str) -> CommandAck:
        raise NotImplementedError

    async def close(self):
        pass


class HttpDeviceGateway(DeviceGateway):
    """Device gateway reached over HTTP"""

    def __init__(self, base_url: str = None, timeout: float = None):
        self.base_url = (base_url or settings.GATEWAY_URL).rstrip("/")
        self.timeout = timeout or settings.GATEWAY_TIMEOUT
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def get_device_status(self) -> List[DeviceStatus]:
        try:
            response = await self._get_client().get("/api/devices/status")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise GatewayError(f"Device status request failed: {e}") from e
        return [DeviceStatus(**row) for row in response.json()]

    async def send_control_command(self, device_id: str, port_number: int,
                                   action: ControlAction, user_id: str) -> CommandAck:
        try:
            response = await self._get_client().post(
                f"/api/devices/{device_id}/ports/{port_number}/command",
                json={"command": action.value, "user_id": user_id},
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise asyncio.TimeoutError(f"{action.value} to {device_id}:{port_number} timed out") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"{action.value} to {device_id}:{port_number} failed: {e}") from e
        return CommandAck(**response.json())

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class _SimulatedPort:
    def __init__(self):
        self.relay = RelayState.OFF
        self.owner: Optional[str] = None
        self.ref: Optional[str] = None
        self.online = True
        self.silent_since: Optional[datetime] = None


class SimulatedDeviceGateway(DeviceGateway):
    """
    In-process relay model.

    Knobs for exercising failure paths:
        ack_delay   - seconds before a command is acknowledged
        refuse      - ports that reject commands (accepted=False)
        set_online  - device reports online=False
        silence     - device stops reporting (last_report_at freezes)
        fail_status - get_device_status raises GatewayError
    """

    def __init__(self, ports: Iterable[Tuple[str, int]] = None, ack_delay: float = 0.0):
        self.ports: Dict[PortKey, _SimulatedPort] = {}
        self.ack_delay = ack_delay
        self.refuse: Set[PortKey] = set()
        self.fail_status = False
        self.commands: List[Tuple[PortKey, ControlAction, str]] = []
        for device_id, port_number in (ports or DEFAULT_SIMULATED_PORTS):
            self.add_port(device_id, port_number)

    def add_port(self, device_id: str, port_number: int):
        self.ports.setdefault(PortKey(device_id, port_number), _SimulatedPort())

    def set_online(self, device_id: str, port_number: int, online: bool):
        self.ports[PortKey(device_id, port_number)].online = online

    def silence(self, device_id: str, port_number: int, seconds: float):
        """Pretend the device last reported `seconds` ago and then went quiet"""
        self.ports[PortKey(device_id, port_number)].silent_since = datetime.now() - timedelta(seconds=seconds)

    def relay(self, device_id: str, port_number: int) -> RelayState:
        return self.ports[PortKey(device_id, port_number)].relay

    async def get_device_status(self) -> List[DeviceStatus]:
        if self.fail_status:
            raise GatewayError("Simulated gateway unreachable")
        now = datetime.now()
        return [
            DeviceStatus(
                device_id=key.device_id,
                port_number=key.port_number,
                online=port.online,
                relay_state=port.relay,
                last_report_at=port.silent_since or now,
            )
            for key, port in self.ports.items()
        ]

    async def send_control_command(self, device_id: str, port_number: int,
                                   action: ControlAction, user_id: str) -> CommandAck:
        key = PortKey(device_id, port_number)
        self.commands.append((key, action, user_id))
        if self.ack_delay:
            await asyncio.sleep(self.ack_delay)

        port = self.ports.get(key)
        if port is None or not port.online or port.silent_since is not None:
            raise GatewayError(f"Device {device_id} not reachable")
        if key in self.refuse:
            return CommandAck(accepted=False, message="Command rejected by device")

        if action == ControlAction.ON:
            if port.relay == RelayState.ON:
                if port.owner == user_id:
                    return CommandAck(accepted=True, device_session_ref=port.ref,
                                      message="Already on")
                return CommandAck(accepted=False, message="Port in use")
            port.relay = RelayState.ON
            port.owner = user_id
            port.ref = uuid.uuid4().hex[:12]
            logger.info(f"[sim] {key} ON for {user_id} (ref {port.ref})")
            return CommandAck(accepted=True, device_session_ref=port.ref)

        ref = port.ref
        port.relay = RelayState.OFF
        port.owner = None
        port.ref = None
        logger.info(f"[sim] {key} OFF")
        return CommandAck(accepted=True, device_session_ref=ref)


# Singleton instance
_gateway: Optional[DeviceGateway] = None


def get_gateway() -> DeviceGateway:
    """Gateway selected by GATEWAY_MODE, created on first use"""
    global _gateway
    if _gateway is None:
        if settings.GATEWAY_MODE == "http":
            _gateway = HttpDeviceGateway()
        else:
            _gateway = SimulatedDeviceGateway()
        logger.info(f"Device gateway: {type(_gateway).__name__}")
    return _gateway


def set_gateway(gateway: Optional[DeviceGateway]):
    global _gateway
    _gateway = gateway


async def close_gateway():
    global _gateway
    if _gateway is not None:
        await _gateway.close()
        _gateway = None

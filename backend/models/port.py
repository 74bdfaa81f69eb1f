"""
Solar Charge Port Manager - Port Models
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-06): needs_recheck and stale-data warnings on PortView;
                      consumption reading models
v1.0.0 (2026-09-28): Initial station, port and device snapshot models
"""

from pydantic import BaseModel, Field
from typing import NamedTuple, Optional, List
from datetime import datetime
from enum import Enum


class RelayState(str, Enum):
    """Relay flag reported by the device"""
    ON = "ON"
    OFF = "OFF"
    UNKNOWN = "UNKNOWN"


class PortState(str, Enum):
    """Derived per-port state, never stored"""
    AVAILABLE = "available"
    OWNED_BY_CALLER = "owned_by_caller"
    OCCUPIED_BY_OTHER = "occupied_by_other"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class PortKey(NamedTuple):
    device_id: str
    port_number: int

    def __str__(self) -> str:
        return f"{self.device_id}:{self.port_number}"


class Station(BaseModel):
    """Physical charging location"""
    id: int
    name: str
    location: Optional[str] = None
    num_free_ports: int = Field(0, ge=0)
    num_premium_ports: int = Field(0, ge=0)
    price_per_mah: float = Field(0.25, ge=0, description="Session cost per mAh")
    is_active: bool = True


class Port(BaseModel):
    """Registry entry for one port on a device"""
    station_id: int
    device_id: str
    port_number: int = Field(..., ge=1)
    is_premium: bool = False
    label: Optional[str] = None

    @property
    def key(self) -> PortKey:
        return PortKey(self.device_id, self.port_number)


class DeviceStatus(BaseModel):
    """One row of GetDeviceStatus()"""
    device_id: str
    port_number: int
    online: bool = True
    relay_state: RelayState = RelayState.UNKNOWN
    last_report_at: Optional[datetime] = None

    @property
    def key(self) -> PortKey:
        return PortKey(self.device_id, self.port_number)


class PortConsumption(BaseModel):
    """One row of GetPortConsumption()"""
    device_id: str
    port_number: int
    current_mah: float = Field(0.0, ge=0)
    total_mah_today: float = Field(0.0, ge=0)
    last_update_at: Optional[datetime] = None

    @property
    def key(self) -> PortKey:
        return PortKey(self.device_id, self.port_number)


class StaleDataWarning(BaseModel):
    """Non-fatal: a source snapshot is older than the freshness window"""
    source: str
    age_s: Optional[float] = Field(None, description="Snapshot age, None if never fetched")


class PortView(BaseModel):
    """Aggregated per-port state returned to clients"""
    device_id: str
    port_number: int
    station_id: Optional[int] = None
    is_premium: bool = False
    state: PortState
    session_id: Optional[int] = None
    session_phase: Optional[str] = None
    relay_state: RelayState = RelayState.UNKNOWN
    current_mah: Optional[float] = None
    total_mah_today: Optional[float] = None
    last_report_at: Optional[datetime] = None
    needs_recheck: bool = False
    warnings: List[StaleDataWarning] = Field(default_factory=list)

    @property
    def key(self) -> PortKey:
        return PortKey(self.device_id, self.port_number)


class ConsumptionReading(BaseModel):
    """Power reading published by a device for one port"""
    device_id: str
    port_number: int = Field(..., ge=1)
    watts: Optional[float] = Field(None, description="Instantaneous draw; invalid values are ignored")
    interval_s: Optional[float] = Field(None, gt=0, description="Publish interval, defaults to TELEMETRY_INTERVAL_S")
    timestamp: Optional[datetime] = None


class IngestResult(BaseModel):
    recorded: bool
    session_id: Optional[int] = None
    watts: float = 0.0
    delta_mah: float = 0.0
    session_energy_mah: Optional[float] = None
    remaining_mah: Optional[float] = None
    stopped: bool = Field(False, description="Session stopped because the quota ran out")
    reason: Optional[str] = None

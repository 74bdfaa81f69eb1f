"""
Solar Charge Port Manager - Session Models
Version: 1.2.0

Changelog:
v1.2.0 (2026-10-16): acquire_failed close reason; SessionRef for claims still requested
v1.1.0 (2026-10-09): Close reasons, reconciliation flag, monthly usage summary
v1.0.0 (2026-09-28): Initial charging session models
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from enum import Enum


class SessionPhase(str, Enum):
    """Port control lifecycle: Idle -> Requested -> Active -> Closing -> Closed"""
    IDLE = "idle"
    REQUESTED = "requested"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class CloseReason(str, Enum):
    RELEASED = "released"
    FORCED_TIMEOUT = "forced_timeout"
    INACTIVITY = "inactivity"
    QUOTA_EXHAUSTED = "quota_exhausted"
    ACQUIRE_FAILED = "acquire_failed"


class ControlAction(str, Enum):
    ON = "ON"
    OFF = "OFF"


class CommandAck(BaseModel):
    """Reply of SendControlCommand"""
    accepted: bool
    device_session_ref: Optional[str] = Field(None, description="Device-side session reference")
    message: Optional[str] = None


class ChargingSession(BaseModel):
    """Charging session record"""
    id: Optional[int] = Field(None, description="Session ID (auto-generated)")
    user_id: str = Field(..., description="Owning user")
    station_id: Optional[int] = Field(None, description="Station the port belongs to")
    device_id: str
    port_number: int
    start_time: datetime = Field(default_factory=datetime.now, description="Session start time")
    end_time: Optional[datetime] = Field(None, description="Null while active")
    energy_mah: float = Field(0.0, ge=0, description="Accumulated energy in mAh")
    cost: Optional[float] = Field(None, description="energy_mah x station price, set at close")
    last_activity_at: Optional[datetime] = None
    close_reason: Optional[CloseReason] = None
    needs_reconciliation: bool = Field(False, description="Closed locally, OFF not acknowledged")
    device_session_ref: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    @property
    def duration_s(self) -> int:
        end = self.end_time or datetime.now()
        return int((end - self.start_time).total_seconds())


class SessionRef(BaseModel):
    """Active session as seen by GetActiveSessionsForUser; no session_id while still requested"""
    session_id: Optional[int] = None
    user_id: str
    device_id: str
    port_number: int
    started_at: datetime
    phase: SessionPhase = SessionPhase.ACTIVE


class PortCommandRequest(BaseModel):
    """Body of acquire/release calls"""
    user_id: str = Field(..., min_length=1)


class ReleaseResult(BaseModel):
    session: ChargingSession
    forced: bool = Field(False, description="True when OFF was not acknowledged and the session was closed locally")


class SessionSummary(BaseModel):
    """Session summary for list views"""
    id: int
    user_id: str
    device_id: str
    port_number: int
    start_time: datetime
    end_time: Optional[datetime]
    energy_mah: float
    cost: Optional[float]
    close_reason: Optional[CloseReason]
    duration_s: Optional[int]


class UsageSummary(BaseModel):
    """Per-user monthly usage"""
    user_id: str
    year: int
    month: int
    session_count: int = 0
    total_duration_s: int = 0
    total_energy_mah: float = 0.0
    total_cost: float = 0.0
    sessions: List[SessionSummary] = Field(default_factory=list)

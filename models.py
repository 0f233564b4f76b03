# Core Data Models
# File: models.py

"""
Domain types for the fleet simulation engine: drone runtime state, missions,
waypoints, execution events, telemetry records and command results.
Request validation models (pydantic) live at the bottom of the file.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import List, Dict, Optional, Any

from pydantic import BaseModel, Field

# ============================================================================
# ENUMS
# ============================================================================

class DroneStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    CHARGING = "charging"
    IN_MISSION = "in-mission"

class DroneCommand(str, Enum):
    ARM = "ARM"
    TAKEOFF = "TAKEOFF"
    LAND = "LAND"
    RTL = "RTL"

class MissionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

TERMINAL_MISSION_STATUSES = frozenset({
    MissionStatus.COMPLETED,
    MissionStatus.FAILED,
    MissionStatus.CANCELLED,
})

class WaypointAction(str, Enum):
    TAKE_PHOTO = "TAKE_PHOTO"
    LOITER = "LOITER"
    SCAN = "SCAN"
    DELIVER_PAYLOAD = "DELIVER_PAYLOAD"
    NONE = "NONE"

class MissionFailureReason(str, Enum):
    LOW_BATTERY = "LOW_BATTERY"
    LOW_GPS = "LOW_GPS"
    OFFLINE_TIMEOUT = "OFFLINE_TIMEOUT"
    CANCELLED_BY_USER = "CANCELLED_BY_USER"
    RTL_CANCELLED = "RTL_CANCELLED"

class MissionEventType(str, Enum):
    WAYPOINT_REACHED = "WAYPOINT_REACHED"
    ACTION_EXECUTED = "ACTION_EXECUTED"
    MISSION_STARTED = "MISSION_STARTED"
    MISSION_COMPLETED = "MISSION_COMPLETED"
    MISSION_FAILED = "MISSION_FAILED"
    MISSION_CANCELLED = "MISSION_CANCELLED"

class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    NOT_ARMED = "NOT_ARMED"
    COMMAND_FAILED = "COMMAND_FAILED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    # Mission lifecycle
    INVALID_STATUS = "INVALID_STATUS"
    DRONE_NOT_FOUND = "DRONE_NOT_FOUND"
    DRONE_BUSY = "DRONE_BUSY"

FAILURE_REASON_LABELS = {
    MissionFailureReason.LOW_BATTERY: "Low battery",
    MissionFailureReason.LOW_GPS: "Low GPS quality",
    MissionFailureReason.OFFLINE_TIMEOUT: "Drone offline too long",
    MissionFailureReason.RTL_CANCELLED: "Cancelled by RTL",
    MissionFailureReason.CANCELLED_BY_USER: "Cancelled by user",
}

# ============================================================================
# ERRORS
# ============================================================================

class MissionError(Exception):
    """Base class for mission state machine errors"""

class MissionNotFoundError(MissionError):
    def __init__(self, mission_id: str):
        super().__init__(f"Mission {mission_id} not found")
        self.mission_id = mission_id

class InvalidTransitionError(MissionError):
    def __init__(self, mission_id: str, message: str):
        super().__init__(message)
        self.mission_id = mission_id

# ============================================================================
# DRONE MODELS
# ============================================================================

@dataclass
class Position:
    lat: float
    lng: float
    alt: float = 0.0
    speed: float = 0.0

@dataclass
class BaseAnchor:
    lat: float
    lng: float

@dataclass
class DroneHealth:
    signal_strength: float = 100.0
    gps_quality: float = 100.0
    motor_health: float = 100.0
    overall: float = 100.0

@dataclass
class DroneProfile:
    """Static drone data (does not change while the process runs)"""
    id: str
    name: str
    flight_hours: float = 0.0
    last_mission: Optional[str] = None
    health: DroneHealth = field(default_factory=DroneHealth)

@dataclass
class DroneBaseline:
    """Seed record for a drone: profile plus its starting runtime values"""
    profile: DroneProfile
    status: DroneStatus
    battery_pct: float
    position: Position
    updated_at: datetime = field(default_factory=datetime.now)

@dataclass
class DroneRuntimeState:
    status: DroneStatus
    position: Position
    battery_pct: float
    base_anchor: BaseAnchor
    armed: bool = False
    returning: bool = False
    last_command: Optional[DroneCommand] = None
    last_command_at: Optional[datetime] = None
    active_mission_id: Optional[str] = None
    target_altitude: Optional[float] = None
    offline_since: Optional[datetime] = None
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'armed': self.armed,
            'returning': self.returning,
            'last_command': self.last_command.value if self.last_command else None,
            'last_command_at': self.last_command_at.isoformat() if self.last_command_at else None,
            'active_mission_id': self.active_mission_id,
            'position': asdict(self.position),
            'battery_pct': self.battery_pct,
            'target_altitude': self.target_altitude,
            'base_anchor': asdict(self.base_anchor),
            'offline_since': self.offline_since.isoformat() if self.offline_since else None,
            'updated_at': self.updated_at.isoformat(),
        }

# ============================================================================
# MISSION MODELS
# ============================================================================

@dataclass
class Waypoint:
    lat: float
    lng: float
    alt: float
    order: int = 0
    speed: Optional[float] = None
    action: Optional[WaypointAction] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lat': self.lat,
            'lng': self.lng,
            'alt': self.alt,
            'order': self.order,
            'speed': self.speed,
            'action': self.action.value if self.action else None,
        }

@dataclass
class Mission:
    id: str
    drone_id: str
    status: MissionStatus
    waypoints: List[Waypoint]
    success: bool = False
    current_waypoint_index: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[MissionFailureReason] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def sorted_waypoints(self) -> List[Waypoint]:
        """Waypoints in traversal order (list position is not trusted)"""
        return sorted(self.waypoints, key=lambda wp: wp.order)

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            'id': self.id,
            'drone_id': self.drone_id,
            'status': self.status.value,
            'success': self.success,
            'waypoints': [wp.to_dict() for wp in self.waypoints],
            'current_waypoint_index': self.current_waypoint_index,
            'start_time': iso(self.start_time),
            'end_time': iso(self.end_time),
            'started_at': iso(self.started_at),
            'completed_at': iso(self.completed_at),
            'cancelled_at': iso(self.cancelled_at),
            'failed_at': iso(self.failed_at),
            'failure_reason': self.failure_reason.value if self.failure_reason else None,
            'created_at': iso(self.created_at),
            'updated_at': iso(self.updated_at),
        }

@dataclass
class MissionEvent:
    timestamp: datetime
    type: MissionEventType
    message: str
    waypoint_index: Optional[int] = None
    action: Optional[WaypointAction] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'type': self.type.value,
            'waypoint_index': self.waypoint_index,
            'action': self.action.value if self.action else None,
            'message': self.message,
        }

@dataclass
class ActionDelay:
    start_time: datetime
    action: WaypointAction
    duration: float  # seconds

# ============================================================================
# TELEMETRY & RESULTS
# ============================================================================

@dataclass
class Telemetry:
    drone_id: str
    timestamp: datetime
    position: Position
    battery_pct: float
    gps_quality: float
    speed: float
    altitude: float
    active_mission_id: Optional[str] = None
    active_mission_status: Optional[MissionStatus] = None
    # Set when the drone's mission was cleared during this tick
    mission_cleared: bool = False

    def to_dict(self) -> Dict[str, Any]:
        record = {
            'drone_id': self.drone_id,
            'timestamp': self.timestamp.isoformat(),
            'position': asdict(self.position),
            'battery_pct': self.battery_pct,
            'gps_quality': self.gps_quality,
            'speed': self.speed,
            'altitude': self.altitude,
        }
        if self.active_mission_id is not None:
            record['active_mission_id'] = self.active_mission_id
            record['active_mission_status'] = self.active_mission_status.value
        elif self.mission_cleared:
            record['active_mission_id'] = None
        return record

@dataclass
class OperationError:
    code: ErrorCode
    message: str
    details: Any = None

    def to_dict(self) -> Dict[str, Any]:
        error = {'code': self.code.value, 'message': self.message}
        if self.details is not None:
            error['details'] = self.details
        return error

@dataclass
class CommandResult:
    success: bool
    error: Optional[OperationError] = None
    new_state: Optional[DroneRuntimeState] = None

@dataclass
class OperationResult:
    """Outcome of an orchestrator call: data on success, a coded error otherwise"""
    success: bool
    data: Any = None
    error: Optional[OperationError] = None

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code: ErrorCode, message: str, details: Any = None) -> "OperationResult":
        return cls(success=False, error=OperationError(code, message, details))

# ============================================================================
# REQUEST VALIDATION MODELS
# ============================================================================

class WaypointDraft(BaseModel):
    """Waypoint as submitted by the mission planner"""
    lat: float = Field(..., ge=-90, le=90, description="Latitude")
    lng: float = Field(..., ge=-180, le=180, description="Longitude")
    alt: float = Field(..., ge=5, le=120, description="Altitude in meters (5-120)")
    speed: float = Field(10.0, ge=1, le=25, description="Ground speed in m/s (1-25)")
    action: WaypointAction = Field(WaypointAction.NONE, description="Action at the waypoint")
    order: int = Field(0, ge=0, description="Traversal order")

class MissionDraft(BaseModel):
    """New mission request"""
    drone_id: str = Field(..., min_length=1, description="Assigned drone ID")
    waypoints: List[WaypointDraft] = Field(..., min_length=5, description="At least 5 waypoints")

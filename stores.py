# Engine State Stores
# File: stores.py

"""
In-memory stores owned by the orchestrator:

- DroneRuntimeStore: canonical mutable state per drone (plus static profiles)
- MissionStore: mission records and the mission state machine
- MissionExecutionStore: waypoint action holds and a bounded event log per mission
- DroneLockRegistry: one re-entrant lock per drone id

Only the owning store mutates its maps. Readers get copies, never live records.
"""

import copy
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple
import logging

from events import EventPriority, EventRouter
from models import (
    ActionDelay,
    BaseAnchor,
    DroneBaseline,
    DroneProfile,
    DroneRuntimeState,
    DroneStatus,
    InvalidTransitionError,
    Mission,
    MissionEvent,
    MissionEventType,
    MissionFailureReason,
    MissionNotFoundError,
    MissionStatus,
    Position,
    WaypointAction,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# ============================================================================
# PER-DRONE LOCKS
# ============================================================================

class DroneLockRegistry:
    """Hands out one RLock per drone so commands and ticks never interleave"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def for_drone(self, drone_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(drone_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[drone_id] = lock
            return lock

# ============================================================================
# DRONE RUNTIME STORE
# ============================================================================

_RUNTIME_FIELDS = frozenset(f.name for f in fields(DroneRuntimeState))

class DroneRuntimeStore:
    """Single source of truth for drone runtime state"""

    def __init__(self, clock: Clock = datetime.now):
        self.clock = clock
        self._states: Dict[str, DroneRuntimeState] = {}
        self._profiles: Dict[str, DroneProfile] = {}
        self._lock = threading.RLock()

    def seed(self, baselines: Iterable[DroneBaseline]) -> int:
        """Create runtime entries for unknown drones; existing entries are kept"""
        created = 0
        with self._lock:
            for baseline in baselines:
                drone_id = baseline.profile.id
                self._profiles.setdefault(drone_id, copy.deepcopy(baseline.profile))
                if drone_id in self._states:
                    continue

                self._states[drone_id] = DroneRuntimeState(
                    status=baseline.status,
                    # Drones flying a mission at startup are already armed
                    armed=baseline.status == DroneStatus.IN_MISSION,
                    position=copy.deepcopy(baseline.position),
                    battery_pct=baseline.battery_pct,
                    base_anchor=BaseAnchor(baseline.position.lat, baseline.position.lng),
                    offline_since=baseline.updated_at if baseline.status == DroneStatus.OFFLINE else None,
                    updated_at=baseline.updated_at,
                )
                created += 1

        logger.info(f"Runtime store seeded: {created} new drones ({len(self._states)} total)")
        return created

    def get(self, drone_id: str) -> Optional[DroneRuntimeState]:
        with self._lock:
            state = self._states.get(drone_id)
            return copy.deepcopy(state) if state else None

    def exists(self, drone_id: str) -> bool:
        with self._lock:
            return drone_id in self._states

    def get_profile(self, drone_id: str) -> Optional[DroneProfile]:
        with self._lock:
            profile = self._profiles.get(drone_id)
            return copy.deepcopy(profile) if profile else None

    def list(self) -> Dict[str, DroneRuntimeState]:
        """Snapshot copy of every runtime state, keyed by drone id"""
        with self._lock:
            return copy.deepcopy(self._states)

    def list_profiles(self) -> List[DroneProfile]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._profiles.values()]

    def list_with_state(self) -> List[Tuple[DroneProfile, DroneRuntimeState]]:
        """(profile, runtime) pairs in seed order"""
        with self._lock:
            return [
                (copy.deepcopy(profile), copy.deepcopy(self._states[drone_id]))
                for drone_id, profile in self._profiles.items()
                if drone_id in self._states
            ]

    def command_view(self) -> Dict[str, Dict]:
        """Command-relevant subset of every drone's state"""
        with self._lock:
            return {
                drone_id: {
                    'status': state.status,
                    'armed': state.armed,
                    'returning': state.returning,
                    'target_altitude': state.target_altitude,
                    'active_mission_id': state.active_mission_id,
                }
                for drone_id, state in self._states.items()
            }

    def update(self, drone_id: str, **updates) -> None:
        """
        Merge partial fields into a drone's state.

        offline_since is managed here: set on entering offline, kept while
        offline, cleared on any other status. updated_at is always refreshed.
        Unknown drone ids are ignored.
        """
        unknown = set(updates) - _RUNTIME_FIELDS
        if unknown:
            raise ValueError(f"Unknown runtime fields: {sorted(unknown)}")

        with self._lock:
            current = self._states.get(drone_id)
            if current is None:
                return

            now = self.clock()
            new_status = updates.get('status') or current.status
            if new_status == DroneStatus.OFFLINE and current.status != DroneStatus.OFFLINE:
                offline_since = now
            elif new_status != DroneStatus.OFFLINE:
                offline_since = None
            else:
                offline_since = current.offline_since

            updates['offline_since'] = offline_since
            updates['updated_at'] = updates.get('updated_at') or now
            if 'position' in updates:
                updates['position'] = copy.deepcopy(updates['position'])

            self._states[drone_id] = replace(current, **updates)

    def replace(self, drone_id: str, state: DroneRuntimeState) -> bool:
        """Whole-record write; returns False for unknown drones"""
        with self._lock:
            if drone_id not in self._states:
                return False
            self._states[drone_id] = copy.deepcopy(state)
            return True

# ============================================================================
# MISSION EXECUTION STORE
# ============================================================================

ACTION_DELAYS = {
    WaypointAction.LOITER: 5,
    WaypointAction.TAKE_PHOTO: 1,
    WaypointAction.SCAN: 3,
    WaypointAction.DELIVER_PAYLOAD: 4,
    WaypointAction.NONE: 0,
}

def get_action_delay(action: Optional[WaypointAction]) -> float:
    """Hold duration in seconds for a waypoint action"""
    if action is None:
        return 0
    return ACTION_DELAYS.get(WaypointAction(action), 0)

@dataclass
class _ExecutionState:
    delays: Dict[int, ActionDelay]
    events: Deque[MissionEvent] = field(default_factory=deque)

class MissionExecutionStore:
    """Waypoint action holds and a ring-buffered event log, per mission"""

    def __init__(self, max_events: int = 50, clock: Clock = datetime.now):
        self.max_events = max_events
        self.clock = clock
        self._missions: Dict[str, _ExecutionState] = {}
        self._lock = threading.RLock()

    def _state_for(self, mission_id: str) -> _ExecutionState:
        state = self._missions.get(mission_id)
        if state is None:
            state = _ExecutionState(delays={}, events=deque(maxlen=self.max_events))
            self._missions[mission_id] = state
        return state

    def is_action_executing(self, mission_id: str, waypoint_index: int, now: datetime) -> bool:
        with self._lock:
            state = self._missions.get(mission_id)
            if not state:
                return False
            delay = state.delays.get(waypoint_index)
            if not delay:
                return False
            return now < delay.start_time + timedelta(seconds=delay.duration)

    def has_action_started(self, mission_id: str, waypoint_index: int) -> bool:
        with self._lock:
            state = self._missions.get(mission_id)
            return bool(state and waypoint_index in state.delays)

    def start_action(self, mission_id: str, waypoint_index: int,
                     action: WaypointAction, now: datetime) -> None:
        action = WaypointAction(action)
        with self._lock:
            state = self._state_for(mission_id)
            state.delays[waypoint_index] = ActionDelay(
                start_time=now,
                action=action,
                duration=get_action_delay(action),
            )
            if action != WaypointAction.NONE:
                state.events.append(MissionEvent(
                    timestamp=now,
                    type=MissionEventType.ACTION_EXECUTED,
                    waypoint_index=waypoint_index,
                    action=action,
                    message=f"Executing {action.value} at waypoint {waypoint_index + 1}",
                ))

    def add_event(self, mission_id: str, event_type: MissionEventType, message: str,
                  waypoint_index: Optional[int] = None,
                  action: Optional[WaypointAction] = None,
                  timestamp: Optional[datetime] = None) -> None:
        with self._lock:
            self._state_for(mission_id).events.append(MissionEvent(
                timestamp=timestamp or self.clock(),
                type=MissionEventType(event_type),
                waypoint_index=waypoint_index,
                action=action,
                message=message,
            ))

    def get_events(self, mission_id: str, limit: int = 5) -> List[MissionEvent]:
        """Most recent events first"""
        with self._lock:
            state = self._missions.get(mission_id)
            if not state or limit <= 0:
                return []
            return [copy.copy(e) for e in list(state.events)[-limit:]][::-1]

    def clear(self, mission_id: str) -> None:
        with self._lock:
            self._missions.pop(mission_id, None)

# ============================================================================
# MISSION STORE
# ============================================================================

class MissionStore:
    """
    Mission records and their state machine.

        pending --start--> in-progress --advance(last)/complete--> completed|failed
        pending|in-progress --cancel--> cancelled

    start() and cancel() raise on invalid transitions; advance_waypoint() and
    complete() return None when the mission is not in progress.
    """

    def __init__(self, execution_store: MissionExecutionStore,
                 event_router: Optional[EventRouter] = None,
                 clock: Clock = datetime.now):
        self.execution_store = execution_store
        self.event_router = event_router
        self.clock = clock
        self._missions: Dict[str, Mission] = {}
        self._lock = threading.RLock()

    # -- queries -------------------------------------------------------------

    def add(self, mission: Mission) -> None:
        with self._lock:
            self._missions[mission.id] = copy.deepcopy(mission)

    def get_by_id(self, mission_id: str) -> Optional[Mission]:
        with self._lock:
            mission = self._missions.get(mission_id)
            return copy.deepcopy(mission) if mission else None

    def list(self) -> List[Mission]:
        with self._lock:
            return copy.deepcopy(list(self._missions.values()))

    def get_active_for_drone(self, drone_id: str) -> Optional[Mission]:
        with self._lock:
            mission = self._find_active(drone_id)
            return copy.deepcopy(mission) if mission else None

    def replace_all(self, missions: Iterable[Mission]) -> None:
        """Swap the whole store (maintenance and tests)"""
        with self._lock:
            self._missions = {m.id: copy.deepcopy(m) for m in missions}

    def _find_active(self, drone_id: str) -> Optional[Mission]:
        for mission in self._missions.values():
            if mission.drone_id == drone_id and mission.status == MissionStatus.IN_PROGRESS:
                return mission
        return None

    # -- transitions ---------------------------------------------------------

    def start(self, mission_id: str) -> Mission:
        with self._lock:
            mission = self._missions.get(mission_id)
            if mission is None:
                raise MissionNotFoundError(mission_id)

            if mission.status != MissionStatus.PENDING:
                raise InvalidTransitionError(
                    mission_id,
                    f"Mission {mission_id} cannot be started: status is {mission.status.value}"
                )

            existing = self._find_active(mission.drone_id)
            if existing:
                raise InvalidTransitionError(
                    mission_id,
                    f"Drone {mission.drone_id} already has an active mission: {existing.id}"
                )

            now = self.clock()
            mission.status = MissionStatus.IN_PROGRESS
            mission.started_at = now
            mission.start_time = now
            mission.current_waypoint_index = 0
            mission.updated_at = now
            started = copy.deepcopy(mission)

        self._record(mission_id, MissionEventType.MISSION_STARTED, "Mission started")
        self._publish('mission.started', started)
        logger.info(f"Mission {mission_id} started for drone {started.drone_id}")
        return started

    def advance_waypoint(self, mission_id: str) -> Optional[Mission]:
        with self._lock:
            mission = self._missions.get(mission_id)
            if mission is None or mission.status != MissionStatus.IN_PROGRESS:
                return None

            next_index = (mission.current_waypoint_index or 0) + 1
            if next_index >= len(mission.waypoints):
                # End of route
                return self.complete(mission_id, True)

            mission.current_waypoint_index = next_index
            mission.updated_at = self.clock()
            logger.debug(f"Mission {mission_id} advanced to waypoint {next_index}")
            return copy.deepcopy(mission)

    def complete(self, mission_id: str, success: bool,
                 failure_reason: Optional[MissionFailureReason] = None) -> Optional[Mission]:
        with self._lock:
            mission = self._missions.get(mission_id)
            if mission is None or mission.status != MissionStatus.IN_PROGRESS:
                return None

            now = self.clock()
            mission.status = MissionStatus.COMPLETED if success else MissionStatus.FAILED
            mission.success = success
            mission.completed_at = now
            mission.end_time = now
            mission.current_waypoint_index = None
            mission.updated_at = now
            if not success:
                mission.failed_at = now
                mission.failure_reason = failure_reason
            finished = copy.deepcopy(mission)

        if success:
            self._record(mission_id, MissionEventType.MISSION_COMPLETED,
                         "Mission completed successfully")
            self._publish('mission.completed', finished)
            logger.info(f"Mission {mission_id} completed")
        else:
            reason = failure_reason.value if failure_reason else "Unknown reason"
            self._record(mission_id, MissionEventType.MISSION_FAILED, f"Mission failed: {reason}")
            self._publish('mission.failed', finished, priority=EventPriority.HIGH)
            logger.warning(f"Mission {mission_id} failed: {reason}")

        self.execution_store.clear(mission_id)
        return finished

    def cancel(self, mission_id: str,
               reason: MissionFailureReason = MissionFailureReason.CANCELLED_BY_USER) -> Optional[Mission]:
        with self._lock:
            mission = self._missions.get(mission_id)
            if mission is None:
                return None

            if mission.status not in (MissionStatus.PENDING, MissionStatus.IN_PROGRESS):
                raise InvalidTransitionError(
                    mission_id,
                    f"Mission {mission_id} cannot be cancelled: status is {mission.status.value}"
                )

            now = self.clock()
            mission.status = MissionStatus.CANCELLED
            mission.cancelled_at = now
            mission.end_time = now
            mission.success = False
            mission.current_waypoint_index = None
            mission.failure_reason = reason
            mission.updated_at = now
            cancelled = copy.deepcopy(mission)

        self._record(mission_id, MissionEventType.MISSION_CANCELLED,
                     f"Mission cancelled: {reason.value}")
        self._publish('mission.cancelled', cancelled)
        self.execution_store.clear(mission_id)
        logger.info(f"Mission {mission_id} cancelled ({reason.value})")
        return cancelled

    # -- side channels -------------------------------------------------------

    def _record(self, mission_id: str, event_type: MissionEventType, message: str):
        try:
            self.execution_store.add_event(mission_id, event_type, message)
        except Exception as e:
            logger.error(f"Failed to record {event_type.value} for mission {mission_id}: {e}")

    def _publish(self, event_type: str, mission: Mission,
                 priority: EventPriority = EventPriority.MEDIUM):
        if not self.event_router:
            return
        self.event_router.emit(
            event_type,
            source='mission_store',
            priority=priority,
            mission_id=mission.id,
            drone_id=mission.drone_id,
            status=mission.status.value,
            failure_reason=mission.failure_reason.value if mission.failure_reason else None,
        )

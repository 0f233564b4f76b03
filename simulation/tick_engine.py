# Telemetry / Simulation Tick Engine
# File: simulation/tick_engine.py

"""
Every telemetry poll advances the simulation by one fixed step (dt seconds of
simulated flight, independent of wall-clock time between polls).

Per drone, under that drone's lock, in this order:

1. resolve status / returning / target altitude / active mission
2. mission failure checks (low battery, low GPS, offline timeout)
3. motion: waypoint following > patrol (with RTL override) > stationary
4. battery drain or charge
5. a single writeback to the runtime store
6. one telemetry record

The engine never raises for domain conditions; failures become mission
state transitions with a reason attached.
"""

import math
import random
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Tuple
import logging

from config import EngineConfig
from models import (
    DroneProfile,
    DroneRuntimeState,
    DroneStatus,
    Mission,
    MissionEventType,
    MissionFailureReason,
    MissionStatus,
    Position,
    Telemetry,
    Waypoint,
    WaypointAction,
)
from stores import DroneLockRegistry, DroneRuntimeStore, MissionExecutionStore, MissionStore
from simulation.faults import FaultInjector
from simulation.geo import haversine_distance, initial_bearing, ramp, step_towards
from simulation.motion import MotionProfile, MotionProfileGenerator

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (DroneStatus.ONLINE, DroneStatus.IN_MISSION)


@dataclass
class _DroneTick:
    """Working values for one drone during one tick"""
    drone_id: str
    lat: float
    lng: float
    alt: float
    speed: float
    status: DroneStatus
    mission: Optional[Mission]
    active_mission_id: Optional[str]
    returning: bool
    target_altitude: Optional[float]


class TelemetryEngine:
    """Advances drone state on every poll and returns telemetry snapshots"""

    def __init__(self, runtime_store: DroneRuntimeStore,
                 mission_store: MissionStore,
                 execution_store: MissionExecutionStore,
                 motion: MotionProfileGenerator,
                 locks: DroneLockRegistry,
                 config: Optional[EngineConfig] = None,
                 faults: Optional[FaultInjector] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.runtime_store = runtime_store
        self.mission_store = mission_store
        self.execution_store = execution_store
        self.motion = motion
        self.locks = locks
        self.config = config or EngineConfig()
        self.faults = faults or FaultInjector.disabled()
        self.rng = rng or random.Random()
        self.clock = clock

        self._trails: Dict[str, Deque[Tuple[float, float, datetime]]] = defaultdict(
            lambda: deque(maxlen=self.config.trail_length)
        )
        self._trail_lock = threading.Lock()

    # ------------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------------

    def tick(self, drone_id: Optional[str] = None) -> List[Telemetry]:
        """Advance one drone (or the visible fleet) by one step"""
        now = self.clock()
        telemetry = []
        for target_id in self._resolve_targets(drone_id):
            record = self._tick_drone(target_id, now)
            if record is not None:
                telemetry.append(record)
        return telemetry

    def get_flight_trail(self, drone_id: str) -> List[Dict[str, float]]:
        with self._trail_lock:
            return [{'lat': lat, 'lng': lng} for lat, lng, _ in self._trails.get(drone_id, ())]

    # ------------------------------------------------------------------------
    # Target resolution
    # ------------------------------------------------------------------------

    def _resolve_targets(self, drone_id: Optional[str]) -> List[str]:
        view = self.runtime_store.command_view()

        if drone_id is not None:
            return [drone_id] if drone_id in view else []

        active = [d for d, entry in view.items() if entry['status'] in ACTIVE_STATUSES]
        others = [d for d, entry in view.items() if entry['status'] not in ACTIVE_STATUSES]
        needed = max(0, self.config.min_fleet_visible - len(active))

        return active + others[:needed]

    # ------------------------------------------------------------------------
    # Per-drone pipeline
    # ------------------------------------------------------------------------

    def _tick_drone(self, drone_id: str, now: datetime) -> Optional[Telemetry]:
        with self.locks.for_drone(drone_id):
            runtime = self.runtime_store.get(drone_id)
            if runtime is None:
                return None
            profile = self.runtime_store.get_profile(drone_id)

            initial_mission_id = runtime.active_mission_id
            mission, active_mission_id = self._resolve_mission(drone_id, runtime)

            t = _DroneTick(
                drone_id=drone_id,
                lat=runtime.position.lat,
                lng=runtime.position.lng,
                alt=runtime.position.alt,
                speed=0.0,
                status=runtime.status,
                mission=mission,
                active_mission_id=active_mission_id,
                returning=runtime.returning,
                target_altitude=runtime.target_altitude,
            )

            if t.mission is not None:
                self._check_failures(t, runtime, profile, now)

            if t.mission is not None and t.mission.waypoints and not t.returning:
                self._follow_waypoints(t, now)
            elif t.status in ACTIVE_STATUSES and not self._offline_blip(t.status):
                self._patrol(t, runtime, now)
            else:
                # Stationary: hold the last known position on the ground
                t.speed = 0.0
                t.alt = 0.0

            battery_pct = self._next_battery(runtime.battery_pct, t.status)

            self.runtime_store.update(
                drone_id,
                position=Position(t.lat, t.lng, t.alt, t.speed),
                battery_pct=battery_pct,
                status=t.status,
                active_mission_id=t.active_mission_id,
                returning=t.returning,
                target_altitude=t.target_altitude,
                updated_at=now,
            )
            self._append_trail(drone_id, t.lat, t.lng, now)

            return self._telemetry(t, profile, battery_pct, initial_mission_id, now)

    def _resolve_mission(self, drone_id: str,
                         runtime: DroneRuntimeState) -> Tuple[Optional[Mission], Optional[str]]:
        active_mission_id = runtime.active_mission_id

        if active_mission_id:
            mission = self.mission_store.get_active_for_drone(drone_id)
            if mission is None:
                logger.info(f"Drone {drone_id}: mission {active_mission_id} no longer active, unlinking")
                return None, None
            if mission.id != active_mission_id:
                logger.warning(
                    f"Drone {drone_id}: linked to {active_mission_id} but flying {mission.id}, relinking"
                )
            return mission, mission.id

        if runtime.status == DroneStatus.IN_MISSION:
            mission = self.mission_store.get_active_for_drone(drone_id)
            if mission is not None:
                logger.info(f"Drone {drone_id}: relinked to in-progress mission {mission.id}")
                self.runtime_store.update(drone_id, active_mission_id=mission.id)
                return mission, mission.id

        return None, None

    def _check_failures(self, t: _DroneTick, runtime: DroneRuntimeState,
                        profile: Optional[DroneProfile], now: datetime):
        """Fail the active mission if a failure condition holds (first match wins)"""
        gps_quality = profile.health.gps_quality if profile else 100.0
        reason = None

        if runtime.battery_pct < self.config.low_battery_pct:
            reason = MissionFailureReason.LOW_BATTERY
        elif gps_quality < self.config.low_gps_pct:
            reason = MissionFailureReason.LOW_GPS
        elif runtime.offline_since and runtime.status == DroneStatus.OFFLINE:
            offline_for = (now - runtime.offline_since).total_seconds()
            if offline_for > self.config.offline_timeout_s:
                reason = MissionFailureReason.OFFLINE_TIMEOUT

        if reason is None:
            return

        logger.warning(f"Drone {t.drone_id}: failing mission {t.mission.id} ({reason.value})")
        self.mission_store.complete(t.mission.id, False, reason)
        t.mission = None
        t.active_mission_id = None
        t.status = DroneStatus.OFFLINE if reason == MissionFailureReason.OFFLINE_TIMEOUT else DroneStatus.ONLINE

    def _offline_blip(self, status: DroneStatus) -> bool:
        return status == DroneStatus.ONLINE and self.faults.offline_blip()

    def _next_battery(self, battery_pct: float, status: DroneStatus) -> float:
        if status == DroneStatus.IN_MISSION:
            delta = -self.config.drain_in_mission
        elif status == DroneStatus.ONLINE:
            delta = -self.config.drain_online
        elif status == DroneStatus.CHARGING:
            delta = self.config.charge_rate
        else:
            delta = 0.0
        return max(0.0, min(100.0, battery_pct + delta))

    # ------------------------------------------------------------------------
    # Waypoint following
    # ------------------------------------------------------------------------

    def _follow_waypoints(self, t: _DroneTick, now: datetime):
        mission = t.mission
        waypoints = mission.sorted_waypoints()
        index = mission.current_waypoint_index or 0
        if index >= len(waypoints):
            t.speed = 0.0
            return

        waypoint = waypoints[index]
        action = WaypointAction(waypoint.action) if waypoint.action else WaypointAction.NONE
        distance = haversine_distance(t.lat, t.lng, waypoint.lat, waypoint.lng)

        if distance >= self.config.arrival_threshold_m:
            self._step_to_waypoint(t, waypoint)
            return

        if action != WaypointAction.NONE and not self.execution_store.has_action_started(mission.id, index):
            self._log_event(mission.id, MissionEventType.WAYPOINT_REACHED,
                            f"Reached waypoint {index + 1}", index, now)
            self.execution_store.start_action(mission.id, index, action, now)
            self._hold(t, waypoint)
            return

        if action != WaypointAction.NONE and self.execution_store.is_action_executing(mission.id, index, now):
            self._hold(t, waypoint)
            return

        self._log_event(mission.id, MissionEventType.WAYPOINT_REACHED,
                        f"Reached waypoint {index + 1}", index, now)
        advanced = self.mission_store.advance_waypoint(mission.id)

        if advanced is None:
            # Mission left in-progress outside this tick
            t.mission = None
            t.active_mission_id = None
            t.speed = 0.0
            return

        if advanced.status != MissionStatus.IN_PROGRESS:
            final = waypoints[-1]
            t.lat, t.lng = final.lat, final.lng
            t.speed = 0.0
            t.alt = 0.0
            t.mission = None
            t.active_mission_id = None
            t.status = DroneStatus.ONLINE
            return

        t.mission = advanced
        next_waypoint = advanced.sorted_waypoints()[advanced.current_waypoint_index]
        self._step_to_waypoint(t, next_waypoint)

    def _step_to_waypoint(self, t: _DroneTick, waypoint: Waypoint):
        dt = self.config.dt
        bearing = initial_bearing(t.lat, t.lng, waypoint.lat, waypoint.lng)
        speed = waypoint.speed or self.config.default_mission_speed

        t.lat, t.lng = step_towards(t.lat, t.lng, bearing, speed * dt)
        t.speed = speed
        t.alt = ramp(t.alt, waypoint.alt, self.config.vertical_rate, dt, self.config.altitude_snap_m)

    @staticmethod
    def _hold(t: _DroneTick, waypoint: Waypoint):
        t.speed = 0.0
        t.alt = waypoint.alt

    def _log_event(self, mission_id: str, event_type: MissionEventType, message: str,
                   waypoint_index: int, now: datetime):
        try:
            self.execution_store.add_event(mission_id, event_type, message,
                                           waypoint_index=waypoint_index, timestamp=now)
        except Exception as e:
            logger.error(f"Failed to log {event_type.value} for mission {mission_id}: {e}")

    # ------------------------------------------------------------------------
    # Patrol & return to launch
    # ------------------------------------------------------------------------

    def _patrol(self, t: _DroneTick, runtime: DroneRuntimeState, now: datetime):
        dt = self.config.dt
        profile = self.motion.get_profile(t.drone_id, runtime.position.lat, runtime.position.lng)

        if t.returning:
            self._return_to_launch(t, runtime, now)
            return

        state = self.motion.get_motion_state(t.drone_id)
        heading = state.heading if state else profile.heading

        seconds = now.timestamp()
        wobble = math.sin(seconds * 0.1 + profile.phase_offset) * profile.wobble_amplitude
        heading = (heading + profile.turn_rate * dt * (1 + wobble * 10)) % 360

        t.lat, t.lng = step_towards(t.lat, t.lng, math.radians(heading),
                                    profile.speed * dt, reference_lat=profile.base_lat)
        wobble_lat, wobble_lng = self._wobble_offset(profile, seconds, dt)
        t.lat += wobble_lat
        t.lng += wobble_lng
        t.speed = profile.speed

        self._patrol_altitude(t, profile, seconds)

        if t.target_altitude is None and t.alt == 0.0 and runtime.target_altitude == 0.0:
            # Touched down after LAND
            self.motion.reset_motion_state(t.drone_id)
        else:
            self.motion.update_motion_state(t.drone_id, heading, now)

    @staticmethod
    def _wobble_offset(profile: MotionProfile, seconds: float, dt: float) -> Tuple[float, float]:
        """Change in the periodic wobble over one step, keeping it bounded by its amplitude"""
        phase_now = seconds * 0.15 + profile.phase_offset
        phase_prev = (seconds - dt) * 0.15 + profile.phase_offset
        amplitude = profile.wobble_amplitude
        return (
            (math.cos(phase_now) - math.cos(phase_prev)) * amplitude,
            (math.sin(phase_now) - math.sin(phase_prev)) * amplitude,
        )

    def _patrol_altitude(self, t: _DroneTick, profile: MotionProfile, seconds: float):
        if t.target_altitude is not None:
            # Commanded climb or descent
            t.alt = ramp(t.alt, t.target_altitude, self.config.vertical_rate,
                         self.config.dt, self.config.altitude_snap_m)
            if t.alt == t.target_altitude:
                t.target_altitude = None
        elif t.status == DroneStatus.IN_MISSION:
            cruise = 50 + profile.rng.random() * 50
            t.alt = cruise + math.sin(seconds * 0.2) * 10
        else:
            t.alt = 20 + math.sin(seconds * 0.1) * 5

    def _return_to_launch(self, t: _DroneTick, runtime: DroneRuntimeState, now: datetime):
        anchor = runtime.base_anchor
        distance = haversine_distance(t.lat, t.lng, anchor.lat, anchor.lng)

        if distance > self.config.rtl_arrival_m:
            bearing = initial_bearing(t.lat, t.lng, anchor.lat, anchor.lng)
            t.lat, t.lng = step_towards(t.lat, t.lng, bearing, self.config.rtl_speed * self.config.dt)
            t.speed = self.config.rtl_speed
            # Altitude held during the return leg
            t.alt = runtime.position.alt
            self.motion.update_motion_state(t.drone_id, math.degrees(bearing) % 360, now)
            return

        # At base: auto land
        t.lat, t.lng = anchor.lat, anchor.lng
        t.speed = 0.0
        t.alt = 0.0
        t.status = DroneStatus.ONLINE
        t.returning = False
        t.active_mission_id = None
        t.target_altitude = None

        self.runtime_store.update(
            t.drone_id,
            status=DroneStatus.ONLINE,
            returning=False,
            active_mission_id=None,
            target_altitude=None,
        )
        self.motion.reset_motion_state(t.drone_id)
        logger.info(f"Drone {t.drone_id} returned to launch and landed")

    # ------------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------------

    def _append_trail(self, drone_id: str, lat: float, lng: float, now: datetime):
        with self._trail_lock:
            self._trails[drone_id].append((lat, lng, now))

    def _telemetry(self, t: _DroneTick, profile: Optional[DroneProfile], battery_pct: float,
                   initial_mission_id: Optional[str], now: datetime) -> Telemetry:
        base_gps = profile.health.gps_quality if profile else 100.0
        gps_quality = max(0.0, min(100.0, base_gps + (self.rng.random() - 0.5) * 2))

        record = Telemetry(
            drone_id=t.drone_id,
            timestamp=now,
            position=Position(t.lat, t.lng, t.alt, t.speed),
            battery_pct=battery_pct,
            gps_quality=gps_quality,
            speed=max(0.0, t.speed),
            altitude=max(0.0, t.alt),
        )

        if t.mission is not None:
            record.active_mission_id = t.mission.id
            record.active_mission_status = t.mission.status
        elif initial_mission_id is not None:
            record.mission_cleared = True

        return record

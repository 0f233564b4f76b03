# Baseline Fleet Data
# File: fleet_data.py

"""
Generate the baseline fleet the engine is seeded with: 25 drones spread
south-west from downtown San Francisco and a history of 55 missions.

Every drone that starts in-mission gets exactly one in-progress mission with a
short, flyable route; the remaining missions are historical (completed,
failed, cancelled) or pending.
"""

import random
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple
import logging

from models import (
    DroneBaseline,
    DroneHealth,
    DroneProfile,
    DroneStatus,
    Mission,
    MissionFailureReason,
    MissionStatus,
    Position,
    Waypoint,
)

logger = logging.getLogger(__name__)

# ============================================================================
# BASELINE CONFIGURATION
# ============================================================================

BASE_LOCATION = {'lat': 37.7749, 'lng': -122.4194}

# Spacing between consecutive drones on the baseline diagonal (degrees)
DRONE_SPACING = 0.01

DRONE_NAMES = [
    'Alpha', 'Beta', 'Gamma', 'Delta', 'Echo',
    'Foxtrot', 'Golf', 'Hotel', 'India', 'Juliet',
    'Kilo', 'Lima', 'Mike', 'November', 'Oscar',
    'Papa', 'Quebec', 'Romeo', 'Sierra', 'Tango',
    'Uniform', 'Victor', 'Whiskey', 'Xray', 'Yankee'
]

# Fleet status rotation: online, in-mission, charging, online, offline
STATUS_CYCLE = [
    DroneStatus.ONLINE,
    DroneStatus.IN_MISSION,
    DroneStatus.CHARGING,
    DroneStatus.ONLINE,
    DroneStatus.OFFLINE,
]

BATTERY_RANGES = {
    DroneStatus.ONLINE: (75, 97),
    DroneStatus.IN_MISSION: (50, 70),
    DroneStatus.CHARGING: (30, 50),
    DroneStatus.OFFLINE: (5, 15),
}

# Historical mission outcomes (in-progress missions are created separately)
MISSION_STATUS_WEIGHTS = [
    (MissionStatus.COMPLETED, 0.55),
    (MissionStatus.FAILED, 0.2),
    (MissionStatus.PENDING, 0.2),
    (MissionStatus.CANCELLED, 0.05),
]

HISTORY_FAILURE_REASONS = [
    MissionFailureReason.LOW_BATTERY,
    MissionFailureReason.LOW_GPS,
    MissionFailureReason.OFFLINE_TIMEOUT,
]

DRONE_COUNT = 25
MISSION_COUNT = 55

# ============================================================================
# FLEET DATA GENERATOR
# ============================================================================

class FleetDataGenerator:
    """Generate the baseline drones and missions"""

    def __init__(self, rng: Optional[random.Random] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.rng = rng or random.Random()
        self.clock = clock

    def generate_all(self, num_drones: int = DRONE_COUNT,
                     num_missions: int = MISSION_COUNT) -> Tuple[List[DroneBaseline], List[Mission]]:
        drones = self.generate_drones(num_drones)
        missions = self.generate_missions(drones, num_missions)

        logger.info(f"Baseline generated: {len(drones)} drones, {len(missions)} missions")
        return drones, missions

    def generate_drones(self, count: int = DRONE_COUNT) -> List[DroneBaseline]:
        now = self.clock()
        drones = []

        for i in range(count):
            status = STATUS_CYCLE[i % len(STATUS_CYCLE)]
            name = f"{DRONE_NAMES[i % len(DRONE_NAMES)]}-{i + 1:02d}"
            low, high = BATTERY_RANGES[status]

            airborne = status == DroneStatus.IN_MISSION or (status == DroneStatus.ONLINE and i % 2 == 0)
            position = Position(
                lat=BASE_LOCATION['lat'] - i * DRONE_SPACING,
                lng=BASE_LOCATION['lng'] - i * DRONE_SPACING,
                alt=round(self.rng.uniform(80, 120)) if airborne else 0.0,
                speed=round(self.rng.uniform(15, 23), 1) if airborne else 0.0,
            )

            if status == DroneStatus.OFFLINE:
                # Dead link: no signal, no GPS fix
                health = DroneHealth(
                    signal_strength=0,
                    gps_quality=0,
                    motor_health=self.rng.randint(70, 76),
                    overall=self.rng.randint(22, 26),
                )
                updated_at = now - timedelta(hours=self.rng.choice([1, 1.5, 2]))
            else:
                health = DroneHealth(
                    signal_strength=self.rng.randint(85, 100),
                    gps_quality=self.rng.randint(88, 100),
                    motor_health=self.rng.randint(82, 92),
                    overall=self.rng.randint(85, 95),
                )
                updated_at = now
                if status == DroneStatus.CHARGING:
                    updated_at = now - timedelta(minutes=self.rng.choice([5, 10, 15, 20]))

            profile = DroneProfile(
                id=self._drone_id(i),
                name=name,
                flight_hours=round(self.rng.uniform(120, 430), 1),
                last_mission=None if i % 5 == 3 and i % 2 == 0 else self._uuid(),
                health=health,
            )

            drones.append(DroneBaseline(
                profile=profile,
                status=status,
                battery_pct=float(self.rng.randint(low, high)),
                position=position,
                updated_at=updated_at,
            ))

        return drones

    def generate_missions(self, drones: List[DroneBaseline],
                          count: int = MISSION_COUNT) -> List[Mission]:
        missions = []

        # One in-progress mission for every drone already flying
        flying = [d for d in drones if d.status == DroneStatus.IN_MISSION]
        for drone in flying:
            missions.append(self._active_mission(drone))

        busy = {d.profile.id for d in flying}
        available = [d for d in drones if d.profile.id not in busy] or drones

        for _ in range(max(0, count - len(missions))):
            drone = self.rng.choice(available)
            missions.append(self._historical_mission(drone))

        return missions

    # ------------------------------------------------------------------------
    # Mission builders
    # ------------------------------------------------------------------------

    def _active_mission(self, drone: DroneBaseline) -> Mission:
        now = self.clock()
        created_at = now - timedelta(hours=self.rng.random() * 2)
        started_at = created_at + timedelta(minutes=self.rng.random() * 5)

        # Short legs (~100-200 m) so the route is flown within minutes
        waypoints = []
        lat, lng = drone.position.lat, drone.position.lng
        for order in range(self.rng.randint(5, 8)):
            lat += (self.rng.random() - 0.5) * 0.002
            lng += (self.rng.random() - 0.5) * 0.002
            waypoints.append(Waypoint(
                lat=lat,
                lng=lng,
                alt=round(50 + self.rng.random() * 70, 1),
                order=order,
            ))

        return Mission(
            id=self._uuid(),
            drone_id=drone.profile.id,
            status=MissionStatus.IN_PROGRESS,
            waypoints=waypoints,
            current_waypoint_index=self.rng.randrange(min(3, len(waypoints))),
            start_time=started_at,
            started_at=started_at,
            created_at=created_at,
            updated_at=started_at,
        )

    def _historical_mission(self, drone: DroneBaseline) -> Mission:
        now = self.clock()
        status = self._pick_status()

        # Squared to favour recent missions
        days_ago = (1 - self.rng.random() ** 2) * 30
        created_at = now - timedelta(days=days_ago)

        start_time = None
        if status != MissionStatus.PENDING:
            start_time = created_at + timedelta(hours=self.rng.random() * 48)

        end_time = None
        if status in (MissionStatus.COMPLETED, MissionStatus.FAILED):
            end_time = (start_time or created_at) + timedelta(minutes=15 + self.rng.random() * 75)
        elif status == MissionStatus.CANCELLED:
            end_time = start_time

        waypoints = [
            Waypoint(
                lat=drone.position.lat + (self.rng.random() - 0.5) * 0.1,
                lng=drone.position.lng + (self.rng.random() - 0.5) * 0.1,
                alt=round(50 + self.rng.random() * 70, 1),
                order=order,
            )
            for order in range(self.rng.randint(3, 8))
        ]

        mission = Mission(
            id=self._uuid(),
            drone_id=drone.profile.id,
            status=status,
            waypoints=waypoints,
            success=status == MissionStatus.COMPLETED and self.rng.random() > 0.1,
            start_time=start_time,
            started_at=start_time,
            end_time=end_time,
            created_at=created_at,
            updated_at=end_time or start_time or created_at,
        )

        if status == MissionStatus.COMPLETED:
            mission.completed_at = end_time
        elif status == MissionStatus.FAILED:
            mission.completed_at = end_time
            mission.failed_at = end_time
            mission.failure_reason = self.rng.choice(HISTORY_FAILURE_REASONS)
        elif status == MissionStatus.CANCELLED:
            mission.cancelled_at = end_time
            mission.failure_reason = MissionFailureReason.CANCELLED_BY_USER

        return mission

    def _pick_status(self) -> MissionStatus:
        roll = self.rng.random()
        cumulative = 0.0
        for status, weight in MISSION_STATUS_WEIGHTS:
            cumulative += weight
            if roll <= cumulative:
                return status
        return MissionStatus.PENDING

    # ------------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------------

    @staticmethod
    def _drone_id(index: int) -> str:
        return f"550e8400-e29b-41d4-a716-{446655440000 + index:012d}"

    def _uuid(self) -> str:
        return str(uuid.UUID(int=self.rng.getrandbits(128), version=4))


def generate_baseline(seed: Optional[int] = None,
                      clock: Callable[[], datetime] = datetime.now) -> Tuple[List[DroneBaseline], List[Mission]]:
    """Baseline drones and missions; a seed makes the data reproducible"""
    return FleetDataGenerator(random.Random(seed), clock).generate_all()

import random
from datetime import datetime, timedelta

import pytest

from config import EngineConfig
from main import FleetOrchestrator
from models import (
    DroneBaseline,
    DroneHealth,
    DroneProfile,
    DroneStatus,
    Mission,
    MissionStatus,
    Position,
    Waypoint,
    WaypointAction,
)
from simulation.faults import FaultInjector
from simulation.geo import offset_position
from simulation.motion import MotionProfileGenerator
from stores import DroneLockRegistry, DroneRuntimeStore, MissionExecutionStore, MissionStore

START = datetime(2024, 6, 1, 12, 0, 0)


class FakeClock:
    """Manually advanced time source"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


def make_drone(drone_id, status=DroneStatus.ONLINE, battery=80.0, lat=37.7749, lng=-122.4194,
               alt=0.0, gps=95.0, updated_at=START):
    return DroneBaseline(
        profile=DroneProfile(id=drone_id, name=drone_id.upper(),
                             health=DroneHealth(gps_quality=gps)),
        status=status,
        battery_pct=battery,
        position=Position(lat, lng, alt, 0.0),
        updated_at=updated_at,
    )


def make_route(lat, lng, count=5, spacing_m=200.0, alt=50.0, actions=None, speed=None):
    """Waypoints heading north from (lat, lng), `spacing_m` apart, first one at the origin"""
    waypoints = []
    for i in range(count):
        wp_lat, wp_lng = offset_position(lat, lng, i * spacing_m, 0.0)
        action = actions[i] if actions else None
        waypoints.append(Waypoint(lat=wp_lat, lng=wp_lng, alt=alt, order=i,
                                  speed=speed, action=action))
    return waypoints


def make_mission(mission_id, drone_id, waypoints, status=MissionStatus.PENDING):
    return Mission(id=mission_id, drone_id=drone_id, status=status, waypoints=waypoints,
                   created_at=START, updated_at=START)


def draft_for(drone_id, count=5, alt=50.0, speed=10.0):
    return {
        'drone_id': drone_id,
        'waypoints': [
            {'lat': 37.7749 + i * 0.001, 'lng': -122.4194, 'alt': alt, 'speed': speed,
             'action': WaypointAction.NONE.value, 'order': i}
            for i in range(count)
        ],
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return EngineConfig(offline_blip_probability=0.0, command_failure_probability=0.0,
                        random_seed=7)


@pytest.fixture
def execution_store(clock):
    return MissionExecutionStore(max_events=50, clock=clock)


@pytest.fixture
def mission_store(execution_store, clock):
    return MissionStore(execution_store, clock=clock)


@pytest.fixture
def runtime_store(clock):
    return DroneRuntimeStore(clock=clock)


@pytest.fixture
def locks():
    return DroneLockRegistry()


@pytest.fixture
def motion():
    return MotionProfileGenerator()


@pytest.fixture
def fleet():
    """Small baseline: one drone per status"""
    return [
        make_drone('d-online', DroneStatus.ONLINE, battery=90),
        make_drone('d-mission', DroneStatus.IN_MISSION, battery=60, lat=37.70, lng=-122.40, alt=80),
        make_drone('d-charging', DroneStatus.CHARGING, battery=40, lat=37.71, lng=-122.41),
        make_drone('d-offline', DroneStatus.OFFLINE, battery=10, lat=37.72, lng=-122.42, gps=0),
    ]


@pytest.fixture
def orchestrator(config, clock, fleet):
    orch = FleetOrchestrator(
        config,
        baseline=(fleet, []),
        faults=FaultInjector.disabled(),
        rng=random.Random(3),
        clock=clock,
    )
    orch.start()
    yield orch
    orch.stop()

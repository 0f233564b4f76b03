import random

import pytest

from commands import CommandReconciler
from conftest import make_mission, make_route
from events import EventRouter
from models import DroneCommand, DroneStatus, ErrorCode, MissionFailureReason, MissionStatus


@pytest.fixture
def router():
    return EventRouter()


@pytest.fixture
def reconciler(runtime_store, mission_store, locks, router, clock, fleet):
    runtime_store.seed(fleet)
    return CommandReconciler(runtime_store, mission_store, locks,
                             event_router=router, rng=random.Random(11), clock=clock)


def test_takeoff_requires_arm(reconciler, runtime_store):
    before = runtime_store.get('d-online')

    result = reconciler.apply_command('d-online', DroneCommand.TAKEOFF)

    assert result.success is False
    assert result.error.code == ErrorCode.NOT_ARMED
    assert runtime_store.get('d-online') == before


def test_arm_then_takeoff(reconciler, runtime_store, clock):
    clock.advance(3)
    armed = reconciler.apply_command('d-online', DroneCommand.ARM)
    assert armed.success
    assert armed.new_state.armed is True
    assert armed.new_state.last_command == DroneCommand.ARM
    assert armed.new_state.last_command_at == clock.now

    result = reconciler.apply_command('d-online', DroneCommand.TAKEOFF)
    state = runtime_store.get('d-online')
    assert result.success
    assert state.status == DroneStatus.IN_MISSION
    assert 30.0 <= state.target_altitude < 80.0
    assert state.returning is False


def test_arm_is_idempotent(reconciler, runtime_store):
    reconciler.apply_command('d-online', DroneCommand.ARM)
    first = runtime_store.get('d-online')
    reconciler.apply_command('d-online', DroneCommand.ARM)
    second = runtime_store.get('d-online')

    assert (first.status, first.armed, first.returning) == (second.status, second.armed, second.returning)


@pytest.mark.parametrize("drone_id", ['d-offline', 'd-charging'])
def test_arm_brings_grounded_drones_online(reconciler, runtime_store, drone_id):
    reconciler.apply_command(drone_id, DroneCommand.ARM)
    state = runtime_store.get(drone_id)
    assert state.status == DroneStatus.ONLINE
    assert state.armed is True
    assert state.offline_since is None


def test_takeoff_when_already_airborne_is_a_no_op(reconciler, runtime_store):
    before = runtime_store.get('d-mission')
    result = reconciler.apply_command('d-mission', DroneCommand.TAKEOFF)

    after = runtime_store.get('d-mission')
    assert result.success
    assert after.status == DroneStatus.IN_MISSION
    assert after.target_altitude == before.target_altitude
    assert after.last_command == DroneCommand.TAKEOFF


def test_land(reconciler, runtime_store):
    result = reconciler.apply_command('d-mission', DroneCommand.LAND)
    state = runtime_store.get('d-mission')

    assert result.success
    assert state.status == DroneStatus.ONLINE
    assert state.target_altitude == 0.0
    # Landing does not disarm
    assert state.armed is True


def test_land_on_ground_changes_nothing_but_last_command(reconciler, runtime_store):
    reconciler.apply_command('d-charging', DroneCommand.LAND)
    state = runtime_store.get('d-charging')
    assert state.status == DroneStatus.CHARGING
    assert state.target_altitude is None
    assert state.last_command == DroneCommand.LAND


def test_rtl_cancels_active_mission(reconciler, runtime_store, mission_store):
    mission_store.add(make_mission('m1', 'd-mission', make_route(37.70, -122.40)))
    mission_store.start('m1')
    runtime_store.update('d-mission', active_mission_id='m1')

    result = reconciler.apply_command('d-mission', DroneCommand.RTL)

    state = runtime_store.get('d-mission')
    assert result.success
    assert state.returning is True
    assert state.active_mission_id is None
    mission = mission_store.get_by_id('m1')
    assert mission.status == MissionStatus.CANCELLED
    assert mission.failure_reason == MissionFailureReason.RTL_CANCELLED


def test_rtl_with_terminal_mission_still_returns(reconciler, runtime_store, mission_store):
    mission_store.add(make_mission('m1', 'd-mission', make_route(37.70, -122.40)))
    mission_store.cancel('m1')
    runtime_store.update('d-mission', active_mission_id='m1')

    result = reconciler.apply_command('d-mission', DroneCommand.RTL)

    assert result.success
    assert runtime_store.get('d-mission').returning is True
    assert mission_store.get_by_id('m1').failure_reason == MissionFailureReason.CANCELLED_BY_USER


def test_rtl_on_ground_only_clears_link(reconciler, runtime_store):
    runtime_store.update('d-online', active_mission_id='stale')
    reconciler.apply_command('d-online', DroneCommand.RTL)

    state = runtime_store.get('d-online')
    assert state.returning is False
    assert state.active_mission_id is None


def test_unknown_drone(reconciler):
    result = reconciler.apply_command('ghost', DroneCommand.ARM)
    assert result.success is False
    assert result.error.code == ErrorCode.NOT_FOUND


def test_applied_commands_are_published(reconciler, router):
    received = []
    router.subscribe('command.*', received.append)

    reconciler.apply_command('d-online', DroneCommand.ARM)
    reconciler.apply_command('d-online', DroneCommand.TAKEOFF)
    reconciler.apply_command('ghost', DroneCommand.ARM)

    assert [e.data['command'] for e in received] == ['ARM', 'TAKEOFF']
    assert received[-1].data['status'] == DroneStatus.IN_MISSION.value

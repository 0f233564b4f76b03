import random
import threading

import pytest

from conftest import draft_for, make_drone, make_mission, make_route
from main import FleetOrchestrator
from models import DroneCommand, DroneStatus, ErrorCode, MissionStatus, WaypointAction
from simulation.faults import FaultInjector

# ============================================================================
# STARTUP
# ============================================================================

def test_start_links_in_mission_drones(config, clock):
    drone = make_drone('d1', DroneStatus.IN_MISSION)
    mission = make_mission('m1', 'd1', make_route(37.7749, -122.4194), status=MissionStatus.IN_PROGRESS)
    mission.current_waypoint_index = 0

    orch = FleetOrchestrator(config, baseline=([drone], [mission]),
                             faults=FaultInjector.disabled(), clock=clock)
    orch.start()

    state = orch.runtime_store.get('d1')
    assert state.active_mission_id == 'm1'
    assert state.armed is True
    assert orch.status == "running"
    orch.stop()


def test_start_is_idempotent(orchestrator, fleet):
    orchestrator.start()
    assert len(orchestrator.runtime_store.list()) == len(fleet)


def test_generated_baseline(config, clock):
    orch = FleetOrchestrator(config, faults=FaultInjector.disabled(), rng=random.Random(1), clock=clock)
    orch.start()

    status = orch.get_status()
    assert status['drones'] == 25
    assert status['missions'] == 55
    assert status['fleet_stats']['active_missions'] == status['fleet_stats']['by_status']['in-mission']
    orch.stop()

# ============================================================================
# TELEMETRY
# ============================================================================

def test_fleet_telemetry_covers_small_fleet(orchestrator, fleet):
    telemetry = orchestrator.get_telemetry()
    assert {t.drone_id for t in telemetry} == {d.profile.id for d in fleet}


def test_single_drone_telemetry(orchestrator):
    [record] = orchestrator.get_telemetry('d-online')
    assert record.drone_id == 'd-online'
    assert orchestrator.get_telemetry('ghost') == []


def test_flight_trail(orchestrator):
    orchestrator.get_telemetry('d-online')
    assert len(orchestrator.get_flight_trail('d-online').data) == 1
    assert orchestrator.get_flight_trail('ghost').error.code == ErrorCode.NOT_FOUND

# ============================================================================
# COMMANDS
# ============================================================================

def test_send_command_success(orchestrator):
    result = orchestrator.send_command('d-online', 'ARM')
    assert result.success
    assert result.data['command'] == 'ARM'
    assert result.data['state']['armed'] is True


def test_send_command_rejects_unknown_command(orchestrator):
    result = orchestrator.send_command('d-online', 'FLIP')
    assert result.error.code == ErrorCode.VALIDATION_ERROR
    assert result.error.details['allowed'] == ['ARM', 'TAKEOFF', 'LAND', 'RTL']


def test_send_command_unknown_drone(orchestrator):
    assert orchestrator.send_command('ghost', 'ARM').error.code == ErrorCode.NOT_FOUND


def test_send_command_not_armed(orchestrator):
    result = orchestrator.send_command('d-online', DroneCommand.TAKEOFF)
    assert result.error.code == ErrorCode.NOT_ARMED
    assert orchestrator.metrics.collector.get_counter(
        'fleet_commands_total', {'command': 'TAKEOFF', 'result': 'NOT_ARMED'}) == 1


def test_send_command_transmission_failure(config, clock, fleet):
    orch = FleetOrchestrator(config, baseline=(fleet, []),
                             faults=FaultInjector(0.0, 1.0), clock=clock)
    orch.start()

    before = orch.runtime_store.get('d-online')
    result = orch.send_command('d-online', 'ARM')

    assert result.error.code == ErrorCode.COMMAND_FAILED
    assert orch.runtime_store.get('d-online') == before
    orch.stop()

# ============================================================================
# MISSIONS
# ============================================================================

def test_create_mission(orchestrator, clock):
    draft = draft_for('d-online')
    draft['waypoints'][0]['order'] = 9

    result = orchestrator.create_mission(draft)

    mission = result.data
    assert result.success
    assert mission.status == MissionStatus.PENDING
    assert [wp.order for wp in mission.waypoints] == [0, 1, 2, 3, 4]
    assert mission.created_at == clock.now
    assert orchestrator.mission_store.get_by_id(mission.id) is not None


@pytest.mark.parametrize("mutate", [
    lambda d: d['waypoints'].pop(),
    lambda d: d['waypoints'][0].update(alt=150),
    lambda d: d['waypoints'][0].update(alt=2),
    lambda d: d['waypoints'][1].update(speed=30),
    lambda d: d['waypoints'][1].update(speed=0.5),
    lambda d: d['waypoints'][2].update(action='DANCE'),
    lambda d: d.update(drone_id=''),
])
def test_create_mission_validation(orchestrator, mutate):
    draft = draft_for('d-online')
    mutate(draft)

    result = orchestrator.create_mission(draft)

    assert result.error.code == ErrorCode.VALIDATION_ERROR
    assert result.error.details
    assert orchestrator.mission_store.list() == []


def test_create_mission_defaults(orchestrator):
    draft = draft_for('d-online')
    for wp in draft['waypoints']:
        del wp['speed'], wp['action']

    mission = orchestrator.create_mission(draft).data
    assert all(wp.speed == 10.0 for wp in mission.waypoints)
    assert all(wp.action == WaypointAction.NONE for wp in mission.waypoints)


def test_start_mission_teleports_drone(orchestrator):
    mission = orchestrator.create_mission(draft_for('d-online', alt=60)).data

    result = orchestrator.start_mission(mission.id)

    assert result.success
    assert result.data.status == MissionStatus.IN_PROGRESS
    assert result.data.current_waypoint_index == 0
    state = orchestrator.runtime_store.get('d-online')
    first = mission.waypoints[0]
    assert state.status == DroneStatus.IN_MISSION
    assert state.active_mission_id == mission.id
    assert (state.position.lat, state.position.lng, state.position.alt) == (first.lat, first.lng, 60)
    assert state.position.speed == 0


def test_start_mission_errors(orchestrator):
    assert orchestrator.start_mission('missing').error.code == ErrorCode.NOT_FOUND

    orphan = orchestrator.create_mission(draft_for('ghost')).data
    assert orchestrator.start_mission(orphan.id).error.code == ErrorCode.DRONE_NOT_FOUND

    first = orchestrator.create_mission(draft_for('d-online')).data
    second = orchestrator.create_mission(draft_for('d-online')).data
    orchestrator.start_mission(first.id)

    assert orchestrator.start_mission(first.id).error.code == ErrorCode.INVALID_STATUS
    assert orchestrator.start_mission(second.id).error.code == ErrorCode.DRONE_BUSY
    assert orchestrator.mission_store.get_by_id(second.id).status == MissionStatus.PENDING


def test_start_mission_rejected_while_returning(orchestrator):
    for command in ('ARM', 'TAKEOFF', 'RTL'):
        assert orchestrator.send_command('d-online', command).success
    mission = orchestrator.create_mission(draft_for('d-online')).data

    result = orchestrator.start_mission(mission.id)

    assert result.error.code == ErrorCode.DRONE_BUSY
    assert orchestrator.mission_store.get_by_id(mission.id).status == MissionStatus.PENDING

    # Already at base: the next tick lands it and the mission can start
    orchestrator.get_telemetry('d-online')
    assert orchestrator.runtime_store.get('d-online').returning is False
    assert orchestrator.start_mission(mission.id).success


def test_concurrent_start_for_one_drone(orchestrator):
    missions = [orchestrator.create_mission(draft_for('d-online')).data for _ in range(8)]
    barrier = threading.Barrier(len(missions))
    results = []

    def start(mission_id):
        barrier.wait()
        results.append(orchestrator.start_mission(mission_id))

    threads = [threading.Thread(target=start, args=(m.id,)) for m in missions]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(r.success for r in results) == 1
    assert {r.error.code for r in results if not r.success} == {ErrorCode.DRONE_BUSY}


def test_cancel_mission_unlinks_drone(orchestrator):
    mission = orchestrator.create_mission(draft_for('d-online')).data
    orchestrator.start_mission(mission.id)

    result = orchestrator.cancel_mission(mission.id)

    assert result.data.status == MissionStatus.CANCELLED
    state = orchestrator.runtime_store.get('d-online')
    assert state.active_mission_id is None
    assert state.status == DroneStatus.ONLINE


def test_cancel_mission_errors(orchestrator):
    assert orchestrator.cancel_mission('missing').error.code == ErrorCode.NOT_FOUND

    mission = orchestrator.create_mission(draft_for('d-online')).data
    orchestrator.cancel_mission(mission.id)
    assert orchestrator.cancel_mission(mission.id).error.code == ErrorCode.INVALID_STATUS


def test_commands_and_ticks_run_concurrently(orchestrator):
    mission = orchestrator.create_mission(draft_for('d-online')).data
    orchestrator.start_mission(mission.id)
    errors = []

    def poll():
        try:
            for _ in range(50):
                orchestrator.get_telemetry()
        except Exception as e:
            errors.append(e)

    def command():
        try:
            for cmd in ['ARM', 'RTL', 'ARM', 'TAKEOFF', 'LAND'] * 10:
                orchestrator.send_command('d-online', cmd)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=poll), threading.Thread(target=command)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert 0 <= orchestrator.runtime_store.get('d-online').battery_pct <= 100


def test_mission_events(orchestrator):
    mission = orchestrator.create_mission(draft_for('d-online')).data
    orchestrator.start_mission(mission.id)
    orchestrator.get_telemetry('d-online')

    events = orchestrator.get_mission_events(mission.id).data
    assert events[0].type.value == 'WAYPOINT_REACHED'
    assert events[-1].type.value == 'MISSION_STARTED'
    assert orchestrator.get_mission_events('missing').error.code == ErrorCode.NOT_FOUND


def test_list_missions_filters(orchestrator, clock):
    first = orchestrator.create_mission(draft_for('d-online')).data
    clock.advance(1)
    second = orchestrator.create_mission(draft_for('d-charging')).data
    orchestrator.start_mission(first.id)

    assert [m.id for m in orchestrator.list_missions()] == [second.id, first.id]
    assert [m.id for m in orchestrator.list_missions(status='in-progress')] == [first.id]
    assert [m.id for m in orchestrator.list_missions(drone_id='d-charging')] == [second.id]


def test_missions_status(orchestrator):
    mission = orchestrator.create_mission(draft_for('d-online', count=6)).data
    orchestrator.start_mission(mission.id)

    summary = orchestrator.get_missions_status()

    assert summary['d-online'] == {
        'has_active_mission': True,
        'active_mission_id': mission.id,
        'current_waypoint_index': 0,
        'total_waypoints': 6,
        'mission_status': 'in-progress',
    }
    assert summary['d-charging']['has_active_mission'] is False
    assert set(summary) == {'d-online', 'd-mission', 'd-charging', 'd-offline'}

# ============================================================================
# STATUS & METRICS
# ============================================================================

def test_get_status(orchestrator, clock):
    clock.advance(3725)
    status = orchestrator.get_status()

    assert status['status'] == 'running'
    assert status['uptime'] == '1h 2m'
    assert status['drones'] == 4
    assert status['fleet_stats']['by_status'] == {
        'online': 1, 'in-mission': 1, 'charging': 1, 'offline': 1,
    }
    assert status['fleet_stats']['average_battery'] == pytest.approx(50.0)


def test_drone_state(orchestrator):
    result = orchestrator.get_drone_state('d-mission')
    assert result.data['drone_id'] == 'd-mission'
    assert result.data['name'] == 'D-MISSION'
    assert result.data['status'] == 'in-mission'
    assert orchestrator.get_drone_state('ghost').error.code == ErrorCode.NOT_FOUND


def test_metrics_export(orchestrator):
    orchestrator.get_telemetry()
    orchestrator.send_command('d-online', 'ARM')
    mission = orchestrator.create_mission(draft_for('d-online')).data
    orchestrator.start_mission(mission.id)
    orchestrator.metrics.refresh_fleet_gauges()

    text = orchestrator.metrics.export_prometheus()

    assert '# TYPE engine_tick_duration_ms summary' in text
    assert 'engine_ticks_total 1' in text
    assert 'fleet_commands_total{command="ARM",result="applied"} 1' in text
    assert 'fleet_missions_total{outcome="started"} 1' in text
    assert 'fleet_drones_total 4' in text
    assert text.count('# TYPE fleet_commands_total') == 1
    assert text.endswith('\n')


def test_failing_subscriber_is_counted(orchestrator):
    def broken(event):
        raise RuntimeError("boom")

    orchestrator.event_router.subscribe('mission.started', broken)
    mission = orchestrator.create_mission(draft_for('d-online')).data

    assert orchestrator.start_mission(mission.id).success
    assert orchestrator.metrics.collector.get_counter(
        'event_handler_errors_total', {'error': 'RuntimeError'}) == 1


def test_health_status(orchestrator):
    health = orchestrator.metrics.get_health_status()
    components = {check['component'] for check in health['checks']}
    assert components == {'engine', 'event_router', 'system_resources'}
    assert health['overall_status'] in ('healthy', 'degraded', 'unhealthy')

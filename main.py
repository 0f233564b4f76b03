# Drone Fleet Simulation Engine - Orchestrator
# File: main.py

"""
FleetOrchestrator is the composition root: it owns the stores, the per-drone
lock registry, the event router, the tick engine, the command reconciler and
the metrics. Every public operation returns an OperationResult (or telemetry)
and never lets an engine exception escape.

Run directly for an interactive CLI:

    python main.py              # interactive prompt
    python main.py status       # one-shot command
"""

import random
import time
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import logging

from pydantic import ValidationError

from commands import CommandReconciler
from config import EngineConfig
from events import EventPriority, EventRouter
from fleet_data import FleetDataGenerator
from models import (
    DroneBaseline,
    DroneCommand,
    DroneStatus,
    ErrorCode,
    InvalidTransitionError,
    Mission,
    MissionDraft,
    MissionNotFoundError,
    MissionStatus,
    OperationResult,
    Position,
    Telemetry,
    Waypoint,
    FAILURE_REASON_LABELS,
)
from monitoring import EngineMetrics
from simulation.faults import FaultInjector
from simulation.motion import MotionProfileGenerator
from simulation.tick_engine import TelemetryEngine
from stores import DroneLockRegistry, DroneRuntimeStore, MissionExecutionStore, MissionStore

logger = logging.getLogger(__name__)

Baseline = Tuple[List[DroneBaseline], List[Mission]]

# ============================================================================
# ORCHESTRATOR
# ============================================================================

class FleetOrchestrator:
    """Owns the engine's state and exposes its operations"""

    def __init__(self, config: Optional[EngineConfig] = None,
                 baseline: Optional[Baseline] = None,
                 faults: Optional[FaultInjector] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Args:
            config: Engine configuration (defaults to EngineConfig())
            baseline: (drones, missions) to seed on start; generated when omitted
            faults: Fault injector; built from the config probabilities when omitted
            rng: Random source for the engine; seeded from config.random_seed when omitted
            clock: Time source shared by every store
        """
        self.config = config or EngineConfig()
        self.clock = clock
        self.rng = rng or random.Random(self.config.random_seed)
        self.status = "stopped"
        self.start_time: Optional[datetime] = None
        self._baseline = baseline

        self.event_router = EventRouter()
        self.locks = DroneLockRegistry()
        self.runtime_store = DroneRuntimeStore(clock=clock)
        self.execution_store = MissionExecutionStore(self.config.max_mission_events, clock=clock)
        self.mission_store = MissionStore(self.execution_store, self.event_router, clock=clock)
        self.motion = MotionProfileGenerator()

        self.faults = faults or FaultInjector(
            self.config.offline_blip_probability,
            self.config.command_failure_probability,
            random.Random(self.rng.getrandbits(32)),
        )

        self.engine = TelemetryEngine(
            self.runtime_store,
            self.mission_store,
            self.execution_store,
            self.motion,
            self.locks,
            config=self.config,
            faults=self.faults,
            rng=self.rng,
            clock=clock,
        )
        self.reconciler = CommandReconciler(
            self.runtime_store,
            self.mission_store,
            self.locks,
            event_router=self.event_router,
            rng=self.rng,
            clock=clock,
        )
        self.metrics = EngineMetrics(self)

    # ------------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------------

    def start(self):
        """Seed the baseline fleet, link in-flight missions, begin serving"""
        if self.status == "running":
            logger.warning("Orchestrator already running")
            return

        drones, missions = self._baseline or FleetDataGenerator(
            random.Random(self.rng.getrandbits(32)), self.clock
        ).generate_all(num_missions=self.config.baseline_mission_count)

        self.runtime_store.seed(drones)
        known = {m.id for m in self.mission_store.list()}
        for mission in missions:
            if mission.id not in known:
                self.mission_store.add(mission)

        linked = self.link_drones_with_active_missions()

        self.status = "running"
        self.start_time = self.clock()
        self.event_router.emit('system.started', source='orchestrator',
                               priority=EventPriority.HIGH, status='running')
        logger.info(f"Orchestrator started: {len(drones)} drones, {len(missions)} missions, "
                    f"{linked} linked to active missions")

    def stop(self):
        if self.metrics.running:
            self.metrics.stop()
        self.status = "stopped"
        self.event_router.emit('system.stopped', source='orchestrator', status='stopped')
        logger.info("Orchestrator stopped")

    def link_drones_with_active_missions(self) -> int:
        """Attach in-mission drones to their in-progress mission (startup only)"""
        linked = 0
        for profile, state in self.runtime_store.list_with_state():
            if state.status != DroneStatus.IN_MISSION:
                continue
            mission = self.mission_store.get_active_for_drone(profile.id)
            if mission is None or state.active_mission_id == mission.id:
                continue
            with self.locks.for_drone(profile.id):
                self.runtime_store.update(profile.id, active_mission_id=mission.id, armed=True)
            linked += 1
        return linked

    # ------------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------------

    def get_telemetry(self, drone_id: Optional[str] = None) -> List[Telemetry]:
        """Advance the simulation one step and return the resulting telemetry"""
        started = time.perf_counter()
        telemetry = self.engine.tick(drone_id)
        self.metrics.record_tick((time.perf_counter() - started) * 1000, len(telemetry))
        return telemetry

    def get_flight_trail(self, drone_id: str) -> OperationResult:
        if not self.runtime_store.exists(drone_id):
            return OperationResult.fail(ErrorCode.NOT_FOUND, f"Drone {drone_id} not found")
        return OperationResult.ok(self.engine.get_flight_trail(drone_id))

    # ------------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------------

    def send_command(self, drone_id: str, command: Union[str, DroneCommand]) -> OperationResult:
        try:
            command = DroneCommand(command)
        except ValueError:
            return OperationResult.fail(
                ErrorCode.VALIDATION_ERROR,
                f"Invalid command: {command}",
                details={'allowed': [c.value for c in DroneCommand]},
            )

        if not self.runtime_store.exists(drone_id):
            return OperationResult.fail(ErrorCode.NOT_FOUND, f"Drone {drone_id} not found")

        if self.faults.command_failure():
            logger.warning(f"Drone {drone_id}: {command.value} lost in transmission")
            self.metrics.record_command_rejected(command.value, ErrorCode.COMMAND_FAILED.value)
            return OperationResult.fail(ErrorCode.COMMAND_FAILED,
                                        "Command transmission failed. Please try again.")

        try:
            result = self.reconciler.apply_command(drone_id, command)
        except Exception as e:
            logger.exception(f"Command {command.value} for drone {drone_id} failed")
            return OperationResult.fail(ErrorCode.INTERNAL_ERROR, str(e) or "Failed to send command")

        if not result.success:
            self.metrics.record_command_rejected(command.value, result.error.code.value)
            return OperationResult(success=False, error=result.error)

        return OperationResult.ok({
            'drone_id': drone_id,
            'command': command.value,
            'state': result.new_state.to_dict(),
        })

    def get_drone_state(self, drone_id: str) -> OperationResult:
        state = self.runtime_store.get(drone_id)
        if state is None:
            return OperationResult.fail(ErrorCode.NOT_FOUND, f"Drone {drone_id} not found")
        profile = self.runtime_store.get_profile(drone_id)
        return OperationResult.ok({
            'drone_id': drone_id,
            'name': profile.name if profile else None,
            **state.to_dict(),
        })

    # ------------------------------------------------------------------------
    # Missions
    # ------------------------------------------------------------------------

    def list_missions(self, status: Optional[MissionStatus] = None,
                      drone_id: Optional[str] = None) -> List[Mission]:
        missions = self.mission_store.list()
        if status is not None:
            missions = [m for m in missions if m.status == MissionStatus(status)]
        if drone_id is not None:
            missions = [m for m in missions if m.drone_id == drone_id]
        return sorted(missions, key=lambda m: m.created_at, reverse=True)

    def create_mission(self, draft: Union[MissionDraft, Dict[str, Any]]) -> OperationResult:
        """Validate a mission draft and store it as pending"""
        try:
            if not isinstance(draft, MissionDraft):
                draft = MissionDraft.model_validate(draft)
        except ValidationError as e:
            return OperationResult.fail(
                ErrorCode.VALIDATION_ERROR,
                "Invalid mission data",
                details=e.errors(include_url=False, include_context=False),
            )

        try:
            now = self.clock()
            # Order is reassigned from list position
            waypoints = [
                Waypoint(lat=wp.lat, lng=wp.lng, alt=wp.alt, order=index,
                         speed=wp.speed, action=wp.action)
                for index, wp in enumerate(draft.waypoints)
            ]
            mission = Mission(
                id=str(uuid.uuid4()),
                drone_id=draft.drone_id,
                status=MissionStatus.PENDING,
                waypoints=waypoints,
                created_at=now,
                updated_at=now,
            )
            self.mission_store.add(mission)
        except Exception as e:
            logger.exception("Failed to create mission")
            return OperationResult.fail(ErrorCode.INTERNAL_ERROR, str(e) or "Failed to create mission")

        logger.info(f"Mission {mission.id} created for drone {mission.drone_id} "
                    f"({len(waypoints)} waypoints)")
        return OperationResult.ok(mission)

    def start_mission(self, mission_id: str) -> OperationResult:
        mission = self.mission_store.get_by_id(mission_id)
        if mission is None:
            return OperationResult.fail(ErrorCode.NOT_FOUND, "Mission not found")

        if mission.status != MissionStatus.PENDING:
            return OperationResult.fail(
                ErrorCode.INVALID_STATUS,
                f"Cannot start mission with status: {mission.status.value}",
            )

        drone_id = mission.drone_id
        with self.locks.for_drone(drone_id):
            state = self.runtime_store.get(drone_id)
            if state is None:
                return OperationResult.fail(ErrorCode.DRONE_NOT_FOUND, "Assigned drone not found")

            if state.active_mission_id:
                return OperationResult.fail(ErrorCode.DRONE_BUSY, "Drone already has an active mission")

            if state.returning:
                # RTL overrides waypoints until the drone lands at base
                return OperationResult.fail(ErrorCode.DRONE_BUSY, "Drone is returning to launch")

            try:
                started = self.mission_store.start(mission_id)
            except MissionNotFoundError:
                return OperationResult.fail(ErrorCode.NOT_FOUND, "Mission not found")
            except InvalidTransitionError as e:
                current = self.mission_store.get_by_id(mission_id)
                if current is not None and current.status != MissionStatus.PENDING:
                    return OperationResult.fail(ErrorCode.INVALID_STATUS, str(e))
                return OperationResult.fail(ErrorCode.DRONE_BUSY, str(e))
            except Exception as e:
                logger.exception(f"Failed to start mission {mission_id}")
                return OperationResult.fail(ErrorCode.INTERNAL_ERROR, str(e) or "Failed to start mission")

            waypoints = started.sorted_waypoints()
            if waypoints:
                first = waypoints[0]
                position = Position(first.lat, first.lng, first.alt, 0.0)
            else:
                position = state.position

            # Teleport to the first waypoint
            self.runtime_store.update(
                drone_id,
                status=DroneStatus.IN_MISSION,
                active_mission_id=mission_id,
                position=position,
            )

        logger.info(f"Mission {mission_id} started for drone {drone_id}, moved to first waypoint")
        return OperationResult.ok(started)

    def cancel_mission(self, mission_id: str) -> OperationResult:
        mission = self.mission_store.get_by_id(mission_id)
        if mission is None:
            return OperationResult.fail(ErrorCode.NOT_FOUND, "Mission not found")

        drone_id = mission.drone_id
        with self.locks.for_drone(drone_id):
            try:
                cancelled = self.mission_store.cancel(mission_id)
            except InvalidTransitionError as e:
                return OperationResult.fail(ErrorCode.INVALID_STATUS, str(e))

            if cancelled is None:
                return OperationResult.fail(ErrorCode.NOT_FOUND, "Mission not found")

            state = self.runtime_store.get(drone_id)
            if state is not None and state.active_mission_id == mission_id:
                # RTL keeps its own status
                status = state.status if state.returning else DroneStatus.ONLINE
                self.runtime_store.update(drone_id, active_mission_id=None, status=status)

        return OperationResult.ok(cancelled)

    def get_mission_events(self, mission_id: str, limit: int = 5) -> OperationResult:
        if self.mission_store.get_by_id(mission_id) is None:
            return OperationResult.fail(ErrorCode.NOT_FOUND, "Mission not found")
        return OperationResult.ok(self.execution_store.get_events(mission_id, limit))

    def get_missions_status(self) -> Dict[str, Dict[str, Any]]:
        """Active mission summary for every drone"""
        summary = {}
        for profile in self.runtime_store.list_profiles():
            mission = self.mission_store.get_active_for_drone(profile.id)
            summary[profile.id] = {
                'has_active_mission': mission is not None,
                'active_mission_id': mission.id if mission else None,
                'current_waypoint_index': mission.current_waypoint_index if mission else None,
                'total_waypoints': len(mission.waypoints) if mission else None,
                'mission_status': mission.status.value if mission else None,
            }
        return summary

    # ------------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        uptime = (self.clock() - self.start_time).total_seconds() if self.start_time else 0
        states = self.runtime_store.list()
        missions = self.mission_store.list()

        by_status = defaultdict(int)
        for state in states.values():
            by_status[state.status.value] += 1

        missions_by_status = defaultdict(int)
        for mission in missions:
            missions_by_status[mission.status.value] += 1

        total_battery = sum(s.battery_pct for s in states.values())

        return {
            'status': self.status,
            'uptime': f"{int(uptime // 3600)}h {int((uptime % 3600) // 60)}m",
            'uptime_seconds': uptime,
            'events_processed': len(self.event_router.event_history),
            'drones': len(states),
            'missions': len(missions),
            'missions_by_status': dict(missions_by_status),
            'fleet_stats': {
                'total': len(states),
                'by_status': dict(by_status),
                'average_battery': total_battery / len(states) if states else 0.0,
                'active_missions': sum(1 for s in states.values() if s.active_mission_id),
            },
        }

# ============================================================================
# CLI INTERFACE
# ============================================================================

class CLI:
    """Command Line Interface"""

    def __init__(self, orchestrator: FleetOrchestrator):
        self.orchestrator = orchestrator
        self.commands = {
            'telemetry': self._telemetry_cmd,
            'drone': self._drone_cmd,
            'mission': self._mission_cmd,
            'status': self._status_cmd,
            'help': self._help_cmd
        }

    def run(self, args: List[str]):
        if not args:
            self._help_cmd([])
            return

        command = args[0]
        if command in self.commands:
            self.commands[command](args[1:])
        else:
            print(f"❌ Unknown command: {command}")
            self._help_cmd([])

    def _telemetry_cmd(self, args: List[str]):
        """telemetry [drone_id] [ticks]"""
        drone_id = args[0] if args and args[0] != 'fleet' else None
        ticks = int(args[1]) if len(args) > 1 else 1

        telemetry = []
        for _ in range(ticks):
            telemetry = self.orchestrator.get_telemetry(drone_id)

        print(f"\n{'='*100}")
        print(f"{'Drone':<38} {'Lat':>10} {'Lng':>11} {'Alt':>7} {'Speed':>6} {'Batt':>6} {'GPS':>6}  Mission")
        print(f"{'='*100}")
        for t in telemetry:
            print(f"{t.drone_id:<38} {t.position.lat:>10.5f} {t.position.lng:>11.5f} "
                  f"{t.altitude:>7.1f} {t.speed:>6.1f} {t.battery_pct:>5.1f}% {t.gps_quality:>5.1f}  "
                  f"{t.active_mission_id or '-'}")
        print(f"{'='*100}\n")

    def _drone_cmd(self, args: List[str]):
        if not args:
            print("Usage: drone [list|state|command|trail]")
            return

        action = args[0]

        if action == 'list':
            print(f"\n{'='*90}")
            print(f"{'ID':<38} {'Name':<14} {'Status':<12} {'Battery':<9} {'Armed':<7} {'Mission'}")
            print(f"{'='*90}")
            for profile, state in self.orchestrator.runtime_store.list_with_state():
                print(f"{profile.id:<38} {profile.name:<14} {state.status.value:<12} "
                      f"{state.battery_pct:<8.1f}% {'yes' if state.armed else 'no':<7} "
                      f"{(state.active_mission_id or 'None')[:8]}")
            print(f"{'='*90}\n")

        elif action == 'state':
            if len(args) < 2:
                print("Usage: drone state <drone_id>")
                return
            result = self.orchestrator.get_drone_state(args[1])
            if not result.success:
                print(f"❌ {result.error.message}")
                return
            for key, value in result.data.items():
                print(f"  {key:<18} {value}")

        elif action == 'command':
            if len(args) < 3:
                print("Usage: drone command <drone_id> <ARM|TAKEOFF|LAND|RTL>")
                return
            result = self.orchestrator.send_command(args[1], args[2].upper())
            if result.success:
                print(f"✅ {args[2].upper()} applied: status={result.data['state']['status']}")
            else:
                print(f"❌ {result.error.code.value}: {result.error.message}")

        elif action == 'trail':
            if len(args) < 2:
                print("Usage: drone trail <drone_id>")
                return
            result = self.orchestrator.get_flight_trail(args[1])
            if not result.success:
                print(f"❌ {result.error.message}")
                return
            for point in result.data:
                print(f"  ({point['lat']:.5f}, {point['lng']:.5f})")

    def _mission_cmd(self, args: List[str]):
        if not args:
            print("Usage: mission [list|start|cancel|events]")
            return

        action = args[0]

        if action == 'list':
            status = args[1] if len(args) > 1 else None
            missions = self.orchestrator.list_missions(status=status)
            print(f"\n{'='*100}")
            print(f"{'ID':<38} {'Drone':<38} {'Status':<12} {'WP':<6} {'Reason'}")
            print(f"{'='*100}")
            for m in missions:
                progress = f"{m.current_waypoint_index}/{len(m.waypoints)}" \
                    if m.current_waypoint_index is not None else str(len(m.waypoints))
                reason = FAILURE_REASON_LABELS.get(m.failure_reason, '') if m.failure_reason else ''
                print(f"{m.id:<38} {m.drone_id:<38} {m.status.value:<12} {progress:<6} {reason}")
            print(f"{'='*100}\n")

        elif action in ('start', 'cancel'):
            if len(args) < 2:
                print(f"Usage: mission {action} <mission_id>")
                return
            if action == 'start':
                result = self.orchestrator.start_mission(args[1])
            else:
                result = self.orchestrator.cancel_mission(args[1])

            if result.success:
                print(f"✅ Mission {args[1]}: {result.data.status.value}")
            else:
                print(f"❌ {result.error.code.value}: {result.error.message}")

        elif action == 'events':
            if len(args) < 2:
                print("Usage: mission events <mission_id> [limit]")
                return
            limit = int(args[2]) if len(args) > 2 else 5
            result = self.orchestrator.get_mission_events(args[1], limit)
            if not result.success:
                print(f"❌ {result.error.message}")
                return
            for event in result.data:
                print(f"  {event.timestamp.strftime('%H:%M:%S')} {event.type.value:<18} {event.message}")

    def _status_cmd(self, args: List[str]):
        status = self.orchestrator.get_status()
        fleet = status['fleet_stats']

        print(f"\n{'='*60}")
        print("DRONE FLEET SIMULATION ENGINE")
        print(f"{'='*60}")
        print(f"Orchestrator: {status['status'].upper()}")
        print(f"Uptime: {status['uptime']}")
        print(f"Events: {status['events_processed']}")
        print(f"\nFleet: {status['drones']} drones")
        for drone_status in DroneStatus:
            print(f"  {drone_status.value.capitalize()}: {fleet['by_status'].get(drone_status.value, 0)}")
        print(f"  Avg Battery: {fleet['average_battery']:.1f}%")
        print(f"\nMissions: {status['missions']}")
        for mission_status, count in sorted(status['missions_by_status'].items()):
            print(f"  {mission_status}: {count}")
        print(f"{'='*60}\n")

    def _help_cmd(self, args: List[str]):
        print("\n" + "="*70)
        print("Drone Fleet Simulation Engine - CLI")
        print("="*70)
        print("\nCommands:")
        print("  telemetry [drone_id|fleet] [ticks]  - Advance and show telemetry")
        print("  drone     - Drones (list|state|command|trail)")
        print("  mission   - Missions (list|start|cancel|events)")
        print("  status    - Show system status")
        print("  help      - Show this help")
        print("="*70 + "\n")

# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    import sys

    config = EngineConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("""
    ╔══════════════════════════════════════════════════════════════╗
    ║  Drone Fleet Simulation Engine                               ║
    ║  Telemetry / Mission Orchestrator                            ║
    ╚══════════════════════════════════════════════════════════════╝
    """)

    orchestrator = FleetOrchestrator(config)
    orchestrator.start()

    cli = CLI(orchestrator)

    if len(sys.argv) > 1:
        cli.run(sys.argv[1:])
    else:
        print("\n📋 Type 'help' for commands, 'exit' to quit\n")

        while True:
            try:
                command = input("FLEET> ").strip()

                if command.lower() in ['exit', 'quit']:
                    orchestrator.stop()
                    print("👋 Goodbye!")
                    break

                if command:
                    cli.run(command.split())

            except KeyboardInterrupt:
                orchestrator.stop()
                print("\n👋 Goodbye!")
                break
            except Exception as e:
                print(f"❌ Error: {e}")

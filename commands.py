# Operator Command Reconciler
# File: commands.py

"""
Applies ARM / TAKEOFF / LAND / RTL to a drone's runtime state.

Commands run under the drone's lock, so a tick never observes a half-applied
command. The new state is written back as a whole record.
"""

import random
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional
import logging

from events import EventPriority, EventRouter
from models import (
    CommandResult,
    DroneCommand,
    DroneRuntimeState,
    DroneStatus,
    ErrorCode,
    MissionError,
    MissionFailureReason,
    OperationError,
)
from stores import DroneLockRegistry, DroneRuntimeStore, MissionStore

logger = logging.getLogger(__name__)

TAKEOFF_ALTITUDE_MIN = 30.0
TAKEOFF_ALTITUDE_SPAN = 50.0


class CommandReconciler:
    """Turns operator commands into runtime state transitions"""

    def __init__(self, runtime_store: DroneRuntimeStore,
                 mission_store: MissionStore,
                 locks: DroneLockRegistry,
                 event_router: Optional[EventRouter] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.runtime_store = runtime_store
        self.mission_store = mission_store
        self.locks = locks
        self.event_router = event_router
        self.rng = rng or random.Random()
        self.clock = clock

        self.handlers = {
            DroneCommand.ARM: self._arm,
            DroneCommand.TAKEOFF: self._takeoff,
            DroneCommand.LAND: self._land,
            DroneCommand.RTL: self._return_to_launch,
        }

    def apply_command(self, drone_id: str, command: DroneCommand) -> CommandResult:
        command = DroneCommand(command)

        with self.locks.for_drone(drone_id):
            state = self.runtime_store.get(drone_id)
            if state is None:
                return CommandResult(
                    success=False,
                    error=OperationError(ErrorCode.NOT_FOUND, f"Drone {drone_id} not found"),
                )

            if command == DroneCommand.TAKEOFF and not state.armed:
                logger.warning(f"Drone {drone_id}: TAKEOFF rejected, not armed")
                return CommandResult(
                    success=False,
                    error=OperationError(ErrorCode.NOT_ARMED, "Drone must be armed before takeoff"),
                )

            new_state = self.handlers[command](drone_id, state)

            now = self.clock()
            new_state = replace(
                new_state,
                last_command=command,
                last_command_at=now,
                updated_at=now,
            )
            self.runtime_store.replace(drone_id, new_state)

        logger.info(f"Drone {drone_id}: {command.value} applied "
                    f"(status={new_state.status.value}, armed={new_state.armed})")
        self._publish(drone_id, command, new_state)
        return CommandResult(success=True, new_state=new_state)

    # ------------------------------------------------------------------------
    # Command handlers
    # ------------------------------------------------------------------------

    def _arm(self, drone_id: str, state: DroneRuntimeState) -> DroneRuntimeState:
        status = state.status
        if status in (DroneStatus.OFFLINE, DroneStatus.CHARGING):
            status = DroneStatus.ONLINE

        return replace(
            state,
            status=status,
            armed=True,
            returning=False,
            target_altitude=None,
            offline_since=None if status != DroneStatus.OFFLINE else state.offline_since,
        )

    def _takeoff(self, drone_id: str, state: DroneRuntimeState) -> DroneRuntimeState:
        if state.status != DroneStatus.ONLINE:
            # Already airborne or not ready: accepted without change
            return state

        return replace(
            state,
            status=DroneStatus.IN_MISSION,
            target_altitude=TAKEOFF_ALTITUDE_MIN + self.rng.random() * TAKEOFF_ALTITUDE_SPAN,
            returning=False,
        )

    def _land(self, drone_id: str, state: DroneRuntimeState) -> DroneRuntimeState:
        if state.status != DroneStatus.IN_MISSION:
            return state

        return replace(
            state,
            status=DroneStatus.ONLINE,
            target_altitude=0.0,
            returning=False,
        )

    def _return_to_launch(self, drone_id: str, state: DroneRuntimeState) -> DroneRuntimeState:
        if state.status == DroneStatus.IN_MISSION:
            state = replace(state, returning=True, target_altitude=None)

            if state.active_mission_id:
                try:
                    self.mission_store.cancel(state.active_mission_id,
                                              MissionFailureReason.RTL_CANCELLED)
                except MissionError as e:
                    # Already terminal; the drone still returns
                    logger.warning(f"Drone {drone_id}: RTL could not cancel mission: {e}")

        return replace(state, active_mission_id=None)

    def _publish(self, drone_id: str, command: DroneCommand, state: DroneRuntimeState):
        if not self.event_router:
            return
        self.event_router.emit(
            'command.applied',
            source='command_reconciler',
            priority=EventPriority.HIGH,
            drone_id=drone_id,
            command=command.value,
            status=state.status.value,
        )

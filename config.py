# Engine Configuration
# File: config.py

"""
Simulation and engine settings.
Defaults mirror the fleet simulator's built-in constants; any of them can be
overridden through FLEET_* environment variables (a .env file is honoured).
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


@dataclass
class EngineConfig:
    # Time step (seconds of simulated flight per tick)
    dt: float = 1.0

    # Waypoint navigation
    arrival_threshold_m: float = 50.0
    default_mission_speed: float = 10.0  # m/s
    vertical_rate: float = 2.0  # m/s
    altitude_snap_m: float = 1.0

    # Return to launch
    rtl_arrival_m: float = 10.0
    rtl_speed: float = 8.0  # m/s

    # Mission failure thresholds
    low_battery_pct: float = 5.0
    low_gps_pct: float = 20.0
    offline_timeout_s: float = 30.0

    # Battery delta per tick
    drain_in_mission: float = 0.05
    drain_online: float = 0.01
    charge_rate: float = 0.5

    # Fleet telemetry
    min_fleet_visible: int = 20
    trail_length: int = 30

    # Mission execution log
    max_mission_events: int = 50

    # Fault injection (0 disables)
    offline_blip_probability: float = 0.05
    command_failure_probability: float = 0.05

    # Baseline dataset
    baseline_mission_count: int = 55

    log_level: str = "INFO"
    random_seed: Optional[int] = None

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from FLEET_* environment variables"""
        seed = os.getenv("FLEET_RANDOM_SEED")
        return cls(
            dt=_env_float("FLEET_DT", cls.dt),
            arrival_threshold_m=_env_float("FLEET_ARRIVAL_THRESHOLD_M", cls.arrival_threshold_m),
            default_mission_speed=_env_float("FLEET_DEFAULT_MISSION_SPEED", cls.default_mission_speed),
            rtl_speed=_env_float("FLEET_RTL_SPEED", cls.rtl_speed),
            offline_timeout_s=_env_float("FLEET_OFFLINE_TIMEOUT_S", cls.offline_timeout_s),
            min_fleet_visible=_env_int("FLEET_MIN_VISIBLE", cls.min_fleet_visible),
            offline_blip_probability=_env_float(
                "FLEET_OFFLINE_BLIP_PROBABILITY", cls.offline_blip_probability
            ),
            command_failure_probability=_env_float(
                "FLEET_COMMAND_FAILURE_PROBABILITY", cls.command_failure_probability
            ),
            baseline_mission_count=_env_int("FLEET_BASELINE_MISSIONS", cls.baseline_mission_count),
            log_level=os.getenv("FLEET_LOG_LEVEL", cls.log_level).upper(),
            random_seed=int(seed) if seed else None,
        )

# Motion Profiles
# File: simulation/motion.py

"""
Per-drone patrol motion. Every drone gets a profile derived from a hash of its
id, so two drones never fly the same pattern and a drone keeps its flight
character for the life of the process. The current heading evolves tick over
tick and is tracked separately from the static profile.
"""

import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional
import logging

logger = logging.getLogger(__name__)


def hash_string(value: str) -> int:
    """Stable 32-bit string hash (h = h*31 + c, wrapped to int32, absolute)"""
    h = 0
    for ch in value:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


class LCGRandom:
    """Linear congruential generator yielding floats in [0, 1)"""

    MULTIPLIER = 9301
    INCREMENT = 49297
    MODULUS = 233280

    def __init__(self, seed: int):
        self.value = seed

    def random(self) -> float:
        self.value = (self.value * self.MULTIPLIER + self.INCREMENT) % self.MODULUS
        return self.value / self.MODULUS


@dataclass
class MotionProfile:
    base_lat: float
    base_lng: float
    speed: float             # m/s, 2-12
    heading: float           # degrees, 0-360
    turn_rate: float         # deg/s, 5-25
    wobble_amplitude: float  # 0.0002-0.001
    phase_offset: float      # radians, 0-2pi
    rng: LCGRandom = field(repr=False, compare=False, default=None)


@dataclass
class MotionState:
    heading: float  # degrees
    last_update: datetime


def build_profile(drone_id: str, lat: float, lng: float) -> MotionProfile:
    rng = LCGRandom(hash_string(drone_id))

    return MotionProfile(
        base_lat=lat,
        base_lng=lng,
        speed=2 + rng.random() * 10,
        heading=rng.random() * 360,
        turn_rate=5 + rng.random() * 20,
        wobble_amplitude=0.0002 + rng.random() * 0.0008,
        phase_offset=rng.random() * math.pi * 2,
        rng=rng,
    )


class MotionProfileGenerator:
    """Memoized motion profiles plus the evolving heading of each drone"""

    def __init__(self):
        self._profiles: Dict[str, MotionProfile] = {}
        self._states: Dict[str, MotionState] = {}
        self._lock = threading.Lock()

    def get_profile(self, drone_id: str, lat: float, lng: float) -> MotionProfile:
        """
        Profile for a drone. The base position is captured on the first call;
        later calls with a different position return the cached profile unchanged.
        """
        with self._lock:
            profile = self._profiles.get(drone_id)
            if profile is None:
                profile = build_profile(drone_id, lat, lng)
                self._profiles[drone_id] = profile
                logger.debug(
                    f"Motion profile for {drone_id}: speed={profile.speed:.1f}m/s "
                    f"heading={profile.heading:.0f} turn={profile.turn_rate:.1f}deg/s"
                )
            return profile

    def get_motion_state(self, drone_id: str) -> Optional[MotionState]:
        with self._lock:
            return self._states.get(drone_id)

    def update_motion_state(self, drone_id: str, heading: float, timestamp: datetime):
        with self._lock:
            self._states[drone_id] = MotionState(heading=heading, last_update=timestamp)

    def reset_motion_state(self, drone_id: str):
        """Forget the current heading (after RTL or landing)"""
        with self._lock:
            self._states.pop(drone_id, None)

# Fault Injection
# File: simulation/faults.py

"""
Optional demo faults layered on top of the engine: transient connectivity
blips during patrol and randomly rejected operator commands. Probabilities of
zero disable them.
"""

import random
from typing import Optional


class FaultInjector:

    def __init__(self, offline_blip_probability: float = 0.0,
                 command_failure_probability: float = 0.0,
                 rng: Optional[random.Random] = None):
        self.offline_blip_probability = offline_blip_probability
        self.command_failure_probability = command_failure_probability
        self.rng = rng or random.Random()

    @classmethod
    def disabled(cls) -> "FaultInjector":
        return cls(0.0, 0.0)

    def offline_blip(self) -> bool:
        """True when this tick should treat an online drone as briefly unreachable"""
        if self.offline_blip_probability <= 0:
            return False
        return self.rng.random() < self.offline_blip_probability

    def command_failure(self) -> bool:
        if self.command_failure_probability <= 0:
            return False
        return self.rng.random() < self.command_failure_probability

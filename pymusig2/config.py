"""
Configuration for signing sessions.
"""

import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class SessionConfig:
    """Settings shared by all sessions of one coordinator."""
    phase_timeout: float = 120.0  # seconds allowed for every phase
    identify_culprits: bool = True  # check partial signatures one by one after a failed aggregate
    max_participants: int = 1000
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def __post_init__(self):
        if self.phase_timeout <= 0:
            raise ValueError("phase_timeout must be positive")
        if self.max_participants < 2:
            raise ValueError("max_participants must be at least 2")

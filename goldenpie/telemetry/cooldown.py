"""
Startup cooldown.

Loading an emulator state makes counters jump around for a few seconds.
The gate stays closed for ``duration`` seconds after ``start()``; while it
is closed the poll loop keeps sampling and advancing baselines but emits
nothing.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

GAME_STARTUP_COOLDOWN = 10.0


class CooldownGate:

    def __init__(
        self,
        duration: float = GAME_STARTUP_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.duration = duration
        self._clock = clock
        self._started_at: Optional[float] = None

    def start(self, now: Optional[float] = None) -> None:
        self._started_at = self._clock() if now is None else now

    def reset(self) -> None:
        self._started_at = None

    def remaining(self, now: Optional[float] = None) -> float:
        if self._started_at is None:
            return 0.0
        now = self._clock() if now is None else now
        return max(0.0, self.duration - (now - self._started_at))

    def admit(self, now: Optional[float] = None) -> bool:
        """True once the cooldown window has elapsed (or was never started)."""
        return self.remaining(now) <= 0.0

    @property
    def active(self) -> bool:
        return not self.admit()

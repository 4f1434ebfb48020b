"""
Fault Simulation

Disconnect injection, consulted by the controller after every tick.
Production sessions use NoFaults; the demo uses RandomFaultSimulator and
tests script exact disconnect points with ScriptedFaultSimulator.
"""

import random
from typing import Any, Iterable, Optional, Protocol, Set
import structlog

logger = structlog.get_logger()


class FaultSimulator(Protocol):
    def should_disconnect(self, session: Any) -> bool:
        ...


class NoFaults:
    """Never disconnects."""

    def should_disconnect(self, session: Any) -> bool:
        return False


class RandomFaultSimulator:
    """
    Disconnects with a fixed probability per tick.

    The streaming demo used 5% per one-second tick. Pass a seed for
    reproducible runs.
    """

    def __init__(self, probability: float = 0.05, seed: Optional[int] = None):
        if not 0.0 <= probability <= 1.0:
            raise ValueError("probability must be between 0 and 1")
        self.probability = probability
        self._rng = random.Random(seed)
        self.injected = 0

    def should_disconnect(self, session: Any) -> bool:
        if self._rng.random() < self.probability:
            self.injected += 1
            logger.warning(
                "fault_injected",
                session_id=session.session_id,
                tick=session.ticks,
            )
            return True
        return False


class ScriptedFaultSimulator:
    """Disconnects on the given session tick numbers (1-based)."""

    def __init__(self, disconnect_at_ticks: Iterable[int] = ()):
        self._remaining: Set[int] = set(disconnect_at_ticks)
        self.injected = 0

    def add(self, tick: int) -> None:
        self._remaining.add(tick)

    def should_disconnect(self, session: Any) -> bool:
        if session.ticks in self._remaining:
            self._remaining.discard(session.ticks)
            self.injected += 1
            return True
        return False

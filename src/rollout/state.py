from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional


class RolloutPhase(str, Enum):
    PLANNED = "Planned"
    APPLYING = "Applying"
    MONITORING = "Monitoring"
    SUCCEEDED = "Succeeded"
    ROLLING_BACK = "RollingBack"
    SETTLED = "Settled"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES: FrozenSet[RolloutPhase] = frozenset(
    {RolloutPhase.SUCCEEDED, RolloutPhase.SETTLED, RolloutPhase.FAILED}
)

TRANSITIONS: Dict[RolloutPhase, FrozenSet[RolloutPhase]] = {
    RolloutPhase.PLANNED: frozenset({RolloutPhase.APPLYING}),
    RolloutPhase.APPLYING: frozenset({RolloutPhase.MONITORING, RolloutPhase.ROLLING_BACK}),
    RolloutPhase.MONITORING: frozenset({RolloutPhase.SUCCEEDED, RolloutPhase.ROLLING_BACK}),
    RolloutPhase.ROLLING_BACK: frozenset({RolloutPhase.SETTLED, RolloutPhase.FAILED}),
    RolloutPhase.SUCCEEDED: frozenset(),
    RolloutPhase.SETTLED: frozenset(),
    RolloutPhase.FAILED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    def __init__(self, source: RolloutPhase, dest: RolloutPhase) -> None:
        self.source = source
        self.dest = dest
        super().__init__(f"No transition from {source.value} to {dest.value}")


@dataclass(frozen=True)
class PhaseChange:
    source: RolloutPhase
    dest: RolloutPhase
    at: float


class PhaseMachine:
    """Rollout phase tracker; raises on any transition outside ``TRANSITIONS``.

    Reads of ``phase`` are safe from other threads; transitions happen on the
    thread driving the rollout.
    """

    def __init__(
        self,
        initial: RolloutPhase = RolloutPhase.PLANNED,
        *,
        clock: Callable[[], float],
        on_transition: Optional[Callable[[PhaseChange], None]] = None,
    ) -> None:
        self._phase = initial
        self._clock = clock
        self._on_transition = on_transition
        self._lock = threading.Lock()
        self.changes: List[PhaseChange] = []

    @property
    def phase(self) -> RolloutPhase:
        with self._lock:
            return self._phase

    def advance(self, dest: RolloutPhase) -> PhaseChange:
        with self._lock:
            source = self._phase
            if dest not in TRANSITIONS[source]:
                raise InvalidTransitionError(source, dest)
            change = PhaseChange(source, dest, self._clock())
            self._phase = dest
            self.changes.append(change)
        if self._on_transition:
            self._on_transition(change)
        return change


__all__ = [
    "InvalidTransitionError",
    "PhaseChange",
    "PhaseMachine",
    "RolloutPhase",
    "TERMINAL_PHASES",
    "TRANSITIONS",
]

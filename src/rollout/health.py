from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping

from src.common.identity import ResourceIdentity
from src.common.workloads import minimum_ready
from src.planner.actions import Action, ActionType


@dataclass
class WorkloadHealth:
    identity: ResourceIdentity
    minimum: int
    deadline: float
    consecutive: int = 0
    met_minimum: bool = False
    healthy: bool = False
    regressed: bool = False
    last_ready: int = 0
    last_failures: int = 0

    def observe(self, ready: int, failures: int, stability_polls: int) -> None:
        self.last_ready = ready
        self.last_failures = failures
        if ready >= self.minimum:
            self.met_minimum = True
            if failures == 0:
                self.consecutive += 1
            else:
                self.consecutive = 0
        else:
            if self.met_minimum:
                self.regressed = True
            self.consecutive = 0
        if self.consecutive >= stability_polls:
            self.healthy = True

    def observe_error(self) -> None:
        # An unreadable poll does not count towards the stability window.
        if not self.healthy:
            self.consecutive = 0


class HealthTracker:
    """Per-workload stability accounting for one monitoring pass.

    A workload is healthy once ``stability_polls`` consecutive polls saw at
    least ``minimum`` ready replicas and no failure events. Dropping below the
    minimum after having met it is a regression. Each workload has its own
    deadline measured from when monitoring started.
    """

    def __init__(
        self,
        minimums: Mapping[ResourceIdentity, int],
        *,
        stability_polls: int,
        started_at: float,
        timeout_seconds: float,
    ) -> None:
        self.stability_polls = stability_polls
        self.workloads: Dict[ResourceIdentity, WorkloadHealth] = {
            identity: WorkloadHealth(identity, minimum, started_at + timeout_seconds)
            for identity, minimum in minimums.items()
        }

    def __iter__(self):
        return iter(self.workloads)

    def observe(self, identity: ResourceIdentity, ready: int, failures: int) -> WorkloadHealth:
        status = self.workloads[identity]
        status.observe(ready, failures, self.stability_polls)
        return status

    def observe_error(self, identity: ResourceIdentity) -> None:
        self.workloads[identity].observe_error()

    @property
    def all_healthy(self) -> bool:
        return all(status.healthy for status in self.workloads.values())

    def regressed(self) -> List[ResourceIdentity]:
        return [identity for identity, status in self.workloads.items() if status.regressed]

    def timed_out(self, now: float) -> List[ResourceIdentity]:
        return [
            identity
            for identity, status in self.workloads.items()
            if not status.healthy and now >= status.deadline
        ]


def workload_minimums(actions: Iterable[Action]) -> Dict[ResourceIdentity, int]:
    """Workloads created or updated by ``actions`` with their ready minimum."""

    minimums: Dict[ResourceIdentity, int] = {}
    for action in actions:
        if action.type is ActionType.DELETE or action.after is None:
            continue
        if action.identity.is_workload:
            minimums[action.identity] = minimum_ready(action.after)
    return minimums


__all__ = ["HealthTracker", "WorkloadHealth", "workload_minimums"]

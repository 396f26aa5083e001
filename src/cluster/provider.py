"""Boundary between the core and the cluster it manages."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, Mapping, Protocol, Sequence

from src.common.config import Environment
from src.common.identity import ResourceIdentity

if TYPE_CHECKING:
    from src.planner.actions import Action


@dataclass(frozen=True)
class ClusterSnapshot:
    """Observed resources for one environment, read in a single pass."""

    environment: str
    captured_at: float
    resources: Mapping[ResourceIdentity, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def of(cls, environment: str, documents: Iterable[Dict[str, Any]], captured_at: float) -> "ClusterSnapshot":
        resources: Dict[ResourceIdentity, Dict[str, Any]] = {}
        for document in documents:
            resources[ResourceIdentity.from_document(document)] = copy.deepcopy(document)
        return cls(environment=environment, captured_at=captured_at, resources=resources)

    def get(self, identity: ResourceIdentity) -> Dict[str, Any]:
        return copy.deepcopy(self.resources[identity])

    def __contains__(self, identity: object) -> bool:
        return identity in self.resources

    def __len__(self) -> int:
        return len(self.resources)


class ClusterStateProvider(Protocol):
    def fetch_snapshot(self, environment: Environment) -> ClusterSnapshot: ...

    def apply_action(self, action: "Action") -> None: ...

    def delete_action(self, action: "Action") -> None: ...

    def validate_actions(self, environment: Environment, actions: Sequence["Action"]) -> None: ...


class HealthSignal(Protocol):
    def ready_count(self, workload: ResourceIdentity) -> int: ...

    def recent_failure_events(self, workload: ResourceIdentity, window_seconds: float) -> int: ...


__all__ = ["ClusterSnapshot", "ClusterStateProvider", "HealthSignal"]

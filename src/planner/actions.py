from __future__ import annotations

import copy
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Tuple

from src.common.identity import ResourceIdentity


class ActionType(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


@dataclass(frozen=True)
class Action:
    type: ActionType
    identity: ResourceIdentity
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        return f"{self.type.value} {self.identity}"

    def inverse(self) -> "Action":
        if self.type is ActionType.CREATE:
            return Action(ActionType.DELETE, self.identity, before=copy.deepcopy(self.after), after=None)
        if self.type is ActionType.DELETE:
            return Action(ActionType.CREATE, self.identity, before=None, after=copy.deepcopy(self.before))
        return Action(ActionType.UPDATE, self.identity, before=copy.deepcopy(self.after), after=copy.deepcopy(self.before))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "identity": self.identity.to_dict(),
            "before": self.before,
            "after": self.after,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Action":
        return cls(
            type=ActionType(data["type"]),
            identity=ResourceIdentity.from_dict(data["identity"]),
            before=data.get("before"),
            after=data.get("after"),
        )


def new_plan_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class Plan:
    """Ordered actions reconciling observed state with a target ManifestSet."""

    environment: str
    actions: Tuple[Action, ...]
    created_at: float
    snapshot_captured_at: float
    target_digest: str = ""
    id: str = field(default_factory=new_plan_id)

    def __iter__(self) -> Iterator[Action]:
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    @property
    def empty(self) -> bool:
        return not self.actions

    def summary(self) -> Dict[str, int]:
        counts = {action_type.value: 0 for action_type in ActionType}
        for action in self.actions:
            counts[action.type.value] += 1
        return counts

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "environment": self.environment,
                "created_at": self.created_at,
                "snapshot_captured_at": self.snapshot_captured_at,
                "target_digest": self.target_digest,
                "actions": [action.to_dict() for action in self.actions],
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> "Plan":
        data = json.loads(raw)
        return cls(
            id=str(data["id"]),
            environment=str(data["environment"]),
            created_at=float(data["created_at"]),
            snapshot_captured_at=float(data["snapshot_captured_at"]),
            target_digest=str(data.get("target_digest") or ""),
            actions=tuple(Action.from_dict(item) for item in data.get("actions") or []),
        )


__all__ = ["Action", "ActionType", "Plan", "new_plan_id"]

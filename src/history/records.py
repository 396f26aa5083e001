from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from src.planner.actions import Plan
from src.renderer.manifest_set import ManifestSet


class RolloutResult(str, Enum):
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"

    @property
    def terminal(self) -> bool:
        return self is not RolloutResult.IN_PROGRESS


class RecordKind(str, Enum):
    APPLY = "apply"
    ROLLBACK = "rollback"


def new_record_id() -> str:
    return f"r-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class RolloutRecord:
    """One rollout attempt.

    ``plan_json`` is the plan that was executed and ``manifest_json`` the
    ManifestSet it converged towards (empty when the plan was an inverse with
    no rendered target). Secret documents only carry version pins.
    """

    environment: str
    plan_id: str
    applied_at: float
    result: RolloutResult = RolloutResult.IN_PROGRESS
    kind: RecordKind = RecordKind.APPLY
    previous_id: Optional[str] = None
    finished_at: Optional[float] = None
    plan_json: str = ""
    manifest_json: str = ""
    detail: str = ""
    id: str = field(default_factory=new_record_id)

    @property
    def last_activity_at(self) -> float:
        return self.finished_at if self.finished_at is not None else self.applied_at

    def plan(self) -> Optional[Plan]:
        return Plan.from_json(self.plan_json) if self.plan_json else None

    def manifest_set(self) -> Optional[ManifestSet]:
        return ManifestSet.from_json(self.manifest_json) if self.manifest_json else None

    def to_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "environment": self.environment,
            "plan_id": self.plan_id,
            "kind": self.kind.value,
            "result": self.result.value,
            "applied_at": self.applied_at,
            "finished_at": self.finished_at,
            "previous_id": self.previous_id,
            "detail": self.detail,
        }


__all__ = ["RecordKind", "RolloutRecord", "RolloutResult", "new_record_id"]

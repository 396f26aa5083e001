from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional

import structlog

from src.cluster.provider import ClusterSnapshot
from src.common.errors import PlanError, PlanFailure
from src.common.identity import ENVIRONMENT_LABEL, MANAGED_BY_LABEL, MANAGED_BY_VALUE
from src.renderer.manifest_set import ManifestSet

from .normalize import documents_equal
from .ordering import order_actions
from .actions import Action, ActionType, Plan

if TYPE_CHECKING:
    from src.history.records import RolloutRecord

logger = structlog.get_logger(__name__)


def is_managed_by(document: Mapping[str, Any], environment: str) -> bool:
    metadata = document.get("metadata") if isinstance(document.get("metadata"), dict) else {}
    labels = metadata.get("labels") if isinstance(metadata.get("labels"), dict) else {}
    return labels.get(MANAGED_BY_LABEL) == MANAGED_BY_VALUE and labels.get(ENVIRONMENT_LABEL) == environment


def plan(
    target: ManifestSet,
    observed: ClusterSnapshot,
    latest_record: Optional["RolloutRecord"] = None,
    *,
    clock: Callable[[], float] = time.time,
) -> Plan:
    """Compute the actions that move ``observed`` to ``target``.

    Raises ``PlanError(SnapshotStale)`` when the snapshot was captured before
    the environment's most recent rollout activity.
    """

    if observed.environment != target.environment:
        raise ValueError(
            f"snapshot for {observed.environment} cannot plan manifests for {target.environment}"
        )
    if latest_record is not None and observed.captured_at < latest_record.last_activity_at:
        raise PlanError(
            PlanFailure.SNAPSHOT_STALE,
            f"snapshot captured at {observed.captured_at:.3f} precedes record "
            f"{latest_record.id} ({latest_record.last_activity_at:.3f}); re-fetch and plan again",
        )

    actions: List[Action] = []
    for identity in target:
        desired = target[identity]
        if identity not in observed:
            actions.append(Action(ActionType.CREATE, identity, before=None, after=desired))
            continue
        current = observed.get(identity)
        if not documents_equal(current, desired):
            actions.append(Action(ActionType.UPDATE, identity, before=current, after=desired))

    for identity, current in observed.resources.items():
        if identity in target:
            continue
        if is_managed_by(current, target.environment):
            actions.append(Action(ActionType.DELETE, identity, before=observed.get(identity), after=None))

    result = Plan(
        environment=target.environment,
        actions=tuple(order_actions(actions)),
        created_at=clock(),
        snapshot_captured_at=observed.captured_at,
        target_digest=target.digest(),
    )
    logger.info("plan_computed", environment=target.environment, plan_id=result.id, **_summary_fields(result))
    return result


def inverse_plan(actions: List[Action], environment: str, *, snapshot_captured_at: float, clock: Callable[[], float] = time.time) -> Plan:
    """Plan undoing ``actions``: created resources go, updated and deleted ones come back."""

    return Plan(
        environment=environment,
        actions=tuple(order_actions(action.inverse() for action in actions)),
        created_at=clock(),
        snapshot_captured_at=snapshot_captured_at,
    )


def _summary_fields(result: Plan) -> Dict[str, int]:
    return {key.lower(): value for key, value in result.summary().items()}


__all__ = ["inverse_plan", "is_managed_by", "plan"]

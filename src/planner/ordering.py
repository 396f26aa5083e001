from __future__ import annotations

from typing import Dict, Iterable, List, Tuple

from src.common.identity import ResourceIdentity

from .actions import Action, ActionType

NAMESPACE_TIER = 0
DEFINITION_TIER = 10
CONFIG_TIER = 20
UNKNOWN_TIER = 30
WORKLOAD_TIER = 40
NETWORK_TIER = 50

KIND_PRIORITY: Dict[str, int] = {
    "Namespace": NAMESPACE_TIER,
    "CustomResourceDefinition": DEFINITION_TIER,
    "StorageClass": DEFINITION_TIER,
    "PersistentVolume": DEFINITION_TIER,
    "ServiceAccount": CONFIG_TIER,
    "ClusterRole": CONFIG_TIER,
    "ClusterRoleBinding": CONFIG_TIER + 1,
    "Role": CONFIG_TIER,
    "RoleBinding": CONFIG_TIER + 1,
    "ConfigMap": CONFIG_TIER,
    "Secret": CONFIG_TIER,
    "PersistentVolumeClaim": CONFIG_TIER + 2,
    "Deployment": WORKLOAD_TIER,
    "StatefulSet": WORKLOAD_TIER,
    "DaemonSet": WORKLOAD_TIER,
    "ReplicaSet": WORKLOAD_TIER,
    "Job": WORKLOAD_TIER,
    "CronJob": WORKLOAD_TIER,
    "Pod": WORKLOAD_TIER,
    "HorizontalPodAutoscaler": WORKLOAD_TIER + 1,
    "PodDisruptionBudget": WORKLOAD_TIER + 1,
    "Service": NETWORK_TIER,
    "Ingress": NETWORK_TIER + 1,
    "NetworkPolicy": NETWORK_TIER + 1,
}


def priority(identity: ResourceIdentity) -> int:
    return KIND_PRIORITY.get(identity.kind, UNKNOWN_TIER)


def sort_key(identity: ResourceIdentity) -> Tuple[int, str, str, str]:
    return (priority(identity), identity.kind, identity.namespace, identity.name)


def order_actions(actions: Iterable[Action]) -> List[Action]:
    """Creates and updates in dependency order, then deletes in reverse order.

    Dependencies exist before dependents, and a namespace is only deleted after
    everything inside it.
    """

    actions = list(actions)
    applies = [action for action in actions if action.type is not ActionType.DELETE]
    deletes = [action for action in actions if action.type is ActionType.DELETE]
    ordered = sorted(applies, key=lambda action: sort_key(action.identity))
    ordered.extend(sorted(deletes, key=lambda action: sort_key(action.identity), reverse=True))
    return ordered


__all__ = ["KIND_PRIORITY", "order_actions", "priority", "sort_key"]

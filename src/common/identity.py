"""Resource identities and kind normalisation shared across components."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Mapping, Optional

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "rolloutctl"
ENVIRONMENT_LABEL = "rollout.io/environment"
MIN_READY_ANNOTATION = "rollout.io/min-ready"
SECRET_KEYS_ANNOTATION = "rollout.io/secret-keys"
SECRET_VERSIONS_ANNOTATION = "rollout.io/secret-versions"


_KIND_NORMALISATION_MAP = {
    # Namespaces
    "ns": "Namespace",
    "namespace": "Namespace",
    "namespaces": "Namespace",
    # Config / secret objects
    "cm": "ConfigMap",
    "configmap": "ConfigMap",
    "configmaps": "ConfigMap",
    "secret": "Secret",
    "secrets": "Secret",
    "sa": "ServiceAccount",
    "serviceaccount": "ServiceAccount",
    "pvc": "PersistentVolumeClaim",
    "persistentvolumeclaim": "PersistentVolumeClaim",
    "crd": "CustomResourceDefinition",
    "customresourcedefinition": "CustomResourceDefinition",
    "role": "Role",
    "rolebinding": "RoleBinding",
    "clusterrole": "ClusterRole",
    "clusterrolebinding": "ClusterRoleBinding",
    # Workloads
    "deploy": "Deployment",
    "deployment": "Deployment",
    "deployments": "Deployment",
    "sts": "StatefulSet",
    "statefulset": "StatefulSet",
    "ds": "DaemonSet",
    "daemonset": "DaemonSet",
    "rs": "ReplicaSet",
    "replicaset": "ReplicaSet",
    "job": "Job",
    "cronjob": "CronJob",
    "pod": "Pod",
    "po": "Pod",
    # Network-exposing objects
    "svc": "Service",
    "service": "Service",
    "services": "Service",
    "ing": "Ingress",
    "ingress": "Ingress",
    "netpol": "NetworkPolicy",
    "networkpolicy": "NetworkPolicy",
    "hpa": "HorizontalPodAutoscaler",
    "horizontalpodautoscaler": "HorizontalPodAutoscaler",
    "pdb": "PodDisruptionBudget",
    "poddisruptionbudget": "PodDisruptionBudget",
}

CLUSTER_SCOPED_KINDS = frozenset(
    {
        "Namespace",
        "CustomResourceDefinition",
        "ClusterRole",
        "ClusterRoleBinding",
        "PersistentVolume",
        "StorageClass",
    }
)

# Kinds whose readiness is tracked while a rollout is monitored.
WORKLOAD_KINDS = frozenset({"Deployment", "StatefulSet", "DaemonSet", "ReplicaSet"})


@lru_cache(maxsize=None)
def normalise_kind(kind: Optional[str]) -> str:
    """Map a raw or abbreviated kind to its canonical Kubernetes spelling."""

    key = (kind or "").strip()
    if not key:
        return ""
    return _KIND_NORMALISATION_MAP.get(key.lower(), key)


@dataclass(frozen=True, order=True)
class ResourceIdentity:
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"

    @property
    def is_workload(self) -> bool:
        return self.kind in WORKLOAD_KINDS

    @classmethod
    def of(cls, kind: str, name: str, namespace: Optional[str] = None) -> "ResourceIdentity":
        canonical = normalise_kind(kind)
        ns = "" if canonical in CLUSTER_SCOPED_KINDS else (namespace or "")
        return cls(kind=canonical, namespace=ns, name=name)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "ResourceIdentity":
        metadata = document.get("metadata")
        if not isinstance(metadata, dict):
            raise ValueError("resource document is missing metadata")
        kind = document.get("kind")
        name = metadata.get("name")
        if not isinstance(kind, str) or not kind.strip():
            raise ValueError("resource document is missing kind")
        if not isinstance(name, str) or not name.strip():
            raise ValueError(f"{kind} document is missing metadata.name")
        return cls.of(kind, name, metadata.get("namespace"))

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "namespace": self.namespace, "name": self.name}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResourceIdentity":
        return cls(
            kind=str(data["kind"]),
            namespace=str(data.get("namespace") or ""),
            name=str(data["name"]),
        )


def is_cluster_scoped(kind: str) -> bool:
    return normalise_kind(kind) in CLUSTER_SCOPED_KINDS


__all__ = [
    "CLUSTER_SCOPED_KINDS",
    "ENVIRONMENT_LABEL",
    "MANAGED_BY_LABEL",
    "MANAGED_BY_VALUE",
    "MIN_READY_ANNOTATION",
    "SECRET_KEYS_ANNOTATION",
    "SECRET_VERSIONS_ANNOTATION",
    "ResourceIdentity",
    "WORKLOAD_KINDS",
    "is_cluster_scoped",
    "normalise_kind",
]

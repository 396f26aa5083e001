from __future__ import annotations

import copy
from typing import Any, Dict, Mapping

SERVER_METADATA_FIELDS = (
    "creationTimestamp",
    "resourceVersion",
    "uid",
    "generation",
    "managedFields",
    "selfLink",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
)

SERVER_ANNOTATIONS = (
    "kubectl.kubernetes.io/last-applied-configuration",
    "deployment.kubernetes.io/revision",
)


def normalize(document: Mapping[str, Any]) -> Dict[str, Any]:
    """Strip server-populated fields so only declared intent is compared."""

    result = copy.deepcopy(dict(document))
    result.pop("status", None)

    metadata = result.get("metadata")
    if isinstance(metadata, dict):
        for field in SERVER_METADATA_FIELDS:
            metadata.pop(field, None)
        annotations = metadata.get("annotations")
        if isinstance(annotations, dict):
            for name in SERVER_ANNOTATIONS:
                annotations.pop(name, None)
            if not annotations:
                metadata.pop("annotations")
        labels = metadata.get("labels")
        if isinstance(labels, dict) and not labels:
            metadata.pop("labels")

    kind = result.get("kind")
    if kind == "Secret":
        # Secrets compare by the versions pinned in their annotations.
        result.pop("data", None)
        result.pop("stringData", None)
    elif kind == "Service":
        spec = result.get("spec")
        if isinstance(spec, dict):
            spec.pop("clusterIP", None)
            spec.pop("clusterIPs", None)
    return result


def documents_equal(left: Mapping[str, Any], right: Mapping[str, Any]) -> bool:
    return normalize(left) == normalize(right)


__all__ = ["SERVER_ANNOTATIONS", "SERVER_METADATA_FIELDS", "documents_equal", "normalize"]

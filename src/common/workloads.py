from __future__ import annotations

from typing import Any, Dict, List, Mapping, Tuple

from .identity import MIN_READY_ANNOTATION


def collect_pod_specs(manifest: Mapping[str, Any]) -> List[Dict[str, Any]]:
    specs: List[Dict[str, Any]] = []

    def visit(spec: Any) -> None:
        if not isinstance(spec, dict):
            return
        if any(isinstance(spec.get(key), list) for key in ("containers", "initContainers")):
            specs.append(spec)
        template = spec.get("template")
        if isinstance(template, dict):
            visit(template.get("spec"))
        job_template = spec.get("jobTemplate")
        if isinstance(job_template, dict):
            visit(job_template.get("spec"))

    visit(manifest.get("spec"))
    return specs


def collect_containers(
    manifest: Mapping[str, Any],
    *,
    container_types: Tuple[str, ...] = ("containers", "initContainers"),
) -> List[Dict[str, Any]]:
    containers: List[Dict[str, Any]] = []
    for spec in collect_pod_specs(manifest):
        for ctype in container_types:
            raw_containers = spec.get(ctype)
            if isinstance(raw_containers, list):
                containers.extend([c for c in raw_containers if isinstance(c, dict)])
    return containers


def minimum_ready(manifest: Mapping[str, Any]) -> int:
    """Ready replicas a workload must report to count as healthy."""

    metadata = manifest.get("metadata") if isinstance(manifest.get("metadata"), dict) else {}
    annotations = metadata.get("annotations") if isinstance(metadata.get("annotations"), dict) else {}
    override = annotations.get(MIN_READY_ANNOTATION)
    if override is not None:
        try:
            return max(0, int(str(override).strip()))
        except ValueError:
            pass
    spec = manifest.get("spec")
    if isinstance(spec, dict):
        replicas = spec.get("replicas")
        if isinstance(replicas, int) and not isinstance(replicas, bool):
            return max(0, replicas)
    return 1


def split_image(image: str) -> Tuple[str, str]:
    """Split an image reference into (repository, suffix) where suffix keeps its ':' or '@'."""

    if "@" in image:
        repo, digest = image.split("@", 1)
        return repo, f"@{digest}"
    slash = image.rfind("/")
    colon = image.rfind(":")
    if colon > slash:
        return image[:colon], image[colon:]
    return image, ""


__all__ = ["collect_containers", "collect_pod_specs", "minimum_ready", "split_image"]

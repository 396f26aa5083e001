from __future__ import annotations

from typing import List

from src.common.config import Environment
from src.common.errors import ImagePolicyError
from src.common.workloads import collect_containers, split_image

from .manifest_set import ManifestSet


def image_policy_violations(manifest_set: ManifestSet) -> List[str]:
    """Containers pinned to ``:latest`` or to no tag at all."""

    violations: List[str] = []
    for identity in manifest_set:
        for container in collect_containers(manifest_set[identity]):
            image = container.get("image")
            name = container.get("name", "?")
            if not isinstance(image, str) or not image.strip():
                violations.append(f"{identity} container {name} has no image")
                continue
            _, suffix = split_image(image.strip())
            if suffix == ":latest":
                violations.append(f"{identity} container {name} uses :latest")
            elif not suffix:
                violations.append(f"{identity} container {name} image {image} has no tag")
    return violations


def check_image_policy(manifest_set: ManifestSet, environment: Environment) -> List[str]:
    violations = image_policy_violations(manifest_set)
    if violations and environment.strict_validation:
        raise ImagePolicyError(environment.name, violations)
    return violations


__all__ = ["check_image_policy", "image_policy_violations"]

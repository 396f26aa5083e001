from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from src.common.config import Environment
from src.common.errors import RenderError, RenderFailure
from src.common.identity import (
    ENVIRONMENT_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    SECRET_KEYS_ANNOTATION,
    ResourceIdentity,
    is_cluster_scoped,
)
from src.common.workloads import collect_containers, split_image

from .manifest_set import ManifestSet
from .merge import PatchError, apply_json_patch, strategic_merge
from .overlay import ImageOverride, Overlay, PatchSpec, SecretDeclaration, load_overlay

logger = structlog.get_logger(__name__)


class Renderer:
    """Resolves an environment's overlay into a ManifestSet.

    Rendering reads the overlay inputs and nothing else: the same files always
    produce the same ManifestSet.
    """

    def __init__(self, manifests_dir: Path) -> None:
        self.manifests_dir = Path(manifests_dir)

    def render(self, environment: Environment) -> ManifestSet:
        overlay = load_overlay(self.manifests_dir, environment.name)
        namespace = overlay.namespace or environment.namespace
        merge_keys = dict(overlay.base.merge_keys)
        merge_keys.update(overlay.merge_keys)

        documents: Dict[ResourceIdentity, Dict[str, Any]] = {}
        for raw in overlay.base.documents:
            document = copy.deepcopy(raw)
            _set_namespace(document, namespace)
            identity = ResourceIdentity.from_document(document)
            if identity in documents:
                raise RenderError(RenderFailure.MISSING_BASE, environment.name, f"duplicate base resource {identity}")
            documents[identity] = document

        for patch in overlay.patches:
            identity = ResourceIdentity.of(patch.target_kind, patch.target_name, namespace)
            if identity not in documents:
                raise RenderError(
                    RenderFailure.MISSING_BASE,
                    environment.name,
                    f"{patch.describe()} targets {identity}, which is not in the base",
                )
            documents[identity] = _apply_patch(documents[identity], patch, merge_keys, environment.name)
            if ResourceIdentity.from_document(documents[identity]) != identity:
                raise RenderError(
                    RenderFailure.INVALID_PATCH,
                    environment.name,
                    f"{patch.describe()} may not change the identity of {identity}",
                )

        for document in documents.values():
            _apply_images(document, overlay.images)
            _apply_resource_profile(document, environment)

        for declaration in overlay.secrets:
            secret = _secret_document(declaration, namespace)
            identity = ResourceIdentity.from_document(secret)
            if identity in documents:
                raise RenderError(RenderFailure.INVALID_PATCH, environment.name, f"secret {identity} is already defined in the base")
            documents[identity] = secret

        if overlay.create_namespace:
            ns_doc = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace}}
            documents.setdefault(ResourceIdentity.from_document(ns_doc), ns_doc)

        for document in documents.values():
            _apply_labels(document, environment.name, overlay)

        manifest_set = ManifestSet(environment.name, documents.items())
        logger.debug(
            "manifests_rendered",
            environment=environment.name,
            resources=len(manifest_set),
            patches=len(overlay.patches),
            digest=manifest_set.digest(),
        )
        return manifest_set


def render(environment: Environment, manifests_dir: Path) -> ManifestSet:
    return Renderer(manifests_dir).render(environment)


def _apply_patch(document: Dict[str, Any], patch: PatchSpec, merge_keys: Dict[str, str], environment: str) -> Dict[str, Any]:
    try:
        if patch.merge is not None:
            return strategic_merge(document, patch.merge, merge_keys)
        return apply_json_patch(document, patch.json or [])
    except PatchError as exc:
        raise RenderError(RenderFailure.INVALID_PATCH, environment, f"{patch.describe()}: {exc}") from exc


def _set_namespace(document: Dict[str, Any], namespace: str) -> None:
    if is_cluster_scoped(str(document.get("kind", ""))):
        return
    metadata = document.setdefault("metadata", {})
    metadata["namespace"] = namespace


def _apply_labels(document: Dict[str, Any], environment: str, overlay: Overlay) -> None:
    metadata = document.setdefault("metadata", {})
    labels = metadata.get("labels")
    if not isinstance(labels, dict):
        labels = {}
    labels.update(overlay.labels)
    labels[MANAGED_BY_LABEL] = MANAGED_BY_VALUE
    labels[ENVIRONMENT_LABEL] = environment
    metadata["labels"] = labels


def _apply_images(document: Dict[str, Any], overrides: List[ImageOverride]) -> None:
    if not overrides:
        return
    for container in collect_containers(document):
        image = container.get("image")
        if not isinstance(image, str):
            continue
        repository, suffix = split_image(image)
        override = _find_override(repository, overrides)
        if override is None:
            continue
        new_repository = override.new_name or repository
        if override.digest:
            suffix = f"@{override.digest}"
        elif override.new_tag:
            suffix = f":{override.new_tag}"
        container["image"] = f"{new_repository}{suffix}"


def _find_override(repository: str, overrides: List[ImageOverride]) -> Optional[ImageOverride]:
    for override in overrides:
        if override.name == repository:
            return override
    return None


def _apply_resource_profile(document: Dict[str, Any], environment: Environment) -> None:
    for container in collect_containers(document):
        resources = container.get("resources")
        if not isinstance(resources, dict):
            container["resources"] = environment.resource_profile.to_resources()
            continue
        for scope, defaults in (
            ("requests", environment.resource_profile.requests),
            ("limits", environment.resource_profile.limits),
        ):
            block = resources.get(scope)
            if not isinstance(block, dict):
                resources[scope] = dict(defaults)
                continue
            for resource_name, amount in defaults.items():
                block.setdefault(resource_name, amount)


def _secret_document(declaration: SecretDeclaration, namespace: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": declaration.secret_type,
        "metadata": {
            "name": declaration.name,
            "namespace": namespace,
            "annotations": {SECRET_KEYS_ANNOTATION: ",".join(declaration.keys)},
        },
    }


__all__ = ["Renderer", "render"]

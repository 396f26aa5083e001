"""Loading of base and overlay definitions from disk."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from src.common.errors import RenderError, RenderFailure
from src.common.identity import ResourceIdentity, normalise_kind

BASE_FILE = "base.yaml"
OVERLAY_FILE = "overlay.yaml"


@dataclass(frozen=True)
class PatchSpec:
    target_kind: str
    target_name: str
    merge: Optional[Dict[str, Any]] = None
    json: Optional[List[Dict[str, Any]]] = None
    source: str = ""

    def describe(self) -> str:
        label = f"{self.target_kind}/{self.target_name}"
        return f"{label} ({self.source})" if self.source else label


@dataclass(frozen=True)
class ImageOverride:
    name: str
    new_name: Optional[str] = None
    new_tag: Optional[str] = None
    digest: Optional[str] = None


@dataclass(frozen=True)
class SecretDeclaration:
    name: str
    keys: Tuple[str, ...]
    secret_type: str = "Opaque"


@dataclass
class Base:
    path: Path
    documents: List[Dict[str, Any]]
    merge_keys: Dict[str, str] = field(default_factory=dict)


@dataclass
class Overlay:
    environment: str
    path: Path
    base: Base
    namespace: Optional[str] = None
    create_namespace: bool = False
    labels: Dict[str, str] = field(default_factory=dict)
    merge_keys: Dict[str, str] = field(default_factory=dict)
    patches: List[PatchSpec] = field(default_factory=list)
    images: List[ImageOverride] = field(default_factory=list)
    secrets: List[SecretDeclaration] = field(default_factory=list)


def load_overlay(manifests_dir: Path, environment: str) -> Overlay:
    overlay_dir = manifests_dir / "overlays" / environment
    overlay_file = overlay_dir / OVERLAY_FILE
    data = _read_mapping(overlay_file, environment, RenderFailure.UNRESOLVED_OVERLAY)

    base_dir = (overlay_dir / str(data.get("base") or "../../base")).resolve()
    base = load_base(base_dir, environment)

    patches: List[PatchSpec] = []
    for position, raw in enumerate(_as_list(data.get("patches"), "patches", environment)):
        patches.extend(_parse_patch(raw, overlay_dir, environment, position))

    return Overlay(
        environment=environment,
        path=overlay_dir,
        base=base,
        namespace=_optional_str(data.get("namespace")),
        create_namespace=bool(data.get("createNamespace", False)),
        labels={str(k): str(v) for k, v in (data.get("labels") or {}).items()},
        merge_keys={str(k): str(v) for k, v in (data.get("mergeKeys") or {}).items()},
        patches=patches,
        images=[_parse_image(raw, environment) for raw in _as_list(data.get("images"), "images", environment)],
        secrets=[_parse_secret(raw, environment) for raw in _as_list(data.get("secrets"), "secrets", environment)],
    )


def load_base(base_dir: Path, environment: str) -> Base:
    data = _read_mapping(base_dir / BASE_FILE, environment, RenderFailure.MISSING_BASE)
    documents: List[Dict[str, Any]] = []
    for resource in _as_list(data.get("resources"), "resources", environment):
        resource_path = base_dir / str(resource)
        try:
            raw_text = resource_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise RenderError(RenderFailure.MISSING_BASE, environment, f"base resource {resource_path} unreadable: {exc}") from exc
        try:
            loaded = list(yaml.safe_load_all(raw_text))
        except yaml.YAMLError as exc:
            raise RenderError(RenderFailure.MISSING_BASE, environment, f"base resource {resource_path} is not valid YAML: {exc}") from exc
        for document in loaded:
            if document is None:
                continue
            if not isinstance(document, dict):
                raise RenderError(RenderFailure.MISSING_BASE, environment, f"{resource_path} contains a non-mapping document")
            try:
                ResourceIdentity.from_document(document)
            except ValueError as exc:
                raise RenderError(RenderFailure.MISSING_BASE, environment, f"{resource_path}: {exc}") from exc
            documents.append(document)
    return Base(
        path=base_dir,
        documents=documents,
        merge_keys={str(k): str(v) for k, v in (data.get("mergeKeys") or {}).items()},
    )


def _read_mapping(path: Path, environment: str, failure: RenderFailure) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise RenderError(failure, environment, f"{path} not found") from exc
    except yaml.YAMLError as exc:
        raise RenderError(failure, environment, f"{path} is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise RenderError(failure, environment, f"{path} must contain a mapping")
    return data


def _parse_patch(raw: Any, overlay_dir: Path, environment: str, position: int) -> List[PatchSpec]:
    if not isinstance(raw, dict):
        raise RenderError(RenderFailure.INVALID_PATCH, environment, f"patch #{position} must be a mapping")
    if "path" in raw:
        patch_file = overlay_dir / str(raw["path"])
        try:
            loaded = list(yaml.safe_load_all(patch_file.read_text(encoding="utf-8")))
        except OSError as exc:
            raise RenderError(RenderFailure.UNRESOLVED_OVERLAY, environment, f"patch file {patch_file} unreadable: {exc}") from exc
        except yaml.YAMLError as exc:
            raise RenderError(RenderFailure.INVALID_PATCH, environment, f"patch file {patch_file} is not valid YAML: {exc}") from exc
        specs: List[PatchSpec] = []
        for document in loaded:
            if document is None:
                continue
            specs.extend(_parse_patch(document, overlay_dir, environment, position))
        return specs

    target = raw.get("target")
    if not isinstance(target, dict) or not target.get("kind") or not target.get("name"):
        raise RenderError(RenderFailure.INVALID_PATCH, environment, f"patch #{position} needs target.kind and target.name")
    merge = raw.get("merge")
    json_ops = raw.get("json")
    if (merge is None) == (json_ops is None):
        raise RenderError(RenderFailure.INVALID_PATCH, environment, f"patch #{position} must define exactly one of merge or json")
    if merge is not None and not isinstance(merge, dict):
        raise RenderError(RenderFailure.INVALID_PATCH, environment, f"patch #{position} merge must be a mapping")
    if json_ops is not None and not isinstance(json_ops, list):
        raise RenderError(RenderFailure.INVALID_PATCH, environment, f"patch #{position} json must be a list of operations")
    return [
        PatchSpec(
            target_kind=normalise_kind(str(target["kind"])),
            target_name=str(target["name"]),
            merge=merge,
            json=json_ops,
            source=f"patch #{position}",
        )
    ]


def _parse_image(raw: Any, environment: str) -> ImageOverride:
    if not isinstance(raw, dict) or not raw.get("name"):
        raise RenderError(RenderFailure.INVALID_PATCH, environment, "image overrides need a name")
    return ImageOverride(
        name=str(raw["name"]),
        new_name=_optional_str(raw.get("newName")),
        new_tag=_optional_str(raw.get("newTag")),
        digest=_optional_str(raw.get("digest")),
    )


def _parse_secret(raw: Any, environment: str) -> SecretDeclaration:
    if not isinstance(raw, dict) or not raw.get("name"):
        raise RenderError(RenderFailure.INVALID_PATCH, environment, "secret declarations need a name")
    keys = raw.get("keys") or []
    if not isinstance(keys, list) or not keys:
        raise RenderError(RenderFailure.INVALID_PATCH, environment, f"secret {raw['name']} must list its keys")
    return SecretDeclaration(
        name=str(raw["name"]),
        keys=tuple(sorted(str(key) for key in keys)),
        secret_type=str(raw.get("type") or "Opaque"),
    )


def _as_list(value: Any, label: str, environment: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise RenderError(RenderFailure.INVALID_PATCH, environment, f"{label} must be a list")
    return value


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = [
    "Base",
    "ImageOverride",
    "Overlay",
    "PatchSpec",
    "SecretDeclaration",
    "load_base",
    "load_overlay",
]

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional

import jsonpatch

DELETE_DIRECTIVE = "$patch"

DEFAULT_MERGE_KEYS: Dict[str, str] = {
    "containers": "name",
    "initContainers": "name",
    "ephemeralContainers": "name",
    "env": "name",
    "envFrom": "prefix",
    "volumes": "name",
    "volumeMounts": "mountPath",
    "imagePullSecrets": "name",
    "ports": "containerPort",
    "tolerations": "key",
}

# Service ports have no containerPort; they are keyed by port.
_FALLBACK_MERGE_KEYS: Dict[str, str] = {"ports": "port"}


class PatchError(Exception):
    """Raised when a patch cannot be applied to a document."""


def strategic_merge(
    document: Dict[str, Any],
    patch: Mapping[str, Any],
    merge_keys: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Merge ``patch`` into a copy of ``document``.

    Mappings merge recursively, scalars are replaced, and lists are merged by
    element name when a merge key is declared for the field. Lists without a
    merge key are replaced whole; elements are never matched by position.
    """

    keys = dict(DEFAULT_MERGE_KEYS)
    if merge_keys:
        keys.update(merge_keys)
    if not isinstance(patch, Mapping):
        raise PatchError("merge patch must be a mapping")
    return _merge_mapping(copy.deepcopy(document), patch, keys, path="")


def _merge_mapping(target: Dict[str, Any], patch: Mapping[str, Any], keys: Mapping[str, str], path: str) -> Dict[str, Any]:
    for field, value in patch.items():
        field_path = f"{path}/{field}"
        if value is None:
            target.pop(field, None)
            continue
        current = target.get(field)
        if isinstance(value, Mapping):
            if current is None:
                target[field] = _strip_directives(copy.deepcopy(dict(value)))
            elif isinstance(current, dict):
                target[field] = _merge_mapping(current, value, keys, field_path)
            else:
                raise PatchError(f"{field_path}: cannot merge a mapping into {type(current).__name__}")
        elif isinstance(value, list):
            if current is not None and not isinstance(current, list):
                raise PatchError(f"{field_path}: cannot merge a list into {type(current).__name__}")
            merge_key = _merge_key_for(field, current or [], value, keys)
            if merge_key is None or current is None:
                target[field] = [_strip_directives(copy.deepcopy(item)) for item in value if not _is_delete(item)]
            else:
                target[field] = _merge_named_list(current, value, merge_key, keys, field_path)
        else:
            if isinstance(current, (dict, list)):
                raise PatchError(f"{field_path}: cannot replace {type(current).__name__} with a scalar")
            target[field] = value
    return target


def _merge_key_for(field: str, current: List[Any], incoming: List[Any], keys: Mapping[str, str]) -> Optional[str]:
    key = keys.get(field)
    if key is None:
        return None
    elements = [item for item in list(current) + list(incoming) if isinstance(item, Mapping)]
    if elements and all(key in item for item in elements):
        return key
    fallback = _FALLBACK_MERGE_KEYS.get(field)
    if fallback and elements and all(fallback in item for item in elements):
        return fallback
    return key


def _merge_named_list(
    current: List[Any],
    incoming: List[Any],
    merge_key: str,
    keys: Mapping[str, str],
    path: str,
) -> List[Any]:
    merged: List[Any] = [copy.deepcopy(item) for item in current]
    index: Dict[Any, int] = {}
    for position, item in enumerate(merged):
        if not isinstance(item, dict) or merge_key not in item:
            raise PatchError(f"{path}: element without merge key {merge_key!r}")
        index[item[merge_key]] = position

    removed = set()
    for item in incoming:
        if not isinstance(item, Mapping) or merge_key not in item:
            raise PatchError(f"{path}: patch element without merge key {merge_key!r}")
        name = item[merge_key]
        if _is_delete(item):
            if name not in index:
                raise PatchError(f"{path}: cannot delete missing element {merge_key}={name}")
            removed.add(name)
            continue
        if name in index:
            merged[index[name]] = _merge_mapping(merged[index[name]], item, keys, f"{path}[{merge_key}={name}]")
        else:
            index[name] = len(merged)
            merged.append(_strip_directives(copy.deepcopy(dict(item))))
    return [item for item in merged if item.get(merge_key) not in removed]


def _is_delete(item: Any) -> bool:
    return isinstance(item, Mapping) and item.get(DELETE_DIRECTIVE) == "delete"


def _strip_directives(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_directives(v) for k, v in value.items() if k != DELETE_DIRECTIVE}
    if isinstance(value, list):
        return [_strip_directives(v) for v in value]
    return value


def apply_json_patch(document: Dict[str, Any], patch_ops: List[Dict[str, Any]]) -> Dict[str, Any]:
    if not isinstance(patch_ops, list):
        raise PatchError("json patch must be a list of operations")
    try:
        return jsonpatch.apply_patch(copy.deepcopy(document), patch_ops, in_place=False)
    except (jsonpatch.JsonPatchException, jsonpatch.JsonPointerException) as exc:
        raise PatchError(f"bad path or conflict: {exc}") from exc
    except (TypeError, KeyError, ValueError) as exc:
        raise PatchError(f"malformed json patch: {exc}") from exc


__all__ = [
    "DEFAULT_MERGE_KEYS",
    "PatchError",
    "apply_json_patch",
    "strategic_merge",
]

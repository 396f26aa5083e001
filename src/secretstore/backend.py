"""Storage backends for versioned secret material.

Backends keep every version of a key so a rollout (or its rollback) can read
exactly the version it pinned, while ``current`` serves the newest one.
"""

from __future__ import annotations

import base64
import json
import re
import threading
from typing import Dict, List, Mapping, Optional, Protocol

from pydantic import SecretStr

from src.cluster.kubectl import KubectlError, KubectlRunner
from src.common.config import Environment
from src.common.errors import ClusterError

from .models import SecretEntry

STORE_SECRET_NAME = "rolloutctl-secret-store"
_CURRENT_PREFIX = "rollout.io/current."


class SecretBackend(Protocol):
    def current(self, environment: Environment) -> Dict[str, SecretEntry]: ...

    def version(self, environment: Environment, key: str, version: int) -> Optional[SecretEntry]: ...

    def write(self, environment: Environment, entry: SecretEntry) -> None: ...

    def delete(self, environment: Environment, key: str) -> None: ...


class InMemorySecretBackend:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._versions: Dict[str, Dict[str, List[SecretEntry]]] = {}
        self._deleted: Dict[str, set] = {}

    def current(self, environment: Environment) -> Dict[str, SecretEntry]:
        with self._lock:
            keys = self._versions.get(environment.name, {})
            deleted = self._deleted.get(environment.name, set())
            return {key: versions[-1] for key, versions in keys.items() if versions and key not in deleted}

    def version(self, environment: Environment, key: str, version: int) -> Optional[SecretEntry]:
        with self._lock:
            for entry in self._versions.get(environment.name, {}).get(key, []):
                if entry.version == version:
                    return entry
        return None

    def write(self, environment: Environment, entry: SecretEntry) -> None:
        with self._lock:
            versions = self._versions.setdefault(environment.name, {}).setdefault(entry.key, [])
            latest = versions[-1].version if versions else 0
            if entry.version != latest + 1:
                raise ValueError(f"version {entry.version} of {entry.key} does not follow {latest}")
            versions.append(entry)
            self._deleted.get(environment.name, set()).discard(entry.key)

    def delete(self, environment: Environment, key: str) -> None:
        with self._lock:
            self._deleted.setdefault(environment.name, set()).add(key)


class KubectlSecretBackend:
    """Keeps versions in a dedicated Secret inside the environment namespace.

    Each write replaces the whole Secret object, carrying its resourceVersion,
    so a concurrent writer makes the replace fail instead of merging. Data keys
    are ``<key>.v<version>``; annotations record the current version and when
    it was written.
    """

    def __init__(self, runner: Optional[KubectlRunner] = None) -> None:
        self.runner = runner or KubectlRunner()

    def current(self, environment: Environment) -> Dict[str, SecretEntry]:
        store = self._read(environment)
        if store is None:
            return {}
        result: Dict[str, SecretEntry] = {}
        for key, (version, stamp) in _current_versions(store).items():
            entry = _entry_from_store(store, key, version, stamp)
            if entry is not None:
                result[key] = entry
        return result

    def version(self, environment: Environment, key: str, version: int) -> Optional[SecretEntry]:
        store = self._read(environment)
        if store is None:
            return None
        current_version, stamp = _current_versions(store).get(key, (0, 0.0))
        if current_version != version:
            stamp = 0.0
        return _entry_from_store(store, key, version, stamp)

    def write(self, environment: Environment, entry: SecretEntry) -> None:
        store = self._read(environment)
        creating = store is None
        if store is None:
            store = {
                "apiVersion": "v1",
                "kind": "Secret",
                "type": "Opaque",
                "metadata": {"name": STORE_SECRET_NAME, "namespace": environment.namespace, "annotations": {}},
                "data": {},
            }
        metadata = store.setdefault("metadata", {})
        annotations = metadata.setdefault("annotations", {}) or {}
        metadata["annotations"] = annotations
        data = store.setdefault("data", {}) or {}
        store["data"] = data

        latest = _latest_version(store, entry.key)
        if entry.version != latest + 1:
            raise ValueError(f"version {entry.version} of {entry.key} does not follow {latest}")
        encoded = base64.b64encode(entry.value.get_secret_value().encode("utf-8")).decode("ascii")
        data[f"{entry.key}.v{entry.version}"] = encoded
        annotations[f"{_CURRENT_PREFIX}{entry.key}"] = f"{entry.version}:{entry.last_rotated_at}"
        self._submit(environment, store, creating)

    def delete(self, environment: Environment, key: str) -> None:
        store = self._read(environment)
        if store is None:
            return
        annotations = store.get("metadata", {}).get("annotations") or {}
        if annotations.pop(f"{_CURRENT_PREFIX}{key}", None) is None:
            return
        self._submit(environment, store, creating=False)

    def _read(self, environment: Environment) -> Optional[Dict]:
        try:
            return self.runner.run_json(
                ["get", "secret", STORE_SECRET_NAME, "-n", environment.namespace, *environment.kubectl_flags()]
            )
        except KubectlError as exc:
            if exc.not_found:
                return None
            raise

    def _submit(self, environment: Environment, store: Dict, creating: bool) -> None:
        verb = "create" if creating else "replace"
        try:
            self.runner.run([verb, "-f", "-", *environment.kubectl_flags()], input_text=json.dumps(store))
        except KubectlError as exc:
            raise ClusterError(f"secret store {verb} failed: {exc.detail}") from exc


def _current_versions(store: Mapping) -> Dict[str, tuple]:
    annotations = (store.get("metadata") or {}).get("annotations") or {}
    versions: Dict[str, tuple] = {}
    for name, raw in annotations.items():
        if not name.startswith(_CURRENT_PREFIX):
            continue
        version_text, _, stamp_text = str(raw).partition(":")
        try:
            versions[name[len(_CURRENT_PREFIX):]] = (int(version_text), float(stamp_text or 0.0))
        except ValueError:
            continue
    return versions


def _latest_version(store: Mapping, key: str) -> int:
    pattern = re.compile(rf"^{re.escape(key)}\.v(\d+)$")
    latest = _current_versions(store).get(key, (0, 0.0))[0]
    for name in (store.get("data") or {}):
        match = pattern.match(name)
        if match:
            latest = max(latest, int(match.group(1)))
    return latest


def _entry_from_store(store: Mapping, key: str, version: int, stamp: float) -> Optional[SecretEntry]:
    encoded = (store.get("data") or {}).get(f"{key}.v{version}")
    if encoded is None:
        return None
    value = base64.b64decode(encoded).decode("utf-8")
    return SecretEntry(key=key, value=SecretStr(value), version=version, last_rotated_at=stamp)


__all__ = ["InMemorySecretBackend", "KubectlSecretBackend", "STORE_SECRET_NAME", "SecretBackend"]

from __future__ import annotations

import copy
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import yaml

from src.cluster.provider import ClusterSnapshot
from src.common.config import Environment, OrchestratorConfig
from src.common.errors import ApplyActionError, ManifestRejectedError
from src.common.identity import (
    ENVIRONMENT_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    ResourceIdentity,
)
from src.common.workloads import minimum_ready
from src.history.store import SqliteHistoryStore
from src.orchestrator.service import Orchestrator
from src.planner.actions import Action
from src.secretstore.backend import InMemorySecretBackend
from src.secretstore.store import SecretStore

START = 1_700_000_000.0


class FakeClock:
    """Deterministic clock; ``sleep`` advances time instead of blocking."""

    def __init__(self, now: float = START) -> None:
        self.now = now
        self.sleeps: List[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


class FakeCluster:
    """In-memory cluster implementing both the state provider and health signal.

    Readiness defaults to each workload's minimum; ``readiness[name]`` replaces
    it with a callable receiving the applied document.
    """

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.objects: Dict[ResourceIdentity, Dict[str, Any]] = {}
        self.readiness: Dict[str, Callable[[Dict[str, Any]], int]] = {}
        self.failure_events: Dict[str, int] = {}
        self.apply_errors: Dict[str, List[ApplyActionError]] = {}
        self.delete_errors: Dict[str, List[ApplyActionError]] = {}
        self.calls: List[Tuple[str, ResourceIdentity]] = []
        self.validations: List[Tuple[str, List[ResourceIdentity]]] = []
        self.rejections: Dict[str, str] = {}
        self.gate: Optional[threading.Event] = None
        self._lock = threading.Lock()

    def seed(self, document: Dict[str, Any]) -> None:
        self.objects[ResourceIdentity.from_document(document)] = copy.deepcopy(document)

    def fetch_snapshot(self, environment: Environment) -> ClusterSnapshot:
        with self._lock:
            documents = []
            for document in self.objects.values():
                labels = document.get("metadata", {}).get("labels") or {}
                if labels.get(MANAGED_BY_LABEL) != MANAGED_BY_VALUE:
                    continue
                if labels.get(ENVIRONMENT_LABEL) != environment.name:
                    continue
                documents.append(_observed(document))
            return ClusterSnapshot.of(environment.name, documents, self.clock())

    def apply_action(self, action: Action) -> None:
        if self.gate is not None:
            self.gate.wait(5)
        with self._lock:
            self.calls.append(("apply", action.identity))
            queued = self.apply_errors.get(action.identity.name)
            if queued:
                raise queued.pop(0)
            self.objects[action.identity] = copy.deepcopy(action.after)

    def delete_action(self, action: Action) -> None:
        with self._lock:
            self.calls.append(("delete", action.identity))
            queued = self.delete_errors.get(action.identity.name)
            if queued:
                raise queued.pop(0)
            self.objects.pop(action.identity, None)

    def validate_actions(self, environment: Environment, actions: Sequence[Action]) -> None:
        identities = [action.identity for action in actions if action.after is not None]
        with self._lock:
            self.validations.append((environment.name, identities))
        for identity in identities:
            if identity.name in self.rejections:
                raise ManifestRejectedError(environment.name, self.rejections[identity.name])

    def ready_count(self, workload: ResourceIdentity) -> int:
        with self._lock:
            document = self.objects.get(workload)
        if document is None:
            return 0
        script = self.readiness.get(workload.name)
        if script is not None:
            return script(document)
        return minimum_ready(document)

    def recent_failure_events(self, workload: ResourceIdentity, window_seconds: float) -> int:
        return self.failure_events.get(workload.name, 0)

    def document(self, kind: str, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            found = self.objects.get(ResourceIdentity.of(kind, name, namespace))
            return copy.deepcopy(found) if found else None


def _observed(document: Dict[str, Any]) -> Dict[str, Any]:
    observed = copy.deepcopy(document)
    if observed.get("kind") == "Secret":
        observed.pop("data", None)
    metadata = observed.setdefault("metadata", {})
    metadata["resourceVersion"] = "1"
    metadata["uid"] = f"uid-{metadata.get('name')}"
    observed["status"] = {"observedGeneration": 1}
    return observed


def managed(document: Dict[str, Any], environment: str) -> Dict[str, Any]:
    labelled = copy.deepcopy(document)
    labels = labelled.setdefault("metadata", {}).setdefault("labels", {})
    labels[MANAGED_BY_LABEL] = MANAGED_BY_VALUE
    labels[ENVIRONMENT_LABEL] = environment
    return labelled


def deployment(name: str, namespace: str, environment: str, *, replicas: int = 2, image: str = "registry.local/app:1.0.0") -> Dict[str, Any]:
    return managed(
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": name, "namespace": namespace},
            "spec": {
                "replicas": replicas,
                "selector": {"matchLabels": {"app": name}},
                "template": {
                    "metadata": {"labels": {"app": name}},
                    "spec": {"containers": [{"name": name, "image": image}]},
                },
            },
        },
        environment,
    )


def config_map(name: str, namespace: str, environment: str, data: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return managed(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": name, "namespace": namespace},
            "data": dict(data or {"LOG_LEVEL": "info"}),
        },
        environment,
    )


def image_of(document: Dict[str, Any]) -> str:
    return document["spec"]["template"]["spec"]["containers"][0]["image"]


SAMPLE_APP = [
    {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "settings"},
        "data": {"LOG_LEVEL": "info"},
    },
    {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "web"},
        "spec": {
            "replicas": 2,
            "selector": {"matchLabels": {"app": "web"}},
            "template": {
                "metadata": {"labels": {"app": "web"}},
                "spec": {"containers": [{"name": "web", "image": "registry.local/app:1.0.0"}]},
            },
        },
    },
]


def write_sample_manifests(root: Path, overlays: Optional[Dict[str, Dict[str, Any]]] = None) -> Path:
    """Base with a ConfigMap and a Deployment plus one overlay per environment."""

    base = root / "base"
    base.mkdir(parents=True, exist_ok=True)
    (base / "base.yaml").write_text(yaml.safe_dump({"resources": ["app.yaml"]}), encoding="utf-8")
    (base / "app.yaml").write_text(yaml.safe_dump_all(SAMPLE_APP), encoding="utf-8")
    for name in ("dev", "stage", "prod"):
        write_overlay(root, name, (overlays or {}).get(name, {}))
    return root


def write_overlay(root: Path, environment: str, overlay: Dict[str, Any]) -> None:
    overlay_dir = root / "overlays" / environment
    overlay_dir.mkdir(parents=True, exist_ok=True)
    (overlay_dir / "overlay.yaml").write_text(yaml.safe_dump(overlay), encoding="utf-8")


def make_orchestrator(root: Path, clock: FakeClock, cluster: FakeCluster) -> Orchestrator:
    config = OrchestratorConfig(
        manifests_dir=root / "manifests",
        history_db=root / "state" / "rollouts.db",
        backup_dir=root / "backups",
    )
    return Orchestrator(
        config,
        cluster=cluster,
        health=cluster,
        secrets=SecretStore(InMemorySecretBackend(), clock=clock),
        history=SqliteHistoryStore(config.history_db),
        clock=clock,
        sleep=clock.sleep,
    )


__all__ = [
    "FakeClock",
    "FakeCluster",
    "config_map",
    "deployment",
    "image_of",
    "make_orchestrator",
    "managed",
    "write_overlay",
    "write_sample_manifests",
]

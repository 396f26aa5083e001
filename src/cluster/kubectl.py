from __future__ import annotations

import json
import subprocess
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Sequence

import structlog
import yaml

from src.common.config import Environment
from src.common.errors import ApplyActionError, ClusterError, ManifestRejectedError
from src.common.identity import (
    CLUSTER_SCOPED_KINDS,
    ENVIRONMENT_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    ResourceIdentity,
)
from src.planner.ordering import KIND_PRIORITY

from .provider import ClusterSnapshot

if TYPE_CHECKING:
    from src.planner.actions import Action

logger = structlog.get_logger(__name__)

LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"


def resource_name(kind: str) -> str:
    """Plural resource name ``kubectl get`` accepts for ``kind``."""

    lowered = kind.lower()
    if lowered.endswith("ss"):
        return lowered + "es"
    if lowered.endswith("y"):
        return lowered[:-1] + "ies"
    return lowered + "s"


# Every kind the planner orders is observed, so plans converge and removed
# resources get deleted.
NAMESPACED_KINDS = tuple(resource_name(kind) for kind in KIND_PRIORITY if kind not in CLUSTER_SCOPED_KINDS)
CLUSTER_KINDS = tuple(resource_name(kind) for kind in KIND_PRIORITY if kind in CLUSTER_SCOPED_KINDS)

_TRANSIENT_MARKERS = (
    "conflict",
    "the object has been modified",
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "tls handshake",
    "etcdserver",
    "too many requests",
    "serviceunavailable",
    "service unavailable",
)

_READY_FIELDS = {
    "Deployment": "readyReplicas",
    "StatefulSet": "readyReplicas",
    "ReplicaSet": "readyReplicas",
    "DaemonSet": "numberReady",
}


class KubectlError(ClusterError):
    def __init__(self, args: Sequence[str], detail: str) -> None:
        self.args_used = list(args)
        self.detail = detail
        super().__init__(f"kubectl {' '.join(args)} failed: {detail}")

    @property
    def transient(self) -> bool:
        lowered = self.detail.lower()
        return any(marker in lowered for marker in _TRANSIENT_MARKERS)

    @property
    def not_found(self) -> bool:
        lowered = self.detail.lower()
        return "notfound" in lowered or "not found" in lowered


class KubectlRunner:
    def __init__(self, kubectl_cmd: str = "kubectl", *, timeout_seconds: float = 60.0) -> None:
        self.kubectl_cmd = kubectl_cmd
        self.timeout_seconds = timeout_seconds

    def run(self, args: Sequence[str], *, input_text: Optional[str] = None) -> str:
        start = time.perf_counter()
        try:
            completed = subprocess.run(
                [self.kubectl_cmd, *args],
                input=input_text.encode("utf-8") if input_text is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout_seconds,
                check=True,
            )
        except FileNotFoundError as exc:
            raise KubectlError(args, f"{self.kubectl_cmd} executable not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise KubectlError(args, f"timed out after {self.timeout_seconds}s") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or b"").decode("utf-8", errors="ignore").strip()
            stdout = (exc.stdout or b"").decode("utf-8", errors="ignore").strip()
            raise KubectlError(args, stderr or stdout or str(exc)) from exc
        logger.debug("kubectl_call", verb=args[0] if args else "", duration_ms=int((time.perf_counter() - start) * 1000))
        return completed.stdout.decode("utf-8", errors="ignore")

    def run_json(self, args: Sequence[str]) -> Dict[str, Any]:
        output = self.run([*args, "-o", "json"])
        try:
            data = json.loads(output or "{}")
        except json.JSONDecodeError as exc:
            raise KubectlError(args, f"unparseable output: {exc}") from exc
        if not isinstance(data, dict):
            raise KubectlError(args, "expected a JSON object")
        return data

    def available(self) -> bool:
        try:
            self.run(["version", "--client"])
        except KubectlError:
            return False
        return True


class KubectlCluster:
    """Cluster state provider and health signal backed by ``kubectl``.

    Every call carries the owning environment's ``--context``/``--kubeconfig``
    flags; the kubeconfig's current context is never relied upon when one is
    configured.
    """

    def __init__(
        self,
        runner: Optional[KubectlRunner] = None,
        *,
        clock: Callable[[], float] = time.time,
        environments: Optional[Mapping[str, Environment]] = None,
    ) -> None:
        self.runner = runner or KubectlRunner()
        self.clock = clock
        self.environments: Dict[str, Environment] = dict(environments or {})

    def fetch_snapshot(self, environment: Environment) -> ClusterSnapshot:
        captured_at = self.clock()
        selector = f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE},{ENVIRONMENT_LABEL}={environment.name}"
        flags = environment.kubectl_flags()
        items: List[Dict[str, Any]] = []
        namespaced = self.runner.run_json(
            ["get", ",".join(NAMESPACED_KINDS), "-n", environment.namespace, "-l", selector, *flags]
        )
        items.extend(namespaced.get("items") or [])
        cluster_scoped = self.runner.run_json(["get", ",".join(CLUSTER_KINDS), "-l", selector, *flags])
        items.extend(cluster_scoped.get("items") or [])
        documents = [observed_document(item) for item in items if isinstance(item, dict)]
        logger.info("snapshot_fetched", environment=environment.name, resources=len(documents))
        return ClusterSnapshot.of(environment.name, documents, captured_at)

    def apply_action(self, action: "Action") -> None:
        if action.after is None:
            raise ApplyActionError(action.identity, "apply requested without a document")
        manifest_yaml = yaml.safe_dump(action.after, sort_keys=False)
        try:
            self.runner.run(
                ["apply", "-f", "-", *self._flags_for(action.identity, action.after)], input_text=manifest_yaml
            )
        except KubectlError as exc:
            raise ApplyActionError(action.identity, exc.detail, transient=exc.transient) from exc

    def delete_action(self, action: "Action") -> None:
        identity = action.identity
        args = ["delete", identity.kind.lower(), identity.name, "--ignore-not-found=true", "--wait=false"]
        if identity.namespace:
            args.extend(["-n", identity.namespace])
        args.extend(self._flags_for(identity, action.before))
        try:
            self.runner.run(args)
        except KubectlError as exc:
            raise ApplyActionError(identity, exc.detail, transient=exc.transient) from exc

    def validate_actions(self, environment: Environment, actions: Sequence["Action"]) -> None:
        """Dry-run every create and update in one ``kubectl apply`` call.

        Server-side dry runs need the target namespaces to exist, so a plan
        that creates a namespace falls back to a client-side dry run.
        """

        documents = [action.after for action in actions if action.after is not None]
        if not documents:
            return
        creates_namespace = any(
            action.identity.kind == "Namespace" and action.before is None for action in actions
        )
        mode = "client" if creates_namespace else "server"
        args = ["apply", f"--dry-run={mode}", "-f", "-", *environment.kubectl_flags()]
        try:
            self.runner.run(args, input_text=yaml.safe_dump_all(documents, sort_keys=False))
        except KubectlError as exc:
            raise ManifestRejectedError(environment.name, exc.detail) from exc
        logger.info("dry_run_passed", environment=environment.name, mode=mode, resources=len(documents))

    def ready_count(self, workload: ResourceIdentity) -> int:
        args = ["get", workload.kind.lower(), workload.name]
        if workload.namespace:
            args.extend(["-n", workload.namespace])
        args.extend(self._flags_for(workload))
        try:
            data = self.runner.run_json(args)
        except KubectlError as exc:
            if exc.not_found:
                return 0
            raise
        status = data.get("status") if isinstance(data.get("status"), dict) else {}
        value = status.get(_READY_FIELDS.get(workload.kind, "readyReplicas"), 0)
        return int(value) if isinstance(value, int) else 0

    def recent_failure_events(self, workload: ResourceIdentity, window_seconds: float) -> int:
        args = ["get", "events", "--field-selector", "type=Warning"]
        if workload.namespace:
            args.extend(["-n", workload.namespace])
        args.extend(self._flags_for(workload))
        data = self.runner.run_json(args)
        cutoff = self.clock() - window_seconds
        count = 0
        for event in data.get("items") or []:
            if not isinstance(event, dict):
                continue
            involved = event.get("involvedObject") if isinstance(event.get("involvedObject"), dict) else {}
            name = str(involved.get("name") or "")
            if name != workload.name and not name.startswith(f"{workload.name}-"):
                continue
            stamp = _event_time(event)
            if stamp is not None and stamp >= cutoff:
                count += 1
        return count

    def _flags_for(self, identity: ResourceIdentity, document: Optional[Mapping[str, Any]] = None) -> List[str]:
        # The environment label wins; cluster-scoped kinds have no namespace to go by.
        metadata = (document or {}).get("metadata") or {}
        labels = metadata.get("labels") if isinstance(metadata.get("labels"), dict) else {}
        environment = self.environments.get(str(labels.get(ENVIRONMENT_LABEL, "")))
        if environment is None and identity.namespace:
            for candidate in self.environments.values():
                if candidate.namespace == identity.namespace:
                    environment = candidate
                    break
        return environment.kubectl_flags() if environment is not None else []


def observed_document(item: Dict[str, Any]) -> Dict[str, Any]:
    """Prefer the last applied configuration so server defaults don't read as drift."""

    metadata = item.get("metadata") if isinstance(item.get("metadata"), dict) else {}
    annotations = metadata.get("annotations") if isinstance(metadata.get("annotations"), dict) else {}
    raw = annotations.get(LAST_APPLIED_ANNOTATION)
    document: Dict[str, Any] = item
    if isinstance(raw, str) and raw.strip():
        try:
            candidate = json.loads(raw)
        except json.JSONDecodeError:
            candidate = None
        if isinstance(candidate, dict):
            document = candidate
    document = json.loads(json.dumps(document))
    if document.get("kind") == "Secret":
        document.pop("data", None)
        document.pop("stringData", None)
    doc_annotations = document.get("metadata", {}).get("annotations")
    if isinstance(doc_annotations, dict):
        doc_annotations.pop(LAST_APPLIED_ANNOTATION, None)
        if not doc_annotations:
            document["metadata"].pop("annotations")
    return document


def _event_time(event: Dict[str, Any]) -> Optional[float]:
    for field in ("lastTimestamp", "eventTime", "firstTimestamp"):
        raw = event.get(field)
        if isinstance(raw, str) and raw:
            try:
                parsed = datetime.strptime(raw.split(".")[0].rstrip("Z"), "%Y-%m-%dT%H:%M:%S")
            except ValueError:
                continue
            return parsed.replace(tzinfo=timezone.utc).timestamp()
    return None


__all__ = [
    "CLUSTER_KINDS",
    "NAMESPACED_KINDS",
    "KubectlCluster",
    "KubectlError",
    "KubectlRunner",
    "observed_document",
    "resource_name",
]

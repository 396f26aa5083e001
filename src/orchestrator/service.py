from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import structlog
import yaml

from src.cluster.kubectl import KubectlCluster, KubectlRunner
from src.cluster.provider import ClusterStateProvider, HealthSignal
from src.common.config import Environment, OrchestratorConfig
from src.common.errors import ClusterError
from src.common.workloads import minimum_ready
from src.history.records import RolloutRecord, RolloutResult
from src.history.store import SqliteHistoryStore
from src.planner.actions import Plan
from src.planner.planner import plan as compute_plan
from src.renderer.manifest_set import ManifestSet
from src.renderer.renderer import Renderer
from src.renderer.validation import check_image_policy
from src.rollout.controller import RolloutController, RolloutHandle, RolloutOutcome
from src.secretstore.backend import KubectlSecretBackend
from src.secretstore.store import SecretStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PreparedRollout:
    """A plan together with the validated, secret-pinned target it converges to."""

    environment: Environment
    plan: Plan
    target: ManifestSet

    @property
    def empty(self) -> bool:
        return self.plan.empty


class Orchestrator:
    """Wires renderer, secret store, planner, controller and history together.

    Callers pass environment names; everything below this class receives an
    explicit ``Environment``.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        *,
        cluster: ClusterStateProvider,
        health: HealthSignal,
        secrets: SecretStore,
        history: SqliteHistoryStore,
        renderer: Optional[Renderer] = None,
        controller: Optional[RolloutController] = None,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Callable[[float], None]] = None,
        kubectl: Optional[KubectlRunner] = None,
    ) -> None:
        self.config = config
        self.cluster = cluster
        self.health = health
        self.secrets = secrets
        self.history = history
        self.renderer = renderer or Renderer(config.manifests_dir)
        self.clock = clock
        self.kubectl = kubectl
        self.controller = controller or RolloutController(
            cluster,
            health,
            history,
            settings=config.rollout,
            materialize=secrets.materialize,
            clock=clock,
            sleep=sleep,
        )

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> "Orchestrator":
        runner = KubectlRunner(config.kubectl_cmd)
        cluster = KubectlCluster(runner, environments=config.environments)
        return cls(
            config,
            cluster=cluster,
            health=cluster,
            secrets=SecretStore(KubectlSecretBackend(runner)),
            history=SqliteHistoryStore(config.history_db),
            kubectl=runner,
        )

    def environment(self, name: str) -> Environment:
        return self.config.environment(name)

    def render(self, name: str) -> ManifestSet:
        return self.renderer.render(self.environment(name))

    def prepare(self, environment: Environment, *, skip_validation: bool = False) -> ManifestSet:
        """Render, validate and pin secret versions for ``environment``.

        ``skip_validation`` skips the image policy and non-strict secret
        warnings; strict environments always enforce their secrets.
        """

        rendered = self.renderer.render(environment)
        if not skip_validation:
            violations = check_image_policy(rendered, environment)
            if violations:
                logger.warning("image_policy_warnings", environment=environment.name, violations=violations)
        if environment.strict_validation or not skip_validation:
            self.secrets.enforce(environment)
        return self.secrets.inject(rendered, environment)

    def plan(self, name: str, *, skip_validation: bool = False) -> PreparedRollout:
        environment = self.environment(name)
        target = self.prepare(environment, skip_validation=skip_validation)
        snapshot = self.cluster.fetch_snapshot(environment)
        result = compute_plan(target, snapshot, self.history.head(environment.name), clock=self.clock)
        return PreparedRollout(environment=environment, plan=result, target=target)

    def validate(self, prepared: PreparedRollout) -> None:
        """Have the cluster dry-run the plan's creates and updates."""

        if prepared.empty:
            return
        self.cluster.validate_actions(prepared.environment, list(prepared.plan))

    def start(self, prepared: PreparedRollout) -> Optional[RolloutHandle]:
        """Hand a prepared plan to the controller; None when there is nothing to change."""

        if prepared.empty:
            logger.info("rollout_skipped", environment=prepared.environment.name, reason="no changes")
            return None
        return self.controller.start(prepared.environment, prepared.plan, prepared.target)

    def apply(self, name: str, *, skip_validation: bool = False) -> Optional[RolloutOutcome]:
        prepared = self.plan(name, skip_validation=skip_validation)
        if not skip_validation:
            self.validate(prepared)
        handle = self.start(prepared)
        return handle.wait() if handle else None

    def rollback(self, name: str) -> RolloutHandle:
        return self.controller.rollback(self.environment(name))

    def reconcile(self, name: str) -> Optional[RolloutOutcome]:
        return self.controller.reconcile(self.environment(name))

    def history_of(self, name: str, limit: int = 20) -> List[RolloutRecord]:
        return self.history.history(self.environment(name).name, limit)

    def head(self, name: str) -> Optional[RolloutRecord]:
        return self.history.head(self.environment(name).name)

    def status(self, name: str) -> Dict[str, Any]:
        environment = self.environment(name)
        head = self.history.head(environment.name)
        snapshot = self.cluster.fetch_snapshot(environment)
        workloads: List[Dict[str, Any]] = []
        for identity in sorted(snapshot.resources):
            if not identity.is_workload:
                continue
            workloads.append(
                {
                    "workload": str(identity),
                    "ready": self.health.ready_count(identity),
                    "minimum": minimum_ready(snapshot.resources[identity]),
                }
            )
        in_progress = self.controller.is_locked(environment) or (
            head is not None and head.result is RolloutResult.IN_PROGRESS
        )
        return {
            "environment": environment.name,
            "namespace": environment.namespace,
            "in_progress": in_progress,
            "head": head.to_summary() if head else None,
            "resources": len(snapshot),
            "workloads": workloads,
        }

    def backup(self, name: str, out_dir: Path) -> Path:
        """Write the observed managed resources of ``name`` to a timestamped YAML file."""

        environment = self.environment(name)
        snapshot = self.cluster.fetch_snapshot(environment)
        stamp = datetime.fromtimestamp(snapshot.captured_at, tz=timezone.utc).strftime("%Y%m%d-%H%M%S")
        target_dir = out_dir / environment.name
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / f"backup-{stamp}.yaml"
        documents = [snapshot.get(identity) for identity in sorted(snapshot.resources)]
        path.write_text(yaml.safe_dump_all(documents, sort_keys=True), encoding="utf-8")
        logger.info("backup_written", environment=environment.name, path=str(path), resources=len(documents))
        return path

    def check(self) -> Dict[str, bool]:
        checks = {
            "manifests_dir": (self.config.manifests_dir / "base").is_dir(),
            "overlays": all(
                (self.config.manifests_dir / "overlays" / name).is_dir() for name in self.config.environments
            ),
        }
        if self.kubectl is not None:
            checks["kubectl"] = self.kubectl.available()
        for name, environment in self.config.environments.items():
            try:
                self.cluster.fetch_snapshot(environment)
            except ClusterError as exc:
                logger.warning("cluster_unreachable", environment=name, error=str(exc))
                checks[f"cluster:{name}"] = False
            else:
                checks[f"cluster:{name}"] = True
        return checks

    def shutdown(self) -> None:
        self.controller.shutdown()


__all__ = ["Orchestrator", "PreparedRollout"]

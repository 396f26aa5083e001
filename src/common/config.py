from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import ConfigError, UnknownEnvironmentError

ENVIRONMENT_NAMES: Tuple[str, ...] = ("dev", "stage", "prod")


@dataclass(frozen=True)
class ResourceProfile:
    name: str
    requests: Mapping[str, str]
    limits: Mapping[str, str]

    def to_resources(self) -> Dict[str, Dict[str, str]]:
        return {"requests": dict(self.requests), "limits": dict(self.limits)}


DEFAULT_PROFILES: Dict[str, ResourceProfile] = {
    "small": ResourceProfile("small", {"cpu": "100m", "memory": "128Mi"}, {"cpu": "250m", "memory": "256Mi"}),
    "medium": ResourceProfile("medium", {"cpu": "250m", "memory": "256Mi"}, {"cpu": "500m", "memory": "512Mi"}),
    "large": ResourceProfile("large", {"cpu": "500m", "memory": "512Mi"}, {"cpu": "1", "memory": "1Gi"}),
}


@dataclass(frozen=True)
class Environment:
    name: str
    namespace: str
    requires_confirmation: bool = False
    resource_profile: ResourceProfile = field(default=DEFAULT_PROFILES["small"], compare=False)
    strict_validation: bool = False
    # kubeconfig context and file every kubectl call for this environment uses.
    context: Optional[str] = None
    kubeconfig: Optional[str] = None

    def kubectl_flags(self) -> List[str]:
        flags: List[str] = []
        if self.context:
            flags.extend(["--context", self.context])
        if self.kubeconfig:
            flags.extend(["--kubeconfig", self.kubeconfig])
        return flags

    def __str__(self) -> str:
        return self.name


def default_environments() -> Dict[str, Environment]:
    return {
        "dev": Environment("dev", "dev", resource_profile=DEFAULT_PROFILES["small"]),
        "stage": Environment("stage", "stage", resource_profile=DEFAULT_PROFILES["medium"]),
        "prod": Environment(
            "prod",
            "production",
            requires_confirmation=True,
            resource_profile=DEFAULT_PROFILES["large"],
            strict_validation=True,
        ),
    }


@dataclass(frozen=True)
class RolloutSettings:
    poll_interval_seconds: float = 10.0
    stability_polls: int = 3
    workload_timeout_seconds: float = 300.0
    rollback_timeout_seconds: float = 300.0
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_factor: float = 2.0
    retry_max_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.poll_interval_seconds <= 0:
            raise ConfigError("poll interval must be positive")
        if self.stability_polls < 1:
            raise ConfigError("stability polls must be at least 1")
        if self.workload_timeout_seconds <= 0 or self.rollback_timeout_seconds <= 0:
            raise ConfigError("timeouts must be positive")
        if self.retry_attempts < 1:
            raise ConfigError("retry attempts must be at least 1")

    @property
    def stability_window_seconds(self) -> float:
        return self.poll_interval_seconds * self.stability_polls


@dataclass
class OrchestratorConfig:
    manifests_dir: Path = Path("deploy")
    history_db: Path = Path("data/rollouts.db")
    backup_dir: Path = Path("backups")
    kubectl_cmd: str = "kubectl"
    environments: Dict[str, Environment] = field(default_factory=default_environments)
    rollout: RolloutSettings = field(default_factory=RolloutSettings)
    log_level: str = "INFO"
    log_json: bool = False

    def environment(self, name: str) -> Environment:
        try:
            return self.environments[name]
        except KeyError:
            raise UnknownEnvironmentError(name, list(self.environments)) from None

    @classmethod
    def from_env(
        cls,
        config_path: Optional[Path] = None,
        manifests_dir: Optional[Path] = None,
        history_db: Optional[Path] = None,
        kubectl_cmd: Optional[str] = None,
    ) -> "OrchestratorConfig":
        path = config_path or _optional_path(os.getenv("ROLLOUT_CONFIG"))
        config = cls.load(path) if path else cls()

        rollout_overrides: Dict[str, Any] = {}
        for var, attr, caster in (
            ("ROLLOUT_POLL_INTERVAL", "poll_interval_seconds", float),
            ("ROLLOUT_STABILITY_POLLS", "stability_polls", int),
            ("ROLLOUT_WORKLOAD_TIMEOUT", "workload_timeout_seconds", float),
        ):
            raw = os.getenv(var)
            if raw:
                rollout_overrides[attr] = _cast(var, raw, caster)
        if rollout_overrides:
            config.rollout = replace(config.rollout, **rollout_overrides)

        config.manifests_dir = manifests_dir or _optional_path(os.getenv("ROLLOUT_MANIFESTS_DIR")) or config.manifests_dir
        config.history_db = history_db or _optional_path(os.getenv("ROLLOUT_HISTORY_DB")) or config.history_db
        config.backup_dir = _optional_path(os.getenv("ROLLOUT_BACKUP_DIR")) or config.backup_dir
        config.kubectl_cmd = kubectl_cmd or os.getenv("ROLLOUT_KUBECTL") or config.kubectl_cmd
        config.log_level = os.getenv("ROLLOUT_LOG_LEVEL", config.log_level).upper()
        log_json = os.getenv("ROLLOUT_LOG_JSON")
        if log_json is not None:
            config.log_json = log_json.strip().lower() in {"1", "true", "yes", "on"}
        return config

    @classmethod
    def load(cls, path: Path) -> "OrchestratorConfig":
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except FileNotFoundError as exc:
            raise ConfigError(f"Config file not found: {path}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Config file {path} is not valid YAML: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")

        config = cls()
        base_dir = path.parent
        if "manifests_dir" in data:
            config.manifests_dir = _resolve(base_dir, data["manifests_dir"])
        if "history_db" in data:
            config.history_db = _resolve(base_dir, data["history_db"])
        if "backup_dir" in data:
            config.backup_dir = _resolve(base_dir, data["backup_dir"])
        if "kubectl" in data:
            config.kubectl_cmd = str(data["kubectl"])
        if "environments" in data:
            config.environments = _parse_environments(data["environments"], data.get("profiles"))
        if "rollout" in data:
            rollout = data["rollout"]
            if not isinstance(rollout, dict):
                raise ConfigError("rollout settings must be a mapping")
            known = set(RolloutSettings.__dataclass_fields__)
            unknown = sorted(set(rollout) - known)
            if unknown:
                raise ConfigError(f"Unknown rollout setting(s): {', '.join(unknown)}")
            config.rollout = RolloutSettings(**_typed_settings(rollout))
        return config


def _parse_environments(raw: Any, raw_profiles: Any) -> Dict[str, Environment]:
    if not isinstance(raw, dict):
        raise ConfigError("environments must be a mapping keyed by environment name")
    profiles = dict(DEFAULT_PROFILES)
    if isinstance(raw_profiles, dict):
        for name, block in raw_profiles.items():
            if not isinstance(block, dict):
                raise ConfigError(f"profile {name} must be a mapping")
            profiles[str(name)] = ResourceProfile(
                str(name),
                {k: str(v) for k, v in (block.get("requests") or {}).items()},
                {k: str(v) for k, v in (block.get("limits") or {}).items()},
            )

    environments = default_environments()
    for name, block in raw.items():
        if name not in ENVIRONMENT_NAMES:
            raise UnknownEnvironmentError(str(name), ENVIRONMENT_NAMES)
        block = block or {}
        if not isinstance(block, dict):
            raise ConfigError(f"environment {name} must be a mapping")
        current = environments[name]
        profile_name = block.get("resource_profile", current.resource_profile.name)
        if profile_name not in profiles:
            raise ConfigError(f"environment {name} references unknown profile {profile_name}")
        environments[name] = Environment(
            name=name,
            namespace=str(block.get("namespace", current.namespace)),
            requires_confirmation=bool(block.get("requires_confirmation", current.requires_confirmation)),
            resource_profile=profiles[profile_name],
            strict_validation=bool(block.get("strict_validation", current.strict_validation)),
            context=_optional_str(block.get("context", current.context)),
            kubeconfig=_optional_str(block.get("kubeconfig", current.kubeconfig)),
        )
    return environments


def _cast(var: str, raw: Any, caster: Any) -> Any:
    try:
        return caster(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{var} must be a {caster.__name__}, got {raw!r}") from exc


def _typed_settings(raw: Dict[str, Any]) -> Dict[str, Any]:
    typed: Dict[str, Any] = {}
    for key, value in raw.items():
        caster = int if RolloutSettings.__dataclass_fields__[key].type in (int, "int") else float
        if isinstance(value, bool):
            raise ConfigError(f"rollout.{key} must be a {caster.__name__}, got {value!r}")
        typed[key] = _cast(f"rollout.{key}", value, caster)
    return typed


def _optional_str(raw: Any) -> Optional[str]:
    return str(raw) if raw not in (None, "") else None


def _optional_path(raw: Optional[str]) -> Optional[Path]:
    return Path(raw) if raw else None


def _resolve(base_dir: Path, raw: Any) -> Path:
    candidate = Path(str(raw))
    if not candidate.is_absolute():
        candidate = (base_dir / candidate).resolve()
    return candidate


__all__ = [
    "DEFAULT_PROFILES",
    "ENVIRONMENT_NAMES",
    "Environment",
    "OrchestratorConfig",
    "ResourceProfile",
    "RolloutSettings",
    "default_environments",
]

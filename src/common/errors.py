"""Exception hierarchy for the rollout controller.

Every error raised by the core derives from ``OrchestratorError`` so the CLI
can catch a single type and exit with ``exit_code``.

    OrchestratorError
    ├── ConfigError / UnknownEnvironmentError   (2)
    ├── RenderError / ImagePolicyError / ManifestRejectedError (3)
    ├── SecretValidationError / SecretNotFoundError (4)
    ├── PlanError / PlanConsumedError           (5)
    ├── RolloutInProgress                       (6)
    ├── ApplyActionError / HealthTimeoutError   (7)
    ├── RollbackFailedError                     (8)
    ├── HistoryError                            (1)
    └── ClusterError                            (9)
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence


class OrchestratorError(Exception):
    """Base exception for all rollout controller errors."""

    exit_code: int = 1


class ConfigError(OrchestratorError):
    exit_code = 2


class UnknownEnvironmentError(ConfigError):
    def __init__(self, name: str, known: Sequence[str]) -> None:
        self.name = name
        self.known = list(known)
        super().__init__(f"Invalid environment: {name} (valid environments: {', '.join(self.known)})")


class RenderFailure(str, Enum):
    UNRESOLVED_OVERLAY = "UnresolvedOverlay"
    INVALID_PATCH = "InvalidPatch"
    MISSING_BASE = "MissingBase"


class RenderError(OrchestratorError):
    """Raised when an overlay cannot be resolved into a ManifestSet.

    Attributes:
        reason: Which part of the overlay failed to resolve.
        environment: Environment being rendered.
    """

    exit_code = 3

    def __init__(self, reason: RenderFailure, environment: str, detail: str) -> None:
        self.reason = reason
        self.environment = environment
        self.detail = detail
        super().__init__(f"{reason.value} while rendering {environment}: {detail}")


class ImagePolicyError(OrchestratorError):
    exit_code = 3

    def __init__(self, environment: str, violations: Sequence[str]) -> None:
        self.environment = environment
        self.violations = list(violations)
        super().__init__(f"Image policy violated for {environment}: {'; '.join(self.violations)}")


class ManifestRejectedError(OrchestratorError):
    """Raised when the cluster refuses rendered manifests in a dry run."""

    exit_code = 3

    def __init__(self, environment: str, detail: str) -> None:
        self.environment = environment
        self.detail = detail
        super().__init__(f"Cluster rejected manifests for {environment}: {detail}")


class SecretValidationError(OrchestratorError):
    """Raised when secret material fails validation for a strict environment.

    ``issues`` holds the individual ``ValidationIssue`` findings; none of them
    carry secret values.
    """

    exit_code = 4

    def __init__(self, environment: str, issues: Sequence[object]) -> None:
        self.environment = environment
        self.issues = list(issues)
        summary = "; ".join(str(issue) for issue in self.issues) or "validation failed"
        super().__init__(f"Secret validation failed for {environment}: {summary}")


class SecretNotFoundError(OrchestratorError):
    exit_code = 4

    def __init__(self, environment: str, key: str) -> None:
        self.environment = environment
        self.key = key
        super().__init__(f"Secret key {key} not found in {environment}")


class AcknowledgementRequired(OrchestratorError):
    exit_code = 4

    def __init__(self, environment: str, expected: str) -> None:
        self.environment = environment
        self.expected = expected
        super().__init__(f"Revealing secrets for {environment} requires --acknowledge {expected}")


class PlanFailure(str, Enum):
    SNAPSHOT_STALE = "SnapshotStale"


class PlanError(OrchestratorError):
    """Raised when a plan cannot be computed safely.

    ``SnapshotStale`` is retryable: fetch a new snapshot and plan again.
    """

    exit_code = 5

    def __init__(self, reason: PlanFailure, detail: str) -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}")

    @property
    def retryable(self) -> bool:
        return self.reason is PlanFailure.SNAPSHOT_STALE


class PlanConsumedError(OrchestratorError):
    exit_code = 5

    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        super().__init__(f"Plan {plan_id} has already been consumed")


class RolloutInProgress(OrchestratorError):
    exit_code = 6

    def __init__(self, environment: str, record_id: Optional[str] = None) -> None:
        self.environment = environment
        self.record_id = record_id
        msg = f"A rollout is already in progress for {environment}"
        if record_id:
            msg += f" (record {record_id})"
        super().__init__(msg)


class ApplyActionError(OrchestratorError):
    """Raised by cluster providers when an action is rejected.

    Transient failures (timeouts, conflicts, connection resets) are retried
    with backoff before the rollout gives up.
    """

    exit_code = 7

    def __init__(self, identity: object, detail: str, *, transient: bool = False) -> None:
        self.identity = identity
        self.detail = detail
        self.transient = transient
        super().__init__(f"Failed to apply {identity}: {detail}")


class RolloutFailure(OrchestratorError):
    """Base for failures reported on a finished rollout."""

    exit_code = 7

    def __init__(self, message: str, *, phase: str, record_id: Optional[str]) -> None:
        self.phase = phase
        self.record_id = record_id
        super().__init__(f"{message} (phase={phase}, record={record_id})")


class HealthTimeoutError(RolloutFailure):
    def __init__(self, workloads: Sequence[object], *, phase: str, record_id: Optional[str]) -> None:
        self.workloads = list(workloads)
        names = ", ".join(str(w) for w in self.workloads)
        super().__init__(f"Workloads not healthy: {names}", phase=phase, record_id=record_id)


class RollbackFailedError(RolloutFailure):
    exit_code = 8


class HistoryError(OrchestratorError):
    """Raised when the history store refuses a write (e.g. finalizing twice)."""


class ClusterError(OrchestratorError):
    exit_code = 9


__all__ = [
    "AcknowledgementRequired",
    "ApplyActionError",
    "ClusterError",
    "ConfigError",
    "HealthTimeoutError",
    "HistoryError",
    "ImagePolicyError",
    "ManifestRejectedError",
    "OrchestratorError",
    "PlanConsumedError",
    "PlanError",
    "PlanFailure",
    "RenderError",
    "RenderFailure",
    "RollbackFailedError",
    "RolloutFailure",
    "RolloutInProgress",
    "SecretNotFoundError",
    "SecretValidationError",
    "UnknownEnvironmentError",
]

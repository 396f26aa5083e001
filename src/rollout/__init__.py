"""Rollout controller: apply, monitor, roll back."""

from .controller import RolloutController, RolloutHandle, RolloutOutcome
from .retry import RetryPolicy
from .state import InvalidTransitionError, PhaseMachine, RolloutPhase

__all__ = [
    "InvalidTransitionError",
    "PhaseMachine",
    "RetryPolicy",
    "RolloutController",
    "RolloutHandle",
    "RolloutOutcome",
    "RolloutPhase",
]

"""Command surface binding renderer, secrets, planner, controller and history."""

from .service import Orchestrator, PreparedRollout

__all__ = ["Orchestrator", "PreparedRollout"]

"""Diff & plan engine."""

from .actions import Action, ActionType, Plan
from .planner import inverse_plan, plan

__all__ = ["Action", "ActionType", "Plan", "inverse_plan", "plan"]

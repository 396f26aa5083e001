from __future__ import annotations

import difflib
from typing import Any, Dict, List, Optional

import yaml

from .normalize import normalize
from .actions import Plan


def _dump(document: Optional[Dict[str, Any]]) -> List[str]:
    if document is None:
        return []
    return yaml.safe_dump(normalize(document), sort_keys=True).splitlines(keepends=True)


def render_diff(plan: Plan) -> str:
    """Unified YAML diff of every action in the plan, in application order."""

    chunks: List[str] = []
    for action in plan:
        label = str(action.identity)
        chunks.extend(
            difflib.unified_diff(
                _dump(action.before),
                _dump(action.after),
                fromfile=f"observed/{label}",
                tofile=f"target/{label}",
            )
        )
    return "".join(chunks)


__all__ = ["render_diff"]

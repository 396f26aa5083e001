"""Deployment history store."""

from .records import RecordKind, RolloutRecord, RolloutResult
from .store import SqliteHistoryStore

__all__ = ["RecordKind", "RolloutRecord", "RolloutResult", "SqliteHistoryStore"]

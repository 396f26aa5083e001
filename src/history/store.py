from __future__ import annotations

import dataclasses
import sqlite3
import threading
from pathlib import Path
from typing import List, Optional, Tuple

import structlog

from src.common.errors import HistoryError, PlanConsumedError, PlanError, PlanFailure, RolloutInProgress

from .records import RecordKind, RolloutRecord, RolloutResult

logger = structlog.get_logger(__name__)


DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS rollouts (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  id TEXT NOT NULL UNIQUE,
  environment TEXT NOT NULL,
  plan_id TEXT NOT NULL UNIQUE,
  kind TEXT NOT NULL,
  result TEXT NOT NULL,
  applied_at REAL NOT NULL,
  finished_at REAL,
  previous_id TEXT,
  plan TEXT,
  manifest TEXT,
  detail TEXT DEFAULT ''
);
CREATE INDEX IF NOT EXISTS rollouts_by_environment ON rollouts (environment, seq);
"""

_COLUMNS = (
    "id, environment, plan_id, kind, result, applied_at, finished_at, previous_id, plan, manifest, detail"
)


def init_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    try:
        conn.executescript(DB_SCHEMA)
        conn.commit()
    finally:
        conn.close()


def _row_to_record(row: Tuple) -> RolloutRecord:
    (rid, environment, plan_id, kind, result, applied_at, finished_at, previous_id, plan, manifest, detail) = row
    return RolloutRecord(
        id=rid,
        environment=environment,
        plan_id=plan_id,
        kind=RecordKind(kind),
        result=RolloutResult(result),
        applied_at=float(applied_at),
        finished_at=float(finished_at) if finished_at is not None else None,
        previous_id=previous_id,
        plan_json=plan or "",
        manifest_json=manifest or "",
        detail=detail or "",
    )


class SqliteHistoryStore:
    """Append-only rollout history, one linked chain per environment.

    Records are never rewritten; the only permitted update is the single
    transition of a record's result from ``InProgress`` to a terminal value.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        init_db(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path), timeout=30.0)

    def append(self, record: RolloutRecord, *, not_before: Optional[float] = None) -> str:
        """Store ``record`` as the new head of its environment and return its id.

        The head check and the insert share one ``BEGIN IMMEDIATE`` transaction,
        so two processes on the same database cannot both open a rollout.
        Raises ``PlanConsumedError`` when a record for the same plan already
        exists, ``RolloutInProgress`` when the head is still ``InProgress`` and
        ``PlanError`` when ``not_before`` predates the head's last activity.
        """

        with self._lock:
            conn = self._connect()
            conn.isolation_level = None
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    stored = self._insert(conn, record, not_before)
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()
        logger.info(
            "record_appended",
            environment=stored.environment,
            record_id=stored.id,
            plan_id=stored.plan_id,
            kind=stored.kind.value,
            previous_id=stored.previous_id,
        )
        return stored.id

    def _insert(self, conn: sqlite3.Connection, record: RolloutRecord, not_before: Optional[float]) -> RolloutRecord:
        if conn.execute("SELECT 1 FROM rollouts WHERE plan_id=?", (record.plan_id,)).fetchone():
            raise PlanConsumedError(record.plan_id)
        head = self._head(conn, record.environment)
        if head is not None and head.result is RolloutResult.IN_PROGRESS:
            raise RolloutInProgress(record.environment, head.id)
        if head is not None and not_before is not None and not_before < head.last_activity_at:
            raise PlanError(
                PlanFailure.SNAPSHOT_STALE,
                f"plan {record.plan_id} was computed before record {head.id}; re-fetch and plan again",
            )
        stored = dataclasses.replace(record, previous_id=head.id if head else None)
        conn.execute(
            f"INSERT INTO rollouts ({_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
            (
                stored.id,
                stored.environment,
                stored.plan_id,
                stored.kind.value,
                stored.result.value,
                stored.applied_at,
                stored.finished_at,
                stored.previous_id,
                stored.plan_json,
                stored.manifest_json,
                stored.detail,
            ),
        )
        return stored

    def finalize(
        self,
        record_id: str,
        result: RolloutResult,
        finished_at: float,
        detail: str = "",
    ) -> RolloutRecord:
        if not result.terminal:
            raise ValueError(f"cannot finalize a record as {result.value}")
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    "UPDATE rollouts SET result=?, finished_at=?, detail=? WHERE id=? AND result=?",
                    (result.value, finished_at, detail, record_id, RolloutResult.IN_PROGRESS.value),
                )
                if cursor.rowcount != 1:
                    raise HistoryError(f"record {record_id} is missing or already finalized")
                conn.commit()
                row = conn.execute(f"SELECT {_COLUMNS} FROM rollouts WHERE id=?", (record_id,)).fetchone()
            finally:
                conn.close()
        record = _row_to_record(row)
        logger.info("record_finalized", environment=record.environment, record_id=record_id, result=result.value)
        return record

    def get(self, record_id: str) -> Optional[RolloutRecord]:
        conn = self._connect()
        try:
            row = conn.execute(f"SELECT {_COLUMNS} FROM rollouts WHERE id=?", (record_id,)).fetchone()
        finally:
            conn.close()
        return _row_to_record(row) if row else None

    def by_plan(self, plan_id: str) -> Optional[RolloutRecord]:
        conn = self._connect()
        try:
            row = conn.execute(f"SELECT {_COLUMNS} FROM rollouts WHERE plan_id=?", (plan_id,)).fetchone()
        finally:
            conn.close()
        return _row_to_record(row) if row else None

    def head(self, environment: str) -> Optional[RolloutRecord]:
        conn = self._connect()
        try:
            return self._head(conn, environment)
        finally:
            conn.close()

    def history(self, environment: str, limit: int = 20) -> List[RolloutRecord]:
        conn = self._connect()
        try:
            rows = list(
                conn.execute(
                    f"SELECT {_COLUMNS} FROM rollouts WHERE environment=? ORDER BY seq DESC LIMIT ?",
                    (environment, max(0, int(limit))),
                )
            )
        finally:
            conn.close()
        return [_row_to_record(row) for row in rows]

    def last_succeeded(self, environment: str, before: Optional[str] = None) -> Optional[RolloutRecord]:
        """Most recent ``Succeeded`` record, optionally older than record ``before``."""

        conn = self._connect()
        try:
            query = f"SELECT {_COLUMNS} FROM rollouts WHERE environment=? AND result=?"
            params: List[object] = [environment, RolloutResult.SUCCEEDED.value]
            if before is not None:
                query += " AND seq < (SELECT seq FROM rollouts WHERE id=?)"
                params.append(before)
            row = conn.execute(query + " ORDER BY seq DESC LIMIT 1", params).fetchone()
        finally:
            conn.close()
        return _row_to_record(row) if row else None

    @staticmethod
    def _head(conn: sqlite3.Connection, environment: str) -> Optional[RolloutRecord]:
        row = conn.execute(
            f"SELECT {_COLUMNS} FROM rollouts WHERE environment=? ORDER BY seq DESC LIMIT 1",
            (environment,),
        ).fetchone()
        return _row_to_record(row) if row else None


__all__ = ["DB_SCHEMA", "SqliteHistoryStore", "init_db"]

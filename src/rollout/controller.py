"""Rollout controller: apply a plan, watch workload health, roll back on failure.

One rollout per environment at a time. ``start`` takes the environment lock,
opens an ``InProgress`` history record and hands the rest of the state machine
to a worker thread, so the run finishes even if the caller stops waiting.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import structlog

from src.cluster.provider import ClusterSnapshot, ClusterStateProvider, HealthSignal
from src.common.config import Environment, RolloutSettings
from src.common.errors import (
    ClusterError,
    HealthTimeoutError,
    HistoryError,
    OrchestratorError,
    RollbackFailedError,
    RolloutFailure,
    RolloutInProgress,
)
from src.history.records import RecordKind, RolloutRecord, RolloutResult
from src.history.store import SqliteHistoryStore
from src.planner.actions import Action, ActionType, Plan
from src.planner.normalize import documents_equal
from src.planner.planner import inverse_plan
from src.planner.planner import plan as compute_plan
from src.renderer.manifest_set import ManifestSet

from .health import HealthTracker, workload_minimums
from .retry import RetryPolicy
from .state import PhaseChange, PhaseMachine, RolloutPhase

logger = structlog.get_logger(__name__)

Materializer = Callable[[Environment, Optional[Dict[str, Any]]], Optional[Dict[str, Any]]]


def _passthrough(_environment: Environment, document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return document


@dataclass(frozen=True)
class RolloutOutcome:
    record_id: str
    environment: str
    phase: RolloutPhase
    result: RolloutResult
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.phase is RolloutPhase.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "environment": self.environment,
            "phase": self.phase.value,
            "result": self.result.value,
            "detail": self.detail,
        }


class _Run:
    def __init__(
        self,
        environment: Environment,
        record: RolloutRecord,
        plan: Plan,
        *,
        initial: RolloutPhase,
        clock: Callable[[], float],
    ) -> None:
        self.environment = environment
        self.record = record
        self.plan = plan
        self.applied: List[Action] = []
        self.finalized = False
        self.cancel_event = threading.Event()
        self.log = logger.bind(environment=environment.name, record_id=record.id, plan_id=plan.id)
        self.machine = PhaseMachine(initial, clock=clock, on_transition=self._log_change)

    def _log_change(self, change: PhaseChange) -> None:
        self.log.info("rollout_phase_changed", source=change.source.value, dest=change.dest.value)


class RolloutHandle:
    """Caller's view of a running rollout."""

    def __init__(self, run: _Run, future: "Future[RolloutOutcome]") -> None:
        self._run = run
        self._future = future

    @property
    def record_id(self) -> str:
        return self._run.record.id

    @property
    def environment(self) -> str:
        return self._run.environment.name

    @property
    def phase(self) -> RolloutPhase:
        return self._run.machine.phase

    def cancel(self) -> bool:
        """Request rollback of a rollout that is still applying or monitoring.

        Cancellation is acted on after the action in flight, or at the next
        health poll. Returns False once the rollout has left those phases.
        """

        if self.phase not in (RolloutPhase.PLANNED, RolloutPhase.APPLYING, RolloutPhase.MONITORING):
            return False
        self._run.cancel_event.set()
        self._run.log.warning("rollout_cancel_requested", phase=self.phase.value)
        return True

    @property
    def transitions(self) -> List[RolloutPhase]:
        return [change.dest for change in self._run.machine.changes]

    def done(self) -> bool:
        return self._future.done()

    def wait(self, timeout: Optional[float] = None) -> RolloutOutcome:
        """Block until the rollout is terminal.

        Returns the outcome for ``Succeeded`` and ``Settled``; raises
        ``RollbackFailedError`` when the rollout ended ``Failed``.
        """

        return self._future.result(timeout)


class RolloutController:
    def __init__(
        self,
        cluster: ClusterStateProvider,
        health: HealthSignal,
        history: SqliteHistoryStore,
        *,
        settings: Optional[RolloutSettings] = None,
        materialize: Optional[Materializer] = None,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Callable[[float], None]] = None,
        max_workers: int = 4,
        finished_handles: int = 32,
    ) -> None:
        self.cluster = cluster
        self.health = health
        self.history = history
        self.settings = settings or RolloutSettings()
        self.materialize = materialize or _passthrough
        self.clock = clock
        self._sleep = sleep
        self.retry = RetryPolicy.from_settings(self.settings, sleep=sleep or time.sleep)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rollout")
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._handles: Dict[str, RolloutHandle] = {}
        self.finished_handles = finished_handles

    # -- public API --------------------------------------------------------

    def start(
        self,
        environment: Environment,
        plan: Plan,
        target: Optional[ManifestSet] = None,
        *,
        kind: RecordKind = RecordKind.APPLY,
    ) -> RolloutHandle:
        """Begin executing ``plan`` and return immediately.

        Raises ``RolloutInProgress`` when the environment is locked or its head
        record was left ``InProgress`` by a crashed process, ``PlanError`` when
        the plan predates the latest rollout, and ``PlanConsumedError`` when the
        plan has already been executed.
        """

        if plan.environment != environment.name:
            raise ValueError(f"plan for {plan.environment} cannot run in {environment.name}")
        lock = self._lock_for(environment)
        if not lock.acquire(blocking=False):
            head = self.history.head(environment.name)
            raise RolloutInProgress(environment.name, head.id if head else None)
        try:
            record = self._open_record(environment, plan, target, kind)
            run = _Run(environment, record, plan, initial=RolloutPhase.PLANNED, clock=self.clock)
            future = self._executor.submit(self._execute, run, lock)
        except BaseException:
            lock.release()
            raise
        handle = RolloutHandle(run, future)
        self._remember(handle)
        run.log.info("rollout_started", kind=kind.value, actions=len(plan), **_summary(plan))
        return handle

    def run(
        self,
        environment: Environment,
        plan: Plan,
        target: Optional[ManifestSet] = None,
        *,
        kind: RecordKind = RecordKind.APPLY,
    ) -> RolloutOutcome:
        return self.start(environment, plan, target, kind=kind).wait()

    def handle(self, record_id: str) -> Optional[RolloutHandle]:
        with self._locks_guard:
            return self._handles.get(record_id)

    def is_locked(self, environment: Environment) -> bool:
        return self._lock_for(environment).locked()

    def rollback(self, environment: Environment) -> RolloutHandle:
        """Return the environment to the Succeeded rollout before the head.

        With no earlier Succeeded rollout, the head's own plan is inverted. The
        rollback runs as a new record; history is never rewritten.
        """

        head = self.history.head(environment.name)
        if head is None:
            raise HistoryError(f"No rollouts recorded for {environment.name}")
        if head.result is RolloutResult.IN_PROGRESS:
            raise RolloutInProgress(environment.name, head.id)
        previous = self.history.last_succeeded(environment.name, before=head.id)
        prior = previous.manifest_set() if previous else None
        snapshot = self.cluster.fetch_snapshot(environment)
        if prior is not None:
            rollback_plan = compute_plan(prior, snapshot, head, clock=self.clock)
        else:
            head_plan = head.plan()
            if head.result is not RolloutResult.SUCCEEDED or head_plan is None:
                raise HistoryError(
                    f"Nothing to roll back in {environment.name}: no earlier Succeeded rollout"
                )
            rollback_plan = inverse_plan(
                list(head_plan), environment.name, snapshot_captured_at=snapshot.captured_at, clock=self.clock
            )
        logger.info(
            "manual_rollback_planned",
            environment=environment.name,
            head=head.id,
            target=previous.id if previous else None,
            actions=len(rollback_plan),
        )
        return self.start(environment, rollback_plan, prior, kind=RecordKind.ROLLBACK)

    def reconcile(self, environment: Environment) -> Optional[RolloutOutcome]:
        """Resolve a head record left ``InProgress`` by a crashed process.

        If the cluster already matches the record's target and its workloads
        are healthy, the record is finished as ``Succeeded``. Otherwise the
        environment is rolled back. Returns None when there is nothing to do.
        """

        lock = self._lock_for(environment)
        if not lock.acquire(blocking=False):
            head = self.history.head(environment.name)
            raise RolloutInProgress(environment.name, head.id if head else None)
        try:
            head = self.history.head(environment.name)
            if head is None or head.result is not RolloutResult.IN_PROGRESS:
                return None
            head_plan = head.plan() or Plan(
                environment=environment.name,
                actions=(),
                created_at=head.applied_at,
                snapshot_captured_at=head.applied_at,
                id=head.plan_id,
            )
            run = _Run(environment, head, head_plan, initial=RolloutPhase.MONITORING, clock=self.clock)
            run.log.warning("reconcile_started")
            return self._guard(run, lambda: self._resume(run))
        finally:
            lock.release()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # -- state machine -----------------------------------------------------

    def _execute(self, run: _Run, lock: threading.Lock) -> RolloutOutcome:
        try:
            return self._guard(run, lambda: self._drive(run))
        finally:
            lock.release()

    def _guard(self, run: _Run, body: Callable[[], RolloutOutcome]) -> RolloutOutcome:
        try:
            return body()
        except Exception as exc:
            if not run.finalized:
                run.log.exception("rollout_aborted", phase=run.machine.phase.value)
                self.history.finalize(
                    run.record.id, RolloutResult.FAILED, self.clock(), f"aborted in {run.machine.phase.value}: {exc}"
                )
                run.finalized = True
            raise

    def _drive(self, run: _Run) -> RolloutOutcome:
        run.machine.advance(RolloutPhase.APPLYING)
        cause = self._apply_all(run)
        if cause is None:
            run.machine.advance(RolloutPhase.MONITORING)
            cause = self._monitor(
                run,
                workload_minimums(run.plan),
                self.settings.workload_timeout_seconds,
                cancellable=True,
            )
        if cause is None:
            return self._finish(
                run, RolloutPhase.SUCCEEDED, RolloutResult.SUCCEEDED, f"{len(run.applied)} action(s) applied"
            )
        run.log.warning("rollout_unhealthy", phase=run.machine.phase.value, reason=str(cause))
        run.machine.advance(RolloutPhase.ROLLING_BACK)
        return self._roll_back(run, cause)

    def _resume(self, run: _Run) -> RolloutOutcome:
        snapshot = self.cluster.fetch_snapshot(run.environment)
        target = run.record.manifest_set()
        if target is not None:
            converged = compute_plan(target, snapshot, clock=self.clock).empty
        else:
            converged = _plan_converged(run.plan, snapshot)
        cause: Optional[OrchestratorError]
        if not converged:
            cause = RolloutFailure(
                "cluster state does not match the interrupted rollout's target",
                phase=run.machine.phase.value,
                record_id=run.record.id,
            )
        else:
            cause = self._monitor(
                run,
                workload_minimums(run.plan),
                self.settings.workload_timeout_seconds,
                cancellable=False,
            )
        if cause is None:
            return self._finish(run, RolloutPhase.SUCCEEDED, RolloutResult.SUCCEEDED, "resumed after restart")
        run.log.warning("reconcile_rolling_back", reason=str(cause))
        run.machine.advance(RolloutPhase.ROLLING_BACK)
        # How far the crashed run got is unknown, so undo all of it.
        run.applied = list(run.plan)
        return self._roll_back(run, cause)

    def _apply_all(self, run: _Run) -> Optional[OrchestratorError]:
        for action in run.plan:
            if run.cancel_event.is_set():
                return RolloutFailure("cancelled", phase=run.machine.phase.value, record_id=run.record.id)
            try:
                self._issue(run, action)
            except OrchestratorError as exc:
                run.log.error("action_failed", action=str(action), error=str(exc))
                return exc
            run.applied.append(action)
        return None

    def _issue(self, run: _Run, action: Action) -> None:
        def call() -> None:
            if action.type is ActionType.DELETE:
                self.cluster.delete_action(action)
                return
            payload = self.materialize(run.environment, action.after)
            self.cluster.apply_action(Action(action.type, action.identity, before=action.before, after=payload))

        self.retry.call(call, description=str(action))
        run.log.debug("action_applied", action=str(action))

    def _monitor(
        self,
        run: _Run,
        minimums: Dict[Any, int],
        timeout_seconds: float,
        *,
        cancellable: bool,
    ) -> Optional[OrchestratorError]:
        tracker = HealthTracker(
            minimums,
            stability_polls=self.settings.stability_polls,
            started_at=self.clock(),
            timeout_seconds=timeout_seconds,
        )
        window = self.settings.stability_window_seconds
        while True:
            if cancellable and run.cancel_event.is_set():
                return RolloutFailure("cancelled", phase=run.machine.phase.value, record_id=run.record.id)
            for identity in tracker:
                try:
                    ready = self.health.ready_count(identity)
                    failures = self.health.recent_failure_events(identity, window)
                except ClusterError as exc:
                    run.log.warning("health_poll_failed", workload=str(identity), error=str(exc))
                    tracker.observe_error(identity)
                    continue
                status = tracker.observe(identity, ready, failures)
                run.log.debug(
                    "workload_polled",
                    workload=str(identity),
                    ready=ready,
                    minimum=status.minimum,
                    failures=failures,
                    consecutive=status.consecutive,
                )
            regressed = tracker.regressed()
            if regressed:
                return RolloutFailure(
                    "workloads regressed below their ready minimum: " + ", ".join(str(w) for w in regressed),
                    phase=run.machine.phase.value,
                    record_id=run.record.id,
                )
            if tracker.all_healthy:
                return None
            timed_out = tracker.timed_out(self.clock())
            if timed_out:
                return HealthTimeoutError(timed_out, phase=run.machine.phase.value, record_id=run.record.id)
            self._pause(run, self.settings.poll_interval_seconds, cancellable=cancellable)

    def _pause(self, run: _Run, seconds: float, *, cancellable: bool) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancellable:
            run.cancel_event.wait(seconds)
        else:
            time.sleep(seconds)

    def _roll_back(self, run: _Run, cause: OrchestratorError) -> RolloutOutcome:
        failure: Optional[OrchestratorError] = None
        try:
            rollback_plan = self._rollback_plan(run)
        except OrchestratorError as exc:
            failure = exc
        else:
            run.log.warning("rollback_started", actions=len(rollback_plan), **_summary(rollback_plan))
            for action in rollback_plan:
                try:
                    self._issue(run, action)
                except OrchestratorError as exc:
                    run.log.error("rollback_action_failed", action=str(action), error=str(exc))
                    failure = exc
                    break
            if failure is None:
                failure = self._monitor(
                    run,
                    workload_minimums(rollback_plan),
                    self.settings.rollback_timeout_seconds,
                    cancellable=False,
                )
        if failure is None:
            return self._finish(run, RolloutPhase.SETTLED, RolloutResult.ROLLED_BACK, f"rolled back: {cause}")
        self._finish(
            run,
            RolloutPhase.FAILED,
            RolloutResult.FAILED,
            f"rollback failed: {failure}; original failure: {cause}",
        )
        raise RollbackFailedError(
            f"Rollback of {run.environment.name} did not stabilize: {failure}",
            phase=RolloutPhase.FAILED.value,
            record_id=run.record.id,
        )

    def _rollback_plan(self, run: _Run) -> Plan:
        previous = self.history.last_succeeded(run.environment.name, before=run.record.id)
        prior = previous.manifest_set() if previous else None
        if prior is not None:
            snapshot = self.cluster.fetch_snapshot(run.environment)
            run.log.info("rollback_target", target_record=previous.id)
            return compute_plan(prior, snapshot, clock=self.clock)
        run.log.info("rollback_target", target_record=None, inverted=len(run.applied))
        return inverse_plan(run.applied, run.environment.name, snapshot_captured_at=self.clock(), clock=self.clock)

    def _finish(self, run: _Run, phase: RolloutPhase, result: RolloutResult, detail: str) -> RolloutOutcome:
        run.machine.advance(phase)
        self.history.finalize(run.record.id, result, self.clock(), detail)
        run.finalized = True
        run.log.info("rollout_finished", phase=phase.value, result=result.value)
        return RolloutOutcome(
            record_id=run.record.id,
            environment=run.environment.name,
            phase=phase,
            result=result,
            detail=detail,
        )

    # -- helpers -----------------------------------------------------------

    def _open_record(
        self,
        environment: Environment,
        plan: Plan,
        target: Optional[ManifestSet],
        kind: RecordKind,
    ) -> RolloutRecord:
        record_id = self.history.append(
            RolloutRecord(
                environment=environment.name,
                plan_id=plan.id,
                applied_at=self.clock(),
                kind=kind,
                plan_json=plan.to_json(),
                manifest_json=target.to_json() if target is not None else "",
            ),
            not_before=plan.snapshot_captured_at,
        )
        record = self.history.get(record_id)
        if record is None:
            raise HistoryError(f"record {record_id} vanished after append")
        return record

    def _remember(self, handle: RolloutHandle) -> None:
        # Only the newest finished handles are kept; history holds the rest.
        with self._locks_guard:
            self._handles[handle.record_id] = handle
            finished = [record_id for record_id, known in self._handles.items() if known.done()]
            for record_id in finished[: max(0, len(finished) - self.finished_handles)]:
                del self._handles[record_id]

    def _lock_for(self, environment: Environment) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(environment.name, threading.Lock())


def _plan_converged(plan: Plan, snapshot: ClusterSnapshot) -> bool:
    for action in plan:
        if action.type is ActionType.DELETE:
            if action.identity in snapshot:
                return False
            continue
        if action.identity not in snapshot or action.after is None:
            return False
        if not documents_equal(snapshot.get(action.identity), action.after):
            return False
    return True


def _summary(plan: Plan) -> Dict[str, int]:
    return {key.lower(): value for key, value in plan.summary().items()}


__all__ = ["RolloutController", "RolloutHandle", "RolloutOutcome"]

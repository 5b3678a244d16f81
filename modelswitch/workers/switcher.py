"""Switch orchestrator driving strategies, transitions and health-based rollback."""

import copy
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..core.errors import (
    AlreadyActiveError,
    ConflictError,
    HealthCheckFailure,
    NotFoundError,
)
from ..core.health import HealthMonitor, HealthView, ThresholdViolation, WatchCallback
from ..core.registry import DynamicModelRegistry
from ..core.strategies import StrategyType, SwitchingStrategy, create_strategy
from ..core.transition import TransitionManager, TransitionState

logger = logging.getLogger(__name__)


def _describe(error: Exception) -> str:
    return f"{type(error).__name__}: {error}"


class SwitchStatus(str, Enum):
    """Switch operation lifecycle status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (SwitchStatus.COMPLETED, SwitchStatus.FAILED, SwitchStatus.ABORTED)


@dataclass
class SwitchOperation:
    """One request to move a model's traffic to another version."""
    operation_id: str
    model_id: str
    from_version: str
    to_version: str
    strategy_type: StrategyType
    strategy_config: dict[str, Any] = field(default_factory=dict)
    status: SwitchStatus = SwitchStatus.PENDING
    progress: float = 0.0
    weights: dict[str, float] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    finished_at: float | None = None
    awaiting_promotion: bool = False
    error: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    def record(self, event: str, **details: Any) -> None:
        self.history.append({"timestamp": time.time(), "event": event, **details})

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "operation_id": self.operation_id,
            "model_id": self.model_id,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "strategy_type": self.strategy_type.value,
            "strategy_config": copy.deepcopy(self.strategy_config),
            "status": self.status.value,
            "progress": round(self.progress, 4),
            "weights": dict(self.weights),
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "awaiting_promotion": self.awaiting_promotion,
            "error": self.error,
            "history": copy.deepcopy(self.history),
        }


@dataclass
class _Run:
    """Control state of a running operation's worker thread."""
    operation: SwitchOperation
    strategy: SwitchingStrategy
    thread: threading.Thread | None = None
    wake: threading.Event = field(default_factory=threading.Event)
    abort_requested: bool = False
    abort_reason: str | None = None
    promote_requested: bool = False
    health_failure: list[ThresholdViolation] = field(default_factory=list)
    transition_id: str | None = None
    watcher: WatchCallback | None = None


class ModelSwitcher:
    """Owns switch operations and drives each to a terminal state.

    Each operation runs on its own worker thread which:
    1. Loads the target version (pinning both versions in the cache)
    2. Ticks the strategy, applying its traffic split to the registry
    3. Completes the transition when the strategy is done, or
    4. Aborts back to the original version on strategy, health or caller abort

    Failures after validation never propagate to the caller; they are
    captured in the operation's terminal status.
    """

    def __init__(
        self,
        registry: DynamicModelRegistry,
        transitions: TransitionManager,
        monitor: HealthMonitor | None = None,
        default_strategy: StrategyType | str = StrategyType.IMMEDIATE,
        tick_interval: float = 1.0,
    ):
        self.registry = registry
        self.versions = registry.versions
        self.transitions = transitions
        self.monitor = monitor
        self.default_strategy = StrategyType(default_strategy)
        self.tick_interval = tick_interval

        self._lock = threading.RLock()
        self._operations: dict[str, SwitchOperation] = {}
        self._runs: dict[str, _Run] = {}
        self._running_by_model: dict[str, str] = {}

    def switch_model(
        self,
        model_id: str,
        target_version: str,
        strategy_type: StrategyType | str | None = None,
        strategy_config: dict[str, Any] | None = None,
    ) -> str:
        """Start moving model_id's traffic to target_version.

        Returns:
            The operation id; poll get_switch_status for progress.

        Raises:
            ValueError: invalid strategy or strategy parameters.
            NotFoundError: unknown model id or version.
            AlreadyActiveError: target already serves all traffic.
            ConflictError: another switch is running for model_id.
        """
        strategy_type = StrategyType(strategy_type or self.default_strategy)
        strategy = create_strategy(strategy_type, strategy_config)
        self.versions.get_version(model_id, target_version)

        with self._lock:
            running = self._running_by_model.get(model_id)
            if running is not None:
                raise ConflictError(f"Switch {running} is already running for {model_id}")

            assignment = self.registry.get_assignment(model_id)
            if assignment.is_settled and assignment.primary == target_version:
                raise AlreadyActiveError(f"{model_id}:{target_version} is already active")
            if not assignment.is_settled:
                raise ConflictError(f"{model_id} has an unsettled traffic split")

            operation = SwitchOperation(
                operation_id=str(uuid.uuid4()),
                model_id=model_id,
                from_version=assignment.primary,
                to_version=target_version,
                strategy_type=strategy_type,
                strategy_config=dict(strategy_config or {}),
                weights={assignment.primary: 100.0},
            )
            operation.record("created", strategy=strategy_type.value)

            run = _Run(operation=operation, strategy=strategy)
            self._operations[operation.operation_id] = operation
            self._runs[operation.operation_id] = run
            self._running_by_model[model_id] = operation.operation_id
            self.registry.reserve(model_id, operation.from_version, operation.to_version)

            run.thread = threading.Thread(
                target=self._run_operation,
                args=(run,),
                name=f"switch-{operation.operation_id[:8]}",
                daemon=True,
            )
            run.thread.start()

        logger.info(
            f"Switch {operation.operation_id} created for {model_id}: "
            f"{operation.from_version} -> {target_version} ({strategy_type.value})"
        )
        return operation.operation_id

    def _run_operation(self, run: _Run) -> None:
        op = run.operation
        try:
            with self._lock:
                if run.abort_requested:
                    self._finalize(run, SwitchStatus.ABORTED, run.abort_reason)
                    return
                op.status = SwitchStatus.RUNNING
                op.started_at = time.time()
                op.record("running")

            # Keep the serving instance resident while the target loads
            from_instance = self.registry.get_instance(op.model_id, op.from_version)
            self.registry.cache.pin(from_instance.instance_key)
            try:
                to_instance = self.registry.get_instance(op.model_id, op.to_version)
                run.transition_id = self.transitions.begin_transition(from_instance, to_instance)
            finally:
                self.registry.cache.unpin(from_instance.instance_key)
            with self._lock:
                op.record("transition_started", transition_id=run.transition_id)

            if self.monitor is not None:
                run.watcher = lambda _, found: self._on_health_alert(run, found)
                self.monitor.watch(op.model_id, run.watcher)

            self._tick_loop(run)
        except Exception as e:
            logger.exception(f"Switch {op.operation_id} failed")
            self._fail(run, _describe(e))
        finally:
            if self.monitor is not None and run.watcher is not None:
                self.monitor.unwatch(op.model_id, run.watcher)

    def _tick_loop(self, run: _Run) -> None:
        op = run.operation
        start = time.monotonic()

        while True:
            elapsed = time.monotonic() - start
            health = self.monitor.health_view(op.model_id) if self.monitor else HealthView()
            decision = run.strategy.compute_next_state(op, elapsed, health)

            with self._lock:
                abort_requested = run.abort_requested
                promote_requested = run.promote_requested
                health_failure = list(run.health_failure)

            if abort_requested:
                self._abort(run, run.abort_reason or "aborted by caller")
                return
            if health_failure and not decision.abort:
                reason = "; ".join(str(v) for v in health_failure)
                self._abort(run, _describe(HealthCheckFailure(reason)))
                return
            if decision.abort:
                self._abort(run, _describe(HealthCheckFailure(decision.reason or "strategy abort")))
                return

            if promote_requested:
                self._complete(run)
                return

            if decision.weights != op.weights:
                self.registry.apply_assignment(op.model_id, decision.weights)
                with self._lock:
                    op.weights = dict(decision.weights)
                    op.record("weights_applied", weights=dict(decision.weights))
            with self._lock:
                op.progress = decision.progress

            if decision.done:
                if run.strategy.auto_promote:
                    self._complete(run)
                    return
                with self._lock:
                    if not op.awaiting_promotion:
                        op.awaiting_promotion = True
                        op.record("awaiting_promotion")
                        logger.info(f"Switch {op.operation_id} finished its test period, awaiting promotion")

            run.wake.wait(self.tick_interval)
            run.wake.clear()

    def _on_health_alert(self, run: _Run, violations: list[ThresholdViolation]) -> None:
        found = [v for v in violations if v.version == run.operation.to_version]
        if not found:
            return
        with self._lock:
            run.health_failure = found
        run.wake.set()

    def _complete(self, run: _Run) -> None:
        op = run.operation
        drained = self.transitions.complete_transition(run.transition_id)
        with self._lock:
            op.weights = {op.to_version: 100.0}
            op.progress = 1.0
            op.awaiting_promotion = False
            op.record("transition_completed", drained=drained)
            self._finalize(run, SwitchStatus.COMPLETED)

    def _abort(self, run: _Run, reason: str) -> None:
        op = run.operation
        drained = self.transitions.abort_transition(run.transition_id)
        with self._lock:
            op.weights = {op.from_version: 100.0}
            op.record("transition_aborted", drained=drained, reason=reason)
            self._finalize(run, SwitchStatus.ABORTED, reason)

    def _fail(self, run: _Run, error: str) -> None:
        """Leave the original version serving all traffic and mark failed."""
        op = run.operation
        if run.transition_id is not None:
            try:
                transition = self.transitions.get_transition(run.transition_id)
                if transition.state == TransitionState.ACTIVE:
                    self.transitions.abort_transition(run.transition_id)
            except Exception as e:
                logger.error(f"Could not abort transition for {op.operation_id}: {e}")
        else:
            try:
                self.registry.apply_assignment(op.model_id, {op.from_version: 100.0})
            except Exception as e:
                logger.error(f"Could not restore assignment for {op.model_id}: {e}")

        with self._lock:
            op.weights = {op.from_version: 100.0}
            self._finalize(run, SwitchStatus.FAILED, error)

    def _finalize(self, run: _Run, status: SwitchStatus, error: str | None = None) -> None:
        op = run.operation
        with self._lock:
            if op.status.is_terminal:
                return
            op.status = status
            op.error = error
            op.finished_at = time.time()
            op.awaiting_promotion = False
            op.record(status.value, **({"error": error} if error else {}))
            if self._running_by_model.get(op.model_id) == op.operation_id:
                del self._running_by_model[op.model_id]
            self._runs.pop(op.operation_id, None)
            self.registry.release(op.model_id, op.from_version, op.to_version)

        log = logger.info if status == SwitchStatus.COMPLETED else logger.warning
        log(f"Switch {op.operation_id} {status.value}" + (f": {error}" if error else ""))

    def _get_operation(self, operation_id: str) -> SwitchOperation:
        operation = self._operations.get(operation_id)
        if operation is None:
            raise NotFoundError(f"Switch operation {operation_id} not found")
        return operation

    def get_switch_status(self, operation_id: str) -> SwitchOperation:
        """Return a snapshot of the operation (read-only copy)."""
        with self._lock:
            return copy.deepcopy(self._get_operation(operation_id))

    def list_operations(self, model_id: str | None = None) -> list[SwitchOperation]:
        with self._lock:
            return [
                copy.deepcopy(op)
                for op in self._operations.values()
                if model_id is None or op.model_id == model_id
            ]

    def get_running_operation(self, model_id: str) -> SwitchOperation | None:
        with self._lock:
            operation_id = self._running_by_model.get(model_id)
            return copy.deepcopy(self._operations[operation_id]) if operation_id else None

    def _request(self, operation_id: str, action: str) -> _Run:
        with self._lock:
            operation = self._get_operation(operation_id)
            run = self._runs.get(operation_id)
            if run is None or operation.status.is_terminal:
                raise ConflictError(
                    f"Cannot {action} switch {operation_id}: already {operation.status.value}"
                )
            return run

    def abort_switch(
        self,
        operation_id: str,
        reason: str | None = None,
        wait: bool = True,
        timeout: float | None = None,
    ) -> SwitchOperation:
        """Abort a running switch, reverting traffic to the original version."""
        run = self._request(operation_id, "abort")
        with self._lock:
            run.abort_requested = True
            run.abort_reason = reason or "aborted by caller"
            run.operation.record("abort_requested")
        run.wake.set()
        logger.info(f"Abort requested for switch {operation_id}")

        if wait:
            return self.wait_for(operation_id, timeout=timeout)
        return self.get_switch_status(operation_id)

    def promote_switch(
        self,
        operation_id: str,
        wait: bool = True,
        timeout: float | None = None,
    ) -> SwitchOperation:
        """Finalize a running switch, moving all traffic to the target version.

        Required to finish an A/B test; also promotes other strategies early.
        """
        run = self._request(operation_id, "promote")
        with self._lock:
            run.promote_requested = True
            run.operation.record("promote_requested")
        run.wake.set()
        logger.info(f"Promotion requested for switch {operation_id}")

        if wait:
            return self.wait_for(operation_id, timeout=timeout)
        return self.get_switch_status(operation_id)

    def rollback_model(
        self,
        model_id: str,
        strategy_type: StrategyType | str = StrategyType.IMMEDIATE,
        strategy_config: dict[str, Any] | None = None,
    ) -> str:
        """Switch model_id back to the version registered before the active one."""
        assignment = self.registry.get_assignment(model_id)
        target = self.versions.get_rollback_target(model_id, assignment.primary)
        if target is None:
            raise NotFoundError(f"No earlier version to roll {model_id} back to")
        return self.switch_model(model_id, target.version, strategy_type, strategy_config)

    def wait_for(self, operation_id: str, timeout: float | None = None) -> SwitchOperation:
        """Block until the operation is terminal or timeout elapses."""
        with self._lock:
            self._get_operation(operation_id)
            run = self._runs.get(operation_id)
        if run is not None and run.thread is not None:
            run.thread.join(timeout=timeout)
        return self.get_switch_status(operation_id)

    def shutdown(self, timeout: float = 30.0) -> None:
        """Abort running operations and join their worker threads."""
        with self._lock:
            runs = list(self._runs.values())
            for run in runs:
                run.abort_requested = True
                run.abort_reason = "switcher shutdown"
                run.wake.set()

        for run in runs:
            if run.thread is not None and run.thread.is_alive():
                run.thread.join(timeout=timeout)
        if runs:
            logger.info(f"Switcher shut down, aborted {len(runs)} running operations")

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "running": dict(self._running_by_model),
                "operations": len(self._operations),
            }

"""Switching strategies: pure traffic-split decisions over elapsed time and health.

The set of strategies is closed. Each variant is a frozen dataclass
exposing compute_next_state; new behaviour is added as a new variant
registered in _STRATEGIES.
"""

import math
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from .health import HealthView

if TYPE_CHECKING:
    from ..workers.switcher import SwitchOperation


class StrategyType(str, Enum):
    """Available switching strategies."""
    IMMEDIATE = "immediate"
    GRADUAL = "gradual"
    CANARY = "canary"
    AB_TEST = "ab_test"


@dataclass(frozen=True)
class StrategyDecision:
    """Target traffic split for the next tick."""
    weights: dict[str, float]
    done: bool = False
    abort: bool = False
    progress: float = 0.0
    reason: str | None = None


def clamp(weight: float) -> float:
    return min(100.0, max(0.0, weight))


def _split(operation: "SwitchOperation", to_weight: float) -> dict[str, float]:
    to_weight = clamp(to_weight)
    return {operation.from_version: 100.0 - to_weight, operation.to_version: to_weight}


def _health_abort(
    operation: "SwitchOperation",
    health: HealthView,
    current: dict[str, float],
) -> StrategyDecision | None:
    violations = health.violations_for(operation.to_version)
    if not violations:
        return None
    return StrategyDecision(
        weights=current,
        abort=True,
        progress=operation.progress,
        reason="; ".join(str(v) for v in violations),
    )


@dataclass(frozen=True)
class ImmediateStrategy:
    """Move all traffic in a single step."""
    type: StrategyType = field(default=StrategyType.IMMEDIATE, init=False)
    auto_promote: bool = field(default=True, init=False)

    def compute_next_state(
        self, operation: "SwitchOperation", elapsed: float, health: HealthView
    ) -> StrategyDecision:
        return StrategyDecision(weights={operation.to_version: 100.0}, done=True, progress=1.0)


@dataclass(frozen=True)
class GradualStrategy:
    """Linear ramp in fixed steps over a duration (seconds)."""
    duration: float = 60.0
    steps: int = 10
    type: StrategyType = field(default=StrategyType.GRADUAL, init=False)
    auto_promote: bool = field(default=True, init=False)

    def __post_init__(self):
        if self.duration < 0:
            raise ValueError("duration must be non-negative")
        if self.steps < 1:
            raise ValueError("steps must be at least 1")

    @property
    def interval(self) -> float:
        return self.duration / self.steps

    def compute_next_state(
        self, operation: "SwitchOperation", elapsed: float, health: HealthView
    ) -> StrategyDecision:
        if self.interval == 0:
            step = self.steps
        else:
            step = min(self.steps, math.floor(elapsed / self.interval))
        weight = step / self.steps * 100.0

        weights = _split(operation, weight)
        aborted = _health_abort(operation, health, operation.weights or weights)
        if aborted:
            return aborted

        done = weight >= 100.0
        return StrategyDecision(weights=weights, done=done, progress=weight / 100.0)


@dataclass(frozen=True)
class CanaryStrategy:
    """Ramp from an initial slice, aborting when the target's error rate is too high."""
    initial_percentage: float = 5.0
    step_percentage: float = 10.0
    evaluation_period: float = 60.0
    max_error_rate_threshold: float = 0.05
    min_requests: int = 1
    type: StrategyType = field(default=StrategyType.CANARY, init=False)
    auto_promote: bool = field(default=True, init=False)

    def __post_init__(self):
        if not 0.0 <= self.initial_percentage <= 100.0:
            raise ValueError("initial_percentage must be within [0, 100]")
        if self.step_percentage <= 0:
            raise ValueError("step_percentage must be positive")
        if self.evaluation_period <= 0:
            raise ValueError("evaluation_period must be positive")
        if not 0.0 <= self.max_error_rate_threshold <= 1.0:
            raise ValueError("max_error_rate_threshold must be within [0, 1]")

    def compute_next_state(
        self, operation: "SwitchOperation", elapsed: float, health: HealthView
    ) -> StrategyDecision:
        ticks = math.floor(elapsed / self.evaluation_period)
        raw = self.initial_percentage + ticks * self.step_percentage
        weight = clamp(raw)
        current = operation.weights or _split(operation, self.initial_percentage)

        error_rate = health.error_rate(operation.to_version)
        if (health.request_count(operation.to_version) >= self.min_requests
                and error_rate > self.max_error_rate_threshold):
            return StrategyDecision(
                weights=current,
                abort=True,
                progress=operation.progress,
                reason=(
                    f"canary error rate {error_rate:.4f} exceeds "
                    f"{self.max_error_rate_threshold:.4f}"
                ),
            )

        aborted = _health_abort(operation, health, current)
        if aborted:
            return aborted

        return StrategyDecision(
            weights=_split(operation, weight),
            done=weight >= 100.0,
            progress=weight / 100.0,
        )


@dataclass(frozen=True)
class ABTestStrategy:
    """Hold a fixed split for a test period; promotion is an explicit call."""
    traffic_percentage: float = 50.0
    test_duration: float = 3600.0
    type: StrategyType = field(default=StrategyType.AB_TEST, init=False)
    auto_promote: bool = field(default=False, init=False)

    def __post_init__(self):
        if not 0.0 <= self.traffic_percentage <= 100.0:
            raise ValueError("traffic_percentage must be within [0, 100]")
        if self.test_duration < 0:
            raise ValueError("test_duration must be non-negative")

    def compute_next_state(
        self, operation: "SwitchOperation", elapsed: float, health: HealthView
    ) -> StrategyDecision:
        weights = _split(operation, self.traffic_percentage)
        aborted = _health_abort(operation, health, weights)
        if aborted:
            return aborted

        if self.test_duration == 0:
            progress = 1.0
        else:
            progress = min(1.0, elapsed / self.test_duration)
        return StrategyDecision(weights=weights, done=elapsed >= self.test_duration, progress=progress)


SwitchingStrategy = Union[ImmediateStrategy, GradualStrategy, CanaryStrategy, ABTestStrategy]

_STRATEGIES: dict[StrategyType, type] = {
    StrategyType.IMMEDIATE: ImmediateStrategy,
    StrategyType.GRADUAL: GradualStrategy,
    StrategyType.CANARY: CanaryStrategy,
    StrategyType.AB_TEST: ABTestStrategy,
}


def create_strategy(
    strategy_type: StrategyType | str,
    config: dict[str, Any] | None = None,
) -> SwitchingStrategy:
    """Build a strategy from its type and parameter dictionary.

    Raises:
        ValueError: unknown type, unknown parameter or invalid value.
    """
    try:
        strategy_type = StrategyType(strategy_type)
    except ValueError:
        valid = ", ".join(t.value for t in StrategyType)
        raise ValueError(f"Unknown strategy {strategy_type!r}, expected one of: {valid}") from None

    cls = _STRATEGIES[strategy_type]
    config = dict(config or {})
    allowed = {f.name for f in fields(cls) if f.init}
    unknown = set(config) - allowed
    if unknown:
        raise ValueError(f"Unknown {strategy_type.value} parameters: {', '.join(sorted(unknown))}")

    try:
        return cls(**config)
    except TypeError as e:
        raise ValueError(f"Invalid {strategy_type.value} parameters: {e}") from e

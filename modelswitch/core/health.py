"""Rolling-window health metrics and threshold alerts per model version."""

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from queue import Empty, SimpleQueue
from typing import Any, Callable

from .instance import CacheKey

logger = logging.getLogger(__name__)


@dataclass
class AlertThresholds:
    """Limits that raise alerts and abort in-progress switches."""
    error_rate: float = 0.05
    latency_p95: float = 1000.0


@dataclass(frozen=True)
class HealthStatus:
    """Point-in-time view of one version's rolling window."""
    model_id: str
    version: str
    request_count: int = 0
    error_count: int = 0
    latency_samples: tuple[float, ...] = ()

    @property
    def error_rate(self) -> float:
        if self.request_count == 0:
            return 0.0
        return self.error_count / self.request_count

    @property
    def avg_latency_ms(self) -> float:
        if not self.latency_samples:
            return 0.0
        return sum(self.latency_samples) / len(self.latency_samples)

    @property
    def latency_p95_ms(self) -> float:
        return percentile(self.latency_samples, 95)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "model_id": self.model_id,
            "version": self.version,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "error_rate": round(self.error_rate, 4),
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "latency_p95_ms": round(self.latency_p95_ms, 2),
        }


@dataclass(frozen=True)
class ThresholdViolation:
    """A metric above its configured limit."""
    model_id: str
    version: str
    metric: str
    value: float
    threshold: float
    detected_at: float = field(default_factory=time.time)

    def __str__(self) -> str:
        return (
            f"{self.model_id}:{self.version} {self.metric}={self.value:.4f} "
            f"exceeds {self.threshold:.4f}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "version": self.version,
            "metric": self.metric,
            "value": round(self.value, 4),
            "threshold": self.threshold,
            "detected_at": self.detected_at,
        }


@dataclass(frozen=True)
class HealthView:
    """Per-version health of one model id, as seen by switching strategies."""
    statuses: dict[str, HealthStatus] = field(default_factory=dict)
    violations: dict[str, list[ThresholdViolation]] = field(default_factory=dict)

    def status(self, version: str) -> HealthStatus | None:
        return self.statuses.get(version)

    def error_rate(self, version: str) -> float:
        status = self.statuses.get(version)
        return status.error_rate if status else 0.0

    def request_count(self, version: str) -> int:
        status = self.statuses.get(version)
        return status.request_count if status else 0

    def violations_for(self, version: str) -> list[ThresholdViolation]:
        return self.violations.get(version, [])


def percentile(samples: tuple[float, ...] | list[float], pct: float) -> float:
    """Nearest-rank percentile; 0.0 for an empty sample set."""
    if not samples:
        return 0.0
    ordered = sorted(samples)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


class _Window:
    """Sample-count and time bounded record of recent requests."""

    def __init__(self, size: int):
        self.samples: deque[tuple[float, float, bool]] = deque(maxlen=size)

    def add(self, timestamp: float, latency_ms: float, is_error: bool) -> None:
        self.samples.append((timestamp, latency_ms, is_error))

    def prune(self, cutoff: float) -> None:
        while self.samples and self.samples[0][0] < cutoff:
            self.samples.popleft()


WatchCallback = Callable[[str, list[ThresholdViolation]], None]


class HealthMonitor:
    """Collects per-instance request metrics off the serving path.

    record_request only enqueues; samples are folded into the rolling
    windows by readers and by the background tick, so recording never
    waits on a lock held by an evaluation.
    """

    def __init__(
        self,
        thresholds: AlertThresholds | None = None,
        window_size: int = 1000,
        window_seconds: float | None = 300.0,
        min_requests: int = 10,
        check_interval: float = 5.0,
    ):
        self.thresholds = thresholds or AlertThresholds()
        self.window_size = window_size
        self.window_seconds = window_seconds
        self.min_requests = min_requests
        self.check_interval = check_interval

        self._pending: SimpleQueue = SimpleQueue()
        self._lock = threading.Lock()
        self._windows: dict[CacheKey, _Window] = {}
        self._alerts: dict[tuple[str, str, str], ThresholdViolation] = {}
        self._watchers: dict[str, WatchCallback] = {}
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    def record_request(self, key: CacheKey, latency_ms: float, is_error: bool = False) -> None:
        """Record one served request without blocking."""
        self._pending.put((key, time.monotonic(), latency_ms, is_error))

    def _flush(self) -> None:
        with self._lock:
            while True:
                try:
                    key, timestamp, latency_ms, is_error = self._pending.get_nowait()
                except Empty:
                    break
                window = self._windows.get(key)
                if window is None:
                    window = self._windows[key] = _Window(self.window_size)
                window.add(timestamp, latency_ms, is_error)

            if self.window_seconds is not None:
                cutoff = time.monotonic() - self.window_seconds
                for window in self._windows.values():
                    window.prune(cutoff)

    def _status(self, key: CacheKey) -> HealthStatus:
        window = self._windows.get(key)
        if window is None:
            return HealthStatus(model_id=key[0], version=key[1])
        samples = window.samples
        return HealthStatus(
            model_id=key[0],
            version=key[1],
            request_count=len(samples),
            error_count=sum(1 for _, _, err in samples if err),
            latency_samples=tuple(lat for _, lat, _ in samples),
        )

    def snapshot(self, key: CacheKey) -> HealthStatus:
        """Point-in-time read of the rolling window for key."""
        self._flush()
        with self._lock:
            return self._status(key)

    def snapshot_model(self, model_id: str) -> dict[str, HealthStatus]:
        self._flush()
        with self._lock:
            return {k[1]: self._status(k) for k in self._windows if k[0] == model_id}

    def snapshot_all(self) -> dict[CacheKey, HealthStatus]:
        self._flush()
        with self._lock:
            return {k: self._status(k) for k in self._windows}

    def _violations(self, status: HealthStatus) -> list[ThresholdViolation]:
        if status.request_count < self.min_requests:
            return []

        violations = []
        if status.error_rate > self.thresholds.error_rate:
            violations.append(ThresholdViolation(
                status.model_id, status.version, "error_rate",
                status.error_rate, self.thresholds.error_rate,
            ))
        if status.latency_p95_ms > self.thresholds.latency_p95:
            violations.append(ThresholdViolation(
                status.model_id, status.version, "latency_p95",
                status.latency_p95_ms, self.thresholds.latency_p95,
            ))
        return violations

    def check_thresholds(self, key: CacheKey) -> list[ThresholdViolation]:
        """List thresholds currently violated by key."""
        return self._violations(self.snapshot(key))

    def health_view(self, model_id: str) -> HealthView:
        """Statuses and violations for every version of model_id."""
        statuses = self.snapshot_model(model_id)
        violations = {}
        for version, status in statuses.items():
            found = self._violations(status)
            if found:
                violations[version] = found
        return HealthView(statuses=statuses, violations=violations)

    def reset(self, key: CacheKey | None = None) -> None:
        """Drop recorded samples for key, or for everything."""
        self._flush()
        with self._lock:
            if key is None:
                self._windows.clear()
                self._alerts.clear()
            else:
                self._windows.pop(key, None)
                for alert_key in [a for a in self._alerts if a[:2] == key]:
                    del self._alerts[alert_key]

    def get_alerts(self) -> list[ThresholdViolation]:
        """Currently active threshold violations."""
        with self._lock:
            return list(self._alerts.values())

    def watch(self, model_id: str, callback: WatchCallback) -> None:
        """Notify callback of violations on model_id during each tick."""
        with self._lock:
            self._watchers[model_id] = callback

    def unwatch(self, model_id: str, callback: WatchCallback | None = None) -> None:
        """Stop notifying model_id; with callback, only if it is still the registered one."""
        with self._lock:
            if callback is None or self._watchers.get(model_id) is callback:
                self._watchers.pop(model_id, None)

    def evaluate(self) -> list[ThresholdViolation]:
        """Run one evaluation pass: refresh alerts and notify watchers."""
        statuses = self.snapshot_all()
        violations = [v for status in statuses.values() for v in self._violations(status)]

        with self._lock:
            current = {(v.model_id, v.version, v.metric): v for v in violations}
            for alert_key, violation in current.items():
                if alert_key not in self._alerts:
                    logger.warning(f"Health alert raised: {violation}")
                    self._alerts[alert_key] = violation
            for alert_key in [a for a in self._alerts if a not in current]:
                logger.info(f"Health alert cleared: {alert_key[0]}:{alert_key[1]} {alert_key[2]}")
                del self._alerts[alert_key]
            watchers = dict(self._watchers)

        for model_id, callback in watchers.items():
            found = [v for v in violations if v.model_id == model_id]
            if not found:
                continue
            try:
                callback(model_id, found)
            except Exception as e:
                logger.error(f"Health watcher error for {model_id}: {e}")

        return violations

    def start(self) -> None:
        """Start the background evaluation thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._monitor_loop, name="health-monitor", daemon=True)
        self._thread.start()
        logger.info(f"Health monitor started (interval {self.check_interval}s)")

    def _monitor_loop(self) -> None:
        while not self._stop.wait(self.check_interval):
            try:
                self.evaluate()
            except Exception:
                logger.exception("Health evaluation failed")

    def stop(self) -> None:
        """Stop the background thread and wait for it to exit."""
        self._stop.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

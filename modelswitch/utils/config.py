"""Configuration management."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

from ..core.health import AlertThresholds
from ..core.strategies import StrategyType

ENV_PREFIX = "VLLM_MODEL_SWITCHING_"


@dataclass
class Config:
    """Application configuration."""

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Cache settings
    max_cached_models: int = 4
    preload_workers: int = 2

    # Switching settings
    default_switch_strategy: StrategyType = StrategyType.IMMEDIATE
    max_transition_time: float = 30.0
    switch_tick_interval: float = 1.0

    # Health monitoring settings
    enable_health_monitoring: bool = True
    alert_thresholds: AlertThresholds = field(default_factory=AlertThresholds)
    health_window_size: int = 1000
    health_window_seconds: float = 300.0
    health_check_interval: float = 5.0
    health_min_requests: int = 10

    # Checkpoint watcher settings
    watch_dir: Path | None = None
    watcher_patterns: list[str] = field(default_factory=lambda: [".pt", ".pth"])
    watcher_debounce_seconds: float = 2.0
    default_model_class: str | None = None

    def __post_init__(self):
        self.default_switch_strategy = StrategyType(self.default_switch_strategy)
        if isinstance(self.alert_thresholds, Mapping):
            self.alert_thresholds = AlertThresholds(**self.alert_thresholds)
        if self.watch_dir is not None:
            self.watch_dir = Path(self.watch_dir)
        if self.max_cached_models < 1:
            raise ValueError("max_cached_models must be at least 1")
        if self.max_transition_time < 0:
            raise ValueError("max_transition_time must be non-negative")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "host": self.host,
            "port": self.port,
            "max_cached_models": self.max_cached_models,
            "preload_workers": self.preload_workers,
            "default_switch_strategy": self.default_switch_strategy.value,
            "max_transition_time": self.max_transition_time,
            "switch_tick_interval": self.switch_tick_interval,
            "enable_health_monitoring": self.enable_health_monitoring,
            "alert_thresholds": {
                "error_rate": self.alert_thresholds.error_rate,
                "latency_p95": self.alert_thresholds.latency_p95,
            },
            "health_window_size": self.health_window_size,
            "health_window_seconds": self.health_window_seconds,
            "health_check_interval": self.health_check_interval,
            "health_min_requests": self.health_min_requests,
            "watch_dir": str(self.watch_dir) if self.watch_dir else None,
            "watcher_patterns": self.watcher_patterns,
            "watcher_debounce_seconds": self.watcher_debounce_seconds,
            "default_model_class": self.default_model_class,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Config":
        """Create Config from a dictionary.

        Threshold keys may be nested (alert_thresholds: {error_rate: ...})
        or dotted (alert_thresholds.error_rate). Unknown keys are ignored.
        """
        names = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        thresholds: dict[str, Any] = {}

        for key, value in data.items():
            if key == "alert_thresholds" and isinstance(value, Mapping):
                thresholds.update(value)
            elif key.startswith("alert_thresholds."):
                thresholds[key.split(".", 1)[1]] = value
            elif key in names:
                kwargs[key] = value

        if thresholds:
            kwargs["alert_thresholds"] = AlertThresholds(**{
                k: float(v) for k, v in thresholds.items() if k in ("error_rate", "latency_p95")
            })
        return cls(**kwargs)

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, environ: Mapping[str, str] | None = None) -> "Config":
        """Create Config from prefixed environment variables.

        VLLM_MODEL_SWITCHING_MAX_CACHED_MODELS=8 sets max_cached_models;
        VLLM_MODEL_SWITCHING_ALERT_THRESHOLDS_ERROR_RATE sets the threshold.
        """
        environ = os.environ if environ is None else environ
        types = {f.name: f.type for f in fields(cls)}
        data: dict[str, Any] = {}

        for var, raw in environ.items():
            if not var.startswith(prefix):
                continue
            name = var[len(prefix):].lower()
            if name.startswith("alert_thresholds_"):
                data["alert_thresholds." + name[len("alert_thresholds_"):]] = raw
            elif name in types:
                data[name] = _coerce(raw, types[name])

        return cls.from_dict(data)


def _coerce(raw: str, annotation: Any) -> Any:
    """Convert an environment string according to a field annotation."""
    text = str(annotation)
    if annotation is bool or text == "bool":
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if annotation is int or text == "int":
        return int(raw)
    if annotation is float or text == "float":
        return float(raw)
    if "list" in text:
        return [part.strip() for part in raw.split(",") if part.strip()]
    return raw

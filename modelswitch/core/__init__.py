"""Core components for model switching."""

from .cache import ModelCache
from .engine import ServingEngine
from .health import AlertThresholds, HealthMonitor, HealthStatus
from .instance import ModelInstance, TorchModelInstance, load_torch_instance
from .registry import ActiveAssignment, DynamicModelRegistry
from .strategies import StrategyType, create_strategy
from .transition import TransitionManager
from .versions import ModelVersion, ModelVersionManager

__all__ = [
    "ActiveAssignment",
    "AlertThresholds",
    "DynamicModelRegistry",
    "HealthMonitor",
    "HealthStatus",
    "ModelCache",
    "ModelInstance",
    "ModelVersion",
    "ModelVersionManager",
    "ServingEngine",
    "StrategyType",
    "TorchModelInstance",
    "TransitionManager",
    "create_strategy",
    "load_torch_instance",
]

"""Explicitly constructed service graph with a start/shutdown lifecycle."""

import logging
from dataclasses import dataclass

from .core.cache import ModelCache
from .core.engine import ServingEngine
from .core.health import HealthMonitor
from .core.instance import ModelLoader, load_torch_instance
from .core.registry import DynamicModelRegistry
from .core.transition import TransitionManager
from .core.versions import ModelVersionManager, VersionStore
from .utils.config import Config
from .workers.switcher import ModelSwitcher
from .workers.watcher import CheckpointWatcher

logger = logging.getLogger(__name__)


@dataclass
class ModelSwitchingRuntime:
    """All switching components for one server process."""
    config: Config
    versions: ModelVersionManager
    cache: ModelCache
    registry: DynamicModelRegistry
    transitions: TransitionManager
    monitor: HealthMonitor | None
    switcher: ModelSwitcher
    engine: ServingEngine
    watcher: CheckpointWatcher | None = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        loader: ModelLoader = load_torch_instance,
        store: VersionStore | None = None,
        enable_watcher: bool = True,
    ) -> "ModelSwitchingRuntime":
        """Wire the component graph from configuration."""
        versions = ModelVersionManager(store=store)
        cache = ModelCache(capacity=config.max_cached_models, max_workers=config.preload_workers)
        registry = DynamicModelRegistry(versions=versions, cache=cache, loader=loader)
        transitions = TransitionManager(registry, max_transition_time=config.max_transition_time)

        monitor = None
        if config.enable_health_monitoring:
            monitor = HealthMonitor(
                thresholds=config.alert_thresholds,
                window_size=config.health_window_size,
                window_seconds=config.health_window_seconds,
                min_requests=config.health_min_requests,
                check_interval=config.health_check_interval,
            )

        switcher = ModelSwitcher(
            registry=registry,
            transitions=transitions,
            monitor=monitor,
            default_strategy=config.default_switch_strategy,
            tick_interval=config.switch_tick_interval,
        )
        engine = ServingEngine(registry=registry, transitions=transitions, monitor=monitor)

        watcher = None
        if enable_watcher and config.watch_dir is not None:
            watcher = CheckpointWatcher(
                watch_path=config.watch_dir,
                registry=registry,
                default_model_class=config.default_model_class,
                patterns=config.watcher_patterns,
                debounce_seconds=config.watcher_debounce_seconds,
            )

        return cls(
            config=config,
            versions=versions,
            cache=cache,
            registry=registry,
            transitions=transitions,
            monitor=monitor,
            switcher=switcher,
            engine=engine,
            watcher=watcher,
        )

    def start(self) -> None:
        """Start background tasks."""
        if self.monitor is not None:
            self.monitor.start()
        if self.watcher is not None:
            self.watcher.start()
        logger.info("Model switching runtime started")

    def shutdown(self) -> None:
        """Stop background tasks, joining every worker thread."""
        logger.info("Shutting down model switching runtime...")
        if self.watcher is not None:
            self.watcher.stop()
        self.switcher.shutdown()
        if self.monitor is not None:
            self.monitor.stop()
        self.cache.shutdown()

    def __enter__(self) -> "ModelSwitchingRuntime":
        self.start()
        return self

    def __exit__(self, *args) -> None:
        self.shutdown()

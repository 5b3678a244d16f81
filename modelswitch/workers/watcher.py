"""File watcher registering new model checkpoints as versions."""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..core.errors import ModelSwitchingError
from ..core.registry import DynamicModelRegistry

logger = logging.getLogger(__name__)


class CheckpointHandler(FileSystemEventHandler):
    """Handler for file system events with debouncing."""

    def __init__(
        self,
        callback: Callable[[Path], None],
        patterns: list[str] | None = None,
        debounce_seconds: float = 2.0,
    ):
        self.callback = callback
        self.patterns = patterns or [".pt", ".pth"]
        self.debounce_seconds = debounce_seconds
        self._lock = threading.Lock()
        self._pending_callbacks: dict[str, threading.Timer] = {}

    def _matches_pattern(self, path: Path) -> bool:
        return any(path.suffix == pattern for pattern in self.patterns)

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def _handle(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = Path(event.src_path)
        if self._matches_pattern(path):
            self._schedule_callback(path)

    def _schedule_callback(self, path: Path) -> None:
        """Schedule a debounced callback so partial writes settle first."""
        key = str(path)
        with self._lock:
            if key in self._pending_callbacks:
                self._pending_callbacks[key].cancel()

            timer = threading.Timer(self.debounce_seconds, self._execute_callback, args=[path])
            timer.daemon = True
            self._pending_callbacks[key] = timer
            timer.start()

    def _execute_callback(self, path: Path) -> None:
        with self._lock:
            self._pending_callbacks.pop(str(path), None)
        try:
            self.callback(path)
        except Exception as e:
            logger.error(f"Checkpoint callback error for {path}: {e}")

    def cancel_pending(self) -> None:
        with self._lock:
            for timer in self._pending_callbacks.values():
                timer.cancel()
            self._pending_callbacks.clear()


class CheckpointWatcher:
    """Watches a directory for <model_id>/<version>.pt checkpoints.

    Each new checkpoint is registered as a version of the model id named
    by its parent directory. The model class comes from a sibling
    <version>.json config, or falls back to default_model_class.
    """

    def __init__(
        self,
        watch_path: str | Path,
        registry: DynamicModelRegistry,
        default_model_class: str | None = None,
        patterns: list[str] | None = None,
        debounce_seconds: float = 2.0,
    ):
        self.watch_path = Path(watch_path)
        self.watch_path.mkdir(parents=True, exist_ok=True)
        self.registry = registry
        self.default_model_class = default_model_class

        self._handler = CheckpointHandler(
            callback=self.register_checkpoint,
            patterns=patterns,
            debounce_seconds=debounce_seconds,
        )
        self._observer = Observer()
        self._running = False

    def build_config(self, checkpoint: Path) -> dict[str, Any] | None:
        """Version config for a checkpoint, or None if no model class is known."""
        sidecar = checkpoint.with_suffix(".json")
        config: dict[str, Any] = {}
        if sidecar.exists():
            config = json.loads(sidecar.read_text())

        config.setdefault("model_class", self.default_model_class)
        if not config["model_class"]:
            return None
        config["checkpoint_path"] = str(checkpoint)
        return config

    def register_checkpoint(self, checkpoint: Path) -> str | None:
        """Register a checkpoint file as a new version.

        Returns:
            The model id, or None if the checkpoint was skipped.
        """
        checkpoint = Path(checkpoint)
        if checkpoint.parent == self.watch_path:
            logger.warning(f"Ignoring {checkpoint}: expected <model_id>/<version> layout")
            return None

        model_id = checkpoint.parent.name
        version = checkpoint.stem
        if self.registry.versions.has_version(model_id, version):
            logger.debug(f"{model_id}:{version} already registered")
            return None

        config = self.build_config(checkpoint)
        if config is None:
            logger.warning(f"Ignoring {checkpoint}: no model_class configured")
            return None

        try:
            self.registry.register_model(
                config,
                version,
                metadata={"source": "watcher"},
                model_id=model_id,
            )
        except ModelSwitchingError as e:
            logger.error(f"Failed to register {checkpoint}: {e}")
            return None

        logger.info(f"Registered checkpoint {checkpoint} as {model_id}:{version}")
        return model_id

    def start(self) -> None:
        """Start watching the directory."""
        if self._running:
            return
        self._observer.schedule(self._handler, str(self.watch_path), recursive=True)
        self._observer.start()
        self._running = True
        logger.info(f"Started watching: {self.watch_path}")

    def stop(self) -> None:
        """Stop watching the directory."""
        if not self._running:
            return
        self._handler.cancel_pending()
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._running = False
        logger.info("Stopped watching checkpoint directory")

    @property
    def is_running(self) -> bool:
        return self._running

    def __enter__(self) -> "CheckpointWatcher":
        self.start()
        return self

    def __exit__(self, *args) -> None:
        self.stop()

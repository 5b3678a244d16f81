"""Thread-safe serving path routing requests across switching versions."""

import logging
import threading
import time
from typing import Any, Callable

from .errors import NotFoundError
from .health import HealthMonitor
from .instance import CacheKey, ModelInstance
from .registry import DynamicModelRegistry
from .transition import TransitionManager

logger = logging.getLogger(__name__)


class ServingEngine:
    """Serves requests against whichever version the assignment routes to.

    Every request is counted in flight on its version and pinned in the
    cache while it runs, so draining and eviction never reclaim an
    instance underneath it. Latency and errors are fed to the health
    monitor without blocking.
    """

    def __init__(
        self,
        registry: DynamicModelRegistry,
        transitions: TransitionManager,
        monitor: HealthMonitor | None = None,
    ):
        self.registry = registry
        self.transitions = transitions
        self.monitor = monitor
        self._count_lock = threading.Lock()
        self._request_count = 0
        self._error_count = 0
        self._on_request_callbacks: list[Callable[[dict], None]] = []

    @property
    def request_count(self) -> int:
        return self._request_count

    def _pin_resident(self, key: CacheKey) -> ModelInstance:
        cache = self.registry.cache
        for _ in range(3):
            instance = self.registry.get_instance(*key)
            try:
                cache.pin(key)
                return instance
            except NotFoundError:
                # Evicted between load and pin
                continue
        raise NotFoundError(f"{key[0]}:{key[1]} could not be kept resident")

    def serve(self, model_id: str, request: Any, routing_key: str | None = None) -> dict[str, Any]:
        """Route and serve one request.

        Returns:
            Dictionary with 'response', 'model_id', 'version' and 'latency_ms'.
        """
        key = self.transitions.acquire(model_id, routing_key)
        try:
            instance = self._pin_resident(key)
            try:
                start_time = time.perf_counter()
                is_error = True
                try:
                    response = instance.serve(request)
                    is_error = False
                finally:
                    latency_ms = (time.perf_counter() - start_time) * 1000
                    if self.monitor is not None:
                        self.monitor.record_request(key, latency_ms, is_error)
                    with self._count_lock:
                        self._request_count += 1
                        self._error_count += int(is_error)
            finally:
                self.registry.cache.unpin(key)
        finally:
            self.transitions.release(key)

        result = {
            "response": response,
            "model_id": key[0],
            "version": key[1],
            "latency_ms": latency_ms,
        }
        for callback in self._on_request_callbacks:
            try:
                callback(result)
            except Exception as e:
                logger.debug(f"Request callback error: {e}")
        return result

    def add_request_callback(self, callback: Callable[[dict], None]) -> None:
        """Add a callback to be called after each successful request."""
        self._on_request_callbacks.append(callback)

    def remove_request_callback(self, callback: Callable[[dict], None]) -> None:
        if callback in self._on_request_callbacks:
            self._on_request_callbacks.remove(callback)

    def get_status(self) -> dict[str, Any]:
        """Get engine status."""
        with self._count_lock:
            counts = {"request_count": self._request_count, "error_count": self._error_count}
        return {
            **counts,
            "assignments": {m: a.to_dict() for m, a in self.registry.assignments().items()},
            "cache": self.registry.cache.stats(),
            **self.transitions.get_status(),
        }

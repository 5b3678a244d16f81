"""Pytest fixtures for model switching tests."""

import tempfile
import threading
import time
from pathlib import Path

import pytest

from modelswitch.core.cache import ModelCache
from modelswitch.core.engine import ServingEngine
from modelswitch.core.health import AlertThresholds, HealthMonitor
from modelswitch.core.registry import DynamicModelRegistry
from modelswitch.core.transition import TransitionManager
from modelswitch.core.versions import ModelVersionManager
from modelswitch.workers.switcher import ModelSwitcher


class FakeInstance:
    """In-memory instance echoing its version."""

    def __init__(self, model_id: str, version: str, fail: bool = False, delay: float = 0.0):
        self._key = (model_id, version)
        self.fail = fail
        self.delay = delay
        self.unloaded = False
        self.served = 0

    @property
    def instance_key(self):
        return self._key

    def serve(self, request):
        if self.delay:
            time.sleep(self.delay)
        self.served += 1
        if self.fail:
            raise RuntimeError("synthetic failure")
        return {"version": self._key[1], "echo": request}

    def unload(self):
        self.unloaded = True


class FakeLoader:
    """Loader building FakeInstances and recording every load."""

    def __init__(self):
        self.loaded: list[tuple[str, str]] = []
        self.instances: dict[tuple[str, str], FakeInstance] = {}
        self._lock = threading.Lock()

    def __call__(self, version):
        if version.config.get("fail_load"):
            raise RuntimeError("cannot load")
        instance = FakeInstance(
            version.model_id,
            version.version,
            fail=version.config.get("fail", False),
            delay=version.config.get("delay", 0.0),
        )
        with self._lock:
            self.loaded.append(version.key)
            self.instances[version.key] = instance
        return instance


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is true or timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def loader():
    return FakeLoader()


@pytest.fixture
def versions():
    return ModelVersionManager()


@pytest.fixture
def cache():
    cache = ModelCache(capacity=4)
    yield cache
    cache.shutdown()


@pytest.fixture
def registry(versions, cache, loader):
    return DynamicModelRegistry(versions=versions, cache=cache, loader=loader)


@pytest.fixture
def monitor():
    """Health monitor evaluated on demand (background thread not started)."""
    return HealthMonitor(
        thresholds=AlertThresholds(error_rate=0.1, latency_p95=500.0),
        window_size=100,
        window_seconds=None,
        min_requests=5,
        check_interval=0.05,
    )


@pytest.fixture
def transitions(registry):
    return TransitionManager(registry, max_transition_time=1.0)


@pytest.fixture
def engine(registry, transitions, monitor):
    return ServingEngine(registry=registry, transitions=transitions, monitor=monitor)


@pytest.fixture
def switcher(registry, transitions, monitor):
    switcher = ModelSwitcher(
        registry=registry,
        transitions=transitions,
        monitor=monitor,
        tick_interval=0.01,
    )
    yield switcher
    switcher.shutdown(timeout=5.0)


@pytest.fixture
def two_versions(registry):
    """Model 'm' with v1.0 active and v2.0 registered."""
    registry.register_model({"model": "m"}, "v1.0", metadata={"accuracy": 0.9})
    registry.register_model({"model": "m"}, "v2.0", metadata={"accuracy": 0.93})
    return "m"

"""End-to-end switching workflows through the orchestrator."""

import threading

import pytest

from modelswitch.core.cache import ModelCache
from modelswitch.core.errors import AlreadyActiveError, ConflictError, NotFoundError
from modelswitch.core.registry import DynamicModelRegistry
from modelswitch.core.transition import TransitionManager
from modelswitch.workers.switcher import ModelSwitcher, SwitchStatus

from conftest import wait_until

SLOW_GRADUAL = {"duration": 60.0, "steps": 10}


def wait_running(switcher, operation_id):
    """Wait until the operation holds a live transition."""
    return wait_until(
        lambda: any(
            event["event"] == "transition_started"
            for event in switcher.get_switch_status(operation_id).history
        )
    )


def weights_applied(operation):
    return [e["weights"] for e in operation.history if e["event"] == "weights_applied"]


class TestSwitchWorkflow:
    """Switch workflows against fake model instances."""

    def test_immediate_switch(self, switcher, registry, loader, two_versions):
        """Test an immediate switch completes and the new version becomes active."""
        operation_id = switcher.switch_model("m", "v2.0", "immediate")

        operation = switcher.wait_for(operation_id, timeout=5.0)

        assert operation.status == SwitchStatus.COMPLETED
        assert operation.progress == 1.0
        assert registry.get_active_model("m").instance_key == ("m", "v2.0")
        assert registry.get_assignment("m").is_settled
        assert loader.instances[("m", "v1.0")].unloaded

    def test_gradual_switch(self, switcher, registry, two_versions):
        """Test a gradual switch passes through 20% and ends at 100%."""
        operation_id = switcher.switch_model("m", "v2.0", "gradual", {"duration": 1.0, "steps": 5})

        assert wait_until(lambda: registry.get_assignment("m").weight_of("v2.0") == 20.0)
        operation = switcher.wait_for(operation_id, timeout=5.0)

        assert operation.status == SwitchStatus.COMPLETED
        assert registry.get_assignment("m").weight_of("v2.0") == 100.0
        steps = [w["v2.0"] for w in weights_applied(operation)]
        assert steps == sorted(steps)
        assert 20.0 in steps

    def test_weights_always_sum_to_100(self, switcher, two_versions):
        operation_id = switcher.switch_model("m", "v2.0", "gradual", {"duration": 0.3, "steps": 3})

        operation = switcher.wait_for(operation_id, timeout=5.0)

        for weights in weights_applied(operation):
            assert sum(weights.values()) == pytest.approx(100.0)

    def test_canary_aborts_on_error_rate(self, switcher, registry, monitor, two_versions):
        """Test a canary reverts to the original version when errors spike."""
        operation_id = switcher.switch_model("m", "v2.0", "canary", {
            "initial_percentage": 5,
            "step_percentage": 15,
            "evaluation_period": 5,
            "max_error_rate_threshold": 0.05,
        })
        assert wait_until(lambda: registry.get_assignment("m").weight_of("v2.0") == 5.0)

        for i in range(10):
            monitor.record_request(("m", "v2.0"), 1.0, is_error=i < 2)
        operation = switcher.wait_for(operation_id, timeout=5.0)

        assignment = registry.get_assignment("m")
        assert operation.status == SwitchStatus.ABORTED
        assert operation.error.startswith("HealthCheckFailure")
        assert assignment.is_settled and assignment.primary == "v1.0"
        assert registry.cache.pin_count(("m", "v2.0")) == 0

    def test_canary_aborts_on_served_errors(self, switcher, registry, engine):
        """Test errors served by a failing canary trigger rollback."""
        registry.register_model({"model": "c"}, "v1")
        registry.register_model({"model": "c", "fail": True}, "v2")
        operation_id = switcher.switch_model("c", "v2", "canary", {
            "initial_percentage": 50,
            "evaluation_period": 60,
        })
        assert wait_until(lambda: registry.get_assignment("c").weight_of("v2") == 50.0)

        for i in range(100):
            try:
                engine.serve("c", {"i": i}, routing_key=f"user-{i}")
            except RuntimeError:
                pass
        operation = switcher.wait_for(operation_id, timeout=5.0)

        assert operation.status == SwitchStatus.ABORTED
        assert registry.get_assignment("c").primary == "v1"
        assert all(engine.serve("c", {})["version"] == "v1" for _ in range(10))

    def test_health_monitor_aborts_gradual(self, switcher, registry, monitor, two_versions):
        """Test background health alerts abort a non-canary switch."""
        monitor.start()
        try:
            operation_id = switcher.switch_model("m", "v2.0", "gradual", SLOW_GRADUAL)
            assert wait_running(switcher, operation_id)

            for _ in range(10):
                monitor.record_request(("m", "v2.0"), 1.0, is_error=True)
            operation = switcher.wait_for(operation_id, timeout=5.0)
        finally:
            monitor.stop()

        assert operation.status == SwitchStatus.ABORTED
        assert "error_rate" in operation.error
        assert registry.get_assignment("m").primary == "v1.0"

    def test_finished_switch_leaves_next_watcher(self, switcher, monitor, two_versions):
        """Test a finished switch only removes its own health watcher."""
        first = switcher.switch_model("m", "v2.0", "immediate")
        switcher.wait_for(first, timeout=5.0)
        second = switcher.switch_model("m", "v1.0", "gradual", SLOW_GRADUAL)
        run = switcher._runs[second]
        assert wait_until(lambda: run.watcher is not None)

        for thread in threading.enumerate():
            if thread.name == f"switch-{first[:8]}":
                thread.join(timeout=5.0)
        assert wait_until(lambda: monitor._watchers.get("m") is run.watcher)

        switcher.abort_switch(second)
        assert wait_until(lambda: "m" not in monitor._watchers)

    def test_concurrent_switch_conflict(self, switcher, two_versions):
        """Test only one of two concurrent switches for a model is accepted."""
        barrier = threading.Barrier(2)
        results = []

        def attempt():
            barrier.wait()
            try:
                results.append(switcher.switch_model("m", "v2.0", "gradual", SLOW_GRADUAL))
            except ConflictError as e:
                results.append(e)

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        accepted = [r for r in results if isinstance(r, str)]
        rejected = [r for r in results if isinstance(r, ConflictError)]
        assert len(accepted) == 1
        assert len(rejected) == 1
        switcher.abort_switch(accepted[0], timeout=5.0)

    def test_second_switch_while_running(self, switcher, two_versions):
        operation_id = switcher.switch_model("m", "v2.0", "gradual", SLOW_GRADUAL)

        with pytest.raises(ConflictError):
            switcher.switch_model("m", "v2.0", "immediate")

        assert switcher.get_running_operation("m").operation_id == operation_id

    def test_load_failure_marks_failed(self, switcher, registry, two_versions):
        """Test a target that cannot load fails the switch and keeps serving v1.0."""
        registry.register_model({"model": "m", "fail_load": True}, "v3.0")

        operation = switcher.wait_for(switcher.switch_model("m", "v3.0"), timeout=5.0)

        assert operation.status == SwitchStatus.FAILED
        assert operation.error.startswith("ModelLoadError")
        assert registry.get_assignment("m").primary == "v1.0"
        assert switcher.get_running_operation("m") is None

    def test_cache_full_marks_failed(self, versions, loader, monitor):
        """Test a cache full of pinned entries fails the switch without evicting."""
        cache = ModelCache(capacity=1)
        registry = DynamicModelRegistry(versions=versions, cache=cache, loader=loader)
        transitions = TransitionManager(registry, max_transition_time=1.0)
        switcher = ModelSwitcher(registry, transitions, monitor=monitor, tick_interval=0.01)
        registry.register_model({"model": "m"}, "v1.0")
        registry.register_model({"model": "m"}, "v2.0")

        try:
            operation = switcher.wait_for(switcher.switch_model("m", "v2.0"), timeout=5.0)

            assert operation.status == SwitchStatus.FAILED
            assert operation.error.startswith("CacheFullError")
            assert cache.keys() == [("m", "v1.0")]
            assert not loader.instances[("m", "v1.0")].unloaded
            assert cache.pin_count(("m", "v1.0")) == 0
            assert registry.get_assignment("m").primary == "v1.0"
        finally:
            switcher.shutdown(timeout=5.0)
            cache.shutdown()

    def test_abort_by_caller(self, switcher, registry, two_versions):
        """Test an explicit abort reverts traffic."""
        operation_id = switcher.switch_model("m", "v2.0", "gradual", {"duration": 60.0, "steps": 60})
        assert wait_running(switcher, operation_id)

        operation = switcher.abort_switch(operation_id, timeout=5.0)

        assert operation.status == SwitchStatus.ABORTED
        assert operation.error == "aborted by caller"
        assert registry.get_assignment("m").primary == "v1.0"

    def test_abort_terminal_operation(self, switcher, two_versions):
        operation_id = switcher.switch_model("m", "v2.0")
        switcher.wait_for(operation_id, timeout=5.0)

        with pytest.raises(ConflictError):
            switcher.abort_switch(operation_id)

    def test_ab_test_requires_promotion(self, switcher, registry, two_versions):
        """Test an A/B test holds its split until explicitly promoted."""
        operation_id = switcher.switch_model(
            "m", "v2.0", "ab_test", {"traffic_percentage": 30, "test_duration": 0.05}
        )
        assert wait_until(lambda: switcher.get_switch_status(operation_id).awaiting_promotion)

        assert switcher.get_switch_status(operation_id).status == SwitchStatus.RUNNING
        assert registry.get_assignment("m").weight_of("v2.0") == 30.0

        operation = switcher.promote_switch(operation_id, timeout=5.0)

        assert operation.status == SwitchStatus.COMPLETED
        assert not operation.awaiting_promotion
        assert registry.get_assignment("m").weight_of("v2.0") == 100.0

    def test_rollback(self, switcher, registry, two_versions):
        """Test rolling back returns to the previously registered version."""
        switcher.wait_for(switcher.switch_model("m", "v2.0"), timeout=5.0)

        operation = switcher.wait_for(switcher.rollback_model("m"), timeout=5.0)

        assert operation.status == SwitchStatus.COMPLETED
        assert operation.to_version == "v1.0"
        assert registry.get_assignment("m").primary == "v1.0"

    def test_rollback_without_earlier_version(self, switcher, two_versions):
        with pytest.raises(NotFoundError):
            switcher.rollback_model("m")

    def test_validation_errors_create_nothing(self, switcher, registry, two_versions):
        """Test rejected switches leave no operation behind."""
        with pytest.raises(AlreadyActiveError):
            switcher.switch_model("m", "v1.0")
        with pytest.raises(NotFoundError):
            switcher.switch_model("m", "v9.0")
        with pytest.raises(ValueError):
            switcher.switch_model("m", "v2.0", "blue_green")

        registry.apply_assignment("m", {"v1.0": 50.0, "v2.0": 50.0})
        with pytest.raises(ConflictError):
            switcher.switch_model("m", "v2.0")

        assert switcher.list_operations() == []

    def test_status_is_a_snapshot(self, switcher, two_versions):
        """Test status reads are idempotent and detached from live state."""
        operation_id = switcher.switch_model("m", "v2.0")
        switcher.wait_for(operation_id, timeout=5.0)

        first = switcher.get_switch_status(operation_id)
        first.history.clear()
        second = switcher.get_switch_status(operation_id)

        assert second.to_dict() == switcher.get_switch_status(operation_id).to_dict()
        assert second.history

    def test_no_failed_requests_during_switch(self, switcher, registry, engine, two_versions):
        """Test requests keep succeeding while traffic moves between versions."""
        stop = threading.Event()
        errors = []
        served = []

        def client():
            i = 0
            while not stop.is_set():
                try:
                    served.append(engine.serve("m", {"i": i}, routing_key=f"user-{i % 50}")["version"])
                except Exception as e:
                    errors.append(e)
                i += 1

        threads = [threading.Thread(target=client) for _ in range(4)]
        for t in threads:
            t.start()
        operation_id = switcher.switch_model("m", "v2.0", "gradual", {"duration": 0.5, "steps": 5})
        operation = switcher.wait_for(operation_id, timeout=5.0)
        stop.set()
        for t in threads:
            t.join()

        assert operation.status == SwitchStatus.COMPLETED
        assert errors == []
        assert set(served) <= {"v1.0", "v2.0"}
        assert engine.serve("m", {})["version"] == "v2.0"

    def test_shutdown_aborts_running(self, switcher, registry, two_versions):
        operation_id = switcher.switch_model("m", "v2.0", "gradual", SLOW_GRADUAL)
        assert wait_running(switcher, operation_id)

        switcher.shutdown(timeout=5.0)

        operation = switcher.get_switch_status(operation_id)
        assert operation.status == SwitchStatus.ABORTED
        assert operation.error == "switcher shutdown"
        assert registry.get_assignment("m").primary == "v1.0"

    def test_deregister_blocked_during_switch(self, switcher, registry, two_versions):
        from modelswitch.core.errors import InUseError

        operation_id = switcher.switch_model("m", "v2.0", "gradual", SLOW_GRADUAL)

        with pytest.raises(InUseError):
            registry.deregister_model("m", "v2.0")

        switcher.abort_switch(operation_id, timeout=5.0)
        registry.deregister_model("m", "v2.0")

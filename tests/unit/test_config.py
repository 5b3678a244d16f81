"""Unit tests for Config."""

from pathlib import Path

import pytest

from modelswitch.core.health import AlertThresholds
from modelswitch.core.strategies import StrategyType
from modelswitch.utils.config import Config


class TestConfig:
    """Tests for Config."""

    def test_defaults(self):
        config = Config()

        assert config.max_cached_models == 4
        assert config.default_switch_strategy == StrategyType.IMMEDIATE
        assert config.max_transition_time == 30.0
        assert config.enable_health_monitoring
        assert config.alert_thresholds == AlertThresholds(error_rate=0.05, latency_p95=1000.0)

    def test_strategy_coerced(self):
        assert Config(default_switch_strategy="canary").default_switch_strategy == StrategyType.CANARY

    def test_invalid_strategy(self):
        with pytest.raises(ValueError):
            Config(default_switch_strategy="blue_green")

    def test_invalid_cache_size(self):
        with pytest.raises(ValueError):
            Config(max_cached_models=0)

    def test_from_dict_nested_thresholds(self):
        config = Config.from_dict({
            "max_cached_models": 2,
            "alert_thresholds": {"error_rate": 0.2, "latency_p95": 250},
            "unknown_key": "ignored",
        })

        assert config.max_cached_models == 2
        assert config.alert_thresholds.error_rate == 0.2
        assert config.alert_thresholds.latency_p95 == 250.0

    def test_from_dict_dotted_thresholds(self):
        config = Config.from_dict({"alert_thresholds.error_rate": "0.01"})

        assert config.alert_thresholds.error_rate == 0.01
        assert config.alert_thresholds.latency_p95 == 1000.0

    def test_from_env(self):
        environ = {
            "VLLM_MODEL_SWITCHING_MAX_CACHED_MODELS": "8",
            "VLLM_MODEL_SWITCHING_DEFAULT_SWITCH_STRATEGY": "gradual",
            "VLLM_MODEL_SWITCHING_ENABLE_HEALTH_MONITORING": "false",
            "VLLM_MODEL_SWITCHING_MAX_TRANSITION_TIME": "2.5",
            "VLLM_MODEL_SWITCHING_ALERT_THRESHOLDS_LATENCY_P95": "300",
            "VLLM_MODEL_SWITCHING_WATCHER_PATTERNS": ".pt, .safetensors",
            "VLLM_MODEL_SWITCHING_WATCH_DIR": "/tmp/checkpoints",
            "UNRELATED": "1",
        }

        config = Config.from_env(environ=environ)

        assert config.max_cached_models == 8
        assert config.default_switch_strategy == StrategyType.GRADUAL
        assert config.enable_health_monitoring is False
        assert config.max_transition_time == 2.5
        assert config.alert_thresholds.latency_p95 == 300.0
        assert config.watcher_patterns == [".pt", ".safetensors"]
        assert config.watch_dir == Path("/tmp/checkpoints")

    def test_from_env_custom_prefix(self):
        config = Config.from_env(prefix="MS_", environ={"MS_PORT": "9000"})
        assert config.port == 9000

    def test_to_dict(self):
        data = Config(watch_dir="/tmp/w").to_dict()

        assert data["default_switch_strategy"] == "immediate"
        assert data["alert_thresholds"]["error_rate"] == 0.05
        assert data["watch_dir"] == "/tmp/w"

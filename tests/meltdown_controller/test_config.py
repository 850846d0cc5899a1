"""
Tests for Meltdown Controller configuration.
"""

import pytest

from meltdown_controller.config import (
    DegradedCondition,
    GateBackend,
    MeltdownControllerConfig,
    ThresholdConfig,
    get_default_config,
    get_testing_config,
    load_config_from_dict,
)
from meltdown_controller.types import ConfigurationError


# ============================================================
# TEST: THRESHOLDS
# ============================================================

class TestThresholdConfig:
    """Tests for threshold validation."""

    def test_defaults(self):
        thresholds = ThresholdConfig()

        assert thresholds.price_drop_threshold == 0.10
        assert thresholds.error_rate_threshold == 0.15
        assert thresholds.consecutive_fail_threshold == 5

    @pytest.mark.parametrize("value", [0.0, -0.1, 1.5])
    def test_invalid_price_drop(self, value):
        with pytest.raises(ConfigurationError):
            ThresholdConfig(price_drop_threshold=value)

    @pytest.mark.parametrize("value", [0.0, 2.0])
    def test_invalid_error_rate(self, value):
        with pytest.raises(ConfigurationError):
            ThresholdConfig(error_rate_threshold=value)

    def test_invalid_fail_threshold(self):
        with pytest.raises(ConfigurationError):
            ThresholdConfig(consecutive_fail_threshold=0)

    def test_immutable(self):
        thresholds = ThresholdConfig()

        with pytest.raises(AttributeError):
            thresholds.price_drop_threshold = 0.5


# ============================================================
# TEST: MASTER CONFIG
# ============================================================

class TestMeltdownControllerConfig:
    """Tests for the master configuration."""

    def test_default_config(self):
        config = get_default_config()

        assert config.scheduler.interval_seconds == 300.0
        assert config.signals.aggregator_window_seconds == 300
        assert config.signals.failure_burst_window_seconds == 120
        assert config.gate.key == 12345
        assert config.gate.backend == GateBackend.MEMORY
        assert config.validate() == []

    def test_reference_symbol_needs_feed_id(self):
        config = get_default_config()
        config.signals.reference_symbol = "SOL"

        assert config.validate() == [
            "no price feed id for reference symbol SOL (set REFERENCE_FEED_ID)"
        ]

    def test_testing_config(self):
        config = get_testing_config()

        assert config.scheduler.interval_seconds < 1
        assert config.aggregator_monitor.enabled is False
        assert config.validate() == []

    def test_validate_reports_errors(self):
        config = get_default_config()
        config.scheduler.interval_seconds = 0
        config.gate.backend = GateBackend.POSTGRES

        errors = config.validate()

        assert "scheduler.interval_seconds must be positive" in errors
        assert "database_url is required for the postgres gate backend" in errors

    def test_telegram_needs_credentials(self):
        config = get_default_config()
        config.alerting.telegram_enabled = True

        assert any("telegram" in error for error in config.validate())

    def test_default_degraded_conditions(self):
        config = get_default_config()

        assert DegradedCondition.SOURCE_ERROR not in config.alerting.degraded_conditions
        assert DegradedCondition.CYCLE_ABORTED in config.alerting.degraded_conditions

    def test_to_dict(self):
        data = get_default_config().to_dict()

        assert data["thresholds"]["price_drop_threshold"] == 0.10
        assert data["gate"]["backend"] == "memory"
        assert "cycle_budget_seconds" not in data["scheduler"]


# ============================================================
# TEST: LOADING
# ============================================================

class TestLoading:
    """Tests for environment and dictionary loading."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PRICE_DROP_THRESHOLD", "0.2")
        monkeypatch.setenv("CONSECUTIVE_FAIL_THRESHOLD", "8")
        monkeypatch.setenv("MELTDOWN_CHECK_INTERVAL_SECONDS", "60")
        monkeypatch.setenv("MELTDOWN_GATE_BACKEND", "postgres")
        monkeypatch.setenv("MELTDOWN_GATE_KEY", "42")
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@localhost/db")
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "abc")
        monkeypatch.setenv("TELEGRAM_CHAT_ID", "123")

        config = MeltdownControllerConfig.from_env()

        assert config.thresholds.price_drop_threshold == 0.2
        assert config.thresholds.consecutive_fail_threshold == 8
        assert config.scheduler.interval_seconds == 60.0
        assert config.gate.backend == GateBackend.POSTGRES
        assert config.gate.key == 42
        assert config.alerting.telegram_enabled is True
        assert config.validate() == []

    def test_from_env_reference_symbol(self, monkeypatch):
        monkeypatch.setenv("REFERENCE_SYMBOL", "SOL")
        monkeypatch.setenv("REFERENCE_FEED_ID", "solana")

        config = MeltdownControllerConfig.from_env()

        assert config.signals.reference_metric == "sol_price"
        assert config.price_feed_ids["SOL"] == "solana"
        assert config.validate() == []

    def test_from_env_reference_symbol_without_feed_id(self, monkeypatch):
        monkeypatch.setenv("REFERENCE_SYMBOL", "SOL")
        monkeypatch.setenv("REFERENCE_METRIC", "solana_usd")

        config = MeltdownControllerConfig.from_env()

        assert config.signals.reference_metric == "solana_usd"
        assert any("reference symbol SOL" in error for error in config.validate())

    def test_from_env_invalid_threshold(self, monkeypatch):
        monkeypatch.setenv("ERROR_RATE_THRESHOLD", "3")

        with pytest.raises(ConfigurationError):
            MeltdownControllerConfig.from_env()

    def test_from_dict(self):
        config = load_config_from_dict({
            "thresholds": {"price_drop_threshold": 0.05},
            "scheduler": {"interval_seconds": 30},
            "signals": {"reference_symbol": "ETH"},
            "price_feed_ids": {"ETH": "ethereum"},
            "gate": {"backend": "postgres", "key": 7},
            "alerting": {"degraded_conditions": ["SOURCE_ERROR"]},
            "database_url": "sqlite+aiosqlite:///x.db",
        })

        assert config.thresholds.price_drop_threshold == 0.05
        assert config.thresholds.error_rate_threshold == 0.15
        assert config.scheduler.interval_seconds == 30
        assert config.signals.reference_symbol == "ETH"
        assert config.signals.reference_metric == "eth_price"
        assert config.price_feed_ids == {"BTC": "bitcoin", "ETH": "ethereum"}
        assert config.gate.backend == GateBackend.POSTGRES
        assert config.gate.key == 7
        assert config.alerting.degraded_conditions == frozenset(
            {DegradedCondition.SOURCE_ERROR}
        )
        assert config.database_url == "sqlite+aiosqlite:///x.db"

    def test_from_dict_invalid(self):
        with pytest.raises(ConfigurationError):
            load_config_from_dict({"thresholds": {"consecutive_fail_threshold": 0}})

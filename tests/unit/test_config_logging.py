"""Tests for engine configuration and logging setup."""

import json
import logging
import os
import sys
from decimal import Decimal
from unittest.mock import patch

import pytest

from rto_engine import ConfigurationError, EngineConfig, JsonFormatter, get_logger, setup_logging


@pytest.fixture
def restore_root_logger():
    """Undo setup_logging's changes to the root logger after each test."""
    root = logging.getLogger()
    engine = logging.getLogger("rto_engine")
    handlers, level, engine_level = root.handlers[:], root.level, engine.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
    engine.setLevel(engine_level)


class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_default_values(self) -> None:
        config = EngineConfig()

        assert config.currency == "USD"
        assert config.platform_fee_percent == Decimal("2")
        assert config.default_rental_credit_percent == Decimal("50")
        assert config.min_payments == 1
        assert config.max_payments == 36
        assert config.capture_timeout_seconds == 30.0
        assert config.grace_period_days is None
        assert config.log_level == "INFO"
        assert config.log_format == "standard"

    def test_validate_returns_self(self) -> None:
        config = EngineConfig()
        assert config.validate() is config

    @pytest.mark.parametrize("overrides", [
        {"currency": ""},
        {"platform_fee_percent": Decimal("-1")},
        {"platform_fee_percent": Decimal("100")},
        {"default_rental_credit_percent": Decimal("0")},
        {"default_rental_credit_percent": Decimal("101")},
        {"min_payments": 0},
        {"min_payments": 10, "max_payments": 5},
        {"capture_timeout_seconds": 0},
        {"grace_period_days": -1},
        {"log_format": "xml"},
    ])
    def test_validate_rejects(self, overrides) -> None:
        with pytest.raises(ConfigurationError):
            EngineConfig(**overrides).validate()

    def test_from_env_default(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            config = EngineConfig.from_env()

        assert config == EngineConfig()

    def test_from_env_custom(self) -> None:
        env = {
            "RTO_CURRENCY": "EUR",
            "RTO_PLATFORM_FEE_PERCENT": "2.5",
            "RTO_DEFAULT_RENTAL_CREDIT_PERCENT": "60",
            "RTO_MIN_PAYMENTS": "2",
            "RTO_MAX_PAYMENTS": "24",
            "RTO_CAPTURE_TIMEOUT_SECONDS": "12.5",
            "RTO_GRACE_PERIOD_DAYS": "7",
            "RTO_LOG_LEVEL": "DEBUG",
            "RTO_LOG_FORMAT": "json",
        }
        with patch.dict(os.environ, env, clear=True):
            config = EngineConfig.from_env()

        assert config.currency == "EUR"
        assert config.platform_fee_percent == Decimal("2.5")
        assert config.default_rental_credit_percent == Decimal("60")
        assert config.min_payments == 2
        assert config.max_payments == 24
        assert config.capture_timeout_seconds == 12.5
        assert config.grace_period_days == 7
        assert config.log_level == "DEBUG"
        assert config.log_format == "json"

    def test_from_env_zero_grace_is_configured(self) -> None:
        with patch.dict(os.environ, {"RTO_GRACE_PERIOD_DAYS": "0"}, clear=True):
            assert EngineConfig.from_env().grace_period_days == 0

    @pytest.mark.parametrize("name,value", [
        ("RTO_PLATFORM_FEE_PERCENT", "two"),
        ("RTO_PLATFORM_FEE_PERCENT", "NaN"),
        ("RTO_MAX_PAYMENTS", "3.5"),
        ("RTO_CAPTURE_TIMEOUT_SECONDS", "soon"),
        ("RTO_GRACE_PERIOD_DAYS", "a week"),
        ("RTO_MAX_PAYMENTS", "0"),
    ])
    def test_from_env_malformed(self, name, value) -> None:
        with patch.dict(os.environ, {name: value}, clear=True):
            with pytest.raises(ConfigurationError):
                EngineConfig.from_env()


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_setup_logging_default(self, restore_root_logger) -> None:
        setup_logging()

        assert logging.getLogger("rto_engine").level == logging.INFO
        assert restore_root_logger.level == logging.INFO

    def test_setup_logging_debug(self, restore_root_logger) -> None:
        setup_logging(level="DEBUG")

        assert restore_root_logger.level == logging.DEBUG

    def test_setup_logging_invalid_level(self, restore_root_logger) -> None:
        setup_logging(level="INVALID")

        assert restore_root_logger.level == logging.INFO

    def test_setup_logging_json_format(self, restore_root_logger) -> None:
        setup_logging(format_type="json")

        assert any(isinstance(h.formatter, JsonFormatter) for h in restore_root_logger.handlers)

    def test_setup_logging_replaces_handlers(self, restore_root_logger) -> None:
        restore_root_logger.addHandler(logging.StreamHandler())
        restore_root_logger.addHandler(logging.StreamHandler())

        setup_logging()

        assert len(restore_root_logger.handlers) == 1

    def test_config_applies_its_logging_fields(self, restore_root_logger) -> None:
        EngineConfig(log_level="WARNING", log_format="json").validate().configure_logging()

        assert restore_root_logger.level == logging.WARNING
        assert logging.getLogger("rto_engine").level == logging.WARNING
        assert any(isinstance(h.formatter, JsonFormatter) for h in restore_root_logger.handlers)

    def test_config_from_env_drives_logging(self, restore_root_logger) -> None:
        with patch.dict(os.environ, {"RTO_LOG_LEVEL": "debug"}):
            EngineConfig.from_env().configure_logging()

        assert restore_root_logger.level == logging.DEBUG


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def _record(self, **kwargs) -> logging.LogRecord:
        fields = dict(
            name="rto_engine.service", level=logging.INFO, pathname=__file__, lineno=1,
            msg="Contract %s: %s", args=("c-1", "active"), exc_info=None,
        )
        fields.update(kwargs)
        return logging.LogRecord(**fields)

    def test_format_basic(self) -> None:
        data = json.loads(JsonFormatter().format(self._record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "rto_engine.service"
        assert data["message"] == "Contract c-1: active"
        assert "timestamp" in data

    def test_format_includes_extra_fields(self) -> None:
        record = self._record()
        record.contract_id = "c-1"
        record.operation = "pay"
        record.amount = Decimal("200.00")

        data = json.loads(JsonFormatter().format(record))

        assert data["contract_id"] == "c-1"
        assert data["operation"] == "pay"
        assert data["amount"] == "200.00"
        assert "args" not in data

    def test_format_with_exception(self) -> None:
        try:
            raise ValueError("Test error")
        except ValueError:
            exc_info = sys.exc_info()

        data = json.loads(JsonFormatter().format(self._record(level=logging.ERROR, exc_info=exc_info)))

        assert "ValueError: Test error" in data["exception"]


class TestGetLogger:
    """Tests for get_logger."""

    def test_named_logger(self) -> None:
        logger = get_logger("rto_engine.test")

        assert isinstance(logger, logging.Logger)
        assert logger.name == "rto_engine.test"

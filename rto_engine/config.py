"""Configuration management for the RTO engine."""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from .core import ConfigurationError
from .logging import setup_logging


@dataclass
class EngineConfig:
    """Policy inputs of the contract service.

    ``grace_period_days`` is None by default: the engine does not invent a
    tolerance for missed payments, so automatic default detection stays off
    until an operator configures one.
    """

    currency: str = "USD"
    platform_fee_percent: Decimal = Decimal("2")
    default_rental_credit_percent: Decimal = Decimal("50")
    min_payments: int = 1
    max_payments: int = 36
    capture_timeout_seconds: float = 30.0
    grace_period_days: Optional[int] = None
    log_level: str = "INFO"
    log_format: str = "standard"

    def validate(self) -> "EngineConfig":
        """Check ranges; returns self so calls can be chained."""
        if not self.currency:
            raise ConfigurationError("currency cannot be empty")
        if not Decimal("0") <= self.platform_fee_percent < Decimal("100"):
            raise ConfigurationError(
                f"platform_fee_percent must be in [0, 100), got {self.platform_fee_percent}"
            )
        if not Decimal("0") < self.default_rental_credit_percent <= Decimal("100"):
            raise ConfigurationError(
                f"default_rental_credit_percent must be in (0, 100], got {self.default_rental_credit_percent}"
            )
        if self.min_payments < 1 or self.max_payments < self.min_payments:
            raise ConfigurationError(
                f"payment bounds must satisfy 1 <= min <= max, got {self.min_payments}..{self.max_payments}"
            )
        if self.capture_timeout_seconds <= 0:
            raise ConfigurationError(
                f"capture_timeout_seconds must be positive, got {self.capture_timeout_seconds}"
            )
        if self.grace_period_days is not None and self.grace_period_days < 0:
            raise ConfigurationError(
                f"grace_period_days cannot be negative, got {self.grace_period_days}"
            )
        if self.log_format not in ("standard", "json"):
            raise ConfigurationError(f"log_format must be 'standard' or 'json', got {self.log_format!r}")
        return self

    def configure_logging(self) -> None:
        """Apply ``log_level`` and ``log_format`` to the root logger."""
        setup_logging(level=self.log_level, format_type=self.log_format)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create config from ``RTO_*`` environment variables."""
        defaults = cls()
        grace = os.getenv("RTO_GRACE_PERIOD_DAYS")

        config = cls(
            currency=os.getenv("RTO_CURRENCY", defaults.currency),
            platform_fee_percent=_env_decimal("RTO_PLATFORM_FEE_PERCENT", defaults.platform_fee_percent),
            default_rental_credit_percent=_env_decimal(
                "RTO_DEFAULT_RENTAL_CREDIT_PERCENT", defaults.default_rental_credit_percent
            ),
            min_payments=_env_int("RTO_MIN_PAYMENTS", defaults.min_payments),
            max_payments=_env_int("RTO_MAX_PAYMENTS", defaults.max_payments),
            capture_timeout_seconds=_env_float("RTO_CAPTURE_TIMEOUT_SECONDS", defaults.capture_timeout_seconds),
            grace_period_days=_env_int("RTO_GRACE_PERIOD_DAYS", 0) if grace else None,
            log_level=os.getenv("RTO_LOG_LEVEL", defaults.log_level),
            log_format=os.getenv("RTO_LOG_FORMAT", defaults.log_format),
        )
        return config.validate()


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise ConfigurationError(f"{name} is not a number: {raw!r}") from None
    if not value.is_finite():
        raise ConfigurationError(f"{name} must be finite, got {raw!r}")
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} is not an integer: {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} is not a number: {raw!r}") from None

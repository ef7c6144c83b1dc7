"""Configuration validation utilities for the AMM volume bot."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any

_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

ADDRESS_FIELDS = ("wallet_address", "token_address", "weth_address", "router_address")


class ConfigValidationError(ValueError):
    """Raised when configuration validation fails."""


def validate_address(config: dict[str, Any], field: str, *, required: bool = True) -> None:
    """Validate a 0x-prefixed, 40 hex digit account or contract address."""
    if field not in config or config[field] is None:
        if required:
            raise ConfigValidationError(f"Missing required field: {field}")
        return

    value = config[field]
    if not isinstance(value, str) or not _ADDRESS_PATTERN.match(value.strip()):
        raise ConfigValidationError(
            f"{field} must be a 0x-prefixed 40 hex digit address, got: {value}"
        )


def _to_decimal(field: str, value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ConfigValidationError(
            f"{field} must be a valid number, got: {value}"
        ) from exc


def validate_positive_decimal(
    config: dict[str, Any], field: str, *, required: bool = True
) -> None:
    """Validate that a field is a positive decimal value."""
    if field not in config:
        if required:
            raise ConfigValidationError(f"Missing required field: {field}")
        return

    decimal_value = _to_decimal(field, config[field])
    if not decimal_value.is_finite() or decimal_value <= 0:
        raise ConfigValidationError(f"{field} must be positive, got: {decimal_value}")


def validate_non_negative_decimal(
    config: dict[str, Any], field: str, *, required: bool = True
) -> None:
    """Validate that a field is a non-negative decimal value."""
    if field not in config:
        if required:
            raise ConfigValidationError(f"Missing required field: {field}")
        return

    decimal_value = _to_decimal(field, config[field])
    if not decimal_value.is_finite() or decimal_value < 0:
        raise ConfigValidationError(
            f"{field} must be non-negative, got: {decimal_value}"
        )


def validate_positive_integer(
    config: dict[str, Any], field: str, *, required: bool = True, minimum: int = 1
) -> None:
    """Validate that a field is a positive integer."""
    if field not in config:
        if required:
            raise ConfigValidationError(f"Missing required field: {field}")
        return

    value = config[field]
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigValidationError(
            f"{field} must be an integer, got: {type(value).__name__}"
        )

    if value < minimum:
        raise ConfigValidationError(f"{field} must be >= {minimum}, got: {value}")


def validate_percentage(
    config: dict[str, Any],
    field: str,
    *,
    required: bool = True,
    allow_zero: bool = True,
) -> None:
    """Validate that a field is a percentage between 0 and 100."""
    if field not in config:
        if required:
            raise ConfigValidationError(f"Missing required field: {field}")
        return

    decimal_value = _to_decimal(field, config[field])
    lower_ok = decimal_value >= 0 if allow_zero else decimal_value > 0
    if not (lower_ok and decimal_value <= Decimal("100")):
        raise ConfigValidationError(
            f"{field} must be between 0 and 100, got: {decimal_value}"
        )


def validate_fraction(config: dict[str, Any], field: str) -> None:
    """Validate an optional field in the half-open range (0, 1]."""
    if field not in config:
        return
    decimal_value = _to_decimal(field, config[field])
    if not (Decimal("0") < decimal_value <= Decimal("1")):
        raise ConfigValidationError(
            f"{field} must be greater than 0 and at most 1, got: {decimal_value}"
        )


def validate_delay_range(config: dict[str, Any], field: str) -> None:
    """Validate an optional ``[min, max]`` pair of whole minutes."""
    if field not in config:
        return
    value = config[field]
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ConfigValidationError(f"{field} must be a [min, max] pair, got: {value}")
    low, high = value
    for bound in (low, high):
        if not isinstance(bound, int) or isinstance(bound, bool) or bound < 0:
            raise ConfigValidationError(
                f"{field} bounds must be non-negative integers, got: {value}"
            )
    if low > high:
        raise ConfigValidationError(f"{field} minimum exceeds maximum: {value}")


def validate_url(config: dict[str, Any], field: str = "rpc_url", *, required: bool = False) -> None:
    """Validate that a URL field is properly formatted."""
    if field not in config:
        if required:
            raise ConfigValidationError(f"Missing required field: {field}")
        return

    url = config[field]
    if not isinstance(url, str) or not url.strip():
        raise ConfigValidationError(f"{field} must be a non-empty string")

    if not re.match(r"^https?://", url, re.IGNORECASE):
        raise ConfigValidationError(
            f"{field} must start with http:// or https://, got: {url}"
        )


def validate_retry_section(config: dict[str, Any]) -> None:
    """Validate the optional ``retry`` mapping used by the retry executor."""
    if "retry" not in config:
        return
    section = config["retry"]
    if not isinstance(section, dict):
        raise ConfigValidationError("retry must be a mapping")
    validate_positive_integer(section, "max_attempts", required=False)
    validate_non_negative_decimal(section, "initial_delay_sec", required=False)
    validate_non_negative_decimal(section, "max_delay_sec", required=False)
    if "backoff_factor" in section and _to_decimal(
        "backoff_factor", section["backoff_factor"]
    ) < 1:
        raise ConfigValidationError("retry.backoff_factor must be >= 1")
    if "jitter_factor" in section:
        jitter = _to_decimal("jitter_factor", section["jitter_factor"])
        if not Decimal("0") <= jitter <= Decimal("1"):
            raise ConfigValidationError("retry.jitter_factor must be between 0 and 1")


def validate_notification_sections(config: dict[str, Any]) -> None:
    """Validate the ``telegram`` and ``email`` sections when enabled."""
    telegram = config.get("telegram")
    if telegram is not None:
        if not isinstance(telegram, dict):
            raise ConfigValidationError("telegram must be a mapping")
        if telegram.get("enabled") and not telegram.get("chat_id"):
            raise ConfigValidationError("telegram.chat_id is required when enabled")
    email = config.get("email")
    if email is not None:
        if not isinstance(email, dict):
            raise ConfigValidationError("email must be a mapping")
        if email.get("enabled"):
            for field in ("sender", "recipient"):
                if not email.get(field):
                    raise ConfigValidationError(
                        f"email.{field} is required when enabled"
                    )
            if "smtp_port" in email:
                validate_positive_integer(email, "smtp_port", required=False)


def validate_volume_config(config: dict[str, Any]) -> None:
    """Validate configuration for the alternating volume strategy."""
    validate_url(config, "rpc_url", required=True)
    for field in ADDRESS_FIELDS:
        validate_address(config, field)

    validate_positive_decimal(config, "base_amount", required=True)
    validate_positive_decimal(config, "min_amount", required=False)
    validate_non_negative_decimal(config, "min_token_balance", required=False)
    validate_positive_integer(config, "token_decimals", required=False, minimum=0)
    validate_positive_integer(config, "buy_splits", required=False)
    validate_fraction(config, "buy_base_percentage")
    validate_delay_range(config, "buy_delay_range_min")
    validate_positive_decimal(config, "sell_size_multiplier", required=False)
    validate_delay_range(config, "sell_delay_range_min")
    validate_percentage(config, "slippage_percent", required=False)
    if "slippage_percent" in config and Decimal(str(config["slippage_percent"])) >= 100:
        raise ConfigValidationError("slippage_percent must be below 100")
    validate_positive_integer(config, "gas_limit", required=False, minimum=21_000)
    validate_positive_integer(config, "gas_reserve_multiplier", required=False, minimum=0)
    validate_positive_integer(config, "retry_cooldown_min", required=False)
    validate_positive_decimal(config, "bootstrap_multiplier", required=False)
    validate_fraction(config, "amount_jitter_pct")
    validate_fraction(config, "sell_balance_cap")
    validate_positive_integer(config, "deadline_min", required=False)
    validate_percentage(config, "fee_budget_pct", required=False, allow_zero=False)
    validate_non_negative_decimal(config, "min_fee_gwei", required=False)

    validate_percentage(config, "max_slippage_percent", required=False, allow_zero=False)
    validate_percentage(
        config, "max_price_deviation_percent", required=False, allow_zero=False
    )
    validate_positive_decimal(config, "max_gas_price_gwei", required=False)

    if "rpc_timeout_sec" in config:
        validate_positive_decimal(config, "rpc_timeout_sec", required=False)
    if "rpc_retries" in config:
        validate_positive_integer(config, "rpc_retries", required=False, minimum=0)
    if "receipt_timeout_sec" in config:
        validate_positive_decimal(config, "receipt_timeout_sec", required=False)
    if "receipt_poll_sec" in config:
        validate_positive_decimal(config, "receipt_poll_sec", required=False)
    if "state_path" in config and (
        not isinstance(config["state_path"], str) or not config["state_path"].strip()
    ):
        raise ConfigValidationError("state_path must be a non-empty string")

    validate_retry_section(config)
    validate_notification_sections(config)


def validate_config(config: dict[str, Any], strategy: str | None = None) -> None:
    """
    Validate configuration for a specific strategy.

    Args:
        config: Configuration dictionary
        strategy: Strategy name (currently only 'volume')

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    if not isinstance(config, dict):
        raise ConfigValidationError("Configuration must be a dictionary")

    if not config:
        raise ConfigValidationError("Configuration cannot be empty")

    if strategy == "volume":
        validate_volume_config(config)
    elif strategy is not None:
        raise ConfigValidationError(f"Unknown strategy: {strategy}")
    else:
        validate_url(config, "rpc_url")

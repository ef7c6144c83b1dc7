"""Pre-trade safeguards: slippage, rolling price deviation and network fee."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Protocol

from amm_client.units import wei_to_gwei
from utils.logging_config import TradeEvent

LOGGER = logging.getLogger("amm_volume_bot.engine.safeguards")

MIN_HISTORY_SAMPLES = 5
HISTORY_CAPACITY = 100


class FeeRateSource(Protocol):
    async def get_fee_rate(self) -> int:
        """Return the current network fee rate in wei per gas unit."""


@dataclass(frozen=True)
class SafeguardConfig:
    max_slippage_percent: Decimal = Decimal("2.0")
    max_price_deviation_percent: Decimal = Decimal("5.0")
    max_gas_price_gwei: Decimal = Decimal("100")
    min_history_samples: int = MIN_HISTORY_SAMPLES
    history_capacity: int = HISTORY_CAPACITY

    def __post_init__(self) -> None:
        for name in (
            "max_slippage_percent",
            "max_price_deviation_percent",
            "max_gas_price_gwei",
        ):
            if Decimal(str(getattr(self, name))) <= 0:
                raise ValueError(f"{name} must be positive")


@dataclass(frozen=True)
class PriceSample:
    price: Decimal
    observed_at: datetime


def _to_decimal(value: object) -> Decimal | None:
    """Parse a finite decimal; NaN and infinities count as unparseable."""
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


class SafeguardEngine:
    """Gate trades on market and network conditions.

    Rejections are normal ``False`` results, never exceptions. Accepted price
    observations are kept oldest-first in a bounded history.
    """

    def __init__(
        self,
        config: SafeguardConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or SafeguardConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._history: deque[PriceSample] = deque(
            maxlen=self.config.history_capacity
        )

    @property
    def price_history(self) -> list[PriceSample]:
        return list(self._history)

    def check_slippage(self, expected_price: object, actual_price: object) -> bool:
        expected = _to_decimal(expected_price)
        actual = _to_decimal(actual_price)
        if expected is None or actual is None or expected <= 0:
            LOGGER.warning(
                "Slippage check rejected unusable prices expected=%s actual=%s",
                expected_price,
                actual_price,
                extra={"event": TradeEvent.SLIPPAGE_WARNING.value},
            )
            return False
        slippage = abs(actual - expected) / expected * 100
        if slippage > Decimal(str(self.config.max_slippage_percent)):
            LOGGER.warning(
                "Slippage %.4f%% exceeds limit %s%%",
                slippage,
                self.config.max_slippage_percent,
                extra={
                    "event": TradeEvent.SLIPPAGE_WARNING.value,
                    "expected_price": str(expected),
                    "actual_price": str(actual),
                    "slippage": str(slippage),
                },
            )
            return False
        return True

    def check_price_deviation(self, current_price: object) -> bool:
        price = _to_decimal(current_price)
        if price is None or price <= 0:
            LOGGER.warning(
                "Price deviation check rejected unusable price %s",
                current_price,
                extra={"event": TradeEvent.PRICE_CHECK.value},
            )
            return False

        if len(self._history) < self.config.min_history_samples:
            self.record_price(price)
            return True

        average = self.calculate_average_price()
        assert average is not None
        deviation = abs(price - average) / average * 100
        if deviation <= Decimal(str(self.config.max_price_deviation_percent)):
            self.record_price(price)
            return True

        LOGGER.warning(
            "Price %s deviates %.4f%% from rolling average %s",
            price,
            deviation,
            average,
            extra={
                "event": TradeEvent.PRICE_CHECK.value,
                "current_price": str(price),
                "average_price": str(average),
                "deviation": str(deviation),
                "max_deviation": str(self.config.max_price_deviation_percent),
            },
        )
        return False

    async def check_gas_price(self, fee_source: FeeRateSource) -> bool:
        try:
            fee_rate = await fee_source.get_fee_rate()
        except Exception as exc:
            LOGGER.error(
                "Error checking gas price: %s",
                exc,
                extra={"event": TradeEvent.GAS_WARNING.value},
            )
            return False
        gas_price_gwei = wei_to_gwei(fee_rate)
        if gas_price_gwei > Decimal(str(self.config.max_gas_price_gwei)):
            LOGGER.warning(
                "Gas price %s gwei exceeds limit %s gwei",
                gas_price_gwei,
                self.config.max_gas_price_gwei,
                extra={
                    "event": TradeEvent.GAS_WARNING.value,
                    "current_gas_price": str(gas_price_gwei),
                    "max_gas_price": str(self.config.max_gas_price_gwei),
                },
            )
            return False
        return True

    def record_price(self, price: object) -> None:
        value = _to_decimal(price)
        if value is None:
            raise ValueError(f"Invalid price: {price}")
        self._history.append(PriceSample(price=value, observed_at=self._clock()))

    def calculate_average_price(self) -> Decimal | None:
        window = self.config.min_history_samples
        if len(self._history) < window:
            return None
        recent = list(self._history)[-window:]
        return sum((sample.price for sample in recent), Decimal("0")) / len(recent)

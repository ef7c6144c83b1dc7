"""Trade state and the durable schedule record that survives restarts."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any

from engine.errors import PersistenceError

LOGGER = logging.getLogger("amm_volume_bot.engine.state")


class TradeAction(str, Enum):
    NONE = "none"
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def parse(cls, value: Any) -> "TradeAction":
        if value in (None, ""):
            return cls.NONE
        try:
            return cls(str(value).lower())
        except ValueError as exc:
            raise PersistenceError(f"Unknown trade action: {value!r}") from exc


@dataclass(frozen=True)
class TradeState:
    last_action: TradeAction = TradeAction.NONE
    trade_count: int = 0
    last_buy_total: Decimal = Decimal("0")
    last_buy_time: datetime | None = None

    def record_buy(self, amount: Decimal, at: datetime) -> "TradeState":
        return replace(
            self,
            last_action=TradeAction.BUY,
            trade_count=self.trade_count + 1,
            last_buy_total=self.last_buy_total + amount,
            last_buy_time=at,
        )

    def record_sell(self) -> "TradeState":
        return replace(
            self,
            last_action=TradeAction.SELL,
            trade_count=self.trade_count + 1,
            last_buy_total=Decimal("0"),
            last_buy_time=None,
        )


@dataclass(frozen=True)
class ScheduledTrade:
    next_trade_at: datetime
    last_action: TradeAction
    trade_count: int
    last_buy_total: Decimal = Decimal("0")
    last_buy_time: datetime | None = None

    @classmethod
    def from_state(cls, state: TradeState, next_trade_at: datetime) -> "ScheduledTrade":
        return cls(
            next_trade_at=next_trade_at,
            last_action=state.last_action,
            trade_count=state.trade_count,
            last_buy_total=state.last_buy_total,
            last_buy_time=state.last_buy_time,
        )

    def to_state(self) -> TradeState:
        # A buy total only means something while the last action is a buy.
        if self.last_action != TradeAction.BUY:
            return TradeState(
                last_action=self.last_action, trade_count=self.trade_count
            )
        if self.last_buy_time is None or self.last_buy_total <= 0:
            # Without the buy data there is nothing to size a sell against.
            LOGGER.warning(
                "Schedule record says the last action was a buy but carries no "
                "buy total or time; resuming with a fresh buy sequence"
            )
            return TradeState(
                last_action=TradeAction.NONE, trade_count=self.trade_count
            )
        return TradeState(
            last_action=self.last_action,
            trade_count=self.trade_count,
            last_buy_total=self.last_buy_total,
            last_buy_time=self.last_buy_time,
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "count": self.trade_count,
            "nextTrade": _format_timestamp(self.next_trade_at),
            "lastAction": self.last_action.value,
        }
        if self.last_action == TradeAction.BUY:
            payload["lastBuyTotal"] = str(self.last_buy_total)
            if self.last_buy_time is not None:
                payload["lastBuyTime"] = _format_timestamp(self.last_buy_time)
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ScheduledTrade":
        try:
            next_trade_at = _parse_timestamp(payload["nextTrade"])
            trade_count = int(payload.get("count", 0))
            last_buy_total = Decimal(str(payload.get("lastBuyTotal", "0")))
            raw_buy_time = payload.get("lastBuyTime")
            last_buy_time = (
                _parse_timestamp(raw_buy_time) if raw_buy_time else None
            )
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise PersistenceError(f"Invalid schedule record: {exc}") from exc
        if trade_count < 0:
            raise PersistenceError(f"Invalid trade count: {trade_count}")
        return cls(
            next_trade_at=next_trade_at,
            last_action=TradeAction.parse(payload.get("lastAction")),
            trade_count=trade_count,
            last_buy_total=last_buy_total,
            last_buy_time=last_buy_time,
        )


class ScheduleStore:
    """Single JSON record holding the next wake-up and the trade counters."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> ScheduledTrade | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(
                f"Failed to read schedule record {self.path}: {exc}"
            ) from exc
        if not isinstance(payload, dict):
            raise PersistenceError(
                f"Schedule record {self.path} must contain a JSON object"
            )
        # First launch writes only the counter; no schedule to restore yet.
        if "nextTrade" not in payload:
            return None
        return ScheduledTrade.from_payload(payload)

    def save(self, record: ScheduledTrade) -> None:
        data = json.dumps(record.to_payload(), indent=2, sort_keys=True)
        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                tmp_name = handle.name
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except OSError as exc:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(
                f"Failed to write schedule record {self.path}: {exc}"
            ) from exc


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ValueError(f"Timestamp must be a string, got {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

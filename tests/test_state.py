"""Tests for trade state transitions and the persisted schedule record."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from engine.errors import PersistenceError
from engine.state import (
    ScheduledTrade,
    ScheduleStore,
    TradeAction,
    TradeState,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_record_buy_accumulates_and_record_sell_resets() -> None:
    state = TradeState()

    state = state.record_buy(Decimal("0.01"), NOW)
    state = state.record_buy(Decimal("0.02"), NOW)
    assert state.last_action == TradeAction.BUY
    assert state.trade_count == 2
    assert state.last_buy_total == Decimal("0.03")
    assert state.last_buy_time == NOW

    state = state.record_sell()
    assert state.last_action == TradeAction.SELL
    assert state.trade_count == 3
    assert state.last_buy_total == Decimal("0")
    assert state.last_buy_time is None


def test_trade_state_is_immutable() -> None:
    state = TradeState()
    updated = state.record_buy(Decimal("1"), NOW)

    assert state.trade_count == 0
    assert updated is not state


def test_save_then_load_round_trips(tmp_path) -> None:
    store = ScheduleStore(tmp_path / "next.json")
    record = ScheduledTrade(
        next_trade_at=NOW,
        last_action=TradeAction.BUY,
        trade_count=4,
        last_buy_total=Decimal("0.054"),
        last_buy_time=NOW,
    )

    store.save(record)

    assert store.load() == record


def test_payload_uses_documented_field_names(tmp_path) -> None:
    path = tmp_path / "next.json"
    ScheduleStore(path).save(
        ScheduledTrade(next_trade_at=NOW, last_action=TradeAction.SELL, trade_count=2)
    )

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload == {
        "count": 2,
        "nextTrade": "2024-05-01T12:00:00Z",
        "lastAction": "sell",
    }


def test_save_leaves_no_temporary_files(tmp_path) -> None:
    store = ScheduleStore(tmp_path / "state" / "next.json")
    store.save(ScheduledTrade(NOW, TradeAction.NONE, 0))
    store.save(ScheduledTrade(NOW, TradeAction.BUY, 1, Decimal("1"), NOW))

    assert sorted(p.name for p in (tmp_path / "state").iterdir()) == ["next.json"]


def test_load_missing_file_returns_none(tmp_path) -> None:
    assert ScheduleStore(tmp_path / "missing.json").load() is None


def test_load_counter_only_record_returns_none(tmp_path) -> None:
    path = tmp_path / "next.json"
    path.write_text(json.dumps({"count": 0}), encoding="utf-8")

    assert ScheduleStore(path).load() is None


def test_load_corrupt_record_raises_persistence_error(tmp_path) -> None:
    path = tmp_path / "next.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(PersistenceError):
        ScheduleStore(path).load()


def test_load_rejects_unknown_action(tmp_path) -> None:
    path = tmp_path / "next.json"
    path.write_text(
        json.dumps({"count": 1, "nextTrade": "2024-05-01T12:00:00Z", "lastAction": "hold"}),
        encoding="utf-8",
    )

    with pytest.raises(PersistenceError):
        ScheduleStore(path).load()


def test_to_state_drops_buy_total_after_sell() -> None:
    record = ScheduledTrade(
        next_trade_at=NOW,
        last_action=TradeAction.SELL,
        trade_count=3,
        last_buy_total=Decimal("5"),
        last_buy_time=NOW,
    )

    state = record.to_state()
    assert state.last_buy_total == Decimal("0")
    assert state.last_buy_time is None


def test_save_failure_raises_persistence_error(tmp_path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    store = ScheduleStore(blocker / "next.json")

    with pytest.raises(PersistenceError):
        store.save(ScheduledTrade(NOW, TradeAction.NONE, 0))


def test_buy_record_without_buy_data_resumes_as_fresh_cycle(tmp_path, caplog) -> None:
    path = tmp_path / "next.json"
    path.write_text(
        json.dumps({"count": 3, "nextTrade": "2024-05-01T12:00:00Z", "lastAction": "buy"}),
        encoding="utf-8",
    )

    record = ScheduleStore(path).load()
    with caplog.at_level("WARNING", logger="amm_volume_bot.engine.state"):
        state = record.to_state()

    assert record.last_action == TradeAction.BUY
    assert state.last_action == TradeAction.NONE
    assert state.trade_count == 3
    assert "fresh buy sequence" in caplog.text

"""Tests for the alternating volume trade orchestrator."""

from __future__ import annotations

import asyncio
import json
import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from engine.errors import (
    FatalFundsError,
    PersistenceError,
    TransientNetworkError,
    UnconfirmedTransactionError,
)
from engine.ledger_client import SwapKind, SwapReceipt
from engine.retry import RetryConfig
from engine.safeguards import SafeguardConfig, SafeguardEngine
from engine.scheduler import WakeHandle
from engine.state import ScheduledTrade, ScheduleStore, TradeAction, TradeState
from strategies.alternating_volume import (
    OrchestratorPhase,
    SequenceOutcome,
    TradeConfig,
    TradeOrchestrator,
    apply_slippage,
    describe,
    select_fee_rate,
)

WALLET = "0x" + "11" * 20
TOKEN = "0x" + "22" * 20
WETH = "0x" + "33" * 20
ROUTER = "0x" + "44" * 20
START = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
ONE = 10**18
GWEI = 10**9


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)


class FakeLedger:
    """Constant-price pool: one token costs ``price_wei`` native wei."""

    def __init__(self) -> None:
        self.native_balance = 10 * ONE
        self.token_balance = 1000 * ONE
        self.fee_rate = 5 * GWEI
        self.price_wei = 10**15
        self.allowance = 2**256 - 1
        self.swaps: list[dict] = []
        self.approvals: list[tuple[str, int]] = []
        self.send_errors: list[Exception] = []
        self.receipt_results: list[object] = []
        self.receipt_polls: list[str] = []
        self.token_balance_errors: list[Exception] = []

    async def get_native_balance(self, address: str) -> int:
        return self.native_balance

    async def get_token_balance(self, token: str, owner: str) -> int:
        if self.token_balance_errors:
            raise self.token_balance_errors.pop(0)
        return self.token_balance

    async def get_fee_rate(self) -> int:
        return self.fee_rate

    async def quote_swap(self, amount_in: int, path) -> list[int]:
        if path[0] == WETH:
            return [amount_in, amount_in * ONE // self.price_wei]
        return [amount_in, amount_in * self.price_wei // ONE]

    async def send_swap(
        self, kind, amount_in, amount_out_min, path, recipient, deadline, fee_rate
    ) -> str:
        self.swaps.append(
            {
                "kind": kind,
                "amount_in": amount_in,
                "amount_out_min": amount_out_min,
                "path": list(path),
                "recipient": recipient,
                "deadline": deadline,
                "fee_rate": fee_rate,
            }
        )
        if self.send_errors:
            raise self.send_errors.pop(0)
        return f"0x{len(self.swaps):064x}"

    async def wait_for_receipt(self, tx_hash: str) -> SwapReceipt:
        self.receipt_polls.append(tx_hash)
        if self.receipt_results:
            outcome = self.receipt_results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return SwapReceipt(status=1, block_number=100, tx_hash=tx_hash)

    async def approve_allowance(self, spender: str, amount: int) -> SwapReceipt:
        self.approvals.append((spender, amount))
        self.allowance = amount
        return SwapReceipt(status=1, block_number=99, tx_hash="0xapprove")

    async def get_allowance(self, owner: str, spender: str) -> int:
        return self.allowance


class FakeScheduler:
    def __init__(self) -> None:
        self.armed: list[WakeHandle] = []

    def schedule_at(self, when, callback) -> WakeHandle:
        handle = WakeHandle(when)
        self.armed.append(handle)
        return handle

    def cancel_all(self) -> None:
        for handle in self.armed:
            handle.cancel()


class FailingStore(ScheduleStore):
    def save(self, record) -> None:
        raise PersistenceError("disk full")


class RecordingNotifier:
    def __init__(self, error: Exception | None = None) -> None:
        self.reports = []
        self.error = error

    async def send(self, report) -> None:
        self.reports.append(report)
        if self.error is not None:
            raise self.error


def _config(**overrides) -> TradeConfig:
    values = dict(
        wallet_address=WALLET,
        token_address=TOKEN,
        weth_address=WETH,
        router_address=ROUTER,
        base_amount=Decimal("1"),
        min_amount=Decimal("0.0001"),
        min_token_balance=Decimal("1"),
    )
    values.update(overrides)
    return TradeConfig(**values)


def _orchestrator(tmp_path, ledger=None, clock=None, store=None, **kwargs):
    clock = clock or FakeClock()
    orchestrator = TradeOrchestrator(
        ledger or FakeLedger(),
        SafeguardEngine(SafeguardConfig(), clock=clock),
        store or ScheduleStore(tmp_path / "next.json"),
        kwargs.pop("config", None) or _config(),
        retry_config=RetryConfig(max_attempts=3, initial_delay=1, jitter_factor=0),
        scheduler=kwargs.pop("scheduler", None) or FakeScheduler(),
        clock=clock,
        sleep=clock.sleep,
        rng=random.Random(1),
        **kwargs,
    )
    return orchestrator, clock


@pytest.mark.asyncio
async def test_first_wake_runs_three_tranche_buy(tmp_path) -> None:
    ledger = FakeLedger()
    orchestrator, clock = _orchestrator(tmp_path, ledger)

    await orchestrator.wake()

    assert [swap["kind"] for swap in ledger.swaps] == [SwapKind.NATIVE_FOR_TOKENS] * 3
    state = orchestrator.state
    assert state.last_action == TradeAction.BUY
    assert state.trade_count == 3
    assert Decimal("0.05") < state.last_buy_total < Decimal("0.06")
    assert state.last_buy_time == clock.now

    tranche_delays = [s for s in clock.sleeps if s >= 60]
    assert len(tranche_delays) == 2
    assert all(15 * 60 <= delay <= 35 * 60 for delay in tranche_delays)

    delay = orchestrator.next_trade_at - clock.now
    assert timedelta(minutes=15) <= delay <= timedelta(minutes=35)
    assert orchestrator.phase == OrchestratorPhase.IDLE

    record = ScheduleStore(tmp_path / "next.json").load()
    assert record.last_action == TradeAction.BUY
    assert record.trade_count == 3
    assert record.next_trade_at == orchestrator.next_trade_at


@pytest.mark.asyncio
async def test_buy_tranche_amounts_and_slippage_floor(tmp_path) -> None:
    ledger = FakeLedger()
    orchestrator, _ = _orchestrator(tmp_path, ledger)

    await orchestrator.wake()

    for swap in ledger.swaps:
        assert Decimal("0.0171") * ONE <= swap["amount_in"] <= Decimal("0.0189") * ONE
        quoted = swap["amount_in"] * ONE // ledger.price_wei
        assert swap["amount_out_min"] == quoted * 60 // 100
        assert swap["path"] == [WETH, TOKEN]
        assert swap["fee_rate"] == 5 * GWEI


@pytest.mark.asyncio
async def test_actions_alternate_and_buy_total_resets(tmp_path) -> None:
    ledger = FakeLedger()
    orchestrator, clock = _orchestrator(tmp_path, ledger)

    await orchestrator.wake()
    assert orchestrator.state.last_buy_total > 0

    clock.now = orchestrator.next_trade_at
    await orchestrator.wake()
    assert ledger.swaps[-1]["kind"] == SwapKind.TOKENS_FOR_NATIVE
    assert orchestrator.state.last_action == TradeAction.SELL
    assert orchestrator.state.trade_count == 4
    assert orchestrator.state.last_buy_total == 0
    assert orchestrator.state.last_buy_time is None

    clock.now = orchestrator.next_trade_at
    await orchestrator.wake()
    assert ledger.swaps[-1]["kind"] == SwapKind.NATIVE_FOR_TOKENS
    assert orchestrator.state.last_action == TradeAction.BUY


@pytest.mark.asyncio
async def test_sell_returns_bought_value_in_tokens(tmp_path) -> None:
    ledger = FakeLedger()
    orchestrator, clock = _orchestrator(tmp_path, ledger)
    orchestrator.state = TradeState(
        last_action=TradeAction.BUY,
        trade_count=3,
        last_buy_total=Decimal("0.05"),
        last_buy_time=clock.now - timedelta(minutes=20),
    )

    await orchestrator.wake()

    (swap,) = ledger.swaps
    # 0.05 native at 0.001 native per token is 50 tokens, +/-5%.
    assert Decimal("47.5") * ONE <= swap["amount_in"] <= Decimal("52.5") * ONE
    assert swap["path"] == [TOKEN, WETH]


@pytest.mark.asyncio
async def test_sell_is_capped_at_share_of_token_balance(tmp_path) -> None:
    ledger = FakeLedger()
    ledger.token_balance = 10 * ONE
    orchestrator, clock = _orchestrator(tmp_path, ledger)
    orchestrator.state = TradeState(
        last_action=TradeAction.BUY,
        trade_count=1,
        last_buy_total=Decimal("1"),
        last_buy_time=clock.now - timedelta(minutes=30),
    )

    await orchestrator.wake()

    assert ledger.swaps[0]["amount_in"] == Decimal("9.5") * ONE


@pytest.mark.asyncio
async def test_sell_approves_router_when_allowance_is_low(tmp_path) -> None:
    ledger = FakeLedger()
    ledger.allowance = 0
    orchestrator, clock = _orchestrator(tmp_path, ledger)
    orchestrator.state = TradeState(
        last_action=TradeAction.BUY,
        trade_count=1,
        last_buy_total=Decimal("0.01"),
        last_buy_time=clock.now - timedelta(minutes=30),
    )

    await orchestrator.wake()

    assert ledger.approvals == [(ROUTER, 2**256 - 1)]
    assert orchestrator.state.last_action == TradeAction.SELL


@pytest.mark.asyncio
async def test_sell_waits_for_window(tmp_path) -> None:
    ledger = FakeLedger()
    orchestrator, clock = _orchestrator(tmp_path, ledger)
    last_buy = clock.now - timedelta(minutes=5)
    orchestrator.state = TradeState(
        last_action=TradeAction.BUY,
        trade_count=3,
        last_buy_total=Decimal("0.05"),
        last_buy_time=last_buy,
    )

    await orchestrator.wake()

    assert ledger.swaps == []
    assert orchestrator.phase == OrchestratorPhase.AWAITING_SELL_WINDOW
    assert orchestrator.next_trade_at == last_buy + timedelta(minutes=15)
    assert orchestrator.state.trade_count == 3
    record = ScheduleStore(tmp_path / "next.json").load()
    assert record.next_trade_at == last_buy + timedelta(minutes=15)
    assert record.last_buy_total == Decimal("0.05")


@pytest.mark.asyncio
async def test_fatal_funds_error_schedules_cooldown_without_retry(tmp_path) -> None:
    ledger = FakeLedger()
    ledger.send_errors = [FatalFundsError("insufficient funds for gas")]
    orchestrator, clock = _orchestrator(tmp_path, ledger)

    await orchestrator.wake()

    assert len(ledger.swaps) == 1
    assert orchestrator.state == TradeState()
    assert orchestrator.next_trade_at == clock.now + timedelta(minutes=5)


@pytest.mark.asyncio
async def test_high_gas_skips_every_tranche(tmp_path) -> None:
    ledger = FakeLedger()
    ledger.fee_rate = 500 * GWEI
    orchestrator, clock = _orchestrator(tmp_path, ledger)

    await orchestrator.wake()

    assert ledger.swaps == []
    assert orchestrator.state == TradeState()
    assert orchestrator.next_trade_at == clock.now + timedelta(minutes=5)


@pytest.mark.asyncio
async def test_reverted_tranche_is_not_counted(tmp_path) -> None:
    ledger = FakeLedger()
    ledger.receipt_results = [SwapReceipt(status=0, block_number=5, tx_hash="0xdead")]
    orchestrator, _ = _orchestrator(tmp_path, ledger)

    await orchestrator.wake()

    assert len(ledger.swaps) == 3
    assert orchestrator.state.trade_count == 2


@pytest.mark.asyncio
async def test_bootstrap_buy_when_token_balance_is_low(tmp_path) -> None:
    ledger = FakeLedger()
    ledger.token_balance = 0
    orchestrator, _ = _orchestrator(tmp_path, ledger)

    await orchestrator.wake()

    assert ledger.swaps[0]["amount_in"] == 3 * ONE
    assert len(ledger.swaps) == 4
    assert orchestrator.state.trade_count == 3


@pytest.mark.asyncio
async def test_failed_bootstrap_leaves_state_unchanged(tmp_path) -> None:
    ledger = FakeLedger()
    ledger.token_balance = 0
    ledger.receipt_results = [SwapReceipt(status=0, block_number=5, tx_hash="0xdead")]
    orchestrator, clock = _orchestrator(tmp_path, ledger)

    await orchestrator.wake()

    assert len(ledger.swaps) == 1
    assert orchestrator.state == TradeState()
    assert orchestrator.next_trade_at == clock.now + timedelta(minutes=5)


@pytest.mark.asyncio
async def test_transient_ledger_errors_are_retried(tmp_path) -> None:
    ledger = FakeLedger()
    ledger.token_balance_errors = [TransientNetworkError("timeout")]
    orchestrator, clock = _orchestrator(tmp_path, ledger)

    await orchestrator.wake()

    assert clock.sleeps[0] == 1
    assert orchestrator.state.trade_count == 3


@pytest.mark.asyncio
async def test_restart_with_future_schedule_waits(tmp_path) -> None:
    store = ScheduleStore(tmp_path / "next.json")
    future = START + timedelta(minutes=20)
    store.save(
        ScheduledTrade(
            next_trade_at=future,
            last_action=TradeAction.BUY,
            trade_count=3,
            last_buy_total=Decimal("0.05"),
            last_buy_time=START - timedelta(minutes=1),
        )
    )
    ledger = FakeLedger()
    scheduler = FakeScheduler()
    orchestrator, _ = _orchestrator(tmp_path, ledger, store=store, scheduler=scheduler)

    handle = await orchestrator.start()

    assert handle.when == future
    assert [armed.when for armed in scheduler.armed] == [future]
    assert ledger.swaps == []
    assert orchestrator.state.last_action == TradeAction.BUY
    assert orchestrator.state.last_buy_total == Decimal("0.05")


@pytest.mark.asyncio
async def test_fresh_start_arms_immediately(tmp_path) -> None:
    scheduler = FakeScheduler()
    orchestrator, clock = _orchestrator(tmp_path, scheduler=scheduler)

    handle = await orchestrator.start()

    assert handle.when == clock.now
    assert orchestrator.state == TradeState()


@pytest.mark.asyncio
async def test_rearming_cancels_previous_handle(tmp_path) -> None:
    scheduler = FakeScheduler()
    orchestrator, _ = _orchestrator(tmp_path, scheduler=scheduler)

    first = await orchestrator.start()
    await orchestrator.wake()

    assert first.cancelled
    assert not scheduler.armed[-1].cancelled


@pytest.mark.asyncio
async def test_persistence_failure_does_not_stop_scheduling(tmp_path) -> None:
    scheduler = FakeScheduler()
    orchestrator, _ = _orchestrator(
        tmp_path, store=FailingStore(tmp_path / "next.json"), scheduler=scheduler
    )

    await orchestrator.wake()

    assert orchestrator.state.trade_count == 3
    assert len(scheduler.armed) == 1


@pytest.mark.asyncio
async def test_reports_are_sent_and_failures_ignored(tmp_path) -> None:
    notifier = RecordingNotifier(error=RuntimeError("smtp down"))
    orchestrator, _ = _orchestrator(tmp_path, notifier=notifier)

    await orchestrator.wake()
    for _ in range(3):
        await asyncio.sleep(0)

    (report,) = notifier.reports
    assert report.action == "buy"
    assert report.success is True
    assert report.trade_count == 3
    assert len(report.tx_hashes) == 3
    assert report.native_balance == Decimal("10")


class DriftingLedger(FakeLedger):
    """Quote one-token sells at ``drift_wei`` on the listed price checks."""

    def __init__(self, drift_on: set[int], drift_wei: int) -> None:
        super().__init__()
        self.drift_on = drift_on
        self.drift_wei = drift_wei
        self.price_checks = 0

    async def quote_swap(self, amount_in: int, path) -> list[int]:
        if path[0] == TOKEN and amount_in == ONE:
            self.price_checks += 1
            if self.price_checks in self.drift_on:
                return [amount_in, self.drift_wei]
        return await super().quote_swap(amount_in, path)


class SlowNotifier:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False
        self.reports = []

    async def send(self, report) -> None:
        self.started.set()
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        self.reports.append(report)


def _seed_prices(orchestrator, price: str = "0.001", samples: int = 5) -> None:
    for _ in range(samples):
        orchestrator.safeguards.record_price(Decimal(price))


def _pending_sell(clock) -> TradeState:
    return TradeState(
        last_action=TradeAction.BUY,
        trade_count=3,
        last_buy_total=Decimal("0.05"),
        last_buy_time=clock.now - timedelta(minutes=20),
    )


@pytest.mark.asyncio
async def test_receipt_timeout_polls_same_hash_and_never_resends(tmp_path) -> None:
    ledger = FakeLedger()
    ledger.receipt_results = [
        TransientNetworkError("Timed out waiting for receipt") for _ in range(3)
    ]
    orchestrator, clock = _orchestrator(tmp_path, ledger, config=_config(buy_splits=1))

    await orchestrator.wake()

    assert len(ledger.swaps) == 1
    assert ledger.receipt_polls == [f"0x{1:064x}"] * 3
    assert orchestrator.state == TradeState()
    assert orchestrator.next_trade_at == clock.now + timedelta(minutes=5)


@pytest.mark.asyncio
async def test_unconfirmed_sell_is_not_resent(tmp_path) -> None:
    ledger = FakeLedger()
    ledger.receipt_results = [
        TransientNetworkError("Timed out waiting for receipt") for _ in range(3)
    ]
    orchestrator, clock = _orchestrator(tmp_path, ledger)
    state = _pending_sell(clock)
    orchestrator.state = state

    await orchestrator.wake()

    assert [swap["kind"] for swap in ledger.swaps] == [SwapKind.TOKENS_FOR_NATIVE]
    assert orchestrator.state == state


@pytest.mark.asyncio
async def test_ambiguous_broadcast_error_is_not_retried(tmp_path) -> None:
    ledger = FakeLedger()
    ledger.send_errors = [
        UnconfirmedTransactionError("eth_sendTransaction outcome unknown")
    ]
    orchestrator, clock = _orchestrator(tmp_path, ledger, config=_config(buy_splits=1))

    await orchestrator.wake()

    assert len(ledger.swaps) == 1
    assert ledger.receipt_polls == []
    assert clock.sleeps == []
    assert orchestrator.state == TradeState()


@pytest.mark.asyncio
async def test_pre_broadcast_failure_is_retried(tmp_path) -> None:
    ledger = FakeLedger()
    ledger.send_errors = [TransientNetworkError("connection reset")]
    orchestrator, _ = _orchestrator(tmp_path, ledger, config=_config(buy_splits=1))

    await orchestrator.wake()

    assert len(ledger.swaps) == 2
    assert len(ledger.receipt_polls) == 1
    assert orchestrator.state.trade_count == 1


@pytest.mark.asyncio
async def test_restored_buy_record_without_buy_data_trades_again(tmp_path) -> None:
    path = tmp_path / "next.json"
    path.write_text(
        json.dumps({"count": 3, "nextTrade": "2024-05-01T12:00:00Z", "lastAction": "buy"}),
        encoding="utf-8",
    )
    ledger = FakeLedger()
    orchestrator, _ = _orchestrator(tmp_path, ledger)

    await orchestrator.start()
    assert orchestrator.phase == OrchestratorPhase.IDLE
    await orchestrator.wake()

    assert [swap["kind"] for swap in ledger.swaps] == [SwapKind.NATIVE_FOR_TOKENS] * 3
    assert orchestrator.state.last_action == TradeAction.BUY
    assert orchestrator.state.trade_count == 6


@pytest.mark.asyncio
async def test_price_deviation_skips_only_the_affected_buy_tranche(tmp_path) -> None:
    # Each tranche checks the price twice: deviation, then impact.
    ledger = DriftingLedger(drift_on={3}, drift_wei=2 * 10**15)
    orchestrator, _ = _orchestrator(tmp_path, ledger)
    _seed_prices(orchestrator)

    await orchestrator.wake()

    assert len(ledger.swaps) == 2
    assert orchestrator.state.last_action == TradeAction.BUY
    assert orchestrator.state.trade_count == 2
    recorded = [sample.price for sample in orchestrator.safeguards.price_history]
    assert Decimal("0.002") not in recorded


@pytest.mark.asyncio
async def test_price_deviation_aborts_the_whole_sell(tmp_path) -> None:
    ledger = DriftingLedger(drift_on={1}, drift_wei=2 * 10**15)
    orchestrator, clock = _orchestrator(tmp_path, ledger)
    _seed_prices(orchestrator)
    state = _pending_sell(clock)
    orchestrator.state = state

    await orchestrator.wake()

    assert ledger.swaps == []
    assert ledger.price_checks == 1
    assert orchestrator.state == state
    assert orchestrator.phase == OrchestratorPhase.IDLE
    assert orchestrator.next_trade_at == clock.now + timedelta(minutes=5)


@pytest.mark.asyncio
async def test_high_gas_aborts_sell_and_keeps_buy_record(tmp_path) -> None:
    ledger = FakeLedger()
    ledger.fee_rate = 500 * GWEI
    orchestrator, clock = _orchestrator(tmp_path, ledger)
    state = _pending_sell(clock)

    result = await orchestrator.run_sell_sequence(state)
    assert result.outcome == SequenceOutcome.FAILED
    assert result.error == "gas price too high"

    orchestrator.state = state
    await orchestrator.wake()

    assert ledger.swaps == []
    assert orchestrator.state == state
    assert orchestrator.next_trade_at == clock.now + timedelta(minutes=5)
    record = ScheduleStore(tmp_path / "next.json").load()
    assert record.last_action == TradeAction.BUY
    assert record.last_buy_total == Decimal("0.05")


@pytest.mark.asyncio
async def test_aclose_cancels_reports_still_in_flight(tmp_path) -> None:
    notifier = SlowNotifier()
    orchestrator, _ = _orchestrator(tmp_path, notifier=notifier)

    await orchestrator.wake()
    await asyncio.wait_for(notifier.started.wait(), timeout=1)
    await orchestrator.aclose()

    assert notifier.cancelled
    assert notifier.reports == []


def test_select_fee_rate_caps_at_budget_and_floor() -> None:
    assert select_fee_rate(5 * GWEI, 10 * ONE, 500_000, Decimal("30"), Decimal("1")) == 5 * GWEI
    # 30% of 0.001 native over 500k gas is 0.6 gwei, below the 1 gwei floor.
    assert select_fee_rate(5 * GWEI, ONE // 1000, 500_000, Decimal("30"), Decimal("1")) == GWEI
    assert select_fee_rate(5 * GWEI, ONE // 200, 500_000, Decimal("30"), Decimal("1")) == 3 * GWEI


def test_apply_slippage_keeps_remaining_share() -> None:
    assert apply_slippage(1000, Decimal("40")) == 600
    assert apply_slippage(999, Decimal("0")) == 999


def test_trade_config_validation() -> None:
    with pytest.raises(ValueError):
        _config(base_amount=Decimal("0"))
    with pytest.raises(ValueError):
        _config(buy_delay_range_min=(35, 15))
    assert _config(min_token_balance=None).token_balance_floor == Decimal("0.0001")


def test_describe_mentions_strategy() -> None:
    assert "volume" in describe().lower()

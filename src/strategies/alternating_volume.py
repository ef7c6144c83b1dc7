"""Alternating buy/sell volume strategy for constant-product AMM routers."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from amm_client.units import (
    MAX_UINT256,
    from_base_units,
    from_wei,
    gwei_to_wei,
    to_base_units,
    to_wei,
)
from engine.errors import (
    PersistenceError,
    TransientNetworkError,
    UnconfirmedTransactionError,
)
from engine.ledger_client import LedgerClient, SwapKind, SwapReceipt
from engine.retry import RetryConfig, RetryExecutor
from engine.safeguards import SafeguardEngine
from engine.scheduler import WakeHandle, WakeScheduler
from engine.state import ScheduledTrade, ScheduleStore, TradeAction, TradeState
from utils.logging_config import TradeEvent
from utils.notifier import Notifier, TradeReport

LOGGER = logging.getLogger("amm_volume_bot.strategy.alternating_volume")

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class TradeConfig:
    wallet_address: str
    token_address: str
    weth_address: str
    router_address: str
    base_amount: Decimal
    min_amount: Decimal = Decimal("0.0001")
    min_token_balance: Decimal | None = None
    token_decimals: int = 18
    buy_splits: int = 3
    buy_base_percentage: Decimal = Decimal("0.018")
    buy_delay_range_min: tuple[int, int] = (15, 35)
    sell_size_multiplier: Decimal = Decimal("1.0")
    sell_delay_range_min: tuple[int, int] = (15, 35)
    slippage_percent: Decimal = Decimal("40")
    gas_limit: int = 500_000
    gas_reserve_multiplier: int = 3
    retry_cooldown_min: int = 5
    bootstrap_multiplier: Decimal = Decimal("3")
    amount_jitter_pct: Decimal = Decimal("0.05")
    sell_balance_cap: Decimal = Decimal("0.95")
    deadline_min: int = 20
    fee_budget_pct: Decimal = Decimal("30")
    min_fee_gwei: Decimal = Decimal("1")

    def __post_init__(self) -> None:
        if self.base_amount <= 0:
            raise ValueError("base_amount must be positive")
        if self.buy_splits < 1:
            raise ValueError("buy_splits must be >= 1")
        for name in ("buy_delay_range_min", "sell_delay_range_min"):
            low, high = getattr(self, name)
            if low < 0 or high < low:
                raise ValueError(f"{name} must be an ordered, non-negative range")
        if not 0 <= self.slippage_percent < 100:
            raise ValueError("slippage_percent must be in [0, 100)")
        if not 0 < self.sell_balance_cap <= 1:
            raise ValueError("sell_balance_cap must be in (0, 1]")

    @property
    def token_balance_floor(self) -> Decimal:
        if self.min_token_balance is None:
            return self.min_amount
        return self.min_token_balance

    @property
    def buy_path(self) -> list[str]:
        return [self.weth_address, self.token_address]

    @property
    def sell_path(self) -> list[str]:
        return [self.token_address, self.weth_address]


class OrchestratorPhase(str, Enum):
    IDLE = "idle"
    BUY_SEQUENCE = "buy_sequence"
    AWAITING_SELL_WINDOW = "awaiting_sell_window"
    SELL_SEQUENCE = "sell_sequence"


class SequenceOutcome(str, Enum):
    SUCCESS = "success"
    NOT_YET = "not_yet"
    FAILED = "failed"


@dataclass
class SequenceResult:
    action: TradeAction
    outcome: SequenceOutcome
    state: TradeState
    amounts: list[Decimal] = field(default_factory=list)
    tx_hashes: list[str] = field(default_factory=list)
    wake_at: datetime | None = None
    error: str | None = None


def select_fee_rate(
    network_fee: int,
    balance: int,
    gas_limit: int,
    fee_budget_pct: Decimal,
    min_fee_gwei: Decimal,
) -> int:
    """Cap the network fee at a share of the balance, with a gwei floor."""
    budget = int(Decimal(balance) * fee_budget_pct / Decimal(100)) // gas_limit
    return max(min(network_fee, budget), gwei_to_wei(min_fee_gwei))


def apply_slippage(quoted_out: int, slippage_percent: Decimal) -> int:
    return int(Decimal(quoted_out) * (Decimal(100) - slippage_percent) / Decimal(100))


class TradeOrchestrator:
    """Alternate buy and sell sequences on a one-shot wake timer.

    A buy sequence spends up to ``buy_splits`` tranches; the following sell
    returns what was bought once the sell window has opened. The schedule is
    persisted after every decision so a restart resumes at the next wake-up.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        safeguards: SafeguardEngine,
        store: ScheduleStore,
        config: TradeConfig,
        *,
        retry_config: RetryConfig | None = None,
        scheduler: WakeScheduler | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: SleepFunc | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.ledger = ledger
        self.safeguards = safeguards
        self.store = store
        self.config = config
        self.retry_config = retry_config or RetryConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.scheduler = scheduler or WakeScheduler(clock=self._clock)
        self.notifier = notifier
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self.state = TradeState()
        self.next_trade_at: datetime | None = None
        self._phase = OrchestratorPhase.IDLE
        self._handle: WakeHandle | None = None
        self._lock = asyncio.Lock()
        self._notify_tasks: set[asyncio.Task] = set()

    @property
    def phase(self) -> OrchestratorPhase:
        return self._phase

    async def start(self) -> WakeHandle:
        """Restore the persisted schedule, or arm an immediate first wake-up."""
        record: ScheduledTrade | None = None
        try:
            record = self.store.load()
        except PersistenceError as exc:
            LOGGER.error("Ignoring unreadable schedule record: %s", exc)
        if record is None:
            LOGGER.info("No schedule record found; starting a fresh cycle")
            return self._arm(self._clock())
        self.state = record.to_state()
        if self.state.last_action == TradeAction.BUY:
            self._phase = OrchestratorPhase.AWAITING_SELL_WINDOW
        LOGGER.info(
            "Restored schedule: next trade at %s, last action %s, %s trades",
            record.next_trade_at.isoformat(),
            self.state.last_action.value,
            self.state.trade_count,
        )
        return self._arm(record.next_trade_at)

    def stop(self) -> None:
        """Cancel the pending wake-up and any report still being delivered."""
        self.scheduler.cancel_all()
        self._handle = None
        for task in list(self._notify_tasks):
            task.cancel()

    async def aclose(self) -> None:
        """Stop, then wait for cancelled report tasks so none outlive the ledger."""
        self.stop()
        pending = list(self._notify_tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def wake(self) -> None:
        """Run one state-machine step, then persist and arm the next wake-up."""
        async with self._lock:
            previous_at = self.next_trade_at
            try:
                result = await self._run_cycle(self.state)
            except Exception as exc:
                LOGGER.exception(
                    "Trade cycle failed",
                    extra={"event": TradeEvent.TRADE_FAILED.value},
                )
                result = SequenceResult(
                    action=self._next_action(self.state),
                    outcome=SequenceOutcome.FAILED,
                    state=self.state,
                    error=str(exc),
                )

            now = self._clock()
            if result.outcome == SequenceOutcome.SUCCESS:
                self.state = result.state
                low, high = self._delay_range(result.action)
                next_at = now + timedelta(minutes=self._rng.randint(low, high))
                self._phase = OrchestratorPhase.IDLE
            elif result.outcome == SequenceOutcome.NOT_YET:
                next_at = result.wake_at or now
                self._phase = OrchestratorPhase.AWAITING_SELL_WINDOW
            else:
                next_at = now + timedelta(minutes=self.config.retry_cooldown_min)
                self._phase = OrchestratorPhase.IDLE
                LOGGER.warning(
                    "Sequence failed; retrying at %s",
                    next_at.isoformat(),
                    extra={"event": TradeEvent.TRADE_FAILED.value},
                )

            self._persist(next_at)
            self._arm(next_at)
            if result.outcome != SequenceOutcome.NOT_YET:
                self._dispatch_report(result, previous_at, next_at)

    async def _run_cycle(self, state: TradeState) -> SequenceResult:
        bootstrap = await self._ensure_token_inventory(state)
        if bootstrap is not None:
            return bootstrap
        if self._next_action(state) == TradeAction.BUY:
            return await self.run_buy_sequence(state)
        return await self.run_sell_sequence(state)

    @staticmethod
    def _next_action(state: TradeState) -> TradeAction:
        if state.last_action != TradeAction.BUY:
            return TradeAction.BUY
        return TradeAction.SELL

    def _delay_range(self, action: TradeAction) -> tuple[int, int]:
        if action == TradeAction.SELL:
            return self.config.sell_delay_range_min
        return self.config.buy_delay_range_min

    async def _ensure_token_inventory(self, state: TradeState) -> SequenceResult | None:
        """Buy a starting inventory when the wallet holds too few tokens.

        Returns ``None`` when the normal cycle may proceed.
        """
        config = self.config
        raw_balance = await self._call(
            "get_token_balance",
            lambda: self.ledger.get_token_balance(
                config.token_address, config.wallet_address
            ),
        )
        token_balance = from_base_units(raw_balance, config.token_decimals)
        if token_balance >= config.token_balance_floor:
            return None

        amount = config.base_amount * config.bootstrap_multiplier
        LOGGER.info(
            "Token balance %s below %s; buying %s native to bootstrap",
            token_balance,
            config.token_balance_floor,
            amount,
        )
        receipt = await self._buy(amount, check_impact=False)
        if receipt is None or not receipt.succeeded:
            LOGGER.error(
                "Bootstrap buy failed",
                extra={"event": TradeEvent.TRADE_FAILED.value},
            )
            return SequenceResult(
                action=TradeAction.BUY,
                outcome=SequenceOutcome.FAILED,
                state=state,
                error="bootstrap buy failed",
            )
        LOGGER.info(
            "Bootstrap buy confirmed: %s",
            receipt.tx_hash,
            extra={
                "event": TradeEvent.TRADE_EXECUTED.value,
                "tx_hash": receipt.tx_hash,
                "amount": str(amount),
            },
        )
        return None

    async def run_buy_sequence(self, state: TradeState) -> SequenceResult:
        config = self.config
        self._phase = OrchestratorPhase.BUY_SEQUENCE
        result = SequenceResult(
            action=TradeAction.BUY, outcome=SequenceOutcome.FAILED, state=state
        )
        LOGGER.info("Starting buy sequence of %s tranches", config.buy_splits)
        for index in range(config.buy_splits):
            label = f"{index + 1}/{config.buy_splits}"
            try:
                receipt, amount = await self._buy_tranche(label)
            except Exception as exc:
                LOGGER.error(
                    "Buy %s aborted the sequence: %s",
                    label,
                    exc,
                    extra={"event": TradeEvent.TRADE_FAILED.value},
                )
                result.error = str(exc)
                break
            if receipt is None:
                continue
            if not receipt.succeeded:
                LOGGER.error(
                    "Buy %s reverted: %s",
                    label,
                    receipt.tx_hash,
                    extra={
                        "event": TradeEvent.TRADE_FAILED.value,
                        "tx_hash": receipt.tx_hash,
                    },
                )
                continue

            result.state = result.state.record_buy(amount, self._clock())
            result.amounts.append(amount)
            result.tx_hashes.append(receipt.tx_hash)
            LOGGER.info(
                "Buy %s confirmed: %s native in block %s",
                label,
                amount,
                receipt.block_number,
                extra={
                    "event": TradeEvent.TRADE_EXECUTED.value,
                    "tx_hash": receipt.tx_hash,
                    "amount": str(amount),
                },
            )
            if index < config.buy_splits - 1:
                low, high = config.buy_delay_range_min
                delay_min = self._rng.randint(low, high)
                LOGGER.info("Waiting %s minutes before the next buy", delay_min)
                await self._sleep(delay_min * 60)

        LOGGER.info(
            "Buy sequence completed: %s/%s tranches",
            len(result.amounts),
            config.buy_splits,
        )
        if result.amounts:
            result.outcome = SequenceOutcome.SUCCESS
        return result

    async def _buy_tranche(self, label: str) -> tuple[SwapReceipt | None, Decimal]:
        """Return ``(None, amount)`` when the tranche is skipped."""
        config = self.config
        if not await self.safeguards.check_gas_price(self.ledger):
            LOGGER.warning("Buy %s skipped: gas price too high", label)
            return None, Decimal("0")
        if not await self._check_market_price():
            LOGGER.warning("Buy %s skipped: price deviation", label)
            return None, Decimal("0")

        amount = config.base_amount * config.buy_base_percentage * self._jitter()
        balance = await self._call(
            "get_native_balance",
            lambda: self.ledger.get_native_balance(config.wallet_address),
        )
        network_fee = await self._call("get_fee_rate", self.ledger.get_fee_rate)
        reserve = network_fee * config.gas_limit * config.gas_reserve_multiplier
        max_spendable = from_wei(max(balance - reserve, 0))
        if max_spendable < config.min_amount:
            LOGGER.warning(
                "Buy %s skipped: spendable %s below minimum %s",
                label,
                max_spendable,
                config.min_amount,
            )
            return None, Decimal("0")
        amount = max(min(amount, max_spendable), config.min_amount)
        LOGGER.info("Executing buy %s: %s native", label, amount)
        receipt = await self._buy(amount, balance=balance, network_fee=network_fee)
        return receipt, amount

    async def _buy(
        self,
        amount: Decimal,
        *,
        balance: int | None = None,
        network_fee: int | None = None,
        check_impact: bool = True,
    ) -> SwapReceipt | None:
        config = self.config
        amount_in = to_wei(amount)
        quote = await self._call(
            "quote_swap", lambda: self.ledger.quote_swap(amount_in, config.buy_path)
        )
        tokens_out = quote[-1]
        if tokens_out <= 0:
            LOGGER.warning("Router quoted no output for %s native", amount)
            return None
        if check_impact and not await self._check_price_impact(
            from_wei(amount_in), from_base_units(tokens_out, config.token_decimals)
        ):
            return None
        fee_rate = await self._submission_fee(balance, network_fee)
        amount_out_min = apply_slippage(tokens_out, config.slippage_percent)
        deadline = self._deadline()
        return await self._swap(
            "swap_exact_eth_for_tokens",
            SwapKind.NATIVE_FOR_TOKENS,
            amount_in,
            amount_out_min,
            config.buy_path,
            deadline,
            fee_rate,
        )

    async def run_sell_sequence(self, state: TradeState) -> SequenceResult:
        config = self.config
        result = SequenceResult(
            action=TradeAction.SELL, outcome=SequenceOutcome.FAILED, state=state
        )
        if state.last_buy_time is None:
            LOGGER.error("No previous buy recorded; nothing to sell")
            result.error = "no previous buy recorded"
            return result

        window_opens = state.last_buy_time + timedelta(
            minutes=config.sell_delay_range_min[0]
        )
        if self._clock() < window_opens:
            LOGGER.info("Sell window opens at %s", window_opens.isoformat())
            result.outcome = SequenceOutcome.NOT_YET
            result.wake_at = window_opens
            return result

        self._phase = OrchestratorPhase.SELL_SEQUENCE
        LOGGER.info("Starting sell sequence")
        if not await self.safeguards.check_gas_price(self.ledger):
            LOGGER.error("Sell cancelled: gas price too high")
            result.error = "gas price too high"
            return result
        price = await self._quote_unit_price()
        if price is None or not self.safeguards.check_price_deviation(price):
            LOGGER.error("Sell cancelled: price deviation")
            result.error = "price deviation"
            return result

        raw_balance = await self._call(
            "get_token_balance",
            lambda: self.ledger.get_token_balance(
                config.token_address, config.wallet_address
            ),
        )
        token_balance = from_base_units(raw_balance, config.token_decimals)
        native_target = state.last_buy_total * config.sell_size_multiplier
        amount = native_target * self._jitter() / price
        amount = min(amount, token_balance * config.sell_balance_cap)
        amount_in = to_base_units(amount, config.token_decimals)
        if amount_in <= 0:
            LOGGER.error("Sell cancelled: nothing to sell (balance %s)", token_balance)
            result.error = "nothing to sell"
            return result

        LOGGER.info("Attempting to sell %s tokens", amount)
        if not await self._ensure_allowance(amount_in):
            result.error = "router approval failed"
            return result

        quote = await self._call(
            "quote_swap", lambda: self.ledger.quote_swap(amount_in, config.sell_path)
        )
        native_out = quote[-1]
        if native_out <= 0 or not await self._check_price_impact(
            from_wei(native_out), from_base_units(amount_in, config.token_decimals)
        ):
            LOGGER.error("Sell cancelled: price impact")
            result.error = "price impact"
            return result

        fee_rate = await self._submission_fee(None, None)
        deadline = self._deadline()
        receipt = await self._swap(
            "swap_exact_tokens_for_eth",
            SwapKind.TOKENS_FOR_NATIVE,
            amount_in,
            apply_slippage(native_out, config.slippage_percent),
            config.sell_path,
            deadline,
            fee_rate,
        )
        if not receipt.succeeded:
            LOGGER.error(
                "Sell reverted: %s",
                receipt.tx_hash,
                extra={
                    "event": TradeEvent.TRADE_FAILED.value,
                    "tx_hash": receipt.tx_hash,
                },
            )
            result.error = f"sell reverted: {receipt.tx_hash}"
            return result

        elapsed = self._clock() - state.last_buy_time
        LOGGER.info(
            "Sell confirmed: %s tokens at %s, %s minutes after the last buy",
            amount,
            price,
            int(elapsed.total_seconds() // 60),
            extra={
                "event": TradeEvent.TRADE_EXECUTED.value,
                "tx_hash": receipt.tx_hash,
                "amount": str(amount),
                "price": str(price),
            },
        )
        result.state = state.record_sell()
        result.amounts.append(amount)
        result.tx_hashes.append(receipt.tx_hash)
        result.outcome = SequenceOutcome.SUCCESS
        return result

    async def _swap(
        self,
        name: str,
        kind: SwapKind,
        amount_in: int,
        amount_out_min: int,
        path: list[str],
        deadline: int,
        fee_rate: int,
    ) -> SwapReceipt:
        """Send a swap at most once, then poll the same hash for its receipt.

        Only the pre-broadcast work is retried. Once a hash exists, a receipt
        that never arrives raises ``UnconfirmedTransactionError`` instead of
        sending the swap again.
        """
        config = self.config
        tx_hash = await self._call(
            name,
            lambda: self.ledger.send_swap(
                kind,
                amount_in,
                amount_out_min,
                path,
                config.wallet_address,
                deadline,
                fee_rate,
            ),
        )
        try:
            return await self._call(
                "wait_for_receipt", lambda: self.ledger.wait_for_receipt(tx_hash)
            )
        except TransientNetworkError as exc:
            LOGGER.error(
                "Swap %s sent but not confirmed: %s",
                tx_hash,
                exc,
                extra={"event": TradeEvent.TRADE_FAILED.value, "tx_hash": tx_hash},
            )
            raise UnconfirmedTransactionError(
                f"{name} {tx_hash} was sent but not confirmed: {exc}",
                {"tx_hash": tx_hash},
            ) from exc

    async def _ensure_allowance(self, amount_in: int) -> bool:
        config = self.config
        allowance = await self._call(
            "get_allowance",
            lambda: self.ledger.get_allowance(
                config.wallet_address, config.router_address
            ),
        )
        if allowance >= amount_in:
            return True
        LOGGER.info("Router allowance %s below %s; approving", allowance, amount_in)
        receipt = await self._call(
            "approve",
            lambda: self.ledger.approve_allowance(config.router_address, MAX_UINT256),
        )
        if not receipt.succeeded:
            LOGGER.error("Approval reverted: %s", receipt.tx_hash)
        return receipt.succeeded

    async def _quote_unit_price(self) -> Decimal | None:
        """Native price of one whole token, or ``None`` if it cannot be quoted."""
        config = self.config
        one_token = to_base_units(1, config.token_decimals)
        try:
            quote = await self._call(
                "quote_swap",
                lambda: self.ledger.quote_swap(one_token, config.sell_path),
            )
        except Exception as exc:
            LOGGER.error(
                "Unit price quote failed: %s",
                exc,
                extra={"event": TradeEvent.PRICE_ERROR.value},
            )
            return None
        price = from_wei(quote[-1]) if quote else Decimal("0")
        if price <= 0:
            LOGGER.error(
                "Unit price quote returned %s",
                price,
                extra={"event": TradeEvent.PRICE_ERROR.value},
            )
            return None
        LOGGER.info(
            "Current token price: %s",
            price,
            extra={"event": TradeEvent.PRICE_CHECK.value, "price": str(price)},
        )
        return price

    async def _check_market_price(self) -> bool:
        price = await self._quote_unit_price()
        if price is None:
            return False
        return self.safeguards.check_price_deviation(price)

    async def _check_price_impact(self, native: Decimal, tokens: Decimal) -> bool:
        """Compare the per-token price of the actual trade to a one-token quote."""
        if tokens <= 0:
            return False
        unit_price = await self._quote_unit_price()
        if unit_price is None:
            return False
        return self.safeguards.check_slippage(unit_price, native / tokens)

    async def _submission_fee(
        self, balance: int | None, network_fee: int | None
    ) -> int:
        config = self.config
        if balance is None:
            balance = await self._call(
                "get_native_balance",
                lambda: self.ledger.get_native_balance(config.wallet_address),
            )
        if network_fee is None:
            network_fee = await self._call("get_fee_rate", self.ledger.get_fee_rate)
        return select_fee_rate(
            network_fee,
            balance,
            config.gas_limit,
            config.fee_budget_pct,
            config.min_fee_gwei,
        )

    def _deadline(self) -> int:
        expires = self._clock() + timedelta(minutes=self.config.deadline_min)
        return int(expires.timestamp())

    def _jitter(self) -> Decimal:
        spread = Decimal(str(self._rng.random())) - Decimal("0.5")
        return Decimal(1) + spread * 2 * self.config.amount_jitter_pct

    async def _call(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        executor = RetryExecutor(
            self.retry_config, sleep=self._sleep, rng=self._rng, name=name
        )
        return await executor.execute(operation)

    def _persist(self, next_at: datetime) -> None:
        self.next_trade_at = next_at
        try:
            self.store.save(ScheduledTrade.from_state(self.state, next_at))
        except PersistenceError as exc:
            LOGGER.error("Failed to persist schedule, keeping it in memory: %s", exc)

    def _arm(self, when: datetime) -> WakeHandle:
        if self._handle is not None:
            self._handle.cancel()
        self.next_trade_at = when
        self._handle = self.scheduler.schedule_at(when, self.wake)
        LOGGER.info("Next trade scheduled for %s", when.isoformat())
        return self._handle

    def _dispatch_report(
        self,
        result: SequenceResult,
        previous_at: datetime | None,
        next_at: datetime,
    ) -> None:
        if self.notifier is None:
            return
        report = TradeReport(
            action=result.action.value,
            success=result.outcome == SequenceOutcome.SUCCESS,
            amounts=list(result.amounts),
            tx_hashes=list(result.tx_hashes),
            trade_count=self.state.trade_count,
            previous_trade_at=previous_at,
            next_trade_at=next_at,
            error=result.error,
        )
        task = asyncio.get_running_loop().create_task(self._send_report(report))
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    async def _send_report(self, report: TradeReport) -> None:
        try:
            if report.native_balance is None:
                balance = await self.ledger.get_native_balance(
                    self.config.wallet_address
                )
                report.native_balance = from_wei(balance)
        except Exception as exc:
            LOGGER.warning("Could not read balance for report: %s", exc)
        try:
            await self.notifier.send(report)
        except Exception as exc:
            LOGGER.error("Failed to deliver trade report: %s", exc)

    def describe_state(self) -> str:
        return (
            f"phase={self._phase.value} last_action={self.state.last_action.value} "
            f"trades={self.state.trade_count} "
            f"next={self.next_trade_at.isoformat() if self.next_trade_at else '-'}"
        )


def describe() -> str:
    return (
        "Alternating AMM volume: split buys followed by a matching sell, "
        "gated by gas, price-deviation and price-impact safeguards."
    )

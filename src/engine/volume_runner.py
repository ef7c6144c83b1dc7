"""Runner utilities for the alternating volume strategy."""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from pathlib import Path

from engine.client_factory import build_ledger_client
from engine.ledger_client import LedgerClient
from engine.retry import RetryConfig
from engine.safeguards import SafeguardConfig, SafeguardEngine
from engine.state import ScheduleStore
from strategies.alternating_volume import TradeConfig, TradeOrchestrator
from utils.notifier import build_notifier

LOGGER = logging.getLogger("amm_volume_bot.engine.volume_runner")

DEFAULT_STATE_PATH = "state/next.json"


def _decimal(config: dict, key: str, default: str) -> Decimal:
    return Decimal(str(config.get(key, default)))


def _delay_range(config: dict, key: str) -> tuple[int, int]:
    low, high = config.get(key, (15, 35))
    return int(low), int(high)


def build_trade_config(config: dict) -> TradeConfig:
    min_token_balance = config.get("min_token_balance")
    return TradeConfig(
        wallet_address=config["wallet_address"],
        token_address=config["token_address"],
        weth_address=config["weth_address"],
        router_address=config["router_address"],
        base_amount=Decimal(str(config["base_amount"])),
        min_amount=_decimal(config, "min_amount", "0.0001"),
        min_token_balance=(
            Decimal(str(min_token_balance)) if min_token_balance is not None else None
        ),
        token_decimals=int(config.get("token_decimals", 18)),
        buy_splits=int(config.get("buy_splits", 3)),
        buy_base_percentage=_decimal(config, "buy_base_percentage", "0.018"),
        buy_delay_range_min=_delay_range(config, "buy_delay_range_min"),
        sell_size_multiplier=_decimal(config, "sell_size_multiplier", "1.0"),
        sell_delay_range_min=_delay_range(config, "sell_delay_range_min"),
        slippage_percent=_decimal(config, "slippage_percent", "40"),
        gas_limit=int(config.get("gas_limit", 500_000)),
        gas_reserve_multiplier=int(config.get("gas_reserve_multiplier", 3)),
        retry_cooldown_min=int(config.get("retry_cooldown_min", 5)),
        bootstrap_multiplier=_decimal(config, "bootstrap_multiplier", "3"),
        amount_jitter_pct=_decimal(config, "amount_jitter_pct", "0.05"),
        sell_balance_cap=_decimal(config, "sell_balance_cap", "0.95"),
        deadline_min=int(config.get("deadline_min", 20)),
        fee_budget_pct=_decimal(config, "fee_budget_pct", "30"),
        min_fee_gwei=_decimal(config, "min_fee_gwei", "1"),
    )


def build_safeguard_config(config: dict) -> SafeguardConfig:
    return SafeguardConfig(
        max_slippage_percent=_decimal(config, "max_slippage_percent", "2.0"),
        max_price_deviation_percent=_decimal(
            config, "max_price_deviation_percent", "5.0"
        ),
        max_gas_price_gwei=_decimal(config, "max_gas_price_gwei", "100"),
    )


def build_retry_config(config: dict) -> RetryConfig:
    section = config.get("retry") or {}
    return RetryConfig(
        max_attempts=int(section.get("max_attempts", 5)),
        initial_delay=float(section.get("initial_delay_sec", 1.0)),
        max_delay=float(section.get("max_delay_sec", 30.0)),
        backoff_factor=float(section.get("backoff_factor", 2.0)),
        jitter_factor=float(section.get("jitter_factor", 0.1)),
    )


def resolve_state_path(config: dict, override: str | Path | None = None) -> Path:
    if override:
        return Path(override).expanduser()
    return Path(config.get("state_path", DEFAULT_STATE_PATH)).expanduser()


def build_orchestrator(
    config: dict,
    state_path: Path,
    *,
    ledger: LedgerClient | None = None,
) -> TradeOrchestrator:
    return TradeOrchestrator(
        ledger or build_ledger_client(config),
        SafeguardEngine(build_safeguard_config(config)),
        ScheduleStore(state_path),
        build_trade_config(config),
        retry_config=build_retry_config(config),
        notifier=build_notifier(config),
    )


async def run_volume_bot_async(
    config: dict,
    state_path: Path,
    *,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Start the orchestrator and keep the event loop alive until stopped."""
    ledger = build_ledger_client(config)
    orchestrator = build_orchestrator(config, state_path, ledger=ledger)
    stop_event = stop_event or asyncio.Event()
    try:
        await orchestrator.start()
        LOGGER.info(
            "Volume bot running. Press Ctrl+C to stop. token=%s state=%s",
            orchestrator.config.token_address,
            state_path,
        )
        await stop_event.wait()
    finally:
        await orchestrator.aclose()
        await ledger.close()


def run_volume_bot(config: dict, state_path: Path) -> None:
    try:
        asyncio.run(run_volume_bot_async(config, state_path))
    except KeyboardInterrupt:
        LOGGER.info("Volume bot stopped")

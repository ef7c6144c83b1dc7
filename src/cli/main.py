"""CLI entry point for the AMM volume bot."""

from __future__ import annotations

import argparse
import asyncio
import importlib.util
import json
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any

from amm_client.units import MAX_UINT256, from_base_units, from_wei
from engine.client_factory import build_ledger_client
from engine.errors import PersistenceError, TradeError
from engine.state import ScheduleStore
from engine.volume_runner import resolve_state_path, run_volume_bot
from strategies import alternating_volume_describe
from utils.config_validator import ConfigValidationError, validate_config
from utils.logging_config import setup_logging

LOGGER = logging.getLogger("amm_volume_bot.cli")

SUPPORTED_FORMATS = (".json", ".toml", ".yaml", ".yml")
_ENV_PLACEHOLDER = re.compile(r"^\$\{([A-Za-z0-9_]+)\}$")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="AMM volume bot CLI")
    parser.add_argument("--version", action="version", version="amm-volume-bot 0.1.0")
    subparsers = parser.add_subparsers(dest="command", required=True)

    start_parser = subparsers.add_parser(
        "start", help="Start the alternating volume bot with a config file."
    )
    _add_config_argument(start_parser)
    start_parser.add_argument(
        "--state-path",
        help="Optional path to the schedule record (defaults to state_path in config).",
    )
    start_parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    )
    start_parser.add_argument("--log-file", help="Optional daily-rotated log file.")
    start_parser.add_argument(
        "--structured",
        action="store_true",
        help="Emit JSON log lines on the console.",
    )
    start_parser.set_defaults(handler=run_start)

    status_parser = subparsers.add_parser(
        "status", help="Show the persisted trade schedule."
    )
    _add_config_argument(status_parser)
    status_parser.add_argument("--state-path", help="Optional schedule record path.")
    status_parser.set_defaults(handler=run_status)

    balance_parser = subparsers.add_parser(
        "balance", help="Show native and token balances of the wallet."
    )
    _add_config_argument(balance_parser)
    balance_parser.set_defaults(handler=run_balance)

    token_parser = subparsers.add_parser(
        "token-info", help="Show token balance and router allowance."
    )
    _add_config_argument(token_parser)
    token_parser.set_defaults(handler=run_token_info)

    approve_parser = subparsers.add_parser(
        "approve", help="Grant the router an unlimited token allowance."
    )
    _add_config_argument(approve_parser)
    approve_parser.set_defaults(handler=run_approve)
    return parser


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config", required=True, help="Path to JSON/TOML/YAML config file."
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if hasattr(args, "handler"):
        return args.handler(args)
    parser.print_help()
    return 1


def run_start(args: argparse.Namespace) -> int:
    setup_logging(
        level=args.log_level,
        structured=args.structured,
        sanitize=True,
        log_file=args.log_file,
    )
    try:
        config_path = Path(args.config).expanduser()
        config = load_config(config_path)
        try:
            validate_config(config, "volume")
        except ConfigValidationError as exc:
            LOGGER.error("Configuration validation failed: %s", exc)
            return 2
        state_path = resolve_state_path(config, args.state_path)

        LOGGER.info("Starting AMM volume bot")
        LOGGER.info("Strategy description: %s", alternating_volume_describe())
        LOGGER.info("Config file: %s", config_path)
        LOGGER.info("State file: %s", state_path)
        LOGGER.info("Loaded config keys: %s", sorted(config.keys()))
        run_volume_bot(config, state_path)
    except (FileNotFoundError, RuntimeError, ValueError) as exc:
        LOGGER.error(str(exc))
        return 2
    except Exception as exc:  # pragma: no cover - safeguard for unexpected issues.
        LOGGER.exception("Unexpected error during startup: %s", exc)
        return 3
    return 0


def run_status(args: argparse.Namespace) -> int:
    configure_logging("WARNING")
    try:
        config = load_config(Path(args.config).expanduser())
        state_path = resolve_state_path(config, args.state_path)
        record = ScheduleStore(state_path).load()
    except (FileNotFoundError, ValueError, PersistenceError) as exc:
        LOGGER.error(str(exc))
        return 2
    if record is None:
        print(f"No schedule recorded at {state_path}")
        return 0
    print(json.dumps(record.to_payload(), indent=2, sort_keys=True))
    return 0


def run_balance(args: argparse.Namespace) -> int:
    return _run_ledger_command(args, _print_balances)


def run_token_info(args: argparse.Namespace) -> int:
    return _run_ledger_command(args, _print_token_info)


def run_approve(args: argparse.Namespace) -> int:
    return _run_ledger_command(args, _approve_router)


def _run_ledger_command(args: argparse.Namespace, command) -> int:
    configure_logging("INFO")
    try:
        config = load_config(Path(args.config).expanduser())
        validate_config(config, "volume")
        asyncio.run(_with_ledger(config, command))
    except (FileNotFoundError, ValueError, TradeError) as exc:
        LOGGER.error(str(exc))
        return 2
    except Exception as exc:  # pragma: no cover - safeguard for unexpected issues.
        LOGGER.exception("Unexpected error: %s", exc)
        return 3
    return 0


async def _with_ledger(config: dict[str, Any], command) -> None:
    ledger = build_ledger_client(config)
    try:
        await command(ledger, config)
    finally:
        await ledger.close()


async def _print_balances(ledger, config: dict[str, Any]) -> None:
    wallet = config["wallet_address"]
    native = await ledger.get_native_balance(wallet)
    tokens = await ledger.get_token_balance(config["token_address"], wallet)
    decimals = int(config.get("token_decimals", 18))
    symbol = config.get("native_symbol", "BNB")
    print(f"Wallet: {wallet}")
    print(f"{symbol} balance: {from_wei(native)}")
    print(f"Token balance: {from_base_units(tokens, decimals)}")


async def _print_token_info(ledger, config: dict[str, Any]) -> None:
    wallet = config["wallet_address"]
    decimals = await ledger.get_token_decimals(config["token_address"])
    balance = await ledger.get_token_balance(config["token_address"], wallet)
    allowance = await ledger.get_allowance(wallet, config["router_address"])
    print(f"Token: {config['token_address']}")
    print(f"Decimals: {decimals}")
    print(f"Balance: {from_base_units(balance, decimals)}")
    if allowance == MAX_UINT256:
        print("Router allowance: unlimited")
    else:
        print(f"Router allowance: {from_base_units(allowance, decimals)}")


async def _approve_router(ledger, config: dict[str, Any]) -> None:
    receipt = await ledger.approve_allowance(config["router_address"], MAX_UINT256)
    explorer = config.get("explorer_tx_url", "https://bscscan.com/tx/")
    if not receipt.succeeded:
        raise ValueError(f"Approval reverted: {explorer}{receipt.tx_hash}")
    print(f"Approval confirmed in block {receipt.block_number}: {explorer}{receipt.tx_hash}")


def configure_logging(level: str) -> None:
    """Configure logging with sanitization and proper formatting."""
    setup_logging(level=level, sanitize=True, structured=False)


def expand_env_placeholders(value: Any) -> Any:
    """Replace ``"${NAME}"`` strings with the value of environment variable NAME."""
    if isinstance(value, dict):
        return {key: expand_env_placeholders(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env_placeholders(item) for item in value]
    if isinstance(value, str):
        match = _ENV_PLACEHOLDER.match(value.strip())
        if match:
            return os.getenv(match.group(1))
    return value


def load_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}. Ensure the path is correct and readable."
        )
    suffix = config_path.suffix.lower()
    if suffix not in SUPPORTED_FORMATS:
        supported = ", ".join(SUPPORTED_FORMATS)
        raise ValueError(
            f"Unsupported config format '{suffix}'. Supported formats: {supported}."
        )
    try:
        if suffix == ".json":
            data = json.loads(config_path.read_text(encoding="utf-8"))
        elif suffix == ".toml":
            data = load_toml(config_path)
        else:
            data = load_yaml(config_path)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config file {config_path}: {exc}. Validate the file format."
        ) from exc
    except (RuntimeError, ValueError):
        raise
    except Exception as exc:
        raise RuntimeError(
            f"Failed to parse config file {config_path}: {exc}."
        ) from exc
    if not isinstance(data, dict):
        raise ValueError(
            f"Config file {config_path} must contain a JSON/TOML/YAML object mapping."
        )
    return expand_env_placeholders(data)


def load_toml(config_path: Path) -> dict[str, Any]:
    if sys.version_info >= (3, 11):
        import tomllib  # type: ignore[attr-defined]

        return tomllib.loads(config_path.read_text(encoding="utf-8"))
    if importlib.util.find_spec("tomli") is None:
        raise RuntimeError(
            "TOML config parsing requires Python 3.11+ or the 'tomli' package. Install tomli or use JSON/YAML."
        )
    import tomli  # type: ignore[import-not-found]

    return tomli.loads(config_path.read_text(encoding="utf-8"))


def load_yaml(config_path: Path) -> dict[str, Any]:
    import yaml

    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(
            f"YAML config file {config_path} must contain a mapping at the top level."
        )
    return data


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/env python3
"""
AMM volume bot - alternating split buys and matching sells on a V2 router.

Usage:
    python bots/run_volume_bot.py examples/volume_bot.yml
    python bots/run_volume_bot.py examples/volume_bot.yml --log-file logs/trades.log
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))


def main() -> int:
    """Main entry point."""
    from cli.main import load_config
    from engine.volume_runner import resolve_state_path, run_volume_bot
    from utils.config_validator import ConfigValidationError, validate_config
    from utils.logging_config import setup_logging

    parser = argparse.ArgumentParser(description="AMM volume bot")
    parser.add_argument("config", help="Path to configuration file (YAML)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument("--log-file", help="Optional daily-rotated log file")
    parser.add_argument(
        "--structured", action="store_true", help="JSON console logging"
    )
    args = parser.parse_args()

    setup_logging(
        level=args.log_level, structured=args.structured, log_file=args.log_file
    )

    config = load_config(Path(args.config))
    try:
        validate_config(config, "volume")
    except ConfigValidationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    state_path = resolve_state_path(config)
    state_path.parent.mkdir(parents=True, exist_ok=True)
    run_volume_bot(config, state_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

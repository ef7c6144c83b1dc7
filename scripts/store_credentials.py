#!/usr/bin/env python3
"""Store notifier secrets (Telegram bot token, SMTP password) in the OS keychain."""

from __future__ import annotations

import argparse
import getpass
import os
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))


def build_parser() -> argparse.ArgumentParser:
    from utils.credentials import DEFAULT_SERVICE_NAME, SECRETS

    parser = argparse.ArgumentParser(
        description="Store AMM volume bot notifier secrets in the OS keychain."
    )
    parser.add_argument(
        "secret",
        choices=sorted(SECRETS),
        help="Which secret to store: the Telegram bot token or the SMTP password.",
    )
    parser.add_argument(
        "--service-name",
        default=DEFAULT_SERVICE_NAME,
        help=f"Keyring service name (default: {DEFAULT_SERVICE_NAME}).",
    )
    parser.add_argument(
        "--value",
        help="Secret value (defaults to its environment variable or a prompt).",
    )
    return parser


def main() -> int:
    from utils.credentials import SECRETS, store_secret

    parser = build_parser()
    args = parser.parse_args()
    spec = SECRETS[args.secret]
    value = args.value or os.getenv(spec.env_var)
    if not value:
        value = getpass.getpass(f"Enter {spec.keyring_username}: ")

    store_secret(spec, value, service_name=args.service_name)
    print(
        f"✅ Stored {spec.keyring_username} in keychain for service '{args.service_name}'.",
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

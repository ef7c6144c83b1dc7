"""Secret loading helpers for notifier credentials."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

import keyring
from keyring.errors import KeyringError

DEFAULT_SERVICE_NAME = "amm-volume-bot"
_ENV_PATTERN = re.compile(r"^\$\{([A-Z0-9_]+)\}$")


@dataclass(frozen=True)
class SecretSpec:
    """Where a secret may come from besides the config file."""

    env_var: str
    keyring_username: str


TELEGRAM_TOKEN = SecretSpec("AMM_BOT_TELEGRAM_TOKEN", "telegram_bot_token")
SMTP_PASSWORD = SecretSpec("AMM_BOT_SMTP_PASSWORD", "smtp_password")
SECRETS = {"telegram": TELEGRAM_TOKEN, "email": SMTP_PASSWORD}


def load_secret(
    spec: SecretSpec,
    config_value: object = None,
    *,
    service_name: str = DEFAULT_SERVICE_NAME,
) -> str | None:
    """Load a secret from config, env vars, or keyring in order."""
    value = resolve_value(config_value)
    if not value:
        value = _clean_value(os.getenv(spec.env_var))
    if not value:
        value = _get_keyring_value(service_name, spec.keyring_username)
    return value


def store_secret(
    spec: SecretSpec,
    value: str,
    *,
    service_name: str = DEFAULT_SERVICE_NAME,
) -> None:
    """Store a secret in the OS keychain via keyring."""
    cleaned = _clean_value(value)
    if not cleaned:
        raise ValueError(f"{spec.keyring_username} must be a non-empty string.")
    try:
        keyring.set_password(service_name, spec.keyring_username, cleaned)
    except KeyringError as exc:
        raise RuntimeError(
            "Failed to store credentials in the OS keychain. "
            "Ensure a keyring backend is available."
        ) from exc


def resolve_value(raw: object) -> str | None:
    """Return a cleaned config value, expanding a ``${ENV_VAR}`` placeholder."""
    if raw is None:
        return None
    if not isinstance(raw, str):
        return _clean_value(str(raw))
    raw = raw.strip()
    if not raw:
        return None
    match = _ENV_PATTERN.match(raw)
    if match:
        return _clean_value(os.getenv(match.group(1)))
    return _clean_value(raw)


def _clean_value(value: str | None) -> str | None:
    if value is None:
        return None
    candidate = value.strip()
    return candidate or None


def _get_keyring_value(service_name: str, username: str) -> str | None:
    try:
        return _clean_value(keyring.get_password(service_name, username))
    except KeyringError as exc:
        raise RuntimeError(
            "Failed to access the OS keychain. "
            "Ensure a keyring backend is available."
        ) from exc

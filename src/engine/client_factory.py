"""
Ledger client factory - the single place that turns config into RPC clients.

The runner, the CLI and the helper scripts all build their clients here so
that timeouts, retries and addresses are read the same way everywhere.
"""

from __future__ import annotations

from typing import Any

from amm_client.constants import (
    DEFAULT_APPROVE_GAS_LIMIT,
    DEFAULT_RECEIPT_POLL_SEC,
    DEFAULT_RECEIPT_TIMEOUT_SEC,
    DEFAULT_RPC_URL,
    DEFAULT_SWAP_GAS_LIMIT,
)
from amm_client.ledger import RpcLedgerClient
from amm_client.rpc import AsyncRpcClient


def build_rpc_client(config: dict[str, Any]) -> AsyncRpcClient:
    """
    Build the JSON-RPC client from config.

    Args:
        config: Configuration dict containing:
            - rpc_url: str (default: public BSC endpoint)
            - rpc_timeout_sec: float (default: 10.0) - Request timeout
            - rpc_retries: int (default: 3) - Max transport retries
            - rpc_backoff_factor: float (default: 0.5) - Backoff multiplier
            - verify_ssl: bool (default: True)
    """
    return AsyncRpcClient(
        config.get("rpc_url", DEFAULT_RPC_URL),
        timeout=float(config.get("rpc_timeout_sec", 10.0)),
        max_retries=int(config.get("rpc_retries", 3)),
        backoff_factor=float(config.get("rpc_backoff_factor", 0.5)),
        verify_ssl=bool(config.get("verify_ssl", True)),
    )


def build_ledger_client(
    config: dict[str, Any], rpc: AsyncRpcClient | None = None
) -> RpcLedgerClient:
    """
    Build the router/token ledger client on top of :func:`build_rpc_client`.

    Example:
        >>> client = build_ledger_client(config)
        >>> balance = await client.get_native_balance(config["wallet_address"])
    """
    return RpcLedgerClient(
        rpc or build_rpc_client(config),
        wallet_address=config["wallet_address"],
        token_address=config["token_address"],
        router_address=config["router_address"],
        swap_gas_limit=int(config.get("gas_limit", DEFAULT_SWAP_GAS_LIMIT)),
        approve_gas_limit=int(
            config.get("approve_gas_limit", DEFAULT_APPROVE_GAS_LIMIT)
        ),
        receipt_timeout_sec=float(
            config.get("receipt_timeout_sec", DEFAULT_RECEIPT_TIMEOUT_SEC)
        ),
        receipt_poll_sec=float(config.get("receipt_poll_sec", DEFAULT_RECEIPT_POLL_SEC)),
    )

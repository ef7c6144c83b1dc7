"""Ledger client adapter for UniswapV2-style routers over JSON-RPC."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Sequence

from amm_client import abi
from amm_client.constants import (
    DEFAULT_APPROVE_GAS_LIMIT,
    DEFAULT_RECEIPT_POLL_SEC,
    DEFAULT_RECEIPT_TIMEOUT_SEC,
    DEFAULT_SWAP_GAS_LIMIT,
    SELECTOR_ALLOWANCE,
    SELECTOR_APPROVE,
    SELECTOR_BALANCE_OF,
    SELECTOR_DECIMALS,
    SELECTOR_GET_AMOUNTS_OUT,
    SELECTOR_SWAP_EXACT_ETH_FOR_TOKENS,
    SELECTOR_SWAP_EXACT_TOKENS_FOR_ETH,
)
from amm_client.rpc import AsyncRpcClient, RpcRateLimitError, RpcTransientError
from amm_client.schemas import TransactionReceiptSchema, parse_quantity
from amm_client.units import from_wei
from engine.errors import (
    FatalFundsError,
    TransientNetworkError,
    UnconfirmedTransactionError,
)
from engine.ledger_client import LedgerClient, SwapKind, SwapReceipt

LOGGER = logging.getLogger("amm_volume_bot.amm_client.ledger")


class RpcLedgerClient(LedgerClient):
    """Read balances and quotes with ``eth_call``; trade with ``eth_sendTransaction``.

    Transactions are sent unsigned from ``wallet_address``; the RPC endpoint
    must hold (or proxy to) the key for that account.
    """

    def __init__(
        self,
        rpc: AsyncRpcClient,
        *,
        wallet_address: str,
        token_address: str,
        router_address: str,
        swap_gas_limit: int = DEFAULT_SWAP_GAS_LIMIT,
        approve_gas_limit: int = DEFAULT_APPROVE_GAS_LIMIT,
        receipt_timeout_sec: float = DEFAULT_RECEIPT_TIMEOUT_SEC,
        receipt_poll_sec: float = DEFAULT_RECEIPT_POLL_SEC,
        monotonic: Callable[[], float] | None = None,
    ) -> None:
        self._rpc = rpc
        self.wallet_address = abi.normalize_address(wallet_address)
        self.token_address = abi.normalize_address(token_address)
        self.router_address = abi.normalize_address(router_address)
        self.swap_gas_limit = swap_gas_limit
        self.approve_gas_limit = approve_gas_limit
        self.receipt_timeout_sec = receipt_timeout_sec
        self.receipt_poll_sec = receipt_poll_sec
        self._monotonic = monotonic or time.monotonic

    async def get_native_balance(self, address: str) -> int:
        result = await self._rpc.call(
            "eth_getBalance", [abi.normalize_address(address), "latest"]
        )
        return _require_quantity(result, "eth_getBalance")

    async def get_token_balance(self, token: str, owner: str) -> int:
        data = abi.encode_call(SELECTOR_BALANCE_OF, owner)
        return abi.decode_uint(await self._eth_call(token, data))

    async def get_token_decimals(self, token: str) -> int:
        data = abi.encode_call(SELECTOR_DECIMALS)
        return abi.decode_uint(await self._eth_call(token, data))

    async def get_fee_rate(self) -> int:
        result = await self._rpc.call("eth_gasPrice", [])
        return _require_quantity(result, "eth_gasPrice")

    async def quote_swap(self, amount_in: int, path: Sequence[str]) -> list[int]:
        data = abi.encode_call(SELECTOR_GET_AMOUNTS_OUT, amount_in, list(path))
        return abi.decode_uint_array(await self._eth_call(self.router_address, data))

    async def get_allowance(self, owner: str, spender: str) -> int:
        data = abi.encode_call(SELECTOR_ALLOWANCE, owner, spender)
        return abi.decode_uint(await self._eth_call(self.token_address, data))

    async def send_swap(
        self,
        kind: SwapKind,
        amount_in: int,
        amount_out_min: int,
        path: Sequence[str],
        recipient: str,
        deadline: int,
        fee_rate: int,
    ) -> str:
        """Broadcast a swap and return its hash without waiting for inclusion."""
        if kind == SwapKind.NATIVE_FOR_TOKENS:
            balance = await self.get_native_balance(self.wallet_address)
            required = amount_in + fee_rate * self.swap_gas_limit
            if balance < required:
                raise FatalFundsError(
                    "insufficient funds for swap + gas: "
                    f"balance={from_wei(balance)} required={from_wei(required)}",
                    {"balance": balance, "required": required},
                )
            data = abi.encode_call(
                SELECTOR_SWAP_EXACT_ETH_FOR_TOKENS,
                amount_out_min,
                list(path),
                recipient,
                deadline,
            )
            value = amount_in
        elif kind == SwapKind.TOKENS_FOR_NATIVE:
            data = abi.encode_call(
                SELECTOR_SWAP_EXACT_TOKENS_FOR_ETH,
                amount_in,
                amount_out_min,
                list(path),
                recipient,
                deadline,
            )
            value = 0
        else:
            raise ValueError(f"Unsupported swap kind: {kind}")

        tx_hash = await self._send_transaction(
            to=self.router_address,
            data=data,
            value=value,
            gas=self.swap_gas_limit,
            gas_price=fee_rate,
        )
        LOGGER.info("Swap transaction sent: %s (%s)", tx_hash, kind.value)
        return tx_hash

    async def submit_swap(
        self,
        kind: SwapKind,
        amount_in: int,
        amount_out_min: int,
        path: Sequence[str],
        recipient: str,
        deadline: int,
        fee_rate: int,
    ) -> SwapReceipt:
        tx_hash = await self.send_swap(
            kind, amount_in, amount_out_min, path, recipient, deadline, fee_rate
        )
        return await self._confirm(tx_hash)

    async def approve_allowance(self, spender: str, amount: int) -> SwapReceipt:
        fee_rate = await self.get_fee_rate()
        data = abi.encode_call(SELECTOR_APPROVE, spender, amount)
        tx_hash = await self._send_transaction(
            to=self.token_address,
            data=data,
            value=0,
            gas=self.approve_gas_limit,
            gas_price=fee_rate,
        )
        LOGGER.info("Approval transaction sent: %s", tx_hash)
        return await self._confirm(tx_hash)

    async def wait_for_receipt(self, tx_hash: str) -> SwapReceipt:
        deadline = self._monotonic() + self.receipt_timeout_sec
        while True:
            result = await self._rpc.call("eth_getTransactionReceipt", [tx_hash])
            if result is not None:
                receipt = TransactionReceiptSchema.model_validate(result)
                return SwapReceipt(
                    status=receipt.status,
                    block_number=receipt.block_number,
                    tx_hash=receipt.transaction_hash,
                )
            if self._monotonic() >= deadline:
                raise RpcTransientError(
                    f"Timed out waiting for receipt of {tx_hash}",
                    {"tx_hash": tx_hash},
                )
            await asyncio.sleep(self.receipt_poll_sec)

    async def close(self) -> None:
        await self._rpc.close()

    async def _confirm(self, tx_hash: str) -> SwapReceipt:
        try:
            return await self.wait_for_receipt(tx_hash)
        except TransientNetworkError as exc:
            raise UnconfirmedTransactionError(
                f"Transaction {tx_hash} was sent but not confirmed: {exc}",
                {"tx_hash": tx_hash},
            ) from exc

    async def _eth_call(self, to: str, data: str) -> str:
        result = await self._rpc.call(
            "eth_call", [{"to": abi.normalize_address(to), "data": data}, "latest"]
        )
        if not isinstance(result, str):
            raise RpcTransientError(f"Unexpected eth_call result: {result!r}")
        return result

    async def _send_transaction(
        self, *, to: str, data: str, value: int, gas: int, gas_price: int
    ) -> str:
        tx: dict[str, Any] = {
            "from": self.wallet_address,
            "to": to,
            "data": data,
            "value": hex(value),
            "gas": hex(gas),
            "gasPrice": hex(gas_price),
        }
        try:
            result = await self._rpc.call("eth_sendTransaction", [tx])
        except RpcRateLimitError:
            # 429 is answered before the node sees the transaction.
            raise
        except RpcTransientError as exc:
            raise UnconfirmedTransactionError(
                f"eth_sendTransaction outcome unknown: {exc}", {"to": to}
            ) from exc
        if not isinstance(result, str):
            raise UnconfirmedTransactionError(
                f"Unexpected eth_sendTransaction result: {result!r}", {"to": to}
            )
        return result


def _require_quantity(result: Any, method: str) -> int:
    try:
        value = parse_quantity(result)
    except ValueError as exc:
        raise RpcTransientError(f"{method} returned {result!r}") from exc
    if value is None:
        raise RpcTransientError(f"{method} returned no result")
    return value

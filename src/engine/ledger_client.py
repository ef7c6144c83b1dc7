"""Ledger client interface consumed by the trade orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol, Sequence


class SwapKind(str, Enum):
    NATIVE_FOR_TOKENS = "native_for_tokens"
    TOKENS_FOR_NATIVE = "tokens_for_native"


@dataclass(frozen=True)
class SwapReceipt:
    status: int
    block_number: int | None
    tx_hash: str

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class LedgerClient(Protocol):
    async def get_native_balance(self, address: str) -> int:
        """Return the native coin balance in wei."""

    async def get_token_balance(self, token: str, owner: str) -> int:
        """Return the token balance in base units."""

    async def get_fee_rate(self) -> int:
        """Return the current network fee rate in wei per gas unit."""

    async def quote_swap(self, amount_in: int, path: Sequence[str]) -> list[int]:
        """Return router output amounts for every hop of ``path``."""

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
        """Broadcast a swap once and return its transaction hash."""

    async def wait_for_receipt(self, tx_hash: str) -> SwapReceipt:
        """Poll for the receipt of an already broadcast transaction."""

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
        """Send a swap and wait until it is mined."""

    async def approve_allowance(self, spender: str, amount: int) -> SwapReceipt:
        """Approve ``spender`` to move the traded token."""

    async def get_allowance(self, owner: str, spender: str) -> int:
        """Return the token allowance granted by ``owner`` to ``spender``."""

"""Pydantic schemas for the JSON-RPC payloads the bot consumes."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def parse_quantity(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.startswith(("0x", "0X")):
            return int(text, 16)
        return int(text)
    raise ValueError(f"Invalid quantity: {value!r}")


class RpcErrorObject(BaseModel):
    """JSON-RPC error member."""

    model_config = ConfigDict(extra="allow")

    code: int = 0
    message: str = ""
    data: Any | None = None


class RpcResponse(BaseModel):
    """JSON-RPC 2.0 response envelope."""

    model_config = ConfigDict(extra="allow")

    jsonrpc: str = "2.0"
    id: int | str | None = None
    result: Any | None = None
    error: RpcErrorObject | None = None


class TransactionReceiptSchema(BaseModel):
    """Subset of ``eth_getTransactionReceipt`` used to confirm a swap."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    transaction_hash: str = Field(..., alias="transactionHash")
    block_number: int | None = Field(None, alias="blockNumber")
    status: int = Field(0, description="1 on success, 0 on revert")
    gas_used: int | None = Field(None, alias="gasUsed")

    @field_validator("block_number", "status", "gas_used", mode="before")
    @classmethod
    def parse_hex_quantity(cls, v: Any) -> int | None:
        return parse_quantity(v)

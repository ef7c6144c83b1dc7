"""Minimal ABI encoding for the handful of static router and token calls.

Only ``uint256``, ``address`` and a single trailing ``address[]`` argument are
supported, which covers every call the bot makes.
"""

from __future__ import annotations

import re
from typing import Sequence

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
WORD_HEX_LEN = 64


class AbiEncodingError(ValueError):
    """Raised when a value cannot be encoded or a result cannot be decoded."""


def normalize_address(address: str) -> str:
    if not isinstance(address, str) or not _ADDRESS_RE.match(address):
        raise AbiEncodingError(f"Invalid address: {address!r}")
    return address.lower()


def encode_uint(value: int) -> str:
    if value < 0 or value >= 2**256:
        raise AbiEncodingError(f"uint256 out of range: {value}")
    return f"{value:064x}"


def encode_address(address: str) -> str:
    return normalize_address(address)[2:].rjust(WORD_HEX_LEN, "0")


def encode_address_array(addresses: Sequence[str]) -> str:
    return encode_uint(len(addresses)) + "".join(
        encode_address(address) for address in addresses
    )


def encode_call(selector: str, *args: int | str | Sequence[str]) -> str:
    """Encode a call whose arguments are uints, addresses and one address[]."""
    head: list[str] = []
    tail = ""
    dynamic_index: int | None = None
    for index, arg in enumerate(args):
        if isinstance(arg, bool):
            raise AbiEncodingError("bool arguments are not supported")
        if isinstance(arg, int):
            head.append(encode_uint(arg))
        elif isinstance(arg, str):
            head.append(encode_address(arg))
        else:
            if dynamic_index is not None:
                raise AbiEncodingError("Only one dynamic argument is supported")
            dynamic_index = index
            head.append("")
            tail = encode_address_array(list(arg))
    if dynamic_index is not None:
        head[dynamic_index] = encode_uint(len(args) * 32)
    return "0x" + selector + "".join(head) + tail


def _words(data: str) -> list[str]:
    payload = data[2:] if data.startswith("0x") else data
    if len(payload) % WORD_HEX_LEN:
        raise AbiEncodingError(f"Return data is not word aligned: {data!r}")
    return [
        payload[offset : offset + WORD_HEX_LEN]
        for offset in range(0, len(payload), WORD_HEX_LEN)
    ]


def decode_uint(data: str) -> int:
    words = _words(data)
    if not words:
        raise AbiEncodingError("Empty return data")
    return int(words[0], 16)


def decode_uint_array(data: str) -> list[int]:
    words = _words(data)
    if len(words) < 2:
        raise AbiEncodingError(f"Return data too short for uint256[]: {data!r}")
    offset_words = int(words[0], 16) // 32
    length = int(words[offset_words], 16)
    start = offset_words + 1
    if start + length > len(words):
        raise AbiEncodingError("uint256[] length exceeds return data")
    return [int(word, 16) for word in words[start : start + length]]

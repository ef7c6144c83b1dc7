"""Tests for the minimal ABI encoder and decoder."""

from __future__ import annotations

import pytest

from amm_client import abi
from amm_client.constants import SELECTOR_BALANCE_OF, SELECTOR_GET_AMOUNTS_OUT

WALLET = "0x" + "Ab" * 20
TOKEN = "0x" + "22" * 20
WETH = "0x" + "33" * 20


def _word(value: int) -> str:
    return f"{value:064x}"


def test_normalize_address_lowercases_and_validates() -> None:
    assert abi.normalize_address(WALLET) == "0x" + "ab" * 20
    with pytest.raises(abi.AbiEncodingError):
        abi.normalize_address("0x1234")
    with pytest.raises(abi.AbiEncodingError):
        abi.normalize_address("11" * 20)


def test_encode_static_call() -> None:
    data = abi.encode_call(SELECTOR_BALANCE_OF, WALLET)

    assert data == "0x70a08231" + "0" * 24 + "ab" * 20


def test_encode_call_with_address_array() -> None:
    data = abi.encode_call(SELECTOR_GET_AMOUNTS_OUT, 10**18, [WETH, TOKEN])

    words = [data[10 + i : 10 + i + 64] for i in range(0, len(data) - 10, 64)]
    assert data.startswith("0xd06ca61f")
    assert words[0] == _word(10**18)
    assert words[1] == _word(64)
    assert words[2] == _word(2)
    assert words[3].endswith("33" * 20)
    assert words[4].endswith("22" * 20)


def test_dynamic_offset_counts_all_head_words() -> None:
    data = abi.encode_call("b6f9de95", 5, [WETH, TOKEN], WALLET, 1_700_000_000)

    offset_word = data[10 + 64 : 10 + 128]
    assert int(offset_word, 16) == 4 * 32


def test_encode_uint_range() -> None:
    with pytest.raises(abi.AbiEncodingError):
        abi.encode_uint(-1)
    with pytest.raises(abi.AbiEncodingError):
        abi.encode_uint(2**256)


def test_decode_uint_and_array() -> None:
    assert abi.decode_uint("0x" + _word(12345)) == 12345

    encoded = "0x" + _word(32) + _word(2) + _word(10**18) + _word(987)
    assert abi.decode_uint_array(encoded) == [10**18, 987]


def test_decode_rejects_misaligned_data() -> None:
    with pytest.raises(abi.AbiEncodingError):
        abi.decode_uint("0x1234")
    with pytest.raises(abi.AbiEncodingError):
        abi.decode_uint_array("0x" + _word(32) + _word(3) + _word(1))

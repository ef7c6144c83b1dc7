"""Async JSON-RPC client with retry handling for EVM nodes."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import random
import ssl
from typing import Any, Sequence

import aiohttp
from pydantic import ValidationError

from amm_client.schemas import RpcResponse
from engine.errors import (
    FatalFundsError,
    TransientNetworkError,
    TradeError,
    mentions_insufficient_funds,
)

LOGGER = logging.getLogger("amm_volume_bot.amm_client.rpc")

# JSON-RPC server error codes that indicate node-side trouble worth retrying.
_TRANSIENT_RPC_CODES = {-32000, -32603, -32005}
_TRANSIENT_MESSAGE_HINTS = ("timeout", "timed out", "header not found", "busy")
# Broadcasts are never resent: a lost response may still mean the node accepted it.
_BROADCAST_METHODS = {"eth_sendTransaction", "eth_sendRawTransaction"}


class RpcError(TradeError):
    """Raised when the node returns a JSON-RPC error object."""

    def __init__(self, message: str, code: int | None = None, data: Any = None) -> None:
        super().__init__(message, {"code": code, "data": data})
        self.code = code
        self.data = data


class RpcTransientError(TransientNetworkError):
    """Raised for HTTP, connection or node errors that may succeed on retry."""


class RpcRateLimitError(RpcTransientError):
    """Raised when the endpoint answers HTTP 429."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class AsyncRpcClient:
    """Minimal JSON-RPC 2.0 client over ``aiohttp``."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        session: aiohttp.ClientSession | None = None,
        verify_ssl: bool = True,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self._ssl_context: ssl.SSLContext | bool = (
            ssl.create_default_context() if verify_ssl else False
        )
        if not verify_ssl:
            LOGGER.warning(
                "SSL certificate verification is DISABLED for %s. "
                "Never use this against a production endpoint.",
                url,
            )
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

    async def call(self, method: str, params: Sequence[Any] | None = None) -> Any:
        attempts = 0
        max_retries = 0 if method in _BROADCAST_METHODS else self.max_retries
        while True:
            try:
                return await self._call_once(method, list(params or []))
            except RpcRateLimitError as exc:
                attempts += 1
                if attempts > max_retries:
                    raise
                await asyncio.sleep(exc.retry_after or self._compute_backoff(attempts))
            except RpcTransientError as exc:
                attempts += 1
                if attempts > max_retries:
                    raise
                LOGGER.debug("Retrying %s after transient error: %s", method, exc)
                await asyncio.sleep(self._compute_backoff(attempts))

    async def _call_once(self, method: str, params: list[Any]) -> Any:
        body = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with session.request(
                "POST",
                self.url,
                headers={"Content-Type": "application/json"},
                data=json.dumps(body).encode("utf8"),
                timeout=timeout,
            ) as response:
                payload = await response.text()
                if response.status == 429:
                    raise RpcRateLimitError(
                        "Rate limit exceeded",
                        retry_after=self._parse_retry_after(
                            response.headers.get("Retry-After")
                        ),
                    )
                if response.status in {500, 502, 503, 504}:
                    raise RpcTransientError(f"Transient HTTP error {response.status}")
                if response.status >= 400:
                    raise RpcError(f"HTTP error {response.status}: {payload}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RpcTransientError(f"Network error while calling {method}") from exc

        try:
            envelope = RpcResponse.model_validate(json.loads(payload))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise RpcTransientError(f"Malformed JSON-RPC response to {method}") from exc
        if envelope.error is not None:
            error = envelope.error
            raise self._map_error(method, error.code, error.message, error.data)
        return envelope.result

    def _map_error(
        self, method: str, code: int, message: str, data: Any
    ) -> TradeError:
        text = f"{method} failed: {message} (code {code})"
        if mentions_insufficient_funds(message):
            return FatalFundsError(text, {"code": code, "data": data})
        lowered = message.lower()
        if code in _TRANSIENT_RPC_CODES and any(
            hint in lowered for hint in _TRANSIENT_MESSAGE_HINTS
        ):
            return RpcTransientError(text, {"code": code, "data": data})
        return RpcError(text, code=code, data=data)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
            self._owns_session = False

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            connector = aiohttp.TCPConnector(ssl=self._ssl_context)
            self._session = aiohttp.ClientSession(timeout=timeout, connector=connector)
        return self._session

    def _compute_backoff(self, attempt: int) -> float:
        base = self.backoff_factor * (2 ** (attempt - 1))
        return base + random.uniform(0, base)

    def _parse_retry_after(self, header_value: str | None) -> float | None:
        if header_value is None:
            return None
        try:
            return float(header_value)
        except ValueError:
            return None

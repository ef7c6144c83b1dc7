"""Error taxonomy shared by the retry executor, ledger client and orchestrator."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """Tagged failure kinds checked structurally by the retry executor."""

    TRANSIENT_NETWORK = ("transient_network", True)
    INSUFFICIENT_FUNDS = ("insufficient_funds", False)
    PERSISTENCE = ("persistence", False)
    UNCONFIRMED_TRANSACTION = ("unconfirmed_transaction", False)

    def __init__(self, label: str, retryable: bool) -> None:
        self.label = label
        self.retryable = retryable


class TradeError(Exception):
    """Base exception for failures raised while preparing or submitting trades."""

    kind: ErrorKind = ErrorKind.TRANSIENT_NETWORK

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class TransientNetworkError(TradeError):
    """RPC timeouts, node errors and other failures that may succeed on retry."""

    kind = ErrorKind.TRANSIENT_NETWORK


class FatalFundsError(TradeError):
    """The wallet cannot cover the trade; retrying cannot succeed."""

    kind = ErrorKind.INSUFFICIENT_FUNDS


class PersistenceError(TradeError):
    """Reading or writing the schedule record failed."""

    kind = ErrorKind.PERSISTENCE


class UnconfirmedTransactionError(TradeError):
    """A transaction may have been broadcast but its outcome is unknown.

    Sending it again could execute the trade twice, so this is never retried.
    """

    kind = ErrorKind.UNCONFIRMED_TRANSACTION

    @property
    def tx_hash(self) -> str | None:
        return self.details.get("tx_hash")


INSUFFICIENT_FUNDS_MARKER = "insufficient funds"


def mentions_insufficient_funds(message: str) -> bool:
    return INSUFFICIENT_FUNDS_MARKER in message.lower()


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an arbitrary exception onto an ``ErrorKind``.

    Our own errors carry their kind. Foreign exceptions (for example from a
    third-party client) are classified once here, at the boundary.
    """
    if isinstance(exc, TradeError):
        return exc.kind
    if mentions_insufficient_funds(str(exc)):
        return ErrorKind.INSUFFICIENT_FUNDS
    return ErrorKind.TRANSIENT_NETWORK

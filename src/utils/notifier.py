"""Trade report delivery over Telegram and e-mail."""

from __future__ import annotations

import asyncio
import json
import logging
import smtplib
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from email.message import EmailMessage
from typing import Any, Protocol, Sequence

import aiohttp

from utils.credentials import SMTP_PASSWORD, TELEGRAM_TOKEN, load_secret

LOGGER = logging.getLogger("amm_volume_bot.utils.notifier")

TELEGRAM_API_URL = "https://api.telegram.org"
DEFAULT_SMTP_HOST = "smtp.hostinger.com"
DEFAULT_SMTP_PORT = 465


@dataclass
class TradeReport:
    action: str
    success: bool
    amounts: list[Decimal] = field(default_factory=list)
    tx_hashes: list[str] = field(default_factory=list)
    native_balance: Decimal | None = None
    trade_count: int = 0
    previous_trade_at: datetime | None = None
    next_trade_at: datetime | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "success": self.success,
            "amounts": [str(amount) for amount in self.amounts],
            "tx_hashes": list(self.tx_hashes),
            "native_balance": (
                str(self.native_balance) if self.native_balance is not None else None
            ),
            "trade_count": self.trade_count,
            "previous_trade": _iso(self.previous_trade_at),
            "next_trade": _iso(self.next_trade_at),
            "error": self.error,
            "created_at": _iso(self.created_at),
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def format_report(
    report: TradeReport, *, native_symbol: str = "BNB", explorer_tx_url: str = ""
) -> str:
    lines = [f"Trade Report: {report.created_at.strftime('%Y-%m-%d %H:%M:%S UTC')}", ""]
    lines.append(f"Type: {report.action}")
    if report.amounts:
        amounts = ", ".join(str(amount) for amount in report.amounts)
        lines.append(f"Amounts: {amounts}")
    for tx_hash in report.tx_hashes:
        lines.append(f"Transaction: {explorer_tx_url}{tx_hash}")
    if report.native_balance is not None:
        lines.append(f"Balance: {report.native_balance} {native_symbol}")
    lines.append(f"Success: {report.success}")
    if report.error:
        lines.append(f"Error: {report.error}")
    lines.append("")
    lines.append(f"Previous Trade: {_iso(report.previous_trade_at) or '-'}")
    lines.append(f"Next Trade: {_iso(report.next_trade_at) or '-'}")
    lines.append(f"Trade Count: {report.trade_count}")
    return "\n".join(lines)


class Notifier(Protocol):
    async def send(self, report: TradeReport) -> None:
        """Deliver a trade report."""


class NotificationError(RuntimeError):
    """Raised when a report cannot be delivered."""


class TelegramNotifier:
    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        thread_id: str | None = None,
        native_symbol: str = "BNB",
        explorer_tx_url: str = "",
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
        api_url: str = TELEGRAM_API_URL,
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.thread_id = thread_id
        self.native_symbol = native_symbol
        self.explorer_tx_url = explorer_tx_url
        self.timeout = timeout
        self.api_url = api_url.rstrip("/")
        self._session = session

    async def send(self, report: TradeReport) -> None:
        payload: dict[str, Any] = {
            "chat_id": self.chat_id,
            "text": format_report(
                report,
                native_symbol=self.native_symbol,
                explorer_tx_url=self.explorer_tx_url,
            ),
        }
        if self.thread_id:
            payload["message_thread_id"] = self.thread_id
        url = f"{self.api_url}/bot{self.bot_token}/sendMessage"
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        session = self._session
        owns_session = session is None
        if session is None:
            session = aiohttp.ClientSession(timeout=timeout)
        try:
            async with session.post(url, json=payload, timeout=timeout) as response:
                body = await response.text()
                if response.status >= 400:
                    raise NotificationError(
                        f"Telegram sendMessage failed with HTTP {response.status}: {body}"
                    )
        except aiohttp.ClientError as exc:
            raise NotificationError(f"Telegram request failed: {exc}") from exc
        finally:
            if owns_session:
                await session.close()
        LOGGER.info("Telegram report sent")


class EmailNotifier:
    def __init__(
        self,
        sender: str,
        recipient: str,
        password: str,
        *,
        smtp_host: str = DEFAULT_SMTP_HOST,
        smtp_port: int = DEFAULT_SMTP_PORT,
        timeout: float = 30.0,
    ) -> None:
        self.sender = sender
        self.recipient = recipient
        self.password = password
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.timeout = timeout

    def build_message(self, report: TradeReport) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = self.recipient
        message["Subject"] = (
            f"Trade Report: {report.created_at.strftime('%Y-%m-%d %H:%M:%S UTC')}"
        )
        message.set_content(json.dumps(report.to_dict(), indent=2))
        return message

    def _deliver(self, message: EmailMessage) -> None:
        context = ssl.create_default_context()
        with smtplib.SMTP_SSL(
            self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
        ) as smtp:
            smtp.login(self.sender, self.password)
            smtp.send_message(message)

    async def send(self, report: TradeReport) -> None:
        message = self.build_message(report)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"E-mail delivery failed: {exc}") from exc
        LOGGER.info("E-mail report sent to %s", self.recipient)


class CompositeNotifier:
    """Fan a report out to several notifiers; one failing does not stop the rest."""

    def __init__(self, notifiers: Sequence[Notifier]) -> None:
        self.notifiers = list(notifiers)

    async def send(self, report: TradeReport) -> None:
        results = await asyncio.gather(
            *(notifier.send(report) for notifier in self.notifiers),
            return_exceptions=True,
        )
        for notifier, outcome in zip(self.notifiers, results):
            if isinstance(outcome, Exception):
                LOGGER.error(
                    "%s failed: %s", type(notifier).__name__, outcome
                )


def _enabled(section: Any) -> bool:
    return isinstance(section, dict) and bool(section.get("enabled"))


def build_notifier(config: dict) -> Notifier | None:
    """Build the notifiers enabled in ``config``; ``None`` when none are."""
    notifiers: list[Notifier] = []
    native_symbol = config.get("native_symbol", "BNB")
    explorer_tx_url = config.get("explorer_tx_url", "https://bscscan.com/tx/")

    telegram = config.get("telegram")
    if _enabled(telegram):
        token = load_secret(TELEGRAM_TOKEN, telegram.get("bot_token"))
        chat_id = telegram.get("chat_id")
        if not token or not chat_id:
            raise ValueError("telegram.enabled requires bot_token and chat_id")
        thread_id = telegram.get("thread_id")
        notifiers.append(
            TelegramNotifier(
                token,
                str(chat_id),
                thread_id=str(thread_id) if thread_id else None,
                native_symbol=native_symbol,
                explorer_tx_url=explorer_tx_url,
            )
        )

    email = config.get("email")
    if _enabled(email):
        password = load_secret(SMTP_PASSWORD, email.get("password"))
        sender = email.get("sender")
        recipient = email.get("recipient")
        if not password or not sender or not recipient:
            raise ValueError("email.enabled requires sender, recipient and password")
        notifiers.append(
            EmailNotifier(
                sender,
                recipient,
                password,
                smtp_host=email.get("smtp_host", DEFAULT_SMTP_HOST),
                smtp_port=int(email.get("smtp_port", DEFAULT_SMTP_PORT)),
            )
        )

    if not notifiers:
        return None
    if len(notifiers) == 1:
        return notifiers[0]
    return CompositeNotifier(notifiers)

"""Telegram messaging transport built on python-telegram-bot's Bot API client."""

from __future__ import annotations

from types import TracebackType
from typing import Any

from telegram import Bot, LinkPreviewOptions
from telegram.error import TelegramError, TimedOut
from telegram.request import HTTPXRequest

from coderelay.errors import TransportError

MAX_TELEGRAM_MESSAGE_LEN = 3900
TRUNCATION_MARKER = "\n...[truncated]"
CONNECT_TIMEOUT_SECONDS = 10.0
READ_TIMEOUT_SECONDS = 30.0


def truncate_message(text: str, max_len: int = MAX_TELEGRAM_MESSAGE_LEN) -> str:
    if len(text) <= max_len:
        return text
    return text[: max(0, max_len - 12)] + TRUNCATION_MARKER


class TelegramTransport:
    """Long-poll fetch and message relay; errors surface as TransportError."""

    def __init__(self, bot: Bot, *, max_message_chars: int = MAX_TELEGRAM_MESSAGE_LEN) -> None:
        self._bot = bot
        self._max_message_chars = max_message_chars

    @classmethod
    def from_token(cls, token: str, *, max_message_chars: int = MAX_TELEGRAM_MESSAGE_LEN) -> TelegramTransport:
        bot = Bot(
            token,
            request=HTTPXRequest(
                connect_timeout=CONNECT_TIMEOUT_SECONDS,
                read_timeout=READ_TIMEOUT_SECONDS,
            ),
            get_updates_request=HTTPXRequest(
                connect_timeout=CONNECT_TIMEOUT_SECONDS,
                read_timeout=READ_TIMEOUT_SECONDS,
            ),
        )
        return cls(bot, max_message_chars=max_message_chars)

    async def __aenter__(self) -> TelegramTransport:
        try:
            await self._bot.initialize()
        except TelegramError as exc:
            raise TransportError(f"Telegram initialize failed: {exc}") from exc
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self._bot.shutdown()

    async def get_updates(self, offset: int, timeout: int) -> list[dict[str, Any]]:
        """Long-poll for updates starting at offset; a poll timeout yields an empty batch."""
        try:
            updates = await self._bot.get_updates(
                offset=offset,
                timeout=timeout,
                allowed_updates=["message"],
            )
        except TimedOut:
            return []
        except TelegramError as exc:
            raise TransportError(f"getUpdates failed: {exc}") from exc
        return [update.to_dict() for update in updates]

    async def send_message(self, chat_id: int | str, text: str) -> None:
        try:
            await self._bot.send_message(
                chat_id=chat_id,
                text=truncate_message(text, self._max_message_chars),
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            )
        except TelegramError as exc:
            raise TransportError(f"sendMessage to {chat_id} failed: {exc}") from exc

"""Update ingestion: long-poll or push batches, cursor tracking, per-update dispatch."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Any, Protocol

from coderelay.commands import CommandRouter
from coderelay.errors import MalformedUpdate, TransportError
from coderelay.memory.conversation_store import CursorStore
from coderelay.memory.episodic_memory import EpisodicMemoryStore
from coderelay.recovery import AsyncSleeper, BackoffPolicy

logger = logging.getLogger(__name__)

DEFAULT_POLL_TIMEOUT_SECONDS = 25
INTERNAL_ERROR_REPLY = "Internal error, retry."


class UpdateSource(Protocol):
    async def get_updates(self, offset: int, timeout: int) -> list[dict[str, Any]]: ...

    async def send_message(self, chat_id: int | str, text: str) -> None: ...


def chat_id_of(update: dict[str, Any]) -> int | str | None:
    message = update.get("message")
    if not isinstance(message, dict):
        return None
    chat = message.get("chat")
    if not isinstance(chat, dict):
        return None
    chat_id = chat.get("id")
    if chat_id is None or chat_id == "" or chat_id == 0:
        return None
    return chat_id


def extract_message(update: dict[str, Any]) -> tuple[int | str, str]:
    """Return (chat id, text) or raise MalformedUpdate."""
    chat_id = chat_id_of(update)
    if chat_id is None:
        raise MalformedUpdate(f"update {update.get('update_id')} has no chat id")
    text = update["message"].get("text")
    if not isinstance(text, str):
        raise MalformedUpdate(f"update {update.get('update_id')} has no text body")
    return chat_id, text


def update_id_of(update: dict[str, Any]) -> int | None:
    raw = update.get("update_id")
    if isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


class UpdateLoop:
    """Drives fetch -> dispatch -> relay, and owns the update cursor."""

    def __init__(
        self,
        *,
        transport: UpdateSource,
        router: CommandRouter,
        cursor_store: CursorStore,
        poll_timeout_seconds: int = DEFAULT_POLL_TIMEOUT_SECONDS,
        backoff: BackoffPolicy | None = None,
        sleep: AsyncSleeper = asyncio.sleep,
        journal: EpisodicMemoryStore | None = None,
    ) -> None:
        self._transport = transport
        self._router = router
        self._cursor_store = cursor_store
        self._poll_timeout_seconds = poll_timeout_seconds
        self._backoff = backoff or BackoffPolicy()
        self._sleep = sleep
        self._journal = journal
        self._cursor = cursor_store.load()
        self._running = False

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        self._running = False

    async def run(self, *, max_cycles: int | None = None) -> None:
        """Poll until stop(); transport errors back off and retry, never terminate."""
        self._running = True
        failures = 0
        cycles = 0
        logger.info("update loop started at cursor %s", self._cursor)
        while self._running and (max_cycles is None or cycles < max_cycles):
            cycles += 1
            try:
                await self.poll_once()
            except TransportError as exc:
                failures += 1
                delay = self._backoff.delay_for_attempt(failures)
                logger.warning("poll failed (attempt %s), retrying in %.1fs: %s", failures, delay, exc)
                await self._sleep(delay)
                continue
            failures = 0
        self._running = False
        logger.info("update loop stopped at cursor %s", self._cursor)

    async def poll_once(self) -> int:
        """Fetch one batch starting after the cursor and dispatch it; returns the batch size."""
        updates = await self._transport.get_updates(self._cursor + 1, self._poll_timeout_seconds)
        if updates:
            await self.handle_batch(updates)
        return len(updates)

    async def handle_batch(self, updates: list[dict[str, Any]], *, advance_cursor: bool = True) -> int:
        """Dispatch a batch in order; returns how many updates were dispatched."""
        dispatched = 0
        for update in updates:
            if not isinstance(update, dict):
                logger.debug("dropping non-object update: %r", update)
                continue
            if advance_cursor:
                update_id = update_id_of(update)
                if update_id is None or update_id <= self._cursor:
                    logger.debug("skipping update %s at cursor %s", update_id, self._cursor)
                    continue
                self._advance_cursor(update_id)
            await self.dispatch(update)
            dispatched += 1
        return dispatched

    def _advance_cursor(self, update_id: int) -> None:
        self._cursor = update_id
        result = self._cursor_store.save(update_id)
        if not result.ok:
            logger.error("cursor %s not persisted: %s", update_id, result.error)

    async def dispatch(self, update: dict[str, Any]) -> None:
        """Route one update; nothing raised here escapes to the loop."""
        try:
            chat_id, text = extract_message(update)
        except MalformedUpdate as exc:
            logger.debug("dropping malformed update: %s", exc)
            return
        try:
            reply = await self._router.handle(chat_id, text)
        except Exception as exc:  # noqa: BLE001
            logger.exception("update %s failed", update.get("update_id"))
            self._record(
                "update_failed",
                {"update_id": update.get("update_id"), "error": str(exc)},
                chat_id=chat_id,
                outcome="deny",
            )
            await self._notify_internal_error(chat_id)
            return
        if reply is not None:
            self._record("update_dispatched", {"update_id": update.get("update_id")}, chat_id=chat_id)

    async def _notify_internal_error(self, chat_id: int | str) -> None:
        try:
            await self._transport.send_message(chat_id, INTERNAL_ERROR_REPLY)
        except TransportError as exc:
            logger.error("internal error notice to chat %s not delivered: %s", chat_id, exc)

    def _record(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        chat_id: int | str | None = None,
        outcome: str = "allow",
    ) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record(event_type, payload, chat_id=chat_id, outcome=outcome)
        except sqlite3.Error as exc:
            logger.warning("journal write failed for %s: %s", event_type, exc)

"""Per-conversation command routing and memory mutation."""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from coderelay.context import build_context_messages
from coderelay.errors import TransportError
from coderelay.llm import CompletionResult, TransportFailure
from coderelay.memory.conversation_store import ConversationStore
from coderelay.memory.episodic_memory import EpisodicMemoryStore
from coderelay.memory.history import Turn, assistant_turn, trim_history, user_turn

logger = logging.getLogger(__name__)

DEFAULT_MAX_INPUT_CHARS = 16000
DEFAULT_MAX_TURNS = 24
DEFAULT_MAX_HISTORY_CHARS = 6000
DEFAULT_COMPLETION_TIMEOUT_SECONDS = 70

GREET_REPLY = (
    "Hi! I am a coding helper bot. Send me any programming or debugging question, "
    "code, stacktrace, or ask for a patch. Use /help for tips."
)
HELP_REPLY = (
    "Coding Helper Bot Usage:\n"
    "- Send errors, stack traces, code for help.\n"
    "- For reviews, send code snippets.\n"
    "- For patches, say 'Suggest a patch:' and your code.\n"
    "- /forget clears memory, /memory shows turns."
)
RESET_REPLY = "Context cleared! Start a new coding topic."
TOO_LONG_REPLY = "Message too long, please shorten your code or question."
FAILURE_REPLY_TEMPLATE = "Sorry, model error: {description}\nRetry or simplify your question."


class InputKind(str, Enum):
    GREET = "greet"
    HELP = "help"
    RESET = "reset"
    STATUS = "status"
    FREE_FORM = "free_form"
    TOO_LONG = "too_long"
    EMPTY = "empty"


COMMAND_TOKENS: dict[str, InputKind] = {
    "start": InputKind.GREET,
    "help": InputKind.HELP,
    "forget": InputKind.RESET,
    "reset": InputKind.RESET,
    "memory": InputKind.STATUS,
    "status": InputKind.STATUS,
}

_COMMAND_RE = re.compile(
    r"^/(" + "|".join(COMMAND_TOKENS) + r")(@[\w_]+)?$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ClassifiedInput:
    kind: InputKind
    text: str


def classify_input(text: str | None, max_input_chars: int = DEFAULT_MAX_INPUT_CHARS) -> ClassifiedInput:
    """Classify raw chat text; commands win over the length check."""
    stripped = (text or "").strip()
    if not stripped:
        return ClassifiedInput(InputKind.EMPTY, stripped)
    match = _COMMAND_RE.match(stripped)
    if match:
        return ClassifiedInput(COMMAND_TOKENS[match.group(1).lower()], stripped)
    if len(stripped) > max_input_chars:
        return ClassifiedInput(InputKind.TOO_LONG, stripped)
    return ClassifiedInput(InputKind.FREE_FORM, stripped)


def failure_reply(result: CompletionResult) -> str:
    description = result.failure.describe() if result.failure is not None else "No response from model"
    return FAILURE_REPLY_TEMPLATE.format(description=description)


class MessageSender(Protocol):
    async def send_message(self, chat_id: int | str, text: str) -> None: ...


class Completer(Protocol):
    def complete(self, messages: list[dict[str, str]]) -> CompletionResult: ...


@dataclass(frozen=True)
class MemoryLimits:
    max_input_chars: int = DEFAULT_MAX_INPUT_CHARS
    max_turns: int = DEFAULT_MAX_TURNS
    max_history_chars: int = DEFAULT_MAX_HISTORY_CHARS


class CommandRouter:
    """Turns one chat input into a relayed reply and the matching memory mutation.

    Every mutation of a conversation happens while holding that conversation's
    lock, so concurrent push callbacks for the same chat are serialized.
    """

    def __init__(
        self,
        *,
        store: ConversationStore,
        completer: Completer,
        sender: MessageSender,
        system_prompt: str,
        limits: MemoryLimits | None = None,
        completion_timeout_seconds: float = DEFAULT_COMPLETION_TIMEOUT_SECONDS,
        journal: EpisodicMemoryStore | None = None,
    ) -> None:
        self._store = store
        self._completer = completer
        self._sender = sender
        self._system_prompt = system_prompt
        self._limits = limits or MemoryLimits()
        self._completion_timeout_seconds = completion_timeout_seconds
        self._journal = journal
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def _acquire_slot(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        return lock

    def _release_slot(self, key: str) -> None:
        remaining = self._lock_users.get(key, 1) - 1
        if remaining > 0:
            self._lock_users[key] = remaining
            return
        # No holder and no waiter left for this chat.
        self._lock_users.pop(key, None)
        self._locks.pop(key, None)

    @property
    def active_conversations(self) -> int:
        return len(self._locks)

    async def handle(self, conversation_id: int | str, text: str | None) -> str | None:
        """Process one input; returns the relayed reply, or None when the input is dropped."""
        classified = classify_input(text, self._limits.max_input_chars)
        if classified.kind is InputKind.EMPTY:
            return None
        key = str(conversation_id)
        lock = self._acquire_slot(key)
        try:
            async with lock:
                return await self._handle_locked(conversation_id, classified)
        finally:
            self._release_slot(key)

    async def _handle_locked(self, conversation_id: int | str, classified: ClassifiedInput) -> str:
        history = self._store.load(conversation_id)
        kind = classified.kind

        if kind is InputKind.RESET:
            self._persist(conversation_id, [])
            self._record("conversation_reset", {"turns_cleared": len(history)}, chat_id=conversation_id)
            await self._relay(conversation_id, RESET_REPLY)
            return RESET_REPLY

        if kind is InputKind.GREET:
            reply = GREET_REPLY
        elif kind is InputKind.HELP:
            reply = HELP_REPLY
        elif kind is InputKind.STATUS:
            reply = f"Memory contains {len(history)} recent turns."
        elif kind is InputKind.TOO_LONG:
            reply = TOO_LONG_REPLY
        elif kind is InputKind.FREE_FORM:
            reply = await self._complete(conversation_id, history, classified.text)
        else:
            raise ValueError(f"Unhandled input kind: {kind}")

        await self._relay(conversation_id, reply)
        self._append_exchange(conversation_id, history, classified.text, reply)
        return reply

    async def _complete(self, conversation_id: int | str, history: list[Turn], text: str) -> str:
        messages = build_context_messages(self._system_prompt, history, text)
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self._completer.complete, messages),
                timeout=self._completion_timeout_seconds,
            )
        except asyncio.TimeoutError:
            result = CompletionResult(failure=TransportFailure(reason="completion timed out"))
        if result.ok:
            assert result.content is not None
            return result.content
        logger.warning("completion failed for chat %s: %s", conversation_id, result.failure)
        self._record(
            "completion_failed",
            {"error": result.failure.describe() if result.failure else "unknown"},
            chat_id=conversation_id,
            outcome="deny",
        )
        # The failure text becomes the assistant turn and is sent back as context later.
        return failure_reply(result)

    def _append_exchange(
        self,
        conversation_id: int | str,
        history: list[Turn],
        user_text: str,
        reply: str,
    ) -> None:
        updated = history + [user_turn(user_text), assistant_turn(reply)]
        trimmed = trim_history(updated, self._limits.max_turns, self._limits.max_history_chars)
        self._persist(conversation_id, trimmed)

    def _persist(self, conversation_id: int | str, turns: list[Turn]) -> None:
        result = self._store.save(conversation_id, turns)
        if not result.ok:
            logger.error("conversation %s not saved: %s", conversation_id, result.error)

    async def _relay(self, conversation_id: int | str, text: str) -> None:
        try:
            await self._sender.send_message(conversation_id, text)
        except TransportError as exc:
            logger.error("reply to chat %s not delivered: %s", conversation_id, exc)

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

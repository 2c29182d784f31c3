from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from typing import Any

from coderelay.commands import CommandRouter
from coderelay.errors import TransportError
from coderelay.llm import CompletionResult
from coderelay.memory.conversation_store import ConversationStore, CursorStore
from coderelay.memory.engine import MemoryEngine
from coderelay.memory.episodic_memory import EpisodicMemoryStore
from coderelay.recovery import BackoffPolicy
from coderelay.update_loop import INTERNAL_ERROR_REPLY, UpdateLoop, extract_message


def _update(update_id: int, chat_id: int = 100, text: str | None = "hello") -> dict[str, Any]:
    message: dict[str, Any] = {"message_id": update_id, "chat": {"id": chat_id, "type": "private"}}
    if text is not None:
        message["text"] = text
    return {"update_id": update_id, "message": message}


class FakeTransport:
    def __init__(self, batches: list[Any] | None = None) -> None:
        self.batches = list(batches or [])
        self.offsets: list[int] = []
        self.sent: list[tuple[int | str, str]] = []

    async def get_updates(self, offset: int, timeout: int) -> list[dict[str, Any]]:
        self.offsets.append(offset)
        if not self.batches:
            return []
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch

    async def send_message(self, chat_id: int | str, text: str) -> None:
        self.sent.append((chat_id, text))


class CountingCompleter:
    def __init__(self) -> None:
        self.calls = 0

    def complete(self, messages: list[dict[str, str]]) -> CompletionResult:
        self.calls += 1
        return CompletionResult(content=f"reply to {messages[-1]['content']}")


class ExplodingRouter:
    async def handle(self, conversation_id: int | str, text: str | None) -> str | None:
        raise KeyError("boom")


class UpdateLoopTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        root = Path(self._tmpdir.name)
        self.cursor_store = CursorStore(root / "offset.dat")
        self.conversations = ConversationStore(root / "history")
        self.transport = FakeTransport()
        self.completer = CountingCompleter()
        self.sleeps: list[float] = []
        engine = MemoryEngine(root / "events.db")
        engine.initialize()
        self.engine = engine
        self.journal = EpisodicMemoryStore(engine.connect())

    def tearDown(self) -> None:
        self.engine.close()
        self._tmpdir.cleanup()

    async def _sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def _loop(self, router: Any = None) -> UpdateLoop:
        if router is None:
            router = CommandRouter(
                store=self.conversations,
                completer=self.completer,
                sender=self.transport,
                system_prompt="sys",
            )
        return UpdateLoop(
            transport=self.transport,
            router=router,
            cursor_store=self.cursor_store,
            poll_timeout_seconds=1,
            backoff=BackoffPolicy(base_seconds=3.0, factor=2.0, max_seconds=10.0),
            sleep=self._sleep,
            journal=self.journal,
        )

    async def test_stale_updates_are_skipped(self) -> None:
        self.cursor_store.save(10)
        loop = self._loop()
        dispatched = await loop.handle_batch([_update(9, text="old"), _update(11, text="a"), _update(12, text="b")])

        self.assertEqual(dispatched, 2)
        self.assertEqual(loop.cursor, 12)
        self.assertEqual(self.cursor_store.load(), 12)
        self.assertEqual(self.completer.calls, 2)
        self.assertEqual([text for _, text in self.transport.sent], ["reply to a", "reply to b"])

    async def test_poll_uses_cursor_plus_one(self) -> None:
        self.cursor_store.save(41)
        self.transport.batches = [[_update(42)], []]
        loop = self._loop()
        self.assertEqual(await loop.poll_once(), 1)
        self.assertEqual(await loop.poll_once(), 0)
        self.assertEqual(self.transport.offsets, [42, 43])

    async def test_malformed_updates_are_dropped_silently(self) -> None:
        loop = self._loop()
        batch = [
            {"update_id": 1},
            _update(2, text=None),
            {"update_id": 3, "message": {"text": "no chat"}},
            _update(4, text="   "),
        ]
        await loop.handle_batch(batch)
        self.assertEqual(loop.cursor, 4)
        self.assertEqual(self.transport.sent, [])
        self.assertEqual(self.completer.calls, 0)

    async def test_dispatch_failure_notifies_chat_and_continues(self) -> None:
        loop = self._loop(router=ExplodingRouter())
        dispatched = await loop.handle_batch([_update(1, chat_id=7), _update(2, chat_id=8)])

        self.assertEqual(dispatched, 2)
        self.assertEqual(self.transport.sent, [(7, INTERNAL_ERROR_REPLY), (8, INTERNAL_ERROR_REPLY)])
        events = self.journal.latest(limit=10)
        self.assertEqual([e["event_type"] for e in events], ["update_failed", "update_failed"])
        self.assertEqual(self.cursor_store.load(), 2)

    async def test_run_backs_off_on_transport_errors_and_recovers(self) -> None:
        self.transport.batches = [
            TransportError("down"),
            TransportError("still down"),
            [_update(5, text="back")],
            TransportError("flaky"),
        ]
        loop = self._loop()
        await loop.run(max_cycles=4)

        self.assertEqual(self.sleeps, [3.0, 6.0, 3.0])
        self.assertEqual(loop.cursor, 5)
        self.assertFalse(loop.running)

    async def test_backoff_is_bounded(self) -> None:
        self.transport.batches = [TransportError("down") for _ in range(5)]
        await self._loop().run(max_cycles=5)
        self.assertEqual(self.sleeps, [3.0, 6.0, 10.0, 10.0, 10.0])

    async def test_push_batches_do_not_touch_cursor(self) -> None:
        self.cursor_store.save(100)
        loop = self._loop()
        dispatched = await loop.handle_batch([_update(3, text="pushed")], advance_cursor=False)
        self.assertEqual(dispatched, 1)
        self.assertEqual(loop.cursor, 100)
        self.assertEqual(self.transport.sent, [(100, "reply to pushed")])

    async def test_successful_dispatch_is_journaled(self) -> None:
        await self._loop().handle_batch([_update(1, chat_id=55, text="hi")])
        events = self.journal.latest(limit=5, chat_id=55)
        self.assertEqual(events[0]["event_type"], "update_dispatched")
        self.assertEqual(events[0]["payload"], {"update_id": 1})


class ExtractMessageTests(unittest.TestCase):
    def test_extracts_chat_and_text(self) -> None:
        self.assertEqual(extract_message(_update(1, chat_id=-5, text="x")), (-5, "x"))


if __name__ == "__main__":
    unittest.main()

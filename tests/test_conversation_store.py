from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from coderelay.memory.conversation_store import ConversationStore, CursorStore
from coderelay.memory.history import assistant_turn, user_turn


class ConversationStoreTests(unittest.TestCase):
    def test_missing_record_loads_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = ConversationStore(Path(tmpdir) / "history")
            self.assertEqual(store.load(42), [])

    def test_save_writes_role_content_list(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = ConversationStore(Path(tmpdir) / "history")
            turns = [user_turn("fix this: x=1/0"), assistant_turn("Add a zero check before dividing.")]
            result = store.save(-1001, turns)

            self.assertTrue(result.ok)
            path = Path(tmpdir) / "history" / "history_-1001.json"
            self.assertTrue(path.exists())
            self.assertEqual(
                json.loads(path.read_text(encoding="utf-8")),
                [
                    {"role": "user", "content": "fix this: x=1/0"},
                    {"role": "assistant", "content": "Add a zero check before dividing."},
                ],
            )
            self.assertEqual(store.load(-1001), turns)
            self.assertEqual([p.name for p in path.parent.iterdir()], [path.name])

    def test_corrupt_or_foreign_records_are_filtered(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = ConversationStore(Path(tmpdir))
            store.path_for(7).write_text("{not json", encoding="utf-8")
            self.assertEqual(store.load(7), [])

            store.path_for(8).write_text(
                json.dumps(
                    [
                        {"role": "system", "content": "leaked"},
                        {"role": "user", "content": "kept"},
                        {"role": "assistant"},
                    ]
                ),
                encoding="utf-8",
            )
            self.assertEqual(store.load(8), [user_turn("kept")])

    def test_conversation_id_cannot_escape_history_dir(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = ConversationStore(Path(tmpdir))
            path = store.path_for("../../etc/passwd")
            self.assertEqual(path.parent, Path(tmpdir))

    def test_write_failure_is_reported_not_raised(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            blocker = Path(tmpdir) / "history"
            blocker.write_text("a file where a directory should be", encoding="utf-8")
            store = ConversationStore(blocker)
            result = store.save(1, [user_turn("hi")])
            self.assertFalse(result.ok)
            self.assertIsNotNone(result.error)


class CursorStoreTests(unittest.TestCase):
    def test_cursor_defaults_to_zero_and_persists(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CursorStore(Path(tmpdir) / "offset.dat")
            self.assertEqual(store.load(), 0)
            self.assertTrue(store.save(12).ok)
            self.assertEqual(CursorStore(Path(tmpdir) / "offset.dat").load(), 12)

    def test_invalid_cursor_file_loads_zero(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "offset.dat"
            path.write_text("garbage", encoding="utf-8")
            self.assertEqual(CursorStore(path).load(), 0)


if __name__ == "__main__":
    unittest.main()

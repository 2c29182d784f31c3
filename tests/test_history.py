from __future__ import annotations

import unittest

from coderelay.memory.history import (
    Role,
    Turn,
    assistant_turn,
    history_chars,
    trim_history,
    user_turn,
)


def _exchange(n: int, size: int = 10) -> list[Turn]:
    turns: list[Turn] = []
    for i in range(n):
        turns.append(user_turn(f"u{i}".ljust(size, ".")))
        turns.append(assistant_turn(f"a{i}".ljust(size, ".")))
    return turns


def _is_ordered_subsequence(sub: list[Turn], full: list[Turn]) -> bool:
    it = iter(full)
    return all(any(item is candidate for candidate in it) for item in sub)


class TrimHistoryTests(unittest.TestCase):
    def test_empty_input_yields_empty_output(self) -> None:
        self.assertEqual(trim_history([], 24, 6000), [])

    def test_turn_cap_keeps_newest(self) -> None:
        turns = _exchange(15)
        trimmed = trim_history(turns, 24, 10_000)
        self.assertEqual(len(trimmed), 24)
        self.assertEqual(trimmed, turns[-24:])
        self.assertEqual(trimmed[-1].role, Role.ASSISTANT)

    def test_char_budget_drops_oldest_first(self) -> None:
        turns = _exchange(5, size=10)
        trimmed = trim_history(turns, 24, 35)
        self.assertEqual(trimmed, turns[-3:])
        self.assertLessEqual(history_chars(trimmed), 35)

    def test_oversized_turn_is_skipped_but_older_short_turns_fit(self) -> None:
        turns = [
            user_turn("short"),
            assistant_turn("x" * 50),
            user_turn("tiny"),
            assistant_turn("newest"),
        ]
        trimmed = trim_history(turns, 24, 20)
        self.assertEqual([t.content for t in trimmed], ["short", "tiny", "newest"])

    def test_non_positive_turn_cap_keeps_nothing(self) -> None:
        self.assertEqual(trim_history(_exchange(2), 0, 100), [])

    def test_bounds_order_and_idempotence(self) -> None:
        samples = [
            [user_turn("a" * (i * 7 % 23)) for i in range(30)],
            _exchange(20, size=40),
            [assistant_turn("z" * 500), user_turn("q"), assistant_turn("r" * 80)],
        ]
        for turns in samples:
            for max_turns, max_chars in ((1, 10), (4, 100), (24, 6000), (50, 0)):
                with self.subTest(max_turns=max_turns, max_chars=max_chars):
                    trimmed = trim_history(turns, max_turns, max_chars)
                    self.assertLessEqual(len(trimmed), max_turns)
                    self.assertLessEqual(history_chars(trimmed), max_chars)
                    self.assertTrue(_is_ordered_subsequence(trimmed, turns))
                    self.assertEqual(trim_history(trimmed, max_turns, max_chars), trimmed)

    def test_input_is_not_mutated(self) -> None:
        turns = _exchange(3)
        before = list(turns)
        trim_history(turns, 2, 5)
        self.assertEqual(turns, before)


class TurnSerializationTests(unittest.TestCase):
    def test_from_dict_rejects_foreign_roles(self) -> None:
        self.assertIsNone(Turn.from_dict({"role": "system", "content": "x"}))
        self.assertIsNone(Turn.from_dict({"role": "user"}))
        self.assertIsNone(Turn.from_dict("user: hi"))
        self.assertEqual(Turn.from_dict({"role": "user", "content": "hi"}), user_turn("hi"))


if __name__ == "__main__":
    unittest.main()

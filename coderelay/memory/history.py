"""Conversation turns and the history trimming policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, raw: Any) -> Turn | None:
        """Build a turn from a stored record; None if the record is not a user/assistant entry."""
        if not isinstance(raw, dict):
            return None
        content = raw.get("content")
        if not isinstance(content, str):
            return None
        try:
            role = Role(raw.get("role"))
        except ValueError:
            return None
        return cls(role=role, content=content)


def user_turn(content: str) -> Turn:
    return Turn(role=Role.USER, content=content)


def assistant_turn(content: str) -> Turn:
    return Turn(role=Role.ASSISTANT, content=content)


def history_chars(turns: Iterable[Turn]) -> int:
    return sum(len(turn.content) for turn in turns)


def trim_history(turns: list[Turn], max_turns: int, max_chars: int) -> list[Turn]:
    """
    Enforce the turn-count and character budgets on a chronological turn list.

    The newest max_turns entries survive the count cap. The character budget is
    then filled newest-first: a turn that would overflow the remaining budget is
    skipped, but older and shorter turns may still fit. Survivors keep their
    original order.
    """
    if max_turns <= 0:
        return []
    recent = turns[-max_turns:]
    total = 0
    kept: list[Turn] = []
    for turn in reversed(recent):
        length = len(turn.content)
        if total + length > max_chars:
            continue
        total += length
        kept.append(turn)
    kept.reverse()
    return kept

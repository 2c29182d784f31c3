"""Assembly of the message list sent to the completion service."""

from __future__ import annotations

from typing import Iterable

from coderelay.memory.history import Role, Turn

_HISTORY_ROLES = {Role.USER, Role.ASSISTANT}


def build_context_messages(
    system_directive: str,
    history: Iterable[Turn],
    new_input: str,
) -> list[dict[str, str]]:
    """Return [system directive, *history in order, new user input]."""
    messages: list[dict[str, str]] = [{"role": "system", "content": system_directive}]
    for turn in history:
        if turn.role in _HISTORY_ROLES:
            messages.append(turn.to_dict())
    messages.append({"role": Role.USER.value, "content": new_input})
    return messages

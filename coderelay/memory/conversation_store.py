"""File-backed conversation memory and update cursor."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from coderelay.memory.history import Turn

logger = logging.getLogger(__name__)

_UNSAFE_ID_CHARS = re.compile(r"[^\w-]")


@dataclass(frozen=True)
class WriteResult:
    ok: bool
    error: str | None = None


def _atomic_write(path: Path, text: str) -> WriteResult:
    """Replace path with text via a temp file in the same directory."""
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as exc:
        return WriteResult(ok=False, error=f"{path}: {exc}")
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
    return WriteResult(ok=True)


class ConversationStore:
    """One JSON record per conversation id under history_dir."""

    def __init__(self, history_dir: Path) -> None:
        self._history_dir = history_dir

    @property
    def history_dir(self) -> Path:
        return self._history_dir

    def path_for(self, conversation_id: int | str) -> Path:
        safe_id = _UNSAFE_ID_CHARS.sub("_", str(conversation_id))
        return self._history_dir / f"history_{safe_id}.json"

    def load(self, conversation_id: int | str) -> list[Turn]:
        """Return stored turns; a missing or unreadable record loads as empty memory."""
        path = self.path_for(conversation_id)
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("unreadable conversation record %s: %s", path, exc)
            return []
        if not isinstance(raw, list):
            return []
        turns: list[Turn] = []
        for item in raw:
            turn = Turn.from_dict(item)
            if turn is not None:
                turns.append(turn)
        return turns

    def save(self, conversation_id: int | str, turns: list[Turn]) -> WriteResult:
        payload = json.dumps([turn.to_dict() for turn in turns], ensure_ascii=False, indent=2)
        return _atomic_write(self.path_for(conversation_id), payload)


class CursorStore:
    """Persists the last processed update id as a single integer."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> int:
        if not self._path.exists():
            return 0
        raw = self._path.read_text(encoding="utf-8").strip()
        try:
            return int(raw)
        except ValueError:
            logger.warning("ignoring invalid cursor value in %s: %r", self._path, raw[:40])
            return 0

    def save(self, cursor: int) -> WriteResult:
        return _atomic_write(self._path, f"{int(cursor)}\n")

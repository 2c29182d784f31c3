"""Episodic journal of relay events (startup, dispatch outcomes, resets)."""

from __future__ import annotations

import json
import sqlite3
from typing import Any


class EpisodicMemoryStore:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def record(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        chat_id: int | str | None = None,
        outcome: str | None = None,
    ) -> int:
        cursor = self._conn.execute(
            """
            INSERT INTO relay_events (event_type, chat_id, outcome, payload)
            VALUES (?, ?, ?, ?)
            """,
            (
                event_type,
                None if chat_id is None else str(chat_id),
                outcome,
                json.dumps(payload, ensure_ascii=True),
            ),
        )
        self._conn.commit()
        return int(cursor.lastrowid)

    def latest(self, limit: int = 50, *, chat_id: int | str | None = None) -> list[dict[str, Any]]:
        if chat_id is None:
            rows = self._conn.execute(
                """
                SELECT id, event_type, chat_id, outcome, payload, created_at
                FROM relay_events
                ORDER BY id DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                """
                SELECT id, event_type, chat_id, outcome, payload, created_at
                FROM relay_events
                WHERE chat_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (str(chat_id), limit),
            ).fetchall()

        events: list[dict[str, Any]] = []
        for row in rows:
            event = dict(row)
            event["payload"] = json.loads(event["payload"])
            events.append(event)
        return events

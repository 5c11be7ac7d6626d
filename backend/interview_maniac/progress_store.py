from __future__ import annotations

import json
import sqlite3

from .db import connect, json_loads, safe_owner_scope
from .gamification import ActionCounters, GamificationRecord

# Record and counters live in one document so a single write keeps them in step.
CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS gamification_progress (
    owner_scope_id TEXT PRIMARY KEY,
    progress_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_TABLE_SQL)


def load_progress(*, owner_scope_id: str | None) -> tuple[GamificationRecord, ActionCounters]:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            "SELECT progress_json FROM gamification_progress WHERE owner_scope_id = ? LIMIT 1",
            (safe_owner_scope(owner_scope_id),),
        ).fetchone()

    if row is None:
        return GamificationRecord(), ActionCounters()

    document = json_loads(str(row["progress_json"]), fallback={})
    if not isinstance(document, dict):
        document = {}
    return GamificationRecord.from_dict(document.get("record")), ActionCounters.from_dict(document.get("counters"))


def save_progress(
    *,
    owner_scope_id: str | None,
    record: GamificationRecord,
    counters: ActionCounters,
) -> None:
    document = {"record": record.to_dict(), "counters": counters.to_dict()}
    with connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            INSERT INTO gamification_progress (owner_scope_id, progress_json)
            VALUES (?, ?)
            ON CONFLICT(owner_scope_id) DO UPDATE SET
                progress_json = excluded.progress_json,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            """,
            (safe_owner_scope(owner_scope_id), json.dumps(document, ensure_ascii=False)),
        )
        conn.commit()

from __future__ import annotations

import json
import sqlite3
from typing import Any

from .db import connect, json_loads, safe_owner_scope

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS abt_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_scope_id TEXT NOT NULL,
    role TEXT NOT NULL,
    industry TEXT NOT NULL,
    achievement TEXT NOT NULL,
    because TEXT NOT NULL,
    therefore TEXT NOT NULL,
    generated_story TEXT NOT NULL DEFAULT '',
    last_score_json TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

CREATE_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_abt_sessions_owner_created
ON abt_sessions (owner_scope_id, created_at DESC, id DESC);
"""

SELECT_COLUMNS = """
    id,
    owner_scope_id,
    role,
    industry,
    achievement,
    because,
    therefore,
    generated_story,
    last_score_json,
    created_at,
    updated_at
"""

DEFAULT_LIST_LIMIT = 5
MAX_LIST_LIMIT = 50


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_TABLE_SQL)
    conn.execute(CREATE_INDEX_SQL)


def _row_to_item(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": int(row["id"]),
        "owner_scope_id": str(row["owner_scope_id"]),
        "role": str(row["role"]),
        "industry": str(row["industry"]),
        "achievement": str(row["achievement"]),
        "because": str(row["because"]),
        "therefore": str(row["therefore"]),
        "generated_story": str(row["generated_story"] or ""),
        "last_score": json_loads(row["last_score_json"], fallback=None),
        "created_at": str(row["created_at"]),
        "updated_at": str(row["updated_at"]),
    }


def create_abt_session(
    *,
    owner_scope_id: str,
    role: str,
    industry: str,
    achievement: str,
    because: str,
    therefore: str,
    generated_story: str = "",
) -> dict[str, Any]:
    with connect() as conn:
        _ensure_schema(conn)
        cursor = conn.execute(
            """
            INSERT INTO abt_sessions (owner_scope_id, role, industry, achievement, because, therefore, generated_story)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                safe_owner_scope(owner_scope_id),
                role.strip(),
                industry.strip(),
                achievement.strip(),
                because.strip(),
                therefore.strip(),
                generated_story.strip(),
            ),
        )
        conn.commit()
        session_id = int(cursor.lastrowid)

    item = fetch_abt_session(session_id=session_id, owner_scope_id=owner_scope_id)
    if item is None:
        raise RuntimeError("abt session insert could not be read back")
    return item


def fetch_abt_session(*, session_id: int, owner_scope_id: str | None) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            f"""
            SELECT {SELECT_COLUMNS}
            FROM abt_sessions
            WHERE id = ? AND owner_scope_id = ?
            LIMIT 1
            """,
            (int(session_id), safe_owner_scope(owner_scope_id)),
        ).fetchone()

    if row is None:
        return None
    return _row_to_item(row)


def list_abt_sessions(*, owner_scope_id: str | None, limit: int = DEFAULT_LIST_LIMIT) -> list[dict[str, Any]]:
    safe_limit = max(1, min(MAX_LIST_LIMIT, int(limit)))
    with connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            f"""
            SELECT {SELECT_COLUMNS}
            FROM abt_sessions
            WHERE owner_scope_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (safe_owner_scope(owner_scope_id), safe_limit),
        ).fetchall()

    return [_row_to_item(row) for row in rows]


def fetch_abt_sessions_by_ids(*, session_ids: list[int], owner_scope_id: str | None) -> list[dict[str, Any]]:
    unique_ids: list[int] = []
    for value in session_ids:
        if int(value) not in unique_ids:
            unique_ids.append(int(value))
    if not unique_ids:
        return []

    placeholders = ", ".join(["?"] * len(unique_ids))
    with connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            f"""
            SELECT {SELECT_COLUMNS}
            FROM abt_sessions
            WHERE owner_scope_id = ? AND id IN ({placeholders})
            """,
            (safe_owner_scope(owner_scope_id), *unique_ids),
        ).fetchall()

    by_id = {int(row["id"]): _row_to_item(row) for row in rows}
    return [by_id[session_id] for session_id in unique_ids if session_id in by_id]


def attach_abt_score(*, session_id: int, owner_scope_id: str | None, score: dict[str, Any]) -> bool:
    with connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(
            """
            UPDATE abt_sessions
            SET last_score_json = ?,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE id = ? AND owner_scope_id = ?
            """,
            (json.dumps(score, ensure_ascii=False), int(session_id), safe_owner_scope(owner_scope_id)),
        ).rowcount
        conn.commit()

    return bool(affected)

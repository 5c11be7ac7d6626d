from __future__ import annotations

import hashlib
import re
import secrets
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any

from .db import connect

CREATE_ACCOUNTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS user_accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL DEFAULT '',
    password_hash TEXT NOT NULL,
    password_salt TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

CREATE_AUTH_TOKENS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS auth_tokens (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    token_hash TEXT NOT NULL UNIQUE,
    is_revoked INTEGER NOT NULL DEFAULT 0,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    FOREIGN KEY(user_id) REFERENCES user_accounts(id)
);
"""

CREATE_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_auth_tokens_user
ON auth_tokens (user_id, created_at DESC);
"""

EMAIL_PATTERN = re.compile(r"^[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}$", re.IGNORECASE)
MIN_PASSWORD_LENGTH = 6
PBKDF2_ITERATIONS = 120_000

VERIFY_REASON_NOT_FOUND = "NOT_FOUND"
VERIFY_REASON_ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
VERIFY_REASON_INVALID_PASSWORD = "INVALID_PASSWORD"


class AccountExistsError(ValueError):
    pass


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_ACCOUNTS_TABLE_SQL)
    conn.execute(CREATE_AUTH_TOKENS_TABLE_SQL)
    conn.execute(CREATE_INDEX_SQL)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_utc(value: str) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def _hash_password(*, password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), PBKDF2_ITERATIONS).hex()


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _public_user(row: sqlite3.Row) -> dict[str, Any]:
    return {"id": int(row["id"]), "email": str(row["email"]), "displayName": str(row["display_name"])}


def create_account(*, email: str, password: str, display_name: str = "") -> dict[str, Any]:
    safe_email = normalize_email(email)
    if not EMAIL_PATTERN.match(safe_email):
        raise ValueError("email is invalid")
    if len(password.strip()) < MIN_PASSWORD_LENGTH:
        raise ValueError("password too short")

    salt = secrets.token_hex(16)
    password_hash = _hash_password(password=password.strip(), salt=salt)

    with connect() as conn:
        _ensure_schema(conn)
        try:
            cursor = conn.execute(
                """
                INSERT INTO user_accounts (email, display_name, password_hash, password_salt)
                VALUES (?, ?, ?, ?)
                """,
                (safe_email, display_name.strip(), password_hash, salt),
            )
        except sqlite3.IntegrityError as exc:
            raise AccountExistsError("account already exists") from exc
        conn.commit()
        user_id = int(cursor.lastrowid)

    return {"id": user_id, "email": safe_email, "displayName": display_name.strip()}


def verify_account_with_reason(*, email: str, password: str) -> tuple[dict[str, Any] | None, str | None]:
    safe_email = normalize_email(email)
    safe_password = password.strip()
    if not safe_email or not safe_password:
        return None, VERIFY_REASON_NOT_FOUND

    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            """
            SELECT id, email, display_name, password_hash, password_salt, is_active
            FROM user_accounts
            WHERE email = ?
            LIMIT 1
            """,
            (safe_email,),
        ).fetchone()

    if row is None:
        return None, VERIFY_REASON_NOT_FOUND
    if int(row["is_active"]) != 1:
        return None, VERIFY_REASON_ACCOUNT_INACTIVE

    actual_hash = _hash_password(password=safe_password, salt=str(row["password_salt"]))
    if not secrets.compare_digest(str(row["password_hash"]), actual_hash):
        return None, VERIFY_REASON_INVALID_PASSWORD

    return _public_user(row), None


def create_auth_token(*, user_id: int, ttl_seconds: int) -> dict[str, Any]:
    safe_ttl = max(300, int(ttl_seconds))
    expires_at = (_utc_now() + timedelta(seconds=safe_ttl)).isoformat()
    raw_token = secrets.token_urlsafe(48)

    with connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            "INSERT INTO auth_tokens (user_id, token_hash, expires_at) VALUES (?, ?, ?)",
            (int(user_id), _hash_token(raw_token), expires_at),
        )
        conn.commit()

    return {"token": raw_token, "expires_at": expires_at, "ttl_seconds": safe_ttl}


def validate_auth_token(*, token: str) -> dict[str, Any] | None:
    safe_token = token.strip()
    if not safe_token:
        return None

    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            """
            SELECT t.user_id, t.is_revoked, t.expires_at, u.email, u.display_name, u.is_active
            FROM auth_tokens t
            JOIN user_accounts u ON u.id = t.user_id
            WHERE t.token_hash = ?
            LIMIT 1
            """,
            (_hash_token(safe_token),),
        ).fetchone()

    if row is None or int(row["is_revoked"]) == 1 or int(row["is_active"]) != 1:
        return None

    expires_at = _parse_utc(str(row["expires_at"]))
    if expires_at is None or expires_at <= _utc_now():
        return None

    return {
        "id": int(row["user_id"]),
        "email": str(row["email"]),
        "displayName": str(row["display_name"]),
        "expiresAt": str(row["expires_at"]),
    }


def revoke_auth_token(*, token: str) -> bool:
    safe_token = token.strip()
    if not safe_token:
        return False

    with connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(
            "UPDATE auth_tokens SET is_revoked = 1 WHERE token_hash = ? AND is_revoked = 0",
            (_hash_token(safe_token),),
        ).rowcount
        conn.commit()

    return bool(affected)

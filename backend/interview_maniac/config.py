from __future__ import annotations

import os


def get_env_int(name: str, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw) if raw else int(default)
    except (TypeError, ValueError):
        value = int(default)

    if min_value is not None:
        value = max(min_value, value)
    if max_value is not None:
        value = min(max_value, value)
    return value


def get_env_float(name: str, default: float, *, min_value: float, max_value: float) -> float:
    raw = os.getenv(name, "").strip()
    try:
        value = float(raw) if raw else float(default)
    except (TypeError, ValueError):
        value = float(default)
    return max(min_value, min(max_value, value))


def get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def get_env_str(name: str, default: str) -> str:
    return os.getenv(name, "").strip() or default


DEFAULT_GEMINI_MODEL = "gemini-1.5-flash"
DEFAULT_SCORING_MODEL = "gemini-1.5-pro"
GEMINI_ENDPOINT_TEMPLATE = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


def get_gemini_api_key() -> str:
    return os.getenv("GEMINI_API_KEY", "").strip()


def get_gemini_model() -> str:
    return get_env_str("GEMINI_MODEL", DEFAULT_GEMINI_MODEL)


def get_scoring_model() -> str:
    return get_env_str("GEMINI_SCORING_MODEL", DEFAULT_SCORING_MODEL)


def get_gemini_timeout_seconds() -> float:
    return get_env_float("INTERVIEW_MANIAC_GEMINI_TIMEOUT_SECONDS", 20.0, min_value=1.0, max_value=120.0)


def is_gemini_enabled() -> bool:
    return get_env_bool("INTERVIEW_MANIAC_GEMINI_ENABLED", True)


def is_login_required_for_sessions() -> bool:
    return get_env_bool("INTERVIEW_MANIAC_REQUIRE_LOGIN_FOR_SESSIONS", True)


def get_batch_size() -> int:
    return get_env_int("INTERVIEW_MANIAC_BATCH_SIZE", 3, min_value=1, max_value=10)


def get_batch_delay_seconds() -> float:
    return get_env_int("INTERVIEW_MANIAC_BATCH_DELAY_MS", 1000, min_value=0, max_value=60_000) / 1000.0

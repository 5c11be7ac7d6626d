from __future__ import annotations

import json
import logging
import re
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import date, datetime, timezone
from threading import Lock
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, field_validator

from . import gemini
from .auth_store import (
    VERIFY_REASON_ACCOUNT_INACTIVE,
    AccountExistsError,
    create_account,
    create_auth_token,
    revoke_auth_token,
    validate_auth_token,
    verify_account_with_reason,
)
from .config import (
    get_batch_delay_seconds,
    get_batch_size,
    get_env_int,
    get_gemini_api_key,
    is_gemini_enabled,
    is_login_required_for_sessions,
)
from .gamification import (
    ACTION_LABELS,
    ActionCounters,
    ActionKind,
    GamificationRecord,
    achievement_catalog,
    progress_summary,
    record_action,
)
from .progress_store import load_progress, save_progress
from .prompts import (
    PROMPT_VERSION,
    STRUCTURED_GENERATION_TYPES,
    GenerationType,
    RoleLevel,
    StoryFocus,
    build_criteria_scoring_prompt,
    build_generation_prompt,
    build_improve_story_prompt,
    build_story_generation_prompt,
)
from .scoring import Recommendation, ScoreFeedback, RubricScores
from .scoring_service import (
    AbtStory,
    BatchScoreItem,
    ScoringOutcome,
    StoryValidationError,
    score_abt_stories,
    score_abt_story,
    validate_abt_story,
)
from .story_store import (
    attach_abt_score,
    create_abt_session,
    fetch_abt_session,
    fetch_abt_sessions_by_ids,
    list_abt_sessions,
)

MAX_TEXT_LENGTH = 20_000
MAX_FIELD_LENGTH = 4_000
DEFAULT_SESSION_LIST_LIMIT = get_env_int("INTERVIEW_MANIAC_SESSION_LIST_LIMIT", 5, min_value=1, max_value=50)
MAX_BATCH_SESSIONS = 30
AUTH_TOKEN_TTL_SECONDS = get_env_int("INTERVIEW_MANIAC_AUTH_SESSION_TTL_SECONDS", 7 * 24 * 3600, min_value=300, max_value=30 * 24 * 3600)
AUTH_LOGIN_FAIL_LIMIT = get_env_int("INTERVIEW_MANIAC_AUTH_LOGIN_FAIL_LIMIT", 6, min_value=2, max_value=100)
AUTH_LOGIN_FAIL_WINDOW_SECONDS = get_env_int("INTERVIEW_MANIAC_AUTH_LOGIN_FAIL_WINDOW_SECONDS", 5 * 60, min_value=10, max_value=24 * 3600)
AUTH_LOGIN_LOCK_SECONDS = get_env_int("INTERVIEW_MANIAC_AUTH_LOGIN_LOCK_SECONDS", 5 * 60, min_value=10, max_value=24 * 3600)
RATE_LIMIT_PER_MINUTE = get_env_int("INTERVIEW_MANIAC_RATE_LIMIT_PER_MINUTE", 20, min_value=1, max_value=500)

SESSION_COOKIE = "interview_maniac_session"
AUTH_COOKIE = "interview_maniac_auth"
UPSTREAM_FAILURE_MESSAGE = "Failed to reach the AI service. Please try again later."
UNPARSED_SCORE_MESSAGE = "Unable to parse detailed scoring. Please try again."
UNPARSED_RATIONALE = "Unable to parse detailed rationale from response"

ERROR_CODE_BY_STATUS = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "TOO_MANY_REQUESTS",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger("interview_maniac.api")


def _strip_text(value: str | None) -> str | None:
    if value is None:
        return None
    return re.sub(r"\u0000", "", value).strip()


class AuthCredentialsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=256)


class AuthSignupRequest(AuthCredentialsRequest):
    displayName: str = Field(default="", max_length=80)


class AuthUser(BaseModel):
    id: int
    email: str
    displayName: str = ""


class AuthTokenResponse(BaseModel):
    requestId: str
    user: AuthUser
    token: str
    expiresAt: str


class AuthMeResponse(BaseModel):
    requestId: str
    user: AuthUser
    expiresAt: str


class AuthLogoutResponse(BaseModel):
    requestId: str
    revoked: bool


class GenerateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)
    type: GenerationType = "general"
    context: str | None = Field(default=None, max_length=MAX_TEXT_LENGTH)

    @field_validator("prompt", "context")
    @classmethod
    def normalize_text(cls, value: str | None) -> str | None:
        return _strip_text(value)


class GenerateResponse(BaseModel):
    requestId: str
    success: bool = True
    type: GenerationType
    parsed: bool
    data: Any


class ImproveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    story: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)
    role: str = Field(min_length=1, max_length=MAX_FIELD_LENGTH)
    industry: str = Field(min_length=1, max_length=MAX_FIELD_LENGTH)
    feedback: str | None = Field(default=None, max_length=MAX_TEXT_LENGTH)

    @field_validator("story", "role", "industry")
    @classmethod
    def require_non_blank(cls, value: str) -> str:
        normalized = _strip_text(value) or ""
        if not normalized:
            raise ValueError("text cannot be blank")
        return normalized


class ImproveResponse(BaseModel):
    requestId: str
    improvedStory: str
    rationale: str
    parsed: bool


class CriteriaScoreRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)
    criteria: list[str] | None = Field(default=None, max_length=12)


class CriteriaScoreData(BaseModel):
    overallScore: float
    criteriaScores: dict[str, float]
    feedback: str
    strengths: list[str]
    improvements: list[str]


class CriteriaScoreResponse(BaseModel):
    requestId: str
    success: bool = True
    parsed: bool
    data: CriteriaScoreData


class AbtStoryFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: str = Field(default="", max_length=MAX_FIELD_LENGTH)
    industry: str = Field(default="", max_length=MAX_FIELD_LENGTH)
    achievement: str = Field(default="", max_length=MAX_FIELD_LENGTH)
    because: str = Field(default="", max_length=MAX_FIELD_LENGTH)
    therefore: str = Field(default="", max_length=MAX_FIELD_LENGTH)

    def to_story(self) -> AbtStory:
        return AbtStory(
            role=self.role,
            industry=self.industry,
            achievement=self.achievement,
            because=self.because,
            therefore=self.therefore,
        )


class AbtScoreRequest(AbtStoryFields):
    includeImprovements: bool = False
    model: str | None = Field(default=None, max_length=80)
    sessionId: int | None = Field(default=None, ge=1)


class AbtScoreResponse(BaseModel):
    requestId: str
    scores: RubricScores
    totalScore: int
    averageScore: float
    feedback: ScoreFeedback
    overallAssessment: str
    category: str
    recommendations: Recommendation
    parsed: bool
    model: str
    timestamp: str
    processingTimeMs: int
    sessionId: str | None = None
    promptVersion: str = PROMPT_VERSION


class AbtGenerateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: str = Field(min_length=1, max_length=MAX_FIELD_LENGTH)
    industry: str = Field(min_length=1, max_length=MAX_FIELD_LENGTH)
    focus: StoryFocus = "basic"
    roleLevel: RoleLevel | None = None
    notes: str | None = Field(default=None, max_length=MAX_TEXT_LENGTH)


class AbtGenerateResponse(BaseModel):
    requestId: str
    accomplishment: str
    because: str
    therefore: str
    fullStory: str
    parsed: bool


class Achievement(BaseModel):
    id: str
    name: str
    description: str
    kind: str
    threshold: int


class AchievementListResponse(BaseModel):
    requestId: str
    items: list[Achievement]


class SessionCreateRequest(AbtStoryFields):
    generatedStory: str = Field(default="", max_length=MAX_TEXT_LENGTH)


class SessionItem(BaseModel):
    id: int
    role: str
    industry: str
    achievement: str
    because: str
    therefore: str
    generatedStory: str
    lastScore: dict[str, Any] | None
    createdAt: str
    updatedAt: str


class SessionDetailResponse(BaseModel):
    requestId: str
    item: SessionItem


class SessionListResponse(BaseModel):
    requestId: str
    items: list[SessionItem]


class BatchScoreRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sessionIds: list[int] | None = Field(default=None, max_length=MAX_BATCH_SESSIONS)
    limit: int = Field(default=5, ge=1, le=MAX_BATCH_SESSIONS)
    model: str | None = Field(default=None, max_length=80)


class BatchScoreResultItem(BaseModel):
    sessionId: str
    ok: bool
    totalScore: int | None = None
    averageScore: float | None = None
    category: str | None = None
    parsed: bool | None = None
    error: str | None = None


class BatchScoreResponse(BaseModel):
    requestId: str
    items: list[BatchScoreResultItem]
    succeeded: int
    failed: int


class GamificationState(BaseModel):
    points: int
    level: int
    streakDays: int
    lastActivityDate: str
    totalSessions: int
    achievements: list[str]


class ProgressResponse(BaseModel):
    requestId: str
    record: GamificationState
    counters: dict[str, int]
    pointsToNextLevel: int
    levelProgressPercent: int


class RecordActionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: ActionKind
    today: date | None = None


class RecordActionResponse(ProgressResponse):
    action: ActionKind
    actionLabel: str
    pointsEarned: int
    newlyUnlocked: list[str]


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_seconds: int
    message: str | None = None


class AuthLoginRateLimiter:
    def __init__(self, *, fail_limit: int, window_seconds: int, lock_seconds: int):
        self.fail_limit = max(2, int(fail_limit))
        self.window_seconds = max(10, int(window_seconds))
        self.lock_seconds = max(10, int(lock_seconds))
        self._failures: dict[str, deque[float]] = defaultdict(deque)
        self._blocked_until: dict[str, float] = {}
        self._lock = Lock()

    def _recent_failures(self, key: str, now: float) -> deque[float]:
        queue = self._failures[key]
        while queue and now - queue[0] > self.window_seconds:
            queue.popleft()
        return queue

    def check(self, *, key: str) -> RateLimitDecision:
        now = time.time()
        with self._lock:
            blocked_until = self._blocked_until.get(key, 0.0)
            if blocked_until > now:
                reset_seconds = int(max(1, blocked_until - now))
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_seconds=reset_seconds,
                    message=f"Too many failed login attempts. Retry in {reset_seconds}s",
                )
            self._blocked_until.pop(key, None)
            remaining = max(0, self.fail_limit - len(self._recent_failures(key, now)))
            return RateLimitDecision(allowed=True, remaining=remaining, reset_seconds=self.window_seconds)

    def register_failure(self, *, key: str) -> RateLimitDecision:
        now = time.time()
        with self._lock:
            queue = self._recent_failures(key, now)
            queue.append(now)
            if len(queue) >= self.fail_limit:
                self._blocked_until[key] = now + self.lock_seconds
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_seconds=self.lock_seconds,
                    message=f"Too many failed login attempts. Retry in {self.lock_seconds}s",
                )
            return RateLimitDecision(
                allowed=True,
                remaining=max(0, self.fail_limit - len(queue)),
                reset_seconds=self.window_seconds,
            )

    def register_success(self, *, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)
            self._blocked_until.pop(key, None)


class SessionRateLimiter:
    def __init__(self, *, limit: int, window_seconds: int):
        self.limit = max(1, limit)
        self.window_seconds = max(1, window_seconds)
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def consume(self, *, session_id: str) -> RateLimitDecision:
        now = time.time()
        with self._lock:
            queue = self._hits[session_id]
            while queue and now - queue[0] > self.window_seconds:
                queue.popleft()

            if len(queue) >= self.limit:
                reset_seconds = int(max(1, self.window_seconds - (now - queue[0])))
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_seconds=reset_seconds,
                    message=f"Rate limit exceeded. Retry in {reset_seconds}s",
                )

            queue.append(now)
            return RateLimitDecision(
                allowed=True,
                remaining=max(0, self.limit - len(queue)),
                reset_seconds=self.window_seconds,
            )


class MetricsTracker:
    def __init__(self) -> None:
        self._lock = Lock()
        self._request_total = 0
        self._path_counts: dict[str, int] = defaultdict(int)
        self._status_counts: dict[str, int] = defaultdict(int)
        self._error_counts: dict[str, int] = defaultdict(int)
        self._latencies_by_path: dict[str, deque[int]] = defaultdict(lambda: deque(maxlen=500))

    def record(self, *, path: str, status: int, duration_ms: int, error_code: str | None) -> None:
        with self._lock:
            self._request_total += 1
            self._path_counts[path] += 1
            self._status_counts[str(status)] += 1
            self._latencies_by_path[path].append(max(0, duration_ms))
            if error_code:
                self._error_counts[error_code] += 1

    @staticmethod
    def _percentile(values: list[int], p: float) -> int:
        if not values:
            return 0
        ranked = sorted(values)
        idx = int(round((len(ranked) - 1) * p))
        return ranked[max(0, min(idx, len(ranked) - 1))]

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "generatedAt": datetime.now(timezone.utc).isoformat(),
                "requestTotal": self._request_total,
                "pathCounts": dict(self._path_counts),
                "statusCounts": dict(self._status_counts),
                "errorCounts": dict(self._error_counts),
                "latency": {
                    path: {
                        "count": len(values),
                        "p50_ms": self._percentile(list(values), 0.5),
                        "p95_ms": self._percentile(list(values), 0.95),
                    }
                    for path, values in self._latencies_by_path.items()
                },
            }


RATE_LIMITER = SessionRateLimiter(limit=RATE_LIMIT_PER_MINUTE, window_seconds=60)
AUTH_LOGIN_RATE_LIMITER = AuthLoginRateLimiter(
    fail_limit=AUTH_LOGIN_FAIL_LIMIT,
    window_seconds=AUTH_LOGIN_FAIL_WINDOW_SECONDS,
    lock_seconds=AUTH_LOGIN_LOCK_SECONDS,
)
METRICS = MetricsTracker()


def is_public_path(path: str) -> bool:
    return path in {
        "/health",
        "/openapi.json",
        "/docs",
        "/docs/oauth2-redirect",
        "/redoc",
        "/api/auth/login",
        "/api/auth/signup",
    }


def validate_session_id(session_id: str) -> bool:
    if not session_id:
        return False
    return bool(re.fullmatch(r"[A-Za-z0-9][A-Za-z0-9._:-]{2,127}", session_id))


def parse_auth_token(request: Request) -> str:
    header_token = request.headers.get("x-auth-token", "").strip()
    if header_token:
        return header_token

    auth_header = request.headers.get("authorization", "").strip()
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()

    return request.cookies.get(AUTH_COOKIE, "").strip()


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", str(uuid.uuid4()))


def get_session_id(request: Request) -> str:
    return getattr(request.state, "session_id", "anonymous")


def get_current_user(request: Request) -> dict[str, Any] | None:
    user = getattr(request.state, "current_user", None)
    return user if isinstance(user, dict) else None


def get_owner_scope_id(request: Request) -> str:
    user = get_current_user(request)
    if user is not None:
        return f"user:{int(user['id'])}"
    return f"session:{get_session_id(request)}"


def set_error_context(request: Request, *, error_code: str, exception_type: str) -> None:
    request.state.error_code = error_code
    request.state.exception_type = exception_type


def build_error_payload(*, code: str, message: str, request_id: str) -> dict[str, str]:
    return {
        "code": code,
        "message": message,
        "requestId": request_id,
    }


def raise_api_error(
    *,
    status_code: int,
    code: str,
    message: str,
    extra: dict[str, Any] | None = None,
) -> None:
    detail: dict[str, Any] = {"code": code, "message": message}
    if isinstance(extra, dict):
        detail.update(extra)
    raise HTTPException(status_code=status_code, detail=detail)


def require_current_user(request: Request) -> dict[str, Any]:
    user = get_current_user(request)
    if user is None:
        raise_api_error(status_code=401, code="AUTH_LOGIN_REQUIRED", message="login required")
    return user


def resolve_story_owner(request: Request) -> str:
    if is_login_required_for_sessions():
        require_current_user(request)
    return get_owner_scope_id(request)


def apply_rate_limit_or_raise(request: Request) -> None:
    decision = RATE_LIMITER.consume(session_id=get_owner_scope_id(request))
    request.state.rate_limit = {
        "x-ratelimit-limit": str(RATE_LIMITER.limit),
        "x-ratelimit-remaining": str(decision.remaining),
        "x-ratelimit-reset-sec": str(decision.reset_seconds),
    }
    if not decision.allowed:
        raise HTTPException(status_code=429, detail=decision.message or "Rate limit exceeded")


def ensure_gemini_available() -> None:
    if not is_gemini_enabled():
        raise_api_error(status_code=503, code="GEMINI_UNAVAILABLE", message="AI generation is disabled")
    if not get_gemini_api_key():
        raise_api_error(status_code=503, code="GEMINI_UNAVAILABLE", message="Server configuration error: missing API key")


def raise_upstream_error(exc: Exception, *, event: str) -> None:
    logger.warning(
        json.dumps(
            {"event": event, "reason": str(exc), "exception_type": type(exc).__name__},
            ensure_ascii=False,
        )
    )
    raise_api_error(status_code=502, code="UPSTREAM_ERROR", message=UPSTREAM_FAILURE_MESSAGE)


def call_gemini_or_raise(prompt: str, *, event: str, json_mode: bool = False) -> str:
    try:
        return gemini.call_gemini(prompt, json_mode=json_mode)
    except (gemini.GeminiError, httpx.HTTPError) as exc:
        raise_upstream_error(exc, event=event)
    return ""


def format_session_item(row: dict[str, Any]) -> SessionItem:
    last_score = row.get("last_score")
    return SessionItem(
        id=int(row["id"]),
        role=str(row["role"]),
        industry=str(row["industry"]),
        achievement=str(row["achievement"]),
        because=str(row["because"]),
        therefore=str(row["therefore"]),
        generatedStory=str(row.get("generated_story", "")),
        lastScore=last_score if isinstance(last_score, dict) else None,
        createdAt=str(row["created_at"]),
        updatedAt=str(row["updated_at"]),
    )


def story_from_row(row: dict[str, Any]) -> AbtStory:
    return AbtStory.from_mapping(row)


def score_snapshot(outcome: ScoringOutcome) -> dict[str, Any]:
    return {
        **outcome.result.model_dump(),
        "category": outcome.category.value,
        "model": outcome.model,
        "timestamp": outcome.timestamp,
        "parsed": outcome.parsed,
    }


def format_score_response(request: Request, outcome: ScoringOutcome) -> AbtScoreResponse:
    result = outcome.result
    return AbtScoreResponse(
        requestId=get_request_id(request),
        scores=result.scores,
        totalScore=result.totalScore,
        averageScore=result.averageScore,
        feedback=result.feedback,
        overallAssessment=result.overallAssessment,
        category=outcome.category.value,
        recommendations=outcome.recommendation,
        parsed=outcome.parsed,
        model=outcome.model,
        timestamp=outcome.timestamp,
        processingTimeMs=outcome.processing_time_ms,
        sessionId=outcome.session_id,
    )


def format_batch_item(item: BatchScoreItem) -> BatchScoreResultItem:
    if not item.ok or item.outcome is None:
        return BatchScoreResultItem(sessionId=item.session_id, ok=False, error=item.error or "scoring failed")
    return BatchScoreResultItem(
        sessionId=item.session_id,
        ok=True,
        totalScore=item.outcome.result.totalScore,
        averageScore=item.outcome.result.averageScore,
        category=item.outcome.category.value,
        parsed=item.outcome.parsed,
    )


def clamp_criteria_score(value: object) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        return 0.0
    if number != number:
        return 0.0
    return max(0.0, min(10.0, number))


def normalize_criteria_score(raw: dict[str, Any]) -> CriteriaScoreData:
    criteria_raw = raw.get("criteriaScores")
    criteria_scores = (
        {str(name): clamp_criteria_score(value) for name, value in criteria_raw.items()}
        if isinstance(criteria_raw, dict)
        else {}
    )
    feedback = raw.get("feedback")
    return CriteriaScoreData(
        overallScore=clamp_criteria_score(raw.get("overallScore")),
        criteriaScores=criteria_scores,
        feedback=feedback.strip() if isinstance(feedback, str) else "",
        strengths=[str(item).strip() for item in raw.get("strengths") or [] if str(item).strip()]
        if isinstance(raw.get("strengths"), list)
        else [],
        improvements=[str(item).strip() for item in raw.get("improvements") or [] if str(item).strip()]
        if isinstance(raw.get("improvements"), list)
        else [],
    )


def build_progress_payload(record: GamificationRecord, counters: ActionCounters) -> dict[str, Any]:
    return {
        "record": GamificationState(**record.to_dict()),
        "counters": counters.to_dict(),
        **progress_summary(record),
    }


def log_request_event(
    *,
    path: str,
    method: str,
    status: int,
    duration_ms: int,
    request_id: str,
    session_id: str,
    error_code: str | None,
    exception_type: str | None,
) -> None:
    logger.info(
        json.dumps(
            {
                "path": path,
                "method": method,
                "status": status,
                "duration_ms": duration_ms,
                "requestId": request_id,
                "sessionId": session_id,
                "error_code": error_code,
                "exception_type": exception_type,
            },
            ensure_ascii=False,
        )
    )


app = FastAPI(title="Interview Maniac API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def observability_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    inbound_session_id = request.headers.get("x-session-id") or request.cookies.get(SESSION_COOKIE) or ""

    request.state.request_id = request_id
    request.state.error_code = None
    request.state.exception_type = None
    request.state.current_user = None

    started_at = time.perf_counter()
    is_preflight_request = request.method.upper() == "OPTIONS"

    if inbound_session_id and not is_preflight_request and not validate_session_id(inbound_session_id):
        inbound_session_id = ""
        set_error_context(request, error_code="BAD_REQUEST", exception_type="InvalidSessionId")

    session_id = inbound_session_id or str(uuid.uuid4())
    request.state.session_id = session_id

    auth_token = parse_auth_token(request)
    if auth_token and not is_preflight_request:
        user = validate_auth_token(token=auth_token)
        if user is None:
            if not is_public_path(request.url.path):
                set_error_context(request, error_code="UNAUTHORIZED", exception_type="InvalidAuthToken")
        else:
            request.state.current_user = user

    def finalize(response: Response) -> Response:
        duration_ms = int((time.perf_counter() - started_at) * 1000)

        rate_limit_headers = getattr(request.state, "rate_limit", None)
        if isinstance(rate_limit_headers, dict):
            for key, value in rate_limit_headers.items():
                response.headers[key] = value

        response.headers["x-request-id"] = request_id
        response.headers["x-session-id"] = session_id
        response.set_cookie(SESSION_COOKIE, session_id, httponly=True, samesite="lax")

        error_code = getattr(request.state, "error_code", None)
        METRICS.record(
            path=request.url.path,
            status=response.status_code,
            duration_ms=duration_ms,
            error_code=error_code,
        )
        log_request_event(
            path=request.url.path,
            method=request.method,
            status=response.status_code,
            duration_ms=duration_ms,
            request_id=request_id,
            session_id=session_id,
            error_code=error_code,
            exception_type=getattr(request.state, "exception_type", None),
        )
        return response

    exception_type = getattr(request.state, "exception_type", "")
    if exception_type == "InvalidSessionId":
        return finalize(
            JSONResponse(
                status_code=400,
                content=build_error_payload(code="BAD_REQUEST", message="x-session-id is invalid", request_id=request_id),
            )
        )

    if exception_type == "InvalidAuthToken":
        return finalize(
            JSONResponse(
                status_code=401,
                content=build_error_payload(
                    code="UNAUTHORIZED",
                    message="invalid or expired auth token",
                    request_id=request_id,
                ),
            )
        )

    response = await call_next(request)
    return finalize(response)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def issue_token_response(request: Request, response: Response, user: dict[str, Any]) -> AuthTokenResponse:
    issued = create_auth_token(user_id=int(user["id"]), ttl_seconds=AUTH_TOKEN_TTL_SECONDS)
    response.set_cookie(
        AUTH_COOKIE,
        issued["token"],
        httponly=True,
        samesite="lax",
        max_age=int(issued["ttl_seconds"]),
    )
    return AuthTokenResponse(
        requestId=get_request_id(request),
        user=AuthUser(id=int(user["id"]), email=str(user["email"]), displayName=str(user.get("displayName", ""))),
        token=str(issued["token"]),
        expiresAt=str(issued["expires_at"]),
    )


@app.post("/api/auth/signup", response_model=AuthTokenResponse)
def auth_signup(payload: AuthSignupRequest, request: Request, response: Response) -> AuthTokenResponse:
    try:
        user = create_account(email=payload.email, password=payload.password, display_name=payload.displayName)
    except AccountExistsError:
        raise_api_error(status_code=409, code="AUTH_ACCOUNT_EXISTS", message="an account with this email already exists")
    except ValueError as exc:
        raise_api_error(status_code=400, code="BAD_REQUEST", message=str(exc))

    logger.info(json.dumps({"event": "account_created", "userId": user["id"]}, ensure_ascii=False))
    return issue_token_response(request, response, user)


@app.post("/api/auth/login", response_model=AuthTokenResponse)
def auth_login(payload: AuthCredentialsRequest, request: Request, response: Response) -> AuthTokenResponse:
    client_host = request.client.host if request.client else "unknown"
    limiter_key = f"{client_host}:{payload.email.strip().lower()}"
    pre_check = AUTH_LOGIN_RATE_LIMITER.check(key=limiter_key)
    if not pre_check.allowed:
        raise_api_error(
            status_code=429,
            code="AUTH_LOGIN_RATE_LIMITED",
            message=pre_check.message or "Too many failed login attempts",
            extra={"retryAfterSec": pre_check.reset_seconds},
        )

    user, verify_reason = verify_account_with_reason(email=payload.email, password=payload.password)
    if user is None:
        if verify_reason == VERIFY_REASON_ACCOUNT_INACTIVE:
            raise_api_error(status_code=403, code="AUTH_ACCOUNT_DISABLED", message="account is disabled")

        fail_decision = AUTH_LOGIN_RATE_LIMITER.register_failure(key=limiter_key)
        if not fail_decision.allowed:
            raise_api_error(
                status_code=429,
                code="AUTH_LOGIN_RATE_LIMITED",
                message=fail_decision.message or "Too many failed login attempts",
                extra={"retryAfterSec": fail_decision.reset_seconds},
            )
        raise_api_error(status_code=401, code="AUTH_INVALID_CREDENTIALS", message="invalid email or password")

    AUTH_LOGIN_RATE_LIMITER.register_success(key=limiter_key)
    return issue_token_response(request, response, user)


@app.get("/api/auth/me", response_model=AuthMeResponse)
def auth_me(request: Request) -> AuthMeResponse:
    user = require_current_user(request)
    return AuthMeResponse(
        requestId=get_request_id(request),
        user=AuthUser(id=int(user["id"]), email=str(user["email"]), displayName=str(user.get("displayName", ""))),
        expiresAt=str(user.get("expiresAt", "")),
    )


@app.post("/api/auth/logout", response_model=AuthLogoutResponse)
def auth_logout(request: Request, response: Response) -> AuthLogoutResponse:
    token = parse_auth_token(request)
    if not token:
        raise_api_error(status_code=401, code="AUTH_TOKEN_REQUIRED", message="auth token is required")

    revoked = revoke_auth_token(token=token)
    response.delete_cookie(AUTH_COOKIE)
    return AuthLogoutResponse(requestId=get_request_id(request), revoked=revoked)


@app.post("/api/gemini/generate", response_model=GenerateResponse)
def generate_endpoint(payload: GenerateRequest, request: Request) -> GenerateResponse:
    ensure_gemini_available()
    apply_rate_limit_or_raise(request)

    prompt = build_generation_prompt(prompt=payload.prompt, generation_type=payload.type, context=payload.context)
    text = call_gemini_or_raise(prompt, event="generate_failed")

    data: Any = {"content": text}
    parsed = False
    if payload.type in STRUCTURED_GENERATION_TYPES:
        result = gemini.parse_json_response(text, expect="any")
        if result.ok:
            data = result.value
            parsed = True

    return GenerateResponse(requestId=get_request_id(request), type=payload.type, parsed=parsed, data=data)


@app.post("/api/gemini/improve", response_model=ImproveResponse)
def improve_endpoint(payload: ImproveRequest, request: Request) -> ImproveResponse:
    ensure_gemini_available()
    apply_rate_limit_or_raise(request)

    prompt = build_improve_story_prompt(
        story=payload.story,
        role=payload.role,
        industry=payload.industry,
        feedback=payload.feedback,
    )
    text = call_gemini_or_raise(prompt, event="improve_failed")

    result = gemini.parse_json_response(text, expect="object")
    if result.ok:
        improved = str(result.value.get("improvedStory") or "").strip()
        rationale = str(result.value.get("rationale") or "").strip()
        if improved and rationale:
            return ImproveResponse(
                requestId=get_request_id(request),
                improvedStory=improved,
                rationale=rationale,
                parsed=True,
            )

    logger.warning(json.dumps({"event": "improve_parse_fallback", "reason": result.error or "missing fields"}))
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return ImproveResponse(
        requestId=get_request_id(request),
        improvedStory=lines[0] if lines else payload.story,
        rationale=UNPARSED_RATIONALE,
        parsed=False,
    )


@app.post("/api/gemini/score", response_model=CriteriaScoreResponse)
def criteria_score_endpoint(payload: CriteriaScoreRequest, request: Request) -> CriteriaScoreResponse:
    ensure_gemini_available()
    apply_rate_limit_or_raise(request)

    prompt = build_criteria_scoring_prompt(content=payload.content, criteria=payload.criteria)
    text = call_gemini_or_raise(prompt, event="criteria_score_failed")

    result = gemini.parse_json_response(text, expect="object")
    if result.ok:
        data = normalize_criteria_score(result.value)
    else:
        data = CriteriaScoreData(
            overallScore=0,
            criteriaScores={},
            feedback=text,
            strengths=[],
            improvements=[UNPARSED_SCORE_MESSAGE],
        )

    return CriteriaScoreResponse(requestId=get_request_id(request), parsed=result.ok, data=data)


@app.post("/api/abt/generate", response_model=AbtGenerateResponse)
def abt_generate_endpoint(payload: AbtGenerateRequest, request: Request) -> AbtGenerateResponse:
    ensure_gemini_available()
    apply_rate_limit_or_raise(request)

    prompt = build_story_generation_prompt(
        role=payload.role,
        industry=payload.industry,
        focus=payload.focus,
        role_level=payload.roleLevel,
        notes=payload.notes,
    )
    text = call_gemini_or_raise(prompt, event="abt_generate_failed", json_mode=True)

    result = gemini.parse_json_response(text, expect="object")
    if not result.ok:
        return AbtGenerateResponse(
            requestId=get_request_id(request),
            accomplishment="",
            because="",
            therefore="",
            fullStory=text,
            parsed=False,
        )

    fields = {name: str(result.value.get(name) or "").strip() for name in ("accomplishment", "because", "therefore", "fullStory")}
    return AbtGenerateResponse(requestId=get_request_id(request), parsed=True, **fields)


@app.post("/api/abt/score", response_model=AbtScoreResponse)
def abt_score_endpoint(payload: AbtScoreRequest, request: Request) -> AbtScoreResponse:
    story = payload.to_story()
    try:
        validate_abt_story(story)
    except StoryValidationError as exc:
        raise_api_error(
            status_code=400,
            code="BAD_REQUEST",
            message=str(exc),
            extra={"missingFields": exc.missing_fields},
        )

    ensure_gemini_available()
    apply_rate_limit_or_raise(request)

    stored = None
    if payload.sessionId is not None:
        stored = fetch_abt_session(session_id=payload.sessionId, owner_scope_id=resolve_story_owner(request))
        if stored is None:
            raise_api_error(status_code=404, code="NOT_FOUND", message="session not found")

    try:
        outcome = score_abt_story(
            story,
            model=payload.model,
            session_id=str(payload.sessionId) if payload.sessionId is not None else None,
            include_improvements=payload.includeImprovements,
        )
    except (gemini.GeminiError, httpx.HTTPError) as exc:
        raise_upstream_error(exc, event="abt_score_failed")

    if stored is not None:
        attach_abt_score(
            session_id=int(stored["id"]),
            owner_scope_id=str(stored["owner_scope_id"]),
            score=score_snapshot(outcome),
        )

    logger.info(
        json.dumps(
            {
                "event": "abt_scored",
                "requestId": get_request_id(request),
                "totalScore": outcome.result.totalScore,
                "category": outcome.category.value,
                "parsed": outcome.parsed,
                "processingTimeMs": outcome.processing_time_ms,
            },
            ensure_ascii=False,
        )
    )
    return format_score_response(request, outcome)


@app.get("/api/abt/achievements", response_model=AchievementListResponse)
def achievements_endpoint(request: Request) -> AchievementListResponse:
    return AchievementListResponse(
        requestId=get_request_id(request),
        items=[Achievement(**item) for item in achievement_catalog()],
    )


@app.get("/api/sessions", response_model=SessionListResponse)
def list_sessions_endpoint(
    request: Request,
    limit: int = Query(default=DEFAULT_SESSION_LIST_LIMIT, ge=1, le=50),
) -> SessionListResponse:
    owner_scope_id = resolve_story_owner(request)
    rows = list_abt_sessions(owner_scope_id=owner_scope_id, limit=limit)
    return SessionListResponse(requestId=get_request_id(request), items=[format_session_item(row) for row in rows])


@app.post("/api/sessions", response_model=SessionDetailResponse)
def create_session_endpoint(payload: SessionCreateRequest, request: Request) -> SessionDetailResponse:
    owner_scope_id = resolve_story_owner(request)
    try:
        validate_abt_story(payload.to_story())
    except StoryValidationError as exc:
        raise_api_error(
            status_code=400,
            code="BAD_REQUEST",
            message=str(exc),
            extra={"missingFields": exc.missing_fields},
        )

    row = create_abt_session(
        owner_scope_id=owner_scope_id,
        role=payload.role,
        industry=payload.industry,
        achievement=payload.achievement,
        because=payload.because,
        therefore=payload.therefore,
        generated_story=payload.generatedStory,
    )
    logger.info(
        json.dumps(
            {"event": "abt_session_saved", "requestId": get_request_id(request), "abtSessionId": row["id"]},
            ensure_ascii=False,
        )
    )
    return SessionDetailResponse(requestId=get_request_id(request), item=format_session_item(row))


@app.get("/api/sessions/{session_id}", response_model=SessionDetailResponse)
def get_session_endpoint(session_id: int, request: Request) -> SessionDetailResponse:
    row = fetch_abt_session(session_id=session_id, owner_scope_id=resolve_story_owner(request))
    if row is None:
        raise_api_error(status_code=404, code="NOT_FOUND", message="session not found")
    return SessionDetailResponse(requestId=get_request_id(request), item=format_session_item(row))


@app.post("/api/sessions/score-batch", response_model=BatchScoreResponse)
def score_batch_endpoint(payload: BatchScoreRequest, request: Request) -> BatchScoreResponse:
    owner_scope_id = resolve_story_owner(request)
    ensure_gemini_available()
    apply_rate_limit_or_raise(request)

    if payload.sessionIds:
        rows = fetch_abt_sessions_by_ids(session_ids=payload.sessionIds, owner_scope_id=owner_scope_id)
    else:
        rows = list_abt_sessions(owner_scope_id=owner_scope_id, limit=payload.limit)

    rows_by_id = {str(row["id"]): row for row in rows}
    results = score_abt_stories(
        [(str(row["id"]), story_from_row(row)) for row in rows],
        batch_size=get_batch_size(),
        delay_seconds=get_batch_delay_seconds(),
        model=payload.model,
    )

    for item in results:
        if item.ok and item.outcome is not None:
            attach_abt_score(
                session_id=int(item.session_id),
                owner_scope_id=str(rows_by_id[item.session_id]["owner_scope_id"]),
                score=score_snapshot(item.outcome),
            )

    succeeded = sum(1 for item in results if item.ok)
    logger.info(
        json.dumps(
            {
                "event": "abt_batch_scored",
                "requestId": get_request_id(request),
                "total": len(results),
                "succeeded": succeeded,
            },
            ensure_ascii=False,
        )
    )
    return BatchScoreResponse(
        requestId=get_request_id(request),
        items=[format_batch_item(item) for item in results],
        succeeded=succeeded,
        failed=len(results) - succeeded,
    )


@app.get("/api/progress", response_model=ProgressResponse)
def get_progress_endpoint(request: Request) -> ProgressResponse:
    record, counters = load_progress(owner_scope_id=get_owner_scope_id(request))
    return ProgressResponse(requestId=get_request_id(request), **build_progress_payload(record, counters))


@app.post("/api/progress/actions", response_model=RecordActionResponse)
def record_action_endpoint(payload: RecordActionRequest, request: Request) -> RecordActionResponse:
    owner_scope_id = get_owner_scope_id(request)
    record, counters = load_progress(owner_scope_id=owner_scope_id)

    transition = record_action(record, counters, payload.action, payload.today or date.today())
    save_progress(owner_scope_id=owner_scope_id, record=transition.record, counters=transition.counters)

    if transition.newly_unlocked:
        logger.info(
            json.dumps(
                {
                    "event": "achievements_unlocked",
                    "requestId": get_request_id(request),
                    "achievements": transition.newly_unlocked,
                },
                ensure_ascii=False,
            )
        )

    return RecordActionResponse(
        requestId=get_request_id(request),
        action=payload.action,
        actionLabel=ACTION_LABELS[payload.action],
        pointsEarned=transition.points_earned,
        newlyUnlocked=transition.newly_unlocked,
        **build_progress_payload(transition.record, transition.counters),
    )


@app.get("/api/metrics/snapshot")
def metrics_snapshot(request: Request) -> dict[str, Any]:
    result = METRICS.snapshot()
    result["requestId"] = get_request_id(request)
    result["geminiEnabled"] = is_gemini_enabled()
    result["promptVersion"] = PROMPT_VERSION
    return result


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    request_id = get_request_id(request)

    code = ERROR_CODE_BY_STATUS.get(exc.status_code, "REQUEST_ERROR")
    message = "Request failed"
    extra: dict[str, Any] = {}

    if isinstance(exc.detail, str):
        message = exc.detail
    elif isinstance(exc.detail, dict):
        custom_code = str(exc.detail.get("code", "")).strip()
        custom_message = str(exc.detail.get("message", "")).strip()
        if custom_code:
            code = custom_code
        if custom_message:
            message = custom_message

        for key, value in exc.detail.items():
            if key in {"code", "message", "requestId"}:
                continue
            extra[key] = value

    payload: dict[str, Any] = build_error_payload(code=code, message=message, request_id=request_id)
    if extra:
        payload.update(extra)

    set_error_context(request, error_code=code, exception_type="HTTPException")
    return JSONResponse(status_code=exc.status_code, content=payload)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    request_id = get_request_id(request)
    first_error = exc.errors()[0] if exc.errors() else None
    message = first_error.get("msg", "Request validation failed") if first_error else "Request validation failed"
    set_error_context(request, error_code="VALIDATION_ERROR", exception_type="RequestValidationError")
    return JSONResponse(
        status_code=422,
        content=build_error_payload(code="VALIDATION_ERROR", message=message, request_id=request_id),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, _: Exception) -> JSONResponse:
    request_id = get_request_id(request)
    set_error_context(request, error_code="INTERNAL_ERROR", exception_type="UnhandledException")
    return JSONResponse(
        status_code=500,
        content=build_error_payload(
            code="INTERNAL_ERROR",
            message="Unexpected server error",
            request_id=request_id,
        ),
    )

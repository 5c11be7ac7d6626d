from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from . import gemini
from .config import get_scoring_model
from .prompts import build_abt_scoring_prompt, build_improvement_prompt
from .scoring import (
    NormalizedScoreResult,
    Recommendation,
    ScoreCategory,
    categorize,
    empty_score_result,
    normalize_rubric,
    recommend,
)

logger = logging.getLogger("interview_maniac.scoring")

REQUIRED_STORY_FIELDS: tuple[str, ...] = ("role", "industry", "achievement", "because", "therefore")
IMPROVEMENT_THRESHOLD = 3.5
MAX_EXTRA_SUGGESTIONS = 3


class StoryValidationError(ValueError):
    def __init__(self, missing_fields: list[str]):
        self.missing_fields = missing_fields
        super().__init__(f"Missing required fields: {', '.join(missing_fields)}")


@dataclass
class AbtStory:
    role: str
    industry: str
    achievement: str
    because: str
    therefore: str

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> "AbtStory":
        return cls(**{name: str(raw.get(name) or "") for name in REQUIRED_STORY_FIELDS})

    def as_prompt_fields(self) -> dict[str, str]:
        return {name: getattr(self, name).strip() for name in REQUIRED_STORY_FIELDS}


@dataclass
class ScoringOutcome:
    result: NormalizedScoreResult
    category: ScoreCategory
    recommendation: Recommendation
    parsed: bool
    model: str
    timestamp: str
    processing_time_ms: int
    session_id: str | None = None


@dataclass
class BatchScoreItem:
    session_id: str
    ok: bool
    outcome: ScoringOutcome | None = None
    error: str | None = None


def validate_abt_story(story: AbtStory) -> None:
    missing = [name for name in REQUIRED_STORY_FIELDS if not (getattr(story, name) or "").strip()]
    if missing:
        raise StoryValidationError(missing)


def _log_warning(event: str, **fields: Any) -> None:
    logger.warning(json.dumps({"event": event, **fields}, ensure_ascii=False))


def fetch_extra_suggestions(story: AbtStory, result: NormalizedScoreResult, *, model: str) -> list[str]:
    prompt = build_improvement_prompt(**story.as_prompt_fields(), scores=result.scores)
    try:
        text = gemini.call_gemini(prompt, model=model)
    except (gemini.GeminiError, httpx.HTTPError) as exc:
        _log_warning("improvement_fetch_failed", reason=str(exc))
        return []

    parsed = gemini.parse_json_response(text, expect="array")
    if not parsed.ok:
        _log_warning("improvement_parse_failed", reason=parsed.error)
        return []

    suggestions = [item.strip() for item in parsed.value if isinstance(item, str) and item.strip()]
    return suggestions[:MAX_EXTRA_SUGGESTIONS]


def score_abt_story(
    story: AbtStory,
    *,
    model: str | None = None,
    session_id: str | None = None,
    include_improvements: bool = False,
) -> ScoringOutcome:
    validate_abt_story(story)

    started_at = time.perf_counter()
    model_name = (model or "").strip() or get_scoring_model()
    prompt = build_abt_scoring_prompt(**story.as_prompt_fields())

    text = gemini.call_gemini(prompt, model=model_name)
    parsed = gemini.parse_json_response(text, expect="object")

    if parsed.ok:
        result = normalize_rubric(parsed.value)
    else:
        _log_warning("scoring_parse_failed", reason=parsed.error, sessionId=session_id)
        result = empty_score_result(overall_assessment=text.strip())

    if parsed.ok and include_improvements and result.averageScore < IMPROVEMENT_THRESHOLD:
        extra = fetch_extra_suggestions(story, result, model=model_name)
        if extra:
            result.feedback.suggestions = [*result.feedback.suggestions, *extra]

    return ScoringOutcome(
        result=result,
        category=categorize(result.averageScore),
        recommendation=recommend(result),
        parsed=parsed.ok,
        model=model_name,
        timestamp=datetime.now(timezone.utc).isoformat(),
        processing_time_ms=int((time.perf_counter() - started_at) * 1000),
        session_id=session_id,
    )


def _score_one(session_id: str, story: AbtStory, model: str | None) -> BatchScoreItem:
    try:
        outcome = score_abt_story(story, model=model, session_id=session_id, include_improvements=False)
    except Exception as exc:
        _log_warning("batch_item_failed", sessionId=session_id, reason=str(exc), exception_type=type(exc).__name__)
        return BatchScoreItem(session_id=session_id, ok=False, error=str(exc) or type(exc).__name__)
    return BatchScoreItem(session_id=session_id, ok=True, outcome=outcome)


def score_abt_stories(
    items: list[tuple[str, AbtStory]],
    *,
    batch_size: int = 3,
    delay_seconds: float = 1.0,
    model: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> list[BatchScoreItem]:
    """Score stored stories in fixed-size groups.

    Each group runs concurrently; groups are separated by ``delay_seconds`` to
    stay under the upstream rate limit. A failing item is labeled and skipped,
    never aborting the rest of the batch. Output order matches ``items``.
    """
    safe_batch_size = max(1, int(batch_size))
    results: list[BatchScoreItem] = []

    with ThreadPoolExecutor(max_workers=safe_batch_size) as executor:
        for offset in range(0, len(items), safe_batch_size):
            group = items[offset : offset + safe_batch_size]
            futures = [executor.submit(_score_one, session_id, story, model) for session_id, story in group]
            results.extend(future.result() for future in futures)

            if offset + safe_batch_size < len(items) and delay_seconds > 0:
                sleep(delay_seconds)

    return results

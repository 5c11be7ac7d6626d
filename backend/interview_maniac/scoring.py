from __future__ import annotations

import math
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

RUBRIC_FIELDS: tuple[str, ...] = (
    "clarity",
    "relevance",
    "impact",
    "metrics",
    "storyArc",
    "concision",
)

MIN_DIMENSION_SCORE = 0
MAX_DIMENSION_SCORE = 5
WEAK_SCORE_CEILING = 2
MODERATE_SCORE = 3
MAX_MODERATE_FOCUS = 2
GENERIC_FOCUS_LABEL = "overall story structure"

HIGH_PRIORITY_STEPS: tuple[str, ...] = (
    "Practice telling your story out loud",
    "Focus on quantifying your results",
    "Clarify the connection between challenge and impact",
)
MEDIUM_PRIORITY_STEPS: tuple[str, ...] = (
    "Add more specific metrics and numbers",
    'Strengthen the "because" (challenge) section',
    "Practice concise delivery",
)
LOW_PRIORITY_STEPS: tuple[str, ...] = (
    "Fine-tune story delivery",
    "Practice for different interview contexts",
    "Consider adding backup examples",
)


class ScoreCategory(str, Enum):
    EXCELLENT = "Excellent"
    GOOD = "Good"
    AVERAGE = "Average"
    BELOW_AVERAGE = "Below Average"
    NEEDS_IMPROVEMENT = "Needs Improvement"


class RubricScores(BaseModel):
    clarity: int = Field(default=0, ge=0, le=5)
    relevance: int = Field(default=0, ge=0, le=5)
    impact: int = Field(default=0, ge=0, le=5)
    metrics: int = Field(default=0, ge=0, le=5)
    storyArc: int = Field(default=0, ge=0, le=5)
    concision: int = Field(default=0, ge=0, le=5)

    def items(self) -> list[tuple[str, int]]:
        return [(name, int(getattr(self, name))) for name in RUBRIC_FIELDS]


class ScoreFeedback(BaseModel):
    strengths: list[str] = Field(default_factory=list)
    improvements: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class NormalizedScoreResult(BaseModel):
    scores: RubricScores
    totalScore: int
    averageScore: float
    feedback: ScoreFeedback = Field(default_factory=ScoreFeedback)
    overallAssessment: str = ""


class Recommendation(BaseModel):
    priority: Literal["high", "medium", "low"]
    focus: list[str]
    nextSteps: list[str]


def clamp_dimension(value: object) -> int:
    """Coerce one untrusted rubric value into an integer in [0, 5].

    Booleans, ``None``, non-finite numbers and anything that does not parse as
    a number count as 0.
    """
    if isinstance(value, bool) or value is None:
        return MIN_DIMENSION_SCORE

    # Arbitrarily large ints cannot go through float().
    if isinstance(value, int):
        return max(MIN_DIMENSION_SCORE, min(MAX_DIMENSION_SCORE, value))

    if isinstance(value, float):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return MIN_DIMENSION_SCORE
    else:
        return MIN_DIMENSION_SCORE

    if not math.isfinite(number):
        return MIN_DIMENSION_SCORE
    # Halves round up: 2.5 -> 3, 3.5 -> 4.
    return int(max(MIN_DIMENSION_SCORE, min(MAX_DIMENSION_SCORE, math.floor(number + 0.5))))


def _clean_text_list(raw: object) -> list[str]:
    if not isinstance(raw, list):
        return []
    result: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            continue
        value = item.strip()
        if value:
            result.append(value)
    return result


def normalize_feedback(raw: object) -> ScoreFeedback:
    if not isinstance(raw, dict):
        return ScoreFeedback()
    return ScoreFeedback(
        strengths=_clean_text_list(raw.get("strengths")),
        improvements=_clean_text_list(raw.get("improvements")),
        suggestions=_clean_text_list(raw.get("suggestions")),
    )


def compute_totals(scores: RubricScores) -> tuple[int, float]:
    total = sum(value for _, value in scores.items())
    average = round(total / len(RUBRIC_FIELDS), 1)
    return total, average


def normalize_rubric(raw: object) -> NormalizedScoreResult:
    """Turn an external rubric payload into a self-consistent result.

    ``raw`` may be the whole scoring payload (with ``scores``/``feedback`` keys)
    or just the six-field score mapping. Reported ``totalScore`` and
    ``averageScore`` values are ignored and recomputed from the clamped fields.
    """
    payload: dict[str, Any] = raw if isinstance(raw, dict) else {}
    score_source = payload.get("scores") if isinstance(payload.get("scores"), dict) else payload

    scores = RubricScores(**{name: clamp_dimension(score_source.get(name)) for name in RUBRIC_FIELDS})
    total, average = compute_totals(scores)

    assessment = payload.get("overallAssessment")
    return NormalizedScoreResult(
        scores=scores,
        totalScore=total,
        averageScore=average,
        feedback=normalize_feedback(payload.get("feedback")),
        overallAssessment=assessment.strip() if isinstance(assessment, str) else "",
    )


def empty_score_result(overall_assessment: str = "") -> NormalizedScoreResult:
    return NormalizedScoreResult(
        scores=RubricScores(),
        totalScore=0,
        averageScore=0.0,
        feedback=ScoreFeedback(),
        overallAssessment=overall_assessment,
    )


def categorize(average_score: float) -> ScoreCategory:
    if average_score >= 4.5:
        return ScoreCategory.EXCELLENT
    if average_score >= 3.5:
        return ScoreCategory.GOOD
    if average_score >= 2.5:
        return ScoreCategory.AVERAGE
    if average_score >= 1.5:
        return ScoreCategory.BELOW_AVERAGE
    return ScoreCategory.NEEDS_IMPROVEMENT


def weakest_dimensions(scores: RubricScores) -> list[str]:
    return [name for name, value in scores.items() if value <= WEAK_SCORE_CEILING]


def moderate_dimensions(scores: RubricScores) -> list[str]:
    return [name for name, value in scores.items() if value == MODERATE_SCORE]


def recommend(result: NormalizedScoreResult) -> Recommendation:
    weak = weakest_dimensions(result.scores)
    moderate = moderate_dimensions(result.scores)

    if result.averageScore < 2.5:
        return Recommendation(
            priority="high",
            focus=weak or [GENERIC_FOCUS_LABEL],
            nextSteps=list(HIGH_PRIORITY_STEPS),
        )

    if result.averageScore < 3.5:
        return Recommendation(
            priority="medium",
            focus=[*weak, *moderate[:MAX_MODERATE_FOCUS]],
            nextSteps=list(MEDIUM_PRIORITY_STEPS),
        )

    return Recommendation(
        priority="low",
        focus=moderate[:MAX_MODERATE_FOCUS],
        nextSteps=list(LOW_PRIORITY_STEPS),
    )

from __future__ import annotations

import math

import pytest

from interview_maniac.gemini import parse_json_response
from interview_maniac.scoring import (
    GENERIC_FOCUS_LABEL,
    HIGH_PRIORITY_STEPS,
    LOW_PRIORITY_STEPS,
    MEDIUM_PRIORITY_STEPS,
    RUBRIC_FIELDS,
    NormalizedScoreResult,
    RubricScores,
    ScoreCategory,
    categorize,
    clamp_dimension,
    empty_score_result,
    normalize_rubric,
    recommend,
)


def make_result(**scores: int) -> NormalizedScoreResult:
    return normalize_rubric({"scores": scores})


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (3, 3),
        (4.6, 5),
        (7, 5),
        (-2, 0),
        ("4", 4),
        (" 2.2 ", 2),
        ("abc", 0),
        (None, 0),
        (True, 0),
        (math.nan, 0),
        (math.inf, 0),
        ([3], 0),
        (10**400, 5),
        (-(10**400), 0),
        (2.5, 3),
        (3.5, 4),
        ("0.5", 1),
        (0.49, 0),
    ],
)
def test_clamp_dimension(raw, expected) -> None:
    assert clamp_dimension(raw) == expected


def test_normalize_rubric_recomputes_totals_and_ignores_reported_values() -> None:
    result = normalize_rubric(
        {
            "scores": {"clarity": 5, "relevance": 4, "impact": 5, "metrics": 2, "storyArc": 3, "concision": 4},
            "totalScore": 99,
            "averageScore": 9.9,
            "feedback": {"strengths": ["  Concrete numbers ", ""], "improvements": [1, "Tighten ending"]},
            "overallAssessment": "  Solid story. ",
        }
    )

    assert result.totalScore == 23
    assert result.averageScore == 3.8
    assert result.feedback.strengths == ["Concrete numbers"]
    assert result.feedback.improvements == ["Tighten ending"]
    assert result.feedback.suggestions == []
    assert result.overallAssessment == "Solid story."


def test_normalize_rubric_accepts_flat_score_mapping_and_fills_missing_fields() -> None:
    result = normalize_rubric({"clarity": "5", "impact": 11, "metrics": None})

    assert result.scores.clarity == 5
    assert result.scores.impact == 5
    assert result.scores.metrics == 0
    assert result.scores.relevance == 0
    assert result.totalScore == 10
    assert result.averageScore == round(10 / 6, 1)


def test_normalize_rubric_clamps_huge_model_integers() -> None:
    parsed = parse_json_response('{"scores": {"clarity": 1' + "0" * 400 + ', "impact": -1' + "0" * 400 + "}}")
    assert parsed.ok

    result = normalize_rubric(parsed.value)
    assert result.scores.clarity == 5
    assert result.scores.impact == 0
    assert result.totalScore == 5


def test_normalize_rubric_handles_non_mapping_input() -> None:
    result = normalize_rubric(["not", "a", "dict"])

    assert result.totalScore == 0
    assert result.averageScore == 0.0
    assert all(value == 0 for _, value in result.scores.items())


def test_normalized_result_is_self_consistent() -> None:
    for values in ([0] * 6, [5] * 6, [1, 2, 3, 4, 5, 0], [3, 3, 3, 4, 4, 2]):
        result = make_result(**dict(zip(RUBRIC_FIELDS, values)))
        assert result.totalScore == sum(values)
        assert result.averageScore == round(sum(values) / 6, 1)
        assert 0 <= result.totalScore <= 30


@pytest.mark.parametrize(
    ("average", "category"),
    [
        (5.0, ScoreCategory.EXCELLENT),
        (4.5, ScoreCategory.EXCELLENT),
        (4.4, ScoreCategory.GOOD),
        (3.5, ScoreCategory.GOOD),
        (3.4, ScoreCategory.AVERAGE),
        (2.5, ScoreCategory.AVERAGE),
        (2.4, ScoreCategory.BELOW_AVERAGE),
        (1.5, ScoreCategory.BELOW_AVERAGE),
        (1.4, ScoreCategory.NEEDS_IMPROVEMENT),
        (0.0, ScoreCategory.NEEDS_IMPROVEMENT),
    ],
)
def test_categorize_boundaries(average: float, category: ScoreCategory) -> None:
    assert categorize(average) is category


def test_end_to_end_good_story_gets_low_priority_recommendation() -> None:
    result = make_result(clarity=5, relevance=4, impact=5, metrics=2, storyArc=3, concision=4)

    assert result.totalScore == 23
    assert result.averageScore == 3.8
    assert categorize(result.averageScore) is ScoreCategory.GOOD

    recommendation = recommend(result)
    assert recommendation.priority == "low"
    assert recommendation.focus == ["storyArc"]
    assert recommendation.nextSteps == list(LOW_PRIORITY_STEPS)


def test_medium_priority_lists_weak_then_first_two_moderate() -> None:
    result = make_result(clarity=3, relevance=3, impact=3, metrics=2, storyArc=4, concision=3)
    assert result.averageScore == 3.0

    recommendation = recommend(result)
    assert recommendation.priority == "medium"
    assert recommendation.focus == ["metrics", "clarity", "relevance"]
    assert recommendation.nextSteps == list(MEDIUM_PRIORITY_STEPS)


def test_high_priority_focuses_on_weak_dimensions() -> None:
    result = make_result(clarity=1, relevance=2, impact=3, metrics=0, storyArc=3, concision=4)
    assert result.averageScore == 2.2

    recommendation = recommend(result)
    assert recommendation.priority == "high"
    assert recommendation.focus == ["clarity", "relevance", "metrics"]
    assert recommendation.nextSteps == list(HIGH_PRIORITY_STEPS)


def test_empty_result_recommends_everything() -> None:
    result = empty_score_result("model returned prose")

    recommendation = recommend(result)
    assert result.overallAssessment == "model returned prose"
    assert recommendation.priority == "high"
    assert recommendation.focus == list(RUBRIC_FIELDS)


def test_high_priority_falls_back_to_generic_label_without_weak_dimensions() -> None:
    # Not reachable from normalize_rubric, but recommend must stay total.
    result = NormalizedScoreResult(
        scores=RubricScores(clarity=3, relevance=3, impact=3, metrics=3, storyArc=3, concision=3),
        totalScore=18,
        averageScore=2.0,
    )

    assert recommend(result).focus == [GENERIC_FOCUS_LABEL]


def test_excellent_story_has_empty_focus() -> None:
    result = make_result(clarity=5, relevance=5, impact=5, metrics=5, storyArc=4, concision=5)

    recommendation = recommend(result)
    assert recommendation.priority == "low"
    assert recommendation.focus == []

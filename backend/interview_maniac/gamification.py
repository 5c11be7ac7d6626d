from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from enum import Enum
from typing import Any, Literal


class ActionKind(str, Enum):
    GENERATE = "generate"
    SCORE = "score"
    SAVE = "save"
    VOICE_TRANSCRIPT = "voice_transcript"


POINTS_TABLE: dict[ActionKind, int] = {
    ActionKind.GENERATE: 5,
    ActionKind.SCORE: 5,
    ActionKind.SAVE: 10,
    ActionKind.VOICE_TRANSCRIPT: 5,
}

ACTION_LABELS: dict[ActionKind, str] = {
    ActionKind.GENERATE: "Story Generated",
    ActionKind.SCORE: "Story Scored",
    ActionKind.SAVE: "Story Saved",
    ActionKind.VOICE_TRANSCRIPT: "Voice Transcript",
}

POINTS_PER_LEVEL = 100

AchievementKind = Literal["generate", "score", "save", "voice_transcript", "level", "streak", "points"]


@dataclass(frozen=True)
class Achievement:
    id: str
    name: str
    description: str
    kind: AchievementKind
    threshold: int


ACHIEVEMENTS: tuple[Achievement, ...] = (
    Achievement("first_story", "First Story", "Create your first ABT story", "save", 1),
    Achievement("story_scorer", "Story Scorer", "Score 5 stories", "score", 5),
    Achievement("voice_user", "Voice User", "Use voice recording 3 times", "voice_transcript", 3),
    Achievement("productive", "Productive", "Generate 10 stories", "generate", 10),
    Achievement("level_up", "Level Up", "Reach level 5", "level", 5),
    Achievement("streak_master", "Streak Master", "Maintain a 7-day streak", "streak", 7),
    Achievement("points_collector", "Points Collector", "Earn 1000 points", "points", 1000),
)


def _non_negative_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return max(0, int(value))  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        return 0


@dataclass(frozen=True)
class ActionCounters:
    generate: int = 0
    score: int = 0
    save: int = 0
    voice_transcript: int = 0

    def count(self, action: ActionKind) -> int:
        return int(getattr(self, action.value))

    def incremented(self, action: ActionKind) -> "ActionCounters":
        return replace(self, **{action.value: self.count(action) + 1})

    def to_dict(self) -> dict[str, int]:
        return {kind.value: self.count(kind) for kind in ActionKind}

    @classmethod
    def from_dict(cls, raw: object) -> "ActionCounters":
        if not isinstance(raw, dict):
            return cls()
        return cls(**{kind.value: _non_negative_int(raw.get(kind.value, 0)) for kind in ActionKind})


@dataclass(frozen=True)
class GamificationRecord:
    points: int = 0
    level: int = 1
    streakDays: int = 0
    lastActivityDate: str = ""
    totalSessions: int = 0
    achievements: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "points": self.points,
            "level": self.level,
            "streakDays": self.streakDays,
            "lastActivityDate": self.lastActivityDate,
            "totalSessions": self.totalSessions,
            "achievements": list(self.achievements),
        }

    @classmethod
    def from_dict(cls, raw: object) -> "GamificationRecord":
        if not isinstance(raw, dict):
            return cls()

        points = _non_negative_int(raw.get("points", 0))
        last_date = raw.get("lastActivityDate", "")
        achievements_raw = raw.get("achievements", [])

        achievements: list[str] = []
        if isinstance(achievements_raw, list):
            for item in achievements_raw:
                if isinstance(item, str) and item and item not in achievements:
                    achievements.append(item)

        return cls(
            points=points,
            level=level_for_points(points),
            streakDays=_non_negative_int(raw.get("streakDays", 0)),
            lastActivityDate=last_date.strip() if isinstance(last_date, str) else "",
            totalSessions=_non_negative_int(raw.get("totalSessions", 0)),
            achievements=tuple(achievements),
        )


@dataclass(frozen=True)
class LedgerTransition:
    record: GamificationRecord
    counters: ActionCounters
    newly_unlocked: list[str]
    points_earned: int


def level_for_points(points: int) -> int:
    return max(0, int(points)) // POINTS_PER_LEVEL + 1


def parse_activity_date(value: str) -> date | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return None


def next_streak(streak_days: int, last_activity_date: str, today: date) -> tuple[int, str]:
    """Streak bookkeeping for one action on ``today``.

    Same day keeps the streak; a first action or one on the following day
    extends it; any other value (gap, future date, garbage) restarts at 1.
    """
    today_str = today.isoformat()
    if not (last_activity_date or "").strip():
        return streak_days + 1, today_str

    last_date = parse_activity_date(last_activity_date)
    if last_date == today:
        return streak_days, today_str
    if last_date is not None and last_date == today - timedelta(days=1):
        return streak_days + 1, today_str
    return 1, today_str


def _progress_value(kind: AchievementKind, record: GamificationRecord, counters: ActionCounters) -> int:
    if kind == "level":
        return record.level
    if kind == "streak":
        return record.streakDays
    if kind == "points":
        return record.points
    return counters.count(ActionKind(kind))


def evaluate_achievements(record: GamificationRecord, counters: ActionCounters) -> list[str]:
    unlocked = set(record.achievements)
    return [
        achievement.id
        for achievement in ACHIEVEMENTS
        if achievement.id not in unlocked
        and _progress_value(achievement.kind, record, counters) >= achievement.threshold
    ]


def coerce_action(action: ActionKind | str) -> ActionKind:
    if isinstance(action, ActionKind):
        return action
    try:
        return ActionKind(str(action).strip().lower())
    except ValueError as exc:
        raise ValueError(f"unknown action: {action}") from exc


def record_action(
    record: GamificationRecord,
    counters: ActionCounters,
    action: ActionKind | str,
    today: date,
) -> LedgerTransition:
    kind = coerce_action(action)
    points_earned = POINTS_TABLE[kind]
    points = record.points + points_earned
    streak_days, last_activity_date = next_streak(record.streakDays, record.lastActivityDate, today)

    new_counters = counters.incremented(kind)
    new_record = replace(
        record,
        points=points,
        level=level_for_points(points),
        streakDays=streak_days,
        lastActivityDate=last_activity_date,
        totalSessions=record.totalSessions + 1,
    )

    newly_unlocked = evaluate_achievements(new_record, new_counters)
    if newly_unlocked:
        new_record = replace(new_record, achievements=(*new_record.achievements, *newly_unlocked))

    return LedgerTransition(
        record=new_record,
        counters=new_counters,
        newly_unlocked=newly_unlocked,
        points_earned=points_earned,
    )


def progress_summary(record: GamificationRecord) -> dict[str, int]:
    return {
        "pointsToNextLevel": record.level * POINTS_PER_LEVEL - record.points,
        "levelProgressPercent": record.points % POINTS_PER_LEVEL,
    }


def achievement_catalog() -> list[dict[str, Any]]:
    return [
        {
            "id": item.id,
            "name": item.name,
            "description": item.description,
            "kind": item.kind,
            "threshold": item.threshold,
        }
        for item in ACHIEVEMENTS
    ]

"""Read-side analytics rollups over a learner's attempt ledger.

All helpers are pure functions over :class:`AttemptRecord` sequences.
Empty input yields zeros or an ``insufficient-data`` marker instead of
raising.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from engines.scoring import FAST_COMPLETION_RATIO

TREND_THRESHOLD = 5.0
IMPROVEMENT_SCORE = 70
IMPROVEMENT_MIN_ATTEMPTS = 3
HIGH_PRIORITY_SCORE = 50


@dataclass(frozen=True)
class AttemptRecord:
    attempt_id: int
    challenge_id: int
    category: Optional[str]
    difficulty: Optional[str]
    percentage: int
    time_spent: int
    estimated_time: int
    created_at: datetime
    completed_at: Optional[datetime] = None
    completed: bool = False
    xp_earned: int = 0
    bonus_xp: int = 0
    attempt_number: int = 1
    challenge_type: Optional[str] = None
    title: Optional[str] = None

    @property
    def total_xp_earned(self) -> int:
        return self.xp_earned + self.bonus_xp


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def user_analytics(records: Sequence[AttemptRecord]) -> Dict[str, Any]:
    """Attempt totals plus count breakdowns, bucketed by attempt creation day."""
    categories: Counter = Counter()
    difficulties: Counter = Counter()
    daily: Counter = Counter()
    for record in records:
        if record.category:
            categories[record.category] += 1
        if record.difficulty:
            difficulties[record.difficulty] += 1
        daily[record.created_at.date().isoformat()] += 1
    return {
        "totalChallenges": len(records),
        "completedChallenges": sum(1 for r in records if r.completed),
        "totalTimeSpent": sum(r.time_spent for r in records),
        "averageScore": _mean([r.percentage for r in records]),
        "totalXpEarned": sum(r.total_xp_earned for r in records),
        "categoryBreakdown": dict(categories),
        "difficultyBreakdown": dict(difficulties),
        "dailyActivity": dict(daily),
    }


def performance_trend(scores: Sequence[float]) -> Dict[str, Any]:
    """Compare the mean of the first and second half of a time-ordered series."""
    if len(scores) < 2:
        return {"trend": "insufficient-data", "change": 0}
    middle = len(scores) // 2
    change = _mean(scores[middle:]) - _mean(scores[:middle])
    if change > TREND_THRESHOLD:
        trend = "improving"
    elif change < -TREND_THRESHOLD:
        trend = "declining"
    else:
        trend = "stable"
    return {"trend": trend, "change": round(change, 2)}


def category_breakdown(records: Iterable[AttemptRecord]) -> Dict[str, Dict[str, float]]:
    breakdown: Dict[str, Dict[str, float]] = {}
    for record in records:
        data = breakdown.setdefault(record.category or "unknown", {"count": 0, "totalScore": 0, "totalTime": 0})
        data["count"] += 1
        data["totalScore"] += record.percentage
        data["totalTime"] += record.time_spent
    for data in breakdown.values():
        data["averageScore"] = data["totalScore"] / data["count"]
        data["averageTime"] = data["totalTime"] / data["count"]
    return breakdown


def difficulty_breakdown(records: Iterable[AttemptRecord]) -> Dict[str, Dict[str, float]]:
    breakdown: Dict[str, Dict[str, float]] = {}
    for record in records:
        data = breakdown.setdefault(record.difficulty or "unknown", {"count": 0, "totalScore": 0})
        data["count"] += 1
        data["totalScore"] += record.percentage
    for data in breakdown.values():
        data["averageScore"] = data["totalScore"] / data["count"]
    return breakdown


def _completion_moment(record: AttemptRecord) -> datetime:
    return record.completed_at or record.created_at


def daily_activity(records: Iterable[AttemptRecord]) -> Dict[str, Dict[str, int]]:
    activity: Dict[str, Dict[str, int]] = {}
    for record in records:
        key = _completion_moment(record).date().isoformat()
        data = activity.setdefault(key, {"challenges": 0, "totalTime": 0, "totalXp": 0})
        data["challenges"] += 1
        data["totalTime"] += record.time_spent
        data["totalXp"] += record.total_xp_earned
    return activity


def iso_week(day: date) -> int:
    return day.isocalendar()[1]


def weekly_progress(records: Iterable[AttemptRecord]) -> Dict[int, Dict[str, float]]:
    weeks: Dict[int, Dict[str, float]] = {}
    for record in records:
        week = iso_week(_completion_moment(record).date())
        data = weeks.setdefault(week, {"challenges": 0, "totalScore": 0})
        data["challenges"] += 1
        data["totalScore"] += record.percentage
    for data in weeks.values():
        data["averageScore"] = data["totalScore"] / data["challenges"]
    return weeks


def learning_patterns(records: Sequence[AttemptRecord]) -> Dict[str, Any]:
    if not records:
        return {}
    hours = Counter(_completion_moment(r).astimezone(timezone.utc).hour for r in records)
    # Ties resolve to the later hour.
    preferred = max(hours, key=lambda hour: (hours[hour], hour))
    return {
        "preferredStudyHour": preferred,
        "averageSessionLength": int(_mean([r.time_spent for r in records]) + 0.5),
        "totalSessions": len(records),
    }


def improvement_areas(records: Iterable[AttemptRecord]) -> List[Dict[str, Any]]:
    areas = []
    for category, data in category_breakdown(records).items():
        if data["averageScore"] < IMPROVEMENT_SCORE and data["count"] >= IMPROVEMENT_MIN_ATTEMPTS:
            areas.append(
                {
                    "area": category,
                    "averageScore": int(data["averageScore"] + 0.5),
                    "challengeCount": int(data["count"]),
                    "priority": "high" if data["averageScore"] < HIGH_PRIORITY_SCORE else "medium",
                }
            )
    return sorted(areas, key=lambda item: item["averageScore"])


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'s' if count > 1 else ''}"


def achievements(records: Sequence[AttemptRecord]) -> List[Dict[str, Any]]:
    result = []
    perfect = sum(1 for r in records if r.percentage == 100)
    if perfect:
        result.append(
            {
                "type": "perfect_scores",
                "count": perfect,
                "description": f"Achieved {_plural(perfect, 'perfect score')}",
            }
        )
    fast = sum(1 for r in records if r.time_spent < r.estimated_time * 60 * FAST_COMPLETION_RATIO)
    if fast:
        result.append(
            {
                "type": "fast_completions",
                "count": fast,
                "description": f"Completed {_plural(fast, 'challenge')} faster than expected",
            }
        )
    return result


def learning_summary(records: Sequence[AttemptRecord]) -> Dict[str, Any]:
    """Detailed analytics over completed attempts ordered by completion time."""
    return {
        "totalChallenges": len(records),
        "averageScore": _mean([r.percentage for r in records]),
        "totalTimeSpent": sum(r.time_spent for r in records),
        "totalXpEarned": sum(r.total_xp_earned for r in records),
        "categoryBreakdown": category_breakdown(records),
        "difficultyBreakdown": difficulty_breakdown(records),
        "dailyActivity": daily_activity(records),
        "weeklyProgress": weekly_progress(records),
        "learningPatterns": learning_patterns(records),
        "improvementAreas": improvement_areas(records),
        "achievements": achievements(records),
    }


def streak_status(current: int, longest: int, last_activity: Optional[datetime], now: datetime) -> Dict[str, Any]:
    if last_activity is None:
        status = "none"
    else:
        days = int((now - last_activity).total_seconds() // 86400)
        if days > 1:
            status = "broken"
        elif days == 1:
            status = "at-risk"
        else:
            status = "active"
    return {
        "current": current,
        "longest": longest,
        "status": status,
        "lastActivity": last_activity.isoformat() if last_activity else None,
    }


def goals_progress(daily_goal: Optional[int], seconds_today: Iterable[int]) -> Dict[str, Any]:
    goal = daily_goal or 30
    minutes = sum(seconds_today) / 60
    return {
        "dailyGoal": goal,
        "todayProgress": min(minutes, goal),
        "percentage": min(minutes / goal * 100, 100),
        "achieved": minutes >= goal,
    }


def compare_cohort(own: Dict[str, float], cohort: Sequence[Dict[str, float]]) -> Dict[str, Any]:
    """Difference between ``own`` metrics and the cohort mean per metric."""
    result: Dict[str, Any] = {"cohortSize": len(cohort), "metrics": {}}
    for key, value in own.items():
        baseline = _mean([row.get(key, 0) for row in cohort])
        result["metrics"][key] = {
            "user": value,
            "cohortAverage": round(baseline, 2),
            "difference": round(value - baseline, 2),
        }
    return result

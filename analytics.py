"""Analytics endpoints assembled from repository reads and pure rollups."""

from __future__ import annotations

import csv
import io
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from db import (
    Database,
    Repository,
    attempt_document,
    message_document,
    parse_ts,
    session_document,
    utcnow,
)
from engines import rollups
from errors import InputValidationError, NotFoundError
from learning_path import user_paths

logger = logging.getLogger(__name__)

COMPARISON_MODES = ("peers", "global", "previous")
PEER_LEVEL_SPREAD = 2

EXPORT_COLUMNS = (
    "attemptId",
    "challengeId",
    "challengeTitle",
    "category",
    "difficulty",
    "attemptNumber",
    "status",
    "score",
    "maxPossibleScore",
    "percentage",
    "passed",
    "timeSpent",
    "xpEarned",
    "totalXpEarned",
    "startedAt",
    "completedAt",
)


def _window(timeframe: int) -> int:
    try:
        days = int(timeframe)
    except (TypeError, ValueError):
        raise InputValidationError("timeframe must be a number of days") from None
    if days < 1 or days > 3650:
        raise InputValidationError("timeframe must be between 1 and 3650 days")
    return days


def _user(repo: Repository, user_id: str) -> Dict[str, Any]:
    user = repo.get_user_document(user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def dashboard(database: Database, user_id: str, timeframe: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
    moment = now or utcnow()
    since = moment - timedelta(days=_window(timeframe))
    day_start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    with database.read() as repo:
        user = _user(repo, user_id)
        window = repo.attempt_records(user_id, since=since, by="created_at", completed_only=False)
        completed = repo.attempt_records(user_id, since=since)
        today = repo.attempt_records(user_id, since=day_start)
        recent = repo.recent_completions(user_id, since, limit=5)
        paths = {
            "active": repo.count_enrollments(user_id, active=True),
            "completed": repo.count_enrollments(user_id, completed=True),
            "totalEnrolled": repo.count_enrollments(user_id),
        }

    game = user["gamification"]
    streak = game["streak"]
    return {
        "overview": {
            "level": game["level"],
            "xp": game["xp"],
            "totalXp": game["totalXp"],
            "xpToNextLevel": game["xpToNextLevel"],
            "badges": len(game["badges"]),
            "challengesCompleted": user["statistics"]["challengesCompleted"],
            "averageScore": user["statistics"]["averageScore"],
            "totalTimeSpent": user["statistics"]["totalTimeSpent"],
        },
        "challenges": rollups.user_analytics(window),
        "learningPaths": paths,
        "recentActivity": [
            {
                "type": "challenge_completed",
                "challengeId": row["challenge_id"],
                "title": row["challenge_title"],
                "category": row["challenge_category"],
                "percentage": row["percentage"],
                "xpEarned": row["xp_earned"],
                "completedAt": row["completed_at"],
            }
            for row in recent
        ],
        "streakData": rollups.streak_status(
            streak["current"], streak["longest"], parse_ts(streak["lastActivity"]), moment
        ),
        "goalsProgress": rollups.goals_progress(
            user["learningPreferences"].get("dailyGoal"), [r.time_spent for r in today]
        ),
        "performanceTrends": rollups.performance_trend([r.percentage for r in completed]),
    }


def learning(
    database: Database,
    user_id: str,
    timeframe: int = 90,
    category: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    days = _window(timeframe)
    since = (now or utcnow()) - timedelta(days=days)
    with database.read() as repo:
        _user(repo, user_id)
        records = repo.attempt_records(user_id, since=since, category=category)
    summary = rollups.learning_summary(records)
    summary["timeframe"] = days
    return summary


def _metrics(records: List[rollups.AttemptRecord]) -> Dict[str, float]:
    return {
        "averageScore": sum(r.percentage for r in records) / len(records) if records else 0.0,
        "challengesCompleted": len(records),
        "xpEarned": sum(r.total_xp_earned for r in records),
    }


def comparison(
    database: Database,
    user_id: str,
    compare_with: str = "peers",
    timeframe: int = 30,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if compare_with not in COMPARISON_MODES:
        raise InputValidationError(f"compareWith must be one of: {', '.join(COMPARISON_MODES)}")
    days = _window(timeframe)
    moment = now or utcnow()
    since = moment - timedelta(days=days)
    with database.read() as repo:
        user = _user(repo, user_id)
        own = _metrics(repo.attempt_records(user_id, since=since))
        if compare_with == "previous":
            cohort = [_metrics(repo.attempt_records(user_id, since=since - timedelta(days=days), until=since))]
        else:
            if compare_with == "peers":
                level = user["gamification"]["level"]
                ids = repo.user_ids_in_level_range(level - PEER_LEVEL_SPREAD, level + PEER_LEVEL_SPREAD, user_id)
            else:
                ids = repo.active_user_ids(exclude=user_id)
            cohort = [_metrics(repo.attempt_records(other, since=since)) for other in ids]
    result = rollups.compare_cohort(own, cohort)
    result["compareWith"] = compare_with
    result["timeframe"] = days
    return result


def system(database: Database, timeframe: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
    days = _window(timeframe)
    since = (now or utcnow()) - timedelta(days=days)
    with database.read() as repo:
        total_users = repo.count_users()
        new_users = repo.count_users(since)
        attempts = repo.count_attempts(since)
        completions = repo.count_attempts(since, completed=True)
        result = {
            "timeframe": days,
            "users": {
                "total": total_users,
                "new": new_users,
                "growth": (new_users / total_users * 100) if total_users else 0,
            },
            "challenges": {
                "total": repo.count_challenges(),
                "attempts": attempts,
                "completions": completions,
                "completionRate": (completions / attempts * 100) if attempts else 0,
            },
            "learningPaths": {
                "total": repo.count_paths(),
                "enrollments": repo.count_enrollments_since(since),
            },
            "chat": repo.chat_statistics(since),
            "popularContent": {
                "challenges": [
                    {"id": r["id"], "title": r["title"], "category": r["category"], "totalAttempts": r["total_attempts"]}
                    for r in repo.popular_challenges(10)
                ],
                "learningPaths": [
                    {"id": r["id"], "title": r["title"], "category": r["category"], "enrollments": r["enrollments"]}
                    for r in repo.popular_paths(10)
                ],
            },
            "engagement": repo.engagement(since),
        }
    return result


# ---------- Export ----------
def _history(repo: Repository, user_id: str) -> List[Dict[str, Any]]:
    history = []
    for row in repo.list_user_attempts(user_id):
        item = attempt_document(row)
        item["challengeTitle"] = row["challenge_title"]
        item["category"] = row["challenge_category"]
        item["difficulty"] = row["challenge_difficulty"]
        history.append(item)
    return history


def export_data(database: Database, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Everything stored about a learner, without credentials or chat metadata."""
    with database.read() as repo:
        profile = _user(repo, user_id)
        history = _history(repo, user_id)
        sessions = []
        for row in repo.user_chat_sessions(user_id):
            session = session_document(row)
            session["messages"] = [
                message_document(m, include_metadata=False) for m in repo.chat_messages(row["session_id"])
            ]
            sessions.append(session)
    return {
        "profile": profile,
        "challengeHistory": history,
        "learningPaths": user_paths(database, user_id),
        "chatSessions": sessions,
        "exportedAt": (now or utcnow()).isoformat(),
    }


def export_csv(database: Database, user_id: str) -> str:
    """Challenge history flattened to CSV."""
    with database.read() as repo:
        _user(repo, user_id)
        history = _history(repo, user_id)
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for item in history:
        writer.writerow(
            {
                "attemptId": item["id"],
                "challengeId": item["challengeId"],
                "challengeTitle": item["challengeTitle"],
                "category": item["category"],
                "difficulty": item["difficulty"],
                "attemptNumber": item["attemptNumber"],
                "status": item["status"],
                "score": item["score"],
                "maxPossibleScore": item["maxPossibleScore"],
                "percentage": item["percentage"],
                "passed": item["passed"],
                "timeSpent": item["timeSpent"],
                "xpEarned": item["xpEarned"],
                "totalXpEarned": item["totalXpEarned"],
                "startedAt": item["startedAt"],
                "completedAt": item["completedAt"] or "",
            }
        )
    return buffer.getvalue()

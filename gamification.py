"""Badge catalogue, learner badges, leaderboards and manual badge checks."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from challenges import badge_summary
from db import Database, badge_definition, badge_document, user_document, utcnow
from engines.badges import RARITIES, RARITY_SCORES, BadgeAwarder, InvalidCriterionError, criteria_from_mapping
from errors import ConflictError, InputValidationError, NotFoundError

logger = logging.getLogger(__name__)

LEADERBOARD_TYPES = ("xp", "level", "badges", "challenges")


def _rarity_counts(rarities) -> Dict[str, int]:
    counts = {name: 0 for name in RARITIES}
    for rarity in rarities:
        counts[rarity] = counts.get(rarity, 0) + 1
    return counts


def list_badges(
    database: Database,
    *,
    category: Optional[str] = None,
    rarity: Optional[str] = None,
    badge_type: Optional[str] = None,
    user_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    with database.read() as repo:
        rows = repo.list_badges(category=category, rarity=rarity, badge_type=badge_type)
        earned = {row["id"]: row["earned_at"] for row in repo.user_badges(user_id)} if user_id else {}
    badges = []
    for row in rows:
        doc = badge_document(row)
        if user_id:
            doc["earned"] = row["id"] in earned
            doc["earnedAt"] = earned.get(row["id"])
        badges.append(doc)
    return badges


def get_badge(database: Database, badge_id: int) -> Dict[str, Any]:
    with database.read() as repo:
        row = repo.get_badge(badge_id)
    if row is None:
        raise NotFoundError("Badge not found")
    return badge_document(row)


def user_badges(database: Database, user_id: str) -> Dict[str, Any]:
    with database.read() as repo:
        rows = repo.user_badges(user_id)
    badges = []
    for row in rows:
        doc = badge_document(row)
        doc["earnedAt"] = row["earned_at"]
        badges.append(doc)
    # Rarest first, newest first within a rarity.
    badges.sort(key=lambda b: b["earnedAt"] or "", reverse=True)
    badges.sort(key=lambda b: RARITY_SCORES.get(b["rarity"], 1), reverse=True)
    return {
        "badges": badges,
        "total": len(badges),
        "byRarity": _rarity_counts(b["rarity"] for b in badges),
    }


def stats(database: Database, user_id: str) -> Dict[str, Any]:
    with database.read() as repo:
        user = repo.get_user_document(user_id)
        if user is None:
            raise NotFoundError("User not found")
        rarities = [row["rarity"] for row in repo.user_badges(user_id)]
    game = user["gamification"]
    statistics = user["statistics"]
    return {
        "level": game["level"],
        "xp": game["xp"],
        "totalXp": game["totalXp"],
        "xpToNextLevel": game["xpToNextLevel"],
        "currentStreak": game["streak"]["current"],
        "longestStreak": game["streak"]["longest"],
        "badges": {"total": len(rarities), "byRarity": _rarity_counts(rarities)},
        "achievements": len(game["achievements"]),
        "challengesCompleted": statistics["challengesCompleted"],
        "averageScore": statistics["averageScore"],
        "totalTimeSpent": statistics["totalTimeSpent"],
    }


def leaderboard(
    database: Database, kind: str = "xp", limit: int = 10, user_id: Optional[str] = None
) -> Dict[str, Any]:
    if kind not in LEADERBOARD_TYPES:
        raise InputValidationError(f"Invalid leaderboard type. Use one of: {', '.join(LEADERBOARD_TYPES)}")
    limit = max(1, min(100, int(limit or 10)))
    with database.read() as repo:
        rows = repo.leaderboard(kind, limit)
        entries = []
        for rank, row in enumerate(rows, start=1):
            doc = user_document(row)
            entries.append(
                {
                    "rank": rank,
                    "userId": doc["id"],
                    "username": doc["username"],
                    "profile": {
                        key: doc["profile"].get(key) for key in ("firstName", "lastName", "avatar")
                    },
                    "level": doc["gamification"]["level"],
                    "xp": doc["gamification"]["xp"],
                    "totalXp": doc["gamification"]["totalXp"],
                    "badgeCount": row["badge_count"],
                    "challengesCompleted": doc["statistics"]["challengesCompleted"],
                }
            )
        user_rank = None
        if user_id:
            listed = next((e["rank"] for e in entries if e["userId"] == user_id), None)
            if listed is not None:
                user_rank = listed
            else:
                ahead = repo.users_ahead(kind, user_id)
                user_rank = None if ahead is None else ahead + 1
    return {"type": kind, "leaderboard": entries, "userRank": user_rank}


def check_badges(
    database: Database, user_id: str, now: Optional[datetime] = None, awarder: Optional[BadgeAwarder] = None
) -> Dict[str, Any]:
    awarder = awarder or BadgeAwarder()
    with database.transaction() as repo:
        if repo.get_user(user_id) is None:
            raise NotFoundError("User not found")
        sweep = awarder.check_and_award(repo, user_id, now or utcnow())
    change = sweep.level_change
    return {
        "newBadges": [badge_summary(badge) for badge in sweep.badges],
        "totalXpBonus": sweep.total_xp_bonus,
        "levelUp": change.as_dict() if change else {"leveledUp": False},
    }


# ---------- Administration ----------
def _validate_criteria(criteria: Optional[Mapping[str, Any]]) -> None:
    try:
        criteria_from_mapping(criteria or {})
    except InvalidCriterionError as exc:
        raise InputValidationError(str(exc)) from None


def create_badge(database: Database, data: Mapping[str, Any]) -> Dict[str, Any]:
    _validate_criteria(data.get("criteria"))
    try:
        with database.transaction() as repo:
            if repo.get_badge_by_name(data["name"]) is not None:
                raise ConflictError("Badge with this name already exists", status_code=400)
            badge_id = repo.create_badge(data)
            doc = badge_document(repo.get_badge(badge_id))
    except sqlite3.IntegrityError:
        raise ConflictError("Badge with this name already exists", status_code=400) from None
    logger.info("Badge %s (%s) created", badge_id, data["name"])
    return doc


def update_badge(database: Database, badge_id: int, data: Mapping[str, Any]) -> Dict[str, Any]:
    if data.get("criteria") is not None:
        _validate_criteria(data["criteria"])
    with database.transaction() as repo:
        if repo.get_badge(badge_id) is None:
            raise NotFoundError("Badge not found")
        name = data.get("name")
        if name:
            clash = repo.get_badge_by_name(name)
            if clash is not None and clash["id"] != badge_id:
                raise ConflictError("Badge with this name already exists", status_code=400)
        repo.update_badge(badge_id, data)
        return badge_document(repo.get_badge(badge_id))


def award_badge(
    database: Database, badge_id: int, user_id: str, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Grant a badge without evaluating its criteria."""
    with database.transaction() as repo:
        row = repo.get_badge(badge_id)
        if row is None:
            raise NotFoundError("Badge not found")
        if repo.get_user(user_id) is None:
            raise NotFoundError("User not found")
        outcome = BadgeAwarder().award(repo, user_id, badge_definition(row), now or utcnow())
        if not outcome.awarded:
            raise ConflictError(outcome.message, status_code=400)
    return {
        "badge": badge_summary(outcome.badge),
        "xpBonus": outcome.xp_bonus,
        "levelUp": outcome.level_change.as_dict() if outcome.level_change else {"leveledUp": False},
    }

"""Challenge catalogue and the attempt lifecycle.

Submitting an attempt scores it, updates the challenge and learner
statistics, awards XP, advances the streak and runs the badge sweep
inside a single ``Database.transaction()``. Any failure rolls the whole
unit back and leaves the attempt ``in-progress``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from db import (
    Database,
    Repository,
    attempt_document,
    challenge_document,
    pagination,
    parse_ts,
    utcnow,
)
from engines.badges import BadgeAwarder, BadgeDefinition
from engines.progression import DEFAULT_ENGINE, ProgressionEngine
from engines.scoring import (
    InvalidSubmissionError,
    ScoringConfig,
    analyze_performance,
    calculate_xp,
    parse_content,
    passed,
    percentage,
    performance_level,
    running_average,
    score_submission,
)
from errors import (
    InputValidationError,
    NoActiveAttemptError,
    NotFoundError,
    PreconditionError,
    PrerequisitesNotMetError,
)

logger = logging.getLogger(__name__)


def badge_summary(badge: BadgeDefinition) -> Dict[str, Any]:
    return {
        "id": badge.id,
        "name": badge.name,
        "description": badge.description,
        "icon": badge.icon,
        "rarity": badge.rarity,
        "xpBonus": badge.xp_bonus,
    }


def public_challenge(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a challenge document with answers and hidden tests removed."""
    public = dict(doc)
    try:
        public["content"] = parse_content(doc["type"], doc.get("content")).public_dict()
    except ValueError:
        logger.warning("Challenge %s has unreadable content", doc.get("id"))
        public["content"] = {}
    return public


def _available(row) -> bool:
    return row is not None and bool(row["is_published"]) and bool(row["is_active"])


def _missing_prerequisites(repo: Repository, user_id: str, prerequisites: Sequence[Mapping[str, Any]]) -> List[int]:
    return [
        int(item["challengeId"])
        for item in prerequisites
        if item.get("required", True) and not repo.has_completed(user_id, int(item["challengeId"]))
    ]


# ---------- Catalogue ----------
def list_challenges(
    database: Database,
    *,
    category: Optional[str] = None,
    difficulty: Optional[str] = None,
    challenge_type: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    with database.read() as repo:
        rows, total = repo.list_challenges(
            category=category,
            difficulty=difficulty,
            challenge_type=challenge_type,
            search=search,
            page=page,
            limit=limit,
        )
    return {
        "challenges": [public_challenge(challenge_document(row)) for row in rows],
        "pagination": pagination(page, limit, total),
    }


def get_challenge(database: Database, challenge_id: int, user_id: Optional[str] = None) -> Dict[str, Any]:
    with database.read() as repo:
        row = repo.get_challenge(challenge_id)
        if not _available(row):
            raise NotFoundError("Challenge not found")
        challenge = public_challenge(challenge_document(row))
        if user_id:
            challenge["userProgress"] = repo.challenge_progress_summary(user_id, challenge_id)
    return challenge


# ---------- Attempt lifecycle ----------
def start_challenge(
    database: Database, user_id: str, challenge_id: int, now: Optional[datetime] = None
) -> Dict[str, Any]:
    moment = now or utcnow()
    with database.transaction() as repo:
        row = repo.get_challenge(challenge_id)
        if not _available(row):
            raise NotFoundError("Challenge not found or not available")
        doc = challenge_document(row)
        missing = _missing_prerequisites(repo, user_id, doc["prerequisites"])
        if missing:
            raise PrerequisitesNotMetError(missing)

        existing = repo.get_in_progress_attempt(user_id, challenge_id)
        if existing is not None:
            return {"attempt": attempt_document(existing), "challenge": public_challenge(doc), "resumed": True}

        scoring = ScoringConfig.from_mapping(doc["scoring"])
        attempt_id = repo.create_attempt(
            user_id,
            challenge_id,
            repo.last_attempt_number(user_id, challenge_id) + 1,
            max_possible_score=scoring.max_points,
            estimated_time=doc["estimatedTime"],
            now=moment,
        )
        attempt = attempt_document(repo.get_attempt(attempt_id))
    logger.info("User %s started challenge %s (attempt %s)", user_id, challenge_id, attempt["attemptNumber"])
    return {"attempt": attempt, "challenge": public_challenge(doc), "resumed": False}


def submit_challenge(
    database: Database,
    user_id: str,
    challenge_id: int,
    responses: Sequence[Mapping[str, Any]],
    *,
    hints_used: int = 0,
    now: Optional[datetime] = None,
    progression: ProgressionEngine = DEFAULT_ENGINE,
    awarder: Optional[BadgeAwarder] = None,
) -> Dict[str, Any]:
    """Score the in-progress attempt and apply every reward in one transaction."""
    moment = now or utcnow()
    awarder = awarder or BadgeAwarder(progression)
    with database.transaction() as repo:
        row = repo.get_challenge(challenge_id)
        if row is None:
            raise NotFoundError("Challenge not found")
        attempt = repo.get_in_progress_attempt(user_id, challenge_id)
        if attempt is None:
            raise NoActiveAttemptError()

        doc = challenge_document(row)
        try:
            content = parse_content(doc["type"], doc["content"])
            result = score_submission(content, responses)
        except InvalidSubmissionError as exc:
            raise InputValidationError(str(exc)) from None
        except ValueError as exc:
            raise InputValidationError(f"Challenge content is invalid: {exc}") from None
        scoring = ScoringConfig.from_mapping(doc["scoring"])

        time_spent = max(0, int((moment - parse_ts(attempt["started_at"])).total_seconds()))
        pct = percentage(result.score, attempt["max_possible_score"])
        attempt_passed = passed(result.score, scoring.passing_score)
        xp = calculate_xp(
            scoring,
            percentage_value=pct,
            time_spent_seconds=time_spent,
            estimated_minutes=attempt["estimated_time"],
            attempt_number=attempt["attempt_number"],
            attempt_passed=attempt_passed,
        )
        scored = [item.as_dict() for item in result.responses]
        repo.finish_attempt(
            attempt["id"],
            status="completed",
            completed_at=moment,
            time_spent=time_spent,
            score=result.score,
            percentage=pct,
            passed=attempt_passed,
            responses=scored,
            xp_earned=xp.base,
            bonus_xp=xp.bonus_breakdown(),
            hints_used=hints_used,
            requires_review=result.requires_review,
        )

        attempts_total = row["total_attempts"] + 1
        repo.record_challenge_statistics(
            challenge_id,
            total_attempts=attempts_total,
            total_completions=row["total_completions"] + 1,
            average_score=running_average(row["average_score"], attempts_total, pct),
            average_time=running_average(row["average_time"], attempts_total, time_spent),
        )

        user = repo.get_user(user_id)
        completed = user["challenges_completed"] + 1
        repo.save_user_statistics(
            user_id,
            total_time_spent=user["total_time_spent"] + time_spent // 60,
            challenges_completed=completed,
            challenges_attempted=user["challenges_attempted"] + 1,
            average_score=running_average(user["average_score"], completed, pct),
        )

        state = repo.load_gamification(user_id)
        level_change = progression.award_xp(state, xp.total)
        progression.update_streak(state, moment)
        repo.save_gamification(user_id, state)

        sweep = awarder.check_and_award(repo, user_id, moment)
        final_level = repo.load_gamification(user_id).level
        finished = attempt_document(repo.get_attempt(attempt["id"]))

    performance = analyze_performance(scored, time_spent, attempt["estimated_time"], hints_used)
    performance["performanceLevel"] = performance_level(pct)
    logger.info(
        "User %s completed challenge %s: %s%% (+%s xp, %d badges)",
        user_id, challenge_id, pct, xp.total, len(sweep.awarded),
    )
    return {
        "attempt": finished,
        "xpEarned": xp.total,
        "bonusXp": xp.bonus_breakdown(),
        "levelUp": {
            "leveledUp": level_change.leveled_up or sweep.level_change is not None,
            "newLevel": final_level,
        },
        "newBadges": [badge_summary(badge) for badge in sweep.badges],
        "performance": performance,
    }


def abandon_challenge(database: Database, user_id: str, challenge_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    with database.transaction() as repo:
        attempt = repo.get_in_progress_attempt(user_id, challenge_id)
        if attempt is None:
            raise NoActiveAttemptError()
        repo.abandon_attempt(attempt["id"], now or utcnow())
        return attempt_document(repo.get_attempt(attempt["id"]))


def attempt_history(database: Database, user_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    with database.read() as repo:
        rows, total = repo.attempt_history(user_id, page, limit)
    history = []
    for row in rows:
        item = attempt_document(row)
        item["challenge"] = {
            "id": row["challenge_id"],
            "title": row["challenge_title"],
            "category": row["challenge_category"],
            "difficulty": row["challenge_difficulty"],
            "type": row["challenge_type"],
        }
        history.append(item)
    return {"history": history, "pagination": pagination(page, limit, total)}


def submit_feedback(
    database: Database,
    user_id: str,
    attempt_id: int,
    *,
    rating: int,
    difficulty_rating: Optional[int] = None,
    comment: Optional[str] = None,
) -> Dict[str, Any]:
    with database.transaction() as repo:
        attempt = repo.get_attempt(attempt_id)
        if attempt is None or attempt["user_id"] != user_id:
            raise NotFoundError("Attempt not found")
        if attempt["status"] == "in-progress":
            raise PreconditionError("Feedback can only be given on finished attempts")
        repo.set_attempt_feedback(
            attempt_id, {"rating": rating, "difficultyRating": difficulty_rating, "comment": comment}
        )
        return attempt_document(repo.get_attempt(attempt_id))


# ---------- Recommendations ----------
def difficulty_band(level: int) -> List[str]:
    if level <= 5:
        return ["beginner", "intermediate"]
    if level <= 15:
        return ["intermediate", "advanced"]
    return ["advanced", "expert"]


def recommend(database: Database, user_id: str, limit: int = 5) -> List[Dict[str, Any]]:
    with database.read() as repo:
        user = repo.get_user_document(user_id)
        if user is None:
            raise NotFoundError("User not found")
        subjects = list(user["learningPreferences"].get("subjects") or [])
        rows = repo.recommendation_candidates(
            user_id, subjects, difficulty_band(user["gamification"]["level"]), max(1, min(50, limit))
        )
    return [public_challenge(challenge_document(row)) for row in rows]


# ---------- Administration ----------
def _validate_definition(repo: Repository, data: Mapping[str, Any], challenge_type: str) -> None:
    if "content" in data and data["content"] is not None:
        try:
            parse_content(challenge_type, data["content"])
        except ValueError as exc:
            raise InputValidationError(f"Invalid challenge content: {exc}") from None
    for item in data.get("prerequisites") or []:
        if repo.get_challenge(int(item["challengeId"])) is None:
            raise InputValidationError(f"Prerequisite challenge {item['challengeId']} does not exist")


def create_challenge(database: Database, author_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
    with database.transaction() as repo:
        _validate_definition(repo, data, data["type"])
        challenge_id = repo.create_challenge(data, author_id)
        doc = challenge_document(repo.get_challenge(challenge_id))
    logger.info("Challenge %s created by %s", challenge_id, author_id)
    return doc


def update_challenge(database: Database, challenge_id: int, data: Mapping[str, Any]) -> Dict[str, Any]:
    with database.transaction() as repo:
        row = repo.get_challenge(challenge_id)
        if row is None:
            raise NotFoundError("Challenge not found")
        _validate_definition(repo, data, row["type"])
        repo.update_challenge(challenge_id, data)
        return challenge_document(repo.get_challenge(challenge_id))


def delete_challenge(database: Database, challenge_id: int) -> None:
    with database.transaction() as repo:
        if repo.get_challenge(challenge_id) is None:
            raise NotFoundError("Challenge not found")
        repo.update_challenge(challenge_id, {"isActive": False})
    logger.info("Challenge %s deactivated", challenge_id)

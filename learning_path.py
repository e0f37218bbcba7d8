"""Learning path catalogue, enrollment and step completion."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from challenges import badge_summary
from db import (
    Database,
    enrollment_document,
    enrollment_progress,
    iso,
    pagination,
    path_document,
    utcnow,
)
from engines.badges import BadgeAwarder
from engines.path_progress import (
    EnrollmentClosedError,
    PathStep,
    complete_step as record_step,
    enrollment_analytics,
    missing_prerequisites,
    next_step,
    parse_steps,
)
from engines.progression import DEFAULT_ENGINE, ProgressionEngine
from errors import (
    ConflictError,
    ForbiddenError,
    InputValidationError,
    NotFoundError,
    PreconditionError,
    PrerequisitesNotMetError,
)

_LOGGER = logging.getLogger(__name__)

ENROLLMENT_TRANSITIONS = {
    "enrolled": {"paused", "in-progress", "dropped"},
    "in-progress": {"paused", "dropped"},
    "paused": {"in-progress", "dropped"},
    "completed": set(),
    "dropped": set(),
}


def _log_json(event: str, payload: Dict[str, Any]) -> None:
    """Emit a structured JSON log line for path activity."""

    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        message = json.dumps({"event": event, "error": "serialization_failed"}, sort_keys=True)
    _LOGGER.info(message)


def _steps(doc: Mapping[str, Any]) -> List[PathStep]:
    try:
        return parse_steps(doc["steps"])
    except (KeyError, TypeError, ValueError) as exc:
        raise InputValidationError(f"Invalid learning path steps: {exc}") from None


def _progress_summary(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return {
        "status": row["status"],
        "progressPercentage": row["progress_percentage"],
        "currentStep": row["current_step"],
        "completed": bool(row["completed"]),
    }


# ---------- Catalogue ----------
def list_paths(
    database: Database,
    *,
    category: Optional[str] = None,
    difficulty: Optional[str] = None,
    search: Optional[str] = None,
    sort: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    with database.read() as repo:
        rows, total = repo.list_paths(
            category=category, difficulty=difficulty, search=search, sort=sort, page=page, limit=limit
        )
        enrollments = repo.enrollments_for_paths(user_id, [row["id"] for row in rows]) if user_id else {}
    paths = []
    for row in rows:
        doc = path_document(row)
        if user_id:
            doc["userProgress"] = _progress_summary(enrollments.get(row["id"]))
        paths.append(doc)
    return {"learningPaths": paths, "pagination": pagination(page, limit, total)}


def get_path(database: Database, path_id: int, user_id: Optional[str] = None) -> Dict[str, Any]:
    with database.read() as repo:
        row = repo.get_path(path_id)
        if row is None or not row["is_active"]:
            raise NotFoundError("Learning path not found")
        doc = path_document(row)
        if user_id:
            enrollment = repo.get_enrollment(user_id, path_id)
            doc["userProgress"] = (
                enrollment_document(enrollment, enrollment_progress(enrollment, doc["totalSteps"]))
                if enrollment is not None
                else None
            )
    return doc


# ---------- Enrollment ----------
def enroll(database: Database, user_id: str, path_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    moment = now or utcnow()
    try:
        with database.transaction() as repo:
            row = repo.get_path(path_id)
            if row is None:
                raise NotFoundError("Learning path not found")
            if not (row["is_published"] and row["is_active"]):
                raise ForbiddenError("Learning path is not available")
            if repo.get_enrollment(user_id, path_id) is not None:
                raise ConflictError("Already enrolled in this learning path", status_code=400)
            repo.create_enrollment(user_id, path_id, moment)
            repo.increment_path_counter(path_id, "enrollments")
            enrollment = repo.get_enrollment(user_id, path_id)
            total_steps = len(json.loads(row["steps"] or "[]"))
    except sqlite3.IntegrityError:
        raise ConflictError("Already enrolled in this learning path", status_code=400) from None
    _log_json("path_enrolled", {"user_id": user_id, "path_id": path_id, "at": iso(moment)})
    return enrollment_document(enrollment, enrollment_progress(enrollment, total_steps))


def complete_step(
    database: Database,
    user_id: str,
    path_id: int,
    step_number: int,
    *,
    score: Optional[float] = None,
    time_spent: int = 0,
    xp_earned: Optional[int] = None,
    now: Optional[datetime] = None,
    progression: ProgressionEngine = DEFAULT_ENGINE,
    awarder: Optional[BadgeAwarder] = None,
) -> Dict[str, Any]:
    """Record a step and apply its XP, milestone bonuses and streak in one transaction."""
    moment = now or utcnow()
    awarder = awarder or BadgeAwarder(progression)
    with database.transaction() as repo:
        row = repo.get_path(path_id)
        if row is None:
            raise NotFoundError("Learning path not found")
        enrollment = repo.get_enrollment(user_id, path_id)
        if enrollment is None:
            raise NotFoundError("Not enrolled in this learning path")
        steps = _steps(path_document(row))
        step = next((s for s in steps if s.step_number == step_number), None)
        if step is None:
            raise NotFoundError("Step not found")

        progress = enrollment_progress(enrollment, len(steps))
        missing = missing_prerequisites(step, progress.completed_numbers)
        if missing:
            raise PrerequisitesNotMetError(missing, message="Complete the prerequisite steps first")
        # The client figure is only kept on the step record; XP credit always comes from the step.
        recorded_xp = step.xp_reward if xp_earned is None else max(0, min(int(xp_earned), step.xp_reward))
        try:
            completion = record_step(
                progress,
                step_number,
                score=score,
                time_spent=time_spent,
                xp_earned=recorded_xp,
                now=moment,
                step_numbers=[s.step_number for s in steps],
            )
        except EnrollmentClosedError as exc:
            raise PreconditionError(str(exc).capitalize()) from None
        step_xp = step.xp_reward if completion.first_completion else 0
        repo.save_enrollment(progress)
        if completion.path_completed:
            repo.increment_path_counter(path_id, "completions")
            repo.add_achievement(
                user_id, f"Completed {row['title']}", "Finished every step of a learning path", "learning-path", moment
            )

        state = repo.load_gamification(user_id)
        level_change = progression.award_xp(state, step_xp + completion.milestone_xp)
        progression.update_streak(state, moment)
        repo.save_gamification(user_id, state)
        sweep = awarder.check_and_award(repo, user_id, moment)
        final_level = repo.load_gamification(user_id).level
        saved = repo.get_enrollment(user_id, path_id)

    upcoming = next_step(steps, progress.completed_numbers)
    _log_json(
        "path_step_completed",
        {
            "user_id": user_id,
            "path_id": path_id,
            "step": step_number,
            "first_completion": completion.first_completion,
            "progress": progress.progress_percentage,
            "milestones": [m.type for m in completion.new_milestones],
        },
    )
    return {
        "progress": enrollment_document(saved, progress),
        "nextStep": upcoming.as_dict() if upcoming else None,
        "milestones": [m.as_dict() for m in completion.new_milestones],
        "xpEarned": step_xp + completion.milestone_xp,
        "levelUp": {
            "leveledUp": level_change.leveled_up or sweep.level_change is not None,
            "newLevel": final_level,
        },
        "newBadges": [badge_summary(badge) for badge in sweep.badges],
    }


def user_paths(database: Database, user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    with database.read() as repo:
        rows = repo.user_enrollments(user_id, status)
    items = []
    for row in rows:
        total_steps = len(json.loads(row["path_steps"] or "[]"))
        items.append(
            {
                "enrollment": enrollment_document(row, enrollment_progress(row, total_steps)),
                "path": {
                    "id": row["path_id"],
                    "title": row["path_title"],
                    "category": row["path_category"],
                    "difficulty": row["path_difficulty"],
                    "totalSteps": total_steps,
                },
            }
        )
    return items


def path_leaderboard(database: Database, path_id: int, limit: int = 10) -> List[Dict[str, Any]]:
    with database.read() as repo:
        row = repo.get_path(path_id)
        if row is None:
            raise NotFoundError("Learning path not found")
        total_steps = len(json.loads(row["steps"] or "[]"))
        rows = repo.path_leaderboard(path_id, max(1, min(100, int(limit or 10))))
    board = []
    for rank, item in enumerate(rows, start=1):
        progress = enrollment_progress(item, total_steps)
        profile = json.loads(item["profile"] or "{}")
        board.append(
            {
                "rank": rank,
                "userId": item["user_id"],
                "username": item["username"],
                "profile": {key: profile.get(key) for key in ("firstName", "lastName", "avatar")},
                "completedAt": item["completed_at"],
                "totalTimeSpent": progress.total_time_spent,
                "averageScore": progress.average_score,
            }
        )
    return board


def analytics(database: Database, user_id: str, path_id: int) -> Dict[str, Any]:
    with database.read() as repo:
        row = repo.get_path(path_id)
        enrollment = repo.get_enrollment(user_id, path_id)
    if row is None or enrollment is None:
        raise NotFoundError("Not enrolled in this learning path")
    total_steps = len(json.loads(row["steps"] or "[]"))
    return enrollment_analytics(enrollment_progress(enrollment, total_steps))


def update_enrollment_status(
    database: Database, user_id: str, path_id: int, status: str, now: Optional[datetime] = None
) -> Dict[str, Any]:
    moment = now or utcnow()
    with database.transaction() as repo:
        row = repo.get_path(path_id)
        enrollment = repo.get_enrollment(user_id, path_id)
        if row is None or enrollment is None:
            raise NotFoundError("Not enrolled in this learning path")
        current = enrollment["status"]
        if status != current and status not in ENROLLMENT_TRANSITIONS.get(current, set()):
            raise PreconditionError(f"Cannot change enrollment from {current} to {status}")
        repo.set_enrollment_status(user_id, path_id, status, moment)
        saved = repo.get_enrollment(user_id, path_id)
        total_steps = len(json.loads(row["steps"] or "[]"))
    _log_json("path_status_changed", {"user_id": user_id, "path_id": path_id, "from": current, "to": status})
    return enrollment_document(saved, enrollment_progress(saved, total_steps))


# ---------- Administration ----------
def _validated_steps(raw_steps) -> List[Dict[str, Any]]:
    try:
        steps = parse_steps(raw_steps)
    except (KeyError, TypeError, ValueError) as exc:
        raise InputValidationError(f"Invalid learning path steps: {exc}") from None
    return [step.as_dict() for step in steps]


def create_path(database: Database, author_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
    payload = dict(data)
    payload["steps"] = _validated_steps(data.get("steps") or [])
    if not payload["steps"]:
        raise InputValidationError("A learning path needs at least one step")
    with database.transaction() as repo:
        for step in payload["steps"]:
            if step["challengeId"] is not None and repo.get_challenge(int(step["challengeId"])) is None:
                raise InputValidationError(f"Step {step['stepNumber']} references an unknown challenge")
        path_id = repo.create_path(payload, author_id)
        doc = path_document(repo.get_path(path_id))
    _log_json("path_created", {"path_id": path_id, "author_id": author_id})
    return doc


def update_path(database: Database, path_id: int, data: Mapping[str, Any]) -> Dict[str, Any]:
    payload = dict(data)
    if payload.get("steps") is not None:
        payload["steps"] = _validated_steps(payload["steps"])
    with database.transaction() as repo:
        if repo.get_path(path_id) is None:
            raise NotFoundError("Learning path not found")
        repo.update_path(path_id, payload)
        return path_document(repo.get_path(path_id))

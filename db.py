"""SQLite persistence for Learning Buddy.

``Database`` owns the connection pool and the schema. Data access goes
through :class:`Repository`, which is bound to one pooled connection:
``Database.read()`` hands out a repository in autocommit mode and
``Database.transaction()`` one inside ``BEGIN IMMEDIATE`` so that a
sequence of writes commits or rolls back as a unit.
"""

import json
import logging
import re
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from db_pool import SQLiteConnectionPool
from engines.badges import (
    BadgeDefinition,
    RARITY_SCORES,
    InvalidCriterionError,
    LearnerSnapshot,
    UnreadableCriteria,
    criteria_from_mapping,
)
from engines.path_progress import CompletedStep, Milestone, PathProgress
from engines.progression import GamificationState, StreakState, XP_PER_LEVEL
from engines.rollups import AttemptRecord
from engines.scoring import DIFFICULTY_LEVELS, performance_level

logger = logging.getLogger(__name__)

_SAVEPOINT_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SCHEMA = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS users (
  id                    TEXT PRIMARY KEY,
  username              TEXT NOT NULL UNIQUE,
  email                 TEXT NOT NULL UNIQUE,
  pw_hash               TEXT NOT NULL,
  pw_salt               TEXT NOT NULL,
  role                  TEXT NOT NULL DEFAULT 'learner' CHECK (role IN ('learner', 'admin')),
  is_active             INTEGER NOT NULL DEFAULT 1,
  profile               TEXT,
  preferences           TEXT,
  settings              TEXT,
  level                 INTEGER NOT NULL DEFAULT 1 CHECK (level >= 1),
  xp                    INTEGER NOT NULL DEFAULT 0,
  total_xp              INTEGER NOT NULL DEFAULT 0,
  streak_current        INTEGER NOT NULL DEFAULT 0,
  streak_longest        INTEGER NOT NULL DEFAULT 0,
  streak_last_activity  TEXT,
  total_time_spent      INTEGER NOT NULL DEFAULT 0,
  challenges_completed  INTEGER NOT NULL DEFAULT 0,
  challenges_attempted  INTEGER NOT NULL DEFAULT 0,
  average_score         REAL NOT NULL DEFAULT 0,
  last_login            TEXT,
  reset_token_hash      TEXT,
  reset_token_expires   TEXT,
  created_at            TEXT NOT NULL,
  updated_at            TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_total_xp ON users(total_xp DESC);

CREATE TABLE IF NOT EXISTS user_achievements (
  id          INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id     TEXT NOT NULL,
  name        TEXT NOT NULL,
  description TEXT,
  category    TEXT,
  earned_at   TEXT NOT NULL,
  FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS auth_tokens (
  token_hash  TEXT PRIMARY KEY,
  user_id     TEXT NOT NULL,
  created_at  TEXT NOT NULL,
  expires_at  TEXT NOT NULL,
  FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_auth_tokens_user ON auth_tokens(user_id);

CREATE TABLE IF NOT EXISTS badges (
  id              INTEGER PRIMARY KEY AUTOINCREMENT,
  name            TEXT NOT NULL UNIQUE,
  description     TEXT,
  icon            TEXT,
  rarity          TEXT NOT NULL DEFAULT 'common',
  category        TEXT NOT NULL DEFAULT 'achievement',
  type            TEXT NOT NULL DEFAULT 'progress',
  criteria        TEXT,
  xp_bonus        INTEGER NOT NULL DEFAULT 0,
  is_active       INTEGER NOT NULL DEFAULT 1,
  start_date      TEXT,
  end_date        TEXT,
  max_recipients  INTEGER,
  total_earned    INTEGER NOT NULL DEFAULT 0,
  unique_earners  INTEGER NOT NULL DEFAULT 0,
  first_earned_at TEXT,
  last_earned_at  TEXT,
  created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_badges (
  user_id    TEXT NOT NULL,
  badge_id   INTEGER NOT NULL,
  earned_at  TEXT NOT NULL,
  PRIMARY KEY (user_id, badge_id),
  FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
  FOREIGN KEY(badge_id) REFERENCES badges(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_user_badges_badge ON user_badges(badge_id);

CREATE TABLE IF NOT EXISTS challenges (
  id                INTEGER PRIMARY KEY AUTOINCREMENT,
  title             TEXT NOT NULL,
  description       TEXT,
  type              TEXT NOT NULL,
  category          TEXT NOT NULL,
  difficulty        TEXT NOT NULL,
  estimated_time    INTEGER NOT NULL DEFAULT 0,
  tags              TEXT,
  content           TEXT,
  scoring           TEXT NOT NULL,
  prerequisites     TEXT,
  author_id         TEXT,
  is_published      INTEGER NOT NULL DEFAULT 0,
  is_active         INTEGER NOT NULL DEFAULT 1,
  total_attempts    INTEGER NOT NULL DEFAULT 0,
  total_completions INTEGER NOT NULL DEFAULT 0,
  average_score     REAL NOT NULL DEFAULT 0,
  average_time      REAL NOT NULL DEFAULT 0,
  created_at        TEXT NOT NULL,
  updated_at        TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_challenges_listing ON challenges(is_published, is_active, category, difficulty);

CREATE TABLE IF NOT EXISTS attempts (
  id                 INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id            TEXT NOT NULL,
  challenge_id       INTEGER NOT NULL,
  attempt_number     INTEGER NOT NULL CHECK (attempt_number >= 1),
  status             TEXT NOT NULL DEFAULT 'in-progress'
                     CHECK (status IN ('in-progress', 'completed', 'abandoned', 'failed')),
  completed          INTEGER NOT NULL DEFAULT 0,
  started_at         TEXT NOT NULL,
  completed_at       TEXT,
  time_spent         INTEGER NOT NULL DEFAULT 0,
  estimated_time     INTEGER NOT NULL DEFAULT 0,
  score              INTEGER NOT NULL DEFAULT 0,
  max_possible_score INTEGER NOT NULL DEFAULT 0,
  percentage         INTEGER NOT NULL DEFAULT 0,
  passed             INTEGER NOT NULL DEFAULT 0,
  responses          TEXT,
  xp_earned          INTEGER NOT NULL DEFAULT 0,
  bonus_xp           TEXT,
  hints_used         INTEGER NOT NULL DEFAULT 0,
  requires_review    INTEGER NOT NULL DEFAULT 0,
  user_feedback      TEXT,
  created_at         TEXT NOT NULL,
  UNIQUE (user_id, challenge_id, attempt_number),
  FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
  FOREIGN KEY(challenge_id) REFERENCES challenges(id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_attempts_single_active
  ON attempts(user_id, challenge_id) WHERE status = 'in-progress';
CREATE INDEX IF NOT EXISTS idx_attempts_user_completed ON attempts(user_id, completed, completed_at);

CREATE TABLE IF NOT EXISTS learning_paths (
  id                 INTEGER PRIMARY KEY AUTOINCREMENT,
  title              TEXT NOT NULL,
  description        TEXT,
  category           TEXT NOT NULL,
  difficulty         TEXT NOT NULL,
  estimated_duration REAL NOT NULL DEFAULT 0,
  tags               TEXT,
  steps              TEXT NOT NULL,
  author_id          TEXT,
  is_published       INTEGER NOT NULL DEFAULT 0,
  is_active          INTEGER NOT NULL DEFAULT 1,
  enrollments        INTEGER NOT NULL DEFAULT 0,
  completions        INTEGER NOT NULL DEFAULT 0,
  created_at         TEXT NOT NULL,
  updated_at         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS path_enrollments (
  id                  INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id             TEXT NOT NULL,
  path_id             INTEGER NOT NULL,
  status              TEXT NOT NULL DEFAULT 'enrolled',
  current_step        INTEGER NOT NULL DEFAULT 1,
  completed_steps     TEXT,
  milestones          TEXT,
  progress_percentage INTEGER NOT NULL DEFAULT 0,
  completed           INTEGER NOT NULL DEFAULT 0,
  completed_at        TEXT,
  started_at          TEXT,
  enrolled_at         TEXT NOT NULL,
  last_activity       TEXT,
  total_time_spent    INTEGER NOT NULL DEFAULT 0,
  UNIQUE (user_id, path_id),
  FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
  FOREIGN KEY(path_id) REFERENCES learning_paths(id)
);

CREATE TABLE IF NOT EXISTS chat_sessions (
  session_id      TEXT PRIMARY KEY,
  user_id         TEXT NOT NULL,
  title           TEXT,
  context_type    TEXT NOT NULL DEFAULT 'general',
  context         TEXT,
  personalization TEXT,
  status          TEXT NOT NULL DEFAULT 'active',
  started_at      TEXT NOT NULL,
  last_message_at TEXT NOT NULL,
  FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_chat_sessions_user ON chat_sessions(user_id, last_message_at DESC);

CREATE TABLE IF NOT EXISTS chat_messages (
  id                INTEGER PRIMARY KEY AUTOINCREMENT,
  message_id        TEXT NOT NULL UNIQUE,
  session_id        TEXT NOT NULL,
  role              TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
  content           TEXT NOT NULL,
  metadata          TEXT,
  suggested_actions TEXT,
  feedback          TEXT,
  created_at        TEXT NOT NULL,
  FOREIGN KEY(session_id) REFERENCES chat_sessions(session_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_chat_messages_session ON chat_messages(session_id, id);
"""


# -------------- value helpers --------------
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def _load(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Discarding undecodable JSON column value")
        return default


def _page(page: int, limit: int) -> Tuple[int, int]:
    page = max(1, int(page or 1))
    limit = max(1, min(100, int(limit or 20)))
    return limit, (page - 1) * limit


def pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    size, _ = _page(page, limit)
    return {
        "current": max(1, int(page or 1)),
        "pages": (total + size - 1) // size,
        "total": total,
        "limit": size,
    }


def _like(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


# -------------- row -> document --------------
def user_document(row: sqlite3.Row) -> Dict[str, Any]:
    """Public representation of a user row (no credentials)."""
    return {
        "id": row["id"],
        "username": row["username"],
        "email": row["email"],
        "role": row["role"],
        "isActive": bool(row["is_active"]),
        "profile": _load(row["profile"], {}),
        "learningPreferences": _load(row["preferences"], {}),
        "settings": _load(row["settings"], {}),
        "gamification": {
            "level": row["level"],
            "xp": row["xp"],
            "totalXp": row["total_xp"],
            "xpToNextLevel": row["level"] * XP_PER_LEVEL - row["xp"],
            "streak": {
                "current": row["streak_current"],
                "longest": row["streak_longest"],
                "lastActivity": row["streak_last_activity"],
            },
        },
        "statistics": {
            "totalTimeSpent": row["total_time_spent"],
            "challengesCompleted": row["challenges_completed"],
            "challengesAttempted": row["challenges_attempted"],
            "averageScore": row["average_score"],
        },
        "lastLogin": row["last_login"],
        "createdAt": row["created_at"],
    }


def badge_document(row: sqlite3.Row) -> Dict[str, Any]:
    rarity = row["rarity"]
    return {
        "id": row["id"],
        "name": row["name"],
        "description": row["description"],
        "icon": row["icon"],
        "rarity": rarity,
        "rarityScore": RARITY_SCORES.get(rarity, 1),
        "category": row["category"],
        "type": row["type"],
        "criteria": _load(row["criteria"], {}),
        "rewards": {"xpBonus": row["xp_bonus"]},
        "availability": {
            "isActive": bool(row["is_active"]),
            "startDate": row["start_date"],
            "endDate": row["end_date"],
            "maxRecipients": row["max_recipients"],
        },
        "statistics": {
            "totalEarned": row["total_earned"],
            "uniqueEarners": row["unique_earners"],
            "firstEarnedAt": row["first_earned_at"],
            "lastEarnedAt": row["last_earned_at"],
        },
    }


def badge_definition(row: sqlite3.Row) -> BadgeDefinition:
    try:
        criteria = criteria_from_mapping(_load(row["criteria"], {}))
    except InvalidCriterionError as exc:
        logger.warning("Badge %s has unreadable criteria: %s", row["id"], exc)
        criteria = (UnreadableCriteria(str(exc)),)
    return BadgeDefinition(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        icon=row["icon"] or "",
        rarity=row["rarity"],
        category=row["category"],
        type=row["type"],
        criteria=criteria,
        xp_bonus=row["xp_bonus"] or 0,
        is_active=bool(row["is_active"]),
        start_date=parse_ts(row["start_date"]),
        end_date=parse_ts(row["end_date"]),
        max_recipients=row["max_recipients"],
    )


def challenge_document(row: sqlite3.Row) -> Dict[str, Any]:
    attempts = row["total_attempts"]
    return {
        "id": row["id"],
        "title": row["title"],
        "description": row["description"],
        "type": row["type"],
        "category": row["category"],
        "difficulty": row["difficulty"],
        "difficultyLevel": DIFFICULTY_LEVELS.get(row["difficulty"], 1),
        "estimatedTime": row["estimated_time"],
        "tags": _load(row["tags"], []),
        "content": _load(row["content"], {}),
        "scoring": _load(row["scoring"], {}),
        "prerequisites": _load(row["prerequisites"], []),
        "authorId": row["author_id"],
        "isPublished": bool(row["is_published"]),
        "isActive": bool(row["is_active"]),
        "statistics": {
            "totalAttempts": attempts,
            "totalCompletions": row["total_completions"],
            "averageScore": row["average_score"],
            "averageTime": row["average_time"],
            "completionRate": (row["total_completions"] / attempts * 100) if attempts else 0,
        },
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def attempt_document(row: sqlite3.Row) -> Dict[str, Any]:
    bonus = _load(row["bonus_xp"], {}) or {}
    return {
        "id": row["id"],
        "userId": row["user_id"],
        "challengeId": row["challenge_id"],
        "attemptNumber": row["attempt_number"],
        "status": row["status"],
        "completed": bool(row["completed"]),
        "startedAt": row["started_at"],
        "completedAt": row["completed_at"],
        "timeSpent": row["time_spent"],
        "estimatedTime": row["estimated_time"],
        "score": row["score"],
        "maxPossibleScore": row["max_possible_score"],
        "percentage": row["percentage"],
        "passed": bool(row["passed"]),
        "performanceLevel": performance_level(row["percentage"]),
        "responses": _load(row["responses"], []),
        "xpEarned": row["xp_earned"],
        "bonusXp": bonus,
        "totalXpEarned": row["xp_earned"] + sum(int(v or 0) for v in bonus.values()),
        "hintsUsed": row["hints_used"],
        "requiresReview": bool(row["requires_review"]),
        "userFeedback": _load(row["user_feedback"], None),
        "createdAt": row["created_at"],
    }


def path_document(row: sqlite3.Row) -> Dict[str, Any]:
    steps = _load(row["steps"], [])
    enrollments = row["enrollments"]
    return {
        "id": row["id"],
        "title": row["title"],
        "description": row["description"],
        "category": row["category"],
        "difficulty": row["difficulty"],
        "estimatedDuration": row["estimated_duration"],
        "tags": _load(row["tags"], []),
        "steps": steps,
        "totalSteps": len(steps),
        "authorId": row["author_id"],
        "isPublished": bool(row["is_published"]),
        "isActive": bool(row["is_active"]),
        "statistics": {
            "enrollments": enrollments,
            "completions": row["completions"],
            "completionRate": (row["completions"] / enrollments * 100) if enrollments else 0,
        },
        "createdAt": row["created_at"],
    }


def enrollment_progress(row: sqlite3.Row, total_steps: int) -> PathProgress:
    steps = [
        CompletedStep(
            step_number=int(item["stepNumber"]),
            completed_at=parse_ts(item["completedAt"]),
            score=item.get("score"),
            time_spent=int(item.get("timeSpent") or 0),
            attempts=int(item.get("attempts") or 1),
            xp_earned=int(item.get("xpEarned") or 0),
        )
        for item in _load(row["completed_steps"], [])
    ]
    milestones = [
        Milestone(
            type=item["type"],
            description=item.get("description", ""),
            achieved_at=parse_ts(item["achievedAt"]),
            xp_bonus=int(item.get("xpBonus") or 0),
        )
        for item in _load(row["milestones"], [])
    ]
    return PathProgress(
        user_id=row["user_id"],
        path_id=row["path_id"],
        total_steps=total_steps,
        status=row["status"],
        current_step=row["current_step"],
        completed_steps=steps,
        milestones=milestones,
        progress_percentage=row["progress_percentage"],
        completed=bool(row["completed"]),
        completed_at=parse_ts(row["completed_at"]),
        started_at=parse_ts(row["started_at"]),
        last_activity=parse_ts(row["last_activity"]),
        total_time_spent=row["total_time_spent"],
    )


def enrollment_document(row: sqlite3.Row, progress: PathProgress) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "userId": progress.user_id,
        "pathId": progress.path_id,
        "status": progress.status,
        "currentStep": progress.current_step,
        "completedSteps": [s.as_dict() for s in progress.completed_steps],
        "milestones": [m.as_dict() for m in progress.milestones],
        "progressPercentage": progress.progress_percentage,
        "completed": progress.completed,
        "completedAt": iso(progress.completed_at),
        "startedAt": iso(progress.started_at),
        "enrolledAt": row["enrolled_at"],
        "lastActivity": iso(progress.last_activity),
        "totalTimeSpent": progress.total_time_spent,
        "averageScore": progress.average_score,
        "totalXpEarned": progress.total_xp_earned,
    }


def message_document(row: sqlite3.Row, *, include_metadata: bool = True) -> Dict[str, Any]:
    doc = {
        "messageId": row["message_id"],
        "role": row["role"],
        "content": row["content"],
        "timestamp": row["created_at"],
        "suggestedActions": _load(row["suggested_actions"], []),
        "feedback": _load(row["feedback"], None),
    }
    if include_metadata:
        doc["metadata"] = _load(row["metadata"], {})
    return doc


def session_document(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "sessionId": row["session_id"],
        "userId": row["user_id"],
        "title": row["title"],
        "context": {"type": row["context_type"], **(_load(row["context"], {}) or {})},
        "personalization": _load(row["personalization"], {}),
        "status": row["status"],
        "startedAt": row["started_at"],
        "lastMessageAt": row["last_message_at"],
    }


_LEADERBOARD_ORDER = {
    "xp": ("total_xp", "level"),
    "level": ("level", "xp"),
    "challenges": ("challenges_completed", "total_xp"),
}

_LISTED_USER = (
    "is_active = 1 AND COALESCE(json_extract(settings, '$.privacy.showInLeaderboard'), 1) = 1"
)


class Repository:
    """Table access bound to a single connection."""

    def __init__(self, con: sqlite3.Connection) -> None:
        self._con = con

    def _exec(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        return self._con.execute(sql, tuple(params))

    def _query(self, sql: str, params: Iterable = ()) -> List[sqlite3.Row]:
        return self._con.execute(sql, tuple(params)).fetchall()

    def _one(self, sql: str, params: Iterable = ()) -> Optional[sqlite3.Row]:
        return self._con.execute(sql, tuple(params)).fetchone()

    def _scalar(self, sql: str, params: Iterable = (), default: Any = 0) -> Any:
        row = self._one(sql, params)
        if row is None or row[0] is None:
            return default
        return row[0]

    @contextmanager
    def savepoint(self, name: str) -> Iterator[None]:
        if not _SAVEPOINT_NAME.match(name):
            raise ValueError(f"invalid savepoint name: {name}")
        self._exec(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            self._exec(f"ROLLBACK TO SAVEPOINT {name}")
            self._exec(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            self._exec(f"RELEASE SAVEPOINT {name}")

    # -------------- users --------------
    def create_user(
        self,
        *,
        username: str,
        email: str,
        pw_hash: str,
        pw_salt: str,
        profile: Mapping[str, Any],
        preferences: Mapping[str, Any],
        settings: Mapping[str, Any],
        role: str = "learner",
        now: Optional[datetime] = None,
    ) -> str:
        user_id = uuid.uuid4().hex
        stamp = iso(now or utcnow())
        self._exec(
            """
            INSERT INTO users(id, username, email, pw_hash, pw_salt, role, profile, preferences,
                              settings, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?)
            """,
            (user_id, username, email, pw_hash, pw_salt, role, _dump(dict(profile)),
             _dump(dict(preferences)), _dump(dict(settings)), stamp, stamp),
        )
        return user_id

    def get_user(self, user_id: str) -> Optional[sqlite3.Row]:
        return self._one("SELECT * FROM users WHERE id = ?", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[sqlite3.Row]:
        return self._one("SELECT * FROM users WHERE email = ?", (email,))

    def get_user_by_username(self, username: str) -> Optional[sqlite3.Row]:
        return self._one("SELECT * FROM users WHERE username = ? COLLATE NOCASE", (username,))

    def get_user_by_reset_token(self, token_hash: str, now: datetime) -> Optional[sqlite3.Row]:
        return self._one(
            "SELECT * FROM users WHERE reset_token_hash = ? AND reset_token_expires > ? AND is_active = 1",
            (token_hash, iso(now)),
        )

    def get_user_document(self, user_id: str) -> Optional[Dict[str, Any]]:
        row = self.get_user(user_id)
        if row is None:
            return None
        doc = user_document(row)
        doc["gamification"]["badges"] = [
            {"badgeId": b["badge_id"], "earnedAt": b["earned_at"]}
            for b in self._query(
                "SELECT badge_id, earned_at FROM user_badges WHERE user_id = ? ORDER BY earned_at",
                (user_id,),
            )
        ]
        doc["gamification"]["achievements"] = self.list_achievements(user_id)
        return doc

    _UPDATABLE_USER_FIELDS = {
        "username", "email", "pw_hash", "pw_salt", "role", "is_active", "profile", "preferences",
        "settings", "last_login", "reset_token_hash", "reset_token_expires",
    }
    _JSON_USER_FIELDS = {"profile", "preferences", "settings"}

    def update_user(self, user_id: str, **fields: Any) -> None:
        unknown = set(fields) - self._UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        assignments = []
        params: List[Any] = []
        for column, value in fields.items():
            if column in self._JSON_USER_FIELDS:
                value = _dump(value)
            elif isinstance(value, datetime):
                value = iso(value)
            assignments.append(f"{column} = ?")
            params.append(value)
        assignments.append("updated_at = ?")
        params.extend([iso(utcnow()), user_id])
        self._exec(f"UPDATE users SET {', '.join(assignments)} WHERE id = ?", params)

    def load_gamification(self, user_id: str) -> GamificationState:
        row = self.get_user(user_id)
        if row is None:
            raise LookupError(f"unknown user {user_id}")
        return GamificationState(
            level=row["level"],
            xp=row["xp"],
            total_xp=row["total_xp"],
            streak=StreakState(
                current=row["streak_current"],
                longest=row["streak_longest"],
                last_activity=parse_ts(row["streak_last_activity"]),
            ),
        )

    def save_gamification(self, user_id: str, state: GamificationState) -> None:
        self._exec(
            """
            UPDATE users SET level = ?, xp = ?, total_xp = ?, streak_current = ?, streak_longest = ?,
                             streak_last_activity = ?, updated_at = ?
            WHERE id = ?
            """,
            (state.level, state.xp, state.total_xp, state.streak.current, state.streak.longest,
             iso(state.streak.last_activity), iso(utcnow()), user_id),
        )

    def save_user_statistics(
        self,
        user_id: str,
        *,
        total_time_spent: int,
        challenges_completed: int,
        challenges_attempted: int,
        average_score: float,
    ) -> None:
        self._exec(
            """
            UPDATE users SET total_time_spent = ?, challenges_completed = ?, challenges_attempted = ?,
                             average_score = ?
            WHERE id = ?
            """,
            (total_time_spent, challenges_completed, challenges_attempted, average_score, user_id),
        )

    def learner_snapshot(self, user_id: str) -> Optional[LearnerSnapshot]:
        row = self.get_user(user_id)
        if row is None:
            return None
        return LearnerSnapshot(
            user_id=row["id"],
            xp=row["xp"],
            total_xp=row["total_xp"],
            level=row["level"],
            streak_current=row["streak_current"],
            total_time_spent=row["total_time_spent"],
        )

    def add_achievement(self, user_id: str, name: str, description: str, category: str, now: datetime) -> None:
        self._exec(
            "INSERT INTO user_achievements(user_id, name, description, category, earned_at) VALUES (?,?,?,?,?)",
            (user_id, name, description, category, iso(now)),
        )

    def list_achievements(self, user_id: str) -> List[Dict[str, Any]]:
        return [
            {"name": r["name"], "description": r["description"], "category": r["category"],
             "earnedAt": r["earned_at"]}
            for r in self._query(
                "SELECT * FROM user_achievements WHERE user_id = ? ORDER BY id", (user_id,)
            )
        ]

    def leaderboard(self, kind: str, limit: int) -> List[sqlite3.Row]:
        if kind == "badges":
            return self._query(
                f"""
                SELECT u.*, COUNT(ub.badge_id) AS badge_count
                FROM users u LEFT JOIN user_badges ub ON ub.user_id = u.id
                WHERE {_LISTED_USER.replace('is_active', 'u.is_active').replace('settings', 'u.settings')}
                GROUP BY u.id
                ORDER BY badge_count DESC, u.total_xp DESC, u.created_at
                LIMIT ?
                """,
                (limit,),
            )
        primary, secondary = _LEADERBOARD_ORDER[kind]
        return self._query(
            f"""
            SELECT u.*, (SELECT COUNT(*) FROM user_badges ub WHERE ub.user_id = u.id) AS badge_count
            FROM users u
            WHERE {_LISTED_USER}
            ORDER BY {primary} DESC, {secondary} DESC, created_at
            LIMIT ?
            """,
            (limit,),
        )

    def users_ahead(self, kind: str, user_id: str) -> Optional[int]:
        """Number of listed users strictly ahead of ``user_id`` on the primary key."""
        if kind == "badges":
            own = self._scalar("SELECT COUNT(*) FROM user_badges WHERE user_id = ?", (user_id,))
            return self._scalar(
                f"""
                SELECT COUNT(*) FROM users u
                WHERE {_LISTED_USER}
                  AND (SELECT COUNT(*) FROM user_badges ub WHERE ub.user_id = u.id) > ?
                """,
                (own,),
            )
        primary, _ = _LEADERBOARD_ORDER[kind]
        row = self._one(f"SELECT {primary} FROM users WHERE id = ?", (user_id,))
        if row is None:
            return None
        return self._scalar(
            f"SELECT COUNT(*) FROM users WHERE {_LISTED_USER} AND {primary} > ?", (row[0],)
        )

    def count_users(self, since: Optional[datetime] = None) -> int:
        if since is None:
            return self._scalar("SELECT COUNT(*) FROM users WHERE is_active = 1")
        return self._scalar(
            "SELECT COUNT(*) FROM users WHERE is_active = 1 AND created_at >= ?", (iso(since),)
        )

    def user_ids_in_level_range(self, low: int, high: int, exclude: str) -> List[str]:
        return [
            r["id"]
            for r in self._query(
                "SELECT id FROM users WHERE is_active = 1 AND level BETWEEN ? AND ? AND id != ?",
                (low, high, exclude),
            )
        ]

    def active_user_ids(self, exclude: Optional[str] = None) -> List[str]:
        return [
            r["id"]
            for r in self._query("SELECT id FROM users WHERE is_active = 1 AND id != ?", (exclude or "",))
        ]

    # -------------- tokens --------------
    def store_token(self, token_hash: str, user_id: str, expires_at: datetime, now: datetime) -> None:
        self._exec(
            "INSERT INTO auth_tokens(token_hash, user_id, created_at, expires_at) VALUES (?,?,?,?)",
            (token_hash, user_id, iso(now), iso(expires_at)),
        )

    def token_user(self, token_hash: str, now: datetime) -> Optional[str]:
        row = self._one(
            "SELECT user_id FROM auth_tokens WHERE token_hash = ? AND expires_at > ?",
            (token_hash, iso(now)),
        )
        return row["user_id"] if row else None

    def revoke_token(self, token_hash: str) -> None:
        self._exec("DELETE FROM auth_tokens WHERE token_hash = ?", (token_hash,))

    def revoke_user_tokens(self, user_id: str, keep: Optional[str] = None) -> None:
        self._exec(
            "DELETE FROM auth_tokens WHERE user_id = ? AND token_hash != ?", (user_id, keep or "")
        )

    # -------------- badges --------------
    def create_badge(self, data: Mapping[str, Any], now: Optional[datetime] = None) -> int:
        availability = data.get("availability") or {}
        cur = self._exec(
            """
            INSERT INTO badges(name, description, icon, rarity, category, type, criteria, xp_bonus,
                               is_active, start_date, end_date, max_recipients, created_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                data["name"], data.get("description"), data.get("icon"), data.get("rarity", "common"),
                data.get("category", "achievement"), data.get("type", "progress"),
                _dump(data.get("criteria") or {}), int((data.get("rewards") or {}).get("xpBonus") or 0),
                1 if availability.get("isActive", True) else 0, availability.get("startDate"),
                availability.get("endDate"), availability.get("maxRecipients"), iso(now or utcnow()),
            ),
        )
        return int(cur.lastrowid)

    def update_badge(self, badge_id: int, data: Mapping[str, Any]) -> None:
        columns = {
            "name": data.get("name"),
            "description": data.get("description"),
            "icon": data.get("icon"),
            "rarity": data.get("rarity"),
            "category": data.get("category"),
            "type": data.get("type"),
        }
        assignments = [(col, val) for col, val in columns.items() if val is not None]
        if "criteria" in data and data["criteria"] is not None:
            assignments.append(("criteria", _dump(data["criteria"])))
        rewards = data.get("rewards") or {}
        if rewards.get("xpBonus") is not None:
            assignments.append(("xp_bonus", int(rewards["xpBonus"])))
        availability = data.get("availability") or {}
        if "isActive" in availability:
            assignments.append(("is_active", 1 if availability["isActive"] else 0))
        for key, column in (("startDate", "start_date"), ("endDate", "end_date"), ("maxRecipients", "max_recipients")):
            if key in availability:
                assignments.append((column, availability[key]))
        if not assignments:
            return
        sql = ", ".join(f"{col} = ?" for col, _ in assignments)
        self._exec(f"UPDATE badges SET {sql} WHERE id = ?", [v for _, v in assignments] + [badge_id])

    def get_badge(self, badge_id: int) -> Optional[sqlite3.Row]:
        return self._one("SELECT * FROM badges WHERE id = ?", (badge_id,))

    def get_badge_by_name(self, name: str) -> Optional[sqlite3.Row]:
        return self._one("SELECT * FROM badges WHERE name = ?", (name,))

    def list_badges(
        self,
        *,
        category: Optional[str] = None,
        rarity: Optional[str] = None,
        badge_type: Optional[str] = None,
        active_only: bool = True,
    ) -> List[sqlite3.Row]:
        clauses, params = [], []
        if active_only:
            clauses.append("is_active = 1")
        for column, value in (("category", category), ("rarity", rarity), ("type", badge_type)):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._query(f"SELECT * FROM badges {where} ORDER BY category, name", params)

    def active_badges(self) -> List[Tuple[BadgeDefinition, int]]:
        return [
            (badge_definition(row), row["unique_earners"])
            for row in self._query("SELECT * FROM badges WHERE is_active = 1 ORDER BY id")
        ]

    def user_has_badge(self, user_id: str, badge_id: int) -> bool:
        return self._one(
            "SELECT 1 FROM user_badges WHERE user_id = ? AND badge_id = ?", (user_id, badge_id)
        ) is not None

    def add_user_badge(self, user_id: str, badge_id: int, earned_at: datetime) -> None:
        self._exec(
            "INSERT INTO user_badges(user_id, badge_id, earned_at) VALUES (?,?,?)",
            (user_id, badge_id, iso(earned_at)),
        )

    def record_badge_award(self, badge_id: int, earned_at: datetime) -> None:
        stamp = iso(earned_at)
        self._exec(
            """
            UPDATE badges SET total_earned = total_earned + 1,
                              first_earned_at = COALESCE(first_earned_at, ?),
                              last_earned_at = ?,
                              unique_earners = (SELECT COUNT(DISTINCT user_id) FROM user_badges WHERE badge_id = ?)
            WHERE id = ?
            """,
            (stamp, stamp, badge_id, badge_id),
        )

    def user_badges(self, user_id: str) -> List[sqlite3.Row]:
        return self._query(
            """
            SELECT b.*, ub.earned_at FROM user_badges ub JOIN badges b ON b.id = ub.badge_id
            WHERE ub.user_id = ?
            """,
            (user_id,),
        )

    # -------------- ledger queries --------------
    def count_completed_attempts(
        self, user_id: str, category: Optional[str] = None, difficulty: Optional[str] = None
    ) -> int:
        sql = "SELECT COUNT(*) FROM attempts a JOIN challenges c ON c.id = a.challenge_id WHERE a.user_id = ? AND a.completed = 1"
        params: List[Any] = [user_id]
        if category:
            sql += " AND c.category = ?"
            params.append(category)
        if difficulty:
            sql += " AND c.difficulty = ?"
            params.append(difficulty)
        return self._scalar(sql, params)

    def count_perfect_scores(self, user_id: str) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM attempts WHERE user_id = ? AND completed = 1 AND percentage = 100",
            (user_id,),
        )

    def completed_percentages(self, user_id: str) -> List[int]:
        return [
            r[0]
            for r in self._query(
                "SELECT percentage FROM attempts WHERE user_id = ? AND completed = 1", (user_id,)
            )
        ]

    # -------------- challenges --------------
    def create_challenge(self, data: Mapping[str, Any], author_id: Optional[str], now: Optional[datetime] = None) -> int:
        stamp = iso(now or utcnow())
        cur = self._exec(
            """
            INSERT INTO challenges(title, description, type, category, difficulty, estimated_time, tags,
                                   content, scoring, prerequisites, author_id, is_published, is_active,
                                   created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                data["title"], data.get("description"), data["type"], data["category"], data["difficulty"],
                int(data.get("estimatedTime") or 0), _dump(list(data.get("tags") or [])),
                _dump(data.get("content") or {}), _dump(data["scoring"]),
                _dump(list(data.get("prerequisites") or [])), author_id,
                1 if data.get("isPublished") else 0, 1 if data.get("isActive", True) else 0, stamp, stamp,
            ),
        )
        return int(cur.lastrowid)

    _CHALLENGE_COLUMNS = {
        "title": "title", "description": "description", "type": "type", "category": "category",
        "difficulty": "difficulty", "estimatedTime": "estimated_time", "tags": "tags", "content": "content",
        "scoring": "scoring", "prerequisites": "prerequisites", "isPublished": "is_published",
        "isActive": "is_active",
    }
    _CHALLENGE_JSON = {"tags", "content", "scoring", "prerequisites"}

    def update_challenge(self, challenge_id: int, data: Mapping[str, Any]) -> None:
        assignments, params = [], []
        for key, column in self._CHALLENGE_COLUMNS.items():
            if key not in data or data[key] is None:
                continue
            value = data[key]
            if column in self._CHALLENGE_JSON:
                value = _dump(value)
            elif isinstance(value, bool):
                value = 1 if value else 0
            assignments.append(f"{column} = ?")
            params.append(value)
        if not assignments:
            return
        assignments.append("updated_at = ?")
        params.extend([iso(utcnow()), challenge_id])
        self._exec(f"UPDATE challenges SET {', '.join(assignments)} WHERE id = ?", params)

    def get_challenge(self, challenge_id: int) -> Optional[sqlite3.Row]:
        return self._one("SELECT * FROM challenges WHERE id = ?", (challenge_id,))

    def get_challenge_by_title(self, title: str) -> Optional[sqlite3.Row]:
        return self._one("SELECT * FROM challenges WHERE title = ? ORDER BY id LIMIT 1", (title,))

    def list_challenges(
        self,
        *,
        category: Optional[str] = None,
        difficulty: Optional[str] = None,
        challenge_type: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[sqlite3.Row], int]:
        clauses = ["is_published = 1", "is_active = 1"]
        params: List[Any] = []
        for column, value in (("category", category), ("difficulty", difficulty), ("type", challenge_type)):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        if search:
            clauses.append(
                "(title LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\' OR tags LIKE ? ESCAPE '\\')"
            )
            params.extend([_like(search)] * 3)
        where = " AND ".join(clauses)
        total = self._scalar(f"SELECT COUNT(*) FROM challenges WHERE {where}", params)
        size, offset = _page(page, limit)
        rows = self._query(
            f"SELECT * FROM challenges WHERE {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            params + [size, offset],
        )
        return rows, total

    def recommendation_candidates(
        self, user_id: str, categories: Sequence[str], difficulties: Sequence[str], limit: int
    ) -> List[sqlite3.Row]:
        params: List[Any] = [user_id]
        sql = """
            SELECT * FROM challenges
            WHERE is_published = 1 AND is_active = 1
              AND id NOT IN (SELECT challenge_id FROM attempts WHERE user_id = ? AND completed = 1)
        """
        if categories:
            sql += f" AND category IN ({','.join('?' * len(categories))})"
            params.extend(categories)
        if difficulties:
            sql += f" AND difficulty IN ({','.join('?' * len(difficulties))})"
            params.extend(difficulties)
        sql += """
            ORDER BY CASE WHEN total_attempts > 0 THEN CAST(total_completions AS REAL) / total_attempts ELSE 0 END DESC,
                     total_attempts DESC, id
            LIMIT ?
        """
        params.append(limit)
        return self._query(sql, params)

    def record_challenge_statistics(
        self, challenge_id: int, *, total_attempts: int, total_completions: int,
        average_score: float, average_time: float,
    ) -> None:
        self._exec(
            """
            UPDATE challenges SET total_attempts = ?, total_completions = ?, average_score = ?, average_time = ?
            WHERE id = ?
            """,
            (total_attempts, total_completions, average_score, average_time, challenge_id),
        )

    def count_challenges(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM challenges WHERE is_active = 1")

    def popular_challenges(self, limit: int = 10) -> List[sqlite3.Row]:
        return self._query(
            "SELECT * FROM challenges WHERE is_active = 1 ORDER BY total_attempts DESC, id LIMIT ?", (limit,)
        )

    # -------------- attempts --------------
    def get_attempt(self, attempt_id: int) -> Optional[sqlite3.Row]:
        return self._one("SELECT * FROM attempts WHERE id = ?", (attempt_id,))

    def get_in_progress_attempt(self, user_id: str, challenge_id: int) -> Optional[sqlite3.Row]:
        return self._one(
            "SELECT * FROM attempts WHERE user_id = ? AND challenge_id = ? AND status = 'in-progress'",
            (user_id, challenge_id),
        )

    def last_attempt_number(self, user_id: str, challenge_id: int) -> int:
        return self._scalar(
            "SELECT MAX(attempt_number) FROM attempts WHERE user_id = ? AND challenge_id = ?",
            (user_id, challenge_id),
        )

    def create_attempt(
        self, user_id: str, challenge_id: int, attempt_number: int, *,
        max_possible_score: int, estimated_time: int, now: datetime,
    ) -> int:
        stamp = iso(now)
        cur = self._exec(
            """
            INSERT INTO attempts(user_id, challenge_id, attempt_number, status, started_at,
                                 max_possible_score, estimated_time, responses, bonus_xp, created_at)
            VALUES (?,?,?,'in-progress',?,?,?,?,?,?)
            """,
            (user_id, challenge_id, attempt_number, stamp, max_possible_score, estimated_time,
             _dump([]), _dump({}), stamp),
        )
        return int(cur.lastrowid)

    def finish_attempt(
        self, attempt_id: int, *, status: str, completed_at: datetime, time_spent: int, score: int,
        percentage: int, passed: bool, responses: Sequence[Mapping[str, Any]], xp_earned: int,
        bonus_xp: Mapping[str, int], hints_used: int = 0, requires_review: bool = False,
    ) -> None:
        cur = self._exec(
            """
            UPDATE attempts SET status = ?, completed = ?, completed_at = ?, time_spent = ?, score = ?,
                                percentage = ?, passed = ?, responses = ?, xp_earned = ?, bonus_xp = ?,
                                hints_used = ?, requires_review = ?
            WHERE id = ? AND status = 'in-progress'
            """,
            (status, 1 if status == "completed" else 0, iso(completed_at), time_spent, score, percentage,
             1 if passed else 0, _dump(list(responses)), xp_earned, _dump(dict(bonus_xp)), hints_used,
             1 if requires_review else 0, attempt_id),
        )
        if cur.rowcount != 1:
            raise LookupError(f"attempt {attempt_id} is no longer in progress")

    def abandon_attempt(self, attempt_id: int, now: datetime) -> None:
        self._exec(
            "UPDATE attempts SET status = 'abandoned', completed_at = ? WHERE id = ? AND status = 'in-progress'",
            (iso(now), attempt_id),
        )

    def set_attempt_feedback(self, attempt_id: int, feedback: Mapping[str, Any]) -> None:
        self._exec("UPDATE attempts SET user_feedback = ? WHERE id = ?", (_dump(dict(feedback)), attempt_id))

    def has_completed(self, user_id: str, challenge_id: int) -> bool:
        return self._one(
            "SELECT 1 FROM attempts WHERE user_id = ? AND challenge_id = ? AND completed = 1 LIMIT 1",
            (user_id, challenge_id),
        ) is not None

    def challenge_progress_summary(self, user_id: str, challenge_id: int) -> Dict[str, Any]:
        row = self._one(
            """
            SELECT COUNT(*) AS attempts, MAX(percentage) AS best, MAX(completed) AS completed
            FROM attempts WHERE user_id = ? AND challenge_id = ?
            """,
            (user_id, challenge_id),
        )
        return {
            "attempts": row["attempts"] or 0,
            "bestPercentage": row["best"] or 0,
            "completed": bool(row["completed"]),
        }

    def attempt_history(self, user_id: str, page: int, limit: int) -> Tuple[List[sqlite3.Row], int]:
        total = self._scalar("SELECT COUNT(*) FROM attempts WHERE user_id = ?", (user_id,))
        size, offset = _page(page, limit)
        rows = self._query(
            """
            SELECT a.*, c.title AS challenge_title, c.category AS challenge_category,
                   c.difficulty AS challenge_difficulty, c.type AS challenge_type
            FROM attempts a JOIN challenges c ON c.id = a.challenge_id
            WHERE a.user_id = ?
            ORDER BY a.completed_at IS NULL, a.completed_at DESC, a.id DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, size, offset),
        )
        return rows, total

    def attempt_records(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        by: str = "completed_at",
        completed_only: bool = True,
        category: Optional[str] = None,
    ) -> List[AttemptRecord]:
        if by not in {"completed_at", "created_at"}:
            raise ValueError("by must be completed_at or created_at")
        clauses = ["a.user_id = ?"]
        params: List[Any] = [user_id]
        if completed_only:
            clauses.append("a.completed = 1")
        if since is not None:
            clauses.append(f"a.{by} >= ?")
            params.append(iso(since))
        if until is not None:
            clauses.append(f"a.{by} < ?")
            params.append(iso(until))
        if category:
            clauses.append("c.category = ?")
            params.append(category)
        rows = self._query(
            f"""
            SELECT a.*, c.category, c.difficulty, c.type AS challenge_type, c.title
            FROM attempts a JOIN challenges c ON c.id = a.challenge_id
            WHERE {' AND '.join(clauses)}
            ORDER BY a.{by}, a.id
            """,
            params,
        )
        records = []
        for row in rows:
            bonus = _load(row["bonus_xp"], {}) or {}
            records.append(
                AttemptRecord(
                    attempt_id=row["id"],
                    challenge_id=row["challenge_id"],
                    category=row["category"],
                    difficulty=row["difficulty"],
                    percentage=row["percentage"],
                    time_spent=row["time_spent"],
                    estimated_time=row["estimated_time"],
                    created_at=parse_ts(row["created_at"]),
                    completed_at=parse_ts(row["completed_at"]),
                    completed=bool(row["completed"]),
                    xp_earned=row["xp_earned"],
                    bonus_xp=sum(int(v or 0) for v in bonus.values()),
                    attempt_number=row["attempt_number"],
                    challenge_type=row["challenge_type"],
                    title=row["title"],
                )
            )
        return records

    def recent_completions(self, user_id: str, since: datetime, limit: int = 5) -> List[sqlite3.Row]:
        return self._query(
            """
            SELECT a.*, c.title AS challenge_title, c.category AS challenge_category
            FROM attempts a JOIN challenges c ON c.id = a.challenge_id
            WHERE a.user_id = ? AND a.completed = 1 AND a.completed_at >= ?
            ORDER BY a.completed_at DESC LIMIT ?
            """,
            (user_id, iso(since), limit),
        )

    def count_attempts(self, since: datetime, completed: bool = False) -> int:
        if completed:
            return self._scalar(
                "SELECT COUNT(*) FROM attempts WHERE completed = 1 AND completed_at >= ?", (iso(since),)
            )
        return self._scalar("SELECT COUNT(*) FROM attempts WHERE created_at >= ?", (iso(since),))

    def engagement(self, since: datetime) -> Dict[str, Any]:
        row = self._one(
            """
            SELECT COUNT(DISTINCT user_id) AS active_users, COALESCE(SUM(xp_earned), 0) AS xp
            FROM attempts WHERE completed = 1 AND completed_at >= ?
            """,
            (iso(since),),
        )
        active = row["active_users"] or 0
        return {
            "activeUsers": active,
            "averageXpPerActiveUser": (row["xp"] / active) if active else 0,
        }

    def list_user_attempts(self, user_id: str) -> List[sqlite3.Row]:
        return self._query(
            """
            SELECT a.*, c.title AS challenge_title, c.category AS challenge_category,
                   c.difficulty AS challenge_difficulty
            FROM attempts a JOIN challenges c ON c.id = a.challenge_id
            WHERE a.user_id = ? ORDER BY a.id
            """,
            (user_id,),
        )

    # -------------- learning paths --------------
    def create_path(self, data: Mapping[str, Any], author_id: Optional[str], now: Optional[datetime] = None) -> int:
        stamp = iso(now or utcnow())
        cur = self._exec(
            """
            INSERT INTO learning_paths(title, description, category, difficulty, estimated_duration, tags,
                                       steps, author_id, is_published, is_active, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                data["title"], data.get("description"), data["category"], data["difficulty"],
                float(data.get("estimatedDuration") or 0), _dump(list(data.get("tags") or [])),
                _dump(list(data["steps"])), author_id, 1 if data.get("isPublished") else 0,
                1 if data.get("isActive", True) else 0, stamp, stamp,
            ),
        )
        return int(cur.lastrowid)

    _PATH_COLUMNS = {
        "title": "title", "description": "description", "category": "category", "difficulty": "difficulty",
        "estimatedDuration": "estimated_duration", "tags": "tags", "steps": "steps",
        "isPublished": "is_published", "isActive": "is_active",
    }

    def update_path(self, path_id: int, data: Mapping[str, Any]) -> None:
        assignments, params = [], []
        for key, column in self._PATH_COLUMNS.items():
            if key not in data or data[key] is None:
                continue
            value = data[key]
            if column in {"tags", "steps"}:
                value = _dump(list(value))
            elif isinstance(value, bool):
                value = 1 if value else 0
            assignments.append(f"{column} = ?")
            params.append(value)
        if not assignments:
            return
        assignments.append("updated_at = ?")
        params.extend([iso(utcnow()), path_id])
        self._exec(f"UPDATE learning_paths SET {', '.join(assignments)} WHERE id = ?", params)

    def get_path(self, path_id: int) -> Optional[sqlite3.Row]:
        return self._one("SELECT * FROM learning_paths WHERE id = ?", (path_id,))

    def get_path_by_title(self, title: str) -> Optional[sqlite3.Row]:
        return self._one("SELECT * FROM learning_paths WHERE title = ? ORDER BY id LIMIT 1", (title,))

    def list_paths(
        self,
        *,
        category: Optional[str] = None,
        difficulty: Optional[str] = None,
        search: Optional[str] = None,
        sort: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[sqlite3.Row], int]:
        clauses = ["is_published = 1", "is_active = 1"]
        params: List[Any] = []
        for column, value in (("category", category), ("difficulty", difficulty)):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        if search:
            clauses.append(
                "(title LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\' OR tags LIKE ? ESCAPE '\\')"
            )
            params.extend([_like(search)] * 3)
        order = {
            "popular": "enrollments DESC, id DESC",
            "completion": "CASE WHEN enrollments > 0 THEN CAST(completions AS REAL) / enrollments ELSE 0 END DESC, id DESC",
        }.get(sort or "", "created_at DESC, id DESC")
        where = " AND ".join(clauses)
        total = self._scalar(f"SELECT COUNT(*) FROM learning_paths WHERE {where}", params)
        size, offset = _page(page, limit)
        rows = self._query(
            f"SELECT * FROM learning_paths WHERE {where} ORDER BY {order} LIMIT ? OFFSET ?",
            params + [size, offset],
        )
        return rows, total

    def increment_path_counter(self, path_id: int, column: str) -> None:
        if column not in {"enrollments", "completions"}:
            raise ValueError(f"unknown path counter {column}")
        self._exec(f"UPDATE learning_paths SET {column} = {column} + 1 WHERE id = ?", (path_id,))

    def count_paths(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM learning_paths WHERE is_active = 1")

    def popular_paths(self, limit: int = 10) -> List[sqlite3.Row]:
        return self._query(
            "SELECT * FROM learning_paths WHERE is_active = 1 ORDER BY enrollments DESC, id LIMIT ?", (limit,)
        )

    def recommended_paths(self, user_id: str, categories: Sequence[str], limit: int) -> List[sqlite3.Row]:
        params: List[Any] = [user_id]
        sql = """
            SELECT * FROM learning_paths
            WHERE is_published = 1 AND is_active = 1
              AND id NOT IN (SELECT path_id FROM path_enrollments WHERE user_id = ?)
        """
        if categories:
            sql += f" AND category IN ({','.join('?' * len(categories))})"
            params.extend(categories)
        sql += " ORDER BY enrollments DESC, id LIMIT ?"
        params.append(limit)
        return self._query(sql, params)

    # -------------- enrollments --------------
    def create_enrollment(self, user_id: str, path_id: int, now: datetime) -> int:
        cur = self._exec(
            """
            INSERT INTO path_enrollments(user_id, path_id, status, completed_steps, milestones, enrolled_at)
            VALUES (?,?,'enrolled',?,?,?)
            """,
            (user_id, path_id, _dump([]), _dump([]), iso(now)),
        )
        return int(cur.lastrowid)

    def get_enrollment(self, user_id: str, path_id: int) -> Optional[sqlite3.Row]:
        return self._one(
            "SELECT * FROM path_enrollments WHERE user_id = ? AND path_id = ?", (user_id, path_id)
        )

    def save_enrollment(self, progress: PathProgress) -> None:
        self._exec(
            """
            UPDATE path_enrollments SET status = ?, current_step = ?, completed_steps = ?, milestones = ?,
                   progress_percentage = ?, completed = ?, completed_at = ?, started_at = ?,
                   last_activity = ?, total_time_spent = ?
            WHERE user_id = ? AND path_id = ?
            """,
            (
                progress.status, progress.current_step,
                _dump([s.as_dict() for s in progress.completed_steps]),
                _dump([m.as_dict() for m in progress.milestones]),
                progress.progress_percentage, 1 if progress.completed else 0, iso(progress.completed_at),
                iso(progress.started_at), iso(progress.last_activity), progress.total_time_spent,
                progress.user_id, progress.path_id,
            ),
        )

    def user_enrollments(self, user_id: str, status: Optional[str] = None) -> List[sqlite3.Row]:
        sql = """
            SELECT e.*, p.steps AS path_steps, p.title AS path_title, p.category AS path_category,
                   p.difficulty AS path_difficulty
            FROM path_enrollments e JOIN learning_paths p ON p.id = e.path_id
            WHERE e.user_id = ?
        """
        params: List[Any] = [user_id]
        if status:
            sql += " AND e.status = ?"
            params.append(status)
        sql += " ORDER BY COALESCE(e.last_activity, e.enrolled_at) DESC"
        return self._query(sql, params)

    def enrollments_for_paths(self, user_id: str, path_ids: Sequence[int]) -> Dict[int, sqlite3.Row]:
        if not path_ids:
            return {}
        rows = self._query(
            f"SELECT * FROM path_enrollments WHERE user_id = ? AND path_id IN ({','.join('?' * len(path_ids))})",
            [user_id, *path_ids],
        )
        return {row["path_id"]: row for row in rows}

    def count_enrollments(self, user_id: str, *, completed: Optional[bool] = None, active: bool = False) -> int:
        sql = "SELECT COUNT(*) FROM path_enrollments WHERE user_id = ?"
        params: List[Any] = [user_id]
        if completed is not None:
            sql += " AND completed = ?"
            params.append(1 if completed else 0)
        if active:
            sql += " AND status IN ('enrolled', 'in-progress')"
        return self._scalar(sql, params)

    def count_enrollments_since(self, since: datetime) -> int:
        return self._scalar("SELECT COUNT(*) FROM path_enrollments WHERE enrolled_at >= ?", (iso(since),))

    def path_leaderboard(self, path_id: int, limit: int) -> List[sqlite3.Row]:
        return self._query(
            """
            SELECT e.*, u.username, u.profile FROM path_enrollments e JOIN users u ON u.id = e.user_id
            WHERE e.path_id = ? AND e.completed = 1 AND u.is_active = 1
            ORDER BY e.completed_at ASC LIMIT ?
            """,
            (path_id, limit),
        )

    def set_enrollment_status(self, user_id: str, path_id: int, status: str, now: datetime) -> None:
        self._exec(
            "UPDATE path_enrollments SET status = ?, last_activity = ? WHERE user_id = ? AND path_id = ?",
            (status, iso(now), user_id, path_id),
        )

    # -------------- chat --------------
    def create_chat_session(
        self, user_id: str, *, title: str, context_type: str, context: Mapping[str, Any],
        personalization: Mapping[str, Any], now: datetime,
    ) -> str:
        session_id = str(uuid.uuid4())
        stamp = iso(now)
        self._exec(
            """
            INSERT INTO chat_sessions(session_id, user_id, title, context_type, context, personalization,
                                      status, started_at, last_message_at)
            VALUES (?,?,?,?,?,?, 'active', ?, ?)
            """,
            (session_id, user_id, title, context_type, _dump(dict(context)), _dump(dict(personalization)),
             stamp, stamp),
        )
        return session_id

    def get_chat_session(self, user_id: str, session_id: str) -> Optional[sqlite3.Row]:
        return self._one(
            "SELECT * FROM chat_sessions WHERE session_id = ? AND user_id = ?", (session_id, user_id)
        )

    def list_chat_sessions(self, user_id: str, page: int, limit: int, include_archived: bool = False) -> Tuple[List[sqlite3.Row], int]:
        where = "s.user_id = ?" + ("" if include_archived else " AND s.status != 'archived'")
        total = self._scalar(f"SELECT COUNT(*) FROM chat_sessions s WHERE {where}", (user_id,))
        size, offset = _page(page, limit)
        rows = self._query(
            f"""
            SELECT s.*, (SELECT COUNT(*) FROM chat_messages m WHERE m.session_id = s.session_id) AS message_count
            FROM chat_sessions s WHERE {where}
            ORDER BY s.last_message_at DESC LIMIT ? OFFSET ?
            """,
            (user_id, size, offset),
        )
        return rows, total

    def set_chat_session_status(self, session_id: str, status: str) -> None:
        self._exec("UPDATE chat_sessions SET status = ? WHERE session_id = ?", (status, session_id))

    def add_chat_message(
        self, session_id: str, role: str, content: str, *, metadata: Optional[Mapping[str, Any]] = None,
        suggested_actions: Optional[Sequence[Mapping[str, Any]]] = None, now: datetime,
    ) -> sqlite3.Row:
        message_id = uuid.uuid4().hex
        stamp = iso(now)
        self._exec(
            """
            INSERT INTO chat_messages(message_id, session_id, role, content, metadata, suggested_actions, created_at)
            VALUES (?,?,?,?,?,?,?)
            """,
            (message_id, session_id, role, content, _dump(dict(metadata or {})),
             _dump(list(suggested_actions or [])), stamp),
        )
        self._exec("UPDATE chat_sessions SET last_message_at = ? WHERE session_id = ?", (stamp, session_id))
        return self._one("SELECT * FROM chat_messages WHERE message_id = ?", (message_id,))

    def chat_messages(self, session_id: str, last: Optional[int] = None) -> List[sqlite3.Row]:
        if last is None:
            return self._query(
                "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY id", (session_id,)
            )
        rows = self._query(
            "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY id DESC LIMIT ?", (session_id, last)
        )
        return list(reversed(rows))

    def get_chat_message(self, session_id: str, message_id: str) -> Optional[sqlite3.Row]:
        return self._one(
            "SELECT * FROM chat_messages WHERE session_id = ? AND message_id = ?", (session_id, message_id)
        )

    def set_message_feedback(self, message_id: str, feedback: Mapping[str, Any]) -> None:
        self._exec("UPDATE chat_messages SET feedback = ? WHERE message_id = ?", (_dump(dict(feedback)), message_id))

    def user_chat_sessions(self, user_id: str) -> List[sqlite3.Row]:
        return self._query("SELECT * FROM chat_sessions WHERE user_id = ? ORDER BY started_at", (user_id,))

    def chat_statistics(self, since: datetime) -> Dict[str, Any]:
        row = self._one(
            """
            SELECT COUNT(*) AS sessions,
                   (SELECT COUNT(*) FROM chat_messages m JOIN chat_sessions s2 ON s2.session_id = m.session_id
                    WHERE s2.started_at >= ?) AS messages
            FROM chat_sessions WHERE started_at >= ?
            """,
            (iso(since), iso(since)),
        )
        sessions = row["sessions"] or 0
        messages = row["messages"] or 0
        types = self._query(
            "SELECT context_type, COUNT(*) AS n FROM chat_sessions WHERE started_at >= ? GROUP BY context_type ORDER BY n DESC",
            (iso(since),),
        )
        return {
            "totalSessions": sessions,
            "totalMessages": messages,
            "averageMessagesPerSession": (messages / sessions) if sessions else 0,
            "topContextTypes": {r["context_type"]: r["n"] for r in types},
        }


class Database:
    """Connection pool plus schema lifecycle.

    Construct once per process, call :meth:`init` before use and
    :meth:`close` on shutdown.
    """

    def __init__(self, path: str, max_connections: int = 10) -> None:
        self.path = path
        self.max_connections = max_connections
        self._pool: Optional[SQLiteConnectionPool] = None

    @property
    def pool(self) -> SQLiteConnectionPool:
        if self._pool is None:
            raise RuntimeError("database not initialised; call init() first")
        return self._pool

    def init(self) -> None:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        if self._pool is None or self._pool.closed:
            self._pool = SQLiteConnectionPool(self.path, max_connections=self.max_connections)
        with self._pool.get_connection() as con:
            con.execute("PRAGMA journal_mode=WAL")
            con.executescript(SCHEMA)
        logger.info("Database ready at %s", self.path)

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            self._pool = None

    @contextmanager
    def read(self) -> Iterator[Repository]:
        with self.pool.get_connection() as con:
            yield Repository(con)

    @contextmanager
    def transaction(self) -> Iterator[Repository]:
        """Run the enclosed repository calls as one atomic unit."""
        with self.pool.get_connection() as con:
            con.execute("BEGIN IMMEDIATE")
            try:
                yield Repository(con)
            except BaseException:
                con.execute("ROLLBACK")
                raise
            else:
                con.execute("COMMIT")

"""Account lifecycle: credentials, bearer tokens, profile and settings."""

from __future__ import annotations

import copy
import hashlib
import hmac
import logging
import re
import secrets
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional, Tuple

from db import Database, Repository, utcnow
from engines.badges import BadgeAwarder
from env_validation import Settings
from errors import AuthError, ConflictError, ForbiddenError, InputValidationError, NotFoundError

logger = logging.getLogger(__name__)

_PBKDF2_ITERATIONS = 150_000
_PBKDF2_DIGEST = "sha256"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,30}$")
MIN_PASSWORD_LENGTH = 6

DEFAULT_PREFERENCES: Dict[str, Any] = {
    "subjects": [],
    "difficulty": "beginner",
    "learningStyle": "visual",
    "dailyGoal": 30,
}

DEFAULT_SETTINGS: Dict[str, Any] = {
    "notifications": {"email": True, "push": True, "achievements": True, "reminders": True},
    "privacy": {"showInLeaderboard": True, "showProfile": True},
    "accessibility": {"fontSize": "medium", "highContrast": False},
}


# ---------- Password hashing ----------
def _generate_salt() -> str:
    return secrets.token_bytes(16).hex()


def _pbkdf2_hash(password: str, salt_hex: str) -> str:
    try:
        salt_bytes = bytes.fromhex(salt_hex)
    except ValueError:
        raise ValueError("Invalid salt for password hashing") from None
    return hashlib.pbkdf2_hmac(
        _PBKDF2_DIGEST,
        password.encode("utf-8"),
        salt_bytes,
        _PBKDF2_ITERATIONS,
    ).hex()


def hash_password(password: str) -> Tuple[str, str]:
    salt_hex = _generate_salt()
    return _pbkdf2_hash(password, salt_hex), salt_hex


def verify_password(password: str, stored_hash: str, stored_salt: Optional[str]) -> bool:
    if not stored_salt:
        return False
    try:
        derived = _pbkdf2_hash(password, stored_salt)
    except ValueError:
        return False
    return hmac.compare_digest(stored_hash or "", derived)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ---------- Tokens ----------
def issue_token(repo: Repository, user_id: str, settings: Settings, now: Optional[datetime] = None) -> str:
    moment = now or utcnow()
    token = secrets.token_urlsafe(24)
    repo.store_token(hash_token(token), user_id, moment + timedelta(hours=settings.token_ttl_hours), moment)
    return token


def authenticate(database: Database, token: Optional[str], now: Optional[datetime] = None) -> sqlite3.Row:
    """Resolve a bearer token to an active user row."""
    if not token:
        raise AuthError("Access denied. No token provided.")
    with database.read() as repo:
        user_id = repo.token_user(hash_token(token), now or utcnow())
        if user_id is None:
            raise AuthError("Invalid token.")
        row = repo.get_user(user_id)
    if row is None:
        raise AuthError("Invalid token.")
    if not row["is_active"]:
        raise AuthError("Account is deactivated")
    return row


def require_admin(user: Mapping[str, Any]) -> None:
    if user["role"] != "admin":
        raise ForbiddenError("Admin access required")


def logout(database: Database, token: str) -> None:
    with database.read() as repo:
        repo.revoke_token(hash_token(token))


# ---------- Registration and login ----------
def _normalize_email(email: str) -> str:
    value = (email or "").strip().lower()
    if not _EMAIL_RE.match(value):
        raise InputValidationError("Please enter a valid email")
    return value


def _check_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise InputValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def register(
    database: Database,
    settings: Settings,
    *,
    username: str,
    email: str,
    password: str,
    profile: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    moment = now or utcnow()
    username = (username or "").strip()
    if not _USERNAME_RE.match(username):
        raise InputValidationError("Username must be 3-30 characters of letters, numbers and underscores")
    email = _normalize_email(email)
    _check_password(password)

    pw_hash, pw_salt = hash_password(password)
    try:
        with database.transaction() as repo:
            if repo.get_user_by_email(email):
                raise ConflictError("Email already registered", status_code=400)
            if repo.get_user_by_username(username):
                raise ConflictError("Username already taken", status_code=400)
            user_id = repo.create_user(
                username=username,
                email=email,
                pw_hash=pw_hash,
                pw_salt=pw_salt,
                profile=dict(profile or {}),
                preferences=DEFAULT_PREFERENCES,
                settings=DEFAULT_SETTINGS,
                now=moment,
            )
            token = issue_token(repo, user_id, settings, moment)
            sweep = BadgeAwarder().check_and_award(repo, user_id, moment)
            user = repo.get_user_document(user_id)
    except sqlite3.IntegrityError:
        raise ConflictError("Email or username already in use", status_code=400) from None
    logger.info("Registered user %s (%d starter badges)", user_id, len(sweep.awarded))
    return {"user": user, "token": token}


def login(database: Database, settings: Settings, *, email: str, password: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    moment = now or utcnow()
    normalized = (email or "").strip().lower()
    with database.transaction() as repo:
        row = repo.get_user_by_email(normalized)
        if row is None or not verify_password(password or "", row["pw_hash"], row["pw_salt"]):
            logger.warning("Failed login attempt")
            raise AuthError("Invalid email or password")
        if not row["is_active"]:
            logger.warning("Login attempt on deactivated account %s", row["id"])
            raise AuthError("Account is deactivated")
        repo.update_user(row["id"], last_login=moment)
        token = issue_token(repo, row["id"], settings, moment)
        user = repo.get_user_document(row["id"])
    return {"user": user, "token": token}


# ---------- Profile ----------
def get_profile(database: Database, user_id: str) -> Dict[str, Any]:
    with database.read() as repo:
        user = repo.get_user_document(user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def update_profile(
    database: Database,
    user_id: str,
    *,
    profile: Optional[Mapping[str, Any]] = None,
    learning_preferences: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    with database.transaction() as repo:
        row = repo.get_user(user_id)
        if row is None:
            raise NotFoundError("User not found")
        current = repo.get_user_document(user_id)
        changes: Dict[str, Any] = {}
        if profile:
            changes["profile"] = {**current["profile"], **dict(profile)}
        if learning_preferences:
            changes["preferences"] = {**current["learningPreferences"], **dict(learning_preferences)}
        repo.update_user(user_id, **changes)
        return repo.get_user_document(user_id)


def _deep_merge(base: Dict[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def update_settings(database: Database, user_id: str, patch: Mapping[str, Any]) -> Dict[str, Any]:
    with database.transaction() as repo:
        current = repo.get_user_document(user_id)
        if current is None:
            raise NotFoundError("User not found")
        merged = _deep_merge(_deep_merge(DEFAULT_SETTINGS, current["settings"]), patch)
        repo.update_user(user_id, settings=merged)
    return merged


# ---------- Passwords ----------
def change_password(
    database: Database,
    user_id: str,
    *,
    current_password: str,
    new_password: str,
    keep_token: Optional[str] = None,
) -> None:
    _check_password(new_password)
    with database.transaction() as repo:
        row = repo.get_user(user_id)
        if row is None:
            raise NotFoundError("User not found")
        if not verify_password(current_password or "", row["pw_hash"], row["pw_salt"]):
            raise InputValidationError("Current password is incorrect")
        pw_hash, pw_salt = hash_password(new_password)
        repo.update_user(user_id, pw_hash=pw_hash, pw_salt=pw_salt)
        repo.revoke_user_tokens(user_id, keep=hash_token(keep_token) if keep_token else None)
    logger.info("Password changed for user %s", user_id)


def request_password_reset(
    database: Database, settings: Settings, email: str, now: Optional[datetime] = None
) -> Optional[str]:
    """Create a reset token for ``email``.

    Returns the raw token, or ``None`` when no active account matches. The
    HTTP layer answers identically in both cases.
    """
    moment = now or utcnow()
    normalized = (email or "").strip().lower()
    with database.transaction() as repo:
        row = repo.get_user_by_email(normalized)
        if row is None or not row["is_active"]:
            logger.info("Password reset requested for unknown email")
            return None
        token = secrets.token_urlsafe(32)
        repo.update_user(
            row["id"],
            reset_token_hash=hash_token(token),
            reset_token_expires=moment + timedelta(minutes=settings.reset_ttl_minutes),
        )
    logger.info("Password reset token issued for user %s", row["id"])
    return token


def reset_password(database: Database, token: str, new_password: str, now: Optional[datetime] = None) -> None:
    _check_password(new_password)
    with database.transaction() as repo:
        row = repo.get_user_by_reset_token(hash_token(token or ""), now or utcnow())
        if row is None:
            raise InputValidationError("Invalid or expired reset token")
        pw_hash, pw_salt = hash_password(new_password)
        repo.update_user(
            row["id"], pw_hash=pw_hash, pw_salt=pw_salt, reset_token_hash=None, reset_token_expires=None
        )
        repo.revoke_user_tokens(row["id"])
    logger.info("Password reset completed for user %s", row["id"])


# ---------- Account removal and stats ----------
def delete_account(database: Database, user_id: str, now: Optional[datetime] = None) -> None:
    """Deactivate the account and free its email and username."""
    moment = now or utcnow()
    stamp = int(moment.timestamp() * 1000)
    with database.transaction() as repo:
        row = repo.get_user(user_id)
        if row is None:
            raise NotFoundError("User not found")
        repo.update_user(
            user_id,
            is_active=0,
            email=f"deleted_{stamp}_{row['email']}",
            username=f"deleted_{stamp}_{row['username']}",
            reset_token_hash=None,
            reset_token_expires=None,
        )
        repo.revoke_user_tokens(user_id)
    logger.info("Deactivated account %s", user_id)


def user_stats(database: Database, user_id: str) -> Dict[str, Any]:
    with database.read() as repo:
        user = repo.get_user_document(user_id)
        if user is None:
            raise NotFoundError("User not found")
        completed_paths = repo.count_enrollments(user_id, completed=True)
    return {
        "gamification": {
            key: value for key, value in user["gamification"].items() if key not in {"badges", "achievements"}
        },
        "statistics": user["statistics"],
        "badgeCount": len(user["gamification"]["badges"]),
        "achievementCount": len(user["gamification"]["achievements"]),
        "completedPaths": completed_paths,
    }

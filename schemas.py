"""Pydantic request bodies, validated model outputs and helper utilities."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Literal, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from engines.badges import BADGE_CATEGORIES, BADGE_TYPES, RARITIES
from engines.scoring import CATEGORIES, CHALLENGE_TYPES, DIFFICULTIES

__all__ = [
    "RegisterBody",
    "LoginBody",
    "ProfileUpdateBody",
    "ChangePasswordBody",
    "ForgotPasswordBody",
    "ResetPasswordBody",
    "SettingsBody",
    "SubmitBody",
    "AttemptFeedbackBody",
    "ChallengeBody",
    "ChallengeUpdateBody",
    "BadgeBody",
    "BadgeUpdateBody",
    "AwardBadgeBody",
    "PathBody",
    "PathUpdateBody",
    "CompleteStepBody",
    "EnrollmentStatusBody",
    "StartChatBody",
    "MessageBody",
    "MessageFeedbackBody",
    "GeneratePathBody",
    "GeneratedPath",
    "WeaknessReport",
    "parse_json_safe",
]

Category = Literal[CATEGORIES]  # type: ignore[valid-type]
Difficulty = Literal[DIFFICULTIES]  # type: ignore[valid-type]
ChallengeType = Literal[CHALLENGE_TYPES]  # type: ignore[valid-type]
Rarity = Literal[RARITIES]  # type: ignore[valid-type]
BadgeCategory = Literal[BADGE_CATEGORIES]  # type: ignore[valid-type]
BadgeType = Literal[BADGE_TYPES]  # type: ignore[valid-type]
ContextType = Literal["general", "challenge-help", "learning-path", "study-planning", "career-advice"]


class ApiModel(BaseModel):
    """Base for request bodies: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self, **kwargs: Any) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", **kwargs)


# ---------- Accounts ----------
class ProfileBody(ApiModel):
    first_name: str | None = Field(default=None, max_length=50)
    last_name: str | None = Field(default=None, max_length=50)
    bio: str | None = Field(default=None, max_length=500)
    avatar: str | None = None
    location: str | None = Field(default=None, max_length=100)


class PreferencesBody(ApiModel):
    subjects: List[Category] | None = None
    difficulty: Difficulty | None = None
    learning_style: Literal["visual", "auditory", "kinesthetic", "reading"] | None = None
    daily_goal: int | None = Field(default=None, ge=5, le=480)


class RegisterBody(ApiModel):
    username: str = Field(min_length=3, max_length=30, pattern=r"^[A-Za-z0-9_]+$")
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=6, max_length=128)
    profile: ProfileBody | None = None


class LoginBody(ApiModel):
    email: str
    password: str


class ProfileUpdateBody(ApiModel):
    profile: ProfileBody | None = None
    learning_preferences: PreferencesBody | None = None


class ChangePasswordBody(ApiModel):
    current_password: str
    new_password: str = Field(min_length=6, max_length=128)


class ForgotPasswordBody(ApiModel):
    email: str


class ResetPasswordBody(ApiModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=6, max_length=128)


class NotificationSettings(ApiModel):
    email: bool | None = None
    push: bool | None = None
    achievements: bool | None = None
    reminders: bool | None = None


class PrivacySettings(ApiModel):
    show_in_leaderboard: bool | None = None
    show_profile: bool | None = None


class AccessibilitySettings(ApiModel):
    font_size: Literal["small", "medium", "large"] | None = None
    high_contrast: bool | None = None


class SettingsBody(ApiModel):
    notifications: NotificationSettings | None = None
    privacy: PrivacySettings | None = None
    accessibility: AccessibilitySettings | None = None


# ---------- Challenges ----------
class SubmitBody(ApiModel):
    responses: List[Dict[str, Any]] = Field(default_factory=list)
    hints_used: int = Field(default=0, ge=0)


class AttemptFeedbackBody(ApiModel):
    rating: int = Field(ge=1, le=5)
    difficulty_rating: int | None = Field(default=None, ge=1, le=5)
    comment: str | None = Field(default=None, max_length=1000)


class BonusXpBody(ApiModel):
    perfect_score: int = Field(default=0, ge=0)
    fast_completion: int = Field(default=0, ge=0)
    first_attempt: int = Field(default=0, ge=0)


class ScoringBody(ApiModel):
    max_points: int = Field(ge=0)
    passing_score: int = Field(ge=0)
    xp_reward: int = Field(default=0, ge=0)
    bonus_xp: BonusXpBody = Field(default_factory=BonusXpBody)


class PrerequisiteBody(ApiModel):
    challenge_id: int
    required: bool = True


class ChallengeBody(ApiModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    type: ChallengeType
    category: Category
    difficulty: Difficulty
    estimated_time: int = Field(ge=1)
    tags: List[str] = Field(default_factory=list)
    content: Dict[str, Any] = Field(default_factory=dict)
    scoring: ScoringBody
    prerequisites: List[PrerequisiteBody] = Field(default_factory=list)
    is_published: bool = False
    is_active: bool = True


class ChallengeUpdateBody(ApiModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    category: Category | None = None
    difficulty: Difficulty | None = None
    estimated_time: int | None = Field(default=None, ge=1)
    tags: List[str] | None = None
    content: Dict[str, Any] | None = None
    scoring: ScoringBody | None = None
    prerequisites: List[PrerequisiteBody] | None = None
    is_published: bool | None = None
    is_active: bool | None = None


# ---------- Gamification ----------
class BadgeRewards(ApiModel):
    xp_bonus: int = Field(default=0, ge=0)


class BadgeAvailability(ApiModel):
    is_active: bool = True
    start_date: datetime | None = None
    end_date: datetime | None = None
    max_recipients: int | None = Field(default=None, ge=1)


class BadgeBody(ApiModel):
    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    icon: str = ""
    rarity: Rarity = "common"
    category: BadgeCategory = "achievement"
    type: BadgeType = "progress"
    criteria: Dict[str, Any] = Field(default_factory=dict)
    rewards: BadgeRewards = Field(default_factory=BadgeRewards)
    availability: BadgeAvailability = Field(default_factory=BadgeAvailability)


class BadgeUpdateBody(ApiModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    icon: str | None = None
    rarity: Rarity | None = None
    category: BadgeCategory | None = None
    type: BadgeType | None = None
    criteria: Dict[str, Any] | None = None
    rewards: BadgeRewards | None = None
    availability: BadgeAvailability | None = None


class AwardBadgeBody(ApiModel):
    user_id: str


# ---------- Learning paths ----------
class StepBody(ApiModel):
    step_number: int = Field(ge=1)
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    type: Literal["challenge", "reading", "video", "practice", "project"] = "reading"
    challenge_id: int | None = None
    xp_reward: int = Field(default=50, ge=0)
    prerequisites: List[int] = Field(default_factory=list)
    is_optional: bool = False


class PathBody(ApiModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    category: Category
    difficulty: Difficulty
    estimated_duration: float = Field(default=0, ge=0)
    tags: List[str] = Field(default_factory=list)
    steps: List[StepBody] = Field(min_length=1)
    is_published: bool = False
    is_active: bool = True


class PathUpdateBody(ApiModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    category: Category | None = None
    difficulty: Difficulty | None = None
    estimated_duration: float | None = Field(default=None, ge=0)
    tags: List[str] | None = None
    steps: List[StepBody] | None = None
    is_published: bool | None = None
    is_active: bool | None = None


class CompleteStepBody(ApiModel):
    score: float | None = Field(default=None, ge=0, le=100)
    time_spent: int = Field(default=0, ge=0)
    xp_earned: int | None = Field(default=None, ge=0)


class EnrollmentStatusBody(ApiModel):
    status: Literal["paused", "in-progress", "dropped"]


# ---------- Assistant ----------
class StartChatBody(ApiModel):
    context_type: ContextType = "general"
    title: str | None = Field(default=None, max_length=200)
    challenge_id: int | None = None
    path_id: int | None = None


class MessageBody(ApiModel):
    message: str = Field(min_length=1, max_length=4000)
    stream: bool = False


class MessageFeedbackBody(ApiModel):
    message_id: str
    helpful: bool | None = None
    rating: int | None = Field(default=None, ge=1, le=5)
    report_issue: str | None = Field(default=None, max_length=1000)


class GeneratePathBody(ApiModel):
    preferences: Dict[str, Any] = Field(default_factory=dict)
    goals: List[str] = Field(default_factory=list)
    current_level: Difficulty | None = None


class GeneratedStep(ApiModel):
    title: str
    description: str = ""
    type: str = "reading"
    estimated_time: int | None = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class GeneratedPath(ApiModel):
    """Learning path proposal returned by the language model."""

    title: str
    description: str = ""
    estimated_duration: float | None = None
    steps: List[GeneratedStep] = Field(default_factory=list)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class WeaknessReport(ApiModel):
    weaknesses: List[str] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    focus_areas: List[str] = Field(default_factory=list)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


_T = TypeVar("_T", bound=BaseModel)


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == "{" and (idx == 0 or text[idx - 1] != "\\"):
                depth += 1
            elif char == "}" and (idx == 0 or text[idx - 1] != "\\"):
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except ValueError:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model`` with a fallback JSON extraction pass."""

    text = _strip_code_fence(text or "")
    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(text)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = text[end:]
    if trailing.strip():
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    try:
        return model.model_validate_json(snippet)
    except (ValidationError, ValueError):
        if first_error:
            raise first_error
        raise

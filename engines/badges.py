"""Badge criteria predicates and the badge awarding sweep.

A badge's criteria are stored as a sparse mapping (``{"streakDays": 7}``).
``criteria_from_mapping`` turns that mapping into an ordered tuple of
predicate objects, each answering ``satisfied(learner, ledger)``. A badge
is earned when every predicate holds; unset thresholds produce no
predicate and are therefore vacuously satisfied.

The awarder evaluates all active badges for a learner and grants the
eligible ones. Each grant runs inside its own savepoint so that one
failing badge is rolled back, logged and reported without aborting the
rest of the sweep.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from engines.progression import GamificationState, LevelChange, ProgressionEngine

_LOGGER = logging.getLogger(__name__)

RARITIES = ("common", "uncommon", "rare", "epic", "legendary")
RARITY_SCORES = {name: idx + 1 for idx, name in enumerate(RARITIES)}
BADGE_CATEGORIES = (
    "achievement",
    "milestone",
    "skill",
    "streak",
    "social",
    "special",
    "seasonal",
    "challenge",
    "learning",
    "participation",
)
BADGE_TYPES = (
    "progress",
    "performance",
    "consistency",
    "exploration",
    "mastery",
    "community",
    "time-based",
    "event",
)


class InvalidCriterionError(ValueError):
    """Raised when a stored criteria mapping cannot be interpreted."""


@dataclass(frozen=True)
class LearnerSnapshot:
    user_id: str
    xp: int
    total_xp: int
    level: int
    streak_current: int
    total_time_spent: int


class ProgressLedger(Protocol):
    def count_completed_attempts(
        self, user_id: str, category: Optional[str] = None, difficulty: Optional[str] = None
    ) -> int: ...

    def count_perfect_scores(self, user_id: str) -> int: ...

    def completed_percentages(self, user_id: str) -> List[int]: ...


# ----- predicates -------------------------------------------------------


class Criterion:
    """A single threshold a learner has to reach."""

    key: ClassVar[str] = ""

    def satisfied(self, learner: LearnerSnapshot, ledger: ProgressLedger) -> bool:
        raise NotImplementedError

    def as_mapping(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class XpThreshold(Criterion):
    key: ClassVar[str] = "xpThreshold"
    minimum: int

    def satisfied(self, learner: LearnerSnapshot, ledger: ProgressLedger) -> bool:
        return learner.xp >= self.minimum

    def as_mapping(self) -> Dict[str, Any]:
        return {self.key: self.minimum}


@dataclass(frozen=True)
class TotalXpRequired(Criterion):
    key: ClassVar[str] = "totalXpRequired"
    minimum: int

    def satisfied(self, learner: LearnerSnapshot, ledger: ProgressLedger) -> bool:
        return learner.total_xp >= self.minimum

    def as_mapping(self) -> Dict[str, Any]:
        return {self.key: self.minimum}


@dataclass(frozen=True)
class StreakDays(Criterion):
    key: ClassVar[str] = "streakDays"
    minimum: int

    def satisfied(self, learner: LearnerSnapshot, ledger: ProgressLedger) -> bool:
        return learner.streak_current >= self.minimum

    def as_mapping(self) -> Dict[str, Any]:
        return {self.key: self.minimum}


@dataclass(frozen=True)
class TotalTimeSpent(Criterion):
    key: ClassVar[str] = "totalTimeSpent"
    minutes: int

    def satisfied(self, learner: LearnerSnapshot, ledger: ProgressLedger) -> bool:
        return learner.total_time_spent >= self.minutes

    def as_mapping(self) -> Dict[str, Any]:
        return {self.key: self.minutes}


@dataclass(frozen=True)
class ChallengesCompleted(Criterion):
    key: ClassVar[str] = "challengesCompleted"
    minimum: int
    category: Optional[str] = None
    difficulty: Optional[str] = None

    def satisfied(self, learner: LearnerSnapshot, ledger: ProgressLedger) -> bool:
        count = ledger.count_completed_attempts(
            learner.user_id, category=self.category, difficulty=self.difficulty
        )
        return count >= self.minimum

    def as_mapping(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {self.key: self.minimum}
        if self.category:
            payload["challengeCategory"] = self.category
        if self.difficulty:
            payload["challengeDifficulty"] = self.difficulty
        return payload


@dataclass(frozen=True)
class PerfectScores(Criterion):
    key: ClassVar[str] = "perfectScores"
    minimum: int

    def satisfied(self, learner: LearnerSnapshot, ledger: ProgressLedger) -> bool:
        return ledger.count_perfect_scores(learner.user_id) >= self.minimum

    def as_mapping(self) -> Dict[str, Any]:
        return {self.key: self.minimum}


@dataclass(frozen=True)
class AverageScore(Criterion):
    key: ClassVar[str] = "averageScore"
    minimum: float

    def satisfied(self, learner: LearnerSnapshot, ledger: ProgressLedger) -> bool:
        scores = ledger.completed_percentages(learner.user_id)
        if not scores:
            return False
        return sum(scores) / len(scores) >= self.minimum

    def as_mapping(self) -> Dict[str, Any]:
        return {self.key: self.minimum}


@dataclass(frozen=True)
class UnreadableCriteria(Criterion):
    """Stands in for a stored criteria mapping that failed to parse.

    Evaluation raises, so the sweep reports the badge as a failure
    instead of silently skipping it.
    """

    key: ClassVar[str] = "unreadable"
    reason: str

    def satisfied(self, learner: LearnerSnapshot, ledger: ProgressLedger) -> bool:
        raise InvalidCriterionError(self.reason)

    def as_mapping(self) -> Dict[str, Any]:
        return {}


# Learner fields first so ledger queries only run when they can matter.
_SIMPLE_CRITERIA = (XpThreshold, TotalXpRequired, StreakDays, TotalTimeSpent, PerfectScores, AverageScore)
KNOWN_CRITERIA_KEYS = frozenset(
    [cls.key for cls in _SIMPLE_CRITERIA] + ["challengesCompleted", "challengeCategory", "challengeDifficulty"]
)


def _threshold(raw: Mapping[str, Any], key: str, *, as_float: bool = False) -> Optional[float]:
    value = raw.get(key)
    if value is None or value == 0:
        return None
    if isinstance(value, bool):
        raise InvalidCriterionError(f"{key} must be numeric")
    try:
        number = float(value) if as_float else int(value)
    except (TypeError, ValueError):
        raise InvalidCriterionError(f"{key} must be numeric, got {value!r}") from None
    if number < 0:
        raise InvalidCriterionError(f"{key} must not be negative")
    return number


def criteria_from_mapping(raw: Optional[Mapping[str, Any]]) -> Tuple[Criterion, ...]:
    """Parse a stored criteria mapping into ordered predicates."""
    raw = raw or {}
    unknown = set(raw) - KNOWN_CRITERIA_KEYS
    if unknown:
        raise InvalidCriterionError(f"unknown badge criteria: {', '.join(sorted(unknown))}")

    criteria: List[Criterion] = []
    for cls in _SIMPLE_CRITERIA[:4]:
        value = _threshold(raw, cls.key)
        if value is not None:
            criteria.append(cls(int(value)))

    completed = _threshold(raw, "challengesCompleted")
    if completed is not None:
        criteria.append(
            ChallengesCompleted(
                int(completed),
                category=raw.get("challengeCategory") or None,
                difficulty=raw.get("challengeDifficulty") or None,
            )
        )
    perfect = _threshold(raw, PerfectScores.key)
    if perfect is not None:
        criteria.append(PerfectScores(int(perfect)))
    average = _threshold(raw, AverageScore.key, as_float=True)
    if average is not None:
        criteria.append(AverageScore(average))
    return tuple(criteria)


def criteria_to_mapping(criteria: Sequence[Criterion]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for criterion in criteria:
        payload.update(criterion.as_mapping())
    return payload


def criteria_satisfied(criteria: Sequence[Criterion], learner: LearnerSnapshot, ledger: ProgressLedger) -> bool:
    return all(criterion.satisfied(learner, ledger) for criterion in criteria)


# ----- definitions ------------------------------------------------------


@dataclass(frozen=True)
class BadgeDefinition:
    id: int
    name: str
    description: str = ""
    icon: str = ""
    rarity: str = "common"
    category: str = "achievement"
    type: str = "progress"
    criteria: Tuple[Criterion, ...] = ()
    xp_bonus: int = 0
    is_active: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    max_recipients: Optional[int] = None

    def available(self, now: datetime, unique_earners: int = 0) -> bool:
        if not self.is_active:
            return False
        if self.start_date and now < self.start_date:
            return False
        if self.end_date and now > self.end_date:
            return False
        if self.max_recipients is not None and unique_earners >= self.max_recipients:
            return False
        return True


# ----- awarding ---------------------------------------------------------


class BadgeStore(ProgressLedger, Protocol):
    def active_badges(self) -> List[Tuple[BadgeDefinition, int]]: ...

    def learner_snapshot(self, user_id: str) -> Optional[LearnerSnapshot]: ...

    def user_has_badge(self, user_id: str, badge_id: int) -> bool: ...

    def add_user_badge(self, user_id: str, badge_id: int, earned_at: datetime) -> None: ...

    def load_gamification(self, user_id: str) -> GamificationState: ...

    def save_gamification(self, user_id: str, state: GamificationState) -> None: ...

    def record_badge_award(self, badge_id: int, earned_at: datetime) -> None: ...

    def savepoint(self, name: str): ...


@dataclass(frozen=True)
class AwardOutcome:
    badge: BadgeDefinition
    awarded: bool
    xp_bonus: int = 0
    level_change: Optional[LevelChange] = None
    message: str = ""


@dataclass
class BadgeSweepResult:
    awarded: List[AwardOutcome] = field(default_factory=list)
    failures: List[Tuple[int, str]] = field(default_factory=list)

    @property
    def badges(self) -> List[BadgeDefinition]:
        return [outcome.badge for outcome in self.awarded]

    @property
    def total_xp_bonus(self) -> int:
        return sum(outcome.xp_bonus for outcome in self.awarded)

    @property
    def level_change(self) -> Optional[LevelChange]:
        changes = [o.level_change for o in self.awarded if o.level_change and o.level_change.leveled_up]
        return changes[-1] if changes else None


class BadgeAwarder:
    """Evaluates badge criteria for a learner and grants eligible badges."""

    def __init__(self, progression: Optional[ProgressionEngine] = None) -> None:
        self.progression = progression or ProgressionEngine()

    def award(
        self,
        store: BadgeStore,
        user_id: str,
        badge: BadgeDefinition,
        now: Optional[datetime] = None,
    ) -> AwardOutcome:
        """Grant ``badge`` unless the learner already holds it."""
        moment = now or datetime.now(timezone.utc)
        if store.user_has_badge(user_id, badge.id):
            return AwardOutcome(badge=badge, awarded=False, message="User already has this badge")

        store.add_user_badge(user_id, badge.id, moment)
        change: Optional[LevelChange] = None
        if badge.xp_bonus:
            state = store.load_gamification(user_id)
            change = self.progression.award_xp(state, int(badge.xp_bonus))
            store.save_gamification(user_id, state)
        store.record_badge_award(badge.id, moment)
        _LOGGER.info("Awarded badge %s to user %s (+%s xp)", badge.name, user_id, badge.xp_bonus)
        return AwardOutcome(
            badge=badge,
            awarded=True,
            xp_bonus=int(badge.xp_bonus or 0),
            level_change=change,
            message="Badge awarded successfully",
        )

    def check_and_award(
        self,
        store: BadgeStore,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> BadgeSweepResult:
        """Evaluate every active badge and grant those whose criteria hold.

        Safe to repeat: held badges are skipped and never reported again.
        """
        moment = now or datetime.now(timezone.utc)
        result = BadgeSweepResult()
        for badge, unique_earners in store.active_badges():
            if not badge.available(moment, unique_earners):
                continue
            try:
                with store.savepoint(f"badge_{badge.id}"):
                    if store.user_has_badge(user_id, badge.id):
                        continue
                    learner = store.learner_snapshot(user_id)
                    if learner is None:
                        return result
                    if not criteria_satisfied(badge.criteria, learner, store):
                        continue
                    outcome = self.award(store, user_id, badge, moment)
            except Exception as exc:
                _LOGGER.error("Failed to award badge %s to user %s: %s", badge.id, user_id, exc, exc_info=True)
                result.failures.append((badge.id, str(exc)))
                continue
            if outcome.awarded:
                result.awarded.append(outcome)
        return result

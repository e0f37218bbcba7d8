"""XP, level and streak progression rules.

Levels are a pure function of cumulative XP: every ``xp_per_level``
points of ``total_xp`` unlock the next level. Streaks count consecutive
days of qualifying activity measured in elapsed 24 hour periods since
the last recorded activity.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_LOGGER = logging.getLogger(__name__)

XP_PER_LEVEL = 1000
_SECONDS_PER_DAY = 86400


class InvalidXpAmountError(ValueError):
    """Raised when an XP award is negative or not an integer."""


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass
class StreakState:
    current: int = 0
    longest: int = 0
    last_activity: Optional[datetime] = None


@dataclass
class GamificationState:
    """Mutable progression fields of a single learner."""

    level: int = 1
    xp: int = 0
    total_xp: int = 0
    streak: StreakState = field(default_factory=StreakState)

    @property
    def xp_to_next_level(self) -> int:
        # Gap to ``level * XP_PER_LEVEL`` measured against current-level xp.
        return self.level * XP_PER_LEVEL - self.xp


@dataclass(frozen=True)
class LevelChange:
    leveled_up: bool
    new_level: int
    previous_level: int

    def as_dict(self) -> Dict[str, Any]:
        return {"leveledUp": self.leveled_up, "newLevel": self.new_level}


@dataclass(frozen=True)
class StreakUpdate:
    outcome: str  # started | same-day | extended | reset
    current: int
    longest: int


class ProgressionEngine:
    """Applies XP awards and streak updates to :class:`GamificationState`.

    Parameters
    ----------
    xp_per_level:
        Cumulative XP needed per level. Level ``n`` starts at
        ``(n - 1) * xp_per_level`` total XP.
    """

    def __init__(self, xp_per_level: int = XP_PER_LEVEL) -> None:
        if int(xp_per_level) <= 0:
            raise ValueError("xp_per_level must be positive")
        self.xp_per_level = int(xp_per_level)

    def level_for(self, total_xp: int) -> int:
        return int(total_xp) // self.xp_per_level + 1

    def xp_to_next_level(self, state: GamificationState) -> int:
        return state.level * self.xp_per_level - state.xp

    def award_xp(self, state: GamificationState, amount: int) -> LevelChange:
        """Add ``amount`` to both XP counters and derive the level again."""
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidXpAmountError(f"XP amount must be an integer, got {amount!r}")
        if amount < 0:
            raise InvalidXpAmountError("XP amount must not be negative")

        previous = state.level
        state.xp += amount
        state.total_xp += amount
        new_level = self.level_for(state.total_xp)
        if new_level > previous:
            state.level = new_level
            _LOGGER.debug("Level up %s -> %s (total_xp=%s)", previous, new_level, state.total_xp)
            return LevelChange(leveled_up=True, new_level=new_level, previous_level=previous)
        return LevelChange(leveled_up=False, new_level=previous, previous_level=previous)

    def update_streak(self, state: GamificationState, now: Optional[datetime] = None) -> StreakUpdate:
        """Advance the streak for an activity happening at ``now``.

        Call at most once per completion event.
        """
        moment = _as_utc(now or datetime.now(timezone.utc))
        streak = state.streak
        if streak.last_activity is None:
            streak.current = 1
            outcome = "started"
        else:
            elapsed = (moment - _as_utc(streak.last_activity)).total_seconds()
            days = int(elapsed // _SECONDS_PER_DAY)
            if days == 1:
                streak.current += 1
                outcome = "extended"
            elif days > 1:
                streak.current = 1
                outcome = "reset"
            else:
                outcome = "same-day"
        streak.longest = max(streak.longest, streak.current)
        streak.last_activity = moment
        return StreakUpdate(outcome=outcome, current=streak.current, longest=streak.longest)


DEFAULT_ENGINE = ProgressionEngine()


def award_xp(state: GamificationState, amount: int) -> LevelChange:
    return DEFAULT_ENGINE.award_xp(state, amount)


def update_streak(state: GamificationState, now: Optional[datetime] = None) -> StreakUpdate:
    return DEFAULT_ENGINE.update_streak(state, now)

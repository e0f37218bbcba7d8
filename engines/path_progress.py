"""Per-enrollment learning path progress."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

_LOGGER = logging.getLogger(__name__)

PATH_STATUSES = ("enrolled", "in-progress", "completed", "paused", "dropped")
STEP_TYPES = ("challenge", "reading", "video", "practice", "project")
DEFAULT_STEP_XP = 50


class EnrollmentClosedError(ValueError):
    """Raised when a dropped enrollment receives step completions."""


@dataclass(frozen=True)
class MilestoneRule:
    type: str
    threshold: int
    description: str
    xp_bonus: int


MILESTONE_RULES = (
    MilestoneRule("quarter", 25, "25% of learning path completed", 50),
    MilestoneRule("half", 50, "50% of learning path completed", 100),
    MilestoneRule("three-quarter", 75, "75% of learning path completed", 150),
    MilestoneRule("completion", 100, "Learning path completed!", 500),
)


@dataclass(frozen=True)
class PathStep:
    step_number: int
    title: str = ""
    description: str = ""
    type: str = "reading"
    challenge_id: Optional[int] = None
    xp_reward: int = DEFAULT_STEP_XP
    prerequisites: tuple = ()
    is_optional: bool = False

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "PathStep":
        return cls(
            step_number=int(raw["stepNumber"]),
            title=str(raw.get("title") or ""),
            description=str(raw.get("description") or ""),
            type=str(raw.get("type") or "reading"),
            challenge_id=raw.get("challengeId"),
            xp_reward=int(raw.get("xpReward", DEFAULT_STEP_XP) or 0),
            prerequisites=tuple(int(n) for n in raw.get("prerequisites") or ()),
            is_optional=bool(raw.get("isOptional", False)),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stepNumber": self.step_number,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "challengeId": self.challenge_id,
            "xpReward": self.xp_reward,
            "prerequisites": list(self.prerequisites),
            "isOptional": self.is_optional,
        }


def parse_steps(raw_steps: Iterable[Mapping[str, Any]]) -> List[PathStep]:
    """Parse and validate an ordered list of steps."""
    steps = sorted((PathStep.from_mapping(item) for item in raw_steps), key=lambda s: s.step_number)
    seen: set[int] = set()
    for step in steps:
        if step.step_number < 1:
            raise ValueError("step numbers start at 1")
        if step.step_number in seen:
            raise ValueError(f"duplicate step number {step.step_number}")
        if step.type not in STEP_TYPES:
            raise ValueError(f"unknown step type {step.type}")
        if step.xp_reward < 0:
            raise ValueError("xpReward must not be negative")
        for prereq in step.prerequisites:
            if prereq >= step.step_number or prereq not in seen:
                raise ValueError(f"step {step.step_number} may only require earlier steps")
        seen.add(step.step_number)
    return steps


@dataclass
class CompletedStep:
    step_number: int
    completed_at: datetime
    score: Optional[float] = None
    time_spent: int = 0
    attempts: int = 1
    xp_earned: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stepNumber": self.step_number,
            "completedAt": self.completed_at.isoformat(),
            "score": self.score,
            "timeSpent": self.time_spent,
            "attempts": self.attempts,
            "xpEarned": self.xp_earned,
        }


@dataclass
class Milestone:
    type: str
    description: str
    achieved_at: datetime
    xp_bonus: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "achievedAt": self.achieved_at.isoformat(),
            "xpBonus": self.xp_bonus,
        }


@dataclass
class PathProgress:
    """Mutable enrollment state of one learner on one path."""

    user_id: str
    path_id: int
    total_steps: int
    status: str = "enrolled"
    current_step: int = 1
    completed_steps: List[CompletedStep] = field(default_factory=list)
    milestones: List[Milestone] = field(default_factory=list)
    progress_percentage: int = 0
    completed: bool = False
    completed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    total_time_spent: int = 0

    @property
    def completed_numbers(self) -> set[int]:
        return {step.step_number for step in self.completed_steps}

    @property
    def average_score(self) -> float:
        scores = [s.score for s in self.completed_steps if s.score is not None]
        return sum(scores) / len(scores) if scores else 0.0

    @property
    def total_xp_earned(self) -> int:
        return sum(s.xp_earned for s in self.completed_steps) + sum(m.xp_bonus for m in self.milestones)


@dataclass
class StepCompletion:
    step_number: int
    first_completion: bool
    xp_awarded: int
    new_milestones: List[Milestone]
    path_completed: bool

    @property
    def milestone_xp(self) -> int:
        return sum(m.xp_bonus for m in self.new_milestones)


def _percentage(done: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, int(done / total * 100 + 0.5))


def complete_step(
    progress: PathProgress,
    step_number: int,
    *,
    score: Optional[float] = None,
    time_spent: int = 0,
    xp_earned: int = 0,
    now: Optional[datetime] = None,
    step_numbers: Optional[Iterable[int]] = None,
) -> StepCompletion:
    """Record ``step_number`` as completed and derive progress.

    Re-completing a step overwrites its data and counts another attempt
    without awarding XP a second time. When ``step_numbers`` is given,
    only completed steps still present in the path count towards the
    percentage.
    """
    if progress.status == "dropped":
        raise EnrollmentClosedError("enrollment has been dropped")
    moment = now or datetime.now(timezone.utc)

    existing = next((s for s in progress.completed_steps if s.step_number == step_number), None)
    if existing is not None:
        existing.completed_at = moment
        existing.score = score
        existing.time_spent = time_spent
        existing.attempts += 1
        xp_awarded = 0
    else:
        progress.completed_steps.append(
            CompletedStep(
                step_number=step_number,
                completed_at=moment,
                score=score,
                time_spent=time_spent,
                xp_earned=xp_earned,
            )
        )
        xp_awarded = xp_earned

    progress.total_time_spent += max(0, int(time_spent))
    progress.current_step = max(progress.current_step, step_number + 1)
    progress.last_activity = moment
    if progress.status in ("enrolled", "paused"):
        progress.status = "in-progress"
    if progress.started_at is None:
        progress.started_at = moment

    done = progress.completed_numbers
    if step_numbers is not None:
        done &= set(step_numbers)
    progress.progress_percentage = min(
        100, max(progress.progress_percentage, _percentage(len(done), progress.total_steps))
    )

    reached = {m.type for m in progress.milestones}
    new_milestones: List[Milestone] = []
    for rule in MILESTONE_RULES:
        if progress.progress_percentage >= rule.threshold and rule.type not in reached:
            milestone = Milestone(rule.type, rule.description, moment, rule.xp_bonus)
            progress.milestones.append(milestone)
            new_milestones.append(milestone)

    path_completed = False
    if progress.progress_percentage >= 100 and not progress.completed:
        progress.completed = True
        progress.completed_at = moment
        progress.status = "completed"
        path_completed = True
        _LOGGER.info("User %s completed path %s", progress.user_id, progress.path_id)

    return StepCompletion(
        step_number=step_number,
        first_completion=existing is None,
        xp_awarded=xp_awarded,
        new_milestones=new_milestones,
        path_completed=path_completed,
    )


def missing_prerequisites(step: PathStep, completed: Iterable[int]) -> List[int]:
    done = set(completed)
    return [n for n in step.prerequisites if n not in done]


def next_step(steps: Sequence[PathStep], completed: Iterable[int]) -> Optional[PathStep]:
    done = set(completed)
    for step in steps:
        if step.step_number in done:
            continue
        if not missing_prerequisites(step, done):
            return step
    return None


def enrollment_analytics(progress: PathProgress) -> Dict[str, Any]:
    analytics: Dict[str, Any] = {
        "progressPercentage": progress.progress_percentage,
        "timeSpent": progress.total_time_spent,
        "averageScore": progress.average_score,
        "completedSteps": len(progress.completed_steps),
        "milestones": len(progress.milestones),
    }
    steps = sorted(progress.completed_steps, key=lambda s: s.completed_at)
    if len(steps) > 1:
        days = {s.completed_at.date() for s in steps}
        analytics["studyDays"] = len(days)
        analytics["consistency"] = len(days) / len(steps)
    if len(steps) >= 3:
        recent = steps[-3:]
        recent_avg = sum(s.score or 0 for s in recent) / len(recent)
        overall = progress.average_score
        if recent_avg > overall:
            analytics["performanceTrend"] = "improving"
        elif recent_avg < overall:
            analytics["performanceTrend"] = "declining"
        else:
            analytics["performanceTrend"] = "stable"
    return analytics

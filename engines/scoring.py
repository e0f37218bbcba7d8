"""Challenge content variants and their scoring rules.

Each challenge type carries its own content shape. ``parse_content``
turns the stored JSON into one of the content dataclasses and
``score_submission`` dispatches to the scorer registered for that
content kind. XP and bonus computation live here as well so that the
attempt lifecycle only has to glue persisted records together.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

_LOGGER = logging.getLogger(__name__)

CHALLENGE_TYPES = ("quiz", "coding", "essay", "project", "interactive", "video-quiz")
CATEGORIES = ("programming", "mathematics", "science", "languages", "arts", "business", "other")
DIFFICULTIES = ("beginner", "intermediate", "advanced", "expert")
DIFFICULTY_LEVELS = {name: idx + 1 for idx, name in enumerate(DIFFICULTIES)}
QUESTION_TYPES = ("multiple-choice", "true-false", "short-answer", "fill-blank", "code", "drag-drop")
ATTEMPT_STATUSES = ("in-progress", "completed", "abandoned", "failed")

# Fraction of the estimated time under which a completion counts as fast.
FAST_COMPLETION_RATIO = 0.8


class UnknownContentTypeError(ValueError):
    """Raised when a challenge type has no content variant."""


class InvalidContentError(ValueError):
    """Raised when authored content is malformed."""


class InvalidSubmissionError(ValueError):
    """Raised when submitted responses do not fit the challenge content."""


# ----- content variants -------------------------------------------------


@dataclass(frozen=True)
class Question:
    id: str
    type: str
    question: str
    correct_answer: Any
    options: Tuple[str, ...] = ()
    explanation: str = ""
    points: int = 1
    hints: Tuple[str, ...] = ()

    def public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "question": self.question,
            "options": list(self.options),
            "points": self.points,
            "hints": list(self.hints),
        }


@dataclass(frozen=True)
class QuizContent:
    kind: ClassVar[str] = "quiz"
    questions: Tuple[Question, ...] = ()
    video_url: Optional[str] = None

    @property
    def max_points(self) -> int:
        return sum(q.points for q in self.questions)

    def public_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"questions": [q.public_dict() for q in self.questions]}
        if self.video_url:
            payload["videoUrl"] = self.video_url
        return payload


@dataclass(frozen=True)
class TestCase:
    __test__ = False

    input: str
    expected_output: str
    is_hidden: bool = False
    points: int = 1


@dataclass(frozen=True)
class CodingContent:
    kind: ClassVar[str] = "coding"
    problem_statement: str = ""
    test_cases: Tuple[TestCase, ...] = ()
    starter_code: Mapping[str, str] = field(default_factory=dict)
    examples: Tuple[Mapping[str, Any], ...] = ()
    time_limit_ms: int = 5000
    memory_limit_mb: int = 128

    @property
    def max_points(self) -> int:
        return sum(case.points for case in self.test_cases)

    def public_dict(self) -> Dict[str, Any]:
        return {
            "problemStatement": self.problem_statement,
            "examples": [dict(example) for example in self.examples],
            "starterCode": dict(self.starter_code),
            "testCases": [
                {"index": idx, "input": case.input, "points": case.points}
                for idx, case in enumerate(self.test_cases)
                if not case.is_hidden
            ],
            "timeLimit": self.time_limit_ms,
            "memoryLimit": self.memory_limit_mb,
        }


@dataclass(frozen=True)
class RubricItem:
    criteria: str
    description: str = ""
    max_points: int = 0


@dataclass(frozen=True)
class EssayContent:
    kind: ClassVar[str] = "essay"
    prompt: str = ""
    min_words: Optional[int] = None
    max_words: Optional[int] = None
    rubric: Tuple[RubricItem, ...] = ()

    @property
    def max_points(self) -> int:
        return sum(item.max_points for item in self.rubric)

    def public_dict(self) -> Dict[str, Any]:
        return {
            "prompt": self.prompt,
            "minWords": self.min_words,
            "maxWords": self.max_words,
            "rubric": [
                {"criteria": item.criteria, "description": item.description, "maxPoints": item.max_points}
                for item in self.rubric
            ],
        }


@dataclass(frozen=True)
class Checkpoint:
    id: str
    points: int = 1
    description: str = ""


@dataclass(frozen=True)
class InteractiveContent:
    kind: ClassVar[str] = "interactive"
    html_content: str = ""
    checkpoints: Tuple[Checkpoint, ...] = ()
    resources: Tuple[Mapping[str, Any], ...] = ()

    @property
    def max_points(self) -> int:
        return sum(cp.points for cp in self.checkpoints)

    def public_dict(self) -> Dict[str, Any]:
        return {
            "htmlContent": self.html_content,
            "checkpoints": [
                {"id": cp.id, "points": cp.points, "description": cp.description} for cp in self.checkpoints
            ],
            "resources": [dict(r) for r in self.resources],
        }


ChallengeContent = Union[QuizContent, CodingContent, EssayContent, InteractiveContent]


def _points(value: Any, default: int = 1) -> int:
    if value is None:
        return default
    try:
        points = int(value)
    except (TypeError, ValueError):
        raise InvalidContentError(f"invalid point value: {value!r}") from None
    if points < 0:
        raise InvalidContentError("point values must not be negative")
    return points


def _parse_quiz(raw: Mapping[str, Any]) -> QuizContent:
    questions: List[Question] = []
    seen: set[str] = set()
    for idx, item in enumerate(raw.get("questions") or []):
        qid = str(item.get("id") or f"q{idx + 1}")
        if qid in seen:
            raise InvalidContentError(f"duplicate question id: {qid}")
        seen.add(qid)
        if "correctAnswer" not in item:
            raise InvalidContentError(f"question {qid} has no correctAnswer")
        questions.append(
            Question(
                id=qid,
                type=str(item.get("type") or "multiple-choice"),
                question=str(item.get("question") or ""),
                correct_answer=item.get("correctAnswer"),
                options=tuple(str(o) for o in item.get("options") or ()),
                explanation=str(item.get("explanation") or ""),
                points=_points(item.get("points")),
                hints=tuple(str(h) for h in item.get("hints") or ()),
            )
        )
    return QuizContent(questions=tuple(questions), video_url=raw.get("videoUrl"))


def _parse_coding(raw: Mapping[str, Any]) -> CodingContent:
    body = raw.get("codingChallenge") or raw
    cases = tuple(
        TestCase(
            input=str(case.get("input") or ""),
            expected_output=str(case.get("expectedOutput") or ""),
            is_hidden=bool(case.get("isHidden", False)),
            points=_points(case.get("points")),
        )
        for case in body.get("testCases") or []
    )
    return CodingContent(
        problem_statement=str(body.get("problemStatement") or ""),
        test_cases=cases,
        starter_code=dict(body.get("starterCode") or {}),
        examples=tuple(body.get("examples") or ()),
        time_limit_ms=int(body.get("timeLimit") or 5000),
        memory_limit_mb=int(body.get("memoryLimit") or 128),
    )


def _parse_essay(raw: Mapping[str, Any]) -> EssayContent:
    body = raw.get("essayPrompt") or raw
    rubric = tuple(
        RubricItem(
            criteria=str(item.get("criteria") or ""),
            description=str(item.get("description") or ""),
            max_points=_points(item.get("maxPoints"), default=0),
        )
        for item in body.get("rubric") or []
    )
    return EssayContent(
        prompt=str(body.get("prompt") or ""),
        min_words=body.get("minWords"),
        max_words=body.get("maxWords"),
        rubric=rubric,
    )


def _parse_interactive(raw: Mapping[str, Any]) -> InteractiveContent:
    body = raw.get("interactiveContent") or raw
    checkpoints = tuple(
        Checkpoint(
            id=str(cp.get("id") or f"cp{idx + 1}"),
            points=_points(cp.get("points")),
            description=str(cp.get("description") or ""),
        )
        for idx, cp in enumerate(body.get("checkpoints") or [])
    )
    return InteractiveContent(
        html_content=str(body.get("htmlContent") or ""),
        checkpoints=checkpoints,
        resources=tuple(body.get("resources") or ()),
    )


_PARSERS: Dict[str, Callable[[Mapping[str, Any]], ChallengeContent]] = {
    "quiz": _parse_quiz,
    "video-quiz": _parse_quiz,
    "coding": _parse_coding,
    "essay": _parse_essay,
    "project": _parse_essay,
    "interactive": _parse_interactive,
}


def parse_content(challenge_type: str, raw: Optional[Mapping[str, Any]]) -> ChallengeContent:
    """Build the content variant that matches ``challenge_type``."""
    try:
        parser = _PARSERS[challenge_type]
    except KeyError:
        raise UnknownContentTypeError(f"unknown challenge type: {challenge_type}") from None
    return parser(raw or {})


# ----- scoring ----------------------------------------------------------


@dataclass(frozen=True)
class ScoredResponse:
    question_id: str
    question_type: str
    user_answer: Any
    correct_answer: Any
    is_correct: bool
    points_earned: int
    time_spent: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "questionId": self.question_id,
            "questionType": self.question_type,
            "userAnswer": self.user_answer,
            "correctAnswer": self.correct_answer,
            "isCorrect": self.is_correct,
            "pointsEarned": self.points_earned,
            "timeSpent": self.time_spent,
        }


@dataclass(frozen=True)
class ScoreResult:
    score: int
    responses: Tuple[ScoredResponse, ...]
    requires_review: bool = False


def strict_equals(left: Any, right: Any) -> bool:
    """Equality that does not coerce between types."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    numeric = (int, float)
    if isinstance(left, numeric) and isinstance(right, numeric):
        return left == right
    if type(left) is not type(right):
        return False
    if isinstance(left, (list, tuple)):
        return len(left) == len(right) and all(strict_equals(a, b) for a, b in zip(left, right))
    if isinstance(left, dict):
        return left.keys() == right.keys() and all(strict_equals(left[k], right[k]) for k in left)
    return left == right


def _response_time(item: Mapping[str, Any]) -> float:
    try:
        return max(0.0, float(item.get("timeSpent") or 0))
    except (TypeError, ValueError):
        return 0.0


def _score_quiz(content: QuizContent, responses: Sequence[Mapping[str, Any]]) -> ScoreResult:
    by_id = {q.id: q for q in content.questions}
    answered: set[str] = set()
    scored: List[ScoredResponse] = []
    total = 0
    for item in responses:
        qid = str(item.get("questionId", ""))
        question = by_id.get(qid)
        # Unknown ids and repeated answers do not earn points.
        if question is None or qid in answered:
            continue
        answered.add(qid)
        answer = item.get("userAnswer")
        correct = strict_equals(answer, question.correct_answer)
        earned = question.points if correct else 0
        total += earned
        scored.append(
            ScoredResponse(
                question_id=qid,
                question_type=question.type,
                user_answer=answer,
                correct_answer=question.correct_answer,
                is_correct=correct,
                points_earned=earned,
                time_spent=_response_time(item),
            )
        )
    return ScoreResult(score=total, responses=tuple(scored))


def _score_coding(content: CodingContent, responses: Sequence[Mapping[str, Any]]) -> ScoreResult:
    scored: List[ScoredResponse] = []
    seen: set[int] = set()
    total = 0
    for item in responses:
        try:
            index = int(item.get("testCaseIndex"))
        except (TypeError, ValueError):
            continue
        if index in seen or not 0 <= index < len(content.test_cases):
            continue
        seen.add(index)
        case = content.test_cases[index]
        output = item.get("output")
        correct = isinstance(output, str) and output.strip() == case.expected_output.strip()
        earned = case.points if correct else 0
        total += earned
        scored.append(
            ScoredResponse(
                question_id=f"test-{index}",
                question_type="code",
                user_answer=output,
                correct_answer=None if case.is_hidden else case.expected_output,
                is_correct=correct,
                points_earned=earned,
                time_spent=_response_time(item),
            )
        )
    return ScoreResult(score=total, responses=tuple(scored))


def _score_essay(content: EssayContent, responses: Sequence[Mapping[str, Any]]) -> ScoreResult:
    if not responses:
        raise InvalidSubmissionError("essay submissions need a text response")
    text = responses[0].get("userAnswer")
    if not isinstance(text, str) or not text.strip():
        raise InvalidSubmissionError("essay submissions need a text response")
    words = len(text.split())
    if content.min_words and words < int(content.min_words):
        raise InvalidSubmissionError(f"essay must contain at least {content.min_words} words")
    if content.max_words and words > int(content.max_words):
        raise InvalidSubmissionError(f"essay must contain at most {content.max_words} words")
    response = ScoredResponse(
        question_id="essay",
        question_type="essay",
        user_answer=text,
        correct_answer=None,
        is_correct=False,
        points_earned=0,
        time_spent=_response_time(responses[0]),
    )
    # Rubric grading happens outside the automatic scorer.
    return ScoreResult(score=0, responses=(response,), requires_review=True)


def _score_interactive(content: InteractiveContent, responses: Sequence[Mapping[str, Any]]) -> ScoreResult:
    done = {
        str(item.get("checkpointId"))
        for item in responses
        if item.get("completed") is True
    }
    scored = tuple(
        ScoredResponse(
            question_id=cp.id,
            question_type="interactive",
            user_answer=cp.id in done,
            correct_answer=True,
            is_correct=cp.id in done,
            points_earned=cp.points if cp.id in done else 0,
        )
        for cp in content.checkpoints
    )
    return ScoreResult(score=sum(r.points_earned for r in scored), responses=scored)


_SCORERS: Dict[str, Callable[[Any, Sequence[Mapping[str, Any]]], ScoreResult]] = {
    QuizContent.kind: _score_quiz,
    CodingContent.kind: _score_coding,
    EssayContent.kind: _score_essay,
    InteractiveContent.kind: _score_interactive,
}


def score_submission(content: ChallengeContent, responses: Optional[Iterable[Mapping[str, Any]]]) -> ScoreResult:
    """Score ``responses`` with the scorer registered for ``content.kind``."""
    items = [r for r in (responses or []) if isinstance(r, Mapping)]
    scorer = _SCORERS.get(content.kind)
    if scorer is None:
        raise UnknownContentTypeError(f"no scorer for content kind {content.kind}")
    return scorer(content, items)


# ----- derived attempt values ------------------------------------------


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def percentage(score: float, max_possible: float) -> int:
    if not max_possible or max_possible <= 0:
        return 0
    return _round_half_up(score / max_possible * 100)


def passed(score: float, passing_score: float) -> bool:
    return score >= passing_score


@dataclass(frozen=True)
class BonusConfig:
    perfect_score: int = 0
    fast_completion: int = 0
    first_attempt: int = 0


@dataclass(frozen=True)
class ScoringConfig:
    max_points: int
    passing_score: int
    xp_reward: int
    bonus: BonusConfig = BonusConfig()

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "ScoringConfig":
        bonus = raw.get("bonusXp") or {}
        return cls(
            max_points=int(raw.get("maxPoints") or 0),
            passing_score=int(raw.get("passingScore") or 0),
            xp_reward=int(raw.get("xpReward") or 0),
            bonus=BonusConfig(
                perfect_score=int(bonus.get("perfectScore") or 0),
                fast_completion=int(bonus.get("fastCompletion") or 0),
                first_attempt=int(bonus.get("firstAttempt") or 0),
            ),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "maxPoints": self.max_points,
            "passingScore": self.passing_score,
            "xpReward": self.xp_reward,
            "bonusXp": {
                "perfectScore": self.bonus.perfect_score,
                "fastCompletion": self.bonus.fast_completion,
                "firstAttempt": self.bonus.first_attempt,
            },
        }


@dataclass(frozen=True)
class XpAward:
    base: int
    perfect_score: int = 0
    fast_completion: int = 0
    first_attempt: int = 0

    @property
    def bonus_total(self) -> int:
        return self.perfect_score + self.fast_completion + self.first_attempt

    @property
    def total(self) -> int:
        return self.base + self.bonus_total

    def bonus_breakdown(self) -> Dict[str, int]:
        return {
            "perfectScore": self.perfect_score,
            "fastCompletion": self.fast_completion,
            "firstAttempt": self.first_attempt,
            "streak": 0,
        }


def calculate_xp(
    scoring: ScoringConfig,
    *,
    percentage_value: int,
    time_spent_seconds: float,
    estimated_minutes: float,
    attempt_number: int,
    attempt_passed: bool,
) -> XpAward:
    """Base reward plus every configured bonus whose trigger holds."""
    bonus = scoring.bonus
    perfect = bonus.perfect_score if percentage_value == 100 else 0
    fast_limit = (estimated_minutes or 0) * 60 * FAST_COMPLETION_RATIO
    fast = bonus.fast_completion if time_spent_seconds < fast_limit else 0
    first = bonus.first_attempt if attempt_number == 1 and attempt_passed else 0
    return XpAward(base=scoring.xp_reward, perfect_score=perfect, fast_completion=fast, first_attempt=first)


def performance_level(pct: float) -> str:
    if pct >= 90:
        return "excellent"
    if pct >= 80:
        return "good"
    if pct >= 70:
        return "satisfactory"
    if pct >= 60:
        return "needs-improvement"
    return "poor"


def analyze_performance(
    responses: Sequence[Mapping[str, Any]],
    time_spent_seconds: float,
    estimated_minutes: float,
    hints_used: int = 0,
) -> Dict[str, List[str]]:
    analysis: Dict[str, List[str]] = {"strengths": [], "weaknesses": [], "recommendations": []}

    per_type: Dict[str, List[int]] = {}
    for item in responses:
        bucket = per_type.setdefault(str(item.get("questionType") or "unknown"), [0, 0])
        bucket[1] += 1
        if item.get("isCorrect"):
            bucket[0] += 1
    for qtype, (correct, total) in per_type.items():
        accuracy = correct / total
        if accuracy >= 0.8:
            analysis["strengths"].append(f"Strong in {qtype} questions")
        elif accuracy < 0.5:
            analysis["weaknesses"].append(f"Needs improvement in {qtype} questions")

    if time_spent_seconds and estimated_minutes:
        ratio = time_spent_seconds / (estimated_minutes * 60)
        if ratio < 0.7:
            analysis["strengths"].append("Quick problem solver")
        elif ratio > 1.5:
            analysis["recommendations"].append("Consider reviewing fundamentals to improve speed")

    if responses and hints_used > len(responses) * 0.5:
        analysis["recommendations"].append("Try to solve problems independently before using hints")
    return analysis


def running_average(previous: float, count: int, value: float) -> float:
    """Incremental mean where ``count`` already includes ``value``."""
    if count <= 0:
        raise ValueError("count must include the new value")
    return (previous * (count - 1) + value) / count

import pytest

from conftest import ALL_CORRECT, QUIZ_CHALLENGE
from engines.scoring import (
    CodingContent,
    EssayContent,
    InteractiveContent,
    InvalidContentError,
    InvalidSubmissionError,
    QuizContent,
    ScoringConfig,
    UnknownContentTypeError,
    analyze_performance,
    calculate_xp,
    parse_content,
    passed,
    percentage,
    performance_level,
    running_average,
    score_submission,
    strict_equals,
)


def _quiz():
    return parse_content("quiz", QUIZ_CHALLENGE["content"])


def test_parse_content_dispatches_on_type():
    assert isinstance(_quiz(), QuizContent)
    assert isinstance(parse_content("video-quiz", {"questions": []}), QuizContent)
    assert isinstance(parse_content("coding", {"codingChallenge": {"testCases": []}}), CodingContent)
    assert isinstance(parse_content("project", {"prompt": "Build it"}), EssayContent)
    assert isinstance(parse_content("interactive", {"checkpoints": []}), InteractiveContent)
    with pytest.raises(UnknownContentTypeError):
        parse_content("crossword", {})


def test_quiz_requires_correct_answers_and_unique_ids():
    with pytest.raises(InvalidContentError):
        parse_content("quiz", {"questions": [{"id": "q1", "question": "?"}]})
    with pytest.raises(InvalidContentError):
        parse_content(
            "quiz",
            {"questions": [{"id": "q1", "correctAnswer": 1}, {"id": "q1", "correctAnswer": 2}]},
        )


def test_public_quiz_hides_answers():
    public = _quiz().public_dict()
    for question in public["questions"]:
        assert "correctAnswer" not in question
        assert "explanation" not in question


def test_strict_equality_does_not_coerce():
    assert strict_equals("tuple", "tuple")
    assert strict_equals(1, 1.0)
    assert strict_equals([1, "a"], [1, "a"])
    assert not strict_equals("1", 1)
    assert not strict_equals(True, 1)
    assert not strict_equals("true", True)
    assert not strict_equals([1, 2], [2, 1])
    assert not strict_equals({"a": 1}, {"a": "1"})


def test_quiz_scoring_awards_points_per_correct_answer():
    result = score_submission(_quiz(), ALL_CORRECT)
    assert result.score == 4
    assert all(r.is_correct for r in result.responses)
    assert not result.requires_review


def test_quiz_scoring_ignores_unknown_and_repeated_questions():
    responses = [
        {"questionId": "q1", "userAnswer": "tuple"},
        {"questionId": "q1", "userAnswer": "tuple"},
        {"questionId": "zz", "userAnswer": "anything"},
        {"questionId": "q2", "userAnswer": "true"},
    ]
    result = score_submission(_quiz(), responses)
    assert result.score == 1
    assert [r.question_id for r in result.responses] == ["q1", "q2"]
    assert result.responses[1].is_correct is False


def test_coding_scoring_compares_trimmed_output():
    content = parse_content(
        "coding",
        {
            "codingChallenge": {
                "testCases": [
                    {"input": "1 2", "expectedOutput": "3", "points": 1},
                    {"input": "2 2", "expectedOutput": "4", "points": 2, "isHidden": True},
                ]
            }
        },
    )
    result = score_submission(
        content,
        [{"testCaseIndex": 0, "output": "3\n"}, {"testCaseIndex": 1, "output": "5"}, {"testCaseIndex": 7, "output": "x"}],
    )
    assert result.score == 1
    assert result.responses[1].correct_answer is None
    assert [case["index"] for case in content.public_dict()["testCases"]] == [0]


def test_essay_submission_is_queued_for_review():
    content = parse_content(
        "essay",
        {"essayPrompt": {"prompt": "Why test?", "minWords": 3, "rubric": [{"criteria": "clarity", "maxPoints": 5}]}},
    )
    result = score_submission(content, [{"userAnswer": "Tests catch regressions early."}])
    assert result.requires_review
    assert result.score == 0
    assert content.max_points == 5

    with pytest.raises(InvalidSubmissionError):
        score_submission(content, [{"userAnswer": "Too short"}])
    with pytest.raises(InvalidSubmissionError):
        score_submission(content, [])


def test_interactive_counts_completed_checkpoints():
    content = parse_content(
        "interactive",
        {"interactiveContent": {"checkpoints": [{"id": "a", "points": 2}, {"id": "b", "points": 3}]}},
    )
    result = score_submission(
        content, [{"checkpointId": "b", "completed": True}, {"checkpointId": "a", "completed": "yes"}]
    )
    assert result.score == 3
    assert [r.is_correct for r in result.responses] == [False, True]


def test_percentage_rounds_and_handles_zero_maximum():
    assert percentage(4, 4) == 100
    assert percentage(1, 3) == 33
    assert percentage(2, 3) == 67
    assert percentage(1, 8) == 13
    assert percentage(3, 0) == 0


def test_passed_is_inclusive():
    assert passed(3, 3)
    assert not passed(2, 3)


def test_perfect_fast_first_attempt_earns_every_bonus():
    scoring = ScoringConfig.from_mapping(QUIZ_CHALLENGE["scoring"])
    award = calculate_xp(
        scoring,
        percentage_value=100,
        time_spent_seconds=300,
        estimated_minutes=10,
        attempt_number=1,
        attempt_passed=True,
    )
    assert award.base == 100
    assert award.perfect_score == 25
    assert award.fast_completion == 15
    assert award.first_attempt == 10
    assert award.total == 150
    assert award.bonus_breakdown()["streak"] == 0


def test_bonuses_need_their_triggers():
    scoring = ScoringConfig.from_mapping(QUIZ_CHALLENGE["scoring"])
    award = calculate_xp(
        scoring,
        percentage_value=75,
        time_spent_seconds=480,
        estimated_minutes=10,
        attempt_number=2,
        attempt_passed=True,
    )
    assert award.total == 100
    assert award.bonus_total == 0


def test_failed_first_attempt_gets_no_first_attempt_bonus():
    scoring = ScoringConfig.from_mapping(QUIZ_CHALLENGE["scoring"])
    award = calculate_xp(
        scoring,
        percentage_value=50,
        time_spent_seconds=900,
        estimated_minutes=10,
        attempt_number=1,
        attempt_passed=False,
    )
    assert award.first_attempt == 0


def test_running_average_is_incremental_mean():
    avg = 0.0
    for count, value in enumerate([80, 100, 60], start=1):
        avg = running_average(avg, count, value)
    assert avg == pytest.approx(80.0)
    with pytest.raises(ValueError):
        running_average(50, 0, 10)


def test_performance_levels():
    assert performance_level(95) == "excellent"
    assert performance_level(80) == "good"
    assert performance_level(70) == "satisfactory"
    assert performance_level(60) == "needs-improvement"
    assert performance_level(10) == "poor"


def test_analyze_performance_reports_strengths_and_hint_usage():
    responses = [
        {"questionType": "multiple-choice", "isCorrect": True},
        {"questionType": "multiple-choice", "isCorrect": True},
        {"questionType": "short-answer", "isCorrect": False},
    ]
    analysis = analyze_performance(responses, time_spent_seconds=120, estimated_minutes=10, hints_used=3)
    assert "Strong in multiple-choice questions" in analysis["strengths"]
    assert "Needs improvement in short-answer questions" in analysis["weaknesses"]
    assert "Quick problem solver" in analysis["strengths"]
    assert any("hints" in item for item in analysis["recommendations"])

from datetime import timedelta

import pytest

import learning_path
from conftest import T0
from engines.path_progress import PathProgress, complete_step, next_step, parse_steps
from errors import (
    ConflictError,
    ForbiddenError,
    InputValidationError,
    NotFoundError,
    PreconditionError,
    PrerequisitesNotMetError,
)

FOUR_STEPS = [
    {"stepNumber": 1, "title": "Read the intro", "type": "reading"},
    {"stepNumber": 2, "title": "Watch the demo", "type": "video", "prerequisites": [1]},
    {"stepNumber": 3, "title": "Practice", "type": "practice", "prerequisites": [2]},
    {"stepNumber": 4, "title": "Build something", "type": "project", "xpReward": 120},
]


@pytest.fixture
def make_path(temp_db):
    def _make(steps=FOUR_STEPS, **overrides):
        data = {
            "title": "Python Foundations",
            "description": "From zero to first program",
            "category": "programming",
            "difficulty": "beginner",
            "steps": steps,
            "isPublished": True,
            **overrides,
        }
        return learning_path.create_path(temp_db, None, data)["id"]

    return _make


def test_engine_progress_hits_every_milestone_once():
    progress = PathProgress(user_id="u1", path_id=1, total_steps=4)
    percentages, milestones = [], []
    for number in range(1, 5):
        completion = complete_step(progress, number, xp_earned=50, now=T0 + timedelta(hours=number))
        percentages.append(progress.progress_percentage)
        milestones.extend(m.type for m in completion.new_milestones)

    assert percentages == [25, 50, 75, 100]
    assert milestones == ["quarter", "half", "three-quarter", "completion"]
    assert progress.completed
    assert progress.status == "completed"
    assert progress.total_xp_earned == 200 + 800


def test_engine_uneven_step_count_rounds_percentages():
    progress = PathProgress(user_id="u1", path_id=1, total_steps=3)
    complete_step(progress, 1, now=T0)
    assert progress.progress_percentage == 33
    assert [m.type for m in progress.milestones] == ["quarter"]
    complete_step(progress, 2, now=T0)
    assert progress.progress_percentage == 67
    assert [m.type for m in progress.milestones] == ["quarter", "half"]


def test_parse_steps_rejects_forward_prerequisites_and_duplicates():
    with pytest.raises(ValueError):
        parse_steps([{"stepNumber": 1, "prerequisites": [2]}, {"stepNumber": 2}])
    with pytest.raises(ValueError):
        parse_steps([{"stepNumber": 1}, {"stepNumber": 1}])
    with pytest.raises(ValueError):
        parse_steps([{"stepNumber": 1, "type": "podcast"}])


def test_next_step_respects_prerequisites():
    steps = parse_steps(FOUR_STEPS)
    assert next_step(steps, []).step_number == 1
    assert next_step(steps, [1]).step_number == 2
    assert next_step(steps, [1, 2, 3, 4]) is None


def test_completing_all_steps_reports_progress_and_milestones(temp_db, make_user, make_path):
    user_id = make_user()
    path_id = make_path()
    learning_path.enroll(temp_db, user_id, path_id, now=T0)

    seen_percentages, seen_milestones, xp = [], [], 0
    for number in range(1, 5):
        result = learning_path.complete_step(
            temp_db, user_id, path_id, number, score=80, time_spent=60, now=T0 + timedelta(minutes=number)
        )
        seen_percentages.append(result["progress"]["progressPercentage"])
        seen_milestones.extend(m["type"] for m in result["milestones"])
        xp += result["xpEarned"]

    assert seen_percentages == [25, 50, 75, 100]
    assert seen_milestones == ["quarter", "half", "three-quarter", "completion"]
    assert result["nextStep"] is None
    assert result["progress"]["completed"] is True
    assert xp == 50 + 50 + 50 + 120 + 800
    assert result["levelUp"]["newLevel"] == 2

    with temp_db.read() as repo:
        user = repo.get_user_document(user_id)
        path = repo.get_path(path_id)
    assert user["gamification"]["totalXp"] == xp
    assert [a["name"] for a in user["gamification"]["achievements"]] == ["Completed Python Foundations"]
    assert path["completions"] == 1
    assert path["enrollments"] == 1


def test_step_prerequisites_are_enforced(temp_db, make_user, make_path):
    user_id = make_user()
    path_id = make_path()
    learning_path.enroll(temp_db, user_id, path_id, now=T0)

    with pytest.raises(PrerequisitesNotMetError) as excinfo:
        learning_path.complete_step(temp_db, user_id, path_id, 3, now=T0)
    assert excinfo.value.status_code == 403
    assert excinfo.value.details["missingPrerequisites"] == [2]

    with pytest.raises(NotFoundError):
        learning_path.complete_step(temp_db, user_id, path_id, 9, now=T0)


def test_recompleting_a_step_awards_no_extra_xp(temp_db, make_user, make_path):
    user_id = make_user()
    path_id = make_path()
    learning_path.enroll(temp_db, user_id, path_id, now=T0)

    first = learning_path.complete_step(temp_db, user_id, path_id, 1, score=60, now=T0)
    again = learning_path.complete_step(temp_db, user_id, path_id, 1, score=90, now=T0 + timedelta(hours=1))

    assert first["xpEarned"] == 50 + 50
    assert again["xpEarned"] == 0
    assert again["milestones"] == []
    step = again["progress"]["completedSteps"][0]
    assert step["attempts"] == 2
    assert step["score"] == 90
    assert again["progress"]["progressPercentage"] == 25


def test_client_reported_xp_is_capped_at_step_reward(temp_db, make_user, make_path):
    user_id = make_user()
    path_id = make_path()
    learning_path.enroll(temp_db, user_id, path_id, now=T0)

    result = learning_path.complete_step(temp_db, user_id, path_id, 1, xp_earned=10_000_000, now=T0)

    assert result["xpEarned"] == 50 + 50
    assert result["progress"]["completedSteps"][0]["xpEarned"] == 50
    with temp_db.read() as repo:
        user = repo.get_user_document(user_id)
    assert user["gamification"]["totalXp"] == 100
    assert user["gamification"]["level"] == 1

    low = learning_path.complete_step(temp_db, user_id, path_id, 2, xp_earned=5, now=T0 + timedelta(minutes=1))
    assert low["progress"]["completedSteps"][1]["xpEarned"] == 5
    assert low["xpEarned"] == 50 + 100


def test_shrinking_a_path_keeps_progress_within_bounds(temp_db, make_user, make_path):
    user_id = make_user()
    path_id = make_path()
    learning_path.enroll(temp_db, user_id, path_id, now=T0)
    for number in range(1, 4):
        learning_path.complete_step(temp_db, user_id, path_id, number, now=T0 + timedelta(minutes=number))

    learning_path.update_path(temp_db, path_id, {"steps": FOUR_STEPS[:2]})
    result = learning_path.complete_step(temp_db, user_id, path_id, 1, now=T0 + timedelta(hours=1))

    assert result["progress"]["progressPercentage"] == 100
    assert result["progress"]["completed"] is True
    assert [m["type"] for m in result["milestones"]] == ["completion"]


def test_engine_ignores_steps_missing_from_the_path():
    progress = PathProgress(user_id="u1", path_id=1, total_steps=2)
    for number in (1, 3, 4):
        complete_step(progress, number, now=T0)
    assert progress.progress_percentage == 100

    progress = PathProgress(user_id="u1", path_id=1, total_steps=2)
    for number in (3, 4):
        complete_step(progress, number, now=T0, step_numbers=[1, 2])
    assert progress.progress_percentage == 0
    complete_step(progress, 1, now=T0, step_numbers=[1, 2])
    assert progress.progress_percentage == 50


def test_enrollment_rules(temp_db, make_user, make_path):
    user_id = make_user()
    path_id = make_path()
    draft_id = make_path(title="Draft Path", isPublished=False)

    enrollment = learning_path.enroll(temp_db, user_id, path_id, now=T0)
    assert enrollment["status"] == "enrolled"
    assert enrollment["progressPercentage"] == 0

    with pytest.raises(ConflictError) as excinfo:
        learning_path.enroll(temp_db, user_id, path_id, now=T0)
    assert excinfo.value.status_code == 400
    with pytest.raises(ForbiddenError):
        learning_path.enroll(temp_db, user_id, draft_id, now=T0)
    with pytest.raises(NotFoundError):
        learning_path.complete_step(temp_db, make_user(), path_id, 1, now=T0)


def test_status_transitions(temp_db, make_user, make_path):
    user_id = make_user()
    path_id = make_path()
    learning_path.enroll(temp_db, user_id, path_id, now=T0)

    paused = learning_path.update_enrollment_status(temp_db, user_id, path_id, "paused", now=T0)
    assert paused["status"] == "paused"
    dropped = learning_path.update_enrollment_status(temp_db, user_id, path_id, "dropped", now=T0)
    assert dropped["status"] == "dropped"

    with pytest.raises(PreconditionError):
        learning_path.update_enrollment_status(temp_db, user_id, path_id, "in-progress", now=T0)
    with pytest.raises(PreconditionError):
        learning_path.complete_step(temp_db, user_id, path_id, 1, now=T0)


def test_create_path_validates_steps_and_challenges(temp_db, make_path):
    with pytest.raises(InputValidationError):
        make_path(steps=[{"stepNumber": 1, "prerequisites": [1]}])
    with pytest.raises(InputValidationError):
        make_path(steps=[{"stepNumber": 1, "type": "challenge", "challengeId": 999}])
    with pytest.raises(InputValidationError):
        make_path(steps=[])


def test_path_listing_and_user_paths(temp_db, make_user, make_path):
    user_id = make_user()
    path_id = make_path()
    make_path(title="Statistics 101", category="mathematics")
    learning_path.enroll(temp_db, user_id, path_id, now=T0)

    listed = learning_path.list_paths(temp_db, category="programming")
    assert [p["title"] for p in listed["learningPaths"]] == ["Python Foundations"]

    mine = learning_path.user_paths(temp_db, user_id)
    assert len(mine) == 1
    assert mine[0]["path"]["totalSteps"] == 4

    detail = learning_path.get_path(temp_db, path_id, user_id)
    assert detail["userProgress"]["status"] == "enrolled"


def test_path_leaderboard_and_analytics(temp_db, make_user, make_path):
    fast = make_user()
    slow = make_user()
    path_id = make_path(steps=[{"stepNumber": 1, "title": "Only step"}])
    for user_id, minutes in ((slow, 90), (fast, 30)):
        learning_path.enroll(temp_db, user_id, path_id, now=T0)
        learning_path.complete_step(
            temp_db, user_id, path_id, 1, score=100, time_spent=minutes * 60, now=T0 + timedelta(minutes=minutes)
        )

    board = learning_path.path_leaderboard(temp_db, path_id)
    assert [entry["userId"] for entry in board] == [fast, slow]
    assert board[0]["rank"] == 1

    stats = learning_path.analytics(temp_db, fast, path_id)
    assert stats["progressPercentage"] == 100
    assert stats["completedSteps"] == 1

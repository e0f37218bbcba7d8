import csv
import io
from datetime import timedelta

import pytest

import analytics
import challenges
from conftest import ALL_CORRECT, T0
from errors import InputValidationError, NotFoundError

LATER = T0 + timedelta(hours=2)


@pytest.fixture
def active_learner(temp_db, make_user, make_challenge):
    user_id = make_user("active")
    quiz = make_challenge()
    maths = make_challenge(title="Algebra Drill", category="mathematics", difficulty="intermediate")
    challenges.start_challenge(temp_db, user_id, quiz, now=T0)
    challenges.submit_challenge(temp_db, user_id, quiz, ALL_CORRECT, now=T0 + timedelta(minutes=5))
    challenges.start_challenge(temp_db, user_id, maths, now=T0 + timedelta(minutes=10))
    challenges.submit_challenge(temp_db, user_id, maths, ALL_CORRECT[:2], now=T0 + timedelta(minutes=15))
    return user_id


def test_dashboard_summarises_recent_activity(temp_db, active_learner):
    board = analytics.dashboard(temp_db, active_learner, timeframe=30, now=LATER)

    assert board["overview"]["challengesCompleted"] == 2
    assert board["overview"]["totalXp"] == 150 + 115
    assert board["challenges"]["totalChallenges"] == 2
    assert board["challenges"]["categoryBreakdown"] == {"programming": 1, "mathematics": 1}
    assert [item["title"] for item in board["recentActivity"]] == ["Algebra Drill", "Python Basics Quiz"]
    assert board["streakData"]["status"] == "active"
    assert board["goalsProgress"]["dailyGoal"] == 30
    assert board["goalsProgress"]["todayProgress"] == pytest.approx(10.0)
    assert board["performanceTrends"]["trend"] == "declining"


def test_dashboard_for_new_learner_is_empty(temp_db, make_user):
    user_id = make_user()
    board = analytics.dashboard(temp_db, user_id, now=LATER)
    assert board["challenges"]["totalChallenges"] == 0
    assert board["recentActivity"] == []
    assert board["streakData"]["status"] == "none"
    assert board["performanceTrends"]["trend"] == "insufficient-data"


def test_learning_analytics_filters_by_category(temp_db, active_learner):
    summary = analytics.learning(temp_db, active_learner, timeframe=90, category="mathematics", now=LATER)
    assert summary["totalChallenges"] == 1
    assert summary["averageScore"] == 50
    assert list(summary["categoryBreakdown"]) == ["mathematics"]
    assert summary["timeframe"] == 90


def test_comparison_modes(temp_db, active_learner, make_user):
    make_user("peer")
    result = analytics.comparison(temp_db, active_learner, "global", timeframe=30, now=LATER)
    assert result["cohortSize"] == 1
    assert result["metrics"]["challengesCompleted"]["difference"] == 2

    previous = analytics.comparison(temp_db, active_learner, "previous", timeframe=30, now=LATER)
    assert previous["metrics"]["averageScore"]["cohortAverage"] == 0

    with pytest.raises(InputValidationError):
        analytics.comparison(temp_db, active_learner, "everyone")
    with pytest.raises(InputValidationError):
        analytics.dashboard(temp_db, active_learner, timeframe=0)


def test_system_overview_counts(temp_db, active_learner):
    overview = analytics.system(temp_db, timeframe=30, now=LATER)
    assert overview["users"]["total"] == 1
    assert overview["challenges"]["total"] == 2
    assert overview["challenges"]["completions"] == 2
    assert overview["challenges"]["completionRate"] == 100


def test_export_json_and_csv(temp_db, active_learner):
    exported = analytics.export_data(temp_db, active_learner, now=LATER)
    assert exported["profile"]["username"] == "active"
    assert len(exported["challengeHistory"]) == 2
    assert exported["chatSessions"] == []
    assert "pw_hash" not in exported["profile"]

    rows = list(csv.DictReader(io.StringIO(analytics.export_csv(temp_db, active_learner))))
    assert len(rows) == 2
    assert {row["challengeTitle"] for row in rows} == {"Python Basics Quiz", "Algebra Drill"}
    assert set(rows[0]) == set(analytics.EXPORT_COLUMNS)

    with pytest.raises(NotFoundError):
        analytics.export_csv(temp_db, "missing-user")

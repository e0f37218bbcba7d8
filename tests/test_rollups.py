from datetime import datetime, timedelta, timezone

from engines import rollups
from engines.rollups import AttemptRecord

BASE = datetime(2024, 5, 6, 8, 30, tzinfo=timezone.utc)


def _record(idx, category="programming", percentage=80, time_spent=300, estimated=10, hours=0, **kwargs):
    moment = BASE + timedelta(hours=hours)
    return AttemptRecord(
        attempt_id=idx,
        challenge_id=idx,
        category=category,
        difficulty=kwargs.pop("difficulty", "beginner"),
        percentage=percentage,
        time_spent=time_spent,
        estimated_time=estimated,
        created_at=moment,
        completed_at=moment,
        completed=True,
        xp_earned=kwargs.pop("xp", 100),
        bonus_xp=kwargs.pop("bonus", 0),
        **kwargs,
    )


def test_empty_inputs_produce_neutral_results():
    assert rollups.performance_trend([]) == {"trend": "insufficient-data", "change": 0}
    assert rollups.performance_trend([90]) == {"trend": "insufficient-data", "change": 0}
    assert rollups.learning_patterns([]) == {}
    summary = rollups.learning_summary([])
    assert summary["totalChallenges"] == 0
    assert summary["averageScore"] == 0.0
    assert summary["improvementAreas"] == []


def test_performance_trend_compares_halves():
    assert rollups.performance_trend([50, 60, 80, 90])["trend"] == "improving"
    assert rollups.performance_trend([90, 80, 60, 50])["trend"] == "declining"
    assert rollups.performance_trend([70, 72, 71, 73]) == {"trend": "stable", "change": 1.0}


def test_category_breakdown_averages():
    records = [_record(1, percentage=60), _record(2, percentage=100), _record(3, category=None, percentage=40)]
    breakdown = rollups.category_breakdown(records)
    assert breakdown["programming"]["count"] == 2
    assert breakdown["programming"]["averageScore"] == 80
    assert breakdown["unknown"]["averageScore"] == 40


def test_improvement_areas_need_three_weak_attempts():
    records = [_record(i, category="mathematics", percentage=45) for i in range(3)]
    records += [_record(10 + i, category="science", percentage=65) for i in range(3)]
    records += [_record(20, category="arts", percentage=10)]

    areas = rollups.improvement_areas(records)
    assert [a["area"] for a in areas] == ["mathematics", "science"]
    assert areas[0]["priority"] == "high"
    assert areas[1]["priority"] == "medium"


def test_achievements_count_perfect_and_fast_completions():
    records = [
        _record(1, percentage=100, time_spent=120, estimated=10),
        _record(2, percentage=100, time_spent=590, estimated=10),
        _record(3, percentage=70, time_spent=700, estimated=10),
    ]
    found = {item["type"]: item for item in rollups.achievements(records)}
    assert found["perfect_scores"]["count"] == 2
    assert found["perfect_scores"]["description"] == "Achieved 2 perfect scores"
    assert found["fast_completions"]["description"] == "Completed 1 challenge faster than expected"


def test_learning_patterns_prefer_most_common_hour():
    records = [_record(1, hours=0), _record(2, hours=24), _record(3, hours=5, time_spent=601)]
    patterns = rollups.learning_patterns(records)
    assert patterns["preferredStudyHour"] == 8
    assert patterns["totalSessions"] == 3
    assert patterns["averageSessionLength"] == 400


def test_daily_and_weekly_buckets():
    records = [_record(1, hours=0, bonus=20), _record(2, hours=2), _record(3, hours=24 * 7)]
    daily = rollups.daily_activity(records)
    assert daily["2024-05-06"] == {"challenges": 2, "totalTime": 600, "totalXp": 220}
    weekly = rollups.weekly_progress(records)
    assert sorted(weekly) == [19, 20]


def test_streak_status_states():
    now = BASE
    assert rollups.streak_status(0, 0, None, now)["status"] == "none"
    assert rollups.streak_status(3, 5, now - timedelta(hours=3), now)["status"] == "active"
    assert rollups.streak_status(3, 5, now - timedelta(hours=30), now)["status"] == "at-risk"
    assert rollups.streak_status(3, 5, now - timedelta(days=3), now)["status"] == "broken"


def test_goals_progress_caps_at_goal():
    progress = rollups.goals_progress(20, [600, 900])
    assert progress == {"dailyGoal": 20, "todayProgress": 20, "percentage": 100, "achieved": True}
    partial = rollups.goals_progress(None, [900])
    assert partial["dailyGoal"] == 30
    assert partial["percentage"] == 50
    assert partial["achieved"] is False


def test_compare_cohort_reports_difference():
    result = rollups.compare_cohort({"averageScore": 80.0}, [{"averageScore": 70.0}, {"averageScore": 60.0}])
    assert result["cohortSize"] == 2
    assert result["metrics"]["averageScore"] == {"user": 80.0, "cohortAverage": 65.0, "difference": 15.0}

from datetime import timedelta
from unittest.mock import patch

import pytest

from challenges import start_challenge, submit_challenge
from conftest import ALL_CORRECT, T0
from engines.badges import (
    AverageScore,
    BadgeAwarder,
    ChallengesCompleted,
    InvalidCriterionError,
    StreakDays,
    criteria_from_mapping,
    criteria_to_mapping,
)


def _badge(repo, name, criteria, xp_bonus=0, **availability):
    return repo.create_badge(
        {
            "name": name,
            "criteria": criteria,
            "rewards": {"xpBonus": xp_bonus},
            "availability": {"isActive": True, **availability},
        }
    )


def test_criteria_parsing_orders_and_skips_unset_thresholds():
    criteria = criteria_from_mapping(
        {"averageScore": 85, "challengesCompleted": 10, "challengeCategory": "programming", "streakDays": 0}
    )
    assert [type(c) for c in criteria] == [ChallengesCompleted, AverageScore]
    assert criteria[0].category == "programming"
    assert criteria_to_mapping(criteria) == {
        "challengesCompleted": 10,
        "challengeCategory": "programming",
        "averageScore": 85.0,
    }
    assert criteria_from_mapping({}) == ()
    assert criteria_from_mapping({"streakDays": 7}) == (StreakDays(7),)


@pytest.mark.parametrize(
    "raw",
    [{"daysOnline": 3}, {"streakDays": -1}, {"totalXpRequired": "lots"}, {"perfectScores": True}],
)
def test_criteria_parsing_rejects_bad_definitions(raw):
    with pytest.raises(InvalidCriterionError):
        criteria_from_mapping(raw)


def test_sweep_awards_once_and_skips_held_badges(temp_db, make_user):
    user_id = make_user()
    with temp_db.transaction() as repo:
        badge_id = _badge(repo, "Welcome", {}, xp_bonus=40)

    awarder = BadgeAwarder()
    with temp_db.transaction() as repo:
        first = awarder.check_and_award(repo, user_id, T0)
    with temp_db.transaction() as repo:
        second = awarder.check_and_award(repo, user_id, T0 + timedelta(minutes=5))
        held = repo.user_badges(user_id)
        state = repo.load_gamification(user_id)
        badge = repo.get_badge(badge_id)

    assert [b.id for b in first.badges] == [badge_id]
    assert first.total_xp_bonus == 40
    assert second.awarded == []
    assert len(held) == 1
    assert state.total_xp == 40
    assert badge["total_earned"] == 1
    assert badge["unique_earners"] == 1


def test_unmet_criteria_are_not_awarded(temp_db, make_user):
    user_id = make_user()
    with temp_db.transaction() as repo:
        _badge(repo, "Streak Master", {"streakDays": 7})
        _badge(repo, "Rising Star", {"totalXpRequired": 1000})
        result = BadgeAwarder().check_and_award(repo, user_id, T0)
    assert result.awarded == []
    assert result.failures == []


def test_unreadable_badge_does_not_block_the_sweep(temp_db, make_user):
    user_id = make_user()
    with temp_db.transaction() as repo:
        broken = _badge(repo, "Broken", {"mysteryMetric": 5})
        good = _badge(repo, "Welcome", {})
        result = BadgeAwarder().check_and_award(repo, user_id, T0)
        held = {row["id"] for row in repo.user_badges(user_id)}

    assert [b.id for b in result.badges] == [good]
    assert [badge_id for badge_id, _ in result.failures] == [broken]
    assert held == {good}


def test_failing_grant_is_rolled_back_to_its_savepoint(temp_db, make_user):
    user_id = make_user()
    with temp_db.transaction() as repo:
        doomed = _badge(repo, "Doomed", {}, xp_bonus=500)
        fine = _badge(repo, "Fine", {}, xp_bonus=20)

    with temp_db.transaction() as repo:
        real_record = repo.record_badge_award

        def _record(badge_id, earned_at):
            if badge_id == doomed:
                raise RuntimeError("statistics update failed")
            return real_record(badge_id, earned_at)

        with patch.object(repo, "record_badge_award", side_effect=_record):
            result = BadgeAwarder().check_and_award(repo, user_id, T0)

    with temp_db.read() as repo:
        held = {row["id"] for row in repo.user_badges(user_id)}
        state = repo.load_gamification(user_id)

    assert held == {fine}
    assert state.total_xp == 20
    assert result.failures == [(doomed, "statistics update failed")]


def test_availability_window_and_recipient_cap(temp_db, make_user):
    first = make_user()
    second = make_user()
    with temp_db.transaction() as repo:
        _badge(repo, "Future", {}, startDate=(T0 + timedelta(days=3)).isoformat())
        _badge(repo, "Expired", {}, endDate=(T0 - timedelta(days=1)).isoformat())
        capped = _badge(repo, "Only One", {}, maxRecipients=1)

    awarder = BadgeAwarder()
    with temp_db.transaction() as repo:
        got_first = awarder.check_and_award(repo, first, T0)
    with temp_db.transaction() as repo:
        got_second = awarder.check_and_award(repo, second, T0)

    assert [b.id for b in got_first.badges] == [capped]
    assert got_second.awarded == []


def test_category_filtered_completion_criteria(temp_db, make_user, make_challenge):
    user_id = make_user()
    maths = make_challenge(title="Fractions", category="mathematics")
    with temp_db.transaction() as repo:
        prog_badge = _badge(repo, "Coder", {"challengesCompleted": 1, "challengeCategory": "programming"})
        math_badge = _badge(repo, "Mathlete", {"challengesCompleted": 1, "challengeCategory": "mathematics"})

    start_challenge(temp_db, user_id, maths, now=T0)
    result = submit_challenge(temp_db, user_id, maths, ALL_CORRECT, now=T0 + timedelta(minutes=2))

    awarded = {badge["id"] for badge in result["newBadges"]}
    assert math_badge in awarded
    assert prog_badge not in awarded

import catalog
import challenges
import gamification
import learning_path
from conftest import T0


def test_bundled_catalog_is_valid():
    catalog.validate_catalog()
    names = [badge["name"] for badge in catalog.DEFAULT_BADGES]
    assert len(names) == len(set(names)) == 10


def test_seeding_is_idempotent(temp_db):
    first = catalog.seed_catalog(temp_db)
    second = catalog.seed_catalog(temp_db)

    assert first == {"badges": 10, "challenges": 3, "learningPaths": 1}
    assert second == {"badges": 0, "challenges": 0, "learningPaths": 0}
    assert len(gamification.list_badges(temp_db)) == 10


def test_badges_only_seed_skips_content(temp_db):
    created = catalog.seed_catalog(temp_db, with_content=False)
    assert created == {"badges": 10, "challenges": 0, "learningPaths": 0}
    assert challenges.list_challenges(temp_db)["challenges"] == []


def test_seeded_path_links_starter_challenges(temp_db, make_user):
    catalog.seed_catalog(temp_db)
    listed = learning_path.list_paths(temp_db)["learningPaths"]
    assert len(listed) == 1

    path = learning_path.get_path(temp_db, listed[0]["id"])
    linked = [step["challengeId"] for step in path["steps"] if step.get("type") == "challenge"]
    assert linked
    assert all(challenge_id is not None for challenge_id in linked)

    user_id = make_user()
    enrollment = learning_path.enroll(temp_db, user_id, listed[0]["id"], now=T0)
    assert enrollment["status"] == "enrolled"

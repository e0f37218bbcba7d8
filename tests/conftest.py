import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


QUIZ_CHALLENGE = {
    "title": "Python Basics Quiz",
    "description": "Variables, types and control flow.",
    "type": "quiz",
    "category": "programming",
    "difficulty": "beginner",
    "estimatedTime": 10,
    "tags": ["python"],
    "content": {
        "questions": [
            {"id": "q1", "type": "multiple-choice", "question": "Immutable?",
             "options": ["list", "tuple"], "correctAnswer": "tuple", "points": 1},
            {"id": "q2", "type": "true-false", "question": "Indentation matters?",
             "correctAnswer": True, "points": 1},
            {"id": "q3", "type": "short-answer", "question": "Function keyword?",
             "correctAnswer": "def", "points": 2},
        ]
    },
    "scoring": {
        "maxPoints": 4,
        "passingScore": 3,
        "xpReward": 100,
        "bonusXp": {"perfectScore": 25, "fastCompletion": 15, "firstAttempt": 10},
    },
    "isPublished": True,
}

ALL_CORRECT = [
    {"questionId": "q1", "userAnswer": "tuple"},
    {"questionId": "q2", "userAnswer": True},
    {"questionId": "q3", "userAnswer": "def"},
]


@pytest.fixture
def temp_db(tmp_path):
    import db

    database = db.Database(str(tmp_path / "test.db"), max_connections=4)
    database.init()
    yield database
    database.close()


@pytest.fixture
def settings(tmp_path):
    from env_validation import Settings

    return Settings(
        db_path=str(tmp_path / "test.db"),
        app_env="test",
        llm_url="http://llm.test/v1/chat/completions",
        llm_api_key="test-key",
        model_id="test-model",
        seed_catalog=False,
    )


@pytest.fixture
def make_user(temp_db, settings):
    import accounts

    counter = {"n": 0}

    def _make(username=None, *, role="learner", password="secret123", now=None):
        counter["n"] += 1
        name = username or f"learner{counter['n']}"
        result = accounts.register(
            temp_db, settings, username=name, email=f"{name}@example.com", password=password, now=now or T0
        )
        user_id = result["user"]["id"]
        if role != "learner":
            with temp_db.transaction() as repo:
                repo.update_user(user_id, role=role)
        return user_id

    return _make


@pytest.fixture
def make_challenge(temp_db):
    def _make(**overrides):
        data = {**QUIZ_CHALLENGE, **overrides}
        with temp_db.transaction() as repo:
            return repo.create_challenge(data, None)

    return _make

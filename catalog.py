"""Default badge catalogue and starter content seeded at startup."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List

from db import Database
from engines.badges import criteria_from_mapping
from engines.path_progress import parse_steps
from engines.scoring import parse_content

logger = logging.getLogger(__name__)

_SEED_LOCK = threading.Lock()


def _badge(name, description, icon, rarity, category, badge_type, criteria, xp_bonus) -> Dict[str, Any]:
    return {
        "name": name,
        "description": description,
        "icon": icon,
        "rarity": rarity,
        "category": category,
        "type": badge_type,
        "criteria": criteria,
        "rewards": {"xpBonus": xp_bonus},
        "availability": {"isActive": True},
    }


DEFAULT_BADGES: List[Dict[str, Any]] = [
    _badge("First Steps", "Complete your first challenge", "🎯", "common", "milestone", "progress",
           {"challengesCompleted": 1}, 50),
    _badge("Quick Learner", "Complete 5 challenges", "⚡", "uncommon", "achievement", "progress",
           {"challengesCompleted": 5}, 100),
    _badge("Perfect Score", "Score 100% on a challenge", "💯", "rare", "achievement", "performance",
           {"perfectScores": 1}, 150),
    _badge("Streak Master", "Keep a 7-day learning streak", "🔥", "epic", "streak", "consistency",
           {"streakDays": 7}, 200),
    _badge("Knowledge Seeker", "Complete 50 challenges", "📚", "epic", "milestone", "progress",
           {"challengesCompleted": 50}, 500),
    _badge("Programming Prodigy", "Complete 20 programming challenges", "💻", "rare", "skill", "mastery",
           {"challengesCompleted": 20, "challengeCategory": "programming"}, 300),
    _badge("Rising Star", "Earn 1,000 total XP", "⭐", "uncommon", "milestone", "progress",
           {"totalXpRequired": 1000}, 100),
    _badge("XP Champion", "Earn 10,000 total XP", "🏆", "legendary", "milestone", "progress",
           {"totalXpRequired": 10000}, 1000),
    _badge("Dedicated Learner", "Spend 10 hours learning", "⏰", "rare", "learning", "time-based",
           {"totalTimeSpent": 600}, 250),
    _badge("Consistent Performer", "Keep an average score of 85% over 10 challenges", "📈", "epic",
           "achievement", "performance", {"challengesCompleted": 10, "averageScore": 85}, 300),
]

STARTER_CHALLENGES: List[Dict[str, Any]] = [
    {
        "title": "Python Basics Quiz",
        "description": "Check your understanding of Python variables, types and control flow.",
        "type": "quiz",
        "category": "programming",
        "difficulty": "beginner",
        "estimatedTime": 10,
        "tags": ["python", "basics"],
        "content": {
            "questions": [
                {
                    "id": "q1",
                    "type": "multiple-choice",
                    "question": "Which built-in type is immutable?",
                    "options": ["list", "dict", "tuple", "set"],
                    "correctAnswer": "tuple",
                    "explanation": "Tuples cannot be changed after creation.",
                    "points": 1,
                },
                {
                    "id": "q2",
                    "type": "true-false",
                    "question": "Indentation is part of Python's syntax.",
                    "correctAnswer": True,
                    "points": 1,
                },
                {
                    "id": "q3",
                    "type": "short-answer",
                    "question": "What keyword defines a function?",
                    "correctAnswer": "def",
                    "points": 2,
                },
            ]
        },
        "scoring": {
            "maxPoints": 4,
            "passingScore": 3,
            "xpReward": 100,
            "bonusXp": {"perfectScore": 25, "fastCompletion": 15, "firstAttempt": 10},
        },
    },
    {
        "title": "Sum Two Numbers",
        "description": "Read two integers and print their sum.",
        "type": "coding",
        "category": "programming",
        "difficulty": "beginner",
        "estimatedTime": 15,
        "tags": ["python", "io"],
        "content": {
            "codingChallenge": {
                "problemStatement": "Read two integers separated by a space and print their sum.",
                "starterCode": {"python": "a, b = map(int, input().split())\n"},
                "testCases": [
                    {"input": "1 2", "expectedOutput": "3", "points": 1},
                    {"input": "10 -4", "expectedOutput": "6", "points": 1, "isHidden": True},
                ],
            }
        },
        "scoring": {"maxPoints": 2, "passingScore": 2, "xpReward": 150, "bonusXp": {"firstAttempt": 20}},
    },
    {
        "title": "Fractions Warm-up",
        "description": "Simplify and compare fractions.",
        "type": "quiz",
        "category": "mathematics",
        "difficulty": "beginner",
        "estimatedTime": 8,
        "tags": ["fractions"],
        "content": {
            "questions": [
                {"id": "q1", "type": "fill-blank", "question": "2/4 simplified is __", "correctAnswer": "1/2", "points": 1},
                {"id": "q2", "type": "multiple-choice", "question": "Which is larger?",
                 "options": ["1/3", "2/5"], "correctAnswer": "2/5", "points": 1},
            ]
        },
        "scoring": {"maxPoints": 2, "passingScore": 1, "xpReward": 80, "bonusXp": {"perfectScore": 20}},
    },
]

STARTER_PATHS: List[Dict[str, Any]] = [
    {
        "title": "Python Foundations",
        "description": "A short path from first concepts to your first program.",
        "category": "programming",
        "difficulty": "beginner",
        "estimatedDuration": 2,
        "tags": ["python"],
        "steps": [
            {"stepNumber": 1, "title": "What is Python?", "type": "reading", "xpReward": 25},
            {"stepNumber": 2, "title": "Python Basics Quiz", "type": "challenge",
             "challengeTitle": "Python Basics Quiz", "xpReward": 50, "prerequisites": [1]},
            {"stepNumber": 3, "title": "Input and output", "type": "video", "xpReward": 25},
            {"stepNumber": 4, "title": "Sum Two Numbers", "type": "challenge",
             "challengeTitle": "Sum Two Numbers", "xpReward": 75, "prerequisites": [2, 3]},
        ],
    },
]


def validate_catalog() -> None:
    """Parse every bundled definition; raises ``ValueError`` on a broken entry."""
    for badge in DEFAULT_BADGES:
        criteria_from_mapping(badge["criteria"])
    for challenge in STARTER_CHALLENGES:
        parse_content(challenge["type"], challenge["content"])
    for path in STARTER_PATHS:
        parse_steps(path["steps"])


def seed_catalog(database: Database, *, with_content: bool = True) -> Dict[str, int]:
    """Insert missing badges (and starter content) by name; existing rows are left alone."""
    created = {"badges": 0, "challenges": 0, "learningPaths": 0}
    with _SEED_LOCK:
        with database.transaction() as repo:
            for badge in DEFAULT_BADGES:
                if repo.get_badge_by_name(badge["name"]) is None:
                    repo.create_badge(badge)
                    created["badges"] += 1
            if with_content:
                for challenge in STARTER_CHALLENGES:
                    if repo.get_challenge_by_title(challenge["title"]) is None:
                        repo.create_challenge({**challenge, "isPublished": True}, None)
                        created["challenges"] += 1
                for path in STARTER_PATHS:
                    if repo.get_path_by_title(path["title"]) is not None:
                        continue
                    steps = []
                    for step in path["steps"]:
                        item = {k: v for k, v in step.items() if k != "challengeTitle"}
                        if step.get("challengeTitle"):
                            row = repo.get_challenge_by_title(step["challengeTitle"])
                            item["challengeId"] = row["id"] if row is not None else None
                        steps.append(item)
                    normalized = [s.as_dict() for s in parse_steps(steps)]
                    repo.create_path({**path, "steps": normalized, "isPublished": True}, None)
                    created["learningPaths"] += 1
    if any(created.values()):
        logger.info("Seeded catalogue: %s", created)
    return created

import asyncio
import json
from dataclasses import replace
from typing import Optional
from urllib.parse import urlencode
from unittest.mock import patch

import pytest

import app
import tutor
from conftest import ALL_CORRECT, QUIZ_CHALLENGE


async def _call_app(
    method: str,
    path: str,
    *,
    payload: Optional[dict] = None,
    query: Optional[dict] = None,
    token: Optional[str] = None,
):
    body = b""
    headers = [(b"host", b"testserver")]
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    if token:
        headers.append((b"authorization", f"Bearer {token}".encode()))
    query_string = urlencode(query or {}, doseq=True).encode()
    scope = {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.4"},
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": query_string,
        "headers": headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []

    async def receive():
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    await app.app(scope, receive, send)
    status = 500
    response_headers = {}
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
            response_headers = {k.decode(): v.decode() for k, v in message.get("headers", [])}
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    return status, response_headers, body_bytes


def _request(method: str, path: str, **kwargs) -> tuple[int, dict]:
    status, _, body = asyncio.run(_call_app(method, path, **kwargs))
    return status, json.loads(body.decode("utf-8") or "{}")


@pytest.fixture
def api(temp_db, settings):
    app.attach_services(app.app, database=temp_db, settings=settings, client=tutor.ChatClient(settings))
    return temp_db


def _login(name: str, password: str = "secret123") -> str:
    status, data = _request("POST", "/auth/login", payload={"email": f"{name}@example.com", "password": password})
    assert status == 200, data
    return data["data"]["token"]


def test_register_returns_created_envelope(api):
    status, data = _request(
        "POST",
        "/auth/register",
        payload={"username": "grace", "email": "grace@example.com", "password": "hopper42"},
    )
    assert status == 201
    assert data["success"] is True
    assert data["message"] == "User registered successfully"
    assert data["data"]["user"]["username"] == "grace"
    assert data["data"]["token"]

    status, profile = _request("GET", "/auth/profile", token=data["data"]["token"])
    assert status == 200
    assert profile["data"]["user"]["email"] == "grace@example.com"


def test_register_validation_errors_are_listed(api):
    status, data = _request(
        "POST", "/auth/register", payload={"username": "x", "email": "x@example.com", "password": "secret123"}
    )
    assert status == 400
    assert data["success"] is False
    assert data["message"] == "Validation failed"
    assert [item["field"] for item in data["errors"]] == ["username"]


def test_private_routes_require_token(api):
    status, data = _request("GET", "/auth/profile")
    assert status == 401
    assert data == {"success": False, "message": "Access denied. No token provided."}

    status, data = _request("GET", "/analytics/dashboard", token="not-a-real-token")
    assert status == 401
    assert data["success"] is False


def test_unknown_route_uses_envelope(api):
    status, data = _request("GET", "/no/such/route")
    assert status == 404
    assert data == {"success": False, "message": "Route not found"}


def test_admin_routes_reject_learners(api, make_user):
    make_user("learner")
    make_user("boss", role="admin")

    status, data = _request("POST", "/challenges", payload=QUIZ_CHALLENGE, token=_login("learner"))
    assert status == 403
    assert data["success"] is False

    status, data = _request("POST", "/challenges", payload=QUIZ_CHALLENGE, token=_login("boss"))
    assert status == 201
    assert data["data"]["challenge"]["title"] == "Python Basics Quiz"

    status, _ = _request("GET", "/analytics/system", token=_login("boss"))
    assert status == 200


def test_challenge_start_and_submit_flow(api, make_user, make_challenge):
    make_user("solver")
    challenge_id = make_challenge()
    token = _login("solver")

    status, public = _request("GET", f"/challenges/{challenge_id}")
    assert status == 200
    question = public["data"]["challenge"]["content"]["questions"][0]
    assert "correctAnswer" not in question

    status, started = _request("POST", f"/challenges/{challenge_id}/start", token=token)
    assert status == 200
    assert started["message"] == "Challenge started successfully"

    status, resumed = _request("POST", f"/challenges/{challenge_id}/start", token=token)
    assert resumed["message"] == "Resumed existing attempt"

    status, submitted = _request(
        "POST", f"/challenges/{challenge_id}/submit", payload={"responses": ALL_CORRECT}, token=token
    )
    assert status == 200
    assert submitted["data"]["xpEarned"] == 150

    status, again = _request(
        "POST", f"/challenges/{challenge_id}/submit", payload={"responses": ALL_CORRECT}, token=token
    )
    assert status == 400
    assert again["success"] is False

    status, stats = _request("GET", "/gamification/stats", token=token)
    assert stats["data"]["totalXp"] == 150


def test_prerequisite_failure_lists_missing_challenges(api, make_user, make_challenge):
    make_user("eager")
    first = make_challenge()
    second = make_challenge(title="Follow-up", prerequisites=[{"challengeId": first, "required": True}])

    status, data = _request("POST", f"/challenges/{second}/start", token=_login("eager"))
    assert status == 403
    assert data["missingPrerequisites"]


def test_error_detail_only_in_development(api, temp_db, settings):
    status, data = _request("GET", "/challenges/999")
    assert status == 404
    assert "error" not in data

    debug = replace(settings, app_env="development")
    app.attach_services(app.app, database=temp_db, settings=debug, client=tutor.ChatClient(debug))
    status, data = _request("GET", "/challenges/999")
    assert status == 404
    assert data["error"] == "Challenge not found"


def test_csv_export_sets_content_type(api, make_user):
    make_user("exporter")
    status, headers, body = asyncio.run(
        _call_app("GET", "/analytics/export", query={"format": "csv"}, token=_login("exporter"))
    )
    assert status == 200
    assert headers["content-type"].startswith("text/csv")
    assert "attachment" in headers["content-disposition"]
    assert body.decode("utf-8").splitlines()[0].startswith("attemptId")

    status, data = _request("GET", "/analytics/export", query={"format": "xml"}, token=_login("exporter"))
    assert status == 400


def test_leaderboard_is_public(api, make_user):
    make_user("visible")
    status, data = _request("GET", "/gamification/leaderboard", query={"type": "xp"})
    assert status == 200
    assert data["data"]["type"] == "xp"
    assert [entry["username"] for entry in data["data"]["leaderboard"]] == ["visible"]
    assert data["data"]["userRank"] is None


def test_chat_message_round_trip(api, make_user):
    make_user("chatty")
    token = _login("chatty")

    status, started = _request("POST", "/ai/chat/start", payload={"contextType": "general"}, token=token)
    assert status == 201
    session_id = started["data"]["session"]["sessionId"]

    with patch.object(tutor.ChatClient, "complete", return_value="Happy to help!") as complete:
        status, data = _request(
            "POST", f"/ai/chat/{session_id}/message", payload={"message": "Where do I start?"}, token=token
        )
    assert status == 200
    assert data["data"]["assistantMessage"]["content"] == "Happy to help!"
    assert complete.call_count == 1

    status, session = _request("GET", f"/ai/chat/{session_id}", token=token)
    assert len(session["data"]["session"]["messages"]) == 3

# app.py — Learning Buddy API
# - Bearer-token auth resolved once per request in middleware
# - Every response uses the {success, message?, data} envelope
# - Services receive the database/settings/LLM client held on app.state

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import accounts
import analytics
import catalog
import challenges
import gamification
import learning_path
from db import Database
from env_validation import Settings, load_settings, validate_environment
from errors import AuthError, InputValidationError, ServiceError
from schemas import (
    AttemptFeedbackBody,
    AwardBadgeBody,
    BadgeBody,
    BadgeUpdateBody,
    ChallengeBody,
    ChallengeUpdateBody,
    ChangePasswordBody,
    CompleteStepBody,
    EnrollmentStatusBody,
    ForgotPasswordBody,
    GeneratePathBody,
    LoginBody,
    MessageBody,
    MessageFeedbackBody,
    PathBody,
    PathUpdateBody,
    ProfileUpdateBody,
    RegisterBody,
    ResetPasswordBody,
    SettingsBody,
    StartChatBody,
    SubmitBody,
)
from tutor import ChatClient, ChatService

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


def attach_services(target: FastAPI, *, database: Database, settings: Settings, client: ChatClient) -> None:
    target.state.db = database
    target.state.settings = settings
    target.state.llm = client


@asynccontextmanager
async def _lifespan(application: FastAPI):
    try:
        validate_environment()
        settings = load_settings()
        database = Database(settings.db_path, settings.db_max_connections)
        database.init()
        if settings.seed_catalog:
            catalog.validate_catalog()
            catalog.seed_catalog(database)
        client = ChatClient(settings).open()
        logger.info("LLM endpoint %s | model %s", settings.llm_url, settings.model_id)
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    attach_services(application, database=database, settings=settings, client=client)
    try:
        yield
    finally:
        client.close()
        database.close()


app = FastAPI(title="Learning Buddy", version=APP_VERSION, lifespan=_lifespan)


# ---------- Envelope ----------
def _ok(data: Any = None, message: Optional[str] = None, status_code: int = 200):
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    body["data"] = data
    if status_code != 200:
        return JSONResponse(status_code=status_code, content=body)
    return body


def _debug(request: Request) -> bool:
    settings = getattr(request.app.state, "settings", None)
    return bool(settings is not None and settings.debug)


def _error(request: Request, status_code: int, message: str, exc: Optional[BaseException] = None, **extra: Any):
    body: Dict[str, Any] = {"success": False, "message": message}
    body.update(extra)
    if exc is not None and _debug(request):
        body["error"] = str(exc)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(ServiceError)
async def _service_error(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
    return _error(request, exc.status_code, exc.message, exc, **exc.details)


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == 404 and message == "Not Found":
        message = "Route not found"
    return _error(request, exc.status_code, message)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    errors = []
    for item in exc.errors():
        location = [str(part) for part in item.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(location), "message": item.get("msg", "Invalid value")})
    return _error(request, 400, "Validation failed", errors=errors)


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return _error(request, 500, "Server error", exc)


# ---------- Auth ----------
def _extract_token(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    candidate = header_value.strip()
    if not candidate:
        return None
    if " " in candidate:
        prefix, token = candidate.split(" ", 1)
        if prefix.lower() != "bearer":
            return None
        candidate = token.strip()
    return candidate or None


@app.middleware("http")
async def _resolve_user(request: Request, call_next):
    request.state.user = None
    request.state.token = None
    request.state.auth_error = None
    token = _extract_token(request.headers.get("authorization"))
    database = getattr(request.app.state, "db", None)
    if token and database is not None:
        request.state.token = token
        try:
            request.state.user = accounts.authenticate(database, token)
        except AuthError as exc:
            request.state.auth_error = exc
    return await call_next(request)


def _current_user(request: Request):
    user = getattr(request.state, "user", None)
    if user is None:
        raise getattr(request.state, "auth_error", None) or AuthError("Access denied. No token provided.")
    return user


def _optional_user_id(request: Request) -> Optional[str]:
    user = getattr(request.state, "user", None)
    return user["id"] if user is not None else None


def _admin(request: Request):
    user = _current_user(request)
    accounts.require_admin(user)
    return user


def _db(request: Request) -> Database:
    return request.app.state.db


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _chat(request: Request) -> ChatService:
    return ChatService(request.app.state.db, request.app.state.llm, request.app.state.settings)


@app.get("/")
def root():
    return _ok({"name": "Learning Buddy", "version": APP_VERSION})


@app.get("/health")
def health(request: Request):
    with _db(request).read() as repo:
        repo.count_users()
    return _ok({"status": "ok"})


@app.post("/auth/register")
def auth_register(request: Request, body: RegisterBody):
    result = accounts.register(
        _db(request),
        _settings(request),
        username=body.username,
        email=body.email,
        password=body.password,
        profile=body.profile.wire(exclude_none=True) if body.profile else None,
    )
    return _ok(result, "User registered successfully", status_code=201)


@app.post("/auth/login")
def auth_login(request: Request, body: LoginBody):
    result = accounts.login(_db(request), _settings(request), email=body.email, password=body.password)
    return _ok(result, "Login successful")


@app.post("/auth/logout")
def auth_logout(request: Request):
    _current_user(request)
    accounts.logout(_db(request), request.state.token)
    return _ok(None, "Logged out")


@app.get("/auth/profile")
def auth_profile(request: Request):
    user = _current_user(request)
    return _ok({"user": accounts.get_profile(_db(request), user["id"])})


@app.put("/auth/profile")
def auth_update_profile(request: Request, body: ProfileUpdateBody):
    user = _current_user(request)
    updated = accounts.update_profile(
        _db(request),
        user["id"],
        profile=body.profile.wire(exclude_none=True) if body.profile else None,
        learning_preferences=body.learning_preferences.wire(exclude_none=True) if body.learning_preferences else None,
    )
    return _ok({"user": updated}, "Profile updated successfully")


@app.post("/auth/change-password")
def auth_change_password(request: Request, body: ChangePasswordBody):
    user = _current_user(request)
    accounts.change_password(
        _db(request),
        user["id"],
        current_password=body.current_password,
        new_password=body.new_password,
        keep_token=request.state.token,
    )
    return _ok(None, "Password changed successfully")


@app.post("/auth/forgot-password")
def auth_forgot_password(request: Request, body: ForgotPasswordBody):
    token = accounts.request_password_reset(_db(request), _settings(request), body.email)
    data = {"resetToken": token} if token and _debug(request) else None
    return _ok(data, "If an account exists for this email, a password reset link has been sent")


@app.post("/auth/reset-password")
def auth_reset_password(request: Request, body: ResetPasswordBody):
    accounts.reset_password(_db(request), body.token, body.password)
    return _ok(None, "Password has been reset")


@app.put("/auth/settings")
def auth_settings(request: Request, body: SettingsBody):
    user = _current_user(request)
    merged = accounts.update_settings(_db(request), user["id"], body.wire(exclude_none=True))
    return _ok({"settings": merged}, "Settings updated successfully")


@app.delete("/auth/account")
def auth_delete_account(request: Request):
    user = _current_user(request)
    accounts.delete_account(_db(request), user["id"])
    return _ok(None, "Account deleted successfully")


@app.get("/auth/stats")
def auth_stats(request: Request):
    user = _current_user(request)
    return _ok(accounts.user_stats(_db(request), user["id"]))


# ---------- Challenges ----------
@app.get("/challenges")
def challenges_list(
    request: Request,
    category: Optional[str] = None,
    difficulty: Optional[str] = None,
    challenge_type: Optional[str] = Query(default=None, alias="type"),
    search: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
):
    result = challenges.list_challenges(
        _db(request),
        category=category,
        difficulty=difficulty,
        challenge_type=challenge_type,
        search=search,
        page=page,
        limit=limit,
    )
    return _ok(result)


@app.get("/challenges/recommendations")
def challenges_recommendations(request: Request, limit: int = Query(default=5, ge=1, le=50)):
    user = _current_user(request)
    return _ok({"challenges": challenges.recommend(_db(request), user["id"], limit)})


@app.get("/challenges/history")
def challenges_history(
    request: Request, page: int = Query(default=1, ge=1), limit: int = Query(default=20, ge=1, le=100)
):
    user = _current_user(request)
    return _ok(challenges.attempt_history(_db(request), user["id"], page, limit))


@app.post("/challenges/attempts/{attempt_id}/feedback")
def challenges_feedback(request: Request, attempt_id: int, body: AttemptFeedbackBody):
    user = _current_user(request)
    attempt = challenges.submit_feedback(
        _db(request),
        user["id"],
        attempt_id,
        rating=body.rating,
        difficulty_rating=body.difficulty_rating,
        comment=body.comment,
    )
    return _ok({"attempt": attempt}, "Feedback recorded")


@app.get("/challenges/{challenge_id}")
def challenges_get(request: Request, challenge_id: int):
    challenge = challenges.get_challenge(_db(request), challenge_id, _optional_user_id(request))
    return _ok({"challenge": challenge})


@app.post("/challenges/{challenge_id}/start")
def challenges_start(request: Request, challenge_id: int):
    user = _current_user(request)
    result = challenges.start_challenge(_db(request), user["id"], challenge_id)
    message = "Resumed existing attempt" if result["resumed"] else "Challenge started successfully"
    return _ok(result, message)


@app.post("/challenges/{challenge_id}/submit")
def challenges_submit(request: Request, challenge_id: int, body: SubmitBody):
    user = _current_user(request)
    result = challenges.submit_challenge(
        _db(request), user["id"], challenge_id, body.responses, hints_used=body.hints_used
    )
    return _ok(result, "Challenge submitted successfully")


@app.post("/challenges/{challenge_id}/abandon")
def challenges_abandon(request: Request, challenge_id: int):
    user = _current_user(request)
    return _ok({"attempt": challenges.abandon_challenge(_db(request), user["id"], challenge_id)}, "Attempt abandoned")


@app.post("/challenges")
def challenges_create(request: Request, body: ChallengeBody):
    user = _admin(request)
    challenge = challenges.create_challenge(_db(request), user["id"], body.wire())
    return _ok({"challenge": challenge}, "Challenge created successfully", status_code=201)


@app.put("/challenges/{challenge_id}")
def challenges_update(request: Request, challenge_id: int, body: ChallengeUpdateBody):
    _admin(request)
    challenge = challenges.update_challenge(_db(request), challenge_id, body.wire(exclude_none=True))
    return _ok({"challenge": challenge}, "Challenge updated successfully")


@app.delete("/challenges/{challenge_id}")
def challenges_delete(request: Request, challenge_id: int):
    _admin(request)
    challenges.delete_challenge(_db(request), challenge_id)
    return _ok(None, "Challenge deleted successfully")


# ---------- Gamification ----------
@app.get("/gamification/badges")
def gamification_badges(
    request: Request,
    category: Optional[str] = None,
    rarity: Optional[str] = None,
    badge_type: Optional[str] = Query(default=None, alias="type"),
):
    badges = gamification.list_badges(
        _db(request), category=category, rarity=rarity, badge_type=badge_type, user_id=_optional_user_id(request)
    )
    return _ok({"badges": badges})


@app.get("/gamification/my-badges")
def gamification_my_badges(request: Request):
    user = _current_user(request)
    return _ok(gamification.user_badges(_db(request), user["id"]))


@app.get("/gamification/stats")
def gamification_stats(request: Request):
    user = _current_user(request)
    return _ok(gamification.stats(_db(request), user["id"]))


@app.get("/gamification/leaderboard")
def gamification_leaderboard(
    request: Request,
    kind: str = Query(default="xp", alias="type"),
    limit: int = Query(default=10, ge=1, le=100),
):
    return _ok(gamification.leaderboard(_db(request), kind, limit, _optional_user_id(request)))


@app.post("/gamification/check-badges")
def gamification_check_badges(request: Request):
    user = _current_user(request)
    result = gamification.check_badges(_db(request), user["id"])
    count = len(result["newBadges"])
    message = f"Earned {count} new badge{'s' if count != 1 else ''}" if count else "No new badges earned"
    return _ok(result, message)


@app.get("/gamification/badges/{badge_id}")
def gamification_badge(request: Request, badge_id: int):
    return _ok({"badge": gamification.get_badge(_db(request), badge_id)})


@app.post("/gamification/badges")
def gamification_create_badge(request: Request, body: BadgeBody):
    _admin(request)
    badge = gamification.create_badge(_db(request), body.wire())
    return _ok({"badge": badge}, "Badge created successfully", status_code=201)


@app.put("/gamification/badges/{badge_id}")
def gamification_update_badge(request: Request, badge_id: int, body: BadgeUpdateBody):
    _admin(request)
    badge = gamification.update_badge(_db(request), badge_id, body.wire(exclude_unset=True))
    return _ok({"badge": badge}, "Badge updated successfully")


@app.post("/gamification/badges/{badge_id}/award")
def gamification_award_badge(request: Request, badge_id: int, body: AwardBadgeBody):
    _admin(request)
    result = gamification.award_badge(_db(request), badge_id, body.user_id)
    return _ok(result, "Badge awarded successfully")


# ---------- Learning paths ----------
@app.get("/learning-paths")
def paths_list(
    request: Request,
    category: Optional[str] = None,
    difficulty: Optional[str] = None,
    search: Optional[str] = None,
    sort: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
):
    result = learning_path.list_paths(
        _db(request),
        category=category,
        difficulty=difficulty,
        search=search,
        sort=sort,
        page=page,
        limit=limit,
        user_id=_optional_user_id(request),
    )
    return _ok(result)


@app.get("/learning-paths/my-paths")
def paths_mine(request: Request, status: Optional[str] = None):
    user = _current_user(request)
    return _ok({"enrollments": learning_path.user_paths(_db(request), user["id"], status)})


@app.get("/learning-paths/{path_id}")
def paths_get(request: Request, path_id: int):
    return _ok({"learningPath": learning_path.get_path(_db(request), path_id, _optional_user_id(request))})


@app.post("/learning-paths/{path_id}/enroll")
def paths_enroll(request: Request, path_id: int):
    user = _current_user(request)
    enrollment = learning_path.enroll(_db(request), user["id"], path_id)
    return _ok({"enrollment": enrollment}, "Successfully enrolled in learning path", status_code=201)


@app.post("/learning-paths/{path_id}/steps/{step_number}/complete")
def paths_complete_step(request: Request, path_id: int, step_number: int, body: Optional[CompleteStepBody] = None):
    user = _current_user(request)
    body = body or CompleteStepBody()
    result = learning_path.complete_step(
        _db(request),
        user["id"],
        path_id,
        step_number,
        score=body.score,
        time_spent=body.time_spent,
        xp_earned=body.xp_earned,
    )
    return _ok(result, "Step completed successfully")


@app.get("/learning-paths/{path_id}/leaderboard")
def paths_leaderboard(request: Request, path_id: int, limit: int = Query(default=10, ge=1, le=100)):
    return _ok({"leaderboard": learning_path.path_leaderboard(_db(request), path_id, limit)})


@app.get("/learning-paths/{path_id}/analytics")
def paths_analytics(request: Request, path_id: int):
    user = _current_user(request)
    return _ok(learning_path.analytics(_db(request), user["id"], path_id))


@app.put("/learning-paths/{path_id}/status")
def paths_status(request: Request, path_id: int, body: EnrollmentStatusBody):
    user = _current_user(request)
    enrollment = learning_path.update_enrollment_status(_db(request), user["id"], path_id, body.status)
    return _ok({"enrollment": enrollment}, "Enrollment status updated")


@app.post("/learning-paths")
def paths_create(request: Request, body: PathBody):
    user = _admin(request)
    path = learning_path.create_path(_db(request), user["id"], body.wire())
    return _ok({"learningPath": path}, "Learning path created successfully", status_code=201)


@app.put("/learning-paths/{path_id}")
def paths_update(request: Request, path_id: int, body: PathUpdateBody):
    _admin(request)
    path = learning_path.update_path(_db(request), path_id, body.wire(exclude_none=True))
    return _ok({"learningPath": path}, "Learning path updated successfully")


# ---------- Analytics ----------
@app.get("/analytics/dashboard")
def analytics_dashboard(request: Request, timeframe: int = 30):
    user = _current_user(request)
    return _ok(analytics.dashboard(_db(request), user["id"], timeframe))


@app.get("/analytics/learning")
def analytics_learning(request: Request, timeframe: int = 90, category: Optional[str] = None):
    user = _current_user(request)
    return _ok(analytics.learning(_db(request), user["id"], timeframe, category))


@app.get("/analytics/comparison")
def analytics_comparison(
    request: Request, compare_with: str = Query(default="peers", alias="compareWith"), timeframe: int = 30
):
    user = _current_user(request)
    return _ok(analytics.comparison(_db(request), user["id"], compare_with, timeframe))


@app.get("/analytics/system")
def analytics_system(request: Request, timeframe: int = 30):
    _admin(request)
    return _ok(analytics.system(_db(request), timeframe))


@app.get("/analytics/export")
def analytics_export(request: Request, format: str = "json"):
    user = _current_user(request)
    if format == "csv":
        content = analytics.export_csv(_db(request), user["id"])
        return Response(
            content=content,
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="learning-buddy-export.csv"'},
        )
    if format != "json":
        raise InputValidationError("format must be json or csv")
    return _ok(analytics.export_data(_db(request), user["id"]))


# ---------- AI tutor ----------
@app.post("/ai/chat/start")
def ai_chat_start(request: Request, body: Optional[StartChatBody] = None):
    user = _current_user(request)
    body = body or StartChatBody()
    session = _chat(request).start_session(
        user["id"],
        context_type=body.context_type,
        title=body.title,
        challenge_id=body.challenge_id,
        path_id=body.path_id,
    )
    return _ok({"session": session}, "Chat session started", status_code=201)


@app.get("/ai/chat/sessions")
def ai_chat_sessions(
    request: Request, page: int = Query(default=1, ge=1), limit: int = Query(default=20, ge=1, le=100)
):
    user = _current_user(request)
    return _ok(_chat(request).list_sessions(user["id"], page, limit))


@app.get("/ai/chat/{session_id}")
def ai_chat_get(request: Request, session_id: str):
    user = _current_user(request)
    return _ok({"session": _chat(request).get_session(user["id"], session_id)})


@app.post("/ai/chat/{session_id}/message")
def ai_chat_message(request: Request, session_id: str, body: MessageBody):
    user = _current_user(request)
    service = _chat(request)
    if body.stream:
        chunks = service.stream_message(user["id"], session_id, body.message)
        return StreamingResponse(chunks, media_type="text/plain; charset=utf-8")
    return _ok(service.send_message(user["id"], session_id, body.message))


@app.post("/ai/chat/{session_id}/feedback")
def ai_chat_feedback(request: Request, session_id: str, body: MessageFeedbackBody):
    user = _current_user(request)
    message = _chat(request).message_feedback(
        user["id"],
        session_id,
        body.message_id,
        helpful=body.helpful,
        rating=body.rating,
        report_issue=body.report_issue,
    )
    return _ok({"message": message}, "Feedback recorded")


@app.post("/ai/chat/{session_id}/archive")
def ai_chat_archive(request: Request, session_id: str):
    user = _current_user(request)
    return _ok({"session": _chat(request).archive_session(user["id"], session_id)}, "Chat session archived")


@app.post("/ai/generate-path")
def ai_generate_path(request: Request, body: GeneratePathBody):
    user = _current_user(request)
    path = _chat(request).generate_path(
        user["id"], preferences=body.preferences, goals=body.goals, current_level=body.current_level
    )
    return _ok({"learningPath": path}, "Learning path generated")


@app.get("/ai/analyze-weaknesses")
def ai_analyze_weaknesses(request: Request, timeframe: int = Query(default=30, ge=1, le=3650)):
    user = _current_user(request)
    return _ok(_chat(request).analyze_weaknesses(user["id"], timeframe))

"""AI tutor: chat-completions client and chat session service.

``ChatClient`` wraps an OpenAI-compatible ``/v1/chat/completions``
endpoint behind an explicit ``open()``/``close()`` lifecycle. The
application creates one client at startup and passes it to
``ChatService`` together with the database.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence
from uuid import uuid4

import requests
from pydantic import ValidationError

from challenges import recommend as recommend_challenges
from db import (
    Database,
    Repository,
    message_document,
    pagination,
    path_document,
    session_document,
    utcnow,
)
from engines import rollups
from env_validation import Settings
from errors import InputValidationError, NotFoundError, PreconditionError, UpstreamError
from schemas import GeneratedPath, WeaknessReport, parse_json_safe

logger = logging.getLogger(__name__)

_LLM_LOGGER = logging.getLogger("learning_buddy.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False

FALLBACK_REPLY = (
    "I'm sorry, I'm having trouble processing your request right now. Please try again in a moment."
)
NO_DATA_ANALYSIS = "Complete more challenges to get personalized analysis"

CONTEXT_TYPES = ("general", "challenge-help", "learning-path", "study-planning", "career-advice")

_BASE_PROMPT = (
    "You are Learning Buddy, a friendly and encouraging AI tutor. "
    "Explain concepts clearly, ask guiding questions and keep answers focused on learning."
)

SYSTEM_PROMPTS = {
    "general": _BASE_PROMPT,
    "challenge-help": _BASE_PROMPT
    + " The learner is working on a challenge. Give hints and explain the underlying ideas,"
    " but never reveal the answers directly.",
    "learning-path": _BASE_PROMPT
    + " The learner is following a learning path. Help them understand the current step"
    " and connect it with what comes next.",
    "study-planning": _BASE_PROMPT
    + " Help the learner build a realistic study plan around their goals and available time.",
    "career-advice": _BASE_PROMPT
    + " Offer practical career guidance grounded in the learner's skills and interests.",
}

WELCOME_MESSAGES = {
    "general": "Hi! I'm your Learning Buddy. What would you like to learn about today?",
    "challenge-help": "I'm here to help with your challenge. Tell me where you're stuck and we'll work through it together.",
    "learning-path": "Let's make progress on your learning path! Which step are you working on?",
    "study-planning": "Let's plan your studies. What are your goals and how much time can you spend each day?",
    "career-advice": "Happy to talk careers! What field are you interested in, and where are you today?",
}

DEFAULT_TITLES = {
    "general": "General Chat",
    "challenge-help": "Challenge Help",
    "learning-path": "Learning Path Guidance",
    "study-planning": "Study Planning",
    "career-advice": "Career Advice",
}

_CHALLENGE_WORDS = ("practice", "exercise", "challenge")
_PATH_WORDS = ("learn", "course", "path")


def _json_log(record: Dict[str, Any]) -> None:
    try:
        _LLM_LOGGER.info(json.dumps(record, ensure_ascii=False, sort_keys=True))
    except (TypeError, ValueError):
        _LLM_LOGGER.info(repr(record))


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ChatClient:
    """Client for an OpenAI-compatible chat-completions endpoint."""

    def __init__(self, settings: Settings) -> None:
        self.url = settings.llm_url
        self.api_key = settings.llm_api_key
        self.model = settings.model_id
        self.timeout = settings.llm_timeout
        self.temperature = settings.llm_temperature
        self.max_tokens = settings.llm_max_tokens
        self._session: Optional[requests.Session] = None

    @property
    def is_open(self) -> bool:
        return self._session is not None

    def open(self) -> "ChatClient":
        if self._session is None:
            session = requests.Session()
            session.headers.update({"Content-Type": "application/json"})
            if self.api_key:
                session.headers["Authorization"] = f"Bearer {self.api_key}"
            self._session = session
        return self

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None

    def _http(self) -> requests.Session:
        if self._session is None:
            raise UpstreamError("AI service client is not initialised")
        return self._session

    def _payload(
        self, messages: Sequence[Mapping[str, str]], max_tokens: Optional[int], temperature: Optional[float]
    ) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [dict(m) for m in messages],
            "max_tokens": int(max_tokens or self.max_tokens),
            "temperature": self.temperature if temperature is None else float(temperature),
        }

    def complete(
        self,
        messages: Sequence[Mapping[str, str]],
        *,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        user_id: Optional[str] = None,
        purpose: str = "chat",
    ) -> str:
        """Return the assistant text for ``messages``; failures raise :class:`UpstreamError`."""
        payload = self._payload(messages, max_tokens, temperature)
        request_id = str(uuid4())
        start = time.perf_counter()
        outcome = "error"
        tokens_in: Optional[int] = None
        tokens_out: Optional[int] = None
        try:
            try:
                response = self._http().post(self.url, json=payload, timeout=self.timeout)
                response.raise_for_status()
                data = response.json()
            except requests.HTTPError as exc:
                status = exc.response.status_code if exc.response is not None else "?"
                raise UpstreamError(f"AI service returned HTTP {status}") from exc
            except (requests.RequestException, ValueError) as exc:
                raise UpstreamError(f"AI service request failed: {exc}") from exc

            usage = data.get("usage") if isinstance(data, dict) else None
            if isinstance(usage, dict):
                tokens_in = _coerce_int(usage.get("prompt_tokens"))
                tokens_out = _coerce_int(usage.get("completion_tokens"))
            try:
                content = data["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError):
                raise UpstreamError("Unexpected AI service response") from None
            if not isinstance(content, str):
                raise UpstreamError("Unexpected AI service response")
            outcome = "ok"
            return content
        finally:
            _json_log(
                {
                    "event": "llm_call",
                    "request_id": request_id,
                    "user_id": user_id,
                    "purpose": purpose,
                    "model": self.model,
                    "stream": False,
                    "latency_ms": int((time.perf_counter() - start) * 1000),
                    "tokens_in": tokens_in,
                    "tokens_out": tokens_out,
                    "outcome": outcome,
                }
            )

    def stream(
        self,
        messages: Sequence[Mapping[str, str]],
        *,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> Iterator[str]:
        """Yield content deltas from a server-sent event stream."""
        payload = self._payload(messages, max_tokens, temperature)
        payload["stream"] = True
        request_id = str(uuid4())
        start = time.perf_counter()
        outcome = "error"
        chunks = 0
        response = None
        try:
            try:
                response = self._http().post(self.url, json=payload, timeout=self.timeout, stream=True)
                response.raise_for_status()
                for line in response.iter_lines(decode_unicode=True):
                    if not line or not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        delta = json.loads(data)["choices"][0].get("delta", {}).get("content")
                    except (ValueError, KeyError, IndexError, TypeError, AttributeError):
                        raise UpstreamError("Malformed AI stream chunk") from None
                    if delta:
                        chunks += 1
                        yield delta
            except requests.HTTPError as exc:
                status = exc.response.status_code if exc.response is not None else "?"
                raise UpstreamError(f"AI service returned HTTP {status}") from exc
            except requests.RequestException as exc:
                raise UpstreamError(f"AI service request failed: {exc}") from exc
            outcome = "ok"
        finally:
            if response is not None:
                response.close()
            _json_log(
                {
                    "event": "llm_call",
                    "request_id": request_id,
                    "user_id": user_id,
                    "purpose": "chat",
                    "model": self.model,
                    "stream": True,
                    "latency_ms": int((time.perf_counter() - start) * 1000),
                    "chunks": chunks,
                    "outcome": outcome,
                }
            )


def personalization_for(user: Mapping[str, Any]) -> Dict[str, Any]:
    prefs = user.get("learningPreferences") or {}
    return {
        "learningStyle": prefs.get("learningStyle"),
        "difficulty": prefs.get("difficulty"),
        "subjects": list(prefs.get("subjects") or []),
        "level": (user.get("gamification") or {}).get("level", 1),
    }


def build_system_prompt(context_type: str, personalization: Mapping[str, Any], context: Mapping[str, Any]) -> str:
    prompt = SYSTEM_PROMPTS.get(context_type, _BASE_PROMPT)
    details = []
    if personalization.get("level"):
        details.append(f"level {personalization['level']}")
    if personalization.get("difficulty"):
        details.append(f"prefers {personalization['difficulty']} material")
    if personalization.get("learningStyle"):
        details.append(f"{personalization['learningStyle']} learning style")
    if personalization.get("subjects"):
        details.append("interested in " + ", ".join(personalization["subjects"]))
    if details:
        prompt += " Learner profile: " + "; ".join(details) + "."
    if context.get("challengeTitle"):
        prompt += f" Current challenge: {context['challengeTitle']}."
    if context.get("pathTitle"):
        prompt += f" Current learning path: {context['pathTitle']}."
    return prompt


class ChatService:
    """Chat sessions persisted in the database and answered by :class:`ChatClient`."""

    def __init__(self, database: Database, client: ChatClient, settings: Settings) -> None:
        self.database = database
        self.client = client
        self.settings = settings

    # ---------- sessions ----------
    def start_session(
        self,
        user_id: str,
        *,
        context_type: str = "general",
        title: Optional[str] = None,
        challenge_id: Optional[int] = None,
        path_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if context_type not in CONTEXT_TYPES:
            raise InputValidationError(f"Unknown context type: {context_type}")
        moment = now or utcnow()
        with self.database.transaction() as repo:
            user = repo.get_user_document(user_id)
            if user is None:
                raise NotFoundError("User not found")
            context: Dict[str, Any] = {}
            if challenge_id is not None:
                challenge = repo.get_challenge(challenge_id)
                if challenge is None:
                    raise NotFoundError("Challenge not found")
                context.update(challengeId=challenge_id, challengeTitle=challenge["title"])
            if path_id is not None:
                path = repo.get_path(path_id)
                if path is None:
                    raise NotFoundError("Learning path not found")
                context.update(pathId=path_id, pathTitle=path["title"])
            session_id = repo.create_chat_session(
                user_id,
                title=title or DEFAULT_TITLES[context_type],
                context_type=context_type,
                context=context,
                personalization=personalization_for(user),
                now=moment,
            )
            repo.add_chat_message(
                session_id, "assistant", WELCOME_MESSAGES[context_type], metadata={"welcome": True}, now=moment
            )
            return self._session_with_messages(repo, repo.get_chat_session(user_id, session_id))

    def _session_with_messages(self, repo: Repository, row) -> Dict[str, Any]:
        session = session_document(row)
        session["messages"] = [message_document(m) for m in repo.chat_messages(row["session_id"])]
        return session

    def _require_session(self, repo: Repository, user_id: str, session_id: str):
        row = repo.get_chat_session(user_id, session_id)
        if row is None:
            raise NotFoundError("Chat session not found")
        return row

    def get_session(self, user_id: str, session_id: str) -> Dict[str, Any]:
        with self.database.read() as repo:
            return self._session_with_messages(repo, self._require_session(repo, user_id, session_id))

    def list_sessions(self, user_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        with self.database.read() as repo:
            rows, total = repo.list_chat_sessions(user_id, page, limit)
        sessions = []
        for row in rows:
            doc = session_document(row)
            doc["messageCount"] = row["message_count"]
            sessions.append(doc)
        return {"sessions": sessions, "pagination": pagination(page, limit, total)}

    def archive_session(self, user_id: str, session_id: str) -> Dict[str, Any]:
        with self.database.transaction() as repo:
            self._require_session(repo, user_id, session_id)
            repo.set_chat_session_status(session_id, "archived")
            return session_document(repo.get_chat_session(user_id, session_id))

    def message_feedback(
        self,
        user_id: str,
        session_id: str,
        message_id: str,
        *,
        helpful: Optional[bool] = None,
        rating: Optional[int] = None,
        report_issue: Optional[str] = None,
    ) -> Dict[str, Any]:
        with self.database.transaction() as repo:
            self._require_session(repo, user_id, session_id)
            message = repo.get_chat_message(session_id, message_id)
            if message is None:
                raise NotFoundError("Message not found")
            repo.set_message_feedback(
                message_id, {"helpful": helpful, "rating": rating, "reportIssue": report_issue}
            )
            return message_document(repo.get_chat_message(session_id, message_id))

    # ---------- messages ----------
    def _prepare_exchange(self, user_id: str, session_id: str, message: str, moment: datetime):
        text = (message or "").strip()
        if not text:
            raise InputValidationError("Message cannot be empty")
        with self.database.transaction() as repo:
            row = self._require_session(repo, user_id, session_id)
            if row["status"] == "archived":
                raise PreconditionError("Chat session is archived")
            user_message = repo.add_chat_message(session_id, "user", text, now=moment)
            session = session_document(row)
            history = repo.chat_messages(session_id, last=self.settings.chat_context_messages)
        prompt = build_system_prompt(
            row["context_type"], session["personalization"], session["context"]
        )
        context = [{"role": "system", "content": prompt}]
        context.extend({"role": m["role"], "content": m["content"]} for m in history)
        return user_message, context

    def suggested_actions(self, user_id: str, text: str) -> List[Dict[str, Any]]:
        lowered = (text or "").lower()
        actions: List[Dict[str, Any]] = []
        if any(word in lowered for word in _CHALLENGE_WORDS):
            for challenge in recommend_challenges(self.database, user_id, limit=3):
                actions.append(
                    {
                        "type": "challenge",
                        "label": f"Try: {challenge['title']}",
                        "data": {"challengeId": challenge["id"]},
                    }
                )
        if any(word in lowered for word in _PATH_WORDS):
            with self.database.read() as repo:
                user = repo.get_user_document(user_id) or {}
                subjects = list((user.get("learningPreferences") or {}).get("subjects") or [])
                paths = [path_document(r) for r in repo.recommended_paths(user_id, subjects, 3)]
            for path in paths:
                actions.append(
                    {
                        "type": "learning-path",
                        "label": f"Explore: {path['title']}",
                        "data": {"pathId": path["id"]},
                    }
                )
        return actions

    def _store_reply(
        self,
        session_id: str,
        content: str,
        metadata: Mapping[str, Any],
        actions: Sequence[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        with self.database.transaction() as repo:
            row = repo.add_chat_message(
                session_id, "assistant", content, metadata=metadata, suggested_actions=actions, now=utcnow()
            )
            return message_document(row)

    def send_message(self, user_id: str, session_id: str, message: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        moment = now or utcnow()
        user_message, context = self._prepare_exchange(user_id, session_id, message, moment)
        start = time.perf_counter()
        try:
            reply = self.client.complete(
                context, max_tokens=self.settings.llm_max_tokens, user_id=user_id
            )
            metadata: Dict[str, Any] = {"model": self.client.model}
        except UpstreamError as exc:
            logger.error("AI reply failed for session %s: %s", session_id, exc, exc_info=True)
            reply = FALLBACK_REPLY
            metadata = {"error": "ai_service_error"}
        metadata["responseTime"] = int((time.perf_counter() - start) * 1000)
        actions = self.suggested_actions(user_id, message)
        assistant = self._store_reply(session_id, reply, metadata, actions)
        return {"userMessage": message_document(user_message), "assistantMessage": assistant}

    def stream_message(
        self, user_id: str, session_id: str, message: str, now: Optional[datetime] = None
    ) -> Iterator[str]:
        """Validate and persist the user message, then return the reply chunk iterator.

        Session errors are raised here, before any chunk is produced.
        """
        moment = now or utcnow()
        _, context = self._prepare_exchange(user_id, session_id, message, moment)
        return self._relay(user_id, session_id, message, context)

    def _relay(
        self, user_id: str, session_id: str, message: str, context: List[Dict[str, str]]
    ) -> Iterator[str]:
        parts: List[str] = []
        metadata: Dict[str, Any] = {"model": self.client.model, "streamed": True}
        start = time.perf_counter()
        finished = False
        try:
            for chunk in self.client.stream(context, max_tokens=self.settings.llm_max_tokens, user_id=user_id):
                parts.append(chunk)
                yield chunk
            finished = True
        except UpstreamError as exc:
            logger.error("AI stream failed for session %s: %s", session_id, exc, exc_info=True)
            metadata = {"error": "ai_service_error", "streamed": True}
            if not parts:
                parts.append(FALLBACK_REPLY)
                finished = True
                yield FALLBACK_REPLY
        finally:
            # Also reached on GeneratorExit when the client disconnects.
            if not finished:
                metadata["partial"] = True
            metadata["responseTime"] = int((time.perf_counter() - start) * 1000)
            if parts:
                self._store_reply(session_id, "".join(parts), metadata, self.suggested_actions(user_id, message))

    # ---------- generated content ----------
    def generate_path(
        self,
        user_id: str,
        *,
        preferences: Mapping[str, Any],
        goals: Sequence[str],
        current_level: Optional[str] = None,
    ) -> Dict[str, Any]:
        with self.database.read() as repo:
            user = repo.get_user_document(user_id)
        if user is None:
            raise NotFoundError("User not found")
        level = current_level or user["learningPreferences"].get("difficulty") or "beginner"
        prompt = (
            "Create a personalised learning path.\n"
            f"Learner level: {level}\n"
            f"Goals: {', '.join(goals) or 'not specified'}\n"
            f"Preferences: {json.dumps(dict(preferences), ensure_ascii=False)}\n"
            "Respond with JSON only: {\"title\": str, \"description\": str, \"estimatedDuration\": hours,"
            " \"steps\": [{\"title\": str, \"description\": str, \"type\": str, \"estimatedTime\": minutes}]}"
        )
        text = self.client.complete(
            [{"role": "system", "content": _BASE_PROMPT}, {"role": "user", "content": prompt}],
            max_tokens=2000,
            user_id=user_id,
            purpose="generate_path",
        )
        try:
            generated = parse_json_safe(text, GeneratedPath)
        except (ValidationError, ValueError) as exc:
            raise UpstreamError("AI returned an invalid learning path") from exc
        return generated.model_dump(by_alias=True)

    def analyze_weaknesses(self, user_id: str, timeframe: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
        since = (now or utcnow()) - timedelta(days=max(1, int(timeframe)))
        with self.database.read() as repo:
            if repo.get_user(user_id) is None:
                raise NotFoundError("User not found")
            records = repo.attempt_records(user_id, since=since)
        if not records:
            return {"analysis": NO_DATA_ANALYSIS, "weaknesses": [], "strengths": [], "recommendations": []}

        breakdown = rollups.category_breakdown(records)
        summary = {
            category: {"attempts": int(data["count"]), "averageScore": round(data["averageScore"], 1)}
            for category, data in breakdown.items()
        }
        prompt = (
            "Analyse this learner's recent challenge results and identify weaknesses.\n"
            f"Results by category: {json.dumps(summary, ensure_ascii=False)}\n"
            "Respond with JSON only: {\"weaknesses\": [str], \"strengths\": [str],"
            " \"recommendations\": [str], \"focusAreas\": [str]}"
        )
        text = self.client.complete(
            [{"role": "system", "content": _BASE_PROMPT}, {"role": "user", "content": prompt}],
            user_id=user_id,
            purpose="analyze_weaknesses",
        )
        try:
            report = parse_json_safe(text, WeaknessReport)
        except (ValidationError, ValueError) as exc:
            raise UpstreamError("AI returned an invalid analysis") from exc
        result = report.model_dump(by_alias=True)
        result["performance"] = summary
        return result

"""Host event payloads and their dispatch table.

Payloads are plain dicts with a ``type`` key. ``parse_event`` turns them into
typed events (raising ValueError on anything malformed) and ``dispatch``
routes them to a handler. ``dispatch`` never raises into the host.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .conversations import ACTION_ASK, ACTION_IGNORE, ACTION_TRUST
from .store import Observation
from .store.types import SESSION_ACTIVE

if TYPE_CHECKING:
    from .runtime import Runtime

logger = logging.getLogger(__name__)

MAX_PAYLOAD_CHARS = 4000
TRUNCATION_NOTICE = "\n... (truncated)"

_EVENT_ALIASES = {
    "session_start": "session_start",
    "session.start": "session_start",
    "tool_use": "tool_use",
    "tool.execute.after": "tool_use",
    "user_prompt": "user_prompt",
    "prompt": "user_prompt",
    "session_end": "session_end",
    "session.end": "session_end",
}

_TOPIC_DECISIONS = {"new", "same"}


@dataclass(frozen=True)
class SessionStartEvent:
    external_session_ref: str | None = None


@dataclass(frozen=True)
class ToolUseEvent:
    tool: str
    args: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: Any = None
    timestamp: str | None = None


@dataclass(frozen=True)
class UserPromptEvent:
    prompt: str
    # Answer to an earlier "ask": "new" opens a conversation, "same" keeps it.
    topic_decision: str | None = None


@dataclass(frozen=True)
class SessionEndEvent:
    summary: str | None = None


HookEvent = SessionStartEvent | ToolUseEvent | UserPromptEvent | SessionEndEvent


def is_internal_memory_tool(tool: str) -> bool:
    """Memory lookups resurface stored data; recording them feeds back into search."""

    return tool.startswith(("memory_", "engram_"))


def normalize_tool_name(tool: str) -> str:
    tool = tool.strip().lower()
    if "." in tool:
        tool = tool.split(".")[-1]
    if ":" in tool:
        tool = tool.split(":")[-1]
    return tool


def _strip_private(text: str) -> str:
    return re.sub(r"<private>.*?</private>", "", text, flags=re.DOTALL | re.IGNORECASE)


def sanitize_payload(value: Any, max_chars: int = MAX_PAYLOAD_CHARS) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        text = _strip_private(value)
        if len(text) > max_chars:
            return text[:max_chars] + TRUNCATION_NOTICE
        return text
    try:
        serialized = json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        serialized = str(value)
        return sanitize_payload(serialized, max_chars)
    if len(serialized) > max_chars:
        return serialized[:max_chars] + TRUNCATION_NOTICE
    return value


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"'{key}' must be a string")
    return value.strip() or None


def parse_event(payload: Any) -> HookEvent:
    if not isinstance(payload, dict):
        raise ValueError("event payload must be an object")
    raw_type = payload.get("type")
    if not isinstance(raw_type, str) or raw_type.strip().lower() not in _EVENT_ALIASES:
        raise ValueError(f"unknown event type {raw_type!r}")
    event_type = _EVENT_ALIASES[raw_type.strip().lower()]

    if event_type == "session_start":
        return SessionStartEvent(external_session_ref=_optional_str(payload, "session_id"))
    if event_type == "session_end":
        return SessionEndEvent(summary=_optional_str(payload, "summary"))
    if event_type == "user_prompt":
        prompt = payload.get("prompt")
        if not isinstance(prompt, str):
            raise ValueError("'prompt' must be a string")
        decision = _optional_str(payload, "topic_decision")
        if decision is not None and decision.lower() not in _TOPIC_DECISIONS:
            raise ValueError(f"'topic_decision' must be one of {sorted(_TOPIC_DECISIONS)}")
        return UserPromptEvent(prompt=prompt, topic_decision=decision.lower() if decision else None)

    tool = payload.get("tool")
    if not isinstance(tool, str) or not tool.strip():
        raise ValueError("'tool' must be a non-empty string")
    args = payload.get("args")
    if args is None:
        args = {}
    if not isinstance(args, dict):
        raise ValueError("'args' must be an object")
    return ToolUseEvent(
        tool=normalize_tool_name(tool),
        args=args,
        result=payload.get("result"),
        error=payload.get("error"),
        timestamp=_optional_str(payload, "timestamp"),
    )


def _context_text(runtime: Runtime) -> str:
    return runtime.context()["pack_text"]


def handle_session_start(runtime: Runtime, event: SessionStartEvent) -> dict[str, Any]:
    session = runtime.session
    if session.status == SESSION_ACTIVE:
        if session.external_session_ref == event.external_session_ref:
            return {"session_id": session.id, "started": False}
        if session.external_session_ref is None and runtime.buffer.appended == 0:
            # Unused bootstrap session: attach the host's id instead of rotating.
            runtime.session = runtime.store.attach_external_ref(
                session.id, event.external_session_ref
            )
            return {
                "session_id": session.id,
                "started": False,
                "context": _context_text(runtime),
            }
    session = runtime.rotate_session(event.external_session_ref)
    return {"session_id": session.id, "started": True, "context": _context_text(runtime)}


def handle_tool_use(runtime: Runtime, event: ToolUseEvent) -> dict[str, Any]:
    if is_internal_memory_tool(event.tool):
        return {"recorded": False}
    args = sanitize_payload(event.args) or {}
    payload: dict[str, Any] = {"tool": event.tool, "args": args}
    if isinstance(args, dict):
        for key in ("command", "file_path", "path", "query"):
            value = args.get(key)
            if isinstance(value, str) and value.strip():
                payload[key] = value.strip()
    if event.result is not None:
        payload["result"] = sanitize_payload(event.result)
    if event.error:
        payload["error"] = sanitize_payload(event.error)
    observation = Observation(
        session_id=runtime.session.id,
        kind="tool_use",
        payload=payload,
        conversation_id=runtime.continuity.current_conversation_id(runtime.session.id),
    )
    if event.timestamp:
        observation.created_at = event.timestamp
    runtime.buffer.append(observation)
    return {"recorded": True}


def handle_user_prompt(runtime: Runtime, event: UserPromptEvent) -> dict[str, Any]:
    session_id = runtime.session.id
    if event.topic_decision == "new":
        conversation = runtime.continuity.confirm_shift(session_id, event.prompt)
        return {"action": ACTION_TRUST, "conversation_id": conversation.id}
    if event.topic_decision == "same":
        conversation = runtime.continuity.reject_shift(session_id, event.prompt)
        return {
            "action": ACTION_IGNORE,
            "conversation_id": conversation.id if conversation else None,
        }

    result = runtime.continuity.handle_topic_shift(
        session_id, runtime.project.root_path, runtime.project.id, event.prompt
    )
    response: dict[str, Any] = {
        "action": result.action,
        "score": round(result.score, 4),
        "conversation_id": result.conversation.id if result.conversation else None,
    }
    if result.action == ACTION_ASK:
        response["suggestion"] = result.suggestion
    return response


def handle_session_end(runtime: Runtime, event: SessionEndEvent) -> dict[str, Any]:
    runtime.end_session(event.summary)
    return {"session_id": runtime.session.id, "status": runtime.session.status}


Handler = Callable[["Runtime", Any], dict[str, Any]]

HANDLERS: dict[type, Handler] = {
    SessionStartEvent: handle_session_start,
    ToolUseEvent: handle_tool_use,
    UserPromptEvent: handle_user_prompt,
    SessionEndEvent: handle_session_end,
}


def dispatch(runtime: Runtime, payload: Any) -> dict[str, Any]:
    try:
        event = parse_event(payload)
    except ValueError as exc:
        logger.warning("ignoring malformed hook payload: %s", exc)
        return {"ok": False, "error": "invalid_payload", "detail": str(exc)}
    handler = HANDLERS[type(event)]
    try:
        result = handler(runtime, event)
    except Exception as exc:
        logger.warning("hook handler %s failed", handler.__name__, exc_info=exc)
        return {"ok": False, "error": "handler_failed", "detail": str(exc)}
    return {"ok": True, **result}

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Final

SESSION_ACTIVE: Final = "active"
SESSION_ENDED: Final = "ended"
SESSION_CRASHED: Final = "crashed"

CONVERSATION_OPEN: Final = "open"
CONVERSATION_CLOSED: Final = "closed"

KNOWLEDGE_KINDS: Final[tuple[str, ...]] = ("fact", "decision", "preference", "pattern")

ENTITY_TYPES: Final[tuple[str, ...]] = ("knowledge", "observation", "session", "conversation")


def validate_knowledge_kind(kind: str) -> str:
    normalized = (kind or "").strip().lower()
    if normalized in KNOWLEDGE_KINDS:
        return normalized
    raise ValueError(
        f"Invalid knowledge kind '{normalized}'. Allowed kinds: {', '.join(KNOWLEDGE_KINDS)}"
    )


@dataclass(frozen=True)
class Project:
    id: int
    root_path: str
    name: str
    created_at: str


@dataclass(frozen=True)
class Session:
    id: int
    external_session_ref: str | None
    project_id: int
    started_at: str
    ended_at: str | None
    status: str
    summary: str | None = None


@dataclass(frozen=True)
class Conversation:
    id: int
    session_id: int
    topic_label: str
    topic_representation: list[float]
    prompt_count: int
    created_at: str
    last_active_at: str
    status: str
    closed_at: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status == CONVERSATION_OPEN


@dataclass
class Observation:
    """One tool-use event; ``id`` stays None until the buffer flushes it."""

    session_id: int
    kind: str
    payload: dict[str, Any]
    conversation_id: int | None = None
    created_at: str = field(default_factory=lambda: dt.datetime.now(dt.UTC).isoformat())
    id: int | None = None

    def searchable_text(self) -> str:
        parts = [self.kind]
        for key in ("tool", "title", "summary", "command", "file_path", "path", "query", "text"):
            value = self.payload.get(key)
            if isinstance(value, str) and value.strip():
                parts.append(value.strip())
        return "\n".join(parts)


@dataclass(frozen=True)
class KnowledgeItem:
    id: int
    project_id: int
    kind: str
    content: str
    tags: list[str]
    created_at: str
    superseded_by: int | None = None


@dataclass(frozen=True)
class CheckpointMarker:
    last_observation_id: int
    session_id: int | None
    clean_shutdown: bool
    updated_at: str


@dataclass(frozen=True)
class EntityRecord:
    """A searchable row plus the context retrieval filters on."""

    entity_type: str
    entity_id: int
    data: dict[str, Any]
    created_at: str
    text: str
    project_id: int | None = None
    project_root: str | None = None
    session_id: int | None = None

    @property
    def ref(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"


def parse_ref(ref: str | int) -> tuple[str, int]:
    """``"observation:12"`` -> ("observation", 12); a bare id means knowledge."""

    text = str(ref).strip()
    entity_type, sep, raw_id = text.partition(":")
    if not sep:
        entity_type, raw_id = "knowledge", text
    entity_type = entity_type.strip().lower()
    if entity_type not in ENTITY_TYPES:
        raise ValueError(f"Unknown entity type '{entity_type}'")
    try:
        entity_id = int(raw_id.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid entity reference '{text}'") from exc
    return entity_type, entity_id

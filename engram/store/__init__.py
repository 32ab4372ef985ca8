from __future__ import annotations

from ._store import MemoryStore
from .types import (
    ENTITY_TYPES,
    KNOWLEDGE_KINDS,
    CheckpointMarker,
    Conversation,
    EntityRecord,
    KnowledgeItem,
    Observation,
    Project,
    Session,
    parse_ref,
)

__all__ = [
    "ENTITY_TYPES",
    "KNOWLEDGE_KINDS",
    "CheckpointMarker",
    "Conversation",
    "EntityRecord",
    "KnowledgeItem",
    "MemoryStore",
    "Observation",
    "Project",
    "Session",
    "parse_ref",
]

"""Per-project memory context handed to the host agent when a session starts."""

from __future__ import annotations

from typing import Any

from .store import MemoryStore, Project

DEFAULT_CONTEXT_LIMIT = 8


def _knowledge_line(item: dict[str, Any]) -> str:
    line = f"[knowledge:{item['id']}] ({item['kind']}) {item['content'].strip()}"
    if item["tags"]:
        line += f" #{' #'.join(item['tags'])}"
    return line


def _conversation_line(item: dict[str, Any]) -> str:
    return f"[conversation:{item['id']}] {item['topic_label']} ({item['status']})"


def build_context(
    store: MemoryStore, project: Project, limit: int = DEFAULT_CONTEXT_LIMIT
) -> dict[str, Any]:
    """Recent live knowledge and recent topics for ``project``.

    Superseded knowledge is left out. ``pack_text`` renders both sections as
    markdown for a system prompt; it is empty when the project has no memory.
    """

    knowledge = [
        {
            "id": item.id,
            "kind": item.kind,
            "content": item.content,
            "tags": list(item.tags),
            "created_at": item.created_at,
        }
        for item in store.recent_knowledge(project.id, limit)
    ]
    conversations = [
        {
            "id": conversation.id,
            "session_id": conversation.session_id,
            "topic_label": conversation.topic_label,
            "status": conversation.status,
            "last_active_at": conversation.last_active_at,
        }
        for conversation in store.recent_conversations(project.id, limit)
    ]

    section_blocks = []
    for title, items, render in (
        ("Project knowledge", knowledge, _knowledge_line),
        ("Recent topics", conversations, _conversation_line),
    ):
        if items:
            section_blocks.append(f"## {title}\n" + "\n".join(render(i) for i in items))
    return {
        "project": project.root_path,
        "knowledge": knowledge,
        "conversations": conversations,
        "pack_text": "\n\n".join(section_blocks),
    }

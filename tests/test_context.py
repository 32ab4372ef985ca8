from __future__ import annotations

from engram.context import build_context
from engram.store import MemoryStore


def test_context_lists_live_knowledge_and_topics(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/engram")
    other = store.get_or_create_project("/work/elsewhere")
    old = store.save_knowledge(project.id, "decision", "Use JSON config")
    new = store.save_knowledge(
        project.id, "decision", "Use JSON config with env overrides", ["config"], supersedes=old.id
    )
    store.save_knowledge(other.id, "fact", "belongs to another repo")
    session = store.start_session(project.id)
    store.start_conversation(session.id, "tune the flush interval", [])

    pack = build_context(store, project)

    assert pack["project"] == "/work/engram"
    assert [item["id"] for item in pack["knowledge"]] == [new.id]
    assert [c["topic_label"] for c in pack["conversations"]] == ["tune the flush interval"]
    text = pack["pack_text"]
    assert text.startswith("## Project knowledge\n")
    assert f"[knowledge:{new.id}] (decision) Use JSON config with env overrides #config" in text
    assert "## Recent topics" in text
    assert "another repo" not in text


def test_context_respects_limit(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/engram")
    for n in range(5):
        store.save_knowledge(project.id, "fact", f"fact number {n}")
    pack = build_context(store, project, limit=2)
    assert [item["content"] for item in pack["knowledge"]] == ["fact number 4", "fact number 3"]


def test_context_of_empty_project_is_blank(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/empty")
    pack = build_context(store, project)
    assert pack["knowledge"] == []
    assert pack["conversations"] == []
    assert pack["pack_text"] == ""

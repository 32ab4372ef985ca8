from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from engram import semantic
from engram.errors import ConfigurationError, SemanticUnavailableError, TransientStorageError
from engram.store import MemoryStore, Observation, parse_ref


def test_knowledge_round_trip_through_entity_lookup(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/engram")
    content = "  Prefer pytest fixtures\n  over setUp  \n"
    tags = ["zeta", "auth flow", "testing", "zeta"]
    item = store.save_knowledge(project.id, "Preference", content, tags)

    entity_type, entity_id = parse_ref(str(item.id))
    fetched = store.get_entity(entity_type, entity_id)
    assert fetched is not None
    assert fetched["kind"] == "preference"
    assert fetched["content"] == content
    assert fetched["tags"] == tags
    assert fetched["superseded_by"] is None
    assert store.get_entity("knowledge", 999) is None


def test_knowledge_tags_stay_searchable(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/engram")
    item = store.save_knowledge(project.id, "fact", "Login redirects twice", ["auth flow"])
    hits = store.keyword_candidates("flow", limit=5, entity_types=["knowledge"])
    assert ("knowledge", item.id) in hits


def test_invalid_knowledge_kind_rejected(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/engram")
    with pytest.raises(ValueError, match="Invalid knowledge kind"):
        store.save_knowledge(project.id, "rumor", "not allowed")
    with pytest.raises(ValueError):
        store.save_knowledge(project.id, "fact", "   ")


def test_supersede_links_items_once(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/engram")
    original = store.save_knowledge(project.id, "decision", "Use JSON config")
    revised = store.save_knowledge(
        project.id, "decision", "Use JSON config with env overrides", supersedes=original.id
    )
    reloaded = store.get_knowledge(original.id)
    assert reloaded is not None
    assert reloaded.superseded_by == revised.id
    assert reloaded.content == "Use JSON config"

    with pytest.raises(ValueError, match="already superseded"):
        store.save_knowledge(project.id, "decision", "third try", supersedes=original.id)
    with pytest.raises(ValueError, match="does not exist"):
        store.save_knowledge(project.id, "decision", "orphan", supersedes=12345)


def test_knowledge_content_is_immutable(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/engram")
    item = store.save_knowledge(project.id, "fact", "sqlite is the store")
    with pytest.raises(sqlite3.DatabaseError):
        store.conn.execute(
            "UPDATE knowledge_items SET content = ? WHERE id = ?", ("changed", item.id)
        )


def test_observations_are_immutable(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/engram")
    session = store.start_session(project.id)
    [observation_id] = store.persist_observations(
        [Observation(session_id=session.id, kind="tool_use", payload={"tool": "bash"})]
    )
    with pytest.raises(sqlite3.DatabaseError):
        store.conn.execute(
            "UPDATE observations SET payload_json = ? WHERE id = ?", ("{}", observation_id)
        )


def test_legacy_knowledge_rows_gain_tags_column(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.sqlite"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE projects (
            id INTEGER PRIMARY KEY, root_path TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL, created_at TEXT NOT NULL
        );
        CREATE TABLE knowledge_items (
            id INTEGER PRIMARY KEY, project_id INTEGER NOT NULL, kind TEXT NOT NULL,
            content TEXT NOT NULL, tags_text TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL, superseded_by INTEGER
        );
        INSERT INTO projects VALUES (1, '/work/old', 'old', '2024-01-01T00:00:00+00:00');
        INSERT INTO knowledge_items VALUES
            (1, 1, 'fact', 'kept', 'alpha beta', '2024-01-01T00:00:00+00:00', NULL);
        """
    )
    conn.close()

    store = MemoryStore(db_path)
    try:
        item = store.get_knowledge(1)
        assert item is not None
        assert item.tags == ["alpha", "beta"]
        fresh = store.save_knowledge(1, "fact", "new", ["one tag"])
        assert store.get_knowledge(fresh.id).tags == ["one tag"]
    finally:
        store.close()


def test_closed_conversation_is_frozen(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/engram")
    session = store.start_session(project.id)
    conversation = store.start_conversation(session.id, "initial topic", [])
    store.close_conversation(conversation.id)
    with pytest.raises(sqlite3.DatabaseError):
        store.conn.execute(
            "UPDATE conversations SET topic_label = ? WHERE id = ?", ("renamed", conversation.id)
        )


def test_one_open_conversation_per_session(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/engram")
    session = store.start_session(project.id)
    first = store.start_conversation(session.id, "first", [])
    second = store.start_conversation(session.id, "second", [])
    assert store.get_conversation(first.id).status == "closed"  # type: ignore[union-attr]
    current = store.open_conversation_for(session.id)
    assert current is not None
    assert current.id == second.id


def test_persist_observations_advances_checkpoint(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/engram")
    session = store.start_session(project.id)
    batch = [
        Observation(session_id=session.id, kind="tool_use", payload={"tool": "bash", "n": n})
        for n in range(3)
    ]
    ids = store.persist_observations(batch)
    assert ids == sorted(ids)
    assert [obs.id for obs in batch] == ids
    assert store.checkpoint().last_observation_id == ids[-1]
    assert store.persist_observations([]) == []

    loaded = store.get_entity("observation", ids[0])
    assert loaded is not None
    assert loaded["payload"] == {"n": 0, "tool": "bash"}


def test_end_session_closes_conversation_and_stores_summary(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/engram")
    session = store.start_session(project.id, "host-42")
    store.start_conversation(session.id, "topic", [])
    store.end_session(session.id, summary="Wired up the recovery path")

    ended = store.session_by_external_ref("host-42")
    assert ended is not None
    assert ended.status == "ended"
    assert ended.summary == "Wired up the recovery path"
    assert store.open_conversation_for(session.id) is None
    assert ("session", session.id) in store.keyword_candidates("recovery", limit=5)


def test_find_projects_by_path_or_basename(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/engram")
    assert [p.id for p in store.find_projects("/work/engram")] == [project.id]
    assert [p.id for p in store.find_projects("engram")] == [project.id]
    assert store.find_projects("other") == []


def test_parse_ref_forms() -> None:
    assert parse_ref("observation:12") == ("observation", 12)
    assert parse_ref(" 7 ") == ("knowledge", 7)
    with pytest.raises(ValueError):
        parse_ref("widget:1")
    with pytest.raises(ValueError):
        parse_ref("knowledge:abc")


def test_transaction_wraps_locked_database(tmp_path: Path) -> None:
    db_path = tmp_path / "locked.sqlite"
    first = MemoryStore(db_path)
    second = MemoryStore(db_path)
    second.conn.execute("PRAGMA busy_timeout = 0")
    try:
        first.conn.execute("BEGIN IMMEDIATE")
        with pytest.raises(TransientStorageError):
            with second.transaction():
                pass
    finally:
        first.conn.rollback()
        first.close()
        second.close()


def test_unopenable_store_is_configuration_error(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    with pytest.raises(ConfigurationError):
        MemoryStore(blocker / "nested" / "mem.sqlite")


def test_stats_counts_entities(store: MemoryStore) -> None:
    project = store.get_or_create_project("/work/engram")
    store.save_knowledge(project.id, "fact", "one")
    stats = store.stats()
    assert stats["counts"]["projects"] == 1
    assert stats["counts"]["knowledge_items"] == 1
    assert stats["checkpoint"]["clean_shutdown"] is True


class WideEmbedder:
    model = "wide-768"

    def embed(self, texts):
        return [[1.0] + [0.0] * 767 for _ in texts]


def test_wrong_width_model_keeps_rows_durable(store: MemoryStore) -> None:
    semantic.set_embedding_client(WideEmbedder())
    with pytest.raises(SemanticUnavailableError):
        semantic.embed_vectors(["anything"])

    project = store.get_or_create_project("/work/engram")
    session = store.start_session(project.id)
    ids = store.persist_observations(
        [
            Observation(session_id=session.id, kind="tool_use", payload={"command": "make"})
            for _ in range(3)
        ]
    )
    assert len(ids) == 3
    assert store.checkpoint().last_observation_id == ids[-1]
    item = store.save_knowledge(project.id, "fact", "bge-base is 768 wide")
    store.end_session(session.id, summary="tried a wider model")

    assert store.observation_count(session.id) == 3
    assert store.get_knowledge(item.id) is not None
    if store.vectors_available:
        count = store.conn.execute("SELECT COUNT(*) FROM entity_vectors").fetchone()[0]
        assert count == 0


def test_width_check_rejects_mismatched_model() -> None:
    assert semantic.check_embedding_dimension() == semantic.EMBEDDING_DIM
    semantic.set_embedding_client(WideEmbedder())
    with pytest.raises(ConfigurationError, match="width"):
        semantic.check_embedding_dimension()

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import sqlite_vec

from .config import DEFAULT_DB_PATH
from .semantic import EMBEDDING_DIM

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_DB_PATH",
    "EMBEDDING_DIM",
    "connect",
    "from_json",
    "initialize_schema",
    "initialize_vectors",
    "rows_to_dicts",
    "sqlite_vec_version",
    "to_json",
]


def sqlite_vec_version(conn: sqlite3.Connection) -> str | None:
    try:
        row = conn.execute("select vec_version()").fetchone()
    except sqlite3.Error:
        return None
    if not row or row[0] is None:
        return None
    return str(row[0])


def _load_sqlite_vec(conn: sqlite3.Connection) -> None:
    try:
        conn.enable_load_extension(True)
    except AttributeError as exc:
        raise RuntimeError(
            "sqlite-vec requires a Python SQLite build that supports extension loading."
        ) from exc
    try:
        sqlite_vec.load(conn)
        if sqlite_vec_version(conn) is None:
            raise RuntimeError("sqlite-vec loaded but version check failed")
    finally:
        try:
            conn.enable_load_extension(False)
        except AttributeError:
            pass


def connect(db_path: Path | str, check_same_thread: bool = True) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    # Autocommit; multi-statement writes go through MemoryStore.transaction().
    conn = sqlite3.connect(path, check_same_thread=check_same_thread, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS projects (
            id INTEGER PRIMARY KEY,
            root_path TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sessions (
            id INTEGER PRIMARY KEY,
            external_session_ref TEXT,
            project_id INTEGER NOT NULL REFERENCES projects(id),
            started_at TEXT NOT NULL,
            ended_at TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            summary TEXT,
            CHECK (status IN ('active', 'ended', 'crashed'))
        );
        CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);
        CREATE INDEX IF NOT EXISTS idx_sessions_external_ref ON sessions(external_session_ref);
        CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_id);

        CREATE TABLE IF NOT EXISTS conversations (
            id INTEGER PRIMARY KEY,
            session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            topic_label TEXT NOT NULL,
            topic_representation BLOB,
            prompt_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            last_active_at TEXT NOT NULL,
            closed_at TEXT,
            status TEXT NOT NULL DEFAULT 'open',
            CHECK (status IN ('open', 'closed'))
        );
        CREATE INDEX IF NOT EXISTS idx_conversations_session ON conversations(session_id);
        CREATE UNIQUE INDEX IF NOT EXISTS idx_conversations_one_open
            ON conversations(session_id) WHERE status = 'open';

        CREATE TRIGGER IF NOT EXISTS conversations_frozen_label
        BEFORE UPDATE OF topic_label, topic_representation ON conversations
        WHEN old.status = 'closed'
        BEGIN
            SELECT RAISE(ABORT, 'closed conversation is frozen');
        END;

        CREATE TABLE IF NOT EXISTS observations (
            id INTEGER PRIMARY KEY,
            session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            conversation_id INTEGER REFERENCES conversations(id) ON DELETE SET NULL,
            kind TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_observations_session ON observations(session_id);
        CREATE INDEX IF NOT EXISTS idx_observations_conversation ON observations(conversation_id);

        CREATE TRIGGER IF NOT EXISTS observations_immutable
        BEFORE UPDATE OF session_id, kind, payload_json, created_at ON observations
        BEGIN
            SELECT RAISE(ABORT, 'observations are immutable');
        END;

        CREATE TABLE IF NOT EXISTS knowledge_items (
            id INTEGER PRIMARY KEY,
            project_id INTEGER NOT NULL REFERENCES projects(id),
            kind TEXT NOT NULL,
            content TEXT NOT NULL,
            tags_text TEXT NOT NULL DEFAULT '',
            tags_json TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL,
            superseded_by INTEGER REFERENCES knowledge_items(id),
            CHECK (kind IN ('fact', 'decision', 'preference', 'pattern'))
        );
        CREATE INDEX IF NOT EXISTS idx_knowledge_project ON knowledge_items(project_id);

        CREATE TABLE IF NOT EXISTS checkpoint (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            last_observation_id INTEGER NOT NULL DEFAULT 0,
            session_id INTEGER,
            clean_shutdown INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT NOT NULL
        );

        CREATE VIRTUAL TABLE IF NOT EXISTS search_fts USING fts5(
            entity_type UNINDEXED,
            entity_id UNINDEXED,
            title,
            body,
            tags,
            tokenize = 'porter unicode61'
        );

        CREATE TRIGGER IF NOT EXISTS knowledge_items_ai AFTER INSERT ON knowledge_items BEGIN
            INSERT INTO search_fts(entity_type, entity_id, title, body, tags)
            VALUES ('knowledge', new.id, new.kind, new.content, new.tags_text);
        END;
        CREATE TRIGGER IF NOT EXISTS knowledge_items_ad AFTER DELETE ON knowledge_items BEGIN
            DELETE FROM search_fts WHERE entity_type = 'knowledge' AND entity_id = old.id;
        END;

        CREATE TRIGGER IF NOT EXISTS observations_ai AFTER INSERT ON observations BEGIN
            INSERT INTO search_fts(entity_type, entity_id, title, body, tags)
            VALUES ('observation', new.id, new.kind, new.payload_json, '');
        END;
        CREATE TRIGGER IF NOT EXISTS observations_ad AFTER DELETE ON observations BEGIN
            DELETE FROM search_fts WHERE entity_type = 'observation' AND entity_id = old.id;
        END;

        CREATE TRIGGER IF NOT EXISTS sessions_ai AFTER INSERT ON sessions BEGIN
            INSERT INTO search_fts(entity_type, entity_id, title, body, tags)
            VALUES ('session', new.id, COALESCE(new.external_session_ref, ''),
                    COALESCE(new.summary, ''), '');
        END;
        CREATE TRIGGER IF NOT EXISTS sessions_au AFTER UPDATE OF summary ON sessions BEGIN
            DELETE FROM search_fts WHERE entity_type = 'session' AND entity_id = old.id;
            INSERT INTO search_fts(entity_type, entity_id, title, body, tags)
            VALUES ('session', new.id, COALESCE(new.external_session_ref, ''),
                    COALESCE(new.summary, ''), '');
        END;
        CREATE TRIGGER IF NOT EXISTS sessions_ad AFTER DELETE ON sessions BEGIN
            DELETE FROM search_fts WHERE entity_type = 'session' AND entity_id = old.id;
        END;

        CREATE TRIGGER IF NOT EXISTS conversations_ai AFTER INSERT ON conversations BEGIN
            INSERT INTO search_fts(entity_type, entity_id, title, body, tags)
            VALUES ('conversation', new.id, new.topic_label, '', '');
        END;
        CREATE TRIGGER IF NOT EXISTS conversations_au AFTER UPDATE OF topic_label ON conversations
        BEGIN
            DELETE FROM search_fts WHERE entity_type = 'conversation' AND entity_id = old.id;
            INSERT INTO search_fts(entity_type, entity_id, title, body, tags)
            VALUES ('conversation', new.id, new.topic_label, '', '');
        END;
        CREATE TRIGGER IF NOT EXISTS conversations_ad AFTER DELETE ON conversations BEGIN
            DELETE FROM search_fts WHERE entity_type = 'conversation' AND entity_id = old.id;
        END;
        """
    )
    _ensure_column(conn, "knowledge_items", "tags_json", "TEXT NOT NULL DEFAULT '[]'")
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS knowledge_items_immutable
        BEFORE UPDATE OF content, kind, tags_text, tags_json ON knowledge_items
        BEGIN
            SELECT RAISE(ABORT, 'knowledge item content is immutable');
        END
        """
    )


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, column_type: str) -> None:
    existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    if column in existing:
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")


def initialize_vectors(conn: sqlite3.Connection) -> bool:
    """Load sqlite-vec and create the vector index; False when unavailable."""

    try:
        _load_sqlite_vec(conn)
    except Exception as exc:
        logger.warning(
            "sqlite-vec unavailable; vector retrieval disabled (set ENGRAM_EMBEDDING_DISABLED=1 "
            "to silence)",
            exc_info=exc,
        )
        return False
    conn.execute(
        f"""
        CREATE VIRTUAL TABLE IF NOT EXISTS entity_vectors USING vec0(
            embedding float[{EMBEDDING_DIM}] distance_metric=cosine,
            owner_type TEXT,
            owner_id INTEGER,
            chunk_index INTEGER,
            content_hash TEXT,
            model TEXT
        );
        """
    )
    return True


def to_json(data: Any) -> str:
    if data is None:
        payload: Any = {}
    else:
        payload = data
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def from_json(text: str | None) -> dict[str, Any]:
    if not text:
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {}


def rows_to_dicts(rows: Iterable[sqlite3.Row]) -> list[dict[str, Any]]:
    return [dict(r) for r in rows]

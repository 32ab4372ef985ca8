from __future__ import annotations

import contextlib
import datetime as dt
import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator, Sequence
from pathlib import Path
from typing import Any

from .. import db
from ..errors import ConfigurationError, TransientStorageError
from ..semantic import deserialize, embedding_model_id, serialize
from . import search as store_search
from . import vectors as store_vectors
from .types import (
    CONVERSATION_CLOSED,
    CONVERSATION_OPEN,
    ENTITY_TYPES,
    SESSION_ACTIVE,
    SESSION_CRASHED,
    SESSION_ENDED,
    CheckpointMarker,
    Conversation,
    EntityRecord,
    KnowledgeItem,
    Observation,
    Project,
    Session,
    validate_knowledge_kind,
)

logger = logging.getLogger(__name__)


class MemoryStore:
    """Durable entities plus the keyword (FTS5) and vector (sqlite-vec) indexes.

    Every write that touches an index runs inside :meth:`transaction`, so a
    reader never sees a row without its index entries or the reverse.
    """

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        check_same_thread: bool = True,
        vectors: bool = True,
    ):
        self.db_path = Path(db_path).expanduser()
        try:
            self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
            db.initialize_schema(self.conn)
        except (sqlite3.Error, OSError) as exc:
            raise ConfigurationError(
                "failed to open memory store", {"path": str(self.db_path)}
            ) from exc
        self.vectors_available = db.initialize_vectors(self.conn) if vectors else False
        self._lock = threading.RLock()
        self._tx_depth = 0
        self.conn.execute(
            """
            INSERT INTO checkpoint(id, last_observation_id, clean_shutdown, updated_at)
            VALUES (1, 0, 1, ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (self._now_iso(),),
        )

    @staticmethod
    def _now_iso() -> str:
        return dt.datetime.now(dt.UTC).isoformat()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT; nested use joins the outer transaction."""

        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self.conn
                finally:
                    self._tx_depth -= 1
                return
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                raise TransientStorageError(
                    "could not begin transaction", {"error": str(exc)}
                ) from exc
            self._tx_depth = 1
            try:
                yield self.conn
                self.conn.commit()
            except sqlite3.OperationalError as exc:
                self.conn.rollback()
                raise TransientStorageError("transaction failed", {"error": str(exc)}) from exc
            except BaseException:
                self.conn.rollback()
                raise
            finally:
                self._tx_depth = 0

    def close(self) -> None:
        self.conn.close()

    # Projects

    def get_or_create_project(self, root_path: str, name: str | None = None) -> Project:
        root_path = str(Path(root_path).expanduser())
        row = self.conn.execute(
            "SELECT * FROM projects WHERE root_path = ?", (root_path,)
        ).fetchone()
        if row is None:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO projects(root_path, name, created_at) VALUES (?, ?, ?)
                    ON CONFLICT(root_path) DO NOTHING
                    """,
                    (root_path, name or Path(root_path).name or root_path, self._now_iso()),
                )
            row = self.conn.execute(
                "SELECT * FROM projects WHERE root_path = ?", (root_path,)
            ).fetchone()
        return Project(
            id=int(row["id"]),
            root_path=row["root_path"],
            name=row["name"],
            created_at=row["created_at"],
        )

    def find_projects(self, project: str) -> list[Project]:
        """Match a root path exactly, or a basename against the last path segment."""

        project = project.strip().rstrip("/\\")
        if not project:
            return []
        base = project.replace("\\", "/").split("/")[-1]
        rows = self.conn.execute(
            """
            SELECT * FROM projects
            WHERE root_path = ? OR name = ? OR root_path LIKE ? OR root_path LIKE ?
            """,
            (project, base, f"%/{base}", f"%\\{base}"),
        ).fetchall()
        return [Project(int(r["id"]), r["root_path"], r["name"], r["created_at"]) for r in rows]

    # Sessions

    @staticmethod
    def _session_from_row(row: sqlite3.Row) -> Session:
        return Session(
            id=int(row["id"]),
            external_session_ref=row["external_session_ref"],
            project_id=int(row["project_id"]),
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            status=row["status"],
            summary=row["summary"],
        )

    def start_session(self, project_id: int, external_session_ref: str | None = None) -> Session:
        now = self._now_iso()
        with self.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO sessions(external_session_ref, project_id, started_at, status)
                VALUES (?, ?, ?, ?)
                """,
                (external_session_ref, project_id, now, SESSION_ACTIVE),
            )
            session_id = cur.lastrowid
            if session_id is None:
                raise RuntimeError("Failed to create session")
            conn.execute(
                """
                UPDATE checkpoint SET session_id = ?, clean_shutdown = 0, updated_at = ?
                WHERE id = 1
                """,
                (session_id, now),
            )
        session = self.get_session(int(session_id))
        if session is None:
            raise RuntimeError("Failed to load session")
        return session

    def get_session(self, session_id: int) -> Session | None:
        row = self.conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return self._session_from_row(row) if row else None

    def session_by_external_ref(self, external_session_ref: str) -> Session | None:
        row = self.conn.execute(
            """
            SELECT * FROM sessions WHERE external_session_ref = ?
            ORDER BY id DESC LIMIT 1
            """,
            (external_session_ref,),
        ).fetchone()
        return self._session_from_row(row) if row else None

    def attach_external_ref(self, session_id: int, external_session_ref: str | None) -> Session:
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE sessions SET external_session_ref = ?
                WHERE id = ? AND external_session_ref IS NULL
                """,
                (external_session_ref, session_id),
            )
        session = self.get_session(session_id)
        if session is None:
            raise ValueError(f"Session {session_id} does not exist")
        return session

    def active_sessions(self) -> list[Session]:
        rows = self.conn.execute(
            "SELECT * FROM sessions WHERE status = ? ORDER BY id ASC", (SESSION_ACTIVE,)
        ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def end_session(
        self,
        session_id: int,
        *,
        summary: str | None = None,
        status: str = SESSION_ENDED,
        ended_at: str | None = None,
    ) -> None:
        """Close the session and its open conversation in one transaction."""

        if status not in {SESSION_ENDED, SESSION_CRASHED}:
            raise ValueError(f"Invalid terminal session status '{status}'")
        ended_at = ended_at or self._now_iso()
        prepared = None
        if summary:
            prepared = store_vectors.prepare_vectors([summary])
        with self.transaction() as conn:
            self._close_open_conversations(conn, session_id, ended_at)
            cur = conn.execute(
                """
                UPDATE sessions
                SET ended_at = ?, status = ?, summary = COALESCE(?, summary)
                WHERE id = ? AND status = ?
                """,
                (ended_at, status, summary, session_id, SESSION_ACTIVE),
            )
            if cur.rowcount and prepared and self.vectors_available:
                store_vectors.delete_vectors(conn, "session", session_id)
                store_vectors.write_vectors(
                    conn, "session", session_id, prepared[0], embedding_model_id()
                )

    # Conversations

    @staticmethod
    def _conversation_from_row(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=int(row["id"]),
            session_id=int(row["session_id"]),
            topic_label=row["topic_label"],
            topic_representation=deserialize(row["topic_representation"]),
            prompt_count=int(row["prompt_count"] or 0),
            created_at=row["created_at"],
            last_active_at=row["last_active_at"],
            status=row["status"],
            closed_at=row["closed_at"],
        )

    def get_conversation(self, conversation_id: int) -> Conversation | None:
        row = self.conn.execute(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        ).fetchone()
        return self._conversation_from_row(row) if row else None

    def open_conversation_for(self, session_id: int) -> Conversation | None:
        row = self.conn.execute(
            "SELECT * FROM conversations WHERE session_id = ? AND status = ?",
            (session_id, CONVERSATION_OPEN),
        ).fetchone()
        return self._conversation_from_row(row) if row else None

    def list_conversations(
        self, session_id: int | None = None, limit: int = 20
    ) -> list[Conversation]:
        if session_id is None:
            rows = self.conn.execute(
                "SELECT * FROM conversations ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM conversations WHERE session_id = ? ORDER BY id DESC LIMIT ?",
                (session_id, limit),
            ).fetchall()
        return [self._conversation_from_row(row) for row in rows]

    def recent_conversations(self, project_id: int, limit: int = 10) -> list[Conversation]:
        rows = self.conn.execute(
            """
            SELECT conversations.* FROM conversations
            JOIN sessions ON sessions.id = conversations.session_id
            WHERE sessions.project_id = ?
            ORDER BY conversations.last_active_at DESC, conversations.id DESC
            LIMIT ?
            """,
            (project_id, limit),
        ).fetchall()
        return [self._conversation_from_row(row) for row in rows]

    def _close_open_conversations(
        self, conn: sqlite3.Connection, session_id: int, closed_at: str
    ) -> int:
        cur = conn.execute(
            """
            UPDATE conversations SET status = ?, closed_at = ?
            WHERE session_id = ? AND status = ?
            """,
            (CONVERSATION_CLOSED, closed_at, session_id, CONVERSATION_OPEN),
        )
        return cur.rowcount

    def start_conversation(
        self, session_id: int, topic_label: str, representation: Sequence[float]
    ) -> Conversation:
        """Close the session's open conversation (if any) and open a new one."""

        now = self._now_iso()
        with self.transaction() as conn:
            self._close_open_conversations(conn, session_id, now)
            cur = conn.execute(
                """
                INSERT INTO conversations(
                    session_id, topic_label, topic_representation, prompt_count,
                    created_at, last_active_at, status
                )
                VALUES (?, ?, ?, 1, ?, ?, ?)
                """,
                (session_id, topic_label, serialize(representation), now, now, CONVERSATION_OPEN),
            )
            conversation_id = cur.lastrowid
            if conversation_id is None:
                raise RuntimeError("Failed to create conversation")
            if self.vectors_available and representation:
                store_vectors.replace_vector(
                    conn, "conversation", int(conversation_id), representation, embedding_model_id()
                )
        conversation = self.get_conversation(int(conversation_id))
        if conversation is None:
            raise RuntimeError("Failed to load conversation")
        return conversation

    def update_topic(
        self, conversation_id: int, representation: Sequence[float], prompt_count: int
    ) -> Conversation:
        now = self._now_iso()
        with self.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE conversations
                SET topic_representation = ?, prompt_count = ?, last_active_at = ?
                WHERE id = ? AND status = ?
                """,
                (serialize(representation), prompt_count, now, conversation_id, CONVERSATION_OPEN),
            )
            if cur.rowcount != 1:
                raise ValueError(f"Conversation {conversation_id} is not open")
            if self.vectors_available and representation:
                store_vectors.replace_vector(
                    conn, "conversation", conversation_id, representation, embedding_model_id()
                )
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            raise RuntimeError("Failed to load conversation")
        return conversation

    def close_conversation(self, conversation_id: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE conversations SET status = ?, closed_at = ? WHERE id = ? AND status = ?",
                (CONVERSATION_CLOSED, self._now_iso(), conversation_id, CONVERSATION_OPEN),
            )

    # Observations and the checkpoint marker

    def persist_observations(self, batch: Sequence[Observation]) -> list[int]:
        """Insert a batch and advance the checkpoint marker in one transaction."""

        if not batch:
            return []
        prepared = None
        if self.vectors_available:
            prepared = store_vectors.prepare_vectors([obs.searchable_text() for obs in batch])
        model = embedding_model_id()
        ids: list[int] = []
        with self.transaction() as conn:
            for index, obs in enumerate(batch):
                cur = conn.execute(
                    """
                    INSERT INTO observations(session_id, conversation_id, kind, payload_json, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        obs.session_id,
                        obs.conversation_id,
                        obs.kind,
                        db.to_json(obs.payload),
                        obs.created_at,
                    ),
                )
                if cur.lastrowid is None:
                    raise RuntimeError("Failed to insert observation")
                ids.append(int(cur.lastrowid))
                if prepared is not None:
                    store_vectors.write_vectors(
                        conn, "observation", ids[-1], prepared[index], model
                    )
            conn.execute(
                "UPDATE checkpoint SET last_observation_id = ?, updated_at = ? WHERE id = 1",
                (ids[-1], self._now_iso()),
            )
        for obs, observation_id in zip(batch, ids, strict=True):
            obs.id = observation_id
        return ids

    def get_observation(self, observation_id: int) -> Observation | None:
        row = self.conn.execute(
            "SELECT * FROM observations WHERE id = ?", (observation_id,)
        ).fetchone()
        if row is None:
            return None
        return Observation(
            id=int(row["id"]),
            session_id=int(row["session_id"]),
            conversation_id=row["conversation_id"],
            kind=row["kind"],
            payload=db.from_json(row["payload_json"]),
            created_at=row["created_at"],
        )

    def observation_count(self, session_id: int | None = None) -> int:
        if session_id is None:
            row = self.conn.execute("SELECT COUNT(*) FROM observations").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM observations WHERE session_id = ?", (session_id,)
            ).fetchone()
        return int(row[0])

    def max_observation_id(self) -> int:
        row = self.conn.execute("SELECT COALESCE(MAX(id), 0) FROM observations").fetchone()
        return int(row[0])

    def checkpoint(self) -> CheckpointMarker:
        row = self.conn.execute("SELECT * FROM checkpoint WHERE id = 1").fetchone()
        return CheckpointMarker(
            last_observation_id=int(row["last_observation_id"]),
            session_id=row["session_id"],
            clean_shutdown=bool(row["clean_shutdown"]),
            updated_at=row["updated_at"],
        )

    def reset_checkpoint(self, last_observation_id: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE checkpoint
                SET last_observation_id = ?, clean_shutdown = 1, updated_at = ?
                WHERE id = 1
                """,
                (last_observation_id, self._now_iso()),
            )

    def mark_clean_shutdown(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE checkpoint SET clean_shutdown = 1, updated_at = ? WHERE id = 1",
                (self._now_iso(),),
            )

    def mark_sessions_crashed(self, session_ids: Iterable[int], ended_at: str) -> int:
        marked = 0
        with self.transaction():
            for session_id in session_ids:
                session = self.get_session(session_id)
                if session is None or session.status != SESSION_ACTIVE:
                    continue
                self.end_session(session_id, status=SESSION_CRASHED, ended_at=ended_at)
                marked += 1
        return marked

    # Knowledge items

    @staticmethod
    def _knowledge_from_row(row: sqlite3.Row) -> KnowledgeItem:
        tags = json.loads(row["tags_json"] or "[]")
        if not tags and row["tags_text"]:
            # Rows written before tags_json existed.
            tags = row["tags_text"].split()
        return KnowledgeItem(
            id=int(row["id"]),
            project_id=int(row["project_id"]),
            kind=row["kind"],
            content=row["content"],
            tags=tags,
            created_at=row["created_at"],
            superseded_by=row["superseded_by"],
        )

    def save_knowledge(
        self,
        project_id: int,
        kind: str,
        content: str,
        tags: Iterable[str] | None = None,
        *,
        supersedes: int | None = None,
    ) -> KnowledgeItem:
        """Store a knowledge item; content and tags are kept exactly as given."""

        kind = validate_knowledge_kind(kind)
        if not content or not content.strip():
            raise ValueError("knowledge content is required")
        tag_list = list(tags or [])
        if not all(isinstance(tag, str) for tag in tag_list):
            raise ValueError("knowledge tags must be strings")
        prepared = None
        if self.vectors_available:
            prepared = store_vectors.prepare_vectors([f"{kind}\n{content}"])
        with self.transaction() as conn:
            if supersedes is not None:
                previous = conn.execute(
                    "SELECT superseded_by FROM knowledge_items WHERE id = ?", (supersedes,)
                ).fetchone()
                if previous is None:
                    raise ValueError(f"Knowledge item {supersedes} does not exist")
                if previous["superseded_by"] is not None:
                    raise ValueError(f"Knowledge item {supersedes} is already superseded")
            cur = conn.execute(
                """
                INSERT INTO knowledge_items(
                    project_id, kind, content, tags_text, tags_json, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    project_id,
                    kind,
                    content,
                    " ".join(tag_list),
                    json.dumps(tag_list, ensure_ascii=False),
                    self._now_iso(),
                ),
            )
            if cur.lastrowid is None:
                raise RuntimeError("Failed to create knowledge item")
            item_id = int(cur.lastrowid)
            if supersedes is not None:
                conn.execute(
                    "UPDATE knowledge_items SET superseded_by = ? WHERE id = ?",
                    (item_id, supersedes),
                )
            if prepared is not None:
                store_vectors.write_vectors(
                    conn, "knowledge", item_id, prepared[0], embedding_model_id()
                )
        item = self.get_knowledge(item_id)
        if item is None:
            raise RuntimeError("Failed to load knowledge item")
        return item

    def get_knowledge(self, item_id: int) -> KnowledgeItem | None:
        row = self.conn.execute(
            "SELECT * FROM knowledge_items WHERE id = ?", (item_id,)
        ).fetchone()
        return self._knowledge_from_row(row) if row else None

    def recent_knowledge(
        self, project_id: int, limit: int = 10, *, include_superseded: bool = False
    ) -> list[KnowledgeItem]:
        clause = "" if include_superseded else "AND superseded_by IS NULL"
        rows = self.conn.execute(
            f"""
            SELECT * FROM knowledge_items
            WHERE project_id = ? {clause}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (project_id, limit),
        ).fetchall()
        return [self._knowledge_from_row(row) for row in rows]

    # Entities (search and memory_get)

    def get_entity(self, entity_type: str, entity_id: int) -> dict[str, Any] | None:
        records = self.load_entities([(entity_type, entity_id)])
        record = records.get((entity_type, entity_id))
        return dict(record.data) if record else None

    def load_entities(
        self, keys: Iterable[tuple[str, int]]
    ) -> dict[tuple[str, int], EntityRecord]:
        by_type: dict[str, list[int]] = {}
        for entity_type, entity_id in keys:
            if entity_type not in ENTITY_TYPES:
                continue
            by_type.setdefault(entity_type, []).append(int(entity_id))
        records: dict[tuple[str, int], EntityRecord] = {}
        for entity_type, ids in by_type.items():
            for record in self._load_type(entity_type, ids):
                records[(record.entity_type, record.entity_id)] = record
        return records

    def _load_type(self, entity_type: str, ids: list[int]) -> list[EntityRecord]:
        placeholders = ",".join("?" for _ in ids)
        if entity_type == "knowledge":
            rows = self.conn.execute(
                f"""
                SELECT knowledge_items.*, projects.root_path
                FROM knowledge_items JOIN projects ON projects.id = knowledge_items.project_id
                WHERE knowledge_items.id IN ({placeholders})
                """,
                ids,
            ).fetchall()
            records = []
            for row in rows:
                item = self._knowledge_from_row(row)
                records.append(
                    EntityRecord(
                        entity_type="knowledge",
                        entity_id=item.id,
                        data={
                            "id": item.id,
                            "project_id": item.project_id,
                            "kind": item.kind,
                            "content": item.content,
                            "tags": item.tags,
                            "created_at": item.created_at,
                            "superseded_by": item.superseded_by,
                        },
                        created_at=item.created_at,
                        text=item.content,
                        project_id=item.project_id,
                        project_root=row["root_path"],
                    )
                )
            return records
        if entity_type == "observation":
            rows = self.conn.execute(
                f"""
                SELECT observations.*, sessions.project_id, projects.root_path
                FROM observations
                JOIN sessions ON sessions.id = observations.session_id
                JOIN projects ON projects.id = sessions.project_id
                WHERE observations.id IN ({placeholders})
                """,
                ids,
            ).fetchall()
            records = []
            for row in rows:
                payload = db.from_json(row["payload_json"])
                obs = Observation(
                    session_id=int(row["session_id"]),
                    kind=row["kind"],
                    payload=payload,
                    conversation_id=row["conversation_id"],
                    created_at=row["created_at"],
                    id=int(row["id"]),
                )
                records.append(
                    EntityRecord(
                        entity_type="observation",
                        entity_id=int(row["id"]),
                        data={
                            "id": int(row["id"]),
                            "session_id": obs.session_id,
                            "conversation_id": obs.conversation_id,
                            "kind": obs.kind,
                            "payload": payload,
                            "created_at": obs.created_at,
                        },
                        created_at=obs.created_at,
                        text=obs.searchable_text(),
                        project_id=int(row["project_id"]),
                        project_root=row["root_path"],
                        session_id=obs.session_id,
                    )
                )
            return records
        if entity_type == "session":
            rows = self.conn.execute(
                f"""
                SELECT sessions.*, projects.root_path
                FROM sessions JOIN projects ON projects.id = sessions.project_id
                WHERE sessions.id IN ({placeholders})
                """,
                ids,
            ).fetchall()
            records = []
            for row in rows:
                session = self._session_from_row(row)
                records.append(
                    EntityRecord(
                        entity_type="session",
                        entity_id=session.id,
                        data={
                            "id": session.id,
                            "external_session_ref": session.external_session_ref,
                            "project_id": session.project_id,
                            "started_at": session.started_at,
                            "ended_at": session.ended_at,
                            "status": session.status,
                            "summary": session.summary,
                        },
                        created_at=session.started_at,
                        text=session.summary or session.external_session_ref or "",
                        project_id=session.project_id,
                        project_root=row["root_path"],
                        session_id=session.id,
                    )
                )
            return records
        rows = self.conn.execute(
            f"""
            SELECT conversations.*, sessions.project_id, projects.root_path
            FROM conversations
            JOIN sessions ON sessions.id = conversations.session_id
            JOIN projects ON projects.id = sessions.project_id
            WHERE conversations.id IN ({placeholders})
            """,
            ids,
        ).fetchall()
        records = []
        for row in rows:
            conversation = self._conversation_from_row(row)
            records.append(
                EntityRecord(
                    entity_type="conversation",
                    entity_id=conversation.id,
                    data={
                        "id": conversation.id,
                        "session_id": conversation.session_id,
                        "topic_label": conversation.topic_label,
                        "prompt_count": conversation.prompt_count,
                        "created_at": conversation.created_at,
                        "last_active_at": conversation.last_active_at,
                        "closed_at": conversation.closed_at,
                        "status": conversation.status,
                    },
                    created_at=conversation.created_at,
                    text=conversation.topic_label,
                    project_id=int(row["project_id"]),
                    project_root=row["root_path"],
                    session_id=conversation.session_id,
                )
            )
        return records

    def keyword_candidates(
        self, text: str, *, limit: int, entity_types: Sequence[str] | None = None
    ) -> dict[tuple[str, int], float]:
        return store_search.keyword_candidates(
            self, text, limit=limit, entity_types=entity_types
        )

    def vector_candidates(
        self,
        query_vector: Sequence[float],
        *,
        limit: int,
        entity_types: Sequence[str] | None = None,
    ) -> dict[tuple[str, int], float]:
        return store_search.vector_candidates(
            self, query_vector, limit=limit, entity_types=entity_types
        )

    def backfill_vectors(
        self,
        entity_types: Sequence[str] | None = None,
        limit: int | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        return store_vectors.backfill_vectors(
            self, entity_types=entity_types, limit=limit, dry_run=dry_run
        )

    def stats(self) -> dict[str, Any]:
        counts = {}
        for table in ("projects", "sessions", "conversations", "observations", "knowledge_items"):
            counts[table] = int(self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
        vector_rows = 0
        if self.vectors_available:
            vector_rows = int(
                self.conn.execute("SELECT COUNT(*) FROM entity_vectors").fetchone()[0]
            )
        marker = self.checkpoint()
        return {
            "database": {
                "path": str(self.db_path),
                "size_bytes": self.db_path.stat().st_size if self.db_path.exists() else 0,
                "vectors_available": self.vectors_available,
            },
            "counts": {**counts, "vectors": vector_rows},
            "checkpoint": {
                "last_observation_id": marker.last_observation_id,
                "session_id": marker.session_id,
                "clean_shutdown": marker.clean_shutdown,
            },
        }

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..errors import SemanticUnavailableError
from ..semantic import chunk_text, embed_vectors, embedding_model_id, hash_text, serialize

if TYPE_CHECKING:
    from ._store import MemoryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedChunk:
    chunk_index: int
    content_hash: str
    vector: list[float]


def prepare_vectors(texts: Sequence[str]) -> list[list[PreparedChunk]] | None:
    """Chunk and embed each text ahead of a write transaction.

    Returns None when no embedding can be computed; callers then persist rows
    without vector entries and leave them to ``backfill_vectors``.
    """

    chunked = [chunk_text(text) for text in texts]
    flat = [chunk for chunks in chunked for chunk in chunks]
    if not flat:
        return [[] for _ in texts]
    try:
        vectors = embed_vectors(flat)
    except SemanticUnavailableError as exc:
        logger.debug("skipping vector index entries: %s", exc)
        return None
    prepared: list[list[PreparedChunk]] = []
    cursor = 0
    for chunks in chunked:
        entry = []
        for index, chunk in enumerate(chunks):
            entry.append(PreparedChunk(index, hash_text(chunk), vectors[cursor]))
            cursor += 1
        prepared.append(entry)
    return prepared


def write_vectors(
    conn: sqlite3.Connection,
    owner_type: str,
    owner_id: int,
    chunks: Sequence[PreparedChunk],
    model: str,
) -> int:
    inserted = 0
    for chunk in chunks:
        conn.execute(
            """
            INSERT INTO entity_vectors(embedding, owner_type, owner_id, chunk_index, content_hash, model)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (serialize(chunk.vector), owner_type, owner_id, chunk.chunk_index, chunk.content_hash, model),
        )
        inserted += 1
    return inserted


def delete_vectors(conn: sqlite3.Connection, owner_type: str, owner_id: int) -> None:
    rowids = conn.execute(
        "SELECT rowid FROM entity_vectors WHERE owner_type = ? AND owner_id = ?",
        (owner_type, owner_id),
    ).fetchall()
    for row in rowids:
        conn.execute("DELETE FROM entity_vectors WHERE rowid = ?", (row[0],))


def replace_vector(
    conn: sqlite3.Connection,
    owner_type: str,
    owner_id: int,
    vector: Sequence[float],
    model: str,
) -> None:
    delete_vectors(conn, owner_type, owner_id)
    chunk = PreparedChunk(0, hash_text(f"{owner_type}:{owner_id}"), list(vector))
    write_vectors(conn, owner_type, owner_id, [chunk], model)


def _unindexed_rows(
    store: MemoryStore, entity_type: str, limit: int | None
) -> list[tuple[int, str]]:
    queries = {
        "knowledge": "SELECT id, kind || ' ' || content AS text FROM knowledge_items",
        "observation": "SELECT id, kind || ' ' || payload_json AS text FROM observations",
        "session": "SELECT id, summary AS text FROM sessions WHERE summary IS NOT NULL",
    }
    sql = queries[entity_type]
    rows = store.conn.execute(sql).fetchall()
    indexed = {
        int(row[0])
        for row in store.conn.execute(
            "SELECT owner_id FROM entity_vectors WHERE owner_type = ?", (entity_type,)
        ).fetchall()
    }
    pending = [(int(row["id"]), str(row["text"] or "")) for row in rows if row["id"] not in indexed]
    if limit:
        pending = pending[:limit]
    return pending


def backfill_vectors(
    store: MemoryStore,
    entity_types: Sequence[str] | None = None,
    limit: int | None = None,
    dry_run: bool = False,
) -> dict[str, Any]:
    """Embed rows that were persisted while the embedding model was unavailable."""

    if not store.vectors_available:
        return {"checked": 0, "inserted": 0, "available": False}
    checked = 0
    inserted = 0
    model = embedding_model_id()
    for entity_type in entity_types or ("knowledge", "observation", "session"):
        if entity_type not in {"knowledge", "observation", "session"}:
            continue
        pending = _unindexed_rows(store, entity_type, limit)
        checked += len(pending)
        if not pending:
            continue
        prepared = prepare_vectors([text for _, text in pending])
        if prepared is None:
            return {"checked": checked, "inserted": inserted, "available": False}
        if dry_run:
            inserted += sum(len(chunks) for chunks in prepared)
            continue
        with store.transaction() as conn:
            for (owner_id, _), chunks in zip(pending, prepared, strict=True):
                inserted += write_vectors(conn, entity_type, owner_id, chunks, model)
    return {"checked": checked, "inserted": inserted, "available": True}

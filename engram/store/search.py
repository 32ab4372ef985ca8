from __future__ import annotations

import re
import sqlite3
from collections.abc import Sequence
from typing import TYPE_CHECKING

from ..errors import CorruptIndexError
from ..semantic import serialize

if TYPE_CHECKING:
    from ._store import MemoryStore

EntityKey = tuple[str, int]

STOPWORDS = {
    "a",
    "an",
    "and",
    "are",
    "as",
    "at",
    "be",
    "but",
    "by",
    "for",
    "from",
    "has",
    "have",
    "i",
    "in",
    "is",
    "it",
    "me",
    "my",
    "not",
    "of",
    "on",
    "or",
    "our",
    "so",
    "that",
    "the",
    "this",
    "to",
    "was",
    "we",
    "what",
    "when",
    "where",
    "which",
    "who",
    "with",
    "you",
}


def tokenize(text: str) -> list[str]:
    tokens = [token.lower() for token in re.findall(r"[A-Za-z0-9_]+", text)]
    return [token for token in tokens if token not in STOPWORDS]


def expand_query(text: str) -> str:
    tokens = list(dict.fromkeys(tokenize(text)))
    if not tokens:
        return ""
    return " OR ".join(f'"{token}"' for token in tokens)


def _type_clause(column: str, entity_types: Sequence[str] | None) -> tuple[str, list[str]]:
    if not entity_types:
        return "", []
    placeholders = ",".join("?" for _ in entity_types)
    return f" AND {column} IN ({placeholders})", list(entity_types)


def keyword_candidates(
    store: MemoryStore,
    text: str,
    *,
    limit: int,
    entity_types: Sequence[str] | None = None,
) -> dict[EntityKey, float]:
    """Raw bm25 relevance (higher is better) for entities matching ``text``."""

    expanded = expand_query(text)
    if not expanded:
        return {}
    clause, params = _type_clause("entity_type", entity_types)
    try:
        rows = store.conn.execute(
            f"""
            SELECT entity_type, entity_id, -bm25(search_fts, 0.0, 0.0, 1.0, 1.0, 0.5) AS score
            FROM search_fts
            WHERE search_fts MATCH ?{clause}
            ORDER BY score DESC
            LIMIT ?
            """,
            (expanded, *params, limit),
        ).fetchall()
    except sqlite3.Error as exc:
        raise CorruptIndexError("keyword index query failed", "keyword") from exc
    results: dict[EntityKey, float] = {}
    for row in rows:
        key = (str(row["entity_type"]), int(row["entity_id"]))
        results[key] = max(results.get(key, 0.0), float(row["score"]))
    return results


def vector_candidates(
    store: MemoryStore,
    query_vector: Sequence[float],
    *,
    limit: int,
    entity_types: Sequence[str] | None = None,
) -> dict[EntityKey, float]:
    """Cosine similarity in [0, 1] for nearest entities; best chunk wins."""

    if not store.vectors_available:
        raise CorruptIndexError("vector index unavailable", "vector")
    clause, params = _type_clause("knn.owner_type", entity_types)
    try:
        rows = store.conn.execute(
            f"""
            WITH knn AS (
                SELECT owner_type, owner_id, distance
                FROM entity_vectors
                WHERE embedding MATCH ?
                  AND k = ?
            )
            SELECT knn.owner_type, knn.owner_id, knn.distance
            FROM knn
            WHERE 1 = 1{clause}
            ORDER BY knn.distance ASC
            """,
            (serialize(query_vector), limit, *params),
        ).fetchall()
    except sqlite3.Error as exc:
        raise CorruptIndexError("vector index query failed", "vector") from exc
    results: dict[EntityKey, float] = {}
    for row in rows:
        key = (str(row["owner_type"]), int(row["owner_id"]))
        similarity = min(1.0, max(0.0, 1.0 - float(row["distance"])))
        results[key] = max(results.get(key, 0.0), similarity)
    return results

from __future__ import annotations

import hashlib
import logging
import math
import os
import re
import struct
from collections.abc import Iterable, Sequence
from typing import Protocol

import sqlite_vec

from .errors import ConfigurationError, SemanticUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "BAAI/bge-small-en-v1.5"
# Width of the vector index; matches the default model.
EMBEDDING_DIM = 384


class EmbeddingClient(Protocol):
    model: str

    def embed(self, texts: Iterable[str]) -> list[list[float]]: ...


class _FastEmbedClient:
    def __init__(self, model: str) -> None:
        try:
            from fastembed import TextEmbedding
        except Exception as exc:  # pragma: no cover
            raise RuntimeError("fastembed is required for semantic search") from exc
        self.model = model
        self._embedder = TextEmbedding(model_name=model)

    def embed(self, texts: Iterable[str]) -> list[list[float]]:
        embeddings = self._embedder.embed(list(texts))
        return [[float(x) for x in vec] for vec in embeddings]


_CLIENT: EmbeddingClient | None = None
_CLIENT_FAILED = False
_MODEL: str | None = None
_DISABLED = False


def set_embedding_client(client: EmbeddingClient | None) -> None:
    """Install (or clear, with None) the process-wide embedding client."""

    global _CLIENT, _CLIENT_FAILED
    _CLIENT = client
    _CLIENT_FAILED = False


def configure_embeddings(model: str | None = None, *, disabled: bool = False) -> None:
    global _MODEL, _DISABLED
    _MODEL = model
    _DISABLED = disabled


def get_embedding_client(model: str | None = None) -> EmbeddingClient | None:
    global _CLIENT, _CLIENT_FAILED
    if _CLIENT is not None:
        return _CLIENT
    if _DISABLED:
        return None
    if os.getenv("ENGRAM_EMBEDDING_DISABLED", "").lower() in {"1", "true", "yes"}:
        return None
    if _CLIENT_FAILED:
        return None
    model = model or _MODEL or os.getenv("ENGRAM_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL)
    try:
        _CLIENT = _FastEmbedClient(model=model)
    except Exception as exc:
        logger.warning("embedding model %s failed to load", model, exc_info=exc)
        _CLIENT_FAILED = True
        _CLIENT = None
    return _CLIENT


def embed_vectors(texts: Sequence[str]) -> list[list[float]]:
    """Embed texts; raises SemanticUnavailableError instead of returning partial output."""

    client = get_embedding_client()
    if client is None:
        raise SemanticUnavailableError("no embedding client available")
    try:
        vectors = client.embed(texts)
    except Exception as exc:
        raise SemanticUnavailableError(
            "embedding failed", {"model": getattr(client, "model", "unknown")}
        ) from exc
    if len(vectors) != len(texts):
        raise SemanticUnavailableError(
            "embedding returned wrong number of vectors",
            {"expected": len(texts), "got": len(vectors)},
        )
    widths = {len(vector) for vector in vectors}
    if widths - {EMBEDDING_DIM}:
        raise SemanticUnavailableError(
            "embedding width does not match the vector index",
            {
                "model": getattr(client, "model", "unknown"),
                "expected": EMBEDDING_DIM,
                "got": sorted(widths),
            },
        )
    return [normalize(vector) for vector in vectors]


def check_embedding_dimension() -> int | None:
    """Embed one sample with the configured model and compare its width with the index.

    Returns the width, or None when no model is available (vector search then
    degrades). Raises ConfigurationError when the model loads but its output
    cannot be stored in the vector index.
    """

    client = get_embedding_client()
    if client is None:
        return None
    try:
        [vector] = client.embed(["engram dimension check"])
    except Exception as exc:
        logger.warning("embedding model failed its startup width check", exc_info=exc)
        return None
    if len(vector) != EMBEDDING_DIM:
        raise ConfigurationError(
            "embedding model width does not match the vector index",
            {
                "model": getattr(client, "model", "unknown"),
                "expected": EMBEDDING_DIM,
                "got": len(vector),
            },
        )
    return len(vector)


def embedding_model_id() -> str:
    client = get_embedding_client()
    return getattr(client, "model", "unknown") if client else "none"


def serialize(vector: Sequence[float]) -> bytes:
    return sqlite_vec.serialize_float32(list(vector))


def deserialize(blob: bytes | None) -> list[float]:
    if not blob:
        return []
    count = len(blob) // 4
    return list(struct.unpack(f"<{count}f", blob[: count * 4]))


def normalize(vector: Sequence[float]) -> list[float]:
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return [float(v) for v in vector]
    return [float(v) / norm for v in vector]


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0
    dot = sum(a * b for a, b in zip(vec_a, vec_b, strict=True))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def chunk_text(text: str, max_chars: int = 1200) -> list[str]:
    cleaned = text.strip()
    if not cleaned:
        return []
    if len(cleaned) <= max_chars:
        return [cleaned]
    paragraphs = [p.strip() for p in re.split(r"\n{2,}", cleaned) if p.strip()]
    chunks: list[str] = []
    buffer: list[str] = []
    buffer_len = 0
    for paragraph in paragraphs:
        if buffer_len + len(paragraph) + 2 <= max_chars:
            buffer.append(paragraph)
            buffer_len += len(paragraph) + 2
            continue
        if buffer:
            chunks.append("\n\n".join(buffer))
            buffer = []
            buffer_len = 0
        if len(paragraph) <= max_chars:
            chunks.append(paragraph)
            continue
        sentences = [s.strip() for s in re.split(r"(?<=[.!?])\s+", paragraph) if s.strip()]
        sentence_buffer: list[str] = []
        sentence_len = 0
        for sentence in sentences:
            if sentence_len + len(sentence) + 1 <= max_chars:
                sentence_buffer.append(sentence)
                sentence_len += len(sentence) + 1
                continue
            if sentence_buffer:
                chunks.append(" ".join(sentence_buffer))
            sentence_buffer = [sentence[:max_chars]]
            sentence_len = len(sentence_buffer[0])
        if sentence_buffer:
            chunks.append(" ".join(sentence_buffer))
    if buffer:
        chunks.append("\n\n".join(buffer))
    return chunks


def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable, Iterator
from pathlib import Path

import pytest

from engram import semantic
from engram.config import CONFIG_ENV_OVERRIDES
from engram.db import EMBEDDING_DIM
from engram.store import MemoryStore


class HashingEmbedder:
    """Deterministic bag-of-words embedding: each token bumps one hashed slot."""

    model = "test-hashing"

    def embed(self, texts: Iterable[str]) -> list[list[float]]:
        vectors = []
        for text in texts:
            vector = [0.0] * EMBEDDING_DIM
            for token in re.findall(r"[a-z0-9]+", text.lower()):
                slot = int(hashlib.sha1(token.encode("utf-8")).hexdigest(), 16) % EMBEDDING_DIM
                vector[slot] += 1.0
            if not any(vector):
                vector[0] = 1.0
            vectors.append(vector)
        return vectors


@pytest.fixture(autouse=True)
def _isolate_engram_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    for env_var in CONFIG_ENV_OVERRIDES.values():
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.delenv("ENGRAM_PROJECT", raising=False)
    monkeypatch.setenv("ENGRAM_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("ENGRAM_DB", str(tmp_path / "engram.sqlite"))
    semantic.configure_embeddings(None, disabled=False)
    semantic.set_embedding_client(HashingEmbedder())
    yield
    semantic.set_embedding_client(None)
    semantic.configure_embeddings(None, disabled=False)


@pytest.fixture
def store(tmp_path: Path) -> Iterator[MemoryStore]:
    memory_store = MemoryStore(tmp_path / "mem.sqlite")
    yield memory_store
    memory_store.close()

from __future__ import annotations

import atexit
import os
import threading
import weakref
from pathlib import Path
from typing import Any

try:
    from mcp.server.fastmcp import FastMCP
except Exception as exc:  # pragma: no cover
    raise SystemExit(
        "mcp package is required for the MCP server. Install with `pip install -e .`"
    ) from exc

from .config import EngramConfig, load_config
from .projects import detect_project_root
from .retrieval import HybridRetriever
from .semantic import check_embedding_dimension, configure_embeddings
from .store import ENTITY_TYPES, KNOWLEDGE_KINDS, MemoryStore, parse_ref

ALL_PROJECTS = {"*", "all"}


def build_store(cfg: EngramConfig, *, check_same_thread: bool = True) -> MemoryStore:
    return MemoryStore(Path(cfg.db_path), check_same_thread=check_same_thread)


def build_server(cfg: EngramConfig | None = None) -> FastMCP:
    cfg = cfg or load_config()
    configure_embeddings(cfg.embedding_model, disabled=cfg.embedding_disabled)
    check_embedding_dimension()
    mcp = FastMCP("engram")
    default_project = os.environ.get("ENGRAM_PROJECT") or detect_project_root(os.getcwd())
    thread_local = threading.local()
    store_lock = threading.Lock()
    store_pool: weakref.WeakSet[MemoryStore] = weakref.WeakSet()

    def get_store() -> MemoryStore:
        store = getattr(thread_local, "store", None)
        if store is None:
            store = build_store(cfg)
            thread_local.store = store
            thread_local.retriever = HybridRetriever.from_config(store, cfg)
            with store_lock:
                store_pool.add(store)
        return store

    def close_all_stores() -> None:
        with store_lock:
            stores = list(store_pool)
        for store in stores:
            try:
                store.close()
            except Exception:
                continue

    atexit.register(close_all_stores)

    def resolve_project(project: str | None) -> str | None:
        resolved = (project or default_project or "").strip()
        if not resolved or resolved.lower() in ALL_PROJECTS:
            return None
        return resolved

    @mcp.tool()
    def memory_search(
        query: str,
        limit: int = 10,
        type: str | None = None,
        project: str | None = None,
    ) -> dict[str, Any]:
        """Hybrid keyword + semantic search over stored memory.

        ``type`` narrows to knowledge, observation, session or conversation
        (or a knowledge kind: fact, decision, preference, pattern). Pass
        ``project="all"`` to search across projects.
        """

        get_store()
        filters: dict[str, Any] = {}
        if type:
            kind = type.strip().lower()
            if kind in KNOWLEDGE_KINDS:
                filters["types"] = ["knowledge"]
                filters["kinds"] = [kind]
            else:
                filters["types"] = [kind]
        resolved_project = resolve_project(project)
        if resolved_project:
            filters["project"] = resolved_project
        response = thread_local.retriever.search(query, limit=limit, filters=filters)
        return response.to_dict()

    @mcp.tool()
    def memory_get(ref: str) -> dict[str, Any]:
        """Fetch one entity by ``type:id`` (a bare id means a knowledge item)."""

        try:
            entity_type, entity_id = parse_ref(ref)
        except ValueError as exc:
            return {"error": "invalid_ref", "detail": str(exc)}
        item = get_store().get_entity(entity_type, entity_id)
        if item is None:
            return {"error": "not_found"}
        return {"ref": f"{entity_type}:{entity_id}", "type": entity_type, **item}

    @mcp.tool()
    def memory_save(
        content: str,
        kind: str = "fact",
        tags: list[str] | None = None,
        supersedes: int | None = None,
        project: str | None = None,
    ) -> dict[str, Any]:
        """Persist a fact, decision, preference or pattern for this project."""

        store = get_store()
        root = resolve_project(project) or os.getcwd()
        project_row = store.get_or_create_project(root)
        try:
            item = store.save_knowledge(
                project_row.id, kind, content, tags or [], supersedes=supersedes
            )
        except ValueError as exc:
            return {"error": "invalid_request", "detail": str(exc)}
        return {"id": item.id, "ref": f"knowledge:{item.id}", "kind": item.kind}

    @mcp.tool()
    def memory_schema() -> dict[str, Any]:
        return {
            "types": list(ENTITY_TYPES),
            "knowledge_kinds": list(KNOWLEDGE_KINDS),
            "qualifiers": ["type:<type|kind>", "project:<path>"],
            "refs": "type:id, or a bare id for knowledge",
        }

    return mcp


def run() -> None:
    server = build_server()
    server.run()


if __name__ == "__main__":
    run()

"""Process wiring: one ``Runtime`` per host process, built by :func:`bootstrap`."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .buffer import StagingBuffer
from .config import EngramConfig, load_config
from .context import DEFAULT_CONTEXT_LIMIT, build_context
from .conversations import ConversationContinuity
from .projects import detect_project_root
from .recovery import RecoveryManager, RecoveryReport
from .retrieval import HybridRetriever
from .semantic import check_embedding_dimension, configure_embeddings
from .store import MemoryStore, Project, Session
from .store.types import SESSION_ACTIVE

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: EngramConfig
    store: MemoryStore
    project: Project
    session: Session
    buffer: StagingBuffer
    continuity: ConversationContinuity
    retriever: HybridRetriever
    recovery: RecoveryReport
    closed: bool = False

    def end_session(self, summary: str | None = None) -> None:
        """Flush, close the open conversation and mark the session ended."""

        self.buffer.flush()
        self.continuity.close_for_session(self.session.id)
        self.store.end_session(self.session.id, summary=summary)
        refreshed = self.store.get_session(self.session.id)
        if refreshed is not None:
            self.session = refreshed

    def rotate_session(self, external_session_ref: str | None) -> Session:
        """End the current session (if still active) and start a new one."""

        if self.session.status == SESSION_ACTIVE:
            self.end_session()
        self.session = self.store.start_session(self.project.id, external_session_ref)
        logger.info("session %s started (project=%s)", self.session.id, self.project.root_path)
        return self.session

    def context(self, limit: int = DEFAULT_CONTEXT_LIMIT) -> dict[str, Any]:
        """Memory context for the current project, for the host's system prompt."""

        return build_context(self.store, self.project, limit)

    def shutdown(self, summary: str | None = None) -> None:
        if self.closed:
            return
        try:
            if self.session.status == SESSION_ACTIVE:
                self.end_session(summary)
            else:
                self.buffer.flush()
            self.buffer.close()
            self.store.mark_clean_shutdown()
        finally:
            self.continuity.close()
            self.store.close()
            self.closed = True


def bootstrap(
    cwd: str | Path,
    *,
    config: EngramConfig | None = None,
    config_path: Path | None = None,
    external_session_ref: str | None = None,
    project_root: str | None = None,
) -> Runtime:
    """Open the store, reconcile the previous run and start a session.

    Recovery runs before the buffer exists, so nothing from this process can
    be appended against a stale checkpoint. Raises ConfigurationError or
    TransientStorageError; a host that cannot start should not run hooks.
    """

    cfg = config or load_config(config_path)
    configure_embeddings(cfg.embedding_model, disabled=cfg.embedding_disabled)
    check_embedding_dimension()
    store = MemoryStore(cfg.db_path)
    try:
        report = RecoveryManager(store, checkpoint_interval=cfg.checkpoint_interval).run()
        root = detect_project_root(str(cwd), project_root)
        project = store.get_or_create_project(root)
        session = store.start_session(project.id, external_session_ref)
    except BaseException:
        store.close()
        raise
    buffer = StagingBuffer(store, checkpoint_interval=cfg.checkpoint_interval)
    runtime = Runtime(
        config=cfg,
        store=store,
        project=project,
        session=session,
        buffer=buffer,
        continuity=ConversationContinuity.from_config(store, cfg),
        retriever=HybridRetriever.from_config(store, cfg),
        recovery=report,
    )
    logger.info(
        "engram runtime ready (session=%s project=%s db=%s)",
        session.id,
        project.root_path,
        store.db_path,
    )
    return runtime

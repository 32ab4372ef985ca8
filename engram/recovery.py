from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from dataclasses import dataclass, field

from .buffer import DEFAULT_CHECKPOINT_INTERVAL
from .errors import TransientStorageError
from .store import MemoryStore

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    recovered_at: str
    crashed_session_ids: list[int] = field(default_factory=list)
    checkpoint_id: int = 0
    committed_id: int = 0
    clean_shutdown: bool = True
    # Upper bound on observations lost from the previous run's memory buffer.
    max_lost: int = 0

    @property
    def gap(self) -> int:
        return max(0, self.committed_id - self.checkpoint_id)

    @property
    def crashed(self) -> bool:
        return bool(self.crashed_session_ids) or not self.clean_shutdown or self.gap > 0


class RecoveryManager:
    """Startup reconciliation after an abnormal termination.

    Buffered observations never reach disk before a flush, so there is nothing
    to restore. The job is bookkeeping: sessions left ``active`` become
    ``crashed``, their open conversations are closed, and the bounded loss is
    logged. Must run before the first append of the new process.
    """

    def __init__(
        self,
        store: MemoryStore,
        *,
        checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL,
    ) -> None:
        self.store = store
        self.checkpoint_interval = checkpoint_interval

    def run(self) -> RecoveryReport:
        now = dt.datetime.now(dt.UTC).isoformat()
        try:
            marker = self.store.checkpoint()
            committed_id = self.store.max_observation_id()
            stale = [session.id for session in self.store.active_sessions()]
            report = RecoveryReport(
                recovered_at=now,
                crashed_session_ids=stale,
                checkpoint_id=marker.last_observation_id,
                committed_id=committed_id,
                clean_shutdown=marker.clean_shutdown,
            )
            if not report.crashed:
                logger.debug("recovery: previous run shut down cleanly")
                return report
            with self.store.transaction():
                self.store.mark_sessions_crashed(stale, ended_at=now)
                self.store.reset_checkpoint(committed_id)
        except sqlite3.Error as exc:
            raise TransientStorageError("recovery failed", {"error": str(exc)}) from exc
        report.max_lost = self.checkpoint_interval - 1 + report.gap
        logger.warning(
            "recovered from abnormal termination: sessions=%s checkpoint=%d committed=%d "
            "max_lost_observations=%d",
            stale,
            report.checkpoint_id,
            report.committed_id,
            report.max_lost,
        )
        return report

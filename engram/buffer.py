"""In-memory staging of tool-use observations with checkpointed flushes.

Appends go to an active segment. A flush swaps in a fresh segment, writes the
swapped-out entries (plus any batch left over from a failed flush) in a single
store transaction that also advances the checkpoint marker, and only then
drops them from memory. Nothing is written per event; a crash loses at most
the unflushed tail, which RecoveryManager accounts for on the next start.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from typing import Any

from .errors import EngramError, TransientStorageError
from .store import MemoryStore, Observation

logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_INTERVAL = 20

Scheduler = Callable[[Callable[[], Any]], Any]


class StagingBuffer:
    def __init__(
        self,
        store: MemoryStore,
        *,
        checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL,
        schedule: Scheduler | None = None,
    ) -> None:
        if checkpoint_interval < 1:
            raise ValueError("checkpoint_interval must be >= 1")
        self.store = store
        self.checkpoint_interval = checkpoint_interval
        # Runs auto-flushes; None flushes inline on the appending call. A
        # scheduler that calls back on another thread needs a store opened
        # with check_same_thread=False.
        self._schedule = schedule
        self._active: list[Observation] = []
        self._pending: list[Observation] = []
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._closed = False
        self.appended = 0
        self.flushed = 0
        self.flushes = 0
        self.auto_flushes = 0
        self.failures = 0

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending) + len(self._active)

    def append(self, observation: Observation) -> None:
        try:
            if not isinstance(observation, Observation):
                logger.warning("dropping non-observation buffer entry: %r", type(observation))
                return
            with self._lock:
                if self._closed:
                    logger.warning("append after buffer close; observation dropped")
                    return
                self._active.append(observation)
                self.appended += 1
                due = len(self._active) >= self.checkpoint_interval
            if due:
                if self._schedule is None:
                    self._auto_flush()
                else:
                    self._schedule(self._auto_flush)
        except Exception:
            logger.exception("observation append failed")

    def _auto_flush(self) -> None:
        if not self._flush_lock.acquire(blocking=False):
            # A flush is in flight; the next trigger picks up this segment.
            return
        self.auto_flushes += 1
        try:
            self._flush_locked()
        except EngramError as exc:
            logger.warning("auto-flush failed; batch kept for retry: %s", exc)
        except Exception:
            logger.exception("auto-flush failed; batch kept for retry")
        finally:
            self._flush_lock.release()

    def flush(self) -> int:
        """Persist everything pending; returns the number of observations written.

        Raises TransientStorageError when the write fails. The batch stays in
        memory and the checkpoint marker is left where it was.
        """

        with self._flush_lock:
            return self._flush_locked()

    def _flush_locked(self) -> int:
        with self._lock:
            if self._active:
                self._pending.extend(self._active)
                self._active = []
            batch = list(self._pending)
        if not batch:
            return 0
        try:
            self.store.persist_observations(batch)
        except TransientStorageError:
            self.failures += 1
            logger.error("observation flush failed (%d pending)", len(batch))
            raise
        except sqlite3.Error as exc:
            self.failures += 1
            logger.error("observation flush failed (%d pending)", len(batch))
            raise TransientStorageError(
                "observation flush failed", {"pending": len(batch)}
            ) from exc
        with self._lock:
            del self._pending[: len(batch)]
        self.flushed += len(batch)
        self.flushes += 1
        logger.debug("flushed %d observations", len(batch))
        return len(batch)

    def close(self) -> int:
        """Final flush; later appends are dropped with a warning."""

        written = self.flush()
        with self._lock:
            self._closed = True
        return written

    def stats(self) -> dict[str, int]:
        return {
            "appended": self.appended,
            "flushed": self.flushed,
            "flushes": self.flushes,
            "auto_flushes": self.auto_flushes,
            "failures": self.failures,
            "pending": self.pending_count,
        }

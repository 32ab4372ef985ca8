from __future__ import annotations

from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from engram.buffer import StagingBuffer
from engram.errors import TransientStorageError
from engram.store import MemoryStore, Observation


class RecordingStore:
    def __init__(self, fail_times: int = 0) -> None:
        self.batches: list[list[Observation]] = []
        self.fail_times = fail_times
        self.on_persist = None

    def persist_observations(self, batch: Sequence[Observation]) -> list[int]:
        if self.on_persist is not None:
            self.on_persist()
        if self.fail_times:
            self.fail_times -= 1
            raise TransientStorageError("database is locked")
        self.batches.append(list(batch))
        return list(range(len(batch)))


def _obs(session_id: int, n: int) -> Observation:
    return Observation(session_id=session_id, kind="tool_use", payload={"tool": "bash", "n": n})


def _session(store: MemoryStore) -> int:
    project = store.get_or_create_project("/tmp/engram-buffer")
    return store.start_session(project.id).id


def test_auto_flush_at_interval_and_tail_on_close(store: MemoryStore) -> None:
    session_id = _session(store)
    buffer = StagingBuffer(store, checkpoint_interval=20)

    for n in range(45):
        buffer.append(_obs(session_id, n))

    assert buffer.flushes == 2
    assert store.observation_count(session_id) == 40
    assert buffer.pending_count == 5
    assert store.checkpoint().last_observation_id == store.max_observation_id()

    assert buffer.close() == 5
    assert store.observation_count(session_id) == 45
    assert buffer.pending_count == 0
    assert store.checkpoint().last_observation_id == store.max_observation_id()


def test_each_appended_observation_persisted_exactly_once(store: MemoryStore) -> None:
    session_id = _session(store)
    buffer = StagingBuffer(store, checkpoint_interval=7)
    appended = [_obs(session_id, n) for n in range(30)]
    for obs in appended:
        buffer.append(obs)
    buffer.flush()

    rows = store.conn.execute(
        "SELECT payload_json FROM observations WHERE session_id = ? ORDER BY id", (session_id,)
    ).fetchall()
    assert len(rows) == 30
    assert len({obs.id for obs in appended}) == 30
    assert all(obs.id is not None for obs in appended)


@pytest.mark.parametrize("count", [0, 1, 6, 7, 8, 13, 14, 15, 49])
def test_automatic_flush_count_is_floor_of_count_over_interval(count: int) -> None:
    recording = RecordingStore()
    buffer = StagingBuffer(recording, checkpoint_interval=7)  # type: ignore[arg-type]
    for n in range(count):
        buffer.append(_obs(1, n))
    assert len(recording.batches) == count // 7
    assert buffer.auto_flushes == count // 7
    assert buffer.pending_count == count % 7


def test_flush_of_empty_buffer_writes_nothing() -> None:
    recording = RecordingStore()
    buffer = StagingBuffer(recording)  # type: ignore[arg-type]
    assert buffer.flush() == 0
    assert recording.batches == []


def test_failed_flush_keeps_batch_for_retry() -> None:
    recording = RecordingStore(fail_times=1)
    buffer = StagingBuffer(recording, checkpoint_interval=100)  # type: ignore[arg-type]
    for n in range(3):
        buffer.append(_obs(1, n))

    with pytest.raises(TransientStorageError):
        buffer.flush()
    assert buffer.pending_count == 3
    assert buffer.failures == 1

    buffer.append(_obs(1, 3))
    assert buffer.flush() == 4
    assert [obs.payload["n"] for obs in recording.batches[0]] == [0, 1, 2, 3]
    assert buffer.pending_count == 0


def test_failed_auto_flush_does_not_raise_from_append() -> None:
    recording = RecordingStore(fail_times=1)
    buffer = StagingBuffer(recording, checkpoint_interval=2)  # type: ignore[arg-type]
    buffer.append(_obs(1, 0))
    buffer.append(_obs(1, 1))
    assert buffer.failures == 1
    assert buffer.pending_count == 2

    buffer.append(_obs(1, 2))
    buffer.append(_obs(1, 3))
    assert len(recording.batches) == 1
    assert len(recording.batches[0]) == 4


def test_append_during_flush_lands_in_next_segment() -> None:
    recording = RecordingStore()
    buffer = StagingBuffer(recording, checkpoint_interval=100)  # type: ignore[arg-type]
    buffer.append(_obs(1, 0))
    recording.on_persist = lambda: buffer.append(_obs(1, 99))

    assert buffer.flush() == 1
    assert buffer.pending_count == 1

    recording.on_persist = None
    assert buffer.flush() == 1
    assert recording.batches[1][0].payload["n"] == 99


def test_scheduled_auto_flush_uses_scheduler() -> None:
    recording = RecordingStore()
    scheduled = []
    buffer = StagingBuffer(
        recording,  # type: ignore[arg-type]
        checkpoint_interval=2,
        schedule=scheduled.append,
    )
    buffer.append(_obs(1, 0))
    buffer.append(_obs(1, 1))
    assert recording.batches == []
    assert len(scheduled) == 1

    scheduled[0]()
    assert len(recording.batches) == 1
    assert buffer.auto_flushes == 1


def test_append_after_close_is_dropped() -> None:
    recording = RecordingStore()
    buffer = StagingBuffer(recording)  # type: ignore[arg-type]
    buffer.close()
    buffer.append(_obs(1, 0))
    assert buffer.pending_count == 0
    assert buffer.appended == 0


def test_skipped_auto_flush_is_not_counted() -> None:
    recording = RecordingStore()
    buffer = StagingBuffer(recording, checkpoint_interval=2)  # type: ignore[arg-type]
    buffer.append(_obs(1, 0))

    def append_during_flush() -> None:
        recording.on_persist = None
        buffer.append(_obs(1, 1))
        buffer.append(_obs(1, 2))

    recording.on_persist = append_during_flush
    assert buffer.flush() == 1
    assert buffer.auto_flushes == 0
    assert buffer.pending_count == 2

    buffer.append(_obs(1, 3))
    assert buffer.auto_flushes == 1
    assert [obs.payload["n"] for obs in recording.batches[1]] == [1, 2, 3]


def test_auto_flush_on_worker_thread(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "threaded.sqlite", check_same_thread=False)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="engram-flush")
    try:
        session_id = _session(store)
        buffer = StagingBuffer(
            store,
            checkpoint_interval=3,
            schedule=lambda flush: executor.submit(flush).result(),
        )
        for n in range(6):
            buffer.append(_obs(session_id, n))
        assert buffer.failures == 0
        assert buffer.auto_flushes == 2
        assert store.observation_count(session_id) == 6
    finally:
        executor.shutdown(wait=True)
        store.close()

from __future__ import annotations

from pathlib import Path

from engram.buffer import StagingBuffer
from engram.recovery import RecoveryManager
from engram.store import MemoryStore, Observation


def _obs(session_id: int, n: int) -> Observation:
    return Observation(session_id=session_id, kind="tool_use", payload={"tool": "read", "n": n})


def test_clean_start_reports_nothing(store: MemoryStore) -> None:
    report = RecoveryManager(store).run()
    assert not report.crashed
    assert report.crashed_session_ids == []
    assert report.max_lost == 0


def test_clean_shutdown_is_not_reported_as_crash(store: MemoryStore) -> None:
    project = store.get_or_create_project("/tmp/engram-clean")
    session = store.start_session(project.id)
    buffer = StagingBuffer(store, checkpoint_interval=5)
    for n in range(7):
        buffer.append(_obs(session.id, n))
    buffer.close()
    store.end_session(session.id)
    store.mark_clean_shutdown()

    report = RecoveryManager(store, checkpoint_interval=5).run()
    assert not report.crashed


def test_crash_marks_session_and_bounds_loss(tmp_path: Path) -> None:
    db_path = tmp_path / "crash.sqlite"
    store = MemoryStore(db_path)
    project = store.get_or_create_project("/tmp/engram-crash")
    session = store.start_session(project.id)
    store.start_conversation(session.id, "fix the parser", [])
    buffer = StagingBuffer(store, checkpoint_interval=20)
    for n in range(23):
        buffer.append(_obs(session.id, n))
    # Process dies: the 3 buffered observations never reach disk.
    store.close()

    reopened = MemoryStore(db_path)
    try:
        report = RecoveryManager(reopened, checkpoint_interval=20).run()
        assert report.crashed
        assert report.crashed_session_ids == [session.id]
        assert report.gap == 0
        assert report.max_lost == 19
        assert reopened.observation_count(session.id) == 20

        crashed = reopened.get_session(session.id)
        assert crashed is not None
        assert crashed.status == "crashed"
        assert crashed.ended_at is not None
        assert reopened.open_conversation_for(session.id) is None

        marker = reopened.checkpoint()
        assert marker.clean_shutdown
        assert marker.last_observation_id == reopened.max_observation_id()

        again = RecoveryManager(reopened, checkpoint_interval=20).run()
        assert not again.crashed
    finally:
        reopened.close()


def test_gap_between_marker_and_committed_rows_is_reconciled(store: MemoryStore) -> None:
    project = store.get_or_create_project("/tmp/engram-gap")
    session = store.start_session(project.id)
    store.persist_observations([_obs(session.id, n) for n in range(4)])
    store.conn.execute("UPDATE checkpoint SET last_observation_id = 1 WHERE id = 1")

    report = RecoveryManager(store, checkpoint_interval=10).run()
    assert report.gap == 3
    assert report.max_lost == 9 + 3
    assert store.checkpoint().last_observation_id == 4


def test_recovery_leaves_ended_sessions_alone(store: MemoryStore) -> None:
    project = store.get_or_create_project("/tmp/engram-mixed")
    finished = store.start_session(project.id)
    store.end_session(finished.id, summary="done with the refactor")
    live = store.start_session(project.id)

    report = RecoveryManager(store).run()
    assert report.crashed_session_ids == [live.id]
    ended = store.get_session(finished.id)
    assert ended is not None
    assert ended.status == "ended"
    assert ended.summary == "done with the refactor"

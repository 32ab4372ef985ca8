from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from engram.cli import app
from engram.store import MemoryStore

runner = CliRunner()


def test_root_help_lists_commands() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("init-db", "search", "get", "save", "recover", "stats", "conversations"):
        assert command in result.stdout
    assert "backfill-vectors" in result.stdout


def test_save_get_and_search(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.sqlite")
    saved = runner.invoke(
        app,
        [
            "save",
            "Retries use exponential backoff",
            "--kind",
            "decision",
            "--db-path",
            db_path,
            "--project",
            str(tmp_path),
        ],
    )
    assert saved.exit_code == 0, saved.stdout
    assert "knowledge:1" in saved.stdout

    fetched = runner.invoke(app, ["get", "1", "--db-path", db_path])
    assert fetched.exit_code == 0
    assert "exponential backoff" in fetched.stdout

    found = runner.invoke(app, ["search", "backoff", "--db-path", db_path, "--all-projects"])
    assert found.exit_code == 0
    assert "knowledge:1" in found.stdout


def test_get_missing_and_invalid_refs(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.sqlite")
    missing = runner.invoke(app, ["get", "observation:9", "--db-path", db_path])
    assert missing.exit_code == 1
    invalid = runner.invoke(app, ["get", "widget:1", "--db-path", db_path])
    assert invalid.exit_code == 1


def test_save_rejects_unknown_kind(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.sqlite")
    result = runner.invoke(app, ["save", "x", "--kind", "rumor", "--db-path", db_path])
    assert result.exit_code == 1


def test_recover_reports_crashed_session(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.sqlite"
    store = MemoryStore(db_path)
    project = store.get_or_create_project(str(tmp_path))
    store.start_session(project.id)
    store.close()

    result = runner.invoke(app, ["recover", "--db-path", str(db_path)])
    assert result.exit_code == 0
    assert "Recovered from abnormal termination" in result.stdout

    again = runner.invoke(app, ["recover", "--db-path", str(db_path)])
    assert "nothing to recover" in again.stdout


def test_stats_and_conversations(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.sqlite"
    store = MemoryStore(db_path)
    project = store.get_or_create_project(str(tmp_path))
    session = store.start_session(project.id)
    store.start_conversation(session.id, "refactor storage", [])
    store.close()

    stats = runner.invoke(app, ["stats", "--db-path", str(db_path)])
    assert stats.exit_code == 0
    assert "conversations: 1" in stats.stdout

    listed = runner.invoke(app, ["conversations", "--db-path", str(db_path)])
    assert listed.exit_code == 0
    assert "refactor storage" in listed.stdout


def test_init_db_uses_env_path(tmp_path: Path) -> None:
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0
    assert (tmp_path / "engram.sqlite").exists()


def test_context_shows_saved_knowledge(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.sqlite")
    runner.invoke(
        app,
        ["save", "Run ruff before pushing", "--db-path", db_path, "--project", str(tmp_path)],
    )
    shown = runner.invoke(app, ["context", "--db-path", db_path, "--project", str(tmp_path)])
    assert shown.exit_code == 0
    assert "## Project knowledge" in shown.stdout
    assert "Run ruff before pushing" in shown.stdout

    empty = runner.invoke(
        app, ["context", "--db-path", db_path, "--project", str(tmp_path / "nowhere")]
    )
    assert "No memory for this project" in empty.stdout

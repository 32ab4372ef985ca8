from __future__ import annotations

import json
import logging
import os

import typer
from rich import print

from . import __version__
from .config import load_config
from .context import build_context
from .errors import ConfigurationError, EngramError
from .projects import detect_project_root
from .recovery import RecoveryManager
from .retrieval import HybridRetriever
from .semantic import configure_embeddings
from .store import ENTITY_TYPES, KNOWLEDGE_KINDS, MemoryStore, parse_ref

app = typer.Typer(help="engram: persistent memory for coding agents")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _store(db_path: str | None) -> MemoryStore:
    try:
        cfg = load_config()
        configure_embeddings(cfg.embedding_model, disabled=cfg.embedding_disabled)
        return MemoryStore(db_path or cfg.db_path)
    except ConfigurationError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


def _resolve_project(cwd: str, project: str | None, all_projects: bool = False) -> str | None:
    if all_projects:
        return None
    if project:
        return project.strip() or None
    return detect_project_root(cwd)


@app.command()
def version() -> None:
    """Print the installed version."""
    print(__version__)


@app.command()
def init_db(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Create the SQLite database (no-op if it already exists)."""
    store = _store(db_path)
    try:
        vectors = "enabled" if store.vectors_available else "unavailable"
        print(f"Initialized database at {store.db_path} (vector index {vectors})")
    finally:
        store.close()


@app.command()
def search(
    query: str,
    limit: int = typer.Option(10, help="Max results"),
    type: str | None = typer.Option(
        None, help=f"Restrict to one of {', '.join(ENTITY_TYPES + KNOWLEDGE_KINDS)}"
    ),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    project: str = typer.Option(None, help="Project identifier (defaults to git repo root)"),
    all_projects: bool = typer.Option(False, help="Search across all projects"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw response as JSON"),
) -> None:
    """Hybrid keyword + semantic search over stored memory."""
    store = _store(db_path)
    try:
        filters: dict[str, object] = {}
        if type:
            kind = type.strip().lower()
            if kind in KNOWLEDGE_KINDS:
                filters["types"] = ["knowledge"]
                filters["kinds"] = [kind]
            else:
                filters["types"] = [kind]
        resolved_project = _resolve_project(os.getcwd(), project, all_projects=all_projects)
        if resolved_project:
            filters["project"] = resolved_project
        retriever = HybridRetriever.from_config(store, load_config())
        response = retriever.search(query, limit=limit, filters=filters)
    finally:
        store.close()

    if as_json:
        print(json.dumps(response.to_dict(), indent=2))
        return
    if response.degraded:
        reasons = ", ".join(response.degraded_reasons) or "unknown"
        print(f"[yellow]Degraded search ({reasons} unavailable)[/yellow]")
    if not response.results:
        print("No results")
        return
    for hit in response.results:
        print(f"[bold]{hit.ref}[/bold] score={hit.score:.3f} {hit.created_at}\n{hit.snippet}\n")


@app.command()
def get(ref: str, db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Print one entity as JSON (ref is type:id, or a bare knowledge id)."""
    try:
        entity_type, entity_id = parse_ref(ref)
    except ValueError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    store = _store(db_path)
    try:
        item = store.get_entity(entity_type, entity_id)
    finally:
        store.close()
    if item is None:
        print(f"[red]{entity_type}:{entity_id} not found[/red]")
        raise typer.Exit(code=1)
    print(json.dumps(item, indent=2))


@app.command()
def save(
    content: str,
    kind: str = typer.Option("fact", help=f"One of {', '.join(KNOWLEDGE_KINDS)}"),
    tags: list[str] = typer.Option(None, help="Repeat for multiple tags"),
    supersedes: int | None = typer.Option(None, help="Id of the knowledge item this revises"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    project: str = typer.Option(None, help="Project root (defaults to git repo root)"),
) -> None:
    """Store a knowledge item for the current project."""
    store = _store(db_path)
    try:
        root = _resolve_project(os.getcwd(), project) or os.getcwd()
        project_row = store.get_or_create_project(root)
        item = store.save_knowledge(
            project_row.id, kind, content, tags or [], supersedes=supersedes
        )
    except ValueError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        store.close()
    print(f"Saved knowledge:{item.id} ({item.kind})")


@app.command()
def recover(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Reconcile state after a crash. Run only while no agent session is live."""
    store = _store(db_path)
    try:
        report = RecoveryManager(
            store, checkpoint_interval=load_config().checkpoint_interval
        ).run()
    except EngramError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        store.close()
    if not report.crashed:
        print("Previous run shut down cleanly; nothing to recover")
        return
    print("[yellow]Recovered from abnormal termination[/yellow]")
    print(f"- Crashed sessions: {report.crashed_session_ids or 'none'}")
    print(f"- Checkpoint: {report.checkpoint_id} -> {report.committed_id}")
    print(f"- Observations possibly lost: at most {report.max_lost}")


def _format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / 1024 / 1024:.1f} MB"
    return f"{size / 1024 / 1024 / 1024:.1f} GB"


@app.command()
def stats(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show database statistics."""
    store = _store(db_path)
    try:
        stats_data = store.stats()
    finally:
        store.close()

    db_stats = stats_data["database"]
    counts = stats_data["counts"]
    marker = stats_data["checkpoint"]
    print("[bold]Database[/bold]")
    print(f"- Path: {db_stats['path']}")
    print(f"- Size: {_format_bytes(int(db_stats['size_bytes']))}")
    print(f"- Vector index: {'yes' if db_stats['vectors_available'] else 'no'}")
    print("\n[bold]Entities[/bold]")
    for name, count in counts.items():
        print(f"- {name}: {count}")
    print("\n[bold]Checkpoint[/bold]")
    print(f"- Last observation: {marker['last_observation_id']}")
    print(f"- Clean shutdown: {'yes' if marker['clean_shutdown'] else 'no'}")


@app.command("backfill-vectors")
def backfill_vectors(
    type: list[str] = typer.Option(None, help="Entity types to backfill (repeatable)"),
    limit: int | None = typer.Option(None, help="Max entities to embed"),
    dry_run: bool = typer.Option(False, help="Report without writing"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Embed entities that have no vector yet."""
    store = _store(db_path)
    try:
        if not store.vectors_available:
            print("[red]sqlite-vec is unavailable; cannot build the vector index[/red]")
            raise typer.Exit(code=1)
        result = store.backfill_vectors(entity_types=type or None, limit=limit, dry_run=dry_run)
    except EngramError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        store.close()
    if not result["available"]:
        print("[yellow]Embedding model unavailable; no vectors written[/yellow]")
    action = "Would insert" if dry_run else "Inserted"
    print(f"{action} {result['inserted']} vectors for {result['checked']} entities")


@app.command()
def conversations(
    session_id: int | None = typer.Option(None, help="Only this session"),
    limit: int = typer.Option(20, help="Max conversations"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """List recent conversations and their topic labels."""
    store = _store(db_path)
    try:
        rows = store.list_conversations(session_id=session_id, limit=limit)
    finally:
        store.close()
    if not rows:
        print("No conversations")
        return
    for conv in rows:
        print(
            f"[{conv.id}] session={conv.session_id} {conv.status} "
            f"prompts={conv.prompt_count} {conv.topic_label}"
        )


@app.command()
def context(
    project: str = typer.Option(None, help="Project root path or name (default: git repo root)"),
    limit: int = typer.Option(8, help="Max items per section"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Show the memory context injected at session start."""
    root = _resolve_project(os.getcwd(), project)
    store = _store(db_path)
    try:
        matches = store.find_projects(root) if root else []
        if not matches:
            print("No memory for this project")
            return
        pack = build_context(store, matches[0], limit)
    finally:
        store.close()
    if as_json:
        print(json.dumps(pack, indent=2, ensure_ascii=False))
        return
    # Plain echo: item refs in brackets would read as rich markup.
    typer.echo(pack["pack_text"] or "No memory for this project")


@app.command()
def mcp() -> None:
    """Run the MCP server."""

    from .mcp_server import run as mcp_run

    mcp_run()

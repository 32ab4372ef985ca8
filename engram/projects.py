from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path


def run_command(cmd: Sequence[str], cwd: str | None = None) -> str:
    try:
        out = subprocess.check_output(cmd, cwd=cwd, stderr=subprocess.DEVNULL, text=True)
        return out.strip()
    except (subprocess.CalledProcessError, FileNotFoundError, NotADirectoryError):
        return ""


def resolve_worktree_parent(cwd: str) -> str | None:
    """If cwd is a git worktree, return the main repo root. Otherwise return None."""

    common_dir = run_command(["git", "rev-parse", "--git-common-dir"], cwd=cwd)
    git_dir = run_command(["git", "rev-parse", "--git-dir"], cwd=cwd)
    if not common_dir or not git_dir or common_dir == git_dir:
        return None
    common_path = (Path(cwd) / common_dir).resolve()
    if common_path.name == ".git":
        return str(common_path.parent)
    return str(common_path)


def detect_project_root(cwd: str, override: str | None = None) -> str:
    """Repository root for ``cwd`` (main repo for worktrees), else ``cwd`` itself."""

    if override is not None and override.strip():
        return str(Path(override.strip()).expanduser().resolve())
    repo_root = run_command(["git", "rev-parse", "--show-toplevel"], cwd=cwd)
    if repo_root and Path(repo_root).is_dir():
        return resolve_worktree_parent(cwd) or str(Path(repo_root).resolve())
    return str(Path(cwd).expanduser().resolve())

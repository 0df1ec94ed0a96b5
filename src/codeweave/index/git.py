"""Git HEAD lookup for index and watch cursors."""

from __future__ import annotations

from pathlib import Path

import pygit2
import structlog

log = structlog.get_logger(__name__)


def head_commit_sha(repo_root: Path) -> str | None:
    """Hex sha of HEAD, or None outside a repository or on an unborn branch."""
    repo_path = pygit2.discover_repository(str(repo_root))
    if repo_path is None:
        return None
    try:
        repo = pygit2.Repository(repo_path)
        if repo.head_is_unborn:
            return None
        commit = repo.head.peel(pygit2.Commit)
    except (pygit2.GitError, KeyError) as e:
        log.debug("git_head_unavailable", path=str(repo_root), error=str(e))
        return None
    return str(commit.id)

"""Workspace file discovery and ignore matching.

Tiered architecture:
- HARDCODED_DIRS: Always pruned, not overridable (VCS, .codeweave)
- DEFAULT_PRUNABLE_DIRS: Pruned by default, user can opt in via ``!dirname``
- .gitignore / .codeweaveignore patterns: user-configurable, with negation

The same checker filters watcher events and full-workspace discovery, so a
file the indexer never tracks never triggers a reindex either.
"""

from __future__ import annotations

import fnmatch
from collections.abc import Iterable
from pathlib import Path

HARDCODED_DIRS: frozenset[str] = frozenset(
    (
        ".git",
        ".svn",
        ".hg",
        ".codeweave",
    )
)

DEFAULT_PRUNABLE_DIRS: frozenset[str] = frozenset(
    (
        # JavaScript
        "node_modules",
        "bower_components",
        ".next",
        ".nuxt",
        ".turbo",
        # Python
        "venv",
        ".venv",
        "__pycache__",
        ".mypy_cache",
        ".pytest_cache",
        ".ruff_cache",
        ".tox",
        ".nox",
        ".eggs",
        "site-packages",
        # Build outputs
        "build",
        "dist",
        "out",
        "coverage",
        # Editors
        ".idea",
        ".vscode",
    )
)

PRUNABLE_DIRS = HARDCODED_DIRS | DEFAULT_PRUNABLE_DIRS

IGNORE_FILES = (".gitignore", ".codeweaveignore")


class IgnoreChecker:
    """Checks if workspace-relative paths should be ignored.

    Pattern syntax:
    - Standard glob patterns (fnmatch)
    - Directory patterns ending in / match contents
    - Negation with ! prefix (e.g., !vendor/ to opt in a pruned directory)
    """

    def __init__(self, root: Path, extra_patterns: Iterable[str] = ()) -> None:
        self._root = root
        self._patterns: list[str] = []
        self._negated_dirs: set[str] = set()
        self._load_recursive(root)
        self._patterns.extend(extra_patterns)

    def should_prune_dir(self, dirname: str) -> bool:
        if dirname in HARDCODED_DIRS:
            return True
        if dirname in DEFAULT_PRUNABLE_DIRS:
            return dirname not in self._negated_dirs
        return False

    def _load_recursive(self, root: Path) -> None:
        for dirpath, dirnames, filenames in root.walk():
            dirnames[:] = sorted(d for d in dirnames if not self.should_prune_dir(d))
            prefix = "" if dirpath == root else dirpath.relative_to(root).as_posix()
            for name in IGNORE_FILES:
                if name in filenames:
                    self._load_ignore_file(dirpath / name, prefix)

    def _load_ignore_file(self, path: Path, prefix: str = "") -> None:
        try:
            content = path.read_text()
        except OSError:
            return
        for raw in content.splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue

            is_negation = line.startswith("!")
            if is_negation:
                line = line[1:]
                dir_name = line.rstrip("/")
                if not prefix and dir_name and "/" not in dir_name and "*" not in dir_name:
                    self._negated_dirs.add(dir_name)

            line = line.lstrip("/")
            # Directory patterns (ending in /) match all contents
            pattern = f"{line}**" if line.endswith("/") else line
            if prefix:
                pattern = f"{prefix}/{pattern}"
            self._patterns.append(f"!{pattern}" if is_negation else pattern)

    def is_excluded_rel(self, rel_path: str) -> bool:
        rel_posix = rel_path.replace("\\", "/")
        parts = rel_posix.split("/")
        if any(self.should_prune_dir(p) for p in parts[:-1]):
            return True

        parents = ["/".join(parts[:i]) for i in range(1, len(parts))]
        excluded = False
        for pattern in self._patterns:
            if pattern.startswith("!"):
                if fnmatch.fnmatch(rel_posix, pattern[1:]):
                    excluded = False
                continue
            if fnmatch.fnmatch(rel_posix, pattern) or fnmatch.fnmatch(parts[-1], pattern):
                excluded = True
            elif any(fnmatch.fnmatch(parent, pattern) for parent in parents):
                excluded = True
        return excluded


def discover_files(
    root: Path,
    checker: IgnoreChecker,
    suffixes: frozenset[str],
    excluded_suffixes: Iterable[str] = (),
    max_file_size_bytes: int | None = None,
    subdir: str | None = None,
) -> list[str]:
    """Sorted workspace-relative posix paths of every indexable file.

    With ``subdir`` only that directory is walked; paths stay workspace-relative.
    """
    excluded = tuple(excluded_suffixes)
    found: list[str] = []
    start = root / subdir if subdir else root
    for dirpath, dirnames, filenames in start.walk():
        dirnames[:] = sorted(d for d in dirnames if not checker.should_prune_dir(d))
        for name in filenames:
            rel = (dirpath / name).relative_to(root).as_posix()
            if not is_indexable(rel, suffixes, excluded):
                continue
            if checker.is_excluded_rel(rel):
                continue
            if max_file_size_bytes is not None:
                try:
                    if (dirpath / name).stat().st_size > max_file_size_bytes:
                        continue
                except OSError:
                    continue
            found.append(rel)
    return sorted(found)


def is_indexable(
    rel_path: str, suffixes: frozenset[str], excluded_suffixes: tuple[str, ...]
) -> bool:
    lowered = rel_path.lower()
    if excluded_suffixes and lowered.endswith(excluded_suffixes):
        return False
    dot = lowered.rfind(".")
    return dot != -1 and lowered[dot:] in suffixes

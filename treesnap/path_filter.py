"""Ignore-aware path filters consumed by the tree builder.

Every filter answers ``is_ignored(relative_path)`` for paths relative to the
snapshot root. Providers either ask git for ignored paths or compile ignore
files at the root with ``pathspec``.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
from collections import OrderedDict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

import pathspec

logger = logging.getLogger(__name__)

GITIGNORE_MATCHER_CACHE_MAX = 64
GITIGNORE_MATCHER_CACHE_TTL_SECONDS = 2.0
DEFAULT_IGNORE_FILES = (".gitignore", ".ignore")


@runtime_checkable
class PathFilter(Protocol):
    """Decides whether a root-relative path is excluded from a snapshot."""

    def is_ignored(self, relative_path: str) -> bool: ...


def normalize_relative_path(relative_path: str) -> str:
    """Return ``relative_path`` with forward slashes and no leading ``./`` or trailing ``/``."""
    normalized = relative_path.replace(os.sep, "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.strip("/")


class NullPathFilter:
    """Filter that ignores nothing."""

    def is_ignored(self, relative_path: str) -> bool:
        return False


@dataclass(frozen=True)
class _MatcherCacheEntry:
    """Cached matcher plus root directory mtime and insertion timestamp."""

    matcher: GitIgnoreMatcher | None
    root_mtime_ns: int | None
    loaded_at: float


_GITIGNORE_MATCHER_CACHE: OrderedDict[str, _MatcherCacheEntry] = OrderedDict()
_GITIGNORE_MATCHER_CACHE_LOCK = threading.Lock()


def clear_gitignore_cache() -> None:
    """Clear cached gitignore matchers."""
    with _GITIGNORE_MATCHER_CACHE_LOCK:
        _GITIGNORE_MATCHER_CACHE.clear()


@dataclass(frozen=True)
class GitIgnoreMatcher:
    """Git's view of ignored paths under ``root``.

    Paths are stored relative to ``root`` with forward slashes. An ignored
    directory hides everything beneath it.
    """

    root: Path
    ignored_files: frozenset[str]
    ignored_dirs: frozenset[str]

    def is_ignored(self, relative_path: str) -> bool:
        rel = normalize_relative_path(relative_path)
        if not rel:
            return False
        if rel in self.ignored_files:
            return True
        current = rel
        while current:
            if current in self.ignored_dirs:
                return True
            current = current.rpartition("/")[0]
        return False


def _load_matcher(root: Path) -> GitIgnoreMatcher | None:
    """Build a matcher by querying git for ignored files/directories.

    Returns ``None`` when git is unavailable, ``root`` is not inside a work
    tree, or any probing command fails. Only paths within ``root`` are kept,
    even when the repository top level is higher.
    """
    if shutil.which("git") is None:
        return None

    root = root.resolve()
    try:
        top_proc = subprocess.run(
            ["git", "-C", str(root), "rev-parse", "--show-toplevel"],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return None

    top_level = top_proc.stdout.strip()
    if not top_level:
        return None

    repo_root = Path(top_level).resolve()
    if not root.is_relative_to(repo_root):
        return None

    try:
        proc = subprocess.run(
            [
                "git",
                "-C",
                str(repo_root),
                "ls-files",
                "-z",
                "--others",
                "-i",
                "--exclude-standard",
                "--directory",
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        logger.debug("git ls-files failed under %s: %s", repo_root, exc)
        return None

    ignored_files: set[str] = set()
    ignored_dirs: set[str] = set()
    for raw in proc.stdout.split(b"\x00"):
        if not raw:
            continue
        rel = raw.decode("utf-8", errors="surrogateescape")
        is_dir = rel.endswith("/")
        rel = rel.rstrip("/")
        if not rel:
            continue
        abs_path = repo_root / rel
        if not abs_path.is_relative_to(root) or abs_path == root:
            continue
        root_relative = abs_path.relative_to(root).as_posix()
        if is_dir or abs_path.is_dir():
            ignored_dirs.add(root_relative)
        else:
            ignored_files.add(root_relative)

    return GitIgnoreMatcher(
        root=root,
        ignored_files=frozenset(ignored_files),
        ignored_dirs=frozenset(ignored_dirs),
    )


def get_gitignore_matcher(root: Path) -> GitIgnoreMatcher | None:
    """Return cached matcher for ``root`` with bounded staleness."""
    resolved_root = root.resolve()
    key = str(resolved_root)
    try:
        root_mtime_ns: int | None = int(resolved_root.stat().st_mtime_ns)
    except OSError:
        root_mtime_ns = None
    now = time.monotonic()

    with _GITIGNORE_MATCHER_CACHE_LOCK:
        cached = _GITIGNORE_MATCHER_CACHE.get(key)
        if cached is not None:
            cache_age = now - cached.loaded_at
            if (
                cached.root_mtime_ns == root_mtime_ns
                and cache_age <= GITIGNORE_MATCHER_CACHE_TTL_SECONDS
            ):
                _GITIGNORE_MATCHER_CACHE.move_to_end(key)
                return cached.matcher

    # git runs outside the lock; concurrent loads of one root both store.
    matcher = _load_matcher(resolved_root)
    with _GITIGNORE_MATCHER_CACHE_LOCK:
        _GITIGNORE_MATCHER_CACHE[key] = _MatcherCacheEntry(
            matcher=matcher,
            root_mtime_ns=root_mtime_ns,
            loaded_at=now,
        )
        _GITIGNORE_MATCHER_CACHE.move_to_end(key)
        while len(_GITIGNORE_MATCHER_CACHE) > GITIGNORE_MATCHER_CACHE_MAX:
            _GITIGNORE_MATCHER_CACHE.popitem(last=False)
    return matcher


class IgnoreFilePathFilter:
    """Gitignore-style rules compiled from ignore files found at the root.

    Directory paths are probed a second time with a trailing slash so
    directory-only patterns such as ``build/`` apply to them.
    """

    def __init__(self, root: Path, spec: pathspec.PathSpec) -> None:
        self.root = root
        self.spec = spec

    @classmethod
    def from_root(
        cls,
        root: Path,
        ignore_files: Iterable[str] = DEFAULT_IGNORE_FILES,
        extra_patterns: Iterable[str] = (),
    ) -> IgnoreFilePathFilter:
        """Read each of ``ignore_files`` under ``root`` (missing ones are skipped)."""
        lines: list[str] = []
        for name in ignore_files:
            try:
                lines.extend((root / name).read_text(encoding="utf-8").splitlines())
            except (OSError, UnicodeDecodeError):
                continue
        lines.extend(extra_patterns)
        return cls(root, pathspec.GitIgnoreSpec.from_lines(lines))

    def is_ignored(self, relative_path: str) -> bool:
        rel = normalize_relative_path(relative_path)
        if not rel:
            return False
        if self.spec.match_file(rel):
            return True
        return (self.root / rel).is_dir() and self.spec.match_file(rel + "/")


class CompositePathFilter:
    """Ignores a path when any member filter ignores it."""

    def __init__(self, filters: Sequence[PathFilter]) -> None:
        self.filters = tuple(filters)

    def is_ignored(self, relative_path: str) -> bool:
        return any(member.is_ignored(relative_path) for member in self.filters)


def load_path_filter(
    root: Path,
    *,
    use_git: bool = True,
    ignore_files: Iterable[str] = DEFAULT_IGNORE_FILES,
    extra_patterns: Iterable[str] = (),
) -> CompositePathFilter:
    """Build the filter used for snapshots of ``root``.

    Combines git's ignore decisions (when enabled and ``root`` is inside a
    work tree) with rules read from ``ignore_files`` and ``extra_patterns``.
    """
    resolved_root = root.resolve()
    filters: list[PathFilter] = []
    if use_git:
        matcher = get_gitignore_matcher(resolved_root)
        if matcher is not None:
            filters.append(matcher)
    filters.append(IgnoreFilePathFilter.from_root(resolved_root, ignore_files, extra_patterns))
    return CompositePathFilter(filters)


__all__ = [
    "DEFAULT_IGNORE_FILES",
    "PathFilter",
    "NullPathFilter",
    "GitIgnoreMatcher",
    "IgnoreFilePathFilter",
    "CompositePathFilter",
    "normalize_relative_path",
    "clear_gitignore_cache",
    "get_gitignore_matcher",
    "load_path_filter",
]

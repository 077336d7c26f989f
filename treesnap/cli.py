"""Command-line front door for treesnap.

Parses CLI options, requests a background snapshot of the target directory,
waits for its delivery, and prints the tree as an indented outline.
"""

from __future__ import annotations

import argparse
import logging
import sys
from functools import partial
from pathlib import Path

from .config import SnapshotSettings, load_snapshot_settings, save_snapshot_settings
from .path_filter import load_path_filter
from .runtime import SnapshotScheduler
from .snapshot_model import TreeNode

INDENT = "  "


def format_outline(tree: TreeNode) -> str:
    """Render ``tree`` one entry per line, directories suffixed with ``/``."""
    lines: list[str] = []
    stack: list[tuple[TreeNode, int]] = [(tree, 0)]
    while stack:
        node, depth = stack.pop()
        suffix = "/" if node.is_directory else ""
        lines.append(f"{INDENT * depth}{node.label}{suffix}")
        stack.extend((child, depth + 1) for child in reversed(node.children))
    return "\n".join(lines) + "\n"


class _CollectingSink:
    """Keeps the delivered tree (or build error) for the CLI."""

    def __init__(self) -> None:
        self.tree: TreeNode | None = None
        self.error: BaseException | None = None

    def on_snapshot(self, tree: TreeNode) -> None:
        self.tree = tree

    def on_snapshot_failed(self, root: Path, error: BaseException) -> None:
        self.error = error


def main(default_path: Path | None = None) -> None:
    """Parse CLI arguments and print a snapshot of a directory.

    ``default_path`` is primarily for tests; when omitted the current working
    directory is used. Persisted settings supply defaults that flags override.
    """
    settings = load_snapshot_settings()
    parser = argparse.ArgumentParser(
        description="Print an ignore-aware snapshot of a directory tree."
    )
    parser.add_argument("path", nargs="?", default=None, help="Root directory. Defaults to current directory.")
    parser.add_argument(
        "--no-gitignore",
        action="store_true",
        help="Do not ask git for ignored paths.",
    )
    parser.add_argument(
        "--ignore",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Extra gitignore-style pattern to exclude (repeatable).",
    )
    parser.add_argument(
        "--no-cycle-guard",
        action="store_true",
        help="Descend into symlinked directories even when they loop back to an ancestor.",
    )
    parser.add_argument(
        "--save-defaults",
        action="store_true",
        help="Persist the effective ignore and cycle-guard settings as future defaults.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug details to stderr.")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if default_path is None:
        default_path = Path.cwd()
    root = Path(args.path or default_path)
    if not root.exists():
        raise SystemExit(f"Path not found: {root}")
    if not root.is_dir():
        raise SystemExit(f"Not a directory: {root}")

    effective = SnapshotSettings(
        use_gitignore=settings.use_gitignore and not args.no_gitignore,
        ignore_files=settings.ignore_files,
        extra_ignore_patterns=tuple(dict.fromkeys((*settings.extra_ignore_patterns, *args.ignore))),
        guard_symlink_cycles=settings.guard_symlink_cycles and not args.no_cycle_guard,
    )
    if args.save_defaults:
        save_snapshot_settings(effective)

    path_filter_for_root = partial(
        load_path_filter,
        use_git=effective.use_gitignore,
        ignore_files=effective.ignore_files,
        extra_patterns=effective.extra_ignore_patterns,
    )
    scheduler = SnapshotScheduler(
        path_filter_for_root,
        guard_symlink_cycles=effective.guard_symlink_cycles,
    )
    sink = _CollectingSink()
    scheduler.request_snapshot(root, sink)
    scheduler.wait_for_deliveries()

    if sink.tree is None:
        raise SystemExit(f"Snapshot failed: {sink.error}")
    sys.stdout.write(format_outline(sink.tree))

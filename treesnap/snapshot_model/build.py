"""Filesystem scanning and snapshot-tree construction.

Walks a root directory with an explicit work stack, asks a path filter about
every entry (relative to the original root), and assembles frozen
``TreeNode`` objects with directories ordered before files.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .types import Snapshot, TreeNode

if TYPE_CHECKING:
    from ..path_filter import PathFilter

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "Unknown"
VCS_METADATA_NAME = ".git"


@dataclass(frozen=True)
class DirectoryChild:
    """One visible directory entry before it becomes a tree node."""

    name: str
    path: Path
    relative_path: str
    is_dir: bool

    @property
    def label(self) -> str:
        return display_label(self.name)


@dataclass
class _PendingDirectory:
    """Directory discovered on the work stack whose node is not built yet."""

    path: Path
    label: str
    ancestors: frozenset[str]
    slots: list["TreeNode | _PendingDirectory"] = field(default_factory=list)
    node: TreeNode | None = None


def display_label(name: str) -> str:
    """Return ``name`` when it is valid text, otherwise the placeholder label."""
    try:
        name.encode("utf-8")
    except UnicodeEncodeError:
        return UNKNOWN_LABEL
    return name


def sibling_sort_key(node: TreeNode) -> tuple[bool, str]:
    """Directories first, then case-sensitive code point order of labels."""
    return (not node.is_directory, node.label)


def _resolve_root(root: Path) -> Path:
    try:
        return Path(root).resolve()
    except (OSError, RuntimeError):
        return Path(os.path.abspath(root))


def _root_label(root: Path) -> str:
    return display_label(root.name) if root.name else str(root)


def _canonical(path: Path) -> str:
    return os.path.realpath(path)


def list_directory_children(
    directory: Path,
    root: Path,
    path_filter: PathFilter | None = None,
) -> tuple[list[DirectoryChild], OSError | None]:
    """List visible children of ``directory`` in filesystem order.

    Entries named ``.git`` are always skipped; other entries are skipped when
    ``path_filter`` reports their root-relative path as ignored. Returns
    ``(children, scan_error)``; ``scan_error`` is set and ``children`` is
    empty when the directory cannot be listed.
    """
    children: list[DirectoryChild] = []
    try:
        with os.scandir(directory) as entries:
            for entry in entries:
                name = entry.name
                if name == VCS_METADATA_NAME:
                    continue
                child_path = Path(entry.path)
                relative_path = child_path.relative_to(root).as_posix()
                if path_filter is not None and path_filter.is_ignored(relative_path):
                    continue

                try:
                    is_dir = entry.is_dir()
                except OSError:
                    is_dir = False

                children.append(
                    DirectoryChild(
                        name=name,
                        path=child_path,
                        relative_path=relative_path,
                        is_dir=is_dir,
                    )
                )
    except OSError as exc:
        return [], exc
    return children, None


def build_tree(
    path_filter: PathFilter | None,
    root: Path,
    *,
    guard_symlink_cycles: bool = True,
) -> TreeNode:
    """Build the full ordered tree under ``root``.

    Never raises for filesystem irregularities: unreadable directories come
    back with no children. The root itself is not checked against the
    filter. With ``guard_symlink_cycles`` a directory whose canonical path is
    one of its own ancestors is emitted without descending into it.
    """
    root = _resolve_root(root)
    root_pending = _PendingDirectory(
        path=root,
        label=_root_label(root),
        ancestors=frozenset({_canonical(root)}) if guard_symlink_cycles else frozenset(),
    )
    order: list[_PendingDirectory] = [root_pending]
    stack: list[_PendingDirectory] = [root_pending]

    while stack:
        pending = stack.pop()
        children, scan_error = list_directory_children(pending.path, root, path_filter)
        if scan_error is not None:
            logger.debug("Cannot list %s: %s", pending.path, scan_error)
            continue

        for child in children:
            if not child.is_dir:
                pending.slots.append(TreeNode(id=str(child.path), label=child.label, is_directory=False))
                continue

            ancestors = pending.ancestors
            if guard_symlink_cycles:
                canonical = _canonical(child.path)
                if canonical in ancestors:
                    logger.debug("Not descending into %s: symlink cycle", child.path)
                    pending.slots.append(TreeNode(id=str(child.path), label=child.label, is_directory=True))
                    continue
                ancestors = ancestors | {canonical}

            nested = _PendingDirectory(path=child.path, label=child.label, ancestors=ancestors)
            pending.slots.append(nested)
            order.append(nested)
            stack.append(nested)

    # Children always follow their parent in ``order``.
    for pending in reversed(order):
        nodes = [slot.node if isinstance(slot, _PendingDirectory) else slot for slot in pending.slots]
        nodes.sort(key=sibling_sort_key)
        pending.node = TreeNode(
            id=str(pending.path),
            label=pending.label,
            is_directory=True,
            children=tuple(nodes),
        )

    assert root_pending.node is not None
    return root_pending.node


def build_snapshot(
    path_filter: PathFilter | None,
    root: Path,
    *,
    epoch: int = 0,
    guard_symlink_cycles: bool = True,
) -> Snapshot:
    """Build a fresh immutable ``Snapshot`` of ``root``."""
    resolved_root = _resolve_root(root)
    tree = build_tree(path_filter, resolved_root, guard_symlink_cycles=guard_symlink_cycles)
    return Snapshot(root_path=resolved_root, root=tree, epoch=epoch)


__all__ = [
    "UNKNOWN_LABEL",
    "VCS_METADATA_NAME",
    "DirectoryChild",
    "display_label",
    "sibling_sort_key",
    "list_directory_children",
    "build_tree",
    "build_snapshot",
]

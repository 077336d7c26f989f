"""Domain datatypes for directory-tree snapshots."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class TreeNode:
    """One filesystem entry with ordered, recursively nested children.

    ``children`` is always empty for files. For directories it holds
    subdirectories first, then files, each group ordered by ``label``.
    """

    id: str
    label: str
    is_directory: bool
    children: tuple["TreeNode", ...] = ()

    def iter_nodes(self) -> Iterator[TreeNode]:
        """Yield this node and every descendant in pre-order."""
        stack: list[TreeNode] = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


@dataclass(frozen=True)
class Snapshot:
    """Immutable result of one tree build for ``root_path``."""

    root_path: Path
    root: TreeNode
    epoch: int = 0


__all__ = [
    "TreeNode",
    "Snapshot",
]

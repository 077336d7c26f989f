"""Domain model for directory-tree snapshots.

This package contains non-UI tree primitives:
- frozen tree-node and snapshot datatypes
- filesystem scanning and ordered tree construction
"""

from __future__ import annotations

from .types import Snapshot, TreeNode
from .build import (
    UNKNOWN_LABEL,
    VCS_METADATA_NAME,
    DirectoryChild,
    build_snapshot,
    build_tree,
    display_label,
    list_directory_children,
    sibling_sort_key,
)

__all__ = [
    "TreeNode",
    "Snapshot",
    "UNKNOWN_LABEL",
    "VCS_METADATA_NAME",
    "DirectoryChild",
    "display_label",
    "sibling_sort_key",
    "list_directory_children",
    "build_tree",
    "build_snapshot",
]

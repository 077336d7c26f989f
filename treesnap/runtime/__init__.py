"""Background snapshot scheduling.

Groups the scheduler that runs tree builds off the caller's thread and the
sink helpers that receive completed trees.
"""

from __future__ import annotations

from .snapshot_scheduler import (
    LatestSnapshotSink,
    SnapshotRequest,
    SnapshotScheduler,
    SnapshotSchedulingError,
    SnapshotSink,
)

__all__ = [
    "SnapshotSink",
    "SnapshotSchedulingError",
    "SnapshotRequest",
    "SnapshotScheduler",
    "LatestSnapshotSink",
]

"""Background snapshot builds with single delivery onto the sink's context."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from queue import Empty, Queue
from typing import Protocol

from ..path_filter import PathFilter, load_path_filter
from ..snapshot_model import TreeNode, build_snapshot

logger = logging.getLogger(__name__)


class SnapshotSink(Protocol):
    """Receives the completed tree of one snapshot request.

    Sinks may also define ``on_snapshot_failed(root, error)`` to hear about
    builds that raised instead of completing.
    """

    def on_snapshot(self, tree: TreeNode) -> None: ...


class SnapshotSchedulingError(RuntimeError):
    """Raised when the background build for a request cannot be started."""

    def __init__(self, root: Path, cause: BaseException) -> None:
        super().__init__(f"could not start snapshot build for {root}: {cause}")
        self.root = root
        self.cause = cause


@dataclass(frozen=True)
class SnapshotRequest:
    """One accepted snapshot request."""

    epoch: int
    root: Path


class SnapshotScheduler:
    """Run one background tree build per request and deliver it exactly once.

    Deliveries never run on the worker threads. Without ``dispatch`` they are
    queued until the foreground calls ``deliver_pending`` (or
    ``wait_for_deliveries``), which invokes the sinks on the calling thread.
    With ``dispatch`` each delivery is handed over as a zero-argument callable,
    for example to ``loop.call_soon_threadsafe``.
    """

    def __init__(
        self,
        path_filter_for_root: Callable[[Path], PathFilter] = load_path_filter,
        *,
        dispatch: Callable[[Callable[[], None]], object] | None = None,
        guard_symlink_cycles: bool = True,
    ) -> None:
        self._path_filter_for_root = path_filter_for_root
        self._dispatch = dispatch
        self._guard_symlink_cycles = guard_symlink_cycles
        self._lock = threading.Lock()
        self._next_epoch = 1
        self._outstanding = 0
        self._deliveries: Queue[Callable[[], None]] = Queue()

    @property
    def outstanding(self) -> int:
        """Number of accepted requests whose sink has not been invoked yet."""
        with self._lock:
            return self._outstanding

    def request_snapshot(self, root: Path, sink: SnapshotSink) -> SnapshotRequest:
        """Start a background build of ``root`` that will deliver to ``sink``.

        Raises ``SnapshotSchedulingError`` when the worker thread cannot be
        started; nothing is delivered for that request.
        """
        with self._lock:
            request = SnapshotRequest(epoch=self._next_epoch, root=Path(root))
            self._next_epoch += 1
            self._outstanding += 1

        worker = threading.Thread(
            target=self._worker,
            args=(request, sink),
            name=f"treesnap-snapshot-{request.epoch}",
            daemon=True,
        )
        try:
            worker.start()
        except RuntimeError as exc:
            with self._lock:
                self._outstanding -= 1
            logger.warning("Could not start snapshot build for %s: %s", request.root, exc)
            raise SnapshotSchedulingError(request.root, exc) from exc
        return request

    def _worker(self, request: SnapshotRequest, sink: SnapshotSink) -> None:
        try:
            path_filter = self._path_filter_for_root(request.root)
            snapshot = build_snapshot(
                path_filter,
                request.root,
                epoch=request.epoch,
                guard_symlink_cycles=self._guard_symlink_cycles,
            )
        except Exception as exc:
            logger.exception("Snapshot build failed for %s", request.root)
            self._hand_off(partial(self._deliver_failure, request, sink, exc))
            return
        logger.debug("Snapshot %d of %s built", request.epoch, snapshot.root_path)
        self._hand_off(partial(self._deliver, sink, snapshot.root))

    def _hand_off(self, delivery: Callable[[], None]) -> None:
        if self._dispatch is None:
            self._deliveries.put(delivery)
            return
        try:
            self._dispatch(delivery)
        except Exception:
            logger.exception("Could not dispatch snapshot delivery")
            self._settle()

    def _settle(self) -> None:
        with self._lock:
            self._outstanding -= 1

    def _deliver(self, sink: SnapshotSink, tree: TreeNode) -> None:
        self._settle()
        sink.on_snapshot(tree)

    def _deliver_failure(self, request: SnapshotRequest, sink: SnapshotSink, error: Exception) -> None:
        self._settle()
        on_failed = getattr(sink, "on_snapshot_failed", None)
        if on_failed is not None:
            on_failed(request.root, error)

    def deliver_pending(self) -> int:
        """Invoke the sinks of all completed builds; return how many ran."""
        delivered = 0
        while True:
            try:
                delivery = self._deliveries.get_nowait()
            except Empty:
                break
            delivery()
            delivered += 1
        return delivered

    def wait_for_deliveries(self, timeout: float | None = None) -> bool:
        """Block until every outstanding request has been delivered.

        Deliveries run on the calling thread. Returns ``False`` when
        ``timeout`` seconds pass first.
        """
        if self._dispatch is not None:
            raise RuntimeError("deliveries are dispatched externally; wait on the dispatch context instead")
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.outstanding > 0:
            if deadline is None:
                delivery = self._deliveries.get()
            else:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                try:
                    delivery = self._deliveries.get(timeout=remaining)
                except Empty:
                    return False
            delivery()
        return True


class LatestSnapshotSink:
    """Forward only the newest of several requests to ``sink``.

    Call ``track()`` once per request and pass the returned sink to
    ``request_snapshot``; deliveries from requests older than the most
    recently tracked one are dropped.
    """

    def __init__(self, sink: SnapshotSink) -> None:
        self._sink = sink
        self._lock = threading.Lock()
        self._latest = 0

    @property
    def latest(self) -> int:
        with self._lock:
            return self._latest

    def track(self) -> _EpochSink:
        with self._lock:
            self._latest += 1
            return _EpochSink(self, self._latest)

    def _accept(self, sequence: int, tree: TreeNode) -> None:
        if sequence != self.latest:
            logger.debug("Dropping stale snapshot delivery %d", sequence)
            return
        self._sink.on_snapshot(tree)

    def _accept_failure(self, sequence: int, root: Path, error: BaseException) -> None:
        if sequence != self.latest:
            return
        on_failed = getattr(self._sink, "on_snapshot_failed", None)
        if on_failed is not None:
            on_failed(root, error)


@dataclass(frozen=True)
class _EpochSink:
    owner: LatestSnapshotSink
    sequence: int

    def on_snapshot(self, tree: TreeNode) -> None:
        self.owner._accept(self.sequence, tree)

    def on_snapshot_failed(self, root: Path, error: BaseException) -> None:
        self.owner._accept_failure(self.sequence, root, error)


__all__ = [
    "SnapshotSink",
    "SnapshotSchedulingError",
    "SnapshotRequest",
    "SnapshotScheduler",
    "LatestSnapshotSink",
]

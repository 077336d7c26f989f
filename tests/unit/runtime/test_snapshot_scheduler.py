"""Tests for background snapshot scheduling and delivery."""

from __future__ import annotations

import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest import mock

from treesnap.path_filter import NullPathFilter
from treesnap.runtime import (
    LatestSnapshotSink,
    SnapshotScheduler,
    SnapshotSchedulingError,
)
from treesnap.snapshot_model import TreeNode


class _RecordingSink:
    def __init__(self) -> None:
        self.trees: list[TreeNode] = []
        self.failures: list[tuple[Path, BaseException]] = []
        self.threads: list[threading.Thread] = []

    def on_snapshot(self, tree: TreeNode) -> None:
        self.threads.append(threading.current_thread())
        self.trees.append(tree)

    def on_snapshot_failed(self, root: Path, error: BaseException) -> None:
        self.failures.append((root, error))


def _null_filter(_root: Path) -> NullPathFilter:
    return NullPathFilter()


def _make_layout(root: Path) -> None:
    (root / "b").mkdir()
    (root / "b" / "x.txt").write_text("x\n", encoding="utf-8")
    (root / "a").mkdir()
    (root / "z.txt").write_text("z\n", encoding="utf-8")


class SnapshotSchedulerTests(unittest.TestCase):
    def test_request_delivers_tree_once_on_waiting_thread(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            _make_layout(root)
            scheduler = SnapshotScheduler(_null_filter)
            sink = _RecordingSink()

            request = scheduler.request_snapshot(root, sink)
            self.assertTrue(scheduler.wait_for_deliveries(timeout=5.0))

            self.assertEqual(request.epoch, 1)
            self.assertEqual(len(sink.trees), 1)
            self.assertEqual([child.label for child in sink.trees[0].children], ["a", "b", "z.txt"])
            self.assertEqual(sink.threads, [threading.current_thread()])
            self.assertEqual(scheduler.outstanding, 0)
            self.assertEqual(scheduler.deliver_pending(), 0)
            self.assertEqual(len(sink.trees), 1)

    def test_sink_is_not_called_until_foreground_drains(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            _make_layout(root)
            scheduler = SnapshotScheduler(_null_filter)
            sink = _RecordingSink()

            scheduler.request_snapshot(root, sink)
            deadline = time.monotonic() + 5.0
            while scheduler._deliveries.empty() and time.monotonic() < deadline:
                time.sleep(0.01)

            self.assertEqual(sink.trees, [])
            self.assertEqual(scheduler.deliver_pending(), 1)
            self.assertEqual(len(sink.trees), 1)

    def test_filter_is_built_for_requested_root(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            _make_layout(root)
            seen_roots: list[Path] = []

            class _IgnoreB:
                def is_ignored(self, relative_path: str) -> bool:
                    return relative_path == "b"

            def path_filter_for_root(requested: Path) -> _IgnoreB:
                seen_roots.append(requested)
                return _IgnoreB()

            scheduler = SnapshotScheduler(path_filter_for_root)
            sink = _RecordingSink()
            scheduler.request_snapshot(root, sink)
            self.assertTrue(scheduler.wait_for_deliveries(timeout=5.0))

            self.assertEqual(seen_roots, [root])
            self.assertEqual([child.label for child in sink.trees[0].children], ["a", "z.txt"])

    def test_back_to_back_requests_each_deliver_exactly_once(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_a, tempfile.TemporaryDirectory() as tmp_b:
            root_a = Path(tmp_a).resolve()
            root_b = Path(tmp_b).resolve()
            for index in range(30):
                (root_a / f"a{index:02d}.txt").write_text("", encoding="utf-8")
                (root_b / f"dir{index:02d}").mkdir()
            scheduler = SnapshotScheduler(_null_filter)
            sink_a = _RecordingSink()
            sink_b = _RecordingSink()

            first = scheduler.request_snapshot(root_a, sink_a)
            second = scheduler.request_snapshot(root_b, sink_b)
            self.assertTrue(scheduler.wait_for_deliveries(timeout=5.0))

            self.assertLess(first.epoch, second.epoch)
            self.assertEqual(len(sink_a.trees), 1)
            self.assertEqual(len(sink_b.trees), 1)
            self.assertEqual(
                [child.label for child in sink_a.trees[0].children],
                [f"a{index:02d}.txt" for index in range(30)],
            )
            self.assertTrue(all(not child.is_directory for child in sink_a.trees[0].children))
            self.assertEqual(
                [child.label for child in sink_b.trees[0].children],
                [f"dir{index:02d}" for index in range(30)],
            )
            self.assertTrue(all(child.is_directory for child in sink_b.trees[0].children))

    def test_dispatch_receives_delivery_callbacks(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            _make_layout(root)
            handed_off: list = []
            ready = threading.Event()

            def dispatch(callback) -> None:
                handed_off.append(callback)
                ready.set()

            scheduler = SnapshotScheduler(_null_filter, dispatch=dispatch)
            sink = _RecordingSink()
            scheduler.request_snapshot(root, sink)

            self.assertTrue(ready.wait(timeout=5.0))
            self.assertEqual(sink.trees, [])
            self.assertEqual(scheduler.outstanding, 1)
            handed_off[0]()
            self.assertEqual(len(sink.trees), 1)
            self.assertEqual(scheduler.outstanding, 0)
            with self.assertRaises(RuntimeError):
                scheduler.wait_for_deliveries(timeout=0.1)

    def test_failing_dispatch_is_logged_and_settles_request(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            _make_layout(root)
            attempted = threading.Event()

            def closed_loop_dispatch(_callback) -> None:
                attempted.set()
                raise RuntimeError("loop closed")

            scheduler = SnapshotScheduler(_null_filter, dispatch=closed_loop_dispatch)
            sink = _RecordingSink()
            with self.assertLogs("treesnap.runtime.snapshot_scheduler", level="ERROR") as logs:
                scheduler.request_snapshot(root, sink)
                self.assertTrue(attempted.wait(timeout=5.0))
                deadline = time.monotonic() + 5.0
                while scheduler.outstanding > 0 and time.monotonic() < deadline:
                    time.sleep(0.01)

            self.assertEqual(scheduler.outstanding, 0)
            self.assertTrue(any("dispatch" in line for line in logs.output))
            self.assertEqual(sink.trees, [])

    def test_build_failure_is_reported_to_sink(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            _make_layout(root)

            def broken_filter(_root: Path):
                raise ValueError("bad ignore rules")

            scheduler = SnapshotScheduler(broken_filter)
            sink = _RecordingSink()
            with self.assertLogs("treesnap.runtime.snapshot_scheduler", level="ERROR"):
                scheduler.request_snapshot(root, sink)
                self.assertTrue(scheduler.wait_for_deliveries(timeout=5.0))

            self.assertEqual(sink.trees, [])
            self.assertEqual(len(sink.failures), 1)
            failed_root, error = sink.failures[0]
            self.assertEqual(failed_root, root)
            self.assertIsInstance(error, ValueError)

    def test_scheduling_failure_raises_and_delivers_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            scheduler = SnapshotScheduler(_null_filter)
            sink = _RecordingSink()

            with mock.patch(
                "treesnap.runtime.snapshot_scheduler.threading.Thread.start",
                side_effect=RuntimeError("can't start new thread"),
            ):
                with self.assertRaises(SnapshotSchedulingError) as ctx:
                    scheduler.request_snapshot(root, sink)

            self.assertEqual(ctx.exception.root, root)
            self.assertEqual(scheduler.outstanding, 0)
            self.assertTrue(scheduler.wait_for_deliveries(timeout=0.1))
            self.assertEqual(sink.trees, [])
            self.assertEqual(sink.failures, [])

    def test_wait_for_deliveries_times_out_while_build_is_blocked(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            _make_layout(root)
            release = threading.Event()

            def slow_filter(_root: Path) -> NullPathFilter:
                release.wait(timeout=5.0)
                return NullPathFilter()

            scheduler = SnapshotScheduler(slow_filter)
            sink = _RecordingSink()
            scheduler.request_snapshot(root, sink)

            self.assertFalse(scheduler.wait_for_deliveries(timeout=0.05))
            release.set()
            self.assertTrue(scheduler.wait_for_deliveries(timeout=5.0))
            self.assertEqual(len(sink.trees), 1)


class LatestSnapshotSinkTests(unittest.TestCase):
    def test_only_newest_tracked_request_is_forwarded(self) -> None:
        target = _RecordingSink()
        latest = LatestSnapshotSink(target)
        older = latest.track()
        newer = latest.track()
        stale_tree = TreeNode(id="/old", label="old", is_directory=True)
        fresh_tree = TreeNode(id="/new", label="new", is_directory=True)

        newer.on_snapshot(fresh_tree)
        older.on_snapshot(stale_tree)

        self.assertEqual(target.trees, [fresh_tree])
        self.assertEqual(latest.latest, 2)

    def test_stale_failures_are_dropped(self) -> None:
        target = _RecordingSink()
        latest = LatestSnapshotSink(target)
        older = latest.track()
        latest.track()

        older.on_snapshot_failed(Path("/r"), ValueError("x"))

        self.assertEqual(target.failures, [])

    def test_latest_wins_through_scheduler(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            _make_layout(root)
            first_started = threading.Event()
            release_first = threading.Event()
            calls = 0
            calls_lock = threading.Lock()

            class _IgnoreEverything:
                def is_ignored(self, relative_path: str) -> bool:
                    return True

            def gated_filter(_root: Path):
                nonlocal calls
                with calls_lock:
                    calls += 1
                    is_first = calls == 1
                if is_first:
                    first_started.set()
                    release_first.wait(timeout=5.0)
                    return _IgnoreEverything()
                return NullPathFilter()

            scheduler = SnapshotScheduler(gated_filter)
            target = _RecordingSink()
            latest = LatestSnapshotSink(target)

            scheduler.request_snapshot(root, latest.track())
            self.assertTrue(first_started.wait(timeout=5.0))
            scheduler.request_snapshot(root, latest.track())
            release_first.set()
            self.assertTrue(scheduler.wait_for_deliveries(timeout=5.0))

            self.assertEqual(len(target.trees), 1)
            self.assertEqual([child.label for child in target.trees[0].children], ["a", "b", "z.txt"])


if __name__ == "__main__":
    unittest.main()

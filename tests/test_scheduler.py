"""Tests for RepeatingTask pacing and CrawlScheduler failure handling."""
from __future__ import annotations

import threading
import time

import pytest

from graph_corpus.crawl.scheduler import CrawlScheduler, RepeatingTask
from graph_corpus.errors import NetworkError, StorageError


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.mark.integration
class TestRepeatingTask:
    def test_runs_repeatedly_until_stopped(self):
        calls = []
        task = RepeatingTask("count", lambda: calls.append(1), period_seconds=0.0)
        task.start()
        assert _wait_for(lambda: len(calls) >= 5)
        task.stop()
        task.join(5)

        assert not task.running
        assert task.iterations == len(calls)

    def test_sleeps_out_the_rest_of_the_period(self):
        starts = []
        task = RepeatingTask("paced", lambda: starts.append(time.monotonic()), period_seconds=0.2)
        task.start()
        assert _wait_for(lambda: len(starts) >= 3)
        task.stop()
        task.join(5)

        gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
        assert all(gap >= 0.18 for gap in gaps[:2])

    def test_overrunning_iteration_starts_next_immediately(self):
        starts = []

        def slow():
            starts.append(time.monotonic())
            time.sleep(0.15)

        task = RepeatingTask("slow", slow, period_seconds=0.05)
        task.start()
        assert _wait_for(lambda: len(starts) >= 3)
        task.stop()
        task.join(5)

        gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
        assert all(0.14 <= gap < 0.5 for gap in gaps[:2])

    def test_iterations_never_overlap(self):
        active = []
        overlaps = []
        lock = threading.Lock()

        def body():
            with lock:
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
            time.sleep(0.01)
            with lock:
                active.pop()

        task = RepeatingTask("exclusive", body, period_seconds=0.0)
        task.start()
        assert _wait_for(lambda: task.iterations >= 10)
        task.stop()
        task.join(5)

        assert overlaps == []

    def test_failure_ends_the_task_and_reports(self):
        reported = []

        def boom():
            raise NetworkError("API returned 500", status_code=500)

        task = RepeatingTask("boom", boom, period_seconds=0.0, on_error=lambda name, exc: reported.append(name))
        task.start()
        task.join(5)

        assert not task.running
        assert isinstance(task.error, NetworkError)
        assert reported == ["boom"]
        assert task.iterations == 0

    def test_cannot_start_twice(self):
        task = RepeatingTask("once", lambda: None, period_seconds=1.0)
        task.start()
        with pytest.raises(RuntimeError):
            task.start()
        task.stop()
        task.join(5)


@pytest.mark.integration
class TestCrawlScheduler:
    def test_passes_run_concurrently(self):
        started = {name: threading.Event() for name in ("a", "b")}
        release = threading.Event()

        def make(name):
            def body():
                started[name].set()
                release.wait(5)
            return body

        scheduler = CrawlScheduler(0.0, poll_interval_seconds=0.01)
        scheduler.add("a", make("a"))
        scheduler.add("b", make("b"))
        scheduler.start()

        # Both passes are inside their first iteration at the same time.
        assert started["a"].wait(5)
        assert started["b"].wait(5)
        release.set()
        scheduler.stop()
        scheduler.wait()

        assert scheduler.task_names == ["a", "b"]

    def test_wait_reraises_first_pass_failure(self):
        def boom():
            raise NetworkError("API returned 401", status_code=401, operation="friends/ids")

        scheduler = CrawlScheduler(0.0, poll_interval_seconds=0.01)
        scheduler.add("healthy", lambda: time.sleep(0.01))
        scheduler.add("broken", boom)
        scheduler.start()

        with pytest.raises(NetworkError) as excinfo:
            scheduler.wait()
        assert excinfo.value.operation == "friends/ids"

    def test_wait_reraises_health_check_failure(self):
        failed = threading.Event()

        def health_check():
            if failed.is_set():
                raise StorageError("Write store_edges failed", operation="store_edges")

        scheduler = CrawlScheduler(0.0, health_check=health_check, poll_interval_seconds=0.01)
        scheduler.add("idle", lambda: time.sleep(0.01))
        scheduler.start()
        failed.set()

        with pytest.raises(StorageError):
            scheduler.wait()

    def test_stop_lets_wait_return(self):
        scheduler = CrawlScheduler(0.0, poll_interval_seconds=0.01)
        scheduler.add("tick", lambda: None)
        scheduler.start()
        assert _wait_for(lambda: scheduler.iterations("tick") >= 3)

        scheduler.stop()
        scheduler.wait()

    def test_per_task_period_override(self):
        scheduler = CrawlScheduler(60.0)
        task = scheduler.add("fast", lambda: None, period_seconds=0.0)
        assert task._period == 0.0  # type: ignore[attr-defined]

    def test_duplicate_names_rejected(self):
        scheduler = CrawlScheduler(1.0)
        scheduler.add("a", lambda: None)
        with pytest.raises(ValueError):
            scheduler.add("a", lambda: None)

"""Run crawl passes forever, each on its own thread at its own pace."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

LOGGER = logging.getLogger(__name__)


class RepeatingTask:
    """Call ``fn`` back to back, at most once per ``period_seconds``.

    An iteration always runs to completion. If it finishes early the task
    sleeps out the rest of the period; if it overruns, the next iteration
    starts immediately. Iterations of the same task never overlap.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[], object],
        period_seconds: float,
        on_error: Optional[Callable[[str, BaseException], None]] = None,
    ) -> None:
        self.name = name
        self._fn = fn
        self._period = period_seconds
        self._on_error = on_error
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.iterations = 0
        self.error: Optional[BaseException] = None

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"Task {self.name} already started")
        self._thread = threading.Thread(target=self._loop, name=f"pass-{self.name}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Ask the task to exit once its current iteration finishes."""

        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                self._fn()
            except Exception as exc:
                self.error = exc
                LOGGER.error("Pass %s failed: %s", self.name, exc)
                if self._on_error is not None:
                    self._on_error(self.name, exc)
                return
            with self._lock:
                self.iterations += 1
            elapsed = time.monotonic() - started
            LOGGER.debug("Pass %s iteration %s took %.2fs", self.name, self.iterations, elapsed)
            if elapsed < self._period:
                self._stop.wait(self._period - elapsed)


class CrawlScheduler:
    """Owns the repeating passes and reports the first failure among them.

    ``health_check`` is polled while waiting; it should raise when a shared
    resource (the store's writer) has failed outside any pass.
    """

    def __init__(
        self,
        period_seconds: float,
        *,
        health_check: Optional[Callable[[], None]] = None,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self._period = period_seconds
        self._health_check = health_check
        self._poll_interval = poll_interval_seconds
        self._tasks: Dict[str, RepeatingTask] = {}
        self._done = threading.Event()
        self._failure: Optional[BaseException] = None
        self._failed_task: Optional[str] = None
        self._lock = threading.Lock()

    def add(self, name: str, fn: Callable[[], object], period_seconds: Optional[float] = None) -> RepeatingTask:
        if name in self._tasks:
            raise ValueError(f"Task {name} already scheduled")
        period = self._period if period_seconds is None else period_seconds
        task = RepeatingTask(name, fn, period, on_error=self._record_failure)
        self._tasks[name] = task
        return task

    @property
    def task_names(self) -> List[str]:
        return list(self._tasks)

    def iterations(self, name: str) -> int:
        return self._tasks[name].iterations

    def _record_failure(self, name: str, exc: BaseException) -> None:
        with self._lock:
            if self._failure is None:
                self._failure = exc
                self._failed_task = name
        self._done.set()

    def start(self) -> None:
        LOGGER.info("Scheduler starting %s pass(es): %s", len(self._tasks), ", ".join(self._tasks))
        for task in self._tasks.values():
            task.start()

    def stop(self) -> None:
        """Stop every task after its current iteration and unblock ``wait``."""

        for task in self._tasks.values():
            task.stop()
        self._done.set()

    def wait(self) -> None:
        """Block until stopped; re-raise the first pass or health-check failure."""

        while not self._done.wait(self._poll_interval):
            if self._health_check is not None:
                try:
                    self._health_check()
                except Exception as exc:
                    self._record_failure("health_check", exc)
        if self._failure is not None:
            LOGGER.error("Scheduler halting: pass %s failed", self._failed_task)
            for task in self._tasks.values():
                task.stop()
            raise self._failure
        for task in self._tasks.values():
            task.join()
        LOGGER.info("Scheduler stopped")

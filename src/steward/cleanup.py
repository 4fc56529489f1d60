"""Cache eviction scheduling: immediate, deferred, or background."""

from __future__ import annotations

import threading
from collections import deque
from typing import Protocol

from . import log
from .cache import EvictionReport
from .models import CacheConfig, CleanupConfig

MAX_RECORDED_ERRORS = 50


class EvictingCache(Protocol):
    def evict(self, config: CacheConfig | None = None) -> EvictionReport: ...


class CleanupTask:
    """Handle for one eviction pass."""

    def __init__(self) -> None:
        self._finished = threading.Event()
        self.report: EvictionReport | None = None
        self.error: Exception | None = None

    @property
    def done(self) -> bool:
        return self._finished.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the pass finishes; return whether it did."""
        return self._finished.wait(timeout)

    def _finish(self, report: EvictionReport | None, error: Exception | None) -> None:
        self.report = report
        self.error = error
        self._finished.set()


class CleanupScheduler:
    """Own the configured eviction timing for one cache.

    ``trigger()`` is called after every task. Immediate timing evicts before
    returning; deferred timing starts eviction on a daemon thread and returns
    at once; background timing ignores triggers and evicts from its own timer
    between ``start()`` and ``stop()``. Eviction failures are logged and kept
    in ``errors`` (the most recent ``MAX_RECORDED_ERRORS``), never raised.
    """

    def __init__(
        self,
        cache: EvictingCache,
        config: CleanupConfig | None = None,
        *,
        evict_config: CacheConfig | None = None,
    ) -> None:
        self._cache = cache
        self.config = config or CleanupConfig()
        self._evict_config = evict_config
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._errors: deque[Exception] = deque(maxlen=MAX_RECORDED_ERRORS)
        self._errors_lock = threading.Lock()
        self._pass_lock = threading.Lock()

    @property
    def timing(self) -> str:
        return self.config.timing

    @property
    def errors(self) -> list[Exception]:
        with self._errors_lock:
            return list(self._errors)

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def _run_pass(self, task: CleanupTask) -> None:
        report: EvictionReport | None = None
        error: Exception | None = None
        try:
            with self._pass_lock:
                report = self._cache.evict(self._evict_config)
        except Exception as exc:
            error = exc
            with self._errors_lock:
                self._errors.append(exc)
            log.warning(f"workspace cache eviction failed: {exc}")
        task._finish(report, error)

    def trigger(self) -> CleanupTask | None:
        """Run eviction according to the configured timing."""
        timing = self.config.timing
        if timing == "background":
            return None
        task = CleanupTask()
        if timing == "immediate":
            self._run_pass(task)
            return task
        thread = threading.Thread(
            target=self._run_pass,
            args=(task,),
            name="steward-cleanup",
            daemon=True,
        )
        thread.start()
        return task

    def start(self) -> None:
        """Start the background timer; evicts once immediately."""
        if self.config.timing != "background":
            return
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="steward-cleanup-timer",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the background timer."""
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
        self._thread = None

    def _run(self) -> None:
        self._run_pass(CleanupTask())
        while not self._stop.wait(self.config.background_interval):
            self._run_pass(CleanupTask())

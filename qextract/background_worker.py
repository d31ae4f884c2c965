"""
Background Queue Worker
=======================
Hosts a JobQueue on a dedicated asyncio event loop thread so synchronous
callers (the Flask service) can drive it.

Architecture:
    - One daemon thread runs one event loop forever
    - The JobQueue is created on that loop and only touched from it
    - Every public method marshals a call onto the loop and waits for its
      (immediate) result, so queue state is never mutated from two threads

Usage:
    worker = BackgroundQueue(engine)
    worker.start()
    worker.submit([SourceFile.from_path(p)], calibration)
    worker.stop()
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Callable, Iterable, Optional

from .engine import ExtractionEngine
from .jobs import JobQueue
from .models import CalibrationConfig, JobView, SourceFile

logger = logging.getLogger(__name__)

CALL_TIMEOUT = 30.0


class BackgroundQueue:
    """Thread-safe facade over a JobQueue running on its own loop thread."""

    def __init__(
        self,
        engine: ExtractionEngine,
        on_change: Optional[Callable[[list[JobView]], None]] = None,
    ):
        self.engine = engine
        self.on_change = on_change
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name="qextract-queue"
        )
        self._queue: Optional[JobQueue] = None

    # ─── Lifecycle ────────────────────────────────────────────────────────

    def start(self) -> "BackgroundQueue":
        if self._thread.is_alive():
            return self
        self._thread.start()
        self._queue = self._call(self.engine.build_queue, self.on_change)
        logger.info("Background queue started")
        return self

    def stop(self):
        """Stop the loop thread; a file in progress is abandoned."""
        if not self._thread.is_alive():
            return
        if self._queue is not None:
            asyncio.run_coroutine_threadsafe(
                self._queue.aclose(), self._loop
            ).result(CALL_TIMEOUT)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(CALL_TIMEOUT)
        self._loop.close()
        logger.info("Background queue stopped")

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()

    # ─── Queue Operations ─────────────────────────────────────────────────

    def submit(
        self, files: Iterable[SourceFile], config: CalibrationConfig
    ) -> list[str]:
        return self._call(lambda: self._require_queue().submit(list(files), config))

    def cancel_all(self) -> int:
        return self._call(lambda: self._require_queue().cancel_all())

    def clear_completed(self) -> int:
        return self._call(lambda: self._require_queue().clear_completed())

    def is_working(self) -> bool:
        return self._call(lambda: self._require_queue().is_working())

    @property
    def jobs(self) -> list[JobView]:
        return self._call(lambda: self._require_queue().jobs)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the queue drains. Returns False on timeout."""
        future = asyncio.run_coroutine_threadsafe(
            self._require_queue().join(), self._loop
        )
        try:
            future.result(timeout)
            return True
        except concurrent.futures.TimeoutError:
            future.cancel()
            return False

    # ─── Helpers ──────────────────────────────────────────────────────────

    def _run_loop(self):
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def _require_queue(self) -> JobQueue:
        if self._queue is None:
            raise RuntimeError("Background queue is not started")
        return self._queue

    def _call(self, fn: Callable[..., Any], *args) -> Any:
        if not self._thread.is_alive():
            raise RuntimeError("Background queue is not running")

        async def _invoke():
            return fn(*args)

        return asyncio.run_coroutine_threadsafe(
            _invoke(), self._loop
        ).result(CALL_TIMEOUT)

"""Per-soul work queues for launches and completion handling."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Optional

LOGGER = logging.getLogger(__name__)


class SoulDispatcher:
    """Run queued work serially per soul and in parallel across souls.

    Each soul gets its own single-worker pool, so completion handling and the
    launches it triggers never interleave for one project. ``delay`` is a plain
    sleep on that worker before the callable runs. A pool is released as soon
    as its queue drains and recreated on the next submit.
    """

    def __init__(self) -> None:
        self._pools: Dict[str, ThreadPoolExecutor] = {}
        self._pending: Dict[Future, str] = {}
        self._lock = threading.Lock()
        self._closed = False

    def submit(
        self,
        soul_id: str,
        fn: Callable[..., Any],
        *args: Any,
        delay: float = 0.0,
    ) -> Future:
        with self._lock:
            if self._closed:
                raise RuntimeError("Dispatcher has been shut down")
            pool = self._pools.get(soul_id)
            if pool is None:
                pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"soul-{soul_id}")
                self._pools[soul_id] = pool
            future = pool.submit(self._run, soul_id, fn, args, delay)
            self._pending[future] = soul_id
        future.add_done_callback(self._discard)
        return future

    def has_pending(self, soul_id: str) -> bool:
        """Return True while work for ``soul_id`` is queued or running."""
        with self._lock:
            return soul_id in self._pending.values()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no queued work remains; False when ``timeout`` expires first."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = set(self._pending)
            if not pending:
                return True
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
            wait(pending, timeout=remaining)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def shutdown(self, *, wait_for_pending: bool = True) -> None:
        with self._lock:
            self._closed = True
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            pool.shutdown(wait=wait_for_pending, cancel_futures=not wait_for_pending)

    def _discard(self, future: Future) -> None:
        with self._lock:
            soul_id = self._pending.pop(future, None)
            if soul_id is None or soul_id in self._pending.values():
                return
            pool = self._pools.pop(soul_id, None)
        if pool is not None:
            # runs on the pool's own worker, so never join here
            pool.shutdown(wait=False)

    @staticmethod
    def _run(soul_id: str, fn: Callable[..., Any], args: tuple, delay: float) -> Any:
        if delay > 0:
            time.sleep(delay)
        try:
            return fn(*args)
        except Exception:  # noqa: BLE001 - queued work must not kill the worker
            LOGGER.exception("Queued work for soul %s failed", soul_id)
            return None


__all__ = ["SoulDispatcher"]

"""
Request sequencing for asynchronous feature queries.

Queries run on a worker pool while UI state is only mutated on the event
thread. Every request gets a monotonically increasing sequence number and is
recorded as the latest for its slot; a completion is applied only if it is
still the latest request for that slot, so a slow stale response can never
overwrite newer results.
"""

import itertools
import logging
import queue
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class Completion:
    slot: str
    sequence: int
    future: Future
    on_success: Callable[[Any], None]
    on_error: Optional[Callable[[BaseException], None]] = None


class RequestSequencer:
    """Issues sequenced requests and applies their completions on the caller's thread."""

    def __init__(self, executor: Executor = None, max_workers: int = 4):
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers,
                                                        thread_name_prefix="treemap-query")
        self._counter = itertools.count(1)
        self._latest: Dict[str, int] = {}
        self._completed: "queue.Queue[Completion]" = queue.Queue()
        self._pending = 0
        self._lock = threading.Lock()

    def submit(self, slot: str, fn: Callable[..., Any], *args,
               on_success: Callable[[Any], None],
               on_error: Optional[Callable[[BaseException], None]] = None, **kwargs) -> int:
        """
        Run ``fn(*args, **kwargs)`` in the background for ``slot``.

        Returns:
            The sequence number assigned to this request
        """
        sequence = next(self._counter)
        self._latest[slot] = sequence
        with self._lock:
            self._pending += 1

        future = self._executor.submit(fn, *args, **kwargs)
        completion = Completion(slot, sequence, future, on_success, on_error)
        future.add_done_callback(lambda _f: self._completed.put(completion))
        logger.debug(f"Submitted request #{sequence} for slot '{slot}'")
        return sequence

    def latest(self, slot: str) -> Optional[int]:
        return self._latest.get(slot)

    def is_current(self, slot: str, sequence: int) -> bool:
        return self._latest.get(slot) == sequence

    def invalidate(self, slot: str) -> None:
        """Forget the latest request of a slot so any in-flight completion is dropped."""
        self._latest[slot] = next(self._counter)

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    def process_completions(self, block: bool = False, timeout: float = None) -> int:
        """
        Apply queued completions on the calling thread.

        Args:
            block: Wait for at least one completion if none is queued
            timeout: Maximum time to wait when blocking

        Returns:
            Number of completions that were applied (stale ones are not counted)
        """
        applied = 0
        wait = block
        while True:
            try:
                if wait:
                    completion = self._completed.get(timeout=timeout)
                else:
                    completion = self._completed.get_nowait()
            except queue.Empty:
                break
            wait = False
            with self._lock:
                self._pending -= 1
            if self._apply(completion):
                applied += 1
        return applied

    def _apply(self, completion: Completion) -> bool:
        if not self.is_current(completion.slot, completion.sequence):
            logger.debug(f"Dropping stale response #{completion.sequence} for slot '{completion.slot}'")
            return False

        error = completion.future.exception()
        if error is not None:
            if completion.on_error is None:
                logger.error(f"Request #{completion.sequence} for slot '{completion.slot}' failed: {error}")
            else:
                completion.on_error(error)
            return True

        completion.on_success(completion.future.result())
        return True

    def wait_idle(self, timeout: float = 30.0) -> int:
        """Block until every in-flight request has completed, applying results as they arrive."""
        applied = 0
        while self.pending > 0:
            try:
                completion = self._completed.get(timeout=timeout)
            except queue.Empty:
                logger.warning(f"Timed out waiting for {self.pending} pending feature queries")
                break
            with self._lock:
                self._pending -= 1
            if self._apply(completion):
                applied += 1
        return applied

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

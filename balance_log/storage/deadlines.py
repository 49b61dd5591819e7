"""
Deadline scheduler for store calls.

One daemon thread per store fires the interrupt callback of every call
that overruns its timeout, instead of one timer thread per call.
"""

import heapq
import itertools
import threading
import time
from typing import Callable, Optional
import structlog

logger = structlog.get_logger(__name__)


def _no_op() -> None:
    pass


class DeadlineScheduler:
    """
    Run callbacks at their deadline unless cancelled first.

    Callbacks run on the scheduler thread while its lock is held, so once
    the cancel function returned by schedule() has returned, the callback
    will not run. Callbacks must be quick and must not call back into the
    scheduler.
    """

    def __init__(self, name: str = "deadline-scheduler"):
        self.name = name
        self._cond = threading.Condition()
        # (deadline, seq, [callback]); the slot is emptied on cancel
        self._heap: list[tuple[float, int, list[Optional[Callable[[], None]]]]] = []
        self._seq = itertools.count()
        self._thread: Optional[threading.Thread] = None
        self._stopped = False

    def schedule(self, delay: float, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Run callback after delay seconds.

        Returns:
            A function that cancels the callback
        """
        slot: list[Optional[Callable[[], None]]] = [callback]

        with self._cond:
            if self._stopped:
                # the call will find its store closed
                return _no_op
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
                self._thread.start()
            heapq.heappush(self._heap, (time.monotonic() + delay, next(self._seq), slot))
            self._cond.notify()

        def cancel() -> None:
            with self._cond:
                slot[0] = None

        return cancel

    def stop(self) -> None:
        """Drop pending callbacks and end the scheduler thread."""
        with self._cond:
            self._stopped = True
            self._heap.clear()
            self._cond.notify()
            thread = self._thread

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    def _run(self) -> None:
        with self._cond:
            while not self._stopped:
                while self._heap and self._heap[0][2][0] is None:
                    heapq.heappop(self._heap)

                if not self._heap:
                    self._cond.wait()
                    continue

                wait = self._heap[0][0] - time.monotonic()
                if wait > 0:
                    self._cond.wait(wait)
                    continue

                _, _, slot = heapq.heappop(self._heap)
                callback, slot[0] = slot[0], None
                if callback is None:
                    continue
                try:
                    callback()
                except Exception as e:
                    # A closed cursor cannot be interrupted; its call is over anyway
                    logger.warning("deadline_callback_failed", scheduler=self.name, error=str(e))

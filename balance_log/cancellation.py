"""
Cooperative cancellation for in-flight store operations.

A token is handed to a query or append. Cancelling it runs every
registered handler once (stores register a statement interrupt while a
call is running), and operations that have not started yet refuse to
start.
"""

from threading import Lock
from typing import Callable

from balance_log.errors import QueryCancelled


class CancellationToken:
    """
    Thread-safe, one-shot cancellation signal.

    Tokens can be linked: cancelling a parent cancels every child created
    from it, but not the other way round.
    """

    def __init__(self):
        self._lock = Lock()
        self._cancelled = False
        self._handlers: list[Callable[[], None]] = []

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            handlers = list(self._handlers)

        for handler in handlers:
            handler()

    @property
    def is_cancellation_requested(self) -> bool:
        return self._cancelled

    def raise_if_cancellation_requested(self) -> None:
        if self._cancelled:
            raise QueryCancelled("operation cancelled")

    def register_handler(self, handler: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback to run on cancellation.

        Runs immediately if the token is already cancelled.

        Returns:
            A function that unregisters the handler
        """
        with self._lock:
            already_cancelled = self._cancelled
            if not already_cancelled:
                self._handlers.append(handler)

        if already_cancelled:
            handler()

        def unregister() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unregister

    def create_linked_token(self) -> "CancellationToken":
        child = CancellationToken()
        self.register_handler(child.cancel)
        return child

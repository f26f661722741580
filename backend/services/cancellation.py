"""Cooperative cancellation for long-running page loops."""
import threading


class CancellationToken:
    """A stop flag checked between units of work."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

"""Cooperative cancellation shared by a harvest run."""

import threading

from taxaharvest.fetch.errors import IngestionCancelled


class CancellationToken:
    """Run-level cancellation signal.

    Wraps a `threading.Event` so that every wait in the pipeline (backoff,
    pacing, cool-down, semaphore) can be interrupted from another thread.
    """

    def __init__(self) -> None:
        """Initialize an uncancelled token."""
        self._event = threading.Event()

    @property
    def is_cancelled(self) -> bool:
        """Check whether cancellation was requested."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise if cancellation was requested.

        Raises:
            IngestionCancelled: If the token is cancelled.
        """
        if self._event.is_set():
            raise IngestionCancelled

    def wait(self, seconds: float) -> None:
        """Sleep for up to `seconds`, waking early on cancellation.

        Args:
            seconds: Time to wait.

        Raises:
            IngestionCancelled: If cancelled before or during the wait.
        """
        self.raise_if_cancelled()
        if seconds > 0 and self._event.wait(seconds):
            raise IngestionCancelled

import threading
from typing import Optional

from plugin_console.plugins.errors import JobCancelled


class CancellationToken:
    """
    Cooperative cancellation flag for one job.

    Long-running steps call `raise_if_cancelled()` at their suspension points
    (between download chunks, before touching the plugins directory). Nothing
    is interrupted in between.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Job cancelled while running"):
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise JobCancelled(self.reason or "Job cancelled while running")

"""Cooperative cancellation signal threaded through long-running operations."""

import threading
from typing import Optional

from pricefeed.core.exceptions import OperationCancelled


class CancellationToken:
    """Thread-safe, one-way cancellation flag.

    Long-running operations call `raise_if_cancelled()` at their checkpoints
    (per store while crawling, per batch while inserting).
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(
                self._reason or "Operation was cancelled",
                context={"reason": self._reason},
            )

"""Registry of in-flight requests and their cancellation capabilities."""

from __future__ import annotations

import logging
import threading

from ccchat.constants import CancelCallback
from ccchat.service import DuplicateRequestError

logger = logging.getLogger(__name__)

__all__ = ["DuplicateRequestError", "RequestRegistry"]


class RequestRegistry:
    """Map of request id -> cancel callback.

    Thread-safe: entries are inserted, looked up and removed under a
    ``threading.Lock``; ``cancel`` pops the entry before invoking it so a
    callback runs at most once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, CancelCallback] = {}

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def register(self, request_id: str, cancel: CancelCallback) -> None:
        with self._lock:
            if request_id in self._entries:
                msg = f"Request {request_id!r} is already active"
                raise DuplicateRequestError(msg)
            self._entries[request_id] = cancel

    def remove(self, request_id: str) -> bool:
        """Drop the entry without cancelling.  Returns False if absent."""
        with self._lock:
            return self._entries.pop(request_id, None) is not None

    def cancel(self, request_id: str) -> bool:
        """Invoke and remove the entry for *request_id*.

        Returns False, with no side effects, for unknown or finished ids.
        """
        with self._lock:
            cancel = self._entries.pop(request_id, None)
        if cancel is None:
            logger.info("cancel for unknown request %s ignored", request_id)
            return False
        cancel()
        return True

    def cancel_all(self) -> int:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for cancel in entries:
            cancel()
        return len(entries)

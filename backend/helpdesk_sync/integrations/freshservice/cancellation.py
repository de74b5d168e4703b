"""Cooperative cancellation for a running sync."""

from __future__ import annotations

import threading

from helpdesk_sync.core.exceptions import SyncCancelled


class CancelToken:
    """Set by force-stop; checked by the page loop and enricher between requests."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SyncCancelled()


def check(token: CancelToken | None) -> None:
    if token is not None:
        token.raise_if_cancelled()

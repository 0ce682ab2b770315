"""
Cooperative cancellation for a single report request.

One CancelToken spans the whole request. Source clients check it before
each outbound call and while backing off between retries; the fan-out
provider polls it while waiting on its workers. A cancelled request
unwinds with RequestCancelled, which is never converted into a warning.
"""

import threading
from typing import Optional


class RequestCancelled(Exception):
    """Raised when the caller abandoned the request."""

    pass


class CancelToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise RequestCancelled("Request was cancelled")

    def sleep(self, seconds: float):
        """Sleep up to *seconds*, waking early and raising if cancelled."""
        if self._event.wait(seconds):
            raise RequestCancelled("Request was cancelled")


def check_cancelled(token: Optional[CancelToken]):
    """raise_if_cancelled() for call sites where the token is optional."""
    if token is not None:
        token.raise_if_cancelled()

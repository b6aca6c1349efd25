"""Cooperative cancellation shared by one translation run."""

from __future__ import annotations

import threading
from typing import Optional

from .errors import TranslationCancelled


class CancelToken:
    """A one-way cancellation flag backed by :class:`threading.Event`."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TranslationCancelled()

    def wait(self, seconds: Optional[float]) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""

        if seconds is not None and seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)

"""Queue-backed stream of progress events."""

from __future__ import annotations

import queue
from typing import Iterator

from .structures import ProgressEvent

_CLOSED = object()


class ProgressChannel:
    """Collects events from a worker and yields them to a consumer.

    The channel is callable so it can be handed to the engine as its event
    sink; the consumer iterates until :meth:`close` is called.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)
        self._closed = False

    def __call__(self, event: ProgressEvent) -> None:
        self.put(event)

    def put(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        self._queue.put(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return
            yield item  # type: ignore[misc]

"""
Bounded buffering between the row producer and the batch writer.

The producer is a lazy iterator; the controller pulls from it one item at a
time and stops pulling while a full batch is being written. Nothing upstream
runs ahead, so memory stays proportional to the batch size.
"""
import logging
from typing import Any, Callable, Generic, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackpressureController(Generic[T]):
    def __init__(
        self,
        batch_size: int,
        sink: Callable[[List[T]], Any],
        on_pause: Optional[Callable[[], None]] = None,
        on_resume: Optional[Callable[[], None]] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size
        self._sink = sink
        self._on_pause = on_pause
        self._on_resume = on_resume
        self._buffer: List[T] = []
        self.paused = False
        self.peak_buffered = 0
        self.batches_flushed = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def push(self, item: T) -> None:
        self._buffer.append(item)
        if len(self._buffer) > self.peak_buffered:
            self.peak_buffered = len(self._buffer)
        if len(self._buffer) >= self.batch_size:
            self._drain()

    def consume(self, items: Iterable[T]) -> int:
        """
        Pull every item from ``items`` through the buffer, then flush the rest.

        Returns the number of items consumed.
        """
        consumed = 0
        for item in items:
            self.push(item)
            consumed += 1
        self.flush()
        return consumed

    def flush(self) -> None:
        """Write the final partial batch, if any."""
        if self._buffer:
            self._drain()

    def _drain(self) -> None:
        self.paused = True
        if self._on_pause:
            self._on_pause()
        batch, self._buffer = self._buffer, []
        try:
            self._sink(batch)
        finally:
            self.batches_flushed += 1
            self.paused = False
            if self._on_resume:
                self._on_resume()

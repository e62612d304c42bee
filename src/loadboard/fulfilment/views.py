"""Lazy, finite, restartable read views.

A view holds a factory rather than data. Every ``iter()`` asks the owning
store for a fresh generator, so iterating twice re-reads current state and
an abandoned iteration leaves nothing behind.
"""

from __future__ import annotations

from typing import Callable, Generic, Iterator, Optional, TypeVar

from loadboard.models.bid import Bid
from loadboard.models.booking import TrackingEntry

T = TypeVar("T")


class RestartableView(Generic[T]):
    """Iterable over a store-provided generator factory."""

    def __init__(self, source: Callable[[], Iterator[T]]) -> None:
        self._source = source

    def __iter__(self) -> Iterator[T]:
        return self._source()

    def first(self) -> Optional[T]:
        for item in self:
            return item
        return None

    def to_list(self) -> list[T]:
        return list(self)


class PendingBids(RestartableView[Bid]):
    """Pending bids of one load, oldest submission first."""

    def __init__(self, load_id: str, source: Callable[[], Iterator[Bid]]) -> None:
        super().__init__(source)
        self.load_id = load_id


class TrackingLog(RestartableView[TrackingEntry]):
    """Tracking entries of one booking in sequence (and time) order."""

    def __init__(self, booking_id: str, source: Callable[[], Iterator[TrackingEntry]]) -> None:
        super().__init__(source)
        self.booking_id = booking_id

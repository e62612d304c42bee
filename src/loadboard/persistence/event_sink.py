"""Lifecycle events and the sinks that receive them.

The engine only emits; delivery (notifications, audit storage) belongs to
whatever sink is wired in. Emission happens after a change has been
committed and is best-effort: a failing sink is logged by the emitter and
never undoes the change. At-least-once delivery is acceptable.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from loadboard.persistence.event_log import EventKind, EventLog, EventRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LifecycleEvent:
    """Base event: what happened, who did it, and when."""
    kind: EventKind
    actor_id: str
    occurred_utc: datetime

    def payload(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True)
class LoadEvent(LifecycleEvent):
    load_id: str = ""
    status: str = ""
    version: int = 0
    reason: str = ""

    def payload(self) -> dict[str, Any]:
        return {
            "load_id": self.load_id,
            "status": self.status,
            "version": self.version,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class BidEvent(LifecycleEvent):
    bid_id: str = ""
    load_id: str = ""
    driver_id: str = ""
    amount: str = ""
    status: str = ""
    reason: str = ""

    def payload(self) -> dict[str, Any]:
        return {
            "bid_id": self.bid_id,
            "load_id": self.load_id,
            "driver_id": self.driver_id,
            "amount": self.amount,
            "status": self.status,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class AcceptanceEvent(LifecycleEvent):
    """A bid won its load and a booking was created."""
    load_id: str = ""
    bid_id: str = ""
    booking_id: str = ""
    rejected_bid_ids: tuple[str, ...] = field(default_factory=tuple)

    def payload(self) -> dict[str, Any]:
        return {
            "load_id": self.load_id,
            "bid_id": self.bid_id,
            "booking_id": self.booking_id,
            "rejected_bid_ids": list(self.rejected_bid_ids),
        }


@dataclass(frozen=True)
class BookingStatusEvent(LifecycleEvent):
    booking_id: str = ""
    load_id: str = ""
    previous_status: str = ""
    status: str = ""
    note: str = ""

    def payload(self) -> dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "load_id": self.load_id,
            "previous_status": self.previous_status,
            "status": self.status,
            "note": self.note,
        }


class EventSink(Protocol):
    """Anything that can receive lifecycle events."""

    def emit(self, event: LifecycleEvent) -> None:
        ...


class NullSink:
    """Discards events. Used when no audit sink is wired."""

    def emit(self, event: LifecycleEvent) -> None:
        return None


class EventLogSink:
    """Records lifecycle events as hashed entries in an EventLog."""

    def __init__(self, event_log: EventLog) -> None:
        self._event_log = event_log
        self._counter = event_log.count
        self._lock = threading.Lock()

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    def emit(self, event: LifecycleEvent) -> None:
        record = EventRecord.create(
            event_id=self._next_event_id(),
            event_kind=event.kind,
            actor_id=event.actor_id,
            payload=event.payload(),
            timestamp_utc=event.occurred_utc,
        )
        self._event_log.append(record)

    def _next_event_id(self) -> str:
        with self._lock:
            self._counter += 1
            return f"EVT-{self._counter:08d}"


def emit_safely(sink: Optional[EventSink], event: LifecycleEvent) -> Optional[str]:
    """Emit ``event``; return a warning string instead of raising.

    The change the event describes is already committed, so a sink
    failure is reported but never propagated.
    """
    if sink is None:
        return None
    try:
        sink.emit(event)
    except Exception as e:
        logger.warning("Event sink failed for %s: %s", event.kind.value, e)
        return f"Event emission failed: {e}"
    return None

"""Booking models: the fulfilment record created from an accepted bid.

State machine:
    CONFIRMED → PICKED_UP → IN_TRANSIT → DELIVERED
    any non-terminal state → CANCELLED

DELIVERED and CANCELLED are terminal. The tracking log stays append-only
for the life of the booking, terminal or not.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from loadboard.errors import StateTransitionError


class BookingStatus(str, enum.Enum):
    """Lifecycle state of a booking."""
    CONFIRMED = "confirmed"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


BOOKING_TRANSITIONS: Dict[BookingStatus, frozenset] = {
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.PICKED_UP,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.PICKED_UP: frozenset({
        BookingStatus.IN_TRANSIT,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.IN_TRANSIT: frozenset({
        BookingStatus.DELIVERED,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.DELIVERED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

TERMINAL_BOOKING_STATUSES = frozenset({
    BookingStatus.DELIVERED,
    BookingStatus.CANCELLED,
})


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class TrackingEntry:
    """Immutable entry of a booking's tracking log.

    ``status`` is the booking status at the time of the entry; notes
    that do not change status repeat the current one.
    """
    sequence: int
    timestamp_utc: datetime
    status: BookingStatus
    actor_id: str
    note: str = ""
    location: Optional[GeoPoint] = None


@dataclass
class Booking:
    """Fulfilment of exactly one accepted bid."""
    booking_id: str
    load_id: str
    bid_id: str
    driver_id: str
    cargo_owner_id: str
    agreed_price: Decimal
    status: BookingStatus = BookingStatus.CONFIRMED
    version: int = 0
    created_utc: Optional[datetime] = None
    picked_up_utc: Optional[datetime] = None
    delivered_utc: Optional[datetime] = None
    cancelled_utc: Optional[datetime] = None
    cancellation_reason: str = ""
    tracking_log: list[TrackingEntry] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        """A non-cancelled booking holds the load."""
        return self.status != BookingStatus.CANCELLED

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BOOKING_STATUSES

    def transition_to(self, new_status: BookingStatus) -> None:
        """Validate ``new_status`` against BOOKING_TRANSITIONS and apply it."""
        allowed = BOOKING_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
            raise StateTransitionError(
                f"Invalid booking transition: {self.status.value} → {new_status.value}. "
                f"Allowed from {self.status.value}: [{allowed_str}]",
                entity_id=self.booking_id,
            )
        self.status = new_status
        self.version += 1

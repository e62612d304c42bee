"""Booking tracker: owns bookings and their append-only tracking logs.

Bookings move only through BOOKING_TRANSITIONS. Each applied change
appends one immutable TrackingEntry whose timestamp is assigned here and
is strictly later than the previous entry of the same booking.

At most one non-cancelled booking exists per load; the per-load active
index is the enforcement point.

Follow-up writes on the load (mirroring fulfilment progress, re-opening
it after a cancellation) are best-effort. They run after the booking
change committed, use the load's version guard, and log instead of
raising when they lose a race.
"""

from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Iterator, Optional
from uuid import uuid4

from loadboard.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)
from loadboard.fulfilment.views import TrackingLog
from loadboard.market.bid_ledger import LOAD_CANCELLED_REASON, BidLedger
from loadboard.market.load_store import LoadStore
from loadboard.models.bid import Bid
from loadboard.models.booking import Booking, BookingStatus, GeoPoint, TrackingEntry
from loadboard.models.load import Load, LoadStatus
from loadboard.policy.resolver import EnginePolicy

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

_TICK = timedelta(microseconds=1)

# Booking status → (load status it requires, load status it moves to).
_LOAD_MIRROR: dict[BookingStatus, tuple[LoadStatus, LoadStatus]] = {
    BookingStatus.IN_TRANSIT: (LoadStatus.ASSIGNED, LoadStatus.IN_TRANSIT),
    BookingStatus.DELIVERED: (LoadStatus.IN_TRANSIT, LoadStatus.DELIVERED),
}


class BookingTracker:
    """Owns Booking records.

    Usage:
        tracker = BookingTracker(load_store, ledger, policy)
        booking = tracker.append_tracking_update(
            booking_id, BookingStatus.PICKED_UP, actor_id="driver-1",
        )
        for entry in tracker.get_tracking_log(booking_id):
            ...
    """

    def __init__(
        self,
        loads: LoadStore,
        ledger: BidLedger,
        policy: Optional[EnginePolicy] = None,
    ) -> None:
        self._loads = loads
        self._ledger = ledger
        self._policy = policy or EnginePolicy()
        self._bookings: dict[str, Booking] = {}
        self._active_by_load: dict[str, str] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def open_booking(
        self,
        bid: Bid,
        cargo_owner_id: str,
        now: Optional[datetime] = None,
        booking_id: Optional[str] = None,
    ) -> Booking:
        """Create the CONFIRMED booking for an accepted bid.

        Called by the acceptance coordinator inside its settlement step.
        Raises ConflictError if the load already has an active booking.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        if booking_id is None:
            booking_id = f"booking_{uuid4().hex[:12]}"
        with self._lock:
            existing = self._active_by_load.get(bid.load_id)
            if existing is not None:
                raise ConflictError(
                    f"Load {bid.load_id} already has an active booking: {existing}",
                    entity_id=bid.load_id,
                )
            if booking_id in self._bookings:
                raise ValidationError(f"Booking already exists: {booking_id}", entity_id=booking_id)
            booking = Booking(
                booking_id=booking_id,
                load_id=bid.load_id,
                bid_id=bid.bid_id,
                driver_id=bid.driver_id,
                cargo_owner_id=cargo_owner_id,
                agreed_price=Decimal(bid.amount),
                status=BookingStatus.CONFIRMED,
                created_utc=now,
            )
            booking.tracking_log.append(
                TrackingEntry(
                    sequence=1,
                    timestamp_utc=now,
                    status=BookingStatus.CONFIRMED,
                    actor_id=SYSTEM_ACTOR,
                    note="booking created",
                )
            )
            self._bookings[booking_id] = booking
            self._active_by_load[bid.load_id] = booking_id
            logger.info("Booking %s opened for load %s (bid %s)", booking_id, bid.load_id, bid.bid_id)
            return copy.deepcopy(booking)

    # ------------------------------------------------------------------
    # Status progression
    # ------------------------------------------------------------------

    def append_tracking_update(
        self,
        booking_id: str,
        new_status: BookingStatus,
        actor_id: str,
        note: str = "",
        location: Optional[GeoPoint] = None,
        now: Optional[datetime] = None,
        mirror: bool = True,
    ) -> Booking:
        """Move the booking to ``new_status`` and log it.

        Only the booking's driver advances fulfilment. A CANCELLED target
        is routed through :meth:`cancel`. With ``mirror`` set, IN_TRANSIT
        and DELIVERED are copied onto the load afterwards.

        Raises StateTransitionError for moves outside the table.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        new_status = BookingStatus(new_status)
        if new_status == BookingStatus.CANCELLED:
            return self.cancel(booking_id, actor_id, reason=note, now=now)
        self._validate_note(note)

        with self._lock:
            booking = self._get(booking_id)
            if actor_id != booking.driver_id:
                raise ForbiddenError(
                    f"Only the assigned driver can update booking {booking_id}",
                    entity_id=booking_id,
                )
            previous = booking.status
            booking.transition_to(new_status)
            ts = self._append_entry(booking, actor_id, now, note, location)
            if new_status == BookingStatus.PICKED_UP:
                booking.picked_up_utc = ts
            elif new_status == BookingStatus.DELIVERED:
                booking.delivered_utc = ts
            snapshot = copy.deepcopy(booking)
        logger.info(
            "Booking %s: %s → %s by %s", booking_id, previous.value, new_status.value, actor_id,
        )

        if mirror:
            self.mirror_to_load(snapshot, actor_id, now)
        return snapshot

    def cancel(
        self,
        booking_id: str,
        actor_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
        compensate: bool = True,
    ) -> Booking:
        """Cancel a non-terminal booking.

        The originating bid falls back from ACCEPTED to REJECTED. With
        ``compensate`` set, the load is then re-opened when nothing else
        holds it (see :meth:`compensate_load`).
        """
        if now is None:
            now = datetime.now(timezone.utc)
        self._validate_note(reason)

        with self._lock:
            booking = self._get(booking_id)
            self._require_participant(booking, actor_id)
            snapshot = self._close(booking, actor_id, reason, now)
        logger.info("Booking %s cancelled by %s: %s", booking_id, actor_id, reason or "-")

        revoke_reason = f"booking cancelled: {reason}" if reason else "booking cancelled"
        self._ledger.revoke_acceptance(snapshot.bid_id, actor_id, revoke_reason, now=now)
        if compensate:
            self.compensate_load(snapshot, actor_id, now)
        return snapshot

    def cancel_load(
        self,
        load_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> tuple[Load, list[Bid], Optional[Booking]]:
        """Owner cancels a load together with its still-CONFIRMED booking.

        The booking status check, the load cancel and the booking close
        happen under this tracker's lock, inside BidLedger.cancel_load, so
        a driver cannot move the booking to PICKED_UP in between. Returns
        the cancelled load, the pending bids rejected with it and the
        booking closed with it (or None). The load is never re-opened.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        def _close_active(cancel_step) -> tuple[Load, Optional[Booking]]:
            with self._lock:
                booking_id = self._active_by_load.get(load_id)
                booking = self._bookings[booking_id] if booking_id is not None else None
                load = cancel_step(booking.status if booking is not None else None)
                if booking is None:
                    return load, None
                return load, self._close(booking, actor_id, LOAD_CANCELLED_REASON, now)

        return self._ledger.cancel_load(load_id, actor_id, now=now, close_booking=_close_active)

    def add_tracking_note(
        self,
        booking_id: str,
        actor_id: str,
        note: str,
        location: Optional[GeoPoint] = None,
        now: Optional[datetime] = None,
    ) -> TrackingEntry:
        """Append a log entry without changing status.

        Allowed on terminal bookings too: the log stays append-only.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        if not note or not note.strip():
            raise ValidationError("Tracking note must not be empty", entity_id=booking_id)
        self._validate_note(note)
        with self._lock:
            booking = self._get(booking_id)
            self._require_participant(booking, actor_id)
            self._append_entry(booking, actor_id, now, note, location)
            return booking.tracking_log[-1]

    # ------------------------------------------------------------------
    # Follow-up writes on the load
    # ------------------------------------------------------------------

    def compensate_load(
        self,
        booking: Booking,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[Load]:
        """Re-open the load of a cancelled booking.

        Only when the load is still held by this booking's bid and no
        other booking is active on it. The write is guarded by the
        version read here, so a load cancelled or re-assigned in the
        meantime is left alone. Returns the released load, or None.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        load = self._loads.get(booking.load_id)
        if load.status not in (LoadStatus.ASSIGNED, LoadStatus.IN_TRANSIT):
            logger.info(
                "Load %s not re-opened after booking %s: status %s",
                load.load_id, booking.booking_id, load.status.value,
            )
            return None
        if load.accepted_bid_id != booking.bid_id:
            logger.info(
                "Load %s not re-opened after booking %s: held by bid %s",
                load.load_id, booking.booking_id, load.accepted_bid_id,
            )
            return None
        if self.active_booking_for_load(load.load_id) is not None:
            return None
        try:
            released = self._loads.release(
                load.load_id,
                load.version,
                actor_id,
                reason=f"booking {booking.booking_id} cancelled",
                now=now,
            )
        except (ConflictError, StateTransitionError) as e:
            logger.warning("Compensation for load %s skipped: %s", load.load_id, e)
            return None
        logger.info("Load %s re-opened after booking %s was cancelled", load.load_id, booking.booking_id)
        return released

    def mirror_to_load(
        self,
        booking: Booking,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[Load]:
        """Copy IN_TRANSIT / DELIVERED onto the load. Returns the load if moved."""
        step = _LOAD_MIRROR.get(booking.status)
        if step is None:
            return None
        required, target = step
        load = self._loads.get(booking.load_id)
        if load.status != required or load.accepted_bid_id != booking.bid_id:
            logger.warning(
                "Load %s not moved to %s: status %s",
                load.load_id, target.value, load.status.value,
            )
            return None
        try:
            return self._loads.transition(
                load.load_id,
                load.version,
                target,
                actor_id,
                reason=f"booking {booking.booking_id} {booking.status.value}",
                now=now,
            )
        except (ConflictError, StateTransitionError) as e:
            logger.warning("Load %s not moved to %s: %s", load.load_id, target.value, e)
            return None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, booking_id: str) -> Booking:
        with self._lock:
            return copy.deepcopy(self._get(booking_id))

    def get_tracking_log(self, booking_id: str) -> TrackingLog:
        """Tracking entries, oldest first. Raises NotFoundError up front.

        Each iteration reads the log as it is at that moment.
        """
        with self._lock:
            self._get(booking_id)

        def _iterate() -> Iterator[TrackingEntry]:
            with self._lock:
                entries = tuple(self._bookings[booking_id].tracking_log)
            yield from entries

        return TrackingLog(booking_id, _iterate)

    def active_booking_for_load(self, load_id: str) -> Optional[Booking]:
        with self._lock:
            booking_id = self._active_by_load.get(load_id)
            if booking_id is None:
                return None
            return copy.deepcopy(self._bookings[booking_id])

    def bookings_for_load(self, load_id: str) -> list[Booking]:
        return self._select(lambda b: b.load_id == load_id)

    def bookings_for_driver(self, driver_id: str) -> list[Booking]:
        return self._select(lambda b: b.driver_id == driver_id)

    def bookings_for_owner(self, owner_id: str) -> list[Booking]:
        return self._select(lambda b: b.cargo_owner_id == owner_id)

    def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in BookingStatus}
        with self._lock:
            for booking in self._bookings.values():
                counts[booking.status.value] += 1
        return counts

    # ------------------------------------------------------------------
    # Snapshot support
    # ------------------------------------------------------------------

    def all_bookings(self) -> list[Booking]:
        with self._lock:
            return [copy.deepcopy(b) for b in self._bookings.values()]

    def restore(self, bookings: Iterable[Booking]) -> None:
        """Replace contents and rebuild the active-booking index.

        Raises ValueError if two active bookings share a load.
        """
        restored: dict[str, Booking] = {}
        active: dict[str, str] = {}
        for booking in bookings:
            restored[booking.booking_id] = copy.deepcopy(booking)
            if booking.is_active:
                if booking.load_id in active:
                    raise ValueError(
                        f"Load {booking.load_id} has two active bookings: "
                        f"{active[booking.load_id]}, {booking.booking_id}"
                    )
                active[booking.load_id] = booking.booking_id
        with self._lock:
            self._bookings = restored
            self._active_by_load = active

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get(self, booking_id: str) -> Booking:
        booking = self._bookings.get(booking_id)
        if booking is None:
            raise NotFoundError(f"Booking not found: {booking_id}", entity_id=booking_id)
        return booking

    def _select(self, predicate) -> list[Booking]:
        with self._lock:
            selected = [b for b in self._bookings.values() if predicate(b)]
            selected.sort(key=lambda b: (b.created_utc, b.booking_id))
            return [copy.deepcopy(b) for b in selected]

    def _close(self, booking: Booking, actor_id: str, reason: str, now: datetime) -> Booking:
        """Move to CANCELLED and free the load's slot. Caller holds the lock."""
        booking.transition_to(BookingStatus.CANCELLED)
        ts = self._append_entry(booking, actor_id, now, reason or "booking cancelled", None)
        booking.cancelled_utc = ts
        booking.cancellation_reason = reason
        if self._active_by_load.get(booking.load_id) == booking.booking_id:
            del self._active_by_load[booking.load_id]
        return copy.deepcopy(booking)

    @staticmethod
    def _require_participant(booking: Booking, actor_id: str) -> None:
        if actor_id not in (booking.driver_id, booking.cargo_owner_id):
            raise ForbiddenError(
                f"Actor {actor_id} is not a participant of booking {booking.booking_id}",
                entity_id=booking.booking_id,
            )

    @staticmethod
    def _append_entry(
        booking: Booking,
        actor_id: str,
        now: datetime,
        note: str,
        location: Optional[GeoPoint],
    ) -> datetime:
        """Append an entry at the booking's current status. Caller holds the lock."""
        ts = now
        if booking.tracking_log:
            last = booking.tracking_log[-1]
            if ts <= last.timestamp_utc:
                ts = last.timestamp_utc + _TICK
        booking.tracking_log.append(
            TrackingEntry(
                sequence=len(booking.tracking_log) + 1,
                timestamp_utc=ts,
                status=booking.status,
                actor_id=actor_id,
                note=note,
                location=location,
            )
        )
        return ts

    def _validate_note(self, note: str) -> None:
        if len(note) > self._policy.max_note_length:
            raise ValidationError(
                f"Note exceeds {self._policy.max_note_length} characters"
            )

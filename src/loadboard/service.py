"""Load board service: unified facade for the lifecycle engine.

This is the primary interface for callers (HTTP handlers, the CLI,
tests). It wires the components together:
- LoadStore (loads, their status and version)
- BidLedger (bids, uniqueness, validity windows)
- AcceptanceCoordinator (the one-winner acceptance)
- BookingTracker (fulfilment and the tracking log)
- Event sink and optional state store

Components raise typed errors. The facade turns every LoadBoardError
into a failed ServiceResult carrying ``error_kind`` and ``entity_id``,
so callers branch on ``error_kind == "conflict"`` instead of parsing
messages. Anything else propagates.

Lifecycle events are emitted after a change commits. The snapshot is
written after that; a failing write never undoes a committed change, it
only raises a warning and marks persistence as degraded.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from loadboard.errors import LoadBoardError
from loadboard.fulfilment.tracker import BookingTracker
from loadboard.fulfilment.views import PendingBids, TrackingLog
from loadboard.market.acceptance import AcceptanceCoordinator
from loadboard.market.bid_ledger import BidLedger, LOAD_CANCELLED_REASON
from loadboard.market.load_store import LoadStore
from loadboard.models.bid import Bid, BidProposal, BidStatus
from loadboard.models.booking import Booking, BookingStatus, GeoPoint
from loadboard.models.load import Load, LoadDetails, LoadStatus, LoadStatusChange
from loadboard.persistence.event_log import EventKind, EventLog
from loadboard.persistence.event_sink import (
    BidEvent,
    BookingStatusEvent,
    EventLogSink,
    EventSink,
    LoadEvent,
    NullSink,
    emit_safely,
)
from loadboard.persistence.state_store import (
    StateStore,
    bid_to_dict,
    booking_to_dict,
    load_to_dict,
)
from loadboard.policy.resolver import EnginePolicy, PolicyResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[str] = None
    entity_id: Optional[str] = None

    @classmethod
    def failure(cls, error: LoadBoardError) -> ServiceResult:
        return cls(
            success=False,
            errors=[error.message],
            error_kind=error.kind,
            entity_id=error.entity_id,
        )


class LoadBoardService:
    """Lifecycle engine facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = LoadBoardService(resolver)

        result = service.create_load("owner-1", details)
        load_id = result.data["load_id"]
        result = service.submit_bid(load_id, "driver-1", Decimal("5000"), proposal)
        result = service.accept_bid(load_id, result.data["bid_id"], "owner-1")
        if result.error_kind == "conflict":
            ...  # someone else matched the load first

    Persistence (optional):
        service = LoadBoardService(resolver, event_log=log, state_store=store)
        # State is restored on construction and saved after each change.
    """

    def __init__(
        self,
        resolver: Optional[PolicyResolver] = None,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
        sink: Optional[EventSink] = None,
    ) -> None:
        self._resolver = resolver or PolicyResolver()
        policy = self._resolver.policy

        self._event_log = event_log
        if sink is not None:
            self._sink: EventSink = sink
        elif event_log is not None:
            self._sink = EventLogSink(event_log)
        else:
            self._sink = NullSink()

        self._loads = LoadStore(policy)
        self._ledger = BidLedger(self._loads, policy)
        self._tracker = BookingTracker(self._loads, self._ledger, policy)
        self._coordinator = AcceptanceCoordinator(
            self._loads, self._ledger, self._tracker, self._sink,
        )

        self._state_store = state_store
        self._persist_lock = threading.Lock()
        self._persistence_degraded: bool = False
        if state_store is not None and state_store.exists():
            loads, bids, bookings = state_store.load()
            self._loads.restore(loads)
            self._ledger.restore(bids)
            self._tracker.restore(bookings)

    @property
    def policy(self) -> EnginePolicy:
        return self._resolver.policy

    # ------------------------------------------------------------------
    # Loads
    # ------------------------------------------------------------------

    def create_load(
        self,
        owner_id: str,
        details: LoadDetails,
        load_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Create a new load in AVAILABLE state."""
        now = now or datetime.now(timezone.utc)
        try:
            load = self._loads.create(owner_id, details, load_id=load_id, now=now)
        except LoadBoardError as e:
            return ServiceResult.failure(e)

        warnings = [self._emit_load(load, EventKind.LOAD_CREATED, owner_id, now, "load created")]
        return self._ok(self._load_data(load), warnings)

    def cancel_load(
        self,
        load_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Owner cancels a load.

        Pending bids are rejected and a still-CONFIRMED booking is
        cancelled with it, in one step that serialises with acceptance
        and with the driver's tracking updates. The load is not re-opened.
        """
        now = now or datetime.now(timezone.utc)
        try:
            cancelled, rejected, booking = self._tracker.cancel_load(load_id, actor_id, now=now)
        except LoadBoardError as e:
            return ServiceResult.failure(e)

        warnings = [
            self._emit_load(cancelled, EventKind.LOAD_CANCELLED, actor_id, now, LOAD_CANCELLED_REASON),
        ]
        for bid in rejected:
            warnings.append(self._emit_bid(bid, EventKind.BID_REJECTED, actor_id, now))
        if booking is not None:
            warnings.append(
                self._emit_booking(booking, BookingStatus.CONFIRMED, actor_id, now, LOAD_CANCELLED_REASON)
            )
            warnings.append(
                self._emit_bid(self._ledger.get(booking.bid_id), EventKind.BID_REJECTED, actor_id, now)
            )

        data = self._load_data(cancelled)
        data["rejected_bid_ids"] = [b.bid_id for b in rejected]
        data["cancelled_booking_id"] = booking.booking_id if booking is not None else None
        return self._ok(data, warnings)

    def get_load(self, load_id: str) -> Optional[Load]:
        try:
            return self._loads.get(load_id)
        except LoadBoardError:
            return None

    def search_loads(
        self,
        status: Optional[LoadStatus] = None,
        owner_id: Optional[str] = None,
        limit: int = 20,
    ) -> list[Load]:
        return self._loads.search(status=status, owner_id=owner_id, limit=limit)

    def load_status_history(self, load_id: str) -> list[LoadStatusChange]:
        try:
            return self._loads.status_history(load_id)
        except LoadBoardError:
            return []

    # ------------------------------------------------------------------
    # Bids
    # ------------------------------------------------------------------

    def submit_bid(
        self,
        load_id: str,
        driver_id: str,
        amount: Decimal,
        proposal: BidProposal,
        bid_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Driver places a bid on an available load."""
        now = now or datetime.now(timezone.utc)
        try:
            bid = self._ledger.submit_bid(
                load_id, driver_id, amount, proposal, bid_id=bid_id, now=now,
            )
        except LoadBoardError as e:
            return ServiceResult.failure(e)

        warnings = [self._emit_bid(bid, EventKind.BID_PLACED, driver_id, now)]
        return self._ok(self._bid_data(bid), warnings)

    def update_bid(
        self,
        bid_id: str,
        driver_id: str,
        amount: Optional[Decimal] = None,
        proposal: Optional[BidProposal] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        now = now or datetime.now(timezone.utc)
        try:
            bid = self._ledger.update_bid(bid_id, driver_id, amount=amount, proposal=proposal, now=now)
        except LoadBoardError as e:
            return ServiceResult.failure(e)

        warnings = [self._emit_bid(bid, EventKind.BID_UPDATED, driver_id, now)]
        return self._ok(self._bid_data(bid), warnings)

    def withdraw_bid(
        self,
        bid_id: str,
        driver_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Driver withdraws a pending bid. Repeating the call is a no-op success."""
        now = now or datetime.now(timezone.utc)
        try:
            before = self._ledger.get(bid_id)
            bid = self._ledger.withdraw(bid_id, driver_id, now=now)
        except LoadBoardError as e:
            return ServiceResult.failure(e)

        if before.status == BidStatus.WITHDRAWN:
            return ServiceResult(success=True, data=self._bid_data(bid))
        warnings = [self._emit_bid(bid, EventKind.BID_WITHDRAWN, driver_id, now)]
        return self._ok(self._bid_data(bid), warnings)

    def reject_bid(
        self,
        load_id: str,
        bid_id: str,
        actor_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        now = now or datetime.now(timezone.utc)
        try:
            bid = self._ledger.reject_bid(load_id, bid_id, actor_id, reason=reason, now=now)
        except LoadBoardError as e:
            return ServiceResult.failure(e)

        warnings = [self._emit_bid(bid, EventKind.BID_REJECTED, actor_id, now)]
        return self._ok(self._bid_data(bid), warnings)

    def accept_bid(
        self,
        load_id: str,
        bid_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Owner accepts one bid. Losing a race yields error_kind "conflict"."""
        now = now or datetime.now(timezone.utc)
        try:
            acceptance = self._coordinator.accept_bid(load_id, bid_id, actor_id, now=now)
        except LoadBoardError as e:
            return ServiceResult.failure(e)

        data = self._booking_data(acceptance.booking)
        data["rejected_bid_ids"] = [b.bid_id for b in acceptance.rejected]
        return self._ok(data, [acceptance.warning])

    def get_bid(self, bid_id: str) -> Optional[Bid]:
        try:
            return self._ledger.get(bid_id)
        except LoadBoardError:
            return None

    def list_pending_bids(self, load_id: str) -> PendingBids:
        return self._ledger.list_pending(load_id)

    def bids_for_load(self, load_id: str, status: Optional[BidStatus] = None) -> list[Bid]:
        return self._ledger.bids_for_load(load_id, status=status)

    def bids_for_driver(self, driver_id: str) -> list[Bid]:
        return self._ledger.bids_for_driver(driver_id)

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    def append_tracking_update(
        self,
        booking_id: str,
        new_status: BookingStatus,
        actor_id: str,
        note: str = "",
        location: Optional[GeoPoint] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Advance a booking one step through its state machine."""
        now = now or datetime.now(timezone.utc)
        new_status = BookingStatus(new_status)
        if new_status == BookingStatus.CANCELLED:
            return self.cancel_booking(booking_id, actor_id, reason=note, now=now)
        try:
            before = self._tracker.get(booking_id)
            booking = self._tracker.append_tracking_update(
                booking_id, new_status, actor_id, note=note, location=location,
                now=now, mirror=False,
            )
        except LoadBoardError as e:
            return ServiceResult.failure(e)

        warnings = [self._emit_booking(booking, before.status, actor_id, now, note)]
        mirrored = self._tracker.mirror_to_load(booking, actor_id, now)
        if mirrored is not None:
            warnings.append(
                self._emit_load(mirrored, EventKind.LOAD_STATUS_CHANGED, actor_id, now,
                                f"booking {booking_id} {booking.status.value}")
            )
        return self._ok(self._booking_data(booking), warnings)

    def cancel_booking(
        self,
        booking_id: str,
        actor_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Cancel a booking; the load is re-opened when nothing else holds it."""
        now = now or datetime.now(timezone.utc)
        try:
            before = self._tracker.get(booking_id)
            booking = self._tracker.cancel(
                booking_id, actor_id, reason=reason, now=now, compensate=False,
            )
        except LoadBoardError as e:
            return ServiceResult.failure(e)

        warnings = [self._emit_booking(booking, before.status, actor_id, now, reason)]
        revoked = self._ledger.get(booking.bid_id)
        warnings.append(self._emit_bid(revoked, EventKind.BID_REJECTED, actor_id, now))

        released = self._tracker.compensate_load(booking, actor_id, now)
        if released is not None:
            warnings.append(
                self._emit_load(released, EventKind.LOAD_STATUS_CHANGED, actor_id, now,
                                f"booking {booking_id} cancelled")
            )
        data = self._booking_data(booking)
        data["load_reopened"] = released is not None
        return self._ok(data, warnings)

    def add_tracking_note(
        self,
        booking_id: str,
        actor_id: str,
        note: str,
        location: Optional[GeoPoint] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        now = now or datetime.now(timezone.utc)
        try:
            entry = self._tracker.add_tracking_note(
                booking_id, actor_id, note, location=location, now=now,
            )
            booking = self._tracker.get(booking_id)
        except LoadBoardError as e:
            return ServiceResult.failure(e)

        warning = emit_safely(
            self._sink,
            BookingStatusEvent(
                kind=EventKind.TRACKING_NOTE_ADDED,
                actor_id=actor_id,
                occurred_utc=now,
                booking_id=booking_id,
                load_id=booking.load_id,
                previous_status=booking.status.value,
                status=booking.status.value,
                note=note,
            ),
        )
        data = self._booking_data(booking)
        data["sequence"] = entry.sequence
        return self._ok(data, [warning])

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        try:
            return self._tracker.get(booking_id)
        except LoadBoardError:
            return None

    def get_tracking_log(self, booking_id: str) -> TrackingLog:
        return self._tracker.get_tracking_log(booking_id)

    def active_booking_for_load(self, load_id: str) -> Optional[Booking]:
        return self._tracker.active_booking_for_load(load_id)

    def bookings_for_driver(self, driver_id: str) -> list[Booking]:
        return self._tracker.bookings_for_driver(driver_id)

    def bookings_for_owner(self, owner_id: str) -> list[Booking]:
        return self._tracker.bookings_for_owner(owner_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        loads = self._loads.all_loads()
        by_status: dict[str, int] = {s.value: 0 for s in LoadStatus}
        for load in loads:
            by_status[load.status.value] += 1
        return {
            "loads": {"total": len(loads), "by_status": by_status},
            "bids": {"by_status": self._ledger.count_by_status()},
            "bookings": {"by_status": self._tracker.count_by_status()},
            "events": self._event_log.count if self._event_log is not None else 0,
            "policy": self.policy.to_dict(),
            "persistence_degraded": self._persistence_degraded,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ok(self, data: dict[str, Any], warnings: list[Optional[str]]) -> ServiceResult:
        collected = [w for w in warnings if w]
        persist_warning = self._safe_persist_post_audit()
        if persist_warning:
            collected.append(persist_warning)
        if collected:
            data["warnings"] = collected
        return ServiceResult(success=True, data=data)

    def _emit_load(
        self, load: Load, kind: EventKind, actor_id: str, now: datetime, reason: str,
    ) -> Optional[str]:
        return emit_safely(
            self._sink,
            LoadEvent(
                kind=kind,
                actor_id=actor_id,
                occurred_utc=now,
                load_id=load.load_id,
                status=load.status.value,
                version=load.version,
                reason=reason,
            ),
        )

    def _emit_bid(self, bid: Bid, kind: EventKind, actor_id: str, now: datetime) -> Optional[str]:
        return emit_safely(
            self._sink,
            BidEvent(
                kind=kind,
                actor_id=actor_id,
                occurred_utc=now,
                bid_id=bid.bid_id,
                load_id=bid.load_id,
                driver_id=bid.driver_id,
                amount=str(bid.amount),
                status=bid.status.value,
                reason=bid.status_reason,
            ),
        )

    def _emit_booking(
        self,
        booking: Booking,
        previous: BookingStatus,
        actor_id: str,
        now: datetime,
        note: str = "",
    ) -> Optional[str]:
        return emit_safely(
            self._sink,
            BookingStatusEvent(
                kind=EventKind.BOOKING_STATUS_CHANGED,
                actor_id=actor_id,
                occurred_utc=now,
                booking_id=booking.booking_id,
                load_id=booking.load_id,
                previous_status=previous.value,
                status=booking.status.value,
                note=note,
            ),
        )

    @staticmethod
    def _load_data(load: Load) -> dict[str, Any]:
        return {
            "load_id": load.load_id,
            "status": load.status.value,
            "version": load.version,
            "load": load_to_dict(load),
        }

    @staticmethod
    def _bid_data(bid: Bid) -> dict[str, Any]:
        return {
            "bid_id": bid.bid_id,
            "load_id": bid.load_id,
            "status": bid.status.value,
            "bid": bid_to_dict(bid),
        }

    @staticmethod
    def _booking_data(booking: Booking) -> dict[str, Any]:
        return {
            "booking_id": booking.booking_id,
            "load_id": booking.load_id,
            "bid_id": booking.bid_id,
            "status": booking.status.value,
            "booking": booking_to_dict(booking),
        }

    def _persist_state(self) -> None:
        """Write the snapshot (if a store is wired). Can raise OSError."""
        if self._state_store is None:
            return
        with self._persist_lock:
            self._state_store.save(
                self._loads.all_loads(),
                self._ledger.all_bids(),
                self._tracker.all_bookings(),
            )

    def _safe_persist_post_audit(self) -> Optional[str]:
        """Persist after the change committed; never roll back.

        On failure the in-memory state stays authoritative, the
        degraded flag is set and a warning string is returned.
        """
        try:
            self._persist_state()
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.warning("State snapshot write failed: %s", e)
            return f"Persistence degraded: {e}; change committed but snapshot is stale"

"""Tests for the booking tracker: fulfilment order, tracking log, cancellation."""

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from loadboard.errors import (
    ConflictError,
    DuplicateBidError,
    ForbiddenError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)
from loadboard.fulfilment.tracker import BookingTracker
from loadboard.market.acceptance import AcceptanceCoordinator
from loadboard.market.bid_ledger import BidLedger
from loadboard.market.load_store import LoadStore
from loadboard.models.bid import BidProposal, BidStatus
from loadboard.models.booking import Booking, BookingStatus, GeoPoint
from loadboard.models.load import LoadDetails, LoadStatus


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


def _make_proposal() -> BidProposal:
    return BidProposal(_now() + timedelta(days=3), _now() + timedelta(days=4))


def _make_booked() -> tuple[LoadStore, BidLedger, BookingTracker, Booking]:
    loads = LoadStore()
    ledger = BidLedger(loads)
    tracker = BookingTracker(loads, ledger)
    load = loads.create(
        "owner-1",
        LoadDetails(
            title="Tea chests",
            pickup_location="Kericho",
            delivery_location="Mombasa",
            weight_kg=Decimal("3000"),
            pickup_date=_now() + timedelta(days=3),
            delivery_date=_now() + timedelta(days=4),
        ),
        now=_now(),
    )
    bid = ledger.submit_bid(load.load_id, "driver-1", Decimal("6000"), _make_proposal(), now=_now())
    booking = AcceptanceCoordinator(loads, ledger, tracker).accept_bid(
        load.load_id, bid.bid_id, "owner-1", now=_now(),
    ).booking
    return loads, ledger, tracker, booking


class TestOpenBooking:
    def test_initial_entry(self) -> None:
        _, _, tracker, booking = _make_booked()
        entries = tracker.get_tracking_log(booking.booking_id).to_list()
        assert len(entries) == 1
        assert entries[0].sequence == 1
        assert entries[0].status == BookingStatus.CONFIRMED
        assert entries[0].actor_id == "system"
        assert entries[0].note == "booking created"

    def test_second_active_booking_refused(self) -> None:
        _, ledger, tracker, booking = _make_booked()
        bid = ledger.get(booking.bid_id)
        with pytest.raises(ConflictError):
            tracker.open_booking(bid, "owner-1", now=_now())


class TestFulfilment:
    def test_happy_path_mirrors_load(self) -> None:
        loads, _, tracker, booking = _make_booked()
        booking_id = booking.booking_id
        tracker.append_tracking_update(booking_id, BookingStatus.PICKED_UP, "driver-1", now=_now())
        assert loads.get(booking.load_id).status == LoadStatus.ASSIGNED

        tracker.append_tracking_update(booking_id, BookingStatus.IN_TRANSIT, "driver-1", now=_now())
        assert loads.get(booking.load_id).status == LoadStatus.IN_TRANSIT

        done = tracker.append_tracking_update(
            booking_id, BookingStatus.DELIVERED, "driver-1", note="signed by clerk", now=_now(),
        )
        assert done.status == BookingStatus.DELIVERED
        assert done.delivered_utc is not None
        assert done.picked_up_utc is not None
        assert loads.get(booking.load_id).status == LoadStatus.DELIVERED

    def test_cannot_skip_pickup(self) -> None:
        _, _, tracker, booking = _make_booked()
        with pytest.raises(StateTransitionError):
            tracker.append_tracking_update(
                booking.booking_id, BookingStatus.IN_TRANSIT, "driver-1", now=_now(),
            )
        assert tracker.get(booking.booking_id).status == BookingStatus.CONFIRMED
        assert len(tracker.get_tracking_log(booking.booking_id).to_list()) == 1

    def test_delivered_is_terminal(self) -> None:
        _, _, tracker, booking = _make_booked()
        for status in (BookingStatus.PICKED_UP, BookingStatus.IN_TRANSIT, BookingStatus.DELIVERED):
            tracker.append_tracking_update(booking.booking_id, status, "driver-1", now=_now())
        with pytest.raises(StateTransitionError):
            tracker.cancel(booking.booking_id, "owner-1", now=_now())

    def test_only_driver_advances(self) -> None:
        _, _, tracker, booking = _make_booked()
        with pytest.raises(ForbiddenError):
            tracker.append_tracking_update(
                booking.booking_id, BookingStatus.PICKED_UP, "owner-1", now=_now(),
            )

    def test_status_accepts_plain_string(self) -> None:
        _, _, tracker, booking = _make_booked()
        updated = tracker.append_tracking_update(
            booking.booking_id, "picked_up", "driver-1", now=_now(),
        )
        assert updated.status == BookingStatus.PICKED_UP

    def test_unknown_booking(self) -> None:
        _, _, tracker, _ = _make_booked()
        with pytest.raises(NotFoundError):
            tracker.append_tracking_update("nope", BookingStatus.PICKED_UP, "driver-1", now=_now())


class TestTrackingLog:
    def test_timestamps_strictly_increase_with_same_clock(self) -> None:
        _, _, tracker, booking = _make_booked()
        tracker.append_tracking_update(booking.booking_id, BookingStatus.PICKED_UP, "driver-1", now=_now())
        tracker.add_tracking_note(booking.booking_id, "driver-1", "fuel stop", now=_now())
        tracker.add_tracking_note(
            booking.booking_id, "driver-1", "clock skew", now=_now() - timedelta(hours=1),
        )
        entries = tracker.get_tracking_log(booking.booking_id).to_list()
        assert [e.sequence for e in entries] == [1, 2, 3, 4]
        stamps = [e.timestamp_utc for e in entries]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))

    def test_note_keeps_current_status_and_location(self) -> None:
        _, _, tracker, booking = _make_booked()
        entry = tracker.add_tracking_note(
            booking.booking_id, "owner-1", "gate pass issued",
            location=GeoPoint(-1.2921, 36.8219), now=_now(),
        )
        assert entry.status == BookingStatus.CONFIRMED
        assert entry.location == GeoPoint(-1.2921, 36.8219)
        assert tracker.get(booking.booking_id).status == BookingStatus.CONFIRMED

    def test_view_is_restartable(self) -> None:
        _, _, tracker, booking = _make_booked()
        log = tracker.get_tracking_log(booking.booking_id)
        assert len(list(log)) == 1
        assert len(list(log)) == 1

        tracker.append_tracking_update(booking.booking_id, BookingStatus.PICKED_UP, "driver-1", now=_now())
        assert len(list(log)) == 2
        assert log.first().sequence == 1

    def test_unknown_booking_fails_eagerly(self) -> None:
        _, _, tracker, _ = _make_booked()
        with pytest.raises(NotFoundError):
            tracker.get_tracking_log("nope")

    def test_empty_note_rejected(self) -> None:
        _, _, tracker, booking = _make_booked()
        with pytest.raises(ValidationError):
            tracker.add_tracking_note(booking.booking_id, "driver-1", "   ", now=_now())

    def test_stranger_cannot_write(self) -> None:
        _, _, tracker, booking = _make_booked()
        with pytest.raises(ForbiddenError):
            tracker.add_tracking_note(booking.booking_id, "driver-9", "hello", now=_now())

    def test_notes_allowed_after_delivery(self) -> None:
        _, _, tracker, booking = _make_booked()
        for status in (BookingStatus.PICKED_UP, BookingStatus.IN_TRANSIT, BookingStatus.DELIVERED):
            tracker.append_tracking_update(booking.booking_id, status, "driver-1", now=_now())
        entry = tracker.add_tracking_note(booking.booking_id, "owner-1", "invoice sent", now=_now())
        assert entry.status == BookingStatus.DELIVERED
        assert entry.sequence == 5


class TestCancellation:
    def test_cancel_confirmed_reopens_load(self) -> None:
        loads, ledger, tracker, booking = _make_booked()
        cancelled = tracker.cancel(booking.booking_id, "owner-1", reason="truck broke down", now=_now())

        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.cancellation_reason == "truck broke down"
        assert tracker.active_booking_for_load(booking.load_id) is None

        bid = ledger.get(booking.bid_id)
        assert bid.status == BidStatus.REJECTED
        assert bid.status_reason == "booking cancelled: truck broke down"

        load = loads.get(booking.load_id)
        assert load.status == LoadStatus.AVAILABLE
        assert load.accepted_bid_id is None

    def test_reopened_load_takes_new_bids(self) -> None:
        loads, ledger, tracker, booking = _make_booked()
        tracker.cancel(booking.booking_id, "driver-1", now=_now())
        new_bid = ledger.submit_bid(
            booking.load_id, "driver-2", Decimal("6500"), _make_proposal(), now=_now(),
        )
        rebooked = AcceptanceCoordinator(loads, ledger, tracker).accept_bid(
            booking.load_id, new_bid.bid_id, "owner-1", now=_now(),
        ).booking
        assert rebooked.driver_id == "driver-2"
        assert len(tracker.bookings_for_load(booking.load_id)) == 2

    def test_original_driver_cannot_rebid(self) -> None:
        _, ledger, tracker, booking = _make_booked()
        tracker.cancel(booking.booking_id, "driver-1", now=_now())
        with pytest.raises(DuplicateBidError):
            ledger.submit_bid(
                booking.load_id, "driver-1", Decimal("6000"), _make_proposal(), now=_now(),
            )

    def test_cancel_in_transit_reopens_load(self) -> None:
        loads, _, tracker, booking = _make_booked()
        tracker.append_tracking_update(booking.booking_id, BookingStatus.PICKED_UP, "driver-1", now=_now())
        tracker.append_tracking_update(booking.booking_id, BookingStatus.IN_TRANSIT, "driver-1", now=_now())
        tracker.cancel(booking.booking_id, "driver-1", now=_now())
        assert loads.get(booking.load_id).status == LoadStatus.AVAILABLE

    def test_cancel_without_compensation_leaves_load(self) -> None:
        loads, _, tracker, booking = _make_booked()
        tracker.cancel(booking.booking_id, "owner-1", now=_now(), compensate=False)
        assert loads.get(booking.load_id).status == LoadStatus.ASSIGNED

    def test_cancel_via_tracking_update(self) -> None:
        _, _, tracker, booking = _make_booked()
        cancelled = tracker.append_tracking_update(
            booking.booking_id, BookingStatus.CANCELLED, "owner-1", note="no show", now=_now(),
        )
        assert cancelled.status == BookingStatus.CANCELLED
        last = tracker.get_tracking_log(booking.booking_id).to_list()[-1]
        assert last.note == "no show"
        assert last.status == BookingStatus.CANCELLED

    def test_cancel_twice_fails(self) -> None:
        _, _, tracker, booking = _make_booked()
        tracker.cancel(booking.booking_id, "owner-1", now=_now())
        with pytest.raises(StateTransitionError):
            tracker.cancel(booking.booking_id, "owner-1", now=_now())

    def test_stranger_cannot_cancel(self) -> None:
        _, _, tracker, booking = _make_booked()
        with pytest.raises(ForbiddenError):
            tracker.cancel(booking.booking_id, "driver-2", now=_now())


class TestCancelLoad:
    def test_confirmed_booking_closed_with_load(self) -> None:
        loads, ledger, tracker, booking = _make_booked()
        load, rejected, closed = tracker.cancel_load(booking.load_id, "owner-1", now=_now())

        assert load.status == LoadStatus.CANCELLED
        assert rejected == []
        assert closed.booking_id == booking.booking_id
        assert closed.status == BookingStatus.CANCELLED
        assert closed.cancellation_reason == "load cancelled"
        assert tracker.active_booking_for_load(booking.load_id) is None

        bid = ledger.get(booking.bid_id)
        assert bid.status == BidStatus.REJECTED
        assert bid.status_reason == "load cancelled"
        assert loads.get(booking.load_id).status == LoadStatus.CANCELLED

    def test_picked_up_booking_blocks_cancel(self) -> None:
        loads, ledger, tracker, booking = _make_booked()
        tracker.append_tracking_update(booking.booking_id, BookingStatus.PICKED_UP, "driver-1", now=_now())
        with pytest.raises(ConflictError, match="booking in progress"):
            tracker.cancel_load(booking.load_id, "owner-1", now=_now())
        assert loads.get(booking.load_id).status == LoadStatus.ASSIGNED
        assert tracker.get(booking.booking_id).status == BookingStatus.PICKED_UP
        assert ledger.get(booking.bid_id).status == BidStatus.ACCEPTED

    def test_pickup_waits_for_cancel_in_progress(self) -> None:
        loads, _, tracker, booking = _make_booked()
        outcome: dict[str, object] = {}
        drivers: list[threading.Thread] = []

        def _pick_up() -> None:
            try:
                outcome["result"] = tracker.append_tracking_update(
                    booking.booking_id, BookingStatus.PICKED_UP, "driver-1", now=_now(),
                )
            except StateTransitionError as e:
                outcome["result"] = e

        original_cancel = loads.cancel

        def _cancel_while_driver_picks_up(*args, **kwargs):
            driver = threading.Thread(target=_pick_up)
            drivers.append(driver)
            driver.start()
            driver.join(timeout=0.2)
            return original_cancel(*args, **kwargs)

        loads.cancel = _cancel_while_driver_picks_up
        load, _, closed = tracker.cancel_load(booking.load_id, "owner-1", now=_now())
        for driver in drivers:
            driver.join()

        assert load.status == LoadStatus.CANCELLED
        assert closed.status == BookingStatus.CANCELLED
        assert isinstance(outcome["result"], StateTransitionError)
        assert tracker.get(booking.booking_id).status == BookingStatus.CANCELLED


class TestQueriesAndRestore:
    def test_lookups(self) -> None:
        _, _, tracker, booking = _make_booked()
        assert [b.booking_id for b in tracker.bookings_for_driver("driver-1")] == [booking.booking_id]
        assert [b.booking_id for b in tracker.bookings_for_owner("owner-1")] == [booking.booking_id]
        assert tracker.bookings_for_driver("driver-2") == []
        assert tracker.count_by_status()["confirmed"] == 1

    def test_restore_rejects_two_active_bookings(self) -> None:
        _, _, tracker, booking = _make_booked()
        twin = Booking(
            booking_id="booking-twin",
            load_id=booking.load_id,
            bid_id="bid-other",
            driver_id="driver-2",
            cargo_owner_id="owner-1",
            agreed_price=Decimal("1"),
        )
        with pytest.raises(ValueError, match="two active bookings"):
            tracker.restore([booking, twin])

"""Tests for load, bid and booking models: transition tables and helpers."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from loadboard.errors import (
    ConflictError,
    LoadBoardError,
    LoadNotBiddableError,
    StateTransitionError,
)
from loadboard.models import (
    BID_TRANSITIONS,
    BOOKING_TRANSITIONS,
    Bid,
    BidProposal,
    BidStatus,
    Booking,
    BookingStatus,
    Load,
    LoadDetails,
    LoadStatus,
)


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


def _make_bid(status: BidStatus = BidStatus.PENDING) -> Bid:
    return Bid(
        bid_id="bid-1",
        load_id="load-1",
        driver_id="driver-1",
        amount=Decimal("5000"),
        proposal=BidProposal(_now() + timedelta(days=2), _now() + timedelta(days=3)),
        valid_until=_now() + timedelta(days=7),
        status=status,
    )


def _make_booking(status: BookingStatus = BookingStatus.CONFIRMED) -> Booking:
    return Booking(
        booking_id="booking-1",
        load_id="load-1",
        bid_id="bid-1",
        driver_id="driver-1",
        cargo_owner_id="owner-1",
        agreed_price=Decimal("5000"),
        status=status,
    )


class TestBidTransitions:
    def test_pending_exits(self) -> None:
        assert BID_TRANSITIONS[BidStatus.PENDING] == {
            BidStatus.ACCEPTED, BidStatus.REJECTED, BidStatus.WITHDRAWN,
        }

    def test_accepted_only_falls_back_to_rejected(self) -> None:
        assert BID_TRANSITIONS[BidStatus.ACCEPTED] == {BidStatus.REJECTED}

    def test_transition_records_history_and_version(self) -> None:
        bid = _make_bid()
        bid.transition_to(BidStatus.REJECTED, "owner-1", _now(), reason="too high")
        assert bid.status == BidStatus.REJECTED
        assert bid.version == 1
        assert bid.responded_utc == _now()
        assert bid.status_reason == "too high"
        assert bid.status_history[-1].changed_by == "owner-1"

    def test_withdrawal_is_not_a_response(self) -> None:
        bid = _make_bid()
        bid.transition_to(BidStatus.WITHDRAWN, "driver-1", _now())
        assert bid.responded_utc is None
        assert not bid.is_live

    def test_withdrawn_is_terminal(self) -> None:
        bid = _make_bid(BidStatus.WITHDRAWN)
        with pytest.raises(StateTransitionError) as exc:
            bid.transition_to(BidStatus.PENDING, "driver-1", _now())
        assert exc.value.entity_id == "bid-1"

    def test_expiry_boundary(self) -> None:
        bid = _make_bid()
        assert not bid.is_expired(bid.valid_until - timedelta(microseconds=1))
        assert bid.is_expired(bid.valid_until)


class TestBookingTransitions:
    def test_table_matches_fulfilment_order(self) -> None:
        assert BOOKING_TRANSITIONS[BookingStatus.CONFIRMED] == {
            BookingStatus.PICKED_UP, BookingStatus.CANCELLED,
        }
        assert BOOKING_TRANSITIONS[BookingStatus.PICKED_UP] == {
            BookingStatus.IN_TRANSIT, BookingStatus.CANCELLED,
        }
        assert BOOKING_TRANSITIONS[BookingStatus.IN_TRANSIT] == {
            BookingStatus.DELIVERED, BookingStatus.CANCELLED,
        }

    def test_cannot_skip_picked_up(self) -> None:
        booking = _make_booking()
        with pytest.raises(StateTransitionError, match="Allowed from confirmed"):
            booking.transition_to(BookingStatus.IN_TRANSIT)
        assert booking.status == BookingStatus.CONFIRMED
        assert booking.version == 0

    @pytest.mark.parametrize("terminal", [BookingStatus.DELIVERED, BookingStatus.CANCELLED])
    def test_terminal_bookings_are_frozen(self, terminal: BookingStatus) -> None:
        booking = _make_booking(terminal)
        assert booking.is_terminal
        for target in BookingStatus:
            with pytest.raises(StateTransitionError):
                booking.transition_to(target)

    def test_delivered_booking_is_still_active(self) -> None:
        assert _make_booking(BookingStatus.DELIVERED).is_active
        assert not _make_booking(BookingStatus.CANCELLED).is_active


class TestLoad:
    def test_biddable_until_deadline(self) -> None:
        details = LoadDetails(
            title="Cement",
            pickup_location="Nairobi",
            delivery_location="Nakuru",
            weight_kg=Decimal("1000"),
            pickup_date=_now() + timedelta(days=2),
            delivery_date=_now() + timedelta(days=3),
        )
        load = Load(
            load_id="load-1",
            owner_id="owner-1",
            details=details,
            bidding_deadline=_now() + timedelta(hours=1),
        )
        assert load.is_biddable(_now())
        assert not load.is_biddable(_now() + timedelta(hours=1))
        load.status = LoadStatus.ASSIGNED
        assert not load.is_biddable(_now())


class TestErrors:
    def test_kind_and_entity_id(self) -> None:
        err = ConflictError("lost the race", entity_id="load-1")
        assert err.to_dict() == {
            "kind": "conflict",
            "entity_id": "load-1",
            "message": "lost the race",
        }

    def test_not_biddable_is_a_state_transition_error(self) -> None:
        err = LoadNotBiddableError("closed")
        assert isinstance(err, StateTransitionError)
        assert isinstance(err, LoadBoardError)
        assert err.kind == "load_not_biddable"

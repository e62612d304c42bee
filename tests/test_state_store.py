"""Tests for the JSON snapshot store."""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from loadboard.fulfilment.tracker import BookingTracker
from loadboard.market.acceptance import AcceptanceCoordinator
from loadboard.market.bid_ledger import BidLedger
from loadboard.market.load_store import LoadStore
from loadboard.models.bid import BidProposal, BidStatus
from loadboard.models.booking import BookingStatus, GeoPoint
from loadboard.models.load import LoadDetails, LoadStatus, VehicleType
from loadboard.persistence.state_store import StateStore


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


def _populate() -> tuple[LoadStore, BidLedger, BookingTracker]:
    loads = LoadStore()
    ledger = BidLedger(loads)
    tracker = BookingTracker(loads, ledger)
    load = loads.create(
        "owner-1",
        LoadDetails(
            title="Solar panels",
            pickup_location="Nairobi",
            delivery_location="Garissa",
            weight_kg=Decimal("750.5"),
            pickup_date=_now() + timedelta(days=3),
            delivery_date=_now() + timedelta(days=5),
            vehicle_type=VehicleType.MEDIUM_TRUCK,
            budget=Decimal("40000.00"),
        ),
        now=_now(),
    )
    proposal = BidProposal(_now() + timedelta(days=3), _now() + timedelta(days=4), "ready")
    winner = ledger.submit_bid(load.load_id, "driver-1", Decimal("35000.50"), proposal, now=_now())
    ledger.submit_bid(load.load_id, "driver-2", Decimal("38000"), proposal, now=_now())
    booking = AcceptanceCoordinator(loads, ledger, tracker).accept_bid(
        load.load_id, winner.bid_id, "owner-1", now=_now(),
    ).booking
    tracker.append_tracking_update(
        booking.booking_id, BookingStatus.PICKED_UP, "driver-1",
        location=GeoPoint(-1.3, 36.8), now=_now() + timedelta(days=3),
    )
    return loads, ledger, tracker


class TestStateStore:
    def test_missing_file_is_empty_state(self, tmp_path: Path) -> None:
        store = StateStore(tmp_path / "state.json")
        assert not store.exists()
        assert store.load() == ([], [], [])

    def test_save_and_reload_preserves_state(self, tmp_path: Path) -> None:
        loads, ledger, tracker = _populate()
        store = StateStore(tmp_path / "nested" / "state.json")
        store.save(loads.all_loads(), ledger.all_bids(), tracker.all_bookings())

        reloaded_loads, reloaded_bids, reloaded_bookings = store.load()
        assert reloaded_loads == loads.all_loads()
        assert sorted(reloaded_bids, key=lambda b: b.bid_id) == sorted(
            ledger.all_bids(), key=lambda b: b.bid_id,
        )
        assert reloaded_bookings == tracker.all_bookings()

    def test_restored_components_keep_working(self, tmp_path: Path) -> None:
        loads, ledger, tracker = _populate()
        store = StateStore(tmp_path / "state.json")
        store.save(loads.all_loads(), ledger.all_bids(), tracker.all_bookings())

        saved_loads, saved_bids, saved_bookings = store.load()
        loads2 = LoadStore()
        loads2.restore(saved_loads)
        ledger2 = BidLedger(loads2)
        ledger2.restore(saved_bids)
        tracker2 = BookingTracker(loads2, ledger2)
        tracker2.restore(saved_bookings)

        booking = saved_bookings[0]
        assert tracker2.active_booking_for_load(booking.load_id).booking_id == booking.booking_id
        tracker2.append_tracking_update(
            booking.booking_id, BookingStatus.IN_TRANSIT, "driver-1", now=_now() + timedelta(days=3, hours=1),
        )
        assert loads2.get(booking.load_id).status == LoadStatus.IN_TRANSIT
        assert ledger2.bids_for_load(booking.load_id, BidStatus.REJECTED)[0].driver_id == "driver-2"

    def test_decimals_stored_as_strings(self, tmp_path: Path) -> None:
        loads, ledger, tracker = _populate()
        store = StateStore(tmp_path / "state.json")
        store.save(loads.all_loads(), ledger.all_bids(), tracker.all_bookings())
        document = json.loads(store.path.read_text(encoding="utf-8"))
        assert document["format"] == 1
        assert document["loads"][0]["details"]["weight_kg"] == "750.5"
        assert {b["amount"] for b in document["bids"]} == {"35000.50", "38000"}

    def test_no_temp_file_left_behind(self, tmp_path: Path) -> None:
        loads, ledger, tracker = _populate()
        store = StateStore(tmp_path / "state.json")
        store.save(loads.all_loads(), ledger.all_bids(), tracker.all_bookings())
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_corrupt_file_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError, match="corrupt snapshot"):
            StateStore(path).load()

    def test_unknown_format_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"format": 99}), encoding="utf-8")
        with pytest.raises(ValueError, match="unsupported snapshot format"):
            StateStore(path).load()

    def test_malformed_record_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"format": 1, "loads": [{"load_id": "x"}]}), encoding="utf-8")
        with pytest.raises(ValueError, match="malformed"):
            StateStore(path).load()

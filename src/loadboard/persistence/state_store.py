"""JSON snapshot store for loads, bids and bookings.

One document holds the whole engine state, including versions, status
histories and tracking logs. Writes go to a temporary sibling file that
then replaces the target, so a crash mid-write leaves the previous
snapshot intact.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Optional

from loadboard.models.bid import Bid, BidProposal, BidStatus, BidStatusChange
from loadboard.models.booking import Booking, BookingStatus, GeoPoint, TrackingEntry
from loadboard.models.load import (
    CargoType,
    Load,
    LoadDetails,
    LoadStatus,
    LoadStatusChange,
    VehicleType,
)

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = 1


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _parse_dec(value: Optional[str]) -> Optional[Decimal]:
    return None if value is None else Decimal(value)


# ----------------------------------------------------------------------
# Loads
# ----------------------------------------------------------------------

def load_to_dict(load: Load) -> dict[str, Any]:
    d = load.details
    return {
        "load_id": load.load_id,
        "owner_id": load.owner_id,
        "details": {
            "title": d.title,
            "pickup_location": d.pickup_location,
            "delivery_location": d.delivery_location,
            "weight_kg": _dec(d.weight_kg),
            "pickup_date": _ts(d.pickup_date),
            "delivery_date": _ts(d.delivery_date),
            "description": d.description,
            "cargo_type": d.cargo_type.value,
            "vehicle_type": d.vehicle_type.value if d.vehicle_type else None,
            "budget": _dec(d.budget),
            "special_instructions": d.special_instructions,
            "bidding_deadline": _ts(d.bidding_deadline),
        },
        "bidding_deadline": _ts(load.bidding_deadline),
        "status": load.status.value,
        "version": load.version,
        "created_utc": _ts(load.created_utc),
        "assigned_utc": _ts(load.assigned_utc),
        "cancelled_utc": _ts(load.cancelled_utc),
        "accepted_bid_id": load.accepted_bid_id,
        "assigned_driver_id": load.assigned_driver_id,
        "status_history": [
            {
                "status": h.status.value,
                "changed_by": h.changed_by,
                "changed_utc": _ts(h.changed_utc),
                "version": h.version,
                "reason": h.reason,
            }
            for h in load.status_history
        ],
    }


def load_from_dict(data: dict[str, Any]) -> Load:
    d = data["details"]
    details = LoadDetails(
        title=d["title"],
        pickup_location=d["pickup_location"],
        delivery_location=d["delivery_location"],
        weight_kg=Decimal(d["weight_kg"]),
        pickup_date=_parse_ts(d["pickup_date"]),
        delivery_date=_parse_ts(d["delivery_date"]),
        description=d.get("description", ""),
        cargo_type=CargoType(d.get("cargo_type", CargoType.OTHER.value)),
        vehicle_type=VehicleType(d["vehicle_type"]) if d.get("vehicle_type") else None,
        budget=_parse_dec(d.get("budget")),
        special_instructions=d.get("special_instructions", ""),
        bidding_deadline=_parse_ts(d.get("bidding_deadline")),
    )
    return Load(
        load_id=data["load_id"],
        owner_id=data["owner_id"],
        details=details,
        bidding_deadline=_parse_ts(data["bidding_deadline"]),
        status=LoadStatus(data["status"]),
        version=int(data["version"]),
        created_utc=_parse_ts(data.get("created_utc")),
        assigned_utc=_parse_ts(data.get("assigned_utc")),
        cancelled_utc=_parse_ts(data.get("cancelled_utc")),
        accepted_bid_id=data.get("accepted_bid_id"),
        assigned_driver_id=data.get("assigned_driver_id"),
        status_history=[
            LoadStatusChange(
                status=LoadStatus(h["status"]),
                changed_by=h["changed_by"],
                changed_utc=_parse_ts(h["changed_utc"]),
                version=int(h["version"]),
                reason=h.get("reason", ""),
            )
            for h in data.get("status_history", [])
        ],
    )


# ----------------------------------------------------------------------
# Bids
# ----------------------------------------------------------------------

def bid_to_dict(bid: Bid) -> dict[str, Any]:
    return {
        "bid_id": bid.bid_id,
        "load_id": bid.load_id,
        "driver_id": bid.driver_id,
        "amount": _dec(bid.amount),
        "proposal": {
            "proposed_pickup": _ts(bid.proposal.proposed_pickup),
            "proposed_delivery": _ts(bid.proposal.proposed_delivery),
            "message": bid.proposal.message,
        },
        "valid_until": _ts(bid.valid_until),
        "status": bid.status.value,
        "currency": bid.currency,
        "version": bid.version,
        "submitted_utc": _ts(bid.submitted_utc),
        "responded_utc": _ts(bid.responded_utc),
        "status_reason": bid.status_reason,
        "status_history": [
            {
                "status": h.status.value,
                "changed_by": h.changed_by,
                "changed_utc": _ts(h.changed_utc),
                "reason": h.reason,
            }
            for h in bid.status_history
        ],
    }


def bid_from_dict(data: dict[str, Any]) -> Bid:
    p = data["proposal"]
    return Bid(
        bid_id=data["bid_id"],
        load_id=data["load_id"],
        driver_id=data["driver_id"],
        amount=Decimal(data["amount"]),
        proposal=BidProposal(
            proposed_pickup=_parse_ts(p["proposed_pickup"]),
            proposed_delivery=_parse_ts(p["proposed_delivery"]),
            message=p.get("message", ""),
        ),
        valid_until=_parse_ts(data["valid_until"]),
        status=BidStatus(data["status"]),
        currency=data.get("currency", "KES"),
        version=int(data.get("version", 0)),
        submitted_utc=_parse_ts(data.get("submitted_utc")),
        responded_utc=_parse_ts(data.get("responded_utc")),
        status_reason=data.get("status_reason", ""),
        status_history=[
            BidStatusChange(
                status=BidStatus(h["status"]),
                changed_by=h["changed_by"],
                changed_utc=_parse_ts(h["changed_utc"]),
                reason=h.get("reason", ""),
            )
            for h in data.get("status_history", [])
        ],
    )


# ----------------------------------------------------------------------
# Bookings
# ----------------------------------------------------------------------

def booking_to_dict(booking: Booking) -> dict[str, Any]:
    return {
        "booking_id": booking.booking_id,
        "load_id": booking.load_id,
        "bid_id": booking.bid_id,
        "driver_id": booking.driver_id,
        "cargo_owner_id": booking.cargo_owner_id,
        "agreed_price": _dec(booking.agreed_price),
        "status": booking.status.value,
        "version": booking.version,
        "created_utc": _ts(booking.created_utc),
        "picked_up_utc": _ts(booking.picked_up_utc),
        "delivered_utc": _ts(booking.delivered_utc),
        "cancelled_utc": _ts(booking.cancelled_utc),
        "cancellation_reason": booking.cancellation_reason,
        "tracking_log": [
            {
                "sequence": e.sequence,
                "timestamp_utc": _ts(e.timestamp_utc),
                "status": e.status.value,
                "actor_id": e.actor_id,
                "note": e.note,
                "location": (
                    [e.location.latitude, e.location.longitude] if e.location else None
                ),
            }
            for e in booking.tracking_log
        ],
    }


def booking_from_dict(data: dict[str, Any]) -> Booking:
    return Booking(
        booking_id=data["booking_id"],
        load_id=data["load_id"],
        bid_id=data["bid_id"],
        driver_id=data["driver_id"],
        cargo_owner_id=data["cargo_owner_id"],
        agreed_price=Decimal(data["agreed_price"]),
        status=BookingStatus(data["status"]),
        version=int(data.get("version", 0)),
        created_utc=_parse_ts(data.get("created_utc")),
        picked_up_utc=_parse_ts(data.get("picked_up_utc")),
        delivered_utc=_parse_ts(data.get("delivered_utc")),
        cancelled_utc=_parse_ts(data.get("cancelled_utc")),
        cancellation_reason=data.get("cancellation_reason", ""),
        tracking_log=[
            TrackingEntry(
                sequence=int(e["sequence"]),
                timestamp_utc=_parse_ts(e["timestamp_utc"]),
                status=BookingStatus(e["status"]),
                actor_id=e["actor_id"],
                note=e.get("note", ""),
                location=GeoPoint(*e["location"]) if e.get("location") else None,
            )
            for e in data.get("tracking_log", [])
        ],
    )


class StateStore:
    """Saves and loads the engine state as one JSON document.

    Usage:
        store = StateStore(Path("data/state.json"))
        store.save(loads, bids, bookings)
        loads, bids, bookings = store.load()
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def save(
        self,
        loads: Iterable[Load],
        bids: Iterable[Bid],
        bookings: Iterable[Booking],
    ) -> None:
        """Write a snapshot. Raises OSError on disk failure."""
        document = {
            "format": SNAPSHOT_FORMAT,
            "saved_utc": _ts(datetime.now(timezone.utc)),
            "loads": [load_to_dict(ld) for ld in sorted(loads, key=lambda x: x.load_id)],
            "bids": [bid_to_dict(b) for b in sorted(bids, key=lambda x: x.bid_id)],
            "bookings": [
                booking_to_dict(b) for b in sorted(bookings, key=lambda x: x.booking_id)
            ],
        }
        payload = json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False)
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_name(self._path.name + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)

    def load(self) -> tuple[list[Load], list[Bid], list[Booking]]:
        """Read the snapshot. A missing file yields empty state.

        Raises ValueError on an unreadable or unknown-format document.
        """
        with self._lock:
            if not self._path.exists():
                return [], [], []
            with self._path.open("r", encoding="utf-8") as handle:
                try:
                    document = json.load(handle)
                except json.JSONDecodeError as e:
                    raise ValueError(f"{self._path}: corrupt snapshot: {e}") from e

        if document.get("format") != SNAPSHOT_FORMAT:
            raise ValueError(
                f"{self._path}: unsupported snapshot format {document.get('format')!r}"
            )
        try:
            loads = [load_from_dict(d) for d in document.get("loads", [])]
            bids = [bid_from_dict(d) for d in document.get("bids", [])]
            bookings = [booking_from_dict(d) for d in document.get("bookings", [])]
        except (KeyError, TypeError, InvalidOperation) as e:
            raise ValueError(f"{self._path}: malformed snapshot record: {e}") from e
        logger.info(
            "Loaded snapshot %s: %d loads, %d bids, %d bookings",
            self._path, len(loads), len(bids), len(bookings),
        )
        return loads, bids, bookings

"""Core data models for the load board."""

from loadboard.models.bid import (
    BID_TRANSITIONS,
    Bid,
    BidProposal,
    BidStatus,
    BidStatusChange,
)
from loadboard.models.booking import (
    BOOKING_TRANSITIONS,
    Booking,
    BookingStatus,
    GeoPoint,
    TrackingEntry,
)
from loadboard.models.load import (
    CargoType,
    Load,
    LoadDetails,
    LoadStatus,
    LoadStatusChange,
    VehicleType,
)

__all__ = [
    "BID_TRANSITIONS",
    "Bid",
    "BidProposal",
    "BidStatus",
    "BidStatusChange",
    "BOOKING_TRANSITIONS",
    "Booking",
    "BookingStatus",
    "GeoPoint",
    "TrackingEntry",
    "CargoType",
    "Load",
    "LoadDetails",
    "LoadStatus",
    "LoadStatusChange",
    "VehicleType",
]

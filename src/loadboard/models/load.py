"""Load models: a cargo owner's shipment request.

Load lifecycle:
    AVAILABLE → ASSIGNED → IN_TRANSIT → DELIVERED
    AVAILABLE / ASSIGNED → CANCELLED
    ASSIGNED / IN_TRANSIT → AVAILABLE   (booking cancelled, load re-opened)

A Load is never physically deleted. ``version`` increases by one on every
applied status change and is the guard for conditional writes.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class LoadStatus(str, enum.Enum):
    """Lifecycle state of a load."""
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class CargoType(str, enum.Enum):
    """Kind of goods being shipped."""
    ELECTRONICS = "electronics"
    FURNITURE = "furniture"
    CONSTRUCTION_MATERIALS = "construction_materials"
    FOOD_BEVERAGES = "food_beverages"
    TEXTILES = "textiles"
    MACHINERY = "machinery"
    MEDICAL_SUPPLIES = "medical_supplies"
    AUTOMOTIVE_PARTS = "automotive_parts"
    AGRICULTURAL_PRODUCTS = "agricultural_products"
    CHEMICALS = "chemicals"
    FRAGILE_ITEMS = "fragile_items"
    HAZARDOUS_MATERIALS = "hazardous_materials"
    LIVESTOCK = "livestock"
    CONTAINERS = "containers"
    OTHER = "other"


class VehicleType(str, enum.Enum):
    """Vehicle class a load requires."""
    PICKUP = "pickup"
    VAN = "van"
    SMALL_TRUCK = "small_truck"
    MEDIUM_TRUCK = "medium_truck"
    LARGE_TRUCK = "large_truck"
    HEAVY_TRUCK = "heavy_truck"
    TRAILER = "trailer"
    REFRIGERATED_TRUCK = "refrigerated_truck"
    FLATBED = "flatbed"
    CONTAINER_TRUCK = "container_truck"


@dataclass
class LoadDetails:
    """Descriptive attributes supplied by the cargo owner at creation.

    ``bidding_deadline`` is optional; when absent the store derives one
    from policy and the pickup date.
    """
    title: str
    pickup_location: str
    delivery_location: str
    weight_kg: Decimal
    pickup_date: datetime
    delivery_date: datetime
    description: str = ""
    cargo_type: CargoType = CargoType.OTHER
    vehicle_type: Optional[VehicleType] = None
    budget: Optional[Decimal] = None
    special_instructions: str = ""
    bidding_deadline: Optional[datetime] = None


@dataclass(frozen=True)
class LoadStatusChange:
    """One entry of a load's status history."""
    status: LoadStatus
    changed_by: str
    changed_utc: datetime
    version: int
    reason: str = ""


@dataclass
class Load:
    """A shipment request open for bidding while AVAILABLE."""
    load_id: str
    owner_id: str
    details: LoadDetails
    bidding_deadline: datetime
    status: LoadStatus = LoadStatus.AVAILABLE
    version: int = 0
    created_utc: Optional[datetime] = None
    assigned_utc: Optional[datetime] = None
    cancelled_utc: Optional[datetime] = None
    accepted_bid_id: Optional[str] = None
    assigned_driver_id: Optional[str] = None
    status_history: list[LoadStatusChange] = field(default_factory=list)

    def is_biddable(self, now: datetime) -> bool:
        """True if new bids may be placed at ``now``."""
        return self.status == LoadStatus.AVAILABLE and now < self.bidding_deadline

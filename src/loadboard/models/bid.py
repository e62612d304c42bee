"""Bid models: a driver's priced offer against one load.

Bid lifecycle: PENDING → ACCEPTED / REJECTED / WITHDRAWN
An ACCEPTED bid falls back to REJECTED only when the booking created
from it is cancelled, so a load never has two accepted bids at once.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from loadboard.errors import StateTransitionError


class BidStatus(str, enum.Enum):
    """Lifecycle state of a bid."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


BID_TRANSITIONS: Dict[BidStatus, frozenset] = {
    BidStatus.PENDING: frozenset({
        BidStatus.ACCEPTED,
        BidStatus.REJECTED,
        BidStatus.WITHDRAWN,
    }),
    BidStatus.ACCEPTED: frozenset({BidStatus.REJECTED}),
    BidStatus.REJECTED: frozenset(),
    BidStatus.WITHDRAWN: frozenset(),
}


@dataclass(frozen=True)
class BidProposal:
    """What the driver proposes alongside the price."""
    proposed_pickup: datetime
    proposed_delivery: datetime
    message: str = ""


@dataclass(frozen=True)
class BidStatusChange:
    status: BidStatus
    changed_by: str
    changed_utc: datetime
    reason: str = ""


@dataclass
class Bid:
    """A driver's offer on a load.

    ``valid_until`` is checked at acceptance time, not at submission.
    ``version`` counts amendments and status changes of this bid alone.
    """
    bid_id: str
    load_id: str
    driver_id: str
    amount: Decimal
    proposal: BidProposal
    valid_until: datetime
    status: BidStatus = BidStatus.PENDING
    currency: str = "KES"
    version: int = 0
    submitted_utc: Optional[datetime] = None
    responded_utc: Optional[datetime] = None
    status_reason: str = ""
    status_history: list[BidStatusChange] = field(default_factory=list)

    @property
    def is_live(self) -> bool:
        """Counts against the one-bid-per-driver rule."""
        return self.status != BidStatus.WITHDRAWN

    def is_expired(self, now: datetime) -> bool:
        return now >= self.valid_until

    def transition_to(
        self,
        new_status: BidStatus,
        changed_by: str,
        now: datetime,
        reason: str = "",
    ) -> None:
        """Move to ``new_status`` if BID_TRANSITIONS allows it."""
        allowed = BID_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise StateTransitionError(
                f"Invalid bid transition: {self.status.value} → {new_status.value}",
                entity_id=self.bid_id,
            )
        self.status = new_status
        self.status_reason = reason
        self.version += 1
        if new_status != BidStatus.WITHDRAWN:
            self.responded_utc = now
        self.status_history.append(
            BidStatusChange(
                status=new_status,
                changed_by=changed_by,
                changed_utc=now,
                reason=reason,
            )
        )

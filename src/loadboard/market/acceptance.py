"""Acceptance coordinator: matches a load to exactly one bid.

accept_bid is the only operation spanning two aggregates. Its single
linearization point is the version-guarded AVAILABLE → ASSIGNED write on
the load. Only the caller that wins that write goes on to settle:

    1. owner check, load must be AVAILABLE          (ForbiddenError / ConflictError)
    2. target bid pending, on this load, unexpired   (NotFoundError / StateTransitionError,
                                                      ConflictError if the load moved meanwhile)
    3. conditional write on the load                 (ConflictError, no retry)
    4. settle under the ledger lock: re-check the load and the target,
       open booking, accept target, reject pending siblings
    5. emit AcceptanceEvent, fire-and-forget

If step 4 refuses (the target was withdrawn, or the owner cancelled the
load, between 2 and 4), the load write is undone with a second
conditional write where the load still holds it, and the error is
raised. No sibling is ever rejected unless step 3 succeeded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from loadboard.errors import (
    ConflictError,
    ForbiddenError,
    LoadBoardError,
    StateTransitionError,
)
from loadboard.fulfilment.tracker import BookingTracker
from loadboard.market.bid_ledger import BidLedger
from loadboard.market.load_store import LoadStore
from loadboard.models.bid import Bid
from loadboard.models.booking import Booking
from loadboard.models.load import LoadStatus
from loadboard.persistence.event_log import EventKind
from loadboard.persistence.event_sink import AcceptanceEvent, EventSink, emit_safely

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Acceptance:
    """Outcome of a successful accept_bid."""
    booking: Booking
    bid: Bid
    rejected: list[Bid]
    warning: Optional[str] = None


class AcceptanceCoordinator:
    """Atomically accepts one bid per load.

    Usage:
        coordinator = AcceptanceCoordinator(loads, ledger, tracker, sink)
        booking = coordinator.accept_bid(load_id, bid_id, actor_id="owner-1").booking
    """

    def __init__(
        self,
        loads: LoadStore,
        ledger: BidLedger,
        tracker: BookingTracker,
        sink: Optional[EventSink] = None,
    ) -> None:
        self._loads = loads
        self._ledger = ledger
        self._tracker = tracker
        self._sink = sink

    def accept_bid(
        self,
        load_id: str,
        bid_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> Acceptance:
        """Accept ``bid_id`` on ``load_id``.

        Returns the new booking, the accepted bid and the rejected
        siblings. ``warning`` is set when the AcceptanceEvent could not
        be delivered; the acceptance stands regardless.

        Raises:
            NotFoundError: unknown load or bid not on this load.
            ForbiddenError: actor does not own the load.
            ConflictError: load not available, or another caller changed
                it first. Expected when losing a race; never retried here.
            StateTransitionError: bid not pending or past valid_until.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        load = self._loads.get(load_id)
        if actor_id != load.owner_id:
            raise ForbiddenError(
                f"Actor {actor_id} does not own load {load_id}", entity_id=load_id,
            )
        if load.status != LoadStatus.AVAILABLE:
            raise ConflictError(
                f"Load {load_id} already matched or unavailable (status: {load.status.value})",
                entity_id=load_id,
            )
        try:
            bid = self._ledger.check_acceptable(load_id, bid_id, now)
        except StateTransitionError as e:
            # A bid rejected as a sibling of a concurrent acceptance means
            # this caller lost the race on the load.
            current = self._loads.get(load_id)
            if current.version != load.version:
                raise ConflictError(
                    f"Load {load_id} changed concurrently (expected version "
                    f"{load.version}, found {current.version})",
                    entity_id=load_id,
                ) from e
            raise

        assigned = self._loads.assign(
            load_id, load.version, bid_id, bid.driver_id, actor_id, now=now,
        )

        try:
            accepted, rejected, booking = self._ledger.settle_acceptance(
                load_id,
                bid_id,
                actor_id,
                now,
                assigned_version=assigned.version,
                create_booking=lambda b: self._tracker.open_booking(b, load.owner_id, now=now),
            )
        except LoadBoardError as e:
            self._roll_back(load_id, assigned.version, bid_id, actor_id, now, e)
            raise

        logger.info(
            "Load %s matched: bid %s accepted, booking %s, %d sibling(s) rejected",
            load_id, accepted.bid_id, booking.booking_id, len(rejected),
        )
        warning = emit_safely(
            self._sink,
            AcceptanceEvent(
                kind=EventKind.BID_ACCEPTED,
                actor_id=actor_id,
                occurred_utc=now,
                load_id=load_id,
                bid_id=accepted.bid_id,
                booking_id=booking.booking_id,
                rejected_bid_ids=tuple(b.bid_id for b in rejected),
            ),
        )
        return Acceptance(booking=booking, bid=accepted, rejected=rejected, warning=warning)

    def _roll_back(
        self,
        load_id: str,
        assigned_version: int,
        bid_id: str,
        actor_id: str,
        now: datetime,
        cause: LoadBoardError,
    ) -> None:
        logger.warning("Acceptance of bid %s on load %s failed after assignment: %s", bid_id, load_id, cause)
        try:
            self._loads.release(
                load_id,
                assigned_version,
                actor_id,
                reason=f"acceptance of bid {bid_id} rolled back",
                now=now,
            )
        except ConflictError as e:
            # The load moved on (cancelled by its owner); there is no
            # assignment of ours left to undo.
            logger.info("Load %s left as is after failed acceptance: %s", load_id, e)

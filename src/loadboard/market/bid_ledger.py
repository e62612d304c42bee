"""Bid ledger: owns bids, scoped to their load.

Enforces the per-driver uniqueness rule (one non-withdrawn bid per
driver per load), the bidding deadline and the validity window.

Lock order: ledger, then BookingTracker, then LoadStore. The ledger lock
may be held while the other two take their own locks, never the other
way round. Bid submission reads the load status and inserts the bid
under the ledger lock, so a bid either lands before an acceptance
settles (and is then rejected as a sibling) or sees the load already
assigned. Settlement and load cancellation both run under the ledger
lock, so a cancel lands either wholly before a settlement (which then
finds the load moved and refuses) or wholly after it (and takes the new
booking with it).
"""

from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Iterator, Optional, TypeVar
from uuid import uuid4

from loadboard.errors import (
    ConflictError,
    DuplicateBidError,
    ForbiddenError,
    LoadNotBiddableError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)
from loadboard.fulfilment.views import PendingBids
from loadboard.market.load_store import LoadStore
from loadboard.models.bid import Bid, BidProposal, BidStatus
from loadboard.models.booking import Booking, BookingStatus
from loadboard.models.load import Load, LoadStatus
from loadboard.policy.resolver import EnginePolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

SIBLING_REJECTION_REASON = "another bid accepted"
LOAD_CANCELLED_REASON = "load cancelled"

# Runs the load cancel (given the active booking's status) and returns the
# cancelled load plus the booking it closed, if any.
CancelStep = Callable[[Optional[BookingStatus]], Load]
CloseBooking = Callable[[CancelStep], tuple[Load, Optional[Booking]]]


class BidLedger:
    """Owns Bid records.

    Usage:
        ledger = BidLedger(load_store, policy)
        bid = ledger.submit_bid(load_id, "driver-1", Decimal("5000"), proposal)
        for pending in ledger.list_pending(load_id):
            ...
    """

    def __init__(self, loads: LoadStore, policy: Optional[EnginePolicy] = None) -> None:
        self._loads = loads
        self._policy = policy or EnginePolicy()
        self._bids: dict[str, Bid] = {}
        self._by_load: dict[str, list[str]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Driver operations
    # ------------------------------------------------------------------

    def submit_bid(
        self,
        load_id: str,
        driver_id: str,
        amount: Decimal,
        proposal: BidProposal,
        bid_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Bid:
        """Place a new pending bid.

        Raises:
            ValidationError: bad amount or proposal.
            NotFoundError: unknown load.
            LoadNotBiddableError: load not available, past its deadline,
                or already holding the maximum number of pending bids.
            DuplicateBidError: driver already has a live bid on the load.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        if not driver_id:
            raise ValidationError("Driver is required")
        amount = self._validate_amount(amount)
        self._validate_proposal(proposal)
        if bid_id is None:
            bid_id = f"bid_{uuid4().hex[:12]}"

        with self._lock:
            load = self._loads.get(load_id)
            if load.status != LoadStatus.AVAILABLE:
                raise LoadNotBiddableError(
                    f"Load {load_id} is not open for bids (status: {load.status.value})",
                    entity_id=load_id,
                )
            if now >= load.bidding_deadline:
                raise LoadNotBiddableError(
                    f"Bidding on load {load_id} closed at {load.bidding_deadline.isoformat()}",
                    entity_id=load_id,
                )
            if bid_id in self._bids:
                raise ValidationError(f"Bid already exists: {bid_id}", entity_id=bid_id)

            pending = 0
            for existing in self._bids_of(load_id):
                if existing.driver_id == driver_id and existing.is_live:
                    raise DuplicateBidError(
                        f"Driver {driver_id} already has a {existing.status.value} "
                        f"bid on load {load_id}: {existing.bid_id}",
                        entity_id=existing.bid_id,
                    )
                if existing.status == BidStatus.PENDING and not existing.is_expired(now):
                    pending += 1
            if pending >= self._policy.max_bids_per_load:
                raise LoadNotBiddableError(
                    f"Load {load_id} already has {pending} pending bids",
                    entity_id=load_id,
                )

            bid = Bid(
                bid_id=bid_id,
                load_id=load_id,
                driver_id=driver_id,
                amount=amount,
                proposal=proposal,
                valid_until=now + self._policy.bid_validity,
                status=BidStatus.PENDING,
                currency=self._policy.currency,
                submitted_utc=now,
            )
            self._bids[bid_id] = bid
            self._by_load.setdefault(load_id, []).append(bid_id)
            logger.info("Bid %s placed on load %s by %s (%s)", bid_id, load_id, driver_id, amount)
            return copy.deepcopy(bid)

    def withdraw(
        self,
        bid_id: str,
        driver_id: str,
        now: Optional[datetime] = None,
    ) -> Bid:
        """Withdraw a pending bid. Withdrawing twice is a no-op success.

        Raises ForbiddenError if ``driver_id`` did not place the bid and
        StateTransitionError once the bid was accepted or rejected.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        with self._lock:
            bid = self._get(bid_id)
            if bid.driver_id != driver_id:
                raise ForbiddenError(
                    f"Bid {bid_id} belongs to another driver", entity_id=bid_id,
                )
            if bid.status == BidStatus.WITHDRAWN:
                return copy.deepcopy(bid)
            bid.transition_to(BidStatus.WITHDRAWN, driver_id, now, reason="withdrawn by driver")
            logger.info("Bid %s withdrawn by %s", bid_id, driver_id)
            return copy.deepcopy(bid)

    def update_bid(
        self,
        bid_id: str,
        driver_id: str,
        amount: Optional[Decimal] = None,
        proposal: Optional[BidProposal] = None,
        now: Optional[datetime] = None,
    ) -> Bid:
        """Amend a pending bid's amount and/or proposal before the deadline."""
        if now is None:
            now = datetime.now(timezone.utc)
        if amount is None and proposal is None:
            raise ValidationError("Nothing to update", entity_id=bid_id)
        if amount is not None:
            amount = self._validate_amount(amount)
        if proposal is not None:
            self._validate_proposal(proposal)

        with self._lock:
            bid = self._get(bid_id)
            if bid.driver_id != driver_id:
                raise ForbiddenError(
                    f"Bid {bid_id} belongs to another driver", entity_id=bid_id,
                )
            if bid.status != BidStatus.PENDING:
                raise StateTransitionError(
                    f"Bid {bid_id} cannot be updated (status: {bid.status.value})",
                    entity_id=bid_id,
                )
            load = self._loads.get(bid.load_id)
            if not load.is_biddable(now):
                raise LoadNotBiddableError(
                    f"Load {bid.load_id} is no longer open for bids", entity_id=bid.load_id,
                )
            if amount is not None:
                bid.amount = amount
            if proposal is not None:
                bid.proposal = proposal
            bid.version += 1
            logger.info("Bid %s updated by %s (version %d)", bid_id, driver_id, bid.version)
            return copy.deepcopy(bid)

    # ------------------------------------------------------------------
    # Owner operations
    # ------------------------------------------------------------------

    def reject_bid(
        self,
        load_id: str,
        bid_id: str,
        actor_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> Bid:
        """Load owner turns down one pending bid."""
        if now is None:
            now = datetime.now(timezone.utc)
        self._validate_reason(reason)
        load = self._loads.get(load_id)
        if actor_id != load.owner_id:
            raise ForbiddenError(
                f"Actor {actor_id} does not own load {load_id}", entity_id=load_id,
            )
        with self._lock:
            bid = self._get(bid_id)
            if bid.load_id != load_id:
                raise NotFoundError(
                    f"Bid {bid_id} not found on load {load_id}", entity_id=bid_id,
                )
            bid.transition_to(
                BidStatus.REJECTED, actor_id, now, reason=reason or "rejected by cargo owner",
            )
            logger.info("Bid %s rejected by %s", bid_id, actor_id)
            return copy.deepcopy(bid)

    # ------------------------------------------------------------------
    # Acceptance support (called by AcceptanceCoordinator only)
    # ------------------------------------------------------------------

    def settle_acceptance(
        self,
        load_id: str,
        bid_id: str,
        actor_id: str,
        now: datetime,
        assigned_version: int,
        create_booking: Callable[[Bid], T],
    ) -> tuple[Bid, list[Bid], T]:
        """Accept ``bid_id``, reject its pending siblings, create the booking.

        Runs after the load's conditional write succeeded, as one unit
        under the ledger lock. The load must still be ASSIGNED to this bid
        at ``assigned_version``; a load cancelled in between raises
        ConflictError. The target is re-checked too. If either check
        fails, or ``create_booking`` raises, nothing in the ledger has
        changed and the caller undoes the load write if it still holds.
        """
        with self._lock:
            load = self._loads.get(load_id)
            if (
                load.status != LoadStatus.ASSIGNED
                or load.version != assigned_version
                or load.accepted_bid_id != bid_id
            ):
                raise ConflictError(
                    f"Load {load_id} changed before bid {bid_id} settled "
                    f"(status: {load.status.value}, expected version "
                    f"{assigned_version}, found {load.version})",
                    entity_id=load_id,
                )
            bid = self._get(bid_id)
            self._check_acceptable(bid, load_id, now)
            booking = create_booking(copy.deepcopy(bid))

            bid.transition_to(BidStatus.ACCEPTED, actor_id, now, reason="accepted by cargo owner")
            rejected = self._reject_pending(load_id, actor_id, SIBLING_REJECTION_REASON, now)
            logger.info(
                "Bid %s accepted on load %s; %d sibling(s) rejected",
                bid_id, load_id, len(rejected),
            )
            return copy.deepcopy(bid), rejected, booking

    def check_acceptable(self, load_id: str, bid_id: str, now: datetime) -> Bid:
        """Raise unless ``bid_id`` is a pending, unexpired bid on ``load_id``."""
        with self._lock:
            bid = self._get(bid_id)
            self._check_acceptable(bid, load_id, now)
            return copy.deepcopy(bid)

    def cancel_load(
        self,
        load_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
        close_booking: Optional[CloseBooking] = None,
    ) -> tuple[Load, list[Bid], Optional[Booking]]:
        """Cancel a load and reject its pending bids as one step.

        Runs under the ledger lock, so it serialises with settlement.
        ``close_booking`` is how the BookingTracker checks and closes the
        active booking while the load is cancelled; without it the load
        is cancelled as if it had no booking. An accepted bid is revoked
        along with the load.

        Raises whatever LoadStore.cancel raises; nothing changes then.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        def _cancel(active_status: Optional[BookingStatus]) -> Load:
            return self._loads.cancel(
                load_id, actor_id, active_booking_status=active_status, now=now,
            )

        with self._lock:
            if close_booking is None:
                load, booking = _cancel(None), None
            else:
                load, booking = close_booking(_cancel)
            rejected = self._reject_pending(load_id, actor_id, LOAD_CANCELLED_REASON, now)
            if load.accepted_bid_id is not None:
                accepted = self._bids.get(load.accepted_bid_id)
                if accepted is not None and accepted.status == BidStatus.ACCEPTED:
                    accepted.transition_to(
                        BidStatus.REJECTED, actor_id, now, reason=LOAD_CANCELLED_REASON,
                    )
        logger.info(
            "Load %s cancelled with %d pending bid(s) rejected%s",
            load_id, len(rejected), f", booking {booking.booking_id} closed" if booking else "",
        )
        return load, rejected, booking

    def revoke_acceptance(
        self,
        bid_id: str,
        actor_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Bid:
        """ACCEPTED → REJECTED, used when the bid's booking is cancelled."""
        if now is None:
            now = datetime.now(timezone.utc)
        with self._lock:
            bid = self._get(bid_id)
            if bid.status != BidStatus.ACCEPTED:
                return copy.deepcopy(bid)
            bid.transition_to(BidStatus.REJECTED, actor_id, now, reason=reason)
            logger.info("Acceptance of bid %s revoked: %s", bid_id, reason)
            return copy.deepcopy(bid)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, bid_id: str) -> Bid:
        with self._lock:
            return copy.deepcopy(self._get(bid_id))

    def list_pending(self, load_id: str) -> PendingBids:
        """Pending bids on ``load_id``, oldest submission first.

        The result is lazy and restartable: each iteration re-reads the
        ledger and skips bids that stopped being pending meanwhile.
        """
        def _iterate() -> Iterator[Bid]:
            with self._lock:
                bid_ids = list(self._by_load.get(load_id, ()))
            for bid_id in bid_ids:
                with self._lock:
                    bid = self._bids[bid_id]
                    if bid.status != BidStatus.PENDING:
                        continue
                    snapshot = copy.deepcopy(bid)
                yield snapshot

        return PendingBids(load_id, _iterate)

    def bids_for_load(self, load_id: str, status: Optional[BidStatus] = None) -> list[Bid]:
        with self._lock:
            return [
                copy.deepcopy(b) for b in self._bids_of(load_id)
                if status is None or b.status == status
            ]

    def bids_for_driver(self, driver_id: str) -> list[Bid]:
        with self._lock:
            bids = [b for b in self._bids.values() if b.driver_id == driver_id]
            bids.sort(key=lambda b: (b.submitted_utc, b.bid_id))
            return [copy.deepcopy(b) for b in bids]

    def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in BidStatus}
        with self._lock:
            for bid in self._bids.values():
                counts[bid.status.value] += 1
        return counts

    # ------------------------------------------------------------------
    # Snapshot support
    # ------------------------------------------------------------------

    def all_bids(self) -> list[Bid]:
        with self._lock:
            return [copy.deepcopy(b) for b in self._bids.values()]

    def restore(self, bids: Iterable[Bid]) -> None:
        """Replace contents; per-load order is rebuilt from submission time."""
        ordered = sorted(bids, key=lambda b: (b.submitted_utc, b.bid_id))
        with self._lock:
            self._bids = {}
            self._by_load = {}
            for bid in ordered:
                self._bids[bid.bid_id] = copy.deepcopy(bid)
                self._by_load.setdefault(bid.load_id, []).append(bid.bid_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get(self, bid_id: str) -> Bid:
        bid = self._bids.get(bid_id)
        if bid is None:
            raise NotFoundError(f"Bid not found: {bid_id}", entity_id=bid_id)
        return bid

    def _bids_of(self, load_id: str) -> list[Bid]:
        return [self._bids[i] for i in self._by_load.get(load_id, ())]

    def _reject_pending(
        self, load_id: str, actor_id: str, reason: str, now: datetime,
    ) -> list[Bid]:
        """Reject every pending bid on a load. Caller holds the lock."""
        rejected: list[Bid] = []
        for bid in self._bids_of(load_id):
            if bid.status != BidStatus.PENDING:
                continue
            bid.transition_to(BidStatus.REJECTED, actor_id, now, reason=reason)
            rejected.append(copy.deepcopy(bid))
        return rejected

    @staticmethod
    def _check_acceptable(bid: Bid, load_id: str, now: datetime) -> None:
        if bid.load_id != load_id:
            raise NotFoundError(
                f"Bid {bid.bid_id} not found on load {load_id}", entity_id=bid.bid_id,
            )
        if bid.status != BidStatus.PENDING:
            raise StateTransitionError(
                f"Bid {bid.bid_id} is {bid.status.value}, not pending",
                entity_id=bid.bid_id,
            )
        if bid.is_expired(now):
            raise StateTransitionError(
                f"Bid {bid.bid_id} expired at {bid.valid_until.isoformat()}",
                entity_id=bid.bid_id,
            )

    def _validate_amount(self, amount: Decimal) -> Decimal:
        try:
            value = Decimal(str(amount))
        except InvalidOperation as e:
            raise ValidationError(f"Bid amount is not a number: {amount!r}") from e
        if not value.is_finite() or value <= 0:
            raise ValidationError("Bid amount must be positive")
        minimum = self._policy.minimum_bid_amount
        if minimum is not None and value < minimum:
            raise ValidationError(f"Bid amount must be at least {minimum}")
        return value

    def _validate_proposal(self, proposal: BidProposal) -> None:
        pickup, delivery = proposal.proposed_pickup, proposal.proposed_delivery
        if not all(
            isinstance(d, datetime) and d.tzinfo is not None for d in (pickup, delivery)
        ):
            raise ValidationError("Proposed dates must be timezone-aware datetimes")
        if delivery <= pickup:
            raise ValidationError("Proposed delivery must be after proposed pickup")
        if len(proposal.message) > self._policy.max_message_length:
            raise ValidationError(
                f"Message exceeds {self._policy.max_message_length} characters"
            )

    def _validate_reason(self, reason: str) -> None:
        if len(reason) > self._policy.max_note_length:
            raise ValidationError(
                f"Reason exceeds {self._policy.max_note_length} characters"
            )

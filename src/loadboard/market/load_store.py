"""Load store: owns load records, their status and their version.

The store is the resource under contention. Every status change goes
through a version-guarded conditional write: the caller states which
version it read, and the write is applied only if the load is still at
that version. A stale version raises ConflictError immediately; the store
never blocks waiting for a newer version and never retries.

Reads return copies, so a caller holding a Load sees a consistent
snapshot (status and version read together) and cannot mutate the store
behind its back.

Bidding deadlines are passive. No sweeper runs; callers compare against
``now`` when they use a load.
"""

from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Optional
from uuid import uuid4

from loadboard.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)
from loadboard.market.load_state_machine import LoadStateMachine
from loadboard.models.booking import BookingStatus
from loadboard.models.load import Load, LoadDetails, LoadStatus, LoadStatusChange
from loadboard.policy.resolver import EnginePolicy

logger = logging.getLogger(__name__)


def _is_aware(value: datetime) -> bool:
    return value.tzinfo is not None and value.utcoffset() is not None


class LoadStore:
    """Owns Load records.

    Usage:
        store = LoadStore(policy)
        load = store.create("owner-1", details)
        load = store.assign(load.load_id, load.version, bid_id, driver_id, "owner-1")
    """

    def __init__(self, policy: Optional[EnginePolicy] = None) -> None:
        self._policy = policy or EnginePolicy()
        self._loads: dict[str, Load] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create(
        self,
        owner_id: str,
        details: LoadDetails,
        load_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Load:
        """Create a new load in AVAILABLE state at version 0.

        Raises ValidationError on malformed attributes.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        if not owner_id:
            raise ValidationError("Load owner is required")

        details = copy.deepcopy(details)
        errors = self._validate_details(details, now)
        if errors:
            raise ValidationError("; ".join(errors), entity_id=load_id)

        deadline = details.bidding_deadline or self._default_deadline(details, now)
        if load_id is None:
            load_id = f"load_{uuid4().hex[:12]}"

        load = Load(
            load_id=load_id,
            owner_id=owner_id,
            details=details,
            bidding_deadline=deadline,
            status=LoadStatus.AVAILABLE,
            version=0,
            created_utc=now,
            status_history=[
                LoadStatusChange(
                    status=LoadStatus.AVAILABLE,
                    changed_by=owner_id,
                    changed_utc=now,
                    version=0,
                    reason="load created",
                )
            ],
        )
        with self._lock:
            if load_id in self._loads:
                raise ValidationError(f"Load already exists: {load_id}", entity_id=load_id)
            self._loads[load_id] = load
        logger.info("Load %s created by %s (deadline %s)", load_id, owner_id, deadline.isoformat())
        return copy.deepcopy(load)

    def get(self, load_id: str) -> Load:
        """Return a snapshot of the load. Raises NotFoundError."""
        with self._lock:
            return copy.deepcopy(self._get(load_id))

    def search(
        self,
        status: Optional[LoadStatus] = None,
        owner_id: Optional[str] = None,
        limit: int = 20,
    ) -> list[Load]:
        """Loads matching the filters, oldest first."""
        with self._lock:
            candidates = sorted(
                self._loads.values(),
                key=lambda ld: (ld.created_utc or datetime.min.replace(tzinfo=timezone.utc), ld.load_id),
            )
            results: list[Load] = []
            for load in candidates:
                if status is not None and load.status != status:
                    continue
                if owner_id is not None and load.owner_id != owner_id:
                    continue
                results.append(copy.deepcopy(load))
                if len(results) >= limit:
                    break
            return results

    def status_history(self, load_id: str) -> list[LoadStatusChange]:
        with self._lock:
            return list(self._get(load_id).status_history)

    # ------------------------------------------------------------------
    # Version-guarded writes
    # ------------------------------------------------------------------

    def assign(
        self,
        load_id: str,
        expected_version: int,
        bid_id: str,
        driver_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> Load:
        """AVAILABLE → ASSIGNED, guarded by ``expected_version``.

        This is the linearization point of bid acceptance: of all callers
        that read the same version, exactly one gets past this write.
        """
        def _assign(load: Load, ts: datetime) -> None:
            load.accepted_bid_id = bid_id
            load.assigned_driver_id = driver_id
            load.assigned_utc = ts

        return self._conditional_write(
            load_id,
            expected_version,
            LoadStatus.ASSIGNED,
            actor_id,
            reason=f"bid {bid_id} accepted",
            now=now,
            required_status=LoadStatus.AVAILABLE,
            mutate=_assign,
        )

    def release(
        self,
        load_id: str,
        expected_version: int,
        actor_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Load:
        """Put an assigned load back to AVAILABLE, guarded by version.

        Used to undo an assignment whose bid could not be settled and to
        re-open a load after its booking was cancelled.
        """
        def _clear(load: Load, ts: datetime) -> None:
            load.accepted_bid_id = None
            load.assigned_driver_id = None
            load.assigned_utc = None

        return self._conditional_write(
            load_id,
            expected_version,
            LoadStatus.AVAILABLE,
            actor_id,
            reason=reason,
            now=now,
            mutate=_clear,
        )

    def transition(
        self,
        load_id: str,
        expected_version: int,
        target: LoadStatus,
        actor_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> Load:
        """Apply any table-legal transition, guarded by version."""
        return self._conditional_write(
            load_id, expected_version, target, actor_id, reason=reason, now=now,
        )

    def cancel(
        self,
        load_id: str,
        actor_id: str,
        active_booking_status: Optional[BookingStatus] = None,
        now: Optional[datetime] = None,
    ) -> Load:
        """Cancel a load on behalf of its owner.

        Allowed from AVAILABLE, or from ASSIGNED while the load's active
        booking (if any) is still CONFIRMED. This is the load-side step
        only: BidLedger.cancel_load calls it under the ledger lock and
        rejects the pending bids in the same step.

        Raises ForbiddenError for non-owners, StateTransitionError from
        other states, ConflictError if the booking has progressed.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        with self._lock:
            load = self._get(load_id)
            if actor_id != load.owner_id:
                raise ForbiddenError(
                    f"Actor {actor_id} does not own load {load_id}", entity_id=load_id,
                )
            if LoadStatus.CANCELLED not in LoadStateMachine.valid_transitions(load.status):
                raise StateTransitionError(
                    f"Load {load_id} cannot be cancelled (status: {load.status.value})",
                    entity_id=load_id,
                )
            if (
                active_booking_status is not None
                and active_booking_status != BookingStatus.CONFIRMED
            ):
                raise ConflictError(
                    f"Load {load_id} has a booking in progress "
                    f"(status: {active_booking_status.value})",
                    entity_id=load_id,
                )
            self._apply(load, LoadStatus.CANCELLED, actor_id, "load cancelled", now)
            load.cancelled_utc = now
            logger.info("Load %s cancelled by %s", load_id, actor_id)
            return copy.deepcopy(load)

    # ------------------------------------------------------------------
    # Snapshot support
    # ------------------------------------------------------------------

    def all_loads(self) -> list[Load]:
        with self._lock:
            return [copy.deepcopy(ld) for ld in self._loads.values()]

    def restore(self, loads: Iterable[Load]) -> None:
        """Replace the store's contents with ``loads`` (used on startup)."""
        with self._lock:
            self._loads = {ld.load_id: copy.deepcopy(ld) for ld in loads}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get(self, load_id: str) -> Load:
        load = self._loads.get(load_id)
        if load is None:
            raise NotFoundError(f"Load not found: {load_id}", entity_id=load_id)
        return load

    def _conditional_write(
        self,
        load_id: str,
        expected_version: int,
        target: LoadStatus,
        actor_id: str,
        reason: str,
        now: Optional[datetime],
        required_status: Optional[LoadStatus] = None,
        mutate: Optional[Callable[[Load, datetime], None]] = None,
    ) -> Load:
        if now is None:
            now = datetime.now(timezone.utc)
        with self._lock:
            load = self._get(load_id)
            if load.version != expected_version:
                logger.warning(
                    "Conditional write on load %s lost: expected version %d, found %d",
                    load_id, expected_version, load.version,
                )
                raise ConflictError(
                    f"Load {load_id} changed concurrently "
                    f"(expected version {expected_version}, found {load.version})",
                    entity_id=load_id,
                )
            if required_status is not None and load.status != required_status:
                raise ConflictError(
                    f"Load {load_id} is {load.status.value}, expected {required_status.value}",
                    entity_id=load_id,
                )
            self._apply(load, target, actor_id, reason, now)
            if mutate is not None:
                mutate(load, now)
            logger.info(
                "Load %s → %s (version %d) by %s", load_id, target.value, load.version, actor_id,
            )
            return copy.deepcopy(load)

    @staticmethod
    def _apply(
        load: Load,
        target: LoadStatus,
        actor_id: str,
        reason: str,
        now: datetime,
    ) -> None:
        """Validate against the transition table and apply. Caller holds the lock."""
        errors = LoadStateMachine.validate_transition(load.status, target)
        if errors:
            raise StateTransitionError(errors[0], entity_id=load.load_id)
        load.status = target
        load.version += 1
        load.status_history.append(
            LoadStatusChange(
                status=target,
                changed_by=actor_id,
                changed_utc=now,
                version=load.version,
                reason=reason,
            )
        )

    def _validate_details(self, details: LoadDetails, now: datetime) -> list[str]:
        errors: list[str] = []
        if not details.title or not details.title.strip():
            errors.append("title is required")
        if not details.pickup_location or not details.pickup_location.strip():
            errors.append("pickup_location is required")
        if not details.delivery_location or not details.delivery_location.strip():
            errors.append("delivery_location is required")

        try:
            weight = Decimal(str(details.weight_kg))
        except InvalidOperation:
            errors.append(f"weight_kg is not a number: {details.weight_kg!r}")
        else:
            details.weight_kg = weight
            if weight <= 0:
                errors.append("weight_kg must be positive")
            elif weight < self._policy.min_weight_kg:
                errors.append(f"weight_kg must be at least {self._policy.min_weight_kg}")

        if details.budget is not None:
            try:
                details.budget = Decimal(str(details.budget))
            except InvalidOperation:
                errors.append(f"budget is not a number: {details.budget!r}")
            else:
                if details.budget <= 0:
                    errors.append("budget must be positive")

        dates = [details.pickup_date, details.delivery_date]
        if details.bidding_deadline is not None:
            dates.append(details.bidding_deadline)
        if not all(isinstance(d, datetime) and _is_aware(d) for d in dates):
            errors.append("dates must be timezone-aware datetimes")
            return errors

        if details.pickup_date <= now:
            errors.append("pickup_date cannot be in the past")
        if details.delivery_date <= details.pickup_date:
            errors.append("delivery_date must be after pickup_date")
        if details.bidding_deadline is not None:
            if details.bidding_deadline <= now:
                errors.append("bidding_deadline cannot be in the past")
            elif details.bidding_deadline > details.pickup_date:
                errors.append("bidding_deadline cannot be after pickup_date")
        return errors

    def _default_deadline(self, details: LoadDetails, now: datetime) -> datetime:
        """min(now + window, pickup - cutoff), falling back to pickup itself."""
        candidate = min(
            now + self._policy.default_bidding_window,
            details.pickup_date - self._policy.bidding_cutoff,
        )
        if candidate <= now:
            return details.pickup_date
        return candidate

#!/usr/bin/env python3
"""Load board invariant checks against the policy file and a state snapshot."""

import sys
from collections import Counter
from pathlib import Path
from typing import Optional

from loadboard.models.bid import BidStatus
from loadboard.models.booking import BookingStatus
from loadboard.models.load import LoadStatus
from loadboard.persistence.state_store import StateStore
from loadboard.policy.resolver import POLICY_FILENAME, PolicyResolver


ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = ROOT / "config"
STATE_PATH = ROOT / "data" / "state.json"

_HELD = (LoadStatus.ASSIGNED, LoadStatus.IN_TRANSIT)


def check_policy(config_dir: Path, errors: list[str]) -> None:
    """The policy file must exist and load cleanly."""
    if not (config_dir / POLICY_FILENAME).exists():
        errors.append(f"Missing policy file: {config_dir / POLICY_FILENAME}")
        return
    try:
        policy = PolicyResolver.from_config_dir(config_dir).policy
    except ValueError as e:
        errors.append(str(e))
        return
    if policy.max_note_length > policy.max_message_length:
        errors.append("max_note_length must not exceed max_message_length")


def check_snapshot(state_path: Path, errors: list[str]) -> None:
    """Cross-entity invariants of a persisted snapshot."""
    try:
        loads, bids, bookings = StateStore(state_path).load()
    except ValueError as e:
        errors.append(str(e))
        return

    bids_by_id = {b.bid_id: b for b in bids}

    accepted = Counter(b.load_id for b in bids if b.status == BidStatus.ACCEPTED)
    for load_id, count in accepted.items():
        if count > 1:
            errors.append(f"Load {load_id} has {count} accepted bids")

    active = Counter(b.load_id for b in bookings if b.status != BookingStatus.CANCELLED)
    for load_id, count in active.items():
        if count > 1:
            errors.append(f"Load {load_id} has {count} active bookings")

    live = Counter(
        (b.load_id, b.driver_id) for b in bids if b.status != BidStatus.WITHDRAWN
    )
    for (load_id, driver_id), count in live.items():
        if count > 1:
            errors.append(f"Driver {driver_id} has {count} live bids on load {load_id}")

    for load in loads:
        if load.status_history and load.status_history[-1].version != load.version:
            errors.append(
                f"Load {load.load_id} version {load.version} does not match "
                f"its history ({load.status_history[-1].version})"
            )
        if load.status in _HELD and active.get(load.load_id, 0) == 0:
            errors.append(f"Load {load.load_id} is {load.status.value} without an active booking")
        if load.status == LoadStatus.AVAILABLE and active.get(load.load_id, 0) > 0:
            errors.append(f"Load {load.load_id} is available but has an active booking")

    for booking in bookings:
        bid = bids_by_id.get(booking.bid_id)
        if bid is None:
            errors.append(f"Booking {booking.booking_id} references unknown bid {booking.bid_id}")
        elif booking.status != BookingStatus.CANCELLED and bid.status != BidStatus.ACCEPTED:
            errors.append(
                f"Booking {booking.booking_id} is active but bid {bid.bid_id} is {bid.status.value}"
            )
        sequences = [e.sequence for e in booking.tracking_log]
        if sequences != list(range(1, len(sequences) + 1)):
            errors.append(f"Booking {booking.booking_id} tracking sequence has gaps")
        stamps = [e.timestamp_utc for e in booking.tracking_log]
        if any(later <= earlier for earlier, later in zip(stamps, stamps[1:])):
            errors.append(f"Booking {booking.booking_id} tracking timestamps not increasing")


def check(config_dir: Path = CONFIG_DIR, state_path: Optional[Path] = STATE_PATH) -> int:
    errors: list[str] = []

    check_policy(Path(config_dir), errors)
    if state_path is not None and Path(state_path).exists():
        check_snapshot(Path(state_path), errors)

    if errors:
        print("Invariant check FAILED:")
        for err in errors:
            print(f"  - {err}")
        return 1

    print("Invariant check passed.")
    return 0


if __name__ == "__main__":
    sys.exit(check())

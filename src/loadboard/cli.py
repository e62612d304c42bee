"""Load board CLI: command-line front end for the lifecycle engine.

Usage:
    python -m loadboard.cli status
    python -m loadboard.cli create-load --owner owner-1 --title "Maize, 40 bags" \
        --pickup Nairobi --delivery Mombasa --weight 2000 \
        --pickup-date 2026-03-01T08:00:00+00:00 --delivery-date 2026-03-02T18:00:00+00:00
    python -m loadboard.cli submit-bid --load load_ab12 --driver driver-1 --amount 5000 \
        --proposed-pickup 2026-03-01T09:00:00+00:00 --proposed-delivery 2026-03-02T12:00:00+00:00
    python -m loadboard.cli accept-bid --load load_ab12 --bid bid_cd34 --actor owner-1
    python -m loadboard.cli track --booking booking_ef56 --actor driver-1 --status picked_up
    python -m loadboard.cli check-invariants

State lives in the data directory (``state.json`` and ``events.jsonl``).
``LOADBOARD_CONFIG_DIR`` and ``LOADBOARD_DATA_DIR`` may be set in the
environment or a ``.env`` file.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from loadboard.models.booking import BookingStatus, GeoPoint
from loadboard.models.bid import BidProposal
from loadboard.models.load import CargoType, LoadDetails, VehicleType
from loadboard.persistence.event_log import EventLog
from loadboard.persistence.state_store import StateStore
from loadboard.policy.resolver import PolicyResolver
from loadboard.service import LoadBoardService, ServiceResult


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"
DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"


def _parse_datetime(value: str) -> datetime:
    """ISO-8601 timestamp; naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid timestamp: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _make_service(config_dir: Path, data_dir: Path) -> LoadBoardService:
    """Create a LoadBoardService with durable persistence."""
    data_dir.mkdir(parents=True, exist_ok=True)
    resolver = PolicyResolver.from_config_dir(config_dir)
    return LoadBoardService(
        resolver,
        event_log=EventLog(storage_path=data_dir / "events.jsonl"),
        state_store=StateStore(data_dir / "state.json"),
    )


def _report(result: ServiceResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2, default=str))
        return 0
    print(
        f"Failed [{result.error_kind}]: {'; '.join(result.errors)}",
        file=sys.stderr,
    )
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    print(json.dumps(service.status(), indent=2))
    return 0


def cmd_create_load(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    details = LoadDetails(
        title=args.title,
        pickup_location=args.pickup,
        delivery_location=args.delivery,
        weight_kg=args.weight,
        pickup_date=args.pickup_date,
        delivery_date=args.delivery_date,
        description=args.description,
        cargo_type=CargoType(args.cargo_type),
        vehicle_type=VehicleType(args.vehicle_type) if args.vehicle_type else None,
        budget=args.budget or None,
        bidding_deadline=args.deadline,
    )
    return _report(service.create_load(args.owner, details, load_id=args.id))


def cmd_submit_bid(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    proposal = BidProposal(
        proposed_pickup=args.proposed_pickup,
        proposed_delivery=args.proposed_delivery,
        message=args.message,
    )
    return _report(
        service.submit_bid(args.load, args.driver, args.amount, proposal, bid_id=args.id)
    )


def cmd_withdraw_bid(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.withdraw_bid(args.bid, args.driver))


def cmd_accept_bid(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.accept_bid(args.load, args.bid, args.actor))


def cmd_reject_bid(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.reject_bid(args.load, args.bid, args.actor, reason=args.reason))


def cmd_track(args: argparse.Namespace) -> int:
    """Advance a booking, or add a note when no status is given."""
    service = _make_service(args.config, args.data)
    location = None
    if args.lat is not None and args.lon is not None:
        location = GeoPoint(latitude=args.lat, longitude=args.lon)
    if args.status is None:
        return _report(
            service.add_tracking_note(args.booking, args.actor, args.note, location=location)
        )
    return _report(
        service.append_tracking_update(
            args.booking, BookingStatus(args.status), args.actor,
            note=args.note, location=location,
        )
    )


def cmd_cancel_booking(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.cancel_booking(args.booking, args.actor, reason=args.reason))


def cmd_cancel_load(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.cancel_load(args.load, args.actor))


def cmd_show_load(args: argparse.Namespace) -> int:
    """Print a load with its bids and bookings."""
    service = _make_service(args.config, args.data)
    load = service.get_load(args.load)
    if load is None:
        print(f"Failed [not_found]: Load not found: {args.load}", file=sys.stderr)
        return 1
    data: dict[str, Any] = {
        "load_id": load.load_id,
        "status": load.status.value,
        "version": load.version,
        "bidding_deadline": load.bidding_deadline.isoformat(),
        "history": [
            {"status": h.status.value, "version": h.version, "by": h.changed_by, "reason": h.reason}
            for h in load.status_history
        ],
        "bids": [
            {"bid_id": b.bid_id, "driver_id": b.driver_id, "amount": str(b.amount),
             "status": b.status.value}
            for b in service.bids_for_load(load.load_id)
        ],
    }
    active = service.active_booking_for_load(load.load_id)
    if active is not None:
        data["active_booking"] = {
            "booking_id": active.booking_id,
            "status": active.status.value,
            "tracking": [
                {"seq": e.sequence, "at": e.timestamp_utc.isoformat(),
                 "status": e.status.value, "by": e.actor_id, "note": e.note}
                for e in service.get_tracking_log(active.booking_id)
            ],
        }
    print(json.dumps(data, indent=2))
    return 0


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Check the policy file and the persisted snapshot."""
    tools_dir = Path(__file__).resolve().parents[2] / "tools"
    sys.path.insert(0, str(tools_dir))
    from check_invariants import check
    return check(config_dir=args.config, state_path=args.data / "state.json")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loadboard",
        description="Load board lifecycle engine CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.environ.get("LOADBOARD_CONFIG_DIR", DEFAULT_CONFIG)),
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=Path(os.environ.get("LOADBOARD_DATA_DIR", DEFAULT_DATA)),
        help="Path to data directory (default: data/)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log engine activity")
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show system status")

    # create-load
    p_load = sub.add_parser("create-load", help="Post a new load")
    p_load.add_argument("--id", help="Load ID (default: generated)")
    p_load.add_argument("--owner", required=True, help="Cargo owner ID")
    p_load.add_argument("--title", required=True)
    p_load.add_argument("--pickup", required=True, help="Pickup location")
    p_load.add_argument("--delivery", required=True, help="Delivery location")
    p_load.add_argument("--weight", required=True, help="Weight in kg (Decimal)")
    p_load.add_argument("--pickup-date", required=True, type=_parse_datetime)
    p_load.add_argument("--delivery-date", required=True, type=_parse_datetime)
    p_load.add_argument("--deadline", type=_parse_datetime, help="Bidding deadline")
    p_load.add_argument("--description", default="")
    p_load.add_argument(
        "--cargo-type", default=CargoType.OTHER.value,
        choices=[c.value for c in CargoType],
    )
    p_load.add_argument("--vehicle-type", choices=[v.value for v in VehicleType])
    p_load.add_argument("--budget", help="Budget (Decimal)")

    # submit-bid
    p_bid = sub.add_parser("submit-bid", help="Bid on a load")
    p_bid.add_argument("--id", help="Bid ID (default: generated)")
    p_bid.add_argument("--load", required=True)
    p_bid.add_argument("--driver", required=True)
    p_bid.add_argument("--amount", required=True, help="Amount (Decimal)")
    p_bid.add_argument("--proposed-pickup", required=True, type=_parse_datetime)
    p_bid.add_argument("--proposed-delivery", required=True, type=_parse_datetime)
    p_bid.add_argument("--message", default="")

    # withdraw-bid
    p_wd = sub.add_parser("withdraw-bid", help="Withdraw a pending bid")
    p_wd.add_argument("--bid", required=True)
    p_wd.add_argument("--driver", required=True)

    # accept-bid
    p_acc = sub.add_parser("accept-bid", help="Accept a bid and create a booking")
    p_acc.add_argument("--load", required=True)
    p_acc.add_argument("--bid", required=True)
    p_acc.add_argument("--actor", required=True, help="Cargo owner ID")

    # reject-bid
    p_rej = sub.add_parser("reject-bid", help="Reject one pending bid")
    p_rej.add_argument("--load", required=True)
    p_rej.add_argument("--bid", required=True)
    p_rej.add_argument("--actor", required=True, help="Cargo owner ID")
    p_rej.add_argument("--reason", default="")

    # track
    p_trk = sub.add_parser("track", help="Update booking status or add a note")
    p_trk.add_argument("--booking", required=True)
    p_trk.add_argument("--actor", required=True)
    p_trk.add_argument("--status", choices=[s.value for s in BookingStatus])
    p_trk.add_argument("--note", default="")
    p_trk.add_argument("--lat", type=float)
    p_trk.add_argument("--lon", type=float)

    # cancel-booking
    p_cb = sub.add_parser("cancel-booking", help="Cancel a booking")
    p_cb.add_argument("--booking", required=True)
    p_cb.add_argument("--actor", required=True)
    p_cb.add_argument("--reason", default="")

    # cancel-load
    p_cl = sub.add_parser("cancel-load", help="Cancel a load")
    p_cl.add_argument("--load", required=True)
    p_cl.add_argument("--actor", required=True, help="Cargo owner ID")

    # show-load
    p_show = sub.add_parser("show-load", help="Show a load with bids and booking")
    p_show.add_argument("--load", required=True)

    # check-invariants
    sub.add_parser("check-invariants", help="Check policy and snapshot invariants")

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "create-load": cmd_create_load,
        "submit-bid": cmd_submit_bid,
        "withdraw-bid": cmd_withdraw_bid,
        "accept-bid": cmd_accept_bid,
        "reject-bid": cmd_reject_bid,
        "track": cmd_track,
        "cancel-booking": cmd_cancel_booking,
        "cancel-load": cmd_cancel_load,
        "show-load": cmd_show_load,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())

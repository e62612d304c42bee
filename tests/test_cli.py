"""Tests for the load board CLI: proves CLI dispatches correctly."""

import json
import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from loadboard.cli import build_parser, main


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def _iso(days: float) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def _run(tmp_path: Path, *argv: str) -> int:
    return main(["--config", str(CONFIG_DIR), "--data", str(tmp_path), *argv])


def _create_load(tmp_path: Path, load_id: str = "L-1") -> int:
    return _run(
        tmp_path, "create-load", "--id", load_id, "--owner", "owner-1",
        "--title", "Maize, 40 bags", "--pickup", "Eldoret", "--delivery", "Mombasa",
        "--weight", "2000", "--pickup-date", _iso(3), "--delivery-date", _iso(4),
        "--cargo-type", "agricultural_products",
    )


def _submit_bid(tmp_path: Path, bid_id: str, driver: str, amount: str) -> int:
    return _run(
        tmp_path, "submit-bid", "--id", bid_id, "--load", "L-1", "--driver", driver,
        "--amount", amount, "--proposed-pickup", _iso(3), "--proposed-delivery", _iso(4),
    )


class TestCLIParsing:
    def test_status_command(self) -> None:
        args = build_parser().parse_args(["status"])
        assert args.command == "status"

    def test_create_load_command(self) -> None:
        args = build_parser().parse_args([
            "create-load", "--owner", "owner-1", "--title", "Cement",
            "--pickup", "Athi River", "--delivery", "Machakos", "--weight", "500",
            "--pickup-date", "2026-03-01T08:00:00", "--delivery-date", "2026-03-02T08:00:00Z",
        ])
        assert args.command == "create-load"
        assert args.pickup_date.tzinfo is not None
        assert args.delivery_date == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    def test_bad_timestamp_rejected(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([
                "submit-bid", "--load", "L-1", "--driver", "d", "--amount", "1",
                "--proposed-pickup", "tomorrow", "--proposed-delivery", "later",
            ])

    def test_track_status_choices(self) -> None:
        args = build_parser().parse_args([
            "track", "--booking", "B-1", "--actor", "driver-1", "--status", "picked_up",
        ])
        assert args.status == "picked_up"
        assert args.note == ""


class TestCLIExecution:
    def test_status_runs(self, tmp_path: Path) -> None:
        assert _run(tmp_path, "status") == 0

    def test_no_command_shows_help(self, capsys) -> None:
        assert main([]) == 0
        assert "loadboard" in capsys.readouterr().out

    def test_check_invariants_on_empty_state(self, tmp_path: Path) -> None:
        assert _run(tmp_path, "check-invariants") == 0

    def test_full_lifecycle(self, tmp_path: Path, capsys) -> None:
        assert _create_load(tmp_path) == 0
        assert _submit_bid(tmp_path, "B-A", "driver-a", "5000") == 0
        assert _submit_bid(tmp_path, "B-B", "driver-b", "4500") == 0
        capsys.readouterr()

        assert _run(tmp_path, "accept-bid", "--load", "L-1", "--bid", "B-B", "--actor", "owner-1") == 0
        booking = json.loads(capsys.readouterr().out)
        booking_id = booking["booking_id"]
        assert booking["status"] == "confirmed"

        for status in ("picked_up", "in_transit", "delivered"):
            assert _run(
                tmp_path, "track", "--booking", booking_id, "--actor", "driver-b",
                "--status", status,
            ) == 0
        assert _run(
            tmp_path, "track", "--booking", booking_id, "--actor", "owner-1",
            "--note", "received in good order",
        ) == 0
        capsys.readouterr()

        assert _run(tmp_path, "show-load", "--load", "L-1") == 0
        shown = json.loads(capsys.readouterr().out)
        assert shown["status"] == "delivered"
        assert {b["bid_id"]: b["status"] for b in shown["bids"]} == {
            "B-A": "rejected", "B-B": "accepted",
        }
        assert len(shown["active_booking"]["tracking"]) == 5

        assert _run(tmp_path, "check-invariants") == 0
        assert (tmp_path / "events.jsonl").exists()

    def test_duplicate_bid_fails(self, tmp_path: Path, capsys) -> None:
        assert _create_load(tmp_path) == 0
        assert _submit_bid(tmp_path, "B-A", "driver-a", "5000") == 0
        assert _submit_bid(tmp_path, "B-A2", "driver-a", "4900") == 1
        assert "Failed [duplicate_bid]" in capsys.readouterr().err

    def test_cancel_booking_reopens_load(self, tmp_path: Path, capsys) -> None:
        assert _create_load(tmp_path) == 0
        assert _submit_bid(tmp_path, "B-A", "driver-a", "5000") == 0
        capsys.readouterr()
        assert _run(tmp_path, "accept-bid", "--load", "L-1", "--bid", "B-A", "--actor", "owner-1") == 0
        booking_id = json.loads(capsys.readouterr().out)["booking_id"]

        assert _run(
            tmp_path, "cancel-booking", "--booking", booking_id, "--actor", "driver-a",
            "--reason", "breakdown",
        ) == 0
        assert json.loads(capsys.readouterr().out)["load_reopened"] is True
        assert _submit_bid(tmp_path, "B-C", "driver-c", "5200") == 0

    def test_cancel_load_and_withdraw(self, tmp_path: Path, capsys) -> None:
        assert _create_load(tmp_path) == 0
        assert _submit_bid(tmp_path, "B-A", "driver-a", "5000") == 0
        assert _submit_bid(tmp_path, "B-B", "driver-b", "5100") == 0
        assert _run(tmp_path, "withdraw-bid", "--bid", "B-B", "--driver", "driver-b") == 0
        capsys.readouterr()

        assert _run(tmp_path, "cancel-load", "--load", "L-1", "--actor", "owner-1") == 0
        result = json.loads(capsys.readouterr().out)
        assert result["status"] == "cancelled"
        assert result["rejected_bid_ids"] == ["B-A"]

    def test_show_unknown_load(self, tmp_path: Path, capsys) -> None:
        assert _run(tmp_path, "show-load", "--load", "missing") == 1
        assert "not_found" in capsys.readouterr().err

"""Policy resolver: typed market policy loaded once at process start.

The policy is read from ``market_policy.json`` in a config directory and
frozen. Nothing inside the engine mutates it; changing policy means
building a new resolver and a new service.

Fail-closed: unknown keys and out-of-range values raise ValueError at
load time rather than being silently ignored.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional


POLICY_FILENAME = "market_policy.json"


@dataclass(frozen=True)
class EnginePolicy:
    """Market policy constants.

    bid_validity_days: how long a pending bid stays acceptable.
    minimum_bid_amount: lowest acceptable bid; None means any amount > 0.
    default_bidding_window_days: deadline used when a load has none.
    bidding_cutoff_hours_before_pickup: default deadline is never later
        than pickup minus this many hours.
    max_bids_per_load: cap on simultaneously pending bids on one load.
    max_message_length: bid proposal message limit.
    max_note_length: tracking note / reason limit.
    min_weight_kg: lightest acceptable load.
    currency: currency code recorded on bids.
    """
    bid_validity_days: int = 7
    minimum_bid_amount: Optional[Decimal] = None
    default_bidding_window_days: int = 7
    bidding_cutoff_hours_before_pickup: int = 24
    max_bids_per_load: int = 50
    max_message_length: int = 1000
    max_note_length: int = 500
    min_weight_kg: Decimal = Decimal("0.1")
    currency: str = "KES"

    def __post_init__(self) -> None:
        errors = self.validate()
        if errors:
            raise ValueError("Invalid market policy: " + "; ".join(errors))

    @property
    def bid_validity(self) -> timedelta:
        return timedelta(days=self.bid_validity_days)

    @property
    def default_bidding_window(self) -> timedelta:
        return timedelta(days=self.default_bidding_window_days)

    @property
    def bidding_cutoff(self) -> timedelta:
        return timedelta(hours=self.bidding_cutoff_hours_before_pickup)

    def validate(self) -> list[str]:
        """Return a list of problems (empty = OK)."""
        errors: list[str] = []
        if self.bid_validity_days <= 0:
            errors.append("bid_validity_days must be > 0")
        if self.default_bidding_window_days <= 0:
            errors.append("default_bidding_window_days must be > 0")
        if self.bidding_cutoff_hours_before_pickup < 0:
            errors.append("bidding_cutoff_hours_before_pickup must be >= 0")
        if self.max_bids_per_load <= 0:
            errors.append("max_bids_per_load must be > 0")
        if self.max_message_length <= 0 or self.max_note_length <= 0:
            errors.append("text length limits must be > 0")
        if self.minimum_bid_amount is not None and self.minimum_bid_amount <= 0:
            errors.append("minimum_bid_amount must be > 0 when set")
        if self.min_weight_kg <= 0:
            errors.append("min_weight_kg must be > 0")
        if not self.currency:
            errors.append("currency must not be empty")
        return errors

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnginePolicy:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown market policy keys: {', '.join(unknown)}")

        values = dict(data)
        try:
            if values.get("minimum_bid_amount") is not None:
                values["minimum_bid_amount"] = Decimal(str(values["minimum_bid_amount"]))
            if "min_weight_kg" in values:
                values["min_weight_kg"] = Decimal(str(values["min_weight_kg"]))
        except InvalidOperation as e:
            raise ValueError(f"Invalid decimal in market policy: {e}") from e
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bid_validity_days": self.bid_validity_days,
            "minimum_bid_amount": (
                str(self.minimum_bid_amount)
                if self.minimum_bid_amount is not None else None
            ),
            "default_bidding_window_days": self.default_bidding_window_days,
            "bidding_cutoff_hours_before_pickup": self.bidding_cutoff_hours_before_pickup,
            "max_bids_per_load": self.max_bids_per_load,
            "max_message_length": self.max_message_length,
            "max_note_length": self.max_note_length,
            "min_weight_kg": str(self.min_weight_kg),
            "currency": self.currency,
        }


class PolicyResolver:
    """Loads the market policy from a config directory.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        policy = resolver.policy
    """

    def __init__(self, policy: Optional[EnginePolicy] = None) -> None:
        self._policy = policy or EnginePolicy()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Read ``market_policy.json``; a missing file means defaults."""
        path = Path(config_dir) / POLICY_FILENAME
        if not path.exists():
            return cls(EnginePolicy())
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise ValueError(f"{path}: market policy must be a JSON object")
        return cls(EnginePolicy.from_dict(data.get("market", data)))

    @property
    def policy(self) -> EnginePolicy:
        return self._policy

"""Freight market: loads, bids and the acceptance critical section.

Cargo owners post loads, drivers bid, and the acceptance coordinator
matches each load to exactly one bid. The coordinator lives in
``loadboard.market.acceptance`` and is not re-exported here because it
depends on the fulfilment package.
"""

from loadboard.market.bid_ledger import BidLedger
from loadboard.market.load_state_machine import LoadStateMachine
from loadboard.market.load_store import LoadStore

__all__ = ["BidLedger", "LoadStateMachine", "LoadStore"]

"""Exception taxonomy for the lifecycle engine.

Every error carries a stable ``kind`` string and the id of the entity it
concerns, so the calling layer can render a specific message without
parsing text. ``ConflictError`` is the only error that means "someone
else won a race"; callers re-fetch and decide, the engine never retries.
"""

from __future__ import annotations

from typing import Optional


class LoadBoardError(Exception):
    """Base class for all engine errors."""

    kind = "error"

    def __init__(self, message: str, entity_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "kind": self.kind,
            "entity_id": self.entity_id,
            "message": self.message,
        }


class ValidationError(LoadBoardError):
    """Malformed input. The caller can fix the input and try again."""

    kind = "validation"


class NotFoundError(LoadBoardError):
    """Referenced entity does not exist."""

    kind = "not_found"


class ForbiddenError(LoadBoardError):
    """Actor has no authority over the entity."""

    kind = "forbidden"


class StateTransitionError(LoadBoardError):
    """Operation is not legal in the entity's current state."""

    kind = "state_transition"


class LoadNotBiddableError(StateTransitionError):
    """Load is not accepting bids (wrong status or past its deadline)."""

    kind = "load_not_biddable"


class DuplicateBidError(LoadBoardError):
    """Driver already holds a live bid on the load."""

    kind = "duplicate_bid"


class ConflictError(LoadBoardError):
    """Optimistic concurrency guard failed: the entity changed under us."""

    kind = "conflict"

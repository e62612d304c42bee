"""Fulfilment: bookings, their state machine and tracking logs.

The tracker itself is imported from ``loadboard.fulfilment.tracker``.
"""

from loadboard.fulfilment.views import PendingBids, RestartableView, TrackingLog

__all__ = ["PendingBids", "RestartableView", "TrackingLog"]

"""
GoalSync - Realtime Package

Live WebSocket connections and the fan-out that makes revocation immediate.
"""

from goalsync.realtime.tracker import ConnectionTracker, DeliveryReport

__all__ = ["ConnectionTracker", "DeliveryReport"]

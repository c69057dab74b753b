"""
GoalSync - Connection Tracker and Broadcaster

In-process registry of live realtime connections, keyed by user, and the
fan-out used to push events to them.

Revocation takes effect in real time through ``force_disconnect``: every
live connection of the user (or of one device) receives a single
``force_disconnect`` notice, is closed, and is dropped from the registry.

State is process memory only and is touched exclusively from the event
loop; there is no lock.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from goalsync.logging import get_logger


logger = get_logger(__name__)


FORCE_DISCONNECT_EVENT = "force_disconnect"

# Policy violation; used both for refused handshakes and forced disconnects
CLOSE_POLICY_VIOLATION = 1008


class Connection(Protocol):
    """A live transport handle as seen by the tracker."""

    connection_id: str
    user_id: str
    device_id: Optional[str]

    async def send_json(self, message: dict) -> None: ...

    async def close(self, code: int = CLOSE_POLICY_VIOLATION, reason: str = "") -> None: ...


PresenceListener = Callable[[str, bool], Any]


@dataclass
class DeliveryReport:
    """Outcome of a fan-out. Failures are counted, never raised."""
    delivered: int = 0
    failed: int = 0

    @property
    def attempted(self) -> int:
        return self.delivered + self.failed


def envelope(event: str, payload: Any = None) -> dict:
    """Wire format of every server-to-client message."""
    return {
        "event": event,
        "data": {} if payload is None else payload,
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }


class ConnectionTracker:
    """
    Who is connected, and on which connections.

    Attributes:
        connections_by_user: user_id -> set of connection ids
        user_by_connection: connection_id -> user_id

    Presence listeners are called with ``(user_id, online)`` exactly once per
    transition: when a user's first connection arrives and when the last
    one leaves.
    """

    def __init__(self, presence_listeners: Optional[list[PresenceListener]] = None):
        self.connections_by_user: dict[str, set[str]] = {}
        self.user_by_connection: dict[str, str] = {}
        self._handles: dict[str, Connection] = {}
        self._presence_listeners: list[PresenceListener] = list(presence_listeners or [])

    def add_presence_listener(self, listener: PresenceListener) -> None:
        self._presence_listeners.append(listener)

    # =========================================================================
    # Registration
    # =========================================================================

    def on_connect(self, connection: Connection) -> bool:
        """
        Register a connection.

        Returns:
            True if this made the user come online
        """
        connection_ids = self.connections_by_user.setdefault(connection.user_id, set())
        came_online = not connection_ids

        connection_ids.add(connection.connection_id)
        self.user_by_connection[connection.connection_id] = connection.user_id
        self._handles[connection.connection_id] = connection

        logger.info(
            "realtime_connected",
            user_id=connection.user_id,
            connection_id=connection.connection_id,
            device_id=connection.device_id,
        )
        if came_online:
            self._notify_presence(connection.user_id, True)
        return came_online

    def on_disconnect(self, connection_id: str) -> bool:
        """
        Unregister a connection. Unknown ids are a no-op.

        Returns:
            True if this made the user go offline
        """
        user_id = self.user_by_connection.pop(connection_id, None)
        self._handles.pop(connection_id, None)
        if user_id is None:
            return False

        connection_ids = self.connections_by_user.get(user_id)
        if connection_ids is not None:
            connection_ids.discard(connection_id)

        logger.info("realtime_disconnected", user_id=user_id, connection_id=connection_id)

        if not connection_ids:
            self.connections_by_user.pop(user_id, None)
            self._notify_presence(user_id, False)
            return True
        return False

    # =========================================================================
    # Queries
    # =========================================================================

    def is_online(self, user_id: str) -> bool:
        return bool(self.connections_by_user.get(user_id))

    def connection_count(self, user_id: Optional[str] = None) -> int:
        if user_id is None:
            return len(self.user_by_connection)
        return len(self.connections_by_user.get(user_id, ()))

    def connections_of(self, user_id: str, device_id: Optional[str] = None) -> list[Connection]:
        connections = [
            self._handles[connection_id]
            for connection_id in self.connections_by_user.get(user_id, ())
            if connection_id in self._handles
        ]
        if device_id is not None:
            connections = [c for c in connections if c.device_id == device_id]
        return connections

    def stats(self) -> dict:
        return {
            "total_connections": self.connection_count(),
            "unique_users": len(self.connections_by_user),
            "connections_per_user": [
                {"user_id": user_id, "connections": len(connection_ids)}
                for user_id, connection_ids in self.connections_by_user.items()
            ],
        }

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def send_to_user(
        self,
        user_id: str,
        event: str,
        payload: Any = None,
        exclude: Optional[str] = None,
    ) -> DeliveryReport:
        """
        Send one event to every live connection of a user.

        Args:
            exclude: Connection id to skip (usually the sender)
        """
        targets = [c for c in self.connections_of(user_id) if c.connection_id != exclude]
        return await self._deliver(targets, envelope(event, payload))

    async def broadcast_all(self, event: str, payload: Any = None) -> DeliveryReport:
        return await self._deliver(list(self._handles.values()), envelope(event, payload))

    async def force_disconnect(
        self,
        user_id: str,
        reason: str,
        device_id: Optional[str] = None,
        except_device_id: Optional[str] = None,
    ) -> DeliveryReport:
        """
        Notify, close and drop live connections of a user.

        Args:
            user_id: Whose connections
            reason: Human-readable reason carried in the notice
            device_id: Only this device's connections
            except_device_id: Spare this device's connections

        Returns:
            DeliveryReport counting notices delivered / failed
        """
        targets = self.connections_of(user_id, device_id)
        if except_device_id is not None:
            targets = [c for c in targets if c.device_id != except_device_id]

        notice = envelope(FORCE_DISCONNECT_EVENT, {"reason": reason})
        results = await asyncio.gather(
            *(self._disconnect_one(connection, notice, reason) for connection in targets)
        )

        report = DeliveryReport(delivered=sum(results), failed=len(results) - sum(results))
        logger.info(
            "force_disconnect",
            user_id=user_id,
            device_id=device_id,
            reason=reason,
            delivered=report.delivered,
            failed=report.failed,
        )
        return report

    # =========================================================================
    # Convenience broadcasts
    # =========================================================================

    async def send_notification(self, user_id: str, notification: dict) -> DeliveryReport:
        return await self.send_to_user(user_id, "notification:new", notification)

    async def send_security_alert(self, user_id: str, alert: dict) -> DeliveryReport:
        return await self.send_to_user(user_id, "security:alert", alert)

    async def broadcast_announcement(self, announcement: dict) -> DeliveryReport:
        return await self.broadcast_all("system:announcement", announcement)

    async def broadcast_maintenance(
        self,
        message: str,
        scheduled_time: Optional[datetime] = None,
    ) -> DeliveryReport:
        return await self.broadcast_all(
            "system:maintenance",
            {
                "message": message,
                "scheduled_time": scheduled_time.isoformat() if scheduled_time else None,
                "type": "maintenance",
            },
        )

    # =========================================================================
    # Internals
    # =========================================================================

    async def _deliver(self, targets: list[Connection], message: dict) -> DeliveryReport:
        if not targets:
            return DeliveryReport()
        results = await asyncio.gather(*(self._send(connection, message) for connection in targets))
        return DeliveryReport(delivered=sum(results), failed=len(results) - sum(results))

    async def _send(self, connection: Connection, message: dict) -> bool:
        try:
            await connection.send_json(message)
            return True
        except Exception as exc:
            logger.warning(
                "realtime_send_failed",
                connection_id=connection.connection_id,
                event_name=message.get("event"),
                error_type=type(exc).__name__,
            )
            return False

    async def _disconnect_one(self, connection: Connection, notice: dict, reason: str) -> bool:
        delivered = await self._send(connection, notice)
        try:
            await connection.close(CLOSE_POLICY_VIOLATION, reason)
        except Exception as exc:
            logger.warning(
                "realtime_close_failed",
                connection_id=connection.connection_id,
                error_type=type(exc).__name__,
            )
        self.on_disconnect(connection.connection_id)
        return delivered

    def _notify_presence(self, user_id: str, online: bool) -> None:
        logger.info("presence_changed", user_id=user_id, status="online" if online else "offline")
        for listener in self._presence_listeners:
            try:
                listener(user_id, online)
            except Exception as exc:
                logger.warning("presence_listener_failed", user_id=user_id, error_type=type(exc).__name__)

"""
GoalSync - Realtime WebSocket Endpoint

WebSocket /ws

Handshake:
    The access token comes from the ``token`` query parameter or an
    ``Authorization: Bearer`` header, and the device it names must still
    hold an active session. Any failure closes the socket with 1008 before
    it is accepted, so the tracker never sees it.

Client frames are ``{"event": ..., "data": ...}``:
    goal:*, task:*, calendar:*, notification:*, session:*
        relayed to the user's other connections
    typing:start / typing:stop
        relayed with the sender's connection id
    ping
        answered with pong
    anything else, binary frames and invalid JSON
        answered with an error event; the connection stays open
"""

import json
from typing import Any, Optional
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from goalsync.errors import GoalSyncError
from goalsync.logging import get_logger, set_correlation_id
from goalsync.realtime.tracker import CLOSE_POLICY_VIOLATION, ConnectionTracker, envelope


logger = get_logger(__name__)

router = APIRouter()


RELAYED_PREFIXES = ("goal:", "task:", "calendar:", "notification:", "session:")
TYPING_EVENTS = frozenset({"typing:start", "typing:stop"})


class WebSocketConnection:
    """Adapts a Starlette WebSocket to the tracker's connection interface."""

    def __init__(self, websocket: WebSocket, user_id: str, device_id: Optional[str], user_name: str):
        self.websocket = websocket
        self.connection_id = uuid4().hex
        self.user_id = user_id
        self.device_id = device_id
        self.user_name = user_name

    @property
    def is_open(self) -> bool:
        return self.websocket.application_state == WebSocketState.CONNECTED

    async def send_json(self, message: dict) -> None:
        await self.websocket.send_json(message)

    async def close(self, code: int = CLOSE_POLICY_VIOLATION, reason: str = "") -> None:
        if self.is_open:
            await self.websocket.close(code=code, reason=reason)


def extract_token(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token

    scheme, _, value = websocket.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket):
    """Authenticate, register with the tracker, then serve client frames."""
    set_correlation_id()
    auth_service = websocket.app.state.auth_service
    tracker: ConnectionTracker = websocket.app.state.tracker

    token = extract_token(websocket)
    if not token:
        logger.warning("realtime_handshake_rejected", error_code="NO_TOKEN")
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Authentication required")
        return

    try:
        claims, user = await auth_service.authenticate_connection(token)
    except GoalSyncError as exc:
        logger.warning("realtime_handshake_rejected", error_code=exc.error_code)
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason=exc.error_code)
        return

    await websocket.accept()
    connection = WebSocketConnection(websocket, str(user.id), claims.device_id, user.name)
    tracker.on_connect(connection)
    await auth_service.record_activity(user.id, claims.device_id)

    try:
        await connection.send_json(
            envelope(
                "connected",
                {
                    "message": "Connected successfully",
                    "user_id": connection.user_id,
                    "connection_id": connection.connection_id,
                },
            )
        )
        while connection.is_open:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            message = decode_frame(frame)
            if message is None:
                logger.warning("websocket_invalid_frame", connection_id=connection.connection_id)
                await connection.send_json(envelope("error", {"message": "Frames must be JSON text"}))
                continue
            await handle_client_event(tracker, connection, message)
    except WebSocketDisconnect:
        pass
    finally:
        tracker.on_disconnect(connection.connection_id)


def decode_frame(frame: dict) -> Any:
    """JSON body of a text frame; None for binary frames or invalid JSON."""
    text = frame.get("text")
    if text is None:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


async def handle_client_event(tracker: ConnectionTracker, connection: WebSocketConnection, message: Any) -> None:
    event = message.get("event") if isinstance(message, dict) else None
    if not isinstance(event, str) or not event:
        await connection.send_json(envelope("error", {"message": "Frame must carry an event name"}))
        return

    data = message.get("data")

    if event == "ping":
        await connection.send_json(envelope("pong"))
    elif event in TYPING_EVENTS:
        payload = dict(data) if isinstance(data, dict) else {"value": data}
        payload.update(connection_id=connection.connection_id, user=connection.user_name)
        await tracker.send_to_user(connection.user_id, event, payload, exclude=connection.connection_id)
    elif event.startswith(RELAYED_PREFIXES):
        await tracker.send_to_user(connection.user_id, event, data, exclude=connection.connection_id)
    else:
        await connection.send_json(envelope("error", {"message": f"Unsupported event: {event}"}))

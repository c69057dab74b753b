"""
GoalSync - Admin API Routes

Admin-only endpoints for the realtime layer:
- Connection statistics
- System-wide announcements and maintenance notices

All routes require the ADMIN role.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from goalsync.auth.dependencies import AuthenticatedUser, get_tracker, require_admin
from goalsync.logging import get_logger
from goalsync.realtime.tracker import ConnectionTracker


logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# =============================================================================
# Request/Response Models
# =============================================================================

class UserConnections(BaseModel):
    user_id: str
    connections: int


class RealtimeStatsResponse(BaseModel):
    """Snapshot of the connection tracker."""
    total_connections: int
    unique_users: int
    connections_per_user: List[UserConnections]


class AnnouncementKind(str, Enum):
    ANNOUNCEMENT = "announcement"
    MAINTENANCE = "maintenance"


class AnnouncementRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)
    title: Optional[str] = Field(default=None, max_length=200)
    kind: AnnouncementKind = AnnouncementKind.ANNOUNCEMENT
    scheduled_time: Optional[datetime] = None


class DeliveryResponse(BaseModel):
    delivered: int
    failed: int


# =============================================================================
# Routes
# =============================================================================

@router.get("/realtime/stats", response_model=RealtimeStatsResponse)
async def realtime_stats(
    admin: AuthenticatedUser = Depends(require_admin),
    tracker: ConnectionTracker = Depends(get_tracker),
):
    return RealtimeStatsResponse(**tracker.stats())


@router.post("/realtime/announcements", response_model=DeliveryResponse)
async def broadcast_announcement(
    body: AnnouncementRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    tracker: ConnectionTracker = Depends(get_tracker),
):
    """Push a message to every live connection."""
    if body.kind == AnnouncementKind.MAINTENANCE:
        report = await tracker.broadcast_maintenance(body.message, body.scheduled_time)
    else:
        report = await tracker.broadcast_announcement({"title": body.title, "message": body.message})

    logger.info(
        "announcement_broadcast",
        admin_id=str(admin.user_id),
        kind=body.kind.value,
        delivered=report.delivered,
        failed=report.failed,
    )
    return DeliveryResponse(delivered=report.delivered, failed=report.failed)

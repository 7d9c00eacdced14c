"""Per-user notification, feed and vengeance target endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from conquest.database import get_session
from conquest.notifications.emitter import load_open_targets
from conquest.notifications.schemas import (
    FeedEntryResponse,
    FeedResponse,
    NotificationListResponse,
    NotificationResponse,
    VengeanceTargetResponse,
)
from conquest.notifications.service import get_feed, get_notifications

router = APIRouter(prefix="/api/v1/users", tags=["Notifications"])


@router.get("/{user_id}/notifications", response_model=NotificationListResponse)
async def list_notifications(
    user_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
):
    """List a user's notifications (paginated)."""
    notifications, total = await get_notifications(db, user_id, page, per_page)
    return NotificationListResponse(
        notifications=[
            NotificationResponse(
                id=str(n.id),
                type=n.type,
                title=n.title,
                message=n.message,
                sender_id=n.sender_id,
                activity_id=n.activity_id,
                metadata=n.notification_metadata or {},
                timestamp=n.created_at,
                read=n.read,
            )
            for n in notifications
        ],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/{user_id}/feed", response_model=FeedResponse)
async def list_feed(
    user_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
):
    """List a user's feed entries (paginated)."""
    entries, total = await get_feed(db, user_id, page, per_page)
    return FeedResponse(
        entries=[
            FeedEntryResponse(
                id=str(e.id),
                event_type=e.event_type,
                title=e.title,
                subtitle=e.subtitle,
                activity_id=e.activity_id,
                xp_earned=e.xp_earned,
                rarity=e.rarity,
                is_personal=e.is_personal,
                metadata=e.feed_metadata or {},
                timestamp=e.created_at,
            )
            for e in entries
        ],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/{user_id}/vengeance-targets", response_model=list[VengeanceTargetResponse])
async def list_vengeance_targets(
    user_id: str,
    db: AsyncSession = Depends(get_session),
):
    """Cells stolen from the user that are still open for reclaim, newest first."""
    targets = await load_open_targets(db, user_id)
    ordered = sorted(targets.values(), key=lambda t: t["stolen_at"], reverse=True)
    return [VengeanceTargetResponse(**t) for t in ordered]

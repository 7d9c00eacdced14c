"""Pydantic schemas for notification, feed and vengeance endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class NotificationResponse(BaseModel):
    id: str
    type: str
    title: str
    message: str | None = None
    sender_id: str | None = None
    activity_id: str | None = None
    metadata: dict[str, Any] = {}
    timestamp: datetime
    read: bool


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    total: int
    page: int
    per_page: int


class FeedEntryResponse(BaseModel):
    id: str
    event_type: str
    title: str
    subtitle: str | None = None
    activity_id: str | None = None
    xp_earned: int | None = None
    rarity: str | None = None
    is_personal: bool
    metadata: dict[str, Any] = {}
    timestamp: datetime


class FeedResponse(BaseModel):
    entries: list[FeedEntryResponse]
    total: int
    page: int
    per_page: int


class VengeanceTargetResponse(BaseModel):
    cell_id: str
    thief_id: str
    activity_id: str
    center_latitude: float
    center_longitude: float
    stolen_at: datetime
    xp_reward: int
    location_label: str | None = None

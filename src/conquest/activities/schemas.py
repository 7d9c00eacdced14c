"""Pydantic request/response models for activity endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from conquest.gamification.context import ActivityType


class ActivityCreateRequest(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    user_id: str = Field(min_length=1, max_length=64)
    activity_type: ActivityType
    start_date: datetime
    end_date: datetime
    distance_meters: float = Field(default=0.0, ge=0)
    duration_seconds: float = Field(default=0.0, ge=0)
    timezone: str = "UTC"
    location_label: str | None = None

    @model_validator(mode="after")
    def _check_dates(self) -> ActivityCreateRequest:
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class RoutePointIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    timestamp: datetime | None = None


class RouteChunkRequest(BaseModel):
    order: int = Field(ge=0)
    points: list[RoutePointIn]


class ActivityResponse(BaseModel):
    id: str
    user_id: str
    activity_type: str
    start_date: datetime
    end_date: datetime
    distance_meters: float
    duration_seconds: float
    location_label: str | None = None
    processing_status: str
    processing_error: str | None = None
    territory_stats: dict[str, Any] | None = None
    xp_breakdown: dict[str, Any] | None = None
    missions: list[dict[str, Any]] | None = None
    unlocked_badges: list[str] | None = None
    conquered_victims: list[str] | None = None


class RouteChunkResponse(BaseModel):
    activity_id: str
    order: int
    points: int

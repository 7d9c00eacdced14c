"""Activity API endpoints: upload, route chunks, submit, status."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from conquest.activities.schemas import (
    ActivityCreateRequest,
    ActivityResponse,
    RouteChunkRequest,
    RouteChunkResponse,
)
from conquest.activities.service import (
    ActivityNotFoundError,
    DuplicateError,
    add_route_chunk,
    create_activity,
    get_activity,
    submit_activity,
)
from conquest.config import get_settings
from conquest.database import get_session
from conquest.db.models import Activity
from conquest.errors import InvalidTransitionError
from conquest.redis_client import get_redis

router = APIRouter(prefix="/api/v1/activities", tags=["Activities"])


def _to_response(activity: Activity) -> ActivityResponse:
    return ActivityResponse(
        id=activity.id,
        user_id=activity.user_id,
        activity_type=activity.activity_type,
        start_date=activity.start_date,
        end_date=activity.end_date,
        distance_meters=activity.distance_meters,
        duration_seconds=activity.duration_seconds,
        location_label=activity.location_label,
        processing_status=activity.processing_status,
        processing_error=activity.processing_error,
        territory_stats=activity.territory_stats,
        xp_breakdown=activity.xp_breakdown,
        missions=activity.missions,
        unlocked_badges=activity.unlocked_badges,
        conquered_victims=activity.conquered_victims,
    )


@router.post("", response_model=ActivityResponse, status_code=201)
async def create(
    body: ActivityCreateRequest,
    db: AsyncSession = Depends(get_session),
):
    """Create an activity in the uploading state."""
    fields = body.model_dump()
    fields["activity_type"] = body.activity_type.value
    try:
        activity = await create_activity(db, **fields)
    except DuplicateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _to_response(activity)


@router.post("/{activity_id}/routes", response_model=RouteChunkResponse, status_code=201)
async def add_route(
    activity_id: str,
    body: RouteChunkRequest,
    db: AsyncSession = Depends(get_session),
):
    """Append one ordered chunk of route points."""
    points = [p.model_dump(mode="json") for p in body.points]
    try:
        chunk = await add_route_chunk(db, activity_id, body.order, points)
    except ActivityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except (InvalidTransitionError, DuplicateError) as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return RouteChunkResponse(activity_id=activity_id, order=chunk.order, points=len(points))


@router.post("/{activity_id}/submit", response_model=ActivityResponse, status_code=202)
async def submit(
    activity_id: str,
    db: AsyncSession = Depends(get_session),
):
    """Mark the upload complete and queue the activity for processing."""
    try:
        activity = await submit_activity(db, get_redis(), get_settings(), activity_id)
    except ActivityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _to_response(activity)


@router.get("/{activity_id}", response_model=ActivityResponse)
async def read(
    activity_id: str,
    db: AsyncSession = Depends(get_session),
):
    """Status and derived results of one activity."""
    try:
        activity = await get_activity(db, activity_id)
    except ActivityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return _to_response(activity)

"""Shared test fixtures.

Every test gets its own SQLite database file, created from the ORM
metadata and seeded with the default gameplay config. Redis is absent
unless a test passes an AsyncMock explicitly.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conquest.activities.service import add_route_chunk, create_activity, mark_pending
from conquest.database import close_db, create_all, get_session_factory, init_db
from conquest.db.models import TerritoryCell
from conquest.gamification.config import seed_gameplay_config
from conquest.gamification.profile_service import get_or_create_profile
from conquest.main import create_app
from conquest.territory.grid import cell_boundary, cell_center, cell_id, parse_cell_id

# Wednesday of ISO week 2026-W10
ACTIVITY_END = datetime(2026, 3, 4, 8, 0, tzinfo=timezone.utc)

# A cell in central Madrid
HOME_X, HOME_Y = -1852, 20208


def point_in(cell: str) -> dict[str, float]:
    """Route point at the center of a cell."""
    lat, lon = cell_center(*parse_cell_id(cell))
    return {"latitude": lat, "longitude": lon}


def row_of_cells(count: int, x0: int = HOME_X, y: int = HOME_Y) -> list[str]:
    return [cell_id(x0 + i, y) for i in range(count)]


@pytest.fixture
def home_cell() -> str:
    return cell_id(HOME_X, HOME_Y)


@pytest.fixture
def straight_route():
    """Two-point route along one grid row, covering exactly ``count`` cells."""

    def _route(count: int, x0: int = HOME_X, y: int = HOME_Y) -> tuple[list[dict], list[str]]:
        cells = row_of_cells(count, x0, y)
        return [point_in(cells[0]), point_in(cells[-1])], cells

    return _route


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'conquest.db'}")
    await create_all()
    factory = get_session_factory()
    async with factory() as db:
        await seed_gameplay_config(db)
    yield factory
    await close_db()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the app; the database is already initialized."""
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def make_activity(session_factory):
    """Create an activity with one route chunk and move it to ``pending``."""

    async def _make(
        activity_id: str,
        user_id: str,
        points: list[dict] | None = None,
        *,
        activity_type: str = "run",
        end: datetime = ACTIVITY_END,
        distance_meters: float = 5000.0,
        duration_seconds: float = 1800.0,
        tz_name: str = "UTC",
        location_label: str | None = None,
        submit: bool = True,
    ) -> str:
        async with session_factory() as db:
            await create_activity(
                db,
                id=activity_id,
                user_id=user_id,
                activity_type=activity_type,
                start_date=end - timedelta(seconds=duration_seconds),
                end_date=end,
                distance_meters=distance_meters,
                duration_seconds=duration_seconds,
                timezone=tz_name,
                location_label=location_label,
            )
            if points:
                await add_route_chunk(db, activity_id, 0, points)
            if submit:
                await mark_pending(db, activity_id)
        return activity_id

    return _make


@pytest_asyncio.fixture
async def seed_cell(session_factory):
    """Insert an owned territory cell directly."""

    async def _seed(
        cell: str,
        owner_id: str,
        first_conquered_at: datetime,
        expires_at: datetime,
        *,
        last_conquered_at: datetime | None = None,
        defense_count: int = 0,
        last_interaction: str = "conquer",
        streak_weeks: int = 0,
    ) -> None:
        x, y = parse_cell_id(cell)
        lat, lon = cell_center(x, y)
        async with session_factory() as db, db.begin():
            profile = await get_or_create_profile(db, owner_id)
            if streak_weeks:
                profile.current_streak_weeks = streak_weeks
            db.add(
                TerritoryCell(
                    id=cell,
                    owner_id=owner_id,
                    center_latitude=lat,
                    center_longitude=lon,
                    boundary=cell_boundary(x, y),
                    first_conquered_at=first_conquered_at,
                    last_conquered_at=last_conquered_at or first_conquered_at,
                    activity_end_at=last_conquered_at or first_conquered_at,
                    expires_at=expires_at,
                    defense_count=defense_count,
                    last_interaction=last_interaction,
                )
            )

    return _seed

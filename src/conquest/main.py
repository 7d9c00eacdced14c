"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from conquest.activities.router import router as activities_router
from conquest.config import get_settings
from conquest.database import close_db, get_session_factory, init_db
from conquest.gamification.config import seed_gameplay_config
from conquest.health.router import router as health_router
from conquest.middleware import setup_middleware
from conquest.notifications.router import router as notifications_router
from conquest.redis_client import close_redis, init_redis

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    if settings.redis_url:
        await init_redis(settings.redis_url)

    # Default gameplay config (idempotent)
    try:
        async with get_session_factory()() as db:
            await seed_gameplay_config(db)
    except Exception:
        logger.warning("Gameplay config seeding failed (tables may not exist yet)", exc_info=True)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Conquest Engine API",
        description="Territory and XP processing engine for a territory-conquest fitness game",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(activities_router)
    app.include_router(notifications_router)

    return app


app = create_app()

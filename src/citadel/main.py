"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from citadel.admin.router import router as admin_router
from citadel.auth.api_key_cache import build_api_key_cache
from citadel.auth.router import router as auth_router
from citadel.config import get_settings
from citadel.database import close_db, get_session_factory, init_db
from citadel.health.router import router as health_router
from citadel.middleware import setup_middleware
from citadel.redis_client import close_redis, init_redis
from citadel.setup.router import router as setup_router
from citadel.setup.service import ensure_setup_row
from citadel.users.router import router as users_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    redis = await init_redis(settings.redis_url) if settings.redis_url else None

    session_factory = get_session_factory()
    async with session_factory() as db:
        await ensure_setup_row(db)
        await db.commit()

    app.state.api_key_cache = build_api_key_cache(settings, session_factory, redis)
    try:
        active = await app.state.api_key_cache.refresh()
    except Exception:
        # First request refreshes again; the gate fails closed meanwhile.
        logger.warning("api_key_cache_warmup_failed", exc_info=True)
    else:
        logger.info("api_key_cache_warmed", active_keys=active)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Citadel Admin API",
        description="Authentication and authorization core for the Citadel admin panel",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.api_key_cache = None

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(auth_router)
    app.include_router(setup_router)
    app.include_router(admin_router)
    app.include_router(users_router)

    return app


app = create_app()

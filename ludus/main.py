# ludus/main.py
"""
LUDUS API application.

Process-wide services are built once in the lifespan and stored on
``app.state``:

- ``cache_service``: Redis-backed cache, in-memory when Redis is absent
- ``analytics_service``: event tracking fanned out to the configured sinks
- ``payment_gateway``: Moyasar, or the fake client in mock mode
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI

from . import models  # noqa: F401  registers tables on Base.metadata
from .core.cache_redis import close_async_cache_redis_client, get_async_cache_redis_client
from .core.config import settings, validate_analytics_settings
from .core.constants import API_DESCRIPTION, API_PREFIX, API_TITLE, API_VERSION, BRAND_NAME
from .core.request_context import attach_request_id_filter
from .database import Base, engine
from .errors import register_error_handlers
from .integrations.moyasar_client import MoyasarPaymentGateway, build_moyasar_client
from .middleware.analytics_asgi import AnalyticsMiddlewareASGI
from .routes import activities, admin, analytics, bookings, health, payments
from .services.analytics_service import AnalyticsService, build_sinks
from .services.cache_service import CacheService

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
)
attach_request_id_filter()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown."""
    # Startup
    logger.info(f"{BRAND_NAME} API starting up...")
    logger.info(f"Environment: {settings.environment}")

    for problem in validate_analytics_settings(settings):
        logger.warning(f"Analytics configuration: {problem}")

    Base.metadata.create_all(bind=engine)

    redis_client = await get_async_cache_redis_client()
    if redis_client is None:
        logger.warning("[REDIS-CACHE] Redis unavailable; using in-memory cache and event sink")

    app.state.cache_service = CacheService(redis_client)
    app.state.analytics_service = AnalyticsService(build_sinks(settings, redis_client))
    app.state.payment_gateway = MoyasarPaymentGateway(
        build_moyasar_client(settings), callback_url=settings.moyasar_callback_url
    )

    yield

    # Shutdown
    logger.info(f"{BRAND_NAME} API shutting down...")

    try:
        await app.state.analytics_service.aclose()
    except Exception as e:
        logger.error(f"[ANALYTICS] Error flushing analytics: {e}")

    try:
        await close_async_cache_redis_client()
    except Exception as e:
        logger.error(f"[REDIS-CACHE] Error closing async Redis client: {e}")


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
    )
    register_error_handlers(app)
    app.add_middleware(AnalyticsMiddlewareASGI)

    app.include_router(health.router)

    api_v1 = APIRouter(prefix=API_PREFIX)
    api_v1.include_router(activities.router, prefix="/activities")
    api_v1.include_router(bookings.router, prefix="/bookings")
    api_v1.include_router(payments.router, prefix="/payments")
    api_v1.include_router(analytics.router, prefix="/analytics")
    api_v1.include_router(admin.router, prefix="/admin")
    app.include_router(api_v1)
    return app


app = create_app()

"""
FastAPI application entry point.

Run with:
    uvicorn safehaven.main:app --reload --port 8000

Backends are chosen from settings (RECORD_STORE_BACKEND,
NOTIFICATION_BACKEND, RATE_LIMIT_BACKEND). Tests and embedding callers
pass their own stores, bus or counter store to ``create_app``.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from safehaven.core.config import settings
from safehaven.core.logging_config import setup_logging, get_logger
from safehaven.core.errors import register_error_handlers
from safehaven.core.middleware import RequestLoggingMiddleware
from safehaven.core.health import HealthStatus, run_health_check
from safehaven.core import redis_pool
from safehaven.core.database import build_engine, build_session_factory, close_db, init_db
from safehaven.core.rate_limit import CounterStore, RateLimiter, build_counter_store

# ── Domain services ──
from safehaven.alerts.lifecycle import AlertLifecycleManager
from safehaven.notifications.bus import NotificationBus, build_notification_bus
from safehaven.notifications.publisher import NotificationPublisher
from safehaven.shelters.reconciler import StatusReconciler
from safehaven.store.base import RecordStore
from safehaven.store.memory import InMemoryRecordStore
from safehaven.store.sql import SqlRecordStore

# ── API routers ──
from safehaven.api.v1.deps import Services
from safehaven.api.v1.shelters import router as shelter_router
from safehaven.api.v1.alerts import router as alert_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(
    *,
    shelter_store: Optional[RecordStore] = None,
    alert_store: Optional[RecordStore] = None,
    bus: Optional[NotificationBus] = None,
    counter_store: Optional[CounterStore] = None,
) -> FastAPI:

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build backends and services; tear them down on shutdown."""
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        engine = None
        redis_client = None
        if "redis" in (settings.NOTIFICATION_BACKEND, settings.RATE_LIMIT_BACKEND):
            redis_client = await redis_pool.get_redis()

        shelters, alerts = shelter_store, alert_store
        if shelters is None or alerts is None:
            if settings.RECORD_STORE_BACKEND == "sql":
                engine = build_engine(settings.DATABASE_URL)
                await init_db(engine)
                sessions = build_session_factory(engine)
                if shelters is None:
                    shelters = SqlRecordStore(sessions, "shelters", "Shelter", "shelter_id")
                if alerts is None:
                    alerts = SqlRecordStore(sessions, "alerts", "Alert", "alert_id")
            else:
                if shelters is None:
                    shelters = InMemoryRecordStore("Shelter", "shelter_id")
                if alerts is None:
                    alerts = InMemoryRecordStore("Alert", "alert_id")

        notification_bus = bus
        if notification_bus is None:
            notification_bus = build_notification_bus(
                settings.NOTIFICATION_BACKEND, redis_client, settings.NOTIFICATION_CHANNEL_PREFIX,
            )
        counters = counter_store
        if counters is None:
            counters = build_counter_store(settings.RATE_LIMIT_BACKEND, redis_client)
        publisher = NotificationPublisher(notification_bus)
        limiter = RateLimiter(
            counters,
            max_attempts=settings.RATE_LIMIT_MAX_REQUESTS,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            scope="api",
        )

        app.state.services = Services(
            reconciler=StatusReconciler(shelters, publisher),
            lifecycle=AlertLifecycleManager(alerts, publisher),
            limiter=limiter,
            bus=notification_bus,
            stores={"shelter_store": shelters, "alert_store": alerts},
            redis_client=redis_client,
        )
        yield

        # Shutdown: close connections
        await notification_bus.close()
        if engine is not None:
            await close_db(engine)
        if redis_client is not None:
            await redis_pool.close_redis()
        logger.info("Shutting down %s", settings.APP_NAME)

    # ── Create application ──

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Offline-tolerant shelter status synchronisation and alert "
            "lifecycle service. Field clients replay queued status updates "
            "and alert actions; the server applies them idempotently and "
            "publishes change notifications."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (outermost first) ──

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(shelter_router)
    app.include_router(alert_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": ["shelter-status", "alert-lifecycle", "notifications"],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — checks all subsystems."""
        services: Services = app.state.services
        report = await run_health_check(services.stores, services.bus, services.redis_client)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Readiness probe — can we serve traffic?"""
        services: Services = app.state.services
        report = await run_health_check(services.stores, services.bus, services.redis_client)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()

"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events that initialize the database and wire the CRM services,
the v1 API router, and health endpoints.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response
from sqlalchemy.exc import SQLAlchemyError

from src.app.config import Settings, get_settings
from src.app.core.database import SessionFactory, close_db, get_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.core.redis import close_redis, get_redis_pool
from src.app.api.errors import register_error_handlers
from src.app.api.middleware import LoggingMiddleware
from src.app.api.middleware.logging import configure_structlog
from src.app.api.v1 import health
from src.app.api.v1.router import router as v1_router
from src.app.crm.board import BoardQuery
from src.app.crm.engine import TransitionEngine
from src.app.crm.enrollment import AutoEnrollment
from src.app.crm.history import HistoryLog
from src.app.crm.profiles import ContactProfileStore, LeadProfileSync
from src.app.crm.registry import PipelineRegistry
from src.app.crm.repository import DealRepository
from src.app.crm.schemas import ActiveMembersTarget
from src.app.events.bus import BoardEventBus

log = structlog.get_logger(__name__)


def build_crm_services(
    app: FastAPI,
    session_factory: SessionFactory,
    settings: Settings,
    events: BoardEventBus | None = None,
) -> None:
    """Construct the CRM services and store them on ``app.state``.

    The auto-enrollment target starts unset; ``configure_active_members``
    fills it in once the registry can be queried.
    """
    registry = PipelineRegistry(
        session_factory,
        won_names=settings.won_stage_names(),
        lost_names=settings.lost_stage_names(),
        events=events,
    )
    deals = DealRepository(session_factory)
    history = HistoryLog(session_factory)
    profiles = ContactProfileStore(session_factory)
    profile_sync = LeadProfileSync(session_factory, profiles, deals)
    enrollment = AutoEnrollment(deals, history, profile_sync)
    engine = TransitionEngine(
        session_factory,
        deals=deals,
        history=history,
        profiles=profiles,
        profile_sync=profile_sync,
        enrollment=enrollment,
        events=events,
    )

    app.state.pipeline_registry = registry
    app.state.profile_store = profiles
    app.state.profile_sync = profile_sync
    app.state.auto_enrollment = enrollment
    app.state.transition_engine = engine
    app.state.board_query = BoardQuery(session_factory)
    app.state.board_events = events


async def configure_active_members(app: FastAPI, settings: Settings) -> ActiveMembersTarget | None:
    """Resolve the auto-enrollment target from explicit ids or by name."""
    if settings.ACTIVE_MEMBERS_PIPELINE_ID and settings.ACTIVE_MEMBERS_STAGE_ID:
        target = ActiveMembersTarget(
            pipeline_id=uuid.UUID(settings.ACTIVE_MEMBERS_PIPELINE_ID),
            stage_id=uuid.UUID(settings.ACTIVE_MEMBERS_STAGE_ID),
        )
    else:
        registry: PipelineRegistry = app.state.pipeline_registry
        target = await registry.resolve_active_members(
            settings.ACTIVE_MEMBERS_PIPELINE_NAME, settings.ACTIVE_MEMBERS_STAGE_NAME
        )

    app.state.auto_enrollment.target = target
    if target is None:
        log.warning("crm.active_members_unconfigured")
    else:
        log.info(
            "crm.active_members_configured",
            pipeline_id=str(target.pipeline_id),
            stage_id=str(target.stage_id),
        )
    return target


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and CRM services on startup, close on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    events = None
    if settings.BOARD_EVENTS_ENABLED:
        events = BoardEventBus(
            get_redis_pool(),
            stream=settings.BOARD_EVENTS_STREAM,
            maxlen=settings.BOARD_EVENTS_MAXLEN,
        )

    build_crm_services(app, get_session, settings, events=events)

    # A missing target only disables auto-enrollment; the app still starts.
    try:
        await configure_active_members(app, settings)
    except (SQLAlchemyError, ValueError):
        log.warning("crm.active_members_resolve_failed", exc_info=True)

    log.info("crm.startup_complete", board_events=events is not None)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="School CRM API",
        version="0.1.0",
        description="Deal pipelines, stage transitions and the Kanban board for a school CRM",
        lifespan=lifespan,
    )

    register_error_handlers(app)

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(health.router)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()

"""Test fixtures for the CRM pipeline services.

Provides:
- In-memory SQLite engine (aiosqlite, single shared connection) with all
  CRM tables created
- session_factory with the same shape as the application's get_session
- CRMServices: every service wired the way the app lifespan wires them
- A seeded "Sales" pipeline [New, Negotiating, Won, Lost] and an
  "Active Members" pipeline [Active] configured as the enrollment target
- Contact profiles (a lead and a staff member)
- RecordingEvents: in-memory stand-in for the board change notifier
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from src.app.core.database import Base, session_scope
from src.app.crm import models  # noqa: F401
from src.app.crm.board import BoardQuery
from src.app.crm.engine import TransitionEngine
from src.app.crm.enrollment import AutoEnrollment
from src.app.crm.history import HistoryLog
from src.app.crm.models import ContactProfileModel
from src.app.crm.profiles import ContactProfileStore, LeadProfileSync
from src.app.crm.registry import PipelineRegistry
from src.app.crm.repository import DealRepository
from src.app.crm.schemas import (
    DealCreate,
    PipelineCreate,
    PipelineRead,
    StageCreate,
)
from src.app.events.schemas import BoardEvent


# ── Test Doubles ─────────────────────────────────────────────────────────────


class RecordingEvents:
    """Board notifier that keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[BoardEvent] = []

    async def notify(self, event: BoardEvent) -> str:
        self.events.append(event)
        return f"{len(self.events)}-0"

    def types_for(self, pipeline_id: str) -> list[str]:
        return [e.event_type.value for e in self.events if e.pipeline_id == pipeline_id]


@dataclass
class CRMServices:
    session_factory: object
    registry: PipelineRegistry
    deals: DealRepository
    history: HistoryLog
    profiles: ContactProfileStore
    profile_sync: LeadProfileSync
    enrollment: AutoEnrollment
    engine: TransitionEngine
    board: BoardQuery
    events: RecordingEvents


@dataclass
class SeededPipelines:
    sales: PipelineRead
    active_members: PipelineRead
    stages: dict[str, str] = field(default_factory=dict)

    @property
    def sales_id(self) -> str:
        return self.sales.id

    @property
    def members_id(self) -> str:
        return self.active_members.id


# ── Database ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session generator shaped like src.app.core.database.get_session."""

    async def factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(db_engine, expire_on_commit=False) as session:
            yield session

    return factory


# ── Services ─────────────────────────────────────────────────────────────────


def build_services(session_factory, events: RecordingEvents | None = None) -> CRMServices:
    events = events or RecordingEvents()
    registry = PipelineRegistry(session_factory, events=events)
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
    return CRMServices(
        session_factory=session_factory,
        registry=registry,
        deals=deals,
        history=history,
        profiles=profiles,
        profile_sync=profile_sync,
        enrollment=enrollment,
        engine=engine,
        board=BoardQuery(session_factory),
        events=events,
    )


@pytest.fixture
def crm(session_factory) -> CRMServices:
    return build_services(session_factory)


@pytest_asyncio.fixture
async def pipelines(crm: CRMServices) -> SeededPipelines:
    """Sales [New, Negotiating, Won, Lost] plus Active Members [Active] as target."""
    sales = await crm.registry.create_pipeline(
        PipelineCreate(
            name="Sales",
            stages=[
                StageCreate(name="New"),
                StageCreate(name="Negotiating"),
                StageCreate(name="Won"),
                StageCreate(name="Lost"),
            ],
        )
    )
    members = await crm.registry.create_pipeline(
        PipelineCreate(name="Active Members", stages=[StageCreate(name="Active")])
    )
    crm.enrollment.target = await crm.registry.resolve_active_members("Active Members", "Active")
    crm.events.events.clear()

    stages = {s.name: s.id for s in sales.stages}
    stages["Active"] = members.stages[0].id
    return SeededPipelines(sales=sales, active_members=members, stages=stages)


# ── Profiles ─────────────────────────────────────────────────────────────────


async def insert_profile(session_factory, name: str, phone: str | None = None, **fields) -> str:
    async with session_scope(session_factory) as session:
        async with session.begin():
            profile = ContactProfileModel(name=name, phone=phone, **fields)
            session.add(profile)
        return str(profile.id)


@pytest_asyncio.fixture
async def profile_id(session_factory) -> str:
    """A fresh lead: role=lead, lead_status=active, temperature=cold."""
    return await insert_profile(session_factory, "Ana Souza", phone="5511987654321")


@pytest_asyncio.fixture
async def staff_id(session_factory) -> str:
    """A staff member whose name appears as the responsible user on cards."""
    return await insert_profile(session_factory, "Carlos Staff", role="member")


@pytest_asyncio.fixture
async def new_deal(crm: CRMServices, pipelines: SeededPipelines, profile_id: str):
    """Deal worth 500 placed in Sales/New for ``profile_id``."""
    result = await crm.engine.create_deal(
        DealCreate(
            contact_profile_id=profile_id,
            pipeline_id=pipelines.sales_id,
            stage_id=pipelines.stages["New"],
            value=500.0,
        ),
        actor_id=str(uuid.uuid4()),
    )
    crm.events.events.clear()
    return result.deal

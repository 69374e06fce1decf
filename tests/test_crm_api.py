"""Integration tests for the CRM REST API.

Runs the v1 routers with the CRMError handler over an in-memory SQLite
database. Services are wired by the same builder the app lifespan uses,
and requests go through httpx's ASGITransport.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.app.api.errors import register_error_handlers
from src.app.api.middleware import LoggingMiddleware
from src.app.api.v1 import health
from src.app.api.v1.router import router as v1_router
from src.app.config import Settings
from src.app.events.bus import BoardEventBus
from src.app.main import build_crm_services, configure_active_members


ACTOR = "3f2b8c1a-9d4e-4f6a-8b7c-5e4d3c2b1a09"


def _make_app() -> FastAPI:
    app = FastAPI()
    register_error_handlers(app)
    app.add_middleware(LoggingMiddleware)
    app.include_router(health.router)
    app.include_router(v1_router)
    return app


@pytest_asyncio.fixture
async def app(session_factory, pipelines) -> FastAPI:
    """App with CRM services on app.state and the Active Members target resolved."""
    application = _make_app()
    build_crm_services(application, session_factory, Settings())
    await configure_active_members(application, Settings())
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers={"X-User-ID": ACTOR}
    ) as ac:
        yield ac


async def _create_lead(client, pipelines, stage="New", name="Ana Souza", phone="5511987654321"):
    response = await client.post(
        "/v1/deals/leads",
        json={
            "name": name,
            "phone": phone,
            "pipeline_id": pipelines.sales_id,
            "stage_id": pipelines.stages[stage],
            "value": 500,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


# ── Wiring ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_active_members_resolved_by_name(app, pipelines):
    target = app.state.auto_enrollment.target
    assert str(target.pipeline_id) == pipelines.members_id
    assert str(target.stage_id) == pipelines.stages["Active"]


@pytest.mark.asyncio
async def test_active_members_explicit_ids_win(session_factory, pipelines):
    application = _make_app()
    build_crm_services(application, session_factory, Settings())
    settings = Settings(
        ACTIVE_MEMBERS_PIPELINE_ID=pipelines.sales_id,
        ACTIVE_MEMBERS_STAGE_ID=pipelines.stages["New"],
    )

    target = await configure_active_members(application, settings)

    assert str(target.stage_id) == pipelines.stages["New"]
    assert application.state.auto_enrollment.target == target


@pytest.mark.asyncio
async def test_missing_service_is_503():
    transport = ASGITransport(app=_make_app())
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.get("/v1/pipelines")
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_request_id_echoed(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


# ── Pipelines & Stages ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_pipeline_and_duplicate(client):
    body = {"name": "Summer Camp", "stages": [{"name": "Interested"}, {"name": "Won"}]}
    response = await client.post("/v1/pipelines", json=body)
    assert response.status_code == 201
    data = response.json()
    assert [s["kind"] for s in data["stages"]] == ["normal", "won"]

    duplicate = await client.post("/v1/pipelines", json={"name": "Summer Camp"})
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"] == {
        "code": "duplicate_name",
        "message": "A pipeline named 'Summer Camp' already exists",
        "retry": False,
    }


@pytest.mark.asyncio
async def test_list_and_get_pipeline(client, pipelines):
    listed = await client.get("/v1/pipelines")
    assert {p["name"] for p in listed.json()} == {"Sales", "Active Members"}

    response = await client.get(f"/v1/pipelines/{pipelines.sales_id}")
    assert [s["name"] for s in response.json()["stages"]] == ["New", "Negotiating", "Won", "Lost"]

    missing = await client.get(f"/v1/pipelines/{uuid.uuid4()}")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "pipeline_not_found"


@pytest.mark.asyncio
async def test_deactivate_pipeline(client, pipelines):
    response = await client.post(f"/v1/pipelines/{pipelines.sales_id}/deactivate")
    assert response.status_code == 200
    assert response.json()["is_active"] is False

    listed = await client.get("/v1/pipelines", params={"include_inactive": "true"})
    assert pipelines.sales_id in [p["id"] for p in listed.json()]


@pytest.mark.asyncio
async def test_create_stage_appends(client, pipelines):
    response = await client.post(
        f"/v1/pipelines/{pipelines.sales_id}/stages",
        json={"name": "Trial Class", "color": "#a855f7"},
    )
    assert response.status_code == 201
    assert response.json()["order"] == 5


@pytest.mark.asyncio
async def test_reorder_stages(client, pipelines):
    s = pipelines.stages
    order = [s["Negotiating"], s["New"], s["Won"], s["Lost"]]
    response = await client.put(
        f"/v1/pipelines/{pipelines.sales_id}/stages/order", json={"stage_ids": order}
    )
    assert response.status_code == 200
    assert [st["id"] for st in response.json()] == order

    invalid = await client.put(
        f"/v1/pipelines/{pipelines.sales_id}/stages/order", json={"stage_ids": [s["New"]]}
    )
    assert invalid.status_code == 422
    assert invalid.json()["detail"]["code"] == "invalid_stage_order"


@pytest.mark.asyncio
async def test_update_stage(client, pipelines):
    response = await client.patch(
        f"/v1/stages/{pipelines.stages['Won']}", json={"name": "Enrolled"}
    )
    assert response.status_code == 200
    assert response.json()["name"] == "Enrolled"
    assert response.json()["kind"] == "won"


# ── Deals ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_lead(client, pipelines):
    data = await _create_lead(client, pipelines)

    assert data["deal"]["stage_id"] == pipelines.stages["New"]
    assert data["profile"]["phone"] == "5511987654321"
    assert data["history_entry"]["moved_by_user_id"] == ACTOR


@pytest.mark.asyncio
async def test_create_lead_invalid_phone(client, pipelines):
    response = await client.post(
        "/v1/deals/leads",
        json={
            "name": "Ana",
            "phone": "123",
            "pipeline_id": pipelines.sales_id,
            "stage_id": pipelines.stages["New"],
        },
    )
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "invalid_contact"


@pytest.mark.asyncio
async def test_create_deal_negative_value_rejected(client, pipelines, profile_id):
    response = await client.post(
        "/v1/deals",
        json={
            "contact_profile_id": profile_id,
            "pipeline_id": pipelines.sales_id,
            "stage_id": pipelines.stages["New"],
            "value": -10,
        },
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_deal_for_existing_contact(client, pipelines, profile_id):
    response = await client.post(
        "/v1/deals",
        json={
            "contact_profile_id": profile_id,
            "pipeline_id": pipelines.sales_id,
            "stage_id": pipelines.stages["Won"],
            "value": 900,
        },
    )
    assert response.status_code == 201
    data = response.json()
    assert data["deal"]["status"] == "won"
    assert data["enrolled_deal"]["pipeline_id"] == pipelines.members_id


@pytest.mark.asyncio
async def test_move_and_history(client, pipelines):
    lead = await _create_lead(client, pipelines)
    deal_id = lead["deal"]["id"]

    moved = await client.post(
        f"/v1/deals/{deal_id}/move",
        json={"target_stage_id": pipelines.stages["Negotiating"]},
    )
    assert moved.status_code == 200
    assert moved.json()["deal"]["version"] == 2

    history = await client.get(f"/v1/deals/{deal_id}/history")
    entries = history.json()
    assert [e["to_stage_id"] for e in entries] == [
        pipelines.stages["New"],
        pipelines.stages["Negotiating"],
    ]

    deal = await client.get(f"/v1/deals/{deal_id}")
    assert deal.json()["stage_id"] == pipelines.stages["Negotiating"]


@pytest.mark.asyncio
async def test_move_errors(client, pipelines):
    lead = await _create_lead(client, pipelines)
    deal_id = lead["deal"]["id"]

    no_reason = await client.post(
        f"/v1/deals/{deal_id}/move", json={"target_stage_id": pipelines.stages["Lost"]}
    )
    assert no_reason.status_code == 422
    assert no_reason.json()["detail"]["code"] == "loss_reason_required"

    cross = await client.post(
        f"/v1/deals/{deal_id}/move", json={"target_stage_id": pipelines.stages["Active"]}
    )
    assert cross.status_code == 422
    assert cross.json()["detail"]["code"] == "cross_pipeline_move"

    unknown = await client.post(
        f"/v1/deals/{uuid.uuid4()}/move", json={"target_stage_id": pipelines.stages["Won"]}
    )
    assert unknown.status_code == 404
    assert unknown.json()["detail"]["code"] == "deal_not_found"


@pytest.mark.asyncio
async def test_stale_move_is_409_with_retry(client, pipelines):
    lead = await _create_lead(client, pipelines)
    deal_id = lead["deal"]["id"]
    await client.post(
        f"/v1/deals/{deal_id}/move", json={"target_stage_id": pipelines.stages["Negotiating"]}
    )

    response = await client.post(
        f"/v1/deals/{deal_id}/move",
        json={
            "target_stage_id": pipelines.stages["Won"],
            "expected_stage_id": pipelines.stages["New"],
        },
    )
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "concurrent_modification"
    assert response.json()["detail"]["retry"] is True


# ── Board ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_board(client, pipelines):
    await _create_lead(client, pipelines, name="Mariana Costa", phone="5511911112222")
    await _create_lead(client, pipelines, stage="Negotiating", name="Pedro", phone="5521933334444")

    response = await client.get(f"/v1/pipelines/{pipelines.sales_id}/board")
    assert response.status_code == 200
    board = response.json()
    assert [c["deal_count"] for c in board["columns"]] == [1, 1, 0, 0]
    assert board["total_value"] == 1000

    filtered = await client.get(
        f"/v1/pipelines/{pipelines.sales_id}/board", params={"search": "mariana"}
    )
    assert filtered.json()["deal_count"] == 1


@pytest.mark.asyncio
async def test_changes_feed(app, client, pipelines):
    mock_redis = AsyncMock()
    mock_redis.xrevrange = AsyncMock(return_value=[("10-0", {})])
    mock_redis.xrange = AsyncMock(return_value=[])
    app.state.board_events = BoardEventBus(redis=mock_redis)

    first = await client.get(f"/v1/pipelines/{pipelines.sales_id}/changes")
    assert first.json() == {"pipeline_id": pipelines.sales_id, "cursor": "10-0", "events": []}

    second = await client.get(
        f"/v1/pipelines/{pipelines.sales_id}/changes", params={"after": "10-0"}
    )
    assert second.json()["cursor"] == "10-0"
    assert mock_redis.xrange.call_args[1]["min"] == "(10-0"


# ── Contacts ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_contact_endpoints(client, pipelines):
    lead = await _create_lead(client, pipelines)
    profile_id = lead["profile"]["id"]

    profile = await client.get(f"/v1/contacts/{profile_id}")
    assert profile.json()["lead_status"] == "active"

    deals = await client.get(f"/v1/contacts/{profile_id}/deals")
    assert [d["id"] for d in deals.json()] == [lead["deal"]["id"]]

    hot = await client.patch(
        f"/v1/contacts/{profile_id}/temperature", json={"lead_temperature": "hot"}
    )
    assert hot.json()["lead_temperature"] == "hot"

    resynced = await client.post(f"/v1/contacts/{profile_id}/resync")
    assert resynced.json()["current_stage_id"] == pipelines.stages["New"]

    missing = await client.get(f"/v1/contacts/{uuid.uuid4()}/deals")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "contact_profile_not_found"

"""Tests for the board sync client.

The CRM service is replaced by an httpx.MockTransport backed by a small
in-memory board, so the tests can observe the client while a move request
is still in flight.
"""

from __future__ import annotations

import inspect
import json
from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio

from src.app.crm.client import BoardClient, MoveInFlight, MoveRejected

PIPELINE = "6f1c2b9e-4d7a-4c55-9a64-0f1e2d3c4b5a"
DEAL = "b7e4a1d2-3c5f-4e6a-9b8c-7d6e5f4a3b2c"
NEW = "11111111-1111-4111-8111-111111111111"
NEGOTIATING = "22222222-2222-4222-8222-222222222222"
WON = "33333333-3333-4333-8333-333333333333"
LOST = "44444444-4444-4444-8444-444444444444"

STAGES = [
    (NEW, "New", "normal"),
    (NEGOTIATING, "Negotiating", "normal"),
    (WON, "Won", "won"),
    (LOST, "Lost", "lost"),
]
STATUS_BY_STAGE = {NEW: "active", NEGOTIATING: "active", WON: "won", LOST: "lost"}


class FakeCRM:
    """Minimal stand-in for the board, move and change feed endpoints."""

    def __init__(self) -> None:
        self.positions: dict[str, str] = {DEAL: NEW}
        self.version = 1
        self.move_response: httpx.Response | None = None
        self.move_error: Exception | None = None
        self.on_move = None
        self.board_requests = 0
        self.board_status = 200
        self.feed: list[dict] = []
        self.requests: list[httpx.Request] = []

    def _deal(self, deal_id: str) -> dict:
        stage_id = self.positions[deal_id]
        return {
            "id": deal_id,
            "contact_profile_id": "c0ffee00-0000-4000-8000-000000000001",
            "pipeline_id": PIPELINE,
            "stage_id": stage_id,
            "value": 500.0,
            "status": STATUS_BY_STAGE[stage_id],
            "version": self.version,
            "moved_at": datetime.now(timezone.utc).isoformat(),
        }

    def _board(self) -> dict:
        stages = [
            {"id": sid, "pipeline_id": PIPELINE, "name": name, "color": "#3b82f6",
             "order": i + 1, "kind": kind}
            for i, (sid, name, kind) in enumerate(STAGES)
        ]
        columns = [
            {
                "stage": stage,
                "cards": [
                    {"deal": self._deal(d)} for d, s in self.positions.items() if s == stage["id"]
                ],
            }
            for stage in stages
        ]
        return {"pipeline": {"id": PIPELINE, "name": "Sales", "stages": stages}, "columns": columns}

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/board"):
            self.board_requests += 1
            if self.board_status != 200:
                return httpx.Response(self.board_status, json={"detail": "unavailable"})
            return httpx.Response(200, json=self._board())
        if path.endswith("/changes"):
            after = request.url.params.get("after")
            if after is None:
                return httpx.Response(
                    200, json={"pipeline_id": PIPELINE, "cursor": "5-0", "events": []}
                )
            events, self.feed = self.feed, []
            cursor = "6-0" if events else after
            return httpx.Response(
                200, json={"pipeline_id": PIPELINE, "cursor": cursor, "events": events}
            )
        if path.endswith("/move"):
            if self.on_move is not None:
                observed = self.on_move()
                if inspect.isawaitable(observed):
                    await observed
            if self.move_error is not None:
                raise self.move_error
            if self.move_response is not None:
                return self.move_response
            self.positions[DEAL] = json.loads(request.content)["target_stage_id"]
            self.version += 1
            return httpx.Response(200, json={"deal": self._deal(DEAL)})
        return httpx.Response(404, json={"detail": "Not Found"})


@pytest.fixture
def crm() -> FakeCRM:
    return FakeCRM()


@pytest_asyncio.fixture
async def client(crm):
    http = httpx.AsyncClient(transport=httpx.MockTransport(crm.handler), base_url="http://test")
    board_client = BoardClient(http, PIPELINE, actor_id="user-1")
    await board_client.refresh()
    yield board_client
    await http.aclose()


def _error(status_code: int, code: str, retry: bool) -> httpx.Response:
    return httpx.Response(
        status_code, json={"detail": {"code": code, "message": code, "retry": retry}}
    )


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_commits_positions(self, client, crm):
        assert client.position(DEAL) == NEW
        assert client.committed_position(DEAL) == NEW
        assert client.is_pending(DEAL) is False
        assert [c.stage.name for c in client.board.columns] == ["New", "Negotiating", "Won", "Lost"]

    @pytest.mark.asyncio
    async def test_actor_header_sent(self, client, crm):
        assert crm.requests[0].headers["X-User-ID"] == "user-1"


class TestMove:
    @pytest.mark.asyncio
    async def test_tentative_while_in_flight(self, client, crm):
        seen = {}

        def observe():
            seen["position"] = client.position(DEAL)
            seen["committed"] = client.committed_position(DEAL)
            seen["pending"] = client.is_pending(DEAL)

        crm.on_move = observe
        await client.move(DEAL, NEGOTIATING)

        assert seen == {"position": NEGOTIATING, "committed": NEW, "pending": True}

    @pytest.mark.asyncio
    async def test_success_commits_server_position(self, client, crm):
        result = await client.move(DEAL, NEGOTIATING)

        assert result.deal.stage_id == NEGOTIATING
        assert client.committed_position(DEAL) == NEGOTIATING
        assert client.is_pending(DEAL) is False

    @pytest.mark.asyncio
    async def test_sends_expected_stage(self, client, crm):
        await client.move(DEAL, NEGOTIATING)

        body = json.loads(crm.requests[-1].content)
        assert body["target_stage_id"] == NEGOTIATING
        assert body["expected_stage_id"] == NEW

    @pytest.mark.asyncio
    async def test_validation_error_rolls_back(self, client, crm):
        crm.move_response = _error(422, "loss_reason_required", False)

        with pytest.raises(MoveRejected) as exc_info:
            await client.move(DEAL, LOST)

        assert exc_info.value.status_code == 422
        assert exc_info.value.code == "loss_reason_required"
        assert exc_info.value.retry is False
        assert client.position(DEAL) == NEW
        assert client.is_pending(DEAL) is False
        assert crm.board_requests == 1

    @pytest.mark.asyncio
    async def test_conflict_refreshes_then_raises(self, client, crm):
        crm.positions[DEAL] = WON
        crm.move_response = _error(409, "concurrent_modification", True)

        with pytest.raises(MoveRejected) as exc_info:
            await client.move(DEAL, NEGOTIATING)

        assert exc_info.value.retry is True
        assert crm.board_requests == 2
        assert client.position(DEAL) == WON

    @pytest.mark.asyncio
    async def test_conflict_raises_even_if_refresh_fails(self, client, crm):
        crm.move_response = _error(409, "concurrent_modification", True)
        crm.board_status = 503

        with pytest.raises(MoveRejected) as exc_info:
            await client.move(DEAL, NEGOTIATING)

        assert exc_info.value.code == "concurrent_modification"
        assert exc_info.value.retry is True
        assert crm.board_requests == 2
        assert client.position(DEAL) == NEW
        assert client.is_pending(DEAL) is False

    @pytest.mark.asyncio
    async def test_transport_error_rolls_back(self, client, crm):
        crm.move_error = httpx.ConnectError("connection refused")

        with pytest.raises(MoveRejected) as exc_info:
            await client.move(DEAL, NEGOTIATING)

        assert exc_info.value.status_code is None
        assert exc_info.value.retry is True
        assert client.position(DEAL) == NEW
        assert client.is_pending(DEAL) is False

    @pytest.mark.asyncio
    async def test_second_move_while_pending(self, client, crm):
        async def second_move():
            with pytest.raises(MoveInFlight):
                await client.move(DEAL, WON)

        crm.on_move = second_move
        result = await client.move(DEAL, NEGOTIATING)

        assert result.deal.stage_id == NEGOTIATING
        assert client.committed_position(DEAL) == NEGOTIATING


class TestPolling:
    @pytest.mark.asyncio
    async def test_first_poll_sets_cursor(self, client, crm):
        assert await client.poll_changes() is False
        assert crm.requests[-1].url.params.get("after") is None

        assert await client.poll_changes() is False
        assert crm.requests[-1].url.params.get("after") == "5-0"
        assert crm.board_requests == 1

    @pytest.mark.asyncio
    async def test_event_triggers_refresh(self, client, crm):
        await client.poll_changes()
        crm.positions[DEAL] = WON
        crm.feed = [{"event_type": "deal.moved", "pipeline_id": PIPELINE, "deal_id": DEAL}]

        assert await client.poll_changes() is True
        assert crm.board_requests == 2
        assert client.committed_position(DEAL) == WON

"""Tests for board change notifications: event schema and Redis stream bus.

Covers:
- BoardEvent stream serialization
- BoardEventBus publish (XADD with trimming), retry on connection errors
- notify never raises
- read_since: exclusive cursor, pipeline filtering, cursor advancement
- latest_cursor
- TransitionEngine notifications through a real bus on a mocked Redis
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from src.app.crm.engine import TransitionEngine
from src.app.events import BoardChangeFeed, BoardEvent, BoardEventBus, BoardEventType

PIPELINE = "6f1c2b9e-4d7a-4c55-9a64-0f1e2d3c4b5a"
OTHER_PIPELINE = "0a9b8c7d-6e5f-4a3b-8c2d-1e0f9a8b7c6d"


def _event(pipeline_id: str = PIPELINE, **kwargs) -> BoardEvent:
    return BoardEvent(event_type=BoardEventType.DEAL_MOVED, pipeline_id=pipeline_id, **kwargs)


# ── Schema Tests ──────────────────────────────────────────────────────────


class TestBoardEvent:
    def test_stream_dict_is_flat_strings(self):
        event = _event(deal_id="deal-1", data={"stage_id": "s-2", "status": "active"})
        raw = event.to_stream_dict()

        assert all(isinstance(v, str) for v in raw.values())
        assert raw["event_type"] == "deal.moved"
        assert raw["actor_id"] == ""

    def test_from_stream_dict(self):
        event = _event(deal_id="deal-1", actor_id="user-9", data={"status": "won"})
        restored = BoardEvent.from_stream_dict(event.to_stream_dict())

        assert restored == event

    def test_feed_changed(self):
        assert BoardChangeFeed(pipeline_id=PIPELINE, cursor="0-0").changed is False
        assert BoardChangeFeed(pipeline_id=PIPELINE, cursor="1-0", events=[_event()]).changed


# ── Bus Tests ─────────────────────────────────────────────────────────────


class TestBoardEventBus:
    @pytest.mark.asyncio
    async def test_publish_calls_xadd(self):
        mock_redis = AsyncMock()
        mock_redis.xadd = AsyncMock(return_value="1700000000000-0")
        bus = BoardEventBus(redis=mock_redis, stream="crm:test:board", maxlen=50)

        msg_id = await bus.publish(_event())

        assert msg_id == "1700000000000-0"
        call_args = mock_redis.xadd.call_args
        assert call_args[0][0] == "crm:test:board"
        assert call_args[0][1]["pipeline_id"] == PIPELINE
        assert call_args[1]["maxlen"] == 50
        assert call_args[1]["approximate"] is True

    @pytest.mark.asyncio
    async def test_publish_retries_connection_errors(self):
        mock_redis = AsyncMock()
        mock_redis.xadd = AsyncMock(side_effect=[RedisConnectionError("reset"), "5-0"])
        bus = BoardEventBus(redis=mock_redis)

        assert await bus.publish(_event()) == "5-0"
        assert mock_redis.xadd.call_count == 2

    @pytest.mark.asyncio
    async def test_notify_swallows_redis_errors(self):
        mock_redis = AsyncMock()
        mock_redis.xadd = AsyncMock(side_effect=ResponseError("OOM command not allowed"))
        bus = BoardEventBus(redis=mock_redis)

        assert await bus.notify(_event()) is None
        assert mock_redis.xadd.call_count == 1

    @pytest.mark.asyncio
    async def test_read_since_filters_and_advances(self):
        mine = _event(deal_id="d-1")
        theirs = _event(OTHER_PIPELINE, deal_id="d-2")
        mock_redis = AsyncMock()
        mock_redis.xrange = AsyncMock(
            return_value=[
                ("7-0", mine.to_stream_dict()),
                ("8-0", theirs.to_stream_dict()),
            ]
        )
        bus = BoardEventBus(redis=mock_redis, stream="crm:events:board")

        feed = await bus.read_since(PIPELINE, after="6-0", count=10)

        mock_redis.xrange.assert_awaited_once_with(
            "crm:events:board", min="(6-0", max="+", count=10
        )
        assert [e.deal_id for e in feed.events] == ["d-1"]
        assert feed.cursor == "8-0"

    @pytest.mark.asyncio
    async def test_read_since_empty_keeps_cursor(self):
        mock_redis = AsyncMock()
        mock_redis.xrange = AsyncMock(return_value=[])
        bus = BoardEventBus(redis=mock_redis)

        feed = await bus.read_since(PIPELINE, after="9-0")

        assert feed.cursor == "9-0"
        assert feed.changed is False

    @pytest.mark.asyncio
    async def test_read_from_start(self):
        mock_redis = AsyncMock()
        mock_redis.xrange = AsyncMock(return_value=[])
        bus = BoardEventBus(redis=mock_redis)

        feed = await bus.read_since(PIPELINE)

        assert mock_redis.xrange.call_args[1]["min"] == "-"
        assert feed.cursor == "0-0"

    @pytest.mark.asyncio
    async def test_latest_cursor(self):
        mock_redis = AsyncMock()
        mock_redis.xrevrange = AsyncMock(return_value=[("42-1", {})])
        bus = BoardEventBus(redis=mock_redis)

        assert await bus.latest_cursor() == "42-1"

        mock_redis.xrevrange = AsyncMock(return_value=[])
        assert await bus.latest_cursor() == "0-0"


# ── Engine Integration ────────────────────────────────────────────────────


class TestEngineNotifications:
    @pytest.mark.asyncio
    async def test_redis_outage_does_not_fail_move(self, crm, pipelines, new_deal):
        mock_redis = AsyncMock()
        mock_redis.xadd = AsyncMock(side_effect=ResponseError("READONLY"))
        engine = TransitionEngine(
            crm.session_factory,
            deals=crm.deals,
            history=crm.history,
            profiles=crm.profiles,
            profile_sync=crm.profile_sync,
            enrollment=crm.enrollment,
            events=BoardEventBus(redis=mock_redis),
        )

        result = await engine.move_deal(new_deal.id, pipelines.stages["Negotiating"])

        assert result.deal.stage_id == pipelines.stages["Negotiating"]
        stored = await crm.engine.get_deal(new_deal.id)
        assert stored.stage_id == pipelines.stages["Negotiating"]
        mock_redis.xadd.assert_awaited_once()

"""Board change notifications over a Redis Stream.

Committed transitions append a BoardEvent to a single stream. Viewers read
the stream from their last cursor and re-fetch any affected board.

Publishing happens after the database commit and is best-effort: a Redis
outage is retried briefly, then logged. The committed change stands either
way and viewers catch up on their next full board fetch.
"""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.app.core.monitoring import crm_board_events_total
from src.app.events.schemas import BoardChangeFeed, BoardEvent

logger = structlog.get_logger(__name__)

DEFAULT_STREAM = "crm:events:board"


class BoardEventBus:
    """Publish and read board change events.

    Args:
        redis: Async Redis client created with ``decode_responses=True``.
        stream: Stream key.
        maxlen: Approximate cap on retained entries.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        stream: str = DEFAULT_STREAM,
        maxlen: int = 1000,
    ) -> None:
        self._redis = redis
        self._stream = stream
        self._maxlen = maxlen

    @property
    def stream(self) -> str:
        return self._stream

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        reraise=True,
    )
    async def publish(self, event: BoardEvent) -> str:
        """Append an event to the stream with approximate trimming.

        Returns:
            Redis message ID assigned by XADD.
        """
        message_id = await self._redis.xadd(
            self._stream,
            event.to_stream_dict(),
            maxlen=self._maxlen,
            approximate=True,
        )
        logger.debug(
            "board_event_published",
            stream=self._stream,
            event_type=event.event_type.value,
            pipeline_id=event.pipeline_id,
            message_id=message_id,
        )
        return message_id

    async def notify(self, event: BoardEvent) -> str | None:
        """Publish without ever raising; returns None when publishing failed."""
        try:
            message_id = await self.publish(event)
        except RedisError as exc:
            logger.warning(
                "board_event_publish_failed",
                stream=self._stream,
                event_type=event.event_type.value,
                pipeline_id=event.pipeline_id,
                error=str(exc),
            )
            crm_board_events_total.labels(status="failed").inc()
            return None
        crm_board_events_total.labels(status="published").inc()
        return message_id

    async def read_since(
        self, pipeline_id: str, after: str | None = None, count: int = 100
    ) -> BoardChangeFeed:
        """Events for ``pipeline_id`` strictly after stream id ``after``.

        Args:
            pipeline_id: Pipeline the viewer is watching.
            after: Last cursor the viewer saw; None reads from the start.
            count: Maximum stream entries scanned per call.
        """
        start = f"({after}" if after else "-"
        entries = await self._redis.xrange(self._stream, min=start, max="+", count=count)

        events = [
            BoardEvent.from_stream_dict(fields)
            for _, fields in entries
            if fields.get("pipeline_id") == pipeline_id
        ]
        cursor = entries[-1][0] if entries else (after or "0-0")
        return BoardChangeFeed(pipeline_id=pipeline_id, cursor=cursor, events=events)

    async def latest_cursor(self) -> str:
        """Id of the newest entry, so a fresh viewer can skip history."""
        entries = await self._redis.xrevrange(self._stream, count=1)
        return entries[0][0] if entries else "0-0"


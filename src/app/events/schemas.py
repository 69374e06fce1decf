"""Event schemas for board change notifications via Redis Streams.

A BoardEvent tells connected viewers that a pipeline's board changed and
must be re-fetched in full; it never carries a diff. Events serialize to
flat string dicts for Redis Streams and deserialize back losslessly.

Stream key: crm:events:board (configurable)
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class BoardEventType(str, Enum):
    """What happened to the board."""

    DEAL_CREATED = "deal.created"
    DEAL_MOVED = "deal.moved"
    DEAL_ENROLLED = "deal.enrolled"
    STAGES_CHANGED = "stages.changed"
    PIPELINE_CHANGED = "pipeline.changed"


class BoardEvent(BaseModel):
    """Notification that the board of ``pipeline_id`` changed.

    Attributes:
        event_id: Unique identifier (auto-generated UUID4).
        version: Schema version for forward compatibility.
        event_type: Kind of change.
        timestamp: UTC creation time.
        pipeline_id: Pipeline whose board viewers must re-fetch.
        deal_id: Deal involved, when the change is about one deal.
        actor_id: User who caused the change, if known.
        data: Small inline context (stage ids, status).
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    version: str = "1.0"
    event_type: BoardEventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    pipeline_id: str
    deal_id: str | None = None
    actor_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize to a flat dict of strings for XADD.

        ``data`` is JSON-encoded, datetimes use ISO format and None
        becomes the empty string.
        """
        return {
            "event_id": self.event_id,
            "version": self.version,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "pipeline_id": self.pipeline_id,
            "deal_id": self.deal_id or "",
            "actor_id": self.actor_id or "",
            "data": json.dumps(self.data),
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> BoardEvent:
        """Reverse ``to_stream_dict()`` for an entry read back from the stream."""
        return cls(
            event_id=raw["event_id"],
            version=raw.get("version", "1.0"),
            event_type=BoardEventType(raw["event_type"]),
            timestamp=datetime.fromisoformat(raw["timestamp"]),
            pipeline_id=raw["pipeline_id"],
            deal_id=raw.get("deal_id") or None,
            actor_id=raw.get("actor_id") or None,
            data=json.loads(raw["data"]) if raw.get("data") else {},
        )


class BoardChangeFeed(BaseModel):
    """Page of board events for one pipeline.

    ``cursor`` is the last stream id scanned; pass it back as ``after`` to
    continue. It advances even when scanned entries belonged to other
    pipelines.
    """

    pipeline_id: str
    cursor: str
    events: list[BoardEvent] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.events)

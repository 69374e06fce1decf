"""Board change notifications for connected viewers.

Exports:
    BoardEvent: Pydantic model for one board change, stream-serializable.
    BoardEventType: Kind of change (deal created/moved/enrolled, stages, pipeline).
    BoardChangeFeed: Page of events for one pipeline plus a resume cursor.
    BoardEventBus: Publish to and read from the Redis stream.
"""

from __future__ import annotations

from src.app.events.bus import BoardEventBus
from src.app.events.schemas import BoardChangeFeed, BoardEvent, BoardEventType

__all__ = [
    "BoardChangeFeed",
    "BoardEvent",
    "BoardEventBus",
    "BoardEventType",
]

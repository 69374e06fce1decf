"""Board sync client -- pending/committed card positions over the HTTP API.

A viewer keeps the last committed board and, per deal, at most one
tentative move. The tentative position is what the UI shows while the
request is in flight; it becomes committed only from the server's
response and is rolled back on any failure. Success is never assumed.

Change polling re-fetches the whole board whenever the feed reports an
event for the watched pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.app.crm.schemas import BoardRead, TransitionResult
from src.app.events.schemas import BoardChangeFeed

logger = structlog.get_logger(__name__)

# Reads are safe to repeat; moves are never retried automatically
_read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


class BoardClientError(Exception):
    """Base class for client-side board errors."""


class MoveInFlight(BoardClientError):
    def __init__(self, deal_id: str) -> None:
        self.deal_id = deal_id
        super().__init__(f"A move for deal {deal_id} is already pending")


class MoveRejected(BoardClientError):
    """The server refused a move, or it could not be confirmed.

    Attributes:
        status_code: HTTP status, or None for transport failures.
        code: Machine-readable error code from the response body.
        retry: True when the caller should refetch and try again.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str = "unknown",
        retry: bool = False,
    ) -> None:
        self.status_code = status_code
        self.code = code
        self.retry = retry
        super().__init__(message)


@dataclass
class PendingMove:
    deal_id: str
    from_stage_id: str | None
    to_stage_id: str


class BoardClient:
    """Tracks one pipeline's board for a single viewer.

    Args:
        http: Client pointed at the CRM service (base_url set).
        pipeline_id: Pipeline to watch.
        actor_id: Sent as ``X-User-ID`` on every request.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        pipeline_id: str,
        actor_id: str | None = None,
    ) -> None:
        self._http = http
        self.pipeline_id = pipeline_id
        self._headers = {"X-User-ID": actor_id} if actor_id else {}
        self.board: BoardRead | None = None
        self._committed: dict[str, str] = {}
        self._pending: dict[str, PendingMove] = {}
        self._cursor: str | None = None

    # ── Positions ───────────────────────────────────────────────────────────

    def position(self, deal_id: str) -> str | None:
        """Stage to display the card in: tentative if pending, else committed."""
        pending = self._pending.get(deal_id)
        if pending is not None:
            return pending.to_stage_id
        return self._committed.get(deal_id)

    def committed_position(self, deal_id: str) -> str | None:
        return self._committed.get(deal_id)

    def is_pending(self, deal_id: str) -> bool:
        return deal_id in self._pending

    # ── Reads ───────────────────────────────────────────────────────────────

    @_read_retry
    async def refresh(self) -> BoardRead:
        """Re-fetch the full board and replace every committed position."""
        response = await self._http.get(
            f"/v1/pipelines/{self.pipeline_id}/board", headers=self._headers
        )
        response.raise_for_status()
        board = BoardRead.model_validate(response.json())
        self.board = board
        self._committed = {
            card.deal.id: column.stage.id for column in board.columns for card in column.cards
        }
        return board

    @_read_retry
    async def poll_changes(self) -> bool:
        """Check the change feed; re-fetch the board if anything changed.

        The first call only establishes the cursor.
        """
        params = {"after": self._cursor} if self._cursor else {}
        response = await self._http.get(
            f"/v1/pipelines/{self.pipeline_id}/changes",
            params=params,
            headers=self._headers,
        )
        response.raise_for_status()
        feed = BoardChangeFeed.model_validate(response.json())
        self._cursor = feed.cursor
        if not feed.changed:
            return False
        logger.debug(
            "board_client.changes_seen",
            pipeline_id=self.pipeline_id,
            count=len(feed.events),
        )
        await self.refresh()
        return True

    # ── Moves ───────────────────────────────────────────────────────────────

    async def move(
        self, deal_id: str, target_stage_id: str, reason: str | None = None
    ) -> TransitionResult:
        """Move a card: tentative now, committed or rolled back from the response.

        Raises:
            MoveInFlight: A move for the same deal has not finished.
            MoveRejected: The server refused or the request failed; the card
                is back at its committed position. Conflicts also refresh
                the board before raising.
        """
        if deal_id in self._pending:
            raise MoveInFlight(deal_id)

        from_stage_id = self._committed.get(deal_id)
        self._pending[deal_id] = PendingMove(deal_id, from_stage_id, target_stage_id)
        try:
            response = await self._http.post(
                f"/v1/deals/{deal_id}/move",
                json={
                    "target_stage_id": target_stage_id,
                    "reason": reason,
                    "expected_stage_id": from_stage_id,
                },
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            self._pending.pop(deal_id, None)
            logger.warning("board_client.move_failed", deal_id=deal_id, error=str(exc))
            raise MoveRejected(f"Move could not be confirmed: {exc}", retry=True) from exc

        self._pending.pop(deal_id, None)
        if response.is_success:
            result = TransitionResult.model_validate(response.json())
            self._committed[deal_id] = result.deal.stage_id
            return result

        rejection = _rejection_from(response)
        logger.info(
            "board_client.move_rejected",
            deal_id=deal_id,
            status_code=rejection.status_code,
            code=rejection.code,
        )
        if rejection.retry:
            try:
                await self.refresh()
            except httpx.HTTPError as exc:
                logger.warning(
                    "board_client.refresh_failed", deal_id=deal_id, error=str(exc)
                )
        raise rejection


def _rejection_from(response: httpx.Response) -> MoveRejected:
    try:
        body = response.json()
    except ValueError:
        body = None
    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, dict):
        return MoveRejected(
            str(detail.get("message", "Move rejected")),
            status_code=response.status_code,
            code=str(detail.get("code", "unknown")),
            retry=bool(detail.get("retry", False)),
        )
    return MoveRejected(
        str(detail or response.text or "Move rejected"),
        status_code=response.status_code,
    )

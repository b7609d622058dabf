"""Polling scheduler for the capture engine query API.

Runs one fetch-and-reconcile cycle per tick on a fixed interval. Ticks are
strictly sequential, and nothing raised inside a tick stops the loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

import httpx

from capture_mcp.config import CURSOR_START
from capture_mcp.models import UpstreamParseError
from capture_mcp.pipeline.extractor import Extraction, RawSession, parse_response
from capture_mcp.pipeline.store import session_id

if TYPE_CHECKING:
    from capture_mcp.engine.client import EngineClient
    from capture_mcp.pipeline.store import Reconciler

logger = logging.getLogger(__name__)


def _is_empty(raw: Any) -> bool:
    return raw is None or (isinstance(raw, (dict, list, str)) and not raw)


class PollingScheduler:
    """Polls the engine with an incremental cursor and feeds the reconciler.

    Attributes:
        client: Engine query client
        reconciler: Record reconciler receiving extracted sessions
        interval: Seconds between ticks
        refetch_batch_size: Maximum ids per targeted re-fetch
    """

    def __init__(
        self,
        client: EngineClient,
        reconciler: Reconciler,
        interval: float = 2.0,
        refetch_batch_size: int = 50,
    ) -> None:
        self.client = client
        self.reconciler = reconciler
        self.interval = interval
        self.refetch_batch_size = refetch_batch_size
        self._cursor = CURSOR_START
        self._running = False
        self._stopped = False
        self._task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._lock = asyncio.Lock()
        self.tick_count = 0

    @property
    def cursor(self) -> str:
        return self._cursor

    @property
    def is_running(self) -> bool:
        return self._running

    def reset_cursor(self) -> None:
        """Start the next poll from the beginning again."""
        self._cursor = CURSOR_START

    def start(self) -> None:
        """Start the polling loop as a background task."""
        if self._running:
            return
        self._running = True
        self._stopped = False
        self._wake.clear()
        self._task = asyncio.create_task(self._run(), name="capture-poller")
        logger.info(f"Polling started (interval {self.interval}s)")

    async def stop(self) -> None:
        """Stop the polling loop.

        A fetch still in flight is not aborted; the tick discards its result
        because the scheduler has stopped. The loop is cancelled only if it
        outlives the request timeout.
        """
        self._running = False
        self._stopped = True
        self._wake.set()
        task, self._task = self._task, None
        if task is not None and not task.done():
            _, pending = await asyncio.wait({task}, timeout=self.client.timeout + 1)
            if pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        logger.info("Polling stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Polling tick failed: {e}", exc_info=True)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)

    async def tick(self) -> int:
        """Run one fetch-and-reconcile cycle.

        Returns:
            Number of records changed by this tick
        """
        async with self._lock:
            self.tick_count += 1
            sessions, missing = await self._poll()
            sessions.extend(await self._refetch_incomplete())
            if self._stopped:
                logger.debug("Pipeline stopped during fetch, discarding results")
                return 0
            if missing:
                # The cursor is already past these ids; later ticks fetch them by id
                self.reconciler.mark_pending(missing)
            if not sessions:
                return 0
            return self.reconciler.ingest(sessions)

    async def _fetch(self, **params: Any) -> Any:
        try:
            return await self.client.get_data(**params)
        except UpstreamParseError as e:
            logger.warning(f"{e.message}: {e.details.get('snippet', '')!r}")
        except httpx.HTTPError as e:
            logger.warning(f"Engine request failed ({type(e).__name__}): {e}")
        return None

    async def _poll(self) -> tuple[list[RawSession], list[str]]:
        """Fetch from the cursor.

        Returns:
            Sessions received, and reported new ids that did not arrive
        """
        raw = await self._fetch(start_id=self._cursor)
        if _is_empty(raw):
            logger.debug("Empty poll response, skipping tick")
            return [], []

        extraction = parse_response(raw)
        if not extraction.recognized:
            logger.debug("Unrecognized response shape, retrying with a full snapshot")
            extraction = parse_response(await self._fetch())
            if not extraction.recognized:
                error = UpstreamParseError("Unrecognized engine response shape")
                logger.warning(f"{error.message}, skipping tick")
                return [], []

        self._advance(extraction)

        sessions = extraction.sessions
        if not sessions and extraction.new_ids:
            # The engine can list ids before their bodies are available
            batch = extraction.new_ids[: self.refetch_batch_size]
            sessions = parse_response(await self._fetch(ids=batch)).sessions

        arrived = {session_id(s) for s in sessions}
        missing = [i for i in extraction.new_ids if i not in arrived]
        return sessions, missing

    async def _refetch_incomplete(self) -> list[RawSession]:
        ids = self.reconciler.take_refetch_ids(self.refetch_batch_size)
        if not ids:
            return []
        logger.debug(f"Re-fetching {len(ids)} incomplete record(s)")
        return parse_response(await self._fetch(ids=ids)).sessions

    def _advance(self, extraction: Extraction) -> None:
        if extraction.cursor and extraction.cursor != self._cursor:
            logger.debug(f"Cursor advanced: {self._cursor} -> {extraction.cursor}")
            self._cursor = extraction.cursor

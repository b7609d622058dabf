"""Capture engine JSON query API client using httpx.

Provides access to the engine's ``/cgi-bin/get-data`` polling endpoint
with request timeouts and response validation.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from types import TracebackType
from typing import Any, Self

import httpx

from capture_mcp.models import UpstreamParseError

logger = logging.getLogger(__name__)

# Query endpoint path
GET_DATA_PATH = "/cgi-bin/get-data"

# Default timeout for requests (seconds)
DEFAULT_TIMEOUT = 5.0


class EngineClient:
    """HTTP client for the capture engine's query API.

    Use as async context manager for proper resource management.

    Attributes:
        base_url: Engine base URL (e.g. "http://127.0.0.1:8899")
        timeout: Per-request timeout in seconds
    """

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        """Initialize engine client.

        Args:
            base_url: Engine base URL
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> Self:
        """Enter async context manager."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit async context manager."""
        await self.close()

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                trust_env=False,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def is_open(self) -> bool:
        return self._client is not None

    @staticmethod
    def build_params(start_id: str | None = None, ids: Sequence[str] | None = None) -> dict[str, str]:
        """Build query parameters for an incremental or targeted fetch.

        Args:
            start_id: Cursor for incremental fetch
            ids: Explicit ids for targeted re-fetch (takes precedence)

        Returns:
            Query parameters; empty for a full snapshot
        """
        if ids:
            return {"ids": ",".join(ids)}
        if start_id is not None:
            return {"startId": start_id}
        return {}

    async def get_data(
        self,
        start_id: str | None = None,
        ids: Sequence[str] | None = None,
    ) -> Any:
        """Fetch sessions from the engine.

        Args:
            start_id: Cursor for incremental fetch ("0" for everything)
            ids: Explicit ids for targeted re-fetch
            (neither: parameter-less full snapshot)

        Returns:
            Decoded JSON response, or None for an empty body

        Raises:
            httpx.HTTPError: On transport errors, timeouts and non-2xx status
            UpstreamParseError: If the body is not valid JSON
        """
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        params = self.build_params(start_id, ids)
        response = await self._client.get(GET_DATA_PATH, params=params)
        response.raise_for_status()

        text = response.text
        if not text or not text.strip():
            return None
        try:
            return json.loads(text)
        except ValueError as e:
            raise UpstreamParseError(
                "Engine returned a non-JSON response",
                details={"params": params, "snippet": text[:200]},
            ) from e

    async def ping(self) -> bool:
        """Check whether the query API answers with JSON."""
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        try:
            response = await self._client.get(GET_DATA_PATH, params={"startId": "0"})
        except httpx.HTTPError as e:
            logger.debug(f"Engine query API unreachable: {e}")
            return False
        if not response.is_success:
            return False
        try:
            json.loads(response.text or "null")
        except ValueError:
            logger.debug("Engine query API gave a non-JSON answer")
            return False
        return True

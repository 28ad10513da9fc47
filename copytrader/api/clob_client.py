"""Client for the public Polymarket CLOB endpoints (order books, prices)."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from copytrader.config import CLOB_API_URL, HTTP_TIMEOUT

logger = logging.getLogger(__name__)


class BookUnavailable(Exception):
    """The /book request failed for a reason other than a missing book."""


class ClobClient:
    """Async client for CLOB order book and price endpoints (L0 / public)."""

    def __init__(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=CLOB_API_URL,
            timeout=HTTP_TIMEOUT,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_orderbook(self, token_id: str) -> Optional[dict[str, Any]]:
        """GET /book for a single token. None if the book does not exist.

        Raises:
            BookUnavailable: on timeouts, transport errors and non-404
                error statuses.
        """
        try:
            resp = await self._client.get("/book", params={"token_id": token_id})
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            logger.warning("fetch_orderbook_error", extra={"token_id": token_id}, exc_info=True)
            raise BookUnavailable(f"/book returned {exc.response.status_code}") from exc
        except Exception as exc:
            logger.warning("fetch_orderbook_error", extra={"token_id": token_id}, exc_info=True)
            raise BookUnavailable(str(exc) or type(exc).__name__) from exc

    async def fetch_midpoint(self, token_id: str) -> Optional[float]:
        """GET /midpoint. Returns the mid price or None."""
        try:
            resp = await self._client.get("/midpoint", params={"token_id": token_id})
            resp.raise_for_status()
            mid = resp.json().get("mid")
            return float(mid) if mid is not None else None
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            logger.warning("fetch_midpoint_error", extra={"token_id": token_id}, exc_info=True)
            return None
        except Exception:
            logger.warning("fetch_midpoint_error", extra={"token_id": token_id}, exc_info=True)
            return None

"""Client for the Polymarket Data API (wallet activity, positions)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from copytrader.config import ACTIVITY_PAGE_LIMIT, DATA_API_URL, HTTP_TIMEOUT


class DataUnavailable(Exception):
    """The Data API request failed; holdings are unknown, not empty."""


# Imported after DataUnavailable: copytrader.execution imports it back (circular).
from copytrader.execution.types import OrderTypeHint, Side, TradeEvent

logger = logging.getLogger(__name__)


class DataClient:
    """Fetch public wallet data from the Data API."""

    def __init__(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=DATA_API_URL,
            timeout=HTTP_TIMEOUT,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_activity(
        self,
        user: str,
        *,
        limit: int = ACTIVITY_PAGE_LIMIT,
        offset: int = 0,
    ) -> list[dict]:
        """GET /activity: newest-first activity for a wallet."""
        params = {"user": user, "limit": limit, "offset": offset}
        try:
            resp = await self._client.get("/activity", params=params)
            resp.raise_for_status()
            data = resp.json()
            return data if isinstance(data, list) else []
        except Exception:
            logger.warning("fetch_activity_error", extra={"user": user}, exc_info=True)
            return []

    async def fetch_positions(
        self,
        user: str,
        *,
        market: Optional[str] = None,
        size_threshold: float = 0.0,
    ) -> list[dict]:
        """GET /positions: current holdings of a wallet.

        Returns list of {asset, conditionId, size, avgPrice, initialValue,
        currentValue, curPrice, outcome, title, ...}.

        Raises:
            DataUnavailable: on transport errors, error statuses or a
                malformed body.
        """
        params: dict[str, Any] = {"user": user, "sizeThreshold": size_threshold}
        if market:
            params["market"] = market
        try:
            resp = await self._client.get("/positions", params=params)
            resp.raise_for_status()
            data = resp.json()
        except Exception as exc:
            logger.warning("fetch_positions_error", extra={"user": user}, exc_info=True)
            raise DataUnavailable(f"positions for {user} unavailable: {exc}") from exc
        if not isinstance(data, list):
            raise DataUnavailable(f"unexpected positions payload for {user}")
        return data

    async def fetch_position(self, user: str, token_id: str) -> Optional[dict]:
        """The wallet's position in one token, or None if it holds none.

        Raises:
            DataUnavailable: when the positions lookup itself failed.
        """
        for pos in await self.fetch_positions(user):
            if pos.get("asset") == token_id:
                return pos
        return None

    @staticmethod
    def parse_activity(raw: dict) -> Optional[TradeEvent]:
        """Convert a raw /activity item into a :class:`TradeEvent`.

        Returns None for anything that is not a BUY/SELL trade with a
        condition ID and token ID.
        """
        if (raw.get("type") or "").upper() != "TRADE":
            return None
        side_raw = (raw.get("side") or "").upper()
        if side_raw not in ("BUY", "SELL"):
            return None
        condition_id = raw.get("conditionId")
        token_id = raw.get("asset")
        if not condition_id or not token_id:
            return None

        try:
            price = float(raw.get("price") or 0)
            size = float(raw.get("size") or 0)
            usdc_size = float(raw.get("usdcSize") or 0)
        except (TypeError, ValueError):
            return None
        if not 0 <= price <= 1:
            return None

        event_id = raw.get("transactionHash") or (
            f"{token_id}-{raw.get('timestamp')}-{side_raw}-{size}"
        )

        return TradeEvent(
            event_id=event_id,
            side=Side(side_raw),
            token_id=str(token_id),
            condition_id=str(condition_id),
            outcome=raw.get("outcome") or "",
            price=price,
            size=size,
            usdc_size=usdc_size,
            timestamp=_parse_ts(raw.get("timestamp")),
            order_type=detect_order_type(raw),
            title=raw.get("title") or "",
            slug=raw.get("slug") or "",
            event_slug=raw.get("eventSlug") or "",
        )


def detect_order_type(raw: dict) -> OrderTypeHint:
    """Read the fill type hint from whichever field the feed populated."""
    for key in ("orderType", "fillType"):
        value = raw.get(key)
        if isinstance(value, str) and value:
            upper = value.upper()
            if upper in ("MARKET", "FOK", "FAK"):
                return OrderTypeHint.MARKET
            if upper in ("LIMIT", "GTC", "GTD"):
                return OrderTypeHint.LIMIT
    for key in ("isMarketOrder", "marketOrder"):
        if key in raw and raw[key] is not None:
            return OrderTypeHint.MARKET if raw[key] else OrderTypeHint.LIMIT
    return OrderTypeHint.UNKNOWN


def _parse_ts(raw: Any) -> datetime:
    if raw is None or raw == "":
        return datetime.now(timezone.utc)
    try:
        value = float(raw)
        # Activity timestamps are UNIX seconds; tolerate milliseconds
        if value > 1e12:
            value /= 1000
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (TypeError, ValueError):
        try:
            return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            return datetime.now(timezone.utc)

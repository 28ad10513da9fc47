"""Shared models for the copy-trading engine: trade events and order books."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Side(str, Enum):
    """Direction of a trade or order."""

    BUY = "BUY"
    SELL = "SELL"


class OrderTypeHint(str, Enum):
    """How the tracked trader's order was filled, when the feed says so."""

    MARKET = "MARKET"
    LIMIT = "LIMIT"
    UNKNOWN = "UNKNOWN"


# ---------------------------------------------------------------------------
# Trade events
# ---------------------------------------------------------------------------


class TradeEvent(BaseModel):
    """One observed trade by the tracked wallet. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(..., description="Transaction hash, used for dedup.")
    side: Side
    token_id: str = Field(..., description="Outcome token (instrument) ID.")
    condition_id: str = Field(..., description="Market condition ID.")
    outcome: str = Field(default="", description="Outcome label, e.g. Yes / Up.")
    price: float = Field(..., ge=0.0, le=1.0, description="Fill price (0-1).")
    size: float = Field(default=0.0, ge=0.0, description="Shares traded.")
    usdc_size: float = Field(default=0.0, ge=0.0, description="Notional in USDC.")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    order_type: OrderTypeHint = OrderTypeHint.UNKNOWN
    title: str = ""
    slug: str = ""
    event_slug: str = ""

    @property
    def notional(self) -> float:
        """USDC value, derived from size*price when the feed omits it."""
        if self.usdc_size > 0:
            return self.usdc_size
        return self.size * self.price


# ---------------------------------------------------------------------------
# Order books
# ---------------------------------------------------------------------------


class BookLevel(BaseModel):
    """A single price level."""

    price: float
    size: float

    @property
    def value(self) -> float:
        return self.price * self.size


class OrderBookSnapshot(BaseModel):
    """Depth for one token. ``captured_at`` is a ``time.monotonic()`` reading."""

    token_id: str = ""
    bids: list[BookLevel] = Field(default_factory=list)
    asks: list[BookLevel] = Field(default_factory=list)
    captured_at: float = 0.0

    @classmethod
    def from_raw(cls, raw: dict[str, Any], captured_at: float = 0.0) -> OrderBookSnapshot:
        """Build from a CLOB ``/book`` payload or a websocket ``book`` message.

        REST responses use ``bids``/``asks``; some stream messages use
        ``buys``/``sells``. Levels with unparsable numbers are dropped.
        """
        return cls(
            token_id=str(raw.get("asset_id") or raw.get("token_id") or ""),
            bids=_parse_levels(raw.get("bids") or raw.get("buys") or []),
            asks=_parse_levels(raw.get("asks") or raw.get("sells") or []),
            captured_at=captured_at,
        )

    def is_fresh(self, now: float, max_age: float) -> bool:
        return now - self.captured_at < max_age

    def sorted_asks(self) -> list[BookLevel]:
        """Asks, cheapest first."""
        return sorted(self.asks, key=lambda lvl: lvl.price)

    def sorted_bids(self) -> list[BookLevel]:
        """Bids, highest first."""
        return sorted(self.bids, key=lambda lvl: lvl.price, reverse=True)

    @property
    def best_bid(self) -> Optional[float]:
        bids = self.sorted_bids()
        return bids[0].price if bids else None

    @property
    def best_ask(self) -> Optional[float]:
        asks = self.sorted_asks()
        return asks[0].price if asks else None

    @property
    def midpoint(self) -> Optional[float]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return (self.best_bid + self.best_ask) / 2


def _parse_levels(raw_levels: list[Any]) -> list[BookLevel]:
    levels: list[BookLevel] = []
    for lvl in raw_levels:
        try:
            if isinstance(lvl, dict):
                price, size = float(lvl["price"]), float(lvl["size"])
            else:
                price, size = float(lvl[0]), float(lvl[1])
        except (KeyError, IndexError, TypeError, ValueError):
            continue
        if size > 0:
            levels.append(BookLevel(price=price, size=size))
    return levels

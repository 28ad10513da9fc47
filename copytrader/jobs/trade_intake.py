"""Job: trade intake. Polls the tracked wallet's activity for new trades.

On each poll:

1. Fetch the newest activity page for the tracked wallet
2. Parse BUY/SELL trades into TradeEvents
3. On the very first poll, only record the event IDs (nothing is copied
   from before the session started)
4. Otherwise take the unseen events oldest first, mark each one seen
   *before* it is filtered, and return those that pass the copy filters
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel, Field

from copytrader.api.data_client import DataClient
from copytrader.config import (
    AUTO_TRADE_ENABLED,
    AUTO_TRADE_FILTER,
    COPY_SELL_ORDERS,
    COPY_TRADE_ENABLED,
    MIN_TRACKED_CONFIDENCE_LEVEL,
    MIN_TRACKED_TRADE_SIZE_USD,
    OPTIMAL_CONFIDENCE_MIN,
    SEND_TRADES_ONLY,
    USE_OPTIMAL_CONFIDENCE_FILTER,
)
from copytrader.execution.context import EngineContext
from copytrader.execution.notifier import LogNotifier, Notifier
from copytrader.execution.types import Side, TradeEvent

logger = logging.getLogger(__name__)

_KEYWORD_ALIASES = {
    "eth": "ethereum",
    "btc": "bitcoin",
}


class IntakeFilters(BaseModel):
    """Which tracked trades are worth copying."""

    auto_trade_enabled: bool = AUTO_TRADE_ENABLED
    copy_trade_enabled: bool = COPY_TRADE_ENABLED
    copy_sell_orders: bool = COPY_SELL_ORDERS
    trades_only: bool = SEND_TRADES_ONLY
    keywords: list[str] = Field(default_factory=lambda: list(AUTO_TRADE_FILTER))
    min_trade_size_usd: float = MIN_TRACKED_TRADE_SIZE_USD
    min_confidence: float = MIN_TRACKED_CONFIDENCE_LEVEL
    use_optimal_filter: bool = USE_OPTIMAL_CONFIDENCE_FILTER
    optimal_min: float = OPTIMAL_CONFIDENCE_MIN


def matches_keywords(event: TradeEvent, keywords: list[str]) -> bool:
    """Any keyword (or its alias) appears in the title, slugs or outcome."""
    if not keywords:
        return True
    haystack = " ".join(
        (event.title, event.slug, event.event_slug, event.outcome)
    ).lower()
    for kw in keywords:
        needle = kw.strip().lower()
        if not needle:
            continue
        if needle in haystack:
            return True
        alias = _KEYWORD_ALIASES.get(needle)
        if alias and alias in haystack:
            return True
    return False


class TradeIntake:
    """Turns the tracked wallet's activity feed into new, filtered events."""

    def __init__(
        self,
        data_client: DataClient,
        context: EngineContext,
        filters: Optional[IntakeFilters] = None,
        *,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._data = data_client
        self._ctx = context
        self.filters = filters or IntakeFilters()
        self._notifier = notifier or LogNotifier()

    async def poll(self) -> list[TradeEvent]:
        """Fetch activity and return the new events to copy, oldest first."""
        raw_items = await self._data.fetch_activity(self._ctx.wallet)
        events: list[TradeEvent] = []
        for raw in raw_items:
            if self.filters.trades_only and not raw.get("transactionHash"):
                continue
            event = DataClient.parse_activity(raw)
            if event is not None:
                events.append(event)

        if not self._ctx.seeded:
            for event in events:
                self._ctx.mark_seen(event.event_id)
            self._ctx.seeded = True
            logger.info("intake_seeded", extra={"events": len(events)})
            return []

        fresh = [e for e in events if not self._ctx.has_seen(e.event_id)]
        fresh.sort(key=lambda e: e.timestamp)

        accepted: list[TradeEvent] = []
        for event in fresh:
            if not self._ctx.mark_seen(event.event_id):
                continue
            reason = self.filter_reason(event)
            if reason is not None:
                self._ctx.skipped += 1
                logger.info(
                    "trade_filtered",
                    extra={
                        "event_id": event.event_id,
                        "token_id": event.token_id,
                        "side": event.side.value,
                        "reason": reason,
                    },
                )
                await self._notifier.notify(
                    "trade_filtered",
                    f"Filtered {event.side.value} on {event.title or event.token_id}: {reason}",
                    token_id=event.token_id,
                    reason=reason,
                )
                continue
            accepted.append(event)

        if fresh:
            logger.info(
                "intake_polled",
                extra={"new": len(fresh), "accepted": len(accepted)},
            )
        return accepted

    def filter_reason(self, event: TradeEvent) -> Optional[str]:
        """Why ``event`` should not be copied, or None if it should."""
        f = self.filters
        if not (f.auto_trade_enabled and f.copy_trade_enabled):
            return "copy_trading_disabled"
        if not event.condition_id:
            return "missing_condition_id"
        if event.side == Side.SELL and not f.copy_sell_orders:
            return "sell_copy_disabled"
        if not matches_keywords(event, f.keywords):
            return "market_filter"
        if f.min_trade_size_usd > 0 and event.notional < f.min_trade_size_usd:
            return "below_min_trade_size"

        min_confidence = 0.0 if f.use_optimal_filter else f.min_confidence
        if min_confidence > 0 and event.price < min_confidence:
            return "below_min_confidence"
        if f.use_optimal_filter and event.side == Side.BUY and event.price < f.optimal_min:
            return "below_optimal_confidence"
        return None

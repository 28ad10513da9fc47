"""Order sizer: turns a tracked trade into our order size.

BUY tiers, in priority order:

1. High-confidence add: the tracked price sits in the add band. A fixed
   add size, once per token, never floored to the exchange minimum.
2. Optimal: the tracked price sits in the optimal band, so the base amount
   is scaled by the optimal multiplier.
3. Base: the configured base amount, optionally halved.

Tiers 2 and 3 share one "initial trade" slot per token. Both slots are
consumed by the caller only after a confirmed fill.

SELL orders mirror the fraction of the tracked position that was sold.
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from copytrader.config import (
    ADD_HIGH_CONFIDENCE_ENABLED,
    ADD_HIGH_CONFIDENCE_MAX,
    ADD_HIGH_CONFIDENCE_MIN,
    ADD_HIGH_CONFIDENCE_SIZE_USD,
    AUTO_TRADE_AMOUNT_USD,
    HIGH_CONFIDENCE_THRESHOLD_USD,
    LOW_CONFIDENCE_THRESHOLD_USD,
    MAX_BET_AMOUNT_PER_MARKET_USD,
    MAX_ORDER_VALUE_USD,
    MIN_ORDER_VALUE_USD,
    OPTIMAL_CONFIDENCE_ENABLED,
    OPTIMAL_CONFIDENCE_MAX,
    OPTIMAL_CONFIDENCE_MIN,
    OPTIMAL_CONFIDENCE_MULTIPLIER,
    USE_HALF_SIZE_INITIAL_TRADES,
)
from copytrader.execution.context import EngineContext
from copytrader.execution.types import Side, TradeEvent

logger = logging.getLogger(__name__)


class SizingTier(str, Enum):
    HIGH_CONFIDENCE_ADD = "high_confidence_add"
    OPTIMAL = "optimal"
    BASE = "base"
    SELL = "sell"


class SizingDecision(BaseModel):
    """What to order, or why not."""

    notional: float = 0.0
    shares: float = 0.0
    price: float = 0.0
    tier: Optional[SizingTier] = None
    skip: bool = False
    reason: str = ""
    adjusted: bool = False
    confidence: str = ""

    @classmethod
    def skipped(cls, reason: str, tier: Optional[SizingTier] = None, **kw) -> SizingDecision:
        return cls(skip=True, reason=reason, tier=tier, **kw)


class SizingConfig(BaseModel):
    """Sizing knobs; defaults come from the environment."""

    base_amount: float = AUTO_TRADE_AMOUNT_USD
    min_order_value: float = MIN_ORDER_VALUE_USD
    max_order_value: float = MAX_ORDER_VALUE_USD
    max_bet_per_market: float = MAX_BET_AMOUNT_PER_MARKET_USD
    half_size_initial: bool = USE_HALF_SIZE_INITIAL_TRADES
    optimal_enabled: bool = OPTIMAL_CONFIDENCE_ENABLED
    optimal_min: float = OPTIMAL_CONFIDENCE_MIN
    optimal_max: float = OPTIMAL_CONFIDENCE_MAX
    optimal_multiplier: float = OPTIMAL_CONFIDENCE_MULTIPLIER
    add_enabled: bool = ADD_HIGH_CONFIDENCE_ENABLED
    add_min: float = ADD_HIGH_CONFIDENCE_MIN
    add_max: float = ADD_HIGH_CONFIDENCE_MAX
    add_size: float = ADD_HIGH_CONFIDENCE_SIZE_USD
    high_confidence_usd: float = HIGH_CONFIDENCE_THRESHOLD_USD
    low_confidence_usd: float = LOW_CONFIDENCE_THRESHOLD_USD

    @property
    def max_bet(self) -> float:
        """Per-token cap: the per-market limit if set, else the order max."""
        if self.max_bet_per_market > 0:
            return self.max_bet_per_market
        return self.max_order_value


def _floor2(value: float) -> float:
    return math.floor(value * 100 + 1e-9) / 100


class OrderSizer:
    """Sizes mirrored orders against per-token tier state in the context."""

    def __init__(self, context: EngineContext, config: Optional[SizingConfig] = None) -> None:
        self._ctx = context
        self.config = config or SizingConfig()

    def confidence_label(self, event: TradeEvent) -> str:
        """Bucket the tracked trade by its USDC size."""
        if event.notional >= self.config.high_confidence_usd:
            return "high"
        if event.notional <= self.config.low_confidence_usd:
            return "low"
        return "medium"

    def size(
        self,
        event: TradeEvent,
        current_position_value: float,
        held_shares: float = 0.0,
        tracked_remaining_shares: Optional[float] = None,
    ) -> SizingDecision:
        """Size our order for ``event``.

        Args:
            event: The tracked trade.
            current_position_value: Our cost basis already in this token (USDC).
            held_shares: Our shares in this token (SELL only).
            tracked_remaining_shares: Tracked wallet's shares left after the
                sell, if known (SELL only).
        """
        if event.side == Side.SELL:
            decision = self._size_sell(event, current_position_value, held_shares, tracked_remaining_shares)
        else:
            decision = self._size_buy(event, current_position_value)

        logger.info(
            "order_sized",
            extra={
                "event_id": event.event_id,
                "token_id": event.token_id,
                "side": event.side.value,
                "tier": decision.tier.value if decision.tier else None,
                "notional": decision.notional,
                "skip": decision.skip,
                "reason": decision.reason,
                "adjusted": decision.adjusted,
            },
        )
        return decision

    # ------------------------------------------------------------------
    # BUY
    # ------------------------------------------------------------------

    def _size_buy(self, event: TradeEvent, current: float) -> SizingDecision:
        cfg = self.config
        price = event.price
        confidence = self.confidence_label(event)
        max_bet = cfg.max_bet
        current = max(0.0, current)

        if price <= 0:
            return SizingDecision.skipped("invalid_price", confidence=confidence)

        if cfg.add_enabled and cfg.add_min <= price <= cfg.add_max:
            tier = SizingTier.HIGH_CONFIDENCE_ADD
            if self._ctx.high_confidence_placed(event.token_id):
                return SizingDecision.skipped("high_confidence_already_placed", tier, confidence=confidence)
            remaining = max(0.0, max_bet - current)
            if remaining < min(cfg.add_size, cfg.min_order_value):
                return SizingDecision.skipped("no_room_for_min_order", tier, confidence=confidence)
            value = min(cfg.add_size, remaining)
        else:
            if self._ctx.initial_placed(event.token_id):
                return SizingDecision.skipped("initial_trade_already_placed", confidence=confidence)
            value = cfg.base_amount
            tier = SizingTier.BASE
            if cfg.optimal_enabled and cfg.optimal_min <= price <= cfg.optimal_max:
                value *= cfg.optimal_multiplier
                tier = SizingTier.OPTIMAL
            value = min(value, max_bet)
            if cfg.half_size_initial:
                value /= 2

        adjusted = False
        remaining = max(0.0, max_bet - current)
        if remaining <= 0:
            return SizingDecision.skipped("max_bet_reached", tier, confidence=confidence)

        if value > remaining:
            value = remaining
            adjusted = True

        if value > cfg.max_order_value:
            value = cfg.max_order_value
            adjusted = True

        if tier != SizingTier.HIGH_CONFIDENCE_ADD and value < cfg.min_order_value:
            floor = cfg.min_order_value / 2 if cfg.half_size_initial else cfg.min_order_value
            if value < floor:
                if current + floor > max_bet:
                    return SizingDecision.skipped("min_order_exceeds_cap", tier, confidence=confidence)
                value = floor
                adjusted = True

        notional = _floor2(value)
        return SizingDecision(
            notional=notional,
            shares=_floor2(notional / price),
            price=price,
            tier=tier,
            adjusted=adjusted,
            confidence=confidence,
        )

    # ------------------------------------------------------------------
    # SELL
    # ------------------------------------------------------------------

    def _size_sell(
        self,
        event: TradeEvent,
        current: float,
        held: float,
        tracked_remaining: Optional[float],
    ) -> SizingDecision:
        cfg = self.config
        price = event.price
        if current <= 0 or held <= 0:
            return SizingDecision.skipped("no_position", SizingTier.SELL)
        if price <= 0:
            return SizingDecision.skipped("invalid_price", SizingTier.SELL)

        tracked_sold = event.size if event.size > 0 else event.usdc_size / price
        adjusted = False
        if tracked_remaining is not None and tracked_remaining + tracked_sold > 0:
            fraction = tracked_sold / (tracked_remaining + tracked_sold)
            shares = held * fraction
        else:
            shares = min(tracked_sold, held)
            adjusted = True

        min_shares = cfg.min_order_value / price
        if shares < min_shares:
            shares = min_shares
            adjusted = True
        if shares > held:
            shares = held
            adjusted = True

        return SizingDecision(
            notional=shares * price,
            shares=shares,
            price=price,
            tier=SizingTier.SELL,
            adjusted=adjusted,
        )

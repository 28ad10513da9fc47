"""Tests for the order sizer.

Tests cover:
  - Base, optimal and half-size tiers
  - High-confidence add tier and its once-per-token rule
  - Per-market cap, exchange minimum floor and skip reasons
  - Proportional SELL sizing and its fallbacks
"""

import pytest

from copytrader.execution.context import EngineContext
from copytrader.execution.sizer import OrderSizer, SizingConfig, SizingTier
from copytrader.execution.types import Side, TradeEvent

WALLET = "0x" + "a" * 40


def _event(side=Side.BUY, price=0.5, size=20.0, usdc_size=None, token_id="tok-1"):
    return TradeEvent(
        event_id=f"0xhash-{token_id}-{side.value}-{price}",
        side=side,
        token_id=token_id,
        condition_id="0xcond",
        outcome="Yes",
        price=price,
        size=size,
        usdc_size=size * price if usdc_size is None else usdc_size,
        title="Will it rain - Tuesday",
    )


def _config(**overrides):
    base = dict(
        base_amount=10.0,
        min_order_value=1.0,
        max_order_value=100.0,
        max_bet_per_market=0.0,
        half_size_initial=False,
        optimal_enabled=False,
        optimal_min=0.60,
        optimal_max=0.80,
        optimal_multiplier=1.5,
        add_enabled=False,
        add_min=0.90,
        add_max=0.97,
        add_size=5.0,
        high_confidence_usd=500.0,
        low_confidence_usd=50.0,
    )
    base.update(overrides)
    return SizingConfig(**base)


# ============================================================
# BUY tiers
# ============================================================

class TestBuyTiers:
    """Tier selection for BUY events."""

    def setup_method(self):
        self.ctx = EngineContext(WALLET)

    def test_base_amount(self):
        sizer = OrderSizer(self.ctx, _config())
        decision = sizer.size(_event(price=0.5), 0.0)
        assert not decision.skip
        assert decision.tier == SizingTier.BASE
        assert decision.notional == pytest.approx(10.0)
        assert decision.shares == pytest.approx(20.0)

    def test_optimal_multiplier_in_band(self):
        sizer = OrderSizer(self.ctx, _config(optimal_enabled=True))
        decision = sizer.size(_event(price=0.70), 0.0)
        assert decision.tier == SizingTier.OPTIMAL
        assert decision.notional == pytest.approx(15.0)

    def test_optimal_ignored_outside_band(self):
        sizer = OrderSizer(self.ctx, _config(optimal_enabled=True))
        decision = sizer.size(_event(price=0.50), 0.0)
        assert decision.tier == SizingTier.BASE
        assert decision.notional == pytest.approx(10.0)

    def test_half_size_initial(self):
        sizer = OrderSizer(self.ctx, _config(half_size_initial=True))
        decision = sizer.size(_event(price=0.5), 0.0)
        assert decision.notional == pytest.approx(5.0)

    def test_initial_trade_only_once(self):
        sizer = OrderSizer(self.ctx, _config())
        self.ctx.mark_initial("tok-1")
        decision = sizer.size(_event(), 0.0)
        assert decision.skip
        assert decision.reason == "initial_trade_already_placed"

    def test_high_confidence_add(self):
        sizer = OrderSizer(self.ctx, _config(add_enabled=True))
        decision = sizer.size(_event(price=0.95), 0.0)
        assert decision.tier == SizingTier.HIGH_CONFIDENCE_ADD
        assert decision.notional == pytest.approx(5.0)

    def test_high_confidence_add_only_once(self):
        sizer = OrderSizer(self.ctx, _config(add_enabled=True))
        self.ctx.mark_high_confidence("tok-1")
        decision = sizer.size(_event(price=0.95), 0.0)
        assert decision.skip
        assert decision.reason == "high_confidence_already_placed"

    def test_high_confidence_add_independent_of_initial_slot(self):
        sizer = OrderSizer(self.ctx, _config(add_enabled=True))
        self.ctx.mark_initial("tok-1")
        decision = sizer.size(_event(price=0.95), 0.0)
        assert not decision.skip
        assert decision.tier == SizingTier.HIGH_CONFIDENCE_ADD

    def test_high_confidence_add_no_room(self):
        sizer = OrderSizer(self.ctx, _config(add_enabled=True, max_bet_per_market=10.0))
        decision = sizer.size(_event(price=0.95), 9.5)
        assert decision.skip
        assert decision.reason == "no_room_for_min_order"

    def test_high_confidence_add_capped_to_room(self):
        sizer = OrderSizer(self.ctx, _config(add_enabled=True, max_bet_per_market=10.0))
        decision = sizer.size(_event(price=0.95), 7.0)
        assert decision.notional == pytest.approx(3.0)

    def test_confidence_label(self):
        sizer = OrderSizer(self.ctx, _config())
        assert sizer.confidence_label(_event(size=2000, price=0.5)) == "high"
        assert sizer.confidence_label(_event(size=20, price=0.5)) == "low"
        assert sizer.confidence_label(_event(size=400, price=0.5)) == "medium"


# ============================================================
# Caps and floors
# ============================================================

class TestCapsAndFloors:
    """Per-market cap and exchange minimum."""

    def setup_method(self):
        self.ctx = EngineContext(WALLET)

    def test_capped_to_remaining_room(self):
        sizer = OrderSizer(self.ctx, _config(max_bet_per_market=12.0))
        decision = sizer.size(_event(), 8.0)
        assert decision.notional == pytest.approx(4.0)
        assert decision.adjusted

    def test_max_bet_reached(self):
        sizer = OrderSizer(self.ctx, _config(max_bet_per_market=12.0))
        decision = sizer.size(_event(), 12.0)
        assert decision.skip
        assert decision.reason == "max_bet_reached"

    def test_min_order_exceeds_cap(self):
        sizer = OrderSizer(self.ctx, _config(max_bet_per_market=20.0))
        decision = sizer.size(_event(), 19.5)
        assert decision.skip
        assert decision.reason == "min_order_exceeds_cap"

    def test_small_base_raised_to_minimum(self):
        sizer = OrderSizer(self.ctx, _config(base_amount=0.5))
        decision = sizer.size(_event(), 0.0)
        assert decision.notional == pytest.approx(1.0)
        assert decision.adjusted

    def test_half_size_uses_half_minimum(self):
        sizer = OrderSizer(self.ctx, _config(base_amount=0.6, half_size_initial=True))
        decision = sizer.size(_event(), 0.0)
        assert decision.notional == pytest.approx(0.5)

    def test_order_max_applies_without_market_cap(self):
        sizer = OrderSizer(self.ctx, _config(base_amount=500.0, max_order_value=50.0))
        decision = sizer.size(_event(), 0.0)
        assert decision.notional == pytest.approx(50.0)

    def test_buy_notional_within_room_or_skipped(self):
        """For any current value, a BUY is a skip or fits between the minimum and the room."""
        cap = 25.0
        for base in (0.4, 3.0, 10.0, 40.0):
            for current in (0.0, 5.0, 15.0, 23.9, 24.5, 25.0, 30.0):
                for price in (0.2, 0.5, 0.75):
                    ctx = EngineContext(WALLET)
                    sizer = OrderSizer(ctx, _config(base_amount=base, max_bet_per_market=cap))
                    decision = sizer.size(_event(price=price), current)
                    if decision.skip:
                        continue
                    room = max(0.0, cap - current)
                    assert decision.notional <= room + 1e-9
                    assert decision.notional >= 1.0


# ============================================================
# SELL
# ============================================================

class TestSellSizing:
    """Proportional sell mirroring."""

    def setup_method(self):
        self.sizer = OrderSizer(EngineContext(WALLET), _config())

    def test_no_position(self):
        decision = self.sizer.size(_event(side=Side.SELL), 0.0, held_shares=0.0)
        assert decision.skip
        assert decision.reason == "no_position"

    def test_proportional_fraction(self):
        event = _event(side=Side.SELL, price=0.5, size=30.0)
        decision = self.sizer.size(event, 50.0, held_shares=100.0, tracked_remaining_shares=30.0)
        assert decision.tier == SizingTier.SELL
        assert decision.shares == pytest.approx(50.0)
        assert decision.notional == pytest.approx(25.0)

    def test_full_exit_sells_everything(self):
        event = _event(side=Side.SELL, price=0.5, size=30.0)
        decision = self.sizer.size(event, 50.0, held_shares=100.0, tracked_remaining_shares=0.0)
        assert decision.shares == pytest.approx(100.0)

    def test_floored_to_minimum_value(self):
        event = _event(side=Side.SELL, price=0.5, size=1.0)
        decision = self.sizer.size(event, 50.0, held_shares=100.0, tracked_remaining_shares=999.0)
        assert decision.shares == pytest.approx(2.0)

    def test_never_more_than_held(self):
        event = _event(side=Side.SELL, price=0.5, size=1.0)
        decision = self.sizer.size(event, 0.5, held_shares=1.5, tracked_remaining_shares=100.0)
        assert decision.shares == pytest.approx(1.5)

    def test_unknown_tracked_position_copies_share_count(self):
        event = _event(side=Side.SELL, price=0.5, size=30.0)
        decision = self.sizer.size(event, 50.0, held_shares=100.0, tracked_remaining_shares=None)
        assert decision.shares == pytest.approx(30.0)

"""Tests for the paper-mode settlement monitor."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from copytrader.api.gamma_client import MarketInfo
from copytrader.execution.paper_ledger import PaperLedger
from copytrader.api.clob_client import BookUnavailable
from copytrader.execution.notifier import RecordingNotifier
from copytrader.execution.settlement import (
    SettlementMonitor,
    looks_inverted,
    snap_resolution,
    stop_loss_trusted,
)


def _book(bid=None, ask=None):
    return {
        "bids": [{"price": str(bid), "size": "100"}] if bid is not None else [],
        "asks": [{"price": str(ask), "size": "100"}] if ask is not None else [],
    }


class Clock:
    def __init__(self, now=10_000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestHelpers:
    def test_snap_resolution(self):
        assert snap_resolution(0.999) == 1.0
        assert snap_resolution(0.0005) == 0.0
        assert snap_resolution(0.5) is None

    def test_looks_inverted(self):
        assert looks_inverted(0.70, 0.0)
        assert looks_inverted(0.05, 1.0)
        assert not looks_inverted(0.70, 1.0)
        assert not looks_inverted(0.30, 0.0)

    def test_stop_loss_trusted(self):
        assert stop_loss_trusted(0.70, 0.02, confirmed=True)
        assert stop_loss_trusted(0.70, 0.50, confirmed=False)
        assert stop_loss_trusted(0.70, 0.02, confirmed=False)
        assert not stop_loss_trusted(0.05, 0.97, confirmed=False)
        assert not stop_loss_trusted(0.20, 0.03, confirmed=False)


class TestSettlementMonitor:
    """Settling paper positions from books and market metadata."""

    def setup_method(self):
        self.ledger = PaperLedger(None, initial_balance=100.0)
        # 10 shares at 0.70
        self.ledger.buy("t1", 7.0, 0.70, market="Rain - Tue", condition_id="0xc", outcome="Yes")
        self.rest = MagicMock()
        self.rest.fetch_orderbook = AsyncMock(return_value=_book(bid=0.5, ask=0.52))
        self.rest.fetch_midpoint = AsyncMock(return_value=None)
        self.gamma = MagicMock()
        self.gamma.token_id_for_outcome = AsyncMock(return_value="t1")
        self.gamma.fetch_market = AsyncMock(return_value=None)
        self.clock = Clock()

    def _monitor(self):
        return SettlementMonitor(
            self.ledger, self.rest, self.gamma,
            cooldown=300.0, stop_loss_enabled=False, clock=self.clock,
        )

    @pytest.mark.asyncio
    async def test_win_settles_at_one(self):
        self.rest.fetch_orderbook = AsyncMock(return_value=_book(bid=0.999))
        fills = await self._monitor().run_once()
        assert len(fills) == 1
        assert fills[0].price == 1.0
        assert fills[0].pnl == pytest.approx(10 * 0.3)
        assert self.ledger.position("t1") is None
        assert self.ledger.balance == pytest.approx(103.0)

    @pytest.mark.asyncio
    async def test_loss_settles_at_zero(self):
        self.rest.fetch_orderbook = AsyncMock(return_value=_book(bid=0.0005))
        fills = await self._monitor().run_once()
        assert fills[0].price == 0.0
        assert fills[0].pnl == pytest.approx(-10 * 0.70)

    @pytest.mark.asyncio
    async def test_still_trading_is_left_open(self):
        fills = await self._monitor().run_once()
        assert fills == []
        assert self.ledger.position("t1") is not None

    @pytest.mark.asyncio
    async def test_cooldown_between_checks(self):
        monitor = self._monitor()
        await monitor.run_once()
        await monitor.run_once()
        assert self.rest.fetch_orderbook.await_count == 1
        self.clock.now += 301
        await monitor.run_once()
        assert self.rest.fetch_orderbook.await_count == 2

    @pytest.mark.asyncio
    async def test_ask_used_when_no_bids(self):
        self.rest.fetch_orderbook = AsyncMock(return_value=_book(ask=0.9995))
        fills = await self._monitor().run_once()
        assert fills[0].price == 1.0

    @pytest.mark.asyncio
    async def test_unconfirmed_token_inverted_price_corrected(self):
        self.gamma.token_id_for_outcome = AsyncMock(return_value=None)
        self.rest.fetch_orderbook = AsyncMock(return_value=_book(bid=0.0005))
        fills = await self._monitor().run_once()
        assert fills[0].price == 1.0

    @pytest.mark.asyncio
    async def test_token_mismatch_prices_correct_token(self):
        self.gamma.token_id_for_outcome = AsyncMock(return_value="t-correct")
        self.rest.fetch_orderbook = AsyncMock(return_value=_book(bid=0.999))
        fills = await self._monitor().run_once()
        self.rest.fetch_orderbook.assert_awaited_once_with("t-correct")
        assert fills[0].token_id == "t1"
        assert fills[0].price == 1.0

    @pytest.mark.asyncio
    async def test_resolved_market_metadata_fallback(self):
        self.rest.fetch_orderbook = AsyncMock(return_value=None)
        self.gamma.fetch_market = AsyncMock(return_value=MarketInfo(
            condition_id="0xc",
            outcomes=["Yes", "No"],
            outcome_prices=[1.0, 0.0],
            token_ids=["t1", "t2"],
            closed=True,
            resolved=True,
        ))
        fills = await self._monitor().run_once()
        assert fills[0].price == 1.0
        assert fills[0].side == "SETTLEMENT"

    @pytest.mark.asyncio
    async def test_stream_book_preferred_when_fresh(self):
        from copytrader.execution.types import BookLevel, OrderBookSnapshot

        stream = MagicMock()
        stream.get_orderbook.return_value = OrderBookSnapshot(
            token_id="t1", bids=[BookLevel(price=0.9999, size=10)], captured_at=50.0
        )
        monitor = SettlementMonitor(
            self.ledger, self.rest, self.gamma, stream,
            cooldown=300.0, clock=self.clock, monotonic=lambda: 52.0,
        )
        fills = await monitor.run_once()
        assert fills[0].price == 1.0
        self.rest.fetch_orderbook.assert_not_awaited()


class TestPaperStopLoss:
    """Polled stop-loss on paper positions that are still trading."""

    def setup_method(self):
        self.ledger = PaperLedger(None, initial_balance=100.0)
        # 10 shares at 0.70
        self.ledger.buy("t1", 7.0, 0.70, market="Rain - Tue", condition_id="0xc", outcome="Yes")
        self.rest = MagicMock()
        self.rest.fetch_orderbook = AsyncMock(return_value=_book(bid=0.5, ask=0.52))
        self.rest.fetch_midpoint = AsyncMock(return_value=None)
        self.gamma = MagicMock()
        self.gamma.token_id_for_outcome = AsyncMock(return_value="t1")
        self.gamma.fetch_market = AsyncMock(return_value=None)
        self.notifier = RecordingNotifier()

    def _monitor(self, stream=None):
        return SettlementMonitor(
            self.ledger, self.rest, self.gamma, stream,
            notifier=self.notifier,
            cooldown=0.0,
            stop_loss_enabled=True,
            stop_loss_percentage=10.0,
            clock=Clock(),
        )

    @pytest.mark.asyncio
    async def test_confirmed_loss_sells_at_stop_price(self):
        fills = await self._monitor().run_once()
        assert len(fills) == 1
        assert fills[0].side == "STOP_LOSS"
        assert fills[0].price == pytest.approx(0.63)
        assert fills[0].pnl == pytest.approx(10 * (0.63 - 0.70))
        assert self.ledger.position("t1") is None
        assert self.ledger.balance == pytest.approx(93.0 + 6.3)
        assert self.notifier.events[-1]["event"] == "stop_loss_executed"
        assert self.ledger.summary()["losses"] == 1

    @pytest.mark.asyncio
    async def test_unconfirmed_needs_wider_loss(self):
        self.gamma.token_id_for_outcome = AsyncMock(return_value=None)
        # 11% loss: past 10% but short of 15%
        self.rest.fetch_orderbook = AsyncMock(return_value=_book(bid=0.623))
        assert await self._monitor().run_once() == []
        assert self.ledger.position("t1") is not None

        self.rest.fetch_orderbook = AsyncMock(return_value=_book(bid=0.56))
        fills = await self._monitor().run_once()
        assert fills[0].side == "STOP_LOSS"
        assert fills[0].price == pytest.approx(0.63)

    @pytest.mark.asyncio
    async def test_winning_price_does_not_fire(self):
        self.rest.fetch_orderbook = AsyncMock(return_value=_book(bid=0.75))
        assert await self._monitor().run_once() == []
        assert self.ledger.position("t1") is not None

    @pytest.mark.asyncio
    async def test_small_loss_does_not_fire(self):
        self.rest.fetch_orderbook = AsyncMock(return_value=_book(bid=0.66))
        assert await self._monitor().run_once() == []

    @pytest.mark.asyncio
    async def test_disabled(self):
        monitor = self._monitor()
        monitor.stop_loss_enabled = False
        assert await monitor.run_once() == []
        assert self.ledger.position("t1") is not None

    @pytest.mark.asyncio
    async def test_settlement_extreme_takes_precedence(self):
        self.rest.fetch_orderbook = AsyncMock(return_value=_book(bid=0.0005))
        fills = await self._monitor().run_once()
        assert fills[0].side == "SETTLEMENT"
        assert fills[0].price == 0.0

    @pytest.mark.asyncio
    async def test_book_outage_falls_back_to_midpoint(self):
        self.rest.fetch_orderbook = AsyncMock(side_effect=BookUnavailable("/book returned 503"))
        self.rest.fetch_midpoint = AsyncMock(return_value=0.5)
        fills = await self._monitor().run_once()
        assert fills[0].side == "STOP_LOSS"
        self.rest.fetch_midpoint.assert_awaited_once_with("t1")

    @pytest.mark.asyncio
    async def test_last_streamed_trade_used_without_book(self):
        stream = MagicMock()
        stream.get_orderbook.return_value = None
        stream.get_last_trade_price.return_value = 0.5
        self.rest.fetch_orderbook = AsyncMock(return_value=None)
        fills = await self._monitor(stream).run_once()
        assert fills[0].side == "STOP_LOSS"
        stream.get_last_trade_price.assert_called_once_with("t1")
        self.rest.fetch_midpoint.assert_not_awaited()

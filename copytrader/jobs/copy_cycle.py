"""Job: copy cycle (intake → sizing → risk → execution → protection).

On each cycle it:

1. Polls the tracked wallet for new trades (TradeIntake)
2. For each trade, oldest first:
   a. Sizes our order (OrderSizer)
   b. Runs the admission check (RiskLedger)
   c. Fills it in the paper ledger, or submits it live (OrderExecutor)
   d. Consumes the sizing tier and, live, arms the stop-loss
3. Live: confirms resting limit BUYs once their shares show up in our
   positions. Paper: checks open positions for settlement

Live BUYs accepted as resting limit orders are not fills: the tier is
consumed and the stop-loss armed only when the position grows.

All collaborators are injected; :func:`build_engine` wires the production
set from configuration.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from pydantic import BaseModel

from copytrader.api.clob_client import ClobClient
from copytrader.api.data_client import DataClient, DataUnavailable
from copytrader.api.gamma_client import GammaClient
from copytrader.api.ws_client import OrderbookStream
from copytrader.config import (
    AUTO_TRADE_USE_MARKET,
    PAPER_TRADING_ENABLED,
    PAPER_TRADING_INITIAL_BALANCE,
    PAPER_TRADING_STATE_FILE,
    POLYMARKET_FUNDER,
    POLYMARKET_PRIVATE_KEY,
    STOP_LOSS_STATE_FILE,
    TRACKED_WALLET,
)
from copytrader.execution.context import EngineContext
from copytrader.execution.engine import OrderExecutor, OrderKind, OrderRequest, OrderResponse
from copytrader.execution.faults import OrderFault
from copytrader.execution.notifier import LogNotifier, Notifier, RecordingNotifier
from copytrader.execution.paper_ledger import POSITION_EPSILON, LedgerError, PaperLedger
from copytrader.execution.risk_manager import LiveExposure, PaperExposure, RiskLedger
from copytrader.execution.settlement import SettlementMonitor
from copytrader.execution.signer import ClobOrderSigner
from copytrader.execution.sizer import OrderSizer, SizingDecision, SizingTier
from copytrader.execution.stop_loss import StopLossMonitor, StopLossStore
from copytrader.execution.types import OrderTypeHint, Side, TradeEvent
from copytrader.jobs.trade_intake import TradeIntake

logger = logging.getLogger(__name__)


class RestingOrder(BaseModel):
    """A live BUY accepted by the CLOB but not matched yet."""

    event: TradeEvent
    tier: Optional[SizingTier] = None
    order_id: str = ""
    price: float
    baseline_shares: float = 0.0


class CopyTradeEngine:
    """One copy-trading session."""

    def __init__(
        self,
        context: EngineContext,
        intake: TradeIntake,
        sizer: OrderSizer,
        risk: RiskLedger,
        executor: OrderExecutor,
        data_client: DataClient,
        *,
        ledger: Optional[PaperLedger] = None,
        stop_loss: Optional[StopLossMonitor] = None,
        settlement: Optional[SettlementMonitor] = None,
        stream: Optional[OrderbookStream] = None,
        notifier: Optional[Notifier] = None,
        funder_wallet: str = POLYMARKET_FUNDER,
        use_market_orders: bool = AUTO_TRADE_USE_MARKET,
        closables: Optional[list] = None,
    ) -> None:
        if context.paper_mode and ledger is None:
            raise ValueError("paper mode requires a PaperLedger")
        self.context = context
        self.intake = intake
        self.sizer = sizer
        self.risk = risk
        self.executor = executor
        self.ledger = ledger
        self.stop_loss = stop_loss
        self.settlement = settlement
        self.stream = stream
        self._data = data_client
        self._notifier = notifier or LogNotifier()
        self._funder = funder_wallet
        self.use_market_orders = use_market_orders
        self._closables = closables or []
        self._resting: dict[str, RestingOrder] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.stream is not None and self.stop_loss is not None:
            self.stream.set_price_callback(self.stop_loss.on_price)
            if not self.context.paper_mode:
                await self.stop_loss.restore()
        logger.info("copy_engine_started", extra=self.context.status())

    async def stop(self) -> None:
        if self.stream is not None:
            await self.stream.disconnect()
        for client in self._closables:
            try:
                await client.close()
            except Exception:
                logger.warning("client_close_error", exc_info=True)
        logger.info("copy_engine_stopped")

    def status(self) -> dict:
        status = self.context.status()
        if self.ledger is not None:
            status["paper"] = self.ledger.summary()
        if self.stop_loss is not None:
            status["stop_loss_records"] = len(self.stop_loss.store)
        if self.stream is not None:
            status["stream_connected"] = self.stream.is_connected
        if not self.context.paper_mode:
            status["resting_orders"] = len(self._resting)
        if isinstance(self._notifier, RecordingNotifier):
            status["recent_notifications"] = self._notifier.events[-10:]
        return status

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> int:
        """Poll, process every new trade, then settle. Returns trades copied."""
        self.context.last_poll_at = time.time()
        events = await self.intake.poll()
        copied = 0
        for event in events:
            try:
                if await self.process(event):
                    copied += 1
            except Exception:
                self.context.failed += 1
                logger.error("trade_process_error", extra={"event_id": event.event_id}, exc_info=True)

        if self.context.paper_mode:
            if self.settlement is not None:
                await self.settlement.run_once()
        elif self._resting:
            copied += await self.reconcile_resting()
        return copied

    async def process(self, event: TradeEvent) -> bool:
        """Mirror one trade. Returns True if an order was filled."""
        if not self.context.paper_mode and not self.executor.is_ready:
            await self._skip(event, "client_not_ready")
            return False
        if event.side == Side.BUY and event.token_id in self._resting:
            await self._skip(event, "order_resting")
            return False

        try:
            current_value, held_shares = await self._our_position(event.token_id)
        except DataUnavailable as exc:
            await self._skip(event, "position_unavailable", detail=str(exc))
            return False

        tracked_remaining: Optional[float] = None
        if event.side == Side.SELL:
            tracked_remaining = await self._tracked_remaining(event.token_id)

        decision = self.sizer.size(event, current_value, held_shares, tracked_remaining)
        if decision.skip:
            await self._skip(event, decision.reason)
            return False

        check = await self.risk.admit(event.side, decision.notional, event.token_id)
        if not check.allowed:
            await self._skip(event, check.reason.value, detail=check.message)
            return False

        if self.context.paper_mode:
            filled = await self._fill_paper(event, decision)
        else:
            filled = await self._fill_live(event, decision, held_shares)
        if not filled:
            return False

        self._consume_tier(event, decision.tier)
        self.context.processed += 1
        return True

    async def reconcile_resting(self) -> int:
        """Confirm resting limit BUYs whose shares now show in our positions.

        Returns the number of orders confirmed as filled.
        """
        confirmed = 0
        for token_id, order in list(self._resting.items()):
            try:
                pos = await self._data.fetch_position(self._funder, token_id)
            except DataUnavailable:
                continue
            shares = float(pos.get("size") or 0) if pos else 0.0
            if shares <= order.baseline_shares + POSITION_EPSILON:
                continue

            del self._resting[token_id]
            self._consume_tier(order.event, order.tier)
            self.context.processed += 1
            confirmed += 1
            logger.info(
                "resting_order_filled",
                extra={"token_id": token_id, "order_id": order.order_id, "shares": shares},
            )
            event = order.event
            await self._notifier.notify(
                "trade_copied",
                f"Limit BUY on {event.title or token_id} filled, now holding {shares:.2f} shares",
                token_id=token_id,
                order_id=order.order_id,
            )
            if self.stop_loss is not None:
                await self.stop_loss.arm(
                    token_id,
                    float(pos.get("avgPrice") or order.price),
                    shares,
                    market=event.title,
                    condition_id=event.condition_id,
                    outcome=event.outcome,
                    replace=True,
                )
        return confirmed

    # ------------------------------------------------------------------
    # Fills
    # ------------------------------------------------------------------

    async def _fill_paper(self, event: TradeEvent, decision: SizingDecision) -> bool:
        try:
            if event.side == Side.BUY:
                fill = self.ledger.buy(
                    event.token_id,
                    decision.notional,
                    event.price,
                    market=event.title,
                    condition_id=event.condition_id,
                    outcome=event.outcome,
                )
            else:
                fill = self.ledger.sell(event.token_id, decision.shares, event.price)
        except LedgerError as e:
            await self._skip(event, e.kind.value, detail=str(e))
            return False

        await self._notifier.notify(
            "paper_trade",
            f"[PAPER] {fill.side} {fill.shares:.2f} shares of {event.title or event.token_id} "
            f"at {fill.price:.3f} (${fill.value:.2f})",
            token_id=event.token_id,
            tier=decision.tier.value if decision.tier else None,
        )
        return True

    async def _fill_live(
        self, event: TradeEvent, decision: SizingDecision, held_shares: float
    ) -> bool:
        request = self.build_request(event, decision)
        try:
            response = await self.executor.execute(request)
        except OrderFault as fault:
            self.context.failed += 1
            await self._notifier.notify(
                "order_failed",
                f"Order failed for {event.title or event.token_id}: {fault}",
                token_id=event.token_id,
                kind=fault.kind.value,
            )
            return False

        if response.is_resting:
            if event.side == Side.BUY:
                self._resting[event.token_id] = RestingOrder(
                    event=event,
                    tier=decision.tier,
                    order_id=response.order_id,
                    price=response.price,
                    baseline_shares=held_shares,
                )
            logger.info(
                "order_resting",
                extra={"token_id": event.token_id, "order_id": response.order_id, "status": response.status},
            )
            await self._notifier.notify(
                "order_resting",
                f"{event.side.value} limit order for {response.shares:.2f} shares of "
                f"{event.title or event.token_id} at {response.price:.3f} is on the book",
                token_id=event.token_id,
                order_id=response.order_id,
            )
            return False

        await self._notifier.notify(
            "trade_copied",
            f"{event.side.value} {response.shares:.2f} shares of {event.title or event.token_id} "
            f"at {response.price:.3f}",
            token_id=event.token_id,
            order_id=response.order_id,
        )
        if event.side == Side.BUY and self.stop_loss is not None:
            await self._arm_stop_loss(event, response)
        return True

    def build_request(self, event: TradeEvent, decision: SizingDecision) -> OrderRequest:
        """Market (FOK) when configured or when the tracked fill was a market order."""
        market = self.use_market_orders or event.order_type == OrderTypeHint.MARKET
        if market:
            amount = decision.notional if event.side == Side.BUY else decision.shares
            return OrderRequest(
                token_id=event.token_id,
                side=event.side,
                order_type=OrderKind.FOK,
                amount=amount,
            )
        size = decision.shares if decision.shares > 0 else decision.notional / event.price
        return OrderRequest(
            token_id=event.token_id,
            side=event.side,
            order_type=OrderKind.GTC,
            price=event.price,
            size=round(size, 2),
        )

    async def _arm_stop_loss(self, event: TradeEvent, response: OrderResponse) -> None:
        actual: Optional[dict] = None
        try:
            actual = await self._data.fetch_position(self._funder, event.token_id)
        except DataUnavailable:
            logger.warning("stop_loss_entry_refresh_failed", extra={"token_id": event.token_id})

        if actual and float(actual.get("size") or 0) > 0:
            await self.stop_loss.arm(
                event.token_id,
                float(actual.get("avgPrice") or response.price),
                float(actual["size"]),
                market=event.title,
                condition_id=event.condition_id,
                outcome=event.outcome,
                replace=True,
            )
            return
        await self.stop_loss.arm(
            event.token_id,
            response.price,
            response.shares,
            market=event.title,
            condition_id=event.condition_id,
            outcome=event.outcome,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _consume_tier(self, event: TradeEvent, tier: Optional[SizingTier]) -> None:
        if event.side != Side.BUY:
            return
        if tier == SizingTier.HIGH_CONFIDENCE_ADD:
            self.context.mark_high_confidence(event.token_id)
        else:
            self.context.mark_initial(event.token_id)

    async def _our_position(self, token_id: str) -> tuple[float, float]:
        """(cost basis in USDC, shares) we hold in ``token_id``.

        Raises:
            DataUnavailable: live holdings could not be read.
        """
        if self.context.paper_mode:
            pos = self.ledger.position(token_id)
            return (pos.entry_value, pos.shares) if pos else (0.0, 0.0)
        pos = await self._data.fetch_position(self._funder, token_id)
        if not pos:
            return 0.0, 0.0
        shares = float(pos.get("size") or 0)
        value = float(pos.get("initialValue") or 0) or shares * float(pos.get("avgPrice") or 0)
        return value, shares

    async def _tracked_remaining(self, token_id: str) -> Optional[float]:
        """Tracked wallet's shares left in ``token_id``; None if unknown."""
        try:
            tracked = await self._data.fetch_position(self.context.wallet, token_id)
        except DataUnavailable:
            return None
        return float(tracked.get("size") or 0) if tracked else 0.0

    async def _skip(self, event: TradeEvent, reason: str, detail: str = "") -> None:
        self.context.skipped += 1
        logger.info(
            "trade_skipped",
            extra={"event_id": event.event_id, "token_id": event.token_id, "reason": reason},
        )
        await self._notifier.notify(
            "trade_skipped",
            f"Skipped {event.side.value} on {event.title or event.token_id}: {detail or reason}",
            token_id=event.token_id,
            reason=reason,
        )


async def build_engine(notifier: Optional[Notifier] = None) -> CopyTradeEngine:
    """Wire a production engine from configuration."""
    notifier = notifier or RecordingNotifier(LogNotifier())
    paper = PAPER_TRADING_ENABLED
    context = EngineContext(TRACKED_WALLET, paper_mode=paper)

    data = DataClient()
    gamma = GammaClient()
    clob = ClobClient()
    stream = OrderbookStream()

    signer: Optional[ClobOrderSigner] = None
    if not paper:
        signer = ClobOrderSigner(POLYMARKET_PRIVATE_KEY, POLYMARKET_FUNDER)
        await signer.initialize()

    executor = OrderExecutor(signer, clob, stream)
    sizer = OrderSizer(context)

    ledger: Optional[PaperLedger] = None
    settlement: Optional[SettlementMonitor] = None
    if paper:
        ledger = PaperLedger(
            PAPER_TRADING_STATE_FILE,
            initial_balance=PAPER_TRADING_INITIAL_BALANCE,
            max_bet_per_market=sizer.config.max_bet_per_market,
        )
        risk = RiskLedger(PaperExposure(ledger))
        settlement = SettlementMonitor(ledger, clob, gamma, stream, notifier=notifier)
    else:
        risk = RiskLedger(LiveExposure(data, POLYMARKET_FUNDER))

    stop_loss = StopLossMonitor(
        StopLossStore(STOP_LOSS_STATE_FILE),
        stream,
        executor,
        data,
        POLYMARKET_FUNDER,
        notifier=notifier,
    )
    if paper:
        stop_loss.enabled = False

    return CopyTradeEngine(
        context,
        TradeIntake(data, context, notifier=notifier),
        sizer,
        risk,
        executor,
        data,
        ledger=ledger,
        stop_loss=stop_loss,
        settlement=settlement,
        stream=stream,
        notifier=notifier,
        closables=[data, gamma, clob],
    )

"""Settlement monitor: closes paper positions once their market resolves.

Runs once per poll cycle in paper mode. Each position is re-checked at
most once per cooldown. A position settles when its token trades at a
resolution extreme (>= 0.999 pays 1.0, <= 0.001 pays 0.0) or when the
market metadata reports it resolved.

The token ID is confirmed against market metadata (condition + outcome)
before pricing. When no confirmation is possible, a price that looks like
the opposite outcome's (entry > 0.5 priced under 0.05, or entry < 0.1
priced over 0.9) is treated as inverted and replaced by ``1 - price``.

Paper positions that are still trading get a polled stop-loss: a loss of
at least ``stop_loss_percentage`` (1.5x that for unconfirmed tokens) sells
the whole position at the stop price ``entry * (1 - pct)``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Optional

from copytrader.api.clob_client import BookUnavailable
from copytrader.config import (
    BOOK_FRESHNESS_SECONDS,
    SETTLEMENT_MAX_COOLDOWN_SECONDS,
    STOP_LOSS_CHECK_INTERVAL_MS,
    STOP_LOSS_ENABLED,
    STOP_LOSS_PERCENTAGE,
)
from copytrader.execution.notifier import LogNotifier, Notifier
from copytrader.execution.paper_ledger import PaperFill, PaperLedger, Position
from copytrader.execution.types import OrderBookSnapshot

logger = logging.getLogger(__name__)

WIN_THRESHOLD = 0.999
LOSS_THRESHOLD = 0.001
UNCONFIRMED_STOP_MULTIPLIER = 1.5


def default_cooldown() -> float:
    if STOP_LOSS_ENABLED:
        return min(STOP_LOSS_CHECK_INTERVAL_MS / 1000, SETTLEMENT_MAX_COOLDOWN_SECONDS)
    return SETTLEMENT_MAX_COOLDOWN_SECONDS


def snap_resolution(price: float) -> Optional[float]:
    """Resolution payout implied by ``price``, or None while still trading."""
    if price >= WIN_THRESHOLD:
        return 1.0
    if price <= LOSS_THRESHOLD:
        return 0.0
    return None


def looks_inverted(entry_price: float, price: float) -> bool:
    return (entry_price > 0.5 and price < 0.05) or (entry_price < 0.1 and price > 0.9)


def stop_loss_trusted(entry_price: float, price: float, confirmed: bool) -> bool:
    """Whether ``price`` can be acted on for a stop-loss.

    A confirmed token is always trusted. Otherwise the price must not look
    inverted, unless the drop is so deep (> 80% from an entry above 0.3)
    that it is a loss either way.
    """
    if confirmed:
        return True
    inverted = looks_inverted(entry_price, price)
    loss_pct = (entry_price - price) / entry_price * 100
    deep_drop = entry_price > 0.3 and price < 0.1
    if deep_drop and loss_pct > 80:
        return True
    if deep_drop and loss_pct > 50 and not inverted:
        return True
    return not inverted and 0.05 < price < 0.95


class SettlementMonitor:
    """Checks paper positions for resolution and settles them in the ledger."""

    def __init__(
        self,
        ledger: PaperLedger,
        rest_books,
        gamma,
        stream_books=None,
        *,
        notifier: Optional[Notifier] = None,
        cooldown: Optional[float] = None,
        stop_loss_enabled: bool = STOP_LOSS_ENABLED,
        stop_loss_percentage: float = STOP_LOSS_PERCENTAGE,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ledger = ledger
        self._rest_books = rest_books
        self._gamma = gamma
        self._stream_books = stream_books
        self._notifier = notifier or LogNotifier()
        self.cooldown = default_cooldown() if cooldown is None else cooldown
        self.stop_loss_enabled = stop_loss_enabled
        self.stop_loss_percentage = stop_loss_percentage
        self._clock = clock
        self._monotonic = monotonic

    async def run_once(self) -> list[PaperFill]:
        """Check every position that is out of cooldown. Returns the closing fills."""
        now = self._clock()
        closed: list[PaperFill] = []
        for token_id, pos in self._ledger.positions.items():
            if pos.last_checked is not None and now - pos.last_checked < self.cooldown:
                continue
            self._ledger.mark_checked(token_id, now)
            try:
                fill = await self.check_position(pos)
            except Exception:
                logger.error("settlement_check_error", extra={"token_id": token_id}, exc_info=True)
                continue
            if fill is not None:
                closed.append(fill)
        return closed

    async def check_position(self, pos: Position) -> Optional[PaperFill]:
        """Settle ``pos`` if resolved, stop it out if it breached the stop, else None."""
        price_token = pos.token_id
        confirmed = False
        if pos.condition_id and pos.outcome:
            resolved_token = await self._gamma.token_id_for_outcome(pos.condition_id, pos.outcome)
            if resolved_token:
                confirmed = True
                if resolved_token != pos.token_id:
                    logger.warning(
                        "settlement_token_mismatch",
                        extra={"token_id": pos.token_id, "resolved_token_id": resolved_token},
                    )
                    price_token = resolved_token

        settle_price: Optional[float] = None
        observed = await self.current_price(price_token)
        if observed is not None:
            settle_price = snap_resolution(observed)
            if settle_price is None:
                return await self._check_stop_loss(pos, observed, confirmed)
        elif pos.condition_id:
            info = await self._gamma.fetch_market(pos.condition_id)
            if info is not None and info.resolved:
                final = info.final_price(price_token)
                if final is None and info.outcome_prices:
                    final = info.outcome_prices[0]
                else:
                    confirmed = confirmed or final is not None
                if final is not None:
                    settle_price = snap_resolution(final)
                    if settle_price is None:
                        settle_price = final

        if settle_price is None:
            return None

        if not confirmed and looks_inverted(pos.avg_price, settle_price):
            logger.warning(
                "settlement_price_inverted",
                extra={
                    "token_id": pos.token_id,
                    "entry_price": pos.avg_price,
                    "observed": settle_price,
                    "corrected": 1 - settle_price,
                },
            )
            settle_price = 1 - settle_price

        fill = self._ledger.settle(pos.token_id, settle_price)
        logger.info(
            "position_settled",
            extra={"token_id": pos.token_id, "price": settle_price, "pnl": fill.pnl},
        )
        await self._notifier.notify(
            "position_settled",
            f"Settled {fill.shares:.2f} shares of {pos.market or pos.token_id} "
            f"at {settle_price:.2f}, P&L ${fill.pnl:.2f}",
            token_id=pos.token_id,
            pnl=round(fill.pnl, 2),
        )
        return fill

    async def _check_stop_loss(
        self, pos: Position, price: float, confirmed: bool
    ) -> Optional[PaperFill]:
        entry = pos.avg_price
        if not self.stop_loss_enabled or entry <= 0:
            return None
        if not stop_loss_trusted(entry, price, confirmed):
            return None
        if price > 0.9 or price >= entry:
            return None

        loss_pct = (entry - price) / entry * 100
        required = self.stop_loss_percentage
        if not confirmed:
            required *= UNCONFIRMED_STOP_MULTIPLIER
        if loss_pct < required:
            return None

        stop_price = entry * (1 - self.stop_loss_percentage / 100)
        fill = self._ledger.sell(pos.token_id, pos.shares, stop_price, side="STOP_LOSS")
        logger.warning(
            "paper_stop_loss_triggered",
            extra={
                "token_id": pos.token_id,
                "entry_price": entry,
                "price": price,
                "stop_price": stop_price,
                "loss_pct": round(loss_pct, 2),
                "confirmed": confirmed,
            },
        )
        await self._notifier.notify(
            "stop_loss_executed",
            f"[PAPER] Stop-loss sold {fill.shares:.2f} shares of {pos.market or pos.token_id} "
            f"at {stop_price:.3f} ({loss_pct:.1f}% loss), P&L ${fill.pnl:.2f}",
            token_id=pos.token_id,
            pnl=round(fill.pnl, 2),
        )
        return fill

    async def current_price(self, token_id: str) -> Optional[float]:
        """Best bid, else best ask, else last streamed price, else midpoint."""
        book: Optional[OrderBookSnapshot] = None
        if self._stream_books is not None:
            snap = self._stream_books.get_orderbook(token_id)
            if snap is not None and snap.is_fresh(self._monotonic(), BOOK_FRESHNESS_SECONDS):
                book = snap
        if book is None:
            try:
                raw = await self._rest_books.fetch_orderbook(token_id)
            except BookUnavailable:
                raw = None
            if raw is not None:
                book = OrderBookSnapshot.from_raw(raw, captured_at=self._monotonic())

        if book is not None:
            if book.best_bid is not None:
                return book.best_bid
            if book.best_ask is not None:
                return book.best_ask
        if self._stream_books is not None:
            last = self._stream_books.get_last_trade_price(token_id)
            if last is not None:
                return last
        return await self._rest_books.fetch_midpoint(token_id)

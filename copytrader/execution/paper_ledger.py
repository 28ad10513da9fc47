"""Paper trading ledger: simulated balance, positions and realized P&L.

Used instead of the live executor when paper trading is enabled. The
ledger is persisted as a single JSON document after every mutation
(written to a temp file and swapped in with ``os.replace``) and reloaded
on construction, so a restart resumes where it left off.

Invariants:
- ``shares * avg_price == entry_value`` for every position (within float noise)
- ``shares >= 0``; positions at or below ``POSITION_EPSILON`` are removed
- a buy debits exactly its cost, a sell credits exactly its proceeds
"""

from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field

from copytrader.config import PAPER_HISTORY_LIMIT, PAPER_TRADING_INITIAL_BALANCE

logger = logging.getLogger(__name__)

POSITION_EPSILON = 0.001


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class Position(BaseModel):
    """A simulated open position in one outcome token."""

    token_id: str
    shares: float = Field(default=0.0, ge=0.0)
    avg_price: float = Field(default=0.0, description="Cost-weighted average entry.")
    entry_value: float = Field(default=0.0, description="Cost basis still held (USDC).")
    market: str = ""
    condition_id: str = ""
    outcome: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_checked: Optional[float] = Field(
        default=None, description="Epoch seconds of the last settlement check."
    )


class PaperFill(BaseModel):
    """One ledger entry."""

    side: str = Field(..., description="BUY, SELL or SETTLEMENT.")
    token_id: str
    shares: float
    price: float
    value: float
    pnl: float = 0.0
    balance_after: float = 0.0
    market: str = ""
    outcome: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class LedgerState(BaseModel):
    """Everything that is persisted."""

    balance: float
    initial_balance: float
    positions: dict[str, Position] = Field(default_factory=dict)
    trade_history: list[PaperFill] = Field(default_factory=list)
    realized_pnl: float = 0.0


class LedgerErrorKind(str, Enum):
    CAP_EXCEEDED = "cap_exceeded"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    NO_POSITION = "no_position"
    INVALID_ORDER = "invalid_order"


class LedgerError(Exception):
    """A rejected simulated trade. The ledger is left unchanged."""

    def __init__(self, kind: LedgerErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class PaperLedger:
    """Simulated portfolio.

    Attributes:
        max_bet_per_market: Per-token cost-basis cap; 0 disables it.
    """

    def __init__(
        self,
        state_file: Union[str, Path, None] = None,
        initial_balance: float = PAPER_TRADING_INITIAL_BALANCE,
        max_bet_per_market: float = 0.0,
        history_limit: int = PAPER_HISTORY_LIMIT,
    ) -> None:
        self._path = Path(state_file) if state_file else None
        self.max_bet_per_market = max_bet_per_market
        self._history_limit = history_limit
        self._state = LedgerState(balance=initial_balance, initial_balance=initial_balance)
        self._load()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def balance(self) -> float:
        return self._state.balance

    @property
    def realized_pnl(self) -> float:
        return self._state.realized_pnl

    @property
    def positions(self) -> dict[str, Position]:
        return dict(self._state.positions)

    @property
    def trade_history(self) -> list[PaperFill]:
        return list(self._state.trade_history)

    def position(self, token_id: str) -> Optional[Position]:
        return self._state.positions.get(token_id)

    def position_value(self, token_id: str) -> float:
        pos = self._state.positions.get(token_id)
        return pos.entry_value if pos else 0.0

    def exposure(self) -> float:
        return sum(p.entry_value for p in self._state.positions.values())

    def position_count(self) -> int:
        return len(self._state.positions)

    def summary(self) -> dict:
        """Balance, P&L and win/loss counts over closed trades."""
        closed = [f for f in self._state.trade_history if f.side != "BUY"]
        wins = sum(1 for f in closed if f.pnl > 0)
        losses = sum(1 for f in closed if f.pnl < 0)
        exposure = self.exposure()
        return {
            "balance": round(self._state.balance, 2),
            "initial_balance": self._state.initial_balance,
            "realized_pnl": round(self._state.realized_pnl, 2),
            "total_positions": self.position_count(),
            "total_exposure": round(exposure, 2),
            "total_value": round(self._state.balance + exposure, 2),
            "wins": wins,
            "losses": losses,
            "win_rate": wins / (wins + losses) if wins + losses else 0.0,
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def buy(
        self,
        token_id: str,
        notional: float,
        price: float,
        market: str = "",
        condition_id: str = "",
        outcome: str = "",
    ) -> PaperFill:
        """Buy ``notional`` USDC of ``token_id`` at ``price``.

        The cost is capped to the room left under ``max_bet_per_market``.

        Raises:
            LedgerError: CAP_EXCEEDED, INSUFFICIENT_BALANCE or INVALID_ORDER.
        """
        if price <= 0 or notional <= 0:
            raise LedgerError(LedgerErrorKind.INVALID_ORDER, "price and notional must be positive")

        existing = self._state.positions.get(token_id)
        cost = notional
        if self.max_bet_per_market > 0:
            current = existing.entry_value if existing else 0.0
            remaining = max(0.0, self.max_bet_per_market - current)
            if remaining <= 0:
                raise LedgerError(
                    LedgerErrorKind.CAP_EXCEEDED,
                    f"max bet ${self.max_bet_per_market:.2f} already reached for {token_id}",
                )
            cost = min(cost, remaining)

        if self._state.balance < cost:
            raise LedgerError(
                LedgerErrorKind.INSUFFICIENT_BALANCE,
                f"Insufficient balance: ${self._state.balance:.2f} < ${cost:.2f}",
            )

        shares = cost / price
        self._state.balance -= cost

        if existing is None:
            self._state.positions[token_id] = Position(
                token_id=token_id,
                shares=shares,
                avg_price=price,
                entry_value=cost,
                market=market,
                condition_id=condition_id,
                outcome=outcome,
            )
        else:
            total_shares = existing.shares + shares
            total_cost = existing.entry_value + cost
            existing.shares = total_shares
            existing.entry_value = total_cost
            existing.avg_price = total_cost / total_shares

        fill = PaperFill(
            side="BUY",
            token_id=token_id,
            shares=shares,
            price=price,
            value=cost,
            balance_after=self._state.balance,
            market=market,
            outcome=outcome,
        )
        self._record(fill)
        logger.info(
            "paper_buy",
            extra={"token_id": token_id, "cost": cost, "shares": shares, "price": price},
        )
        return fill

    def sell(self, token_id: str, shares: float, price: float, side: str = "SELL") -> PaperFill:
        """Sell up to ``shares`` of ``token_id`` at ``price``.

        ``side`` labels the fill in the history (``"STOP_LOSS"`` for stop exits).

        Raises:
            LedgerError: NO_POSITION if nothing is held.
        """
        return self._close(token_id, shares, price, side=side)

    def settle(self, token_id: str, price: float) -> PaperFill:
        """Close the whole position at its resolution price."""
        pos = self._state.positions.get(token_id)
        if pos is None:
            raise LedgerError(LedgerErrorKind.NO_POSITION, f"no position in {token_id}")
        return self._close(token_id, pos.shares, price, side="SETTLEMENT")

    def mark_checked(self, token_id: str, now: Optional[float] = None) -> None:
        pos = self._state.positions.get(token_id)
        if pos is not None:
            pos.last_checked = now if now is not None else time.time()
            self._save()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _close(self, token_id: str, shares: float, price: float, side: str) -> PaperFill:
        pos = self._state.positions.get(token_id)
        if pos is None or pos.shares <= 0:
            raise LedgerError(LedgerErrorKind.NO_POSITION, f"no position in {token_id}")
        if shares <= 0 or price < 0:
            raise LedgerError(LedgerErrorKind.INVALID_ORDER, "shares must be positive")

        sold = min(shares, pos.shares)
        proceeds = sold * price
        pnl = (price - pos.avg_price) * sold

        self._state.balance += proceeds
        self._state.realized_pnl += pnl
        pos.shares -= sold
        pos.entry_value = max(0.0, pos.entry_value - sold * pos.avg_price)
        if pos.shares <= POSITION_EPSILON:
            del self._state.positions[token_id]

        fill = PaperFill(
            side=side,
            token_id=token_id,
            shares=sold,
            price=price,
            value=proceeds,
            pnl=pnl,
            balance_after=self._state.balance,
            market=pos.market,
            outcome=pos.outcome,
        )
        self._record(fill)
        logger.info(
            "paper_settlement" if side == "SETTLEMENT" else "paper_sell",
            extra={"token_id": token_id, "shares": sold, "price": price, "pnl": pnl},
        )
        return fill

    def _record(self, fill: PaperFill) -> None:
        history = self._state.trade_history
        history.append(fill)
        if len(history) > self._history_limit:
            del history[: len(history) - self._history_limit]
        self._save()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text())
            self._state = LedgerState.model_validate(raw)
            logger.info(
                "paper_ledger_loaded",
                extra={
                    "balance": self._state.balance,
                    "positions": len(self._state.positions),
                },
            )
        except Exception:
            logger.error("paper_ledger_load_error", extra={"path": str(self._path)}, exc_info=True)

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._state.model_dump(mode="json"), indent=2))
        os.replace(tmp, self._path)

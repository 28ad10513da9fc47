"""Stop-loss monitor: liquidates live positions on streamed price triggers.

Lifecycle per token: armed on a live BUY fill (subscribes the orderbook
stream and persists a record), evaluated on every streamed trade price,
and removed after a successful sell, when the position turns out to be
gone, or when it no longer matches the market filter. A failed position
lookup or a failed sell keeps the record for the next tick.

Records are persisted to JSON so protection survives restarts; call
:meth:`StopLossMonitor.restore` at startup to resubscribe them.
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path
from typing import Optional, Protocol, Union

from pydantic import BaseModel, Field

from copytrader.api.data_client import DataUnavailable
from copytrader.config import (
    STOP_LOSS_ENABLED,
    STOP_LOSS_MIN_TIME_SINCE_ENTRY_MS,
    STOP_LOSS_PERCENTAGE,
    STOP_LOSS_WEBSOCKET_MARKET_FILTER,
)
from copytrader.execution.engine import OrderExecutor, OrderKind, OrderRequest
from copytrader.execution.faults import FaultKind, OrderFault
from copytrader.execution.notifier import LogNotifier, Notifier
from copytrader.execution.types import Side

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Records and persistence
# ---------------------------------------------------------------------------


class StopLossRecord(BaseModel):
    token_id: str
    entry_price: float = Field(..., gt=0.0)
    shares: float = Field(..., ge=0.0)
    entry_timestamp: float = Field(..., description="Epoch seconds of the entry fill.")
    trigger_price: float
    market: str = ""
    condition_id: str = ""
    outcome: str = ""


def trigger_price(entry_price: float, percentage: float) -> float:
    return entry_price * (1 - percentage / 100)


class StopLossStore:
    """Token-keyed records mirrored to a JSON file on every change."""

    def __init__(self, path: Union[str, Path, None] = None) -> None:
        self._path = Path(path) if path else None
        self._records: dict[str, StopLossRecord] = {}
        self._load()

    def get(self, token_id: str) -> Optional[StopLossRecord]:
        return self._records.get(token_id)

    def all(self) -> list[StopLossRecord]:
        return list(self._records.values())

    def put(self, record: StopLossRecord) -> None:
        self._records[record.token_id] = record
        self._save()

    def remove(self, token_id: str) -> Optional[StopLossRecord]:
        record = self._records.pop(token_id, None)
        if record is not None:
            self._save()
        return record

    def __len__(self) -> int:
        return len(self._records)

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text())
            for item in raw.get("positions", []):
                record = StopLossRecord.model_validate(item)
                self._records[record.token_id] = record
            logger.info("stop_loss_records_loaded", extra={"count": len(self._records)})
        except Exception:
            logger.error("stop_loss_records_load_error", extra={"path": str(self._path)}, exc_info=True)

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        payload = {"positions": [r.model_dump(mode="json") for r in self._records.values()]}
        tmp.write_text(json.dumps(payload, indent=2))
        os.replace(tmp, self._path)


# ---------------------------------------------------------------------------
# Market filter
# ---------------------------------------------------------------------------


def matches_market_filter(filters: list[str], market: str, condition_id: str) -> bool:
    """Empty filter matches everything.

    Entries starting with ``0x`` are compared with the condition ID, all
    others are case-insensitive substrings of the market title.
    """
    if not filters:
        return True
    title = (market or "").lower()
    cid = (condition_id or "").lower()
    for entry in filters:
        needle = entry.strip().lower()
        if not needle:
            continue
        if needle.startswith("0x"):
            if needle == cid:
                return True
        elif needle in title:
            return True
    return False


def market_type(market: str) -> str:
    """Title prefix before the first ``-``, e.g. the series of an hourly market."""
    if "-" not in (market or ""):
        return ""
    return market.split("-", 1)[0].strip().lower()


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class Subscriptions(Protocol):
    async def subscribe(self, token_ids: list[str]) -> None: ...

    async def unsubscribe(self, token_ids: list[str]) -> None: ...


class PositionLookup(Protocol):
    async def fetch_position(self, user: str, token_id: str) -> Optional[dict]: ...


class StopLossMonitor:
    """Arms, evaluates and fires stop-loss records.

    Attributes:
        enabled: Master switch; when False nothing is armed or fired.
        percentage: Trigger distance below entry, in percent.
        min_hold_seconds: Ticks this soon after entry are ignored.
    """

    def __init__(
        self,
        store: StopLossStore,
        stream: Subscriptions,
        executor: OrderExecutor,
        positions: PositionLookup,
        wallet: str,
        *,
        notifier: Optional[Notifier] = None,
        enabled: bool = STOP_LOSS_ENABLED,
        percentage: float = STOP_LOSS_PERCENTAGE,
        min_hold_seconds: float = STOP_LOSS_MIN_TIME_SINCE_ENTRY_MS / 1000,
        market_filter: Optional[list[str]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self._stream = stream
        self._executor = executor
        self._positions = positions
        self._wallet = wallet
        self._notifier = notifier or LogNotifier()
        self.enabled = enabled
        self.percentage = percentage
        self.min_hold_seconds = min_hold_seconds
        self.market_filter = (
            market_filter if market_filter is not None else STOP_LOSS_WEBSOCKET_MARKET_FILTER
        )
        self._clock = clock
        self._in_flight: set[str] = set()

    async def restore(self) -> int:
        """Resubscribe every persisted record. Returns how many."""
        tokens = [r.token_id for r in self.store.all()]
        if self.enabled and tokens:
            await self._stream.subscribe(tokens)
            logger.info("stop_loss_restored", extra={"count": len(tokens)})
        return len(tokens)

    async def arm(
        self,
        token_id: str,
        entry_price: float,
        shares: float,
        market: str = "",
        condition_id: str = "",
        outcome: str = "",
        *,
        replace: bool = False,
    ) -> Optional[StopLossRecord]:
        """Start protecting a freshly filled position.

        ``shares`` at ``entry_price`` are added to any existing record for
        the token. With ``replace`` they are taken as the whole position
        (already averaged), as reported by the positions endpoint.
        """
        if not self.enabled or entry_price <= 0:
            return None
        if not matches_market_filter(self.market_filter, market, condition_id):
            logger.info(
                "stop_loss_filtered",
                extra={"token_id": token_id, "market": market},
            )
            return None

        await self._cleanup_superseded(market, condition_id)

        existing = self.store.get(token_id)
        if existing is not None and not replace:
            total = existing.shares + shares
            entry_price = (existing.entry_price * existing.shares + entry_price * shares) / total
            shares = total

        record = StopLossRecord(
            token_id=token_id,
            entry_price=entry_price,
            shares=shares,
            entry_timestamp=existing.entry_timestamp if existing else self._clock(),
            trigger_price=trigger_price(entry_price, self.percentage),
            market=market,
            condition_id=condition_id,
            outcome=outcome,
        )
        self.store.put(record)
        await self._stream.subscribe([token_id])
        logger.info(
            "stop_loss_armed",
            extra={
                "token_id": token_id,
                "entry_price": entry_price,
                "trigger_price": record.trigger_price,
                "shares": shares,
            },
        )
        return record

    async def on_price(self, token_id: str, price: float, side: str = "") -> bool:
        """Evaluate a streamed price. Returns True if a sell was executed."""
        if not self.enabled:
            return False
        record = self.store.get(token_id)
        if record is None or token_id in self._in_flight:
            return False

        if not matches_market_filter(self.market_filter, record.market, record.condition_id):
            await self._remove(token_id, "filter_mismatch")
            return False

        if self._clock() - record.entry_timestamp < self.min_hold_seconds:
            return False
        if price > record.trigger_price:
            return False

        self._in_flight.add(token_id)
        try:
            return await self._fire(record, price)
        finally:
            self._in_flight.discard(token_id)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _fire(self, record: StopLossRecord, price: float) -> bool:
        logger.warning(
            "stop_loss_triggered",
            extra={
                "token_id": record.token_id,
                "price": price,
                "trigger_price": record.trigger_price,
                "entry_price": record.entry_price,
            },
        )

        try:
            position = await self._positions.fetch_position(self._wallet, record.token_id)
        except DataUnavailable as exc:
            logger.warning(
                "stop_loss_position_lookup_failed",
                extra={"token_id": record.token_id, "error": str(exc)},
            )
            return False
        shares = float(position.get("size") or 0) if position else 0.0
        if shares <= 0:
            await self._remove(record.token_id, "position_closed")
            return False

        try:
            response = await self._executor.execute(
                OrderRequest(
                    token_id=record.token_id,
                    side=Side.SELL,
                    order_type=OrderKind.FOK,
                    amount=shares,
                )
            )
        except OrderFault as fault:
            if fault.kind == FaultKind.INSUFFICIENT_BALANCE:
                await self._remove(record.token_id, "insufficient_balance")
                return False
            logger.error(
                "stop_loss_sell_failed",
                extra={"token_id": record.token_id, "kind": fault.kind.value, "error": str(fault)},
            )
            await self._notifier.notify(
                "stop_loss_failed",
                f"Stop-loss sell failed for {record.market or record.token_id}: {fault}",
                token_id=record.token_id,
            )
            return False

        await self._remove(record.token_id, "executed")
        pnl = (response.price - record.entry_price) * response.shares
        await self._notifier.notify(
            "stop_loss_executed",
            f"Stop-loss sold {response.shares:.2f} shares of {record.market or record.token_id} "
            f"at {response.price:.3f} (entry {record.entry_price:.3f})",
            token_id=record.token_id,
            pnl=round(pnl, 2),
        )
        return True

    async def _cleanup_superseded(self, market: str, condition_id: str) -> None:
        kind = market_type(market)
        if not kind:
            return
        for record in self.store.all():
            if record.condition_id != condition_id and market_type(record.market) == kind:
                await self._remove(record.token_id, "superseded")

    async def _remove(self, token_id: str, reason: str) -> None:
        if self.store.remove(token_id) is None:
            return
        await self._stream.unsubscribe([token_id])
        logger.info("stop_loss_removed", extra={"token_id": token_id, "reason": reason})

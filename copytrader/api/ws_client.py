"""Orderbook stream over the CLOB market websocket channel.

Keeps the latest book and last trade price for every subscribed token and
pushes trade prices to a callback (the stop-loss monitor). The stream
owns its snapshots; readers get copies.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import websockets
import websockets.exceptions

from copytrader.config import (
    WS_MAX_RECONNECT_ATTEMPTS,
    WS_PING_INTERVAL,
    WS_RECONNECT_BASE_DELAY,
    WS_RECONNECT_MAX_DELAY,
    WS_URL,
)
from copytrader.execution.types import OrderBookSnapshot

logger = logging.getLogger(__name__)

# (token_id, price, side) -> None
PriceCallback = Callable[[str, float, str], Awaitable[None]]


class OrderbookStream:
    """Single websocket connection to the market channel.

    Reconnects with doubling delay up to ``max_reconnect_attempts`` times
    in a row and re-sends the full subscription on every (re)connect.
    """

    def __init__(
        self,
        url: str = WS_URL,
        *,
        on_price: Optional[PriceCallback] = None,
        ping_interval: float = WS_PING_INTERVAL,
        max_reconnect_attempts: int = WS_MAX_RECONNECT_ATTEMPTS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._url = url
        self._on_price = on_price
        self._ping_interval = ping_interval
        self._max_reconnect_attempts = max_reconnect_attempts
        self._clock = clock
        self._subscriptions: set[str] = set()
        self._books: dict[str, OrderBookSnapshot] = {}
        self._last_prices: dict[str, float] = {}
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._reconnect_requested = False
        self.reconnect_attempts = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def set_price_callback(self, callback: Optional[PriceCallback]) -> None:
        self._on_price = callback

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    @property
    def subscriptions(self) -> set[str]:
        return set(self._subscriptions)

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._running = True
        self.reconnect_attempts = 0
        self._task = asyncio.create_task(self._listen_forever(), name="orderbook-stream")
        logger.info("ws_started", extra={"tokens": len(self._subscriptions)})

    async def disconnect(self) -> None:
        self._running = False
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception:
                logger.debug("ws_close_error", exc_info=True)
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._ws = None
        logger.info("ws_stopped")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(self, token_ids: list[str]) -> None:
        """Add tokens. While connected, a new token forces a reconnect."""
        new = [t for t in token_ids if t and t not in self._subscriptions]
        if not new:
            return
        self._subscriptions.update(new)
        logger.info("ws_subscribe", extra={"added": len(new), "total": len(self._subscriptions)})

        if not self._running:
            await self.start()
        elif self._ws is not None:
            self._reconnect_requested = True
            await self._ws.close()

    async def unsubscribe(self, token_ids: list[str]) -> None:
        removed = [t for t in token_ids if t in self._subscriptions]
        if not removed:
            return
        self._subscriptions.difference_update(removed)
        for token_id in removed:
            self._books.pop(token_id, None)
        logger.info("ws_unsubscribe", extra={"removed": len(removed), "total": len(self._subscriptions)})

        if self._ws is not None:
            await self._send({"assets_ids": removed, "type": "market", "unsubscribe": True})

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_orderbook(self, token_id: str) -> Optional[OrderBookSnapshot]:
        book = self._books.get(token_id)
        return book.model_copy(deep=True) if book is not None else None

    def get_last_trade_price(self, token_id: str) -> Optional[float]:
        return self._last_prices.get(token_id)

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def handle_message(self, raw: str) -> None:
        """Parse one frame (a message or a list of messages) and dispatch it."""
        if raw == "PONG":
            return
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("ws_unparsable_message", extra={"raw": raw[:200]})
            return

        messages = payload if isinstance(payload, list) else [payload]
        for msg in messages:
            if isinstance(msg, dict):
                await self._dispatch(msg)

    async def _dispatch(self, msg: dict) -> None:
        event_type = msg.get("event_type")

        if event_type == "error" or "error" in msg:
            logger.warning("ws_server_error", extra={"error": str(msg.get("error") or msg)})
            return

        if event_type == "last_trade_price":
            await self._handle_trade(msg)
        elif event_type == "price_change":
            self._handle_price_change(msg)
        elif event_type == "book" or (
            msg.get("asset_id") and any(k in msg for k in ("bids", "asks", "buys", "sells"))
        ):
            self._handle_book(msg)

    def _handle_book(self, msg: dict) -> None:
        token_id = str(msg.get("asset_id") or "")
        if not token_id:
            return
        self._books[token_id] = OrderBookSnapshot.from_raw(msg, captured_at=self._clock())

    async def _handle_trade(self, msg: dict) -> None:
        token_id = str(msg.get("asset_id") or "")
        try:
            price = float(msg.get("price"))
        except (TypeError, ValueError):
            return
        if not token_id or not 0 <= price <= 1:
            return

        self._last_prices[token_id] = price
        if self._on_price is not None and token_id in self._subscriptions:
            side = (msg.get("side") or "").upper()
            try:
                await self._on_price(token_id, price, side)
            except Exception:
                logger.error("ws_price_callback_error", extra={"token_id": token_id}, exc_info=True)

    def _handle_price_change(self, msg: dict) -> None:
        changes = msg.get("price_changes") or [msg]
        for change in changes:
            token_id = str(change.get("asset_id") or "")
            best_bid = change.get("best_bid")
            if not token_id or best_bid in (None, ""):
                continue
            try:
                self._last_prices[token_id] = float(best_bid)
            except (TypeError, ValueError):
                continue

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    def reconnect_delay(self, attempt: int) -> float:
        """Delay before reconnect ``attempt`` (0-based), in seconds."""
        return min(WS_RECONNECT_BASE_DELAY * (2 ** attempt), WS_RECONNECT_MAX_DELAY)

    async def _listen_forever(self) -> None:
        while self._running:
            ping_task: Optional[asyncio.Task] = None
            try:
                async with websockets.connect(self._url, ping_interval=None) as ws:
                    self._ws = ws
                    self.reconnect_attempts = 0
                    if self._subscriptions:
                        await self._send(
                            {"assets_ids": sorted(self._subscriptions), "type": "market"}
                        )
                    logger.info("ws_connected", extra={"tokens": len(self._subscriptions)})
                    ping_task = asyncio.create_task(self._ping_loop(ws))

                    async for raw_msg in ws:
                        if not self._running:
                            break
                        await self.handle_message(raw_msg)

            except asyncio.CancelledError:
                return
            except (
                websockets.exceptions.ConnectionClosed,
                websockets.exceptions.WebSocketException,
                OSError,
            ):
                logger.warning("ws_connection_lost", exc_info=True)
            finally:
                self._ws = None
                if ping_task is not None:
                    ping_task.cancel()

            if not self._running:
                return
            if self._reconnect_requested:
                self._reconnect_requested = False
                continue

            if self.reconnect_attempts >= self._max_reconnect_attempts:
                logger.error(
                    "ws_reconnect_exhausted",
                    extra={"attempts": self.reconnect_attempts},
                )
                self._running = False
                return

            delay = self.reconnect_delay(self.reconnect_attempts)
            self.reconnect_attempts += 1
            logger.warning(
                "ws_reconnecting",
                extra={"attempt": self.reconnect_attempts, "delay": delay},
            )
            await asyncio.sleep(delay)

    async def _ping_loop(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self._ping_interval)
            try:
                await ws.send("PING")
            except Exception:
                logger.debug("ws_ping_failed", exc_info=True)
                return

    async def _send(self, payload: dict) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.send(json.dumps(payload))
        except Exception:
            logger.warning("ws_send_error", exc_info=True)

"""Order executor: liquidity-aware submission with classified retries.

Market (FOK) orders walk the book before each attempt. The walk starts at
``price_index`` and accumulates level value until it covers the order
times the liquidity buffer. Thin books shrink the order rather than
sending something the book cannot absorb, and a FOK that gets killed at
one level moves the walk one level deeper.

Limit (GTC/GTD) orders skip the walk and go straight to the signer.

Retries are driven entirely by ``RETRY_POLICY``; the executor never looks
at error text, only at the :class:`FaultKind` the signer raised.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from copytrader.api.clob_client import BookUnavailable
from copytrader.config import (
    BOOK_FRESHNESS_SECONDS,
    CLOUDFLARE_RETRY_DELAY_MS,
    LIQUIDITY_BUFFER,
    MAX_ORDER_RETRIES,
    MAX_ORDER_VALUE_USD,
    MIN_ORDER_VALUE_USD,
)
from copytrader.execution.faults import (
    EDGE_BLOCKED_HINT,
    FaultKind,
    OrderFault,
)
from copytrader.execution.signer import OrderSigner
from copytrader.execution.types import BookLevel, OrderBookSnapshot, Side

logger = logging.getLogger(__name__)

RESTING_STATUSES = frozenset({"live", "delayed", "unmatched"})


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class OrderKind(str, Enum):
    """CLOB time-in-force."""

    FOK = "FOK"
    GTC = "GTC"
    GTD = "GTD"


class OrderRequest(BaseModel):
    """An order to execute.

    For FOK orders ``amount`` is USDC on BUY and shares on SELL. For limit
    orders ``price`` and ``size`` (shares) are used as given.
    """

    token_id: str
    side: Side
    order_type: OrderKind = OrderKind.FOK
    amount: float = Field(default=0.0, ge=0.0)
    price: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    size: float = Field(default=0.0, ge=0.0)


class OrderResponse(BaseModel):
    """Outcome of a successful execution."""

    success: bool = True
    order_id: str = ""
    status: str = ""
    price: float = 0.0
    amount: float = Field(default=0.0, description="USDC for BUY, shares for SELL.")
    shares: float = 0.0
    attempts: int = 1
    truncated: bool = Field(default=False, description="Shrunk to fit available depth.")
    error: str = ""

    @property
    def is_resting(self) -> bool:
        """Accepted by the CLOB but not matched yet (limit orders on the book)."""
        return self.status.lower() in RESTING_STATUSES


class LiquidityPlan(BaseModel):
    """Result of one book walk."""

    price: float
    amount: float
    price_index: int
    available: float
    truncated: bool = False


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class RetryAction(str, Enum):
    RETRY_BACKOFF = "retry_backoff"
    FRESH_NONCE = "fresh_nonce"
    ADVANCE_LEVEL = "advance_level"
    ABORT = "abort"


RETRY_POLICY: dict[FaultKind, RetryAction] = {
    FaultKind.INVALID_NONCE: RetryAction.FRESH_NONCE,
    FaultKind.EDGE_BLOCKED: RetryAction.RETRY_BACKOFF,
    FaultKind.UNFILLED: RetryAction.ADVANCE_LEVEL,
    FaultKind.NOT_READY: RetryAction.ABORT,
    FaultKind.INSUFFICIENT_LIQUIDITY: RetryAction.ABORT,
    FaultKind.INSUFFICIENT_BALANCE: RetryAction.ABORT,
    FaultKind.MISSING_ORDERBOOK: RetryAction.ABORT,
    FaultKind.BOOK_UNAVAILABLE: RetryAction.RETRY_BACKOFF,
    FaultKind.UNKNOWN: RetryAction.ABORT,
}


class NonceCounter:
    """In-memory order nonce. Not persisted across restarts."""

    def __init__(self, start: int = 0) -> None:
        self._value = start

    @property
    def current(self) -> int:
        return self._value

    def advance(self) -> int:
        self._value += 1
        return self._value


# ---------------------------------------------------------------------------
# Liquidity walk
# ---------------------------------------------------------------------------


def _round2(value: float) -> float:
    return round(value + 1e-12, 2)


def _floor2(value: float) -> float:
    return math.floor(value * 100 + 1e-9) / 100


def plan_buy(
    asks: list[BookLevel],
    amount: float,
    price_index: int = 0,
    buffer: float = LIQUIDITY_BUFFER,
) -> LiquidityPlan:
    """Pick a price level and USDC amount for a BUY.

    Args:
        asks: Ask levels sorted cheapest first.
        amount: Desired USDC notional.
        price_index: Level to start walking from.
        buffer: Required depth multiple of the order value.

    Raises:
        OrderFault: INSUFFICIENT_LIQUIDITY when the levels are exhausted or
            the remaining depth is below the exchange minimum.
    """
    amount = _round2(min(max(amount, MIN_ORDER_VALUE_USD), MAX_ORDER_VALUE_USD))
    if price_index >= len(asks):
        raise OrderFault(
            FaultKind.INSUFFICIENT_LIQUIDITY,
            f"ask levels exhausted at index {price_index}",
        )

    required = amount * buffer
    available = 0.0
    for lvl in asks[price_index:]:
        available += lvl.value
        if available >= required:
            break

    if available < MIN_ORDER_VALUE_USD:
        raise OrderFault(
            FaultKind.INSUFFICIENT_LIQUIDITY,
            f"only ${available:.2f} of asks from index {price_index}",
        )

    truncated = False
    if available < required:
        amount = _round2(max(MIN_ORDER_VALUE_USD, min(available / buffer, MAX_ORDER_VALUE_USD)))
        truncated = True

    return LiquidityPlan(
        price=asks[price_index].price,
        amount=amount,
        price_index=price_index,
        available=available,
        truncated=truncated,
    )


def plan_sell(
    bids: list[BookLevel],
    shares: float,
    price_index: int = 0,
    buffer: float = LIQUIDITY_BUFFER,
) -> LiquidityPlan:
    """Pick a price level and share count for a SELL.

    The order value is floored at the exchange minimum (by raising the
    share count) and capped at ``MAX_ORDER_VALUE_USD``. Levels whose
    cumulative depth cannot cover the order are skipped.
    """
    index = price_index
    while index < len(bids):
        price = bids[index].price
        if price <= 0:
            index += 1
            continue

        qty = shares
        if qty * price < MIN_ORDER_VALUE_USD:
            qty = MIN_ORDER_VALUE_USD / price
        if qty * price > MAX_ORDER_VALUE_USD:
            qty = MAX_ORDER_VALUE_USD / price
        qty = _round2(qty)

        value = qty * price
        required = value * buffer
        available = 0.0
        for lvl in bids[index:]:
            available += lvl.value
            if available >= required:
                break

        if available >= value:
            return LiquidityPlan(
                price=price,
                amount=qty,
                price_index=index,
                available=available,
                truncated=qty < shares,
            )
        index += 1

    raise OrderFault(
        FaultKind.INSUFFICIENT_LIQUIDITY,
        f"bid levels exhausted at index {index}",
    )


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class StreamBooks(Protocol):
    def get_orderbook(self, token_id: str) -> Optional[OrderBookSnapshot]: ...


class RestBooks(Protocol):
    async def fetch_orderbook(self, token_id: str) -> Optional[dict[str, Any]]: ...


class OrderExecutor:
    """Submits orders through an :class:`OrderSigner` with bounded retries.

    Attributes:
        max_retries: Upper bound on attempts per order, across all fault kinds.
        retry_delay: Base backoff in seconds; attempt ``n`` waits
            ``retry_delay * 2 ** (n - 1)``.
    """

    def __init__(
        self,
        signer: Optional[OrderSigner],
        rest_books: RestBooks,
        stream_books: Optional[StreamBooks] = None,
        *,
        max_retries: int = MAX_ORDER_RETRIES,
        retry_delay: float = CLOUDFLARE_RETRY_DELAY_MS / 1000,
        nonces: Optional[NonceCounter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._signer = signer
        self._rest_books = rest_books
        self._stream_books = stream_books
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self._nonces = nonces or NonceCounter()
        self._sleep = sleep
        self._clock = clock

    @property
    def is_ready(self) -> bool:
        return self._signer is not None and self._signer.is_ready

    async def execute(self, request: OrderRequest) -> OrderResponse:
        """Execute an order, retrying per ``RETRY_POLICY``.

        Returns:
            OrderResponse for the accepted attempt.

        Raises:
            OrderFault: on a terminal failure or once retries are exhausted.
        """
        if not self.is_ready:
            raise OrderFault(FaultKind.NOT_READY, "order signer not initialized")

        is_market = request.order_type == OrderKind.FOK
        price_index = 0
        book: Optional[OrderBookSnapshot] = None
        attempt = 0

        while True:
            attempt += 1
            delay = 0.0
            try:
                if is_market:
                    if book is None:
                        book = await self.load_book(request.token_id)
                    plan = self._plan(request, book, price_index)
                    response = await self._submit_market(request, plan, attempt)
                else:
                    response = await self._submit_limit(request, attempt)
                return response

            except OrderFault as fault:
                action = RETRY_POLICY.get(fault.kind, RetryAction.ABORT)
                if not is_market and action == RetryAction.ADVANCE_LEVEL:
                    action = RetryAction.ABORT
                if fault.kind == FaultKind.EDGE_BLOCKED and not fault.hint:
                    fault.hint = EDGE_BLOCKED_HINT

                if action == RetryAction.ABORT or attempt >= self.max_retries:
                    logger.error(
                        "order_failed",
                        extra={
                            "token_id": request.token_id,
                            "side": request.side.value,
                            "kind": fault.kind.value,
                            "attempts": attempt,
                            "error": str(fault),
                        },
                    )
                    raise

                if action == RetryAction.ADVANCE_LEVEL:
                    price_index += 1
                elif action == RetryAction.FRESH_NONCE:
                    self._nonces.advance()
                    book = None
                elif action == RetryAction.RETRY_BACKOFF:
                    delay = self.retry_delay * 2 ** (attempt - 1)
                    book = None

                logger.warning(
                    "order_retry",
                    extra={
                        "token_id": request.token_id,
                        "attempt": attempt,
                        "kind": fault.kind.value,
                        "action": action.value,
                        "delay": delay,
                        "price_index": price_index,
                    },
                )
                if delay > 0:
                    await self._sleep(delay)

    async def load_book(self, token_id: str) -> OrderBookSnapshot:
        """Fresh streamed book if available, otherwise the REST book."""
        if self._stream_books is not None:
            snapshot = self._stream_books.get_orderbook(token_id)
            if snapshot is not None and snapshot.is_fresh(self._clock(), BOOK_FRESHNESS_SECONDS):
                return snapshot

        try:
            raw = await self._rest_books.fetch_orderbook(token_id)
        except BookUnavailable as exc:
            raise OrderFault(
                FaultKind.BOOK_UNAVAILABLE,
                f"orderbook for {token_id} unavailable: {exc}",
            ) from exc
        if raw is None:
            raise OrderFault(
                FaultKind.MISSING_ORDERBOOK,
                f"orderbook for {token_id} does not exist",
            )
        return OrderBookSnapshot.from_raw(raw, captured_at=self._clock())

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _plan(
        request: OrderRequest, book: OrderBookSnapshot, price_index: int
    ) -> LiquidityPlan:
        if request.side == Side.BUY:
            return plan_buy(book.sorted_asks(), request.amount, price_index)
        return plan_sell(book.sorted_bids(), request.amount, price_index)

    async def _submit_market(
        self, request: OrderRequest, plan: LiquidityPlan, attempt: int
    ) -> OrderResponse:
        logger.info(
            "order_attempt",
            extra={
                "token_id": request.token_id,
                "side": request.side.value,
                "order_type": request.order_type.value,
                "attempt": attempt,
                "price": plan.price,
                "amount": plan.amount,
                "price_index": plan.price_index,
                "truncated": plan.truncated,
            },
        )
        resp = await self._signer.submit_market(
            request.token_id,
            request.side,
            plan.amount,
            plan.price,
            self._nonces.current,
        )
        if request.side == Side.BUY:
            shares = _floor2(plan.amount / plan.price) if plan.price > 0 else 0.0
        else:
            shares = plan.amount

        logger.info(
            "order_filled",
            extra={
                "token_id": request.token_id,
                "side": request.side.value,
                "order_id": resp.get("orderID", ""),
                "price": plan.price,
                "amount": plan.amount,
                "attempts": attempt,
            },
        )
        return OrderResponse(
            order_id=resp.get("orderID", ""),
            status=resp.get("status", ""),
            price=plan.price,
            amount=plan.amount,
            shares=shares,
            attempts=attempt,
            truncated=plan.truncated,
        )

    async def _submit_limit(self, request: OrderRequest, attempt: int) -> OrderResponse:
        if request.price is None or request.size <= 0:
            raise OrderFault(FaultKind.UNKNOWN, "limit order needs price and size")
        logger.info(
            "order_attempt",
            extra={
                "token_id": request.token_id,
                "side": request.side.value,
                "order_type": request.order_type.value,
                "attempt": attempt,
                "price": request.price,
                "size": request.size,
            },
        )
        resp = await self._signer.submit_limit(
            request.token_id,
            request.side,
            request.price,
            request.size,
            request.order_type.value,
            self._nonces.current,
        )
        return OrderResponse(
            order_id=resp.get("orderID", ""),
            status=resp.get("status", ""),
            price=request.price,
            amount=_round2(request.price * request.size)
            if request.side == Side.BUY
            else request.size,
            shares=request.size,
            attempts=attempt,
        )

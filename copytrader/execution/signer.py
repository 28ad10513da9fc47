"""Order signing and submission over py-clob-client.

The rest of the engine only sees the :class:`OrderSigner` protocol, so
tests and paper mode never need credentials. :class:`ClobOrderSigner` is
the live implementation; it is also the single place where CLOB error
text is turned into an :class:`OrderFault`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

from copytrader.config import (
    CLOB_API_URL,
    POLYMARKET_CHAIN_ID,
    POLYMARKET_SIGNATURE_TYPE,
)
from copytrader.execution.faults import FaultKind, OrderFault, to_fault
from copytrader.execution.types import Side

logger = logging.getLogger(__name__)


class OrderSigner(Protocol):
    """Capability to sign and post orders. Raises OrderFault on failure."""

    @property
    def is_ready(self) -> bool: ...

    async def submit_market(
        self, token_id: str, side: Side, amount: float, price: float, nonce: int
    ) -> dict[str, Any]: ...

    async def submit_limit(
        self,
        token_id: str,
        side: Side,
        price: float,
        size: float,
        order_type: str,
        nonce: int,
    ) -> dict[str, Any]: ...


class ClobOrderSigner:
    """Live signer backed by ``py_clob_client.client.ClobClient``.

    Blocking client calls are pushed onto a worker thread with
    ``asyncio.to_thread``.
    """

    def __init__(self, private_key: str, funder_address: str = "") -> None:
        self._private_key = private_key
        self._funder_address = funder_address
        self._client: Any = None

    @property
    def is_ready(self) -> bool:
        return self._client is not None

    async def initialize(self) -> None:
        """Build the CLOB client and derive API credentials."""
        if self._client is not None:
            return
        if not self._private_key:
            raise OrderFault(FaultKind.NOT_READY, "private key not configured")

        from py_clob_client.client import ClobClient

        try:
            client = ClobClient(
                host=CLOB_API_URL,
                key=self._private_key,
                chain_id=POLYMARKET_CHAIN_ID,
                signature_type=POLYMARKET_SIGNATURE_TYPE,
                funder=self._funder_address or None,
            )
            creds = await asyncio.to_thread(client.create_or_derive_api_creds)
            client.set_api_creds(creds)
        except Exception as e:
            logger.error("order_signer_init_failed", exc_info=True)
            raise to_fault(e) from e

        self._client = client
        logger.info("order_signer_init", extra={"funder": self._funder_address})

    async def submit_market(
        self, token_id: str, side: Side, amount: float, price: float, nonce: int
    ) -> dict[str, Any]:
        """Post a fill-or-kill market order.

        ``amount`` is USDC for BUY and shares for SELL.
        """
        from py_clob_client.clob_types import MarketOrderArgs, OrderType

        client = self._require_client()
        args = MarketOrderArgs(
            token_id=token_id,
            amount=amount,
            side=side.value,
            price=price,
            nonce=nonce,
            order_type=OrderType.FOK,
        )
        try:
            signed = await asyncio.to_thread(client.create_market_order, args)
            resp = await asyncio.to_thread(client.post_order, signed, OrderType.FOK)
        except Exception as e:
            raise to_fault(e) from e
        return self._check_response(resp)

    async def submit_limit(
        self,
        token_id: str,
        side: Side,
        price: float,
        size: float,
        order_type: str,
        nonce: int,
    ) -> dict[str, Any]:
        """Post a resting GTC/GTD limit order."""
        from py_clob_client.clob_types import OrderArgs, OrderType

        client = self._require_client()
        args = OrderArgs(
            token_id=token_id,
            price=price,
            size=size,
            side=side.value,
            nonce=nonce,
        )
        try:
            signed = await asyncio.to_thread(client.create_order, args)
            resp = await asyncio.to_thread(
                client.post_order, signed, getattr(OrderType, order_type)
            )
        except Exception as e:
            raise to_fault(e) from e
        return self._check_response(resp)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_client(self) -> Any:
        if self._client is None:
            raise OrderFault(FaultKind.NOT_READY, "CLOB client not initialized")
        return self._client

    @staticmethod
    def _check_response(resp: Optional[Any]) -> dict[str, Any]:
        if not isinstance(resp, dict):
            raise OrderFault(FaultKind.UNKNOWN, f"Unexpected response type: {type(resp)}")
        if not resp.get("success", False):
            raise to_fault(resp.get("errorMsg") or "order rejected")
        return resp

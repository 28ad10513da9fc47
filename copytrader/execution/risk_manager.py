"""Risk ledger: portfolio-level admission checks.

Every mirrored order passes through :meth:`RiskLedger.admit` before it
reaches the executor or the paper ledger. Two limits are enforced on BUY:

1. Maximum number of concurrently held tokens
2. Maximum total exposure (USDC cost basis), when configured

A BUY is also rejected when the exposure source cannot be read; the
limits fail closed.

SELL orders always pass; they only reduce exposure. Admission has no
side effects.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from copytrader.api.data_client import DataUnavailable
from copytrader.config import MAX_POSITIONS, MAX_TOTAL_EXPOSURE_USD
from copytrader.execution.types import Side

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class RiskViolation(str, Enum):
    """Type of risk limit violated."""

    POSITION_COUNT = "position_count"
    TOTAL_EXPOSURE = "total_exposure"
    EXPOSURE_UNAVAILABLE = "exposure_unavailable"


class RiskLimits(BaseModel):
    max_positions: int = MAX_POSITIONS
    max_total_exposure: float = Field(
        default=MAX_TOTAL_EXPOSURE_USD, description="0 disables the exposure check."
    )


class RiskCheck(BaseModel):
    """Result of an admission check."""

    allowed: bool = True
    reason: Optional[RiskViolation] = None
    message: str = ""
    current_positions: int = 0
    current_exposure: float = 0.0
    projected_exposure: float = 0.0


class ExposureSnapshot(BaseModel):
    position_count: int = 0
    exposure: float = 0.0
    available: bool = Field(default=True, description="False when holdings could not be read.")


class ExposureSource(Protocol):
    async def snapshot(self) -> ExposureSnapshot: ...


# ---------------------------------------------------------------------------
# Exposure sources
# ---------------------------------------------------------------------------


class PaperExposure:
    """Exposure read from the paper ledger."""

    def __init__(self, ledger) -> None:
        self._ledger = ledger

    async def snapshot(self) -> ExposureSnapshot:
        return ExposureSnapshot(
            position_count=self._ledger.position_count(),
            exposure=self._ledger.exposure(),
        )


class LiveExposure:
    """Exposure read from the Data API positions of our funder wallet.

    Positions are counted by unique token ID; exposure sums their
    ``initialValue`` (cost basis), falling back to ``currentValue``.
    """

    def __init__(self, data_client, wallet: str) -> None:
        self._data = data_client
        self._wallet = wallet

    async def snapshot(self) -> ExposureSnapshot:
        try:
            positions = await self._data.fetch_positions(self._wallet)
        except DataUnavailable:
            return ExposureSnapshot(available=False)
        tokens: set[str] = set()
        exposure = 0.0
        for pos in positions:
            if float(pos.get("size") or 0) <= 0:
                continue
            token_id = pos.get("asset") or ""
            if token_id:
                tokens.add(token_id)
            exposure += float(pos.get("initialValue") or pos.get("currentValue") or 0)
        return ExposureSnapshot(position_count=len(tokens), exposure=exposure)


# ---------------------------------------------------------------------------
# Risk Ledger
# ---------------------------------------------------------------------------


class RiskLedger:
    """Admission control over an :class:`ExposureSource`."""

    def __init__(self, source: ExposureSource, limits: Optional[RiskLimits] = None) -> None:
        self._source = source
        self.limits = limits or RiskLimits()

    async def admit(self, side: Side, notional: float, token_id: str = "") -> RiskCheck:
        """Check whether an order of ``notional`` USDC may proceed.

        Args:
            side: Order side.
            notional: Order value in USDC.
            token_id: Token being traded (for logging).

        Returns:
            RiskCheck; ``allowed`` is False with a ``reason`` on rejection.
        """
        snap = await self._source.snapshot()
        check = RiskCheck(
            current_positions=snap.position_count,
            current_exposure=snap.exposure,
        )

        if side == Side.SELL:
            check.projected_exposure = max(0.0, snap.exposure - notional)
            return check

        check.projected_exposure = snap.exposure + notional

        if not snap.available:
            check.allowed = False
            check.reason = RiskViolation.EXPOSURE_UNAVAILABLE
            check.message = "Current positions could not be read"
        elif snap.position_count >= self.limits.max_positions:
            check.allowed = False
            check.reason = RiskViolation.POSITION_COUNT
            check.message = (
                f"{snap.position_count} positions open, limit is {self.limits.max_positions}"
            )
        elif (
            self.limits.max_total_exposure > 0
            and check.projected_exposure > self.limits.max_total_exposure
        ):
            check.allowed = False
            check.reason = RiskViolation.TOTAL_EXPOSURE
            check.message = (
                f"Exposure ${check.projected_exposure:.2f} would exceed "
                f"${self.limits.max_total_exposure:.2f}"
            )

        if not check.allowed:
            logger.info(
                "risk_rejected",
                extra={
                    "token_id": token_id,
                    "reason": check.reason.value,
                    "positions": snap.position_count,
                    "exposure": snap.exposure,
                    "notional": notional,
                },
            )
        return check

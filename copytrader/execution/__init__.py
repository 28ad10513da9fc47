"""Execution layer for the copy trader.

Everything between "the tracked wallet traded" and "we hold a position":
sizing, admission control, order submission with classified retries,
simulated fills, settlement of simulated positions, and stop-loss
protection of live positions.

Modules:
    types        -- TradeEvent, order book snapshots
    faults       -- FaultKind taxonomy and the single text classifier
    signer       -- OrderSigner protocol and the py-clob-client implementation
    engine       -- OrderExecutor, liquidity walk, retry policy
    sizer        -- OrderSizer tiers and caps
    risk_manager -- RiskLedger admission checks
    paper_ledger -- Simulated balance, positions and P&L
    settlement   -- SettlementMonitor for paper positions
    stop_loss    -- StopLossMonitor and its persisted records
    context      -- Per-session EngineContext
"""

from copytrader.execution.context import EngineContext
from copytrader.execution.engine import OrderExecutor, OrderKind, OrderRequest, OrderResponse
from copytrader.execution.faults import FaultKind, OrderFault, classify_fault
from copytrader.execution.paper_ledger import LedgerError, PaperLedger, Position
from copytrader.execution.risk_manager import RiskCheck, RiskLedger, RiskViolation
from copytrader.execution.sizer import OrderSizer, SizingDecision, SizingTier
from copytrader.execution.types import OrderBookSnapshot, Side, TradeEvent

__all__ = [
    "EngineContext",
    "FaultKind",
    "LedgerError",
    "OrderBookSnapshot",
    "OrderExecutor",
    "OrderFault",
    "OrderKind",
    "OrderRequest",
    "OrderResponse",
    "OrderSizer",
    "PaperLedger",
    "Position",
    "RiskCheck",
    "RiskLedger",
    "RiskViolation",
    "Side",
    "SizingDecision",
    "SizingTier",
    "TradeEvent",
    "classify_fault",
]

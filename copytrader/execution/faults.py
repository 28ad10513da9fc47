"""Order fault taxonomy.

Every error that comes back from the CLOB (exception text or an
``errorMsg`` field in a response body) is classified exactly once, here,
into a :class:`FaultKind`. Everything downstream switches on the kind and
never inspects message text again.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class FaultKind(str, Enum):
    """Classes of order failure the executor knows how to react to."""

    NOT_READY = "not_ready"                       # No signer / credentials
    INSUFFICIENT_LIQUIDITY = "insufficient_liquidity"
    UNFILLED = "unfilled"                         # FOK killed at this level
    INVALID_NONCE = "invalid_nonce"
    EDGE_BLOCKED = "edge_blocked"                 # CDN challenge page
    INSUFFICIENT_BALANCE = "insufficient_balance"
    MISSING_ORDERBOOK = "missing_orderbook"
    BOOK_UNAVAILABLE = "book_unavailable"         # REST book fetch failed, may recover
    UNKNOWN = "unknown"


EDGE_BLOCKED_HINT = (
    "Cloudflare is blocking CLOB API requests from this network. "
    "Contact Polymarket support or try from a different network."
)

# Ordered: first match wins.
_PATTERNS: list[tuple[FaultKind, tuple[str, ...]]] = [
    (FaultKind.INVALID_NONCE, ("invalid nonce",)),
    (FaultKind.EDGE_BLOCKED, ("cloudflare", "attention required")),
    (FaultKind.INSUFFICIENT_BALANCE, ("not enough balance", "not enough allowance")),
    (
        FaultKind.UNFILLED,
        ("couldn't be fully filled", "fully filled or killed"),
    ),
    (FaultKind.MISSING_ORDERBOOK, ("does not exist",)),
]


class OrderFault(Exception):
    """A classified order failure.

    Attributes:
        kind: The fault class.
        hint: Operator-facing remediation text, if any.
    """

    def __init__(self, kind: FaultKind, message: str = "", hint: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value
        self.hint = hint

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} ({self.hint})"
        return self.message


def classify_fault(error: object) -> FaultKind:
    """Map raw exception text or an error string to a :class:`FaultKind`."""
    if isinstance(error, OrderFault):
        return error.kind
    text = str(error or "").lower()
    for kind, needles in _PATTERNS:
        if any(needle in text for needle in needles):
            return kind
    return FaultKind.UNKNOWN


def to_fault(error: object, hint: Optional[str] = None) -> OrderFault:
    """Wrap any error as an :class:`OrderFault`, classifying it on the way."""
    if isinstance(error, OrderFault):
        return error
    kind = classify_fault(error)
    if hint is None and kind == FaultKind.EDGE_BLOCKED:
        hint = EDGE_BLOCKED_HINT
    return OrderFault(kind, str(error), hint or "")

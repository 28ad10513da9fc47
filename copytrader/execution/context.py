"""Per-session engine state.

One :class:`EngineContext` is built per monitoring session and passed to
every component that needs session state, replacing module-level globals.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Optional

_SEEN_LIMIT = 5000


class EngineContext:
    """Mutable state shared across one copy-trading session.

    Attributes:
        wallet: Tracked wallet address (lower-cased).
        paper_mode: True when trades go to the paper ledger.
        seeded: False until the first activity poll has recorded its ids.
        started_at: Epoch seconds the session began.
    """

    def __init__(self, wallet: str, paper_mode: bool = True) -> None:
        self.wallet = wallet.lower()
        self.paper_mode = paper_mode
        self.seeded = False
        self.started_at = time.time()
        self.last_poll_at: Optional[float] = None
        self.processed = 0
        self.skipped = 0
        self.failed = 0
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._initial_placed: set[str] = set()
        self._high_confidence_placed: set[str] = set()

    # ------------------------------------------------------------------
    # Event dedup
    # ------------------------------------------------------------------

    def has_seen(self, event_id: str) -> bool:
        return event_id in self._seen

    def mark_seen(self, event_id: str) -> bool:
        """Record ``event_id``. Returns False if it had already been seen."""
        if event_id in self._seen:
            return False
        self._seen[event_id] = None
        while len(self._seen) > _SEEN_LIMIT:
            self._seen.popitem(last=False)
        return True

    @property
    def seen_count(self) -> int:
        return len(self._seen)

    # ------------------------------------------------------------------
    # Sizing tiers (consumed only on a confirmed fill)
    # ------------------------------------------------------------------

    def initial_placed(self, token_id: str) -> bool:
        return token_id in self._initial_placed

    def mark_initial(self, token_id: str) -> None:
        self._initial_placed.add(token_id)

    def high_confidence_placed(self, token_id: str) -> bool:
        return token_id in self._high_confidence_placed

    def mark_high_confidence(self, token_id: str) -> None:
        self._high_confidence_placed.add(token_id)

    def status(self) -> dict:
        return {
            "wallet": self.wallet,
            "mode": "paper" if self.paper_mode else "live",
            "seeded": self.seeded,
            "seen_events": self.seen_count,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "last_poll_at": self.last_poll_at,
            "uptime_seconds": round(time.time() - self.started_at, 1),
        }

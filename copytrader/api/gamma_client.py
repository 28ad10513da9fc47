"""Client for the Polymarket Gamma API (market metadata and resolution)."""

from __future__ import annotations

import json
import logging
from typing import Optional

import httpx
from pydantic import BaseModel, Field

from copytrader.config import GAMMA_API_URL, HTTP_TIMEOUT

logger = logging.getLogger(__name__)

RESOLVED_PRICE = 0.999


class MarketInfo(BaseModel):
    """The slice of Gamma market metadata the engine uses."""

    condition_id: str
    question: str = ""
    slug: str = ""
    outcomes: list[str] = Field(default_factory=list)
    outcome_prices: list[float] = Field(default_factory=list)
    token_ids: list[str] = Field(default_factory=list)
    closed: bool = False
    resolved: bool = False

    def token_for_outcome(self, outcome: str) -> Optional[str]:
        wanted = outcome.strip().lower()
        for idx, name in enumerate(self.outcomes):
            if str(name).strip().lower() == wanted and idx < len(self.token_ids):
                return self.token_ids[idx]
        return None

    def final_price(self, token_id: str) -> Optional[float]:
        """Resolution price for ``token_id``, if the market lists one."""
        if token_id in self.token_ids:
            idx = self.token_ids.index(token_id)
            if idx < len(self.outcome_prices):
                return self.outcome_prices[idx]
        return None


class GammaClient:
    """Fetch market metadata from the Gamma API."""

    def __init__(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=GAMMA_API_URL,
            timeout=HTTP_TIMEOUT,
        )
        self._cache: dict[str, MarketInfo] = {}

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    async def fetch_market(self, condition_id: str, *, use_cache: bool = False) -> Optional[MarketInfo]:
        """GET /markets?condition_ids= for a single market."""
        if use_cache and condition_id in self._cache:
            return self._cache[condition_id]
        try:
            resp = await self._client.get("/markets", params={"condition_ids": condition_id})
            resp.raise_for_status()
            data = resp.json()
        except Exception:
            logger.warning("fetch_market_error", extra={"condition_id": condition_id}, exc_info=True)
            return None

        markets = data if isinstance(data, list) else [data] if isinstance(data, dict) else []
        for m in markets:
            info = self.parse_market(m)
            if info is not None and info.condition_id.lower() == condition_id.lower():
                self._cache[condition_id] = info
                return info
        return None

    async def token_id_for_outcome(self, condition_id: str, outcome: str) -> Optional[str]:
        """Resolve the token ID that pays out on ``outcome``."""
        info = await self.fetch_market(condition_id, use_cache=True)
        if info is None:
            return None
        return info.token_for_outcome(outcome)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @classmethod
    def parse_market(cls, m: dict) -> Optional[MarketInfo]:
        condition_id = m.get("conditionId") or m.get("condition_id")
        if not condition_id:
            return None

        outcome_prices: list[float] = []
        for p in cls._parse_json_field(m.get("outcomePrices", "[]")):
            try:
                outcome_prices.append(float(p))
            except (TypeError, ValueError):
                outcome_prices.append(0.0)

        closed = bool(m.get("closed"))
        return MarketInfo(
            condition_id=condition_id,
            question=m.get("question", ""),
            slug=m.get("slug", ""),
            outcomes=[str(o) for o in cls._parse_json_field(m.get("outcomes", "[]"))],
            outcome_prices=outcome_prices,
            token_ids=[str(t) for t in cls._parse_json_field(m.get("clobTokenIds", "[]"))],
            closed=closed,
            resolved=cls._is_resolved(m, outcome_prices),
        )

    @staticmethod
    def _parse_json_field(raw: str | list) -> list:
        """Handle double-encoded JSON fields (outcomes, outcomePrices, clobTokenIds)."""
        if isinstance(raw, list):
            return raw
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return parsed
        except (json.JSONDecodeError, TypeError):
            pass
        return []

    @staticmethod
    def _is_resolved(m: dict, outcome_prices: list[float]) -> bool:
        if m.get("closed"):
            return True
        if str(m.get("umaResolutionStatus", "")).lower() == "resolved":
            return True
        return any(p >= RESOLVED_PRICE for p in outcome_prices)

"""Tests for the risk ledger admission checks."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from copytrader.api.data_client import DataClient, DataUnavailable
from copytrader.execution.paper_ledger import PaperLedger
from copytrader.execution.risk_manager import (
    ExposureSnapshot,
    LiveExposure,
    PaperExposure,
    RiskLedger,
    RiskLimits,
    RiskViolation,
)
from copytrader.execution.types import Side


def _source(count, exposure):
    source = MagicMock()
    source.snapshot = AsyncMock(return_value=ExposureSnapshot(position_count=count, exposure=exposure))
    return source


class TestRiskLedger:
    """BUY limits and SELL pass-through."""

    @pytest.mark.asyncio
    async def test_buy_allowed_under_limits(self):
        risk = RiskLedger(_source(1, 20.0), RiskLimits(max_positions=3, max_total_exposure=100.0))
        check = await risk.admit(Side.BUY, 10.0, "t1")
        assert check.allowed
        assert check.projected_exposure == pytest.approx(30.0)

    @pytest.mark.asyncio
    async def test_position_count_limit(self):
        risk = RiskLedger(_source(3, 20.0), RiskLimits(max_positions=3, max_total_exposure=0.0))
        check = await risk.admit(Side.BUY, 10.0)
        assert not check.allowed
        assert check.reason == RiskViolation.POSITION_COUNT

    @pytest.mark.asyncio
    async def test_total_exposure_limit(self):
        risk = RiskLedger(_source(1, 95.0), RiskLimits(max_positions=10, max_total_exposure=100.0))
        check = await risk.admit(Side.BUY, 10.0)
        assert not check.allowed
        assert check.reason == RiskViolation.TOTAL_EXPOSURE
        assert check.current_exposure == pytest.approx(95.0)

    @pytest.mark.asyncio
    async def test_zero_exposure_limit_disables_check(self):
        risk = RiskLedger(_source(1, 5_000.0), RiskLimits(max_positions=10, max_total_exposure=0.0))
        check = await risk.admit(Side.BUY, 10.0)
        assert check.allowed

    @pytest.mark.asyncio
    async def test_sell_always_allowed(self):
        risk = RiskLedger(_source(50, 500.0), RiskLimits(max_positions=1, max_total_exposure=10.0))
        check = await risk.admit(Side.SELL, 600.0)
        assert check.allowed
        assert check.projected_exposure == 0.0


class TestExposureSources:
    """Paper and live exposure snapshots."""

    @pytest.mark.asyncio
    async def test_paper_exposure(self):
        ledger = PaperLedger(None, initial_balance=100.0)
        ledger.buy("t1", 10.0, 0.5)
        ledger.buy("t2", 5.0, 0.5)
        snap = await PaperExposure(ledger).snapshot()
        assert snap.position_count == 2
        assert snap.exposure == pytest.approx(15.0)

    @pytest.mark.asyncio
    async def test_live_exposure_counts_unique_tokens(self):
        data = MagicMock()
        data.fetch_positions = AsyncMock(return_value=[
            {"asset": "t1", "size": "10", "initialValue": "5"},
            {"asset": "t2", "size": "4", "initialValue": "2.5"},
            {"asset": "t3", "size": "0", "initialValue": "9"},
        ])
        snap = await LiveExposure(data, "0xfunder").snapshot()
        assert snap.position_count == 2
        assert snap.exposure == pytest.approx(7.5)
        data.fetch_positions.assert_awaited_once_with("0xfunder")

    @pytest.mark.asyncio
    async def test_live_outage_marks_snapshot_unavailable(self):
        data = MagicMock()
        data.fetch_positions = AsyncMock(side_effect=DataUnavailable("positions returned 503"))
        snap = await LiveExposure(data, "0xfunder").snapshot()
        assert not snap.available


class TestExposureUnavailable:
    """Limits fail closed when holdings cannot be read."""

    def setup_method(self):
        data = MagicMock()
        data.fetch_positions = AsyncMock(side_effect=DataUnavailable("timeout"))
        self.risk = RiskLedger(
            LiveExposure(data, "0xfunder"),
            RiskLimits(max_positions=10, max_total_exposure=1_000.0),
        )

    @pytest.mark.asyncio
    async def test_buy_rejected(self):
        check = await self.risk.admit(Side.BUY, 10.0, "t1")
        assert not check.allowed
        assert check.reason == RiskViolation.EXPOSURE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_sell_still_allowed(self):
        check = await self.risk.admit(Side.SELL, 10.0, "t1")
        assert check.allowed


class TestDataClientOutage:
    """The Data API client reports failures instead of empty holdings."""

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        client = DataClient()
        await client.close()
        client._client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
            base_url="https://data-api.test",
        )
        with pytest.raises(DataUnavailable):
            await client.fetch_positions("0xfunder")
        with pytest.raises(DataUnavailable):
            await client.fetch_position("0xfunder", "t1")
        await client.close()

    @pytest.mark.asyncio
    async def test_empty_list_is_no_position(self):
        client = DataClient()
        await client.close()
        client._client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])),
            base_url="https://data-api.test",
        )
        assert await client.fetch_positions("0xfunder") == []
        assert await client.fetch_position("0xfunder", "t1") is None
        await client.close()

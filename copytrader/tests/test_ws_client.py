"""Tests for orderbook stream message handling and subscription bookkeeping."""

import json
from unittest.mock import AsyncMock

import pytest

from copytrader.api.ws_client import OrderbookStream


def _stream(callback=None, now=100.0):
    stream = OrderbookStream("wss://example.invalid/ws", on_price=callback, clock=lambda: now)
    stream.start = AsyncMock()
    return stream


class TestMessageHandling:
    """Dispatch of book, trade and price-change messages."""

    @pytest.mark.asyncio
    async def test_book_snapshot_stored(self):
        stream = _stream()
        await stream.handle_message(json.dumps({
            "event_type": "book",
            "asset_id": "tok",
            "bids": [{"price": "0.48", "size": "100"}, {"price": "0.50", "size": "10"}],
            "asks": [{"price": "0.55", "size": "20"}],
        }))
        book = stream.get_orderbook("tok")
        assert book.best_bid == pytest.approx(0.50)
        assert book.best_ask == pytest.approx(0.55)
        assert book.captured_at == 100.0

    @pytest.mark.asyncio
    async def test_book_returned_as_copy(self):
        stream = _stream()
        await stream.handle_message(json.dumps({
            "asset_id": "tok", "bids": [{"price": "0.5", "size": "1"}], "asks": [],
        }))
        copy = stream.get_orderbook("tok")
        copy.bids.clear()
        assert stream.get_orderbook("tok").best_bid == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_last_trade_fires_callback_for_subscribed_token(self):
        callback = AsyncMock()
        stream = _stream(callback)
        await stream.subscribe(["tok"])
        await stream.handle_message(json.dumps({
            "event_type": "last_trade_price", "asset_id": "tok", "price": "0.42", "side": "sell",
        }))
        callback.assert_awaited_once_with("tok", 0.42, "SELL")
        assert stream.get_last_trade_price("tok") == pytest.approx(0.42)

    @pytest.mark.asyncio
    async def test_last_trade_for_unsubscribed_token_only_stored(self):
        callback = AsyncMock()
        stream = _stream(callback)
        await stream.handle_message(json.dumps({
            "event_type": "last_trade_price", "asset_id": "other", "price": "0.42",
        }))
        callback.assert_not_awaited()
        assert stream.get_last_trade_price("other") == pytest.approx(0.42)

    @pytest.mark.asyncio
    async def test_out_of_range_trade_price_ignored(self):
        stream = _stream()
        await stream.handle_message(json.dumps({
            "event_type": "last_trade_price", "asset_id": "tok", "price": "1.5",
        }))
        assert stream.get_last_trade_price("tok") is None

    @pytest.mark.asyncio
    async def test_price_change_stores_best_bid(self):
        stream = _stream()
        await stream.handle_message(json.dumps({
            "event_type": "price_change",
            "price_changes": [{"asset_id": "tok", "price": "0.6", "best_bid": "0.58", "best_ask": "0.61"}],
        }))
        assert stream.get_last_trade_price("tok") == pytest.approx(0.58)

    @pytest.mark.asyncio
    async def test_list_payload_and_pong(self):
        stream = _stream()
        await stream.handle_message("PONG")
        await stream.handle_message(json.dumps([
            {"asset_id": "a", "bids": [{"price": "0.1", "size": "5"}], "asks": []},
            {"asset_id": "b", "bids": [], "asks": [{"price": "0.9", "size": "5"}]},
        ]))
        assert stream.get_orderbook("a") is not None
        assert stream.get_orderbook("b") is not None

    @pytest.mark.asyncio
    async def test_callback_error_does_not_propagate(self):
        callback = AsyncMock(side_effect=RuntimeError("boom"))
        stream = _stream(callback)
        await stream.subscribe(["tok"])
        await stream.handle_message(json.dumps({
            "event_type": "last_trade_price", "asset_id": "tok", "price": "0.3",
        }))
        callback.assert_awaited_once()


class TestSubscriptions:
    """Subscription set and reconnect backoff."""

    @pytest.mark.asyncio
    async def test_subscribe_starts_stream_once(self):
        stream = _stream()
        await stream.subscribe(["a", "b"])
        await stream.subscribe(["a"])
        assert stream.subscriptions == {"a", "b"}
        stream.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unsubscribe_drops_book(self):
        stream = _stream()
        await stream.subscribe(["tok"])
        await stream.handle_message(json.dumps({
            "asset_id": "tok", "bids": [{"price": "0.5", "size": "1"}], "asks": [],
        }))
        await stream.unsubscribe(["tok"])
        assert stream.subscriptions == set()
        assert stream.get_orderbook("tok") is None

    @pytest.mark.asyncio
    async def test_unsubscribe_sends_message_when_connected(self):
        stream = _stream()
        await stream.subscribe(["tok"])
        ws = AsyncMock()
        stream._ws = ws
        await stream.unsubscribe(["tok"])
        sent = json.loads(ws.send.await_args.args[0])
        assert sent == {"assets_ids": ["tok"], "type": "market", "unsubscribe": True}

    def test_reconnect_delay_doubles_and_caps(self):
        stream = _stream()
        assert [stream.reconnect_delay(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]

"""
Tests for the seeded market feed and broker.
"""

import pytest

from arena.gateways.base import OrderRequest, OrderStatus, TradeError
from arena.gateways.simulated import SimulatedBroker, SimulatedMarketFeed
from arena.models.trade import TradeSide


class TestSimulatedMarketFeed:

    @pytest.mark.asyncio
    async def test_same_seed_same_prices(self):
        first, second = SimulatedMarketFeed(seed=7), SimulatedMarketFeed(seed=7)
        for _ in range(5):
            a = await first.get_quotes(["RELIANCE", "TCS"])
            b = await second.get_quotes(["RELIANCE", "TCS"])
            assert [q.price for q in a] == [q.price for q in b]

    @pytest.mark.asyncio
    async def test_reset_replays(self):
        feed = SimulatedMarketFeed(seed=3)
        before = [(await feed.get_quotes(["TCS"]))[0].price for _ in range(3)]
        feed.reset()
        after = [(await feed.get_quotes(["TCS"]))[0].price for _ in range(3)]
        assert before == after
        assert await feed.get_history("TCS") == after

    @pytest.mark.asyncio
    async def test_unknown_tickers_omitted(self):
        quotes = await SimulatedMarketFeed().get_quotes(["TCS", "NOPE"])
        assert [q.ticker for q in quotes] == ["TCS"]

    @pytest.mark.asyncio
    async def test_price_floor(self):
        feed = SimulatedMarketFeed(seed=1, universe={"X": (100.0, 0.0)})
        for _ in range(200):
            [quote] = await feed.get_quotes(["X"])
            assert quote.price >= 80.0

    @pytest.mark.asyncio
    async def test_news_limit(self):
        news = await SimulatedMarketFeed().get_news(limit=3)
        assert len(news) == 3
        assert all(a.source == "simulated" for a in news)


class TestSimulatedBroker:

    @pytest.mark.asyncio
    async def test_fills_at_reference_price(self):
        broker = SimulatedBroker(seed=1)
        broker.set_prices({"TCS": 3650.0})

        result = await broker.submit_order(OrderRequest("TCS", TradeSide.BUY, 5))

        assert result.is_complete
        assert result.fill_price == 3650.0
        assert result.order_id == "SIM-1"

    @pytest.mark.asyncio
    async def test_slippage_against_the_trader(self):
        broker = SimulatedBroker(slippage=0.01)
        broker.set_prices({"TCS": 100.0})
        buy = await broker.submit_order(OrderRequest("TCS", TradeSide.BUY, 1))
        sell = await broker.submit_order(OrderRequest("TCS", TradeSide.SELL, 1))
        assert (buy.fill_price, sell.fill_price) == (101.0, 99.0)

    @pytest.mark.asyncio
    async def test_missing_price_raises(self):
        with pytest.raises(TradeError) as exc:
            await SimulatedBroker().submit_order(OrderRequest("TCS", TradeSide.BUY, 1))
        assert exc.value.message == "No reference price for TCS"
        assert exc.value.code == "NO_PRICE"

    @pytest.mark.asyncio
    async def test_rejection_rate(self):
        broker = SimulatedBroker(rejection_rate=1.0)
        broker.set_prices({"TCS": 3650.0})
        result = await broker.submit_order(OrderRequest("TCS", TradeSide.BUY, 1))
        assert result.status == OrderStatus.REJECTED
        assert not result.is_complete

    @pytest.mark.asyncio
    async def test_reset_restarts_order_ids(self):
        broker = SimulatedBroker()
        broker.set_prices({"TCS": 1.0})
        await broker.submit_order(OrderRequest("TCS", TradeSide.BUY, 1))
        broker.reset()
        broker.set_prices({"TCS": 1.0})
        result = await broker.submit_order(OrderRequest("TCS", TradeSide.BUY, 1))
        assert result.order_id == "SIM-1"

    def test_invalid_rejection_rate(self):
        with pytest.raises(ValueError):
            SimulatedBroker(rejection_rate=1.5)

"""End-to-end cycles of the market maker against the paper venue."""

from decimal import Decimal
from typing import Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import POOL_ADDRESS, FakeEth, make_market, make_swap_log, make_w3
from ladder_mm.config import PoolConfig, ResidualPolicy, Settings, StrategyConfig
from ladder_mm.market_maker.bot import MarketMakerBot, is_usable_price
from ladder_mm.market_maker.simulator import DexSimulator
from ladder_mm.market_maker.state import get_market_maker_state
from ladder_mm.market_maker.types import Side
from ladder_mm.market_maker.venue import PaperVenue, SubmissionError

MARKET = "UNIT"
OTHER = "OTHER"


class StubOracle:
    def __init__(self, prices: Dict[str, Optional[Decimal]]):
        self.prices = prices
        self.updates = 0

    async def update(self) -> None:
        self.updates += 1

    def price(self, market_id: str) -> Optional[Decimal]:
        return self.prices.get(market_id)


class FailingVenue(PaperVenue):
    async def submit(self, batch):
        raise SubmissionError("execution reverted")


def make_unit_market(**params):
    """Unit-priced market with 0/0 decimals so tick 0 is price 1."""
    values = {
        "delta_limit": Decimal("2"),
        "start_base_amount": Decimal("5"),
        "start_quote_amount": Decimal("5"),
        "min_order_size": Decimal("0.01"),
        "residual_policy": ResidualPolicy.KEEP,
    }
    values.update(params)
    return make_market(price="1", quote_decimals=0, base_decimals=0, **values)


def make_settings(**overrides) -> Settings:
    values = {"dry_run": True, "cancel_on_start": False, "cancel_on_stop": True, "simulate": False}
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def make_bot(markets=None, prices=None, venue_cls=PaperVenue, simulator=None, **settings) -> MarketMakerBot:
    markets = markets or {MARKET: make_unit_market()}
    prices = prices if prices is not None else {mid: Decimal("1") for mid in markets}
    bot = MarketMakerBot(
        make_settings(**settings),
        StrategyConfig(markets=markets),
        venue=venue_cls(markets),
        oracle=StubOracle(prices),
        notifier=AsyncMock(),
        simulator=simulator,
    )
    await bot.initialize()
    return bot


class TestUsablePrice:
    @pytest.mark.parametrize(
        "price,usable",
        [
            (Decimal("1"), True),
            (None, False),
            (Decimal("0"), False),
            (Decimal("-3"), False),
            (Decimal("NaN"), False),
            (Decimal("Infinity"), False),
        ],
    )
    def test_usable_price(self, price, usable):
        assert is_usable_price(price) is usable


class TestCycle:
    @pytest.mark.asyncio
    async def test_first_cycle_places_the_ladder(self):
        bot = await make_bot()

        snapshot = await bot.run_cycle()

        market = snapshot.markets[MARKET]
        assert market.error is None
        assert market.skew == 0
        assert (market.ask_spread, market.bid_spread) == (30, 30)
        assert market.makes == 6
        assert sorted(market.ask_ladder) == [-30, -25, -20]
        assert sorted(market.bid_ladder) == [-30, -25, -20]
        assert market.tx_hash == "paper-1"

        orders = await bot.venue.get_open_orders(MARKET)
        assert len(orders) == 6
        assert {o.side for o in orders} == {Side.ASK, Side.BID}
        assert get_market_maker_state() is snapshot

    @pytest.mark.asyncio
    async def test_second_cycle_is_a_no_op(self):
        bot = await make_bot()
        await bot.run_cycle()

        snapshot = await bot.run_cycle()

        market = snapshot.markets[MARKET]
        assert (market.claims, market.cancels, market.makes) == (0, 0, 0)
        assert market.tx_hash is None
        assert len(bot.venue.submitted) == 1

    @pytest.mark.asyncio
    async def test_fill_is_claimed_next_cycle(self):
        bot = await make_bot()
        await bot.run_cycle()
        ask = next(o for o in await bot.venue.get_open_orders(MARKET) if o.side == Side.ASK)
        bot.venue.fill(MARKET, ask.id, ask.cancelable)

        snapshot = await bot.run_cycle()

        assert snapshot.markets[MARKET].claims == 1
        assert bot.venue.submitted[-1].claims[0].order_id == ask.id

    @pytest.mark.asyncio
    async def test_tightly_quoted_book_is_left_alone(self):
        bot = await make_bot()
        bot.venue.set_book_top(MARKET, Decimal("0.999"), Decimal("1.001"))

        snapshot = await bot.run_cycle()

        assert snapshot.markets[MARKET].skipped
        assert snapshot.markets[MARKET].makes == 0
        assert bot.venue.submitted == []

    @pytest.mark.asyncio
    async def test_tightly_quoted_book_keeps_resting_orders(self):
        """A skipped cycle must not cancel the ladder that makes the book tight."""
        bot = await make_bot()
        await bot.run_cycle()
        resting = {o.id for o in await bot.venue.get_open_orders(MARKET)}
        bot.venue.set_book_top(MARKET, Decimal("0.999"), Decimal("1.001"))

        snapshot = await bot.run_cycle()

        market = snapshot.markets[MARKET]
        assert market.skipped
        assert (market.claims, market.cancels, market.makes) == (0, 0, 0)
        assert market.tx_hash is None
        assert len(bot.venue.submitted) == 1
        assert {o.id for o in await bot.venue.get_open_orders(MARKET)} == resting

    @pytest.mark.asyncio
    async def test_cancel_on_start_clears_resting_orders(self):
        bot = await make_bot()
        await bot.run_cycle()

        restarted = MarketMakerBot(
            make_settings(cancel_on_start=True),
            bot.strategy,
            venue=bot.venue,
            oracle=bot.oracle,
            notifier=AsyncMock(),
        )
        await restarted.initialize()

        assert await bot.venue.get_open_orders(MARKET) == []


class TestFailureIsolation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_price", [None, Decimal("0"), Decimal("NaN")])
    async def test_market_without_price_is_skipped(self, bad_price):
        markets = {MARKET: make_unit_market(), OTHER: make_unit_market()}
        bot = await make_bot(markets=markets, prices={MARKET: Decimal("1"), OTHER: bad_price})

        snapshot = await bot.run_cycle()

        assert snapshot.markets[MARKET].makes == 6
        assert snapshot.markets[OTHER].error is not None
        assert snapshot.failed_markets == [OTHER]
        assert await bot.venue.get_open_orders(OTHER) == []
        bot.notifier.notify_error.assert_awaited()

    @pytest.mark.asyncio
    async def test_venue_fetch_failure_is_skipped(self):
        markets = {MARKET: make_unit_market(), OTHER: make_unit_market()}
        bot = await make_bot(markets=markets)
        original = bot.venue.get_open_orders

        async def get_open_orders(market_id):
            if market_id == OTHER:
                raise ConnectionError("subgraph unavailable")
            return await original(market_id)

        bot.venue.get_open_orders = get_open_orders

        snapshot = await bot.run_cycle()

        assert "subgraph unavailable" in snapshot.markets[OTHER].error
        assert snapshot.markets[MARKET].makes == 6

    @pytest.mark.asyncio
    async def test_submission_failure_is_reported_not_raised(self):
        bot = await make_bot(venue_cls=FailingVenue)

        snapshot = await bot.run_cycle()

        assert "execution reverted" in snapshot.markets[MARKET].error
        assert snapshot.markets[MARKET].tx_hash is None
        bot.notifier.notify_error.assert_awaited()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_stop_cancels_everything(self):
        bot = await make_bot()
        await bot.run_cycle()

        await bot.stop()

        assert await bot.venue.get_open_orders(MARKET) == []
        assert get_market_maker_state() is None
        bot.notifier.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        bot = await make_bot()

        await bot.stop()
        await bot.stop()

        assert bot.notifier.close.await_count == 1

    @pytest.mark.asyncio
    async def test_run_cycle_requires_initialize(self):
        bot = MarketMakerBot(make_settings(), StrategyConfig(markets={MARKET: make_unit_market()}))

        with pytest.raises(RuntimeError):
            await bot.run_cycle()


class TestSharedInventory:
    @pytest.mark.asyncio
    async def test_markets_on_the_same_tokens_split_the_wallet(self):
        """Wallet of 4/4 split 3:1 by start amounts; only the larger share backs a full ladder."""
        markets = {
            MARKET: make_unit_market(start_base_amount=Decimal("3"), start_quote_amount=Decimal("3")),
            OTHER: make_unit_market(start_base_amount=Decimal("1"), start_quote_amount=Decimal("1")),
        }
        bot = await make_bot(markets=markets)

        snapshot = await bot.run_cycle()

        assert snapshot.failed_markets == []
        assert snapshot.markets[MARKET].makes == 6
        assert snapshot.markets[OTHER].makes == 0
        assert snapshot.markets[OTHER].tx_hash is None
        assert len(bot.venue.submitted) == 1
        assert all(amount >= 0 for amount in (await bot.venue.get_balances()).values())

    @pytest.mark.asyncio
    async def test_balance_fetch_failure_skips_every_market(self):
        bot = await make_bot()
        bot.venue.get_balances = AsyncMock(side_effect=ConnectionError("rpc unavailable"))

        snapshot = await bot.run_cycle()

        assert "rpc unavailable" in snapshot.markets[MARKET].error
        assert bot.venue.submitted == []


class TestCalibration:
    @pytest.mark.asyncio
    async def test_cycle_collects_trades_and_backtests(self):
        market = make_unit_market().model_copy(
            update={"pools": [PoolConfig(address=POOL_ADDRESS, token0_decimals=0, token1_decimals=0)]}
        )
        markets = {MARKET: market}
        eth = FakeEth(head=50, logs=[[make_swap_log(10, -9, block=50)]])
        simulator = DexSimulator(markets, make_w3(eth))
        simulator.find_spread = MagicMock(wraps=simulator.find_spread)
        bot = await make_bot(markets=markets, simulator=simulator, simulate=True)

        snapshot = await bot.run_cycle()

        assert snapshot.markets[MARKET].makes == 6
        assert simulator.latest_block == 50
        assert [t.price for t in simulator.trades[MARKET]] == [Decimal("0.9")]
        simulator.find_spread.assert_called_once_with(MARKET, 0, 50, Decimal("1"))

    @pytest.mark.asyncio
    async def test_calibration_error_does_not_break_the_cycle(self):
        simulator = MagicMock()
        simulator.update = AsyncMock()
        simulator.latest_block = 10
        simulator.find_spread.side_effect = ValueError("tick out of range")
        bot = await make_bot(simulator=simulator, simulate=True)

        snapshot = await bot.run_cycle()

        assert snapshot.markets[MARKET].makes == 6
        assert snapshot.markets[MARKET].error is None
        simulator.find_spread.assert_called_once()

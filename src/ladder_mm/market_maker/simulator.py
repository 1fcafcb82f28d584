import json
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from web3 import AsyncWeb3

from ladder_mm.config import MarketConfig
from ladder_mm.market_maker.dex import PoolExtractor
from ladder_mm.market_maker.types import ZERO, SpreadResult, TradeRecord
from ladder_mm.utils.logging import get_logger
from ladder_mm.utils.tick import TickMath

log = get_logger(__name__)


def parse_trade(raw: Mapping[str, Any]) -> TradeRecord:
    """Build a TradeRecord from a JSON object (camelCase or snake_case keys)."""

    def pick(snake: str, camel: str) -> Any:
        return raw[snake] if snake in raw else raw[camel]

    return TradeRecord(
        is_taking_bid_side=bool(pick("is_taking_bid_side", "isTakingBidSide")),
        amount_in=Decimal(str(pick("amount_in", "amountIn"))),
        amount_out=Decimal(str(pick("amount_out", "amountOut"))),
        price=Decimal(str(raw["price"])),
        block_number=int(pick("block_number", "blockNumber")),
        log_index=int(pick("log_index", "logIndex")),
        pool=str(raw.get("pool", "")),
    )


def load_trades(path: Union[str, Path]) -> Dict[str, List[TradeRecord]]:
    """Load a ``{market_id: [trade, ...]}`` tape from a JSON file."""
    with Path(path).open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    return {market_id: [parse_trade(t) for t in trades] for market_id, trades in data.items()}


def simulate_profit(
    trades: Iterable[TradeRecord],
    target_bid_price: Decimal,
    target_ask_price: Decimal,
    oracle_price: Decimal,
) -> Decimal:
    """Quote-denominated profit of resting at the target prices through ``trades``.

    A taker selling below our bid would have hit it; a taker buying above our
    ask would have lifted it. Taker fees on the venue are ignored.
    """
    base_delta = ZERO
    quote_delta = ZERO
    for trade in trades:
        if trade.is_taking_bid_side and trade.price < target_bid_price:
            base_delta += trade.amount_in
            quote_delta -= trade.amount_in * target_bid_price
        elif not trade.is_taking_bid_side and trade.price > target_ask_price:
            base_delta -= trade.amount_out
            quote_delta += trade.amount_out * target_ask_price
    return quote_delta + base_delta * oracle_price


class DexSimulator:
    """Collects taker trades from external pools and backtests spreads against them."""

    def __init__(self, markets: Dict[str, MarketConfig], w3: Optional[AsyncWeb3] = None):
        self.markets = markets
        self.w3 = w3
        self.tick_math = {
            mid: TickMath(m.venue.quote_decimals, m.venue.base_decimals) for mid, m in markets.items()
        }
        self.extractors: Dict[str, List[PoolExtractor]] = {
            mid: [PoolExtractor(pool) for pool in m.pools] for mid, m in markets.items()
        }
        self.trades: Dict[str, List[TradeRecord]] = {mid: [] for mid in markets}
        self.start_block = 0
        self.latest_block = 0

    def add_trades(self, market_id: str, trades: Iterable[TradeRecord]) -> None:
        """Append trades to a market's tape, keeping it in (block, log index) order."""
        tape = self.trades.setdefault(market_id, [])
        tape.extend(trades)
        tape.sort(key=lambda t: t.sort_key)

    async def update(self) -> None:
        """Pull Swap logs from the configured pools since the last update."""
        if self.w3 is None:
            raise RuntimeError("DexSimulator.update requires a web3 client")

        if self.start_block == 0:
            self.start_block = await self.w3.eth.block_number
        self.latest_block = await self.w3.eth.block_number
        if self.start_block > self.latest_block:
            return

        addresses = [e.address for extractors in self.extractors.values() for e in extractors]
        if addresses:
            logs = await self.w3.eth.get_logs(
                {"address": addresses, "fromBlock": self.start_block, "toBlock": self.latest_block}
            )
            for market_id, extractors in self.extractors.items():
                new_trades = [t for e in extractors for t in e.extract(logs)]
                self.add_trades(market_id, new_trades)
                log.debug("Trades collected", market=market_id, count=len(new_trades))

        self.start_block = self.latest_block + 1

    def find_spread(
        self,
        market_id: str,
        start_block: int,
        end_block: int,
        previous_oracle_price: Decimal,
    ) -> SpreadResult:
        """Search observed price levels for the most profitable bid/ask pair.

        Candidates are the observed taker prices on the profitable side of the
        oracle plus the oracle itself; every pair with ask > bid is simulated,
        so the search is quadratic in the number of trades in the window.
        """
        params = self.markets[market_id].params
        tick_math = self.tick_math[market_id]
        oracle = Decimal(previous_oracle_price)

        trades = sorted(
            (t for t in self.trades.get(market_id, []) if start_block <= t.block_number <= end_block),
            key=lambda t: t.sort_key,
        )

        bid_prices = sorted({t.price for t in trades if t.is_taking_bid_side and t.price <= oracle} | {oracle})
        ask_prices = sorted({t.price for t in trades if not t.is_taking_bid_side and t.price >= oracle} | {oracle})

        best: Optional[tuple] = None
        for bid in bid_prices:
            for ask in ask_prices:
                if ask <= bid:
                    continue
                profit = simulate_profit(trades, bid, ask, oracle)
                if profit > 0 and (best is None or profit > best[0]):
                    best = (profit, bid, ask)

        if best is None:
            ask_spread, bid_spread = params.fallback_spreads
            return SpreadResult(
                ask_spread=ask_spread,
                bid_spread=bid_spread,
                profit=ZERO,
                target_ask_price=oracle,
                target_bid_price=oracle,
            )

        profit, bid, ask = best
        result = SpreadResult(
            ask_spread=max(0, tick_math.ask_book_tick(oracle) - tick_math.ask_book_tick(ask)),
            bid_spread=max(0, tick_math.bid_book_tick(oracle) - tick_math.bid_book_tick(bid)),
            profit=profit,
            target_ask_price=ask,
            target_bid_price=bid,
        )
        log.info(
            "Simulation",
            market=market_id,
            start_block=start_block,
            end_block=end_block,
            trades=len(trades),
            oracle_price=oracle,
            profit=result.profit,
            target_ask_price=result.target_ask_price,
            target_bid_price=result.target_bid_price,
            ask_spread=result.ask_spread,
            bid_spread=result.bid_spread,
        )
        return result

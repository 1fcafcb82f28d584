from collections import defaultdict
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, localcontext
from typing import Dict, Iterable, List, Mapping, Tuple

from ladder_mm.config import MarketConfig, MarketParams
from ladder_mm.market_maker.types import (
    ZERO,
    LiveOrder,
    OrderSizePair,
    Position,
    QuoteDecision,
    Side,
    SpreadPair,
)

ONE = Decimal("1")
HALF = Decimal("0.5")


def build_position(free_base: Decimal, free_quote: Decimal, orders: Iterable[LiveOrder]) -> Position:
    """Fold wallet balances and resting orders into a Position.

    A bid locks quote and fills into base; an ask locks base and fills into quote.
    """
    claimable_base = claimable_quote = ZERO
    cancelable_base = cancelable_quote = ZERO
    for order in orders:
        if order.side == Side.BID:
            cancelable_quote += order.cancelable * order.price
            claimable_base += order.claimable
        else:
            cancelable_base += order.cancelable
            claimable_quote += order.claimable * order.price

    return Position(
        free_base=free_base,
        free_quote=free_quote,
        claimable_base=claimable_base,
        claimable_quote=claimable_quote,
        cancelable_base=cancelable_base,
        cancelable_quote=cancelable_quote,
    )


def allocate_balances(
    markets: Mapping[str, MarketConfig], wallet: Mapping[str, Decimal]
) -> Dict[str, Tuple[Decimal, Decimal]]:
    """Split free wallet balances between the markets that trade each token.

    Shares follow each market's start amount for the token, or are equal when
    every weight is zero. The last market on a token takes the remainder, so
    the shares never add up to more than the wallet holds.
    """
    users: Dict[str, List[Tuple[str, int, Decimal]]] = defaultdict(list)
    for market_id, market in markets.items():
        users[market.venue.base.lower()].append((market_id, 0, market.params.start_base_amount))
        users[market.venue.quote.lower()].append((market_id, 1, market.params.start_quote_amount))

    shares = {market_id: [ZERO, ZERO] for market_id in markets}
    for token, holders in users.items():
        available = wallet.get(token, ZERO)
        total_weight = sum((weight for _, _, weight in holders), ZERO)
        remaining = available
        for i, (market_id, slot, weight) in enumerate(holders):
            if i == len(holders) - 1:
                share = max(remaining, ZERO)
            else:
                with localcontext() as ctx:
                    ctx.rounding = ROUND_DOWN
                    if total_weight > 0:
                        share = available * weight / total_weight
                    else:
                        share = available / len(holders)
            shares[market_id][slot] = share
            remaining -= share

    return {market_id: (base, quote) for market_id, (base, quote) in shares.items()}


def compute_skew(position: Position, oracle_price: Decimal, delta_limit: Decimal) -> Decimal:
    """Inventory imbalance in quote terms, normalised by delta_limit and clamped to [-1, 1].

    Positive means the book holds more base than quote by value.
    """
    if oracle_price <= 0:
        raise ValueError(f"Oracle price must be positive, got {oracle_price}")
    if delta_limit <= 0:
        raise ValueError(f"delta_limit must be positive, got {delta_limit}")

    raw = (position.total_base * oracle_price - position.total_quote) / delta_limit
    return max(-ONE, min(ONE, raw))


def compute_spreads(skew: Decimal, min_tick_spread: int, max_tick_spread: int) -> SpreadPair:
    """Split the spread budget between the sides.

    skew = 1 (excess base) gives the ask the minimum spread so it sells sooner;
    skew = -1 gives it the maximum.
    Only the ask side is rounded (half away from zero); the bid side takes the
    remainder, so ask + bid always equals min + max.
    """
    width = Decimal(max_tick_spread - min_tick_spread)
    ask = (width * HALF * (ONE - skew) + min_tick_spread).quantize(ONE, rounding=ROUND_HALF_UP)
    ask_spread = int(ask)
    return SpreadPair(
        ask_spread=ask_spread,
        bid_spread=max_tick_spread + min_tick_spread - ask_spread,
    )


def compute_order_sizes(skew: Decimal, order_size: Decimal) -> OrderSizePair:
    return OrderSizePair(
        ask_size=order_size * min(skew + ONE, ONE),
        bid_size=order_size * min(ONE - skew, ONE),
    )


class InventorySkewCalculator:
    """Derives skew, spreads and sizes for a market from its inventory."""

    def __init__(self, params: MarketParams):
        if params.max_tick_spread <= params.min_tick_spread:
            raise ValueError("max_tick_spread must be greater than min_tick_spread")
        self.params = params

    def decide(self, position: Position, oracle_price: Decimal) -> QuoteDecision:
        skew = compute_skew(position, oracle_price, self.params.delta_limit)
        return QuoteDecision(
            skew=skew,
            spreads=compute_spreads(skew, self.params.min_tick_spread, self.params.max_tick_spread),
            sizes=compute_order_sizes(skew, self.params.order_size),
        )

    def inventory_pnl(self, position: Position, oracle_price: Decimal) -> Decimal:
        """Quote value of current inventory minus the starting inventory at the same price."""
        start_value = self.params.start_base_amount * oracle_price + self.params.start_quote_amount
        current_value = position.total_base * oracle_price + position.total_quote
        return current_value - start_value

from decimal import Decimal
from typing import Dict, Optional

from ladder_mm.config import MarketParams
from ladder_mm.market_maker.types import (
    ZERO,
    InsufficientInventory,
    OrderBookTop,
    Position,
    QuoteDecision,
    Side,
    TargetLadder,
)
from ladder_mm.utils.logging import get_logger
from ladder_mm.utils.tick import TickMath

log = get_logger(__name__)


def is_efficiently_quoted(
    book: Optional[OrderBookTop],
    oracle_price: Decimal,
    tick_math: TickMath,
    spread_budget: int,
) -> bool:
    """True when the venue's best bid/ask already straddle the oracle tightly enough."""
    if book is None or book.best_bid is None or book.best_ask is None:
        return False
    if not (book.best_bid < oracle_price < book.best_ask):
        return False
    book_spread = tick_math.bid_book_tick(book.best_ask) - tick_math.bid_book_tick(book.best_bid)
    return book_spread <= spread_budget


def _rungs(reference_tick: int, spread: int, gap: int, count: int, size: Decimal) -> Dict[int, Decimal]:
    rungs: Dict[int, Decimal] = {}
    if size <= 0:
        return rungs
    for i in range(count):
        # colliding ticks keep the later rung
        rungs[reference_tick - (spread - gap * i)] = size
    return rungs


def build_ladder(
    decision: QuoteDecision,
    params: MarketParams,
    tick_math: TickMath,
    oracle_price: Decimal,
    position: Position,
    book: Optional[OrderBookTop] = None,
    market_id: str = "",
) -> TargetLadder:
    """Expand a quote decision into target sizes per tick.

    Each side is emptied rather than partially sized when the inventory cannot
    back it, and the whole ladder is empty when the venue is already quoted
    inside the spread budget around the oracle.
    """
    if is_efficiently_quoted(book, oracle_price, tick_math, params.spread_budget):
        log.info(
            "Skip making orders",
            market=market_id,
            best_bid=book.best_bid,
            best_ask=book.best_ask,
            oracle_price=oracle_price,
        )
        return TargetLadder(skipped=True)

    ladder = TargetLadder(
        ask=_rungs(
            tick_math.ask_book_tick(oracle_price),
            decision.spreads.ask_spread,
            params.order_gap,
            params.order_num,
            decision.sizes.ask_size,
        ),
        bid=_rungs(
            tick_math.bid_book_tick(oracle_price),
            decision.spreads.bid_spread,
            params.order_gap,
            params.order_num,
            decision.sizes.bid_size,
        ),
    )

    required_base = sum(ladder.ask.values(), ZERO)
    if required_base > position.total_base:
        ladder.insufficient.append(
            InsufficientInventory(side=Side.ASK, required=required_base, available=position.total_base)
        )
        ladder.ask = {}

    required_quote = sum(
        (size * tick_math.bid_tick_to_price(tick) for tick, size in ladder.bid.items()),
        ZERO,
    )
    if required_quote > position.total_quote:
        ladder.insufficient.append(
            InsufficientInventory(side=Side.BID, required=required_quote, available=position.total_quote)
        )
        ladder.bid = {}

    for shortfall in ladder.insufficient:
        log.warning(
            "Insufficient inventory",
            market=market_id,
            side=shortfall.side.value,
            required=shortfall.required,
            available=shortfall.available,
        )

    return ladder

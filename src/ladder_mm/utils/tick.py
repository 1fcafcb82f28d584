"""Tick <-> price conversion for tick-based order books.

A tick ``t`` encodes the raw price ``1.0001 ** t``. The bid book quotes quote
per base; the ask book is the inverted book (base per quote), so the same human
price sits at (roughly) the negated tick on the ask side.
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_EVEN, Decimal, localcontext

MIN_TICK = -524287
MAX_TICK = 524287

_PRECISION = 50
_SNAP = Decimal("1e-20")


def _log_base() -> Decimal:
    return Decimal("1.0001").ln()


def _raw_ratio(price: Decimal, quote_decimals: int, base_decimals: int) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return price * (Decimal(10) ** quote_decimals) / (Decimal(10) ** base_decimals)


def raw_price_to_tick(raw: Decimal) -> int:
    """Largest tick whose raw price does not exceed ``raw``."""
    if raw <= 0:
        raise ValueError(f"Price must be positive, got {raw}")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        exact = Decimal(raw).ln() / _log_base()
        nearest = exact.to_integral_value(rounding=ROUND_HALF_EVEN)
        # exp/ln round-trips land a hair under the integer
        if abs(exact - nearest) < _SNAP:
            tick = int(nearest)
        else:
            tick = int(exact.to_integral_value(rounding=ROUND_FLOOR))
    if not MIN_TICK <= tick <= MAX_TICK:
        raise ValueError(f"Tick {tick} out of range")
    return tick


def tick_to_raw_price(tick: int) -> Decimal:
    if not MIN_TICK <= tick <= MAX_TICK:
        raise ValueError(f"Tick {tick} out of range")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return (_log_base() * tick).exp()


def price_to_tick(price: Decimal, quote_decimals: int, base_decimals: int) -> int:
    """Bid-book tick for a human price (quote per base)."""
    return raw_price_to_tick(_raw_ratio(Decimal(price), quote_decimals, base_decimals))


def tick_to_price(tick: int, quote_decimals: int, base_decimals: int) -> Decimal:
    """Human price (quote per base) for a bid-book tick."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        raw = tick_to_raw_price(tick)
        return raw * (Decimal(10) ** base_decimals) / (Decimal(10) ** quote_decimals)


def invert_tick(tick: int) -> int:
    """Map a tick between the normal and the inverted book."""
    return -tick


@dataclass(frozen=True)
class TickMath:
    """Tick conversions bound to one market's token decimals."""

    quote_decimals: int
    base_decimals: int

    def bid_book_tick(self, price: Decimal) -> int:
        return price_to_tick(price, self.quote_decimals, self.base_decimals)

    def ask_book_tick(self, price: Decimal) -> int:
        # ask book is priced in base per quote
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            inverted = Decimal(1) / _raw_ratio(Decimal(price), self.quote_decimals, self.base_decimals)
        return raw_price_to_tick(inverted)

    def bid_tick_to_price(self, tick: int) -> Decimal:
        return tick_to_price(tick, self.quote_decimals, self.base_decimals)

    def ask_tick_to_price(self, tick: int) -> Decimal:
        return tick_to_price(invert_tick(tick), self.quote_decimals, self.base_decimals)

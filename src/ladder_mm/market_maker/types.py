from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Union

ZERO = Decimal("0")


class Side(str, Enum):
    """Book side of a resting order."""

    BID = "bid"
    ASK = "ask"


@dataclass(frozen=True)
class Position:
    """Inventory for one market, split by where the tokens currently sit."""

    free_base: Decimal = ZERO
    free_quote: Decimal = ZERO
    claimable_base: Decimal = ZERO
    claimable_quote: Decimal = ZERO
    cancelable_base: Decimal = ZERO
    cancelable_quote: Decimal = ZERO

    @property
    def total_base(self) -> Decimal:
        return self.free_base + self.claimable_base + self.cancelable_base

    @property
    def total_quote(self) -> Decimal:
        return self.free_quote + self.claimable_quote + self.cancelable_quote


@dataclass(frozen=True)
class SpreadPair:
    """Distance in ticks from the oracle tick for each side."""

    ask_spread: int
    bid_spread: int


@dataclass(frozen=True)
class OrderSizePair:
    """Per-rung order size in base units."""

    ask_size: Decimal
    bid_size: Decimal


@dataclass(frozen=True)
class QuoteDecision:
    """Output of the inventory skew calculator."""

    skew: Decimal
    spreads: SpreadPair
    sizes: OrderSizePair


@dataclass(frozen=True)
class InsufficientInventory:
    """A ladder side that would commit more than the inventory holds."""

    side: Side
    required: Decimal
    available: Decimal


@dataclass
class TargetLadder:
    """Desired resting size per tick for each side."""

    ask: Dict[int, Decimal] = field(default_factory=dict)
    bid: Dict[int, Decimal] = field(default_factory=dict)
    skipped: bool = False
    insufficient: List[InsufficientInventory] = field(default_factory=list)

    def side(self, side: Side) -> Dict[int, Decimal]:
        return self.bid if side == Side.BID else self.ask

    def sorted_items(self, side: Side) -> List[tuple]:
        return sorted(self.side(side).items())

    @property
    def is_empty(self) -> bool:
        return not self.ask and not self.bid


@dataclass(frozen=True)
class LiveOrder:
    """Snapshot of an order resting on the venue.

    amount, filled and cancelable are base-denominated; claimable is the filled
    amount not yet withdrawn, also in base.
    """

    id: str
    side: Side
    tick: int
    order_index: int
    amount: Decimal
    filled: Decimal
    cancelable: Decimal
    claimable: Decimal
    price: Decimal = ZERO

    @property
    def is_fully_filled(self) -> bool:
        return self.amount == self.filled


@dataclass(frozen=True)
class Claim:
    order_id: str


@dataclass(frozen=True)
class Cancel:
    order_id: str


@dataclass(frozen=True)
class Make:
    tick: int
    side: Side
    size: Decimal  # base units


Instruction = Union[Claim, Cancel, Make]


@dataclass
class InstructionBatch:
    """Everything one market submits in a cycle, applied claims -> cancels -> makes."""

    market_id: str
    claims: List[Claim] = field(default_factory=list)
    cancels: List[Cancel] = field(default_factory=list)
    makes: List[Make] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_empty(self) -> bool:
        return not self.claims and not self.cancels and not self.makes

    def instructions(self) -> List[Instruction]:
        return [*self.claims, *self.cancels, *self.makes]


@dataclass(frozen=True)
class OrderBookTop:
    """Best prices currently resting on the venue (quote per base)."""

    best_bid: Optional[Decimal] = None
    best_ask: Optional[Decimal] = None


@dataclass(frozen=True)
class TradeRecord:
    """A taker trade observed on an external pool."""

    is_taking_bid_side: bool
    amount_in: Decimal
    amount_out: Decimal
    price: Decimal  # quote per base
    block_number: int
    log_index: int
    pool: str = ""

    @property
    def sort_key(self) -> tuple:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class SpreadResult:
    """Best spread found by backtesting a trade tape."""

    ask_spread: int
    bid_spread: int
    profit: Decimal
    target_ask_price: Decimal
    target_bid_price: Decimal

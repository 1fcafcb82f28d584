from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional


@dataclass
class MarketSnapshot:
    market_id: str
    oracle_price: Optional[Decimal]
    skew: Optional[Decimal] = None
    ask_spread: Optional[int] = None
    bid_spread: Optional[int] = None
    ask_ladder: Dict[int, Decimal] = field(default_factory=dict)
    bid_ladder: Dict[int, Decimal] = field(default_factory=dict)
    skipped: bool = False
    claims: int = 0
    cancels: int = 0
    makes: int = 0
    pnl: Optional[Decimal] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None


@dataclass
class MarketMakerSnapshot:
    updated_at: datetime
    cycle: int
    markets: Dict[str, MarketSnapshot]

    @property
    def failed_markets(self) -> List[str]:
        return [mid for mid, m in self.markets.items() if m.error]


_snapshot: Optional[MarketMakerSnapshot] = None


def update_market_maker_state(snapshot: MarketMakerSnapshot) -> None:
    global _snapshot
    _snapshot = snapshot


def clear_market_maker_state() -> None:
    global _snapshot
    _snapshot = None


def get_market_maker_state() -> Optional[MarketMakerSnapshot]:
    return _snapshot

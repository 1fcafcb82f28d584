from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from ladder_mm.config import ResidualPolicy
from ladder_mm.market_maker.types import (
    Cancel,
    Claim,
    InstructionBatch,
    LiveOrder,
    Make,
    Side,
    TargetLadder,
)
from ladder_mm.market_maker.venue import Venue
from ladder_mm.utils.logging import get_logger

log = get_logger(__name__)


@dataclass
class ReconcileResult:
    """Diff between the target ladder and what is resting.

    Every live order id lands in exactly one of ``kept``, ``cancels`` or
    ``claim_only`` (fully filled, nothing left to cancel). ``claims`` is
    independent of that split.
    """

    claims: List[Claim] = field(default_factory=list)
    cancels: List[Cancel] = field(default_factory=list)
    makes: List[Make] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    claim_only: List[str] = field(default_factory=list)

    def to_batch(self, market_id: str) -> InstructionBatch:
        return InstructionBatch(
            market_id=market_id,
            claims=list(self.claims),
            cancels=list(self.cancels),
            makes=list(self.makes),
        )


def _bucket(orders: Iterable[LiveOrder], side: Side) -> Dict[int, List[LiveOrder]]:
    buckets: Dict[int, List[LiveOrder]] = defaultdict(list)
    for order in orders:
        if order.side == side:
            buckets[order.tick].append(order)
    for bucket in buckets.values():
        bucket.sort(key=lambda o: o.order_index)
    return buckets


def _consume(
    orders: List[LiveOrder],
    target: Decimal,
    min_order_size: Decimal,
    policy: ResidualPolicy,
) -> tuple:
    """Walk a tick bucket oldest-first. Returns (kept count, residual target)."""
    kept = 0
    remaining = target
    while kept < len(orders) and orders[kept].cancelable <= remaining:
        remaining -= orders[kept].cancelable
        kept += 1

    leftover = orders[kept:]
    if not leftover:
        return kept, remaining

    if policy == ResidualPolicy.KEEP:
        if leftover[0].cancelable - remaining < min_order_size:
            return kept + 1, Decimal("0")
    elif policy == ResidualPolicy.REBUILD:
        if any(not o.is_fully_filled for o in leftover):
            return 0, target

    return kept, remaining


def reconcile(
    ladder: TargetLadder,
    live_orders: Iterable[LiveOrder],
    min_order_size: Decimal,
    policy: ResidualPolicy = ResidualPolicy.CANCEL,
) -> ReconcileResult:
    """Compute claims, cancels and makes that move the venue onto ``ladder``.

    Orders at a target tick are kept oldest-first while they fit inside the
    target, so queue priority survives. Whatever does not fit is cancelled and
    only the shortfall is re-made; shortfalls below ``min_order_size`` are
    dropped.
    """
    live_orders = list(live_orders)
    result = ReconcileResult()

    for side in (Side.BID, Side.ASK):
        targets = dict(ladder.side(side))
        buckets = _bucket(live_orders, side)

        for tick in sorted(buckets):
            orders = buckets[tick]
            kept = 0
            if tick in targets:
                kept, remaining = _consume(orders, targets[tick], min_order_size, policy)
                if remaining < min_order_size or remaining <= 0:
                    del targets[tick]
                else:
                    targets[tick] = remaining

            for order in orders:
                if order.claimable > 0:
                    result.claims.append(Claim(order.id))

            result.kept.extend(order.id for order in orders[:kept])
            for order in orders[kept:]:
                if order.is_fully_filled:
                    result.claim_only.append(order.id)
                else:
                    result.cancels.append(Cancel(order.id))

        for tick, size in sorted(targets.items()):
            if size > 0 and size >= min_order_size:
                result.makes.append(Make(tick=tick, side=side, size=size))

    return result


class OrderManager:
    """Fetches resting orders and submits instruction batches for the bot."""

    def __init__(self, venue: Venue, dry_run: bool = True):
        self.venue = venue
        self.dry_run = dry_run

    async def sync(self, market_id: str) -> List[LiveOrder]:
        """Fetch the current resting orders for a market."""
        orders = await self.venue.get_open_orders(market_id)
        log.debug("Open orders synced", market=market_id, count=len(orders))
        return orders

    async def submit(self, batch: InstructionBatch) -> Optional[str]:
        """Submit one market's batch. Returns the transaction hash, if any."""
        if batch.is_empty:
            log.debug("Nothing to submit", market=batch.market_id)
            return None

        log.info(
            "Submitting batch" if not self.dry_run else "Dry run: submitting batch to paper venue",
            market=batch.market_id,
            claims=len(batch.claims),
            cancels=len(batch.cancels),
            makes=[(m.side.value, m.tick, str(m.size)) for m in batch.makes],
        )
        tx_hash = await self.venue.submit(batch)
        log.info("Batch submitted", market=batch.market_id, tx_hash=tx_hash)
        return tx_hash

    async def cancel_all(self) -> None:
        """Cancel every resting order on every configured market."""
        await self.venue.cancel_all()
        log.info("All orders cancelled")

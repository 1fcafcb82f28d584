"""Tests for reconciling resting orders against the target ladder."""

from decimal import Decimal
from typing import Dict, List

import pytest

from ladder_mm.config import ResidualPolicy
from ladder_mm.market_maker.orders import reconcile
from ladder_mm.market_maker.types import Cancel, Claim, LiveOrder, Make, Side, TargetLadder


def make_order(
    order_id: str,
    tick: int,
    order_index: int,
    cancelable: str,
    claimable: str = "0",
    side: Side = Side.BID,
    settled: str = "0",
) -> LiveOrder:
    """Resting order; ``settled`` is filled size that was already claimed."""
    cancelable_d = Decimal(cancelable)
    claimable_d = Decimal(claimable)
    filled = claimable_d + Decimal(settled)
    return LiveOrder(
        id=order_id,
        side=side,
        tick=tick,
        order_index=order_index,
        amount=cancelable_d + filled,
        filled=filled,
        cancelable=cancelable_d,
        claimable=claimable_d,
        price=Decimal("1"),
    )


def bids(targets: Dict[int, str]) -> TargetLadder:
    return TargetLadder(bid={tick: Decimal(size) for tick, size in targets.items()})


def all_ids(orders: List[LiveOrder]) -> set:
    return {o.id for o in orders}


class TestIdempotence:
    def test_matching_orders_produce_nothing(self):
        ladder = TargetLadder(
            ask={-30: Decimal("1"), -25: Decimal("1")},
            bid={-30: Decimal("2"), -25: Decimal("2")},
        )
        orders = [
            make_order("a1", -30, 0, "1", side=Side.ASK),
            make_order("a2", -25, 0, "1", side=Side.ASK),
            make_order("b1", -30, 0, "2"),
            make_order("b2", -25, 0, "1"),
            make_order("b3", -25, 1, "1"),
        ]

        result = reconcile(ladder, orders, Decimal("0.1"))

        assert result.claims == []
        assert result.cancels == []
        assert result.makes == []
        assert set(result.kept) == all_ids(orders)

    @pytest.mark.parametrize("policy", list(ResidualPolicy))
    def test_idempotent_under_every_policy(self, policy):
        orders = [make_order("b1", 10, 0, "3")]
        result = reconcile(bids({10: "3"}), orders, Decimal("0"), policy)

        assert result.to_batch("m").is_empty

    def test_empty_ladder_and_no_orders(self):
        assert reconcile(TargetLadder(), [], Decimal("0")).to_batch("m").is_empty


class TestFifoConsumption:
    def test_partial_cover_keeps_oldest_and_cancels_the_rest(self):
        """Target 5 at tick 100 against resting 3 then 4."""
        orders = [make_order("o0", 100, 0, "3"), make_order("o1", 100, 1, "4")]

        result = reconcile(bids({100: "5"}), orders, Decimal("0"))

        assert result.kept == ["o0"]
        assert result.cancels == [Cancel("o1")]
        assert result.makes == [Make(tick=100, side=Side.BID, size=Decimal("2"))]

    def test_residual_below_min_order_size_is_dropped(self):
        orders = [make_order("o0", 100, 0, "3"), make_order("o1", 100, 1, "4")]

        result = reconcile(bids({100: "5"}), orders, Decimal("3"))

        assert result.kept == ["o0"]
        assert result.cancels == [Cancel("o1")]
        assert result.makes == []

    def test_order_index_decides_priority_not_list_order(self):
        orders = [make_order("new", 100, 7, "2"), make_order("old", 100, 1, "2")]

        result = reconcile(bids({100: "2"}), orders, Decimal("0"))

        assert result.kept == ["old"]
        assert result.cancels == [Cancel("new")]

    def test_untargeted_tick_is_cancelled(self):
        orders = [make_order("stale", 50, 0, "1")]

        result = reconcile(bids({100: "1"}), orders, Decimal("0"))

        assert result.cancels == [Cancel("stale")]
        assert result.makes == [Make(tick=100, side=Side.BID, size=Decimal("1"))]

    def test_sides_are_independent(self):
        orders = [make_order("ask", 100, 0, "1", side=Side.ASK)]

        result = reconcile(bids({100: "1"}), orders, Decimal("0"))

        assert result.cancels == [Cancel("ask")]
        assert result.makes == [Make(tick=100, side=Side.BID, size=Decimal("1"))]


class TestClaims:
    def test_claimable_is_claimed_whether_kept_or_cancelled(self):
        orders = [
            make_order("kept", 100, 0, "1", claimable="0.5"),
            make_order("gone", 200, 0, "1", claimable="0.25"),
        ]

        result = reconcile(bids({100: "1"}), orders, Decimal("0"))

        assert set(result.claims) == {Claim("kept"), Claim("gone")}
        assert result.kept == ["kept"]
        assert result.cancels == [Cancel("gone")]

    def test_fully_filled_order_is_claimed_not_cancelled(self):
        orders = [make_order("done", 200, 0, "0", claimable="1")]

        result = reconcile(TargetLadder(), orders, Decimal("0"))

        assert result.claims == [Claim("done")]
        assert result.cancels == []
        assert result.claim_only == ["done"]


class TestMinOrderSize:
    def test_never_makes_below_min_order_size(self):
        ladder = TargetLadder(
            ask={1: Decimal("0.05"), 2: Decimal("0.5")},
            bid={-1: Decimal("0.09"), -2: Decimal("0.1")},
        )
        orders = [make_order("b", -2, 0, "0.05")]

        result = reconcile(ladder, orders, Decimal("0.1"))

        assert all(m.size >= Decimal("0.1") for m in result.makes)
        assert result.makes == [Make(tick=2, side=Side.ASK, size=Decimal("0.5"))]


class TestConservation:
    def test_every_order_lands_in_exactly_one_bucket(self):
        ladder = TargetLadder(
            ask={5: Decimal("2")},
            bid={100: Decimal("5"), 90: Decimal("1")},
        )
        orders = [
            make_order("o0", 100, 0, "3"),
            make_order("o1", 100, 1, "4", claimable="1"),
            make_order("o2", 100, 2, "1"),
            make_order("o3", 90, 0, "0", claimable="2"),
            make_order("o4", 80, 0, "1"),
            make_order("o5", 5, 0, "2", side=Side.ASK, settled="1"),
            make_order("o6", 5, 1, "1", side=Side.ASK),
        ]

        for policy in ResidualPolicy:
            result = reconcile(ladder, orders, Decimal("0.5"), policy)
            kept = set(result.kept)
            cancelled = {c.order_id for c in result.cancels}
            claim_only = set(result.claim_only)

            assert not kept & cancelled
            assert not kept & claim_only
            assert not cancelled & claim_only
            assert kept | cancelled | claim_only == all_ids(orders)
            assert len(result.kept) + len(result.cancels) + len(result.claim_only) == len(orders)


class TestResidualPolicy:
    def test_keep_tolerates_small_overshoot(self):
        orders = [make_order("o0", 100, 0, "3"), make_order("o1", 100, 1, "2.5")]

        result = reconcile(bids({100: "5"}), orders, Decimal("1"), ResidualPolicy.KEEP)

        assert result.kept == ["o0", "o1"]
        assert result.cancels == []
        assert result.makes == []

    def test_keep_cancels_large_overshoot(self):
        orders = [make_order("o0", 100, 0, "3"), make_order("o1", 100, 1, "4")]

        result = reconcile(bids({100: "5"}), orders, Decimal("1"), ResidualPolicy.KEEP)

        assert result.kept == ["o0"]
        assert result.cancels == [Cancel("o1")]
        assert result.makes == [Make(tick=100, side=Side.BID, size=Decimal("2"))]

    def test_keep_cancels_orders_after_the_tolerated_one(self):
        orders = [
            make_order("o0", 100, 0, "3"),
            make_order("o1", 100, 1, "2.5"),
            make_order("o2", 100, 2, "1"),
        ]

        result = reconcile(bids({100: "5"}), orders, Decimal("1"), ResidualPolicy.KEEP)

        assert result.kept == ["o0", "o1"]
        assert result.cancels == [Cancel("o2")]

    def test_rebuild_replaces_the_whole_tick(self):
        orders = [make_order("o0", 100, 0, "3"), make_order("o1", 100, 1, "4")]

        result = reconcile(bids({100: "5"}), orders, Decimal("0"), ResidualPolicy.REBUILD)

        assert result.kept == []
        assert result.cancels == [Cancel("o0"), Cancel("o1")]
        assert result.makes == [Make(tick=100, side=Side.BID, size=Decimal("5"))]

    def test_rebuild_leaves_exact_cover_alone(self):
        orders = [make_order("o0", 100, 0, "3"), make_order("o1", 100, 1, "2")]

        result = reconcile(bids({100: "5"}), orders, Decimal("0"), ResidualPolicy.REBUILD)

        assert result.kept == ["o0", "o1"]
        assert result.to_batch("m").is_empty

import asyncio
import signal
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from web3 import AsyncWeb3

from ladder_mm.config import MarketConfig, Settings, StrategyConfig, get_settings, load_strategy_config
from ladder_mm.market_maker.inventory import InventorySkewCalculator, allocate_balances, build_position
from ladder_mm.market_maker.ladder import build_ladder
from ladder_mm.market_maker.oracle import Oracle, build_oracle
from ladder_mm.market_maker.orders import OrderManager, ReconcileResult, reconcile
from ladder_mm.market_maker.simulator import DexSimulator
from ladder_mm.market_maker.state import (
    MarketMakerSnapshot,
    MarketSnapshot,
    clear_market_maker_state,
    update_market_maker_state,
)
from ladder_mm.market_maker.types import (
    InstructionBatch,
    LiveOrder,
    OrderBookTop,
    Position,
    QuoteDecision,
    TargetLadder,
)
from ladder_mm.market_maker.venue import CloberVenue, PaperVenue, Venue
from ladder_mm.notifications import SlackNotifier, get_notifier
from ladder_mm.utils.logging import get_logger
from ladder_mm.utils.tick import TickMath

log = get_logger(__name__)


@dataclass
class VenueSnapshot:
    """What the venue looked like at the start of a cycle."""

    orders: List[LiveOrder]
    free_base: Decimal
    free_quote: Decimal
    book: OrderBookTop


@dataclass
class MarketPlan:
    """Outcome of the decision step for one market."""

    market_id: str
    oracle_price: Decimal
    position: Position
    decision: QuoteDecision
    ladder: TargetLadder
    result: ReconcileResult
    batch: InstructionBatch
    pnl: Decimal


def is_usable_price(price: Optional[Decimal]) -> bool:
    return price is not None and price.is_finite() and price > 0


class MarketMakerBot:
    """Runs the fetch, decide and submit cycle for every configured market."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        strategy: Optional[StrategyConfig] = None,
        venue: Optional[Venue] = None,
        oracle: Optional[Oracle] = None,
        notifier: Optional[SlackNotifier] = None,
        simulator: Optional[DexSimulator] = None,
    ):
        self.settings = settings or get_settings()
        self.strategy = strategy
        self.venue = venue
        self.oracle = oracle
        self.notifier = notifier
        self.simulator = simulator
        self.order_manager: Optional[OrderManager] = None

        self.calculators: Dict[str, InventorySkewCalculator] = {}
        self.tick_math: Dict[str, TickMath] = {}

        self._running = False
        self._started = False
        self._stopped = False
        self._initialized = False
        self._cycle = 0

    @property
    def markets(self) -> Dict[str, MarketConfig]:
        return self.strategy.markets if self.strategy else {}

    async def initialize(self) -> None:
        """Load the strategy document and build clients for every market."""
        log.info("Initializing market maker", dry_run=self.settings.dry_run)

        if self.strategy is None:
            self.strategy = load_strategy_config(self.settings.strategy_config_path)

        for market_id, market in self.markets.items():
            self.calculators[market_id] = InventorySkewCalculator(market.params)
            self.tick_math[market_id] = TickMath(market.venue.quote_decimals, market.venue.base_decimals)

        if self.venue is None:
            if self.settings.dry_run:
                self.venue = PaperVenue(self.markets)
            else:
                venue = CloberVenue(self.settings, self.markets)
                await venue.approve_tokens()
                self.venue = venue

        if self.oracle is None:
            self.oracle = build_oracle(self.settings, self.markets)

        if self.notifier is None:
            self.notifier = get_notifier()

        if self.simulator is None and self.settings.simulate:
            rpc_url = self.settings.taker_rpc_url or self.settings.rpc_url
            self.simulator = DexSimulator(self.markets, AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url)))

        self.order_manager = OrderManager(self.venue, dry_run=self.settings.dry_run)

        if self.settings.cancel_on_start:
            log.info("Cancelling resting orders on start")
            await self.order_manager.cancel_all()

        self._initialized = True
        log.info("Initialization complete", markets=list(self.markets))

    async def _fetch_market(self, market_id: str) -> Tuple[List[LiveOrder], OrderBookTop]:
        orders, book = await asyncio.gather(
            self.venue.get_open_orders(market_id),
            self.venue.get_order_book_top(market_id),
        )
        return orders, book

    def plan_market(self, market_id: str, oracle_price: Decimal, snapshot: VenueSnapshot) -> MarketPlan:
        """Pure decision step: inventory, skew, ladder and reconciliation."""
        market = self.markets[market_id]
        calculator = self.calculators[market_id]

        position = build_position(snapshot.free_base, snapshot.free_quote, snapshot.orders)
        decision = calculator.decide(position, oracle_price)
        ladder = build_ladder(
            decision,
            market.params,
            self.tick_math[market_id],
            oracle_price,
            position,
            book=snapshot.book,
            market_id=market_id,
        )
        if ladder.skipped:
            # leave resting orders untouched while the book is already tight
            result = ReconcileResult(
                kept=[o.id for o in snapshot.orders if not o.is_fully_filled],
                claim_only=[o.id for o in snapshot.orders if o.is_fully_filled],
            )
        else:
            result = reconcile(ladder, snapshot.orders, market.params.min_order_size, market.params.residual_policy)
        pnl = calculator.inventory_pnl(position, oracle_price)

        log.info(
            "Market decision",
            market=market_id,
            oracle_price=oracle_price,
            skew=decision.skew,
            ask_spread=decision.spreads.ask_spread,
            bid_spread=decision.spreads.bid_spread,
            ask_size=decision.sizes.ask_size,
            bid_size=decision.sizes.bid_size,
            total_base=position.total_base,
            total_quote=position.total_quote,
            pnl=pnl,
        )

        return MarketPlan(
            market_id=market_id,
            oracle_price=oracle_price,
            position=position,
            decision=decision,
            ladder=ladder,
            result=result,
            batch=result.to_batch(market_id),
            pnl=pnl,
        )

    async def fetch(self) -> Tuple[Dict[str, VenueSnapshot], Dict[str, str]]:
        """Refresh oracle prices and venue state for all markets concurrently.

        Returns the usable snapshots and an error message per skipped market.
        """
        market_ids = list(self.markets)
        results = await asyncio.gather(
            self.oracle.update(),
            self.venue.get_balances(),
            *(self._fetch_market(mid) for mid in market_ids),
            return_exceptions=True,
        )
        oracle_result, wallet_result, market_results = results[0], results[1], results[2:]

        # markets sharing a token split one wallet balance
        allocations = {}
        if not isinstance(wallet_result, Exception):
            allocations = allocate_balances(self.markets, wallet_result)

        snapshots: Dict[str, VenueSnapshot] = {}
        errors: Dict[str, str] = {}
        for market_id, result in zip(market_ids, market_results):
            if isinstance(oracle_result, Exception):
                errors[market_id] = f"oracle update failed: {oracle_result}"
            elif isinstance(wallet_result, Exception):
                errors[market_id] = f"balance fetch failed: {wallet_result}"
            elif isinstance(result, Exception):
                errors[market_id] = f"venue fetch failed: {result}"
            elif not is_usable_price(self.oracle.price(market_id)):
                errors[market_id] = f"no usable oracle price: {self.oracle.price(market_id)}"
            else:
                orders, book = result
                free_base, free_quote = allocations[market_id]
                snapshots[market_id] = VenueSnapshot(
                    orders=orders, free_base=free_base, free_quote=free_quote, book=book
                )

        for market_id, error in errors.items():
            log.error("Skipping market this cycle", market=market_id, error=error)
            await self.notifier.notify_error(error, context=f"fetch {market_id}")

        return snapshots, errors

    async def plan(self) -> Tuple[Dict[str, MarketPlan], Dict[str, str]]:
        """Fetch and decide without submitting anything."""
        snapshots, errors = await self.fetch()
        plans: Dict[str, MarketPlan] = {}
        for market_id, snapshot in snapshots.items():
            try:
                plans[market_id] = self.plan_market(market_id, self.oracle.price(market_id), snapshot)
            except Exception as e:
                log.error("Decision failed", market=market_id, error=str(e), exc_info=True)
                errors[market_id] = f"decision failed: {e}"
                await self.notifier.notify_error(str(e), context=f"decide {market_id}")
        return plans, errors

    async def _submit(self, plan: MarketPlan) -> Tuple[Optional[str], Optional[str]]:
        try:
            tx_hash = await self.order_manager.submit(plan.batch)
        except Exception as e:
            log.error("Batch submission failed", market=plan.market_id, error=str(e))
            await self.notifier.notify_error(str(e), context=f"submit {plan.market_id}")
            return None, str(e)

        if tx_hash and not self.settings.dry_run:
            await self.notifier.notify_batch(
                plan.market_id,
                tx_hash,
                claims=len(plan.batch.claims),
                cancels=len(plan.batch.cancels),
                makes=len(plan.batch.makes),
            )
        return tx_hash, None

    async def calibrate(self) -> None:
        """Log the backtested best spreads over the recent window of external trades."""
        if self.simulator is None:
            return
        try:
            await self.simulator.update()
        except Exception as e:
            log.error("Trade collection failed", error=str(e))
            return

        end_block = self.simulator.latest_block
        for market_id, market in self.markets.items():
            price = self.oracle.price(market_id)
            if not is_usable_price(price):
                continue
            start_block = max(0, end_block - market.params.backtest_window_blocks)
            try:
                self.simulator.find_spread(market_id, start_block, end_block, price)
            except Exception as e:
                log.error("Spread calibration failed", market=market_id, error=str(e))

    async def run_cycle(self) -> MarketMakerSnapshot:
        """One fetch, decide and submit pass over all markets."""
        if not self._initialized:
            raise RuntimeError("Market maker not initialized")

        self._cycle += 1
        plans, errors = await self.plan()

        market_ids = list(plans)
        outcomes = await asyncio.gather(*(self._submit(plans[mid]) for mid in market_ids))

        markets: Dict[str, MarketSnapshot] = {
            mid: MarketSnapshot(market_id=mid, oracle_price=self.oracle.price(mid), error=error)
            for mid, error in errors.items()
        }
        for market_id, (tx_hash, error) in zip(market_ids, outcomes):
            plan = plans[market_id]
            markets[market_id] = MarketSnapshot(
                market_id=market_id,
                oracle_price=plan.oracle_price,
                skew=plan.decision.skew,
                ask_spread=plan.decision.spreads.ask_spread,
                bid_spread=plan.decision.spreads.bid_spread,
                ask_ladder=dict(plan.ladder.ask),
                bid_ladder=dict(plan.ladder.bid),
                skipped=plan.ladder.skipped,
                claims=len(plan.batch.claims),
                cancels=len(plan.batch.cancels),
                makes=len(plan.batch.makes),
                pnl=plan.pnl,
                tx_hash=tx_hash,
                error=error,
            )

        await self.calibrate()

        snapshot = MarketMakerSnapshot(updated_at=datetime.now(timezone.utc), cycle=self._cycle, markets=markets)
        update_market_maker_state(snapshot)
        return snapshot

    async def run(self) -> None:
        """Main execution loop."""
        if not self._initialized:
            await self.initialize()

        self._running = True
        self._started = True
        interval = self.strategy.fetch_interval_seconds
        log.info("Market maker started", interval=interval, markets=len(self.markets))
        await self.notifier.notify_startup("dry_run" if self.settings.dry_run else "live", len(self.markets))

        loop = asyncio.get_running_loop()
        try:
            while self._running:
                t0 = loop.time()
                await self.run_cycle()

                elapsed = loop.time() - t0
                log.debug("Cycle complete", cycle=self._cycle, second=round(elapsed, 2))
                await asyncio.sleep(max(0.1, interval - elapsed))

        except asyncio.CancelledError:
            log.info("Bot execution cancelled")
        except Exception as e:
            log.error("Error in bot loop", error=str(e), exc_info=True)
            await self.notifier.notify_error(str(e), context="bot loop")
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Graceful shutdown."""
        if self._stopped:
            return
        self._stopped = True
        self._running = False
        log.info("Stopping market maker")

        if self.order_manager and self.settings.cancel_on_stop:
            try:
                await self.order_manager.cancel_all()
            except Exception as e:
                log.error("Cancel on stop failed", error=str(e))
                if self.notifier:
                    await self.notifier.notify_error(str(e), context="cancel on stop")

        if self.notifier and self._started:
            await self.notifier.notify_shutdown()

        if self.venue:
            await self.venue.close()

        close_oracle = getattr(self.oracle, "close", None)
        if close_oracle is not None:
            await close_oracle()

        if self.notifier:
            await self.notifier.close()

        clear_market_maker_state()
        log.info("Bot stopped")

    async def __aenter__(self) -> "MarketMakerBot":
        await self.initialize()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()


def setup_signal_handlers(bot: MarketMakerBot):
    """Setup handlers for SIGINT and SIGTERM."""
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(bot.stop()))


async def run_market_maker_bot(settings: Optional[Settings] = None) -> None:
    """Entry point for running the market maker bot."""
    async with MarketMakerBot(settings) as bot:
        setup_signal_handlers(bot)
        await bot.run()

"""Venue adapters.

``PaperVenue`` keeps books and balances in memory and backs dry runs and tests.
``CloberVenue`` reads orders and depth from the venue subgraph, balances from
ERC20 contracts, and sends instruction batches through the controller's
``execute`` entry point.
"""

import asyncio
import time
from dataclasses import replace
from decimal import Decimal
from itertools import count
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx
from eth_abi import encode
from eth_account import Account
from web3 import AsyncWeb3

from ladder_mm.config import MarketConfig, Settings
from ladder_mm.market_maker.types import (
    ZERO,
    Cancel,
    Claim,
    InstructionBatch,
    LiveOrder,
    OrderBookTop,
    Side,
)
from ladder_mm.utils.logging import get_logger
from ladder_mm.utils.tick import TickMath

log = get_logger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
MAX_UINT256 = 2**256 - 1

# Controller action ids
ACTION_MAKE = 1
ACTION_CLAIM = 5
ACTION_CANCEL = 6

ERC20_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

_PERMIT_SIGNATURE = {
    "name": "signature",
    "type": "tuple",
    "components": [
        {"name": "deadline", "type": "uint256"},
        {"name": "v", "type": "uint8"},
        {"name": "r", "type": "bytes32"},
        {"name": "s", "type": "bytes32"},
    ],
}

CONTROLLER_ABI = [
    {
        "name": "execute",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "actionList", "type": "uint8[]"},
            {"name": "paramsDataList", "type": "bytes[]"},
            {"name": "tokensToSettle", "type": "address[]"},
            {
                "name": "erc20PermitParamsList",
                "type": "tuple[]",
                "components": [
                    {"name": "token", "type": "address"},
                    {"name": "permitAmount", "type": "uint256"},
                    _PERMIT_SIGNATURE,
                ],
            },
            {
                "name": "erc721PermitParamsList",
                "type": "tuple[]",
                "components": [
                    {"name": "tokenIds", "type": "uint256[]"},
                    _PERMIT_SIGNATURE,
                ],
            },
            {"name": "deadline", "type": "uint64"},
        ],
        "outputs": [{"name": "ids", "type": "uint256[]"}],
    }
]

OPEN_ORDERS_QUERY = """
query OpenOrders($user: String!, $books: [String!]!) {
  openOrders(where: { user: $user, book_in: $books }) {
    id
    book { id }
    tick
    orderIndex
    price
    amount
    filled
    claimable
    cancelable
  }
}
"""

DEPTH_QUERY = """
query Depths($books: [String!]!) {
  depths(where: { book_in: $books, unitAmount_gt: "0" }, orderBy: tick, orderDirection: desc) {
    book { id }
    tick
  }
}
"""


class SubmissionError(Exception):
    """Raised when an instruction batch is rejected or reverts."""


class Venue(Protocol):
    """What the strategy loop needs from an order-book venue."""

    async def get_open_orders(self, market_id: str) -> List[LiveOrder]:
        ...

    async def get_balances(self) -> Dict[str, Decimal]:
        """Free wallet balance per token (lowercase address) the markets trade."""
        ...

    async def get_order_book_top(self, market_id: str) -> OrderBookTop:
        ...

    async def submit(self, batch: InstructionBatch) -> Optional[str]:
        ...

    async def cancel_all(self) -> None:
        ...

    async def close(self) -> None:
        ...


class PaperVenue:
    """In-memory venue: orders rest until ``fill`` is called, nothing matches on its own."""

    def __init__(
        self,
        markets: Dict[str, MarketConfig],
        balances: Optional[Dict[str, Decimal]] = None,
    ):
        self.markets = markets
        self.tick_math = {
            mid: TickMath(m.venue.quote_decimals, m.venue.base_decimals) for mid, m in markets.items()
        }
        # one wallet for every market, seeded from start amounts unless given per token
        self.wallet: Dict[str, Decimal] = {}
        for market in markets.values():
            self.wallet.setdefault(market.venue.base.lower(), ZERO)
            self.wallet.setdefault(market.venue.quote.lower(), ZERO)
            if balances is None:
                self.wallet[market.venue.base.lower()] += market.params.start_base_amount
                self.wallet[market.venue.quote.lower()] += market.params.start_quote_amount
        for token, amount in (balances or {}).items():
            self.wallet[token.lower()] = Decimal(amount)
        self.orders: Dict[str, Dict[str, LiveOrder]] = {mid: {} for mid in markets}
        self.book_tops: Dict[str, OrderBookTop] = {mid: OrderBookTop() for mid in markets}
        self.submitted: List[InstructionBatch] = []
        self._ids = count(1)
        self._order_index: Dict[Tuple[str, Side, int], int] = {}

    async def get_open_orders(self, market_id: str) -> List[LiveOrder]:
        return list(self.orders[market_id].values())

    async def get_balances(self) -> Dict[str, Decimal]:
        return dict(self.wallet)

    async def get_order_book_top(self, market_id: str) -> OrderBookTop:
        return self.book_tops[market_id]

    def set_book_top(self, market_id: str, best_bid: Optional[Decimal], best_ask: Optional[Decimal]) -> None:
        self.book_tops[market_id] = OrderBookTop(best_bid=best_bid, best_ask=best_ask)

    def fill(self, market_id: str, order_id: str, amount: Decimal) -> LiveOrder:
        """Simulate a taker filling ``amount`` base of a resting order."""
        order = self.orders[market_id][order_id]
        amount = min(amount, order.cancelable)
        filled = replace(
            order,
            filled=order.filled + amount,
            cancelable=order.cancelable - amount,
            claimable=order.claimable + amount,
        )
        self.orders[market_id][order_id] = filled
        return filled

    async def submit(self, batch: InstructionBatch) -> Optional[str]:
        mid = batch.market_id
        saved_orders = dict(self.orders[mid])
        saved_wallet = dict(self.wallet)
        try:
            self._apply(batch)
        except (KeyError, SubmissionError):
            # all-or-nothing, like a reverted transaction
            self.orders[mid] = saved_orders
            self.wallet = saved_wallet
            raise
        self.submitted.append(batch)
        return f"paper-{len(self.submitted)}"

    def _apply(self, batch: InstructionBatch) -> None:
        mid = batch.market_id
        orders = self.orders[mid]
        wallet = self.wallet
        base = self.markets[mid].venue.base.lower()
        quote = self.markets[mid].venue.quote.lower()
        tick_math = self.tick_math[mid]

        for claim in batch.claims:
            order = orders[claim.order_id]
            if order.side == Side.BID:
                wallet[base] += order.claimable
            else:
                wallet[quote] += order.claimable * order.price
            orders[order.id] = replace(order, claimable=ZERO)

        for cancel in batch.cancels:
            order = orders[cancel.order_id]
            if order.side == Side.BID:
                wallet[quote] += order.cancelable * order.price
            else:
                wallet[base] += order.cancelable
            orders[order.id] = replace(order, amount=order.filled, cancelable=ZERO)

        for make in batch.makes:
            if make.side == Side.BID:
                price = tick_math.bid_tick_to_price(make.tick)
                cost = make.size * price
                if cost > wallet[quote]:
                    raise SubmissionError(f"Insufficient quote for bid at tick {make.tick}")
                wallet[quote] -= cost
            else:
                price = tick_math.ask_tick_to_price(make.tick)
                if make.size > wallet[base]:
                    raise SubmissionError(f"Insufficient base for ask at tick {make.tick}")
                wallet[base] -= make.size

            key = (mid, make.side, make.tick)
            index = self._order_index.get(key, 0)
            self._order_index[key] = index + 1
            order_id = f"{mid}-{next(self._ids)}"
            orders[order_id] = LiveOrder(
                id=order_id,
                side=make.side,
                tick=make.tick,
                order_index=index,
                amount=make.size,
                filled=ZERO,
                cancelable=make.size,
                claimable=ZERO,
                price=price,
            )

        # settled orders disappear from the open set
        for order_id in [oid for oid, o in orders.items() if o.is_fully_filled and o.claimable == 0]:
            del orders[order_id]

    async def cancel_all(self) -> None:
        for mid, orders in self.orders.items():
            batch = InstructionBatch(market_id=mid)
            for order in orders.values():
                if order.claimable > 0:
                    batch.claims.append(Claim(order.id))
                if not order.is_fully_filled:
                    batch.cancels.append(Cancel(order.id))
            if not batch.is_empty:
                await self.submit(batch)

    async def close(self) -> None:
        return None



class CloberVenue:
    """Live venue backed by the subgraph, ERC20 balances and the controller contract."""

    def __init__(self, settings: Settings, markets: Dict[str, MarketConfig]):
        if not settings.is_trading_enabled():
            raise RuntimeError(
                "Live venue requires PRIVATE_KEY, WALLET_ADDRESS, SUBGRAPH_URL and CONTROLLER_ADDRESS"
            )
        self.settings = settings
        self.markets = markets
        self.tick_math = {
            mid: TickMath(m.venue.quote_decimals, m.venue.base_decimals) for mid, m in markets.items()
        }
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.rpc_url))
        self.account = Account.from_key(settings.private_key.get_secret_value())
        self.user = AsyncWeb3.to_checksum_address(settings.wallet_address)
        self.controller = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(settings.controller_address),
            abi=CONTROLLER_ABI,
        )
        self._http = httpx.AsyncClient(timeout=httpx.Timeout(10.0))

    async def _query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self._http.post(self.settings.subgraph_url, json={"query": query, "variables": variables})
        resp.raise_for_status()
        payload = resp.json()
        if payload.get("errors"):
            raise RuntimeError(f"Subgraph error: {payload['errors']}")
        return payload["data"]

    def _books(self, market_id: str) -> List[str]:
        venue = self.markets[market_id].venue
        return [venue.bid_book_id, venue.ask_book_id]

    def _parse_order(self, market_id: str, raw: Dict[str, Any]) -> LiveOrder:
        venue = self.markets[market_id].venue
        side = Side.BID if raw["book"]["id"] == venue.bid_book_id else Side.ASK
        price = Decimal(raw["price"])

        # amounts come in raw units of the book's input token; normalise to base
        if side == Side.BID:
            scale = Decimal(10) ** venue.quote_decimals * price
        else:
            scale = Decimal(10) ** venue.base_decimals

        def to_base(value: str) -> Decimal:
            return Decimal(value) / scale

        return LiveOrder(
            id=str(raw["id"]),
            side=side,
            tick=int(raw["tick"]),
            order_index=int(raw["orderIndex"]),
            amount=to_base(raw["amount"]),
            filled=to_base(raw["filled"]),
            cancelable=to_base(raw["cancelable"]),
            claimable=to_base(raw["claimable"]),
            price=price,
        )

    async def get_open_orders(self, market_id: str) -> List[LiveOrder]:
        data = await self._query(
            OPEN_ORDERS_QUERY,
            {"user": self.user.lower(), "books": self._books(market_id)},
        )
        return [self._parse_order(market_id, o) for o in data.get("openOrders", [])]

    async def _balance_of(self, token: str, decimals: int) -> Decimal:
        if token.lower() == ZERO_ADDRESS:
            raw = await self.w3.eth.get_balance(self.user)
        else:
            contract = self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(token), abi=ERC20_ABI)
            raw = await contract.functions.balanceOf(self.user).call()
        return Decimal(raw) / (Decimal(10) ** decimals)

    async def get_balances(self) -> Dict[str, Decimal]:
        decimals: Dict[str, int] = {}
        for market in self.markets.values():
            decimals[market.venue.base.lower()] = market.venue.base_decimals
            decimals[market.venue.quote.lower()] = market.venue.quote_decimals
        tokens = sorted(decimals)
        amounts = await asyncio.gather(*(self._balance_of(t, decimals[t]) for t in tokens))
        return dict(zip(tokens, amounts))

    async def get_order_book_top(self, market_id: str) -> OrderBookTop:
        venue = self.markets[market_id].venue
        tick_math = self.tick_math[market_id]
        data = await self._query(DEPTH_QUERY, {"books": self._books(market_id)})

        best_bid_tick: Optional[int] = None
        best_ask_tick: Optional[int] = None
        for depth in data.get("depths", []):
            tick = int(depth["tick"])
            if depth["book"]["id"] == venue.bid_book_id:
                best_bid_tick = tick if best_bid_tick is None else max(best_bid_tick, tick)
            else:
                best_ask_tick = tick if best_ask_tick is None else max(best_ask_tick, tick)

        return OrderBookTop(
            best_bid=tick_math.bid_tick_to_price(best_bid_tick) if best_bid_tick is not None else None,
            best_ask=tick_math.ask_tick_to_price(best_ask_tick) if best_ask_tick is not None else None,
        )

    def encode_batch(self, batch: InstructionBatch) -> Tuple[List[int], List[bytes]]:
        """Encode a batch as controller actions, claims first, then cancels, then makes."""
        venue = self.markets[batch.market_id].venue
        tick_math = self.tick_math[batch.market_id]
        actions: List[int] = []
        params: List[bytes] = []

        for claim in batch.claims:
            actions.append(ACTION_CLAIM)
            params.append(encode(["uint256", "bytes"], [int(claim.order_id), b""]))

        for cancel in batch.cancels:
            actions.append(ACTION_CANCEL)
            # leftQuoteAmount 0 cancels everything still open
            params.append(encode(["uint256", "uint256", "bytes"], [int(cancel.order_id), 0, b""]))

        for make in batch.makes:
            if make.side == Side.BID:
                book_id = int(venue.bid_book_id)
                amount = make.size * tick_math.bid_tick_to_price(make.tick) * Decimal(10) ** venue.quote_decimals
            else:
                book_id = int(venue.ask_book_id)
                amount = make.size * Decimal(10) ** venue.base_decimals
            actions.append(ACTION_MAKE)
            params.append(
                encode(
                    ["uint192", "int24", "uint256", "bytes"],
                    [book_id, make.tick, int(amount), b""],
                )
            )

        return actions, params

    async def submit(self, batch: InstructionBatch) -> Optional[str]:
        if batch.is_empty:
            return None

        venue = self.markets[batch.market_id].venue
        actions, params = self.encode_batch(batch)
        tokens = [
            AsyncWeb3.to_checksum_address(t) for t in (venue.base, venue.quote) if t.lower() != ZERO_ADDRESS
        ]
        deadline = int(time.time()) + 60 * 60

        gas_price = await self.w3.eth.gas_price
        nonce = await self.w3.eth.get_transaction_count(self.user)
        tx = await self.controller.functions.execute(actions, params, tokens, [], [], deadline).build_transaction(
            {
                "from": self.user,
                "nonce": nonce,
                "gasPrice": int(gas_price * self.settings.gas_multiplier),
                "chainId": self.settings.chain_id,
            }
        )
        signed = self.account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash)
        if receipt["status"] != 1:
            raise SubmissionError(f"Batch reverted: {tx_hash.hex()}")
        return tx_hash.hex()

    async def approve_tokens(self) -> None:
        """Approve the controller to spend every ERC20 the markets trade."""
        tokens = {
            t.lower()
            for market in self.markets.values()
            for t in (market.venue.base, market.venue.quote)
            if t.lower() != ZERO_ADDRESS
        }
        for token in sorted(tokens):
            contract = self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(token), abi=ERC20_ABI)
            allowance = await contract.functions.allowance(self.user, self.controller.address).call()
            if allowance >= MAX_UINT256 // 2:
                log.debug("Token already approved", token=token)
                continue

            nonce = await self.w3.eth.get_transaction_count(self.user)
            gas_price = await self.w3.eth.gas_price
            tx = await contract.functions.approve(self.controller.address, MAX_UINT256).build_transaction(
                {
                    "from": self.user,
                    "nonce": nonce,
                    "gasPrice": int(gas_price * self.settings.gas_multiplier),
                    "chainId": self.settings.chain_id,
                }
            )
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            await self.w3.eth.wait_for_transaction_receipt(tx_hash)
            log.info("Approved token", token=token, tx_hash=tx_hash.hex())

    async def cancel_all(self) -> None:
        for market_id in self.markets:
            orders = await self.get_open_orders(market_id)
            batch = InstructionBatch(
                market_id=market_id,
                claims=[Claim(o.id) for o in orders if o.claimable > 0],
                cancels=[Cancel(o.id) for o in orders if not o.is_fully_filled],
            )
            if not batch.is_empty:
                tx_hash = await self.submit(batch)
                log.info("Cancelled all orders", market=market_id, count=len(batch.cancels), tx_hash=tx_hash)

    async def close(self) -> None:
        await self._http.aclose()

from decimal import Decimal
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode
from web3 import Web3

from ladder_mm.config import MarketConfig, MarketParams, StrategyConfig

BASE_TOKEN = "0x4200000000000000000000000000000000000006"
QUOTE_TOKEN = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
POOL_ADDRESS = "0x" + "11" * 20

SWAP_V3_TOPIC = Web3.keccak(text="Swap(address,address,int256,int256,uint160,uint128,int24)")


def make_params(**overrides: Any) -> MarketParams:
    """MarketParams with a 10..50 tick budget and a three-rung ladder."""
    values: Dict[str, Any] = {
        "delta_limit": Decimal("6000"),
        "min_tick_spread": 10,
        "max_tick_spread": 50,
        "order_gap": 5,
        "order_num": 3,
        "order_size": Decimal("1"),
        "min_order_size": Decimal("0"),
        "start_base_amount": Decimal("1"),
        "start_quote_amount": Decimal("3000"),
    }
    values.update(overrides)
    return MarketParams(**values)


def make_market(
    price: str = "3000",
    quote_decimals: int = 6,
    base_decimals: int = 18,
    base: str = BASE_TOKEN,
    quote: str = QUOTE_TOKEN,
    **params: Any,
) -> MarketConfig:
    return MarketConfig.model_validate(
        {
            "oracle": {"source": "static", "price": price},
            "venue": {
                "base": base,
                "quote": quote,
                "base_decimals": base_decimals,
                "quote_decimals": quote_decimals,
                "bid_book_id": "1",
                "ask_book_id": "2",
            },
            "params": make_params(**params).model_dump(),
        }
    )


@pytest.fixture
def params() -> MarketParams:
    return make_params()


@pytest.fixture
def strategy() -> StrategyConfig:
    return StrategyConfig(markets={"WETH/USDC": make_market()})


def make_swap_log(amount0: int, amount1: int, block: int, log_index: int = 0, pool: str = POOL_ADDRESS) -> Dict[str, Any]:
    """A raw Uniswap V3 Swap log as ``eth_getLogs`` returns it."""
    router = bytes(12) + bytes.fromhex("22" * 20)
    return {
        "address": Web3.to_checksum_address(pool),
        "topics": [SWAP_V3_TOPIC, router, router],
        "data": encode(
            ["int256", "int256", "uint160", "uint128", "int24"],
            [amount0, amount1, 2**96, 10**18, 0],
        ),
        "blockNumber": block,
        "logIndex": log_index,
        "transactionIndex": 0,
        "transactionHash": bytes(32),
        "blockHash": bytes(32),
    }


class FakeEth:
    """Chain head plus one canned ``get_logs`` response per call."""

    def __init__(self, head: int, logs: Optional[List[List[Dict[str, Any]]]] = None):
        self.head = head
        self.get_logs = AsyncMock(side_effect=logs or [])

    @property
    def block_number(self):
        async def current() -> int:
            return self.head

        return current()


def make_w3(eth: FakeEth) -> MagicMock:
    w3 = MagicMock()
    w3.eth = eth
    return w3

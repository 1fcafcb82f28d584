"""Turn external pool Swap logs into taker trades.

A swap where the taker sends base into the pool hit the bid side; sending
quote in took the ask side. Prices are execution prices in quote per base.
"""

from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional

from web3 import Web3
from web3.exceptions import MismatchedABI

from ladder_mm.config import PoolConfig
from ladder_mm.market_maker.types import TradeRecord
from ladder_mm.utils.logging import get_logger

log = get_logger(__name__)

UNISWAP_V3_SWAP = {
    "name": "Swap",
    "type": "event",
    "anonymous": False,
    "inputs": [
        {"name": "sender", "type": "address", "indexed": True},
        {"name": "recipient", "type": "address", "indexed": True},
        {"name": "amount0", "type": "int256", "indexed": False},
        {"name": "amount1", "type": "int256", "indexed": False},
        {"name": "sqrtPriceX96", "type": "uint160", "indexed": False},
        {"name": "liquidity", "type": "uint128", "indexed": False},
        {"name": "tick", "type": "int24", "indexed": False},
    ],
}

UNISWAP_V2_SWAP = {
    "name": "Swap",
    "type": "event",
    "anonymous": False,
    "inputs": [
        {"name": "sender", "type": "address", "indexed": True},
        {"name": "amount0In", "type": "uint256", "indexed": False},
        {"name": "amount1In", "type": "uint256", "indexed": False},
        {"name": "amount0Out", "type": "uint256", "indexed": False},
        {"name": "amount1Out", "type": "uint256", "indexed": False},
        {"name": "to", "type": "address", "indexed": True},
    ],
}


def trade_from_deltas(
    pool: PoolConfig,
    amount0: int,
    amount1: int,
    block_number: int,
    log_index: int,
) -> Optional[TradeRecord]:
    """Build a trade from the pool's signed token deltas (positive = into the pool)."""
    if amount0 == 0 or amount1 == 0:
        return None

    human0 = Decimal(amount0) / (Decimal(10) ** pool.token0_decimals)
    human1 = Decimal(amount1) / (Decimal(10) ** pool.token1_decimals)
    base, quote = (human0, human1) if pool.token0_is_base else (human1, human0)

    is_taking_bid_side = base > 0
    return TradeRecord(
        is_taking_bid_side=is_taking_bid_side,
        amount_in=abs(base) if is_taking_bid_side else abs(quote),
        amount_out=abs(quote) if is_taking_bid_side else abs(base),
        price=abs(quote) / abs(base),
        block_number=block_number,
        log_index=log_index,
        pool=pool.address,
    )


class PoolExtractor:
    """Decodes one pool's Swap events."""

    def __init__(self, pool: PoolConfig, w3: Optional[Web3] = None):
        self.pool = pool
        self.address = Web3.to_checksum_address(pool.address)
        abi = UNISWAP_V3_SWAP if pool.kind == "uniswap_v3" else UNISWAP_V2_SWAP
        # decoding only, no provider round-trips
        w3 = w3 or Web3()
        self._event = w3.eth.contract(address=self.address, abi=[abi]).events.Swap()

    def deltas(self, args: Mapping[str, Any]) -> tuple:
        if self.pool.kind == "uniswap_v3":
            return int(args["amount0"]), int(args["amount1"])
        return (
            int(args["amount0In"]) - int(args["amount0Out"]),
            int(args["amount1In"]) - int(args["amount1Out"]),
        )

    def extract_decoded(self, events: Iterable[Mapping[str, Any]]) -> List[TradeRecord]:
        trades = []
        for event in events:
            amount0, amount1 = self.deltas(event["args"])
            trade = trade_from_deltas(
                self.pool, amount0, amount1, int(event["blockNumber"]), int(event["logIndex"])
            )
            if trade is not None:
                trades.append(trade)
        return trades

    def extract(self, logs: Iterable[Mapping[str, Any]]) -> List[TradeRecord]:
        """Decode raw logs emitted by this pool, ignoring anything that is not a Swap."""
        decoded = []
        for raw in logs:
            if Web3.to_checksum_address(raw["address"]) != self.address:
                continue
            try:
                decoded.append(self._event.process_log(raw))
            except MismatchedABI:
                log.debug("Skipping non-Swap log", pool=self.address, tx=raw.get("transactionHash"))
                continue
        return self.extract_decoded(decoded)

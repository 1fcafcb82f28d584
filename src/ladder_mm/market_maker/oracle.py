"""Reference price sources.

Every source implements the same two calls: ``update()`` refreshes all of its
markets concurrently, ``price(market_id)`` returns the last good price or
``None``. A market whose refresh failed has no price until the next good
refresh, so the strategy loop skips it rather than quoting off a stale value.
"""

import asyncio
import time
from decimal import Decimal
from typing import Dict, List, Optional, Protocol

import httpx
from web3 import AsyncWeb3

from ladder_mm.config import MarketConfig, OracleConfig, Settings
from ladder_mm.utils.logging import get_logger

log = get_logger(__name__)

BINANCE_KLINES_URL = "https://api.binance.com/api/v3/klines"
ODOS_PRICING_URL = "https://api.odos.xyz/pricing/token/{chain_id}/{token}"

CHAINLINK_ABI = [
    {
        "name": "latestAnswer",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "int256"}],
    }
]


class Oracle(Protocol):
    """Capability interface the decision engine depends on."""

    async def update(self) -> None:
        ...

    def price(self, market_id: str) -> Optional[Decimal]:
        ...


def ema(values: List[Decimal], period: int) -> Decimal:
    """Exponential moving average seeded with the simple average of the first window."""
    if len(values) < period:
        raise ValueError(f"Need at least {period} values, got {len(values)}")
    k = Decimal(2) / Decimal(period + 1)
    current = sum(values[:period], Decimal(0)) / period
    for value in values[period:]:
        current = value * k + current * (1 - k)
    return current


class _BaseOracle:
    name = "oracle"

    def __init__(self, markets: Dict[str, OracleConfig]):
        self.markets = markets
        self.prices: Dict[str, Decimal] = {}

    async def _fetch(self, market_id: str, config: OracleConfig) -> Decimal:
        raise NotImplementedError

    async def update(self) -> None:
        start = time.perf_counter()
        ids = list(self.markets)
        results = await asyncio.gather(
            *(self._fetch(mid, self.markets[mid]) for mid in ids),
            return_exceptions=True,
        )
        for mid, result in zip(ids, results):
            if isinstance(result, Exception):
                self.prices.pop(mid, None)
                log.error("Oracle update failed", source=self.name, market=mid, error=str(result))
            else:
                self.prices[mid] = result

        log.debug(
            f"{self.name} updated",
            second=round(time.perf_counter() - start, 2),
            prices={mid: str(p) for mid, p in self.prices.items()},
        )

    def price(self, market_id: str) -> Optional[Decimal]:
        return self.prices.get(market_id)


class BinanceOracle(_BaseOracle):
    """EMA of Binance kline closes."""

    name = "binance"

    def __init__(self, markets: Dict[str, OracleConfig], client: Optional[httpx.AsyncClient] = None):
        super().__init__(markets)
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))

    async def _fetch(self, market_id: str, config: OracleConfig) -> Decimal:
        resp = await self._client.get(
            BINANCE_KLINES_URL,
            params={"symbol": config.symbol, "interval": config.interval, "limit": config.period * 3},
        )
        resp.raise_for_status()
        closes = [Decimal(str(kline[4])) for kline in resp.json()]
        return ema(closes, config.period)

    async def close(self) -> None:
        await self._client.aclose()


class OdosOracle(_BaseOracle):
    """Aggregator token price in USD."""

    name = "odos"

    def __init__(
        self,
        markets: Dict[str, OracleConfig],
        chain_id: int,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(markets)
        self.chain_id = chain_id
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))

    async def _fetch(self, market_id: str, config: OracleConfig) -> Decimal:
        resp = await self._client.get(ODOS_PRICING_URL.format(chain_id=self.chain_id, token=config.token_address))
        resp.raise_for_status()
        return Decimal(str(resp.json()["price"]))

    async def close(self) -> None:
        await self._client.aclose()


class ChainlinkOracle(_BaseOracle):
    """``latestAnswer`` of a Chainlink aggregator."""

    name = "chainlink"

    def __init__(self, markets: Dict[str, OracleConfig], rpc_url: str):
        super().__init__(markets)
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))

    async def _fetch(self, market_id: str, config: OracleConfig) -> Decimal:
        feed = self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(config.feed_address), abi=CHAINLINK_ABI)
        answer = await feed.functions.latestAnswer().call()
        return Decimal(answer) / (Decimal(10) ** config.feed_decimals)


class StaticOracle(_BaseOracle):
    """Fixed prices from the strategy document, for paper runs."""

    name = "static"

    async def _fetch(self, market_id: str, config: OracleConfig) -> Decimal:
        return config.price


class OracleRouter:
    """Routes each market to the source its config names."""

    def __init__(self, sources: List[_BaseOracle]):
        self.sources = sources
        self._by_market: Dict[str, _BaseOracle] = {}
        for source in sources:
            for market_id in source.markets:
                self._by_market[market_id] = source

    async def update(self) -> None:
        await asyncio.gather(*(source.update() for source in self.sources))

    def price(self, market_id: str) -> Optional[Decimal]:
        source = self._by_market.get(market_id)
        return source.price(market_id) if source else None

    async def close(self) -> None:
        for source in self.sources:
            close = getattr(source, "close", None)
            if close is not None:
                await close()


def build_oracle(settings: Settings, markets: Dict[str, MarketConfig]) -> OracleRouter:
    """Group markets by oracle source and build one client per source."""
    grouped: Dict[str, Dict[str, OracleConfig]] = {}
    for market_id, market in markets.items():
        grouped.setdefault(market.oracle.source, {})[market_id] = market.oracle

    sources: List[_BaseOracle] = []
    for source, configs in grouped.items():
        if source == "binance":
            sources.append(BinanceOracle(configs))
        elif source == "odos":
            sources.append(OdosOracle(configs, chain_id=settings.chain_id))
        elif source == "chainlink":
            sources.append(ChainlinkOracle(configs, rpc_url=settings.oracle_rpc_url or settings.rpc_url))
        else:
            sources.append(StaticOracle(configs))
    return OracleRouter(sources)

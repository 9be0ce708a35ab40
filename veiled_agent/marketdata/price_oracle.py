"""
Current market price with a fallback chain of sources.

Order (first success wins):
1) Pool storage read on the settlement chain (slot0 of the pool state)
2) Price feed aggregator (`latestRoundData`)
3) Public market API (CoinGecko `simple/price` shape)
4) Static last-resort value

Source failures fall through silently (debug log); only exhaustion raises.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Optional, Protocol, Sequence

import httpx
from eth_abi import encode as abi_encode
from web3 import Web3

from veiled_agent.common.config import AgentConfig, PoolConfig
from veiled_agent.common.logging import log_event

logger = logging.getLogger(__name__)

Q96 = 2**96
_SQRT_PRICE_MASK = (1 << 160) - 1

AGGREGATOR_V3_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "latestRoundData",
        "outputs": [
            {"name": "roundId", "type": "uint80"},
            {"name": "answer", "type": "int256"},
            {"name": "startedAt", "type": "uint256"},
            {"name": "updatedAt", "type": "uint256"},
            {"name": "answeredInRound", "type": "uint80"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
]


class NoPriceAvailable(RuntimeError):
    """
    Raised when every configured price source failed.
    """


class PriceSource(Protocol):
    name: str

    async def fetch(self) -> float: ...


def pool_id(pool: PoolConfig) -> bytes:
    """
    keccak256(abi.encode(PoolKey)).
    """
    encoded = abi_encode(
        ["address", "address", "uint24", "int24", "address"],
        [
            Web3.to_checksum_address(pool.currency0),
            Web3.to_checksum_address(pool.currency1),
            int(pool.fee),
            int(pool.tick_spacing),
            Web3.to_checksum_address(pool.hooks),
        ],
    )
    return bytes(Web3.keccak(encoded))


def pool_state_slot(pool: PoolConfig) -> int:
    # pools mapping lives at `state_slot`; Pool.State starts with slot0.
    key = abi_encode(["bytes32", "uint256"], [pool_id(pool), int(pool.state_slot)])
    return int.from_bytes(bytes(Web3.keccak(key)), "big")


def price_from_sqrt_price_x96(sqrt_price_x96: int, *, decimals0: int, decimals1: int) -> float:
    """
    Human price of currency0 in units of currency1.
    """
    ratio = (sqrt_price_x96 / Q96) ** 2
    return ratio * (10 ** (decimals0 - decimals1))


class PoolStoragePriceSource:
    name = "pool_storage"

    def __init__(self, w3: Web3, pool: PoolConfig) -> None:
        if not pool.manager_address:
            raise ValueError("pool manager address required")
        self._w3 = w3
        self._pool = pool
        self._manager = Web3.to_checksum_address(pool.manager_address)
        self._slot = pool_state_slot(pool)

    def _read(self) -> float:
        raw = self._w3.eth.get_storage_at(self._manager, self._slot)
        sqrt_price_x96 = int.from_bytes(bytes(raw), "big") & _SQRT_PRICE_MASK
        if sqrt_price_x96 == 0:
            raise ValueError("pool not initialized (sqrtPriceX96 == 0)")
        return price_from_sqrt_price_x96(
            sqrt_price_x96,
            decimals0=self._pool.currency0_decimals,
            decimals1=self._pool.currency1_decimals,
        )

    async def fetch(self) -> float:
        return await asyncio.to_thread(self._read)


class PriceFeedSource:
    name = "price_feed"

    def __init__(self, w3: Web3, feed_address: str) -> None:
        self._contract = w3.eth.contract(address=Web3.to_checksum_address(feed_address), abi=AGGREGATOR_V3_ABI)
        self._decimals: Optional[int] = None

    def _read(self) -> float:
        if self._decimals is None:
            self._decimals = int(self._contract.functions.decimals().call())
        _round_id, answer, _started, _updated, _answered = self._contract.functions.latestRoundData().call()
        if int(answer) <= 0:
            raise ValueError(f"non-positive feed answer: {answer}")
        return int(answer) / (10**self._decimals)

    async def fetch(self) -> float:
        return await asyncio.to_thread(self._read)


def _extract_market_price(data: Any) -> float:
    # {"ethereum": {"usd": 2412.5}} or {"price": "2412.5"}
    if isinstance(data, dict):
        if "price" in data:
            return float(data["price"])
        for v in data.values():
            if isinstance(v, dict):
                for inner in v.values():
                    if isinstance(inner, (int, float, str)):
                        return float(inner)
    raise ValueError("unrecognized market API response shape")


class MarketApiSource:
    name = "market_api"

    def __init__(self, client: httpx.AsyncClient, url: str, *, timeout_s: float = 5.0) -> None:
        self._client = client
        self._url = url
        self._timeout_s = timeout_s

    async def fetch(self) -> float:
        resp = await self._client.get(self._url, timeout=self._timeout_s)
        resp.raise_for_status()
        return _extract_market_price(resp.json())


class StaticPriceSource:
    name = "static_fallback"

    def __init__(self, value: float) -> None:
        self._value = float(value)

    async def fetch(self) -> float:
        return self._value


class PriceOracle:
    def __init__(self, sources: Sequence[PriceSource]) -> None:
        self._sources = list(sources)

    @property
    def source_names(self) -> list[str]:
        return [s.name for s in self._sources]

    async def current_price(self) -> float:
        for source in self._sources:
            try:
                price = float(await source.fetch())
            except Exception as e:
                logger.debug("price source %s failed: %s", source.name, e)
                continue
            if not math.isfinite(price) or price <= 0:
                logger.debug("price source %s returned unusable value %r", source.name, price)
                continue
            return price
        log_event(logger, "price.unavailable", severity="WARNING", sources=self.source_names)
        raise NoPriceAvailable(f"all price sources failed: {', '.join(self.source_names) or 'none configured'}")


def build_price_oracle(cfg: AgentConfig, *, w3: Web3, http: httpx.AsyncClient) -> PriceOracle:
    sources: list[PriceSource] = []
    if cfg.pool.manager_address:
        sources.append(PoolStoragePriceSource(w3, cfg.pool))
    if cfg.price_feed_address:
        sources.append(PriceFeedSource(w3, cfg.price_feed_address))
    if cfg.market_api_url:
        sources.append(MarketApiSource(http, cfg.market_api_url))
    if cfg.static_fallback_price is not None and cfg.static_fallback_price > 0:
        sources.append(StaticPriceSource(cfg.static_fallback_price))
    return PriceOracle(sources)

"""
Price Oracle
Resolves SOL-per-token prices through bonding curve -> aggregator -> market data,
with a short per-token cache and a failure backoff for tokens nobody can price
"""

import asyncio
import math
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, Optional, Protocol

from copytrader.core.bonding_curve import BondingCurveState
from copytrader.core.logger import get_logger
from copytrader.core.metrics import LatencyTimer, MetricsCollector


logger = get_logger(__name__)


SOURCE_BONDING_CURVE = "pumpfun_raw"
SOURCE_AGGREGATOR = "jupiter"
SOURCE_MARKET_DATA = "dexscreener"
SOURCE_SKIPPED = "skipped"
SOURCE_NONE = "none"


@dataclass(frozen=True)
class PriceQuote:
    """
    A price observation for one token

    price is SOL per whole token (decimals already applied), or None when
    nothing could be resolved. stale marks a cached quote served past its TTL.
    """
    token_id: str
    price: Optional[float]
    source: str
    graduated: bool
    timestamp: float
    stale: bool = False
    progress: Optional[float] = None

    @property
    def has_price(self) -> bool:
        return self.price is not None


class CurveReader(Protocol):
    async def get_curve_state(self, token_id: str) -> Optional[BondingCurveState]:
        ...


class PriceSource(Protocol):
    async def get_price(self, token_id: str) -> Optional[float]:
        ...


def is_valid_price(value) -> bool:
    """Finite and strictly positive"""
    if value is None or isinstance(value, bool):
        return False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(number) and number > 0


@dataclass
class _FailureWindow:
    count: int
    window_start: float


class PriceOracle:
    """
    Ordered price resolution with caching and failure backoff

    Tiers:
    1. Bonding curve account. A complete curve, a missing account or empty
       reserves all mean "maybe graduated" and fall through.
    2. Aggregator quote, reported as graduated.
    3. Market data (most liquid pair), reported as graduated.
    4. Last cached quote of any age, marked stale.

    After ``max_failed_attempts`` total failures inside ``failure_window_s`` the
    token is not looked up again until the window has passed; callers get the stale
    cache or a "skipped" quote. One success clears the counter.

    The oracle is built once by the worker and shared by reference.
    """

    def __init__(
        self,
        curve_reader: CurveReader,
        aggregator: PriceSource,
        market_data: PriceSource,
        metrics: MetricsCollector,
        cache_ttl_s: float = 5.0,
        tier_ttl_s: Optional[Dict[str, float]] = None,
        max_failed_attempts: int = 3,
        failure_window_s: float = 60.0,
        timeout_s: float = 5.0,
        clock: Callable[[], float] = time.time
    ):
        self.curve_reader = curve_reader
        self.aggregator = aggregator
        self.market_data = market_data
        self.metrics = metrics
        self.cache_ttl_s = cache_ttl_s
        self.tier_ttl_s = dict(tier_ttl_s or {})
        self.max_failed_attempts = max_failed_attempts
        self.failure_window_s = failure_window_s
        self.timeout_s = timeout_s
        self._clock = clock

        self._cache: Dict[str, PriceQuote] = {}
        self._failures: Dict[str, _FailureWindow] = {}

    def ttl_for(self, source: str) -> float:
        return self.tier_ttl_s.get(source, self.cache_ttl_s)

    async def get_price(self, token_id: str, force_fresh: bool = False) -> PriceQuote:
        """
        Current price for a token

        Args:
            token_id: Mint address
            force_fresh: Skip the TTL cache (the failure backoff still applies)

        Returns:
            PriceQuote; check has_price and stale before trusting it
        """
        now = self._clock()
        cached = self._cache.get(token_id)

        if not force_fresh and cached and now - cached.timestamp < self.ttl_for(cached.source):
            return cached

        if self._in_backoff(token_id, now):
            self.metrics.increment_counter("price_backoff_skips")
            if cached:
                logger.debug("price_backoff_stale_cache", token_id=token_id, source=cached.source)
                return replace(cached, stale=True)
            logger.debug("price_backoff_skipped", token_id=token_id)
            return PriceQuote(token_id, None, SOURCE_SKIPPED, False, now)

        with LatencyTimer(self.metrics, "price_lookup"):
            quote = await self._resolve(token_id)

        if quote is not None:
            self._cache[token_id] = quote
            self._failures.pop(token_id, None)
            self.metrics.increment_counter("price_lookups", labels={"source": quote.source})
            return quote

        self._record_failure(token_id, now)
        self.metrics.increment_counter("price_lookup_failures")

        if cached:
            logger.warning(
                "price_using_stale_cache",
                token_id=token_id,
                source=cached.source,
                age_s=round(now - cached.timestamp, 1)
            )
            return replace(cached, stale=True)

        return PriceQuote(token_id, None, SOURCE_NONE, False, now)

    def invalidate(self, token_id: str) -> None:
        """Forget cache and failure state for a token"""
        self._cache.pop(token_id, None)
        self._failures.pop(token_id, None)

    def failure_count(self, token_id: str) -> int:
        window = self._failures.get(token_id)
        return window.count if window else 0

    def _in_backoff(self, token_id: str, now: float) -> bool:
        window = self._failures.get(token_id)
        if window is None:
            return False
        if now - window.window_start >= self.failure_window_s:
            del self._failures[token_id]
            return False
        return window.count >= self.max_failed_attempts

    def _record_failure(self, token_id: str, now: float) -> None:
        window = self._failures.get(token_id)
        if window is None or now - window.window_start >= self.failure_window_s:
            self._failures[token_id] = _FailureWindow(count=1, window_start=now)
        else:
            window.count += 1

        logger.warning(
            "price_lookup_failed",
            token_id=token_id,
            failures=self._failures[token_id].count,
            max_failed_attempts=self.max_failed_attempts
        )

    async def _call(self, tier: str, token_id: str, fn: Callable[[str], Awaitable]):
        try:
            return await asyncio.wait_for(fn(token_id), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            logger.debug("price_tier_timeout", tier=tier, token_id=token_id)
        except Exception as e:
            logger.debug("price_tier_failed", tier=tier, token_id=token_id, error=str(e))
        return None

    async def _resolve(self, token_id: str) -> Optional[PriceQuote]:
        curve = await self._call(SOURCE_BONDING_CURVE, token_id, self.curve_reader.get_curve_state)
        if curve is not None and not curve.complete and is_valid_price(curve.price_sol):
            return PriceQuote(
                token_id=token_id,
                price=float(curve.price_sol),
                source=SOURCE_BONDING_CURVE,
                graduated=False,
                timestamp=self._clock(),
                progress=curve.progress
            )
        if curve is not None and curve.complete:
            logger.debug("curve_complete_using_aggregator", token_id=token_id)

        price = await self._call(SOURCE_AGGREGATOR, token_id, self.aggregator.get_price)
        if is_valid_price(price):
            return PriceQuote(token_id, float(price), SOURCE_AGGREGATOR, True, self._clock(), progress=1.0)

        price = await self._call(SOURCE_MARKET_DATA, token_id, self.market_data.get_price)
        if is_valid_price(price):
            return PriceQuote(token_id, float(price), SOURCE_MARKET_DATA, True, self._clock(), progress=1.0)

        return None

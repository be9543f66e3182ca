"""
Execution venues
Relay (bonding curve via PumpPortal) and aggregator (Jupiter) behind one buy/sell contract,
with the venue picked from the current price quote
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Protocol, Set, Union

from copytrader.core.logger import get_logger
from copytrader.core.metrics import LatencyTimer, MetricsCollector


logger = get_logger(__name__)


class Venue(Enum):
    """Execution venue, valued by the tag stored in position records"""
    RELAY = "pumpportal"
    AGGREGATOR = "jupiter"

    @classmethod
    def parse(cls, value: Union["Venue", str, None]) -> Optional["Venue"]:
        """Venue for a tag or member name; None if unknown"""
        if isinstance(value, Venue):
            return value
        if not value:
            return None
        text = str(value).strip().lower()
        for venue in cls:
            if text in (venue.value, venue.name.lower()):
                return venue
        return None


ERROR_NO_ROUTE = "no_route"
ERROR_TIMEOUT = "timeout"
ERROR_REJECTED = "rejected"
ERROR_EXCEPTION = "exception"
ERROR_FAILED_ON_CHAIN = "failed_on_chain"


@dataclass
class TradeResult:
    """Outcome of one buy or sell attempt"""
    success: bool
    venue: Optional[Venue] = None
    signature: Optional[str] = None
    tokens_received: Optional[float] = None  # buys, whole tokens
    quote_received: Optional[float] = None  # sells, SOL
    fill_price: Optional[float] = None  # SOL per token, when known
    error: Optional[str] = None
    error_kind: Optional[str] = None
    confirmed: bool = True  # False: submitted but confirmation polling ran out
    simulated: bool = False
    fell_back_from: Optional[Venue] = None

    @property
    def is_no_route(self) -> bool:
        return self.error_kind == ERROR_NO_ROUTE

    @classmethod
    def failed(cls, venue: Optional[Venue], error: str, kind: str = ERROR_REJECTED) -> "TradeResult":
        return cls(success=False, venue=venue, error=error, error_kind=kind)


class TradeExecutor(Protocol):
    """Buy/sell capability shared by every venue (live or simulated)"""

    venue: Venue

    async def buy(
        self,
        token_id: str,
        quote_amount: float,
        slippage_pct: float,
        priority_fee: float
    ) -> TradeResult:
        ...

    async def sell(
        self,
        token_id: str,
        token_amount: float,
        slippage_pct: float,
        priority_fee: float
    ) -> TradeResult:
        ...


def select_venue(quote) -> Venue:
    """Aggregator once the quote reports graduation, relay otherwise"""
    if quote is not None and getattr(quote, "graduated", False):
        return Venue.AGGREGATOR
    return Venue.RELAY


class VenueRouter:
    """
    Routes orders to the venue chosen by select_venue

    - Every call is bounded by ``timeout_s``, a backstop sized to cover submission and
      confirmation polling; expiry is an ordinary failed result.
    - An aggregator "no route" failure falls back once to the relay for the same order.
    - The first aggregator order per token can wait ``graduation_warmup_s`` so the
      aggregator has time to index the new pool.
    """

    def __init__(
        self,
        executors: Dict[Venue, TradeExecutor],
        metrics: MetricsCollector,
        timeout_s: float = 30.0,
        graduation_warmup_s: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        missing = [v.value for v in Venue if v not in executors]
        if missing:
            raise ValueError(f"Missing executors for venues: {', '.join(missing)}")

        self.executors = executors
        self.metrics = metrics
        self.timeout_s = timeout_s
        self.graduation_warmup_s = graduation_warmup_s
        self._sleep = sleep
        self._warmed_up: Set[str] = set()

    async def buy(self, token_id: str, quote, quote_amount: float, slippage_pct: float, priority_fee: float) -> TradeResult:
        return await self._route("buy", token_id, quote, quote_amount, slippage_pct, priority_fee)

    async def sell(self, token_id: str, quote, token_amount: float, slippage_pct: float, priority_fee: float) -> TradeResult:
        return await self._route("sell", token_id, quote, token_amount, slippage_pct, priority_fee)

    async def _route(self, side: str, token_id: str, quote, amount: float, slippage_pct: float, priority_fee: float) -> TradeResult:
        venue = select_venue(quote)

        if venue is Venue.AGGREGATOR:
            await self._warm_up(token_id)

        result = await self._execute(venue, side, token_id, amount, slippage_pct, priority_fee)
        if result.success or not (venue is Venue.AGGREGATOR and result.is_no_route):
            return result

        logger.warning(
            "aggregator_no_route_fallback",
            token_id=token_id,
            side=side,
            error=result.error
        )
        self.metrics.increment_counter("venue_fallbacks", labels={"side": side})

        fallback = await self._execute(Venue.RELAY, side, token_id, amount, slippage_pct, priority_fee)
        fallback.fell_back_from = Venue.AGGREGATOR
        return fallback

    async def _warm_up(self, token_id: str) -> None:
        if token_id in self._warmed_up:
            return
        self._warmed_up.add(token_id)
        if self.graduation_warmup_s > 0:
            logger.info(
                "aggregator_warmup_wait",
                token_id=token_id,
                seconds=self.graduation_warmup_s
            )
            await self._sleep(self.graduation_warmup_s)

    async def _execute(self, venue: Venue, side: str, token_id: str, amount: float, slippage_pct: float, priority_fee: float) -> TradeResult:
        executor = self.executors[venue]
        call = executor.buy if side == "buy" else executor.sell

        try:
            with LatencyTimer(self.metrics, "trade_execution", {"venue": venue.value, "side": side}):
                result = await asyncio.wait_for(
                    call(token_id, amount, slippage_pct, priority_fee),
                    timeout=self.timeout_s
                )
        except asyncio.TimeoutError:
            logger.warning("trade_timeout", venue=venue.value, side=side, token_id=token_id, timeout_s=self.timeout_s)
            return TradeResult.failed(venue, f"{side} timed out after {self.timeout_s}s", ERROR_TIMEOUT)
        except Exception as e:
            logger.error("trade_execution_error", venue=venue.value, side=side, token_id=token_id, error=str(e))
            return TradeResult.failed(venue, str(e), ERROR_EXCEPTION)

        if result.venue is None:
            result.venue = venue

        self.metrics.increment_counter(
            "trades",
            labels={"venue": venue.value, "side": side, "success": str(result.success)}
        )
        if result.success and not result.confirmed:
            logger.warning("trade_unconfirmed", venue=venue.value, side=side, token_id=token_id, signature=result.signature)

        return result

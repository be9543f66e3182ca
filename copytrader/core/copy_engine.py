"""
Copy Decision Engine
Consumes copy signals exactly once, gates them through the copy strategy against a
fresh price, and turns accepted signals into a buy plus an open position
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Optional

from copytrader.core.config import TradingConfig
from copytrader.core.copy_strategy import CopyContext, CopyStrategy, CopyVerdict, confidence_for
from copytrader.core.errors import PositionExistsError
from copytrader.core.logger import get_logger
from copytrader.core.metrics import MetricsCollector
from copytrader.core.pnl import venue_fee_fraction
from copytrader.core.position_store import Position, PositionStore
from copytrader.core.price_oracle import PriceOracle, is_valid_price
from copytrader.core.signals import COPY_SIGNALS_KEY, CopySignal
from copytrader.core.store import KeyValueStore
from copytrader.core.venues import VenueRouter


logger = get_logger(__name__)


COPY_COOLDOWN_S = 60
SIGNAL_SEEN_TTL_S = 24 * 3600
EXIT_STRATEGY = "hybrid_smart_exit"


def signal_seen_key(signal_id: str) -> str:
    return f"signal_seen:{signal_id}"


def copy_cooldown_key(token_id: str) -> str:
    return f"copy_cooldown:{token_id}"


def pending_buy_key(token_id: str) -> str:
    return f"pending_buy:{token_id}"


@dataclass
class CopyOutcome:
    """What happened to one signal"""
    verdict: CopyVerdict
    position: Optional[Position] = None
    error: Optional[str] = None

    @property
    def executed(self) -> bool:
        return self.position is not None


class CopyDecisionEngine:
    """
    Signal -> verdict -> buy -> position

    Guarantees:
    - a signal id is processed at most once (signal_seen:{id} is claimed first)
    - no price means a clean rejection with nothing written besides the claim
    - a pending_buy:{token} record exists from just before the buy until the
      position is open, so a crash in between leaves a reconciliation trail

    Usage:
        engine = CopyDecisionEngine(store, positions, oracle, strategy, router, notifier, metrics, config.trading)
        outcome = await engine.process_signal(signal)
    """

    def __init__(
        self,
        store: KeyValueStore,
        positions: PositionStore,
        oracle: PriceOracle,
        strategy: CopyStrategy,
        router: VenueRouter,
        notifier,
        metrics: MetricsCollector,
        trading: TradingConfig
    ):
        self.store = store
        self.positions = positions
        self.oracle = oracle
        self.strategy = strategy
        self.router = router
        self.notifier = notifier
        self.metrics = metrics
        self.trading = trading

    async def process_next(self, timeout: float = 2.0) -> Optional[CopyOutcome]:
        """Pop and process one queued signal; None when the queue stayed empty"""
        raw = await self.store.blpop(COPY_SIGNALS_KEY, timeout=timeout)
        if raw is None:
            return None

        try:
            signal = CopySignal.from_json(raw)
        except (ValueError, TypeError) as e:
            logger.warning("copy_signal_malformed", error=str(e))
            self._count("malformed")
            return None

        return await self.process_signal(signal)

    async def process_signal(self, signal: CopySignal) -> CopyOutcome:
        token_id = signal.token_id

        if not await self.store.set(signal_seen_key(signal.signal_id), str(time.time()), ex=SIGNAL_SEEN_TTL_S, nx=True):
            logger.info("copy_signal_duplicate", token_id=token_id, signal_id=signal.signal_id)
            return self._reject(signal, "duplicate_signal")

        logger.info(
            "copy_signal_received",
            token_id=token_id,
            source_wallet=signal.source_wallet,
            wallet_name=signal.source_wallet_name,
            upvotes=signal.upvotes
        )

        quote = await self.oracle.get_price(token_id, force_fresh=True)
        if quote is None or quote.stale or not is_valid_price(quote.price):
            logger.info("copy_signal_no_price", token_id=token_id, source=getattr(quote, "source", None))
            return self._reject(signal, "no_price")

        context = await self._context(token_id, quote.price)
        verdict = self.strategy.should_copy(signal, context)
        if not verdict.copy:
            logger.info("copy_rejected", token_id=token_id, reason=verdict.reason, upvotes=signal.upvotes)
            self._count(verdict.reason)
            return CopyOutcome(verdict)

        if not self.trading.enabled:
            logger.info("copy_trading_disabled", token_id=token_id, amount=verdict.amount)
            return self._reject(signal, "trading_disabled")

        return await self._execute(signal, verdict, quote)

    async def _context(self, token_id: str, price: float) -> CopyContext:
        in_cooldown = (
            await self.positions.in_reentry_cooldown(token_id)
            or await self.store.exists(copy_cooldown_key(token_id))
        )
        return CopyContext(
            open_positions=await self.positions.count_open(),
            has_position=await self.positions.is_open(token_id),
            in_cooldown=in_cooldown,
            daily_pnl=await self.positions.get_daily_pnl(),
            price=price
        )

    async def _execute(self, signal: CopySignal, verdict: CopyVerdict, quote) -> CopyOutcome:
        token_id = signal.token_id
        provenance = {
            "strategy": "copy",
            "source_wallet": signal.source_wallet,
            "source_wallet_name": signal.source_wallet_name,
            "upvotes": signal.upvotes,
            "buyers": json.dumps(signal.wallets),
            "original_signature": signal.signature,
            "original_venue": signal.venue,
            "confidence": verdict.confidence,
            "mode": verdict.mode,
            "exit_strategy": EXIT_STRATEGY,
        }

        pending = {k: "" if v is None else str(v) for k, v in provenance.items()}
        pending.update({"amount": repr(verdict.amount), "price": repr(quote.price), "created_at": str(time.time())})
        await self.store.hset(pending_buy_key(token_id), pending)
        logger.info("pending_buy_recorded", token_id=token_id, amount=verdict.amount, mode=verdict.mode)

        result = await self.router.buy(
            token_id,
            quote,
            verdict.amount,
            self.trading.copy_slippage_pct,
            self.trading.priority_fee_sol
        )

        if not result.success:
            await self.store.delete(pending_buy_key(token_id))
            logger.warning("copy_buy_failed", token_id=token_id, venue=result.venue.value if result.venue else None, error=result.error)
            self._count("buy_failed")
            await self.notifier.send_text(f"❌ COPY BUY FAILED\nToken: {token_id[:16]}...\nError: {result.error}")
            return CopyOutcome(verdict, error=result.error)

        tokens = result.tokens_received
        if tokens is None or tokens <= 0:
            tokens = verdict.amount * (1 - venue_fee_fraction(result.venue)) / quote.price
            logger.warning("tokens_received_estimated", token_id=token_id, tokens=tokens, signature=result.signature)

        provenance["executed_venue"] = result.venue.value if result.venue else None
        if result.fell_back_from:
            provenance["fell_back_from"] = result.fell_back_from.value

        try:
            position = await self.positions.open_position(
                token_id,
                "copy",
                quote.price,
                verdict.amount,
                tokens,
                result.signature,
                provenance=provenance,
                confirmed=result.confirmed
            )
        except PositionExistsError:
            # leave pending_buy in place: this buy is not tracked by any position
            logger.error("copy_buy_untracked", token_id=token_id, signature=result.signature, tokens=tokens)
            self._count("untracked")
            return CopyOutcome(verdict, error="position_exists")

        await self.store.setex(copy_cooldown_key(token_id), COPY_COOLDOWN_S, "1")
        await self.store.delete(pending_buy_key(token_id))
        self._count("executed")

        await self.notifier.send_position_opened(position, verdict.mode, signal.upvotes, verdict.confidence)
        return CopyOutcome(verdict, position=position)

    def _reject(self, signal: CopySignal, reason: str) -> CopyOutcome:
        self._count(reason)
        verdict = CopyVerdict(False, reason, 0.0, confidence_for(signal.upvotes), self.strategy.mode)
        return CopyOutcome(verdict)

    def _count(self, outcome: str) -> None:
        self.metrics.increment_counter("copy_signals", labels={"outcome": outcome})

    async def run(self, poll_timeout_s: float = 2.0, error_backoff_s: float = 5.0) -> None:
        """Signal consumption loop; one bad iteration never stops it"""
        logger.info("copy_signal_loop_started")
        while True:
            try:
                await self.process_next(timeout=poll_timeout_s)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("copy_signal_loop_error", error=str(e), error_type=type(e).__name__)
                self.metrics.increment_counter("loop_errors", labels={"loop": "copy_signals"})
                await asyncio.sleep(error_backoff_s)

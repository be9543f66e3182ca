"""
Position Monitor
The open-position loop: price every open position, raise its high-water mark,
compute fee-aware unrealized PnL, ask the exit policy, and sell + close on exit
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from copytrader.core.config import NotificationConfig, TradingConfig
from copytrader.core.errors import CorruptPositionError, PnLInputError, PositionNotFoundError
from copytrader.core.exit_policy import REASON_FORCE_EXIT, ExitDecision, ExitPolicyEngine, force_exit_key, phase_for
from copytrader.core.logger import get_logger
from copytrader.core.metrics import MetricsCollector
from copytrader.core.pnl import PnLCalculator, PnLResult
from copytrader.core.position_store import (
    REASON_DATA_INTEGRITY,
    Position,
    PositionStore,
    parse_float,
    utc_now
)
from copytrader.core.price_oracle import PriceOracle, PriceQuote, is_valid_price
from copytrader.core.signals import wallet_sold_key
from copytrader.core.venues import TradeResult, VenueRouter, select_venue


logger = get_logger(__name__)


REASON_MANUAL_SELL = "manual_sell"
EXIT_LOCK_TTL_S = 120


def exit_lock_key(token_id: str) -> str:
    return f"exit_lock:{token_id}"


@dataclass
class ExitOutcome:
    """Result of one attempted exit"""
    token_id: str
    reason: str
    closed: bool
    pnl: Optional[PnLResult] = None
    trade: Optional[TradeResult] = None
    error: Optional[str] = None


class PositionMonitor:
    """
    Drives open positions to their exits

    Only one exit per token runs at a time: an exit_lock:{token} key is claimed
    before selling, so a manual sell and the monitor (or two processes) never sell
    the same lot twice. Close races that slip past the lock still end in a clean
    PositionNotFoundError for the loser.

    Usage:
        monitor = PositionMonitor(positions, oracle, calculator, exit_engine, router, notifier, metrics, config.trading)
        await monitor.check_positions()
        await monitor.manual_sell(mint)
    """

    def __init__(
        self,
        positions: PositionStore,
        oracle: PriceOracle,
        calculator: PnLCalculator,
        exit_engine: ExitPolicyEngine,
        router: VenueRouter,
        notifier,
        metrics: MetricsCollector,
        trading: TradingConfig,
        notifications: Optional[NotificationConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.positions = positions
        self.store = positions.store
        self.oracle = oracle
        self.calculator = calculator
        self.exit_engine = exit_engine
        self.router = router
        self.notifier = notifier
        self.metrics = metrics
        self.trading = trading
        self.notifications = notifications or NotificationConfig()
        self._clock = clock
        self._last_update: Dict[str, float] = {}

    @property
    def mode(self) -> str:
        return "live" if self.trading.live else "paper"

    async def check_positions(self) -> List[ExitOutcome]:
        """One monitoring cycle over every open position"""
        outcomes = []
        records = await self.positions.get_open_records()
        self.metrics.set_gauge("open_positions", len(records))

        for token_id, record in records:
            try:
                position = Position.from_record(token_id, record)
            except CorruptPositionError as e:
                outcomes.append(await self.emergency_exit(token_id, record, e))
                continue

            try:
                outcome = await self._check_position(position)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # one bad position never stops the cycle
                logger.error("position_check_failed", token_id=token_id, error=str(e), error_type=type(e).__name__)
                self.metrics.increment_counter("loop_errors", labels={"loop": "position_check"})
                continue

            if outcome is not None:
                outcomes.append(outcome)

        return outcomes

    async def _check_position(self, position: Position) -> Optional[ExitOutcome]:
        token_id = position.token_id
        quote = await self.oracle.get_price(token_id)

        price = quote.price if quote.has_price and is_valid_price(quote.price) else None
        pnl = None
        if price is not None:
            if await self.positions.update_max_price(token_id, price):
                position.max_price = price
            pnl = self._unrealized(position, price, quote)
        else:
            logger.debug("position_no_price", token_id=token_id, source=quote.source)

        decision = await self.exit_engine.evaluate(position, price, pnl.pnl_percent if pnl else None)

        if decision.should_exit:
            return await self._exit(position, decision.reason, quote, decision)

        if pnl is not None:
            await self._maybe_live_update(position, price, pnl)
        return None

    def _unrealized(self, position: Position, price: float, quote: PriceQuote) -> Optional[PnLResult]:
        try:
            return self.calculator.calculate_unrealized_pnl(
                position,
                price,
                venue=select_venue(quote),
                estimated_slippage=self.trading.estimated_slippage,
                network_fee=self.trading.network_fee_sol,
                priority_fee=self.trading.priority_fee_sol
            )
        except PnLInputError as e:
            logger.warning("unrealized_pnl_failed", token_id=position.token_id, error=str(e))
            return None

    async def _maybe_live_update(self, position: Position, price: float, pnl: PnLResult) -> None:
        if not self.notifications.live_updates:
            return
        now = self._clock()
        last = self._last_update.get(position.token_id)
        if last is not None and now - last < self.notifications.live_update_interval_s:
            return
        self._last_update[position.token_id] = now

        hold_time_s = position.hold_time_s(utc_now())
        phase = phase_for(hold_time_s, self.exit_engine.wallet_exit_window_s, self.exit_engine.loss_protection_window_s)
        await self.notifier.send_live_update(position, price, pnl, phase.value, hold_time_s)

    async def _exit(
        self,
        position: Position,
        reason: str,
        quote: Optional[PriceQuote],
        decision: Optional[ExitDecision] = None
    ) -> ExitOutcome:
        token_id = position.token_id

        if not await self.store.set(exit_lock_key(token_id), str(time.time()), ex=EXIT_LOCK_TTL_S, nx=True):
            logger.info("exit_in_progress", token_id=token_id, reason=reason)
            await self._rearm_force_exit(token_id, decision)
            return ExitOutcome(token_id, reason, closed=False, error="exit_in_progress")

        try:
            if not await self.positions.is_open(token_id):
                logger.info("exit_skipped_already_closed", token_id=token_id, reason=reason)
                return ExitOutcome(token_id, reason, closed=False, error="already_closed")
            return await self._sell_and_close(position, reason, quote, decision)
        finally:
            await self.store.delete(exit_lock_key(token_id))

    async def _rearm_force_exit(self, token_id: str, decision: Optional[ExitDecision]) -> None:
        # the flag was consumed by this check; keep it for the next cycle
        if decision is not None and decision.reason == REASON_FORCE_EXIT:
            await self.store.set(force_exit_key(token_id), "1")

    async def _sell_and_close(
        self,
        position: Position,
        reason: str,
        quote: Optional[PriceQuote],
        decision: Optional[ExitDecision]
    ) -> ExitOutcome:
        token_id = position.token_id
        logger.info(
            "exit_executing",
            token_id=token_id,
            reason=reason,
            graduated=bool(quote and quote.graduated),
            token_amount=position.token_amount
        )

        result = await self.router.sell(
            token_id,
            quote,
            position.token_amount,
            self.trading.copy_slippage_pct,
            self.trading.priority_fee_sol
        )

        if not result.success:
            logger.error("exit_sell_failed", token_id=token_id, reason=reason, venue=result.venue.value if result.venue else None, error=result.error)
            self.metrics.increment_counter("exit_failures", labels={"reason": reason})
            await self._rearm_force_exit(token_id, decision)
            await self.notifier.send_error("SELL FAILED", result.error or "unknown error", {"Token": token_id[:16], "Reason": reason})
            return ExitOutcome(token_id, reason, closed=False, trade=result, error=result.error)

        exit_price = self._exit_price(position, quote, result)
        if exit_price is None:
            logger.error("exit_price_unknown", token_id=token_id, signature=result.signature)
            closed = await self.positions.force_close(token_id, "sold without a usable exit price", result.signature, result.quote_received)
            return ExitOutcome(token_id, reason, closed=closed, trade=result, error="exit_price_unknown")

        try:
            pnl = await self.positions.close_position(
                token_id,
                exit_price,
                position.token_amount,
                result.quote_received,
                reason,
                result.signature,
                venue=result.venue,
                priority_fee=self.trading.priority_fee_sol,
                confirmed=result.confirmed
            )
        except PositionNotFoundError:
            logger.warning("exit_close_lost_race", token_id=token_id, reason=reason, signature=result.signature)
            return ExitOutcome(token_id, reason, closed=False, trade=result, error="already_closed")

        self._last_update.pop(token_id, None)
        if position.source_wallet:
            await self.store.delete(wallet_sold_key(position.source_wallet, token_id))

        if decision is not None and decision.also_triggered:
            logger.info("exit_also_triggered", token_id=token_id, reason=reason, also_triggered=decision.also_triggered)

        await self.notifier.send_position_closed(position, reason, pnl, self.mode, position.hold_time_s(utc_now()))
        return ExitOutcome(token_id, reason, closed=True, pnl=pnl, trade=result)

    @staticmethod
    def _exit_price(position: Position, quote: Optional[PriceQuote], result: TradeResult) -> Optional[float]:
        """Simulated fills carry their own price; live exits use the oracle price the decision saw"""
        if result.simulated and is_valid_price(result.fill_price):
            return result.fill_price
        if quote is not None and quote.has_price and is_valid_price(quote.price):
            return quote.price
        if is_valid_price(result.fill_price):
            return result.fill_price
        if is_valid_price(result.quote_received) and position.token_amount > 0:
            return result.quote_received / position.token_amount
        return None

    async def emergency_exit(self, token_id: str, record: Dict[str, str], error: CorruptPositionError) -> ExitOutcome:
        """
        Exit a position whose record is unusable

        Sells whatever token amount the record still carries; if there is none, the
        token is cleared from the open index. Either way the closure is flagged as
        data-integrity driven.
        """
        logger.error("position_record_corrupt", token_id=token_id, fields=error.fields)
        self.metrics.increment_counter("emergency_exits")

        token_amount = parse_float(record.get("token_amount"))
        if token_amount is None or token_amount <= 0:
            closed = await self.positions.force_close(token_id, f"unusable fields: {', '.join(error.fields)}")
            return ExitOutcome(token_id, REASON_DATA_INTEGRITY, closed=closed, error="no_token_amount")

        quote = await self.oracle.get_price(token_id)
        result = await self.router.sell(
            token_id,
            quote,
            token_amount,
            self.trading.copy_slippage_pct,
            self.trading.priority_fee_sol
        )
        if not result.success:
            logger.error("emergency_sell_failed", token_id=token_id, error=result.error)
            closed = await self.positions.force_close(
                token_id, f"unusable fields: {', '.join(error.fields)}; sell failed: {result.error}"
            )
            return ExitOutcome(token_id, REASON_DATA_INTEGRITY, closed=closed, trade=result, error=result.error)

        closed = await self.positions.force_close(
            token_id,
            f"unusable fields: {', '.join(error.fields)}",
            exit_signature=result.signature,
            quote_received=result.quote_received
        )
        await self.notifier.send_error(
            "EMERGENCY EXIT",
            f"Position record for {token_id[:16]}... was unusable and has been sold",
            {"Fields": ", ".join(error.fields), "Signature": result.signature or "-"}
        )
        return ExitOutcome(token_id, REASON_DATA_INTEGRITY, closed=closed, trade=result)

    async def manual_sell(self, token_id: str) -> ExitOutcome:
        """
        Sell one open position now, on behalf of an operator

        Raises:
            PositionNotFoundError: If the token has no open position
        """
        position = await self.positions.get_position(token_id)
        if position is None or not position.is_open:
            raise PositionNotFoundError(f"No open position for {token_id}")

        quote = await self.oracle.get_price(token_id, force_fresh=True)
        logger.info("manual_sell_requested", token_id=token_id)
        return await self._exit(position, REASON_MANUAL_SELL, quote)

    async def sell_all(self) -> List[ExitOutcome]:
        outcomes = []
        for position in await self.positions.get_open_positions():
            try:
                outcomes.append(await self.manual_sell(position.token_id))
            except PositionNotFoundError:
                continue
        return outcomes

    async def run(self, interval_s: float = 2.0, error_backoff_s: float = 5.0) -> None:
        """Monitoring loop; one bad cycle never stops it"""
        logger.info("position_monitor_started", interval_s=interval_s)
        while True:
            try:
                await self.check_positions()
                await asyncio.sleep(interval_s)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("position_monitor_loop_error", error=str(e), error_type=type(e).__name__)
                self.metrics.increment_counter("loop_errors", labels={"loop": "position_monitor"})
                await asyncio.sleep(error_backoff_s)

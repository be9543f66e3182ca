"""
Copy strategy
Acceptance heuristics for copy signals and the threshold exits (stop loss, trailing stop,
take profit, max hold) that run beside the wallet-mirroring phases
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from copytrader.core.config import StrategyConfig, TradingConfig
from copytrader.core.exit_policy import ExitDecision
from copytrader.core.price_oracle import is_valid_price


REASON_STOP_LOSS = "stop_loss"
REASON_TRAILING_STOP = "trailing_stop"
REASON_TAKE_PROFIT = "take_profit"
REASON_MAX_HOLD = "max_hold_time"

MODE_LIVE = "live"
MODE_PAPER = "paper"

# Prices above this are not pump.fun tokens
MAX_SANE_PRICE_SOL = 1.0


@dataclass
class CopyVerdict:
    """Answer to "should we copy this signal?" """
    copy: bool
    reason: Optional[str]
    amount: float
    confidence: float
    mode: str


@dataclass
class CopyContext:
    """Everything should_copy needs from the store, gathered by the caller"""
    open_positions: int
    has_position: bool
    in_cooldown: bool
    daily_pnl: float
    price: Optional[float]


def confidence_for(upvotes: int) -> float:
    """40 for a lone buyer, +20 per extra wallet, capped at 100"""
    return float(min(100, max(0, 40 + 20 * (upvotes - 1))))


class CopyStrategy:
    """
    Thresholds for copy positions

    Usage:
        strategy = CopyStrategy(config.strategy, config.trading)
        verdict = strategy.should_copy(signal, context)
        decision = strategy.evaluate_exit(position, price, pnl_percent, now)
    """

    def __init__(self, strategy: StrategyConfig, trading: TradingConfig):
        self.strategy = strategy
        self.trading = trading

    @property
    def mode(self) -> str:
        return MODE_LIVE if self.trading.live else MODE_PAPER

    def should_copy(self, signal, context: CopyContext) -> CopyVerdict:
        """Gate a copy signal; the first failing rule is the reason"""
        upvotes = signal.upvotes
        confidence = confidence_for(upvotes)

        def reject(reason: str) -> CopyVerdict:
            return CopyVerdict(False, reason, 0.0, confidence, self.mode)

        if upvotes < self.strategy.min_upvotes:
            return reject("insufficient_upvotes")
        if context.has_position:
            return reject("duplicate_position")
        if context.in_cooldown:
            return reject("cooldown")
        if context.open_positions >= self.trading.max_positions:
            return reject("max_positions")
        if context.daily_pnl < -self.trading.max_daily_loss_sol:
            return reject("daily_loss_limit")
        if not is_valid_price(context.price) or context.price > MAX_SANE_PRICE_SOL:
            return reject("invalid_price")

        return CopyVerdict(True, None, self.trading.position_size_sol, confidence, self.mode)

    def evaluate_exit(self, position, current_price: float, pnl_percent: float, now: datetime) -> ExitDecision:
        """
        Threshold exit for one position

        Priority: stop loss 1, trailing stop 2, take profit 3, max hold 4.
        pnl_percent is the fee-aware unrealized PnL.
        """
        s = self.strategy

        if pnl_percent <= -s.stop_loss_pct:
            return ExitDecision(
                True, REASON_STOP_LOSS,
                f"Stop loss: {pnl_percent:.2f}% <= -{s.stop_loss_pct}%", 1
            )

        high = max(position.max_price, current_price)
        activation = position.entry_price * (1 + s.trailing_activation_pct / 100)
        if high > position.entry_price and high >= activation:
            drawdown_pct = (high - current_price) / high * 100
            if drawdown_pct >= s.trailing_stop_pct:
                return ExitDecision(
                    True, REASON_TRAILING_STOP,
                    f"Trailing stop: {drawdown_pct:.2f}% below high {high:.10f}", 2
                )

        if pnl_percent >= s.take_profit_pct:
            return ExitDecision(
                True, REASON_TAKE_PROFIT,
                f"Take profit: +{pnl_percent:.2f}% >= {s.take_profit_pct}%", 3
            )

        if s.max_hold_minutes > 0 and position.hold_time_s(now) >= s.max_hold_minutes * 60:
            return ExitDecision(
                True, REASON_MAX_HOLD,
                f"Held longer than {s.max_hold_minutes} minutes", 4
            )

        return ExitDecision.hold("thresholds_not_met")

"""
PnL (Profit and Loss) Calculator for copy positions
Fee-aware realized and unrealized PnL: venue sell fee, slippage, then flat network fees
"""

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from copytrader.core.errors import PnLInputError
from copytrader.core.logger import get_logger
from copytrader.core.venues import Venue


logger = get_logger(__name__)


# Fractions of gross value, per side. PumpPortal is pump.fun's 1.25% plus its own 0.5%.
VENUE_FEES = {
    Venue.RELAY: 0.0175,
    Venue.AGGREGATOR: 0.003,
}
GENERIC_VENUE_FEE = 0.01

DEFAULT_NETWORK_FEE_SOL = 0.000005
DEFAULT_ESTIMATED_SLIPPAGE = 0.02

# Percentage points between price move and PnL worth flagging
DISCREPANCY_THRESHOLD_PCT = 5.0


def venue_fee_fraction(venue: Union[Venue, str, None]) -> float:
    """Per-side fee for a venue; unknown venues get the generic fee"""
    return VENUE_FEES.get(Venue.parse(venue), GENERIC_VENUE_FEE)


@dataclass
class FeeBreakdown:
    """Every step of the sell-side fee pipeline, in SOL"""
    venue: str
    gross_value: float
    sell_fee_fraction: float
    sell_fee: float
    value_after_fee: float
    slippage_fraction: float
    slippage_cost: float
    value_after_slippage: float
    network_fee: float
    priority_fee: float

    @property
    def total_fees(self) -> float:
        return self.sell_fee + self.slippage_cost + self.network_fee + self.priority_fee


@dataclass
class PnLResult:
    """Outcome of a real or hypothetical sale"""
    entry_price: float
    exit_price: float
    token_amount: float
    quote_spent: float
    net_received: float
    pnl_amount: float
    pnl_percent: float
    price_change_percent: float
    breakdown: FeeBreakdown

    @property
    def fee_drag_percent(self) -> float:
        """Percentage points lost between the raw price move and the PnL"""
        return self.price_change_percent - self.pnl_percent

    @property
    def is_profitable(self) -> bool:
        return self.pnl_amount > 0

    def has_discrepancy(self, threshold_pct: float = DISCREPANCY_THRESHOLD_PCT) -> bool:
        """True when fee and slippage drag exceeds the threshold (informational only)"""
        return abs(self.price_change_percent - self.pnl_percent) > threshold_pct

    def to_dict(self) -> dict:
        data = asdict(self)
        data["fee_drag_percent"] = self.fee_drag_percent
        data["breakdown"]["total_fees"] = self.breakdown.total_fees
        return data


def _require_positive(name: str, value) -> float:
    if value is None or isinstance(value, bool):
        raise PnLInputError(f"{name} is required")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise PnLInputError(f"{name} must be a number, got {value!r}") from e
    if not math.isfinite(number) or number <= 0:
        raise PnLInputError(f"{name} must be a positive finite number, got {value!r}")
    return number


def _require_non_negative(name: str, value) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise PnLInputError(f"{name} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise PnLInputError(f"{name} must be a number, got {value!r}") from e
    if not math.isfinite(number) or number < 0:
        raise PnLInputError(f"{name} must be a non-negative finite number, got {value!r}")
    return number


class PnLCalculator:
    """
    Calculates profit and loss for copy positions

    Pipeline, in order:
        gross      = token_amount * exit_price
        after_fee  = gross * (1 - venue_fee)
        after_slip = after_fee * (1 - slippage)        (only if slippage > 0)
        net        = after_slip - network_fee - priority_fee
        pnl        = net - quote_spent                 (quote_spent already includes buy fees)

    price_change_percent is the fee-free move, so the gap to pnl_percent is the fee drag.

    Usage:
        calc = PnLCalculator()
        result = calc.calculate_realized_pnl(
            entry_price=0.000001, exit_price=0.000002,
            token_amount=100_000, quote_spent=0.1, venue=Venue.RELAY
        )
        print(result.pnl_percent, result.price_change_percent)
    """

    def __init__(
        self,
        network_fee: float = DEFAULT_NETWORK_FEE_SOL,
        estimated_slippage: float = DEFAULT_ESTIMATED_SLIPPAGE,
        discrepancy_threshold_pct: float = DISCREPANCY_THRESHOLD_PCT
    ):
        self.network_fee = network_fee
        self.estimated_slippage = estimated_slippage
        self.discrepancy_threshold_pct = discrepancy_threshold_pct

    def calculate_realized_pnl(
        self,
        entry_price: float,
        exit_price: float,
        token_amount: float,
        quote_spent: float,
        venue: Union[Venue, str, None] = Venue.RELAY,
        slippage: float = 0.0,
        network_fee: Optional[float] = None,
        priority_fee: float = 0.0
    ) -> PnLResult:
        """
        PnL of a completed sale

        Args:
            entry_price: SOL per token at entry
            exit_price: SOL per token at exit
            token_amount: Whole tokens sold
            quote_spent: SOL spent on entry, buy fees included
            venue: Venue the sale went through
            slippage: Experienced slippage as a fraction (0.05 = 5%)
            network_fee: Flat SOL network fee (defaults to the calculator's)
            priority_fee: Flat SOL priority fee

        Raises:
            PnLInputError: If a required input is missing, zero, negative or not finite
        """
        entry = _require_positive("entry_price", entry_price)
        exit_ = _require_positive("exit_price", exit_price)
        tokens = _require_positive("token_amount", token_amount)
        spent = _require_positive("quote_spent", quote_spent)
        slip = _require_non_negative("slippage", slippage)
        if slip >= 1:
            raise PnLInputError(f"slippage must be below 1, got {slippage!r}")
        net_fee = _require_non_negative(
            "network_fee", self.network_fee if network_fee is None else network_fee
        )
        prio_fee = _require_non_negative("priority_fee", priority_fee)

        parsed_venue = Venue.parse(venue)
        fee_fraction = venue_fee_fraction(parsed_venue)

        gross_value = tokens * exit_
        sell_fee = gross_value * fee_fraction
        value_after_fee = gross_value - sell_fee

        slippage_cost = value_after_fee * slip if slip > 0 else 0.0
        value_after_slippage = value_after_fee - slippage_cost

        net_received = value_after_slippage - net_fee - prio_fee
        pnl_amount = net_received - spent
        pnl_percent = pnl_amount / spent * 100
        price_change_percent = (exit_ - entry) / entry * 100

        result = PnLResult(
            entry_price=entry,
            exit_price=exit_,
            token_amount=tokens,
            quote_spent=spent,
            net_received=net_received,
            pnl_amount=pnl_amount,
            pnl_percent=pnl_percent,
            price_change_percent=price_change_percent,
            breakdown=FeeBreakdown(
                venue=parsed_venue.value if parsed_venue else str(venue),
                gross_value=gross_value,
                sell_fee_fraction=fee_fraction,
                sell_fee=sell_fee,
                value_after_fee=value_after_fee,
                slippage_fraction=slip,
                slippage_cost=slippage_cost,
                value_after_slippage=value_after_slippage,
                network_fee=net_fee,
                priority_fee=prio_fee
            )
        )

        if result.has_discrepancy(self.discrepancy_threshold_pct):
            logger.info(
                "pnl_high_fee_impact",
                price_change_percent=round(price_change_percent, 2),
                pnl_percent=round(pnl_percent, 2),
                fee_drag_percent=round(result.fee_drag_percent, 2),
                venue=result.breakdown.venue
            )

        return result

    def calculate_unrealized_pnl(
        self,
        position,
        current_price: float,
        venue: Union[Venue, str, None] = Venue.RELAY,
        estimated_slippage: Optional[float] = None,
        network_fee: Optional[float] = None,
        priority_fee: float = 0.0
    ) -> PnLResult:
        """
        PnL of selling the whole position right now, without touching it

        Args:
            position: Anything with entry_price, token_amount and quote_spent
            current_price: Current SOL per token
            venue: Venue a sale would go through
            estimated_slippage: Slippage haircut (defaults to the calculator's estimate)

        Raises:
            PnLInputError: If the position or price is unusable
        """
        return self.calculate_realized_pnl(
            entry_price=getattr(position, "entry_price", None),
            exit_price=current_price,
            token_amount=getattr(position, "token_amount", None),
            quote_spent=getattr(position, "quote_spent", None),
            venue=venue,
            slippage=self.estimated_slippage if estimated_slippage is None else estimated_slippage,
            network_fee=network_fee,
            priority_fee=priority_fee
        )

    def check_discrepancy(self, result: PnLResult) -> dict:
        """Diagnostic summary of fee drag; never blocks execution"""
        drag = abs(result.price_change_percent - result.pnl_percent)
        return {
            "has_high_impact": drag > self.discrepancy_threshold_pct,
            "fee_impact_percent": drag,
            "checked_at": datetime.now(timezone.utc).isoformat(),
        }


# Example usage
if __name__ == "__main__":
    calc = PnLCalculator()
    result = calc.calculate_realized_pnl(
        entry_price=0.000001,
        exit_price=0.000002,
        token_amount=100_000,
        quote_spent=0.1,
        venue=Venue.RELAY
    )
    print(f"Net received: {result.net_received:.6f} SOL")
    print(f"PnL: {result.pnl_amount:+.6f} SOL ({result.pnl_percent:+.2f}%)")
    print(f"Price change: {result.price_change_percent:+.2f}%")
    print(f"Fee drag: {result.fee_drag_percent:.2f} pts")

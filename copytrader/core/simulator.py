"""
Paper-trading executors
Fill orders at the oracle price with the venue fee applied, so dry runs go through
the same router, store and PnL paths as live trading
"""

import secrets
from typing import Dict, Optional

from copytrader.core.config import SimulationConfig
from copytrader.core.logger import get_logger
from copytrader.core.pnl import venue_fee_fraction
from copytrader.core.price_oracle import is_valid_price
from copytrader.core.venues import ERROR_REJECTED, TradeResult, Venue


logger = get_logger(__name__)


def fake_signature(side: str) -> str:
    return f"SIM_{side.upper()}_{secrets.token_hex(16)}"


class SimulationBook:
    """Entry prices of simulated buys, shared by the per-venue executors"""

    def __init__(self, config: SimulationConfig):
        self.config = config
        self._entries: Dict[str, float] = {}

    def record_entry(self, token_id: str, price: float) -> None:
        self._entries[token_id] = price

    def entry_price(self, token_id: str) -> Optional[float]:
        return self._entries.get(token_id)

    def forget(self, token_id: str) -> None:
        self._entries.pop(token_id, None)

    def clamp_exit(self, token_id: str, price: Optional[float]) -> Optional[float]:
        """Keep a simulated exit within [entry x min_exit_multiple, entry x max_exit_multiple]"""
        entry = self._entries.get(token_id)
        if entry is None:
            return price if is_valid_price(price) else None
        if not is_valid_price(price):
            return entry
        low = entry * self.config.min_exit_multiple
        high = entry * self.config.max_exit_multiple
        return min(max(price, low), high)


class SimulatedExecutor:
    """
    TradeExecutor that never touches the chain

    Buys fill at the oracle price (config default if there is none);
    sells fill at the oracle price clamped by the SimulationBook.
    """

    def __init__(self, venue: Venue, book: SimulationBook, oracle):
        self.venue = venue
        self.book = book
        self.oracle = oracle
        self.fee = venue_fee_fraction(venue)

    async def _price(self, token_id: str) -> Optional[float]:
        quote = await self.oracle.get_price(token_id)
        return quote.price if quote is not None and is_valid_price(quote.price) else None

    async def buy(self, token_id: str, quote_amount: float, slippage_pct: float, priority_fee: float) -> TradeResult:
        if quote_amount <= 0:
            return TradeResult.failed(self.venue, "Buy amount must be positive", ERROR_REJECTED)

        price = await self._price(token_id)
        if price is None:
            price = self.book.config.default_price
            logger.warning("simulated_buy_default_price", token_id=token_id, price=price)

        tokens = quote_amount * (1 - self.fee) / price
        self.book.record_entry(token_id, price)

        logger.info(
            "simulated_buy",
            venue=self.venue.value,
            token_id=token_id,
            sol_amount=quote_amount,
            tokens=tokens,
            price=price
        )
        return TradeResult(
            success=True,
            venue=self.venue,
            signature=fake_signature("buy"),
            tokens_received=tokens,
            fill_price=price,
            simulated=True
        )

    async def sell(self, token_id: str, token_amount: float, slippage_pct: float, priority_fee: float) -> TradeResult:
        if token_amount <= 0:
            return TradeResult.failed(self.venue, "Sell amount must be positive", ERROR_REJECTED)

        price = self.book.clamp_exit(token_id, await self._price(token_id))
        if price is None:
            return TradeResult.failed(self.venue, "No price for simulated sell", ERROR_REJECTED)

        quote_received = token_amount * price * (1 - self.fee)
        self.book.forget(token_id)

        logger.info(
            "simulated_sell",
            venue=self.venue.value,
            token_id=token_id,
            tokens=token_amount,
            sol_received=quote_received,
            price=price
        )
        return TradeResult(
            success=True,
            venue=self.venue,
            signature=fake_signature("sell"),
            quote_received=quote_received,
            fill_price=price,
            simulated=True
        )

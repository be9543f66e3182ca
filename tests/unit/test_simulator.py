"""
Unit tests for paper-trading executors
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from copytrader.core.config import SimulationConfig
from copytrader.core.simulator import SimulatedExecutor, SimulationBook, fake_signature
from copytrader.core.venues import Venue
from tests.conftest import MINT


def oracle_returning(price):
    oracle = MagicMock()
    oracle.get_price = AsyncMock(return_value=SimpleNamespace(price=price))
    return oracle


@pytest.fixture
def book():
    return SimulationBook(SimulationConfig(default_price=0.000001, min_exit_multiple=0.5, max_exit_multiple=3.0))


def test_fake_signature_format():
    sig = fake_signature("buy")
    assert sig.startswith("SIM_BUY_")
    assert sig != fake_signature("buy")


def test_clamp_exit(book):
    assert book.clamp_exit(MINT, 0.5) == 0.5
    assert book.clamp_exit(MINT, None) is None

    book.record_entry(MINT, 1.0)
    assert book.clamp_exit(MINT, 10.0) == 3.0
    assert book.clamp_exit(MINT, 0.1) == 0.5
    assert book.clamp_exit(MINT, 2.0) == 2.0
    assert book.clamp_exit(MINT, float("nan")) == 1.0


@pytest.mark.asyncio
async def test_buy_fills_at_oracle_price_after_fee(book):
    executor = SimulatedExecutor(Venue.RELAY, book, oracle_returning(0.000002))
    result = await executor.buy(MINT, 0.1, 10, 0.0005)

    assert result.success and result.simulated
    assert result.venue is Venue.RELAY
    assert result.signature.startswith("SIM_BUY_")
    assert result.fill_price == 0.000002
    assert result.tokens_received == pytest.approx(0.1 * (1 - 0.0175) / 0.000002)
    assert book.entry_price(MINT) == 0.000002


@pytest.mark.asyncio
async def test_buy_without_price_uses_default(book):
    executor = SimulatedExecutor(Venue.AGGREGATOR, book, oracle_returning(None))
    result = await executor.buy(MINT, 0.1, 10, 0)
    assert result.fill_price == 0.000001
    assert result.tokens_received == pytest.approx(0.1 * (1 - 0.003) / 0.000001)


@pytest.mark.asyncio
async def test_sell_clamps_and_forgets(book):
    book.record_entry(MINT, 0.000001)
    executor = SimulatedExecutor(Venue.RELAY, book, oracle_returning(0.00001))

    result = await executor.sell(MINT, 100_000, 10, 0)
    assert result.success
    assert result.fill_price == pytest.approx(0.000003)
    assert result.quote_received == pytest.approx(100_000 * 0.000003 * (1 - 0.0175))
    assert book.entry_price(MINT) is None


@pytest.mark.asyncio
async def test_sell_without_any_price_fails(book):
    executor = SimulatedExecutor(Venue.RELAY, book, oracle_returning(None))
    result = await executor.sell(MINT, 100_000, 10, 0)
    assert not result.success


@pytest.mark.asyncio
async def test_rejects_non_positive_amounts(book):
    executor = SimulatedExecutor(Venue.RELAY, book, oracle_returning(0.000001))
    assert not (await executor.buy(MINT, 0, 10, 0)).success
    assert not (await executor.sell(MINT, -5, 10, 0)).success

"""
Unit tests for the Exit Policy Engine
Tests the phase table, force exits, threshold merging and inconclusive wallet checks
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from copytrader.core.config import StrategyConfig, TradingConfig
from copytrader.core.copy_strategy import CopyStrategy
from copytrader.core.exit_policy import (
    REASON_FORCE_EXIT,
    REASON_HOLD,
    REASON_INDEPENDENT,
    REASON_NO_SIGNAL,
    REASON_WALLET_EXIT_EARLY,
    REASON_WALLET_EXIT_LOSS,
    ExitPhase,
    ExitPolicyEngine,
    evaluate_phase,
    force_exit_key,
    phase_for,
)
from copytrader.core.position_store import Position
from tests.conftest import MINT, WALLET


ENTRY_PRICE = 0.000001


def make_position(entry_time, max_price=ENTRY_PRICE, wallet=WALLET):
    return Position(
        token_id=MINT,
        entry_price=ENTRY_PRICE,
        entry_time=entry_time,
        quote_spent=0.1,
        token_amount=100_000,
        max_price=max_price,
        provenance={"source_wallet": wallet} if wallet else {}
    )


@pytest.fixture
def wallet_activity():
    activity = MagicMock()
    activity.get_sell_time = AsyncMock(return_value=None)
    return activity


@pytest.fixture
def engine(store, wallet_activity, metrics, clock):
    strategy = CopyStrategy(StrategyConfig(take_profit_pct=200, stop_loss_pct=15, trailing_stop_pct=15), TradingConfig())
    return ExitPolicyEngine(
        store,
        wallet_activity,
        strategy,
        metrics,
        wallet_exit_window_s=180,
        loss_protection_window_s=600,
        timeout_s=0.2,
        now=clock.datetime
    )


# =============================================================================
# PHASE TABLE (pure)
# =============================================================================

@pytest.mark.parametrize("hold,expected", [
    (0, ExitPhase.MIRROR), (179.9, ExitPhase.MIRROR),
    (180, ExitPhase.LOSS_PROTECT), (599, ExitPhase.LOSS_PROTECT),
    (600, ExitPhase.INDEPENDENT), (5000, ExitPhase.INDEPENDENT),
])
def test_phase_boundaries(hold, expected):
    assert phase_for(hold, 180, 600) is expected


def test_mirror_phase_exits_on_wallet_sell(clock):
    entry = clock.datetime()
    decision = evaluate_phase(60, entry, entry + timedelta(seconds=30), pnl_percent=50.0)
    assert decision.should_exit
    assert decision.reason == REASON_WALLET_EXIT_EARLY
    assert decision.phase is ExitPhase.MIRROR


def test_sell_before_entry_never_counts(clock):
    entry = clock.datetime()
    for hold in (60, 300):
        decision = evaluate_phase(hold, entry, entry - timedelta(seconds=1), pnl_percent=-50.0)
        assert not decision.should_exit
        assert decision.reason == REASON_NO_SIGNAL

    assert not evaluate_phase(60, entry, entry, pnl_percent=-50.0).should_exit


def test_loss_protect_phase_depends_on_pnl(clock):
    entry = clock.datetime()
    sold = entry + timedelta(seconds=200)

    losing = evaluate_phase(300, entry, sold, pnl_percent=-0.01)
    assert losing.should_exit
    assert losing.reason == REASON_WALLET_EXIT_LOSS

    winning = evaluate_phase(300, entry, sold, pnl_percent=0.0)
    assert not winning.should_exit
    assert winning.reason == REASON_HOLD


def test_independent_phase_ignores_wallet(clock):
    entry = clock.datetime()
    decision = evaluate_phase(700, entry, entry + timedelta(seconds=650), pnl_percent=-90.0)
    assert not decision.should_exit
    assert decision.reason == REASON_INDEPENDENT


def test_engine_rejects_bad_windows(store, wallet_activity, metrics):
    with pytest.raises(ValueError):
        ExitPolicyEngine(store, wallet_activity, MagicMock(), metrics, 600, 600)


# =============================================================================
# ENGINE
# =============================================================================

@pytest.mark.asyncio
async def test_force_exit_wins_and_is_consumed(engine, store, clock, wallet_activity, metrics):
    await store.set(force_exit_key(MINT), "1")
    position = make_position(clock.datetime())

    decision = await engine.evaluate(position, ENTRY_PRICE, 0.0)
    assert decision.should_exit
    assert decision.reason == REASON_FORCE_EXIT
    assert decision.priority == 1
    wallet_activity.get_sell_time.assert_not_called()
    assert await store.get(force_exit_key(MINT)) is None
    assert metrics.get_counter("exit_decisions", labels={"reason": REASON_FORCE_EXIT}) == 1

    again = await engine.evaluate(position, ENTRY_PRICE, 0.0)
    assert not again.should_exit


@pytest.mark.asyncio
async def test_mirror_exit_through_engine(engine, clock, wallet_activity):
    position = make_position(clock.datetime())
    clock.advance(90)
    wallet_activity.get_sell_time.return_value = clock.datetime_after(-10)

    decision = await engine.evaluate(position, ENTRY_PRICE * 2, 90.0)
    assert decision.reason == REASON_WALLET_EXIT_EARLY
    wallet_activity.get_sell_time.assert_awaited_once_with(WALLET, MINT)


@pytest.mark.asyncio
async def test_phase_exit_records_threshold_as_also_triggered(engine, clock, wallet_activity):
    position = make_position(clock.datetime())
    clock.advance(30)
    wallet_activity.get_sell_time.return_value = clock.datetime()

    decision = await engine.evaluate(position, ENTRY_PRICE * 0.5, -50.0)
    assert decision.reason == REASON_WALLET_EXIT_EARLY
    assert decision.also_triggered == ["stop_loss"]


@pytest.mark.asyncio
async def test_threshold_exit_carries_phase(engine, clock):
    position = make_position(clock.datetime())
    clock.advance(700)

    decision = await engine.evaluate(position, ENTRY_PRICE * 4, 250.0)
    assert decision.should_exit
    assert decision.reason == "take_profit"
    assert decision.phase is ExitPhase.INDEPENDENT


@pytest.mark.asyncio
async def test_independent_phase_skips_wallet_lookup(engine, clock, wallet_activity):
    position = make_position(clock.datetime())
    clock.advance(601)

    decision = await engine.evaluate(position, ENTRY_PRICE, 0.0)
    assert not decision.should_exit
    wallet_activity.get_sell_time.assert_not_called()


@pytest.mark.asyncio
async def test_wallet_lookup_failure_is_inconclusive(engine, clock, wallet_activity):
    position = make_position(clock.datetime())
    clock.advance(10)
    wallet_activity.get_sell_time.side_effect = RuntimeError("rpc down")

    decision = await engine.evaluate(position, ENTRY_PRICE, 0.0)
    assert not decision.should_exit


@pytest.mark.asyncio
async def test_wallet_lookup_timeout_is_inconclusive(engine, clock, wallet_activity):
    async def hang(*_args):
        await asyncio.sleep(5)

    position = make_position(clock.datetime())
    wallet_activity.get_sell_time.side_effect = hang

    decision = await engine.evaluate(position, ENTRY_PRICE, 0.0)
    assert not decision.should_exit


@pytest.mark.asyncio
async def test_no_price_only_mirror_can_fire(engine, clock, wallet_activity):
    position = make_position(clock.datetime())
    clock.advance(300)
    wallet_activity.get_sell_time.return_value = clock.datetime_after(-5)

    decision = await engine.evaluate(position, None, None)
    assert not decision.should_exit

    early = make_position(clock.datetime())
    clock.advance(20)
    wallet_activity.get_sell_time.return_value = clock.datetime_after(-5)
    decision = await engine.evaluate(early, None, None)
    assert decision.reason == REASON_WALLET_EXIT_EARLY


@pytest.mark.asyncio
async def test_position_without_source_wallet(engine, clock, wallet_activity):
    position = make_position(clock.datetime(), wallet=None)
    decision = await engine.evaluate(position, ENTRY_PRICE, 0.0)
    assert not decision.should_exit
    wallet_activity.get_sell_time.assert_not_called()

"""
Unit tests for copy/sell signals and the sell-signal flagger
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from copytrader.core.pnl import PnLCalculator
from copytrader.core.position_store import PositionStore
from copytrader.core.signals import (
    SELL_SIGNALS_KEY,
    CopySignal,
    SellSignal,
    SellSignalFlagger,
    multiple_sellers_key,
)
from tests.conftest import MINT, OTHER_MINT, OTHER_WALLET, WALLET


# =============================================================================
# SIGNAL TYPES
# =============================================================================

def test_copy_signal_dedups_wallets_source_first():
    signal = CopySignal(MINT, WALLET, wallets=[OTHER_WALLET, WALLET, OTHER_WALLET, ""])
    assert signal.wallets == [WALLET, OTHER_WALLET]
    assert signal.upvotes == 2


def test_copy_signal_requires_ids():
    with pytest.raises(ValueError):
        CopySignal("", WALLET)
    with pytest.raises(ValueError):
        CopySignal(MINT, "")


def test_signal_id_prefers_signature():
    assert CopySignal(MINT, WALLET, signature="SIG").signal_id == "SIG"
    assert CopySignal(MINT, WALLET, timestamp=12.5).signal_id == f"{MINT}:{WALLET}:12.5"


def test_copy_signal_json_ignores_unknown_fields():
    payload = json.loads(CopySignal(MINT, WALLET, wallet_amounts={WALLET: 1.5}, timestamp=1.0).to_json())
    payload["extra"] = "ignored"

    signal = CopySignal.from_json(json.dumps(payload))
    assert signal.wallet_amounts == {WALLET: 1.5}
    assert signal.timestamp == 1.0


@pytest.mark.parametrize("raw", ["[]", "\"text\"", "{}", "not json"])
def test_copy_signal_rejects_bad_payloads(raw):
    with pytest.raises((ValueError, TypeError)):
        CopySignal.from_json(raw)


def test_sell_signal_count():
    signal = SellSignal(MINT, WALLET, sellers=[OTHER_WALLET, WALLET])
    assert signal.sell_count == 2
    assert SellSignal.from_json(signal.to_json()).sellers == [WALLET, OTHER_WALLET]


# =============================================================================
# FLAGGER
# =============================================================================

@pytest_asyncio.fixture
async def positions(store, metrics, clock):
    return PositionStore(store, PnLCalculator(), metrics, now=clock.datetime)


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.send_text = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def flagger(store, positions, notifier, metrics):
    return SellSignalFlagger(store, positions, notifier, metrics, min_wallets_to_sell=2)


@pytest.mark.asyncio
async def test_flags_open_copy_position(flagger, positions, store, notifier, metrics):
    await positions.open_position(MINT, "copy", 0.000001, 0.1, 100_000, "SIG")

    assert await flagger.handle(SellSignal(MINT, WALLET, sellers=[OTHER_WALLET])) is True
    assert await store.get(multiple_sellers_key(MINT)) == "2"
    assert await store.ttl(multiple_sellers_key(MINT)) == 30
    notifier.send_text.assert_awaited_once()
    assert metrics.get_counter("sell_signals", labels={"outcome": "flagged"}) == 1
    # flagging never closes
    assert await positions.is_open(MINT)


@pytest.mark.asyncio
async def test_below_threshold_not_flagged(flagger, positions, store, notifier):
    await positions.open_position(MINT, "copy", 0.000001, 0.1, 100_000, "SIG")

    assert await flagger.handle(SellSignal(MINT, WALLET)) is False
    assert not await store.exists(multiple_sellers_key(MINT))
    notifier.send_text.assert_not_called()


@pytest.mark.asyncio
async def test_ignores_tokens_without_copy_position(flagger, positions):
    assert await flagger.handle(SellSignal(OTHER_MINT, WALLET, sellers=[OTHER_WALLET])) is False

    await positions.open_position(MINT, "manual", 0.000001, 0.1, 100_000, "SIG")
    assert await flagger.handle(SellSignal(MINT, WALLET, sellers=[OTHER_WALLET])) is False


@pytest.mark.asyncio
async def test_process_next_consumes_queue(flagger, store, metrics):
    assert await flagger.process_next(timeout=0) is None

    await store.lpush(SELL_SIGNALS_KEY, "{broken")
    assert await flagger.process_next(timeout=0) is False
    assert metrics.get_counter("sell_signals", labels={"outcome": "malformed"}) == 1

    await store.lpush(SELL_SIGNALS_KEY, SellSignal(MINT, WALLET).to_json())
    assert await flagger.process_next(timeout=0) is False
    assert await store.llen(SELL_SIGNALS_KEY) == 0
